#!/usr/bin/env python3
"""
Long-running listener for Fukuoka fire department alert mails.

Usage:
    python3 scripts/listen_mail.py --output datasets/disaster_mail/reports.jsonl --geocode
"""

from __future__ import annotations

import sys
from pathlib import Path

REPO_ROOT = Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from src.services.mail_ingestion import main


if __name__ == "__main__":
    raise SystemExit(main())
