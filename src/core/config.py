"""Environment-backed settings for the mail listener and the geocoder."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

LOGGER = logging.getLogger(__name__)

FIRE_DEPARTMENT_SENDER = "fukushosaigai@m119.city.fukuoka.lg.jp"

_TRUTHY = {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class MailboxSettings:
    host: str
    user: str
    password: str
    port: int = 993
    use_tls: bool = True
    verify_tls: bool = True
    sender: str = FIRE_DEPARTMENT_SENDER
    mailbox: str = "INBOX"
    poll_interval: float = 30.0


def load_env(dotenv_path: Path | None = None) -> bool:
    """Load variables from a .env file without overriding the real environment."""
    loaded = load_dotenv(dotenv_path=dotenv_path)
    if loaded:
        LOGGER.debug("Loaded environment variables from .env file.")
    return loaded


def _env_flag(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in _TRUTHY


def _env_number(name: str, default: float, cast: type = float):
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return cast(raw)
    except ValueError:
        LOGGER.warning("Ignoring invalid %s=%r; using %s.", name, raw, default)
        return default


def load_mailbox_settings() -> MailboxSettings | None:
    """Build mailbox settings from IMAP_* variables.

    Returns ``None`` (after logging which variables are missing) when the host or
    credentials are not configured, so callers can skip the listener.
    """
    host = (os.getenv("IMAP_HOST") or "").strip()
    user = (os.getenv("IMAP_USER") or "").strip()
    password = os.getenv("IMAP_PASS") or ""
    missing = [
        name
        for name, value in (("IMAP_HOST", host), ("IMAP_USER", user), ("IMAP_PASS", password))
        if not value
    ]
    if missing:
        LOGGER.error("Mailbox is not configured; missing %s.", ", ".join(missing))
        return None
    return MailboxSettings(
        host=host,
        user=user,
        password=password,
        port=_env_number("IMAP_PORT", 993, int),
        use_tls=_env_flag("IMAP_TLS", True),
        verify_tls=_env_flag("IMAP_TLS_VERIFY", True),
        sender=(os.getenv("IMAP_SENDER") or "").strip() or FIRE_DEPARTMENT_SENDER,
        poll_interval=_env_number("IMAP_POLL_INTERVAL", 30.0),
    )


def google_maps_api_key() -> str | None:
    key = (os.getenv("GOOGLE_MAPS_API_KEY") or "").strip()
    return key or None
