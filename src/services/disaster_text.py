"""
Text helpers for Fukuoka fire department alert mails: disaster type, headline and
a best-guess address.
"""

from __future__ import annotations

import re
from enum import Enum
from typing import Pattern


class DisasterType(str, Enum):
    EMERGENCY = "救急"
    FIRE = "火災"
    RESCUE = "救助"
    DISASTER = "災害"
    ALERT = "警戒"
    UNKNOWN = "不明"


# Checked in order; the first keyword present in the body wins.
DISASTER_KEYWORDS: list[tuple[str, DisasterType]] = [
    ("救急", DisasterType.EMERGENCY),
    ("火災", DisasterType.FIRE),
    ("救助", DisasterType.RESCUE),
    ("災害", DisasterType.DISASTER),
    ("警戒", DisasterType.ALERT),
]

ADDRESS_UNKNOWN = "住所不明"

# Ward name of up to four kanji (city/prefecture prefix excluded), town, optional
# 丁目 / 番(地) / 号, optional 付近.
ADDRESS_PATTERN: Pattern[str] = re.compile(
    r"(?:(?![市町村県都府道])[\u4e00-\u9fff々ヶ]){1,4}区"
    r"\s*[^\s\d、。,.()（）付でにをが]*"
    r"(?:\d+丁目)?"
    r"(?:\d+番地?)?"
    r"(?:\d+号)?"
    r"(?:付近)?"
)


def classify_disaster_type(text: str) -> DisasterType:
    if not text:
        return DisasterType.UNKNOWN
    for keyword, label in DISASTER_KEYWORDS:
        if keyword in text:
            return label
    return DisasterType.UNKNOWN


def extract_first_line(text: str) -> str:
    if not text:
        return ""
    return text.split("\n", 1)[0].strip()


def extract_address(text: str) -> str:
    """Return the first ward-style address in ``text`` or ``ADDRESS_UNKNOWN``.

    This is a single heuristic for addresses such as ``中央区天神2丁目3番付近``;
    misses are expected and never raise.
    """
    if not text:
        return ADDRESS_UNKNOWN
    match = ADDRESS_PATTERN.search(text)
    if not match:
        return ADDRESS_UNKNOWN
    return match.group(0).strip()
