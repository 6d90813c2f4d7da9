from __future__ import annotations

from src.services import disaster_text
from src.services.disaster_text import DisasterType


SAMPLE_TEXT = (
    "【火災】福岡市中央区天神2丁目3番付近で建物火災が発生しました。\n"
    "消防隊が出動しています。\n"
)


def test_classify_fire() -> None:
    assert disaster_text.classify_disaster_type("本日、火災が発生しました") is DisasterType.FIRE


def test_classify_empty_is_unknown() -> None:
    assert disaster_text.classify_disaster_type("") is DisasterType.UNKNOWN
    assert disaster_text.classify_disaster_type("訓練のお知らせ") is DisasterType.UNKNOWN


def test_classify_uses_priority_order_not_text_position() -> None:
    text = "火災の現場で救急要請がありました"
    assert disaster_text.classify_disaster_type(text) is DisasterType.EMERGENCY


def test_extract_first_line_trims() -> None:
    assert disaster_text.extract_first_line("  一行目  \n二行目") == "一行目"
    assert disaster_text.extract_first_line("") == ""


def test_extract_address_exact_substring() -> None:
    assert disaster_text.extract_address(SAMPLE_TEXT) == "中央区天神2丁目3番付近"


def test_extract_address_without_block_numbers() -> None:
    assert disaster_text.extract_address("東区 香椎付近で救急") == "東区 香椎付近"


def test_extract_address_without_ward_returns_sentinel() -> None:
    assert disaster_text.extract_address("福岡市内で火災が発生しました") == disaster_text.ADDRESS_UNKNOWN
    assert disaster_text.extract_address("") == disaster_text.ADDRESS_UNKNOWN
