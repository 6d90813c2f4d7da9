from __future__ import annotations

import json
from datetime import datetime, timezone
from pathlib import Path

import pytest

from src.services.records import JsonlRecordSink, NormalizedRecord

NOW = datetime(2026, 10, 19, 3, 0, tzinfo=timezone.utc)


def make_record(**overrides) -> NormalizedRecord:
    fields = {
        "title": "天神で火災",
        "body": "けが人はいません。",
        "source_url": "https://newsdig.tbs.co.jp/articles/rkb/1001",
        "published_at": NOW,
        "ingested_at": NOW,
        "source_name": "RKB毎日放送",
    }
    fields.update(overrides)
    return NormalizedRecord(**fields)


def test_record_requires_title_and_url() -> None:
    with pytest.raises(ValueError):
        make_record(title="")
    with pytest.raises(ValueError):
        make_record(source_url="")


def test_jsonl_sink_appends_utf8_lines(tmp_path: Path) -> None:
    path = tmp_path / "out" / "records.jsonl"
    sink = JsonlRecordSink(path)

    sink.create(make_record())
    sink.create(make_record(title="博多で救助", image_url="https://img.example/2.jpg"))

    lines = path.read_text(encoding="utf-8").splitlines()
    assert len(lines) == 2
    assert "天神で火災" in lines[0]
    payload = json.loads(lines[1])
    assert payload["title"] == "博多で救助"
    assert payload["image_url"] == "https://img.example/2.jpg"
    assert payload["published_at"] == "2026-10-19T03:00:00+00:00"
