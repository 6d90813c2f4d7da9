"""
Normalized output records and the sink that hands them to storage.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class NormalizedRecord:
    title: str
    body: str
    source_url: str
    published_at: datetime
    ingested_at: datetime
    source_name: str
    image_url: str | None = None

    def __post_init__(self) -> None:
        if not self.title or not self.source_url:
            raise ValueError("NormalizedRecord requires a title and a source_url")

    def to_serializable(self) -> dict[str, Any]:
        return {
            "title": self.title,
            "body": self.body,
            "source_url": self.source_url,
            "image_url": self.image_url,
            "published_at": self.published_at.isoformat(),
            "ingested_at": self.ingested_at.isoformat(),
            "source_name": self.source_name,
        }


class BaseRecordSink:
    """Receives one ``create`` call per produced record."""

    def create(self, record: Any) -> None:
        raise NotImplementedError


class JsonlRecordSink(BaseRecordSink):
    """Append records as JSON lines; any object with ``to_serializable`` works."""

    def __init__(self, path: Path) -> None:
        self.path = path

    def create(self, record: Any) -> None:
        line = json.dumps(record.to_serializable(), ensure_ascii=False)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with self.path.open("a", encoding="utf-8") as handle:
            handle.write(line + "\n")
        LOGGER.debug("Wrote record to %s", self.path)
