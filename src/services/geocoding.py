"""
Google Geocoding client that turns alert addresses into coordinates plus a
Japanese-style formatted address (no country, no postal code).
"""

from __future__ import annotations

import logging
import sqlite3
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

import requests

from src.core.config import google_maps_api_key
from src.core.retry import retry_operation

LOGGER = logging.getLogger(__name__)

# Joined in this order; anything else (country, postal_code, ...) is dropped.
ADDRESS_COMPONENT_ORDER = (
    "administrative_area_level_1",
    "locality",
    "sublocality_level_1",
    "sublocality_level_2",
    "sublocality_level_3",
    "sublocality_level_4",
    "street_number",
    "premise",
    "subpremise",
)


@dataclass(frozen=True)
class Coordinates:
    latitude: float
    longitude: float
    formatted_address: str | None = None

    def to_serializable(self) -> dict[str, Any]:
        return {
            "latitude": self.latitude,
            "longitude": self.longitude,
            "formatted_address": self.formatted_address,
        }


def format_address(components: Any) -> str:
    """Rebuild an address from Google ``address_components`` in fixed order."""
    if not components or not isinstance(components, list):
        return ""
    parts: list[str] = []
    for component_type in ADDRESS_COMPONENT_ORDER:
        match = next(
            (
                comp
                for comp in components
                if isinstance(comp, dict) and component_type in (comp.get("types") or [])
            ),
            None,
        )
        value = (match or {}).get("long_name") or ""
        if value:
            parts.append(value)
    return "".join(parts)


class SQLiteCache:
    """Lightweight cache that stores address -> coordinates mappings."""

    def __init__(self, db_path: Path) -> None:
        self.db_path = db_path
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self.conn.execute(
            """
            CREATE TABLE IF NOT EXISTS geocache (
                query TEXT PRIMARY KEY,
                latitude REAL,
                longitude REAL,
                formatted_address TEXT,
                fetched_at TEXT
            )
            """
        )
        self.conn.commit()
        self.lock = threading.Lock()

    def get(self, query: str) -> Optional[Coordinates]:
        with self.lock:
            cursor = self.conn.execute(
                "SELECT latitude, longitude, formatted_address FROM geocache WHERE query = ?",
                (query,),
            )
            row = cursor.fetchone()
        if not row or row[0] is None or row[1] is None:
            return None
        return Coordinates(latitude=row[0], longitude=row[1], formatted_address=row[2])

    def set(self, query: str, coordinates: Coordinates) -> None:
        with self.lock:
            self.conn.execute(
                """
                INSERT OR REPLACE INTO geocache (query, latitude, longitude, formatted_address, fetched_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (
                    query,
                    coordinates.latitude,
                    coordinates.longitude,
                    coordinates.formatted_address,
                    datetime.now(timezone.utc).isoformat(),
                ),
            )
            self.conn.commit()

    def close(self) -> None:
        with self.lock:
            self.conn.close()


class GoogleGeocoder:
    """Resolve addresses through the Google Geocoding API with retry and optional cache."""

    endpoint = "https://maps.googleapis.com/maps/api/geocode/json"

    def __init__(
        self,
        api_key: str | None,
        cache_path: Path | None = None,
        language: str = "ja",
        timeout: int = 15,
        max_retries: int = 2,
        initial_delay: float = 1.0,
        session: requests.Session | None = None,
    ) -> None:
        self.api_key = api_key
        self.cache = SQLiteCache(cache_path) if cache_path else None
        self.language = language
        self.timeout = timeout
        self.max_retries = max_retries
        self.initial_delay = initial_delay
        self.session = session or requests.Session()
        self.stats: dict[str, int] = {
            "cache_hits": 0,
            "google_hits": 0,
            "failures": 0,
        }

    def geocode(self, address: str) -> Optional[Coordinates]:
        """Return coordinates for ``address`` or ``None`` when it cannot be resolved.

        Raises:
            ValueError: If ``address`` is empty. This is not retried.
        """
        query = (address or "").strip()
        # Checked before the key: a blank address is a caller error even when unconfigured.
        if not query:
            raise ValueError("An address is required for geocoding.")
        if not self.api_key:
            LOGGER.error("Google Maps API key is not configured; skipping geocode for '%s'.", query)
            return None
        if self.cache:
            try:
                cached = self.cache.get(query)
            except sqlite3.Error:
                LOGGER.warning("Geocode cache lookup failed for '%s'", query, exc_info=True)
                cached = None
            if cached:
                self.stats["cache_hits"] += 1
                return cached
        LOGGER.info("Geocoding address '%s'", query)
        try:
            payload = retry_operation(
                lambda: self._request(query),
                max_retries=self.max_retries,
                initial_delay=self.initial_delay,
                description=f"geocode {query}",
            )
            result = self._parse(payload)
        except (requests.RequestException, ValueError, KeyError, TypeError):
            LOGGER.exception("Google geocoding failed for query '%s'", query)
            self.stats["failures"] += 1
            return None
        if result is None:
            LOGGER.info("No geocoding result for '%s'", query)
            self.stats["failures"] += 1
            return None
        LOGGER.info(
            "Geocoded '%s' -> %s,%s (%s)",
            query,
            result.latitude,
            result.longitude,
            result.formatted_address,
        )
        self.stats["google_hits"] += 1
        if self.cache:
            try:
                self.cache.set(query, result)
            except sqlite3.Error:
                LOGGER.warning("Failed to cache geocode for '%s'", query, exc_info=True)
        return result

    def _request(self, query: str) -> dict[str, Any]:
        response = self.session.get(
            self.endpoint,
            params={"address": query, "key": self.api_key, "language": self.language},
            timeout=self.timeout,
        )
        response.raise_for_status()
        return response.json()

    @staticmethod
    def _parse(payload: Any) -> Optional[Coordinates]:
        if not isinstance(payload, dict):
            LOGGER.warning("Unexpected geocoding payload type %s", type(payload).__name__)
            return None
        if payload.get("status") != "OK" or not payload.get("results"):
            if payload.get("status") not in (None, "OK", "ZERO_RESULTS"):
                LOGGER.warning(
                    "Google geocoding returned status %s: %s",
                    payload.get("status"),
                    payload.get("error_message"),
                )
            return None
        result = payload["results"][0]
        location = result["geometry"]["location"]
        return Coordinates(
            latitude=float(location["lat"]),
            longitude=float(location["lng"]),
            formatted_address=format_address(result.get("address_components")),
        )


def geocode_address(address: str, api_key: str | None = None) -> Optional[Coordinates]:
    """One-off lookup using ``GOOGLE_MAPS_API_KEY`` when no key is passed."""
    return GoogleGeocoder(api_key or google_maps_api_key()).geocode(address)
