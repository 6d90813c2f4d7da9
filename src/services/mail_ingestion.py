"""
Watch an IMAP inbox for fire department alert mails and turn each unseen alert
into a DisasterReport.

The listener connects once, scans immediately, then reacts to "new mail" events
derived from the mailbox EXISTS count (polled with NOOP). It never reconnects on
its own. Fetching a message body marks it seen before the report is stored, so a
crash in between loses that alert.
"""

from __future__ import annotations

import argparse
import imaplib
import logging
import ssl
import sys
import time
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from email import message_from_bytes, policy
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Iterator, List, Optional, Sequence

from bs4 import BeautifulSoup

from src.core.config import (
    FIRE_DEPARTMENT_SENDER,
    MailboxSettings,
    google_maps_api_key,
    load_env,
    load_mailbox_settings,
)
from src.services.disaster_text import (
    ADDRESS_UNKNOWN,
    DisasterType,
    classify_disaster_type,
    extract_address,
    extract_first_line,
)
from src.services.geocoding import Coordinates, GoogleGeocoder
from src.services.records import BaseRecordSink, JsonlRecordSink

LOGGER = logging.getLogger(__name__)

IMAP_ERRORS = (imaplib.IMAP4.error, OSError)
CONNECTION_LOST = (imaplib.IMAP4.abort, OSError)


class ListenerState(str, Enum):
    CONNECTING = "connecting"
    READY = "ready"
    PROCESSING = "processing"
    ERROR = "error"
    ENDED = "ended"


class MailEvent(str, Enum):
    NEW_MAIL = "new_mail"
    CLOSED = "closed"


@dataclass(frozen=True)
class ParsedEmail:
    subject: str
    sender: str
    text: str


@dataclass(frozen=True)
class DisasterReport:
    sender: str
    subject: str
    first_line: str
    disaster_type: DisasterType
    raw_address: str
    received_at: datetime
    coordinates: Coordinates | None = None

    def to_serializable(self) -> dict[str, Any]:
        return {
            "sender": self.sender,
            "subject": self.subject,
            "first_line": self.first_line,
            "disaster_type": self.disaster_type.value,
            "raw_address": self.raw_address,
            "received_at": self.received_at.isoformat(),
            "coordinates": self.coordinates.to_serializable() if self.coordinates else None,
        }


def _html_to_text(value: str) -> str:
    soup = BeautifulSoup(value, "html.parser")
    for tag in soup(["script", "style"]):
        tag.decompose()
    for br in soup.find_all("br"):
        br.replace_with("\n")
    return soup.get_text("\n").strip()


def parse_email(raw: bytes) -> ParsedEmail:
    """Split a raw RFC 822 message into subject, sender and plain text."""
    message = message_from_bytes(raw, policy=policy.default)
    subject = str(message.get("subject") or "").strip() or "No Subject"
    sender = str(message.get("from") or "").strip() or "unknown"
    text = ""
    body = message.get_body(preferencelist=("plain", "html"))
    if body is not None:
        content = body.get_content()
        if body.get_content_type() == "text/html":
            content = _html_to_text(content)
        text = content.replace("\r\n", "\n")
    return ParsedEmail(subject=subject, sender=sender, text=text)


def build_report(
    parsed: ParsedEmail,
    received_at: datetime | None = None,
    coordinates: Coordinates | None = None,
) -> DisasterReport:
    return DisasterReport(
        sender=parsed.sender,
        subject=parsed.subject,
        first_line=extract_first_line(parsed.text),
        disaster_type=classify_disaster_type(parsed.text),
        raw_address=extract_address(parsed.text),
        received_at=received_at or datetime.now(timezone.utc),
        coordinates=coordinates,
    )


class MailboxConnection:
    """Thin wrapper over imaplib exposing search/fetch and a mail event stream."""

    def __init__(
        self,
        settings: MailboxSettings,
        client_factory: Callable[[MailboxSettings], Any] | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.settings = settings
        self.client_factory = client_factory or self._default_client
        self.sleep = sleep
        self._client: Any = None
        self._last_exists = 0

    @staticmethod
    def _default_client(settings: MailboxSettings) -> imaplib.IMAP4:
        if not settings.use_tls:
            return imaplib.IMAP4(settings.host, settings.port)
        context = ssl.create_default_context()
        if not settings.verify_tls:
            LOGGER.warning("TLS certificate verification is disabled for %s.", settings.host)
            context.check_hostname = False
            context.verify_mode = ssl.CERT_NONE
        return imaplib.IMAP4_SSL(settings.host, settings.port, ssl_context=context)

    def connect(self) -> None:
        self._client = self.client_factory(self.settings)
        self._client.login(self.settings.user, self.settings.password)
        # Read-write so that fetching a body sets \Seen.
        typ, data = self._client.select(self.settings.mailbox, readonly=False)
        if typ != "OK":
            raise imaplib.IMAP4.error(f"Cannot open mailbox {self.settings.mailbox}: {data}")
        self._last_exists = self._parse_count(data) or 0

    @staticmethod
    def _parse_count(data: Sequence[Any] | None) -> int | None:
        for item in reversed(list(data or [])):
            if item is None:
                continue
            try:
                return int(item)
            except (TypeError, ValueError):
                continue
        return None

    def search_unseen(self, sender: str) -> List[bytes]:
        typ, data = self._client.uid("SEARCH", None, "UNSEEN", "FROM", f'"{sender}"')
        if typ != "OK":
            raise imaplib.IMAP4.error(f"Search failed: {data}")
        if not data or not data[0]:
            return []
        return data[0].split()

    def fetch_message(self, uid: bytes) -> bytes:
        # RFC822 (not BODY.PEEK) marks the message seen as part of the fetch.
        typ, data = self._client.uid("FETCH", uid, "(RFC822)")
        if typ != "OK":
            raise imaplib.IMAP4.error(f"Fetch failed for {uid!r}: {data}")
        for part in data or []:
            if isinstance(part, tuple) and len(part) >= 2:
                return part[1]
        raise ValueError(f"No message body returned for {uid!r}")

    def events(self) -> Iterator[MailEvent]:
        """Yield NEW_MAIL whenever the EXISTS count grows; CLOSED ends the stream."""
        while True:
            self.sleep(self.settings.poll_interval)
            try:
                self._client.noop()
                _, data = self._client.response("EXISTS")
            except IMAP_ERRORS as exc:
                LOGGER.error("IMAP connection error: %s", exc)
                yield MailEvent.CLOSED
                return
            count = self._parse_count(data)
            if count is None:
                continue
            if count > self._last_exists:
                LOGGER.info("New mail detected (%s -> %s messages)", self._last_exists, count)
                self._last_exists = count
                yield MailEvent.NEW_MAIL
            else:
                self._last_exists = count

    def close(self) -> None:
        if self._client is None:
            return
        try:
            self._client.close()
        except IMAP_ERRORS:
            LOGGER.debug("Mailbox close failed", exc_info=True)
        try:
            self._client.logout()
        except IMAP_ERRORS:
            LOGGER.debug("IMAP logout failed", exc_info=True)
        finally:
            self._client = None


class MailListener:
    """Coordinates fetch cycles over a single mailbox connection."""

    def __init__(
        self,
        connection: MailboxConnection,
        sink: BaseRecordSink,
        sender: str = FIRE_DEPARTMENT_SENDER,
        geocoder: GoogleGeocoder | None = None,
    ) -> None:
        self.connection = connection
        self.sink = sink
        self.sender = sender
        self.geocoder = geocoder
        self.state = ListenerState.CONNECTING

    def run(self) -> None:
        self.state = ListenerState.CONNECTING
        try:
            self.connection.connect()
            self.state = ListenerState.READY
            LOGGER.info("IMAP connected; watching for mail from %s", self.sender)
            self.fetch_cycle()
            for event in self.connection.events():
                if event is MailEvent.CLOSED:
                    LOGGER.info("IMAP connection closed.")
                    break
                self.fetch_cycle()
        except IMAP_ERRORS as exc:
            self.state = ListenerState.ERROR
            LOGGER.error("IMAP error: %s", exc)
        finally:
            self.connection.close()
            self.state = ListenerState.ENDED
            LOGGER.info("IMAP listener ended.")

    def fetch_cycle(self) -> List[DisasterReport]:
        """Process every unseen alert once; one bad message never stops the cycle."""
        self.state = ListenerState.PROCESSING
        reports: List[DisasterReport] = []
        try:
            try:
                uids = self.connection.search_unseen(self.sender)
            except CONNECTION_LOST:
                raise
            except imaplib.IMAP4.error as exc:
                LOGGER.error("Mail search failed: %s", exc)
                return reports
            if not uids:
                LOGGER.info("No new alert mail.")
                return reports
            LOGGER.info("Processing %s unseen alert mail(s)", len(uids))
            for uid in uids:
                report = self._process_message(uid)
                if report:
                    reports.append(report)
            LOGGER.info("Processed %s of %s unseen alert mail(s).", len(reports), len(uids))
            return reports
        finally:
            self.state = ListenerState.READY

    def _process_message(self, uid: bytes) -> Optional[DisasterReport]:
        label = uid.decode(errors="replace")
        LOGGER.info("Processing mail uid=%s", label)
        try:
            raw = self.connection.fetch_message(uid)
        except CONNECTION_LOST:
            raise
        except (imaplib.IMAP4.error, ValueError):
            LOGGER.exception("Failed to fetch mail uid=%s", label)
            return None
        try:
            parsed = parse_email(raw)
            LOGGER.info("Received mail %r from %s", parsed.subject, parsed.sender)
            report = build_report(parsed)
            if self.geocoder and report.raw_address != ADDRESS_UNKNOWN:
                report = replace(report, coordinates=self._geocode(report.raw_address))
            self.sink.create(report)
        except Exception:  # noqa: BLE001
            LOGGER.exception("Failed to process mail uid=%s", label)
            return None
        LOGGER.info(
            "Stored alert (type: %s, address: %s)",
            report.disaster_type.value,
            report.raw_address,
        )
        return report

    def _geocode(self, address: str) -> Optional[Coordinates]:
        # The message is already \Seen; store it without coordinates on failure.
        try:
            return self.geocoder.geocode(address)
        except Exception:  # noqa: BLE001
            LOGGER.exception("Geocoding failed for '%s'; storing alert without coordinates.", address)
            return None


def main(argv: Sequence[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Listen for Fukuoka fire department alert mails.")
    parser.add_argument(
        "--output",
        default=Path("datasets/disaster_mail/reports.jsonl"),
        type=Path,
        help="JSON lines file reports are appended to (default: datasets/disaster_mail/reports.jsonl).",
    )
    parser.add_argument(
        "--poll-interval",
        type=float,
        default=None,
        help="Seconds between mailbox checks (default: IMAP_POLL_INTERVAL or 30).",
    )
    parser.add_argument(
        "--geocode",
        action="store_true",
        help="Resolve extracted addresses with Google Geocoding (needs GOOGLE_MAPS_API_KEY).",
    )
    parser.add_argument(
        "--geocode-cache",
        type=Path,
        default=None,
        help="SQLite cache for geocoding results (default: no cache).",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        help="Python logging level (default: INFO).",
    )
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, args.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stdout,
        force=True,
    )
    load_env()

    settings = load_mailbox_settings()
    if settings is None:
        LOGGER.error("Skipping mail listener: IMAP settings are incomplete.")
        return 1
    if args.poll_interval is not None:
        settings = replace(settings, poll_interval=args.poll_interval)

    geocoder = None
    if args.geocode:
        geocoder = GoogleGeocoder(google_maps_api_key(), cache_path=args.geocode_cache)

    listener = MailListener(
        MailboxConnection(settings),
        JsonlRecordSink(args.output),
        sender=settings.sender,
        geocoder=geocoder,
    )
    try:
        listener.run()
    except KeyboardInterrupt:
        LOGGER.info("Interrupted; stopping mail listener.")
    return 0


if __name__ == "__main__":
    sys.exit(main())
