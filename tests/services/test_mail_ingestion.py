from __future__ import annotations

import imaplib
import sqlite3
from datetime import datetime, timezone
from email.message import EmailMessage
from typing import Any

from src.core.config import FIRE_DEPARTMENT_SENDER, MailboxSettings
from src.services import mail_ingestion
from src.services.disaster_text import ADDRESS_UNKNOWN, DisasterType
from src.services.geocoding import Coordinates
from src.services.mail_ingestion import (
    ListenerState,
    MailboxConnection,
    MailEvent,
    MailListener,
)
from src.services.records import BaseRecordSink

SETTINGS = MailboxSettings(host="imap.example.com", user="alerts@example.com", password="secret", poll_interval=0)

FIRE_TEXT = "【火災】中央区天神2丁目3番付近で建物火災が発生しました。\n消防隊が出動しています。"
RESCUE_TEXT = "【救助】博多区 博多駅前付近で救助活動中です。"


def make_mail(body: str, subject: str | None = "福岡市消防局 災害情報", sender: str = FIRE_DEPARTMENT_SENDER) -> bytes:
    message = EmailMessage()
    if subject is not None:
        message["Subject"] = subject
    message["From"] = sender
    message["To"] = "alerts@example.com"
    message.set_content(body)
    return message.as_bytes()


class FakeImapClient:
    """In-memory IMAP server speaking the subset of imaplib used by MailboxConnection."""

    def __init__(self, messages: dict[bytes, bytes], script: list[Any] | None = None) -> None:
        self.messages = dict(messages)
        self.seen: set[bytes] = set()
        self.script = list(script or [])
        self.fail_fetch: set[bytes] = set()
        self.login_error: Exception | None = None
        self.closed = False
        self.logged_out = False
        self.searches: list[tuple[Any, ...]] = []

    def login(self, user: str, password: str) -> tuple[str, list[bytes]]:
        if self.login_error:
            raise self.login_error
        return "OK", [b"LOGIN completed"]

    def select(self, mailbox: str, readonly: bool = False) -> tuple[str, list[bytes]]:
        return "OK", [str(len(self.messages)).encode()]

    def uid(self, command: str, *args: Any) -> tuple[str, list[Any]]:
        if command == "SEARCH":
            self.searches.append(args)
            unseen = [uid for uid in sorted(self.messages) if uid not in self.seen]
            return "OK", [b" ".join(unseen)]
        uid = args[0]
        if uid in self.fail_fetch:
            return "NO", [b"FETCH failed"]
        self.seen.add(uid)
        raw = self.messages[uid]
        return "OK", [(b"%s (UID %s RFC822 {%d}" % (uid, uid, len(raw)), raw), b")"]

    def noop(self) -> tuple[str, list[bytes]]:
        step = self.script.pop(0) if self.script else imaplib.IMAP4.abort("connection reset")
        if isinstance(step, Exception):
            raise step
        uid, raw = step
        self.messages[uid] = raw
        return "OK", [b"NOOP completed"]

    def response(self, code: str) -> tuple[str, list[bytes]]:
        return code, [str(len(self.messages)).encode()]

    def close(self) -> tuple[str, list[bytes]]:
        self.closed = True
        return "OK", [b"CLOSE completed"]

    def logout(self) -> tuple[str, list[bytes]]:
        self.logged_out = True
        return "BYE", [b"LOGOUT"]


class ListSink(BaseRecordSink):
    def __init__(self, fail_on: int | None = None) -> None:
        self.records: list[Any] = []
        self.calls = 0
        self.fail_on = fail_on

    def create(self, record: Any) -> None:
        self.calls += 1
        if self.fail_on == self.calls:
            raise OSError("disk full")
        self.records.append(record)


class FakeGeocoder:
    def __init__(self) -> None:
        self.queries: list[str] = []

    def geocode(self, address: str) -> Coordinates:
        self.queries.append(address)
        return Coordinates(33.59, 130.40, "福岡県福岡市中央区天神")


def make_listener(client: FakeImapClient, sink: ListSink, geocoder: Any = None) -> MailListener:
    connection = MailboxConnection(SETTINGS, client_factory=lambda _: client, sleep=lambda _: None)
    return MailListener(connection, sink, geocoder=geocoder)


def test_parse_plain_text_mail() -> None:
    parsed = mail_ingestion.parse_email(make_mail(FIRE_TEXT))

    assert parsed.subject == "福岡市消防局 災害情報"
    assert parsed.sender == FIRE_DEPARTMENT_SENDER
    assert parsed.text.startswith("【火災】中央区天神2丁目3番付近")


def test_parse_html_only_mail() -> None:
    message = EmailMessage()
    message["Subject"] = "通知"
    message["From"] = FIRE_DEPARTMENT_SENDER
    message.set_content("<p>【救急】東区 香椎付近<br>出動中</p>", subtype="html")

    parsed = mail_ingestion.parse_email(message.as_bytes())

    assert parsed.text.splitlines()[0] == "【救急】東区 香椎付近"


def test_parse_mail_defaults_missing_headers() -> None:
    message = EmailMessage()
    message.set_content("本文のみ")

    parsed = mail_ingestion.parse_email(message.as_bytes())

    assert parsed.subject == "No Subject"
    assert parsed.sender == "unknown"


def test_build_report_extracts_fields() -> None:
    received = datetime(2026, 10, 19, 1, 30, tzinfo=timezone.utc)
    parsed = mail_ingestion.ParsedEmail(subject="件名", sender=FIRE_DEPARTMENT_SENDER, text=FIRE_TEXT)

    report = mail_ingestion.build_report(parsed, received_at=received)

    assert report.first_line == "【火災】中央区天神2丁目3番付近で建物火災が発生しました。"
    assert report.disaster_type is DisasterType.FIRE
    assert report.raw_address == "中央区天神2丁目3番付近"
    assert report.to_serializable()["received_at"] == "2026-10-19T01:30:00+00:00"
    assert report.to_serializable()["coordinates"] is None


def test_fetch_cycle_stores_each_unseen_alert_once() -> None:
    client = FakeImapClient({b"1": make_mail(FIRE_TEXT), b"2": make_mail(RESCUE_TEXT)})
    sink = ListSink()
    listener = make_listener(client, sink)
    listener.connection.connect()

    reports = listener.fetch_cycle()

    assert [r.disaster_type for r in reports] == [DisasterType.FIRE, DisasterType.RESCUE]
    assert sink.records == reports
    assert client.seen == {b"1", b"2"}
    assert client.searches[0] == (None, "UNSEEN", "FROM", f'"{FIRE_DEPARTMENT_SENDER}"')
    assert listener.state is ListenerState.READY

    assert listener.fetch_cycle() == []
    assert len(sink.records) == 2


def test_fetch_cycle_continues_past_failed_messages() -> None:
    client = FakeImapClient(
        {b"1": make_mail(FIRE_TEXT), b"2": make_mail(RESCUE_TEXT), b"3": make_mail("警戒情報")}
    )
    client.fail_fetch.add(b"1")
    sink = ListSink(fail_on=1)
    listener = make_listener(client, sink)
    listener.connection.connect()

    reports = listener.fetch_cycle()

    assert [r.disaster_type for r in reports] == [DisasterType.ALERT]
    assert [r.raw_address for r in sink.records] == [ADDRESS_UNKNOWN]


def test_geocoder_runs_only_for_known_addresses() -> None:
    client = FakeImapClient({b"1": make_mail(FIRE_TEXT), b"2": make_mail("訓練のお知らせ")})
    sink = ListSink()
    geocoder = FakeGeocoder()
    listener = make_listener(client, sink, geocoder=geocoder)
    listener.connection.connect()

    reports = listener.fetch_cycle()

    assert geocoder.queries == ["中央区天神2丁目3番付近"]
    assert reports[0].coordinates == Coordinates(33.59, 130.40, "福岡県福岡市中央区天神")
    assert reports[1].coordinates is None
    assert reports[1].disaster_type is DisasterType.UNKNOWN


def test_events_report_new_mail_then_closed() -> None:
    client = FakeImapClient({}, script=[(b"5", make_mail(FIRE_TEXT)), imaplib.IMAP4.abort("bye")])
    connection = MailboxConnection(SETTINGS, client_factory=lambda _: client, sleep=lambda _: None)
    connection.connect()

    assert list(connection.events()) == [MailEvent.NEW_MAIL, MailEvent.CLOSED]


def test_run_processes_initial_and_new_mail_until_closed() -> None:
    client = FakeImapClient(
        {b"1": make_mail(FIRE_TEXT)},
        script=[(b"2", make_mail(RESCUE_TEXT)), imaplib.IMAP4.abort("connection reset")],
    )
    sink = ListSink()
    listener = make_listener(client, sink)

    listener.run()

    assert [r.disaster_type for r in sink.records] == [DisasterType.FIRE, DisasterType.RESCUE]
    assert listener.state is ListenerState.ENDED
    assert client.logged_out is True


def test_run_ends_cleanly_when_login_fails() -> None:
    client = FakeImapClient({b"1": make_mail(FIRE_TEXT)})
    client.login_error = imaplib.IMAP4.error("AUTHENTICATIONFAILED")
    sink = ListSink()
    listener = make_listener(client, sink)

    listener.run()

    assert sink.records == []
    assert listener.state is ListenerState.ENDED


def test_main_without_settings_returns_error(monkeypatch) -> None:
    for name in ("IMAP_HOST", "IMAP_USER", "IMAP_PASS"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setattr(mail_ingestion, "load_env", lambda: False)

    assert mail_ingestion.main([]) == 1


class FailingGeocoder:
    def geocode(self, address: str) -> Coordinates:
        raise sqlite3.OperationalError("database is locked")


def test_geocoder_failure_still_stores_report() -> None:
    client = FakeImapClient({b"1": make_mail(FIRE_TEXT)})
    sink = ListSink()
    listener = make_listener(client, sink, geocoder=FailingGeocoder())
    listener.connection.connect()

    reports = listener.fetch_cycle()

    assert client.seen == {b"1"}
    assert len(sink.records) == 1
    assert reports[0].raw_address == "中央区天神2丁目3番付近"
    assert reports[0].coordinates is None
