"""
Scrape the RKB Mainichi news listing with a headless browser, keep recent articles
and enrich the newest ones with their full body text. The browser is only used to
load pages; listing and body extraction work on HTML snapshots so they can be
exercised without Playwright.
"""

from __future__ import annotations

import argparse
import logging
import re
import sys
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone, tzinfo
from pathlib import Path
from typing import Any, Callable, List, Sequence
from urllib.parse import urljoin

from bs4 import BeautifulSoup

from src.core.config import load_env
from src.core.retry import retry_operation
from src.services.records import JsonlRecordSink, NormalizedRecord

LOGGER = logging.getLogger(__name__)

JST = timezone(timedelta(hours=9), "JST")

DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36"
)


@dataclass(frozen=True)
class ScrapeSiteConfig:
    name: str
    base_url: str
    listing_urls: Sequence[str]
    item_selector: str
    title_selector: str
    link_selector: str
    body_selector: str
    ad_selector: str | None = None
    time_selector: str = "time"
    image_selector: str = "img"


_RKB_LISTING = "https://newsdig.tbs.co.jp/list/rkb/latest"

RKB_ONLINE = ScrapeSiteConfig(
    name="RKB毎日放送",
    base_url="https://newsdig.tbs.co.jp",
    listing_urls=(_RKB_LISTING, f"{_RKB_LISTING}?page=2", f"{_RKB_LISTING}?page=3"),
    item_selector="article.m-article-row",
    title_selector="h3.m-article-content__title",
    link_selector="a.m-article-inner",
    body_selector=".article-body",
    ad_selector=".insert_ads",
)


@dataclass
class ArticleCandidate:
    title: str
    url: str
    published_at: datetime
    source_name: str
    description: str = ""
    image_url: str | None = None
    body: str | None = field(default=None, repr=False)

    def to_record(self, ingested_at: datetime) -> NormalizedRecord:
        body = self.body or self.description or self.title
        return NormalizedRecord(
            title=self.title,
            body=body,
            source_url=self.url,
            image_url=self.image_url,
            published_at=self.published_at,
            ingested_at=ingested_at,
            source_name=self.source_name,
        )


class PlaywrightSession:
    """One headless Chromium page, torn down on exit whatever happened inside."""

    def __init__(
        self,
        user_agent: str = DEFAULT_USER_AGENT,
        headless: bool = True,
        launch_retries: int = 3,
        launch_delay: float = 2.0,
    ) -> None:
        self.user_agent = user_agent
        self.headless = headless
        self.launch_retries = launch_retries
        self.launch_delay = launch_delay
        self._playwright = None
        self._browser = None
        self._page = None

    def __enter__(self) -> "PlaywrightSession":
        from playwright.sync_api import sync_playwright

        LOGGER.info("Launching headless browser...")
        self._playwright = sync_playwright().start()
        try:
            self._browser = retry_operation(
                lambda: self._playwright.chromium.launch(
                    headless=self.headless,
                    args=["--no-sandbox", "--disable-setuid-sandbox"],
                ),
                max_retries=self.launch_retries,
                initial_delay=self.launch_delay,
                description="browser launch",
            )
            self._page = self._browser.new_page(user_agent=self.user_agent)
        except Exception:
            self.close()
            raise
        LOGGER.info("Browser launched.")
        return self

    def __exit__(self, exc_type: Any, exc: Any, tb: Any) -> None:
        self.close()

    def goto(self, url: str, timeout_ms: int) -> None:
        self._page.goto(url, wait_until="networkidle", timeout=timeout_ms)

    def content(self) -> str:
        return self._page.content()

    def screenshot(self, path: Path) -> None:
        self._page.screenshot(path=str(path))

    def close(self) -> None:
        try:
            if self._browser:
                LOGGER.info("Closing browser...")
                self._browser.close()
        finally:
            if self._playwright:
                self._playwright.stop()
            self._page = None
            self._browser = None
            self._playwright = None


def _parse_timestamp(raw: str | None, tz: tzinfo) -> datetime | None:
    if not raw:
        return None
    value = raw.strip()
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        LOGGER.debug("Unable to parse listing timestamp %s", raw)
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=tz)
    return parsed


def recency_cutoff(now: datetime, lookback_days: int = 1, tz: tzinfo = JST) -> datetime:
    """Start of the calendar day ``lookback_days`` before ``now`` in ``tz``."""
    local = now.astimezone(tz) if now.tzinfo else now.replace(tzinfo=tz)
    start = local - timedelta(days=lookback_days)
    return start.replace(hour=0, minute=0, second=0, microsecond=0)


def parse_listing(
    html: str,
    site: ScrapeSiteConfig,
    now: datetime,
    tz: tzinfo = JST,
) -> List[ArticleCandidate]:
    """Extract article summaries from a listing page snapshot.

    Items without a title or link are dropped. A missing timestamp falls back to
    ``now``; a present but unparseable one drops the item.
    """
    soup = BeautifulSoup(html, "html.parser")
    candidates: List[ArticleCandidate] = []
    for item in soup.select(site.item_selector):
        title_node = item.select_one(site.title_selector)
        title = title_node.get_text(strip=True) if title_node else ""
        link_node = item.select_one(site.link_selector)
        href = (link_node.get("href") or "").strip() if link_node else ""
        url = urljoin(site.base_url, href) if href else ""
        if not title or not url:
            continue
        time_node = item.select_one(site.time_selector)
        raw_time = (time_node.get("datetime") or "").strip() if time_node else ""
        if raw_time:
            published_at = _parse_timestamp(raw_time, tz)
            if published_at is None:
                LOGGER.warning("Dropping %s: unparseable timestamp %r", url, raw_time)
                continue
        else:
            published_at = now
        image_node = item.select_one(site.image_selector)
        src = (image_node.get("src") or "").strip() if image_node else ""
        candidates.append(
            ArticleCandidate(
                title=title,
                url=url,
                published_at=published_at,
                source_name=site.name,
                description=title,
                image_url=urljoin(site.base_url, src) if src else None,
            )
        )
    return candidates


def filter_recent(candidates: Sequence[ArticleCandidate], cutoff: datetime) -> List[ArticleCandidate]:
    return [candidate for candidate in candidates if candidate.published_at >= cutoff]


def filter_keywords(candidates: Sequence[ArticleCandidate], keywords: Sequence[str]) -> List[ArticleCandidate]:
    terms = [term.strip().lower() for term in keywords if term and term.strip()]
    if not terms:
        return list(candidates)
    return [
        candidate
        for candidate in candidates
        if any(term in candidate.title.lower() for term in terms)
    ]


def extract_article_body(html: str, site: ScrapeSiteConfig) -> str:
    """Join the paragraphs of the article body container, minus ads and markup."""
    soup = BeautifulSoup(html, "html.parser")
    container = soup.select_one(site.body_selector)
    if container is None:
        return ""
    paragraphs: list[str] = []
    for paragraph in container.find_all("p"):
        if site.ad_selector:
            for ad in paragraph.select(site.ad_selector):
                ad.decompose()
        for br in paragraph.find_all("br"):
            br.replace_with("\n")
        text = re.sub(r"\n+", "\n", paragraph.get_text()).strip()
        if text:
            paragraphs.append(text)
    return "\n\n".join(paragraphs)


class NewsScraper:
    """Two-phase scraper: listing pages first, then detail pages of the newest items."""

    def __init__(
        self,
        site: ScrapeSiteConfig = RKB_ONLINE,
        session_factory: Callable[[], Any] = PlaywrightSession,
        max_articles: int = 10,
        detail_delay: float = 1.0,
        lookback_days: int = 1,
        keywords: Sequence[str] | None = None,
        screenshot_dir: Path | None = None,
        tz: tzinfo = JST,
    ) -> None:
        self.site = site
        self.session_factory = session_factory
        self.max_articles = max(0, max_articles)
        self.detail_delay = detail_delay
        self.lookback_days = lookback_days
        self.keywords = list(keywords or [])
        self.screenshot_dir = screenshot_dir
        self.tz = tz
        self.listing_timeout_ms = 60000
        self.detail_timeout_ms = 30000

    def run(self, now: datetime | None = None) -> List[NormalizedRecord]:
        now = now or datetime.now(self.tz)
        if now.tzinfo is None:
            now = now.replace(tzinfo=self.tz)
        cutoff = recency_cutoff(now, self.lookback_days, self.tz)
        LOGGER.info("Scraping %s (cutoff %s)", self.site.name, cutoff.isoformat())
        with self.session_factory() as session:
            candidates = self._collect_candidates(session, cutoff, now)
            LOGGER.info("Collected %s candidate articles from %s", len(candidates), self.site.name)
            if candidates:
                self._enrich(session, candidates)
        ingested_at = datetime.now(self.tz)
        return [candidate.to_record(ingested_at) for candidate in candidates]

    def _collect_candidates(self, session: Any, cutoff: datetime, now: datetime) -> List[ArticleCandidate]:
        collected: List[ArticleCandidate] = []
        for index, url in enumerate(self.site.listing_urls, start=1):
            LOGGER.info("Opening listing page %s", url)
            retry_operation(
                lambda: session.goto(url, self.listing_timeout_ms),
                max_retries=3,
                initial_delay=2.0,
                description=f"listing {url}",
            )
            if self.screenshot_dir:
                self._screenshot(session, index)
            html = retry_operation(session.content, max_retries=3, initial_delay=1.0, description="listing snapshot")
            parsed = parse_listing(html, self.site, now, self.tz)
            recent = filter_recent(parsed, cutoff)
            if self.keywords:
                recent = filter_keywords(recent, self.keywords)
            LOGGER.info(
                "Listing page %s yielded %s articles (%s within window)",
                index,
                len(parsed),
                len(recent),
            )
            collected.extend(recent)
        return collected

    def _screenshot(self, session: Any, index: int) -> None:
        path = self.screenshot_dir / f"listing-page-{index}.png"
        try:
            self.screenshot_dir.mkdir(parents=True, exist_ok=True)
            session.screenshot(path)
            LOGGER.debug("Saved listing screenshot to %s", path)
        except Exception:  # noqa: BLE001
            LOGGER.warning("Failed to capture screenshot %s", path, exc_info=True)

    def _enrich(self, session: Any, candidates: List[ArticleCandidate]) -> None:
        targets = candidates[: self.max_articles]
        enriched = 0
        for position, candidate in enumerate(targets, start=1):
            if position > 1 and self.detail_delay > 0:
                time.sleep(self.detail_delay)
            LOGGER.info(
                "Fetching article %s/%s: %s",
                position,
                len(targets),
                candidate.title[:30],
            )
            try:
                retry_operation(
                    lambda: session.goto(candidate.url, self.detail_timeout_ms),
                    max_retries=2,
                    initial_delay=1.5,
                    description=f"article {candidate.url}",
                )
                html = retry_operation(session.content, max_retries=3, initial_delay=1.0, description="article snapshot")
                body = extract_article_body(html, self.site)
            except Exception:  # noqa: BLE001
                LOGGER.exception("Failed to fetch article body for %s", candidate.url)
                continue
            if not body:
                LOGGER.warning("Empty article body for %s; keeping listing description.", candidate.url)
                continue
            candidate.body = body
            enriched += 1
            LOGGER.debug("Article body for %s (%s chars)", candidate.url, len(body))
        LOGGER.info("Fetched full content for %s of %s articles.", enriched, len(targets))


def fetch_news(scraper: NewsScraper | None = None) -> List[NormalizedRecord]:
    """Run the scraper and always return a list; failures are logged."""
    scraper = scraper or NewsScraper()
    try:
        return scraper.run()
    except Exception:  # noqa: BLE001
        LOGGER.exception("News scraping for %s failed.", scraper.site.name)
        return []


def main(argv: Sequence[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Scrape recent RKB Mainichi news articles.")
    parser.add_argument(
        "--output",
        default=Path("datasets/news/records.jsonl"),
        type=Path,
        help="JSON lines file records are appended to (default: datasets/news/records.jsonl).",
    )
    parser.add_argument(
        "--max-articles",
        type=int,
        default=10,
        help="Number of newest articles to enrich with their full body (default: 10).",
    )
    parser.add_argument(
        "--lookback-days",
        type=int,
        default=1,
        help="Keep articles published since the start of this many days ago (default: 1).",
    )
    parser.add_argument(
        "--keyword",
        action="append",
        default=[],
        help="Only keep articles whose title contains this keyword (repeatable).",
    )
    parser.add_argument(
        "--screenshot-dir",
        type=Path,
        default=None,
        help="Save a screenshot of each listing page here (debugging).",
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

    scraper = NewsScraper(
        max_articles=args.max_articles,
        lookback_days=args.lookback_days,
        keywords=args.keyword,
        screenshot_dir=args.screenshot_dir,
    )
    records = fetch_news(scraper)
    sink = JsonlRecordSink(args.output)
    written = 0
    for record in records:
        try:
            sink.create(record)
            written += 1
        except OSError:
            LOGGER.exception("Failed to store record %s", record.source_url)
    LOGGER.info("Wrote %s records to %s", written, args.output)
    return 0


if __name__ == "__main__":
    sys.exit(main())
