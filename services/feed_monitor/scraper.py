"""
Broadcastify feed scraper

Downloads the top feeds page (and optionally one state's feed page) and
parses the listener table rows into FeedSnapshot objects. The statistics
core only depends on the FeedSource protocol, so page layout changes stay
contained in this module.
"""

from typing import Iterable, List, Optional, Protocol

import requests
import structlog
from bs4 import BeautifulSoup
from bs4.element import Tag

from shared.models import FeedSnapshot

from .config import MonitorConfig
from .errors import FeedSourceError


logger = structlog.get_logger(__name__)

BASE_URL = "https://www.broadcastify.com"
TOP_FEEDS_PATH = "/listen/top"
STATE_FEEDS_PATH = "/listen/stid/{state_id}"
MULTIPLE_COUNTIES = "Numerous"


class FeedSource(Protocol):
    """Anything that can produce the current feed snapshots."""

    def fetch(self, config: MonitorConfig) -> List[FeedSnapshot]:
        ...


def parse_link_id(url: Optional[str]) -> Optional[str]:
    """Return the final path segment of a link, or None if it is empty."""
    if not url:
        return None
    _, _, tail = url.rstrip().rpartition("/")
    return tail or None


def _parse_int(value: Optional[str], what: str) -> int:
    if value is None:
        raise FeedSourceError(f"unable to find element that contains {what} information")
    try:
        return int(value.strip())
    except ValueError as e:
        raise FeedSourceError(f"unable to parse {what} information: {value!r}") from e


def _parse_id_and_name(row: Tag, class_name: str) -> tuple:
    link = row.select_one(f".{class_name} a")
    if link is None:
        raise FeedSourceError("unable to find element that contains id and name information")

    feed_id = _parse_int(parse_link_id(link.get("href")), "feed id")
    return feed_id, link.get_text(strip=True)


def _parse_listeners(row: Tag) -> int:
    cell = row.select_one(".c.m")
    return _parse_int(cell.get_text() if cell is not None else None, "feed listeners")


def _text_or_none(node: Optional[Tag]) -> Optional[str]:
    if node is None:
        return None
    return node.get_text(" ", strip=True) or None


def _feed_rows(table: Tag) -> Iterable[Tag]:
    # The first row holds the column headers
    return table.find_all("tr")[1:]


def parse_top_feeds(html: str) -> List[FeedSnapshot]:
    """
    Parse the top feeds page.

    Raises:
        FeedSourceError: If a row is malformed or no feeds are found
    """
    soup = BeautifulSoup(html, "html.parser")
    table = soup.select_one("table.btable")
    if table is None:
        raise FeedSourceError("unable to find element that contains feed data information")

    feeds = []
    for row in _feed_rows(table):
        feed_id, name = _parse_id_and_name(row, "w100")

        # Top feeds can span several states and counties, so the location
        # column is read from its links rather than assumed
        cells = row.find_all("td")
        if len(cells) < 2:
            raise FeedSourceError("unable to find element that contains location information")

        links = [a for a in cells[1].find_all("a") if a.get("href")]
        if not links:
            raise FeedSourceError("unable to find element that contains state id information")

        state_id = _parse_int(parse_link_id(links[0]["href"]), "state id")

        county = MULTIPLE_COUNTIES
        if len(links) > 1 and links[1]["href"].startswith("/listen/ctid"):
            county = links[1].get_text(strip=True)

        feeds.append(
            FeedSnapshot(
                id=feed_id,
                name=name,
                listeners=_parse_listeners(row),
                state_id=state_id,
                county=county,
                alert=_text_or_none(row.select_one(".messageBox")),
            )
        )

    if not feeds:
        raise FeedSourceError("no feeds found")

    return feeds


def parse_state_feeds(html: str, state_id: int) -> List[FeedSnapshot]:
    """
    Parse a state feeds page.

    State pages may list areawide feeds in a table before the main one;
    only the main table is parsed.

    Raises:
        FeedSourceError: If a row is malformed or no feeds are found
    """
    soup = BeautifulSoup(html, "html.parser")
    tables = soup.select("table.btable")[:2]
    if not tables:
        raise FeedSourceError("unable to find element that contains feed data information")

    table = tables[-1]

    feeds = []
    for row in _feed_rows(table):
        feed_id, name = _parse_id_and_name(row, "w1p")

        county_link = row.find("a")
        county = county_link.get_text(strip=True) if county_link is not None else MULTIPLE_COUNTIES

        feeds.append(
            FeedSnapshot(
                id=feed_id,
                name=name,
                listeners=_parse_listeners(row),
                state_id=state_id,
                county=county,
                alert=_text_or_none(row.select_one("font.fontRed")),
            )
        )

    if not feeds:
        raise FeedSourceError("no feeds found")

    return feeds


def filter_feeds(feeds: Iterable[FeedSnapshot], config: MonitorConfig) -> List[FeedSnapshot]:
    """Apply the allow and deny lists, drop duplicate ids and sort by id."""
    unique = {}
    for feed in feeds:
        if config.is_allowed(feed):
            unique.setdefault(feed.id, feed)
    return [unique[feed_id] for feed_id in sorted(unique)]


class BroadcastifyScraper:
    """
    Feed source that scrapes listener counts from Broadcastify pages.

    Attributes:
        base_url: Site root used to build page URLs
        timeout: Per-request timeout in seconds
    """

    def __init__(
        self,
        session: Optional[requests.Session] = None,
        base_url: str = BASE_URL,
        timeout: float = 30.0,
    ) -> None:
        self.session = session or requests.Session()
        self.session.headers.setdefault("User-Agent", "feed-spike-monitor/1.0")
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    def _download(self, path: str) -> str:
        url = f"{self.base_url}{path}"
        try:
            response = self.session.get(url, timeout=self.timeout)
            response.raise_for_status()
        except requests.RequestException as e:
            raise FeedSourceError(f"Failed to download {url}: {e}") from e
        return response.text

    def fetch_top(self) -> List[FeedSnapshot]:
        html = self._download(TOP_FEEDS_PATH)
        try:
            return parse_top_feeds(html)
        except FeedSourceError as e:
            raise FeedSourceError(f"failed to parse top feeds: {e}") from e

    def fetch_state(self, state_id: int) -> List[FeedSnapshot]:
        html = self._download(STATE_FEEDS_PATH.format(state_id=state_id))
        try:
            return parse_state_feeds(html, state_id)
        except FeedSourceError as e:
            raise FeedSourceError(f"failed to parse state feeds: {e}") from e

    def fetch(self, config: MonitorConfig) -> List[FeedSnapshot]:
        """
        Download and parse all configured feed pages.

        Raises:
            FeedSourceError: If any page fails to download or parse
        """
        feeds = self.fetch_top()

        state_id = config.misc.state_feeds_id
        if state_id is not None:
            feeds.extend(self.fetch_state(state_id))

        filtered = filter_feeds(feeds, config)
        logger.info("Fetched feeds", scraped=len(feeds), kept=len(filtered))
        return filtered
