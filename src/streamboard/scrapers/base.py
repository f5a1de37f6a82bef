from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import StrEnum
from html.parser import HTMLParser
from typing import Any, Generic, Self, TypeVar

import httpx

from streamboard.errors import FetchError

logger = logging.getLogger(__name__)

DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)


class EntityKind(StrEnum):
    """Kind of chart entity a pipeline tracks."""

    ARTIST = "artist"
    TRACK = "track"


@dataclass
class RawArtistRecord:
    """One validated row from an artist chart, before reconciliation."""

    rank: int
    name: str
    monthly_listeners: int
    listeners_delta: int | None = None  # Native daily delta column, if the page has one


@dataclass
class RawTrackRecord:
    """One validated row from a track chart, before reconciliation."""

    rank: int
    title: str
    artist_name: str
    daily_streams: int
    streams_delta: int | None = None
    total_streams: int | None = None


R = TypeVar("R", RawArtistRecord, RawTrackRecord)


@dataclass
class ParseResult(Generic[R]):
    """Records accepted from one page plus the number of rejected rows."""

    records: list[R] = field(default_factory=list)
    rejected: int = 0

    @property
    def accepted(self) -> int:
        return len(self.records)

    def top(self, limit: int) -> list[R]:
        """Records sorted by rank ascending, truncated to ``limit``."""
        return sorted(self.records, key=lambda r: r.rank)[:limit]

    def __str__(self) -> str:
        return f"{self.accepted} accepted, {self.rejected} rejected"


@dataclass(frozen=True)
class TableCell:
    """Text of one ``<td>`` plus the first link inside it, if any."""

    text: str
    href: str | None = None


class TableCellParser(HTMLParser):
    """
    Collect every ``<td>`` cell, grouped per ``<tr>``.

    Header cells (``<th>``) are ignored, so header rows come out empty.
    """

    def __init__(self) -> None:
        super().__init__()
        self.cells: list[list[TableCell]] = []
        self._current_row: list[TableCell] | None = None
        self._cell_text: str | None = None
        self._cell_href: str | None = None

    @property
    def rows(self) -> list[list[str]]:
        return [[cell.text for cell in row] for row in self.cells]

    def handle_starttag(self, tag: str, attrs: list[tuple[str, str | None]]) -> None:
        if tag == "tr":
            self._close_row()
            self._current_row = []
        elif tag == "td" and self._current_row is not None:
            self._close_cell()
            self._cell_text = ""
        elif tag == "a" and self._cell_text is not None and self._cell_href is None:
            self._cell_href = dict(attrs).get("href") or None

    def handle_endtag(self, tag: str) -> None:
        if tag == "td":
            self._close_cell()
        elif tag in ("tr", "table"):
            self._close_row()

    def handle_data(self, data: str) -> None:
        if self._cell_text is not None:
            self._cell_text += data

    def close(self) -> None:
        super().close()
        self._close_row()

    def _close_cell(self) -> None:
        if self._cell_text is not None and self._current_row is not None:
            self._current_row.append(TableCell(self._cell_text.strip(), self._cell_href))
        self._cell_text = None
        self._cell_href = None

    def _close_row(self) -> None:
        self._close_cell()
        if self._current_row is not None:
            self.cells.append(self._current_row)
        self._current_row = None


def _parse_tables(html: str) -> TableCellParser:
    parser = TableCellParser()
    parser.feed(html)
    parser.close()
    return parser


def extract_table_rows(html: str) -> list[list[str]]:
    """Extract the cell texts of every table row in a page."""
    return _parse_tables(html).rows


def extract_table_cells(html: str) -> list[list[TableCell]]:
    """Like `extract_table_rows`, keeping each cell's first link."""
    return _parse_tables(html).cells


class PageFetcher:
    """
    Fetches kworb.net pages over a lazily created, browser-identified client.

    Fetch failures raise `FetchError`; there is no retry here, callers decide
    what a failure means.
    """

    def __init__(
        self,
        timeout_s: float = 30.0,
        user_agent: str = DEFAULT_USER_AGENT,
        client: httpx.Client | None = None,
    ):
        self.timeout_s = timeout_s
        self.user_agent = user_agent
        self._client = client
        self._owns_client = client is None

    @property
    def client(self) -> httpx.Client:
        """Lazy-initialized HTTP client."""
        if self._client is None:
            self._client = httpx.Client(
                timeout=self.timeout_s,
                follow_redirects=True,
                headers={"User-Agent": self.user_agent},
            )
        return self._client

    def close(self) -> None:
        """Close HTTP client if this fetcher created it."""
        if self._client is not None and self._owns_client:
            self._client.close()
            self._client = None

    def __enter__(self) -> Self:
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:  # pyright: ignore[reportMissingParameterType, reportUnknownParameterType]
        self.close()

    def fetch_chart_page(self, url: str) -> str:
        """
        Fetch raw markup for one page.

        Raises:
            FetchError: On transport errors or a non-success status
        """
        try:
            response = self.client.get(url, headers={"User-Agent": self.user_agent})
        except httpx.RequestError as e:
            raise FetchError(url, str(e)) from e

        if not response.is_success:
            raise FetchError(url, f"HTTP {response.status_code}", status_code=response.status_code)
        return response.text


class ChartScraper(PageFetcher, ABC, Generic[R]):
    """
    Base class for chart scrapers.

    Fetches one chart page per call and hands its table rows to a pure row
    parser.
    """

    kind: EntityKind

    def __init__(self, url: str, **kwargs: Any):
        super().__init__(**kwargs)
        self.url = url

    def scrape(self) -> ParseResult[R]:
        """Fetch the configured page and parse its rows."""
        html = self.fetch_chart_page(self.url)
        result = self.parse(extract_table_rows(html))
        logger.info(f"Scraped {self.kind} chart {self.url}: {result}")
        return result

    @classmethod
    @abstractmethod
    def create(
        cls, url: str, *, min_listeners: int, min_daily_streams: int, **kwargs: Any
    ) -> ChartScraper[R]:
        """Build a scraper from a source, keeping only the plausibility floors it uses."""
        ...

    @abstractmethod
    def parse(self, rows: list[list[str]]) -> ParseResult[R]:
        """Turn extracted table rows into validated records."""
        ...


## Tests


def test_extract_table_rows_skips_header_cells():
    html = """
    <table>
      <tr><th>Pos</th><th>Artist</th></tr>
      <tr><td>1</td><td> Taylor   Swift </td></tr>
      <tr><td>2</td><td>Drake</td>
    </table>
    """
    rows = extract_table_rows(html)
    assert rows == [[], ["1", "Taylor   Swift"], ["2", "Drake"]]


def test_extract_table_rows_nested_markup():
    html = "<table><tr><td><div>3</div></td><td><a href='#'>Bad Bunny</a> - <a>DtMF</a></td></tr></table>"
    rows = extract_table_rows(html)
    assert rows == [["3", "Bad Bunny - DtMF"]]


def test_extract_table_cells_keeps_first_link():
    html = (
        "<table><tr><th>Song</th></tr>"
        "<tr><td><a href='../track/0VjI.html'>Blinding Lights</a> <a href='x'>*</a></td>"
        "<td>4,812</td></tr>"
        "</table>"
    )
    cells = extract_table_cells(html)
    assert cells[0] == []
    assert cells[1] == [TableCell("Blinding Lights *", "../track/0VjI.html"), TableCell("4,812")]


def test_parse_result_top_sorts_and_truncates():
    result = ParseResult(
        records=[
            RawArtistRecord(rank=3, name="C", monthly_listeners=10),
            RawArtistRecord(rank=1, name="A", monthly_listeners=30),
            RawArtistRecord(rank=2, name="B", monthly_listeners=20),
        ]
    )
    assert [r.name for r in result.top(2)] == ["A", "B"]
