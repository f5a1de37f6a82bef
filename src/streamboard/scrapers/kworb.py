from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Any

from streamboard.normalize import (
    MAX_COUNT,
    clean_text,
    is_valid_name,
    normalize_count,
    normalize_signed_delta,
)
from streamboard.scrapers.base import (
    ChartScraper,
    EntityKind,
    PageFetcher,
    ParseResult,
    RawArtistRecord,
    RawTrackRecord,
    TableCell,
    extract_table_cells,
)

logger = logging.getLogger(__name__)

# Sentinel artist for "Artist - Title" cells without a separator. The whole
# cell becomes the title; this is a known-imperfect heuristic.
UNKNOWN_ARTIST = "Unknown"
ARTIST_TITLE_SEPARATOR = " - "

# Artist page: Pos, Artist, Listeners, Daily +/-
ARTIST_MIN_CELLS = 3
ARTIST_NAME_CELL = 1
ARTIST_LISTENERS_CELL = 2
ARTIST_DELTA_CELL = 3

# Country daily page: Pos, P+, Artist and Title, Days, Pk, (x?), Streams,
# Streams+, 7Day, 7Day+, Total
TRACK_MIN_CELLS = 7
TRACK_ARTIST_TITLE_CELL = 2
TRACK_STREAMS_CELL = 6
TRACK_DELTA_CELL = 7
TRACK_TOTAL_CELL = 10

DEFAULT_MIN_MONTHLY_LISTENERS = 1_000
DEFAULT_MIN_DAILY_STREAMS = 100_000


def parse_rank(text: str) -> int | None:
    """Digits-only rank from the first cell; None unless a positive, storable integer."""
    digits = re.sub(r"\D", "", text).lstrip("0")
    if not digits or len(digits) > len(str(MAX_COUNT)):
        return None
    rank = int(digits)
    return rank if rank <= MAX_COUNT else None


def split_artist_title(text: str) -> tuple[str, str]:
    """
    Split a combined ``"Artist - Title"`` cell on the first separator.

    Returns (artist, title). Without a separator the whole text is the title
    and the artist is `UNKNOWN_ARTIST`.
    """
    artist, sep, title = text.partition(ARTIST_TITLE_SEPARATOR)
    if not sep:
        logger.debug(f"No artist/title separator in {text!r}, using {UNKNOWN_ARTIST!r} artist")
        return UNKNOWN_ARTIST, clean_text(text)
    return clean_text(artist), clean_text(title)


def parse_artist_rows(
    rows: list[list[str]],
    min_listeners: int = DEFAULT_MIN_MONTHLY_LISTENERS,
) -> ParseResult[RawArtistRecord]:
    """
    Parse the rows of an artist-by-monthly-listeners table.

    Rows without cells (headers) are skipped. Malformed rows, implausible
    listener counts and repeated ranks are rejected and counted; the first
    row claiming a rank wins. Source order is preserved.
    """
    result: ParseResult[RawArtistRecord] = ParseResult()
    seen_ranks: set[int] = set()

    for cells in rows:
        if not cells:
            continue
        if len(cells) < ARTIST_MIN_CELLS:
            result.rejected += 1
            continue

        rank = parse_rank(cells[0])
        name = clean_text(cells[ARTIST_NAME_CELL])
        listeners = normalize_count(cells[ARTIST_LISTENERS_CELL])

        if rank is None or not is_valid_name(name) or listeners < min_listeners:
            result.rejected += 1
            continue
        if rank in seen_ranks:
            logger.debug(f"Duplicate artist rank {rank} for {name!r}, keeping first occurrence")
            result.rejected += 1
            continue

        seen_ranks.add(rank)
        delta = None
        if len(cells) > ARTIST_DELTA_CELL:
            delta = normalize_signed_delta(cells[ARTIST_DELTA_CELL])

        result.records.append(
            RawArtistRecord(
                rank=rank,
                name=name,
                monthly_listeners=listeners,
                listeners_delta=delta,
            )
        )

    return result


def parse_track_rows(
    rows: list[list[str]],
    min_daily_streams: int = DEFAULT_MIN_DAILY_STREAMS,
) -> ParseResult[RawTrackRecord]:
    """
    Parse the rows of a daily track chart.

    Daily streams below ``min_daily_streams`` are treated as row-alignment
    errors and rejected, as are symbol-only titles and repeated ranks.
    """
    result: ParseResult[RawTrackRecord] = ParseResult()
    seen_ranks: set[int] = set()

    for cells in rows:
        if not cells:
            continue
        if len(cells) < TRACK_MIN_CELLS:
            result.rejected += 1
            continue

        rank = parse_rank(cells[0])
        combined = clean_text(cells[TRACK_ARTIST_TITLE_CELL])
        if rank is None or not is_valid_name(combined):
            result.rejected += 1
            continue

        artist_name, title = split_artist_title(combined)
        streams = normalize_count(cells[TRACK_STREAMS_CELL])
        if not artist_name or not is_valid_name(title) or streams < min_daily_streams:
            result.rejected += 1
            continue
        if rank in seen_ranks:
            logger.debug(f"Duplicate track rank {rank} for {combined!r}, keeping first occurrence")
            result.rejected += 1
            continue

        seen_ranks.add(rank)
        delta = None
        if len(cells) > TRACK_DELTA_CELL:
            delta = normalize_signed_delta(cells[TRACK_DELTA_CELL])
        total = None
        if len(cells) > TRACK_TOTAL_CELL:
            total = normalize_count(cells[TRACK_TOTAL_CELL]) or None

        result.records.append(
            RawTrackRecord(
                rank=rank,
                title=title,
                artist_name=artist_name,
                daily_streams=streams,
                streams_delta=delta,
                total_streams=total,
            )
        )

    return result


def aggregate_artists_from_tracks(tracks: list[RawTrackRecord]) -> list[RawArtistRecord]:
    """
    Derive an artist chart from a track chart.

    Used for scopes whose source has no artist page. Daily streams are summed
    per artist as a stand-in for monthly listeners, then artists are re-ranked
    by that sum (ties broken by best track rank). No native delta exists.
    """
    totals: dict[str, tuple[int, int]] = {}
    for track in tracks:
        if track.artist_name == UNKNOWN_ARTIST:
            continue
        streams, best_rank = totals.get(track.artist_name, (0, track.rank))
        totals[track.artist_name] = (streams + track.daily_streams, min(best_rank, track.rank))

    ordered = sorted(totals.items(), key=lambda item: (-item[1][0], item[1][1]))
    return [
        RawArtistRecord(rank=i, name=name, monthly_listeners=streams)
        for i, (name, (streams, _)) in enumerate(ordered, start=1)
    ]


class KworbArtistScraper(ChartScraper[RawArtistRecord]):
    """
    Scraper for the kworb.net artists-by-monthly-listeners page.

    Target: https://kworb.net/spotify/listeners.html
    """

    kind = EntityKind.ARTIST

    def __init__(self, url: str, min_listeners: int = DEFAULT_MIN_MONTHLY_LISTENERS, **kwargs):  # pyright: ignore[reportMissingParameterType]
        super().__init__(url, **kwargs)
        self.min_listeners = min_listeners

    @classmethod
    def create(cls, url, *, min_listeners, min_daily_streams, **kwargs):  # pyright: ignore[reportMissingParameterType]
        return cls(url, min_listeners=min_listeners, **kwargs)

    def parse(self, rows: list[list[str]]) -> ParseResult[RawArtistRecord]:
        return parse_artist_rows(rows, min_listeners=self.min_listeners)


class KworbTrackScraper(ChartScraper[RawTrackRecord]):
    """
    Scraper for kworb.net country daily track charts.

    Target: https://kworb.net/spotify/country/{country}_daily.html
    """

    kind = EntityKind.TRACK

    def __init__(self, url: str, min_daily_streams: int = DEFAULT_MIN_DAILY_STREAMS, **kwargs):  # pyright: ignore[reportMissingParameterType]
        super().__init__(url, **kwargs)
        self.min_daily_streams = min_daily_streams

    @classmethod
    def create(cls, url, *, min_listeners, min_daily_streams, **kwargs):  # pyright: ignore[reportMissingParameterType]
        return cls(url, min_daily_streams=min_daily_streams, **kwargs)

    def parse(self, rows: list[list[str]]) -> ParseResult[RawTrackRecord]:
        return parse_track_rows(rows, min_daily_streams=self.min_daily_streams)


class KworbAggregatedArtistScraper(ChartScraper[RawArtistRecord]):
    """
    Artist chart derived from a country daily track chart.

    The track page is parsed with the track rules first, then aggregated.
    Rejections counted are the track-level rejections plus aggregated
    artists below the listener floor.
    """

    kind = EntityKind.ARTIST

    def __init__(
        self,
        url: str,
        min_daily_streams: int = DEFAULT_MIN_DAILY_STREAMS,
        min_listeners: int = DEFAULT_MIN_MONTHLY_LISTENERS,
        **kwargs,  # pyright: ignore[reportMissingParameterType]
    ):
        super().__init__(url, **kwargs)
        self.min_daily_streams = min_daily_streams
        self.min_listeners = min_listeners

    @classmethod
    def create(cls, url, *, min_listeners, min_daily_streams, **kwargs):  # pyright: ignore[reportMissingParameterType]
        return cls(url, min_daily_streams=min_daily_streams, min_listeners=min_listeners, **kwargs)

    def parse(self, rows: list[list[str]]) -> ParseResult[RawArtistRecord]:
        tracks = parse_track_rows(rows, min_daily_streams=self.min_daily_streams)
        artists = aggregate_artists_from_tracks(tracks.records)
        kept = [a for a in artists if a.monthly_listeners >= self.min_listeners]
        return ParseResult(records=kept, rejected=tracks.rejected + len(artists) - len(kept))


# Artist detail pages

ARTIST_SONGS_URL = "https://kworb.net/spotify/artist/{artist_id}_songs.html"
ARTIST_VIDEOS_URL = "https://kworb.net/youtube/artist/{slug}.html"
DETAIL_MIN_CELLS = 3
TOP_DETAILS_LIMIT = 3

_TRACK_LINK_RE = re.compile(r"track/([^/?.]+)")
_VIDEO_LINK_RE = re.compile(r"video/([^/]+)\.html")
_SLUG_STRIP_RE = re.compile(r"[^a-z0-9]")


@dataclass
class ArtistTopSong:
    title: str
    total_streams: int
    daily_streams: int
    spotify_url: str | None = None


@dataclass
class ArtistTopVideo:
    title: str
    total_views: int
    yesterday_views: int
    youtube_url: str | None = None


def youtube_artist_slug(name: str) -> str:
    """kworb's YouTube page slug: lowercase alphanumerics only ("The Weeknd" -> "theweeknd")."""
    return _SLUG_STRIP_RE.sub("", name.lower())


def spotify_track_url(href: str | None) -> str | None:
    """Canonical open.spotify.com URL from an absolute or relative kworb track link."""
    if not href:
        return None
    if href.startswith("https://open.spotify.com/track/"):
        return href
    match = _TRACK_LINK_RE.search(href)
    return f"https://open.spotify.com/track/{match.group(1)}" if match else None


def parse_artist_song_rows(
    rows: list[list[TableCell]], limit: int = TOP_DETAILS_LIMIT
) -> list[ArtistTopSong]:
    """
    Top songs from an artist's kworb songs table (title, total, daily).

    Rows without a title or without total streams are skipped; page order is
    kept and the first ``limit`` songs returned.
    """
    songs: list[ArtistTopSong] = []
    for cells in rows:
        if len(songs) >= limit:
            break
        if len(cells) < DETAIL_MIN_CELLS:
            continue
        title = clean_text(cells[0].text)
        total = normalize_count(cells[1].text)
        if not title or total <= 0:
            continue
        songs.append(
            ArtistTopSong(
                title=title,
                total_streams=total,
                daily_streams=normalize_count(cells[2].text),
                spotify_url=spotify_track_url(cells[0].href),
            )
        )
    return songs


def parse_artist_video_rows(
    rows: list[list[TableCell]], limit: int = TOP_DETAILS_LIMIT
) -> list[ArtistTopVideo]:
    """Top videos from an artist's kworb YouTube table (title, views, yesterday)."""
    videos: list[ArtistTopVideo] = []
    for cells in rows:
        if len(videos) >= limit:
            break
        if len(cells) < DETAIL_MIN_CELLS:
            continue
        title = clean_text(cells[0].text)
        views = normalize_count(cells[1].text)
        if not title or views <= 0:
            continue
        match = _VIDEO_LINK_RE.search(cells[0].href or "")
        videos.append(
            ArtistTopVideo(
                title=title,
                total_views=views,
                yesterday_views=normalize_count(cells[2].text),
                youtube_url=f"https://www.youtube.com/watch?v={match.group(1)}" if match else None,
            )
        )
    return videos


class KworbArtistDetailsScraper(PageFetcher):
    """
    Scraper for one artist's kworb pages: Spotify top songs and YouTube top videos.

    Targets:
        https://kworb.net/spotify/artist/{artist_id}_songs.html
        https://kworb.net/youtube/artist/{slug}.html
    """

    def __init__(self, limit: int = TOP_DETAILS_LIMIT, **kwargs: Any):
        super().__init__(**kwargs)
        self.limit = limit

    def top_songs(self, artist_id: str) -> list[ArtistTopSong]:
        """
        Raises:
            FetchError: If the songs page cannot be fetched
        """
        html = self.fetch_chart_page(ARTIST_SONGS_URL.format(artist_id=artist_id))
        return parse_artist_song_rows(extract_table_cells(html), limit=self.limit)

    def top_videos(self, artist_name: str) -> list[ArtistTopVideo]:
        """
        Raises:
            FetchError: If the videos page cannot be fetched
        """
        html = self.fetch_chart_page(ARTIST_VIDEOS_URL.format(slug=youtube_artist_slug(artist_name)))
        return parse_artist_video_rows(extract_table_cells(html), limit=self.limit)


## Tests


def test_parse_rank():
    assert parse_rank("12") == 12
    assert parse_rank(" #3 ") == 3
    assert parse_rank("0") is None
    assert parse_rank("=") is None
    assert parse_rank("9" * 5000) is None


def test_split_artist_title_first_separator():
    assert split_artist_title("Sabrina Carpenter - Manchild") == ("Sabrina Carpenter", "Manchild")
    assert split_artist_title("A - B - Remix") == ("A", "B - Remix")


def test_split_artist_title_fallback():
    assert split_artist_title("Untitled Song") == (UNKNOWN_ARTIST, "Untitled Song")


def test_aggregate_artists_from_tracks():
    tracks = [
        RawTrackRecord(rank=1, title="A1", artist_name="A", daily_streams=300_000),
        RawTrackRecord(rank=2, title="B1", artist_name="B", daily_streams=250_000),
        RawTrackRecord(rank=3, title="B2", artist_name="B", daily_streams=200_000),
        RawTrackRecord(rank=4, title="X", artist_name=UNKNOWN_ARTIST, daily_streams=190_000),
    ]
    artists = aggregate_artists_from_tracks(tracks)
    assert [(a.rank, a.name, a.monthly_listeners) for a in artists] == [
        (1, "B", 450_000),
        (2, "A", 300_000),
    ]
    assert all(a.listeners_delta is None for a in artists)


def test_youtube_artist_slug():
    assert youtube_artist_slug("The Weeknd") == "theweeknd"
    assert youtube_artist_slug("Tyler, The Creator") == "tylerthecreator"


def test_spotify_track_url_forms():
    assert spotify_track_url("https://open.spotify.com/track/0VjI") == "https://open.spotify.com/track/0VjI"
    assert spotify_track_url("../track/0VjIjW4GlUZAMYd2vXMi3b.html") == (
        "https://open.spotify.com/track/0VjIjW4GlUZAMYd2vXMi3b"
    )
    assert spotify_track_url("../album/abc.html") is None
    assert spotify_track_url(None) is None


def test_parse_artist_song_rows_skips_empty_and_caps():
    rows = [
        [],
        [TableCell("Intro"), TableCell(""), TableCell("")],
        [TableCell("Song A", "../track/a.html"), TableCell("1,000"), TableCell("10")],
        [TableCell("Song B"), TableCell("900"), TableCell("9")],
        [TableCell("Song C"), TableCell("800"), TableCell("")],
        [TableCell("Song D"), TableCell("700"), TableCell("7")],
    ]

    songs = parse_artist_song_rows(rows)

    assert [s.title for s in songs] == ["Song A", "Song B", "Song C"]
    assert songs[0].spotify_url == "https://open.spotify.com/track/a"
    assert songs[2].daily_streams == 0
