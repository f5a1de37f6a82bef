"""Read API over the stats store, as consumed by dashboards and the CLI."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from streamboard.errors import FetchError
from streamboard.scrapers.kworb import ArtistTopSong, ArtistTopVideo, KworbArtistDetailsScraper
from streamboard.stats_db import (
    GLOBAL_SCOPE,
    ArtistCurrent,
    ArtistIdentity,
    ArtistSnapshot,
    StatsDB,
    TrackCurrent,
    TrackIdentity,
    TrackSnapshot,
)

logger = logging.getLogger(__name__)

SECONDS_PER_DAY = 86_400
DEFAULT_ARTIST_LIMIT = 500
DEFAULT_TRACK_LIMIT = 100
DEFAULT_WINDOW_DAYS = 30


class ArtistSort(StrEnum):
    """Ordering for the artist leaderboard."""

    RANK = "rank"
    DAILY_CHANGE = "daily_change"


@dataclass
class ArtistDetails:
    """An artist's current chart entry plus its kworb top songs and videos."""

    artist: ArtistCurrent
    top_songs: list[ArtistTopSong] = field(default_factory=list)
    top_videos: list[ArtistTopVideo] = field(default_factory=list)


class StatsService:
    """Queries over current state and snapshot history."""

    def __init__(
        self,
        db: StatsDB,
        clock: Callable[[], float] | None = None,
        details_scraper: KworbArtistDetailsScraper | None = None,
    ):
        self.db = db
        self._clock = clock
        self.details_scraper = details_scraper

    def close(self) -> None:
        if self.details_scraper is not None:
            self.details_scraper.close()

    def __enter__(self) -> StatsService:
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()

    def _now(self) -> float:
        return self._clock() if self._clock else time.time()

    def get_top_artists(
        self,
        limit: int = DEFAULT_ARTIST_LIMIT,
        scope: str = GLOBAL_SCOPE,
        sort_by: ArtistSort = ArtistSort.RANK,
    ) -> list[ArtistCurrent]:
        """
        Top artists in a scope.

        Args:
            limit: Max artists, taken by rank before any re-sorting
            scope: Chart scope
            sort_by: RANK (ascending) or DAILY_CHANGE (largest absolute listener
                change first; artists with no known change are dropped)
        """
        artists = self.db.list_artist_current(scope, limit=limit)
        if sort_by == ArtistSort.DAILY_CHANGE:
            artists = sorted(
                (a for a in artists if a.listeners_delta is not None),
                key=lambda a: abs(a.listeners_delta or 0),
                reverse=True,
            )
        return artists

    def get_top_tracks(self, limit: int = DEFAULT_TRACK_LIMIT, scope: str = GLOBAL_SCOPE) -> list[TrackCurrent]:
        return self.db.list_track_current(scope, limit=limit)

    def get_artist_history(
        self, name: str, scope: str = GLOBAL_SCOPE, window_days: int = DEFAULT_WINDOW_DAYS
    ) -> list[ArtistSnapshot]:
        """Snapshots from the last ``window_days`` days, oldest first."""
        since = self._now() - window_days * SECONDS_PER_DAY
        return self.db.artist_history(ArtistIdentity(name, scope), since=since)

    def get_track_history(
        self,
        title: str,
        artist_name: str,
        scope: str = GLOBAL_SCOPE,
        window_days: int = DEFAULT_WINDOW_DAYS,
    ) -> list[TrackSnapshot]:
        """Snapshots from the last ``window_days`` days, oldest first."""
        since = self._now() - window_days * SECONDS_PER_DAY
        return self.db.track_history(TrackIdentity(title, artist_name, scope), since=since)

    def find_artist(self, artist_id_or_name: str) -> ArtistCurrent | None:
        """Artist by external id or name; the global chart entry wins over other scopes."""
        return self.db.find_artist_current(artist_id_or_name)

    def get_last_refresh_timestamp(self) -> float | None:
        return self.db.last_updated()

    def get_artist_details(self, artist_id_or_name: str) -> ArtistDetails | None:
        """
        Artist lookup as in `find_artist`, plus top songs and top videos from kworb.

        Songs need the artist's Spotify id and are only fetched once the
        artist has been enriched; videos are looked up by name. Either page
        failing to load leaves its list empty. Without a details scraper only
        the chart entry is returned.

        Returns:
            ArtistDetails, or None if the artist is not on any chart
        """
        artist = self.find_artist(artist_id_or_name)
        if artist is None:
            return None

        details = ArtistDetails(artist=artist)
        if self.details_scraper is None:
            return details

        if artist.artist_id:
            try:
                details.top_songs = self.details_scraper.top_songs(artist.artist_id)
            except FetchError as e:
                logger.warning(f"Top songs unavailable for {artist.name!r}: {e}")
        try:
            details.top_videos = self.details_scraper.top_videos(artist.name)
        except FetchError as e:
            logger.warning(f"Top videos unavailable for {artist.name!r}: {e}")
        return details
