"""
Refresh pipeline: fetch, clean, snapshot, diff, enrich, upsert.

One pipeline runs per (scope, entity kind). A chart page that cannot be
fetched fails only its own pipeline; store failures abort the whole refresh.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import asdict, dataclass, field
from typing import Any

from streamboard.config import Config, RefreshConfig, SourceConfig
from streamboard.errors import FetchError
from streamboard.metadata import MetadataResolver
from streamboard.normalize import is_valid_name
from streamboard.rate_limiter import RateLimiter, RateLimiterRegistry, UnlimitedRateLimiter
from streamboard.scrapers import SCRAPER_REGISTRY, ChartScraper, EntityKind, ParseResult
from streamboard.scrapers.base import RawArtistRecord, RawTrackRecord
from streamboard.spotify import SpotifyClient
from streamboard.stats_db import (
    ArtistCurrent,
    ArtistIdentity,
    ArtistSnapshot,
    StatsDB,
    TrackCurrent,
    TrackIdentity,
    TrackSnapshot,
)

logger = logging.getLogger(__name__)

ScraperFactory = Callable[[SourceConfig, EntityKind], ChartScraper]


def make_scraper_factory(refresh_config: RefreshConfig) -> ScraperFactory:
    """Scraper factory building kworb scrapers from source configuration."""

    def factory(source: SourceConfig, kind: EntityKind) -> ChartScraper:
        if kind is EntityKind.ARTIST and source.artists_url is not None:
            url, aggregated = source.artists_url, False
        else:
            # Scopes without an artist page derive artists from the track chart
            url, aggregated = source.tracks_url, kind is EntityKind.ARTIST
        return SCRAPER_REGISTRY[(kind, aggregated)].create(
            url,
            min_listeners=source.min_monthly_listeners,
            min_daily_streams=source.min_daily_streams,
            timeout_s=refresh_config.fetch_timeout_s,
            user_agent=refresh_config.user_agent,
        )

    return factory


@dataclass
class PipelineResult:
    """Outcome of one (scope, kind) pipeline."""

    scope: str
    kind: EntityKind
    records: int = 0
    rejected: int = 0
    duplicates: int = 0
    purged: int = 0
    purged_snapshots: int = 0
    enriched: int = 0
    enrichment_misses: int = 0
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def __str__(self) -> str:
        if not self.ok:
            return f"{self.scope}/{self.kind}: failed ({self.error})"
        return (
            f"{self.scope}/{self.kind}: {self.records} records, {self.rejected} rejected, "
            f"{self.purged} purged, {self.enriched} enriched, {self.enrichment_misses} unresolved"
        )


@dataclass
class RefreshReport:
    """Outcome of a full refresh across every configured pipeline."""

    started_at: float
    finished_at: float | None = None
    pipelines: list[PipelineResult] = field(default_factory=list)

    @property
    def failed(self) -> list[PipelineResult]:
        return [p for p in self.pipelines if not p.ok]

    @property
    def ok(self) -> bool:
        return not self.failed

    @property
    def partial(self) -> bool:
        """Some pipelines failed but at least one succeeded."""
        return bool(self.failed) and len(self.failed) < len(self.pipelines)

    def to_dict(self) -> dict[str, Any]:
        return {
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "ok": self.ok,
            "partial": self.partial,
            "pipelines": [{**asdict(p), "kind": str(p.kind), "ok": p.ok} for p in self.pipelines],
        }


class RefreshGuard:
    """
    In-memory single-flight guard for refresh cycles.

    A refresh that cannot acquire the guard is refused rather than queued.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()

    def acquire(self) -> bool:
        return self._lock.acquire(blocking=False)

    def release(self) -> None:
        self._lock.release()

    @property
    def running(self) -> bool:
        return self._lock.locked()


class RefreshEngine:
    """
    Runs refresh cycles against the stats store.

    Per pipeline:
    1. Fetch and parse the chart page, keeping the top-N records by rank
    2. Purge current rows (and their history) that fail today's validity rules
    3. Append one snapshot per record, all stamped with the cycle start time
    4. Diff each record against its latest snapshot from before the cycle
    5. Resolve metadata only for entities without a cached external id
    6. Upsert current state
    """

    def __init__(
        self,
        db: StatsDB,
        sources: list[SourceConfig],
        resolver: MetadataResolver | None = None,
        scraper_factory: ScraperFactory | None = None,
        rate_limiter: RateLimiter | None = None,
        fetch_rate_limiter: RateLimiter | None = None,
        clock: Callable[[], float] = time.time,
        enrich: bool = True,
    ):
        self.db = db
        self.sources = sources
        self.resolver = resolver or MetadataResolver(None)
        self.scraper_factory = scraper_factory or make_scraper_factory(RefreshConfig())
        self.rate_limiter = rate_limiter or UnlimitedRateLimiter()
        self.fetch_rate_limiter = fetch_rate_limiter or UnlimitedRateLimiter()
        self.clock = clock
        self.enrich = enrich

    @classmethod
    def from_config(cls, config: Config, db: StatsDB | None = None) -> RefreshEngine:
        """Wire an engine with the Spotify resolver and rate limits from configuration."""
        client = None
        if config.refresh.enrich and config.spotify.client_id and config.spotify.client_secret:
            client = SpotifyClient(
                client_id=config.spotify.client_id,
                client_secret=config.spotify.client_secret,
                timeout_s=config.spotify.timeout_s,
                refresh_margin_s=config.spotify.token_refresh_margin_s,
            )
        elif config.refresh.enrich:
            logger.warning("Spotify credentials not configured, metadata enrichment disabled")

        limiters = RateLimiterRegistry({"spotify": config.spotify.rate_limit})

        return cls(
            db=db or StatsDB(config.database.path),
            sources=config.sources,
            resolver=MetadataResolver(client),
            scraper_factory=make_scraper_factory(config.refresh),
            rate_limiter=limiters.get_limiter("spotify"),
            fetch_rate_limiter=limiters.get_limiter("kworb"),
            enrich=config.refresh.enrich,
        )

    def close(self) -> None:
        if self.resolver.client is not None:
            self.resolver.client.close()

    def __enter__(self) -> RefreshEngine:
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()

    def refresh_all(self) -> RefreshReport:
        """Run every configured pipeline; fetch failures are recorded, not raised."""
        report = RefreshReport(started_at=self.clock())
        logger.info(f"Refresh started for scopes: {', '.join(s.scope for s in self.sources)}")

        for source in self.sources:
            for kind in (EntityKind.ARTIST, EntityKind.TRACK):
                result = self.refresh_pipeline(source, kind)
                report.pipelines.append(result)
                logger.info(str(result))

        report.finished_at = self.clock()
        if report.ok:
            logger.info(f"Refresh completed in {report.finished_at - report.started_at:.1f}s")
        else:
            logger.warning(
                f"Refresh finished with {len(report.failed)} of {len(report.pipelines)} pipelines failed"
            )
        return report

    def refresh_pipeline(self, source: SourceConfig, kind: EntityKind) -> PipelineResult:
        """
        Run one (scope, kind) pipeline.

        Returns:
            PipelineResult; ``error`` is set when the chart page could not be fetched

        Raises:
            StoreError: If the stats store fails
        """
        result = PipelineResult(scope=source.scope, kind=kind)
        cycle_started_at = self.clock()

        try:
            parsed = self._scrape(source, kind)
        except FetchError as e:
            logger.error(f"Skipping {source.scope}/{kind}: {e}")
            result.error = str(e)
            return result

        limit = source.artist_limit if kind is EntityKind.ARTIST else source.track_limit
        result.rejected = parsed.rejected

        if kind is EntityKind.ARTIST:
            self._cleanup_artists(source, result)
            self._reconcile_artists(source.scope, parsed.top(limit), cycle_started_at, result)
        else:
            self._cleanup_tracks(source, result)
            self._reconcile_tracks(source.scope, parsed.top(limit), cycle_started_at, result)

        return result

    def _scrape(self, source: SourceConfig, kind: EntityKind) -> ParseResult:
        self.fetch_rate_limiter.acquire()
        with self.scraper_factory(source, kind) as scraper:
            return scraper.scrape()

    # Cleanup

    def _cleanup_artists(self, source: SourceConfig, result: PipelineResult) -> None:
        for current in self.db.list_artist_current(source.scope):
            if current.monthly_listeners >= source.min_monthly_listeners and is_valid_name(current.name):
                continue
            logger.info(f"Purging invalid artist {current.name!r} from {source.scope}")
            result.purged_snapshots += self.db.purge_artist(current.identity)
            result.purged += 1

    def _cleanup_tracks(self, source: SourceConfig, result: PipelineResult) -> None:
        for current in self.db.list_track_current(source.scope):
            if current.daily_streams >= source.min_daily_streams and is_valid_name(current.title):
                continue
            logger.info(f"Purging invalid track {current.title!r} from {source.scope}")
            result.purged_snapshots += self.db.purge_track(current.identity)
            result.purged += 1

    # Reconciliation

    def _reconcile_artists(
        self,
        scope: str,
        records: list[RawArtistRecord],
        cycle_started_at: float,
        result: PipelineResult,
    ) -> None:
        unique: list[RawArtistRecord] = []
        seen: set[str] = set()
        for record in records:
            key = ArtistIdentity(record.name, scope).key
            if key in seen:
                result.duplicates += 1
                continue
            seen.add(key)
            unique.append(record)

        self.db.add_artist_snapshots(
            [
                ArtistSnapshot(
                    name=r.name,
                    scope=scope,
                    rank=r.rank,
                    monthly_listeners=r.monthly_listeners,
                    listeners_delta=r.listeners_delta,
                    created_at=cycle_started_at,
                )
                for r in unique
            ]
        )

        for record in unique:
            identity = ArtistIdentity(record.name, scope)
            previous = self.db.latest_artist_snapshot(identity, before=cycle_started_at)

            listeners_delta = record.listeners_delta
            if listeners_delta is None and previous is not None:
                listeners_delta = record.monthly_listeners - previous.monthly_listeners

            current = ArtistCurrent(
                name=record.name,
                scope=scope,
                rank=record.rank,
                monthly_listeners=record.monthly_listeners,
                listeners_delta=listeners_delta,
                previous_rank=previous.rank if previous else None,
                rank_delta=record.rank - previous.rank if previous else None,
                last_updated=0.0,
            )

            existing = self.db.get_artist_current(identity)
            if existing is None or existing.artist_id is None:
                self._enrich_artist(current, result)

            current.last_updated = self.clock()
            self.db.upsert_artist_current(current)
            result.records += 1

    def _reconcile_tracks(
        self,
        scope: str,
        records: list[RawTrackRecord],
        cycle_started_at: float,
        result: PipelineResult,
    ) -> None:
        unique: list[RawTrackRecord] = []
        seen: set[tuple[str, str]] = set()
        for record in records:
            identity = TrackIdentity(record.title, record.artist_name, scope)
            if (identity.key, identity.artist_key) in seen:
                result.duplicates += 1
                continue
            seen.add((identity.key, identity.artist_key))
            unique.append(record)

        self.db.add_track_snapshots(
            [
                TrackSnapshot(
                    title=r.title,
                    artist_name=r.artist_name,
                    scope=scope,
                    rank=r.rank,
                    daily_streams=r.daily_streams,
                    streams_delta=r.streams_delta,
                    total_streams=r.total_streams,
                    created_at=cycle_started_at,
                )
                for r in unique
            ]
        )

        for record in unique:
            identity = TrackIdentity(record.title, record.artist_name, scope)
            previous = self.db.latest_track_snapshot(identity, before=cycle_started_at)

            streams_delta = record.streams_delta
            if streams_delta is None and previous is not None:
                streams_delta = record.daily_streams - previous.daily_streams

            current = TrackCurrent(
                title=record.title,
                artist_name=record.artist_name,
                scope=scope,
                rank=record.rank,
                daily_streams=record.daily_streams,
                streams_delta=streams_delta,
                total_streams=record.total_streams,
                previous_rank=previous.rank if previous else None,
                rank_delta=record.rank - previous.rank if previous else None,
                last_updated=0.0,
            )

            existing = self.db.get_track_current(identity)
            if existing is None or existing.track_id is None:
                self._enrich_track(current, result)

            current.last_updated = self.clock()
            self.db.upsert_track_current(current)
            result.records += 1

    # Enrichment

    def _enrich_artist(self, current: ArtistCurrent, result: PipelineResult) -> None:
        if not self.enrich or not self.resolver.enabled:
            return
        self.rate_limiter.acquire()
        metadata = self.resolver.resolve_artist(current.name)
        if metadata is None:
            result.enrichment_misses += 1
            return
        current.artist_id = metadata.external_id
        current.image_url = metadata.image_url
        current.genres = metadata.genres
        current.spotify_url = metadata.url
        result.enriched += 1

    def _enrich_track(self, current: TrackCurrent, result: PipelineResult) -> None:
        if not self.enrich or not self.resolver.enabled:
            return
        self.rate_limiter.acquire()
        metadata = self.resolver.resolve_track(current.title, current.artist_name)
        if metadata is None:
            result.enrichment_misses += 1
            return
        current.track_id = metadata.external_id
        current.image_url = metadata.image_url
        current.preview_url = metadata.preview_url
        current.spotify_url = metadata.url
        result.enriched += 1


## Tests


def test_pipeline_result_str():
    result = PipelineResult(scope="global", kind=EntityKind.TRACK, records=100, rejected=2)
    assert "100 records" in str(result)

    result.error = "Failed to fetch x: HTTP 503"
    assert "failed" in str(result)


def test_refresh_report_partial():
    report = RefreshReport(
        started_at=0.0,
        pipelines=[
            PipelineResult(scope="global", kind=EntityKind.ARTIST),
            PipelineResult(scope="nl", kind=EntityKind.ARTIST, error="boom"),
        ],
    )
    assert not report.ok
    assert report.partial
    assert report.to_dict()["pipelines"][1]["ok"] is False


def test_refresh_guard_single_flight():
    guard = RefreshGuard()
    assert guard.acquire()
    assert guard.running
    assert not guard.acquire()
    guard.release()
    assert not guard.running


def test_scraper_factory_picks_page_per_kind():
    factory = make_scraper_factory(RefreshConfig())
    global_source = SourceConfig(
        scope="global",
        artists_url="https://a.example/listeners.html",
        tracks_url="https://a.example/daily.html",
    )
    nl_source = SourceConfig(scope="nl", tracks_url="https://a.example/nl_daily.html")

    with factory(global_source, EntityKind.ARTIST) as artists:
        assert artists.url == "https://a.example/listeners.html"
    with factory(global_source, EntityKind.TRACK) as tracks:
        assert tracks.url == "https://a.example/daily.html"
    with factory(nl_source, EntityKind.ARTIST) as aggregated:
        assert type(aggregated) is SCRAPER_REGISTRY[(EntityKind.ARTIST, True)]
        assert aggregated.url == "https://a.example/nl_daily.html"
