"""Tests for the refresh pipeline against mocked kworb pages."""

from __future__ import annotations

import pytest

from streamboard.config import SourceConfig
from streamboard.errors import StoreError
from streamboard.refresh import RefreshEngine
from streamboard.scrapers import EntityKind
from streamboard.stats_db import (
    ArtistCurrent,
    ArtistIdentity,
    ArtistSnapshot,
    TrackCurrent,
    TrackIdentity,
    TrackSnapshot,
)

LISTENERS_URL = "https://kworb.net/spotify/listeners.html"
GLOBAL_DAILY_URL = "https://kworb.net/spotify/country/global_daily.html"
NL_DAILY_URL = "https://kworb.net/spotify/country/nl_daily.html"


@pytest.fixture
def global_source():
    return SourceConfig(scope="global", artists_url=LISTENERS_URL, tracks_url=GLOBAL_DAILY_URL)


@pytest.fixture
def nl_source():
    return SourceConfig(scope="nl", tracks_url=NL_DAILY_URL, min_daily_streams=10_000)


@pytest.fixture
def engine(stats_db, global_source, nl_source, clock):
    return RefreshEngine(stats_db, [global_source, nl_source], clock=clock)


class TestReconciliation:
    def test_first_observation_has_no_deltas(self, engine, global_source, stats_db, kworb_fixture, httpx_mock):
        httpx_mock.add_response(url=LISTENERS_URL, html=kworb_fixture("listeners.html"))

        result = engine.refresh_pipeline(global_source, EntityKind.ARTIST)

        assert result.ok
        assert result.records == 4
        assert result.rejected == 5

        weeknd = stats_db.get_artist_current(ArtistIdentity("The Weeknd", "global"))
        assert weeknd is not None
        assert weeknd.rank == 1
        assert weeknd.previous_rank is None
        assert weeknd.rank_delta is None
        assert weeknd.listeners_delta == 312_004

        gaga = stats_db.get_artist_current(ArtistIdentity("Lady Gaga", "global"))
        assert gaga is not None
        assert gaga.listeners_delta is None

    def test_unchanged_page_is_idempotent(self, engine, global_source, stats_db, kworb_fixture, httpx_mock):
        httpx_mock.add_response(url=LISTENERS_URL, html=kworb_fixture("listeners.html"))
        httpx_mock.add_response(url=LISTENERS_URL, html=kworb_fixture("listeners.html"))

        engine.refresh_pipeline(global_source, EntityKind.ARTIST)
        engine.refresh_pipeline(global_source, EntityKind.ARTIST)

        weeknd = stats_db.get_artist_current(ArtistIdentity("The Weeknd", "global"))
        assert weeknd is not None
        assert weeknd.previous_rank == 1
        assert weeknd.rank_delta == 0
        # Native delta column wins over the derived one
        assert weeknd.listeners_delta == 312_004

        # No native delta: derived from the previous snapshot
        gaga = stats_db.get_artist_current(ArtistIdentity("Lady Gaga", "global"))
        assert gaga is not None
        assert gaga.listeners_delta == 0

        # History grows by one snapshot per cycle
        assert len(stats_db.artist_history(ArtistIdentity("The Weeknd", "global"))) == 2

    def test_rank_delta_negative_when_moving_up(self, engine, global_source, stats_db, artist_page, httpx_mock):
        httpx_mock.add_response(url=LISTENERS_URL, html=artist_page((5, "Drake", "80,000,000", "+1")))
        httpx_mock.add_response(url=LISTENERS_URL, html=artist_page((2, "Drake", "81,000,000", "")))

        engine.refresh_pipeline(global_source, EntityKind.ARTIST)
        engine.refresh_pipeline(global_source, EntityKind.ARTIST)

        drake = stats_db.get_artist_current(ArtistIdentity("Drake", "global"))
        assert drake is not None
        assert drake.rank == 2
        assert drake.previous_rank == 5
        assert drake.rank_delta == -3
        assert drake.listeners_delta == 1_000_000

    def test_snapshots_share_cycle_timestamp(self, engine, global_source, stats_db, kworb_fixture, httpx_mock):
        httpx_mock.add_response(url=LISTENERS_URL, html=kworb_fixture("listeners.html"))

        engine.refresh_pipeline(global_source, EntityKind.ARTIST)

        stamps = {
            stats_db.artist_history(ArtistIdentity(name, "global"))[0].created_at
            for name in ("The Weeknd", "Bruno Mars", "Lady Gaga", "Billie Eilish")
        }
        assert len(stamps) == 1

        weeknd = stats_db.get_artist_current(ArtistIdentity("The Weeknd", "global"))
        assert weeknd is not None
        assert weeknd.last_updated > stamps.pop()

    def test_duplicate_identity_in_page_counted(self, engine, global_source, stats_db, artist_page, httpx_mock):
        httpx_mock.add_response(
            url=LISTENERS_URL,
            html=artist_page((1, "Drake", "80,000,000", "+1"), (2, "DRAKE", "79,000,000", "+1")),
        )

        result = engine.refresh_pipeline(global_source, EntityKind.ARTIST)

        assert result.records == 1
        assert result.duplicates == 1
        drake = stats_db.get_artist_current(ArtistIdentity("drake", "global"))
        assert drake is not None
        assert drake.rank == 1
        assert len(stats_db.artist_history(ArtistIdentity("Drake", "global"))) == 1

    def test_top_n_limit(self, stats_db, clock, kworb_fixture, httpx_mock):
        source = SourceConfig(scope="global", artists_url=LISTENERS_URL, tracks_url=GLOBAL_DAILY_URL, artist_limit=2)
        engine = RefreshEngine(stats_db, [source], clock=clock)
        httpx_mock.add_response(url=LISTENERS_URL, html=kworb_fixture("listeners.html"))

        result = engine.refresh_pipeline(source, EntityKind.ARTIST)

        assert result.records == 2
        assert [a.name for a in stats_db.list_artist_current("global")] == ["The Weeknd", "Bruno Mars"]

    def test_tracks_pipeline(self, engine, global_source, stats_db, kworb_fixture, httpx_mock):
        httpx_mock.add_response(url=GLOBAL_DAILY_URL, html=kworb_fixture("global_daily.html"))

        result = engine.refresh_pipeline(global_source, EntityKind.TRACK)

        assert result.records == 5
        assert result.rejected == 3
        espresso = stats_db.get_track_current(TrackIdentity("Espresso", "Sabrina Carpenter", "global"))
        assert espresso is not None
        assert espresso.total_streams == 1_234_567_890
        assert espresso.streams_delta == 12_403

    def test_aggregated_artists_get_derived_delta(self, engine, nl_source, stats_db, kworb_fixture, track_page, httpx_mock):
        httpx_mock.add_response(url=NL_DAILY_URL, html=kworb_fixture("nl_daily.html"))
        httpx_mock.add_response(
            url=NL_DAILY_URL,
            html=track_page((1, "Joost - Europapa", "250,000"), (2, "Joost - Friesland", "60,000")),
        )

        engine.refresh_pipeline(nl_source, EntityKind.ARTIST)
        first = stats_db.get_artist_current(ArtistIdentity("Joost", "nl"))
        engine.refresh_pipeline(nl_source, EntityKind.ARTIST)
        second = stats_db.get_artist_current(ArtistIdentity("Joost", "nl"))

        assert first is not None and first.listeners_delta is None
        assert second is not None
        assert second.monthly_listeners == 310_000
        assert second.listeners_delta == 310_000 - 305_834
        assert second.rank_delta == 0


class TestCleanup:
    def test_invalid_rows_purged_with_history(self, engine, global_source, stats_db, artist_page, httpx_mock):
        junk = ArtistIdentity("==", "global")
        stats_db.add_artist_snapshots(
            [
                ArtistSnapshot(
                    name="==",
                    scope="global",
                    rank=9,
                    monthly_listeners=5_000_000,
                    listeners_delta=None,
                    created_at=1.0,
                )
            ]
        )
        stats_db.upsert_artist_current(
            ArtistCurrent(name="==", scope="global", rank=9, monthly_listeners=5_000_000, last_updated=1.0)
        )
        httpx_mock.add_response(url=LISTENERS_URL, html=artist_page((1, "Drake", "80,000,000", "+1")))

        result = engine.refresh_pipeline(global_source, EntityKind.ARTIST)

        assert result.purged == 1
        assert result.purged_snapshots == 1
        assert stats_db.get_artist_current(junk) is None
        assert stats_db.artist_history(junk) == []

    def test_raised_floor_purges_existing_rows(self, stats_db, clock, artist_page, httpx_mock):
        loose = SourceConfig(scope="global", artists_url=LISTENERS_URL, tracks_url=GLOBAL_DAILY_URL)
        strict = SourceConfig(
            scope="global",
            artists_url=LISTENERS_URL,
            tracks_url=GLOBAL_DAILY_URL,
            min_monthly_listeners=100_000_000,
        )
        page = artist_page((1, "The Weeknd", "118,000,000", "+1"), (2, "Drake", "80,000,000", "+1"))
        httpx_mock.add_response(url=LISTENERS_URL, html=page)
        httpx_mock.add_response(url=LISTENERS_URL, html=page)

        RefreshEngine(stats_db, [loose], clock=clock).refresh_pipeline(loose, EntityKind.ARTIST)
        result = RefreshEngine(stats_db, [strict], clock=clock).refresh_pipeline(strict, EntityKind.ARTIST)

        assert result.purged == 1
        assert [a.name for a in stats_db.list_artist_current("global")] == ["The Weeknd"]
        assert stats_db.artist_history(ArtistIdentity("Drake", "global")) == []

    def test_invalid_tracks_purged_with_history(self, engine, global_source, stats_db, kworb_fixture, httpx_mock):
        seeded = [("Old Song", "Drake", 50_000), ("==", "Drake", 500_000), ("Kept Song", "Drake", 200_000)]
        stats_db.add_track_snapshots(
            [
                TrackSnapshot(
                    title=title,
                    artist_name=artist,
                    scope="global",
                    rank=90 + i,
                    daily_streams=streams,
                    total_streams=None,
                    created_at=1.0,
                )
                for i, (title, artist, streams) in enumerate(seeded)
            ]
        )
        for i, (title, artist, streams) in enumerate(seeded):
            stats_db.upsert_track_current(
                TrackCurrent(
                    title=title,
                    artist_name=artist,
                    scope="global",
                    rank=90 + i,
                    daily_streams=streams,
                    last_updated=1.0,
                )
            )
        httpx_mock.add_response(url=GLOBAL_DAILY_URL, html=kworb_fixture("global_daily.html"))

        result = engine.refresh_pipeline(global_source, EntityKind.TRACK)

        assert result.purged == 2
        assert result.purged_snapshots == 2
        for title in ("Old Song", "=="):
            identity = TrackIdentity(title, "Drake", "global")
            assert stats_db.get_track_current(identity) is None
            assert stats_db.track_history(identity) == []
        kept = TrackIdentity("Kept Song", "Drake", "global")
        assert stats_db.get_track_current(kept) is not None
        assert len(stats_db.track_history(kept)) == 1


class TestEnrichment:
    def test_enriches_once(self, stats_db, global_source, clock, fake_resolver, kworb_fixture, httpx_mock):
        engine = RefreshEngine(stats_db, [global_source], resolver=fake_resolver, clock=clock)
        httpx_mock.add_response(url=LISTENERS_URL, html=kworb_fixture("listeners.html"))
        httpx_mock.add_response(url=LISTENERS_URL, html=kworb_fixture("listeners.html"))

        first = engine.refresh_pipeline(global_source, EntityKind.ARTIST)
        second = engine.refresh_pipeline(global_source, EntityKind.ARTIST)

        assert first.enriched == 4
        assert second.enriched == 0
        assert len(fake_resolver.artist_calls) == 4

        weeknd = stats_db.get_artist_current(ArtistIdentity("The Weeknd", "global"))
        assert weeknd is not None
        assert weeknd.artist_id == "sp-the-weeknd"
        assert weeknd.genres == ["pop"]
        assert weeknd.spotify_url == "https://open.spotify.com/artist/the-weeknd"

    def test_miss_is_retried_next_cycle(self, stats_db, global_source, clock, fake_resolver, kworb_fixture, httpx_mock):
        fake_resolver.misses = {"Bruno Mars"}
        engine = RefreshEngine(stats_db, [global_source], resolver=fake_resolver, clock=clock)
        httpx_mock.add_response(url=LISTENERS_URL, html=kworb_fixture("listeners.html"))
        httpx_mock.add_response(url=LISTENERS_URL, html=kworb_fixture("listeners.html"))

        first = engine.refresh_pipeline(global_source, EntityKind.ARTIST)
        second = engine.refresh_pipeline(global_source, EntityKind.ARTIST)

        assert first.enrichment_misses == 1
        assert first.records == 4
        assert second.enrichment_misses == 1
        assert fake_resolver.artist_calls.count("Bruno Mars") == 2
        assert len(fake_resolver.artist_calls) == 5

        bruno = stats_db.get_artist_current(ArtistIdentity("Bruno Mars", "global"))
        assert bruno is not None
        assert bruno.artist_id is None

    def test_tracks_enriched(self, stats_db, global_source, clock, fake_resolver, kworb_fixture, httpx_mock):
        engine = RefreshEngine(stats_db, [global_source], resolver=fake_resolver, clock=clock)
        httpx_mock.add_response(url=GLOBAL_DAILY_URL, html=kworb_fixture("global_daily.html"))

        engine.refresh_pipeline(global_source, EntityKind.TRACK)

        assert ("Espresso", "Sabrina Carpenter") in fake_resolver.track_calls
        espresso = stats_db.get_track_current(TrackIdentity("Espresso", "Sabrina Carpenter", "global"))
        assert espresso is not None
        assert espresso.track_id == "sp-espresso"

    def test_tracks_enriched_once(self, stats_db, global_source, clock, fake_resolver, kworb_fixture, httpx_mock):
        engine = RefreshEngine(stats_db, [global_source], resolver=fake_resolver, clock=clock)
        httpx_mock.add_response(url=GLOBAL_DAILY_URL, html=kworb_fixture("global_daily.html"))
        httpx_mock.add_response(url=GLOBAL_DAILY_URL, html=kworb_fixture("global_daily.html"))

        first = engine.refresh_pipeline(global_source, EntityKind.TRACK)
        calls_after_first = list(fake_resolver.track_calls)
        second = engine.refresh_pipeline(global_source, EntityKind.TRACK)

        assert first.enriched == 5
        assert second.enriched == 0
        assert fake_resolver.track_calls == calls_after_first
        espresso = stats_db.get_track_current(TrackIdentity("Espresso", "Sabrina Carpenter", "global"))
        assert espresso is not None
        assert espresso.track_id == "sp-espresso"
        assert espresso.rank_delta == 0

    def test_enrichment_disabled(self, stats_db, global_source, clock, fake_resolver, kworb_fixture, httpx_mock):
        engine = RefreshEngine(stats_db, [global_source], resolver=fake_resolver, clock=clock, enrich=False)
        httpx_mock.add_response(url=LISTENERS_URL, html=kworb_fixture("listeners.html"))

        result = engine.refresh_pipeline(global_source, EntityKind.ARTIST)

        assert result.enriched == 0
        assert fake_resolver.artist_calls == []


class TestFailureIsolation:
    def test_fetch_error_fails_only_its_pipeline(self, stats_db, global_source, clock, kworb_fixture, httpx_mock):
        engine = RefreshEngine(stats_db, [global_source], clock=clock)
        httpx_mock.add_response(url=LISTENERS_URL, status_code=503)
        httpx_mock.add_response(url=GLOBAL_DAILY_URL, html=kworb_fixture("global_daily.html"))

        report = engine.refresh_all()

        assert report.partial
        assert not report.ok
        artists, tracks = report.pipelines
        assert artists.kind == EntityKind.ARTIST
        assert artists.error is not None and "HTTP 503" in artists.error
        assert tracks.ok
        assert tracks.records == 5
        assert stats_db.list_artist_current("global") == []
        assert len(stats_db.list_track_current("global")) == 5

    def test_oversized_count_is_rejected_not_fatal(
        self, stats_db, global_source, clock, artist_page, kworb_fixture, httpx_mock
    ):
        engine = RefreshEngine(stats_db, [global_source], clock=clock)
        httpx_mock.add_response(
            url=LISTENERS_URL,
            html=artist_page(
                (1, "Drake", "9" * 400, "+1"),
                (2, "Bruno Mars", "60,000,000", "9" * 400),
                ("9" * 5000, "Lady Gaga", "55,000,000", ""),
            ),
        )
        httpx_mock.add_response(url=GLOBAL_DAILY_URL, html=kworb_fixture("global_daily.html"))

        report = engine.refresh_all()

        assert report.ok
        artists, tracks = report.pipelines
        assert artists.records == 1
        assert artists.rejected == 2
        bruno = stats_db.get_artist_current(ArtistIdentity("Bruno Mars", "global"))
        assert bruno is not None
        assert bruno.listeners_delta is None
        assert tracks.records == 5

    def test_store_error_aborts_refresh(self, stats_db, global_source, clock, kworb_fixture, httpx_mock, monkeypatch):
        engine = RefreshEngine(stats_db, [global_source], clock=clock)
        httpx_mock.add_response(url=LISTENERS_URL, html=kworb_fixture("listeners.html"))

        def fail(*args, **kwargs):  # pyright: ignore[reportMissingParameterType]
            raise StoreError("disk full")

        monkeypatch.setattr(stats_db, "add_artist_snapshots", fail)

        with pytest.raises(StoreError):
            engine.refresh_all()

    def test_full_refresh_covers_every_pipeline(self, engine, stats_db, kworb_fixture, httpx_mock):
        httpx_mock.add_response(url=LISTENERS_URL, html=kworb_fixture("listeners.html"))
        httpx_mock.add_response(url=GLOBAL_DAILY_URL, html=kworb_fixture("global_daily.html"))
        httpx_mock.add_response(url=NL_DAILY_URL, html=kworb_fixture("nl_daily.html"))
        httpx_mock.add_response(url=NL_DAILY_URL, html=kworb_fixture("nl_daily.html"))

        report = engine.refresh_all()

        assert report.ok
        assert [(p.scope, p.kind) for p in report.pipelines] == [
            ("global", EntityKind.ARTIST),
            ("global", EntityKind.TRACK),
            ("nl", EntityKind.ARTIST),
            ("nl", EntityKind.TRACK),
        ]
        assert [a.name for a in stats_db.list_artist_current("nl")] == ["Joost", "Sabrina Carpenter"]
        assert len(stats_db.list_track_current("nl")) == 4
        assert report.finished_at is not None and report.finished_at > report.started_at
