"""Pytest configuration and shared fixtures for streamboard tests."""

from __future__ import annotations

import itertools
from pathlib import Path

import pytest

from streamboard.metadata import ArtistMetadata, TrackMetadata

# =============================================================================
# Fixture Paths
# =============================================================================

FIXTURES_DIR = Path(__file__).parent / "fixtures"
CASSETTES_DIR = FIXTURES_DIR / "cassettes"


def load_fixture(scraper_type: str, fixture_name: str) -> str:
    """Load a fixture file as text."""
    fixture_path = CASSETTES_DIR / scraper_type / fixture_name
    if not fixture_path.exists():
        raise FileNotFoundError(f"Fixture not found: {fixture_path}")
    return fixture_path.read_text(encoding="utf-8")


# =============================================================================
# Store Fixtures
# =============================================================================


@pytest.fixture
def stats_db(tmp_path):
    """Provide an empty StatsDB in a temporary directory."""
    from streamboard.stats_db import StatsDB

    return StatsDB(tmp_path / "stats.sqlite")


@pytest.fixture
def clock():
    """Strictly increasing clock: 1000.0, 1001.0, ..."""
    ticks = itertools.count(1_000)
    return lambda: float(next(ticks))


# =============================================================================
# Test Doubles
# =============================================================================


class FakeResolver:
    """In-memory stand-in for MetadataResolver that records its calls."""

    client = None

    def __init__(self, misses: set[str] | None = None):
        self.misses = misses or set()
        self.artist_calls: list[str] = []
        self.track_calls: list[tuple[str, str]] = []

    @property
    def enabled(self) -> bool:
        return True

    def resolve_artist(self, name: str) -> ArtistMetadata | None:
        self.artist_calls.append(name)
        if name in self.misses:
            return None
        slug = name.lower().replace(" ", "-")
        return ArtistMetadata(
            external_id=f"sp-{slug}",
            image_url=f"https://i.scdn.co/image/{slug}",
            genres=["pop"],
            url=f"https://open.spotify.com/artist/{slug}",
        )

    def resolve_track(self, title: str, artist_name: str) -> TrackMetadata | None:
        self.track_calls.append((title, artist_name))
        if title in self.misses:
            return None
        slug = title.lower().replace(" ", "-")
        return TrackMetadata(
            external_id=f"sp-{slug}",
            image_url=f"https://i.scdn.co/image/{slug}",
            url=f"https://open.spotify.com/track/{slug}",
        )


@pytest.fixture
def fake_resolver():
    return FakeResolver()


# =============================================================================
# Fixture Loading Helpers
# =============================================================================


@pytest.fixture
def kworb_fixture():
    """Load kworb HTML fixture."""

    def _load(fixture_name: str) -> str:
        return load_fixture("kworb", fixture_name)

    return _load


@pytest.fixture
def artist_page():
    """Build a minimal listeners page from (rank, name, listeners, delta) rows."""

    def _build(*rows: tuple[int, str, str, str]) -> str:
        body = "".join(
            f"<tr><td>{rank}</td><td>{name}</td><td>{listeners}</td><td>{delta}</td></tr>"
            for rank, name, listeners, delta in rows
        )
        return f"<table><tr><th>Pos</th><th>Artist</th></tr>{body}</table>"

    return _build


@pytest.fixture
def track_page():
    """Build a minimal daily chart page from (rank, "Artist - Title", streams) rows."""

    def _build(*rows: tuple[int, str, str]) -> str:
        body = "".join(
            f"<tr><td>{rank}</td><td>=</td><td>{combined}</td><td>1</td><td>1</td><td></td>"
            f"<td>{streams}</td><td></td><td></td><td></td><td></td></tr>"
            for rank, combined, streams in rows
        )
        return f"<table><tr><th>Pos</th></tr>{body}</table>"

    return _build
