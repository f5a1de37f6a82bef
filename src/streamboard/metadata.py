"""
Best-effort metadata enrichment for chart entities.

Resolution is advisory: every miss, remote failure or missing credential
yields None and the entity is retried on a later refresh.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TypeVar

import httpx

from streamboard.errors import MetadataError
from streamboard.spotify import SpotifyArtist, SpotifyClient, SpotifyTrack

logger = logging.getLogger(__name__)

ARTIST_SEARCH_LIMIT = 1
TRACK_SEARCH_LIMIT = 5
TITLE_ONLY_SEARCH_LIMIT = 1

T = TypeVar("T", SpotifyArtist, SpotifyTrack)


@dataclass
class ArtistMetadata:
    external_id: str
    image_url: str | None = None
    genres: list[str] = field(default_factory=list)
    url: str | None = None


@dataclass
class TrackMetadata:
    external_id: str
    image_url: str | None = None
    preview_url: str | None = None
    url: str | None = None


def _pick(results: list[T], matches) -> T | None:
    """Exact case-insensitive match if any, else the top result."""
    for result in results:
        if matches(result):
            return result
    return results[0] if results else None


class MetadataResolver:
    """
    Looks up canonical ids, images and URLs for artists and tracks.

    Callers pace successive calls themselves (see `RefreshEngine`).
    """

    def __init__(self, client: SpotifyClient | None):
        self.client = client

    @property
    def enabled(self) -> bool:
        return self.client is not None and self.client.has_credentials

    def resolve_artist(self, name: str) -> ArtistMetadata | None:
        if not self.enabled:
            logger.debug(f"Metadata lookups disabled, skipping artist {name!r}")
            return None
        assert self.client is not None

        try:
            results = self.client.search_artists(name, limit=ARTIST_SEARCH_LIMIT)
        except (httpx.HTTPError, MetadataError, ValueError) as e:
            logger.warning(f"Artist lookup failed for {name!r}: {e}")
            return None

        wanted = name.casefold()
        artist = _pick(results, lambda a: a.name.casefold() == wanted)
        if artist is None:
            logger.info(f"No metadata match for artist {name!r}")
            return None

        return ArtistMetadata(
            external_id=artist.id,
            image_url=artist.image_url,
            genres=list(artist.genres),
            url=artist.url,
        )

    def resolve_track(self, title: str, artist_name: str) -> TrackMetadata | None:
        if not self.enabled:
            logger.debug(f"Metadata lookups disabled, skipping track {title!r}")
            return None
        assert self.client is not None

        wanted_title = title.casefold()
        wanted_artist = artist_name.casefold()

        try:
            results = self.client.search_tracks(
                f'track:"{title}" artist:"{artist_name}"', limit=TRACK_SEARCH_LIMIT
            )
            if not results:
                logger.debug(f"No scoped results for {title!r}, retrying by title only")
                results = self.client.search_tracks(title, limit=TITLE_ONLY_SEARCH_LIMIT)
        except (httpx.HTTPError, MetadataError, ValueError) as e:
            logger.warning(f"Track lookup failed for {title!r} by {artist_name!r}: {e}")
            return None

        track = _pick(
            results,
            lambda t: t.name.casefold() == wanted_title
            and any(a.casefold() == wanted_artist for a in t.artist_names or [t.artist_name]),
        )
        if track is None:
            logger.info(f"No metadata match for track {title!r} by {artist_name!r}")
            return None

        return TrackMetadata(
            external_id=track.id,
            image_url=track.image_url,
            preview_url=track.preview_url,
            url=track.url,
        )


## Tests


def test_resolver_without_client_returns_none():
    resolver = MetadataResolver(None)
    assert resolver.resolve_artist("Drake") is None
    assert resolver.resolve_track("Song", "Drake") is None


def test_pick_prefers_exact_match():
    results = [
        SpotifyArtist(id="1", name="Drake Bell"),
        SpotifyArtist(id="2", name="drake"),
    ]
    assert _pick(results, lambda a: a.name.casefold() == "drake").id == "2"
    assert _pick(results, lambda a: False).id == "1"
    assert _pick([], lambda a: True) is None
