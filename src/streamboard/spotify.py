"""
Spotify Web API client for artist and track searches.

Authenticates with the client credentials flow. The bearer token lives in an
injectable `TokenCache` so one token is shared by every search in a refresh
cycle and refreshed shortly before it expires.
"""

from __future__ import annotations

import logging
import os
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

import httpx

from streamboard.errors import MetadataError

logger = logging.getLogger(__name__)

DEFAULT_REFRESH_MARGIN_S = 300.0


@dataclass(frozen=True)
class AccessToken:
    """Bearer token with its absolute expiry (epoch seconds)."""

    value: str
    expires_at: float


class TokenCache:
    """
    Cached bearer credential with transparent refresh.

    `get()` returns the cached token while it is more than `refresh_margin_s`
    away from expiry and fetches a replacement otherwise. Refresh is "fetch and
    replace": concurrent callers may each fetch a token, and the one expiring
    last is kept.
    """

    def __init__(
        self,
        fetch_token: Callable[[], AccessToken],
        refresh_margin_s: float = DEFAULT_REFRESH_MARGIN_S,
        clock: Callable[[], float] = time.time,
    ):
        self._fetch_token = fetch_token
        self.refresh_margin_s = refresh_margin_s
        self._clock = clock
        self._token: AccessToken | None = None
        self._lock = threading.Lock()

    def _is_fresh(self, token: AccessToken | None) -> bool:
        return token is not None and self._clock() < token.expires_at - self.refresh_margin_s

    def get(self) -> str:
        token = self._token
        if self._is_fresh(token):
            assert token is not None
            return token.value

        fresh = self._fetch_token()
        logger.debug("Fetched new access token")

        with self._lock:
            current = self._token
            if current is None or fresh.expires_at >= current.expires_at:
                self._token = fresh
            return self._token.value

    def invalidate(self) -> None:
        with self._lock:
            self._token = None


@dataclass
class SpotifyArtist:
    """Spotify artist entity."""

    id: str
    name: str
    genres: list[str] = field(default_factory=list)
    image_url: str | None = None
    url: str | None = None
    popularity: int | None = None


@dataclass
class SpotifyTrack:
    """Spotify track entity."""

    id: str
    name: str
    artist_name: str
    artist_names: list[str] = field(default_factory=list)
    album_name: str | None = None
    image_url: str | None = None
    preview_url: str | None = None
    url: str | None = None
    popularity: int | None = None


def _first_image(images: list[dict[str, Any]] | None) -> str | None:
    # Spotify lists images largest first
    if images and images[0]:
        return images[0].get("url")
    return None


def _search_items(data: Any, kind: str) -> list[dict[str, Any]]:
    """Non-empty items of a search response; null containers count as no results."""
    if not isinstance(data, dict):
        raise MetadataError(f"Expected a JSON object from search, got {type(data).__name__}")
    container = data.get(kind) or {}
    return [item for item in container.get("items") or [] if item]


class SpotifyClient:
    """Search client for enriching chart entries with Spotify ids, genres and art."""

    BASE_URL = "https://api.spotify.com/v1"
    AUTH_URL = "https://accounts.spotify.com/api/token"

    def __init__(
        self,
        client_id: str | None = None,
        client_secret: str | None = None,
        timeout_s: float = 10.0,
        refresh_margin_s: float = DEFAULT_REFRESH_MARGIN_S,
        token_cache: TokenCache | None = None,
    ):
        """
        Args:
            client_id: Application id, falling back to SPOTIFY_CLIENT_ID
            client_secret: Application secret, falling back to SPOTIFY_CLIENT_SECRET
            timeout_s: Per-request timeout
            refresh_margin_s: Refresh the token this long before it expires
            token_cache: Shared token cache; one is created when omitted
        """
        self.client_id = client_id or os.getenv("SPOTIFY_CLIENT_ID")
        self.client_secret = client_secret or os.getenv("SPOTIFY_CLIENT_SECRET")

        if bool(self.client_id) ^ bool(self.client_secret):
            missing = "client_secret" if self.client_id else "client_id"
            raise ValueError(f"Spotify client_id and client_secret must be provided together ({missing} is missing)")

        self.token_cache = token_cache or TokenCache(
            self._fetch_access_token, refresh_margin_s=refresh_margin_s
        )
        self._client = httpx.Client(timeout=timeout_s)

    @property
    def has_credentials(self) -> bool:
        return bool(self.client_id and self.client_secret)

    def _fetch_access_token(self) -> AccessToken:
        """Request a new token from the accounts service."""
        if not self.has_credentials:
            raise ValueError("Spotify credentials are not configured")
        assert self.client_id is not None and self.client_secret is not None

        response = self._client.post(
            self.AUTH_URL,
            auth=(self.client_id, self.client_secret),
            data={"grant_type": "client_credentials"},
        )
        response.raise_for_status()

        payload = response.json()
        try:
            return AccessToken(
                value=str(payload["access_token"]),
                expires_at=time.time() + float(payload.get("expires_in", 3600)),
            )
        except (AttributeError, KeyError, TypeError, ValueError) as e:
            raise MetadataError(f"Malformed token response: {e!r}") from e

    def _request(self, endpoint: str, params: dict[str, str] | None = None) -> dict[str, Any]:
        """Make authenticated request to Spotify API, retrying once on a rejected token."""
        url = f"{self.BASE_URL}/{endpoint}"

        response = self._client.get(
            url, params=params, headers={"Authorization": f"Bearer {self.token_cache.get()}"}
        )
        if response.status_code == 401:
            logger.info("Spotify rejected cached token, fetching a new one")
            self.token_cache.invalidate()
            response = self._client.get(
                url, params=params, headers={"Authorization": f"Bearer {self.token_cache.get()}"}
            )
        response.raise_for_status()
        return response.json()

    def search_artists(self, query: str, limit: int = 1) -> list[SpotifyArtist]:
        """
        Search for artists.

        Args:
            query: Free-form query string
            limit: Max results (default 1)

        Returns:
            List of SpotifyArtist objects, best match first

        Raises:
            MetadataError: If the response does not have the search result shape
        """
        data = self._request("search", {"q": query, "type": "artist", "limit": str(limit)})

        try:
            return [
                SpotifyArtist(
                    id=item["id"],
                    name=item.get("name") or "",
                    genres=list(item.get("genres") or []),
                    image_url=_first_image(item.get("images")),
                    url=(item.get("external_urls") or {}).get("spotify"),
                    popularity=item.get("popularity"),
                )
                for item in _search_items(data, "artists")
            ]
        except (AttributeError, KeyError, TypeError) as e:
            raise MetadataError(f"Malformed artist search response for {query!r}: {e!r}") from e

    def search_tracks(self, query: str, limit: int = 5) -> list[SpotifyTrack]:
        """
        Search for tracks.

        Args:
            query: Free-form query string (field filters such as track:"X" allowed)
            limit: Max results (default 5)

        Returns:
            List of SpotifyTrack objects, best match first

        Raises:
            MetadataError: If the response does not have the search result shape
        """
        data = self._request("search", {"q": query, "type": "track", "limit": str(limit)})

        results = []
        try:
            for item in _search_items(data, "tracks"):
                artist_names = [a["name"] for a in item.get("artists") or [] if a and a.get("name")]
                album = item.get("album") or {}
                results.append(
                    SpotifyTrack(
                        id=item["id"],
                        name=item.get("name") or "",
                        artist_name=artist_names[0] if artist_names else "Unknown",
                        artist_names=artist_names,
                        album_name=album.get("name"),
                        image_url=_first_image(album.get("images")),
                        preview_url=item.get("preview_url"),
                        url=(item.get("external_urls") or {}).get("spotify"),
                        popularity=item.get("popularity"),
                    )
                )
        except (AttributeError, KeyError, TypeError) as e:
            raise MetadataError(f"Malformed track search response for {query!r}: {e!r}") from e

        return results

    def close(self) -> None:
        """Close the HTTP client."""
        self._client.close()

    def __enter__(self) -> SpotifyClient:
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()


## Tests


def test_token_cache_reuses_fresh_token():
    calls = []

    def fetch() -> AccessToken:
        calls.append(1)
        return AccessToken(value=f"tok-{len(calls)}", expires_at=10_000.0)

    cache = TokenCache(fetch, refresh_margin_s=300.0, clock=lambda: 1_000.0)
    assert cache.get() == "tok-1"
    assert cache.get() == "tok-1"
    assert len(calls) == 1


def test_token_cache_refreshes_inside_margin():
    now = [0.0]
    calls = []

    def fetch() -> AccessToken:
        calls.append(1)
        return AccessToken(value=f"tok-{len(calls)}", expires_at=now[0] + 3600)

    cache = TokenCache(fetch, refresh_margin_s=300.0, clock=lambda: now[0])
    assert cache.get() == "tok-1"

    now[0] = 3600 - 299  # inside the 5 minute margin
    assert cache.get() == "tok-2"


def test_token_cache_invalidate():
    calls = []

    def fetch() -> AccessToken:
        calls.append(1)
        return AccessToken(value="tok", expires_at=10_000.0)

    cache = TokenCache(fetch, clock=lambda: 0.0)
    cache.get()
    cache.invalidate()
    cache.get()
    assert len(calls) == 2


def test_spotify_artist_dataclass():
    artist = SpotifyArtist(id="abc123", name="Test Artist", genres=["pop"])
    assert artist.genres == ["pop"]
    assert artist.image_url is None
