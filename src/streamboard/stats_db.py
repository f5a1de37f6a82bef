from __future__ import annotations

import json
import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from streamboard.errors import StoreError
from streamboard.normalize import normalize_key

GLOBAL_SCOPE = "global"


@dataclass(frozen=True)
class ArtistIdentity:
    """Durable key of an artist within one chart scope."""

    name: str
    scope: str

    @property
    def key(self) -> str:
        return normalize_key(self.name)


@dataclass(frozen=True)
class TrackIdentity:
    """Durable key of a track within one chart scope."""

    title: str
    artist_name: str
    scope: str

    @property
    def key(self) -> str:
        return normalize_key(self.title)

    @property
    def artist_key(self) -> str:
        return normalize_key(self.artist_name)


@dataclass
class ArtistSnapshot:
    """Immutable observation of an artist in one refresh cycle."""

    name: str
    scope: str
    rank: int
    monthly_listeners: int
    listeners_delta: int | None
    created_at: float

    @property
    def identity(self) -> ArtistIdentity:
        return ArtistIdentity(self.name, self.scope)


@dataclass
class TrackSnapshot:
    """Immutable observation of a track in one refresh cycle."""

    title: str
    artist_name: str
    scope: str
    rank: int
    daily_streams: int
    total_streams: int | None
    created_at: float
    streams_delta: int | None = None

    @property
    def identity(self) -> TrackIdentity:
        return TrackIdentity(self.title, self.artist_name, self.scope)


@dataclass
class ArtistCurrent:
    """Latest reconciled state of an artist in one scope."""

    name: str
    scope: str
    rank: int
    monthly_listeners: int
    last_updated: float
    previous_rank: int | None = None
    rank_delta: int | None = None  # negative = moved up
    listeners_delta: int | None = None
    # Enrichment (write-once)
    artist_id: str | None = None
    image_url: str | None = None
    genres: list[str] | None = None
    spotify_url: str | None = None

    @property
    def identity(self) -> ArtistIdentity:
        return ArtistIdentity(self.name, self.scope)


@dataclass
class TrackCurrent:
    """Latest reconciled state of a track in one scope."""

    title: str
    artist_name: str
    scope: str
    rank: int
    daily_streams: int
    last_updated: float
    previous_rank: int | None = None
    rank_delta: int | None = None  # negative = moved up
    streams_delta: int | None = None
    total_streams: int | None = None
    # Enrichment (write-once)
    track_id: str | None = None
    image_url: str | None = None
    preview_url: str | None = None
    spotify_url: str | None = None

    @property
    def identity(self) -> TrackIdentity:
        return TrackIdentity(self.title, self.artist_name, self.scope)


class StatsDB:
    """
    SQLite store for chart snapshots and current state.

    Snapshot tables are append-only history. Current tables hold one row per
    (identity, scope); their enrichment columns are written at most once.
    Every `sqlite3.Error` surfaces as `StoreError`.
    """

    def __init__(self, db_path: Path):
        self.db_path = db_path
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _get_connection(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        return conn

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        """Connection that commits on success and always closes."""
        try:
            conn = self._get_connection()
        except sqlite3.Error as e:
            raise StoreError(f"Cannot open stats database {self.db_path}: {e}") from e
        try:
            yield conn
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            raise StoreError(f"Stats database error: {e}") from e
        finally:
            conn.close()

    def _init_db(self) -> None:
        with self._transaction() as conn:
            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS artist_snapshot (
                    snapshot_id INTEGER PRIMARY KEY AUTOINCREMENT,
                    artist_key TEXT NOT NULL,
                    artist_name TEXT NOT NULL,
                    scope TEXT NOT NULL,
                    rank INTEGER NOT NULL,
                    monthly_listeners INTEGER NOT NULL,
                    listeners_delta INTEGER,
                    created_at REAL NOT NULL
                );

                CREATE TABLE IF NOT EXISTS track_snapshot (
                    snapshot_id INTEGER PRIMARY KEY AUTOINCREMENT,
                    track_key TEXT NOT NULL,
                    artist_key TEXT NOT NULL,
                    track_name TEXT NOT NULL,
                    artist_name TEXT NOT NULL,
                    scope TEXT NOT NULL,
                    rank INTEGER NOT NULL,
                    daily_streams INTEGER NOT NULL,
                    streams_delta INTEGER,
                    total_streams INTEGER,
                    created_at REAL NOT NULL
                );

                CREATE TABLE IF NOT EXISTS artist_current (
                    artist_key TEXT NOT NULL,
                    scope TEXT NOT NULL,
                    artist_name TEXT NOT NULL,
                    rank INTEGER NOT NULL,
                    previous_rank INTEGER,
                    rank_delta INTEGER,
                    monthly_listeners INTEGER NOT NULL,
                    listeners_delta INTEGER,
                    artist_id TEXT,
                    image_url TEXT,
                    genres_json TEXT,
                    spotify_url TEXT,
                    last_updated REAL NOT NULL,
                    PRIMARY KEY (artist_key, scope)
                );

                CREATE TABLE IF NOT EXISTS track_current (
                    track_key TEXT NOT NULL,
                    artist_key TEXT NOT NULL,
                    scope TEXT NOT NULL,
                    track_name TEXT NOT NULL,
                    artist_name TEXT NOT NULL,
                    rank INTEGER NOT NULL,
                    previous_rank INTEGER,
                    rank_delta INTEGER,
                    daily_streams INTEGER NOT NULL,
                    streams_delta INTEGER,
                    total_streams INTEGER,
                    track_id TEXT,
                    image_url TEXT,
                    preview_url TEXT,
                    spotify_url TEXT,
                    last_updated REAL NOT NULL,
                    PRIMARY KEY (track_key, artist_key, scope)
                );

                CREATE INDEX IF NOT EXISTS idx_artist_snapshot_identity
                    ON artist_snapshot(artist_key, scope, created_at);
                CREATE INDEX IF NOT EXISTS idx_track_snapshot_identity
                    ON track_snapshot(track_key, artist_key, scope, created_at);
                CREATE INDEX IF NOT EXISTS idx_artist_current_rank ON artist_current(scope, rank);
                CREATE INDEX IF NOT EXISTS idx_track_current_rank ON track_current(scope, rank);
                CREATE INDEX IF NOT EXISTS idx_artist_current_id ON artist_current(artist_id);
                """
            )

    # Artist snapshots

    def add_artist_snapshots(self, snapshots: list[ArtistSnapshot]) -> None:
        """Append artist snapshots in a single transaction."""
        with self._transaction() as conn:
            conn.executemany(
                """
                INSERT INTO artist_snapshot (artist_key, artist_name, scope, rank,
                    monthly_listeners, listeners_delta, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                [
                    (
                        s.identity.key,
                        s.name,
                        s.scope,
                        s.rank,
                        s.monthly_listeners,
                        s.listeners_delta,
                        s.created_at,
                    )
                    for s in snapshots
                ],
            )

    def latest_artist_snapshot(
        self, identity: ArtistIdentity, before: float
    ) -> ArtistSnapshot | None:
        """Most recent snapshot of an artist created strictly before ``before``."""
        with self._transaction() as conn:
            row = conn.execute(
                """
                SELECT * FROM artist_snapshot
                WHERE artist_key = ? AND scope = ? AND created_at < ?
                ORDER BY created_at DESC, snapshot_id DESC
                LIMIT 1
                """,
                (identity.key, identity.scope, before),
            ).fetchone()
        return _artist_snapshot_from_row(row) if row else None

    def artist_history(self, identity: ArtistIdentity, since: float = 0.0) -> list[ArtistSnapshot]:
        """Snapshots of an artist created at or after ``since``, oldest first."""
        with self._transaction() as conn:
            rows = conn.execute(
                """
                SELECT * FROM artist_snapshot
                WHERE artist_key = ? AND scope = ? AND created_at >= ?
                ORDER BY created_at ASC, snapshot_id ASC
                """,
                (identity.key, identity.scope, since),
            ).fetchall()
        return [_artist_snapshot_from_row(row) for row in rows]

    # Artist current state

    def get_artist_current(self, identity: ArtistIdentity) -> ArtistCurrent | None:
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT * FROM artist_current WHERE artist_key = ? AND scope = ?",
                (identity.key, identity.scope),
            ).fetchone()
        return _artist_current_from_row(row) if row else None

    def upsert_artist_current(self, current: ArtistCurrent) -> None:
        """
        Insert or update an artist's current state.

        Rank and metric columns are always overwritten. Enrichment columns keep
        their stored value once set.
        """
        genres_json = json.dumps(current.genres) if current.genres is not None else None
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO artist_current (artist_key, scope, artist_name, rank, previous_rank,
                    rank_delta, monthly_listeners, listeners_delta, artist_id, image_url,
                    genres_json, spotify_url, last_updated)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(artist_key, scope) DO UPDATE SET
                    artist_name = excluded.artist_name,
                    rank = excluded.rank,
                    previous_rank = excluded.previous_rank,
                    rank_delta = excluded.rank_delta,
                    monthly_listeners = excluded.monthly_listeners,
                    listeners_delta = excluded.listeners_delta,
                    artist_id = COALESCE(artist_current.artist_id, excluded.artist_id),
                    image_url = COALESCE(artist_current.image_url, excluded.image_url),
                    genres_json = COALESCE(artist_current.genres_json, excluded.genres_json),
                    spotify_url = COALESCE(artist_current.spotify_url, excluded.spotify_url),
                    last_updated = excluded.last_updated
                """,
                (
                    current.identity.key,
                    current.scope,
                    current.name,
                    current.rank,
                    current.previous_rank,
                    current.rank_delta,
                    current.monthly_listeners,
                    current.listeners_delta,
                    current.artist_id,
                    current.image_url,
                    genres_json,
                    current.spotify_url,
                    current.last_updated,
                ),
            )

    def list_artist_current(self, scope: str, limit: int | None = None) -> list[ArtistCurrent]:
        """Current artists in a scope, ordered by rank."""
        with self._transaction() as conn:
            rows = conn.execute(
                "SELECT * FROM artist_current WHERE scope = ? ORDER BY rank ASC LIMIT ?",
                (scope, -1 if limit is None else limit),
            ).fetchall()
        return [_artist_current_from_row(row) for row in rows]

    def find_artist_current(self, artist_id_or_name: str) -> ArtistCurrent | None:
        """Look up an artist by external id or name, preferring the global scope."""
        with self._transaction() as conn:
            row = conn.execute(
                """
                SELECT * FROM artist_current
                WHERE artist_id = ? OR artist_key = ?
                ORDER BY CASE WHEN scope = ? THEN 0 ELSE 1 END, rank ASC
                LIMIT 1
                """,
                (artist_id_or_name, normalize_key(artist_id_or_name), GLOBAL_SCOPE),
            ).fetchone()
        return _artist_current_from_row(row) if row else None

    def purge_artist(self, identity: ArtistIdentity) -> int:
        """
        Delete an artist's current row and its whole snapshot history.

        Returns the number of snapshots deleted.
        """
        with self._transaction() as conn:
            conn.execute(
                "DELETE FROM artist_current WHERE artist_key = ? AND scope = ?",
                (identity.key, identity.scope),
            )
            cursor = conn.execute(
                "DELETE FROM artist_snapshot WHERE artist_key = ? AND scope = ?",
                (identity.key, identity.scope),
            )
            return cursor.rowcount

    # Track snapshots

    def add_track_snapshots(self, snapshots: list[TrackSnapshot]) -> None:
        """Append track snapshots in a single transaction."""
        with self._transaction() as conn:
            conn.executemany(
                """
                INSERT INTO track_snapshot (track_key, artist_key, track_name, artist_name, scope,
                    rank, daily_streams, streams_delta, total_streams, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                [
                    (
                        s.identity.key,
                        s.identity.artist_key,
                        s.title,
                        s.artist_name,
                        s.scope,
                        s.rank,
                        s.daily_streams,
                        s.streams_delta,
                        s.total_streams,
                        s.created_at,
                    )
                    for s in snapshots
                ],
            )

    def latest_track_snapshot(self, identity: TrackIdentity, before: float) -> TrackSnapshot | None:
        """Most recent snapshot of a track created strictly before ``before``."""
        with self._transaction() as conn:
            row = conn.execute(
                """
                SELECT * FROM track_snapshot
                WHERE track_key = ? AND artist_key = ? AND scope = ? AND created_at < ?
                ORDER BY created_at DESC, snapshot_id DESC
                LIMIT 1
                """,
                (identity.key, identity.artist_key, identity.scope, before),
            ).fetchone()
        return _track_snapshot_from_row(row) if row else None

    def track_history(self, identity: TrackIdentity, since: float = 0.0) -> list[TrackSnapshot]:
        """Snapshots of a track created at or after ``since``, oldest first."""
        with self._transaction() as conn:
            rows = conn.execute(
                """
                SELECT * FROM track_snapshot
                WHERE track_key = ? AND artist_key = ? AND scope = ? AND created_at >= ?
                ORDER BY created_at ASC, snapshot_id ASC
                """,
                (identity.key, identity.artist_key, identity.scope, since),
            ).fetchall()
        return [_track_snapshot_from_row(row) for row in rows]

    # Track current state

    def get_track_current(self, identity: TrackIdentity) -> TrackCurrent | None:
        with self._transaction() as conn:
            row = conn.execute(
                """
                SELECT * FROM track_current
                WHERE track_key = ? AND artist_key = ? AND scope = ?
                """,
                (identity.key, identity.artist_key, identity.scope),
            ).fetchone()
        return _track_current_from_row(row) if row else None

    def upsert_track_current(self, current: TrackCurrent) -> None:
        """Insert or update a track's current state; enrichment columns are write-once."""
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO track_current (track_key, artist_key, scope, track_name, artist_name,
                    rank, previous_rank, rank_delta, daily_streams, streams_delta, total_streams,
                    track_id, image_url, preview_url, spotify_url, last_updated)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(track_key, artist_key, scope) DO UPDATE SET
                    track_name = excluded.track_name,
                    artist_name = excluded.artist_name,
                    rank = excluded.rank,
                    previous_rank = excluded.previous_rank,
                    rank_delta = excluded.rank_delta,
                    daily_streams = excluded.daily_streams,
                    streams_delta = excluded.streams_delta,
                    total_streams = excluded.total_streams,
                    track_id = COALESCE(track_current.track_id, excluded.track_id),
                    image_url = COALESCE(track_current.image_url, excluded.image_url),
                    preview_url = COALESCE(track_current.preview_url, excluded.preview_url),
                    spotify_url = COALESCE(track_current.spotify_url, excluded.spotify_url),
                    last_updated = excluded.last_updated
                """,
                (
                    current.identity.key,
                    current.identity.artist_key,
                    current.scope,
                    current.title,
                    current.artist_name,
                    current.rank,
                    current.previous_rank,
                    current.rank_delta,
                    current.daily_streams,
                    current.streams_delta,
                    current.total_streams,
                    current.track_id,
                    current.image_url,
                    current.preview_url,
                    current.spotify_url,
                    current.last_updated,
                ),
            )

    def list_track_current(self, scope: str, limit: int | None = None) -> list[TrackCurrent]:
        """Current tracks in a scope, ordered by rank."""
        with self._transaction() as conn:
            rows = conn.execute(
                "SELECT * FROM track_current WHERE scope = ? ORDER BY rank ASC LIMIT ?",
                (scope, -1 if limit is None else limit),
            ).fetchall()
        return [_track_current_from_row(row) for row in rows]

    def purge_track(self, identity: TrackIdentity) -> int:
        """Delete a track's current row and snapshot history; returns snapshots deleted."""
        params = (identity.key, identity.artist_key, identity.scope)
        with self._transaction() as conn:
            conn.execute(
                "DELETE FROM track_current WHERE track_key = ? AND artist_key = ? AND scope = ?",
                params,
            )
            cursor = conn.execute(
                "DELETE FROM track_snapshot WHERE track_key = ? AND artist_key = ? AND scope = ?",
                params,
            )
            return cursor.rowcount

    # Refresh bookkeeping

    def last_updated(self) -> float | None:
        """Latest ``last_updated`` across both current tables, or None when empty."""
        with self._transaction() as conn:
            row = conn.execute(
                """
                SELECT MAX(ts) FROM (
                    SELECT MAX(last_updated) AS ts FROM artist_current
                    UNION ALL
                    SELECT MAX(last_updated) AS ts FROM track_current
                )
                """
            ).fetchone()
        return row[0] if row else None


def _artist_snapshot_from_row(row: sqlite3.Row) -> ArtistSnapshot:
    return ArtistSnapshot(
        name=row["artist_name"],
        scope=row["scope"],
        rank=row["rank"],
        monthly_listeners=row["monthly_listeners"],
        listeners_delta=row["listeners_delta"],
        created_at=row["created_at"],
    )


def _track_snapshot_from_row(row: sqlite3.Row) -> TrackSnapshot:
    return TrackSnapshot(
        title=row["track_name"],
        artist_name=row["artist_name"],
        scope=row["scope"],
        rank=row["rank"],
        daily_streams=row["daily_streams"],
        total_streams=row["total_streams"],
        streams_delta=row["streams_delta"],
        created_at=row["created_at"],
    )


def _artist_current_from_row(row: sqlite3.Row) -> ArtistCurrent:
    genres_json = row["genres_json"]
    return ArtistCurrent(
        name=row["artist_name"],
        scope=row["scope"],
        rank=row["rank"],
        previous_rank=row["previous_rank"],
        rank_delta=row["rank_delta"],
        monthly_listeners=row["monthly_listeners"],
        listeners_delta=row["listeners_delta"],
        artist_id=row["artist_id"],
        image_url=row["image_url"],
        genres=json.loads(genres_json) if genres_json else None,
        spotify_url=row["spotify_url"],
        last_updated=row["last_updated"],
    )


def _track_current_from_row(row: sqlite3.Row) -> TrackCurrent:
    return TrackCurrent(
        title=row["track_name"],
        artist_name=row["artist_name"],
        scope=row["scope"],
        rank=row["rank"],
        previous_rank=row["previous_rank"],
        rank_delta=row["rank_delta"],
        daily_streams=row["daily_streams"],
        streams_delta=row["streams_delta"],
        total_streams=row["total_streams"],
        track_id=row["track_id"],
        image_url=row["image_url"],
        preview_url=row["preview_url"],
        spotify_url=row["spotify_url"],
        last_updated=row["last_updated"],
    )


## Tests


def test_stats_db_init(tmp_path):
    db = StatsDB(tmp_path / "stats.sqlite")
    assert db.db_path.exists()

    conn = db._get_connection()
    tables = {row[0] for row in conn.execute("SELECT name FROM sqlite_master WHERE type='table'")}
    conn.close()

    assert {"artist_snapshot", "track_snapshot", "artist_current", "track_current"} <= tables


def test_identity_key_ignores_case_and_whitespace():
    assert ArtistIdentity("The  Weeknd ", "global").key == ArtistIdentity("the weeknd", "global").key
    assert ArtistIdentity("Drake", "global") != ArtistIdentity("Drake", "nl")


def test_enrichment_is_write_once(tmp_path):
    db = StatsDB(tmp_path / "stats.sqlite")
    db.upsert_artist_current(
        ArtistCurrent(
            name="Drake",
            scope="global",
            rank=5,
            monthly_listeners=80_000_000,
            last_updated=1.0,
            artist_id="sp-1",
            genres=["rap"],
        )
    )
    db.upsert_artist_current(
        ArtistCurrent(name="Drake", scope="global", rank=4, monthly_listeners=81_000_000, last_updated=2.0)
    )

    current = db.get_artist_current(ArtistIdentity("Drake", "global"))
    assert current is not None
    assert current.rank == 4
    assert current.artist_id == "sp-1"
    assert current.genres == ["rap"]
    assert current.last_updated == 2.0


def test_last_updated_empty(tmp_path):
    db = StatsDB(tmp_path / "stats.sqlite")
    assert db.last_updated() is None
