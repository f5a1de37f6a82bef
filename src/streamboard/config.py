from __future__ import annotations

import os
import tomllib
from enum import StrEnum
from pathlib import Path

from pydantic import BaseModel, Field, model_validator

from streamboard.scrapers.base import DEFAULT_USER_AGENT
from streamboard.scrapers.kworb import DEFAULT_MIN_DAILY_STREAMS, DEFAULT_MIN_MONTHLY_LISTENERS

KWORB_LISTENERS_URL = "https://kworb.net/spotify/listeners.html"
KWORB_DAILY_URL = "https://kworb.net/spotify/country/{country}_daily.html"


class DatabaseConfig(BaseModel):
    """Database configuration."""

    path: Path = Field(default=Path("streamboard.sqlite"))


class SpotifyConfig(BaseModel):
    """Spotify API configuration."""

    # API credentials (read from env vars if not provided)
    client_id: str | None = Field(default=None)
    client_secret: str | None = Field(default=None)

    timeout_s: float = Field(default=10.0, ge=1.0)
    token_refresh_margin_s: float = Field(default=300.0, ge=0)
    rate_limit: float = Field(default=10.0, gt=0)  # req/sec


class SourceConfig(BaseModel):
    """One chart scope and the pages it is scraped from."""

    scope: str
    tracks_url: str
    # Artist chart page; when absent the artist chart is aggregated from tracks
    artists_url: str | None = Field(default=None)
    artist_limit: int = Field(default=500, ge=1)
    track_limit: int = Field(default=100, ge=1)
    min_monthly_listeners: int = Field(default=DEFAULT_MIN_MONTHLY_LISTENERS, ge=0)
    min_daily_streams: int = Field(default=DEFAULT_MIN_DAILY_STREAMS, ge=0)

    @property
    def aggregate_artists(self) -> bool:
        return self.artists_url is None

    @model_validator(mode="after")
    def _normalize_scope(self) -> SourceConfig:
        self.scope = self.scope.strip().lower()
        return self


def default_sources() -> list[SourceConfig]:
    return [
        SourceConfig(
            scope="global",
            artists_url=KWORB_LISTENERS_URL,
            tracks_url=KWORB_DAILY_URL.format(country="global"),
        ),
        # The Dutch chart sits an order of magnitude below global volumes
        SourceConfig(
            scope="nl",
            tracks_url=KWORB_DAILY_URL.format(country="nl"),
            min_daily_streams=10_000,
        ),
    ]


class RefreshConfig(BaseModel):
    """Refresh pipeline configuration."""

    fetch_timeout_s: float = Field(default=30.0, ge=1.0)
    user_agent: str = Field(default=DEFAULT_USER_AGENT)
    enrich: bool = Field(default=True)


class Environment(StrEnum):
    """Deployment environment; production requires the admin secret."""

    DEVELOPMENT = "development"
    PRODUCTION = "production"


class TriggerConfig(BaseModel):
    """Refresh trigger configuration."""

    environment: Environment = Field(default=Environment.DEVELOPMENT)
    admin_secret: str | None = Field(default=None)


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = Field(default="WARNING")  # DEBUG, INFO, WARNING, ERROR
    format: str = Field(default="%(asctime)s - %(name)s - %(levelname)s - %(message)s")


class Config(BaseModel):
    """
    Main configuration for streamboard.

    Loads from TOML file with optional environment variable overrides.
    """

    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    spotify: SpotifyConfig = Field(default_factory=SpotifyConfig)
    refresh: RefreshConfig = Field(default_factory=RefreshConfig)
    trigger: TriggerConfig = Field(default_factory=TriggerConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    sources: list[SourceConfig] = Field(default_factory=default_sources)

    def source(self, scope: str) -> SourceConfig | None:
        wanted = scope.strip().lower()
        return next((s for s in self.sources if s.scope == wanted), None)

    @classmethod
    def load(cls, config_path: Path | None = None) -> Config:
        """
        Load configuration from TOML file with environment variable overrides.

        Environment variables take precedence and follow the pattern:
        STREAMBOARD_<SECTION>_<KEY> (e.g., STREAMBOARD_DATABASE_PATH).
        Credentials use their conventional names: SPOTIFY_CLIENT_ID,
        SPOTIFY_CLIENT_SECRET and ADMIN_SECRET.

        All values are gathered into a single dictionary first, then validated
        by Pydantic to ensure consistent type checking and coercion.
        """
        config_dict: dict[str, object] = {}

        if config_path and config_path.exists():
            config_dict = tomllib.loads(config_path.read_text())

        config_dict = cls._merge_env_overrides(config_dict)
        return cls.model_validate(config_dict)

    @classmethod
    def _merge_env_overrides(cls, config_dict: dict[str, object]) -> dict[str, object]:
        """
        Merge environment variable overrides into config dictionary.

        Returns a new dictionary with env vars applied, ready for Pydantic validation.
        """
        env_prefix = "STREAMBOARD_"

        def section(name: str) -> dict[str, object]:
            value = config_dict.setdefault(name, {})
            if not isinstance(value, dict):
                value = {}
                config_dict[name] = value
            return value

        database = section("database")
        if db_path := os.getenv(f"{env_prefix}DATABASE_PATH"):
            database["path"] = db_path

        spotify = section("spotify")
        if spotify_id := os.getenv("SPOTIFY_CLIENT_ID"):
            spotify["client_id"] = spotify_id
        if spotify_secret := os.getenv("SPOTIFY_CLIENT_SECRET"):
            spotify["client_secret"] = spotify_secret
        if spotify_timeout := os.getenv(f"{env_prefix}SPOTIFY_TIMEOUT_S"):
            spotify["timeout_s"] = spotify_timeout
        if spotify_margin := os.getenv(f"{env_prefix}SPOTIFY_TOKEN_REFRESH_MARGIN_S"):
            spotify["token_refresh_margin_s"] = spotify_margin
        if spotify_rate := os.getenv(f"{env_prefix}SPOTIFY_RATE_LIMIT"):
            spotify["rate_limit"] = spotify_rate

        refresh = section("refresh")
        if fetch_timeout := os.getenv(f"{env_prefix}REFRESH_FETCH_TIMEOUT_S"):
            refresh["fetch_timeout_s"] = fetch_timeout
        if user_agent := os.getenv(f"{env_prefix}REFRESH_USER_AGENT"):
            refresh["user_agent"] = user_agent
        if enrich := os.getenv(f"{env_prefix}REFRESH_ENRICH"):
            refresh["enrich"] = enrich.lower() in ("true", "1", "yes")

        trigger = section("trigger")
        if environment := os.getenv(f"{env_prefix}TRIGGER_ENVIRONMENT"):
            trigger["environment"] = environment.lower()
        if admin_secret := os.getenv("ADMIN_SECRET"):
            trigger["admin_secret"] = admin_secret

        logging_config = section("logging")
        if log_level := os.getenv(f"{env_prefix}LOGGING_LEVEL"):
            logging_config["level"] = log_level
        if log_format := os.getenv(f"{env_prefix}LOGGING_FORMAT"):
            logging_config["format"] = log_format

        return config_dict


## Tests


def test_config_defaults():
    config = Config()
    assert config.database.path == Path("streamboard.sqlite")
    assert config.spotify.token_refresh_margin_s == 300.0
    assert config.trigger.environment == Environment.DEVELOPMENT
    assert [s.scope for s in config.sources] == ["global", "nl"]


def test_default_sources():
    config = Config()
    global_source = config.source("global")
    nl_source = config.source("NL")

    assert global_source is not None and not global_source.aggregate_artists
    assert global_source.artist_limit == 500
    assert global_source.track_limit == 100
    assert nl_source is not None and nl_source.aggregate_artists
    assert nl_source.tracks_url.endswith("/nl_daily.html")


def test_config_from_dict():
    config = Config.model_validate(
        {
            "database": {"path": "/tmp/stats.sqlite"},
            "sources": [{"scope": " DE ", "tracks_url": "https://example.com/de.html"}],
        }
    )
    assert config.database.path == Path("/tmp/stats.sqlite")
    assert [s.scope for s in config.sources] == ["de"]


def test_config_env_overrides(
    monkeypatch,  # pyright: ignore[reportMissingParameterType,reportUnknownParameterType]
):
    monkeypatch.setenv("STREAMBOARD_DATABASE_PATH", "/custom/stats.sqlite")  # pyright: ignore[reportUnknownMemberType]
    monkeypatch.setenv("STREAMBOARD_TRIGGER_ENVIRONMENT", "Production")  # pyright: ignore[reportUnknownMemberType]
    monkeypatch.setenv("ADMIN_SECRET", "s3cret")  # pyright: ignore[reportUnknownMemberType]

    config = Config.load()
    assert config.database.path == Path("/custom/stats.sqlite")
    assert config.trigger.environment == Environment.PRODUCTION
    assert config.trigger.admin_secret == "s3cret"


def test_config_load_nonexistent_file():
    config = Config.load(Path("/nonexistent/config.toml"))
    assert config.refresh.enrich is True
