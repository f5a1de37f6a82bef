__all__ = (
    "Config",
    "StatsDB",
    "StatsService",
    "RefreshEngine",
    "RefreshGuard",
    "RefreshReport",
    "PipelineResult",
    "RefreshTrigger",
    "TriggerMode",
    "MetadataResolver",
    "SpotifyClient",
    "TokenCache",
    # Errors
    "StreamboardError",
    "FetchError",
    "StoreError",
    "AuthorizationError",
)

from streamboard.config import Config
from streamboard.errors import AuthorizationError, FetchError, StoreError, StreamboardError
from streamboard.metadata import MetadataResolver
from streamboard.refresh import PipelineResult, RefreshEngine, RefreshGuard, RefreshReport
from streamboard.spotify import SpotifyClient, TokenCache
from streamboard.stats import StatsService
from streamboard.stats_db import StatsDB
from streamboard.trigger import RefreshTrigger, TriggerMode
