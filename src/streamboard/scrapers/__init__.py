"""
Chart scrapers for the refresh pipeline.

Each scraper fetches one kworb.net page and parses its table into validated
raw records.
"""

from __future__ import annotations

__all__ = [
    "ChartScraper",
    "EntityKind",
    "ParseResult",
    "RawArtistRecord",
    "RawTrackRecord",
    "KworbArtistScraper",
    "KworbTrackScraper",
    "KworbAggregatedArtistScraper",
    "KworbArtistDetailsScraper",
    "SCRAPER_REGISTRY",
]

from streamboard.scrapers.base import (
    ChartScraper,
    EntityKind,
    ParseResult,
    RawArtistRecord,
    RawTrackRecord,
)
from streamboard.scrapers.kworb import (
    KworbAggregatedArtistScraper,
    KworbArtistDetailsScraper,
    KworbArtistScraper,
    KworbTrackScraper,
)

# Registry mapping (entity kind, aggregated?) to scraper classes
SCRAPER_REGISTRY: dict[tuple[EntityKind, bool], type[ChartScraper]] = {
    (EntityKind.ARTIST, False): KworbArtistScraper,
    (EntityKind.ARTIST, True): KworbAggregatedArtistScraper,
    (EntityKind.TRACK, False): KworbTrackScraper,
}
