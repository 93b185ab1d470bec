"""Scrape provider implementations."""

from socialvault.services.scrape_providers.base import (
    ProviderConfigurationError,
    ProviderError,
    ProviderRunCancelledError,
    ScrapeCost,
    ScrapeMetadata,
    ScrapeOptions,
    ScrapeProgress,
    ScrapeProvider,
    ScrapeResult,
)
from socialvault.services.scrape_providers.apify import ApifyScrapeProvider, build_scrape_provider

__all__ = [
    "ApifyScrapeProvider",
    "ProviderConfigurationError",
    "ProviderError",
    "ProviderRunCancelledError",
    "ScrapeCost",
    "ScrapeMetadata",
    "ScrapeOptions",
    "ScrapeProgress",
    "ScrapeProvider",
    "ScrapeResult",
    "build_scrape_provider",
]
