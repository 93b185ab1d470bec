"""Scrape provider contract.

A provider fetches a public account's timeline, social graph and profile
from an external service. Long-running calls report progress through an
async callback and poll ``should_cancel`` between pages so a cancelled job
stops paying for the run.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional

from socialvault.schemas.backup_jobs import ScrapeTargets


class ProviderError(RuntimeError):
    pass


class ProviderConfigurationError(ProviderError):
    pass


class ProviderRunCancelledError(ProviderError):
    def __init__(self, message: str = "Provider run cancelled by user"):
        super().__init__(message)


@dataclass
class ScrapeProgress:
    phase: str
    tweets_fetched: int = 0
    replies_fetched: int = 0
    followers_fetched: int = 0
    following_fetched: int = 0
    api_cost_usd: float = 0.0
    timeline_run_id: Optional[str] = None
    social_graph_run_id: Optional[str] = None


ProgressCallback = Callable[[ScrapeProgress], Awaitable[None]]
CancelPoll = Callable[[], Awaitable[bool]]


@dataclass
class ScrapeOptions:
    targets: ScrapeTargets = field(default_factory=ScrapeTargets)
    social_graph_max_items: int = 0
    should_cancel: Optional[CancelPoll] = None
    on_progress: Optional[ProgressCallback] = None


@dataclass
class ScrapeCost:
    provider: str
    total_cost: float
    tweets_count: int = 0
    breakdown: dict[str, float] = field(default_factory=dict)


@dataclass
class ScrapeMetadata:
    username: str
    scraped_at: str
    is_partial: bool = False
    partial_reasons: list[str] = field(default_factory=list)
    timeline_limit_hit: bool = False
    social_graph_limit_hit: bool = False
    tweets_requested: int = 0
    tweets_received: int = 0
    display_name: Optional[str] = None
    profile_bio: Optional[str] = None
    profile_image_url: Optional[str] = None
    cover_image_url: Optional[str] = None
    profile_followers_count: int = 0
    profile_following_count: int = 0
    profile_statuses_count: int = 0


@dataclass
class ScrapeResult:
    tweets: list[dict[str, Any]]
    replies: list[dict[str, Any]]
    followers: list[dict[str, Any]]
    following: list[dict[str, Any]]
    cost: ScrapeCost
    metadata: ScrapeMetadata


class ScrapeProvider(ABC):
    name: str = "unknown"

    @abstractmethod
    def is_configured(self) -> bool:
        ...

    @abstractmethod
    async def scrape_all(self, handle: str, timeline_items: int, options: ScrapeOptions) -> ScrapeResult:
        """Fetch everything ``options.targets`` selects for one account.

        Raises:
            ProviderConfigurationError: credentials missing
            ProviderRunCancelledError: ``should_cancel`` turned true mid-run
            ProviderError: the external service failed
        """

    async def abort_runs(self, run_ids: list[str]) -> int:
        """Best-effort abort of external runs; returns how many were aborted."""
        return 0
