"""Backup job payload schemas.

The job row stores its working state as a free-form JSON map that several
phases merge into. These models give that map a versioned shape: reads go
through ``JobPayload.from_raw`` which keeps unknown keys and replaces invalid
or missing ones with defaults instead of failing.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError

PAYLOAD_SCHEMA_VERSION = 1

LifecycleState = Literal[
    "queued",
    "preparing",
    "scraping",
    "saving",
    "media",
    "finalizing",
    "cleanup",
    "completed",
    "cancelling",
    "cancelled",
    "failed",
]


class PayloadModel(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)


class ScrapeTargets(PayloadModel):
    profile: bool = True
    tweets: bool = True
    replies: bool = True
    followers: bool = False
    following: bool = False

    @property
    def wants_timeline(self) -> bool:
        return self.tweets or self.replies

    @property
    def wants_social_graph(self) -> bool:
        return self.followers or self.following


class RetentionMarker(PayloadModel):
    mode: Literal["account", "guest_30d"] = "account"
    expires_at: Optional[datetime] = None


class SnapshotScrapeRequest(PayloadModel):
    kind: Literal["snapshot_scrape"] = "snapshot_scrape"
    username: str
    timeline_items: Optional[int] = Field(default=None, ge=0)
    social_graph_max_items: Optional[int] = Field(default=None, ge=0)
    targets: ScrapeTargets = Field(default_factory=ScrapeTargets)
    include_media: bool = True
    include_profile_media: bool = True
    retention: RetentionMarker = Field(default_factory=RetentionMarker)


class ArchiveUploadRequest(PayloadModel):
    kind: Literal["archive_upload"] = "archive_upload"
    staged_path: str
    username: Optional[str] = None
    file_name: str = "archive.zip"
    file_size: int = Field(default=0, ge=0)
    retention: RetentionMarker = Field(default_factory=RetentionMarker)


JobRequest = Union[SnapshotScrapeRequest, ArchiveUploadRequest]


class LiveMetrics(PayloadModel):
    phase: str = "queued"
    tweets_fetched: int = 0
    replies_fetched: int = 0
    followers_fetched: int = 0
    following_fetched: int = 0
    media_processed: int = 0
    media_total: int = 0
    api_cost_usd: float = 0.0
    updated_at: Optional[datetime] = None


class ProviderRuns(PayloadModel):
    provider: Optional[str] = None
    timeline_run_id: Optional[str] = None
    social_graph_run_id: Optional[str] = None

    def run_ids(self) -> list[str]:
        return [run_id for run_id in (self.timeline_run_id, self.social_graph_run_id) if run_id]


class ApiBudget(PayloadModel):
    monthly_spent_usd: float = 0.0
    monthly_limit_usd: float = 0.0
    monthly_remaining_usd: float = 0.0
    per_run_limit_usd: float = 0.0
    effective_run_budget_usd: float = 0.0
    timeline_items: int = 0
    social_graph_items: int = 0
    estimated_timeline_cost_usd: float = 0.0
    estimated_social_graph_cost_usd: float = 0.0
    estimated_max_run_cost_usd: float = 0.0


class JobPayload(PayloadModel):
    schema_version: int = PAYLOAD_SCHEMA_VERSION
    lifecycle_state: Optional[LifecycleState] = None

    request: Optional[JobRequest] = Field(default=None, discriminator="kind")

    cancel_requested: bool = False
    cancel_requested_at: Optional[datetime] = None
    cancel_reason: Optional[str] = None

    partial_backup_id: Optional[str] = None
    live_metrics: LiveMetrics = Field(default_factory=LiveMetrics)
    provider_runs: ProviderRuns = Field(default_factory=ProviderRuns)
    api_budget: Optional[ApiBudget] = None

    reminder_email: Optional[str] = None
    reminder_delivery_status: Optional[Literal["sent", "failed", "skipped"]] = None

    queue_timeout: bool = False
    queue_timed_out_at: Optional[datetime] = None

    @classmethod
    def from_raw(cls, raw: Any) -> "JobPayload":
        """Validate a stored payload, degrading bad or missing keys to defaults."""
        data = dict(raw) if isinstance(raw, dict) else {}
        try:
            return cls.model_validate(data)
        except ValidationError as exc:
            bad_keys = {err["loc"][0] for err in exc.errors() if err.get("loc")}
            cleaned = {k: v for k, v in data.items() if k not in bad_keys}
            try:
                return cls.model_validate(cleaned)
            except ValidationError:
                return cls()

    @property
    def snapshot_request(self) -> SnapshotScrapeRequest | None:
        return self.request if isinstance(self.request, SnapshotScrapeRequest) else None

    @property
    def archive_request(self) -> ArchiveUploadRequest | None:
        return self.request if isinstance(self.request, ArchiveUploadRequest) else None


def dump_payload_part(model: BaseModel) -> dict[str, Any]:
    """JSON-safe dict for merging a sub-structure into the stored payload."""
    return model.model_dump(mode="json", exclude_none=False)
