"""
Snapshot Scrape Orchestrator
============================

Drives one ``snapshot_scrape`` job from ``queued`` to a terminal state:

    preparing -> scraping -> saving -> media -> finalizing -> completed
                                                          \\-> cancelled | failed

The lifecycle sub-state lives in the job payload; the job's own status only
moves ``queued -> processing -> completed | failed``. Cancellation is
cooperative: every phase starts with a ledger check, the provider polls
``should_cancel`` between pages and the media pipeline checks every few
items. A cancelled run deletes the partial backup; a failed run keeps it.
"""

from __future__ import annotations

import logging
import time
from datetime import datetime, timezone
from typing import Any, Callable, Optional

import httpx
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from socialvault.core.config import settings as default_settings
from socialvault.models.backup import BACKUP_TYPE_SNAPSHOT, SOURCE_SCRAPE, Backup
from socialvault.schemas.backup_jobs import (
    JobPayload,
    LiveMetrics,
    ProviderRuns,
    SnapshotScrapeRequest,
    dump_payload_part,
)
from socialvault.services.api_usage_service import ApiUsageService
from socialvault.services.job_cancellation import is_cancellation_error
from socialvault.services.job_context import JobContext
from socialvault.services.live_metrics import LiveMetricsSync, live_message
from socialvault.services.media_pipeline import MediaPipeline, profile_media_items, timeline_media_items
from socialvault.services.notification_service import BackupNotifier
from socialvault.services.object_store import ObjectStore
from socialvault.services.pricing import PricingModel
from socialvault.services.scrape_planning import ScrapeLimits, ScrapePlan, ScrapeRequestError, plan_snapshot_scrape
from socialvault.services.scrape_providers.base import (
    ProviderConfigurationError,
    ScrapeOptions,
    ScrapeProgress,
    ScrapeProvider,
    ScrapeResult,
)
from socialvault.services.storage_usage_service import StorageUsageService


logger = logging.getLogger(__name__)

COMPLETED_MESSAGE = "Snapshot backup completed successfully."
STARTED_MESSAGE = "In progress"


def _utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def build_profile(result: ScrapeResult) -> dict[str, Any]:
    meta = result.metadata
    return {
        "username": meta.username,
        "displayName": meta.display_name or meta.username,
        "description": meta.profile_bio,
        "bio": meta.profile_bio,
        "profileImageUrl": meta.profile_image_url,
        "coverImageUrl": meta.cover_image_url,
        "followersCount": meta.profile_followers_count,
        "followingCount": meta.profile_following_count,
        "statusesCount": meta.profile_statuses_count,
    }


def count_media(items: list[dict[str, Any]]) -> int:
    return sum(
        1
        for item in items
        for media in item.get("media") or []
        if isinstance(media, dict)
    )


def build_snapshot_data(
    request: SnapshotScrapeRequest,
    result: ScrapeResult,
    profile: Optional[dict[str, Any]],
    plan: ScrapePlan,
) -> dict[str, Any]:
    """Backup payload for a finished scrape, with a zeroed storage breakdown."""
    meta = result.metadata
    scraped_at = meta.scraped_at or _utcnow_iso()
    return {
        "tweets": result.tweets,
        "replies": result.replies,
        "followers": result.followers,
        "following": result.following,
        "likes": [],
        "direct_messages": [],
        "profile": profile,
        "stats": {
            "tweets": len(result.tweets),
            "replies": len(result.replies),
            "followers": max(len(result.followers), meta.profile_followers_count if request.targets.followers else 0),
            "following": max(len(result.following), meta.profile_following_count if request.targets.following else 0),
            "likes": 0,
            "dms": 0,
            "media_files": 0,
        },
        "scrape": {
            "provider": result.cost.provider,
            "total_cost": result.cost.total_cost,
            "cost_breakdown": dict(result.cost.breakdown),
            "scraped_at": scraped_at,
            "is_partial": meta.is_partial,
            "partial_reasons": list(meta.partial_reasons),
            "timeline_limit_hit": meta.timeline_limit_hit,
            "social_graph_limit_hit": meta.social_graph_limit_hit,
            "tweets_requested": meta.tweets_requested,
            "tweets_received": meta.tweets_received,
            "targets": dump_payload_part(request.targets),
            "budget": dump_payload_part(plan.to_api_budget()),
        },
        "retention": request.retention.model_dump(mode="json", exclude_none=True),
        "storage": {
            "payload_bytes": 0,
            "media_bytes": 0,
            "archive_bytes": 0,
            "total_bytes": 0,
            "media_files": 0,
            "updated_at": scraped_at,
        },
    }


class SnapshotScrapeService:
    """Runs ``snapshot_scrape`` jobs. All collaborators are injected."""

    def __init__(
        self,
        *,
        session_factory: async_sessionmaker[AsyncSession],
        object_store: ObjectStore,
        provider: ScrapeProvider,
        http_client: httpx.AsyncClient,
        notifier: BackupNotifier | None = None,
        settings=None,
        limits: ScrapeLimits | None = None,
        pricing: PricingModel | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.session_factory = session_factory
        self.object_store = object_store
        self.provider = provider
        self.http_client = http_client
        self.settings = settings or default_settings
        self.notifier = notifier or BackupNotifier.from_settings(self.settings)
        self.limits = limits or ScrapeLimits.from_settings(self.settings)
        self.pricing = pricing or PricingModel.from_settings(self.settings)
        self.clock = clock

    async def run(self, job_id: str) -> None:
        ctx = JobContext(
            self.session_factory,
            job_id,
            queue_timeout_seconds=self.settings.BACKUP_JOB_QUEUE_TIMEOUT_SECONDS,
        )
        job = await ctx.load()
        if job.is_terminal:
            logger.info("[Snapshot] Job %s already %s; skipping", job_id, job.status)
            return

        user_id = job.user_id
        request = JobPayload.from_raw(job.payload).snapshot_request
        runs = ProviderRuns(provider=self.provider.name)
        backup_id: Optional[str] = None

        async def persist_metrics(snapshot: LiveMetrics) -> None:
            snapshot.updated_at = datetime.now(timezone.utc)
            await ctx.progress(
                metrics.progress,
                live_message(snapshot),
                {"lifecycle_state": snapshot.phase, "live_metrics": dump_payload_part(snapshot)},
            )

        metrics = LiveMetricsSync(persist_metrics, clock=self.clock)

        try:
            await ctx.mark_processing(8, STARTED_MESSAGE, {"lifecycle_state": "preparing"})
            await metrics.sync(force=True, phase="preparing")
            await ctx.ensure_active()

            if request is None:
                raise ScrapeRequestError("Snapshot job has no scrape request")
            if not self.provider.is_configured():
                raise ProviderConfigurationError(
                    f"{self.provider.name} is not configured. Please set up API keys."
                )
            plan = await self._plan(user_id, request)
            await ctx.merge({"api_budget": dump_payload_part(plan.to_api_budget())})

            await metrics.sync(force=True, phase="scraping")
            await ctx.ensure_active()

            async def on_progress(event: ScrapeProgress) -> None:
                new_run = False
                if event.timeline_run_id and event.timeline_run_id != runs.timeline_run_id:
                    runs.timeline_run_id = event.timeline_run_id
                    new_run = True
                if event.social_graph_run_id and event.social_graph_run_id != runs.social_graph_run_id:
                    runs.social_graph_run_id = event.social_graph_run_id
                    new_run = True
                if new_run:
                    # Persist run ids before the cancellation check so an abort can reach them.
                    await ctx.merge({"provider_runs": dump_payload_part(runs)})
                await ctx.ensure_active()
                await metrics.sync(
                    force=new_run,
                    tweets_fetched=event.tweets_fetched,
                    replies_fetched=event.replies_fetched,
                    followers_fetched=event.followers_fetched,
                    following_fetched=event.following_fetched,
                    api_cost_usd=event.api_cost_usd,
                )

            async def should_cancel() -> bool:
                async with ctx.ledger() as jobs:
                    return await jobs.is_cancellation_requested(job_id)

            result = await self.provider.scrape_all(
                request.username,
                plan.timeline_items,
                ScrapeOptions(
                    targets=request.targets,
                    social_graph_max_items=plan.social_graph_items,
                    should_cancel=should_cancel,
                    on_progress=on_progress,
                ),
            )
            await self._record_usage(user_id, job_id, result)
            await ctx.ensure_active()

            profile = build_profile(result) if request.targets.profile else None
            timeline = result.tweets + result.replies
            media_total = 0
            if request.include_media:
                media_total = count_media(timeline)
                if request.include_profile_media and profile:
                    media_total += sum(1 for key in ("profileImageUrl", "coverImageUrl") if profile.get(key))

            await metrics.sync(
                force=True,
                phase="saving",
                tweets_fetched=len(result.tweets),
                replies_fetched=len(result.replies),
                followers_fetched=len(result.followers),
                following_fetched=len(result.following),
                api_cost_usd=result.cost.total_cost,
                media_total=media_total,
            )

            data = build_snapshot_data(request, result, profile, plan)
            backup_id = await ctx.save_backup(
                user_id=user_id,
                backup_type=BACKUP_TYPE_SNAPSHOT,
                source=SOURCE_SCRAPE,
                data=data,
            )
            await ctx.ensure_active()

            if media_total > 0:
                await metrics.sync(force=True, phase="media")
                items = []
                if request.include_profile_media and profile:
                    items.extend(profile_media_items(user_id, backup_id, profile))
                items.extend(timeline_media_items(user_id, timeline))

                async def on_item_done() -> None:
                    await metrics.sync(media_processed=metrics.metrics.media_processed + 1)

                pipeline = MediaPipeline(
                    session_factory=self.session_factory,
                    object_store=self.object_store,
                    http_client=self.http_client,
                    user_id=user_id,
                    backup_id=backup_id,
                    worker_count=self.settings.MEDIA_PIPELINE_WORKERS,
                    url_prefix=self.settings.MEDIA_URL_PREFIX,
                )
                media = await pipeline.run(items, ensure_active=ctx.ensure_active, on_item_done=on_item_done)
                data["stats"]["media_files"] = media.processed
                # The pipeline rewrote media URLs inside these lists.
                await self._write_back(backup_id, data)

            await metrics.sync(force=True, phase="finalizing")
            await ctx.ensure_active()

            async with self.session_factory() as session:
                await StorageUsageService(session).recalculate_backup(backup_id)

            await self._notify(ctx, backup_id)

            await ctx.merge(
                {
                    "lifecycle_state": "completed",
                    "partial_backup_id": None,
                    "live_metrics": dump_payload_part(metrics.metrics),
                    "provider_runs": dump_payload_part(ProviderRuns(provider=self.provider.name)),
                }
            )
            await ctx.mark_completed(backup_id, COMPLETED_MESSAGE)
            logger.info("[Snapshot] Job %s completed with backup %s", job_id, backup_id)

        except Exception as e:
            cleared_runs = {"provider_runs": dump_payload_part(ProviderRuns(provider=self.provider.name))}
            if is_cancellation_error(e):
                logger.info("[Snapshot] Cancellation requested for %s. Cleaning up...", job_id)
                await self._abort_runs(runs)
                await ctx.finish_cancelled(
                    object_store=self.object_store,
                    backup_id=backup_id,
                    user_id=user_id,
                    payload=cleared_runs,
                )
                return
            logger.exception("[Snapshot] Job %s failed", job_id)
            await ctx.finish_failed(e, cleared_runs)

    async def _plan(self, user_id: str, request: SnapshotScrapeRequest) -> ScrapePlan:
        async with self.session_factory() as session:
            spent = await ApiUsageService(session).monthly_spent(user_id)
        return plan_snapshot_scrape(request, monthly_spent_usd=spent, limits=self.limits, pricing=self.pricing)

    async def _record_usage(self, user_id: str, job_id: str, result: ScrapeResult) -> None:
        items = len(result.tweets) + len(result.replies) + len(result.followers) + len(result.following)
        async with self.session_factory() as session:
            await ApiUsageService(session).record_usage(
                user_id=user_id,
                job_id=job_id,
                provider=result.cost.provider,
                operation="snapshot_scrape",
                items=items,
                cost_usd=result.cost.total_cost,
            )

    async def _abort_runs(self, runs: ProviderRuns) -> None:
        run_ids = runs.run_ids()
        if not run_ids:
            return
        try:
            await self.provider.abort_runs(run_ids)
        except Exception as e:
            logger.warning("[Snapshot] Failed to abort provider runs %s: %s", run_ids, e)

    async def _write_back(self, backup_id: str, data: dict[str, Any]) -> None:
        async with self.session_factory() as session:
            backup = await session.get(Backup, backup_id)
            if backup is None:
                raise ScrapeRequestError(f"Backup {backup_id} disappeared during media processing")
            backup.data = {
                **(backup.data or {}),
                "tweets": data["tweets"],
                "replies": data["replies"],
                "profile": data["profile"],
                "stats": data["stats"],
            }
            await session.commit()

    async def _notify(self, ctx: JobContext, backup_id: str) -> None:
        """Send the backup-ready message once, if the user asked for one."""
        payload = JobPayload.from_raw((await ctx.load()).payload)
        if not payload.reminder_email or payload.reminder_delivery_status == "sent":
            return
        try:
            result = await self.notifier.send_backup_ready(email=payload.reminder_email, backup_id=backup_id)
        except Exception as e:
            logger.warning("[Snapshot] Notification for backup %s raised: %s", backup_id, e)
            await ctx.merge({"reminder_delivery_status": "failed"})
            return
        await ctx.merge({"reminder_delivery_status": result.status})
        if result.status != "sent":
            logger.warning("[Snapshot] Notification for backup %s %s: %s", backup_id, result.status, result.error)
