"""Apify-backed scrape provider.

Drives two Apify actors over the REST API:

- the tweet scraper for the timeline axis (tweets and replies, plus the
  profile taken from the author block of the first item);
- the user scraper for the social graph axis (one run for followers, one
  for following).

Each run is started, then polled until it reaches a terminal status while
its default dataset is paged incrementally so progress can be reported.
"""

from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional

import httpx

from socialvault.services.pricing import PricingModel, estimate_cost, sum_costs
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


logger = logging.getLogger(__name__)

DATASET_PAGE_SIZE = 1000
TERMINAL_RUN_STATUSES = {"SUCCEEDED", "FAILED", "ABORTED", "TIMED-OUT"}


def _utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _int(value: Any) -> int:
    try:
        return max(0, int(value))
    except (TypeError, ValueError):
        return 0


def _first(*values: Any) -> Any:
    for value in values:
        if value not in (None, ""):
            return value
    return None


def normalize_media(item: dict[str, Any]) -> list[dict[str, Any]]:
    entities = item.get("extendedEntities") or item.get("extended_entities") or {}
    media_items = entities.get("media") or item.get("media") or []
    normalized: list[dict[str, Any]] = []
    for media in media_items:
        if not isinstance(media, dict):
            continue
        kind = media.get("type") or "photo"
        preview = _first(media.get("media_url_https"), media.get("media_url"))
        source = preview
        if kind in ("video", "animated_gif"):
            variants = (media.get("video_info") or {}).get("variants") or []
            mp4s = [v for v in variants if isinstance(v, dict) and v.get("content_type") == "video/mp4" and v.get("url")]
            if mp4s:
                source = max(mp4s, key=lambda v: _int(v.get("bitrate")))["url"]
        if not source:
            continue
        normalized.append(
            {
                "url": media.get("expanded_url") or media.get("url") or source,
                "type": kind,
                "media_url": source,
                "media_url_https": preview or source,
            }
        )
    return normalized


def normalize_tweet(item: dict[str, Any], username: str) -> dict[str, Any]:
    author = item.get("author") or {}
    return {
        "id": str(_first(item.get("id"), item.get("id_str")) or ""),
        "text": _first(item.get("fullText"), item.get("full_text"), item.get("text")) or "",
        "created_at": _first(item.get("createdAt"), item.get("created_at")),
        "retweet_count": _int(_first(item.get("retweetCount"), item.get("retweet_count"))),
        "favorite_count": _int(_first(item.get("likeCount"), item.get("favorite_count"))),
        "reply_count": _int(_first(item.get("replyCount"), item.get("reply_count"))),
        "in_reply_to_status_id": _first(item.get("inReplyToId"), item.get("in_reply_to_status_id_str")),
        "in_reply_to_screen_name": _first(item.get("inReplyToUsername"), item.get("in_reply_to_screen_name")),
        "tweet_url": _first(item.get("url"), item.get("twitterUrl")),
        "author": {
            "username": _first(author.get("userName"), author.get("screen_name")) or username,
            "name": author.get("name") or "",
            "profileImageUrl": author.get("profilePicture"),
        },
        "media": normalize_media(item),
    }


def normalize_user(item: dict[str, Any]) -> dict[str, Any]:
    username = _first(item.get("userName"), item.get("username"), item.get("screen_name"))
    return {
        "user_id": str(_first(item.get("id"), item.get("id_str")) or ""),
        "username": username,
        "name": _first(item.get("name"), item.get("full_name")),
        "userLink": item.get("url") or (f"https://x.com/{username}" if username else None),
        "profileImageUrl": _first(item.get("profilePicture"), item.get("profile_image_url_https")),
    }


def is_reply(item: dict[str, Any]) -> bool:
    return bool(item.get("isReply") or item.get("inReplyToId") or item.get("in_reply_to_status_id_str"))


class ApifyScrapeProvider(ScrapeProvider):
    name = "apify"

    def __init__(
        self,
        *,
        api_token: str | None,
        pricing: PricingModel,
        base_url: str = "https://api.apify.com",
        timeline_actor_id: str = "apidojo~tweet-scraper",
        social_graph_actor_id: str = "apidojo~twitter-user-scraper",
        poll_interval_seconds: float = 3.0,
        run_timeout_seconds: float = 900.0,
        http_timeout_seconds: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.api_token = api_token
        self.pricing = pricing
        self.base_url = base_url.rstrip("/")
        self.timeline_actor_id = timeline_actor_id.replace("/", "~")
        self.social_graph_actor_id = social_graph_actor_id.replace("/", "~")
        self.poll_interval_seconds = poll_interval_seconds
        self.run_timeout_seconds = run_timeout_seconds
        self.http_timeout_seconds = http_timeout_seconds
        self._transport = transport
        self._sleep = sleep

    @classmethod
    def from_settings(cls, settings, **kwargs) -> "ApifyScrapeProvider":
        return cls(
            api_token=settings.APIFY_API_TOKEN,
            pricing=PricingModel.from_settings(settings),
            base_url=settings.APIFY_BASE_URL,
            timeline_actor_id=settings.APIFY_TIMELINE_ACTOR_ID,
            social_graph_actor_id=settings.APIFY_SOCIAL_GRAPH_ACTOR_ID,
            poll_interval_seconds=settings.APIFY_POLL_INTERVAL_SECONDS,
            run_timeout_seconds=settings.APIFY_RUN_TIMEOUT_SECONDS,
            http_timeout_seconds=settings.APIFY_HTTP_TIMEOUT_SECONDS,
            **kwargs,
        )

    def is_configured(self) -> bool:
        return bool(self.api_token and self.api_token.strip())

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            timeout=self.http_timeout_seconds,
            headers={"Authorization": f"Bearer {self.api_token}"},
            transport=self._transport,
        )

    # ------------------------------------------------------------------
    # REST helpers
    # ------------------------------------------------------------------

    async def _start_run(self, client: httpx.AsyncClient, actor_id: str, run_input: dict[str, Any]) -> dict[str, Any]:
        try:
            response = await client.post(f"/v2/acts/{actor_id}/runs", json=run_input)
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise ProviderError(f"Apify run could not be started for {actor_id}: {e}") from e
        return response.json().get("data") or {}

    async def _run_status(self, client: httpx.AsyncClient, run_id: str) -> str:
        try:
            response = await client.get(f"/v2/actor-runs/{run_id}")
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise ProviderError(f"Apify run status unavailable for {run_id}: {e}") from e
        return str((response.json().get("data") or {}).get("status") or "")

    async def _dataset_page(self, client: httpx.AsyncClient, dataset_id: str, offset: int) -> list[dict[str, Any]]:
        try:
            response = await client.get(
                f"/v2/datasets/{dataset_id}/items",
                params={"offset": offset, "limit": DATASET_PAGE_SIZE, "clean": "true", "format": "json"},
            )
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise ProviderError(f"Apify dataset read failed for {dataset_id}: {e}") from e
        items = response.json()
        return [item for item in items if isinstance(item, dict)] if isinstance(items, list) else []

    async def _abort(self, client: httpx.AsyncClient, run_id: str) -> bool:
        try:
            response = await client.post(f"/v2/actor-runs/{run_id}/abort")
            response.raise_for_status()
            return True
        except httpx.HTTPError as e:
            logger.warning("[Apify] Failed to abort run %s: %s", run_id, e)
            return False

    async def abort_runs(self, run_ids: list[str]) -> int:
        if not self.is_configured():
            return 0
        aborted = 0
        async with self._client() as client:
            for run_id in run_ids:
                if run_id and await self._abort(client, run_id):
                    aborted += 1
        return aborted

    async def _collect_run(
        self,
        client: httpx.AsyncClient,
        *,
        actor_id: str,
        run_input: dict[str, Any],
        options: ScrapeOptions,
        on_started: Callable[[str], Awaitable[None]],
        on_items: Callable[[list[dict[str, Any]]], Awaitable[None]],
    ) -> tuple[list[dict[str, Any]], str]:
        run = await self._start_run(client, actor_id, run_input)
        run_id = str(run.get("id") or "")
        dataset_id = str(run.get("defaultDatasetId") or "")
        if not run_id or not dataset_id:
            raise ProviderError(f"Apify returned an incomplete run for {actor_id}")

        try:
            await on_started(run_id)
            return await self._poll_run(client, run_id, dataset_id, options, on_items)
        except Exception:
            # Stop the billed run before propagating.
            await self._abort(client, run_id)
            raise

    async def _poll_run(
        self,
        client: httpx.AsyncClient,
        run_id: str,
        dataset_id: str,
        options: ScrapeOptions,
        on_items: Callable[[list[dict[str, Any]]], Awaitable[None]],
    ) -> tuple[list[dict[str, Any]], str]:
        items: list[dict[str, Any]] = []
        deadline = time.monotonic() + self.run_timeout_seconds
        status = ""
        while True:
            if options.should_cancel is not None and await options.should_cancel():
                raise ProviderRunCancelledError()

            status = await self._run_status(client, run_id)
            page = await self._dataset_page(client, dataset_id, len(items))
            while page:
                items.extend(page)
                await on_items(items)
                if len(page) < DATASET_PAGE_SIZE:
                    break
                page = await self._dataset_page(client, dataset_id, len(items))

            if status in TERMINAL_RUN_STATUSES:
                break
            if time.monotonic() > deadline:
                logger.warning("[Apify] Run %s exceeded %ss; aborting", run_id, self.run_timeout_seconds)
                await self._abort(client, run_id)
                status = "TIMED-OUT"
                break
            await self._sleep(self.poll_interval_seconds)

        return items, status

    # ------------------------------------------------------------------
    # Scrape
    # ------------------------------------------------------------------

    async def scrape_all(self, handle: str, timeline_items: int, options: ScrapeOptions) -> ScrapeResult:
        if not self.is_configured():
            raise ProviderConfigurationError("apify is not configured. Please set up API keys.")

        username = handle.strip().lstrip("@")
        targets = options.targets
        progress = ScrapeProgress(phase="scraping")
        partial_reasons: list[str] = []

        tweets: list[dict[str, Any]] = []
        replies: list[dict[str, Any]] = []
        followers: list[dict[str, Any]] = []
        following: list[dict[str, Any]] = []
        profile_source: dict[str, Any] = {}

        async def report() -> None:
            progress.tweets_fetched = len(tweets)
            progress.replies_fetched = len(replies)
            progress.followers_fetched = len(followers)
            progress.following_fetched = len(following)
            progress.api_cost_usd = self._running_cost(len(tweets) + len(replies), len(followers) + len(following))
            if options.on_progress is not None:
                await options.on_progress(progress)

        logger.info("[Apify] Starting scrape for @%s (timeline=%s)", username, timeline_items)

        async with self._client() as client:
            if timeline_items > 0:
                progress.phase = "timeline"

                async def timeline_started(run_id: str) -> None:
                    progress.timeline_run_id = run_id
                    await report()

                async def timeline_items_seen(raw_items: list[dict[str, Any]]) -> None:
                    tweets.clear()
                    replies.clear()
                    for raw in raw_items:
                        target = replies if is_reply(raw) else tweets
                        target.append(normalize_tweet(raw, username))
                    if raw_items and not profile_source:
                        profile_source.update(raw_items[0].get("author") or {})
                    await report()

                timeline_raw, status = await self._collect_run(
                    client,
                    actor_id=self.timeline_actor_id,
                    run_input={
                        "searchTerms": [f"from:{username}"],
                        "maxItems": int(timeline_items),
                        "sort": "Latest",
                    },
                    options=options,
                    on_started=timeline_started,
                    on_items=timeline_items_seen,
                )
                if status != "SUCCEEDED":
                    if not timeline_raw:
                        raise ProviderError(f"Timeline scrape failed (Apify status {status or 'unknown'})")
                    partial_reasons.append("run_failed:timeline")

                # Selected targets decide what is kept, the query fetches both.
                if not targets.tweets:
                    tweets.clear()
                if not targets.replies:
                    replies.clear()

            graph_limit = max(0, int(options.social_graph_max_items or 0))
            graph_lists = [name for name, wanted in (("followers", targets.followers), ("following", targets.following)) if wanted]
            for index, list_name in enumerate(graph_lists):
                progress.phase = "social_graph"
                per_list = graph_limit // len(graph_lists) + (graph_limit % len(graph_lists) if index == 0 else 0)
                if per_list <= 0:
                    continue
                bucket = followers if list_name == "followers" else following

                async def graph_started(run_id: str) -> None:
                    progress.social_graph_run_id = run_id
                    await report()

                async def graph_items_seen(raw_items: list[dict[str, Any]], bucket=bucket) -> None:
                    bucket[:] = [normalize_user(raw) for raw in raw_items]
                    await report()

                graph_raw, status = await self._collect_run(
                    client,
                    actor_id=self.social_graph_actor_id,
                    run_input={
                        "twitterHandles": [username],
                        "getFollowers": list_name == "followers",
                        "getFollowing": list_name == "following",
                        "maxItems": per_list,
                    },
                    options=options,
                    on_started=graph_started,
                    on_items=graph_items_seen,
                )
                if status != "SUCCEEDED":
                    partial_reasons.append(f"run_failed:{list_name}")

        metadata = self._build_metadata(
            username=username,
            profile=profile_source,
            timeline_requested=int(timeline_items),
            timeline_received=len(tweets) + len(replies),
            graph_requested=graph_limit,
            followers=len(followers),
            following=len(following),
            partial_reasons=partial_reasons,
            wants_graph=bool(graph_lists),
        )
        cost = ScrapeCost(
            provider=self.name,
            total_cost=self._running_cost(len(tweets) + len(replies), len(followers) + len(following)),
            tweets_count=len(tweets),
            breakdown={
                "timeline": estimate_cost(len(tweets) + len(replies), self.pricing.timeline),
                "social_graph": estimate_cost(len(followers) + len(following), self.pricing.social_graph),
            },
        )
        logger.info(
            "[Apify] Scrape for @%s done: tweets=%s replies=%s followers=%s following=%s cost=$%.2f",
            username,
            len(tweets),
            len(replies),
            len(followers),
            len(following),
            cost.total_cost,
        )
        return ScrapeResult(
            tweets=tweets,
            replies=replies,
            followers=followers,
            following=following,
            cost=cost,
            metadata=metadata,
        )

    def _running_cost(self, timeline_count: int, graph_count: int) -> float:
        return sum_costs(
            estimate_cost(timeline_count, self.pricing.timeline),
            estimate_cost(graph_count, self.pricing.social_graph),
        )

    def _build_metadata(
        self,
        *,
        username: str,
        profile: dict[str, Any],
        timeline_requested: int,
        timeline_received: int,
        graph_requested: int,
        followers: int,
        following: int,
        partial_reasons: list[str],
        wants_graph: bool,
    ) -> ScrapeMetadata:
        statuses = _int(_first(profile.get("statusesCount"), profile.get("statuses_count")))
        profile_followers = _int(_first(profile.get("followers"), profile.get("followers_count")))
        profile_following = _int(_first(profile.get("following"), profile.get("friends_count")))

        reasons = list(partial_reasons)
        timeline_limit_hit = timeline_requested > 0 and timeline_received >= timeline_requested and statuses > timeline_received
        if timeline_limit_hit:
            reasons.append("timeline_limit_hit")
        elif timeline_requested > 0 and timeline_received < min(timeline_requested, statuses or timeline_requested):
            reasons.append("timeline_incomplete")

        graph_received = followers + following
        graph_available = profile_followers + profile_following
        social_graph_limit_hit = (
            wants_graph and graph_requested > 0 and graph_received >= graph_requested and graph_available > graph_received
        )
        if social_graph_limit_hit:
            reasons.append("social_graph_limit_hit")

        return ScrapeMetadata(
            username=_first(profile.get("userName"), username),
            scraped_at=_utcnow_iso(),
            is_partial=bool(reasons),
            partial_reasons=reasons,
            timeline_limit_hit=timeline_limit_hit,
            social_graph_limit_hit=social_graph_limit_hit,
            tweets_requested=timeline_requested,
            tweets_received=timeline_received,
            display_name=profile.get("name"),
            profile_bio=profile.get("description"),
            profile_image_url=profile.get("profilePicture"),
            cover_image_url=profile.get("coverPicture"),
            profile_followers_count=profile_followers,
            profile_following_count=profile_following,
            profile_statuses_count=statuses,
        )


def build_scrape_provider(settings, **kwargs) -> ScrapeProvider:
    name = (settings.SCRAPE_PROVIDER or "apify").strip().lower()
    if name == "apify":
        return ApifyScrapeProvider.from_settings(settings, **kwargs)
    raise ValueError(f"Unsupported SCRAPE_PROVIDER: {settings.SCRAPE_PROVIDER}")
