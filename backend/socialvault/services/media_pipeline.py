"""Media pipeline.

Copies every media reference found in a backup into owned storage:
download from the source host, upload to the object store, record one
``MediaFile`` row per (backup, path), then rewrite the reference in place
to the internal media URL.

A fixed pool of workers pulls from a shared cursor. Individual failures are
counted and skipped; only cancellation stops the pool.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Iterable, Optional
from urllib.parse import parse_qs, quote, urlparse

import httpx
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from socialvault.models.media_file import MediaFile
from socialvault.services.job_cancellation import CancellationCheck
from socialvault.services.object_store import ObjectStore


logger = logging.getLogger(__name__)

DEFAULT_MEDIA_WORKERS = 6
MAX_MEDIA_WORKERS = 16
CANCEL_CHECK_EVERY = 4

MEDIA_TYPE_SCRAPED = "scraped_media"
MEDIA_TYPE_PROFILE = "profile_media"
MEDIA_TYPE_ARCHIVE = "archive_file"

PROFILE_IMAGE_FILE_NAME = "profile_photo_400x400.jpg"
COVER_IMAGE_FILE_NAME = "cover_photo.jpg"


def resolve_worker_count(configured: Any, item_count: int) -> int:
    try:
        workers = int(configured)
    except (TypeError, ValueError):
        workers = DEFAULT_MEDIA_WORKERS
    if workers <= 0:
        workers = DEFAULT_MEDIA_WORKERS
    workers = max(1, min(MAX_MEDIA_WORKERS, workers))
    return max(1, min(workers, item_count)) if item_count > 0 else 0


def mime_type_for_media(kind: Optional[str]) -> str:
    if kind == "photo":
        return "image/jpeg"
    if kind == "video":
        return "video/mp4"
    return "image/gif"


def normalize_storage_path(path: str) -> str:
    return path.strip().lstrip("/")


def build_internal_media_url(storage_path: str, prefix: str = "/api/platforms/twitter/media") -> str:
    return f"{prefix}?path={quote(normalize_storage_path(storage_path), safe='')}"


def media_path_from_internal_url(url: str, prefix: str = "/api/platforms/twitter/media") -> Optional[str]:
    """Inverse of ``build_internal_media_url``; None for external URLs."""
    if not isinstance(url, str) or not url.startswith(prefix):
        return None
    values = parse_qs(urlparse(url).query).get("path")
    if not values:
        return None
    return normalize_storage_path(values[0]) or None


async def signed_media_url(
    object_store: ObjectStore,
    url: str,
    *,
    expires_in: int,
    prefix: str = "/api/platforms/twitter/media",
) -> Optional[str]:
    """Short-lived direct URL for an internal media reference; None for external URLs."""
    path = media_path_from_internal_url(url, prefix)
    if path is None:
        return None
    return await object_store.create_signed_get_url(path, expires_in=expires_in)


def file_name_from_url(url: str, fallback: str) -> str:
    name = urlparse(url).path.rsplit("/", 1)[-1]
    return name or fallback


@dataclass
class MediaWorkItem:
    source_url: Optional[str]
    storage_path: str
    file_name: str
    media_type: str
    target: dict[str, Any]
    url_fields: tuple[str, ...]
    mime_type: Optional[str] = None
    parent_id: Optional[str] = None
    # Bytes already in hand; skips the download.
    content: Optional[bytes] = None
    # Reads the bytes on demand (archive entries).
    load_content: Optional[Callable[[], Awaitable[bytes]]] = None


@dataclass
class MediaPipelineResult:
    total: int = 0
    processed: int = 0
    errors: int = 0
    skipped: int = 0
    uploaded_paths: list[str] = field(default_factory=list)


def timeline_media_items(user_id: str, timeline: Iterable[dict[str, Any]]) -> list[MediaWorkItem]:
    items: list[MediaWorkItem] = []
    for tweet in timeline:
        for media in tweet.get("media") or []:
            if not isinstance(media, dict):
                continue
            source = media.get("media_url") or media.get("media_url_https")
            tweet_id = str(tweet.get("id") or "")
            file_name = file_name_from_url(source or "", f"{tweet_id}-{media.get('type') or 'media'}")
            items.append(
                MediaWorkItem(
                    source_url=source,
                    storage_path=f"{user_id}/scraped_media/{file_name}",
                    file_name=file_name,
                    media_type=MEDIA_TYPE_SCRAPED,
                    mime_type=mime_type_for_media(media.get("type")),
                    target=media,
                    url_fields=("media_url", "media_url_https"),
                    parent_id=tweet_id or None,
                )
            )
    return items


def profile_media_items(user_id: str, backup_id: str, profile: dict[str, Any]) -> list[MediaWorkItem]:
    items: list[MediaWorkItem] = []
    for url_field, file_name in (
        ("profileImageUrl", PROFILE_IMAGE_FILE_NAME),
        ("coverImageUrl", COVER_IMAGE_FILE_NAME),
    ):
        source = profile.get(url_field)
        if not source:
            continue
        items.append(
            MediaWorkItem(
                source_url=source,
                storage_path=f"{user_id}/profile_media/{backup_id}/{file_name}",
                file_name=file_name,
                media_type=MEDIA_TYPE_PROFILE,
                target=profile,
                url_fields=(url_field,),
            )
        )
    return items


class MediaPipeline:
    def __init__(
        self,
        *,
        session_factory: async_sessionmaker[AsyncSession],
        object_store: ObjectStore,
        http_client: Optional[httpx.AsyncClient],
        user_id: str,
        backup_id: str,
        worker_count: Any = DEFAULT_MEDIA_WORKERS,
        url_prefix: str = "/api/platforms/twitter/media",
        cancel_check_every: int = CANCEL_CHECK_EVERY,
    ):
        self.session_factory = session_factory
        self.object_store = object_store
        self.http_client = http_client
        self.user_id = user_id
        self.backup_id = backup_id
        self.worker_count = worker_count
        self.url_prefix = url_prefix
        self.cancel_check_every = max(1, int(cancel_check_every))

    async def run(
        self,
        items: list[MediaWorkItem],
        *,
        ensure_active: CancellationCheck | None = None,
        on_item_done: Callable[[], Awaitable[None]] | None = None,
    ) -> MediaPipelineResult:
        result = MediaPipelineResult(total=len(items))
        workers = resolve_worker_count(self.worker_count, len(items))
        if workers == 0:
            logger.info("[Media] Backup %s: nothing to process", self.backup_id)
            return result

        cursor = 0

        async def worker() -> None:
            nonlocal cursor
            while cursor < len(items):
                index = cursor
                cursor += 1
                if ensure_active is not None and index % self.cancel_check_every == 0:
                    await ensure_active()

                outcome = await self._process(items[index])
                if outcome is None:
                    result.skipped += 1
                elif outcome:
                    result.processed += 1
                    result.uploaded_paths.append(items[index].storage_path)
                else:
                    result.errors += 1
                if on_item_done is not None:
                    await on_item_done()

        tasks = [asyncio.create_task(worker()) for _ in range(workers)]
        try:
            await asyncio.gather(*tasks)
        except BaseException:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

        logger.info(
            "[Media] Backup %s complete: %s processed, %s errors, %s skipped, %s total",
            self.backup_id,
            result.processed,
            result.errors,
            result.skipped,
            result.total,
        )
        return result

    async def _process(self, item: MediaWorkItem) -> Optional[bool]:
        """True on success, False on failure, None when there is nothing to fetch."""
        if item.content is None and item.load_content is None and not item.source_url:
            return None
        try:
            if item.content is not None or item.load_content is not None:
                body = item.content if item.content is not None else await item.load_content()
                mime_type = item.mime_type or "application/octet-stream"
            else:
                response = await self.http_client.get(item.source_url)
                response.raise_for_status()
                body = response.content
                mime_type = item.mime_type or response.headers.get("content-type") or "image/jpeg"

            await self.object_store.put_object(item.storage_path, body, content_type=mime_type)
            await self._record(item, size=len(body), mime_type=mime_type)
        except Exception as e:
            logger.warning("[Media] Failed to store %s for backup %s: %s", item.source_url, self.backup_id, e)
            return False

        internal_url = build_internal_media_url(item.storage_path, self.url_prefix)
        for url_field in item.url_fields:
            item.target[url_field] = internal_url
        return True

    async def _record(self, item: MediaWorkItem, *, size: int, mime_type: str) -> None:
        async with self.session_factory() as session:
            existing = await session.scalar(
                select(MediaFile.id)
                .where(MediaFile.backup_id == self.backup_id, MediaFile.file_path == item.storage_path)
                .limit(1)
            )
            if existing:
                return
            session.add(
                MediaFile(
                    user_id=self.user_id,
                    backup_id=self.backup_id,
                    file_path=item.storage_path,
                    file_name=item.file_name,
                    file_size=size,
                    mime_type=mime_type,
                    media_type=item.media_type,
                    tweet_id=item.parent_id,
                )
            )
            try:
                await session.commit()
            except IntegrityError:
                # Another worker recorded the same path first.
                await session.rollback()
