"""
Archive Upload Import
=====================

Turns an uploaded Twitter data export (a zip of ``data/*.js`` files plus
media folders) into a ``full_archive`` backup.

Each metadata file is JavaScript of the form::

    window.YTD.tweets.part0 = [ ... ]

so parsing strips the assignment and decodes the JSON literal that
follows. The upload is spooled to a temporary file; media entries go
through the media pipeline and are read from the zip on demand. The
original zip is copied to ``{user_id}/archives/{backup_id}.zip``.
"""

from __future__ import annotations

import asyncio
import functools
import json
import logging
import re
import tempfile
import zipfile
from dataclasses import dataclass, field
from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from socialvault.core.config import settings as default_settings
from socialvault.models.backup import BACKUP_TYPE_FULL_ARCHIVE, SOURCE_ARCHIVE, Backup
from socialvault.models.media_file import MediaFile
from socialvault.schemas.backup_jobs import JobPayload
from socialvault.services.job_cancellation import is_cancellation_error
from socialvault.services.job_context import JobContext
from socialvault.services.media_pipeline import (
    MEDIA_TYPE_ARCHIVE,
    MediaPipeline,
    MediaWorkItem,
    build_internal_media_url,
)
from socialvault.services.object_store import ObjectStore
from socialvault.services.storage_usage_service import StorageUsageService


logger = logging.getLogger(__name__)

MAX_ZIP_ENTRIES = 50_000
MAX_METADATA_ENTRY_BYTES = 256 * 1024 * 1024
MAX_MEDIA_FILES = 20_000
MAX_MEDIA_ENTRY_BYTES = 512 * 1024 * 1024

COMPLETED_MESSAGE = "Archive backup completed successfully."
NOT_AN_ARCHIVE_MESSAGE = (
    "This doesn't look like a Twitter archive. Upload the ZIP file downloaded from Twitter."
)

METADATA_PATTERNS: dict[str, tuple[re.Pattern[str], ...]] = {
    "account": (re.compile(r"^data/account(?:-part\d+)?\.js$", re.I),),
    "profile": (re.compile(r"^data/profile(?:-part\d+)?\.js$", re.I),),
    "tweets": (re.compile(r"^data/tweets?(?:-part\d+)?\.js$", re.I),),
    "followers": (re.compile(r"^data/followers?(?:-part\d+)?\.js$", re.I),),
    "following": (re.compile(r"^data/following(?:-part\d+)?\.js$", re.I),),
    "likes": (re.compile(r"^data/likes?(?:-part\d+)?\.js$", re.I),),
    "direct_messages": (
        re.compile(r"^data/direct-messages(?:-part\d+)?\.js$", re.I),
        re.compile(r"^data/direct_messages(?:-part\d+)?\.js$", re.I),
    ),
}

MEDIA_FOLDERS = (
    "data/tweets_media",
    "data/direct_messages_media",
    "data/direct_messages_group_media",
    "data/community_tweet_media",
    "data/profile_media",
    "data/moments_media",
    "data/moments_tweets_media",
    "data/deleted_tweets_media",
)

MIME_TYPES = {
    "jpg": "image/jpeg",
    "jpeg": "image/jpeg",
    "png": "image/png",
    "gif": "image/gif",
    "mp4": "video/mp4",
    "mov": "video/quicktime",
    "webp": "image/webp",
}

_ASSIGNMENT = re.compile(r"=\s*([\[{])")
_MEDIA_FILE_NAME = re.compile(r"/([^/?#]+\.(?:jpg|jpeg|png|gif|mp4|webp))(?:[?#].*)?$", re.I)
_PROFILE_LINK = re.compile(r"^https?://(?:twitter\.com|x\.com)/([A-Za-z0-9_]+)/?$")


class ArchiveImportError(ValueError):
    pass


def archive_relative_path(name: str) -> str:
    """Entry name relative to the archive's ``data/`` folder, if it has one."""
    normalized = name.replace("\\", "/").strip()
    if normalized.startswith("./"):
        normalized = normalized[2:]
    index = normalized.lower().find("data/")
    return normalized[index:] if index >= 0 else normalized


def _part_number(path: str) -> int:
    match = re.search(r"-part(\d+)\.js$", path, re.I)
    return int(match.group(1)) if match else 0


def parse_archive_js(content: str) -> list[Any]:
    """Decode every ``... = <json>`` assignment in an archive file.

    Falls back to plain JSON for files without an assignment prefix.
    Undecodable segments are skipped.
    """
    text = content.lstrip("\ufeff")
    decoder = json.JSONDecoder()
    items: list[Any] = []

    pos = 0
    while True:
        match = _ASSIGNMENT.search(text, pos)
        if match is None:
            break
        start = match.start(1)
        try:
            value, end = decoder.raw_decode(text, start)
        except json.JSONDecodeError:
            pos = start + 1
            continue
        if isinstance(value, list):
            items.extend(value)
        elif isinstance(value, dict):
            items.append(value)
        pos = end

    if items:
        return items

    stripped = text.strip()
    if not stripped:
        return []
    try:
        value = json.loads(stripped)
    except json.JSONDecodeError:
        return []
    if isinstance(value, list):
        return value
    return [value] if isinstance(value, dict) else []


@dataclass(frozen=True)
class ArchiveMediaEntry:
    name: str
    relative_path: str
    folder: str
    file_name: str
    size: int


@dataclass
class ArchiveContents:
    files: dict[str, list[str]] = field(default_factory=lambda: {bucket: [] for bucket in METADATA_PATTERNS})
    media: list[ArchiveMediaEntry] = field(default_factory=list)

    @property
    def looks_like_archive(self) -> bool:
        return bool(self.files["account"] or self.files["tweets"])


def scan_archive(archive: zipfile.ZipFile) -> ArchiveContents:
    infos = archive.infolist()
    if len(infos) > MAX_ZIP_ENTRIES:
        raise ArchiveImportError(
            f"Archive contains too many entries ({len(infos)}). Limit is {MAX_ZIP_ENTRIES}."
        )

    contents = ArchiveContents()
    by_bucket: dict[str, list[tuple[int, str, zipfile.ZipInfo]]] = {bucket: [] for bucket in METADATA_PATTERNS}

    for info in infos:
        if info.is_dir():
            continue
        relative = archive_relative_path(info.filename)

        for bucket, patterns in METADATA_PATTERNS.items():
            if any(pattern.match(relative) for pattern in patterns):
                by_bucket[bucket].append((_part_number(relative), relative, info))
                break
        else:
            folder = next((f for f in MEDIA_FOLDERS if relative.startswith(f"{f}/")), None)
            if folder is not None:
                contents.media.append(
                    ArchiveMediaEntry(
                        name=info.filename,
                        relative_path=relative,
                        folder=folder.split("/", 1)[1],
                        file_name=relative.rsplit("/", 1)[-1],
                        size=info.file_size,
                    )
                )

    for bucket, entries in by_bucket.items():
        for _, relative, info in sorted(entries, key=lambda e: (e[0], e[1])):
            if info.file_size > MAX_METADATA_ENTRY_BYTES:
                raise ArchiveImportError(
                    f"Entry {relative} exceeds max allowed size of {MAX_METADATA_ENTRY_BYTES} bytes."
                )
            text = archive.read(info).decode("utf-8", errors="replace")
            if text:
                contents.files[bucket].append(text)

    if len(contents.media) > MAX_MEDIA_FILES:
        raise ArchiveImportError(
            f"Archive contains too many media files ({len(contents.media)}). Limit is {MAX_MEDIA_FILES}."
        )
    oversized = next((m for m in contents.media if m.size > MAX_MEDIA_ENTRY_BYTES), None)
    if oversized is not None:
        raise ArchiveImportError(
            f"Archive media entry {oversized.name} exceeds per-file limit of {MAX_MEDIA_ENTRY_BYTES} bytes."
        )
    return contents


def _username_from_link(link: str) -> Optional[str]:
    match = _PROFILE_LINK.match(link or "")
    return match.group(1) if match else None


def _relation(item: dict[str, Any], key: str) -> Optional[dict[str, Any]]:
    entry = item.get(key) if isinstance(item, dict) else None
    if not isinstance(entry, dict) or not entry.get("accountId"):
        return None
    account_id = entry["accountId"]
    link = entry.get("userLink") or ""
    username = _username_from_link(link)
    return {
        "user_id": account_id,
        "username": username,
        "name": username,
        "userLink": link or f"https://twitter.com/intent/user?user_id={account_id}",
    }


def normalize_archive(contents: ArchiveContents, *, username: str) -> dict[str, Any]:
    """Build the backup payload (without media rewrites) from parsed archive files."""
    parsed = {bucket: [item for text in texts for item in parse_archive_js(text)] for bucket, texts in contents.files.items()}

    account: dict[str, Any] = {}
    for item in parsed["account"]:
        if isinstance(item, dict) and isinstance(item.get("account"), dict):
            account = item["account"]
            break
    profile_info: dict[str, Any] = {}
    for item in parsed["profile"]:
        if isinstance(item, dict) and isinstance(item.get("profile"), dict):
            profile_info = item["profile"]
            break

    author = account.get("username") or username
    display_name = account.get("accountDisplayName") or username
    avatar_url = account.get("avatarMediaUrl") or profile_info.get("avatarMediaUrl")
    header_url = account.get("headerMediaUrl") or profile_info.get("headerMediaUrl")

    tweets = []
    for item in parsed["tweets"]:
        if not isinstance(item, dict):
            continue
        tweet = item.get("tweet") if isinstance(item.get("tweet"), dict) else item
        tweet_id = tweet.get("id_str") or tweet.get("id")
        if not tweet_id:
            continue
        text = tweet.get("full_text") or tweet.get("text")
        tweets.append(
            {
                "id": str(tweet_id),
                "id_str": str(tweet_id),
                "text": text,
                "full_text": text,
                "created_at": tweet.get("created_at"),
                "retweet_count": tweet.get("retweet_count"),
                "favorite_count": tweet.get("favorite_count"),
                "reply_count": tweet.get("reply_count"),
                "quote_count": tweet.get("quote_count"),
                "conversation_id_str": tweet.get("conversation_id_str"),
                "in_reply_to_status_id": tweet.get("in_reply_to_status_id_str") or tweet.get("in_reply_to_status_id"),
                "in_reply_to_status_id_str": tweet.get("in_reply_to_status_id_str"),
                "in_reply_to_user_id": tweet.get("in_reply_to_user_id_str") or tweet.get("in_reply_to_user_id"),
                "in_reply_to_user_id_str": tweet.get("in_reply_to_user_id_str"),
                "in_reply_to_screen_name": tweet.get("in_reply_to_screen_name"),
                "extended_entities": tweet.get("extended_entities"),
                "entities": tweet.get("entities"),
                "media": (tweet.get("extended_entities") or {}).get("media") or (tweet.get("entities") or {}).get("media"),
                "tweet_url": f"https://x.com/{author}/status/{tweet_id}" if author else None,
                "author": {"username": author, "name": display_name, "profileImageUrl": avatar_url},
            }
        )

    followers = [rel for rel in (_relation(item, "follower") for item in parsed["followers"]) if rel]
    following = [rel for rel in (_relation(item, "following") for item in parsed["following"]) if rel]

    likes = []
    for item in parsed["likes"]:
        like = item.get("like") if isinstance(item, dict) else None
        if isinstance(like, dict) and like.get("tweetId"):
            likes.append({"tweet_id": like["tweetId"], "full_text": like.get("fullText")})

    # Direct messages are kept as opaque entries; the client encrypts them.
    direct_messages = [
        item for item in parsed["direct_messages"]
        if isinstance(item, dict) and isinstance(item.get("dmConversation"), dict)
    ]
    dm_count = sum(len(item["dmConversation"].get("messages") or []) for item in direct_messages)

    description = profile_info.get("description") if isinstance(profile_info.get("description"), dict) else {}
    return {
        "tweets": tweets,
        "replies": [],
        "followers": followers,
        "following": following,
        "likes": likes,
        "direct_messages": direct_messages,
        "profile": {
            "username": author,
            "displayName": display_name,
            "description": description.get("bio"),
            "bio": description.get("bio"),
            "profileImageUrl": avatar_url,
            "coverImageUrl": header_url,
            "platformUserId": account.get("accountId"),
        },
        "stats": {
            "tweets": len(tweets),
            "replies": 0,
            "followers": len(followers),
            "following": len(following),
            "likes": len(likes),
            "dms": dm_count,
            "media_files": 0,
        },
    }


def media_file_name(url: Any) -> Optional[str]:
    if not isinstance(url, str) or not url:
        return None
    match = _MEDIA_FILE_NAME.search(url)
    return match.group(1) if match else None


def _find_uploaded(file_map: dict[str, str], url: Any) -> Optional[str]:
    """Archive media is stored as ``<tweet id>-<cdn file name>``; match on the suffix."""
    name = media_file_name(url)
    if not name:
        return None
    if name in file_map:
        return file_map[name]
    for stored_name, path in file_map.items():
        if stored_name.endswith(f"-{name}"):
            return path
    return None


def rewrite_archive_media_urls(
    tweets: list[dict[str, Any]],
    file_map: dict[str, str],
    *,
    url_prefix: str,
) -> int:
    """Point tweet media at uploaded archive files. Returns the number of rewrites."""
    rewritten = 0
    for tweet in tweets:
        media_lists = [
            (tweet.get("extended_entities") or {}).get("media"),
            (tweet.get("entities") or {}).get("media"),
            tweet.get("media"),
        ]
        for media_list in media_lists:
            for media in media_list or []:
                if not isinstance(media, dict):
                    continue
                path = _find_uploaded(file_map, media.get("media_url_https") or media.get("media_url"))
                if path is None:
                    continue
                url = build_internal_media_url(path, url_prefix)
                media["media_url"] = url
                media["media_url_https"] = url
                rewritten += 1
    return rewritten


def resolve_profile_images(
    profile: dict[str, Any],
    profile_paths: dict[str, str],
    *,
    url_prefix: str,
) -> None:
    def by_source(url: Any) -> Optional[str]:
        path = _find_uploaded(profile_paths, url)
        return build_internal_media_url(path, url_prefix) if path else None

    avatar = by_source(profile.get("profileImageUrl"))
    header = by_source(profile.get("coverImageUrl"))

    names = list(profile_paths)
    if avatar is None and names:
        name = next((n for n in names if any(k in n for k in ("profile_image", "avatar", "400x400"))), names[0])
        avatar = build_internal_media_url(profile_paths[name], url_prefix)
    if header is None and len(names) > 1:
        name = next((n for n in names if any(k in n for k in ("header", "banner", "cover"))), None)
        if name is None:
            name = next(n for n in names if build_internal_media_url(profile_paths[n], url_prefix) != avatar)
        header = build_internal_media_url(profile_paths[name], url_prefix)

    if avatar:
        profile["profileImageUrl"] = avatar
    if header:
        profile["coverImageUrl"] = header


def _mime_type_for_file(file_name: str) -> str:
    extension = file_name.rsplit(".", 1)[-1].lower() if "." in file_name else ""
    return MIME_TYPES.get(extension, "application/octet-stream")


class ArchiveImportService:
    """Runs ``archive_upload`` jobs."""

    def __init__(
        self,
        *,
        session_factory: async_sessionmaker[AsyncSession],
        object_store: ObjectStore,
        settings=None,
    ):
        self.session_factory = session_factory
        self.object_store = object_store
        self.settings = settings or default_settings

    async def run(self, job_id: str) -> None:
        ctx = JobContext(
            self.session_factory,
            job_id,
            queue_timeout_seconds=self.settings.BACKUP_JOB_QUEUE_TIMEOUT_SECONDS,
        )
        job = await ctx.load()
        if job.is_terminal:
            logger.info("[Archive] Job %s already %s; skipping", job_id, job.status)
            return

        request = JobPayload.from_raw(job.payload).archive_request
        user_id = job.user_id
        backup_id: Optional[str] = None

        try:
            await ctx.mark_processing(5, "Downloading uploaded archive...", {"lifecycle_state": "preparing"})
            await ctx.ensure_active()
            if request is None:
                raise ArchiveImportError("Archive upload job has no staged upload")

            staged = await self.object_store.head_object(request.staged_path)
            if staged is None:
                raise ArchiveImportError("Uploaded archive not found. Please upload it again.")
            if staged.size > self.settings.ARCHIVE_MAX_BYTES:
                raise ArchiveImportError(
                    f"Archive is too large ({staged.size} bytes). Limit is {self.settings.ARCHIVE_MAX_BYTES} bytes."
                )

            with tempfile.TemporaryFile() as spool:
                await self.object_store.download_to_file(request.staged_path, spool)
                spool.seek(0)

                await ctx.progress(15, "Extracting archive files...")
                await ctx.ensure_active()
                try:
                    archive = zipfile.ZipFile(spool)
                except zipfile.BadZipFile as e:
                    raise ArchiveImportError(NOT_AN_ARCHIVE_MESSAGE) from e

                with archive:
                    contents = await asyncio.to_thread(scan_archive, archive)

                    await ctx.progress(30, "Parsing archive metadata...")
                    await ctx.ensure_active()
                    if not contents.looks_like_archive:
                        raise ArchiveImportError(NOT_AN_ARCHIVE_MESSAGE)
                    data = normalize_archive(contents, username=request.username or "")
                    data["retention"] = request.retention.model_dump(mode="json", exclude_none=True)

                    await ctx.progress(45, "Saving backup record...", {"lifecycle_state": "saving"})
                    await ctx.ensure_active()
                    backup_id = await ctx.save_backup(
                        user_id=user_id,
                        backup_type=BACKUP_TYPE_FULL_ARCHIVE,
                        source=SOURCE_ARCHIVE,
                        data=data,
                    )
                    await ctx.ensure_active()

                    await ctx.progress(55, "Uploading archive media files...", {"lifecycle_state": "media"})
                    uploaded = await self._upload_media(ctx, archive, contents, user_id, backup_id)

            await ctx.progress(88, "Finalizing backup data...", {"lifecycle_state": "finalizing"})
            await ctx.ensure_active()

            prefix = self.settings.MEDIA_URL_PREFIX
            tweet_paths = {name: path for name, (folder, path) in uploaded.items() if folder != "profile_media"}
            profile_paths = {name: path for name, (folder, path) in uploaded.items() if folder == "profile_media"}
            rewrite_archive_media_urls(data["tweets"], tweet_paths, url_prefix=prefix)
            resolve_profile_images(data["profile"], profile_paths, url_prefix=prefix)
            data["stats"]["media_files"] = len(uploaded)

            archive_path = f"{user_id}/archives/{backup_id}.zip"
            await self.object_store.copy_object(request.staged_path, archive_path)
            await self._finalize_backup(user_id, backup_id, data, archive_path, staged.size)

            await ctx.ensure_active()
            await ctx.merge({"lifecycle_state": "completed", "partial_backup_id": None})
            await ctx.mark_completed(backup_id, COMPLETED_MESSAGE)
            logger.info("[Archive] Job %s completed with backup %s", job_id, backup_id)

        except Exception as e:
            if is_cancellation_error(e):
                logger.info("[Archive] Cancellation requested for %s. Cleaning up...", job_id)
                await ctx.finish_cancelled(object_store=self.object_store, backup_id=backup_id, user_id=user_id)
                return
            logger.exception("[Archive] Job %s failed", job_id)
            await ctx.finish_failed(e)
        finally:
            if request is not None:
                failed = await self._delete_staged(request.staged_path)
                if failed:
                    logger.warning("[Archive] Failed to clean up staged input %s", request.staged_path)

    async def _delete_staged(self, path: str) -> list[str]:
        try:
            return await self.object_store.delete_objects([path])
        except Exception as e:
            logger.warning("[Archive] Staged input delete raised for %s: %s", path, e)
            return [path]

    async def _upload_media(
        self,
        ctx: JobContext,
        archive: zipfile.ZipFile,
        contents: ArchiveContents,
        user_id: str,
        backup_id: str,
    ) -> dict[str, tuple[str, str]]:
        """Upload archive media; returns file name -> (folder, storage path) for stored files."""
        items = []
        for entry in contents.media:
            items.append(
                MediaWorkItem(
                    source_url=None,
                    storage_path=f"{user_id}/{entry.folder}/{entry.file_name}",
                    file_name=entry.file_name,
                    media_type=entry.folder,
                    mime_type=_mime_type_for_file(entry.file_name),
                    target={},
                    url_fields=(),
                    load_content=functools.partial(asyncio.to_thread, archive.read, entry.name),
                )
            )

        total = len(items)
        done = 0

        async def on_item_done() -> None:
            nonlocal done
            done += 1
            if total and (done == total or done % 5 == 0):
                await ctx.progress(
                    min(85, 55 + round(done / total * 30)),
                    f"Uploading media files ({done}/{total})...",
                )

        pipeline = MediaPipeline(
            session_factory=self.session_factory,
            object_store=self.object_store,
            http_client=None,
            user_id=user_id,
            backup_id=backup_id,
            worker_count=self.settings.MEDIA_PIPELINE_WORKERS,
            url_prefix=self.settings.MEDIA_URL_PREFIX,
        )
        result = await pipeline.run(items, ensure_active=ctx.ensure_active, on_item_done=on_item_done)

        stored = set(result.uploaded_paths)
        return {
            item.file_name: (item.media_type, item.storage_path)
            for item in items
            if item.storage_path in stored
        }

    async def _finalize_backup(
        self,
        user_id: str,
        backup_id: str,
        data: dict[str, Any],
        archive_path: str,
        archive_size: int,
    ) -> None:
        async with self.session_factory() as session:
            backup = await session.get(Backup, backup_id)
            if backup is None:
                raise ArchiveImportError(f"Backup {backup_id} disappeared before finalizing")
            backup.data = {**data, "archive_file_path": archive_path, "uploaded_file_size": archive_size}
            backup.archive_file_path = archive_path

            existing = await session.scalar(
                select(MediaFile.id)
                .where(MediaFile.backup_id == backup_id, MediaFile.file_path == archive_path)
                .limit(1)
            )
            if existing is None:
                session.add(
                    MediaFile(
                        user_id=user_id,
                        backup_id=backup_id,
                        file_path=archive_path,
                        file_name=f"{backup_id}.zip",
                        file_size=archive_size,
                        mime_type="application/zip",
                        media_type=MEDIA_TYPE_ARCHIVE,
                    )
                )
            await session.commit()

        async with self.session_factory() as session:
            await StorageUsageService(session).recalculate_backup(backup_id)
