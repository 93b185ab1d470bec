"""Shared plumbing for task modules.

Each task invocation runs its coroutine on a fresh event loop, so database
engines are created per run and disposed before the loop closes.
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from socialvault.core.config import settings
from socialvault.core.database import build_engine, build_session_factory


def run_async(coro):
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        loop = None

    if loop is not None and loop.is_running():
        new_loop = asyncio.new_event_loop()
        try:
            return new_loop.run_until_complete(coro)
        finally:
            new_loop.close()

    return asyncio.run(coro)


@asynccontextmanager
async def task_session_factory() -> AsyncIterator[async_sessionmaker[AsyncSession]]:
    engine = build_engine(settings.DATABASE_URL)
    try:
        yield build_session_factory(engine)
    finally:
        await engine.dispose()
