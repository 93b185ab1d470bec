"""Core module initialization."""

from socialvault.core.config import settings
from socialvault.core.database import async_session_factory, build_engine, build_session_factory, engine

__all__ = [
    "settings",
    "engine",
    "async_session_factory",
    "build_engine",
    "build_session_factory",
]
