"""Cooperative cancellation for running backup jobs.

Workers never get interrupted mid-call. They poll the job ledger at
checkpoints and raise ``JobCancelledError`` once the flag is set.
"""

from __future__ import annotations

from typing import Awaitable, Callable

from socialvault.services.scrape_providers.base import ProviderRunCancelledError


class JobCancelledError(Exception):
    def __init__(self, message: str = "Job cancelled by user"):
        super().__init__(message)


CancellationCheck = Callable[[], Awaitable[None]]


def is_cancellation_error(error: BaseException) -> bool:
    """True for our own signal and for provider errors that mean the same thing."""
    if isinstance(error, (JobCancelledError, ProviderRunCancelledError)):
        return True
    if not isinstance(error, Exception):
        return False
    message = str(error).lower()
    return (
        type(error).__name__ == "RunCancelledError"
        or "cancelled by user" in message
        or "cancellation requested" in message
    )
