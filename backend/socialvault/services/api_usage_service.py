"""Provider API spend tracking."""

from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from socialvault.models.api_usage import ApiUsageLog
from socialvault.services.pricing import round_usd, to_decimal


def month_start(now: datetime) -> datetime:
    now = now.astimezone(timezone.utc) if now.tzinfo else now.replace(tzinfo=timezone.utc)
    return now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)


class ApiUsageService:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def record_usage(
        self,
        *,
        user_id: str,
        provider: str,
        operation: str,
        items: int,
        cost_usd: float,
        job_id: Optional[str] = None,
    ) -> ApiUsageLog:
        entry = ApiUsageLog(
            user_id=user_id,
            job_id=job_id,
            provider=provider,
            operation=operation,
            items=max(0, int(items)),
            cost_usd=to_decimal(cost_usd).quantize(Decimal("0.0001")),
        )
        self.session.add(entry)
        if self.session.info.get("auto_commit", True):
            await self.session.commit()
        else:
            await self.session.flush()
        return entry

    async def monthly_spent(self, user_id: str, *, now: Optional[datetime] = None) -> float:
        """Total provider spend for the user in the current calendar month (UTC)."""
        start = month_start(now or datetime.now(timezone.utc))
        stmt = select(func.coalesce(func.sum(ApiUsageLog.cost_usd), 0)).where(
            ApiUsageLog.user_id == user_id,
            ApiUsageLog.created_at >= start,
        )
        total = await self.session.scalar(stmt)
        return round_usd(total or 0)
