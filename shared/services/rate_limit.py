from __future__ import annotations

import logging
from datetime import datetime, timedelta

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from shared.enums import LogEventType
from shared.errors import RateLimited
from shared.models import Log
from shared.utils import utc_now


_logger = logging.getLogger(__name__)


class MagicLinkRateLimiter:
    """Counts prior issuance events per IP in a trailing window, backed by the audit log."""

    def __init__(self, *, limit: int = 5, window_seconds: int = 3600):
        self.limit = int(limit)
        self.window_seconds = int(window_seconds)

    async def count_recent(self, session: AsyncSession, ip_address: str | None, *, now_utc: datetime | None = None) -> int:
        now = now_utc or utc_now()
        since = now - timedelta(seconds=self.window_seconds)
        q = (
            select(func.count(Log.id))
            .where(Log.event_type == LogEventType.MAGIC_LINK_REQUESTED.value)
            .where(Log.created_at > since)
        )
        if ip_address is None:
            q = q.where(Log.ip_address.is_(None))
        else:
            q = q.where(Log.ip_address == str(ip_address))
        return int((await session.execute(q)).scalar_one() or 0)

    async def check(self, session: AsyncSession, ip_address: str | None, *, now_utc: datetime | None = None) -> int:
        """Return the number of attempts left; raise RateLimited when none are."""
        count = await self.count_recent(session, ip_address, now_utc=now_utc)
        if count >= self.limit:
            _logger.warning("magic link rate limit exceeded", extra={"ip": ip_address, "count": count})
            raise RateLimited(retry_after=self.window_seconds)
        return self.limit - count
