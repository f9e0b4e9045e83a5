from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from shared.enums import LogEventType
from shared.models import Log
from shared.utils import utc_now


_logger = logging.getLogger(__name__)


class AuditLogRepo:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def log(
        self,
        event_type: LogEventType,
        *,
        space_id: int | None = None,
        file_id: int | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
        details: dict | None = None,
        created_at: datetime | None = None,
    ) -> Log:
        rec = Log(
            event_type=str(event_type.value),
            space_id=(int(space_id) if space_id is not None else None),
            file_id=(int(file_id) if file_id is not None else None),
            ip_address=ip_address,
            user_agent=user_agent,
            details=details or {},
            created_at=created_at or utc_now(),
        )
        self.session.add(rec)
        await self.session.flush()
        _logger.info(
            "audit event",
            extra={
                "event_type": event_type.value,
                "space_id": space_id,
                "file_id": file_id,
            },
        )
        return rec

    async def list_events(
        self,
        *,
        page: int = 1,
        limit: int = 50,
        event_type: str | None = None,
        space_id: int | None = None,
    ) -> tuple[list[Log], int]:
        q = select(Log)
        cq = select(func.count(Log.id))
        if event_type:
            q = q.where(Log.event_type == str(event_type))
            cq = cq.where(Log.event_type == str(event_type))
        if space_id is not None:
            q = q.where(Log.space_id == int(space_id))
            cq = cq.where(Log.space_id == int(space_id))

        total = int((await self.session.execute(cq)).scalar_one() or 0)
        rows = (
            await self.session.execute(
                q.order_by(Log.created_at.desc(), Log.id.desc()).offset((int(page) - 1) * int(limit)).limit(int(limit))
            )
        ).scalars().all()
        return list(rows), total
