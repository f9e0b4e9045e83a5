from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import datetime, time, timedelta, timezone

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from shared.enums import UploadStatus
from shared.models import File, Log, Space
from shared.utils import isoformat_utc, utc_now


RECENT_ACTIVITY_DAYS = 7
RECENT_ACTIVITY_LIMIT = 10
ACTIVE_SPACES_LIMIT = 10


@dataclass(frozen=True)
class DashboardStats:
    total_spaces: int
    total_files: int
    total_size: int
    uploads_today: int
    activity_today: int


@dataclass(frozen=True)
class ActivityRow:
    event_type: str
    space_name: str | None
    ip_address: str | None
    details: dict | None
    created_at: str | None


@dataclass(frozen=True)
class ActiveSpaceRow:
    space_id: int
    space_name: str
    file_count: int
    total_size: int
    last_upload_at: str | None


def _start_of_day(now: datetime) -> datetime:
    return datetime.combine(now.astimezone(timezone.utc).date(), time.min, tzinfo=timezone.utc)


async def get_stats(session: AsyncSession, *, now_utc: datetime | None = None) -> DashboardStats:
    today = _start_of_day(now_utc or utc_now())

    total_spaces = (await session.execute(select(func.count(Space.id)))).scalar_one()
    files = (
        await session.execute(
            select(func.count(File.id), func.coalesce(func.sum(File.file_size), 0)).where(
                File.upload_status == UploadStatus.COMPLETED.value
            )
        )
    ).one()
    uploads_today = (
        await session.execute(
            select(func.count(File.id))
            .where(File.upload_status == UploadStatus.COMPLETED.value)
            .where(File.completed_at >= today)
        )
    ).scalar_one()
    activity_today = (await session.execute(select(func.count(Log.id)).where(Log.created_at >= today))).scalar_one()

    return DashboardStats(
        total_spaces=int(total_spaces or 0),
        total_files=int(files[0] or 0),
        total_size=int(files[1] or 0),
        uploads_today=int(uploads_today or 0),
        activity_today=int(activity_today or 0),
    )


async def get_recent_activity(session: AsyncSession, *, now_utc: datetime | None = None) -> list[ActivityRow]:
    since = (now_utc or utc_now()) - timedelta(days=RECENT_ACTIVITY_DAYS)
    rows = (
        await session.execute(
            select(Log, Space.space_name)
            .outerjoin(Space, Space.id == Log.space_id)
            .where(Log.created_at >= since)
            .order_by(Log.created_at.desc(), Log.id.desc())
            .limit(RECENT_ACTIVITY_LIMIT)
        )
    ).all()
    return [
        ActivityRow(
            event_type=log.event_type,
            space_name=space_name,
            ip_address=log.ip_address,
            details=log.details,
            created_at=isoformat_utc(log.created_at),
        )
        for log, space_name in rows
    ]


async def get_active_spaces(session: AsyncSession) -> list[ActiveSpaceRow]:
    """Spaces ranked by number of completed uploads."""
    file_count = func.count(File.id).label("file_count")
    rows = (
        await session.execute(
            select(
                Space.id,
                Space.space_name,
                file_count,
                func.coalesce(func.sum(File.file_size), 0),
                func.max(File.completed_at),
            )
            .join(File, File.space_id == Space.id)
            .where(File.upload_status == UploadStatus.COMPLETED.value)
            .group_by(Space.id, Space.space_name)
            .order_by(file_count.desc(), Space.id.asc())
            .limit(ACTIVE_SPACES_LIMIT)
        )
    ).all()
    return [
        ActiveSpaceRow(
            space_id=int(r[0]),
            space_name=str(r[1]),
            file_count=int(r[2] or 0),
            total_size=int(r[3] or 0),
            last_upload_at=isoformat_utc(r[4]),
        )
        for r in rows
    ]


async def build_dashboard(session: AsyncSession, *, now_utc: datetime | None = None) -> dict:
    stats = await get_stats(session, now_utc=now_utc)
    return {
        "stats": {
            "totalSpaces": stats.total_spaces,
            "totalFiles": stats.total_files,
            "totalSize": stats.total_size,
            "uploadsToday": stats.uploads_today,
            "activityToday": stats.activity_today,
        },
        "recentActivity": [asdict(r) for r in await get_recent_activity(session, now_utc=now_utc)],
        "activeSpaces": [asdict(r) for r in await get_active_spaces(session)],
    }


async def list_all_files(
    session: AsyncSession,
    *,
    status: str | None = None,
    space_name: str | None = None,
    page: int = 1,
    limit: int = 50,
) -> tuple[list[tuple[File, str]], int]:
    q = select(File, Space.space_name).join(Space, Space.id == File.space_id)
    cq = select(func.count(File.id)).join(Space, Space.id == File.space_id)
    if status and status != "all":
        q = q.where(File.upload_status == str(status))
        cq = cq.where(File.upload_status == str(status))
    if space_name:
        q = q.where(Space.space_name == str(space_name))
        cq = cq.where(Space.space_name == str(space_name))

    total = int((await session.execute(cq)).scalar_one() or 0)
    rows = (
        await session.execute(
            q.order_by(File.created_at.desc(), File.id.desc()).offset((int(page) - 1) * int(limit)).limit(int(limit))
        )
    ).all()
    return [(f, str(name)) for f, name in rows], total
