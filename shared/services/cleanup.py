from __future__ import annotations

import logging
from datetime import date, datetime, time, timedelta, timezone

from sqlalchemy import delete, distinct, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from shared.config import Settings
from shared.db import get_async_session
from shared.enums import CleanupKind, LogEventType, UploadStatus
from shared.errors import ValidationError
from shared.models import AdminSession, File, Log, Space, UserSession
from shared.services.audit_log import AuditLogRepo
from shared.services.config_store import ConfigStore
from shared.utils import utc_now


_logger = logging.getLogger(__name__)


def daily_stats_key(day: date) -> str:
    return f"daily_stats_{day.isoformat()}"


class CleanupService:
    """Periodic maintenance. Every statement is a conditional UPDATE/DELETE, safe next to live traffic."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession] | None, settings: Settings):
        self.session_factory = session_factory
        self.settings = settings

    async def cleanup_sessions(self, *, now_utc: datetime | None = None) -> dict[str, int]:
        now = now_utc or utc_now()
        user_cutoff = now - timedelta(days=int(self.settings.USER_SESSION_RETENTION_DAYS))
        admin_cutoff = now - timedelta(days=int(self.settings.ADMIN_SESSION_RETENTION_DAYS))

        async with get_async_session(self.session_factory) as session:
            deactivated_user = await session.execute(
                update(UserSession)
                .where(UserSession.is_active == True)
                .where(UserSession.expires_at < now)
                .values(is_active=False)
                .execution_options(synchronize_session=False)
            )
            deactivated_admin = await session.execute(
                update(AdminSession)
                .where(AdminSession.is_active == True)
                .where(AdminSession.expires_at < now)
                .values(is_active=False)
                .execution_options(synchronize_session=False)
            )
            deleted_user = await session.execute(
                delete(UserSession).where(UserSession.expires_at < user_cutoff).execution_options(synchronize_session=False)
            )
            deleted_admin = await session.execute(
                delete(AdminSession).where(AdminSession.expires_at < admin_cutoff).execution_options(synchronize_session=False)
            )
            result = {
                "deactivated_user_sessions": int(deactivated_user.rowcount or 0),
                "deactivated_admin_sessions": int(deactivated_admin.rowcount or 0),
                "deleted_user_sessions": int(deleted_user.rowcount or 0),
                "deleted_admin_sessions": int(deleted_admin.rowcount or 0),
            }
            if any(result.values()):
                await AuditLogRepo(session).log(LogEventType.SESSION_CLEANUP, details=result, created_at=now)

        _logger.info("session cleanup done", extra=result)
        return result

    async def cleanup_expired_tokens(self, *, now_utc: datetime | None = None) -> dict[str, int]:
        now = now_utc or utc_now()
        async with get_async_session(self.session_factory) as session:
            res = await session.execute(
                update(Space)
                .where(Space.magic_token_hash.is_not(None))
                .where(Space.token_expires_at < now)
                .values(magic_token_hash=None, token_expires_at=None, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            result = {"cleared_tokens": int(res.rowcount or 0)}
            if result["cleared_tokens"]:
                await AuditLogRepo(session).log(LogEventType.TOKEN_CLEANUP, details=result, created_at=now)

        _logger.info("token cleanup done", extra=result)
        return result

    async def cleanup_old_logs(self, *, now_utc: datetime | None = None) -> dict[str, int]:
        now = now_utc or utc_now()
        cutoff = now - timedelta(days=int(self.settings.LOG_RETENTION_DAYS))
        async with get_async_session(self.session_factory) as session:
            res = await session.execute(
                delete(Log).where(Log.created_at < cutoff).execution_options(synchronize_session=False)
            )
            result = {"deleted_logs": int(res.rowcount or 0)}
            if result["deleted_logs"]:
                await AuditLogRepo(session).log(
                    LogEventType.LOG_CLEANUP,
                    details={**result, "retention_days": int(self.settings.LOG_RETENTION_DAYS)},
                    created_at=now,
                )

        _logger.info("log cleanup done", extra=result)
        return result

    async def generate_daily_stats(self, *, day: date | None = None, now_utc: datetime | None = None) -> dict:
        now = now_utc or utc_now()
        d = day or (now.astimezone(timezone.utc).date() - timedelta(days=1))
        start = datetime.combine(d, time.min, tzinfo=timezone.utc)
        end = start + timedelta(days=1)

        async with get_async_session(self.session_factory) as session:
            new_spaces = (
                await session.execute(
                    select(func.count(Space.id)).where(Space.created_at >= start).where(Space.created_at < end)
                )
            ).scalar_one()
            uploads = (
                await session.execute(
                    select(func.count(File.id), func.coalesce(func.sum(File.file_size), 0))
                    .where(File.upload_status == UploadStatus.COMPLETED.value)
                    .where(File.completed_at >= start)
                    .where(File.completed_at < end)
                )
            ).one()
            link_requests = (
                await session.execute(
                    select(func.count(Log.id))
                    .where(Log.event_type == LogEventType.MAGIC_LINK_REQUESTED.value)
                    .where(Log.created_at >= start)
                    .where(Log.created_at < end)
                )
            ).scalar_one()
            unique_ips = (
                await session.execute(
                    select(func.count(distinct(Log.ip_address)))
                    .where(Log.ip_address.is_not(None))
                    .where(Log.created_at >= start)
                    .where(Log.created_at < end)
                )
            ).scalar_one()

            stats = {
                "date": d.isoformat(),
                "new_spaces": int(new_spaces or 0),
                "completed_uploads": int(uploads[0] or 0),
                "uploaded_bytes": int(uploads[1] or 0),
                "magic_link_requests": int(link_requests or 0),
                "unique_ips": int(unique_ips or 0),
                "generated_at": now.isoformat(),
            }
            await ConfigStore(session, settings=self.settings).set_raw(daily_stats_key(d), stats)
            await AuditLogRepo(session).log(LogEventType.DAILY_STATS, details={"date": d.isoformat()}, created_at=now)

        _logger.info("daily stats generated", extra={"date": d.isoformat()})
        return stats

    async def run(self, kind: str) -> dict:
        try:
            k = CleanupKind(str(kind or "").strip().lower())
        except ValueError:
            raise ValidationError(f"Unknown cleanup type: {kind}")

        _logger.info("manual cleanup started", extra={"kind": k.value})
        results: dict = {}
        if k in (CleanupKind.SESSIONS, CleanupKind.ALL):
            results["sessions"] = await self.cleanup_sessions()
        if k in (CleanupKind.TOKENS, CleanupKind.ALL):
            results["tokens"] = await self.cleanup_expired_tokens()
        if k in (CleanupKind.LOGS, CleanupKind.ALL):
            results["logs"] = await self.cleanup_old_logs()
        if k in (CleanupKind.STATS, CleanupKind.ALL):
            results["stats"] = await self.generate_daily_stats()
        return results
