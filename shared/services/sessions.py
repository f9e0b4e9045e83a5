from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from shared.db import get_async_session
from shared.enums import LogEventType
from shared.errors import Unauthorized
from shared.models import AdminSession, AdminUser, Space, UserSession
from shared.services.audit_log import AuditLogRepo
from shared.utils import as_utc, utc_now


_logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SessionInfo:
    session_id: int
    space_id: int
    space_name: str
    expires_at: datetime
    is_active: bool


@dataclass(frozen=True)
class AdminSessionInfo:
    session_id: int
    admin_user_id: int
    username: str
    email: str | None
    expires_at: datetime


async def verify_user_session(session: AsyncSession, token: str | None, *, now_utc: datetime | None = None) -> SessionInfo:
    tok = (token or "").strip()
    if not tok:
        raise Unauthorized("Session token required")

    now = now_utc or utc_now()
    res = await session.execute(
        select(UserSession, Space.space_name)
        .join(Space, Space.id == UserSession.space_id)
        .where(UserSession.session_token == tok)
        .where(UserSession.is_active == True)
        .where(UserSession.expires_at > now)
    )
    row = res.first()
    if row is None:
        raise Unauthorized("Invalid or expired session")

    us, space_name = row[0], row[1]
    return SessionInfo(
        session_id=int(us.id),
        space_id=int(us.space_id),
        space_name=str(space_name),
        expires_at=as_utc(us.expires_at),
        is_active=bool(us.is_active),
    )


async def verify_admin_session(session: AsyncSession, token: str | None, *, now_utc: datetime | None = None) -> AdminSessionInfo:
    tok = (token or "").strip()
    if not tok:
        raise Unauthorized("Admin session required")

    now = now_utc or utc_now()
    res = await session.execute(
        select(AdminSession, AdminUser)
        .join(AdminUser, AdminUser.id == AdminSession.admin_user_id)
        .where(AdminSession.session_token == tok)
        .where(AdminSession.is_active == True)
        .where(AdminSession.expires_at > now)
        .where(AdminUser.is_active == True)
    )
    row = res.first()
    if row is None:
        raise Unauthorized("Invalid or expired admin session")

    s, user = row[0], row[1]
    return AdminSessionInfo(
        session_id=int(s.id),
        admin_user_id=int(user.id),
        username=str(user.username),
        email=user.email,
        expires_at=as_utc(s.expires_at),
    )


async def _touch(factory: async_sessionmaker[AsyncSession] | None, model, session_id: int) -> None:
    try:
        async with get_async_session(factory) as session:
            await session.execute(
                update(model)
                .where(model.id == int(session_id))
                .values(last_accessed_at=utc_now())
                .execution_options(synchronize_session=False)
            )
    except SQLAlchemyError:
        # Best effort: a failed touch never fails the request that triggered it
        _logger.warning("session touch failed", extra={"table": model.__tablename__, "session_id": session_id})


async def touch_user_session(factory: async_sessionmaker[AsyncSession] | None, session_id: int) -> None:
    await _touch(factory, UserSession, session_id)


async def touch_admin_session(factory: async_sessionmaker[AsyncSession] | None, session_id: int) -> None:
    await _touch(factory, AdminSession, session_id)


async def logout_user_session(
    session: AsyncSession,
    info: SessionInfo,
    *,
    ip_address: str | None = None,
    user_agent: str | None = None,
) -> None:
    await session.execute(
        update(UserSession)
        .where(UserSession.id == info.session_id)
        .values(is_active=False)
        .execution_options(synchronize_session=False)
    )
    await AuditLogRepo(session).log(
        LogEventType.USER_LOGOUT,
        space_id=info.space_id,
        ip_address=ip_address,
        user_agent=user_agent,
        details={"space_name": info.space_name},
    )


async def logout_admin_session(
    session: AsyncSession,
    info: AdminSessionInfo,
    *,
    ip_address: str | None = None,
    user_agent: str | None = None,
) -> None:
    await session.execute(
        update(AdminSession)
        .where(AdminSession.id == info.session_id)
        .values(is_active=False)
        .execution_options(synchronize_session=False)
    )
    await AuditLogRepo(session).log(
        LogEventType.ADMIN_LOGOUT,
        ip_address=ip_address,
        user_agent=user_agent,
        details={"username": info.username},
    )
