from __future__ import annotations

from typing import AsyncIterator

from fastapi import BackgroundTasks, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from shared.db import get_async_session
from shared.services.sessions import (
    AdminSessionInfo,
    SessionInfo,
    touch_admin_session,
    touch_user_session,
    verify_admin_session,
    verify_user_session,
)


ADMIN_COOKIE_NAME = "admin_session"


async def get_db(request: Request) -> AsyncIterator[AsyncSession]:
    async with get_async_session(request.app.state.session_factory) as session:
        yield session


def client_ip(request: Request) -> str | None:
    # ProxyHeadersMiddleware already rewrote client from X-Forwarded-For
    return request.client.host if request.client else None


def user_agent(request: Request) -> str | None:
    ua = request.headers.get("user-agent")
    return ua[:1000] if ua else None


def _bearer(request: Request) -> str | None:
    auth = request.headers.get("authorization") or ""
    scheme, _, value = auth.partition(" ")
    if scheme.lower() == "bearer" and value.strip():
        return value.strip()
    return None


def session_token_from_request(request: Request) -> str | None:
    return request.headers.get("x-session-token") or _bearer(request) or request.query_params.get("session")


def admin_token_from_request(request: Request) -> str | None:
    return _bearer(request) or request.headers.get("x-admin-session") or request.cookies.get(ADMIN_COOKIE_NAME)


async def require_space_session(
    request: Request,
    background_tasks: BackgroundTasks,
    session: AsyncSession = Depends(get_db),
) -> SessionInfo:
    info = await verify_user_session(session, session_token_from_request(request))
    background_tasks.add_task(touch_user_session, request.app.state.session_factory, info.session_id)
    return info


async def require_admin_session(
    request: Request,
    background_tasks: BackgroundTasks,
    session: AsyncSession = Depends(get_db),
) -> AdminSessionInfo:
    info = await verify_admin_session(session, admin_token_from_request(request))
    background_tasks.add_task(touch_admin_session, request.app.state.session_factory, info.session_id)
    return info
