from fastapi import FastAPI, APIRouter, Depends, Request, Response, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, RedirectResponse
from uvicorn.middleware.proxy_headers import ProxyHeadersMiddleware
from pydantic import ValidationError as PydanticValidationError
from contextlib import asynccontextmanager
from typing import Optional
import logging
import time

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from shared.config import Settings, settings as shared_settings
from shared.db import AsyncSessionLocal, get_async_session
from shared.enums import LogEventType
from shared.errors import AppError, InvalidOrExpiredToken, MailerError, RateLimited, ValidationError
from shared.schemas import (
    AdminConfigRequest,
    AdminLoginRequest,
    AdminUpdateRequest,
    CleanupRequest,
    ConsumeRequest,
    MagicLinkRequest,
    SmtpTestRequest,
    UploadCompleteRequest,
    UploadInitRequest,
)
from shared.services.admin_auth import AdminAuthService
from shared.services.audit_log import AuditLogRepo
from shared.services.captcha import CaptchaVerifier
from shared.services.cleanup import CleanupService
from shared.services.cleanup_scheduler import CleanupScheduler
from shared.services.config_store import REDACTED, ConfigStore, SmtpConfig
from shared.services.magic_links import MagicLinkIssuer, consume_magic_token, frontend_redirect_url
from shared.services.mailer import Mailer, SmtpTestResult
from shared.services.sessions import AdminSessionInfo, SessionInfo, logout_admin_session, logout_user_session
from shared.services.uploads import UploadBroker, file_to_dict
from shared.utils import clamp_int, isoformat_utc, utc_now

from .config import WebConfig, get_config
from .dependencies import (
    ADMIN_COOKIE_NAME,
    client_ip,
    get_db,
    require_admin_session,
    require_space_session,
    user_agent,
)
from .services.dashboard import build_dashboard, list_all_files


_logger = logging.getLogger(__name__)

router = APIRouter()


def _web_config(request: Request) -> WebConfig:
    return request.app.state.web_config


def _settings(request: Request) -> Settings:
    return request.app.state.settings


def _pagination(page, limit, *, default_limit: int = 20, max_limit: int = 100) -> tuple[int, int]:
    return (
        clamp_int(page, default=1, min_value=1, max_value=1_000_000),
        clamp_int(limit, default=default_limit, min_value=1, max_value=max_limit),
    )


def _pagination_out(page: int, limit: int, total: int) -> dict:
    return {"page": page, "limit": limit, "total": total, "pages": (total + limit - 1) // limit}


# ---------------------------------------------------------------- auth


@router.post("/auth/magic-link")
async def request_magic_link(body: MagicLinkRequest, request: Request, session: AsyncSession = Depends(get_db)):
    issuer: MagicLinkIssuer = request.app.state.magic_link_issuer
    result = await issuer.issue(
        session,
        email=body.email,
        space_name=body.space_name,
        captcha_token=body.captcha_token,
        ip_address=client_ip(request),
        user_agent=user_agent(request),
    )
    payload = {
        "success": True,
        "message": "Magic link sent to your email" if result.sent else "Magic link created, but the email could not be delivered",
        "email_sent": result.sent,
    }
    if _web_config(request).expose_dev_tokens:
        payload["magic_token"] = result.raw_token
        payload["magic_link"] = result.link
    return payload


@router.get("/auth/consume")
async def consume_redirect(request: Request, token: Optional[str] = None, session: AsyncSession = Depends(get_db)):
    cfg = _web_config(request)
    try:
        result = await consume_magic_token(
            session,
            token=token,
            session_ttl_hours=cfg.session_ttl_hours,
            ip_address=client_ip(request),
            user_agent=user_agent(request),
        )
    except InvalidOrExpiredToken as e:
        return RedirectResponse(frontend_redirect_url(cfg.frontend_url, error=e.message), status_code=status.HTTP_302_FOUND)
    return RedirectResponse(
        frontend_redirect_url(cfg.frontend_url, session_token=result.session_token, space_name=result.space_name),
        status_code=status.HTTP_302_FOUND,
    )


@router.post("/auth/consume")
async def consume_json(body: ConsumeRequest, request: Request, session: AsyncSession = Depends(get_db)):
    result = await consume_magic_token(
        session,
        token=body.token,
        session_ttl_hours=_web_config(request).session_ttl_hours,
        ip_address=client_ip(request),
        user_agent=user_agent(request),
    )
    return {
        "success": True,
        "session_token": result.session_token,
        "space_name": result.space_name,
        "expires_at": isoformat_utc(result.expires_at),
    }


@router.get("/auth/verify")
async def verify_session(info: SessionInfo = Depends(require_space_session)):
    return {
        "success": True,
        "session": {
            "spaceId": info.space_id,
            "spaceName": info.space_name,
            "expiresAt": isoformat_utc(info.expires_at),
            "isActive": info.is_active,
        },
    }


@router.post("/auth/logout")
async def logout(request: Request, info: SessionInfo = Depends(require_space_session), session: AsyncSession = Depends(get_db)):
    await logout_user_session(session, info, ip_address=client_ip(request), user_agent=user_agent(request))
    await session.commit()
    return {"success": True, "message": "Logged out"}


# ---------------------------------------------------------------- uploads


@router.post("/upload/init")
async def upload_init(
    body: UploadInitRequest,
    request: Request,
    info: SessionInfo = Depends(require_space_session),
    session: AsyncSession = Depends(get_db),
):
    ticket = await UploadBroker(session).init_upload(
        info,
        filename=body.filename,
        file_size=body.file_size,
        mime_type=body.mime_type,
        ip_address=client_ip(request),
        user_agent=user_agent(request),
    )
    await session.commit()
    return {
        "success": True,
        "upload_id": ticket.upload_id,
        "file_id": ticket.file_id,
        "s3_key": ticket.s3_key,
        "bucket": ticket.bucket,
    }


@router.post("/upload/complete")
async def upload_complete(
    body: UploadCompleteRequest,
    request: Request,
    info: SessionInfo = Depends(require_space_session),
    session: AsyncSession = Depends(get_db),
):
    f = await UploadBroker(session).complete_upload(
        info,
        upload_id=body.upload_id,
        checksum=body.checksum,
        ip_address=client_ip(request),
        user_agent=user_agent(request),
    )
    await session.commit()
    return {"success": True, "file": file_to_dict(f)}


@router.get("/upload/files")
async def upload_files(
    page: Optional[int] = None,
    limit: Optional[int] = None,
    status: Optional[str] = None,
    info: SessionInfo = Depends(require_space_session),
    session: AsyncSession = Depends(get_db),
):
    page_n, limit_n = _pagination(page, limit)
    files, total = await UploadBroker(session).list_files(info.space_id, status=status, page=page_n, limit=limit_n)
    return {
        "success": True,
        "files": [file_to_dict(f) for f in files],
        "pagination": _pagination_out(page_n, limit_n, total),
        "space": {"id": info.space_id, "name": info.space_name},
    }


@router.delete("/upload/files/{file_id}")
async def upload_delete(
    file_id: int,
    request: Request,
    info: SessionInfo = Depends(require_space_session),
    session: AsyncSession = Depends(get_db),
):
    await UploadBroker(session).delete_file(info, file_id, ip_address=client_ip(request), user_agent=user_agent(request))
    await session.commit()
    return {"success": True, "message": "File deleted"}


# ---------------------------------------------------------------- admin


def _admin_service(request: Request, session: AsyncSession) -> AdminAuthService:
    s = _settings(request)
    return AdminAuthService(session, session_ttl_hours=s.ADMIN_SESSION_TTL_HOURS, bcrypt_rounds=s.BCRYPT_ROUNDS)


@router.post("/admin/login")
async def admin_login(body: AdminLoginRequest, request: Request, response: Response, session: AsyncSession = Depends(get_db)):
    result = await _admin_service(request, session).login(
        username=body.username,
        password=body.password,
        ip_address=client_ip(request),
        user_agent=user_agent(request),
    )
    await session.commit()

    cfg = _web_config(request)
    response.set_cookie(
        ADMIN_COOKIE_NAME,
        result.session_token,
        max_age=int(cfg.admin_session_ttl_hours) * 3600,
        httponly=True,
        secure=cfg.admin_cookie_secure,
        samesite="lax",
    )
    return {
        "success": True,
        "session_token": result.session_token,
        "expires_at": isoformat_utc(result.expires_at),
        "user": {"id": result.admin_user_id, "username": result.username, "email": result.email},
    }


@router.post("/admin/logout")
async def admin_logout(
    request: Request,
    response: Response,
    admin: AdminSessionInfo = Depends(require_admin_session),
    session: AsyncSession = Depends(get_db),
):
    await logout_admin_session(session, admin, ip_address=client_ip(request), user_agent=user_agent(request))
    await session.commit()
    response.delete_cookie(ADMIN_COOKIE_NAME)
    return {"success": True, "message": "Logged out"}


@router.get("/admin/verify")
async def admin_verify(admin: AdminSessionInfo = Depends(require_admin_session)):
    return {
        "success": True,
        "user": {"id": admin.admin_user_id, "username": admin.username, "email": admin.email},
        "expires_at": isoformat_utc(admin.expires_at),
    }


@router.post("/admin/config")
async def admin_config(
    body: AdminConfigRequest,
    request: Request,
    admin: AdminSessionInfo = Depends(require_admin_session),
    session: AsyncSession = Depends(get_db),
):
    store = ConfigStore(session, settings=_settings(request))
    key = (body.key or "").strip()
    if not key:
        raise ValidationError("Config key is required")

    if body.action == "get_config":
        return {"success": True, "key": key, "value": await store.load_for_admin(key)}

    if body.action == "save_config":
        await store.save(key, body.value)
        await AuditLogRepo(session).log(
            LogEventType.CONFIG_UPDATED,
            ip_address=client_ip(request),
            user_agent=user_agent(request),
            details={"key": key, "username": admin.username},
        )
        await session.commit()
        return {"success": True, "key": key, "value": await store.load_for_admin(key)}

    raise ValidationError(f"Unknown action: {body.action}")


@router.post("/admin/update")
async def admin_update(
    body: AdminUpdateRequest,
    request: Request,
    admin: AdminSessionInfo = Depends(require_admin_session),
    session: AsyncSession = Depends(get_db),
):
    svc = _admin_service(request, session)
    if body.action == "update_password":
        await svc.change_password(admin, body.new_password, ip_address=client_ip(request))
        await session.commit()
        return {"success": True, "message": "Password updated"}

    if body.action == "update_email":
        email = await svc.change_email(admin, body.email, ip_address=client_ip(request))
        await session.commit()
        return {"success": True, "message": "Email updated", "email": email}

    raise ValidationError(f"Unknown action: {body.action}")


@router.post("/admin/test-smtp")
async def admin_test_smtp(
    body: SmtpTestRequest,
    request: Request,
    admin: AdminSessionInfo = Depends(require_admin_session),
    session: AsyncSession = Depends(get_db),
):
    mailer: Mailer = request.app.state.mailer
    store = ConfigStore(session, settings=_settings(request))
    stored = await store.get_smtp()
    if body.config:
        try:
            smtp = SmtpConfig.model_validate(body.config)
        except PydanticValidationError:
            raise ValidationError("Invalid SMTP configuration")
        if smtp.password == REDACTED:
            smtp = smtp.model_copy(update={"password": stored.password})
    else:
        smtp = stored

    to = (body.email or admin.email or "").strip()
    result = await mailer.test_connection(smtp)
    sent = False
    if result.ok and to:
        try:
            await mailer.send_test_email(smtp, to=to)
            sent = True
        except MailerError as e:
            result = SmtpTestResult(ok=False, message=e.message)

    await AuditLogRepo(session).log(
        LogEventType.SMTP_TEST,
        ip_address=client_ip(request),
        details={"username": admin.username, "host": smtp.host, "ok": result.ok, "email_sent": sent},
    )
    await session.commit()

    if not result.ok:
        raise MailerError(result.message)
    return {"success": True, "message": result.message, "email_sent": sent}


@router.get("/admin/dashboard")
async def admin_dashboard(admin: AdminSessionInfo = Depends(require_admin_session), session: AsyncSession = Depends(get_db)):
    data = await build_dashboard(session)
    return {"success": True, **data}


@router.get("/admin/files")
async def admin_files(
    page: Optional[int] = None,
    limit: Optional[int] = None,
    status: Optional[str] = None,
    space: Optional[str] = None,
    admin: AdminSessionInfo = Depends(require_admin_session),
    session: AsyncSession = Depends(get_db),
):
    page_n, limit_n = _pagination(page, limit, default_limit=50, max_limit=200)
    rows, total = await list_all_files(session, status=status, space_name=space, page=page_n, limit=limit_n)
    return {
        "success": True,
        "files": [{**file_to_dict(f), "space_name": space_name} for f, space_name in rows],
        "pagination": _pagination_out(page_n, limit_n, total),
    }


@router.get("/admin/logs")
async def admin_logs(
    page: Optional[int] = None,
    limit: Optional[int] = None,
    event_type: Optional[str] = None,
    admin: AdminSessionInfo = Depends(require_admin_session),
    session: AsyncSession = Depends(get_db),
):
    page_n, limit_n = _pagination(page, limit, default_limit=50, max_limit=200)
    rows, total = await AuditLogRepo(session).list_events(page=page_n, limit=limit_n, event_type=event_type)
    return {
        "success": True,
        "logs": [
            {
                "id": r.id,
                "event_type": r.event_type,
                "space_id": r.space_id,
                "file_id": r.file_id,
                "ip_address": r.ip_address,
                "user_agent": r.user_agent,
                "details": r.details,
                "created_at": isoformat_utc(r.created_at),
            }
            for r in rows
        ],
        "pagination": _pagination_out(page_n, limit_n, total),
    }


@router.post("/admin/cleanup")
async def admin_cleanup(body: CleanupRequest, request: Request, admin: AdminSessionInfo = Depends(require_admin_session)):
    cleanup: CleanupService = request.app.state.cleanup
    results = await cleanup.run(body.type)
    _logger.info("manual cleanup finished", extra={"kind": body.type, "username": admin.username})
    return {"success": True, "type": body.type, "results": results}


# ---------------------------------------------------------------- health


@router.get("/health")
async def health(request: Request):
    db_ok = True
    try:
        async with get_async_session(request.app.state.session_factory) as session:
            await session.execute(text("SELECT 1"))
    except (SQLAlchemyError, OSError):
        db_ok = False

    s = _settings(request)
    scheduler: CleanupScheduler = request.app.state.scheduler
    body = {
        "status": "ok" if db_ok else "degraded",
        "timestamp": isoformat_utc(utc_now()),
        "version": s.APP_VERSION,
        "environment": s.ENVIRONMENT,
        "database": {"connected": db_ok},
        "scheduler": scheduler.status(),
    }
    return JSONResponse(body, status_code=status.HTTP_200_OK if db_ok else status.HTTP_503_SERVICE_UNAVAILABLE)


# ---------------------------------------------------------------- app


def _register_error_handlers(app: FastAPI, cfg: WebConfig) -> None:
    @app.exception_handler(AppError)
    async def app_error_handler(request: Request, exc: AppError):
        headers = None
        if isinstance(exc, RateLimited):
            headers = {
                "Retry-After": str(exc.retry_after),
                "X-RateLimit-Limit": str(_settings(request).MAGIC_LINK_RATE_LIMIT),
                "X-RateLimit-Remaining": "0",
            }
        if exc.status_code >= 500:
            _logger.error("request failed", extra={"path": request.url.path, "error": exc.message})
        return JSONResponse({"success": False, "error": exc.message}, status_code=exc.status_code, headers=headers)

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        body = {"success": False, "error": "Invalid request"}
        if cfg.show_error_details:
            body["details"] = jsonable_encoder(exc.errors())
        return JSONResponse(body, status_code=status.HTTP_400_BAD_REQUEST)

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        _logger.exception("unhandled error", extra={"path": request.url.path})
        body = {"success": False, "error": "Internal server error"}
        if cfg.show_error_details:
            body["details"] = f"{type(exc).__name__}: {exc}"
        return JSONResponse(body, status_code=status.HTTP_500_INTERNAL_SERVER_ERROR)


def create_app(
    *,
    settings: Settings | None = None,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
    mailer: Mailer | None = None,
    captcha: CaptchaVerifier | None = None,
    enable_scheduler: bool | None = None,
) -> FastAPI:
    s = settings or shared_settings
    cfg = get_config(s)
    factory = session_factory or AsyncSessionLocal

    mailer = mailer or Mailer(timeout=s.SMTP_TIMEOUT_SECONDS)
    captcha = captcha or CaptchaVerifier(s.HCAPTCHA_SECRET_KEY, s.HCAPTCHA_VERIFY_URL, timeout=s.HTTP_TIMEOUT_SECONDS)
    cleanup = CleanupService(factory, s)
    scheduler = CleanupScheduler(cleanup, timezone=s.TIMEZONE)
    run_scheduler = s.SCHEDULER_ENABLED if enable_scheduler is None else bool(enable_scheduler)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if run_scheduler:
            scheduler.start()
        _logger.info("app started", extra={"environment": s.ENVIRONMENT, "scheduler": run_scheduler})
        try:
            yield
        finally:
            scheduler.stop()
            _logger.info("app stopped")

    app = FastAPI(title="SpaceDrop API", version=s.APP_VERSION, lifespan=lifespan)

    app.state.settings = s
    app.state.web_config = cfg
    app.state.session_factory = factory
    app.state.mailer = mailer
    app.state.captcha = captcha
    app.state.magic_link_issuer = MagicLinkIssuer(mailer=mailer, captcha=captcha, settings=s)
    app.state.cleanup = cleanup
    app.state.scheduler = scheduler

    _register_error_handlers(app, cfg)

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        started = time.perf_counter()
        response = await call_next(request)
        # Path only: query strings carry tokens
        _logger.info(
            "http request",
            extra={
                "method": request.method,
                "path": request.url.path,
                "status_code": response.status_code,
                "duration_ms": round((time.perf_counter() - started) * 1000, 1),
            },
        )
        return response

    if cfg.cors_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=cfg.cors_origins,
            allow_credentials=True,
            allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
            allow_headers=["Content-Type", "Authorization", "x-session-token", "x-admin-session"],
        )

    # Client IPs feed the magic-link rate limit: only listed proxies may rewrite them
    app.add_middleware(ProxyHeadersMiddleware, trusted_hosts=s.forwarded_allow_ips)

    app.include_router(router)
    return app


app = create_app()
