from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import datetime, timedelta
from urllib.parse import urlencode

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from shared.config import Settings
from shared.enums import LogEventType
from shared.errors import InvalidOrExpiredToken, MailerError, ValidationError
from shared.models import Space, UserSession
from shared.services.audit_log import AuditLogRepo
from shared.services.captcha import CaptchaVerifier
from shared.services.config_store import ConfigStore
from shared.services.mailer import Mailer
from shared.services.rate_limit import MagicLinkRateLimiter
from shared.services.spaces import SpaceRepository
from shared.services.tokens import hash_token, new_token
from shared.utils import mask_email, utc_now


_logger = logging.getLogger(__name__)

EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
SPACE_NAME_MAX_LENGTH = 255


@dataclass(frozen=True)
class IssueResult:
    sent: bool
    space_id: int
    raw_token: str
    link: str
    expires_at: datetime


@dataclass(frozen=True)
class ConsumeResult:
    session_token: str
    space_id: int
    space_name: str
    expires_at: datetime


def validate_email(email: str | None) -> str:
    e = (email or "").strip().lower()
    if not e or not EMAIL_RE.match(e):
        raise ValidationError("Invalid email address")
    return e


def validate_space_name(space_name: str | None) -> str:
    name = (space_name or "").strip()
    if not name:
        raise ValidationError("Space name is required")
    if len(name) > SPACE_NAME_MAX_LENGTH:
        raise ValidationError(f"Space name must be at most {SPACE_NAME_MAX_LENGTH} characters")
    return name


def build_consume_link(api_base_url: str, raw_token: str) -> str:
    return f"{str(api_base_url).rstrip('/')}/auth/consume?{urlencode({'token': raw_token})}"


class MagicLinkIssuer:
    def __init__(
        self,
        *,
        mailer: Mailer,
        captcha: CaptchaVerifier,
        settings: Settings,
        rate_limiter: MagicLinkRateLimiter | None = None,
    ):
        self.mailer = mailer
        self.captcha = captcha
        self.settings = settings
        self.rate_limiter = rate_limiter or MagicLinkRateLimiter(
            limit=settings.MAGIC_LINK_RATE_LIMIT,
            window_seconds=settings.MAGIC_LINK_RATE_WINDOW_SECONDS,
        )

    async def issue(
        self,
        session: AsyncSession,
        *,
        email: str | None,
        space_name: str | None,
        captcha_token: str | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
        now_utc: datetime | None = None,
    ) -> IssueResult:
        now = now_utc or utc_now()

        # Rejected attempts leave no trace in the database
        await self.rate_limiter.check(session, ip_address, now_utc=now)

        email_n = validate_email(email)
        name = validate_space_name(space_name)

        if not await self.captcha.verify(captcha_token, ip_address):
            raise ValidationError("Captcha verification failed")

        raw_token = new_token()
        expires_at = now + timedelta(hours=int(self.settings.MAGIC_LINK_TTL_HOURS))

        spaces = SpaceRepository(session)
        space = await spaces.upsert_for_link(name, token_hash=hash_token(raw_token), expires_at=expires_at)
        await spaces.set_email(space.id, email_n)
        await AuditLogRepo(session).log(
            LogEventType.MAGIC_LINK_REQUESTED,
            space_id=space.id,
            ip_address=ip_address,
            user_agent=user_agent,
            details={"space_name": name},
            created_at=now,
        )
        smtp = await ConfigStore(session, settings=self.settings).get_smtp()
        space_id = int(space.id)
        await session.commit()

        link = build_consume_link(self.settings.API_BASE_URL, raw_token)
        sent = False
        try:
            await self.mailer.send_magic_link(
                smtp,
                to=email_n,
                space_name=name,
                link=link,
                ttl_hours=int(self.settings.MAGIC_LINK_TTL_HOURS),
                session_hours=int(self.settings.SESSION_TTL_HOURS),
            )
            sent = True
        except MailerError as e:
            _logger.error(
                "magic link email failed",
                extra={"space_id": space_id, "to": mask_email(email_n), "error": e.message},
            )

        _logger.info("magic link issued", extra={"space_id": space_id, "email_sent": sent})
        return IssueResult(sent=sent, space_id=space_id, raw_token=raw_token, link=link, expires_at=expires_at)


async def consume_magic_token(
    session: AsyncSession,
    *,
    token: str | None,
    session_ttl_hours: int = 4,
    ip_address: str | None = None,
    user_agent: str | None = None,
    now_utc: datetime | None = None,
) -> ConsumeResult:
    """Exchange a raw magic token for a user session, exactly once.

    The token is cleared with a conditional UPDATE guarded by the same
    predicates as the lookup; a concurrent consumer that loses the race
    updates no row and gets InvalidOrExpiredToken. Session creation and the
    audit row share the same transaction.
    """
    tok = (token or "").strip()
    if not tok:
        raise InvalidOrExpiredToken()

    now = now_utc or utc_now()
    token_hash = hash_token(tok)

    res = await session.execute(
        select(Space.id, Space.space_name)
        .where(Space.magic_token_hash == token_hash)
        .where(Space.token_expires_at > now)
        .where(Space.is_authenticated == False)
        .limit(1)
    )
    row = res.first()
    if row is None:
        _logger.info("magic token rejected")
        raise InvalidOrExpiredToken()

    space_id, space_name = int(row[0]), str(row[1])

    upd = await session.execute(
        update(Space)
        .where(Space.id == space_id)
        .where(Space.magic_token_hash == token_hash)
        .where(Space.token_expires_at > now)
        .where(Space.is_authenticated == False)
        .values(magic_token_hash=None, token_expires_at=None, is_authenticated=True, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    if upd.rowcount != 1:
        _logger.warning("magic token consumed concurrently", extra={"space_id": space_id})
        await session.rollback()
        raise InvalidOrExpiredToken()

    session_token = new_token()
    expires_at = now + timedelta(hours=int(session_ttl_hours))
    session.add(
        UserSession(
            space_id=space_id,
            session_token=session_token,
            expires_at=expires_at,
            is_active=True,
            last_accessed_at=now,
            ip_address=ip_address,
            user_agent=user_agent,
            created_at=now,
        )
    )
    await AuditLogRepo(session).log(
        LogEventType.MAGIC_LINK_CONSUMED,
        space_id=space_id,
        ip_address=ip_address,
        user_agent=user_agent,
        details={"space_name": space_name},
        created_at=now,
    )
    await session.commit()

    _logger.info("magic token consumed", extra={"space_id": space_id})
    return ConsumeResult(session_token=session_token, space_id=space_id, space_name=space_name, expires_at=expires_at)


def frontend_redirect_url(frontend_url: str, *, session_token: str | None = None, space_name: str | None = None, error: str | None = None) -> str:
    base = f"{str(frontend_url).rstrip('/')}/"
    if error is not None:
        return f"{base}?{urlencode({'error': error})}"
    return f"{base}?{urlencode({'session': session_token, 'space': space_name})}"
