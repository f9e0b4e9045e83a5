from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta

import bcrypt
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from shared.enums import LogEventType
from shared.errors import Unauthorized, ValidationError
from shared.models import AdminSession, AdminUser
from shared.services.audit_log import AuditLogRepo
from shared.services.magic_links import validate_email
from shared.services.sessions import AdminSessionInfo
from shared.services.tokens import new_token
from shared.utils import utc_now


_logger = logging.getLogger(__name__)

PASSWORD_MIN_LENGTH = 8
# bcrypt only looks at the first 72 bytes
PASSWORD_MAX_BYTES = 72


@dataclass(frozen=True)
class AdminLoginResult:
    session_token: str
    expires_at: datetime
    admin_user_id: int
    username: str
    email: str | None


def validate_password(password: str | None) -> str:
    pw = password or ""
    if len(pw) < PASSWORD_MIN_LENGTH:
        raise ValidationError(f"Password must be at least {PASSWORD_MIN_LENGTH} characters")
    if len(pw.encode("utf-8")) > PASSWORD_MAX_BYTES:
        raise ValidationError(f"Password must be at most {PASSWORD_MAX_BYTES} bytes")
    return pw


async def hash_password(password: str, *, rounds: int = 12) -> str:
    salt = bcrypt.gensalt(rounds=int(rounds))
    hashed = await asyncio.to_thread(bcrypt.hashpw, password.encode("utf-8"), salt)
    return hashed.decode("utf-8")


async def check_password(password: str, password_hash: str) -> bool:
    pw = (password or "").encode("utf-8")
    if not pw or len(pw) > PASSWORD_MAX_BYTES or not password_hash:
        return False
    try:
        return await asyncio.to_thread(bcrypt.checkpw, pw, password_hash.encode("utf-8"))
    except ValueError:
        # Malformed stored hash
        _logger.error("admin password hash is malformed")
        return False


class AdminAuthService:
    def __init__(self, session: AsyncSession, *, session_ttl_hours: int = 8, bcrypt_rounds: int = 12):
        self.session = session
        self.session_ttl_hours = int(session_ttl_hours)
        self.bcrypt_rounds = int(bcrypt_rounds)

    async def get_user(self, admin_user_id: int) -> AdminUser | None:
        return await self.session.get(AdminUser, int(admin_user_id))

    async def get_by_username(self, username: str) -> AdminUser | None:
        res = await self.session.execute(select(AdminUser).where(AdminUser.username == str(username).strip()))
        return res.scalar_one_or_none()

    async def login(
        self,
        *,
        username: str | None,
        password: str | None,
        ip_address: str | None = None,
        user_agent: str | None = None,
        now_utc: datetime | None = None,
    ) -> AdminLoginResult:
        if not (username or "").strip() or not password:
            raise ValidationError("Username and password are required")

        user = await self.get_by_username(str(username))
        if user is None or not user.is_active or not await check_password(password, user.password_hash):
            _logger.warning("admin login failed", extra={"username": str(username).strip(), "ip": ip_address})
            raise Unauthorized("Invalid credentials")

        now = now_utc or utc_now()
        token = new_token()
        expires_at = now + timedelta(hours=self.session_ttl_hours)
        self.session.add(
            AdminSession(
                admin_user_id=int(user.id),
                session_token=token,
                expires_at=expires_at,
                is_active=True,
                last_accessed_at=now,
                ip_address=ip_address,
                user_agent=user_agent,
                created_at=now,
            )
        )
        user.last_login_at = now
        await AuditLogRepo(self.session).log(
            LogEventType.ADMIN_LOGIN,
            ip_address=ip_address,
            user_agent=user_agent,
            details={"username": user.username},
            created_at=now,
        )
        _logger.info("admin logged in", extra={"admin_user_id": user.id})
        return AdminLoginResult(
            session_token=token,
            expires_at=expires_at,
            admin_user_id=int(user.id),
            username=str(user.username),
            email=user.email,
        )

    async def change_password(self, admin: AdminSessionInfo, new_password: str | None, *, ip_address: str | None = None) -> None:
        pw = validate_password(new_password)
        user = await self.get_user(admin.admin_user_id)
        if user is None:
            raise Unauthorized()
        user.password_hash = await hash_password(pw, rounds=self.bcrypt_rounds)
        user.updated_at = utc_now()
        await self.session.flush()
        await AuditLogRepo(self.session).log(
            LogEventType.ADMIN_UPDATE,
            ip_address=ip_address,
            details={"username": user.username, "field": "password"},
        )

    async def change_email(self, admin: AdminSessionInfo, email: str | None, *, ip_address: str | None = None) -> str:
        email_n = validate_email(email)
        user = await self.get_user(admin.admin_user_id)
        if user is None:
            raise Unauthorized()
        user.email = email_n
        user.updated_at = utc_now()
        await self.session.flush()
        await AuditLogRepo(self.session).log(
            LogEventType.ADMIN_UPDATE,
            ip_address=ip_address,
            details={"username": user.username, "field": "email"},
        )
        return email_n

    async def ensure_admin_user(self, *, username: str, password: str, email: str | None = None) -> AdminUser:
        """Create the admin account or reset its password (operator bootstrap)."""
        name = (username or "").strip()
        if not name:
            raise ValidationError("Username is required")
        pw = validate_password(password)
        email_n = validate_email(email) if email else None

        user = await self.get_by_username(name)
        pw_hash = await hash_password(pw, rounds=self.bcrypt_rounds)
        if user is None:
            user = AdminUser(username=name, password_hash=pw_hash, email=email_n, is_active=True)
            self.session.add(user)
            _logger.info("admin user created", extra={"username": name})
        else:
            user.password_hash = pw_hash
            user.is_active = True
            if email_n:
                user.email = email_n
            user.updated_at = utc_now()
            _logger.info("admin password reset", extra={"username": name})
        await self.session.flush()
        return user
