from datetime import datetime, timezone
from typing import Optional


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes (SQLite returns them without tzinfo)."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def isoformat_utc(dt: Optional[datetime]) -> Optional[str]:
    d = as_utc(dt)
    if d is None:
        return None
    return d.isoformat().replace("+00:00", "Z")


def mask_email(email: Optional[str]) -> str:
    if not email or "@" not in email:
        return "***"
    local, _, domain = email.partition("@")
    return f"{local[:1]}***@{domain}"


def clamp_int(value, *, default: int, min_value: int, max_value: int) -> int:
    try:
        v = int(value)
    except (TypeError, ValueError):
        return default
    return max(min_value, min(max_value, v))
