from shared.config import Settings, settings as shared_settings
from pydantic import BaseModel


class WebConfig(BaseModel):
    api_base_url: str
    frontend_url: str
    cors_origins: list[str]
    expose_dev_tokens: bool
    show_error_details: bool
    admin_cookie_secure: bool
    admin_session_ttl_hours: int
    session_ttl_hours: int
    version: str


def get_config(s: Settings | None = None) -> WebConfig:
    s = s or shared_settings
    return WebConfig(
        api_base_url=s.API_BASE_URL,
        frontend_url=s.FRONTEND_URL,
        cors_origins=s.cors_origins,
        # Raw magic tokens and error details only leave the server in development
        expose_dev_tokens=s.is_development,
        show_error_details=s.is_development,
        admin_cookie_secure=s.ADMIN_COOKIE_SECURE,
        admin_session_ttl_hours=s.ADMIN_SESSION_TTL_HOURS,
        session_ttl_hours=s.SESSION_TTL_HOURS,
        version=s.APP_VERSION,
    )
