from pydantic_settings import BaseSettings
from pydantic import field_validator
from typing import List, Any
import json


class Settings(BaseSettings):
    POSTGRES_HOST: str = "db"
    POSTGRES_PORT: int = 5432
    POSTGRES_DB: str = "spacedrop"
    POSTGRES_USER: str = "spacedrop"
    POSTGRES_PASSWORD: str = "spacedrop"

    DATABASE_URL: str = "postgresql+asyncpg://spacedrop:spacedrop@db:5432/spacedrop"

    # production | development | test
    ENVIRONMENT: str = "production"
    APP_VERSION: str = "1.0.0"

    LOG_LEVEL: str = "INFO"
    LOG_DIR: str = "/var/log/app/web"

    # Public URL of this API (consume links point here) and of the front-end
    API_BASE_URL: str = "http://localhost:8000"
    FRONTEND_URL: str = "http://localhost:3000"
    # Comma separated or JSON array
    CORS_ORIGINS: str = ""
    # Proxies whose X-Forwarded-For is trusted for client IPs (comma separated, "*" for any)
    FORWARDED_ALLOW_IPS: str = "127.0.0.1"

    MAGIC_LINK_TTL_HOURS: int = 6
    SESSION_TTL_HOURS: int = 4
    ADMIN_SESSION_TTL_HOURS: int = 8

    MAGIC_LINK_RATE_LIMIT: int = 5
    MAGIC_LINK_RATE_WINDOW_SECONDS: int = 3600

    HCAPTCHA_SECRET_KEY: str = ""
    HCAPTCHA_VERIFY_URL: str = "https://api.hcaptcha.com/siteverify"
    HTTP_TIMEOUT_SECONDS: float = 5

    # SMTP fallback when no smtp_config row is stored
    SMTP_HOST: str = ""
    SMTP_PORT: int = 587
    SMTP_USER: str = ""
    SMTP_PASSWORD: str = ""
    SMTP_SECURE: bool = False
    SMTP_STARTTLS: bool = True
    SMTP_FROM_NAME: str = "SpaceDrop"
    SMTP_FROM_ADDRESS: str = ""
    SMTP_TIMEOUT_SECONDS: float = 8

    SCHEDULER_ENABLED: bool = True
    TIMEZONE: str = "UTC"
    USER_SESSION_RETENTION_DAYS: int = 7
    ADMIN_SESSION_RETENTION_DAYS: int = 30
    LOG_RETENTION_DAYS: int = 90

    BCRYPT_ROUNDS: int = 12
    ADMIN_COOKIE_SECURE: bool = True

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = True

    @field_validator("ENVIRONMENT", mode="before")
    @classmethod
    def normalize_environment(cls, v: Any) -> str:
        return str(v or "production").strip().lower()

    @property
    def cors_origins(self) -> List[str]:
        s = (self.CORS_ORIGINS or "").strip()
        if not s:
            return []
        if s.startswith("[") and s.endswith("]"):
            return [str(x).strip() for x in json.loads(s) if str(x).strip()]
        return [p.strip() for p in s.split(",") if p.strip()]

    @property
    def forwarded_allow_ips(self) -> List[str]:
        return [p.strip() for p in (self.FORWARDED_ALLOW_IPS or "").split(",") if p.strip()]

    @property
    def is_development(self) -> bool:
        return self.ENVIRONMENT == "development"


settings = Settings()
