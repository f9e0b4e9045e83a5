from __future__ import annotations

import logging
from typing import Any, TypeVar

from pydantic import BaseModel, ConfigDict, Field, ValidationError as PydanticValidationError, field_validator, model_validator
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from shared.config import Settings, settings as default_settings
from shared.enums import ConfigKey
from shared.errors import ValidationError
from shared.models import ConfigEntry
from shared.utils import utc_now


_logger = logging.getLogger(__name__)

REDACTED = "********"
DEFAULT_NAMING_TEMPLATE = "{yyyy}/{mm}/{space}/{basename}-{random8}.{ext}"


class _ConfigModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class NamingOptions(_ConfigModel):
    lowercase: bool = False
    strip_accents: bool = Field(default=True, alias="stripAccents")
    replace_spaces_with_dash: bool = Field(default=True, alias="replaceSpacesWithDash")
    max_length: int | None = Field(default=None, alias="maxLength", ge=8, le=1024)


class NamingConfig(_ConfigModel):
    template: str = Field(default=DEFAULT_NAMING_TEMPLATE, alias="schema", min_length=1, max_length=512)
    options: NamingOptions = Field(default_factory=NamingOptions)

    @model_validator(mode="before")
    @classmethod
    def accept_bare_template(cls, v: Any) -> Any:
        if isinstance(v, str):
            return {"template": v}
        return v


class UploadConfig(_ConfigModel):
    # None means unlimited
    max_size_mb: float | None = Field(default=None, alias="maxSizeMB", gt=0)
    # Empty lists mean "any"
    allowed_extensions: list[str] = Field(default_factory=list, alias="allowedExtensions")
    allowed_mime_types: list[str] = Field(default_factory=list, alias="allowedMimeTypes")

    @field_validator("allowed_extensions", mode="before")
    @classmethod
    def normalize_extensions(cls, v: Any) -> list[str]:
        if v is None:
            return []
        if isinstance(v, str):
            v = v.split(",")
        return [str(x).strip().lower().lstrip(".") for x in v if str(x).strip().lstrip(".")]

    @field_validator("allowed_mime_types", mode="before")
    @classmethod
    def normalize_mime_types(cls, v: Any) -> list[str]:
        if v is None:
            return []
        if isinstance(v, str):
            v = v.split(",")
        return [str(x).strip().lower() for x in v if str(x).strip()]

    @property
    def max_size_bytes(self) -> int | None:
        if self.max_size_mb is None:
            return None
        return int(self.max_size_mb * 1024 * 1024)


class SmtpConfig(_ConfigModel):
    host: str = ""
    port: int = Field(default=587, ge=1, le=65535)
    username: str = Field(default="", alias="user")
    password: str = Field(default="", alias="pass")
    # Implicit TLS (port 465); otherwise plain connection upgraded with STARTTLS
    secure: bool = False
    starttls: bool = True
    from_name: str = "SpaceDrop"
    from_address: str = ""

    @model_validator(mode="before")
    @classmethod
    def flatten_nested(cls, v: Any) -> Any:
        # Also accept {"auth": {"user", "pass"}, "from": {"name", "address"}}
        if not isinstance(v, dict):
            return v
        data = dict(v)
        auth = data.pop("auth", None)
        if isinstance(auth, dict):
            data.setdefault("user", auth.get("user", ""))
            data.setdefault("pass", auth.get("pass", ""))
        sender = data.pop("from", None)
        if isinstance(sender, dict):
            data.setdefault("from_name", sender.get("name", "SpaceDrop"))
            data.setdefault("from_address", sender.get("address", ""))
        return data

    @property
    def is_configured(self) -> bool:
        return bool(self.host and (self.from_address or self.username))

    @property
    def sender_address(self) -> str:
        return self.from_address or self.username

    @classmethod
    def from_settings(cls, s: Settings) -> "SmtpConfig":
        return cls(
            host=s.SMTP_HOST,
            port=s.SMTP_PORT,
            username=s.SMTP_USER,
            password=s.SMTP_PASSWORD,
            secure=s.SMTP_SECURE,
            starttls=s.SMTP_STARTTLS,
            from_name=s.SMTP_FROM_NAME,
            from_address=s.SMTP_FROM_ADDRESS,
        )


class S3Config(_ConfigModel):
    bucket: str = Field(default="", alias="bucketName")
    region: str = "us-east-1"
    endpoint_url: str | None = Field(default=None, alias="endpoint")
    access_key_id: str = Field(default="", alias="accessKeyId")
    secret_access_key: str = Field(default="", alias="secretAccessKey")


_SECRET_FIELDS: dict[str, tuple[str, ...]] = {
    ConfigKey.SMTP.value: ("password",),
    ConfigKey.S3.value: ("secret_access_key",),
}

TYPED_KEYS: dict[str, type[_ConfigModel]] = {
    ConfigKey.NAMING.value: NamingConfig,
    ConfigKey.UPLOAD.value: UploadConfig,
    ConfigKey.SMTP.value: SmtpConfig,
    ConfigKey.S3.value: S3Config,
}

M = TypeVar("M", bound=_ConfigModel)


class ConfigStore:
    """Key -> JSON store with typed readers for the well-known keys."""

    def __init__(self, session: AsyncSession, *, settings: Settings | None = None):
        self.session = session
        self.settings = settings or default_settings

    async def get_raw(self, key: str) -> Any | None:
        res = await self.session.execute(select(ConfigEntry).where(ConfigEntry.key == str(key)))
        row = res.scalar_one_or_none()
        return row.value if row else None

    async def set_raw(self, key: str, value: Any) -> ConfigEntry:
        row = await self.session.get(ConfigEntry, str(key))
        if row is None:
            row = ConfigEntry(key=str(key), value=value)
            self.session.add(row)
        else:
            row.value = value
            row.updated_at = utc_now()
        await self.session.flush()
        return row

    async def _read_typed(self, key: ConfigKey, model: type[M]) -> M | None:
        raw = await self.get_raw(key.value)
        if raw is None:
            return None
        try:
            return model.model_validate(raw)
        except PydanticValidationError as e:
            _logger.warning("invalid stored config, using defaults", extra={"key": key.value, "errors": e.error_count()})
            return None

    async def get_naming(self) -> NamingConfig:
        return await self._read_typed(ConfigKey.NAMING, NamingConfig) or NamingConfig()

    async def get_upload(self) -> UploadConfig:
        return await self._read_typed(ConfigKey.UPLOAD, UploadConfig) or UploadConfig()

    async def get_smtp(self) -> SmtpConfig:
        cfg = await self._read_typed(ConfigKey.SMTP, SmtpConfig)
        if cfg is not None and cfg.host:
            return cfg
        return SmtpConfig.from_settings(self.settings)

    async def get_s3(self) -> S3Config | None:
        return await self._read_typed(ConfigKey.S3, S3Config)

    async def load_for_admin(self, key: str) -> Any | None:
        """Stored value for the admin UI; typed keys are normalized and secrets redacted."""
        raw = await self.get_raw(key)
        model = TYPED_KEYS.get(str(key))
        if raw is None or model is None:
            return raw
        try:
            data = model.model_validate(raw).model_dump()
        except PydanticValidationError:
            return raw
        for field in _SECRET_FIELDS.get(str(key), ()):
            if data.get(field):
                data[field] = REDACTED
        return data

    async def save(self, key: str, value: Any) -> Any:
        key = str(key or "").strip()
        if not key:
            raise ValidationError("Config key is required")

        model = TYPED_KEYS.get(key)
        if model is None:
            await self.set_raw(key, value)
            return value

        try:
            parsed = model.model_validate(value)
        except PydanticValidationError as e:
            raise ValidationError(f"Invalid value for {key}: {e.errors()[0].get('msg', 'invalid')}")
        data = parsed.model_dump()

        # A redacted secret coming back from the admin UI keeps the stored one
        secret_fields = _SECRET_FIELDS.get(key, ())
        if secret_fields:
            current = await self.get_raw(key)
            current_data: dict = {}
            if current is not None:
                try:
                    current_data = model.model_validate(current).model_dump()
                except PydanticValidationError:
                    current_data = {}
            for field in secret_fields:
                if data.get(field) == REDACTED:
                    data[field] = current_data.get(field, "")

        await self.set_raw(key, data)
        _logger.info("config saved", extra={"key": key})
        return data
