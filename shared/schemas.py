from pydantic import BaseModel, Field
from typing import Optional, Any


INT64_MAX = 2**63 - 1


class MagicLinkRequest(BaseModel):
    email: Optional[str] = None
    space_name: Optional[str] = None
    captcha_token: Optional[str] = None


class ConsumeRequest(BaseModel):
    token: Optional[str] = None


class UploadInitRequest(BaseModel):
    filename: Optional[str] = None
    file_size: Optional[int] = Field(default=None, ge=0, le=INT64_MAX)
    mime_type: Optional[str] = None


class UploadCompleteRequest(BaseModel):
    upload_id: Optional[str] = None
    checksum: Optional[str] = Field(default=None, max_length=255)


class AdminLoginRequest(BaseModel):
    username: Optional[str] = None
    password: Optional[str] = None


class AdminConfigRequest(BaseModel):
    # get_config | save_config
    action: str
    key: Optional[str] = None
    value: Any = None


class AdminUpdateRequest(BaseModel):
    # update_password | update_email
    action: str
    new_password: Optional[str] = None
    email: Optional[str] = None


class SmtpTestRequest(BaseModel):
    email: Optional[str] = None
    # Unsaved settings from the admin form; stored smtp_config otherwise
    config: Optional[dict] = None


class CleanupRequest(BaseModel):
    type: str = "all"

