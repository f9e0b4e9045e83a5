from enum import StrEnum


class UploadStatus(StrEnum):
    PENDING = "pending"
    COMPLETED = "completed"
    DELETED = "deleted"


class LogEventType(StrEnum):
    MAGIC_LINK_REQUESTED = "magic_link_requested"
    MAGIC_LINK_CONSUMED = "magic_link_consumed"
    USER_LOGOUT = "user_logout"
    UPLOAD_INIT = "upload_init"
    UPLOAD_COMPLETED = "upload_completed"
    FILE_DELETED = "file_deleted"
    ADMIN_LOGIN = "admin_login"
    ADMIN_LOGOUT = "admin_logout"
    ADMIN_UPDATE = "admin_update"
    CONFIG_UPDATED = "config_updated"
    SMTP_TEST = "smtp_test"
    SESSION_CLEANUP = "session_cleanup"
    TOKEN_CLEANUP = "token_cleanup"
    LOG_CLEANUP = "log_cleanup"
    DAILY_STATS = "daily_stats"


class ConfigKey(StrEnum):
    S3 = "s3_config"
    NAMING = "naming_schema"
    SMTP = "smtp_config"
    UPLOAD = "upload_config"


class CleanupKind(StrEnum):
    SESSIONS = "sessions"
    TOKENS = "tokens"
    LOGS = "logs"
    STATS = "stats"
    ALL = "all"
