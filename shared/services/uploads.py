from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from shared.enums import LogEventType, UploadStatus
from shared.errors import NotFound, ValidationError
from shared.models import File
from shared.services.audit_log import AuditLogRepo
from shared.services.config_store import ConfigStore, UploadConfig
from shared.services.sessions import SessionInfo
from shared.services.storage_keys import build_storage_key, split_filename
from shared.services.tokens import new_token
from shared.utils import isoformat_utc, utc_now


_logger = logging.getLogger(__name__)

FILENAME_MAX_LENGTH = 512


@dataclass(frozen=True)
class UploadTicket:
    upload_id: str
    file_id: int
    s3_key: str
    bucket: str | None


def file_to_dict(f: File) -> dict:
    return {
        "id": int(f.id),
        "original_name": f.original_name,
        "s3_key": f.s3_key,
        "file_size": int(f.file_size),
        "mime_type": f.mime_type,
        "upload_status": f.upload_status,
        "upload_id": f.upload_id,
        "checksum": f.checksum,
        "created_at": isoformat_utc(f.created_at),
        "completed_at": isoformat_utc(f.completed_at),
    }


def check_upload_allowed(cfg: UploadConfig, *, filename: str, file_size: int, mime_type: str) -> None:
    limit = cfg.max_size_bytes
    if limit is not None and int(file_size) > limit:
        raise ValidationError(f"File too large. Maximum size is {cfg.max_size_mb:g} MB")

    _, ext = split_filename(filename)
    if cfg.allowed_extensions and ext not in cfg.allowed_extensions:
        raise ValidationError(f"File type not allowed: .{ext}" if ext else "Files without an extension are not allowed")

    if cfg.allowed_mime_types and str(mime_type).strip().lower() not in cfg.allowed_mime_types:
        raise ValidationError(f"MIME type not allowed: {mime_type}")


class UploadBroker:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def init_upload(
        self,
        info: SessionInfo,
        *,
        filename: str | None,
        file_size: int | None,
        mime_type: str | None,
        ip_address: str | None = None,
        user_agent: str | None = None,
        now_utc: datetime | None = None,
    ) -> UploadTicket:
        name = (filename or "").strip()
        if not name:
            raise ValidationError("Filename is required")
        if len(name) > FILENAME_MAX_LENGTH:
            raise ValidationError(f"Filename must be at most {FILENAME_MAX_LENGTH} characters")
        try:
            size = int(file_size) if file_size is not None else 0
        except (TypeError, ValueError):
            raise ValidationError("Invalid file size")
        if size <= 0:
            raise ValidationError("File size must be positive")
        mime = (mime_type or "").strip()
        if not mime:
            raise ValidationError("MIME type is required")

        store = ConfigStore(self.session)
        check_upload_allowed(await store.get_upload(), filename=name, file_size=size, mime_type=mime)

        now = now_utc or utc_now()
        naming = await store.get_naming()
        s3_key = build_storage_key(naming, space_name=info.space_name, filename=name, now_utc=now)
        s3 = await store.get_s3()

        upload_id = new_token()
        f = File(
            space_id=info.space_id,
            original_name=name,
            s3_key=s3_key,
            file_size=size,
            mime_type=mime,
            upload_status=UploadStatus.PENDING.value,
            upload_id=upload_id,
            created_at=now,
        )
        self.session.add(f)
        await self.session.flush()

        await AuditLogRepo(self.session).log(
            LogEventType.UPLOAD_INIT,
            space_id=info.space_id,
            file_id=f.id,
            ip_address=ip_address,
            user_agent=user_agent,
            details={"file_name": name, "file_size": size, "mime_type": mime, "s3_key": s3_key},
            created_at=now,
        )
        _logger.info("upload initialized", extra={"space_id": info.space_id, "file_id": f.id, "upload_id": upload_id})
        return UploadTicket(
            upload_id=upload_id,
            file_id=int(f.id),
            s3_key=s3_key,
            bucket=(s3.bucket or None) if s3 else None,
        )

    async def complete_upload(
        self,
        info: SessionInfo,
        *,
        upload_id: str | None,
        checksum: str | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
        now_utc: datetime | None = None,
    ) -> File:
        uid = (upload_id or "").strip()
        if not uid:
            raise ValidationError("Upload ID is required")

        now = now_utc or utc_now()
        # pending -> completed only; a repeat call matches no row
        upd = await self.session.execute(
            update(File)
            .where(File.upload_id == uid)
            .where(File.space_id == info.space_id)
            .where(File.upload_status == UploadStatus.PENDING.value)
            .values(
                upload_status=UploadStatus.COMPLETED.value,
                checksum=(str(checksum).strip() or None) if checksum is not None else None,
                completed_at=now,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        if upd.rowcount != 1:
            raise NotFound("Upload not found or already completed")

        res = await self.session.execute(select(File).where(File.upload_id == uid))
        f = res.scalar_one()
        await self.session.refresh(f)

        await AuditLogRepo(self.session).log(
            LogEventType.UPLOAD_COMPLETED,
            space_id=info.space_id,
            file_id=f.id,
            ip_address=ip_address,
            user_agent=user_agent,
            details={"file_name": f.original_name, "file_size": int(f.file_size), "s3_key": f.s3_key},
            created_at=now,
        )
        _logger.info("upload completed", extra={"space_id": info.space_id, "file_id": f.id})
        return f

    async def list_files(
        self,
        space_id: int,
        *,
        status: str | None = None,
        page: int = 1,
        limit: int = 20,
    ) -> tuple[list[File], int]:
        q = select(File).where(File.space_id == int(space_id))
        cq = select(func.count(File.id)).where(File.space_id == int(space_id))

        st = (status or "all").strip().lower()
        if st == "all":
            q = q.where(File.upload_status != UploadStatus.DELETED.value)
            cq = cq.where(File.upload_status != UploadStatus.DELETED.value)
        elif st in {s.value for s in UploadStatus}:
            q = q.where(File.upload_status == st)
            cq = cq.where(File.upload_status == st)
        else:
            raise ValidationError(f"Unknown status filter: {status}")

        total = int((await self.session.execute(cq)).scalar_one() or 0)
        rows = (
            await self.session.execute(
                q.order_by(File.created_at.desc(), File.id.desc()).offset((int(page) - 1) * int(limit)).limit(int(limit))
            )
        ).scalars().all()
        return list(rows), total

    async def delete_file(
        self,
        info: SessionInfo,
        file_id: int,
        *,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> None:
        now = utc_now()
        upd = await self.session.execute(
            update(File)
            .where(File.id == int(file_id))
            .where(File.space_id == info.space_id)
            .where(File.upload_status != UploadStatus.DELETED.value)
            .values(upload_status=UploadStatus.DELETED.value, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        if upd.rowcount != 1:
            raise NotFound("File not found")

        await AuditLogRepo(self.session).log(
            LogEventType.FILE_DELETED,
            space_id=info.space_id,
            file_id=int(file_id),
            ip_address=ip_address,
            user_agent=user_agent,
            created_at=now,
        )
        _logger.info("file soft-deleted", extra={"space_id": info.space_id, "file_id": int(file_id)})
