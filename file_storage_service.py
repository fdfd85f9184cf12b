"""
File Storage Service - Validates and stores application attachments
"""

import logging
import secrets
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Sequence

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

import crud
from config import MembershipPolicy, settings
from exceptions import NotFound, StorageFailure
from models import ApplicationFile, MembershipRole, User

log = logging.getLogger(__name__)


@dataclass
class UploadedDocument:
    label: str
    filename: str
    content: bytes
    mime_type: Optional[str] = None

    @property
    def extension(self) -> str:
        return Path(self.filename).suffix.lower().lstrip(".")

    @property
    def size(self) -> int:
        return len(self.content)


def present_uploads(files: Sequence[UploadedDocument]) -> List[UploadedDocument]:
    """Drop empty file inputs (no filename selected)."""
    return [f for f in files if f.filename]


def validate_uploads(files: Sequence[UploadedDocument], policy: MembershipPolicy) -> List[str]:
    """Return every problem with the attachment set; an empty list means valid."""
    errors = []
    files = present_uploads(files)
    if len(files) > policy.max_upload_files:
        errors.append(f"You can upload at most {policy.max_upload_files} files.")

    max_mb = policy.max_upload_bytes // (1024 * 1024)
    for f in files:
        if f.size > policy.max_upload_bytes:
            errors.append(f"{f.filename} is larger than {max_mb} MB.")
        if f.extension not in policy.allowed_extensions:
            allowed = ", ".join(policy.allowed_extensions)
            errors.append(f"{f.filename} has an unsupported file type. Allowed: {allowed}.")
    return errors


class FileStorage:
    """Attachment storage collaborator contract"""

    async def store(
        self,
        db: AsyncSession,
        application_id: int,
        upload: UploadedDocument,
        uploaded_by: Optional[int] = None,
    ) -> int:
        raise NotImplementedError

    async def resolve_path(self, db: AsyncSession, file_id: int) -> Path:
        raise NotImplementedError


class LocalFileStorage(FileStorage):
    """Stores attachments on local disk under a random name and records their metadata."""

    def __init__(self, base_dir: Optional[Path] = None):
        self.base_dir = Path(base_dir or settings.UPLOAD_DIR)

    async def store(
        self,
        db: AsyncSession,
        application_id: int,
        upload: UploadedDocument,
        uploaded_by: Optional[int] = None,
    ) -> int:
        storage_filename = f"app_{application_id}_{secrets.token_hex(16)}.{upload.extension or 'bin'}"
        try:
            self.base_dir.mkdir(parents=True, exist_ok=True)
            with open(self.base_dir / storage_filename, "wb") as f:
                f.write(upload.content)
        except OSError as e:
            log.error(f"Failed to store {upload.filename} for application {application_id}: {e}")
            raise StorageFailure(f"Could not store {upload.filename}") from e

        record = ApplicationFile(
            application_id=application_id,
            file_label=upload.label,
            original_filename=upload.filename,
            storage_filename=storage_filename,
            mime_type=upload.mime_type,
            file_size_bytes=upload.size,
            uploaded_by_user_id=uploaded_by,
        )
        db.add(record)
        await db.flush()
        log.info(f"Stored {upload.filename} as {storage_filename} for application {application_id}")
        return record.id

    async def resolve_path(self, db: AsyncSession, file_id: int) -> Path:
        record = await get_file_record(db, file_id)
        return self.base_dir / record.storage_filename


async def get_file_record(db: AsyncSession, file_id: int) -> ApplicationFile:
    result = await db.execute(select(ApplicationFile).where(ApplicationFile.id == file_id))
    record = result.scalar_one_or_none()
    if record is None:
        raise NotFound(f"File {file_id} not found")
    return record


async def can_access_application_files(db: AsyncSession, user: User, application_id: int) -> bool:
    """Officers and admins see every attachment; a director only those of applications they were asked to vote on."""
    if user.is_admin or user.is_officer:
        return True
    if user.role != MembershipRole.DIRECTOR.value or user.director_disabled:
        return False
    return await crud.get_vote(db, application_id, user.id) is not None


def content_disposition_for(record: ApplicationFile) -> str:
    """PDFs and images open in the browser; Word documents and anything else download."""
    extension = Path(record.original_filename).suffix.lower().lstrip(".")
    if extension in ("doc", "docx"):
        return "attachment"
    mime_type = (record.mime_type or "").lower()
    if extension == "pdf" or mime_type == "application/pdf" or mime_type.startswith("image/"):
        return "inline"
    return "attachment"
