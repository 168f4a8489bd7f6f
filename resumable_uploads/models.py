import enum
from datetime import datetime, timezone

from sqlalchemy import BigInteger, DateTime, Index, String
from sqlalchemy.orm import Mapped, mapped_column

from resumable_uploads.db import Base


class UploadStatus(str, enum.Enum):
    resumable = "RESUMABLE"
    completed = "COMPLETED"


def derive_status(confirmed_offset: int, declared_total_size: int) -> UploadStatus:
    if confirmed_offset < declared_total_size:
        return UploadStatus.resumable
    return UploadStatus.completed


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class UploadRecord(Base):
    """Bookkeeping row per upload id.

    The backing file's length is what offsets are recovered from; this row only
    records what the last request saw so stale uploads can be expired.
    """

    __tablename__ = "uploads"
    __table_args__ = (Index("idx_uploads_status_updated", "status", "updated_at"),)

    id: Mapped[str] = mapped_column(String(255), primary_key=True)
    declared_total_size: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    confirmed_offset: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default=UploadStatus.resumable.value)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, onupdate=utc_now, nullable=False)
