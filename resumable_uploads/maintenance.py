from __future__ import annotations

from datetime import datetime, timedelta, timezone

from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from resumable_uploads.config import settings
from resumable_uploads.limits import upload_locks
from resumable_uploads.metrics import uploads_deleted_total
from resumable_uploads.models import UploadRecord, UploadStatus
from resumable_uploads.storage import storage
from resumable_uploads.tracker import tracker


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def cleanup_once(db: Session) -> dict[str, int]:
    """Expire uploads left RESUMABLE for longer than the stale TTL.

    Ids with a request holding or waiting on their lock are left for the next pass.
    Stored files that have no record are reported as ``orphan_files_kept``.
    """
    stale_before = _utc_now() - timedelta(seconds=settings.stale_upload_ttl_seconds)
    stale_ids = list(
        db.scalars(
            select(UploadRecord.id).where(
                UploadRecord.status == UploadStatus.resumable.value,
                UploadRecord.updated_at < stale_before,
            )
        ).all()
    )

    expired: list[str] = []
    deleted_files = 0
    for upload_id in stale_ids:
        if upload_locks.is_busy(upload_id):
            continue
        if storage.delete(upload_id):
            deleted_files += 1
        tracker.forget(upload_id)
        expired.append(upload_id)

    if expired:
        db.execute(delete(UploadRecord).where(UploadRecord.id.in_(expired)))
        uploads_deleted_total.inc(len(expired))
    db.commit()

    # files without a record stay resumable; they are only counted
    known_ids = set(db.scalars(select(UploadRecord.id)).all())
    orphan_files = sum(1 for upload_id in storage.list_ids() if upload_id not in known_ids)
    return {
        "stale_uploads_deleted": len(expired),
        "storage_files_deleted": deleted_files,
        "orphan_files_kept": orphan_files,
    }
