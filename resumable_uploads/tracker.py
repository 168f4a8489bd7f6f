from collections import OrderedDict
from collections.abc import Callable
from threading import Lock

from resumable_uploads.config import settings
from resumable_uploads.limits import upload_locks
from resumable_uploads.metrics import tracked_uploads
from resumable_uploads.storage import ByteStore, storage


class OffsetTracker:
    """Process-wide cache of confirmed byte offsets keyed by upload id.

    A miss is reconciled from the byte store: no file means offset 0, otherwise the
    file length. The cache holds at most ``max_entries`` ids; evicted ids are simply
    re-reconciled on their next access. Ids for which ``is_pinned`` answers true are
    never evicted, since their file may hold bytes of a write still in flight; the
    cache can grow past ``max_entries`` while every older entry is pinned.
    """

    def __init__(
        self,
        store: ByteStore,
        max_entries: int,
        is_pinned: Callable[[str], bool] | None = None,
    ) -> None:
        self.store = store
        self.max_entries = max(1, max_entries)
        self.is_pinned = is_pinned
        self._offsets: OrderedDict[str, int] = OrderedDict()
        self._lock = Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._offsets)

    def __contains__(self, upload_id: str) -> bool:
        with self._lock:
            return upload_id in self._offsets

    def confirmed_offset(self, upload_id: str) -> int:
        with self._lock:
            cached = self._offsets.get(upload_id)
            if cached is not None:
                self._offsets.move_to_end(upload_id)
                return cached
            # Only a missing file counts as offset 0; other OSErrors propagate.
            size = self.store.size(upload_id)
            offset = size if size is not None else 0
            self._remember(upload_id, offset)
            return offset

    def advance(self, upload_id: str, offset: int) -> None:
        with self._lock:
            current = self._offsets.get(upload_id)
            if current is not None and offset < current:
                raise ValueError(f"confirmed offset for {upload_id!r} cannot move back from {current} to {offset}")
            self._remember(upload_id, offset)

    def forget(self, upload_id: str) -> None:
        with self._lock:
            self._offsets.pop(upload_id, None)
            tracked_uploads.set(len(self._offsets))

    def clear(self) -> None:
        with self._lock:
            self._offsets.clear()
            tracked_uploads.set(0)

    def _remember(self, upload_id: str, offset: int) -> None:
        self._offsets[upload_id] = offset
        self._offsets.move_to_end(upload_id)
        self._evict()
        tracked_uploads.set(len(self._offsets))

    def _evict(self) -> None:
        overflow = len(self._offsets) - self.max_entries
        if overflow <= 0:
            return
        for candidate in list(self._offsets):
            if overflow <= 0:
                break
            if self.is_pinned is not None and self.is_pinned(candidate):
                continue
            del self._offsets[candidate]
            overflow -= 1


tracker = OffsetTracker(storage, settings.tracker_max_entries, is_pinned=upload_locks.is_busy)
