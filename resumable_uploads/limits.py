import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from threading import Lock

from resumable_uploads.metrics import inflight_chunk_writes, waiting_chunk_requests


class UploadLockRegistry:
    """Hands out one asyncio lock per upload id.

    A lock lives only while some request holds or waits on it, so the registry does
    not grow with the number of ids ever seen.
    """

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._counts: dict[str, int] = {}
        self._lock = Lock()

    def is_busy(self, upload_id: str) -> bool:
        with self._lock:
            return self._counts.get(upload_id, 0) > 0

    def __len__(self) -> int:
        with self._lock:
            return len(self._locks)

    def _checkout(self, upload_id: str) -> asyncio.Lock:
        with self._lock:
            lock = self._locks.get(upload_id)
            if lock is None:
                lock = asyncio.Lock()
                self._locks[upload_id] = lock
            self._counts[upload_id] = self._counts.get(upload_id, 0) + 1
            return lock

    def _checkin(self, upload_id: str) -> None:
        with self._lock:
            next_value = max(0, self._counts.get(upload_id, 0) - 1)
            if next_value == 0:
                self._counts.pop(upload_id, None)
                self._locks.pop(upload_id, None)
            else:
                self._counts[upload_id] = next_value

    @asynccontextmanager
    async def hold(self, upload_id: str) -> AsyncIterator[None]:
        lock = self._checkout(upload_id)
        try:
            waiting_chunk_requests.inc()
            try:
                await lock.acquire()
            finally:
                waiting_chunk_requests.dec()
            inflight_chunk_writes.inc()
            try:
                yield
            finally:
                inflight_chunk_writes.dec()
                lock.release()
        finally:
            self._checkin(upload_id)


upload_locks = UploadLockRegistry()
