"""Client side of the resumable upload protocol.

``ResumableUploader`` asks the server where an upload stands, then sends the rest
of the file one chunk at a time, always starting at the offset the server last
confirmed. Only one chunk request is ever outstanding per upload.
"""

from __future__ import annotations

import enum
import logging
import time
from collections.abc import Callable
from pathlib import Path
from threading import Lock
from typing import NoReturn

import httpx
from pydantic import ValidationError

from resumable_uploads.config import settings
from resumable_uploads.schemas import UploadResponse

logger = logging.getLogger(__name__)

UPLOAD_PATH = "/upload"


class DriverState(str, enum.Enum):
    idle = "IDLE"
    active = "ACTIVE"
    paused = "PAUSED"


class UploadStateError(RuntimeError):
    """Raised when an operation is not valid in the uploader's current state."""


class UploadFailedError(RuntimeError):
    """The upload gave up; the server still holds every byte it confirmed."""

    def __init__(self, file_id: str, confirmed_offset: int, reason: str) -> None:
        super().__init__(f"upload of {file_id!r} failed at offset {confirmed_offset}: {reason}")
        self.file_id = file_id
        self.confirmed_offset = confirmed_offset
        self.reason = reason


class _Rejected(Exception):
    """Server answered but reported a failure for the request."""

    def __init__(self, status_code: int, detail: str) -> None:
        super().__init__(detail)
        self.status_code = status_code
        self.detail = detail

    @property
    def retryable(self) -> bool:
        return not 400 <= self.status_code < 500


class ResumableUploader:
    def __init__(
        self,
        client: httpx.Client,
        chunk_size: int | None = None,
        max_retries: int | None = None,
        max_rejection_retries: int | None = None,
        backoff_seconds: float | None = None,
        max_backoff_seconds: float | None = None,
        on_progress: Callable[[float], None] | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        """Set up an uploader bound to ``client``.

        Args:
            client: HTTP client whose ``base_url`` points at the upload service.
            chunk_size: Bytes per chunk request.
            max_retries: Retries of one chunk after transport failures.
            max_rejection_retries: Retries of one chunk the server answered with an error.
            backoff_seconds: First delay before retrying a server-rejected chunk.
            max_backoff_seconds: Upper bound on that delay.
            on_progress: Called with the uploaded fraction after every chunk.
            sleep: Delay function, swappable in tests.
        """
        self.client = client
        self.chunk_size = chunk_size or settings.chunk_size_bytes
        if self.chunk_size <= 0:
            raise ValueError("chunk_size must be positive")
        self.max_retries = settings.max_retries if max_retries is None else max_retries
        self.max_rejection_retries = (
            settings.max_rejection_retries if max_rejection_retries is None else max_rejection_retries
        )
        self.backoff_seconds = settings.retry_backoff_seconds if backoff_seconds is None else backoff_seconds
        self.max_backoff_seconds = (
            settings.max_backoff_seconds if max_backoff_seconds is None else max_backoff_seconds
        )
        self.on_progress = on_progress
        self._sleep = sleep

        self._lock = Lock()
        self._state = DriverState.idle
        self._loop_running = False
        self._path: Path | None = None
        self._file_id: str | None = None
        self._file_size = 0
        self._offset = 0
        self._progress = 0.0

    @property
    def state(self) -> DriverState:
        with self._lock:
            return self._state

    @property
    def offset(self) -> int:
        return self._offset

    @property
    def progress(self) -> float:
        return self._progress

    @property
    def file_id(self) -> str | None:
        return self._file_id

    def start(self, path: str | Path, file_id: str | None = None) -> DriverState:
        """Upload ``path`` from wherever the server says it stands.

        Blocks until the upload completes, is paused, or fails. Returns the state the
        uploader ends in: ``IDLE`` once complete, ``PAUSED`` after ``pause()``.

        Raises:
            UploadStateError: If an upload is already active or paused.
            UploadFailedError: If retries are exhausted.
        """
        path = Path(path)
        with self._lock:
            if self._state is not DriverState.idle:
                raise UploadStateError(f"cannot start while {self._state.value}")
            self._path = path
            self._file_id = file_id or path.name
            self._file_size = path.stat().st_size
            self._progress = 0.0

        self._offset = self._query_offset()
        self._report_progress(self._fraction(self._offset))
        if self._offset >= self._file_size:
            logger.info(f"Upload {self._file_id} is already complete ({self._file_size} bytes)")
            return DriverState.idle

        logger.info(f"Starting upload {self._file_id} at offset {self._offset} of {self._file_size}")
        with self._lock:
            self._state = DriverState.active
            self._loop_running = True
        return self._run()

    def pause(self) -> None:
        """Stop scheduling chunks; a chunk already in flight is allowed to finish."""
        with self._lock:
            if self._state is not DriverState.active:
                raise UploadStateError(f"cannot pause while {self._state.value}")
            self._state = DriverState.paused
        logger.info(f"Pausing upload {self._file_id} at offset {self._offset}")

    def resume(self) -> DriverState:
        """Continue a paused upload from the last offset the server confirmed."""
        with self._lock:
            if self._state is not DriverState.paused:
                raise UploadStateError(f"cannot resume while {self._state.value}")
            self._state = DriverState.active
            if self._loop_running:
                # the paused loop has not returned yet and will carry on
                return DriverState.active
            self._loop_running = True
        logger.info(f"Resuming upload {self._file_id} at offset {self._offset}")
        return self._run()

    def _run(self) -> DriverState:
        assert self._path is not None
        try:
            with self._path.open("rb") as handle:
                return self._chunk_loop(handle)
        except BaseException:
            with self._lock:
                self._state = DriverState.idle
                self._loop_running = False
            raise

    def _chunk_loop(self, handle) -> DriverState:
        transport_failures = 0
        rejections = 0
        while True:
            with self._lock:
                if self._state is not DriverState.active:
                    self._loop_running = False
                    return self._state

            start = self._offset
            end = min(start + self.chunk_size, self._file_size)
            handle.seek(start)
            data = handle.read(end - start)

            try:
                uploaded = self._send_chunk(start, end, data)
            except httpx.TransportError as exc:
                transport_failures += 1
                if transport_failures > self.max_retries:
                    self._fail(f"transport error after {self.max_retries} retries: {exc}", exc)
                logger.warning(
                    f"Retrying chunk {start}-{end} of {self._file_id}, attempt {transport_failures}: {exc}"
                )
                continue
            except _Rejected as exc:
                if not exc.retryable:
                    self._fail(f"server refused chunk with HTTP {exc.status_code}: {exc.detail}", exc)
                rejections += 1
                if rejections > self.max_rejection_retries:
                    self._fail(
                        f"server rejected chunk {rejections} times, last with HTTP {exc.status_code}: {exc.detail}",
                        exc,
                    )
                delay = min(self.backoff_seconds * (2 ** (rejections - 1)), self.max_backoff_seconds)
                logger.warning(f"Server rejected chunk {start}-{end} of {self._file_id}, retrying in {delay}s")
                self._sleep(delay)
                continue

            transport_failures = 0
            rejections = 0
            if uploaded != end:
                logger.info(f"Server realigned {self._file_id} from {end} to offset {uploaded}")
            self._offset = uploaded
            self._report_progress(self._fraction(uploaded))

            if uploaded >= self._file_size:
                with self._lock:
                    self._state = DriverState.idle
                    self._loop_running = False
                logger.info(f"Upload {self._file_id} completed ({self._file_size} bytes)")
                return DriverState.idle

    def _fail(self, reason: str, cause: BaseException) -> NoReturn:
        logger.error(f"Giving up on {self._file_id} at offset {self._offset}: {reason}")
        raise UploadFailedError(self._file_id or "", self._offset, reason) from cause

    def _query_offset(self) -> int:
        attempts = 0
        while True:
            try:
                response = self.client.get(
                    UPLOAD_PATH,
                    headers={"x-file-id": self._file_id, "x-file-size": str(self._file_size)},
                )
                return self._parse(response)
            except httpx.TransportError as exc:
                attempts += 1
                if attempts > self.max_retries:
                    self._fail(f"status query failed after {self.max_retries} retries: {exc}", exc)
                logger.warning(f"Retrying status query for {self._file_id}, attempt {attempts}: {exc}")
            except _Rejected as exc:
                self._fail(f"status query refused with HTTP {exc.status_code}: {exc.detail}", exc)

    def _send_chunk(self, start: int, end: int, data: bytes) -> int:
        response = self.client.post(
            UPLOAD_PATH,
            headers={
                "content-range": f"bytes {start}-{end}/{self._file_size}",
                "x-file-id": self._file_id,
            },
            files={"chunk": (self._file_id, data, "application/octet-stream")},
        )
        return self._parse(response)

    @staticmethod
    def _parse(response: httpx.Response) -> int:
        try:
            payload = response.json()
        except ValueError:
            raise _Rejected(response.status_code, response.text or "response is not JSON") from None
        if not isinstance(payload, dict):
            raise _Rejected(response.status_code, "response is not a JSON object")
        if not payload.get("success") or response.status_code >= 400:
            raise _Rejected(response.status_code, str(payload.get("detail", payload)))
        try:
            parsed = UploadResponse.model_validate(payload)
        except ValidationError as exc:
            raise _Rejected(response.status_code, f"unexpected response body: {exc}") from exc
        if parsed.data is None:
            raise _Rejected(response.status_code, "response carries no upload state")
        return parsed.data.uploaded_size

    def _fraction(self, offset: int) -> float:
        if self._file_size == 0:
            return 1.0
        return min(1.0, offset / self._file_size)

    def _report_progress(self, fraction: float) -> None:
        if fraction < self._progress:
            return
        self._progress = fraction
        if self.on_progress is not None:
            self.on_progress(fraction)
