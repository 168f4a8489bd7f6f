import asyncio
import shutil
from pathlib import Path

import httpx
from fastapi.testclient import TestClient
from sqlalchemy.exc import OperationalError
from starlette.requests import ClientDisconnect, Request

from resumable_uploads.config import settings
from resumable_uploads.db import Base, SessionLocal, engine, init_db
from resumable_uploads.main import app
from resumable_uploads.models import UploadRecord
from resumable_uploads.storage import storage
from resumable_uploads.tracker import tracker


def _reset_state() -> None:
    Base.metadata.drop_all(bind=engine)
    init_db()
    shutil.rmtree(Path(settings.storage_root), ignore_errors=True)
    tracker.clear()


def _status(client, file_id: str, size: int):
    return client.get("/upload", headers={"x-file-id": file_id, "x-file-size": str(size)})


def _send_chunk(client, file_id: str, data: bytes, start: int, end: int, total: int):
    return client.post(
        "/upload",
        headers={"content-range": f"bytes {start}-{end}/{total}", "x-file-id": file_id},
        files={"chunk": (file_id, data, "application/octet-stream")},
    )


def _stored(file_id: str) -> bytes:
    return storage.path_for(file_id).read_bytes()


def test_two_chunk_upload_reports_resumable_then_completed() -> None:
    _reset_state()
    total = 10_000_000
    half = 5_000_000
    first, second = b"a" * half, b"b" * half
    with TestClient(app) as client:
        start = _status(client, "big.bin", total)
        assert start.status_code == 200
        assert start.json() == {
            "success": True,
            "status": 200,
            "data": {"status": "RESUMABLE", "uploadedSize": 0},
        }

        response = _send_chunk(client, "big.bin", first, 0, half, total)
        assert response.status_code == 200, response.text
        assert response.json()["data"] == {"status": "RESUMABLE", "uploadedSize": half}
        assert _status(client, "big.bin", total).json()["data"] == {"status": "RESUMABLE", "uploadedSize": half}

        response = _send_chunk(client, "big.bin", second, half, total, total)
        assert response.status_code == 200, response.text
        assert response.json()["data"] == {"status": "COMPLETED", "uploadedSize": total}
        assert _status(client, "big.bin", total).json()["data"] == {"status": "COMPLETED", "uploadedSize": total}

    assert _stored("big.bin") == first + second


def test_out_of_order_chunk_is_rejected_with_current_offset() -> None:
    _reset_state()
    storage.path_for("movie.mp4").parent.mkdir(parents=True, exist_ok=True)
    storage.path_for("movie.mp4").write_bytes(b"m" * 3_000_000)
    with TestClient(app) as client:
        response = _send_chunk(client, "movie.mp4", b"z" * 64, 5_000_000, 10_000_000, 10_000_000)

        assert response.status_code == 200
        assert response.json() == {
            "success": True,
            "status": 200,
            "data": {"status": "RESUMABLE", "uploadedSize": 3_000_000},
        }
    assert tracker.confirmed_offset("movie.mp4") == 3_000_000
    assert storage.size("movie.mp4") == 3_000_000


def test_resending_a_confirmed_chunk_leaves_file_unchanged() -> None:
    _reset_state()
    with TestClient(app) as client:
        assert _send_chunk(client, "a.bin", b"abcd", 0, 4, 8).status_code == 200
        replay = _send_chunk(client, "a.bin", b"ZZZZ", 0, 4, 8)

        assert replay.json()["data"] == {"status": "RESUMABLE", "uploadedSize": 4}
    assert _stored("a.bin") == b"abcd"


def test_chunk_past_completion_is_a_no_op() -> None:
    _reset_state()
    with TestClient(app) as client:
        assert _send_chunk(client, "done.bin", b"abcd", 0, 4, 4).json()["data"]["status"] == "COMPLETED"

        extra = _send_chunk(client, "done.bin", b"", 4, 4, 4)
        assert extra.status_code == 200
        assert extra.json()["data"] == {"status": "COMPLETED", "uploadedSize": 4}
        assert _status(client, "done.bin", 4).json()["data"] == {"status": "COMPLETED", "uploadedSize": 4}
    assert _stored("done.bin") == b"abcd"


def test_round_trip_with_short_last_chunk() -> None:
    _reset_state()
    payload = bytes(range(256)) * 40 + b"tail"
    chunk_size = 1000
    with TestClient(app) as client:
        offset = _status(client, "data.bin", len(payload)).json()["data"]["uploadedSize"]
        while offset < len(payload):
            end = min(offset + chunk_size, len(payload))
            response = _send_chunk(client, "data.bin", payload[offset:end], offset, end, len(payload))
            assert response.status_code == 200, response.text
            offset = response.json()["data"]["uploadedSize"]

    assert _stored("data.bin") == payload


def test_status_requires_well_formed_headers() -> None:
    _reset_state()
    with TestClient(app) as client:
        missing_size = client.get("/upload", headers={"x-file-id": "a.bin"})
        assert missing_size.status_code == 400
        assert missing_size.json()["error_code"] == "bad_request"
        assert missing_size.json()["success"] is False

        bad_size = client.get("/upload", headers={"x-file-id": "a.bin", "x-file-size": "ten"})
        assert bad_size.status_code == 400

        missing_id = client.get("/upload", headers={"x-file-size": "10"})
        assert missing_id.status_code == 400
        assert missing_id.json()["detail"] == "Found no proper id header"

        escaping_id = client.get("/upload", headers={"x-file-id": "../etc/passwd", "x-file-size": "10"})
        assert escaping_id.status_code == 400

    with SessionLocal() as db:
        assert db.query(UploadRecord).count() == 0


def test_chunk_requires_well_formed_range() -> None:
    _reset_state()
    with TestClient(app) as client:
        no_range = client.post(
            "/upload",
            headers={"x-file-id": "a.bin"},
            files={"chunk": ("a.bin", b"abcd", "application/octet-stream")},
        )
        assert no_range.status_code == 400
        assert no_range.json()["detail"] == 'Invalid header "content-range"'

        garbage = client.post(
            "/upload",
            headers={"content-range": "bytes */4", "x-file-id": "a.bin"},
            files={"chunk": ("a.bin", b"abcd", "application/octet-stream")},
        )
        assert garbage.status_code == 400

        backwards = _send_chunk(client, "b.bin", b"abcd", 4, 0, 8)
        assert backwards.status_code == 400

        beyond_total = _send_chunk(client, "c.bin", b"abcd", 0, 12, 8)
        assert beyond_total.status_code == 400

        padded = client.post(
            "/upload",
            headers={"content-range": "junk0-4/4junk", "x-file-id": "d.bin"},
            files={"chunk": ("d.bin", b"abcd", "application/octet-stream")},
        )
        assert padded.status_code == 400

        bare_range = client.post(
            "/upload",
            headers={"content-range": "0-4/8", "x-file-id": "f.bin"},
            files={"chunk": ("f.bin", b"abcd", "application/octet-stream")},
        )
        assert bare_range.json()["data"] == {"status": "RESUMABLE", "uploadedSize": 4}
    assert tracker.confirmed_offset("b.bin") == 0


def test_payload_length_must_match_range() -> None:
    _reset_state()
    with TestClient(app) as client:
        assert _send_chunk(client, "a.bin", b"abcd", 0, 4, 12).status_code == 200

        short = _send_chunk(client, "a.bin", b"ef", 4, 8, 12)
        assert short.status_code == 400
        assert "content-range spans 4" in short.json()["detail"]

        assert _status(client, "a.bin", 12).json()["data"]["uploadedSize"] == 4
    assert _stored("a.bin") == b"abcd"


def test_chunk_without_file_part_is_rejected() -> None:
    _reset_state()
    with TestClient(app) as client:
        response = client.post(
            "/upload",
            headers={"content-range": "bytes 0-4/4", "x-file-id": "a.bin"},
            data={"note": "no file here"},
        )
        assert response.status_code == 400
        assert response.json()["detail"] == "multipart payload carries no file part"
    assert tracker.confirmed_offset("a.bin") == 0


def test_storage_failure_leaves_offset_unadvanced(monkeypatch) -> None:
    _reset_state()
    with TestClient(app) as client:
        assert _send_chunk(client, "a.bin", b"abcd", 0, 4, 8).status_code == 200

        def _failing_write(upload_id, offset, source):
            raise OSError("disk full")

        monkeypatch.setattr(storage, "write_at", _failing_write)
        response = _send_chunk(client, "a.bin", b"efgh", 4, 8, 8)

        assert response.status_code == 500
        body = response.json()
        assert body["success"] is False
        assert body["status"] == 500
        assert body["error_code"] == "internal_error"
        assert body["upload_id"] == "a.bin"

    assert tracker.confirmed_offset("a.bin") == 4
    assert _stored("a.bin") == b"abcd"


def test_storage_probe_failure_is_a_server_error(monkeypatch) -> None:
    _reset_state()

    def _denied(upload_id):
        raise PermissionError("permission denied")

    monkeypatch.setattr(storage, "size", _denied)
    with TestClient(app) as client:
        response = _status(client, "locked.bin", 10)
        assert response.status_code == 500
        assert response.json()["success"] is False
    assert "locked.bin" not in tracker


def test_concurrent_chunks_for_same_upload_apply_once() -> None:
    _reset_state()

    async def _race() -> list[httpx.Response]:
        transport = httpx.ASGITransport(app=app)
        async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as client:
            return await asyncio.gather(
                _send_chunk(client, "race.bin", b"abcd", 0, 4, 8),
                _send_chunk(client, "race.bin", b"wxyz", 0, 4, 8),
            )

    responses = asyncio.run(_race())

    assert [r.status_code for r in responses] == [200, 200]
    assert [r.json()["data"]["uploadedSize"] for r in responses] == [4, 4]
    assert _stored("race.bin") in (b"abcd", b"wxyz")
    assert tracker.confirmed_offset("race.bin") == 4


def test_status_query_records_upload() -> None:
    _reset_state()
    with TestClient(app) as client:
        _status(client, "rec.bin", 10)
        _send_chunk(client, "rec.bin", b"01234", 0, 5, 10)

    with SessionLocal() as db:
        record = db.get(UploadRecord, "rec.bin")
        assert record is not None
        assert record.declared_total_size == 10
        assert record.confirmed_offset == 5
        assert record.status == "RESUMABLE"


def test_delete_upload_removes_file_tracker_and_record() -> None:
    _reset_state()
    with TestClient(app) as client:
        assert _send_chunk(client, "gone.bin", b"abcd", 0, 4, 8).status_code == 200

        deleted = client.delete("/upload", headers={"x-file-id": "gone.bin"})
        assert deleted.status_code == 200
        assert deleted.json() == {"success": True, "status": 200, "data": None}

        assert _status(client, "gone.bin", 8).json()["data"]["uploadedSize"] == 0
        assert storage.size("gone.bin") is None

        client.delete("/upload", headers={"x-file-id": "gone.bin"})
        missing = client.delete("/upload", headers={"x-file-id": "never.bin"})
        assert missing.status_code == 404
        assert missing.json()["error_code"] == "not_found"


def test_metrics_endpoint_available() -> None:
    _reset_state()
    with TestClient(app) as client:
        _send_chunk(client, "m.bin", b"abcd", 0, 4, 4)
        metrics = client.get("/metrics")
        assert metrics.status_code == 200
        assert "chunks_accepted_total" in metrics.text
        assert "tracked_uploads" in metrics.text


def test_health_and_version_routes() -> None:
    with TestClient(app) as client:
        health = client.get("/health")
        assert health.status_code == 200
        assert health.headers.get("X-RUS-App-Version") is not None

        version = client.get("/version")
        assert version.status_code == 200
        assert set(version.json()) == {"app_name", "app_version", "storage_root"}


def _multipart_body(file_id: str, data: bytes, boundary: str = "rus-test-boundary") -> tuple[bytes, str]:
    head = (
        f"--{boundary}\r\n"
        f'Content-Disposition: form-data; name="chunk"; filename="{file_id}"\r\n'
        "Content-Type: application/octet-stream\r\n\r\n"
    ).encode()
    return head + data + f"\r\n--{boundary}--\r\n".encode(), f"multipart/form-data; boundary={boundary}"


def test_disconnect_mid_chunk_is_a_server_error(monkeypatch) -> None:
    _reset_state()
    with TestClient(app) as client:
        assert _send_chunk(client, "cut.bin", b"abcd", 0, 4, 8).status_code == 200

        async def _disconnected(self, **kwargs):
            raise ClientDisconnect()

        monkeypatch.setattr(Request, "form", _disconnected)
        response = _send_chunk(client, "cut.bin", b"efgh", 4, 8, 8)

        assert response.status_code == 500
        assert response.json()["detail"] == "chunk stream ended before completion"

    assert tracker.confirmed_offset("cut.bin") == 4
    assert _stored("cut.bin") == b"abcd"


def test_rejected_chunk_body_is_drained_and_client_keeps_working() -> None:
    _reset_state()
    body, content_type = _multipart_body("d.bin", b"q" * 64_000)
    pieces = [body[i : i + 8192] for i in range(0, len(body), 8192)]
    consumed: list[bytes] = []

    async def _stream():
        for piece in pieces:
            consumed.append(piece)
            yield piece

    async def _run() -> tuple[httpx.Response, httpx.Response]:
        transport = httpx.ASGITransport(app=app)
        async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as client:
            rejected = await client.post(
                "/upload",
                headers={
                    "content-range": "bytes 4-64004/64004",
                    "x-file-id": "d.bin",
                    "content-type": content_type,
                },
                content=_stream(),
            )
            accepted = await _send_chunk(client, "d.bin", b"abcd", 0, 4, 8)
            return rejected, accepted

    rejected, accepted = asyncio.run(_run())

    assert rejected.status_code == 200
    assert rejected.json()["data"] == {"status": "RESUMABLE", "uploadedSize": 0}
    assert len(consumed) == len(pieces)
    assert accepted.status_code == 200
    assert accepted.json()["data"] == {"status": "RESUMABLE", "uploadedSize": 4}
    assert _stored("d.bin") == b"abcd"


def test_status_query_during_failed_write_keeps_confirmed_offset(monkeypatch) -> None:
    _reset_state()
    monkeypatch.setattr(tracker, "max_entries", 1)
    real_write = storage.write_at

    def _partial_then_fail(upload_id, offset, source):
        with storage.path_for(upload_id).open("r+b") as handle:
            handle.seek(offset)
            handle.write(source.read(2))
        # status queries for this and another id land while the write is in flight
        tracker.confirmed_offset("other.bin")
        tracker.confirmed_offset(upload_id)
        storage.truncate(upload_id, offset)
        raise OSError("device went away")

    with TestClient(app) as client:
        assert _send_chunk(client, "x.bin", b"abcd", 0, 4, 8).status_code == 200

        monkeypatch.setattr(storage, "write_at", _partial_then_fail)
        assert _send_chunk(client, "x.bin", b"efgh", 4, 8, 8).status_code == 500
        monkeypatch.setattr(storage, "write_at", real_write)

        assert tracker.confirmed_offset("x.bin") == 4
        assert _status(client, "x.bin", 8).json()["data"]["uploadedSize"] == 4
        resend = _send_chunk(client, "x.bin", b"efgh", 4, 8, 8)
        assert resend.json()["data"] == {"status": "COMPLETED", "uploadedSize": 8}

    assert _stored("x.bin") == b"abcdefgh"


def test_record_failure_does_not_fail_an_applied_chunk(monkeypatch, caplog) -> None:
    _reset_state()
    caplog.set_level("INFO", logger="rus.request")

    def _locked(*args, **kwargs):
        raise OperationalError("UPDATE uploads", {}, Exception("database is locked"))

    monkeypatch.setattr("resumable_uploads.main._record_upload", _locked)
    with TestClient(app) as client:
        response = _send_chunk(client, "db.bin", b"abcd", 0, 4, 8)

        assert response.status_code == 200
        assert response.json()["data"] == {"status": "RESUMABLE", "uploadedSize": 4}

    assert tracker.confirmed_offset("db.bin") == 4
    assert _stored("db.bin") == b"abcd"
    assert any("record_update_failed" in record.message for record in caplog.records)
