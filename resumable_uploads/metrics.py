from prometheus_client import CONTENT_TYPE_LATEST, Counter, Gauge, Histogram, generate_latest
from starlette.responses import Response

chunks_accepted_total = Counter("chunks_accepted_total", "Total chunks written at the confirmed offset")
chunks_rejected_total = Counter("chunks_rejected_total", "Total chunks rejected for an offset mismatch")
bytes_received_total = Counter("bytes_received_total", "Total chunk bytes persisted")
chunk_write_failures_total = Counter("chunk_write_failures_total", "Total chunk writes that failed or were rolled back")
status_queries_total = Counter("status_queries_total", "Total upload status queries")
uploads_deleted_total = Counter("uploads_deleted_total", "Total uploads removed explicitly or by expiry")

tracked_uploads = Gauge("tracked_uploads", "Upload ids currently cached by the offset tracker")
inflight_chunk_writes = Gauge("inflight_chunk_writes", "Chunk writes currently holding a per-upload lock")
waiting_chunk_requests = Gauge("waiting_chunk_requests", "Requests waiting on a per-upload lock")

store_write_latency_seconds = Histogram("store_write_latency_seconds", "Chunk write latency in seconds")
db_update_latency_seconds = Histogram("db_update_latency_seconds", "Upload record update latency in seconds")
http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request latency in seconds",
    ["method", "route", "status_code"],
)


def metrics_response() -> Response:
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
