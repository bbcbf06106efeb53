from prometheus_client import CONTENT_TYPE_LATEST, Counter, Gauge, Histogram, generate_latest
from starlette.responses import Response

uploads_created_total = Counter("uploads_created_total", "Total upload sessions created")
chunks_appended_total = Counter("chunks_appended_total", "Total chunks appended")
bytes_appended_total = Counter("bytes_appended_total", "Total bytes appended to staging buffers")
append_conflicts_total = Counter("append_conflicts_total", "Total appends rejected for offset conflicts")
finalize_total = Counter("finalize_total", "Finalize attempts by outcome", ["outcome"])
finalize_failures_total = Counter("finalize_failures_total", "Finalize tasks that exhausted their retries")
throttled_requests_total = Counter("throttled_requests_total", "Total throttled requests")

finalize_queue_depth = Gauge("finalize_queue_depth", "Finalize tasks waiting for a worker")
finalize_inflight = Gauge("finalize_inflight", "Finalize tasks currently running")

blob_attach_latency_seconds = Histogram("blob_attach_latency_seconds", "Blob attach latency in seconds")
http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request latency in seconds",
    ["method", "route", "status_code"],
)


def metrics_response() -> Response:
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
