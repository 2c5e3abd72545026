from prometheus_client import Counter, Histogram

REQUEST_COUNT = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "path", "status"],
)
REQUEST_LATENCY = Histogram(
    "http_request_duration_seconds",
    "HTTP request latency",
    ["method", "path", "status"],
)
REQUEST_ERRORS = Counter(
    "http_request_errors_total",
    "Total HTTP 5xx responses",
    ["method", "path", "status"],
)

UPLOAD_CHUNKS = Counter(
    "chunked_upload_chunks_total",
    "Chunk upload attempts by outcome",
    ["outcome"],
)
UPLOAD_SESSIONS = Counter(
    "chunked_upload_sessions_total",
    "Chunked upload session lifecycle events",
    ["event"],
)
UPLOAD_ASSEMBLY_BYTES = Histogram(
    "chunked_upload_assembled_bytes",
    "Size of assembled objects handed to object storage",
    buckets=(2**20, 2**23, 2**26, 2**29, 2**30, 2**32, 2**34),
)

JOB_DURATION = Histogram(
    "job_duration_seconds",
    "Background job duration",
    ["task", "status"],
)


def observe_job(task_name: str, status: str, duration: float) -> None:
    JOB_DURATION.labels(task=task_name, status=status).observe(duration)


def record_chunk(outcome: str) -> None:
    UPLOAD_CHUNKS.labels(outcome=outcome).inc()


def record_session_event(event: str) -> None:
    UPLOAD_SESSIONS.labels(event=event).inc()
