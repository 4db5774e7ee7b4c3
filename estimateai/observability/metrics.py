"""
Prometheus metrics for the extraction and comparison orchestrator.
"""

from prometheus_client import Counter, Histogram, Gauge


# ── Extraction Jobs ──────────────────────────────────────────
extraction_jobs_submitted_total = Counter(
    "extraction_jobs_submitted_total",
    "Total extraction jobs created",
    ["file_type"],
)

extraction_jobs_finished_total = Counter(
    "extraction_jobs_finished_total",
    "Total extraction jobs reaching a terminal state",
    ["file_type", "status", "error_kind"],
)

extraction_job_duration_seconds = Histogram(
    "extraction_job_duration_seconds",
    "Time from claim to terminal state",
    ["file_type"],
    buckets=[1, 5, 10, 30, 60, 120, 300, 600, 1800],
)

items_extracted_total = Counter(
    "items_extracted_total",
    "Total items persisted from extraction",
    ["source"],
)

# ── Model Calls ──────────────────────────────────────────────
model_call_latency_seconds = Histogram(
    "model_call_latency_seconds",
    "Latency of a single model provider call",
    ["engine_name", "operation"],
    buckets=[0.5, 1, 2, 5, 10, 30, 60, 120, 300, 900],
)

model_call_retries_total = Counter(
    "model_call_retries_total",
    "Model calls retried after a transient error",
    ["operation"],
)

# ── Comparison ───────────────────────────────────────────────
comparison_runs_total = Counter(
    "comparison_runs_total",
    "Comparison requests by outcome",
    ["outcome"],
)

comparison_chunks_total = Counter(
    "comparison_chunks_total",
    "Comparison chunks by outcome",
    ["outcome"],
)

# ── Streaming ────────────────────────────────────────────────
stream_subscribers = Gauge(
    "stream_subscribers",
    "Currently connected progress stream subscribers",
)

stream_snapshots_dropped_total = Counter(
    "stream_snapshots_dropped_total",
    "Snapshots dropped from a full subscriber buffer",
)

# ── Worker ───────────────────────────────────────────────────
worker_jobs_active = Gauge(
    "worker_jobs_active",
    "Number of currently active worker jobs",
)
