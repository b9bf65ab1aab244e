"""Prometheus Metrics - document vault observability

Self-Explanatory: Counters/histograms for uploads, rejections, access URLs and audits.
How: prometheus_client default registry, exported on /metrics.
"""

import structlog
from prometheus_client import REGISTRY, Counter, Histogram, Info, generate_latest

logger = structlog.get_logger()

# ============================================================================
# DOCUMENT METRICS
# ============================================================================

documents_uploaded_total = Counter(
    "clinidocs_documents_uploaded_total",
    "Documents persisted (blob written and metadata recorded)",
    ["media_type"],
)

file_parts_rejected_total = Counter(
    "clinidocs_file_parts_rejected_total",
    "File parts not persisted",
    ["reason"],  # invalid_type, oversized, files_limit, persist_failed
)

upload_size_bytes = Histogram(
    "clinidocs_upload_size_bytes",
    "Size of persisted documents in bytes",
    buckets=[
        64 * 1024,
        512 * 1024,
        1024 * 1024,
        5 * 1024 * 1024,
        10 * 1024 * 1024,
        20 * 1024 * 1024,
    ],
)

access_url_fallbacks_total = Counter(
    "clinidocs_access_url_fallbacks_total",
    "Listed documents served with the direct URL because signing failed",
)

upload_duration_seconds = Histogram(
    "clinidocs_upload_duration_seconds",
    "Time to parse, store and record one upload request",
    buckets=[0.1, 0.5, 1, 2, 5, 10, 30, 60],
)

# ============================================================================
# COMPLIANCE METRICS
# ============================================================================

audit_logs_written_total = Counter(
    "clinidocs_audit_logs_written_total",
    "Total audit log entries written",
    ["action"],
)

system_info = Info(
    "clinidocs_system",
    "clinidocs service information",
)
system_info.info({"version": "1.0.0"})


# ============================================================================
# HELPER FUNCTIONS
# ============================================================================


def record_document_upload(media_type: str, size: int):
    """Record a persisted document"""
    documents_uploaded_total.labels(media_type=media_type).inc()
    upload_size_bytes.observe(size)


def record_rejected_part(reason: str, count: int = 1):
    """Record file parts that were not persisted"""
    if count:
        file_parts_rejected_total.labels(reason=reason).inc(count)


def get_metrics_text() -> str:
    """Prometheus text exposition of the default registry"""
    return generate_latest(REGISTRY).decode("utf-8")


logger.info("Prometheus metrics initialized")


