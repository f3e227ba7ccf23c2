"""
Prometheus metrics for the GeoClips API.

Provides application metrics for monitoring and alerting.
Metrics are exposed at the admin /metrics endpoint in Prometheus text format.
"""

from prometheus_client import Counter, Histogram, Info, generate_latest

# Application info
APP_INFO = Info("geoclips", "GeoClips application information")

# =============================================================================
# API Metrics
# =============================================================================

HTTP_REQUESTS_TOTAL = Counter(
    "geoclips_http_requests_total",
    "Total HTTP requests",
    ["method", "endpoint", "status_code"],
)

HTTP_REQUEST_DURATION_SECONDS = Histogram(
    "geoclips_http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "endpoint"],
    buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0],
)

# =============================================================================
# Consistency Engine Metrics
# =============================================================================

TAG_ASSIGNMENTS_TOTAL = Counter(
    "geoclips_tag_assignments_total",
    "Tag assignment outcomes per tag name",
    ["result"],  # assigned, skipped, failed
)

TAGS_CREATED_TOTAL = Counter(
    "geoclips_tags_created_total",
    "Tags created on first use",
)

CASCADE_DELETES_TOTAL = Counter(
    "geoclips_cascade_deletes_total",
    "Entities removed by cascade deletes",
    ["entity"],  # video, tag, user
)

COUNTER_CORRECTIONS_TOTAL = Counter(
    "geoclips_counter_corrections_total",
    "Stored counters overwritten by reconciliation because they had drifted",
    ["counter"],  # usage_count, likes_count, comments_count, views_count
)

COUNTER_FLOOR_CLAMPS_TOTAL = Counter(
    "geoclips_counter_floor_clamps_total",
    "Decrements that would have taken a counter below zero",
    ["counter"],
)

USER_UPSERTS_TOTAL = Counter(
    "geoclips_user_upserts_total",
    "Identity upsert outcomes",
    ["result"],  # atomic, created, existing, retried, failed
)

# =============================================================================
# Database Metrics
# =============================================================================

DB_QUERY_RETRIES_TOTAL = Counter(
    "geoclips_db_query_retries_total",
    "Total database query retries due to transient errors",
)

DB_CONFLICTS_TOTAL = Counter(
    "geoclips_db_conflicts_total",
    "Inserts rejected by a uniqueness constraint",
    ["table"],
)


def get_metrics() -> bytes:
    """Generate Prometheus metrics in text format."""
    return generate_latest()


def init_app_info(version: str = "0.1.0"):
    """Initialize application info metric."""
    APP_INFO.info({"version": version, "app": "geoclips"})
