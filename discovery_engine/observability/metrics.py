"""
Prometheus metrics definitions for the discovery engine.

Metrics are grouped by concern:
- Analysis metrics: run outcomes, duration, factor and discovery volume
- Store metrics: failures talking to the event and discovery stores

Metrics are exposed at the /metrics endpoint for Prometheus scraping.
"""

import logging
from prometheus_client import Counter, Histogram

logger = logging.getLogger(__name__)

# =============================================================================
# Analysis Metrics
# =============================================================================

analysis_runs_total = Counter(
    "discovery_analysis_runs_total",
    "Total deep analysis runs",
    ["outcome"],  # outcome: completed/insufficient_data/error
)

analysis_duration_seconds = Histogram(
    "discovery_analysis_duration_seconds",
    "Deep analysis duration in seconds",
    buckets=[0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0, 10.0, 30.0],
)

factors_scored_total = Counter(
    "discovery_factors_scored_total",
    "Total factors scored across analysis runs",
)

discoveries_tracked_total = Counter(
    "discovery_discoveries_tracked_total",
    "Total discoveries merged into storage",
    ["action"],  # action: inserted/updated
)

# =============================================================================
# Store Metrics
# =============================================================================

store_errors_total = Counter(
    "discovery_store_errors_total",
    "Total event/discovery store failures",
    ["operation", "error_type"],
)


def record_store_error(operation: str, error: BaseException) -> None:
    """Count a store failure by operation and exception type"""
    store_errors_total.labels(operation=operation, error_type=type(error).__name__).inc()
