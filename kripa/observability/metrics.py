"""Prometheus metrics collection for Kripa.

Provides instrumentation for retrieval, quota and ledger operations.
Exposed at ``/metrics`` by the API.
"""

import logging

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Gauge, Histogram, generate_latest

logger = logging.getLogger(__name__)

# =============================================================================
# Retrieval Metrics
# =============================================================================

search_requests_total = Counter(
    "kripa_search_requests_total",
    "Total story search requests by outcome",
    ["outcome"],  # matched, no_match, rate_limited, bot_detected, invalid, unavailable, error
)

search_duration_seconds = Histogram(
    "kripa_search_duration_seconds",
    "Story search request duration in seconds",
    buckets=[0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0, 10.0],
)

best_similarity_score = Histogram(
    "kripa_best_similarity_score",
    "Best cosine similarity observed per search",
    buckets=[0.0, 0.1, 0.2, 0.3, 0.4, 0.5, 0.6, 0.7, 0.8, 0.9, 1.0],
)

corpus_records = Gauge(
    "kripa_corpus_records",
    "Number of stories loaded into the in-memory corpus",
    ["strategy"],
)

# =============================================================================
# Quota Metrics
# =============================================================================

quota_decisions_total = Counter(
    "kripa_quota_decisions_total",
    "Quota guard decisions",
    ["decision"],  # admitted, denied, store_error
)

# =============================================================================
# Ledger Metrics
# =============================================================================

ledger_events_total = Counter(
    "kripa_ledger_events_total",
    "Events recorded into the analytics ledger",
    ["action", "status"],
)

ledger_rotations_total = Counter(
    "kripa_ledger_rotations_total",
    "Day shards rotated into an archive after exceeding the size ceiling",
)

ledger_shard_size_bytes = Gauge(
    "kripa_ledger_shard_size_bytes",
    "Serialized size of the most recently written day shard",
)

# =============================================================================
# Gate Metrics
# =============================================================================

gate_decisions_total = Counter(
    "kripa_gate_decisions_total",
    "Admission gate decisions",
    ["reason"],
)


def render_latest() -> tuple[bytes, str]:
    """Render the default registry in Prometheus text format.

    Returns:
        Tuple of (payload, content type)
    """
    return generate_latest(), CONTENT_TYPE_LATEST
