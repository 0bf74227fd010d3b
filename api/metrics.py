"""
Prometheus metrics for the time ledger service.

Covers:
- Live subscriber connections and their churn
- Event fan-out (delivered / dropped per audience)
- Domain errors by deterministic code
- Invoice lifecycle activity

HTTP request metrics come from prometheus-fastapi-instrumentator in main.py.
"""

from __future__ import annotations

from prometheus_client import Counter, Gauge

# =============================================================================
# Connection Metrics
# =============================================================================

# Live websocket connections by principal kind
WS_CONNECTIONS = Gauge(
    "timeledger_ws_connections",
    "Live websocket connections",
    ["principal_kind"],  # staff, client
)

# Connections refused at connect time
WS_REJECTED = Counter(
    "timeledger_ws_rejected_total",
    "Websocket connections refused before accept",
    ["reason"],  # auth_missing, auth_invalid, max_connections
)

# Connections removed because they stopped answering heartbeats
WS_HEARTBEAT_EVICTIONS = Counter(
    "timeledger_ws_heartbeat_evictions_total",
    "Connections removed after a missed heartbeat window",
)

# Connections removed because their outbound queue stayed full
WS_SLOW_CONSUMER_EVICTIONS = Counter(
    "timeledger_ws_slow_consumer_evictions_total",
    "Connections removed after consecutive queue-full drops",
)

WS_QUEUE_FULL_DROPS = Counter(
    "timeledger_ws_queue_full_drops_total",
    "Event copies discarded because a connection queue was full",
)

# =============================================================================
# Event Fan-out Metrics
# =============================================================================

EVENTS_PUBLISHED = Counter(
    "timeledger_events_published_total",
    "Billing events handed to the broadcaster",
    ["event_type"],
)

EVENTS_OFFERED = Counter(
    "timeledger_events_offered_total",
    "Event copies handed to a connection (queue-full drops are counted on the connection)",
    ["audience"],  # staff, client
)

EVENTS_DROPPED = Counter(
    "timeledger_events_dropped_total",
    "Event copies refused by a closed connection",
    ["audience"],
)

BROADCAST_FAILURES = Counter(
    "timeledger_broadcast_failures_total",
    "Broadcasts that raised and were swallowed",
    ["event_type"],
)

# =============================================================================
# Domain Metrics
# =============================================================================

DOMAIN_ERRORS = Counter(
    "timeledger_domain_errors_total",
    "Domain errors surfaced to callers",
    ["code"],
)

INVOICES_CREATED = Counter(
    "timeledger_invoices_created_total",
    "Invoices created by aggregation",
)

INVOICE_TRANSITIONS = Counter(
    "timeledger_invoice_transitions_total",
    "Invoice status transitions",
    ["to_status"],  # sent, paid
)

AGGREGATION_CONFLICTS = Counter(
    "timeledger_aggregation_conflicts_total",
    "Aggregations rejected because entries were unavailable or the store was busy",
)


def record_domain_error(code: str) -> None:
    DOMAIN_ERRORS.labels(code=code).inc()


def set_connection_count(principal_kind: str, value: int) -> None:
    WS_CONNECTIONS.labels(principal_kind=principal_kind).set(value)
