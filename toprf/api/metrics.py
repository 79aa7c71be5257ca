"""Prometheus metrics for the OPRF node.

Exposes key operational metrics via a /metrics endpoint.
"""

from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram, generate_latest

# --- Request metrics ---
REQUEST_COUNT = Counter(
    "toprf_node_requests_total",
    "Total HTTP requests",
    ["method", "endpoint", "status"],
)

REQUEST_LATENCY = Histogram(
    "toprf_node_request_latency_seconds",
    "Request latency in seconds",
    ["endpoint"],
    buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)

# --- OPRF evaluation ---
OPRF_REQUESTS = Counter(
    "toprf_node_oprf_requests_total",
    "OPRF session steps by outcome",
    ["step", "result"],  # step: init, finish; result: ok, auth_failed, not_found, invalid, error
)

OPRF_SESSION_DURATION = Histogram(
    "toprf_node_oprf_session_duration_seconds",
    "Time between session init and finish",
    buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)

OPRF_OPEN_SESSIONS = Gauge(
    "toprf_node_oprf_open_sessions",
    "Number of OPRF sessions awaiting a challenge",
)

# --- Key material ---
KEY_MATERIAL_CACHE = Counter(
    "toprf_node_key_material_cache_total",
    "Key material cache lookups",
    ["result"],  # hit, miss
)

KEY_MATERIAL_STORED = Counter(
    "toprf_node_key_material_stored_total",
    "Key material epochs committed to the secret manager",
)

# --- Secret generation ---
SECRET_GEN_EVENTS = Counter(
    "toprf_node_secret_gen_events_total",
    "Key registry events handled",
    ["kind"],
)

SECRET_GEN_ABORTS = Counter(
    "toprf_node_secret_gen_aborts_total",
    "Secret generation runs aborted",
    ["reason"],  # verification, timeout, registry, insufficient_parties, state
)

SECRET_GEN_ACTIVE_RUNS = Gauge(
    "toprf_node_secret_gen_active_runs",
    "Secret generation runs in progress",
)

WATCHER_POLL_ERRORS = Counter(
    "toprf_node_watcher_poll_errors_total",
    "Failed key registry poll cycles",
)

# --- Chain ---
NONCE_RESYNCS = Counter(
    "toprf_node_nonce_resyncs_total",
    "Transaction nonce resyncs from chain state",
)

TRANSACTIONS_SUBMITTED = Counter(
    "toprf_node_transactions_submitted_total",
    "Registry transactions submitted",
    ["result"],  # ok, reverted, error
)

RPC_FAILOVERS = Counter(
    "toprf_node_rpc_failovers_total",
    "RPC endpoint failover events",
)

CIRCUIT_BREAKER_STATE = Gauge(
    "toprf_node_circuit_breaker_state",
    "Circuit breaker state: 0 closed, 1 half-open, 2 open",
    ["target"],
)

UPTIME_SECONDS = Gauge(
    "toprf_node_uptime_seconds",
    "Node uptime in seconds",
)


def metrics_response() -> bytes:
    """Generate Prometheus-compatible metrics text."""
    return generate_latest()
