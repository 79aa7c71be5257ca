"""Tests for Prometheus metrics."""

from __future__ import annotations

from toprf.api.metrics import (
    KEY_MATERIAL_STORED,
    OPRF_REQUESTS,
    RPC_FAILOVERS,
    SECRET_GEN_ABORTS,
    metrics_response,
)


class TestMetricsResponse:
    def test_returns_bytes(self) -> None:
        assert isinstance(metrics_response(), bytes)

    def test_contains_metric_names(self) -> None:
        text = metrics_response().decode()
        assert "toprf_node_requests" in text
        assert "toprf_node_oprf_open_sessions" in text

    def test_prometheus_format(self) -> None:
        text = metrics_response().decode()
        assert "# TYPE" in text and "# HELP" in text


class TestCounterIncrements:
    def test_key_material_stored(self) -> None:
        before = KEY_MATERIAL_STORED._value.get()
        KEY_MATERIAL_STORED.inc()
        assert KEY_MATERIAL_STORED._value.get() == before + 1

    def test_rpc_failovers(self) -> None:
        before = RPC_FAILOVERS._value.get()
        RPC_FAILOVERS.inc()
        assert RPC_FAILOVERS._value.get() == before + 1

    def test_labelled_counters(self) -> None:
        counter = OPRF_REQUESTS.labels(step="init", result="ok")
        before = counter._value.get()
        counter.inc()
        assert counter._value.get() == before + 1
        SECRET_GEN_ABORTS.labels(reason="timeout").inc()
        assert 'reason="timeout"' in metrics_response().decode()
