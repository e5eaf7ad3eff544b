"""Exporter endpoints and gauge plumbing."""
import httpx
import pytest
from prometheus_client import REGISTRY

from monitoring.execution_metrics import MetricsServer, update_risk_gauges


@pytest.fixture
def serve():
    servers = []

    def start(probe=None):
        server = MetricsServer(port=0, probe=probe, host="127.0.0.1")
        server.start()
        servers.append(server)
        return f"http://127.0.0.1:{server.port}"

    yield start
    for s in servers:
        s.stop()


def test_metrics_endpoint_exposes_execution_collectors(serve):
    url = serve()
    body = httpx.get(f"{url}/metrics", trust_env=False).text
    assert "trading_orders_placed" in body
    assert "trading_reconciliation_seconds_bucket" in body
    assert httpx.get(f"{url}/nope", trust_env=False).status_code == 404


def test_health_merges_probe_output(serve):
    url = serve(lambda: {"reconciler_busy": False, "circuit_breaker": None})

    response = httpx.get(f"{url}/health", trust_env=False)

    assert response.status_code == 200
    assert response.json() == {"status": "healthy", "reconciler_busy": False,
                               "circuit_breaker": None}


def test_failing_probe_reports_degraded(serve):
    def broken():
        raise RuntimeError("redis down")

    response = httpx.get(f"{serve(broken)}/health", trust_env=False)

    assert response.status_code == 503
    assert response.json()["status"] == "degraded"


def test_update_risk_gauges():
    update_risk_gauges({"positions": {"open": 3},
                        "drawdown": {"daily_pct": 4.5, "weekly_pct": 6.0},
                        "portfolio": {"current": 12500.0}})

    assert REGISTRY.get_sample_value("trading_open_positions") == 3
    assert REGISTRY.get_sample_value("trading_daily_drawdown_pct") == 4.5
    assert REGISTRY.get_sample_value("trading_weekly_drawdown_pct") == 6.0
    assert REGISTRY.get_sample_value("trading_account_value") == 12500.0
