"""
Pod Healer - API Tests
======================

Tests for the health, metrics and state endpoints. The lifespan (which
needs a real cluster) is not started; an orchestrator backed by the
in-memory cluster is attached to the app instead.
"""

import pytest
from fastapi.testclient import TestClient

import sys
import os

# Add project root to path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from podhealer.core.action_executor import ActionExecutor
from podhealer.core.cooldown_store import CooldownStore
from podhealer.core.metrics import HealerMetrics
from podhealer.core.scan_orchestrator import ScanOrchestrator
from podhealer.main import app

from fakes import FakeClock, FakeCluster, RecordingNotifier, make_pod, make_settings


@pytest.fixture
def cluster():
    return FakeCluster([
        make_pod(name="web-1", waiting="CrashLoopBackOff"),
        make_pod(name="api-1", owner=("ReplicaSet", "api-77c9")),
    ])


@pytest.fixture
def client(cluster):
    settings = make_settings()
    app.state.orchestrator = ScanOrchestrator(
        cluster=cluster,
        store=CooldownStore.from_settings(settings),
        executor=ActionExecutor(cluster, settings),
        notifier=RecordingNotifier(),
        metrics=HealerMetrics(),
        settings=settings,
        clock=FakeClock(),
    )
    yield TestClient(app)
    del app.state.orchestrator


class TestHealthEndpoints:
    """Tests for liveness, readiness and metrics."""

    def test_health(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    def test_not_ready_without_loop(self, client):
        response = client.get("/ready")

        assert response.status_code == 503
        body = response.json()
        assert body["loop_running"] is False
        assert body["last_cycle_at"] is None

    def test_metrics_exposition(self, client):
        client.post("/api/v1/scan")

        response = client.get("/metrics")

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/plain")
        assert "podhealer_scans_total 1.0" in response.text
        assert 'podhealer_heal_success_total{action="DeletePod",reason="CrashLoop"} 1.0' in response.text


class TestStateEndpoints:
    """Tests for the operator API."""

    def test_manual_scan(self, client, cluster):
        response = client.post("/api/v1/scan")

        assert response.status_code == 200
        body = response.json()
        assert body["observed"] == 2
        assert body["decisions"] == 1
        assert body["succeeded"] == 1
        assert cluster.deleted == [("shop", "web-1", 30)]

    def test_workloads_after_scan(self, client):
        client.post("/api/v1/scan")

        response = client.get("/api/v1/workloads")

        body = response.json()
        assert body["count"] == 1
        workload = body["workloads"][0]
        assert (workload["namespace"], workload["kind"], workload["name"]) == ("shop", "ReplicaSet", "web-6d4f")
        assert workload["circuit"] == "closed"
        assert workload["in_flight"] is False
        assert workload["last_action_at"] is not None

    def test_cycles_newest_first(self, client):
        client.post("/api/v1/scan")
        client.post("/api/v1/scan")

        cycles = client.get("/api/v1/cycles", params={"limit": 5}).json()

        assert [c["cycle"] for c in cycles] == [2, 1]
        assert cycles[0]["denied"] == {"Cooling": 1}

    def test_actions_history(self, client):
        client.post("/api/v1/scan")

        body = client.get("/api/v1/actions").json()

        assert body["count"] == 1
        assert body["actions"][0]["action_type"] == "DeletePod"
        assert body["actions"][0]["target"] == "shop/web-1"

    def test_limit_validated(self, client):
        assert client.get("/api/v1/cycles", params={"limit": 0}).status_code == 422


class TestBeforeStartup:
    """Tests for requests served before the scan loop is wired in."""

    @pytest.fixture
    def bare_client(self):
        if hasattr(app.state, "orchestrator"):
            del app.state.orchestrator
        return TestClient(app)

    def test_metrics_not_ready(self, bare_client):
        response = bare_client.get("/metrics")

        assert response.status_code == 503
        assert response.json()["status"] == "not_ready"

    def test_state_endpoints_not_ready(self, bare_client):
        assert bare_client.get("/api/v1/workloads").status_code == 503
        assert bare_client.post("/api/v1/scan").status_code == 503
