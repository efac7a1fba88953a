"""
Pod Healer - Scan Orchestrator Tests
====================================

End-to-end tests of scan cycles against an in-memory cluster: gating,
circuit breaking across cycles, deadline overruns and event delivery.
"""

import asyncio
from datetime import timedelta

import pytest
from kubernetes.client import (
    V1ContainerState,
    V1ContainerStateWaiting,
    V1ContainerStatus,
    V1ObjectMeta,
    V1OwnerReference,
    V1Pod,
    V1PodStatus,
)

import sys
import os

# Add project root to path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from podhealer.constants import ActionKind, ActionMode, CircuitState, HealReason, Severity
from podhealer.core.action_executor import ActionExecutor
from podhealer.core.cooldown_store import CooldownStore
from podhealer.core.errors import PermanentActionError
from podhealer.core.k8s_client import pod_to_observation
from podhealer.core.metrics import HealerMetrics
from podhealer.core.models import HealDecision, OwnerRef, WorkloadKey
from podhealer.core.scan_orchestrator import ScanOrchestrator

from fakes import (
    NOW,
    FakeClock,
    FakeCluster,
    RecordingNotifier,
    ThreadedCluster,
    fetch_failure,
    make_pod,
    make_settings,
)

WEB = WorkloadKey("shop", "ReplicaSet", "web-6d4f")


def build(cluster, notifier=None, clock=None, **overrides):
    settings = make_settings(**overrides)
    return ScanOrchestrator(
        cluster=cluster,
        store=CooldownStore.from_settings(settings),
        executor=ActionExecutor(cluster, settings),
        notifier=notifier or RecordingNotifier(),
        metrics=HealerMetrics(),
        settings=settings,
        clock=clock or FakeClock(),
    )


def metric(orchestrator, name, **labels):
    return orchestrator.metrics.registry.get_sample_value(name, labels) or 0.0


def crashing_deployment_pod(template_hash):
    """A crash-looping pod of Deployment 'web' as the API server returns it."""
    return pod_to_observation(V1Pod(
        metadata=V1ObjectMeta(
            name=f"web-{template_hash}-x1",
            namespace="shop",
            labels={"app": "web", "pod-template-hash": template_hash},
            owner_references=[V1OwnerReference(
                api_version="apps/v1", kind="ReplicaSet", name=f"web-{template_hash}",
                uid=f"uid-{template_hash}", controller=True,
            )],
            creation_timestamp=NOW - timedelta(hours=1),
        ),
        status=V1PodStatus(
            phase="Running",
            container_statuses=[V1ContainerStatus(
                name="app", image="registry.local/web:1.4", image_id="", ready=False, restart_count=3,
                state=V1ContainerState(waiting=V1ContainerStateWaiting(reason="CrashLoopBackOff")),
            )],
        ),
    ))


class TestHealingCycle:
    """Tests for a single scan cycle."""

    @pytest.mark.asyncio
    async def test_restart_threshold_then_cooling(self):
        """A pod over the restart threshold is deleted once, then cools down."""
        cluster = FakeCluster([make_pod(restarts=(6,))])
        clock = FakeClock()
        orchestrator = build(cluster, clock=clock, cooldown_seconds=300)

        first = await orchestrator.run_cycle()
        clock.advance(30)
        second = await orchestrator.run_cycle()

        assert first.succeeded == 1
        assert cluster.deleted == [("shop", "web-1", 30)]
        assert second.denied == {"Cooling": 1}
        assert second.acquired == 0
        entry = orchestrator.store.get(WEB)
        assert entry.circuit == CircuitState.CLOSED
        assert not entry.in_flight

    @pytest.mark.asyncio
    async def test_healthy_cluster_does_nothing(self):
        cluster = FakeCluster([make_pod(), make_pod(name="web-2")])
        orchestrator = build(cluster)

        report = await orchestrator.run_cycle()

        assert report.observed == 2
        assert report.decisions == 0
        assert cluster.deleted == []

    @pytest.mark.asyncio
    async def test_replicas_merged_into_one_action(self):
        """Several broken pods of one workload produce one bounded action."""
        cluster = FakeCluster([
            make_pod(name="web-1", restarts=(7,)),
            make_pod(name="web-2", waiting="CrashLoopBackOff"),
            make_pod(name="web-3", waiting="CrashLoopBackOff"),
        ])
        orchestrator = build(cluster)

        report = await orchestrator.run_cycle()

        assert report.decisions == 1
        assert report.acquired == 1
        assert cluster.deleted == [("shop", "web-2", 30)]
        assert metric(orchestrator, "podhealer_decisions_total", reason="CrashLoop") == 1

    @pytest.mark.asyncio
    async def test_distinct_workloads_remediated_concurrently(self):
        cluster = FakeCluster(
            [make_pod(name=f"w{i}", owner=("ReplicaSet", f"w{i}-rs"), restarts=(9,)) for i in range(4)],
            delay=0.05,
        )
        orchestrator = build(cluster)

        report = await orchestrator.run_cycle()

        assert report.succeeded == 4
        assert cluster.max_active > 1

    @pytest.mark.asyncio
    async def test_concurrency_bounded(self):
        cluster = FakeCluster(
            [make_pod(name=f"w{i}", owner=("ReplicaSet", f"w{i}-rs"), restarts=(9,)) for i in range(5)],
            delay=0.02,
        )
        orchestrator = build(cluster, max_concurrent_actions=2)

        report = await orchestrator.run_cycle()

        assert report.succeeded == 5
        assert cluster.max_active <= 2

    @pytest.mark.asyncio
    async def test_dry_run_records_without_acting(self):
        cluster = FakeCluster([make_pod(waiting="CrashLoopBackOff")])
        notifier = RecordingNotifier()
        orchestrator = build(cluster, notifier=notifier, dry_run=True)

        report = await orchestrator.run_cycle()
        await orchestrator.drain_notifications()

        assert report.succeeded == 1
        assert cluster.deleted == []
        assert notifier.events[0].dry_run


class TestCircuitAcrossCycles:
    """Tests for failure accounting over several cycles."""

    @pytest.mark.asyncio
    async def test_failures_open_circuit_then_single_trial(self):
        """Three failed deletes open the circuit; after backoff one trial runs."""
        cluster = FakeCluster([make_pod(name="web-1", waiting="CrashLoopBackOff"),
                               make_pod(name="web-2", waiting="CrashLoopBackOff")])
        cluster.fail_always("web-1", PermanentActionError("forbidden", 403))
        clock = FakeClock()
        orchestrator = build(cluster, clock=clock, cooldown_seconds=0, backoff_base_seconds=60)

        for _ in range(3):
            report = await orchestrator.run_cycle()
            assert report.failed == 1
            clock.advance(1)

        entry = orchestrator.store.get(WEB)
        assert entry.circuit == CircuitState.OPEN

        blocked = await orchestrator.run_cycle()
        assert blocked.denied == {"CircuitOpen": 1}

        clock.now = entry.reopen_at
        trial = await orchestrator.run_cycle()
        assert trial.acquired == 1
        assert trial.failed == 1
        assert orchestrator.store.get(WEB).circuit == CircuitState.OPEN
        assert orchestrator.store.get(WEB).backoff == 240
        assert metric(orchestrator, "podhealer_heal_failure_total",
                      action="DeletePod", reason="CrashLoop") == 4

    @pytest.mark.asyncio
    async def test_fetch_failure_leaves_store_unchanged(self):
        cluster = FakeCluster([make_pod(restarts=(6,))])
        orchestrator = build(cluster, cooldown_seconds=300)
        await orchestrator.run_cycle()
        before = orchestrator.store.snapshot()

        cluster.fetch_error = fetch_failure()
        report = await orchestrator.run_cycle()

        assert report.fetch_error is not None
        assert report.decisions == 0
        assert orchestrator.store.snapshot() == before
        assert metric(orchestrator, "podhealer_scan_failures_total") == 1

    @pytest.mark.asyncio
    async def test_cycle_after_fetch_failure_proceeds(self):
        cluster = FakeCluster([make_pod(restarts=(6,))])
        cluster.fetch_error = fetch_failure()
        orchestrator = build(cluster)

        await orchestrator.run_cycle()
        cluster.fetch_error = None
        report = await orchestrator.run_cycle()

        assert report.succeeded == 1


class TestDeadline:
    """Tests for remediations that outlive the cycle deadline."""

    @pytest.mark.asyncio
    async def test_running_action_outlives_deadline(self):
        """A remediation still running at the deadline keeps its key in flight
        and settles with its real outcome once the call returns."""
        cluster = FakeCluster([make_pod(restarts=(6,))], delay=0.3)
        notifier = RecordingNotifier()
        orchestrator = build(cluster, notifier=notifier, cycle_deadline_seconds=0.1)

        report = await orchestrator.run_cycle()

        assert report.overran == 1
        assert report.cancelled == 0
        assert report.succeeded == 0
        assert orchestrator.store.get(WEB).in_flight

        second = await orchestrator.run_cycle()
        assert second.denied == {"InFlight": 1}
        assert second.acquired == 0

        await orchestrator.drain_remediations(timeout=5)
        await orchestrator.drain_notifications()

        entry = orchestrator.store.get(WEB)
        assert not entry.in_flight
        assert entry.consecutive_failures == 0
        assert entry.last_action_time is not None
        assert report.succeeded == 1
        assert cluster.deleted == [("shop", "web-1", 30)]
        assert notifier.events[0].success

    @pytest.mark.asyncio
    async def test_blocking_call_never_overlaps_next_cycle(self):
        """A cluster call stuck in a worker thread past the deadline is not
        issued a second time by the following cycle."""
        cluster = ThreadedCluster([make_pod(restarts=(6,))], delay=0.4)
        orchestrator = build(cluster, cooldown_seconds=0, cycle_deadline_seconds=0.1)

        first = await orchestrator.run_cycle()
        second = await orchestrator.run_cycle()
        await orchestrator.drain_remediations(timeout=5)

        assert first.overran == 1
        assert second.denied == {"InFlight": 1}
        assert cluster.calls == ["web-1"]
        assert cluster.max_active_by_name["web-1"] == 1
        assert orchestrator.store.in_flight_count() == 0
        assert orchestrator.store.get(WEB).consecutive_failures == 0

    @pytest.mark.asyncio
    async def test_queued_action_released(self):
        """A permit still waiting for the semaphore at the deadline is released."""
        cluster = FakeCluster(
            [make_pod(name=f"w{i}", owner=("ReplicaSet", f"w{i}-rs"), restarts=(9,)) for i in range(2)],
            delay=0.3,
        )
        orchestrator = build(cluster, cycle_deadline_seconds=0.1, max_concurrent_actions=1)

        report = await orchestrator.run_cycle()

        assert report.overran == 1
        assert report.cancelled == 1
        assert report.failed == 0
        assert orchestrator.store.in_flight_count() == 1

        await orchestrator.drain_remediations(timeout=5)

        assert orchestrator.store.in_flight_count() == 0
        assert len(cluster.deleted) == 1
        snapshots = orchestrator.store.snapshot()
        assert all(s.consecutive_failures == 0 for s in snapshots)
        assert sorted(s.last_action_time is None for s in snapshots) == [False, True]

    @pytest.mark.asyncio
    async def test_shutdown_waits_for_overrunning_action(self):
        cluster = FakeCluster([make_pod(restarts=(6,))], delay=0.3)
        notifier = RecordingNotifier()
        orchestrator = build(cluster, notifier=notifier, cycle_deadline_seconds=0.1)

        await orchestrator.run_cycle()
        await orchestrator.shutdown(timeout=5)

        assert not orchestrator.store.get(WEB).in_flight
        assert cluster.deleted == [("shop", "web-1", 30)]
        assert len(notifier.events) == 1
        assert notifier.closed


class TestNotifications:
    """Tests for heal event delivery."""

    @pytest.mark.asyncio
    async def test_event_per_remediation(self):
        cluster = FakeCluster([
            make_pod(name="web-1", waiting="CrashLoopBackOff"),
            make_pod(name="api-1", owner=("ReplicaSet", "api-77c9"), restarts=(9,)),
        ])
        cluster.fail_always("api-1", PermanentActionError("forbidden", 403))
        notifier = RecordingNotifier()
        orchestrator = build(cluster, notifier=notifier)

        report = await orchestrator.run_cycle()
        await orchestrator.drain_notifications()

        by_workload = {e.workload: e for e in notifier.events}
        assert len(notifier.events) == 2
        assert by_workload["shop/ReplicaSet/web-6d4f"].success
        assert not by_workload["shop/ReplicaSet/api-77c9"].success
        assert all(e.scan_id == report.scan_id for e in notifier.events)

    @pytest.mark.asyncio
    async def test_notifier_failure_does_not_affect_cycle(self):
        cluster = FakeCluster([make_pod(waiting="CrashLoopBackOff")])
        orchestrator = build(cluster, notifier=RecordingNotifier(fail=True))

        report = await orchestrator.run_cycle()
        await orchestrator.drain_notifications()

        assert report.succeeded == 1
        assert orchestrator.store.get(WEB).circuit == CircuitState.CLOSED


class TestActionSelection:
    """Tests for mapping decisions to remediation actions."""

    def decision(self, owner):
        key = WorkloadKey.for_pod("shop", "web-1", owner)
        return HealDecision(key, HealReason.CRASH_LOOP, Severity.HIGH, ("web-1", "web-2"), owner)

    def test_delete_mode_limits_pods(self):
        orchestrator = build(FakeCluster(), max_pods_per_action=1)

        action = orchestrator.build_action(self.decision(OwnerRef("ReplicaSet", "web-6d4f")))

        assert action.kind == ActionKind.DELETE_POD
        assert action.target_pods == ("web-1",)

    def test_rollout_mode_uses_owner(self):
        orchestrator = build(FakeCluster(), action_mode=ActionMode.ROLLOUT)

        action = orchestrator.build_action(self.decision(OwnerRef("ReplicaSet", "web-6d4f")))

        assert action.kind == ActionKind.ROLLOUT_RESTART
        assert action.target == "shop/ReplicaSet/web-6d4f"

    @pytest.mark.parametrize("owner", [None, OwnerRef("Job", "migrate")])
    def test_rollout_mode_falls_back_to_delete(self, owner):
        orchestrator = build(FakeCluster(), action_mode=ActionMode.ROLLOUT)

        action = orchestrator.build_action(self.decision(owner))

        assert action.kind == ActionKind.DELETE_POD

    @pytest.mark.asyncio
    async def test_rollout_cycle_patches_controller(self):
        cluster = FakeCluster([make_pod(restarts=(6,))])
        orchestrator = build(cluster, action_mode=ActionMode.ROLLOUT)

        await orchestrator.run_cycle()

        assert cluster.patched[0][:3] == ("shop", "ReplicaSet", "web-6d4f")
        assert cluster.deleted == []

    @pytest.mark.asyncio
    async def test_rollout_cooldown_survives_new_replicaset(self):
        """The restart's new ReplicaSet is the same workload, so it cools down
        instead of triggering another rollout."""
        cluster = FakeCluster([crashing_deployment_pod("6d4f")])
        clock = FakeClock()
        orchestrator = build(cluster, clock=clock, action_mode=ActionMode.ROLLOUT, cooldown_seconds=300)

        first = await orchestrator.run_cycle()
        cluster.pods = [crashing_deployment_pod("8b1c")]
        clock.advance(30)
        second = await orchestrator.run_cycle()

        assert first.succeeded == 1
        assert second.denied == {"Cooling": 1}
        assert len(cluster.patched) == 1
        assert cluster.patched[0][:3] == ("shop", "Deployment", "web")
        assert [s.key for s in orchestrator.store.snapshot()] == [WorkloadKey("shop", "Deployment", "web")]


class TestLoop:
    """Tests for the periodic loop and shutdown."""

    @pytest.mark.asyncio
    async def test_run_forever_until_stopped(self):
        cluster = FakeCluster([make_pod()])
        notifier = RecordingNotifier()
        orchestrator = build(cluster, notifier=notifier,
                             scan_interval_seconds=0.02, cycle_deadline_seconds=0.02)

        task = asyncio.create_task(orchestrator.run_forever())
        await asyncio.sleep(0.1)
        assert orchestrator.is_running

        await orchestrator.shutdown(task, timeout=1)

        assert task.done()
        assert not orchestrator.is_running
        assert cluster.list_calls >= 2
        assert notifier.closed

    @pytest.mark.asyncio
    async def test_loop_survives_unexpected_errors(self):
        cluster = FakeCluster()
        cluster.fetch_error = RuntimeError("unexpected")
        orchestrator = build(cluster, scan_interval_seconds=0.02, cycle_deadline_seconds=0.02)

        task = asyncio.create_task(orchestrator.run_forever())
        await asyncio.sleep(0.1)
        await orchestrator.shutdown(task, timeout=1)

        assert cluster.list_calls >= 2
        assert len(orchestrator.get_reports()) >= 2
