"""
Pod Healer - Scan Orchestrator
==============================

The control loop. Every ``scan_interval_seconds`` one cycle runs:

1. FETCH:   list pods (a failure skips this cycle only, the store is untouched)
2. DETECT:  evaluate every pod with the heuristic engine
3. GATE:    ask the cooldown store for a permit per workload
4. ACT:     execute permitted remediations concurrently across workloads
5. REPORT:  record each outcome in the store, emit metrics and a heal event

A cycle is bounded by ``cycle_deadline_seconds``. Permits still waiting
for a concurrency slot at the deadline are released. A remediation whose
cluster call already started keeps its workload in flight until the call
returns and the real outcome is recorded, so a later cycle never acts on
the same workload while it runs.
"""

from __future__ import annotations

import asyncio
import time
import uuid
from collections import Counter, deque
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Callable, Optional

from podhealer.config import Settings, get_settings
from podhealer.constants import ActionKind, ActionMode, ROLLOUT_OWNER_KINDS
from podhealer.core.action_executor import ActionExecutor
from podhealer.core.cooldown_store import CooldownStore, Denied
from podhealer.core.errors import FetchError
from podhealer.core.heuristics import HeuristicEngine, HeuristicThresholds
from podhealer.core.metrics import HealerMetrics
from podhealer.core.models import ActionOutcome, HealDecision, RemediationAction
from podhealer.core.notifier import Notifier
from podhealer.schemas.events import HealEvent
from podhealer.utils.logging import get_logger, set_scan_id

logger = get_logger(__name__)


@dataclass
class CycleReport:
    """Summary of one scan cycle."""
    scan_id: str
    cycle: int
    started_at: datetime
    finished_at: Optional[datetime] = None
    observed: int = 0
    decisions: int = 0
    acquired: int = 0
    denied: dict[str, int] = field(default_factory=dict)
    succeeded: int = 0
    failed: int = 0
    cancelled: int = 0
    overran: int = 0
    fetch_error: Optional[str] = None

    @property
    def duration_seconds(self) -> float:
        if self.finished_at is None:
            return 0.0
        return (self.finished_at - self.started_at).total_seconds()

    def to_dict(self) -> dict:
        data = asdict(self)
        data["duration_seconds"] = self.duration_seconds
        return data


class ScanOrchestrator:
    """
    Composes fetcher, heuristics, store and executor into the healing loop.

    Example:
        orchestrator = ScanOrchestrator(k8s, store, executor, notifier, metrics)
        task = asyncio.create_task(orchestrator.run_forever())
        ...
        await orchestrator.shutdown()
    """

    def __init__(
        self,
        cluster,
        store: CooldownStore,
        executor: ActionExecutor,
        notifier: Notifier,
        metrics: HealerMetrics,
        settings: Optional[Settings] = None,
        heuristics: Optional[HeuristicEngine] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.settings = settings or get_settings()
        self.cluster = cluster
        self.store = store
        self.executor = executor
        self.notifier = notifier
        self.metrics = metrics
        self.heuristics = heuristics or HeuristicEngine(HeuristicThresholds.from_settings(self.settings))
        self.clock = clock

        self._cycle = 0
        self._cycle_lock = asyncio.Lock()
        self._semaphore = asyncio.Semaphore(self.settings.max_concurrent_actions)
        self._stop_event = asyncio.Event()
        self._running = False
        self._remediations: set[asyncio.Task] = set()
        self._notifications: set[asyncio.Task] = set()
        self._reports: deque[CycleReport] = deque(maxlen=self.settings.history_size)

    # -------------------------------------------------------------------------
    # Introspection
    # -------------------------------------------------------------------------

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def last_report(self) -> Optional[CycleReport]:
        return self._reports[-1] if self._reports else None

    def get_reports(self, limit: int = 20) -> list[CycleReport]:
        return list(reversed(self._reports))[:limit]

    # -------------------------------------------------------------------------
    # Loop
    # -------------------------------------------------------------------------

    async def run_forever(self) -> None:
        """Run cycles on a fixed interval until ``stop`` is called."""
        loop = asyncio.get_running_loop()
        interval = self.settings.scan_interval_seconds
        self._running = True
        logger.info(
            f"Starting scan loop with {interval}s interval",
            extra={"interval": interval, "action_mode": self.settings.action_mode.value,
                   "dry_run": self.settings.dry_run}
        )

        try:
            while not self._stop_event.is_set():
                started = loop.time()
                try:
                    await self.run_cycle()
                except Exception as e:
                    logger.error(f"Error in scan cycle: {e}", exc_info=True)

                remaining = interval - (loop.time() - started)
                try:
                    await asyncio.wait_for(self._stop_event.wait(), timeout=max(remaining, 0))
                except asyncio.TimeoutError:
                    pass
        finally:
            self._running = False
            logger.info("Scan loop stopped")

    def stop(self) -> None:
        """Stop issuing new cycles; a running cycle is allowed to finish."""
        self._stop_event.set()

    async def shutdown(self, loop_task: Optional[asyncio.Task] = None, timeout: float = 30.0) -> None:
        """
        Graceful shutdown: stop ticking, wait for the current cycle and any
        remediation that outlived its cycle, then flush pending notifications
        and close the notifier.
        """
        self.stop()
        if loop_task is not None:
            try:
                await asyncio.wait_for(loop_task, timeout=timeout)
            except asyncio.TimeoutError:
                logger.warning("Scan loop did not stop in time, cancelling")
                loop_task.cancel()
                try:
                    await loop_task
                except asyncio.CancelledError:
                    pass
        await self.drain_remediations(timeout=timeout)
        await self.drain_notifications(timeout=min(timeout, 10.0))
        await self.notifier.close()

    # -------------------------------------------------------------------------
    # Cycle
    # -------------------------------------------------------------------------

    async def run_cycle(self) -> CycleReport:
        """Run one scan-detect-decide-act cycle and return its report."""
        async with self._cycle_lock:
            self._cycle += 1
            cycle = self._cycle
            scan_id = uuid.uuid4().hex[:12]
            set_scan_id(scan_id)

            loop = asyncio.get_running_loop()
            deadline = loop.time() + self.settings.cycle_deadline_seconds
            report = CycleReport(scan_id=scan_id, cycle=cycle, started_at=datetime.now(timezone.utc))
            self.metrics.inc_scan()

            try:
                await self._run_cycle(report, deadline)
            finally:
                report.finished_at = datetime.now(timezone.utc)
                self._reports.append(report)
                set_scan_id(None)

            logger.info(
                f"Scan cycle {cycle} complete",
                extra={
                    "scan_id": scan_id,
                    "observed": report.observed,
                    "decisions": report.decisions,
                    "acquired": report.acquired,
                    "succeeded": report.succeeded,
                    "failed": report.failed,
                    "overran": report.overran,
                    "denied": report.denied,
                    "duration": report.duration_seconds,
                }
            )
            return report

    async def _run_cycle(self, report: CycleReport, deadline: float) -> None:
        loop = asyncio.get_running_loop()

        try:
            pods = await asyncio.wait_for(
                self.cluster.list_pods(), timeout=max(deadline - loop.time(), 0)
            )
        except (FetchError, asyncio.TimeoutError) as e:
            report.fetch_error = str(e) or "timed out listing pods"
            self.metrics.inc_scan_failure()
            logger.error(f"Scan failed, skipping cycle: {report.fetch_error}")
            return

        now = self.clock()
        report.observed = len(pods)
        self.store.mark_seen({pod.workload_key for pod in pods}, report.cycle)

        decisions = self.heuristics.evaluate_all(pods, datetime.fromtimestamp(now, timezone.utc))
        report.decisions = len(decisions)

        denied: Counter = Counter()
        tasks = [
            asyncio.create_task(self._heal(decision, now, report, denied))
            for decision in decisions
        ]

        if tasks:
            _, pending = await asyncio.wait(tasks, timeout=max(deadline - loop.time(), 0))
            if pending:
                logger.warning(
                    f"Cycle deadline reached with {len(pending)} remediations unfinished",
                    extra={"pending": len(pending)}
                )
                for task in pending:
                    task.cancel()
                await asyncio.gather(*pending, return_exceptions=True)
                report.cancelled = len(pending) - report.overran

        report.denied = dict(denied)
        self.store.sweep(report.cycle)
        self.metrics.set_tracked_workloads(len(self.store))

    async def _heal(self, decision: HealDecision, now: float, report: CycleReport, denied: Counter) -> None:
        key = decision.key
        self.metrics.inc_decision(decision.reason)

        gate = self.store.try_acquire(key, now)
        if isinstance(gate, Denied):
            denied[gate.reason.value] += 1
            self.metrics.inc_denied(gate.reason)
            logger.debug(
                f"Skipping {key}: {gate.reason.value}",
                extra={"workload": str(key), "reason": decision.reason.value}
            )
            return

        report.acquired += 1
        action = self.build_action(decision)
        logger.info(
            f"Remediating {key}: {decision.reason.value}",
            extra={
                "workload": str(key),
                "reason": decision.reason.value,
                "severity": decision.severity.value,
                "action": action.kind.value,
                "trial": gate.trial,
                "detail": decision.detail,
            }
        )

        started = asyncio.Event()
        remediation = asyncio.create_task(self._remediate(decision, action, report, started))
        self._remediations.add(remediation)
        remediation.add_done_callback(self._remediations.discard)

        try:
            await asyncio.shield(remediation)
        except asyncio.CancelledError:
            if started.is_set():
                # The cluster call may still be running in a worker thread;
                # the key stays in flight until it returns and settles.
                report.overran += 1
                logger.warning(
                    f"Remediation of {key} still running at cycle deadline",
                    extra={"workload": str(key), "action": action.kind.value}
                )
            else:
                remediation.cancel()
                self.store.release(key)
            raise

    async def _remediate(
        self,
        decision: HealDecision,
        action: RemediationAction,
        report: CycleReport,
        started: asyncio.Event,
    ) -> None:
        async with self._semaphore:
            started.set()
            self.metrics.inc_heal_attempt(action.kind.value)
            outcome = await self.executor.execute(action)
        self._settle(decision, action, outcome, report)

    def _settle(
        self,
        decision: HealDecision,
        action: RemediationAction,
        outcome: ActionOutcome,
        report: CycleReport,
    ) -> None:
        finished = self.clock()
        self.store.report(decision.key, outcome, finished)
        self.metrics.set_last_action_timestamp(finished)

        if outcome.success:
            report.succeeded += 1
            self.metrics.inc_heal_success(action.kind.value, decision.reason)
        else:
            report.failed += 1
            self.metrics.inc_heal_failure(action.kind.value, decision.reason)

        self._emit(HealEvent(
            scan_id=report.scan_id,
            workload=str(decision.key),
            namespace=decision.key.namespace,
            reason=decision.reason,
            severity=decision.severity,
            action=action.kind,
            target=action.target,
            success=outcome.success,
            cause=outcome.cause,
            attempts=max(outcome.attempts, 1),
            dry_run=bool(outcome.details.get("dry_run", False)),
        ))

    def build_action(self, decision: HealDecision) -> RemediationAction:
        """
        Choose the remediation for a decision.

        Rollout mode falls back to deleting the pod when the workload has no
        controller that can be rolled out (bare pods, Jobs).
        """
        owner = decision.owner
        if (
            self.settings.action_mode == ActionMode.ROLLOUT
            and owner is not None
            and owner.kind in ROLLOUT_OWNER_KINDS
        ):
            return RemediationAction(
                key=decision.key,
                kind=ActionKind.ROLLOUT_RESTART,
                namespace=decision.key.namespace,
                target_pods=decision.target_pods,
                owner=owner,
                grace_period_seconds=self.settings.grace_period_seconds,
                reason=decision.reason,
            )

        return RemediationAction(
            key=decision.key,
            kind=ActionKind.DELETE_POD,
            namespace=decision.key.namespace,
            target_pods=decision.target_pods[:self.settings.max_pods_per_action],
            owner=owner,
            grace_period_seconds=self.settings.grace_period_seconds,
            reason=decision.reason,
        )

    # -------------------------------------------------------------------------
    # Notifications
    # -------------------------------------------------------------------------

    def _emit(self, event: HealEvent) -> None:
        task = asyncio.create_task(self._deliver(event))
        self._notifications.add(task)
        task.add_done_callback(self._notifications.discard)

    async def _deliver(self, event: HealEvent) -> None:
        try:
            await self.notifier.notify(event)
        except Exception as e:
            logger.error(
                f"Notifier raised for event {event.event_id}: {e}",
                extra={"event_id": event.event_id}
            )

    async def drain_remediations(self, timeout: float = 30.0) -> None:
        """Wait for remediations that outlived their cycle to settle."""
        if not self._remediations:
            return
        _, pending = await asyncio.wait(set(self._remediations), timeout=timeout)
        for task in pending:
            task.cancel()
        if pending:
            logger.warning(f"Abandoned {len(pending)} remediations still running at shutdown")

    async def drain_notifications(self, timeout: float = 10.0) -> None:
        """Wait for in-flight notifications, giving up after ``timeout``."""
        if not self._notifications:
            return
        _, pending = await asyncio.wait(set(self._notifications), timeout=timeout)
        for task in pending:
            task.cancel()
        if pending:
            logger.warning(f"Dropped {len(pending)} undelivered heal events")
