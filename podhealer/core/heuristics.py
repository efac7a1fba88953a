"""
Pod Healer - Heuristic Engine
=============================

Classifies a pod observation into at most one heal decision.

Rules are evaluated in a fixed priority order and the first match wins,
so overlapping symptoms always produce the same reason:

1. CrashLoop          - a container is waiting with a crash-loop reason
2. OOMKilled          - a container was last terminated by the OOM killer
3. ImagePullBackOff   - a container cannot pull its image, past a grace period
4. RestartThreshold   - total container restarts reached the threshold
5. NotReadyTooLong    - the Ready condition has been false for too long

The engine does no I/O and holds no state; the caller supplies ``now``.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, Optional, Sequence

from podhealer.config import Settings
from podhealer.constants import HealReason, REASON_PRIORITY, REASON_SEVERITY
from podhealer.core.models import HealDecision, PodObservation


@dataclass(frozen=True)
class HeuristicThresholds:
    restart_threshold: int = 5
    crashloop_reasons: frozenset[str] = frozenset({"CrashLoopBackOff"})
    oom_reasons: frozenset[str] = frozenset({"OOMKilled"})
    image_pull_reasons: frozenset[str] = frozenset({"ImagePullBackOff", "ErrImagePull"})
    image_pull_grace_seconds: float = 300.0
    not_ready_seconds: float = 600.0

    @classmethod
    def from_settings(cls, settings: Settings) -> "HeuristicThresholds":
        return cls(
            restart_threshold=settings.restart_threshold,
            crashloop_reasons=frozenset(settings.crashloop_reasons),
            oom_reasons=frozenset(settings.oom_reasons),
            image_pull_reasons=frozenset(settings.image_pull_reasons),
            image_pull_grace_seconds=settings.image_pull_grace_seconds,
            not_ready_seconds=settings.not_ready_seconds,
        )


class HeuristicEngine:
    """
    Pure rule engine mapping a PodObservation to an optional HealDecision.

    Example:
        engine = HeuristicEngine(HeuristicThresholds(restart_threshold=5))
        decision = engine.evaluate(observation, now=datetime.now(timezone.utc))
    """

    def __init__(self, thresholds: Optional[HeuristicThresholds] = None):
        self.thresholds = thresholds or HeuristicThresholds()

    def evaluate(self, pod: PodObservation, now: datetime) -> Optional[HealDecision]:
        if pod.phase == "Succeeded" or pod.deleting:
            return None

        for rule in (
            self._crash_loop,
            self._oom_killed,
            self._image_pull,
            self._restart_threshold,
            self._not_ready,
        ):
            match = rule(pod, now)
            if match is not None:
                reason, detail = match
                return HealDecision(
                    key=pod.workload_key,
                    reason=reason,
                    severity=REASON_SEVERITY[reason],
                    target_pods=(pod.name,),
                    owner=pod.owner,
                    detail=detail,
                )
        return None

    def evaluate_all(self, pods: Iterable[PodObservation], now: datetime) -> list[HealDecision]:
        """Evaluate every pod and merge decisions that share a workload key."""
        grouped: dict = {}
        for pod in pods:
            decision = self.evaluate(pod, now)
            if decision is not None:
                grouped.setdefault(decision.key, []).append(decision)
        return [merge_decisions(group) for group in grouped.values()]

    # -------------------------------------------------------------------------
    # Rules
    # -------------------------------------------------------------------------

    def _crash_loop(self, pod: PodObservation, now: datetime):
        for c in pod.containers:
            if c.waiting_reason in self.thresholds.crashloop_reasons:
                return HealReason.CRASH_LOOP, f"container {c.name} waiting: {c.waiting_reason}"
        return None

    def _oom_killed(self, pod: PodObservation, now: datetime):
        for c in pod.containers:
            if c.last_termination_reason in self.thresholds.oom_reasons:
                return HealReason.OOM_KILLED, f"container {c.name} terminated: {c.last_termination_reason}"
        return None

    def _image_pull(self, pod: PodObservation, now: datetime):
        for c in pod.containers:
            if c.waiting_reason not in self.thresholds.image_pull_reasons:
                continue
            # Kubernetes does not expose when a container started waiting
            since = pod.ready_transition_time if pod.ready is False else None
            since = since or pod.created_at
            if since is None:
                continue
            waited = (now - since).total_seconds()
            if waited >= self.thresholds.image_pull_grace_seconds:
                return (
                    HealReason.IMAGE_PULL_BACKOFF,
                    f"container {c.name} waiting: {c.waiting_reason} for {waited:.0f}s",
                )
        return None

    def _restart_threshold(self, pod: PodObservation, now: datetime):
        total = pod.total_restarts
        if total >= self.thresholds.restart_threshold:
            return HealReason.RESTART_THRESHOLD, f"{total} restarts >= {self.thresholds.restart_threshold}"
        return None

    def _not_ready(self, pod: PodObservation, now: datetime):
        if pod.ready is not False or pod.ready_transition_time is None:
            return None
        not_ready_for = (now - pod.ready_transition_time).total_seconds()
        if not_ready_for > self.thresholds.not_ready_seconds:
            return HealReason.NOT_READY_TOO_LONG, f"not ready for {not_ready_for:.0f}s"
        return None


def merge_decisions(decisions: Sequence[HealDecision]) -> HealDecision:
    """
    Combine the decisions of one workload into a single decision.

    The highest-priority reason wins. Pods showing that reason lead the
    target list, followed by the remaining pods; both groups in name order.
    The result does not depend on the order of ``decisions``.
    """
    primary = min(decisions, key=lambda d: (REASON_PRIORITY[d.reason], d.target_pods))
    lead = sorted({p for d in decisions if d.reason == primary.reason for p in d.target_pods})
    rest = sorted({p for d in decisions for p in d.target_pods} - set(lead))
    owner = primary.owner or next((d.owner for d in decisions if d.owner is not None), None)
    return HealDecision(
        key=primary.key,
        reason=primary.reason,
        severity=primary.severity,
        target_pods=tuple(lead + rest),
        owner=owner,
        detail=primary.detail,
    )
