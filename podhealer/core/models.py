"""
Pod Healer - Core Data Model
============================

Immutable value types passed between the fetcher, the heuristics,
the cooldown store and the executor.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from podhealer.constants import ActionKind, HealReason, Severity


@dataclass(frozen=True, order=True)
class WorkloadKey:
    """
    Identity used for cooldown tracking.

    Owner-based when the pod has an owner reference, so a pod re-created
    under a new name by the same controller maps to the same key.
    """
    namespace: str
    kind: str
    name: str

    @classmethod
    def for_pod(cls, namespace: str, pod_name: str, owner: Optional["OwnerRef"]) -> "WorkloadKey":
        if owner is not None:
            return cls(namespace, owner.kind, owner.name)
        return cls(namespace, "Pod", pod_name)

    def __str__(self) -> str:
        return f"{self.namespace}/{self.kind}/{self.name}"


@dataclass(frozen=True)
class OwnerRef:
    kind: str
    name: str


@dataclass(frozen=True)
class ContainerObservation:
    name: str
    restart_count: int = 0
    waiting_reason: Optional[str] = None
    last_termination_reason: Optional[str] = None


@dataclass(frozen=True)
class PodObservation:
    """Snapshot of one pod, produced fresh every scan and never mutated."""
    namespace: str
    name: str
    phase: str
    owner: Optional[OwnerRef] = None
    containers: tuple[ContainerObservation, ...] = ()
    ready: Optional[bool] = None
    ready_transition_time: Optional[datetime] = None
    created_at: Optional[datetime] = None
    deleting: bool = False

    @property
    def workload_key(self) -> WorkloadKey:
        return WorkloadKey.for_pod(self.namespace, self.name, self.owner)

    @property
    def total_restarts(self) -> int:
        return sum(c.restart_count for c in self.containers)


@dataclass(frozen=True)
class HealDecision:
    key: WorkloadKey
    reason: HealReason
    severity: Severity
    target_pods: tuple[str, ...]
    owner: Optional[OwnerRef] = None
    detail: str = ""


@dataclass(frozen=True)
class RemediationAction:
    key: WorkloadKey
    kind: ActionKind
    namespace: str
    target_pods: tuple[str, ...] = ()
    owner: Optional[OwnerRef] = None
    grace_period_seconds: int = 30
    reason: Optional[HealReason] = None

    @property
    def target(self) -> str:
        if self.kind == ActionKind.ROLLOUT_RESTART and self.owner is not None:
            return f"{self.namespace}/{self.owner.kind}/{self.owner.name}"
        return f"{self.namespace}/{','.join(self.target_pods)}"


@dataclass(frozen=True)
class ActionOutcome:
    """Success, or Failure with a cause."""
    success: bool
    cause: Optional[str] = None
    attempts: int = 1
    details: dict = field(default_factory=dict, compare=False)

    @classmethod
    def ok(cls, attempts: int = 1, **details) -> "ActionOutcome":
        return cls(True, None, attempts, details)

    @classmethod
    def failed(cls, cause: str, attempts: int = 1, **details) -> "ActionOutcome":
        return cls(False, cause, attempts, details)
