"""
Pod Healer - Constants
======================

Enumerations shared by the heuristics, the cooldown store, the executor
and the API layer.
"""

from enum import Enum


class Severity(str, Enum):
    """Severity attached to a heal decision. Used for logging and metrics only."""
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class HealReason(str, Enum):
    """Why a pod was selected for remediation, in rule priority order."""
    CRASH_LOOP = "CrashLoop"
    OOM_KILLED = "OOMKilled"
    IMAGE_PULL_BACKOFF = "ImagePullBackOff"
    RESTART_THRESHOLD = "RestartThreshold"
    NOT_READY_TOO_LONG = "NotReadyTooLong"


# Lower index wins when decisions for one workload are merged
REASON_PRIORITY = {reason: index for index, reason in enumerate(HealReason)}

REASON_SEVERITY = {
    HealReason.CRASH_LOOP: Severity.HIGH,
    HealReason.OOM_KILLED: Severity.HIGH,
    HealReason.IMAGE_PULL_BACKOFF: Severity.MEDIUM,
    HealReason.RESTART_THRESHOLD: Severity.MEDIUM,
    HealReason.NOT_READY_TOO_LONG: Severity.LOW,
}


class ActionKind(str, Enum):
    """Remediation actions the executor can perform."""
    DELETE_POD = "DeletePod"
    ROLLOUT_RESTART = "RolloutRestart"


class ActionMode(str, Enum):
    """Configured remediation mode."""
    DELETE = "delete"
    ROLLOUT = "rollout"


class CircuitState(str, Enum):
    """Per-workload circuit breaker state."""
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class DenyReason(str, Enum):
    """Why the cooldown store refused a permit."""
    IN_FLIGHT = "InFlight"
    CIRCUIT_OPEN = "CircuitOpen"
    COOLING = "Cooling"


class NotifierKind(str, Enum):
    """Notification sink variants."""
    NOOP = "noop"
    WEBHOOK = "webhook"
    EMAIL = "email"


# Owner kinds whose pod template can be patched to trigger a rollout
ROLLOUT_OWNER_KINDS = frozenset({"Deployment", "ReplicaSet", "StatefulSet", "DaemonSet"})

# Annotation kubectl itself writes for `kubectl rollout restart`
DEFAULT_ROLLOUT_ANNOTATION = "kubectl.kubernetes.io/restartedAt"

# Kubernetes API status codes worth retrying
TRANSIENT_HTTP_STATUSES = frozenset({408, 409, 429, 500, 502, 503, 504})
