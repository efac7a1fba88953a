"""
Pod Healer - Metrics
====================

Prometheus counters and gauges describing the scan loop. Each instance
owns its registry so several healers (or tests) can coexist in a process.
"""

from typing import Optional

from prometheus_client import CollectorRegistry, Counter, Gauge, generate_latest

from podhealer.constants import DenyReason, HealReason


class HealerMetrics:
    """Passive observer of scan and heal activity."""

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        self.registry = registry or CollectorRegistry()

        self.scans = Counter(
            "podhealer_scans_total", "Scan cycles started", registry=self.registry
        )
        self.scan_failures = Counter(
            "podhealer_scan_failures_total", "Scan cycles skipped because listing pods failed",
            registry=self.registry
        )
        self.decisions = Counter(
            "podhealer_decisions_total", "Heal decisions produced by the heuristics",
            ["reason"], registry=self.registry
        )
        self.denials = Counter(
            "podhealer_gate_denials_total", "Heal decisions refused by the cooldown store",
            ["reason"], registry=self.registry
        )
        self.heal_attempts = Counter(
            "podhealer_heal_attempts_total", "Remediations started",
            ["action"], registry=self.registry
        )
        self.heal_successes = Counter(
            "podhealer_heal_success_total", "Remediations that succeeded",
            ["action", "reason"], registry=self.registry
        )
        self.heal_failures = Counter(
            "podhealer_heal_failure_total", "Remediations that failed",
            ["action", "reason"], registry=self.registry
        )
        self.last_action = Gauge(
            "podhealer_last_action_timestamp_seconds", "Unix time of the last remediation",
            registry=self.registry
        )
        self.tracked_workloads = Gauge(
            "podhealer_tracked_workloads", "Workloads held in the cooldown store",
            registry=self.registry
        )

    def inc_scan(self) -> None:
        self.scans.inc()

    def inc_scan_failure(self) -> None:
        self.scan_failures.inc()

    def inc_decision(self, reason: HealReason) -> None:
        self.decisions.labels(reason=reason.value).inc()

    def inc_denied(self, reason: DenyReason) -> None:
        self.denials.labels(reason=reason.value).inc()

    def inc_heal_attempt(self, action: str) -> None:
        self.heal_attempts.labels(action=action).inc()

    def inc_heal_success(self, action: str, reason: HealReason) -> None:
        self.heal_successes.labels(action=action, reason=reason.value).inc()

    def inc_heal_failure(self, action: str, reason: HealReason) -> None:
        self.heal_failures.labels(action=action, reason=reason.value).inc()

    def set_last_action_timestamp(self, timestamp: float) -> None:
        self.last_action.set(timestamp)

    def set_tracked_workloads(self, count: int) -> None:
        self.tracked_workloads.set(count)

    def render(self) -> bytes:
        """Prometheus text exposition of every metric."""
        return generate_latest(self.registry)
