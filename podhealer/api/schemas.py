"""
Pod Healer - API Schemas
"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field

from podhealer.constants import CircuitState


class WorkloadState(BaseModel):
    """Cooldown and circuit state of one tracked workload."""
    namespace: str
    kind: str
    name: str
    circuit: CircuitState
    consecutive_failures: int
    backoff_seconds: float
    in_flight: bool
    last_action_at: Optional[datetime] = None
    reopen_at: Optional[datetime] = None
    last_seen_cycle: int


class WorkloadList(BaseModel):
    count: int
    workloads: list[WorkloadState] = Field(default_factory=list)


class CycleSummary(BaseModel):
    """Result of one scan cycle."""
    scan_id: str
    cycle: int
    started_at: datetime
    finished_at: Optional[datetime] = None
    duration_seconds: float = 0.0
    observed: int = 0
    decisions: int = 0
    acquired: int = 0
    denied: dict[str, int] = Field(default_factory=dict)
    succeeded: int = 0
    failed: int = 0
    cancelled: int = 0
    overran: int = 0
    fetch_error: Optional[str] = None


class ActionRecord(BaseModel):
    """Historical remediation record."""
    action_type: str
    workload: str
    target: str
    reason: Optional[str] = None
    success: bool
    cause: Optional[str] = None
    attempts: int
    dry_run: bool = False
    timestamp: datetime
