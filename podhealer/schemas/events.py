"""
Pod Healer - Event Schemas
==========================

Pydantic models for events emitted to the notification sink.
"""

from datetime import datetime, timezone
from typing import Optional
import uuid

from pydantic import BaseModel, Field

from podhealer.constants import ActionKind, HealReason, Severity


class HealEvent(BaseModel):
    """
    Emitted once per executed remediation, whatever its outcome.
    """

    event_id: str = Field(
        default_factory=lambda: str(uuid.uuid4()),
        description="Unique identifier for this event"
    )
    timestamp: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        description="When the remediation finished"
    )
    scan_id: Optional[str] = Field(
        None,
        description="Scan cycle that triggered the remediation"
    )
    workload: str = Field(
        ...,
        description="namespace/kind/name of the remediated workload"
    )
    namespace: str
    reason: HealReason
    severity: Severity
    action: ActionKind
    target: str = Field(..., description="Pods or controller the action touched")
    success: bool
    cause: Optional[str] = Field(None, description="Failure cause when success is false")
    attempts: int = Field(default=1, ge=1)
    dry_run: bool = False

    @property
    def outcome(self) -> str:
        return "success" if self.success else "failure"

    def summary(self) -> str:
        """One-line human readable description."""
        text = f"[{self.outcome.upper()}] {self.action.value} {self.target} ({self.reason.value})"
        if self.cause:
            text += f": {self.cause}"
        return text
