"""
Pod Healer - API Routes
"""

from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request

from podhealer.api.schemas import ActionRecord, CycleSummary, WorkloadList, WorkloadState
from podhealer.utils.logging import get_logger

logger = get_logger(__name__)

router = APIRouter()


def get_orchestrator(request: Request):
    orchestrator = getattr(request.app.state, "orchestrator", None)
    if orchestrator is None:
        raise HTTPException(status_code=503, detail="Scan loop not started")
    return orchestrator


def _ts(value: Optional[float]) -> Optional[datetime]:
    return datetime.fromtimestamp(value, timezone.utc) if value is not None else None


@router.get("/workloads", response_model=WorkloadList, tags=["state"])
async def list_workloads(orchestrator=Depends(get_orchestrator)):
    """Cooldown and circuit-breaker state of every tracked workload."""
    store = orchestrator.store
    workloads = [
        WorkloadState(
            namespace=entry.key.namespace,
            kind=entry.key.kind,
            name=entry.key.name,
            circuit=entry.circuit,
            consecutive_failures=entry.consecutive_failures,
            backoff_seconds=entry.backoff,
            in_flight=entry.in_flight,
            last_action_at=_ts(entry.last_action_time),
            reopen_at=_ts(entry.reopen_at),
            last_seen_cycle=entry.last_seen_cycle,
        )
        for entry in store.snapshot()
    ]
    return WorkloadList(count=len(workloads), workloads=workloads)


@router.get("/cycles", response_model=list[CycleSummary], tags=["history"])
async def list_cycles(orchestrator=Depends(get_orchestrator), limit: int = Query(default=20, ge=1, le=500)):
    """Most recent scan cycles, newest first."""
    return [CycleSummary(**report.to_dict()) for report in orchestrator.get_reports(limit)]


@router.get("/actions", tags=["history"])
async def list_actions(orchestrator=Depends(get_orchestrator), limit: int = Query(default=20, ge=1, le=500)):
    """Recent remediation history, newest first."""
    executor = orchestrator.executor
    actions = [ActionRecord(**record) for record in executor.get_history(limit)]
    return {"actions": actions, "count": executor.action_count()}


@router.post("/scan", response_model=CycleSummary, tags=["scan"])
async def trigger_scan(orchestrator=Depends(get_orchestrator)):
    """Run one scan cycle now. Remediations are still gated by the cooldown store."""
    logger.info("Manual scan requested")
    report = await orchestrator.run_cycle()
    return CycleSummary(**report.to_dict())
