"""
Pod Healer - Core Package
"""

from podhealer.core.heuristics import HeuristicEngine, HeuristicThresholds
from podhealer.core.cooldown_store import CooldownStore, Permit, Denied
from podhealer.core.action_executor import ActionExecutor
from podhealer.core.scan_orchestrator import ScanOrchestrator, CycleReport

__all__ = [
    "HeuristicEngine",
    "HeuristicThresholds",
    "CooldownStore",
    "Permit",
    "Denied",
    "ActionExecutor",
    "ScanOrchestrator",
    "CycleReport",
]
