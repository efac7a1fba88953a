"""
Pod Healer - Cooldown / Circuit-Breaker Store
==============================================

The only gate between a heal decision and a remediation, and the only
place that records remediation outcomes.

Per workload key:

    Closed --permit--> in flight --success--> Closed
    Closed --failure, failures < threshold--> Closed (retry after cooldown)
    Closed --failure, failures >= threshold--> Open
    Open   --reopen deadline passed, permit--> HalfOpen (single trial)
    HalfOpen --success--> Closed
    HalfOpen --failure--> Open (backoff doubled, capped)

At most one remediation per key is in flight: ``try_acquire`` and
``report`` on the same key are serialized by a per-key lock, and a key
stays in flight from the granted permit until its outcome is reported.
Eviction never removes an entry whose lock is held, and callers re-check
that the entry they locked is still registered, so a sweep cannot strand
a permit on an orphaned entry.
State is in memory only and starts empty on every process start.
"""

from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass
from threading import Lock
from typing import Iterable, Iterator, Optional, Union

from podhealer.config import Settings
from podhealer.constants import CircuitState, DenyReason
from podhealer.core.models import ActionOutcome, WorkloadKey
from podhealer.utils.logging import get_logger

logger = get_logger(__name__)


@dataclass
class CooldownEntry:
    """Mutable per-workload state. Only touched under the key's lock."""
    backoff: float
    last_action_time: Optional[float] = None
    consecutive_failures: int = 0
    circuit: CircuitState = CircuitState.CLOSED
    reopen_at: Optional[float] = None
    in_flight: bool = False
    last_seen_cycle: int = 0


@dataclass(frozen=True)
class EntrySnapshot:
    key: WorkloadKey
    circuit: CircuitState
    consecutive_failures: int
    backoff: float
    in_flight: bool
    last_action_time: Optional[float]
    reopen_at: Optional[float]
    last_seen_cycle: int


@dataclass(frozen=True)
class Permit:
    key: WorkloadKey
    circuit: CircuitState

    @property
    def trial(self) -> bool:
        """True when this permit is the single HalfOpen trial."""
        return self.circuit == CircuitState.HALF_OPEN


@dataclass(frozen=True)
class Denied:
    key: WorkloadKey
    reason: DenyReason


GateResult = Union[Permit, Denied]


class CooldownStore:
    """
    Thread-safe per-workload cooldown and circuit-breaker state.

    Example:
        store = CooldownStore(cooldown_seconds=300, failure_threshold=3)
        result = store.try_acquire(key, now=time.time())
        if isinstance(result, Permit):
            outcome = await executor.execute(action)
            store.report(key, outcome, now=time.time())
    """

    def __init__(
        self,
        cooldown_seconds: float = 300.0,
        failure_threshold: int = 3,
        backoff_base_seconds: float = 60.0,
        backoff_max_seconds: float = 3600.0,
        stale_entry_cycles: int = 120,
        max_entries: int = 10000,
    ):
        if failure_threshold < 1:
            raise ValueError("failure_threshold must be >= 1")
        if backoff_max_seconds < backoff_base_seconds:
            raise ValueError("backoff_max_seconds must be >= backoff_base_seconds")

        self.cooldown_seconds = cooldown_seconds
        self.failure_threshold = failure_threshold
        self.backoff_base = backoff_base_seconds
        self.backoff_max = backoff_max_seconds
        self.stale_entry_cycles = stale_entry_cycles
        self.max_entries = max_entries

        self._entries: dict[WorkloadKey, CooldownEntry] = {}
        self._locks: dict[WorkloadKey, Lock] = {}
        # Guards creation and removal of entries and their locks
        self._registry_lock = Lock()
        self._current_cycle = 0

    @classmethod
    def from_settings(cls, settings: Settings) -> "CooldownStore":
        return cls(
            cooldown_seconds=settings.cooldown_seconds,
            failure_threshold=settings.failure_threshold,
            backoff_base_seconds=settings.backoff_base_seconds,
            backoff_max_seconds=settings.backoff_max_seconds,
            stale_entry_cycles=settings.stale_entry_cycles,
            max_entries=settings.max_store_entries,
        )

    def _entry(self, key: WorkloadKey) -> tuple[CooldownEntry, Lock]:
        with self._registry_lock:
            entry = self._entries.get(key)
            if entry is None:
                entry = CooldownEntry(backoff=self.backoff_base, last_seen_cycle=self._current_cycle)
                self._entries[key] = entry
                self._locks[key] = Lock()
            else:
                entry.last_seen_cycle = max(entry.last_seen_cycle, self._current_cycle)
            return entry, self._locks[key]

    @contextmanager
    def _locked(self, key: WorkloadKey) -> Iterator[CooldownEntry]:
        """Hold the lock of the entry currently registered for ``key``."""
        while True:
            entry, lock = self._entry(key)
            with lock:
                with self._registry_lock:
                    current = self._entries.get(key)
                if current is entry:
                    yield entry
                    return
            # Evicted between lookup and lock; retry against the new entry

    # -------------------------------------------------------------------------
    # Gate
    # -------------------------------------------------------------------------

    def try_acquire(self, key: WorkloadKey, now: float) -> GateResult:
        """
        Grant a permit for ``key`` or explain why not.

        A granted permit marks the key in flight; the caller must
        ``report`` an outcome for it exactly once.
        """
        with self._locked(key) as entry:
            if entry.in_flight:
                return Denied(key, DenyReason.IN_FLIGHT)

            if entry.circuit == CircuitState.OPEN:
                if entry.reopen_at is not None and now < entry.reopen_at:
                    return Denied(key, DenyReason.CIRCUIT_OPEN)

            if (
                entry.last_action_time is not None
                and now - entry.last_action_time < self.cooldown_seconds
            ):
                return Denied(key, DenyReason.COOLING)

            if entry.circuit == CircuitState.OPEN:
                entry.circuit = CircuitState.HALF_OPEN
                logger.info(
                    f"Circuit half-open for {key}",
                    extra={"workload": str(key), "failures": entry.consecutive_failures}
                )

            entry.in_flight = True
            return Permit(key, entry.circuit)

    def report(self, key: WorkloadKey, outcome: ActionOutcome, now: float) -> None:
        """Record the outcome of the remediation holding the permit for ``key``."""
        with self._locked(key) as entry:
            if not entry.in_flight:
                logger.warning(
                    f"Outcome reported for {key} without an in-flight permit",
                    extra={"workload": str(key)}
                )
            entry.in_flight = False
            entry.last_action_time = now

            if outcome.success:
                if entry.circuit != CircuitState.CLOSED:
                    logger.info(f"Circuit closed for {key}", extra={"workload": str(key)})
                entry.consecutive_failures = 0
                entry.circuit = CircuitState.CLOSED
                entry.reopen_at = None
                entry.backoff = self.backoff_base
                return

            entry.consecutive_failures += 1
            if entry.consecutive_failures >= self.failure_threshold:
                entry.circuit = CircuitState.OPEN
                entry.reopen_at = now + entry.backoff
                logger.warning(
                    f"Circuit opened for {key} after {entry.consecutive_failures} failures",
                    extra={
                        "workload": str(key),
                        "failures": entry.consecutive_failures,
                        "backoff": entry.backoff,
                        "reopen_at": entry.reopen_at,
                    }
                )
                entry.backoff = min(entry.backoff * 2, self.backoff_max)

    def release(self, key: WorkloadKey) -> None:
        """
        Drop a permit whose action never started. No outcome is recorded,
        so cooldown and failure counters are unchanged. A HalfOpen trial
        that never ran goes back to Open with its deadline intact.
        """
        with self._locked(key) as entry:
            entry.in_flight = False
            if entry.circuit == CircuitState.HALF_OPEN:
                entry.circuit = CircuitState.OPEN

    # -------------------------------------------------------------------------
    # Housekeeping
    # -------------------------------------------------------------------------

    def mark_seen(self, keys: Iterable[WorkloadKey], cycle: int) -> None:
        """Record that ``keys`` were observed in scan ``cycle``."""
        with self._registry_lock:
            self._current_cycle = max(self._current_cycle, cycle)
            for key in keys:
                entry = self._entries.get(key)
                if entry is not None:
                    entry.last_seen_cycle = cycle

    def sweep(self, cycle: int) -> int:
        """
        Evict idle entries unseen for ``stale_entry_cycles`` cycles, then the
        least recently seen idle entries while above ``max_entries``.

        Returns the number of evicted entries.
        """
        evicted = 0
        with self._registry_lock:
            self._current_cycle = max(self._current_cycle, cycle)
            idle = sorted(
                (k for k, e in self._entries.items() if not e.in_flight),
                key=lambda k: self._entries[k].last_seen_cycle,
            )
            overflow = len(self._entries) - self.max_entries
            for key in idle:
                stale = cycle - self._entries[key].last_seen_cycle >= self.stale_entry_cycles
                if not stale and overflow <= 0:
                    break
                # Key locks are taken before the registry lock elsewhere, so
                # never block here; a busy key is simply kept this round.
                lock = self._locks[key]
                if not lock.acquire(blocking=False):
                    continue
                try:
                    if self._entries[key].in_flight:
                        continue
                    self._remove(key)
                finally:
                    lock.release()
                overflow -= 1
                evicted += 1

        if evicted:
            logger.debug(f"Evicted {evicted} workload entries", extra={"evicted": evicted})
        return evicted

    def _remove(self, key: WorkloadKey) -> None:
        self._entries.pop(key, None)
        self._locks.pop(key, None)

    # -------------------------------------------------------------------------
    # Introspection
    # -------------------------------------------------------------------------

    def get(self, key: WorkloadKey) -> Optional[EntrySnapshot]:
        with self._registry_lock:
            entry = self._entries.get(key)
            lock = self._locks.get(key)
        if entry is None or lock is None:
            return None
        with lock:
            return _snapshot(key, entry)

    def snapshot(self) -> list[EntrySnapshot]:
        with self._registry_lock:
            items = [(k, e, self._locks[k]) for k, e in self._entries.items()]
        result = []
        for key, entry, lock in items:
            with lock:
                result.append(_snapshot(key, entry))
        return sorted(result, key=lambda s: s.key)

    def in_flight_count(self) -> int:
        with self._registry_lock:
            return sum(1 for e in self._entries.values() if e.in_flight)

    def __len__(self) -> int:
        with self._registry_lock:
            return len(self._entries)

    def __contains__(self, key: WorkloadKey) -> bool:
        with self._registry_lock:
            return key in self._entries


def _snapshot(key: WorkloadKey, entry: CooldownEntry) -> EntrySnapshot:
    return EntrySnapshot(
        key=key,
        circuit=entry.circuit,
        consecutive_failures=entry.consecutive_failures,
        backoff=entry.backoff,
        in_flight=entry.in_flight,
        last_action_time=entry.last_action_time,
        reopen_at=entry.reopen_at,
        last_seen_cycle=entry.last_seen_cycle,
    )
