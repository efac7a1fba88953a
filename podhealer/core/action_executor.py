"""
Pod Healer - Remediation Executor
=================================

Performs a RemediationAction against the cluster and returns an
ActionOutcome. Transient API errors are retried with a short exponential
delay inside a single execution; this is independent of the circuit
breaker's backoff across cycles. Permanent errors fail immediately.

- DeletePod:      graceful delete; a pod that is already gone is a success
- RolloutRestart: timestamp annotation on the owner's pod template; the
                  owning controller drives the actual pod churn
"""

from collections import deque
from datetime import datetime, timezone
from typing import Optional, Protocol

from podhealer.config import Settings, get_settings
from podhealer.constants import ActionKind
from podhealer.core.errors import (
    ActionError,
    PermanentActionError,
    TargetNotFoundError,
    TransientActionError,
)
from podhealer.core.models import ActionOutcome, RemediationAction
from podhealer.utils.logging import get_logger
from podhealer.utils.retry import RetryConfig, retry_async

logger = get_logger(__name__)


class ClusterActions(Protocol):
    async def delete_pod(self, namespace: str, name: str, grace_period_seconds: int) -> None: ...

    async def patch_rollout_annotation(
        self, namespace: str, owner_kind: str, owner_name: str, value: str
    ) -> str: ...


class ActionExecutor:
    """
    Executes remediation actions with bounded retries.

    Example:
        executor = ActionExecutor(k8s_client)
        outcome = await executor.execute(action)
    """

    def __init__(
        self,
        cluster: ClusterActions,
        settings: Optional[Settings] = None,
        retry_config: Optional[RetryConfig] = None,
    ):
        settings = settings or get_settings()
        self.cluster = cluster
        self.dry_run = settings.dry_run
        self.retry_config = retry_config or RetryConfig(
            max_attempts=settings.action_retry_attempts,
            base_delay=settings.action_retry_base_delay,
            max_delay=settings.action_retry_max_delay,
            retryable_exceptions=(TransientActionError,),
        )
        self._history: deque[dict] = deque(maxlen=settings.history_size)
        self._action_count = 0

    def get_history(self, limit: int = 20) -> list[dict]:
        return list(reversed(self._history))[:limit]

    def action_count(self) -> int:
        return self._action_count

    def _record_action(self, action: RemediationAction, outcome: ActionOutcome) -> None:
        self._history.append({
            "action_type": action.kind.value,
            "workload": str(action.key),
            "target": action.target,
            "reason": action.reason.value if action.reason else None,
            "success": outcome.success,
            "cause": outcome.cause,
            "attempts": outcome.attempts,
            "dry_run": self.dry_run,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        })
        self._action_count += 1

    async def execute(self, action: RemediationAction) -> ActionOutcome:
        """
        Execute ``action``. Never raises except for task cancellation.
        """
        if self.dry_run:
            logger.info(
                f"DRY RUN: would execute {action.kind.value} on {action.target}",
                extra={"workload": str(action.key), "action": action.kind.value}
            )
            outcome = ActionOutcome.ok(dry_run=True)
            self._record_action(action, outcome)
            return outcome

        try:
            if action.kind == ActionKind.DELETE_POD:
                outcome = await self._delete_pods(action)
            elif action.kind == ActionKind.ROLLOUT_RESTART:
                outcome = await self._rollout_restart(action)
            else:
                outcome = ActionOutcome.failed(f"Unsupported action: {action.kind}")
        except Exception as e:
            logger.error(
                f"Unexpected error executing {action.kind.value}: {e}",
                extra={"workload": str(action.key)},
                exc_info=True
            )
            outcome = ActionOutcome.failed(f"unexpected error: {e}")

        level = "info" if outcome.success else "warning"
        getattr(logger, level)(
            f"{action.kind.value} on {action.target} {'succeeded' if outcome.success else 'failed'}",
            extra={
                "workload": str(action.key),
                "action": action.kind.value,
                "attempts": outcome.attempts,
                "cause": outcome.cause,
            }
        )
        self._record_action(action, outcome)
        return outcome

    async def _call(self, func, *args) -> int:
        """Run one cluster call with retries; return the attempts used."""
        attempts = 0

        async def attempt():
            nonlocal attempts
            attempts += 1
            return await func(*args)

        attempt.__name__ = getattr(func, "__name__", "attempt")
        try:
            await retry_async(attempt, config=self.retry_config)
        except ActionError as e:
            e.attempts = attempts
            raise
        return attempts

    async def _delete_pods(self, action: RemediationAction) -> ActionOutcome:
        if not action.target_pods:
            return ActionOutcome.failed("no target pods")

        total_attempts = 0
        already_gone = []
        for pod in action.target_pods:
            try:
                total_attempts += await self._call(
                    self.cluster.delete_pod, action.namespace, pod, action.grace_period_seconds
                )
            except TargetNotFoundError as e:
                total_attempts += e.attempts
                already_gone.append(pod)
                logger.info(
                    f"Pod {action.namespace}/{pod} already gone",
                    extra={"namespace": action.namespace, "pod": pod}
                )
            except (TransientActionError, PermanentActionError) as e:
                return ActionOutcome.failed(str(e), total_attempts + e.attempts)

        return ActionOutcome.ok(total_attempts, already_gone=already_gone)

    async def _rollout_restart(self, action: RemediationAction) -> ActionOutcome:
        if action.owner is None:
            return ActionOutcome.failed("rollout restart requires an owning controller")

        stamp = datetime.now(timezone.utc).isoformat()
        try:
            attempts = await self._call(
                self.cluster.patch_rollout_annotation,
                action.namespace,
                action.owner.kind,
                action.owner.name,
                stamp,
            )
        except ActionError as e:
            return ActionOutcome.failed(str(e), e.attempts)

        return ActionOutcome.ok(attempts, restarted_at=stamp)
