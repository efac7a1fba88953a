"""
Pod Healer - Kubernetes Client
==============================

Thin adapter over the official Kubernetes Python client. It turns V1Pod
objects into PodObservation snapshots and maps API failures onto the
healer's error taxonomy:

- list failures                     -> FetchError
- 404 on a target                   -> TargetNotFoundError
- 408/409/429/5xx, connection reset -> TransientActionError
- anything else (401, 403, 422 ...) -> PermanentActionError

The client library is synchronous; every call runs in a worker thread so
the scan loop stays responsive.
"""

import asyncio
from datetime import datetime, timezone
from typing import Any, Optional

from kubernetes import client, config
from kubernetes.client.exceptions import ApiException
from kubernetes.config.config_exception import ConfigException
from urllib3.exceptions import HTTPError as Urllib3HTTPError

from podhealer.config import Settings, get_settings
from podhealer.constants import TRANSIENT_HTTP_STATUSES
from podhealer.core.errors import (
    ActionError,
    ClusterUnavailableError,
    FetchError,
    PermanentActionError,
    TargetNotFoundError,
    TransientActionError,
)
from podhealer.core.models import ContainerObservation, OwnerRef, PodObservation
from podhealer.utils.logging import get_logger

logger = get_logger(__name__)

POD_TEMPLATE_HASH_LABEL = "pod-template-hash"


class K8sClient:
    """
    Cluster data source used by the healer.

    API objects can be injected for tests; otherwise configuration is loaded
    from the pod's service account or from a kubeconfig file.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        core_v1: Optional[Any] = None,
        apps_v1: Optional[Any] = None,
    ):
        self.settings = settings or get_settings()
        self._timeout = self.settings.k8s_request_timeout_seconds

        if core_v1 is None or apps_v1 is None:
            self._load_config()
            core_v1 = core_v1 or client.CoreV1Api()
            apps_v1 = apps_v1 or client.AppsV1Api()

        self._core_v1 = core_v1
        self._apps_v1 = apps_v1

    def _load_config(self) -> None:
        try:
            if self.settings.k8s_in_cluster:
                config.load_incluster_config()
                logger.info("Loaded in-cluster Kubernetes config")
            else:
                config.load_kube_config(config_file=self.settings.k8s_kubeconfig or None)
                logger.info(
                    "Loaded kubeconfig",
                    extra={"kubeconfig": self.settings.k8s_kubeconfig or "default"}
                )
        except (ConfigException, OSError) as e:
            raise ClusterUnavailableError(f"Cannot load Kubernetes configuration: {e}") from e

    async def check_connection(self) -> None:
        """Raise ClusterUnavailableError unless the pod list endpoint answers."""
        try:
            await asyncio.to_thread(self._list_raw, limit=1)
        except (ApiException, Urllib3HTTPError, OSError) as e:
            raise ClusterUnavailableError(f"Kubernetes API unreachable: {e}") from e
        logger.info("Connected to Kubernetes cluster")

    # -------------------------------------------------------------------------
    # Observation
    # -------------------------------------------------------------------------

    def _list_raw(self, limit: Optional[int] = None):
        kwargs: dict[str, Any] = {"_request_timeout": self._timeout}
        if self.settings.label_selector:
            kwargs["label_selector"] = self.settings.label_selector
        if limit is not None:
            kwargs["limit"] = limit

        if self.settings.watch_namespace:
            return self._core_v1.list_namespaced_pod(self.settings.watch_namespace, **kwargs)
        return self._core_v1.list_pod_for_all_namespaces(**kwargs)

    async def list_pods(self) -> list[PodObservation]:
        """Fetch a fresh snapshot of every pod matching the selector."""
        try:
            pod_list = await asyncio.to_thread(self._list_raw)
        except ApiException as e:
            raise FetchError(f"Listing pods failed: {e.status} {e.reason}") from e
        except (Urllib3HTTPError, OSError) as e:
            raise FetchError(f"Listing pods failed: {e}") from e

        excluded = set(self.settings.excluded_namespaces)
        observations = []
        for pod in pod_list.items or []:
            if pod.metadata.namespace in excluded:
                continue
            observations.append(pod_to_observation(pod))
        return observations

    # -------------------------------------------------------------------------
    # Mutations
    # -------------------------------------------------------------------------

    async def delete_pod(self, namespace: str, name: str, grace_period_seconds: int) -> None:
        """Request graceful deletion of a pod."""
        logger.info(
            f"Deleting pod {namespace}/{name}",
            extra={"namespace": namespace, "pod": name, "grace_period": grace_period_seconds}
        )
        try:
            await asyncio.to_thread(
                self._core_v1.delete_namespaced_pod,
                name=name,
                namespace=namespace,
                grace_period_seconds=grace_period_seconds,
                _request_timeout=self._timeout,
            )
        except (ApiException, Urllib3HTTPError, OSError) as e:
            raise classify_error(e, f"delete pod {namespace}/{name}") from e

    async def patch_rollout_annotation(
        self,
        namespace: str,
        owner_kind: str,
        owner_name: str,
        value: str,
    ) -> str:
        """
        Stamp the owning controller's pod template so it recreates its pods.

        A ReplicaSet is resolved to the Deployment that owns it. Returns the
        ``Kind/name`` that was actually patched.
        """
        try:
            kind, name = await asyncio.to_thread(self._resolve_rollout_target, namespace, owner_kind, owner_name)
            patch = {
                "spec": {
                    "template": {
                        "metadata": {
                            "annotations": {self.settings.rollout_annotation: value}
                        }
                    }
                }
            }
            patcher = {
                "Deployment": self._apps_v1.patch_namespaced_deployment,
                "StatefulSet": self._apps_v1.patch_namespaced_stateful_set,
                "DaemonSet": self._apps_v1.patch_namespaced_daemon_set,
            }[kind]

            logger.info(
                f"Triggering rollout restart of {namespace}/{kind}/{name}",
                extra={"namespace": namespace, "kind": kind, "name": name}
            )
            await asyncio.to_thread(
                patcher, name=name, namespace=namespace, body=patch, _request_timeout=self._timeout
            )
            return f"{kind}/{name}"

        except (ApiException, Urllib3HTTPError, OSError) as e:
            raise classify_error(e, f"rollout {namespace}/{owner_kind}/{owner_name}") from e

    def _resolve_rollout_target(self, namespace: str, kind: str, name: str) -> tuple[str, str]:
        if kind in ("Deployment", "StatefulSet", "DaemonSet"):
            return kind, name

        if kind == "ReplicaSet":
            rs = self._apps_v1.read_namespaced_replica_set(
                name=name, namespace=namespace, _request_timeout=self._timeout
            )
            owner = select_owner(rs.metadata.owner_references)
            if owner is not None and owner.kind == "Deployment":
                return owner.kind, owner.name
            raise PermanentActionError(f"ReplicaSet {namespace}/{name} is not owned by a Deployment")

        raise PermanentActionError(f"Cannot roll out owner kind {kind}")


# -----------------------------------------------------------------------------
# Conversion helpers
# -----------------------------------------------------------------------------

def select_owner(owner_references) -> Optional[OwnerRef]:
    """Pick the controller owner reference, else the first one."""
    if not owner_references:
        return None
    chosen = next((o for o in owner_references if getattr(o, "controller", False)), owner_references[0])
    return OwnerRef(kind=chosen.kind, name=chosen.name)


def workload_owner(owner: Optional[OwnerRef], labels: Optional[dict]) -> Optional[OwnerRef]:
    """
    Key ReplicaSet-owned pods by their Deployment.

    The Deployment controller names each ReplicaSet ``<deployment>-<hash>``
    and stamps the hash on its pods as ``pod-template-hash``. Matching the
    two recovers the Deployment without an API call, so the workload key
    survives a rollout that replaces the ReplicaSet.
    """
    if owner is None or owner.kind != "ReplicaSet":
        return owner
    template_hash = (labels or {}).get(POD_TEMPLATE_HASH_LABEL)
    suffix = f"-{template_hash}"
    if template_hash and owner.name.endswith(suffix) and len(owner.name) > len(suffix):
        return OwnerRef(kind="Deployment", name=owner.name[:-len(suffix)])
    return owner


def _container(status) -> ContainerObservation:
    waiting = status.state.waiting if status.state else None
    terminated = status.last_state.terminated if status.last_state else None
    return ContainerObservation(
        name=status.name,
        restart_count=status.restart_count or 0,
        waiting_reason=waiting.reason if waiting else None,
        last_termination_reason=terminated.reason if terminated else None,
    )


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def pod_to_observation(pod) -> PodObservation:
    """Build an immutable PodObservation from a kubernetes V1Pod."""
    status = pod.status
    statuses = list(status.init_container_statuses or []) + list(status.container_statuses or [])

    ready = None
    ready_since = None
    for condition in status.conditions or []:
        if condition.type == "Ready":
            ready = condition.status == "True"
            ready_since = _as_utc(condition.last_transition_time)
            break

    return PodObservation(
        namespace=pod.metadata.namespace,
        name=pod.metadata.name,
        phase=status.phase or "Unknown",
        owner=workload_owner(select_owner(pod.metadata.owner_references), pod.metadata.labels),
        containers=tuple(_container(s) for s in statuses),
        ready=ready,
        ready_transition_time=ready_since,
        created_at=_as_utc(pod.metadata.creation_timestamp),
        deleting=pod.metadata.deletion_timestamp is not None,
    )


def classify_error(error: Exception, operation: str) -> ActionError:
    """Map a client exception onto the action error taxonomy."""
    if isinstance(error, ActionError):
        return error

    if isinstance(error, ApiException):
        status = error.status
        message = f"{operation}: {status} {error.reason}"
        if status == 404:
            return TargetNotFoundError(message, status)
        if not status or status in TRANSIENT_HTTP_STATUSES:
            return TransientActionError(message, status)
        return PermanentActionError(message, status)

    # Connection resets, read timeouts and DNS failures
    return TransientActionError(f"{operation}: {error}")
