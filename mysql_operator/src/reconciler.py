from __future__ import annotations

import copy
import logging
import threading
from typing import Any

from kubernetes.client import ApiException

from mysql_operator.src.cache import InvalidKeyError, ResourceCache, split_meta_namespace_key
from mysql_operator.src.conditions import (
    CONDITION_READY,
    STATUS_FALSE,
    STATUS_TRUE,
    ConditionTracker,
)
from mysql_operator.src.kube import is_conflict, is_not_found
from mysql_operator.src.state import (
    CLUSTER_KIND,
    CONFIG_REV_ANNOTATION,
    KIND_SECRET,
    SECRET_REV_ANNOTATION,
    StateComputer,
)


class SyncError(RuntimeError):
    """A transient reconcile failure, tagged with the offending kind and cluster key."""

    def __init__(self, kind: str, key: str, message: str) -> None:
        super().__init__(f"{kind} for cluster {key}: {message}")
        self.kind = kind
        self.key = key


class ReconcileCancelled(RuntimeError):
    """Raised between object-store calls once the controller stop signal fires."""


def compute_patch(desired: Any, actual: Any) -> Any:
    """Return the subset of *desired* that differs from *actual*, or ``None`` if nothing does.

    Mappings are compared as subsets: keys present only in *actual* (server
    defaults, status, bookkeeping metadata) never count as drift.  Lists are
    compared element by element with the same rule and, when they differ,
    are returned whole; the object store sends JSON merge patches, which
    replace lists rather than merging them by key.  Scalars compare
    by equality.
    """
    if isinstance(desired, dict):
        if not isinstance(actual, dict):
            return copy.deepcopy(desired)
        patch: dict[str, Any] = {}
        for key, value in desired.items():
            sub = compute_patch(value, actual.get(key))
            if sub is not None:
                patch[key] = sub
        return patch or None
    if isinstance(desired, list):
        if (
            not isinstance(actual, list)
            or len(desired) != len(actual)
            or any(compute_patch(d, a) is not None for d, a in zip(desired, actual))
        ):
            return copy.deepcopy(desired)
        return None
    if desired != actual:
        return desired
    return None


class ClusterReconciler:
    """Converges one ``MysqlCluster`` key at a time toward its desired state.

    ``process_key`` is the worker entry point.  It resolves the key against
    the local cluster cache, then ``sync`` reads and writes the object store
    directly: dependents are fetched live, created when missing, patched
    only when the computed patch is non-empty, and status is written only
    when it changed by value.  Running ``sync`` twice with no external
    change therefore performs no writes the second time.

    Raises :class:`SyncError` (or lets :class:`ApiException` /
    :class:`ReconcileCancelled` escape) for anything the caller should
    retry; every permanent or not-found outcome returns normally.
    """

    def __init__(
        self,
        store: Any,
        cluster_cache: ResourceCache,
        state_computer: StateComputer | None = None,
        condition_tracker: ConditionTracker | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.store = store
        self.cluster_cache = cluster_cache
        self.state_computer = state_computer or StateComputer()
        self.condition_tracker = condition_tracker or ConditionTracker()
        self.logger = logger or logging.getLogger(__name__)

    def process_key(self, key: str, stop_event: threading.Event | None = None) -> None:
        try:
            split_meta_namespace_key(key)
        except InvalidKeyError:
            self.logger.error("Dropping invalid work key %r", key)
            return

        cluster = self.cluster_cache.get(key)
        if cluster is None:
            self.logger.info("Cluster %s no longer exists; nothing to reconcile", key)
            return

        self.sync(cluster, stop_event)

    @staticmethod
    def _check_cancelled(stop_event: threading.Event | None) -> None:
        if stop_event is not None and stop_event.is_set():
            raise ReconcileCancelled("controller is stopping")

    def sync(self, cluster: dict[str, Any], stop_event: threading.Event | None = None) -> None:
        metadata = cluster["metadata"]
        namespace = metadata.get("namespace", "")
        key = f"{namespace}/{metadata['name']}" if namespace else metadata["name"]
        desired = self.state_computer.desired_state(cluster)

        config_map = self._reconcile_dependent(key, desired.config_map, stop_event)
        self._reconcile_dependent(key, desired.headless_service, stop_event)
        self._reconcile_dependent(key, desired.master_service, stop_event)
        self._reconcile_dependent(key, desired.pod_disruption_budget, stop_event)

        if config_map is None:
            # Its delete notification re-enqueues the cluster.
            self.logger.info("ConfigMap for cluster %s vanished; deferring StatefulSet", key)
            return

        secret = self._read_secret(key, namespace, cluster, stop_event)
        stateful_set_manifest = copy.deepcopy(desired.stateful_set)
        template_meta = stateful_set_manifest["spec"]["template"].setdefault("metadata", {})
        annotations = template_meta.setdefault("annotations", {})
        annotations[CONFIG_REV_ANNOTATION] = _resource_version(config_map)
        annotations[SECRET_REV_ANNOTATION] = _resource_version(secret)
        stateful_set = self._reconcile_dependent(key, stateful_set_manifest, stop_event)

        self._update_status(key, cluster, stateful_set, stop_event)

    def _read_secret(
        self,
        key: str,
        namespace: str,
        cluster: dict[str, Any],
        stop_event: threading.Event | None,
    ) -> dict[str, Any]:
        secret_name = (cluster.get("spec") or {}).get("secretName")
        if not secret_name:
            raise SyncError(KIND_SECRET, key, "spec.secretName is not set")
        self._check_cancelled(stop_event)
        try:
            return self.store.get(KIND_SECRET, namespace, secret_name)
        except ApiException as exc:
            if is_not_found(exc):
                raise SyncError(KIND_SECRET, key, f"secret {secret_name} not found") from exc
            raise SyncError(KIND_SECRET, key, f"failed to read secret {secret_name}: {exc.reason}") from exc

    def _reconcile_dependent(
        self,
        key: str,
        desired: dict[str, Any],
        stop_event: threading.Event | None,
    ) -> dict[str, Any] | None:
        """Create or patch one dependent; return its current state.

        ``None`` means the object vanished between read and patch.  Its
        delete notification re-enqueues the cluster, so that is not an error.
        """
        kind = desired["kind"]
        name = desired["metadata"]["name"]
        namespace = desired["metadata"].get("namespace", "")

        self._check_cancelled(stop_event)
        try:
            actual = self.store.get(kind, namespace, name)
        except ApiException as exc:
            if not is_not_found(exc):
                raise SyncError(kind, key, f"failed to read {name}: {exc.reason}") from exc
            actual = None

        if actual is None:
            self._check_cancelled(stop_event)
            try:
                created = self.store.create(kind, namespace, desired)
            except ApiException as exc:
                raise SyncError(kind, key, f"failed to create {name}: {exc.reason}") from exc
            self.logger.info("Created %s %s/%s for cluster %s", kind, namespace, name, key)
            return created

        patch = compute_patch(desired, actual)
        if patch is None:
            return actual

        self._check_cancelled(stop_event)
        try:
            patched = self.store.patch(kind, namespace, name, patch)
        except ApiException as exc:
            if is_not_found(exc):
                self.logger.info("%s %s/%s vanished before patching", kind, namespace, name)
                return None
            raise SyncError(kind, key, f"failed to patch {name}: {exc.reason}") from exc
        self.logger.info(
            "Patched drifted %s %s/%s (fields: %s)",
            kind,
            namespace,
            name,
            ", ".join(sorted(patch)),
        )
        return patched

    def _ready_condition(
        self, cluster: dict[str, Any], stateful_set: dict[str, Any] | None
    ) -> tuple[str, str, str, int]:
        desired_replicas = int((cluster.get("spec") or {}).get("replicas", 1))
        if stateful_set is None:
            return STATUS_FALSE, "StatefulSetMissing", "StatefulSet does not exist yet", 0
        declared = (stateful_set.get("spec") or {}).get("replicas")
        ready = int((stateful_set.get("status") or {}).get("readyReplicas") or 0)
        message = f"{ready}/{desired_replicas} nodes ready"
        if declared == desired_replicas and ready == desired_replicas:
            return STATUS_TRUE, "ClusterReady", message, ready
        return STATUS_FALSE, "ClusterNotReady", message, ready

    def _update_status(
        self,
        key: str,
        cluster: dict[str, Any],
        stateful_set: dict[str, Any] | None,
        stop_event: threading.Event | None,
    ) -> None:
        previous = cluster.get("status") or {}
        status, reason, message, ready = self._ready_condition(cluster, stateful_set)
        updated = dict(previous)
        updated["readyNodes"] = ready
        updated["conditions"] = self.condition_tracker.set_condition(
            previous.get("conditions"), CONDITION_READY, status, reason, message
        )
        if updated == previous:
            return

        body = copy.deepcopy(cluster)
        body["status"] = updated
        metadata = cluster["metadata"]
        self._check_cancelled(stop_event)
        try:
            self.store.update_status(CLUSTER_KIND, metadata.get("namespace", ""), metadata["name"], body)
        except ApiException as exc:
            if is_not_found(exc):
                self.logger.info("Cluster %s deleted before its status could be written", key)
                return
            if is_conflict(exc):
                raise SyncError(CLUSTER_KIND, key, "status update conflict; cluster changed") from exc
            raise SyncError(CLUSTER_KIND, key, f"failed to update status: {exc.reason}") from exc
        self.logger.info("Updated status of cluster %s (Ready=%s: %s)", key, status, message)


def _resource_version(obj: dict[str, Any] | None) -> str:
    if not obj:
        return ""
    return str((obj.get("metadata") or {}).get("resourceVersion") or "")
