"""In-memory stand-ins for the Kubernetes object store and watch feed."""

from __future__ import annotations

import copy
import itertools
import threading
import time
from collections.abc import Callable
from typing import Any

from kubernetes.client import ApiException

from mysql_operator.src.cache import EVENT_ADDED, EVENT_DELETED, EVENT_MODIFIED, ResourceCache


def _matches_selector(obj: dict[str, Any], label_selector: str | None) -> bool:
    if not label_selector:
        return True
    labels = (obj.get("metadata") or {}).get("labels") or {}
    for clause in label_selector.split(","):
        key, _, value = clause.partition("=")
        if labels.get(key.strip()) != value.strip():
            return False
    return True


def _merge_patch(target: dict[str, Any], patch: dict[str, Any]) -> None:
    """Apply *patch* to *target* as a JSON merge patch: null deletes, lists replace."""
    for key, value in patch.items():
        if value is None:
            target.pop(key, None)
        elif isinstance(value, dict) and isinstance(target.get(key), dict):
            _merge_patch(target[key], value)
        else:
            target[key] = copy.deepcopy(value)


class FakeObjectStore:
    """Thread-safe object store that behaves like a tiny API server.

    Objects are dicts keyed by ``(kind, namespace, name)``.  Every mutation
    bumps a global ``resourceVersion`` and is pushed synchronously to the
    subscribed caches, in order, while the store lock is held.  Patches
    are applied as JSON merge patches, as the real object store sends
    them.  ``writes`` records every mutating call as ``(verb, kind, name)``.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._objects: dict[tuple[str, str, str], dict[str, Any]] = {}
        self._versions = itertools.count(1)
        self._uids = itertools.count(1)
        self._subscribers: list[tuple[str, str, str | None, ResourceCache]] = []
        self.writes: list[tuple[str, str, str]] = []
        self.failures: dict[tuple[str, str], list[ApiException]] = {}

    # -- helpers -----------------------------------------------------------

    def _maybe_fail(self, verb: str, kind: str) -> None:
        pending = self.failures.get((verb, kind))
        if pending:
            raise pending.pop(0)

    def _notify(self, kind: str, event_type: str, obj: dict[str, Any]) -> None:
        namespace = obj["metadata"].get("namespace", "")
        for sub_kind, sub_namespace, selector, cache in self._subscribers:
            if sub_kind != kind or (sub_namespace and sub_namespace != namespace):
                continue
            if _matches_selector(obj, selector):
                cache.apply(event_type, copy.deepcopy(obj))

    def _bump(self, obj: dict[str, Any]) -> None:
        obj["metadata"]["resourceVersion"] = str(next(self._versions))

    def writes_for(self, verb: str, kind: str) -> list[str]:
        with self._lock:
            return [name for v, k, name in self.writes if v == verb and k == kind]

    def subscribe(self, kind: str, namespace: str, label_selector: str | None, cache: ResourceCache) -> None:
        with self._lock:
            self._subscribers.append((kind, namespace, label_selector, cache))

    def unsubscribe(self, cache: ResourceCache) -> None:
        with self._lock:
            self._subscribers = [s for s in self._subscribers if s[3] is not cache]

    # -- object store interface ----------------------------------------------

    def get(self, kind: str, namespace: str, name: str) -> dict[str, Any]:
        with self._lock:
            self._maybe_fail("get", kind)
            obj = self._objects.get((kind, namespace, name))
            if obj is None:
                raise ApiException(status=404, reason="Not Found")
            return copy.deepcopy(obj)

    def list(
        self, kind: str, namespace: str, label_selector: str | None = None
    ) -> tuple[list[dict[str, Any]], str | None]:
        with self._lock:
            items = [
                copy.deepcopy(obj)
                for (k, ns, _), obj in self._objects.items()
                if k == kind and (not namespace or ns == namespace) and _matches_selector(obj, label_selector)
            ]
            return items, str(next(self._versions))

    def create(self, kind: str, namespace: str, body: dict[str, Any]) -> dict[str, Any]:
        with self._lock:
            self._maybe_fail("create", kind)
            obj = copy.deepcopy(body)
            obj.setdefault("kind", kind)
            metadata = obj.setdefault("metadata", {})
            metadata["namespace"] = namespace
            key = (kind, namespace, metadata["name"])
            if key in self._objects:
                raise ApiException(status=409, reason="AlreadyExists")
            metadata["uid"] = f"uid-{next(self._uids)}"
            self._bump(obj)
            self._objects[key] = obj
            self.writes.append(("create", kind, metadata["name"]))
            self._notify(kind, EVENT_ADDED, obj)
            return copy.deepcopy(obj)

    def patch(self, kind: str, namespace: str, name: str, body: dict[str, Any]) -> dict[str, Any]:
        with self._lock:
            self._maybe_fail("patch", kind)
            current = self._objects.get((kind, namespace, name))
            if current is None:
                raise ApiException(status=404, reason="Not Found")
            merged = copy.deepcopy(current)
            _merge_patch(merged, body)
            self.writes.append(("patch", kind, name))
            if merged != current:
                self._bump(merged)
                self._objects[(kind, namespace, name)] = merged
                self._notify(kind, EVENT_MODIFIED, merged)
            return copy.deepcopy(merged)

    def update_status(self, kind: str, namespace: str, name: str, body: dict[str, Any]) -> dict[str, Any]:
        with self._lock:
            self._maybe_fail("update_status", kind)
            current = self._objects.get((kind, namespace, name))
            if current is None:
                raise ApiException(status=404, reason="Not Found")
            sent_version = (body.get("metadata") or {}).get("resourceVersion")
            if sent_version != current["metadata"]["resourceVersion"]:
                raise ApiException(status=409, reason="Conflict")
            updated = copy.deepcopy(current)
            updated["status"] = copy.deepcopy(body.get("status") or {})
            self._bump(updated)
            self._objects[(kind, namespace, name)] = updated
            self.writes.append(("update_status", kind, name))
            self._notify(kind, EVENT_MODIFIED, updated)
            return copy.deepcopy(updated)

    def delete(self, kind: str, namespace: str, name: str) -> None:
        with self._lock:
            obj = self._objects.pop((kind, namespace, name), None)
            if obj is None:
                raise ApiException(status=404, reason="Not Found")
            self.writes.append(("delete", kind, name))
            self._notify(kind, EVENT_DELETED, obj)

    def feed(self, kind: str, namespace: str, label_selector: str | None = None) -> FakeFeed:
        return FakeFeed(self, kind, namespace, label_selector)

    # -- test-side mutations -------------------------------------------------

    def set_status(self, kind: str, namespace: str, name: str, status: dict[str, Any]) -> dict[str, Any]:
        """Simulate another component (e.g. the StatefulSet controller) writing status."""
        with self._lock:
            current = self._objects[(kind, namespace, name)]
            updated = copy.deepcopy(current)
            updated["status"] = copy.deepcopy(status)
            self._bump(updated)
            self._objects[(kind, namespace, name)] = updated
            self._notify(kind, EVENT_MODIFIED, updated)
            return copy.deepcopy(updated)


class FakeFeed:
    """Feed that snapshots the fake store, then relays its notifications."""

    def __init__(self, store: FakeObjectStore, kind: str, namespace: str, label_selector: str | None) -> None:
        self.store = store
        self.kind = kind
        self.namespace = namespace
        self.label_selector = label_selector
        self._stopped = threading.Event()

    def request_stop(self) -> None:
        self._stopped.set()

    def run(self, cache: ResourceCache, stop_event: threading.Event) -> None:
        with self.store._lock:
            self.store.subscribe(self.kind, self.namespace, self.label_selector, cache)
            items, _ = self.store.list(self.kind, self.namespace, self.label_selector)
            cache.replace(items)
        try:
            while not stop_event.is_set() and not self._stopped.is_set():
                stop_event.wait(timeout=0.05)
        finally:
            self.store.unsubscribe(cache)


class NeverSyncingFeed:
    """Feed whose cache never completes its initial listing."""

    def request_stop(self) -> None:
        pass

    def run(self, cache: ResourceCache, stop_event: threading.Event) -> None:
        stop_event.wait()


def wait_for(predicate: Callable[[], bool], timeout: float = 3.0, interval: float = 0.01) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


def make_cluster(
    name: str = "foo",
    namespace: str = "default",
    replicas: int = 2,
    secret_name: str = "the-secret",
    **spec: Any,
) -> dict[str, Any]:
    return {
        "apiVersion": "mysql.presslabs.org/v1alpha1",
        "kind": "MysqlCluster",
        "metadata": {"name": name, "namespace": namespace},
        "spec": {"replicas": replicas, "secretName": secret_name, **spec},
    }


def make_secret(name: str = "the-secret", namespace: str = "default") -> dict[str, Any]:
    return {
        "apiVersion": "v1",
        "kind": "Secret",
        "metadata": {"name": name, "namespace": namespace},
        "stringData": {"ROOT_PASSWORD": "this-is-secret"},
    }
