from __future__ import annotations

import logging
import random
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from kubernetes import client, config, watch
from kubernetes.client import (
    ApiException,
    ApiextensionsV1Api,
    AppsV1Api,
    CoreV1Api,
    CustomObjectsApi,
    PolicyV1Api,
)
from kubernetes.config.config_exception import ConfigException

from mysql_operator.src.cache import ResourceCache
from mysql_operator.src.metrics import METRICS
from mysql_operator.src.state import (
    CLUSTER_GROUP,
    CLUSTER_KIND,
    CLUSTER_PLURAL,
    CLUSTER_VERSION,
    KIND_CONFIG_MAP,
    KIND_POD_DISRUPTION_BUDGET,
    KIND_SECRET,
    KIND_SERVICE,
    KIND_STATEFUL_SET,
)

LOGGER = logging.getLogger(__name__)

# JSON merge patch (RFC 7386): lists in the body replace the live list whole.
MERGE_PATCH_CONTENT_TYPE = "application/merge-patch+json"

# kind -> (client attribute on ObjectStore, snake_case resource used in method names)
_TYPED_KINDS: dict[str, tuple[str, str]] = {
    KIND_CONFIG_MAP: ("core_api", "config_map"),
    KIND_SECRET: ("core_api", "secret"),
    KIND_SERVICE: ("core_api", "service"),
    KIND_STATEFUL_SET: ("apps_api", "stateful_set"),
    KIND_POD_DISRUPTION_BUDGET: ("policy_api", "pod_disruption_budget"),
}


def load_kube_configuration() -> None:
    """Load Kubernetes client configuration.

    Attempts in-cluster config first (running inside a pod), falling back
    to the local kubeconfig for development.
    """
    try:
        config.load_incluster_config()
        LOGGER.info("Loaded in-cluster Kubernetes configuration")
    except ConfigException:
        config.load_kube_config()
        LOGGER.info("Loaded local kubeconfig")


def impersonation_user(service_account: str, default_namespace: str) -> str:
    """Return the ``Impersonate-User`` value for a service account.

    Accepts ``namespace:name`` or a bare ``name`` resolved against
    *default_namespace*.
    """
    namespace, separator, name = service_account.partition(":")
    if not separator:
        namespace, name = default_namespace or "default", service_account
    return f"system:serviceaccount:{namespace}:{name}"


@dataclass(frozen=True)
class KubeClients:
    core_api: CoreV1Api
    apps_api: AppsV1Api
    policy_api: PolicyV1Api
    custom_api: CustomObjectsApi
    apiextensions_api: ApiextensionsV1Api


def build_clients(service_account: str | None = None, namespace: str = "") -> KubeClients:
    """Return API clients sharing one ``ApiClient`` on the active kube configuration.

    When *service_account* is set, every outbound call impersonates it.
    """
    api_client = client.ApiClient()
    if service_account:
        user = impersonation_user(service_account, namespace)
        api_client.set_default_header("Impersonate-User", user)
        LOGGER.info("Impersonating %s for outbound API calls", user)
    return KubeClients(
        core_api=client.CoreV1Api(api_client),
        apps_api=client.AppsV1Api(api_client),
        policy_api=client.PolicyV1Api(api_client),
        custom_api=client.CustomObjectsApi(api_client),
        apiextensions_api=client.ApiextensionsV1Api(api_client),
    )


def is_not_found(exc: BaseException) -> bool:
    return isinstance(exc, ApiException) and exc.status == 404


def is_conflict(exc: BaseException) -> bool:
    return isinstance(exc, ApiException) and exc.status == 409


class ObjectStore:
    """Kind-addressed facade over the typed and custom-object Kubernetes APIs.

    Every method speaks plain dicts in wire form (camelCase keys), so the
    reconciler never touches generated model classes.  Failures surface as
    :class:`kubernetes.client.ApiException`; 404 is not-found and 409 is a
    version conflict or an already-existing object.
    """

    def __init__(
        self,
        core_api: CoreV1Api,
        apps_api: AppsV1Api,
        policy_api: PolicyV1Api,
        custom_api: CustomObjectsApi,
        request_timeout_seconds: int = 30,
    ) -> None:
        self.core_api = core_api
        self.apps_api = apps_api
        self.policy_api = policy_api
        self.custom_api = custom_api
        self.request_timeout_seconds = request_timeout_seconds

    @classmethod
    def from_clients(cls, clients: KubeClients, request_timeout_seconds: int = 30) -> ObjectStore:
        return cls(
            core_api=clients.core_api,
            apps_api=clients.apps_api,
            policy_api=clients.policy_api,
            custom_api=clients.custom_api,
            request_timeout_seconds=request_timeout_seconds,
        )

    def to_dict(self, obj: Any) -> dict[str, Any]:
        if isinstance(obj, dict):
            return obj
        return self.core_api.api_client.sanitize_for_serialization(obj)

    def _custom_kwargs(self) -> dict[str, str]:
        return {"group": CLUSTER_GROUP, "version": CLUSTER_VERSION, "plural": CLUSTER_PLURAL}

    def _typed(self, kind: str, verb: str) -> Callable[..., Any]:
        try:
            api_attr, resource = _TYPED_KINDS[kind]
        except KeyError:
            raise ValueError(f"unsupported kind: {kind}") from None
        return getattr(getattr(self, api_attr), f"{verb}_namespaced_{resource}")

    def list_call(
        self, kind: str, namespace: str, label_selector: str | None = None
    ) -> tuple[Callable[..., Any], dict[str, Any]]:
        """Return the list function and its kwargs, suitable for ``watch.Watch().stream``."""
        kwargs: dict[str, Any] = {}
        if label_selector:
            kwargs["label_selector"] = label_selector
        if kind == CLUSTER_KIND:
            kwargs.update(self._custom_kwargs())
            if namespace:
                return self.custom_api.list_namespaced_custom_object, {"namespace": namespace, **kwargs}
            return self.custom_api.list_cluster_custom_object, kwargs
        if namespace:
            return self._typed(kind, "list"), {"namespace": namespace, **kwargs}
        api_attr, resource = _TYPED_KINDS[kind]
        return getattr(getattr(self, api_attr), f"list_{resource}_for_all_namespaces"), kwargs

    def get(self, kind: str, namespace: str, name: str) -> dict[str, Any]:
        timeout = self.request_timeout_seconds
        if kind == CLUSTER_KIND:
            return self.custom_api.get_namespaced_custom_object(
                namespace=namespace, name=name, _request_timeout=timeout, **self._custom_kwargs()
            )
        obj = self._typed(kind, "read")(name=name, namespace=namespace, _request_timeout=timeout)
        return self.to_dict(obj)

    def list(
        self, kind: str, namespace: str, label_selector: str | None = None
    ) -> tuple[list[dict[str, Any]], str | None]:
        """Return ``(items, resourceVersion)`` for a full listing."""
        list_fn, kwargs = self.list_call(kind, namespace, label_selector)
        response = list_fn(_request_timeout=self.request_timeout_seconds, **kwargs)
        return list_items(response, self.to_dict)

    def create(self, kind: str, namespace: str, body: dict[str, Any]) -> dict[str, Any]:
        timeout = self.request_timeout_seconds
        if kind == CLUSTER_KIND:
            return self.custom_api.create_namespaced_custom_object(
                namespace=namespace, body=body, _request_timeout=timeout, **self._custom_kwargs()
            )
        obj = self._typed(kind, "create")(namespace=namespace, body=body, _request_timeout=timeout)
        return self.to_dict(obj)

    def patch(self, kind: str, namespace: str, name: str, body: dict[str, Any]) -> dict[str, Any]:
        timeout = self.request_timeout_seconds
        if kind == CLUSTER_KIND:
            return self.custom_api.patch_namespaced_custom_object(
                namespace=namespace,
                name=name,
                body=body,
                _request_timeout=timeout,
                _content_type=MERGE_PATCH_CONTENT_TYPE,
                **self._custom_kwargs(),
            )
        obj = self._typed(kind, "patch")(
            name=name,
            namespace=namespace,
            body=body,
            _request_timeout=timeout,
            _content_type=MERGE_PATCH_CONTENT_TYPE,
        )
        return self.to_dict(obj)

    def update_status(self, kind: str, namespace: str, name: str, body: dict[str, Any]) -> dict[str, Any]:
        """Replace the status subresource; ``body.metadata.resourceVersion`` makes it conditional."""
        if kind != CLUSTER_KIND:
            raise ValueError(f"status updates are only supported for {CLUSTER_KIND}")
        return self.custom_api.replace_namespaced_custom_object_status(
            namespace=namespace,
            name=name,
            body=body,
            _request_timeout=self.request_timeout_seconds,
            **self._custom_kwargs(),
        )

    def delete(self, kind: str, namespace: str, name: str) -> None:
        timeout = self.request_timeout_seconds
        if kind == CLUSTER_KIND:
            self.custom_api.delete_namespaced_custom_object(
                namespace=namespace, name=name, _request_timeout=timeout, **self._custom_kwargs()
            )
            return
        self._typed(kind, "delete")(name=name, namespace=namespace, _request_timeout=timeout)

    def feed(self, kind: str, namespace: str, label_selector: str | None = None) -> WatchFeed:
        list_fn, kwargs = self.list_call(kind, namespace, label_selector)
        return WatchFeed(kind=kind, list_fn=list_fn, list_kwargs=kwargs, to_dict=self.to_dict)


def list_items(
    response: Any, to_dict: Callable[[Any], dict[str, Any]]
) -> tuple[list[dict[str, Any]], str | None]:
    """Normalize a typed ``V1*List`` or a custom-object list dict into dict items."""
    if isinstance(response, dict):
        items = response.get("items") or []
        resource_version = (response.get("metadata") or {}).get("resourceVersion")
    else:
        items = getattr(response, "items", None) or []
        resource_version = getattr(getattr(response, "metadata", None), "resource_version", None)
    return [to_dict(item) for item in items], resource_version


class WatchFeed:
    """List-then-watch loop that keeps one :class:`ResourceCache` current.

    1. Lists the kind and hands the snapshot to ``cache.replace``; the first
       successful list flips the cache's ``has_synced``.
    2. Streams watch events from the list's ``resourceVersion`` into
       ``cache.apply``.
    3. On ``410 Gone`` (etcd compaction) re-lists and resumes.
    4. On any other error, backs off exponentially with jitter (capped at
       30 s) before re-listing.

    ``request_stop`` interrupts an open stream from another thread so
    shutdown does not wait for the watch timeout.
    """

    def __init__(
        self,
        kind: str,
        list_fn: Callable[..., Any],
        list_kwargs: dict[str, Any],
        to_dict: Callable[[Any], dict[str, Any]],
        watch_timeout_seconds: int = 30,
        stop_poll_seconds: float = 0.1,
        logger: logging.Logger | None = None,
    ) -> None:
        self.kind = kind
        self.list_fn = list_fn
        self.list_kwargs = list_kwargs
        self.to_dict = to_dict
        self.watch_timeout_seconds = watch_timeout_seconds
        self.stop_poll_seconds = stop_poll_seconds
        self.logger = logger or logging.getLogger(__name__)
        self._external_stop = threading.Event()
        self._active_watcher: watch.Watch | None = None
        self._watcher_lock = threading.Lock()

    def request_stop(self) -> None:
        """Request a cooperative stop and immediately interrupt any open watch stream."""
        self._external_stop.set()
        with self._watcher_lock:
            active_watcher = self._active_watcher
        if active_watcher is not None:
            active_watcher.stop()

    def _should_stop(self, stop_event: threading.Event) -> bool:
        return stop_event.is_set() or self._external_stop.is_set()

    def _relist(self, cache: ResourceCache) -> str | None:
        response = self.list_fn(**self.list_kwargs)
        items, resource_version = list_items(response, self.to_dict)
        cache.replace(items)
        return resource_version

    def _backoff(self, stop_event: threading.Event, backoff_seconds: float) -> float:
        jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
        deadline = time.monotonic() + jittered
        while not self._should_stop(stop_event):
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                break
            stop_event.wait(timeout=min(remaining, self.stop_poll_seconds))
        return min(backoff_seconds * 2, 30)

    def run(self, cache: ResourceCache, stop_event: threading.Event) -> None:
        self._external_stop.clear()
        resource_version: str | None = None
        backoff_seconds: float = 1
        watch_stream_count = 0

        while not self._should_stop(stop_event):
            try:
                if resource_version is None:
                    resource_version = self._relist(cache)
                    self.logger.info(
                        "Watching %s from resourceVersion %s", self.kind, resource_version
                    )

                watcher = watch.Watch()
                with self._watcher_lock:
                    self._active_watcher = watcher
                if watch_stream_count > 0:
                    METRICS.watch_reconnects_total.labels(kind=self.kind).inc()
                watch_stream_count += 1
                try:
                    stream = watcher.stream(
                        self.list_fn,
                        resource_version=resource_version,
                        timeout_seconds=self.watch_timeout_seconds,
                        **self.list_kwargs,
                    )
                    for event in stream:
                        if self._should_stop(stop_event):
                            break
                        resource_version = self._handle_event(cache, event, resource_version)
                finally:
                    watcher.stop()
                    with self._watcher_lock:
                        if self._active_watcher is watcher:
                            self._active_watcher = None
                backoff_seconds = 1
            except ApiException as exc:
                if exc.status == 410:
                    self.logger.warning("Watch for %s expired, re-listing", self.kind)
                    resource_version = None
                    continue
                if exc.status in {401, 403}:
                    self.logger.error(
                        "Kubernetes API denied list/watch of %s (status=%s). "
                        "Check controller RBAC and service account permissions.",
                        self.kind,
                        exc.status,
                    )
                else:
                    self.logger.exception("Kubernetes API watch error for %s", self.kind)
                METRICS.watch_errors_total.labels(kind=self.kind).inc()
                resource_version = None
                backoff_seconds = self._backoff(stop_event, backoff_seconds)
            except Exception:
                self.logger.exception("Unexpected watch error for %s", self.kind)
                METRICS.watch_errors_total.labels(kind=self.kind).inc()
                resource_version = None
                backoff_seconds = self._backoff(stop_event, backoff_seconds)

    def _handle_event(
        self, cache: ResourceCache, event: dict[str, Any], resource_version: str | None
    ) -> str | None:
        event_type = str(event.get("type", ""))
        raw = event.get("object")
        if event_type == "ERROR":
            status = raw if isinstance(raw, dict) else {}
            if status.get("code") == 410:
                raise ApiException(status=410, reason="Expired")
            self.logger.warning("Watch for %s returned an error event: %s", self.kind, status)
            return resource_version
        if raw is None:
            return resource_version

        obj = self.to_dict(raw)
        new_version = (obj.get("metadata") or {}).get("resourceVersion") or resource_version
        if event_type != "BOOKMARK":
            cache.apply(event_type, obj)
        return new_version
