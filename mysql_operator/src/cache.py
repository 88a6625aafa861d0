"""Thread-safe local mirror of one watched Kubernetes kind."""

from __future__ import annotations

import copy
import logging
import threading
from collections.abc import Callable, Iterable
from typing import Any

from mysql_operator.src.metrics import METRICS

EVENT_ADDED = "ADDED"
EVENT_MODIFIED = "MODIFIED"
EVENT_DELETED = "DELETED"

EventHandler = Callable[[str, dict[str, Any]], None]


class InvalidKeyError(ValueError):
    """Raised when a work key cannot be split into namespace and name."""


def meta_namespace_key(obj: dict[str, Any]) -> str:
    """Return ``namespace/name`` for *obj*, or just ``name`` when cluster-scoped."""
    metadata = obj.get("metadata") or {}
    name = metadata.get("name") or ""
    namespace = metadata.get("namespace") or ""
    if namespace:
        return f"{namespace}/{name}"
    return name


def split_meta_namespace_key(key: str) -> tuple[str, str]:
    """Split a work key into ``(namespace, name)``.

    Raises :class:`InvalidKeyError` for keys with more than one ``/`` or
    an empty name.
    """
    parts = key.split("/")
    if len(parts) == 1:
        namespace, name = "", parts[0]
    elif len(parts) == 2:
        namespace, name = parts
    else:
        raise InvalidKeyError(f"unexpected key format: {key!r}")
    if not name:
        raise InvalidKeyError(f"key has an empty name: {key!r}")
    return namespace, name


class ResourceCache:
    """In-memory store of one kind, keyed by ``namespace/name``.

    The cache has exactly one writer, the watch feed, which calls
    :meth:`replace` after every full listing and :meth:`apply` for each
    watch notification.  Everybody else only reads, and reads return deep
    copies so callers can never mutate cached state.

    Registered handlers see every change after it has been applied, outside
    the cache lock, so a handler may read the cache back.
    """

    def __init__(self, kind: str, logger: logging.Logger | None = None) -> None:
        self.kind = kind
        self.logger = logger or logging.getLogger(__name__)
        self._items: dict[str, dict[str, Any]] = {}
        self._lock = threading.RLock()
        self._handlers: list[EventHandler] = []
        self._synced = threading.Event()

    @property
    def has_synced(self) -> bool:
        """True once the first full listing has been applied; never reset."""
        return self._synced.is_set()

    def add_handler(self, handler: EventHandler) -> None:
        with self._lock:
            self._handlers.append(handler)

    def get(self, key: str) -> dict[str, Any] | None:
        with self._lock:
            obj = self._items.get(key)
            return copy.deepcopy(obj) if obj is not None else None

    def list(self) -> list[dict[str, Any]]:
        with self._lock:
            return [copy.deepcopy(obj) for obj in self._items.values()]

    def keys(self) -> list[str]:
        with self._lock:
            return list(self._items)

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)

    def replace(self, items: Iterable[dict[str, Any]]) -> None:
        """Swap in a full listing, emitting the implied ADDED/MODIFIED/DELETED deltas."""
        fresh = {meta_namespace_key(obj): obj for obj in items}
        deltas: list[tuple[str, dict[str, Any]]] = []
        with self._lock:
            for key, obj in fresh.items():
                previous = self._items.get(key)
                if previous is None:
                    deltas.append((EVENT_ADDED, obj))
                elif _resource_version(previous) != _resource_version(obj):
                    deltas.append((EVENT_MODIFIED, obj))
            for key, obj in self._items.items():
                if key not in fresh:
                    deltas.append((EVENT_DELETED, obj))
            self._items = fresh
            METRICS.cache_objects.labels(kind=self.kind).set(len(fresh))
            handlers = list(self._handlers)
        self._synced.set()
        self.logger.info("Cache for %s synced with %d object(s)", self.kind, len(fresh))
        for event_type, obj in deltas:
            self._dispatch(handlers, event_type, obj)

    def apply(self, event_type: str, obj: dict[str, Any]) -> None:
        """Apply one watch notification."""
        key = meta_namespace_key(obj)
        if not key:
            return
        with self._lock:
            if event_type in {EVENT_ADDED, EVENT_MODIFIED}:
                self._items[key] = obj
            elif event_type == EVENT_DELETED:
                self._items.pop(key, None)
            else:
                return
            METRICS.cache_objects.labels(kind=self.kind).set(len(self._items))
            handlers = list(self._handlers)
        self._dispatch(handlers, event_type, obj)

    def _dispatch(self, handlers: list[EventHandler], event_type: str, obj: dict[str, Any]) -> None:
        for handler in handlers:
            try:
                handler(event_type, copy.deepcopy(obj))
            except Exception:
                self.logger.exception(
                    "Event handler failed for %s %s %s",
                    event_type,
                    self.kind,
                    meta_namespace_key(obj),
                )


def _resource_version(obj: dict[str, Any]) -> str | None:
    return (obj.get("metadata") or {}).get("resourceVersion")


def wait_for_cache_sync(
    stop_event: threading.Event,
    caches: Iterable[ResourceCache],
    poll_seconds: float = 0.1,
) -> bool:
    """Block until every cache has synced.  Returns False if *stop_event* fires first."""
    pending = list(caches)
    while not stop_event.is_set():
        if all(cache.has_synced for cache in pending):
            return True
        stop_event.wait(timeout=poll_seconds)
    return False
