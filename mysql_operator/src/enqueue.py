from __future__ import annotations

import logging
from typing import Any

from mysql_operator.src.cache import ResourceCache, meta_namespace_key
from mysql_operator.src.state import CLUSTER_KIND
from mysql_operator.src.workqueue import RetryQueue


def controller_owner_key(obj: dict[str, Any], owner_kind: str = CLUSTER_KIND) -> str | None:
    """Return the work key of *obj*'s controlling owner of *owner_kind*, if any."""
    metadata = obj.get("metadata") or {}
    for ref in metadata.get("ownerReferences") or []:
        if ref.get("kind") == owner_kind and ref.get("controller") and ref.get("name"):
            namespace = metadata.get("namespace") or ""
            return f"{namespace}/{ref['name']}" if namespace else ref["name"]
    return None


class EventEnqueuer:
    """Maps cache notifications onto cluster work keys.

    Each ``on_*`` method has the ``(event_type, obj)`` handler signature of
    :meth:`ResourceCache.add_handler`.  Event types are ignored: add, update
    and delete all mean "look at this cluster again".
    """

    def __init__(
        self,
        queue: RetryQueue,
        cluster_cache: ResourceCache,
        logger: logging.Logger | None = None,
    ) -> None:
        self.queue = queue
        self.cluster_cache = cluster_cache
        self.logger = logger or logging.getLogger(__name__)

    def on_cluster_event(self, event_type: str, obj: dict[str, Any]) -> None:
        key = meta_namespace_key(obj)
        if key:
            self.queue.add(key)

    def on_dependent_event(self, event_type: str, obj: dict[str, Any]) -> None:
        key = controller_owner_key(obj)
        if key is None:
            return
        self.logger.debug(
            "%s %s %s maps to cluster %s",
            event_type,
            obj.get("kind", "object"),
            meta_namespace_key(obj),
            key,
        )
        self.queue.add(key)

    def on_secret_event(self, event_type: str, obj: dict[str, Any]) -> None:
        """Enqueue every cached cluster whose ``spec.secretName`` names this Secret."""
        metadata = obj.get("metadata") or {}
        namespace = metadata.get("namespace") or ""
        name = metadata.get("name")
        if not name:
            return
        for cluster in self.cluster_cache.list():
            cluster_meta = cluster.get("metadata") or {}
            if (cluster_meta.get("namespace") or "") != namespace:
                continue
            if (cluster.get("spec") or {}).get("secretName") == name:
                self.queue.add(meta_namespace_key(cluster))
