from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import Any

import yaml
from kubernetes.client import ApiException, ApiextensionsV1Api

from mysql_operator.src.kube import is_conflict, is_not_found
from mysql_operator.src.state import CLUSTER_CRD_NAME

CRD_MANIFEST_PATH = Path(__file__).with_name("crd.yaml")


class BootstrapError(RuntimeError):
    """The CRD could not be registered or never became established."""


def load_crd_manifest(path: Path = CRD_MANIFEST_PATH) -> dict[str, Any]:
    with path.open(encoding="utf-8") as handle:
        manifest = yaml.safe_load(handle)
    if not isinstance(manifest, dict) or manifest.get("kind") != "CustomResourceDefinition":
        raise BootstrapError(f"{path} does not contain a CustomResourceDefinition")
    return manifest


def _is_established(crd: Any) -> bool:
    """Return True when the CRD's ``Established`` condition is ``True``.

    Accepts both ``V1CustomResourceDefinition`` models and plain dicts.
    """
    if isinstance(crd, dict):
        conditions = (crd.get("status") or {}).get("conditions") or []
        return any(c.get("type") == "Established" and c.get("status") == "True" for c in conditions)
    status = getattr(crd, "status", None)
    conditions = getattr(status, "conditions", None) or []
    return any(
        getattr(c, "type", None) == "Established" and getattr(c, "status", None) == "True"
        for c in conditions
    )


class BootstrapManager:
    """Ensures the ``MysqlCluster`` kind is registered before any cache starts.

    Idempotent: an already-registered CRD is accepted as-is.  A freshly
    created CRD is polled ``attempts`` times, ``interval_seconds`` apart,
    until the API server reports it ``Established``.
    """

    def __init__(
        self,
        apiextensions_api: ApiextensionsV1Api,
        manifest: dict[str, Any] | None = None,
        attempts: int = 30,
        interval_seconds: float = 1.0,
        stop_event: threading.Event | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        if attempts < 1:
            raise ValueError("attempts must be >= 1")
        self.apiextensions_api = apiextensions_api
        self.manifest = manifest if manifest is not None else load_crd_manifest()
        self.crd_name = (self.manifest.get("metadata") or {}).get("name", CLUSTER_CRD_NAME)
        self.attempts = attempts
        self.interval_seconds = interval_seconds
        self.stop_event = stop_event or threading.Event()
        self.logger = logger or logging.getLogger(__name__)

    def ensure(self) -> None:
        try:
            self.apiextensions_api.read_custom_resource_definition(name=self.crd_name)
            self.logger.info("CRD %s already registered", self.crd_name)
            return
        except ApiException as exc:
            if not is_not_found(exc):
                raise BootstrapError(f"failed to read CRD {self.crd_name}: {exc.reason}") from exc

        self.logger.info("Registering CRD %s", self.crd_name)
        try:
            self.apiextensions_api.create_custom_resource_definition(body=self.manifest)
        except ApiException as exc:
            if not is_conflict(exc):
                raise BootstrapError(f"failed to create CRD {self.crd_name}: {exc.reason}") from exc
            self.logger.info("CRD %s was registered concurrently", self.crd_name)

        self._wait_established()

    def _wait_established(self) -> None:
        for attempt in range(1, self.attempts + 1):
            try:
                crd = self.apiextensions_api.read_custom_resource_definition(name=self.crd_name)
                if _is_established(crd):
                    self.logger.info("CRD %s established after %d poll(s)", self.crd_name, attempt)
                    return
            except ApiException as exc:
                self.logger.warning(
                    "Polling CRD %s failed (attempt %d/%d): %s",
                    self.crd_name,
                    attempt,
                    self.attempts,
                    exc.reason,
                )
            if attempt < self.attempts and self.stop_event.wait(timeout=self.interval_seconds):
                raise BootstrapError(f"stopped while waiting for CRD {self.crd_name}")
        raise BootstrapError(
            f"CRD {self.crd_name} not established after {self.attempts} attempt(s)"
        )
