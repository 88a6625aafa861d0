from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass


class ConfigError(RuntimeError):
    """Raised when the controller configuration is invalid."""


@dataclass(frozen=True)
class ControllerConfig:
    """Immutable controller configuration loaded at startup.

    Attributes:
        namespace: Namespace scope for every watch and list call.  An empty
                   string means all namespaces.
        service_account: Identity impersonated on outbound API calls, in
                   ``namespace:name`` or plain ``name`` form.  ``None``
                   uses the credentials of the loaded kube configuration.
        skip_crd_bootstrap: Skip registering the ``MysqlCluster`` CRD when
                   it is guaranteed to be installed already.
    """

    namespace: str = "default"
    service_account: str | None = None
    skip_crd_bootstrap: bool = False
    workers: int = 2
    queue_base_delay_seconds: float = 0.005
    queue_max_delay_seconds: float = 1000.0
    crd_ready_attempts: int = 30
    crd_ready_interval_seconds: float = 1.0
    request_timeout_seconds: int = 30
    health_port: int = 8080
    log_level: str = "INFO"


def parse_bool(value: str | None, default: bool = False) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def env_int(
    values: Mapping[str, str],
    name: str,
    default: int,
    *,
    minimum: int | None = None,
    maximum: int | None = None,
) -> int:
    raw = values.get(name)
    if raw is None:
        value = default
    else:
        try:
            value = int(raw)
        except ValueError as exc:
            raise ConfigError(f"{name} must be an integer") from exc

    if minimum is not None and value < minimum:
        raise ConfigError(f"{name} must be >= {minimum}, got: {value}")
    if maximum is not None and value > maximum:
        raise ConfigError(f"{name} must be <= {maximum}, got: {value}")
    return value


def env_float(values: Mapping[str, str], name: str, default: float, *, minimum: float = 0.0) -> float:
    raw = values.get(name)
    if raw is None:
        return default
    try:
        value = float(raw)
    except ValueError as exc:
        raise ConfigError(f"{name} must be a number") from exc
    if value < minimum:
        raise ConfigError(f"{name} must be >= {minimum}, got: {value}")
    return value


def load_config(env: Mapping[str, str] | None = None) -> ControllerConfig:
    """Build a :class:`ControllerConfig` from environment variables.

    Environment variables (with defaults):
        ``WATCH_NAMESPACE``            namespace scope (``default``; empty = all).
        ``SERVICE_ACCOUNT``            impersonated identity (unset).
        ``SKIP_CRD_BOOTSTRAP``         skip CRD registration (``false``).
        ``WORKERS``                    concurrent reconcile workers (``2``).
        ``QUEUE_BASE_DELAY_MS``        first retry delay (``5``).
        ``QUEUE_MAX_DELAY_SECONDS``    retry delay ceiling (``1000``).
        ``CRD_READY_ATTEMPTS``         CRD establishment polls (``30``).
        ``CRD_READY_INTERVAL_SECONDS`` seconds between polls (``1``).
        ``REQUEST_TIMEOUT_SECONDS``    per-call API timeout (``30``).
        ``HEALTH_PORT``                health/metrics port (``8080``).
        ``LOG_LEVEL``                  root log level (``INFO``).
    """
    values = env if env is not None else os.environ

    service_account = (values.get("SERVICE_ACCOUNT") or "").strip() or None
    base_delay_ms = env_float(values, "QUEUE_BASE_DELAY_MS", 5.0)
    max_delay_seconds = env_float(values, "QUEUE_MAX_DELAY_SECONDS", 1000.0)
    if base_delay_ms <= 0:
        raise ConfigError("QUEUE_BASE_DELAY_MS must be > 0")
    if max_delay_seconds < base_delay_ms / 1000.0:
        raise ConfigError("QUEUE_MAX_DELAY_SECONDS must not be smaller than QUEUE_BASE_DELAY_MS")

    return ControllerConfig(
        namespace=values.get("WATCH_NAMESPACE", "default").strip(),
        service_account=service_account,
        skip_crd_bootstrap=parse_bool(values.get("SKIP_CRD_BOOTSTRAP")),
        workers=env_int(values, "WORKERS", 2, minimum=1, maximum=64),
        queue_base_delay_seconds=base_delay_ms / 1000.0,
        queue_max_delay_seconds=max_delay_seconds,
        crd_ready_attempts=env_int(values, "CRD_READY_ATTEMPTS", 30, minimum=1),
        crd_ready_interval_seconds=env_float(values, "CRD_READY_INTERVAL_SECONDS", 1.0),
        request_timeout_seconds=env_int(values, "REQUEST_TIMEOUT_SECONDS", 30, minimum=1),
        health_port=env_int(values, "HEALTH_PORT", 8080, minimum=0, maximum=65535),
        log_level=values.get("LOG_LEVEL", "INFO").strip().upper() or "INFO",
    )
