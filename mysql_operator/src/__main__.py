from __future__ import annotations

import json
import logging
import os
import re
import signal
import sys
import threading

from mysql_operator.src.config import ConfigError, load_config
from mysql_operator.src.controller import ControllerContext, build_controllers, run_controllers
from mysql_operator.src.health import start_health_server
from mysql_operator.src.kube import ObjectStore, build_clients, load_kube_configuration
from mysql_operator.src.metrics import METRICS

RUNTIME_VERSION = "0.1.0"
_REDACTION_RULES: tuple[tuple[re.Pattern[str], str], ...] = (
    (
        re.compile(r"(?i)(bearer\s+)([A-Za-z0-9._~+/=-]+)"),
        r"\1[REDACTED]",
    ),
    (
        re.compile(
            r"(?i)(\b(?:authorization|token|password|passwd|secret|api[_-]?key)\b\s*[:=]\s*)([^\s,;]+)"
        ),
        r"\1[REDACTED]",
    ),
    (
        re.compile(r"(?i)([?&](?:token|access_token|api_key|password)=)([^&\s]+)"),
        r"\1[REDACTED]",
    ),
)


def redact_sensitive_text(value: str) -> str:
    redacted = value
    for pattern, replacement in _REDACTION_RULES:
        redacted = pattern.sub(replacement, redacted)
    return redacted


class JSONFormatter(logging.Formatter):
    """Emit logs as single-line JSON objects for structured log aggregation."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "ts": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "thread": record.threadName,
            "msg": redact_sensitive_text(record.getMessage()),
        }
        if record.exc_info and record.exc_info[0] is not None:
            log_entry["error"] = redact_sensitive_text(self.formatException(record.exc_info))
        return json.dumps(log_entry)


def configure_logging(level: str) -> None:
    log_handler = logging.StreamHandler()
    log_handler.setFormatter(JSONFormatter())
    logging.root.addHandler(log_handler)
    logging.root.setLevel(getattr(logging, level, logging.INFO))


def main() -> int:
    """Controller entrypoint: load config, wire controllers, and run until signalled."""
    try:
        cfg = load_config()
    except ConfigError as exc:
        configure_logging("INFO")
        logging.getLogger(__name__).error("Invalid configuration: %s", exc)
        return 2

    configure_logging(cfg.log_level)
    log = logging.getLogger(__name__)
    METRICS.build_info.info(
        {
            "version": os.getenv("APP_VERSION", RUNTIME_VERSION),
            "revision": os.getenv("GIT_SHA", "unknown"),
        }
    )
    log.info(
        "Starting mysql-operator (namespace=%s, workers=%d, skip_crd_bootstrap=%s)",
        cfg.namespace or "<all>",
        cfg.workers,
        cfg.skip_crd_bootstrap,
    )

    load_kube_configuration()
    clients = build_clients(service_account=cfg.service_account, namespace=cfg.namespace)
    context = ControllerContext(
        config=cfg,
        store=ObjectStore.from_clients(clients, request_timeout_seconds=cfg.request_timeout_seconds),
        apiextensions_api=clients.apiextensions_api,
    )
    controllers = build_controllers(context)

    health_server = start_health_server(
        ready_events={name: controller.ready for name, controller in controllers.items()},
        port=cfg.health_port,
    )

    shutdown_event = threading.Event()

    def _handle_signal(signum: int, frame: object) -> None:
        log.info("Received signal %d, shutting down", signum)
        shutdown_event.set()

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    clean = run_controllers(controllers, workers=cfg.workers, stop_event=shutdown_event)

    health_server.shutdown()
    if not clean:
        log.error("Controller stopped after a fatal error")
        return 1
    log.info("Controller stopped")
    return 0


if __name__ == "__main__":
    sys.exit(main())
