from __future__ import annotations

import json
import logging
import os
import re
import signal
import threading

from configmaster.src.config import load_config
from configmaster.src.controller import build_controller
from configmaster.src.health import start_health_server
from configmaster.src.kube import build_clients, load_kube_configuration
from configmaster.src.metrics import METRICS

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
            "msg": redact_sensitive_text(record.getMessage()),
        }
        if record.exc_info and record.exc_info[0] is not None:
            log_entry["error"] = redact_sensitive_text(self.formatException(record.exc_info))
        return json.dumps(log_entry)


def configure_logging(level_name: str) -> None:
    log_handler = logging.StreamHandler()
    log_handler.setFormatter(JSONFormatter())
    logging.root.addHandler(log_handler)
    logging.root.setLevel(getattr(logging, level_name.upper(), logging.INFO))


def main() -> None:
    """Controller entrypoint: load config, connect to the cluster, and run the pipeline.

    Configuration and connection errors propagate and abort the process.  A
    watch that fails or ends after startup stops the pipeline and exits with
    status 1 so the supervisor restarts the controller.
    """
    configure_logging(os.getenv("LOG_LEVEL", "INFO"))
    logger = logging.getLogger(__name__)
    METRICS.build_info.info(
        {
            "version": os.getenv("APP_VERSION", RUNTIME_VERSION),
            "revision": os.getenv("GIT_SHA", "unknown"),
        }
    )

    settings = load_config()
    host = load_kube_configuration(settings)
    core_api, apps_api = build_clients()
    logger.info(
        "configmaster connecting to %s listening on namespace %s with %ds delay",
        host,
        settings.namespace,
        settings.delay_seconds,
    )

    controller = build_controller(settings, core_api=core_api, apps_api=apps_api)
    health_server = start_health_server(ready=controller.ready, port=settings.health_port)

    shutdown_event = threading.Event()

    def _handle_signal(signum: int, frame: object) -> None:
        logger.info("Received signal %d, shutting down", signum)
        shutdown_event.set()

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    try:
        controller.run_forever(shutdown_event=shutdown_event)
    finally:
        health_server.shutdown()

    if controller.failure is not None:
        raise SystemExit(1)
    logger.info("Controller stopped")


if __name__ == "__main__":
    main()
