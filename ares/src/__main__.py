from __future__ import annotations

import json
import logging
import os
import re
import signal
import threading

from ares.src.config import Settings, load_settings, parse_config_document
from ares.src.controller import Dispatcher, parse_records
from ares.src.health import start_health_server
from ares.src.kube import ClusterClient, build_clients, load_kube_configuration
from ares.src.metrics import METRICS
from ares.src.version import RUNTIME_VERSION

LOGGER = logging.getLogger(__name__)

_CONTEXT_FIELDS = ("record", "namespace", "resource")
_REDACTION_RULES: tuple[tuple[re.Pattern[str], str], ...] = (
    (
        re.compile(r"(?i)(bearer\s+)([A-Za-z0-9._~+/=-]+)"),
        r"\1[REDACTED]",
    ),
    (
        re.compile(
            r"(?i)(\b(?:authorization|token|api[_-]?token|api[_-]?key|x-auth-key|secret)\b"
            r"['\"]?\s*[:=]\s*['\"]?)([^\s,;'\"]+)"
        ),
        r"\1[REDACTED]",
    ),
)


def redact_sensitive_text(value: str) -> str:
    redacted = value
    for pattern, replacement in _REDACTION_RULES:
        redacted = pattern.sub(replacement, redacted)
    return redacted


class JSONFormatter(logging.Formatter):
    """Emit logs as single-line JSON objects, including managed-record context when bound."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "ts": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "msg": redact_sensitive_text(record.getMessage()),
        }
        for key in _CONTEXT_FIELDS:
            value = getattr(record, key, None)
            if value is not None:
                log_entry[key] = value
        if record.exc_info and record.exc_info[0] is not None:
            log_entry["error"] = redact_sensitive_text(self.formatException(record.exc_info))
        return json.dumps(log_entry)


def configure_logging() -> None:
    log_level = os.getenv("LOG_LEVEL", "INFO").upper()
    log_handler = logging.StreamHandler()
    log_handler.setFormatter(JSONFormatter())
    logging.root.addHandler(log_handler)
    logging.root.setLevel(getattr(logging, log_level, logging.INFO))


def build_dispatcher(cluster: ClusterClient, settings: Settings) -> tuple[Dispatcher, int]:
    """Load configuration from the Secret, list Records and start their tasks."""
    LOGGER.info(
        "Loading configuration from Secret %s/%s (key %s)",
        settings.secret_namespace,
        settings.secret,
        settings.secret_key,
    )
    document = cluster.read_secret_value(
        namespace=settings.secret_namespace,
        name=settings.secret,
        key=settings.secret_key,
    )
    configs = parse_config_document(document)
    LOGGER.info("Loaded %d configuration entries", len(configs))

    records = parse_records(cluster.list_records())
    dispatcher = Dispatcher(
        configs,
        cluster,
        namespace_override=settings.pod_namespace,
        max_backoff_seconds=settings.max_backoff_seconds,
    )
    started = dispatcher.start(records)
    return dispatcher, started


def main() -> None:
    """ARES entrypoint: configure logging, load configuration, and run every reconcile task."""
    configure_logging()
    METRICS.build_info.info(
        {
            "version": os.getenv("APP_VERSION", RUNTIME_VERSION),
            "revision": os.getenv("GIT_SHA", "unknown"),
        }
    )

    settings = load_settings()
    load_kube_configuration()
    core_api, custom_api = build_clients()
    cluster = ClusterClient(core_api=core_api, custom_api=custom_api)

    shutdown_event = threading.Event()

    def _handle_signal(signum: int, frame: object) -> None:
        LOGGER.info("Received signal %d, shutting down", signum)
        shutdown_event.set()

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    dispatcher, started = build_dispatcher(cluster, settings)
    LOGGER.info("Started %d reconcile task(s)", started)
    health_server = start_health_server(
        ready=dispatcher.ready,
        port=settings.health_port,
        status_provider=dispatcher.statuses,
    )

    shutdown_event.wait()

    dispatcher.stop()
    health_server.shutdown()
    LOGGER.info("ARES stopped")


if __name__ == "__main__":
    main()
