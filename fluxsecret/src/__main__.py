from __future__ import annotations

import json
import logging
import os
import re
import signal
import threading

from fluxsecret.src.config import load_options
from fluxsecret.src.kube import build_clients, load_kube_configuration
from fluxsecret.src.reconciler import VciReconciler
from fluxsecret.src.watcher import VciWatcher

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
        re.compile(r"(?i)(\"(?:token|key|certificate-authority-data)\"\s*:\s*\")([^\"]+)"),
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
    # The client logs request bodies at DEBUG, which include Secret data.
    logging.getLogger("kubernetes").setLevel(logging.WARNING)


def main() -> None:
    """Controller entrypoint: configure logging, build the reconciler, and run the watch loop."""
    configure_logging(os.getenv("LOG_LEVEL", "INFO"))
    options = load_options()

    load_kube_configuration()
    core_api, custom_api = build_clients()

    reconciler = VciReconciler(core_api=core_api, custom_api=custom_api, options=options)
    watcher = VciWatcher(custom_api=custom_api, reconciler=reconciler, options=options)

    shutdown_event = threading.Event()

    def _handle_signal(signum: int, frame: object) -> None:
        logging.getLogger(__name__).info("Received signal %d, shutting down", signum)
        shutdown_event.set()
        watcher.request_stop()

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    logging.getLogger(__name__).info(
        "Starting VCI Flux secret controller (selector=%r, namespaces=%s, workers=%d)",
        options.label_selector,
        ",".join(options.flux_namespace_patterns),
        options.workers,
    )
    watcher.run_forever(shutdown_event=shutdown_event)
    logging.getLogger(__name__).info("Controller stopped")


if __name__ == "__main__":
    main()
