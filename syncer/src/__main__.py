from __future__ import annotations

import json
import logging
import os
import re
import signal
import threading

from syncer.src.config import ConfigError, load_config
from syncer.src.controller import build_controller
from syncer.src.credentials import CertReloader
from syncer.src.health import start_health_server
from syncer.src.kube import build_clients, load_kube_configuration
from syncer.src.metrics import METRICS
from syncer.src.zms import ZMSClient

RUNTIME_VERSION = "0.1.0"

# Applied in order to every message and traceback before it is written.
_SECRET_PATTERNS: list[tuple[re.Pattern[str], str]] = [
    # PEM private keys, e.g. from a misconfigured ATHENZ_KEY_FILE echoed in an error.
    (
        re.compile(r"-----BEGIN [A-Z ]*PRIVATE KEY-----.*?-----END [A-Z ]*PRIVATE KEY-----", re.S),
        "[REDACTED PRIVATE KEY]",
    ),
    # Athenz principal tokens carry their signature in the ``s=`` field.
    (re.compile(r"(\bv=[US]1;[^\s]*?;s=)([^\s;]+)"), r"\1[REDACTED]"),
    (re.compile(r"(?i)(athenz-principal-auth\s*[:=]\s*)(\S+)"), r"\1[REDACTED]"),
    (re.compile(r"(?i)(bearer\s+)([A-Za-z0-9._~+/=-]+)"), r"\1[REDACTED]"),
    (
        re.compile(r"(?i)(\b(?:authorization|token|password|secret|api[_-]?key)\b\s*[:=]\s*)([^\s,;]+)"),
        r"\1[REDACTED]",
    ),
]


def redact_sensitive_text(value: str) -> str:
    for pattern, replacement in _SECRET_PATTERNS:
        value = pattern.sub(replacement, value)
    return value


class JSONFormatter(logging.Formatter):
    """One JSON object per line: ``ts``, ``level``, ``logger``, ``thread``, ``msg`` and ``error``."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "ts": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "thread": record.threadName,
            "msg": redact_sensitive_text(record.getMessage()),
        }
        if record.exc_info and record.exc_info[0] is not None:
            entry["error"] = redact_sensitive_text(self.formatException(record.exc_info))
        return json.dumps(entry)


def configure_logging(level: str, location: str = "") -> None:
    """Send JSON logs to stderr and, when ``location`` is set, to that file too."""
    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if location:
        directory = os.path.dirname(location)
        if directory:
            os.makedirs(directory, exist_ok=True)
        handlers.append(logging.FileHandler(location))
    for handler in handlers:
        handler.setFormatter(JSONFormatter())
        logging.root.addHandler(handler)
    logging.root.setLevel(getattr(logging, level.upper(), logging.INFO))


def main() -> None:
    """Syncer entrypoint: load config, build clients, and run until SIGTERM/SIGINT."""
    logger = logging.getLogger(__name__)
    try:
        config = load_config()
    except ConfigError:
        configure_logging(os.getenv("LOG_LEVEL", "INFO"))
        logger.exception("Invalid syncer configuration")
        raise SystemExit(1) from None

    configure_logging(config.log_level, config.log_location)
    METRICS.build_info.info(
        {
            "version": os.getenv("APP_VERSION", RUNTIME_VERSION),
            "revision": os.getenv("GIT_SHA", "unknown"),
        }
    )

    try:
        load_kube_configuration(in_cluster=config.in_cluster_config, kubeconfig=config.kubeconfig)
        core_api, custom_api = build_clients()
        logger.info("Constructed Kubernetes clients")
        reloader = CertReloader(
            key_file=config.key_file,
            cert_file=config.cert_file,
            ca_file=config.ca_file,
            poll_interval=config.cert_reload_interval,
        )
        zms_client = ZMSClient(
            base_url=config.zms_url,
            credentials=reloader,
            timeout=config.zms_timeout,
            disable_keep_alives=config.disable_keep_alives,
        )
        logger.info("Constructed ZMS client for %s", config.zms_url)
    except Exception:
        logger.exception("Fatal error during startup")
        raise SystemExit(1) from None

    shutdown_event = threading.Event()

    def _handle_signal(signum: int, frame: object) -> None:
        logger.info("Received signal %d, shutting down", signum)
        shutdown_event.set()

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    reloader.start(shutdown_event)
    controller = build_controller(config, core_api, custom_api, zms_client)
    health_server = start_health_server(ready=controller.ready, port=config.health_port)
    try:
        controller.run_forever(shutdown_event=shutdown_event)
    finally:
        zms_client.close()
        health_server.shutdown()
    logger.info("Syncer stopped")


if __name__ == "__main__":
    main()
