from __future__ import annotations

import os
import re
from collections.abc import Mapping
from dataclasses import dataclass, field

_DURATION_PART = re.compile(r"(\d+(?:\.\d*)?|\.\d+)(ns|us|µs|ms|s|m|h)")
_UNIT_SECONDS = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}


class ConfigError(RuntimeError):
    """Raised when the syncer configuration is invalid."""


@dataclass(frozen=True)
class SyncerConfig:
    """Immutable process configuration loaded once at startup.

    Durations are stored in seconds. ``system_namespaces`` never contains
    empty entries.
    """

    zms_url: str
    key_file: str = "/var/run/athenz/service.key.pem"
    cert_file: str = "/var/run/athenz/service.cert.pem"
    ca_file: str | None = None
    zms_timeout: float = 10.0
    update_interval: float = 60.0
    resync_interval: float = 3600.0
    queue_delay_interval: float = 0.25
    queue_backoff: str = "exponential"
    queue_max_delay: float = 300.0
    max_retry_attempts: int = 3
    conflict_retries: int = 3
    worker_count: int = 2
    cert_reload_interval: float = 30.0
    admin_domain: str = ""
    system_namespaces: tuple[str, ...] = field(default_factory=tuple)
    disable_keep_alives: bool = True
    log_location: str = ""
    log_level: str = "INFO"
    in_cluster_config: bool = True
    kubeconfig: str = ""
    health_port: int = 8080


def parse_bool(value: str | None, default: bool = False) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def parse_duration(value: str) -> float:
    """Parse a Go-style duration string (``1h0m0s``, ``250ms``, ``1.5s``) into seconds.

    A bare ``0`` is accepted. Anything else that does not fully match the
    ``<number><unit>`` grammar raises :class:`ValueError`.
    """
    raw = value.strip()
    if not raw:
        raise ValueError("empty duration")
    if raw == "0":
        return 0.0

    position = 0
    total = 0.0
    for match in _DURATION_PART.finditer(raw):
        if match.start() != position:
            raise ValueError(f"invalid duration {value!r}")
        total += float(match.group(1)) * _UNIT_SECONDS[match.group(2)]
        position = match.end()
    if position != len(raw):
        raise ValueError(f"invalid duration {value!r}")
    return total


def parse_namespace_list(value: str | None) -> tuple[str, ...]:
    """Split a comma-separated namespace list, dropping blanks."""
    if not value:
        return ()
    return tuple(item.strip() for item in value.split(",") if item.strip())


def _duration(values: Mapping[str, str], name: str, default: str, *, positive: bool = True) -> float:
    raw = values.get(name, default)
    try:
        seconds = parse_duration(raw)
    except ValueError as exc:
        raise ConfigError(f"{name} is not a valid duration: {raw!r}") from exc
    if positive and seconds <= 0:
        raise ConfigError(f"{name} must be greater than zero, got: {raw!r}")
    return seconds


def _integer(
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


def _default_kubeconfig(values: Mapping[str, str]) -> str:
    home = values.get("HOME") or values.get("USERPROFILE")
    if not home:
        return ""
    return os.path.join(home, ".kube", "config")


def load_config(env: Mapping[str, str] | None = None) -> SyncerConfig:
    """Load the syncer configuration from the environment.

    ``ZMS_URL`` is mandatory. Every duration uses Go syntax. Raises
    :class:`ConfigError` on the first invalid value so the process aborts
    before any client is constructed.
    """
    values = env if env is not None else os.environ

    zms_url = values.get("ZMS_URL", "").strip()
    if not zms_url:
        raise ConfigError("ZMS_URL must be set")
    if not zms_url.startswith(("https://", "http://")):
        raise ConfigError(f"ZMS_URL must be an http(s) URL, got: {zms_url!r}")

    queue_backoff = values.get("QUEUE_BACKOFF", "exponential").strip().lower()
    if queue_backoff not in {"fixed", "exponential"}:
        raise ConfigError(f"QUEUE_BACKOFF must be 'fixed' or 'exponential', got: {queue_backoff!r}")

    queue_delay_interval = _duration(values, "QUEUE_DELAY_INTERVAL", "250ms")
    queue_max_delay = _duration(values, "QUEUE_MAX_DELAY", "5m0s")
    if queue_max_delay < queue_delay_interval:
        raise ConfigError("QUEUE_MAX_DELAY must not be smaller than QUEUE_DELAY_INTERVAL")

    return SyncerConfig(
        zms_url=zms_url.rstrip("/"),
        key_file=values.get("ATHENZ_KEY_FILE", "/var/run/athenz/service.key.pem"),
        cert_file=values.get("ATHENZ_CERT_FILE", "/var/run/athenz/service.cert.pem"),
        ca_file=values.get("ATHENZ_CA_FILE") or None,
        zms_timeout=_duration(values, "ZMS_TIMEOUT", "10s"),
        update_interval=_duration(values, "UPDATE_CRON", "1m0s"),
        resync_interval=_duration(values, "RESYNC_CRON", "1h0m0s"),
        queue_delay_interval=queue_delay_interval,
        queue_backoff=queue_backoff,
        queue_max_delay=queue_max_delay,
        max_retry_attempts=_integer(values, "MAX_RETRY_ATTEMPTS", 3, minimum=1),
        conflict_retries=_integer(values, "CONFLICT_RETRIES", 3, minimum=0),
        worker_count=_integer(values, "WORKER_COUNT", 2, minimum=1, maximum=64),
        cert_reload_interval=_duration(values, "CERT_RELOAD_INTERVAL", "30s"),
        admin_domain=values.get("ADMIN_DOMAIN", "").strip(),
        system_namespaces=parse_namespace_list(values.get("SYSTEM_NAMESPACES")),
        disable_keep_alives=parse_bool(values.get("DISABLE_KEEP_ALIVES"), default=True),
        log_location=values.get("LOG_LOCATION", "").strip(),
        log_level=values.get("LOG_LEVEL", "INFO").strip().upper() or "INFO",
        in_cluster_config=parse_bool(values.get("IN_CLUSTER_CONFIG"), default=True),
        kubeconfig=values.get("KUBECONFIG") or _default_kubeconfig(values),
        health_port=_integer(values, "HEALTH_PORT", 8080, minimum=1, maximum=65535),
    )
