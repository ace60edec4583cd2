from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass
from urllib.parse import urlparse

from pingap_provider.src.errors import ConfigError
from pingap_provider.src.publisher import BackoffPolicy


def parse_bool(value: str | None, default: bool = False) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def env_int(
    name: str,
    default: int,
    *,
    minimum: int | None = None,
    maximum: int | None = None,
    env: Mapping[str, str] | None = None,
) -> int:
    values = env if env is not None else os.environ
    raw = values.get(name)
    if raw is None:
        value = default
    else:
        try:
            value = int(raw)
        except ValueError as exc:
            raise ConfigError(f"{name} must be an integer, got: {raw!r}") from exc

    if minimum is not None and value < minimum:
        raise ConfigError(f"{name} must be >= {minimum}, got: {value}")
    if maximum is not None and value > maximum:
        raise ConfigError(f"{name} must be <= {maximum}, got: {value}")
    return value


@dataclass(frozen=True)
class Settings:
    """Immutable provider configuration loaded at startup.

    Durations keep the unit of the environment variable they come from;
    use the ``*_seconds`` properties where a float is needed.
    """

    admin_url: str
    docker_host: str | None = None
    log_level: str = "INFO"
    debounce_ms: int = 500
    retry_seconds: int = 30
    resync_interval_seconds: int = 300
    queue_max_size: int = 1024
    publish_concurrency: int = 4
    publish_max_attempts: int = 5
    publish_max_elapsed_seconds: int = 60
    publish_initial_backoff_ms: int = 500
    publish_max_backoff_seconds: int = 30
    http_timeout_seconds: int = 10
    startup_attempts: int = 5
    shutdown_timeout_seconds: int = 20
    deregister_on_shutdown: bool = False
    health_port: int = 8080

    @property
    def debounce_seconds(self) -> float:
        return self.debounce_ms / 1000

    def backoff_policy(self) -> BackoffPolicy:
        return BackoffPolicy(
            initial_delay=self.publish_initial_backoff_ms / 1000,
            multiplier=2.0,
            max_delay=float(self.publish_max_backoff_seconds),
            max_attempts=self.publish_max_attempts,
            max_elapsed=float(self.publish_max_elapsed_seconds),
        )


def _admin_url(values: Mapping[str, str]) -> str:
    raw = (values.get("PINGAP_ADMIN_URL") or "").strip()
    if not raw:
        raise ConfigError("PINGAP_ADMIN_URL is not set")
    parsed = urlparse(raw)
    if parsed.scheme not in {"http", "https"} or not parsed.netloc:
        raise ConfigError(f"PINGAP_ADMIN_URL must be an http(s) URL, got: {raw!r}")
    return raw.rstrip("/")


def load_settings(env: Mapping[str, str] | None = None) -> Settings:
    """Load settings from the environment, raising :class:`ConfigError` on bad values.

    ``PINGAP_ADMIN_URL`` is the only required variable.
    """
    values = env if env is not None else os.environ

    def _int(name: str, default: int, **bounds: int) -> int:
        return env_int(name, default, env=values, **bounds)

    initial_backoff_ms = _int("PUBLISH_INITIAL_BACKOFF_MS", 500, minimum=1)
    max_backoff_seconds = _int("PUBLISH_MAX_BACKOFF_SECONDS", 30, minimum=1)
    if max_backoff_seconds * 1000 < initial_backoff_ms:
        raise ConfigError(
            "PUBLISH_MAX_BACKOFF_SECONDS must not be smaller than PUBLISH_INITIAL_BACKOFF_MS"
        )

    return Settings(
        admin_url=_admin_url(values),
        docker_host=(values.get("DOCKER_HOST") or "").strip() or None,
        log_level=(values.get("LOG_LEVEL") or "info").strip().upper(),
        debounce_ms=_int("RECONCILE_DEBOUNCE_MS", 500, minimum=0),
        retry_seconds=_int("RECONCILE_RETRY_SECONDS", 30, minimum=1),
        resync_interval_seconds=_int("RESYNC_INTERVAL_SECONDS", 300, minimum=0),
        queue_max_size=_int("QUEUE_MAX_SIZE", 1024, minimum=1),
        publish_concurrency=_int("PUBLISH_CONCURRENCY", 4, minimum=1, maximum=64),
        publish_max_attempts=_int("PUBLISH_MAX_ATTEMPTS", 5, minimum=1),
        publish_max_elapsed_seconds=_int("PUBLISH_MAX_ELAPSED_SECONDS", 60, minimum=1),
        publish_initial_backoff_ms=initial_backoff_ms,
        publish_max_backoff_seconds=max_backoff_seconds,
        http_timeout_seconds=_int("HTTP_TIMEOUT_SECONDS", 10, minimum=1),
        startup_attempts=_int("STARTUP_ATTEMPTS", 5, minimum=1),
        shutdown_timeout_seconds=_int("SHUTDOWN_TIMEOUT_SECONDS", 20, minimum=1),
        deregister_on_shutdown=parse_bool(values.get("DEREGISTER_ON_SHUTDOWN")),
        health_port=_int("HEALTH_PORT", 8080, minimum=1, maximum=65535),
    )
