from __future__ import annotations

import json
import logging
import os
import random
import re
import signal
import threading
from collections.abc import Callable

from pingap_provider.src.config import load_settings
from pingap_provider.src.docker_runtime import DockerRuntime
from pingap_provider.src.engine import CommandQueue, ReconcileEngine
from pingap_provider.src.errors import (
    ConfigError,
    ControlPlaneUnavailableError,
    ProviderError,
    RuntimeUnavailableError,
)
from pingap_provider.src.health import start_health_server
from pingap_provider.src.ingest import EventIngestor
from pingap_provider.src.metrics import METRICS
from pingap_provider.src.pingap import AdminClient
from pingap_provider.src.publisher import Publisher
from pingap_provider.src.shutdown import ShutdownCoordinator

RUNTIME_VERSION = "0.1.0"
LOGGER = logging.getLogger(__name__)
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
    (
        re.compile(r"(?i)(\b[a-z][a-z0-9+.-]*://[^/\s:@]+:)([^/\s@]+)(@)"),
        r"\1[REDACTED]\3",
    ),
    (
        re.compile(r"(?i)(basic_auth\s*[:=]\s*)([^\s,;]+)"),
        r"\1[REDACTED]",
    ),
    (
        re.compile(
            r"""(?i)(['"]credentials['"]\s*(?:,\s*['"]value['"]\s*:|[,:])\s*['"])([^'"]+)"""
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
    logging.root.setLevel(getattr(logging, level.upper(), logging.INFO))
    # urllib3 logs every pooled connection at DEBUG, including the admin URL.
    logging.getLogger("urllib3").setLevel(max(logging.root.level, logging.INFO))


def wait_until_reachable(
    name: str,
    check: Callable[[], None],
    attempts: int,
    stop: threading.Event,
    error_cls: type[ProviderError],
) -> bool:
    """Call *check* until it succeeds, with jittered exponential backoff.

    Returns False if *stop* was set while waiting.  Raises *error_cls* after
    *attempts* failures.
    """
    backoff_seconds = 1
    for attempt in range(1, attempts + 1):
        try:
            check()
            LOGGER.info("%s is reachable", name)
            return True
        except Exception as exc:
            if attempt >= attempts:
                raise error_cls(f"{name} unreachable after {attempt} attempt(s): {exc}") from exc
            LOGGER.warning("%s not reachable (attempt %d/%d): %s", name, attempt, attempts, exc)

        jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
        if stop.wait(timeout=jittered):
            return False
        backoff_seconds = min(backoff_seconds * 2, 30)
    return False


def _supervised(
    name: str,
    target: Callable[[], None],
    shutdown_event: threading.Event,
) -> threading.Thread:
    """Run *target* in a daemon thread; an exit without a stop signal ends the process."""

    def _run() -> None:
        unexpected_exit = False
        try:
            target()
            unexpected_exit = not shutdown_event.is_set()
            if unexpected_exit:
                LOGGER.error("%s thread exited without a stop signal; terminating process", name)
        except Exception:
            unexpected_exit = True
            LOGGER.exception("%s thread crashed", name)
        finally:
            if unexpected_exit:
                shutdown_event.set()

    thread = threading.Thread(target=_run, name=name, daemon=True)
    thread.start()
    return thread


def main() -> None:
    """Provider entrypoint: check dependencies, start the loops and wait for a signal."""
    configure_logging(os.getenv("LOG_LEVEL", "INFO"))
    METRICS.build_info.info(
        {
            "version": os.getenv("APP_VERSION", RUNTIME_VERSION),
            "revision": os.getenv("GIT_SHA", "unknown"),
        }
    )

    try:
        settings = load_settings()
    except ConfigError as exc:
        LOGGER.error("Invalid configuration: %s", exc)
        raise SystemExit(2) from exc
    logging.root.setLevel(getattr(logging, settings.log_level, logging.INFO))

    shutdown_event = threading.Event()

    def _handle_signal(signum: int, frame: object) -> None:
        LOGGER.info("Received signal %d, shutting down", signum)
        shutdown_event.set()

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    runtime = DockerRuntime.from_host(settings.docker_host, timeout=settings.http_timeout_seconds)
    admin = AdminClient(settings.admin_url, timeout=settings.http_timeout_seconds)
    cancel = threading.Event()
    publisher = Publisher(admin, settings.backoff_policy(), cancel=cancel)
    queue = CommandQueue(maxsize=settings.queue_max_size)
    engine = ReconcileEngine(
        publisher,
        queue,
        debounce_seconds=settings.debounce_seconds,
        retry_seconds=float(settings.retry_seconds),
        concurrency=settings.publish_concurrency,
    )
    ingestor = EventIngestor(runtime, queue, startup_attempts=settings.startup_attempts)
    health_server = start_health_server(
        ready=ingestor.ready, port=settings.health_port, engine_alive=engine.healthy
    )

    threads: list[threading.Thread] = []
    exit_code = 0
    try:
        if not wait_until_reachable(
            "docker daemon",
            runtime.ping,
            settings.startup_attempts,
            shutdown_event,
            RuntimeUnavailableError,
        ):
            return
        if not wait_until_reachable(
            "pingap admin API",
            admin.ping,
            settings.startup_attempts,
            shutdown_event,
            ControlPlaneUnavailableError,
        ):
            return

        threads.append(
            _supervised("engine", lambda: engine.run_forever(shutdown_event), shutdown_event)
        )
        since = ingestor.initial_sync(shutdown_event)
        if since is None:
            return
        threads.append(
            _supervised(
                "ingest", lambda: ingestor.run_forever(since, shutdown_event), shutdown_event
            )
        )
        if settings.resync_interval_seconds > 0:
            threading.Thread(
                target=ingestor.run_resync_timer,
                args=(settings.resync_interval_seconds, shutdown_event),
                name="resync-timer",
                daemon=True,
            ).start()

        LOGGER.info("Provider started; syncing containers to %s", settings.admin_url)
        shutdown_event.wait()
    except (RuntimeUnavailableError, ControlPlaneUnavailableError) as exc:
        LOGGER.error("Startup failed: %s", exc)
        exit_code = 1
    finally:
        shutdown_event.set()
        report = ShutdownCoordinator(
            ingestor,
            engine,
            cancel,
            timeout_seconds=settings.shutdown_timeout_seconds,
            deregister=settings.deregister_on_shutdown,
            threads=threads,
        ).shutdown()
        health_server.shutdown()
        admin.close()
        runtime.close()
        LOGGER.info(
            "Provider stopped (drained=%s, deregistered=%d, abandoned=%d)",
            report.drained,
            len(report.deregistered),
            len(report.abandoned),
        )

    if exit_code:
        raise SystemExit(exit_code)


if __name__ == "__main__":
    main()
