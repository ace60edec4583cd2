from __future__ import annotations

import logging
import random
import threading
import time
from collections.abc import Callable, Iterable, Iterator
from typing import Protocol

from pingap_provider.src.engine import (
    CommandQueue,
    ContainerRemoved,
    ContainersResynced,
    ContainerUpserted,
)
from pingap_provider.src.errors import (
    EventStreamError,
    ResolutionError,
    RuntimeUnavailableError,
    ValidationError,
)
from pingap_provider.src.labels import compile_labels
from pingap_provider.src.metrics import METRICS
from pingap_provider.src.models import (
    ContainerRecord,
    ContainerStatus,
    RouteDescriptor,
    RuntimeEvent,
)
from pingap_provider.src.network import resolve_address

LOGGER = logging.getLogger(__name__)


class Subscription(Protocol):
    def __iter__(self) -> Iterator[RuntimeEvent]: ...

    def close(self) -> None: ...


class ContainerRuntime(Protocol):
    def list(self) -> list[ContainerRecord]: ...

    def inspect(self, container_id: str) -> ContainerRecord | None: ...

    def subscribe(self, since: int | None = None) -> Subscription: ...


def describe_container(
    record: ContainerRecord, logger: logging.Logger = LOGGER
) -> RouteDescriptor | None:
    """Compile and bind the route for *record*.

    Returns ``None`` when the container is not enabled or its route cannot be
    built; the reason is logged here so one bad container never affects the
    others.
    """
    try:
        return _describe(record, logger)
    except Exception:
        logger.exception("Skipping route for container %s: unexpected error", record.name)
        METRICS.invalid_containers_total.labels(reason="error").inc()
        return None


def _describe(record: ContainerRecord, logger: logging.Logger) -> RouteDescriptor | None:
    try:
        descriptor = compile_labels(record.labels, record.name)
    except ValidationError as exc:
        logger.warning(
            "Skipping route for container %s: invalid labels: %s",
            record.name,
            "; ".join(exc.problems),
        )
        METRICS.invalid_containers_total.labels(reason="validation").inc()
        return None
    if descriptor is None:
        return None

    try:
        address = resolve_address(
            record.networks, record.ports, record.labels, container=record.name
        )
    except ResolutionError as exc:
        logger.warning("Skipping route for container %s: %s", record.name, exc)
        METRICS.invalid_containers_total.labels(reason="resolution").inc()
        return None
    return descriptor.bind(address)


class EventIngestor:
    """Feeds container lifecycle changes from the runtime into the command queue.

    The loop is list-then-watch: a full listing seeds the engine, then the
    event stream is followed from the time that listing started.  Every
    event re-fetches the container, so the engine always sees current
    labels and networks rather than event attributes.

    Whenever the stream ends or fails, the loop backs off (jittered, 1 s
    doubling to a 30 s cap), performs exactly one full resync to recover
    anything missed while disconnected, and resubscribes from the resync
    time.  A saturated queue and :meth:`request_resync` also lead to a
    resync, without the backoff.
    """

    def __init__(
        self,
        runtime: ContainerRuntime,
        queue: CommandQueue,
        *,
        startup_attempts: int = 5,
        logger: logging.Logger | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.runtime = runtime
        self.queue = queue
        self.startup_attempts = startup_attempts
        self.logger = logger or LOGGER
        self.clock = clock

        self.ready = threading.Event()
        self._external_stop = threading.Event()
        self._resync_requested = threading.Event()
        self._active_subscription: Subscription | None = None
        self._subscription_lock = threading.Lock()

    def _should_stop(self, stop_event: threading.Event) -> bool:
        return stop_event.is_set() or self._external_stop.is_set()

    def _close_active_subscription(self) -> None:
        with self._subscription_lock:
            subscription = self._active_subscription
        if subscription is not None:
            subscription.close()

    def request_stop(self) -> None:
        """Request a cooperative stop and immediately interrupt the event stream."""
        self._external_stop.set()
        self._close_active_subscription()

    def request_resync(self) -> None:
        """Ask the loop to resync; the stream is closed so it happens promptly."""
        self._resync_requested.set()
        self._close_active_subscription()

    def _describe_all(
        self, records: Iterable[ContainerRecord]
    ) -> tuple[tuple[ContainerRecord, RouteDescriptor | None], ...]:
        return tuple((record, describe_container(record, self.logger)) for record in records)

    def resync(self, reason: str) -> int:
        """List every running container and post one :class:`ContainersResynced`.

        Returns the time (epoch seconds) taken just before listing, which is
        where the next subscription must start.
        """
        since = int(self.clock())
        entries = self._describe_all(self.runtime.list())
        self.queue.put(ContainersResynced(entries=entries))
        METRICS.resyncs_total.labels(reason=reason).inc()
        routed = sum(1 for _, descriptor in entries if descriptor is not None)
        self.logger.info(
            "Resynced %d running container(s), %d with routes (reason=%s)",
            len(entries),
            routed,
            reason,
        )
        return since

    def initial_sync(self, shutdown_event: threading.Event | None = None) -> int | None:
        """Perform the startup listing, retrying with jittered exponential backoff.

        Returns the subscription start time, or ``None`` if a stop was
        requested first.  Raises :class:`RuntimeUnavailableError` once
        ``startup_attempts`` listings have failed.
        """
        stop = shutdown_event or threading.Event()
        backoff_seconds = 1
        attempt = 0
        while not self._should_stop(stop):
            attempt += 1
            try:
                since = self.resync(reason="startup")
                self.ready.set()
                return since
            except Exception as exc:
                self.logger.exception(
                    "Initial container listing failed (attempt %d/%d)",
                    attempt,
                    self.startup_attempts,
                )
                if attempt >= self.startup_attempts:
                    raise RuntimeUnavailableError(
                        f"container runtime unavailable after {attempt} attempt(s): {exc}"
                    ) from exc

            jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
            stop.wait(timeout=jittered)
            backoff_seconds = min(backoff_seconds * 2, 30)
        return None

    def handle_event(self, event: RuntimeEvent) -> bool:
        """Turn one runtime event into a command; returns True if a resync is needed."""
        METRICS.events_total.labels(action=event.action).inc()
        try:
            record = self.runtime.inspect(event.container_id)
        except RuntimeUnavailableError as exc:
            if event.action == "start":
                self.logger.warning(
                    "Could not inspect started container %s; scheduling resync: %s",
                    event.container_id,
                    exc,
                )
                return True
            self.logger.warning(
                "Could not inspect container %s after %s; removing it: %s",
                event.container_id,
                event.action,
                exc,
            )
            record = None

        if record is not None and record.is_running:
            command = ContainerUpserted(record=record, descriptor=describe_container(record, self.logger))
        else:
            status = ContainerStatus.STOPPING if event.action == "stop" else ContainerStatus.REMOVED
            command = ContainerRemoved(container_id=event.container_id, status=status)

        if self.queue.put(command):
            return False
        self.logger.warning(
            "Command queue is full; dropping event for container %s and scheduling resync",
            event.container_id,
        )
        return True

    def _follow_stream(self, stop: threading.Event, since: int) -> tuple[str, int]:
        """Consume one subscription; returns why it ended and how many events it carried."""
        delivered = 0
        subscription = self.runtime.subscribe(since=since)
        with self._subscription_lock:
            self._active_subscription = subscription
        try:
            if self._resync_requested.is_set():
                return "resync", delivered
            for event in subscription:
                if self._should_stop(stop):
                    return "stopped", delivered
                delivered += 1
                if self.handle_event(event):
                    return "overflow", delivered
            return "ended", delivered
        finally:
            subscription.close()
            with self._subscription_lock:
                if self._active_subscription is subscription:
                    self._active_subscription = None

    def run_forever(
        self, since: int | None, shutdown_event: threading.Event | None = None
    ) -> None:
        """Follow container events until shutdown, resyncing after every gap."""
        stop = shutdown_event or threading.Event()
        backoff_seconds = 1
        stream_count = 0

        while not self._should_stop(stop):
            reason = "reconnect"
            delivered = 0
            if not self._resync_requested.is_set():
                if stream_count > 0:
                    METRICS.stream_reconnects_total.inc()
                stream_count += 1
                try:
                    ending, delivered = self._follow_stream(stop, since or int(self.clock()))
                    if ending == "overflow":
                        reason = "overflow"
                    elif ending == "ended" and not self._resync_requested.is_set():
                        self.logger.warning("Container event stream ended; reconnecting")
                except EventStreamError as exc:
                    if self._should_stop(stop) or self._resync_requested.is_set():
                        self.logger.debug("Event stream closed: %s", exc)
                    else:
                        self.logger.warning("Container event stream failed: %s", exc)
                        METRICS.stream_errors_total.inc()
                except Exception:
                    if self._should_stop(stop) or self._resync_requested.is_set():
                        self.logger.debug("Event stream closed", exc_info=True)
                    else:
                        self.logger.exception("Unexpected container event stream error")
                        METRICS.stream_errors_total.inc()

            if self._should_stop(stop):
                break

            if self._resync_requested.is_set():
                self._resync_requested.clear()
                reason = "periodic"
            elif reason == "reconnect":
                if delivered:
                    backoff_seconds = 1
                jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
                stop.wait(timeout=jittered)
                backoff_seconds = min(backoff_seconds * 2, 30)
                if self._should_stop(stop):
                    break

            since = self._resync_until_done(stop, reason)

        self.ready.clear()

    def _resync_until_done(self, stop: threading.Event, reason: str) -> int | None:
        backoff_seconds = 1
        while not self._should_stop(stop):
            try:
                return self.resync(reason=reason)
            except Exception:
                self.logger.exception("Container resync failed (reason=%s)", reason)
                METRICS.stream_errors_total.inc()
            jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
            stop.wait(timeout=jittered)
            backoff_seconds = min(backoff_seconds * 2, 30)
        return None

    def run_resync_timer(self, interval_seconds: int, shutdown_event: threading.Event) -> None:
        """Request a resync every *interval_seconds* until shutdown; 0 disables it."""
        if interval_seconds <= 0:
            return
        while not shutdown_event.wait(timeout=interval_seconds):
            if self._external_stop.is_set():
                return
            self.logger.debug("Periodic resync due")
            self.request_resync()
