from __future__ import annotations

import logging
import threading
import time
from collections import OrderedDict
from collections.abc import Callable, Hashable
from concurrent.futures import Executor, Future, ThreadPoolExecutor
from dataclasses import dataclass

from pingap_provider.src.errors import PublishCancelledError, TerminalAPIError, TransientAPIError
from pingap_provider.src.metrics import METRICS
from pingap_provider.src.models import (
    Change,
    ContainerRecord,
    ContainerStatus,
    RouteDescriptor,
    ServiceSpec,
)
from pingap_provider.src.publisher import Publisher
from pingap_provider.src.registry import build_registry, diff_registry
from pingap_provider.src.store import StateStore


@dataclass(frozen=True)
class ContainerUpserted:
    record: ContainerRecord
    descriptor: RouteDescriptor | None


@dataclass(frozen=True)
class ContainerRemoved:
    container_id: str
    status: ContainerStatus = ContainerStatus.REMOVED


@dataclass(frozen=True)
class ContainersResynced:
    entries: tuple[tuple[ContainerRecord, RouteDescriptor | None], ...]


@dataclass(frozen=True)
class ReconcileNow:
    pass


@dataclass(frozen=True)
class PublishCompleted:
    """Result of one publish, posted back to the engine by a publisher worker.

    ``outcome`` is ``applied``, ``rejected`` (terminal control-plane error),
    ``failed`` (retries exhausted) or ``cancelled`` (shutdown).
    """

    service: str
    spec: ServiceSpec | None
    outcome: str
    error: str | None = None


Command = (
    ContainerUpserted | ContainerRemoved | ContainersResynced | ReconcileNow | PublishCompleted
)


class CommandQueue:
    """Bounded, coalescing queue feeding the reconcile engine.

    Container commands are keyed by container id and coalesce: a newer
    command for a queued container replaces it in place.  A resync
    supersedes every queued container command.  When ``maxsize`` container
    keys are already queued, a command for a new container is rejected and
    :meth:`put` returns ``False``; the producer is expected to answer with a
    resync.  Publish completions are never rejected or coalesced.
    """

    def __init__(self, maxsize: int = 1024) -> None:
        if maxsize < 1:
            raise ValueError(f"maxsize must be >= 1, got: {maxsize}")
        self.maxsize = maxsize
        self._items: OrderedDict[Hashable, Command] = OrderedDict()
        self._container_keys = 0
        self._completions = 0
        self._cond = threading.Condition()

    def __len__(self) -> int:
        with self._cond:
            return len(self._items)

    def _key(self, command: Command) -> Hashable:
        if isinstance(command, ContainerUpserted):
            return ("container", command.record.id)
        if isinstance(command, ContainerRemoved):
            return ("container", command.container_id)
        if isinstance(command, ContainersResynced):
            return ("resync",)
        if isinstance(command, ReconcileNow):
            return ("reconcile",)
        self._completions += 1
        return ("completion", self._completions)

    def put(self, command: Command) -> bool:
        with self._cond:
            key = self._key(command)
            if isinstance(command, ContainersResynced):
                for queued in [k for k in self._items if k[0] == "container"]:
                    del self._items[queued]
                self._container_keys = 0
                self._items.pop(key, None)
                self._items[key] = command
            elif key in self._items:
                self._items[key] = command
            else:
                if key[0] == "container":
                    if self._container_keys >= self.maxsize:
                        METRICS.queue_rejections_total.inc()
                        return False
                    self._container_keys += 1
                self._items[key] = command
            METRICS.queue_depth.set(len(self._items))
            self._cond.notify()
            return True

    def _pop_first(self) -> Command:
        key, command = self._items.popitem(last=False)
        if key[0] == "container":
            self._container_keys -= 1
        METRICS.queue_depth.set(len(self._items))
        return command

    def get(self, timeout: float | None = None) -> Command | None:
        """Return the oldest command, or ``None`` if none arrived within *timeout*.

        Also returns ``None`` early when :meth:`interrupt` is called.
        """
        with self._cond:
            if not self._items:
                self._cond.wait(timeout=timeout)
            if not self._items:
                return None
            return self._pop_first()

    def drain(self) -> list[Command]:
        with self._cond:
            commands = []
            while self._items:
                commands.append(self._pop_first())
            return commands

    def interrupt(self) -> None:
        with self._cond:
            self._cond.notify_all()


class ReconcileEngine:
    """Single-writer actor that owns the state store and the published snapshot.

    Commands arrive through a :class:`CommandQueue`.  Every store mutation
    re-arms a trailing debounce deadline, so a burst of container events
    results in one reconciliation pass.  A pass builds the target registry,
    diffs it against ``confirmed`` and hands each change to a publisher
    worker.  Workers never touch engine state: they post a
    :class:`PublishCompleted` command back through the queue.

    Key internal state:
        ``confirmed``
            Service name to the spec the control plane acknowledged.
        ``_in_flight``
            Services with a publish running; at most one per service.
        ``_deferred``
            Services whose change was skipped because a publish was still in
            flight; a pass runs as soon as that publish completes.
        ``_rejected``
            Service name to the spec (``None`` for a delete) the control plane
            rejected; the same change is not sent again until it differs.
        ``_due_at``
            Monotonic time of the next scheduled pass, or ``None``.
    """

    def __init__(
        self,
        publisher: Publisher,
        queue: CommandQueue,
        *,
        debounce_seconds: float = 0.5,
        retry_seconds: float = 30.0,
        concurrency: int = 4,
        executor: Executor | None = None,
        logger: logging.Logger | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.publisher = publisher
        self.queue = queue
        self.debounce_seconds = debounce_seconds
        self.retry_seconds = retry_seconds
        self.logger = logger or logging.getLogger(__name__)
        self.clock = clock
        self._executor = executor or ThreadPoolExecutor(
            max_workers=concurrency, thread_name_prefix="publisher"
        )

        self.store = StateStore()
        self.confirmed: dict[str, ServiceSpec] = {}
        self._target: dict[str, ServiceSpec] = {}
        self._in_flight: dict[str, Future] = {}
        self._deferred: set[str] = set()
        self._rejected: dict[str, ServiceSpec | None] = {}
        self._due_at: float | None = None
        self._external_stop = threading.Event()
        self.running = threading.Event()
        self._heartbeat = 0.0

    @property
    def in_flight(self) -> list[str]:
        return sorted(self._in_flight)

    @property
    def due_at(self) -> float | None:
        return self._due_at

    def _mark_dirty(self, now: float) -> None:
        self._due_at = now + self.debounce_seconds

    def _schedule(self, at: float) -> None:
        if self._due_at is None or at < self._due_at:
            self._due_at = at

    def handle(self, command: Command, now: float) -> None:
        if isinstance(command, ContainerUpserted):
            self.store.upsert(command.record, command.descriptor)
            self._mark_dirty(now)
        elif isinstance(command, ContainerRemoved):
            if self.store.remove(command.container_id, command.status):
                self._mark_dirty(now)
            else:
                self.logger.debug("Ignoring removal of untracked container %s", command.container_id)
        elif isinstance(command, ContainersResynced):
            missing = self.store.resync(command.entries)
            if missing:
                self.logger.info(
                    "Resync found %d tracked container(s) no longer running: %s",
                    len(missing),
                    ", ".join(missing),
                )
            self._mark_dirty(now)
        elif isinstance(command, ReconcileNow):
            self._schedule(now)
        elif isinstance(command, PublishCompleted):
            self._complete(command, now)
        METRICS.tracked_containers.set(len(self.store))

    def _complete(self, result: PublishCompleted, now: float) -> None:
        self._in_flight.pop(result.service, None)
        METRICS.publishes_in_flight.set(len(self._in_flight))
        action = "delete" if result.spec is None else "upsert"
        METRICS.publishes_total.labels(action=action, outcome=result.outcome).inc()

        if result.outcome == "applied":
            if result.spec is None:
                self.confirmed.pop(result.service, None)
            else:
                self.confirmed[result.service] = result.spec
            self._rejected.pop(result.service, None)
            self.logger.info("Published %s of service %s", action, result.service)
        elif result.outcome == "rejected":
            self._rejected[result.service] = result.spec
            self.logger.error(
                "Control plane rejected %s of service %s; not retrying until it changes: %s",
                action,
                result.service,
                result.error,
            )
        else:
            retry_at = now + self.retry_seconds
            self._schedule(retry_at)
            self.logger.warning(
                "%s of service %s %s; retrying in %.0fs",
                action.capitalize(),
                result.service,
                result.outcome,
                self.retry_seconds,
            )
        METRICS.published_services.set(len(self.confirmed))

        if result.service in self._deferred:
            self._deferred.discard(result.service)
            self._schedule(now)
        self.store.purge(self._is_settled)

    def _is_settled(self, service: str) -> bool:
        if service in self._in_flight:
            return False
        rejected_delete = service in self._rejected and self._rejected[service] is None
        if rejected_delete and service not in self._target:
            return True
        return self._target.get(service) == self.confirmed.get(service)

    def reconcile(self, now: float) -> list[Change]:
        """Run one reconciliation pass and return the changes it dispatched."""
        started = time.perf_counter()
        self._due_at = None
        self.store.dirty = False
        self._deferred.clear()

        target = build_registry(self.store.live_descriptors())
        dispatched: list[Change] = []
        for change in diff_registry(target, self.confirmed):
            if change.service in self._in_flight:
                self._deferred.add(change.service)
                self.logger.debug(
                    "Deferring %s of service %s until its in-flight publish completes",
                    change.action,
                    change.service,
                )
                continue
            if change.service in self._rejected:
                if self._rejected[change.service] == change.spec:
                    continue
                del self._rejected[change.service]
            self._dispatch(change)
            dispatched.append(change)

        for service in [s for s in self._rejected if s not in target and s not in self.confirmed]:
            del self._rejected[service]

        self._target = target
        purged = self.store.purge(self._is_settled)
        if purged:
            self.logger.debug("Purged %d removed container(s) from the store", len(purged))

        METRICS.reconcile_passes_total.inc()
        METRICS.reconcile_duration_seconds.observe(time.perf_counter() - started)
        METRICS.tracked_containers.set(len(self.store))
        if dispatched:
            self.logger.info(
                "Reconciliation dispatched %d change(s): %s",
                len(dispatched),
                ", ".join(f"{c.action} {c.service}" for c in dispatched),
            )
        return dispatched

    def _dispatch(self, change: Change) -> None:
        # The completion command is handled on the engine thread, so the entry
        # is always registered before it can be popped.
        self._in_flight[change.service] = self._executor.submit(
            self._run_publish, change.service, change.spec
        )
        METRICS.publishes_in_flight.set(len(self._in_flight))

    def _run_publish(self, service: str, spec: ServiceSpec | None) -> None:
        started = time.monotonic()
        error: str | None = None
        try:
            self.publisher.publish(service, spec)
            outcome = "applied"
        except TerminalAPIError as exc:
            outcome, error = "rejected", str(exc)
        except PublishCancelledError as exc:
            outcome, error = "cancelled", str(exc)
        except TransientAPIError as exc:
            outcome, error = "failed", str(exc)
        except Exception as exc:
            self.logger.exception("Unexpected error publishing service %s", service)
            outcome, error = "failed", str(exc)
        METRICS.publish_latency_seconds.observe(time.monotonic() - started)
        self.queue.put(PublishCompleted(service=service, spec=spec, outcome=outcome, error=error))

    def run_due(self, now: float) -> list[Change]:
        if self._due_at is None or now < self._due_at:
            return []
        return self.reconcile(now)

    def process_pending(self, now: float) -> int:
        """Apply every queued command without blocking; returns how many were handled."""
        commands = self.queue.drain()
        for command in commands:
            self.handle(command, now)
        return len(commands)

    def _next_wait_seconds(self, now: float) -> float:
        if self._due_at is None:
            return 1.0
        return min(1.0, max(0.0, self._due_at - now))

    def request_stop(self) -> None:
        """Ask :meth:`run_forever` to return and wake it if it is waiting."""
        self._external_stop.set()
        self.queue.interrupt()

    def _should_stop(self, stop_event: threading.Event) -> bool:
        return stop_event.is_set() or self._external_stop.is_set()

    def run_forever(self, shutdown_event: threading.Event | None = None) -> None:
        """Process commands and scheduled passes until asked to stop.

        Errors while handling one command or running one pass are logged and
        a retry pass is scheduled; they never end the loop.
        """
        stop = shutdown_event or threading.Event()
        self._heartbeat = self.clock()
        self.running.set()
        try:
            while not self._should_stop(stop):
                command = self.queue.get(timeout=self._next_wait_seconds(self.clock()))
                now = self.clock()
                self._heartbeat = now
                if command is not None:
                    try:
                        self.handle(command, now)
                    except Exception:
                        self.logger.exception("Failed to handle %s", type(command).__name__)
                try:
                    self.run_due(now)
                except Exception:
                    self.logger.exception("Reconciliation pass failed")
                    self._schedule(now + self.retry_seconds)
        finally:
            self.running.clear()

    def healthy(self, stall_seconds: float = 30.0) -> bool:
        """True while :meth:`run_forever` is looping and has not stalled."""
        return self.running.is_set() and self.clock() - self._heartbeat < stall_seconds

    def _wait_for_in_flight(self, deadline: float, *, reconcile: bool = True) -> None:
        while self._in_flight:
            now = self.clock()
            remaining = deadline - now
            if remaining <= 0:
                return
            command = self.queue.get(timeout=min(remaining, 0.5))
            now = self.clock()
            if command is not None:
                self.handle(command, now)
            if reconcile:
                self.run_due(now)

    def drain(self, deadline: float) -> bool:
        """Apply queued commands, run a final pass and wait for in-flight publishes.

        Must only be called once :meth:`run_forever` has returned.  Waits
        until the monotonic *deadline*; returns True when nothing is left in
        flight.
        """
        now = self.clock()
        self.process_pending(now)
        if self.store.dirty or self._due_at is not None:
            self.reconcile(now)
        self._wait_for_in_flight(deadline)
        self.process_pending(self.clock())
        return not self._in_flight

    def deregister_all(self, deadline: float) -> list[str]:
        """Delete every confirmed service and return the names that were removed."""
        names = sorted(self.confirmed)
        for name in names:
            if name not in self._in_flight:
                self._dispatch(Change(service=name, spec=None))
        self._target = {}
        self._due_at = None
        self._wait_for_in_flight(deadline, reconcile=False)
        self.process_pending(self.clock())
        return [name for name in names if name not in self.confirmed]

    def close(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)
