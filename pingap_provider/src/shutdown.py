from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass

from pingap_provider.src.engine import ReconcileEngine
from pingap_provider.src.ingest import EventIngestor


@dataclass(frozen=True)
class ShutdownReport:
    """Outcome of a graceful shutdown.

    ``drained`` is False when publishes were still running at the deadline;
    their service names are listed in ``abandoned``.
    """

    drained: bool
    deregistered: tuple[str, ...] = ()
    abandoned: tuple[str, ...] = ()


class ShutdownCoordinator:
    """Stops the provider in dependency order within one time budget.

    Ingestion stops first so no new commands arrive, then the engine loop.
    The engine is drained on the calling thread: queued commands are applied,
    a final pass runs and in-flight publishes are awaited until the deadline.
    Optionally every confirmed service is then deleted.  Finally ``cancel``
    is set so any publish still sleeping in backoff gives up immediately.
    """

    def __init__(
        self,
        ingestor: EventIngestor,
        engine: ReconcileEngine,
        cancel: threading.Event,
        *,
        timeout_seconds: float = 20.0,
        deregister: bool = False,
        threads: Sequence[threading.Thread] = (),
        logger: logging.Logger | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.ingestor = ingestor
        self.engine = engine
        self.cancel = cancel
        self.timeout_seconds = timeout_seconds
        self.deregister = deregister
        self.threads = tuple(threads)
        self.logger = logger or logging.getLogger(__name__)
        self.clock = clock

    def _join_threads(self, deadline: float) -> bool:
        stopped = True
        for thread in self.threads:
            thread.join(timeout=max(0.0, deadline - self.clock()))
            if thread.is_alive():
                self.logger.error("Thread %s did not stop before the shutdown deadline", thread.name)
                stopped = False
        return stopped

    def shutdown(self) -> ShutdownReport:
        deadline = self.clock() + self.timeout_seconds
        self.logger.info("Shutting down (budget %.0fs)", self.timeout_seconds)

        self.ingestor.request_stop()
        self.engine.request_stop()
        if not self._join_threads(deadline):
            self.cancel.set()
            self.engine.close()
            return ShutdownReport(drained=False, abandoned=tuple(self.engine.in_flight))

        drained = self.engine.drain(deadline)
        deregistered: tuple[str, ...] = ()
        if self.deregister:
            deregistered = tuple(self.engine.deregister_all(deadline))
            self.logger.info("Deregistered %d service(s) from the control plane", len(deregistered))

        abandoned = tuple(self.engine.in_flight)
        self.cancel.set()
        self.engine.close()

        if abandoned:
            self.logger.warning(
                "Abandoning %d in-flight publish(es) at shutdown: %s",
                len(abandoned),
                ", ".join(abandoned),
            )
        else:
            self.logger.info("Shutdown complete; all publishes settled")
        return ShutdownReport(
            drained=drained and not abandoned,
            deregistered=deregistered,
            abandoned=abandoned,
        )
