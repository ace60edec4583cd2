from __future__ import annotations

import logging
import random
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Protocol

from pingap_provider.src.errors import PublishCancelledError, TransientAPIError
from pingap_provider.src.metrics import METRICS
from pingap_provider.src.models import ServiceSpec


class ControlPlane(Protocol):
    def apply(self, spec: ServiceSpec) -> None: ...

    def delete(self, name: str) -> None: ...


@dataclass(frozen=True)
class BackoffPolicy:
    """Jittered exponential backoff for control-plane retries.

    The nominal delay before retry *n* is
    ``min(max_delay, initial_delay * multiplier ** (n - 1))``.  The actual
    delay is drawn uniformly between the previous nominal delay and this one
    (half of it for the first retry), so successive delays never shrink and
    never exceed ``max_delay``.
    """

    initial_delay: float = 0.5
    multiplier: float = 2.0
    max_delay: float = 30.0
    max_attempts: int = 5
    max_elapsed: float = 60.0

    def __post_init__(self) -> None:
        if self.initial_delay <= 0:
            raise ValueError(f"initial_delay must be > 0, got: {self.initial_delay}")
        if self.multiplier < 1:
            raise ValueError(f"multiplier must be >= 1, got: {self.multiplier}")
        if self.max_delay < self.initial_delay:
            raise ValueError("max_delay must be >= initial_delay")
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got: {self.max_attempts}")

    def nominal(self, retry: int) -> float:
        return min(self.max_delay, self.initial_delay * self.multiplier ** (retry - 1))

    def bounds(self, retry: int) -> tuple[float, float]:
        upper = self.nominal(retry)
        lower = upper / 2 if retry == 1 else self.nominal(retry - 1)
        return lower, upper

    def delay(self, retry: int) -> float:
        lower, upper = self.bounds(retry)
        return random.uniform(lower, upper)  # noqa: S311


class Publisher:
    """Applies one service change to the control plane, retrying transient failures.

    Upserts are full declarative writes and deletes tolerate missing objects,
    so a retried call converges to the same end state as a single one.
    Backoff sleeps wait on ``cancel``; setting it makes a sleeping publish
    raise :class:`PublishCancelledError` straight away.
    """

    def __init__(
        self,
        client: ControlPlane,
        policy: BackoffPolicy | None = None,
        *,
        cancel: threading.Event | None = None,
        logger: logging.Logger | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.client = client
        self.policy = policy or BackoffPolicy()
        self.cancel = cancel or threading.Event()
        self.logger = logger or logging.getLogger(__name__)
        self.clock = clock

    def publish(self, name: str, spec: ServiceSpec | None) -> int:
        """Upsert *spec* under *name*, or delete *name* when *spec* is ``None``.

        Returns the number of attempts made.  Raises the last
        :class:`TransientAPIError` once attempts or the elapsed budget run
        out; :class:`TerminalAPIError` is raised on the first occurrence.
        """
        action = "delete" if spec is None else "upsert"
        started = self.clock()
        attempt = 0
        while True:
            if self.cancel.is_set():
                raise PublishCancelledError(f"{action} of {name} cancelled before attempt")
            attempt += 1
            try:
                if spec is None:
                    self.client.delete(name)
                else:
                    self.client.apply(spec)
                return attempt
            except TransientAPIError as exc:
                if attempt >= self.policy.max_attempts:
                    self.logger.error(
                        "Giving up on %s of service %s after %d attempt(s): %s",
                        action,
                        name,
                        attempt,
                        exc,
                    )
                    raise

                delay = self.policy.delay(attempt)
                elapsed = self.clock() - started
                if elapsed + delay > self.policy.max_elapsed:
                    self.logger.error(
                        "Giving up on %s of service %s after %.1fs (%d attempt(s)): %s",
                        action,
                        name,
                        elapsed,
                        attempt,
                        exc,
                    )
                    raise

                self.logger.warning(
                    "Transient failure on %s of service %s (attempt %d); retrying in %.2fs: %s",
                    action,
                    name,
                    attempt,
                    delay,
                    exc,
                )
                METRICS.publish_retries_total.labels(action=action).inc()
                if self.cancel.wait(timeout=delay):
                    raise PublishCancelledError(
                        f"{action} of {name} cancelled during backoff"
                    ) from exc
