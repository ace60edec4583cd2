from __future__ import annotations

from collections.abc import Callable, Iterable
from dataclasses import dataclass, replace

from pingap_provider.src.models import ContainerRecord, ContainerStatus, RouteDescriptor


@dataclass
class TrackedContainer:
    record: ContainerRecord
    descriptor: RouteDescriptor | None
    sequence: int


class StateStore:
    """Tracked containers and their compiled routes.

    Not thread-safe: the reconcile engine is the only reader and writer.

    Every mutation sets ``dirty`` so the engine knows a reconciliation pass is
    owed.  Removed containers are kept with a non-running status until
    :meth:`purge` confirms their routes have been withdrawn, so a failed
    delete is retried rather than forgotten.
    """

    def __init__(self) -> None:
        self._containers: dict[str, TrackedContainer] = {}
        self._sequence = 0
        self.dirty = False

    def __len__(self) -> int:
        return len(self._containers)

    def __contains__(self, container_id: object) -> bool:
        return container_id in self._containers

    def get(self, container_id: str) -> TrackedContainer | None:
        return self._containers.get(container_id)

    def _next_sequence(self) -> int:
        self._sequence += 1
        return self._sequence

    def upsert(self, record: ContainerRecord, descriptor: RouteDescriptor | None) -> None:
        """Track *record* with its compiled route, replacing any previous entry.

        An entry whose record and route are unchanged keeps its position, so
        a resync does not reorder replicas.
        """
        existing = self._containers.get(record.id)
        if existing is not None and existing.record == record and existing.descriptor == descriptor:
            self.dirty = True
            return
        self._containers[record.id] = TrackedContainer(
            record=record,
            descriptor=descriptor,
            sequence=self._next_sequence(),
        )
        self.dirty = True

    def remove(
        self,
        container_id: str,
        status: ContainerStatus = ContainerStatus.REMOVED,
    ) -> bool:
        """Mark a tracked container as no longer running; returns False if unknown."""
        tracked = self._containers.get(container_id)
        if tracked is None:
            return False
        if tracked.record.status is not status:
            tracked.record = replace(tracked.record, status=status)
        self.dirty = True
        return True

    def resync(
        self, entries: Iterable[tuple[ContainerRecord, RouteDescriptor | None]]
    ) -> list[str]:
        """Replace the running set with a full listing.

        Returns the ids of running containers that were absent from the
        listing and have been marked removed.
        """
        listed: set[str] = set()
        for record, descriptor in entries:
            listed.add(record.id)
            self.upsert(record, descriptor)

        missing = [
            container_id
            for container_id, tracked in self._containers.items()
            if container_id not in listed and tracked.record.is_running
        ]
        for container_id in missing:
            self.remove(container_id, ContainerStatus.REMOVED)
        self.dirty = True
        return missing

    def live_descriptors(self) -> list[RouteDescriptor]:
        tracked = sorted(self._containers.values(), key=lambda entry: entry.sequence)
        return [
            entry.descriptor
            for entry in tracked
            if entry.record.is_running and entry.descriptor is not None
        ]

    def purge(self, is_settled: Callable[[str], bool]) -> list[str]:
        """Forget non-running containers whose service has converged.

        ``is_settled(service)`` must return True once the published state of
        *service* matches the current target, or once the control plane has
        rejected its removal for good.
        """
        purged = []
        for container_id, tracked in list(self._containers.items()):
            if tracked.record.is_running:
                continue
            if tracked.descriptor is None or is_settled(tracked.descriptor.service):
                del self._containers[container_id]
                purged.append(container_id)
        return purged
