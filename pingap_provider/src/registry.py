from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping

from pingap_provider.src.models import Change, Endpoint, RouteDescriptor, ServiceSpec

LOGGER = logging.getLogger(__name__)


def _routing_fields(descriptor: RouteDescriptor) -> tuple:
    return (
        descriptor.predicate,
        descriptor.priority,
        descriptor.middlewares,
        descriptor.upstream.strategy,
        descriptor.health_check,
        descriptor.tls,
        descriptor.legacy_middlewares,
    )


def build_registry(descriptors: Iterable[RouteDescriptor]) -> dict[str, ServiceSpec]:
    """Group bound descriptors by service into the target registry.

    Replicas of one service contribute one endpoint each.  Routing fields
    come from the most recently seen replica; when replicas disagree a
    warning names the container whose configuration was used.
    """
    grouped: dict[str, list[RouteDescriptor]] = {}
    for descriptor in descriptors:
        if descriptor.upstream.address is None:
            continue
        grouped.setdefault(descriptor.service, []).append(descriptor)

    registry: dict[str, ServiceSpec] = {}
    for service, group in grouped.items():
        latest = group[-1]
        routing = _routing_fields(latest)
        conflicting = sorted(
            {d.container for d in group[:-1] if _routing_fields(d) != routing}
        )
        if conflicting:
            LOGGER.warning(
                "Replicas of service %s disagree on routing configuration; "
                "using container %s over %s",
                service,
                latest.container,
                ", ".join(conflicting),
            )

        endpoints: dict[str, Endpoint] = {}
        for descriptor in group:
            address = descriptor.upstream.address
            endpoints[address] = Endpoint(address=address, weight=descriptor.upstream.weight)

        registry[service] = ServiceSpec(
            name=service,
            predicate=latest.predicate,
            endpoints=tuple(sorted(endpoints.values())),
            priority=latest.priority,
            middlewares=latest.middlewares,
            strategy=latest.upstream.strategy,
            health_check=latest.health_check,
            tls=latest.tls,
            plugins=latest.legacy_middlewares,
        )
    return registry


def diff_registry(
    target: Mapping[str, ServiceSpec],
    confirmed: Mapping[str, ServiceSpec],
) -> list[Change]:
    """Return the changes that turn *confirmed* into *target*.

    Upserts come first, highest priority then name; deletes follow by name.
    """
    upserts = [
        Change(service=name, spec=spec)
        for name, spec in target.items()
        if confirmed.get(name) != spec
    ]
    upserts.sort(key=lambda change: (-change.spec.priority, change.service))
    deletes = [Change(service=name, spec=None) for name in sorted(confirmed) if name not in target]
    return upserts + deletes
