from __future__ import annotations

import enum
from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from datetime import timedelta


class ContainerStatus(enum.Enum):
    RUNNING = "running"
    STOPPING = "stopping"
    REMOVED = "removed"


@dataclass(frozen=True)
class ContainerRecord:
    """Snapshot of one container as reported by the runtime.

    ``networks`` maps network name to the container's IP on that network and
    ``ports`` holds the exposed container-side ports, sorted and unique.
    """

    id: str
    name: str
    labels: Mapping[str, str] = field(default_factory=dict)
    networks: Mapping[str, str] = field(default_factory=dict)
    ports: tuple[int, ...] = ()
    status: ContainerStatus = ContainerStatus.RUNNING

    @property
    def is_running(self) -> bool:
        return self.status is ContainerStatus.RUNNING


@dataclass(frozen=True)
class RuntimeEvent:
    container_id: str
    action: str
    time: int = 0


@dataclass(frozen=True)
class Predicate:
    """Routing predicate: an explicit rule, or a host and/or path prefixes."""

    rule: str | None = None
    host: str | None = None
    paths: tuple[str, ...] = ()

    @property
    def expression(self) -> str:
        if self.rule:
            return self.rule
        host_rule = f"Host(`{self.host}`)" if self.host else None
        path_rule = " || ".join(f"PathPrefix(`{path}`)" for path in self.paths) or None
        if host_rule and path_rule:
            return f"{host_rule} && ({path_rule})"
        return host_rule or path_rule or ""


@dataclass(frozen=True)
class Middleware:
    kind: str
    params: tuple[tuple[str, str], ...] = ()

    def param(self, name: str) -> str | None:
        for key, value in self.params:
            if key == name:
                return value
        return None


@dataclass(frozen=True)
class Upstream:
    address: str | None = None
    weight: int = 1
    strategy: str = "round_robin"


@dataclass(frozen=True)
class HealthCheck:
    path: str
    interval: timedelta = timedelta(seconds=10)
    timeout: timedelta = timedelta(seconds=3)


@dataclass(frozen=True)
class TlsSpec:
    enabled: bool = True
    redirect: bool = False
    domains: tuple[str, ...] = ()


@dataclass(frozen=True)
class RouteDescriptor:
    """Compiled routing intent for a single container.

    ``upstream.address`` stays ``None`` until the network resolver binds the
    container's endpoint; only bound descriptors enter the target registry.
    """

    service: str
    predicate: Predicate
    priority: int = 0
    middlewares: tuple[Middleware, ...] = ()
    upstream: Upstream = Upstream()
    health_check: HealthCheck | None = None
    tls: TlsSpec | None = None
    legacy_middlewares: tuple[str, ...] = ()
    container: str = ""

    def bind(self, address: str) -> RouteDescriptor:
        return replace(self, upstream=replace(self.upstream, address=address))


@dataclass(frozen=True, order=True)
class Endpoint:
    address: str
    weight: int = 1


@dataclass(frozen=True)
class ServiceSpec:
    """One published service: merged routing config plus all replica endpoints."""

    name: str
    predicate: Predicate
    endpoints: tuple[Endpoint, ...]
    priority: int = 0
    middlewares: tuple[Middleware, ...] = ()
    strategy: str = "round_robin"
    health_check: HealthCheck | None = None
    tls: TlsSpec | None = None
    plugins: tuple[str, ...] = ()


@dataclass(frozen=True)
class Change:
    service: str
    spec: ServiceSpec | None

    @property
    def action(self) -> str:
        return "delete" if self.spec is None else "upsert"
