from __future__ import annotations

import logging
from collections.abc import Iterator, Mapping
from typing import Any

import docker
import requests
from docker.errors import DockerException, NotFound

from pingap_provider.src.errors import EventStreamError, RuntimeUnavailableError
from pingap_provider.src.models import ContainerRecord, ContainerStatus, RuntimeEvent

WATCHED_ACTIONS = ("start", "stop", "die")


def _ports(attrs: Mapping[str, Any]) -> tuple[int, ...]:
    config = attrs.get("Config") or {}
    settings = attrs.get("NetworkSettings") or {}
    specs = list((config.get("ExposedPorts") or {}).keys())
    specs.extend((settings.get("Ports") or {}).keys())

    ports: set[int] = set()
    for spec in specs:
        number, _, protocol = str(spec).partition("/")
        if protocol and protocol != "tcp":
            continue
        if number.isdigit():
            ports.add(int(number))
    return tuple(sorted(ports))


def _networks(attrs: Mapping[str, Any]) -> dict[str, str]:
    settings = attrs.get("NetworkSettings") or {}
    networks: dict[str, str] = {}
    for name, network in (settings.get("Networks") or {}).items():
        network = network or {}
        ip = network.get("IPAddress") or network.get("GlobalIPv6Address")
        if ip:
            networks[name] = ip
    return networks


def record_from_attrs(attrs: Mapping[str, Any]) -> ContainerRecord:
    """Build a :class:`ContainerRecord` from ``docker inspect`` output."""
    config = attrs.get("Config") or {}
    state = attrs.get("State") or {}
    status = ContainerStatus.RUNNING if state.get("Running") else ContainerStatus.REMOVED
    return ContainerRecord(
        id=attrs["Id"],
        name=str(attrs.get("Name") or "").lstrip("/"),
        labels=dict(config.get("Labels") or {}),
        networks=_networks(attrs),
        ports=_ports(attrs),
        status=status,
    )


def event_from_payload(payload: Mapping[str, Any]) -> RuntimeEvent | None:
    """Translate one decoded ``/events`` message; returns None for unwatched ones."""
    if payload.get("Type", "container") != "container":
        return None
    action = str(payload.get("Action") or payload.get("status") or "")
    if action not in WATCHED_ACTIONS:
        return None
    actor = payload.get("Actor") or {}
    container_id = actor.get("ID") or payload.get("id")
    if not container_id:
        return None
    return RuntimeEvent(container_id=container_id, action=action, time=int(payload.get("time") or 0))


class EventSubscription:
    """Iterator over container events that can be closed from another thread."""

    def __init__(self, stream: Any) -> None:
        self._stream = stream

    def __iter__(self) -> Iterator[RuntimeEvent]:
        try:
            for payload in self._stream:
                event = event_from_payload(payload)
                if event is not None:
                    yield event
        except (DockerException, requests.RequestException, ValueError) as exc:
            raise EventStreamError(f"container event stream failed: {exc}") from exc

    def close(self) -> None:
        self._stream.close()


class DockerRuntime:
    """Container runtime adapter over the Docker Engine API (docker-py)."""

    def __init__(self, client: docker.DockerClient, logger: logging.Logger | None = None) -> None:
        self.client = client
        self.logger = logger or logging.getLogger(__name__)

    @classmethod
    def from_host(cls, host: str | None, timeout: int = 10) -> DockerRuntime:
        if host:
            return cls(docker.DockerClient(base_url=host, timeout=timeout))
        return cls(docker.from_env(timeout=timeout))

    def ping(self) -> None:
        try:
            self.client.ping()
        except (DockerException, requests.RequestException) as exc:
            raise RuntimeUnavailableError(f"docker daemon unreachable: {exc}") from exc

    def list(self) -> list[ContainerRecord]:
        """Return every running container."""
        try:
            containers = self.client.containers.list(
                filters={"status": "running"}, ignore_removed=True
            )
        except (DockerException, requests.RequestException) as exc:
            raise RuntimeUnavailableError(f"listing containers failed: {exc}") from exc
        return [record_from_attrs(container.attrs) for container in containers]

    def inspect(self, container_id: str) -> ContainerRecord | None:
        """Return the current record for *container_id*, or None once it is gone."""
        try:
            attrs = self.client.api.inspect_container(container_id)
        except NotFound:
            return None
        except (DockerException, requests.RequestException) as exc:
            raise RuntimeUnavailableError(
                f"inspecting container {container_id} failed: {exc}"
            ) from exc
        return record_from_attrs(attrs)

    def subscribe(self, since: int | None = None) -> EventSubscription:
        try:
            stream = self.client.api.events(
                since=since,
                filters={"type": "container", "event": list(WATCHED_ACTIONS)},
                decode=True,
            )
        except (DockerException, requests.RequestException) as exc:
            raise EventStreamError(f"subscribing to container events failed: {exc}") from exc
        return EventSubscription(stream)

    def close(self) -> None:
        self.client.close()
