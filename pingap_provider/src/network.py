from __future__ import annotations

from collections.abc import Mapping, Sequence

from pingap_provider.src.errors import (
    AmbiguousNetworkError,
    AmbiguousPortError,
    NetworkNotFoundError,
)
from pingap_provider.src.labels import read_label


def format_address(ip: str, port: int) -> str:
    if ":" in ip:
        return f"[{ip}]:{port}"
    return f"{ip}:{port}"


def _select_ip(networks: Mapping[str, str], requested: str | None) -> str:
    available = ", ".join(sorted(networks)) or "<none>"
    if requested:
        ip = networks.get(requested)
        if not ip:
            raise NetworkNotFoundError(
                f"network {requested!r} not attached (available: {available})"
            )
        return ip

    attached = {name: ip for name, ip in networks.items() if ip}
    if not attached:
        raise NetworkNotFoundError("container has no network with an IP address")
    if len(attached) > 1:
        raise AmbiguousNetworkError(
            f"container is attached to several networks ({available}); "
            "set pingap.docker.network"
        )
    return next(iter(attached.values()))


def _select_port(ports: Sequence[int], override: int | None) -> int:
    if override is not None:
        return override
    unique = sorted(set(ports))
    if len(unique) != 1:
        exposed = ", ".join(str(port) for port in unique) or "<none>"
        raise AmbiguousPortError(
            f"cannot pick a port from exposed ports ({exposed}); set pingap.service.port"
        )
    return unique[0]


def resolve_address(
    networks: Mapping[str, str],
    ports: Sequence[int],
    labels: Mapping[str, str],
    *,
    container: str = "",
) -> str:
    """Return the ``host:port`` upstream address for a container.

    ``pingap.service.address`` short-circuits resolution entirely.  Otherwise
    the IP comes from ``pingap.docker.network`` when set, or from the single
    attached network; the port comes from ``pingap.service.port`` or the
    single exposed port.

    Raises a :class:`~pingap_provider.src.errors.ResolutionError` subclass
    when either half is missing or ambiguous.
    """
    address = read_label(labels, "service.address", container=container)
    if address:
        return address

    ip = _select_ip(networks, read_label(labels, "docker.network", container=container))
    port = _select_port(ports, read_label(labels, "service.port", container=container))
    return format_address(ip, port)
