from __future__ import annotations

import logging
import re
from typing import Any
from urllib.parse import quote

import requests

from pingap_provider.src.errors import TerminalAPIError, TransientAPIError
from pingap_provider.src.labels import format_duration
from pingap_provider.src.models import Endpoint, Predicate, ServiceSpec

_HOST_RE = re.compile(r"Host\(`([^`]*)`\)")
_PATH_PREFIX_RE = re.compile(r"PathPrefix\(`([^`]*)`\)")
_MAX_ERROR_BODY = 200


def render_addr(endpoint: Endpoint) -> str:
    if endpoint.weight == 1:
        return endpoint.address
    return f"{endpoint.address} {endpoint.weight}"


def predicate_parts(predicate: Predicate) -> tuple[str, tuple[str, ...]]:
    """Return the host and path prefixes a predicate routes on.

    Explicit rules are scanned for ``Host(...)`` and ``PathPrefix(...)``
    matchers; anything else in the rule is only carried in ``rule``.
    """
    if predicate.rule:
        hosts = _HOST_RE.findall(predicate.rule)
        return (hosts[0] if hosts else ""), tuple(_PATH_PREFIX_RE.findall(predicate.rule))
    return predicate.host or "", predicate.paths


def render_upstream(spec: ServiceSpec) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "addrs": [render_addr(endpoint) for endpoint in spec.endpoints],
        "algo": spec.strategy,
    }
    if spec.health_check is not None:
        check = spec.health_check
        payload["health_check"] = (
            f"http://{spec.name}{check.path}"
            f"?connection_timeout={format_duration(check.timeout)}"
            f"&check_frequency={format_duration(check.interval)}"
        )
    return payload


def render_location(spec: ServiceSpec) -> dict[str, Any]:
    host, paths = predicate_parts(spec.predicate)
    payload: dict[str, Any] = {
        "upstream": spec.name,
        "rule": spec.predicate.expression,
        "host": host,
        "path": paths[0] if paths else "",
        "paths": list(paths),
        "priority": spec.priority,
    }
    if spec.middlewares:
        payload["middlewares"] = [
            {
                "kind": middleware.kind,
                "params": [{"name": name, "value": value} for name, value in middleware.params],
            }
            for middleware in spec.middlewares
        ]
    if spec.plugins:
        payload["plugins"] = list(spec.plugins)
    if spec.tls is not None:
        payload["tls"] = {
            "enabled": spec.tls.enabled,
            "redirect": spec.tls.redirect,
            "domains": list(spec.tls.domains),
        }
    return payload


def _response_excerpt(response: requests.Response) -> str:
    text = (response.text or "").strip().replace("\n", " ")
    return text[:_MAX_ERROR_BODY]


class AdminClient:
    """Thin client for the Pingap admin API.

    Every call is bounded by ``timeout``.  Failures are classified so the
    publisher knows whether a retry can help: connection errors, timeouts,
    ``5xx`` and ``429`` raise :class:`TransientAPIError`; any other ``4xx``
    raises :class:`TerminalAPIError`.
    """

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = 10.0,
        session: requests.Session | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()
        self.logger = logger or logging.getLogger(__name__)

    def _request(
        self,
        method: str,
        path: str,
        *,
        payload: dict[str, Any] | None = None,
        allow_missing: bool = False,
    ) -> requests.Response:
        url = f"{self.base_url}{path}"
        self.logger.debug("%s %s", method, url)
        try:
            response = self.session.request(method, url, json=payload, timeout=self.timeout)
        except requests.RequestException as exc:
            raise TransientAPIError(f"{method} {path} failed: {exc}") from exc

        status = response.status_code
        if allow_missing and status == 404:
            return response
        if status >= 500 or status == 429:
            raise TransientAPIError(
                f"{method} {path} returned {status}: {_response_excerpt(response)}",
                status=status,
            )
        if status >= 400:
            raise TerminalAPIError(
                f"{method} {path} returned {status}: {_response_excerpt(response)}",
                status=status,
            )
        return response

    @staticmethod
    def _segment(name: str) -> str:
        return quote(name, safe="")

    def apply(self, spec: ServiceSpec) -> None:
        """Write the upstream, then the location that references it."""
        segment = self._segment(spec.name)
        self._request("POST", f"/upstreams/{segment}", payload=render_upstream(spec))
        self._request("POST", f"/locations/{segment}", payload=render_location(spec))

    def delete(self, name: str) -> None:
        """Remove the location, then its upstream; already-missing objects are fine."""
        segment = self._segment(name)
        self._request("DELETE", f"/locations/{segment}", allow_missing=True)
        self._request("DELETE", f"/upstreams/{segment}", allow_missing=True)

    def ping(self) -> None:
        self._request("GET", "/")

    def close(self) -> None:
        self.session.close()
