from __future__ import annotations

import re
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import timedelta
from typing import Any

from pingap_provider.src.errors import ValidationError
from pingap_provider.src.models import (
    HealthCheck,
    Middleware,
    Predicate,
    RouteDescriptor,
    TlsSpec,
    Upstream,
)

LABEL_PREFIX = "pingap."

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}
_INT_RE = re.compile(r"^[+-]?\d+$")
_DURATION_RE = re.compile(r"^(?:\d+(?:\.\d+)?(?:ms|s|m|h))+$")
_DURATION_PART_RE = re.compile(r"(\d+(?:\.\d+)?)(ms|s|m|h)")
_DURATION_UNITS = {"ms": "milliseconds", "s": "seconds", "m": "minutes", "h": "hours"}
MAX_DURATION = timedelta(hours=24)
_SERVICE_NAME_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")
_STRATEGIES = {"round_robin", "random", "least_conn", "hash"}

# Structured middleware kinds in the order they run on a request.
MIDDLEWARE_ORDER = (
    "redirect_scheme",
    "redirect_regex",
    "basic_auth",
    "ratelimit",
    "cors",
    "request_headers",
    "response_headers",
    "strip_prefix",
    "add_prefix",
    "compress",
)
_PARAMETERLESS_KINDS = {"cors", "compress"}


def parse_duration(raw: str) -> timedelta:
    """Parse ``500ms``, ``10s``, ``1m30s`` style durations into a timedelta."""
    text = raw.strip().lower()
    if not _DURATION_RE.match(text):
        raise ValueError(f"expected a duration such as 10s or 1m30s, got {raw!r}")
    total = timedelta()
    try:
        for amount, unit in _DURATION_PART_RE.findall(text):
            total += timedelta(**{_DURATION_UNITS[unit]: float(amount)})
    except OverflowError as exc:
        raise ValueError(f"duration {raw!r} is out of range") from exc
    return total


def format_duration(value: timedelta) -> str:
    total_ms = round(value.total_seconds() * 1000)
    if total_ms % 1000:
        return f"{total_ms}ms"
    return f"{total_ms // 1000}s"


def _parse_bool(raw: str) -> bool:
    value = raw.strip().lower()
    if value in _TRUE_VALUES:
        return True
    if value in _FALSE_VALUES:
        return False
    raise ValueError(f"expected true or false, got {raw!r}")


def _parse_list(raw: str) -> tuple[str, ...]:
    return tuple(part.strip() for part in raw.split(",") if part.strip())


# Validators return an error message, or None when the value is acceptable.


def _service_name(value: str) -> str | None:
    if not _SERVICE_NAME_RE.match(value):
        return "must contain only letters, digits, '.', '_' or '-'"
    return None


def _host_port(value: str) -> str | None:
    host, separator, port = value.rpartition(":")
    if not separator or not host:
        return f"expected host:port, got {value!r}"
    if not port.isdigit() or not 1 <= int(port) <= 65535:
        return f"port must be between 1 and 65535, got {port!r}"
    return None


def _hostname(value: str) -> str | None:
    if any(ch.isspace() for ch in value) or "`" in value:
        return "must not contain whitespace or backticks"
    return None


def _absolute_path(value: str) -> str | None:
    if not value.startswith("/"):
        return f"must start with '/', got {value!r}"
    return None


def _absolute_paths(values: tuple[str, ...]) -> str | None:
    for value in values:
        problem = _absolute_path(value)
        if problem:
            return problem
    return None


def _strategy(value: str) -> str | None:
    algo, _, key = value.partition(":")
    if algo not in _STRATEGIES or (key and algo != "hash"):
        return "must be one of round_robin, random, least_conn, hash or hash:<key>"
    return None


def _header_list(values: tuple[str, ...]) -> str | None:
    for value in values:
        name, separator, _ = value.partition(":")
        if not separator or not name.strip():
            return f"expected Name:Value, got {value!r}"
    return None


def _credentials(value: str) -> str | None:
    if ":" not in value:
        return "expected user:password"
    return None


def _scheme(value: str) -> str | None:
    if value not in {"http", "https"}:
        return f"must be http or https, got {value!r}"
    return None


def _redirect_regex(value: str) -> str | None:
    pattern, separator, _ = value.partition("->")
    if not separator or not pattern.strip():
        return "expected <regex>-><replacement>"
    try:
        re.compile(pattern.strip())
    except re.error as exc:
        return f"invalid regex: {exc}"
    return None


def _positive_duration(value: timedelta) -> str | None:
    if value <= timedelta():
        return "must be greater than zero"
    if value > MAX_DURATION:
        return f"must not exceed {format_duration(MAX_DURATION)}"
    return None


@dataclass(frozen=True)
class LabelField:
    """Schema entry for one ``pingap.*`` label.

    ``kind`` selects the parser (``bool``, ``int``, ``str``, ``list`` or
    ``duration``); ``minimum``/``maximum`` bound integers; ``validator``
    checks the parsed value and returns a message when it is unusable.
    """

    key: str
    kind: str
    default: Any = None
    minimum: int | None = None
    maximum: int | None = None
    validator: Callable[[Any], str | None] | None = None

    @property
    def label(self) -> str:
        return LABEL_PREFIX + self.key

    def parse(self, raw: str) -> Any:
        if self.kind == "bool":
            value: Any = _parse_bool(raw)
        elif self.kind == "int":
            value = self._parse_int(raw)
        elif self.kind == "list":
            value = _parse_list(raw)
        elif self.kind == "duration":
            value = parse_duration(raw)
        else:
            value = raw.strip()

        if self.validator is not None:
            problem = self.validator(value)
            if problem:
                raise ValueError(problem)
        return value

    def _parse_int(self, raw: str) -> int:
        text = raw.strip()
        if not _INT_RE.match(text):
            raise ValueError(f"expected an integer, got {raw!r}")
        value = int(text)
        if self.minimum is not None and value < self.minimum:
            raise ValueError(f"must be >= {self.minimum}, got {value}")
        if self.maximum is not None and value > self.maximum:
            raise ValueError(f"must be <= {self.maximum}, got {value}")
        return value


LABEL_SCHEMA: dict[str, LabelField] = {
    field.key: field
    for field in (
        LabelField("enable", "bool", default=False),
        LabelField("service.name", "str", validator=_service_name),
        LabelField("service.address", "str", validator=_host_port),
        LabelField("service.port", "int", minimum=1, maximum=65535),
        LabelField("docker.network", "str"),
        LabelField("http.rule", "str"),
        LabelField("http.host", "str", validator=_hostname),
        LabelField("http.paths", "list", default=(), validator=_absolute_paths),
        LabelField("http.priority", "int", default=0, minimum=-(2**31), maximum=2**31 - 1),
        LabelField("http.middlewares", "list", default=()),
        LabelField("http.tls.enabled", "bool", default=False),
        LabelField("upstream.weight", "int", default=1, minimum=1, maximum=65535),
        LabelField("upstream.strategy", "str", default="round_robin", validator=_strategy),
        LabelField("health_check.path", "str", validator=_absolute_path),
        LabelField(
            "health_check.interval",
            "duration",
            default=timedelta(seconds=10),
            validator=_positive_duration,
        ),
        LabelField(
            "health_check.timeout",
            "duration",
            default=timedelta(seconds=3),
            validator=_positive_duration,
        ),
        LabelField("middleware.strip_prefix", "str", validator=_absolute_path),
        LabelField("middleware.add_prefix", "str", validator=_absolute_path),
        LabelField("headers.custom_request", "list", default=(), validator=_header_list),
        LabelField("headers.custom_response", "list", default=(), validator=_header_list),
        LabelField("headers.cors.enable", "bool", default=False),
        LabelField("middleware.compress", "bool", default=False),
        LabelField("middleware.ratelimit.average", "int", minimum=1),
        LabelField("middleware.ratelimit.burst", "int", minimum=1),
        LabelField("middleware.basic_auth", "str", validator=_credentials),
        LabelField("middleware.redirect_scheme", "str", validator=_scheme),
        LabelField("middleware.redirect_regex", "str", validator=_redirect_regex),
        LabelField("tls.redirect", "bool", default=False),
        LabelField("tls.domains", "list", default=()),
    )
}


def _read_field(field: LabelField, labels: Mapping[str, str], problems: list[str]) -> Any:
    raw = labels.get(field.label)
    # Blank values behave like absent labels so compose files can unset them.
    if raw is None or not raw.strip():
        return field.default
    try:
        return field.parse(raw)
    except ValueError as exc:
        problems.append(f"{field.label}: {exc}")
        return field.default


def read_label(labels: Mapping[str, str], key: str, container: str = "") -> Any:
    """Parse a single schema field, raising :class:`ValidationError` if it is malformed."""
    problems: list[str] = []
    value = _read_field(LABEL_SCHEMA[key], labels, problems)
    if problems:
        raise ValidationError(container, problems)
    return value


def read_labels(labels: Mapping[str, str]) -> tuple[dict[str, Any], list[str]]:
    """Parse every schema field, returning the values and all problems found."""
    problems: list[str] = []
    values = {key: _read_field(field, labels, problems) for key, field in LABEL_SCHEMA.items()}
    return values, problems


def _build_predicate(values: dict[str, Any], problems: list[str]) -> Predicate:
    rule = values["http.rule"]
    if rule:
        return Predicate(rule=rule)

    host = values["http.host"]
    paths = values["http.paths"]
    if not host and not paths:
        problems.append(
            "no routing predicate: set one of pingap.http.rule, pingap.http.host "
            "or pingap.http.paths"
        )
    return Predicate(host=host, paths=paths)


def _header_params(headers: tuple[str, ...]) -> tuple[tuple[str, str], ...]:
    params = []
    for header in headers:
        name, _, value = header.partition(":")
        params.append((name.strip(), value.strip()))
    return tuple(params)


def _build_middlewares(
    values: dict[str, Any], problems: list[str]
) -> tuple[tuple[Middleware, ...], tuple[str, ...]]:
    """Assemble the structured chain, then fold in the legacy name list.

    Returns the middleware chain and the legacy names that were kept.
    """
    structured: dict[str, Middleware] = {}

    if values["middleware.redirect_scheme"]:
        structured["redirect_scheme"] = Middleware(
            "redirect_scheme", (("scheme", values["middleware.redirect_scheme"]),)
        )
    if values["middleware.redirect_regex"]:
        pattern, _, replacement = values["middleware.redirect_regex"].partition("->")
        structured["redirect_regex"] = Middleware(
            "redirect_regex",
            (("regex", pattern.strip()), ("replacement", replacement.strip())),
        )
    if values["middleware.basic_auth"]:
        structured["basic_auth"] = Middleware(
            "basic_auth", (("credentials", values["middleware.basic_auth"]),)
        )

    average = values["middleware.ratelimit.average"]
    burst = values["middleware.ratelimit.burst"]
    if burst is not None and average is None:
        problems.append(
            "pingap.middleware.ratelimit.burst requires pingap.middleware.ratelimit.average"
        )
    if average is not None:
        params: tuple[tuple[str, str], ...] = (("average", str(average)),)
        if burst is not None:
            params += (("burst", str(burst)),)
        structured["ratelimit"] = Middleware("ratelimit", params)

    if values["headers.cors.enable"]:
        structured["cors"] = Middleware("cors")
    if values["headers.custom_request"]:
        structured["request_headers"] = Middleware(
            "request_headers", _header_params(values["headers.custom_request"])
        )
    if values["headers.custom_response"]:
        structured["response_headers"] = Middleware(
            "response_headers", _header_params(values["headers.custom_response"])
        )
    if values["middleware.strip_prefix"]:
        structured["strip_prefix"] = Middleware(
            "strip_prefix", (("prefix", values["middleware.strip_prefix"]),)
        )
    if values["middleware.add_prefix"]:
        structured["add_prefix"] = Middleware(
            "add_prefix", (("prefix", values["middleware.add_prefix"]),)
        )
    if values["middleware.compress"]:
        structured["compress"] = Middleware("compress")

    chain = [structured[kind] for kind in MIDDLEWARE_ORDER if kind in structured]
    seen_kinds = set(structured)
    legacy: list[str] = []
    for name in values["http.middlewares"]:
        if name in seen_kinds:
            continue
        seen_kinds.add(name)
        legacy.append(name)
        if name in _PARAMETERLESS_KINDS:
            chain.append(Middleware(name))
        else:
            chain.append(Middleware("plugin", (("name", name),)))
    return tuple(chain), tuple(legacy)


def _build_health_check(values: dict[str, Any], problems: list[str]) -> HealthCheck | None:
    path = values["health_check.path"]
    if not path:
        return None
    interval = values["health_check.interval"]
    timeout = values["health_check.timeout"]
    if timeout > interval:
        problems.append(
            "pingap.health_check.timeout must not exceed pingap.health_check.interval "
            f"({format_duration(timeout)} > {format_duration(interval)})"
        )
    return HealthCheck(path=path, interval=interval, timeout=timeout)


def _build_tls(values: dict[str, Any]) -> TlsSpec | None:
    if not values["http.tls.enabled"]:
        return None
    return TlsSpec(
        enabled=True,
        redirect=values["tls.redirect"],
        domains=values["tls.domains"],
    )


def compile_labels(labels: Mapping[str, str], container_name: str) -> RouteDescriptor | None:
    """Compile a container's ``pingap.*`` labels into a route descriptor.

    Returns ``None`` when the container is not enabled (``pingap.enable``
    absent or false); nothing else is inspected in that case, so malformed
    labels on disabled containers never produce errors.

    Raises :class:`ValidationError` listing every problem when the container
    is enabled but its labels cannot produce a usable route.  The upstream
    address is left unbound; see :func:`pingap_provider.src.network.resolve_address`.
    """
    name = container_name.lstrip("/")
    if not read_label(labels, "enable", container=name):
        return None

    values, problems = read_labels(labels)
    service = values["service.name"] or name
    if not service:
        problems.append("no service name: set pingap.service.name")

    predicate = _build_predicate(values, problems)
    middlewares, legacy = _build_middlewares(values, problems)
    health_check = _build_health_check(values, problems)

    if problems:
        raise ValidationError(name, problems)

    return RouteDescriptor(
        service=service,
        predicate=predicate,
        priority=values["http.priority"],
        middlewares=middlewares,
        upstream=Upstream(
            weight=values["upstream.weight"],
            strategy=values["upstream.strategy"],
        ),
        health_check=health_check,
        tls=_build_tls(values),
        legacy_middlewares=legacy,
        container=name,
    )
