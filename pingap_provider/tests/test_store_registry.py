from __future__ import annotations

import logging

import pytest

from pingap_provider.src.models import (
    ContainerRecord,
    ContainerStatus,
    Endpoint,
    Predicate,
    RouteDescriptor,
    ServiceSpec,
    Upstream,
)
from pingap_provider.src.registry import build_registry, diff_registry
from pingap_provider.src.store import StateStore


def make_descriptor(
    service: str,
    address: str | None,
    *,
    host: str = "a.example.com",
    priority: int = 0,
    weight: int = 1,
    container: str = "",
) -> RouteDescriptor:
    return RouteDescriptor(
        service=service,
        predicate=Predicate(host=host),
        priority=priority,
        upstream=Upstream(address=address, weight=weight),
        container=container or service,
    )


def make_record(container_id: str, name: str | None = None) -> ContainerRecord:
    return ContainerRecord(id=container_id, name=name or container_id)


def make_spec(name: str, *addresses: str, priority: int = 0) -> ServiceSpec:
    return ServiceSpec(
        name=name,
        predicate=Predicate(host="a.example.com"),
        endpoints=tuple(Endpoint(address) for address in addresses),
        priority=priority,
    )


# ---------------------------------------------------------------------------
# StateStore
# ---------------------------------------------------------------------------


def test_upsert_marks_store_dirty() -> None:
    store = StateStore()

    store.upsert(make_record("c1"), make_descriptor("web", "10.0.0.1:80"))

    assert store.dirty
    assert "c1" in store
    assert len(store) == 1


def test_live_descriptors_follow_upsert_order_and_skip_non_running() -> None:
    store = StateStore()
    first = make_descriptor("web", "10.0.0.1:80")
    second = make_descriptor("web", "10.0.0.2:80")
    store.upsert(make_record("c1"), first)
    store.upsert(make_record("c2"), second)
    store.upsert(make_record("c3"), None)

    assert store.live_descriptors() == [first, second]

    store.remove("c1", ContainerStatus.STOPPING)

    assert store.live_descriptors() == [second]
    tracked = store.get("c1")
    assert tracked is not None
    assert tracked.record.status is ContainerStatus.STOPPING


def test_unchanged_upsert_keeps_position() -> None:
    store = StateStore()
    first = make_descriptor("web", "10.0.0.1:80")
    second = make_descriptor("web", "10.0.0.2:80")
    store.upsert(make_record("c1"), first)
    store.upsert(make_record("c2"), second)

    store.upsert(make_record("c1"), first)

    assert store.live_descriptors() == [first, second]


def test_changed_upsert_moves_container_last() -> None:
    store = StateStore()
    store.upsert(make_record("c1"), make_descriptor("web", "10.0.0.1:80"))
    store.upsert(make_record("c2"), make_descriptor("web", "10.0.0.2:80"))
    updated = make_descriptor("web", "10.0.0.1:80", priority=5)

    store.upsert(make_record("c1"), updated)

    assert store.live_descriptors()[-1] == updated


def test_remove_unknown_container_returns_false() -> None:
    store = StateStore()

    assert store.remove("missing") is False
    assert not store.dirty


def test_resync_marks_unlisted_running_containers_removed() -> None:
    store = StateStore()
    store.upsert(make_record("c1"), make_descriptor("web", "10.0.0.1:80"))
    store.upsert(make_record("c2"), make_descriptor("api", "10.0.0.2:80"))
    store.dirty = False

    missing = store.resync([(make_record("c2"), make_descriptor("api", "10.0.0.2:80"))])

    assert missing == ["c1"]
    assert store.dirty
    tracked = store.get("c1")
    assert tracked is not None
    assert tracked.record.status is ContainerStatus.REMOVED
    assert [d.service for d in store.live_descriptors()] == ["api"]


def test_purge_drops_only_settled_non_running_containers() -> None:
    store = StateStore()
    store.upsert(make_record("c1"), make_descriptor("web", "10.0.0.1:80"))
    store.upsert(make_record("c2"), make_descriptor("api", "10.0.0.2:80"))
    store.upsert(make_record("c3"), None)
    store.upsert(make_record("c4"), make_descriptor("db", "10.0.0.4:80"))
    for container_id in ("c1", "c2", "c3"):
        store.remove(container_id)

    purged = store.purge(lambda service: service == "web")

    assert sorted(purged) == ["c1", "c3"]
    assert "c2" in store
    assert "c4" in store


# ---------------------------------------------------------------------------
# build_registry
# ---------------------------------------------------------------------------


def test_replicas_merge_into_one_service_with_sorted_endpoints() -> None:
    registry = build_registry(
        [
            make_descriptor("web", "10.0.0.2:80", container="web-2"),
            make_descriptor("web", "10.0.0.1:80", weight=3, container="web-1"),
        ]
    )

    assert list(registry) == ["web"]
    assert registry["web"].endpoints == (
        Endpoint("10.0.0.1:80", 3),
        Endpoint("10.0.0.2:80", 1),
    )


def test_same_address_keeps_last_seen_weight() -> None:
    registry = build_registry(
        [
            make_descriptor("web", "10.0.0.1:80", weight=2),
            make_descriptor("web", "10.0.0.1:80", weight=7),
        ]
    )

    assert registry["web"].endpoints == (Endpoint("10.0.0.1:80", 7),)


def test_unbound_descriptors_never_enter_the_registry() -> None:
    assert build_registry([make_descriptor("web", None)]) == {}


def test_conflicting_replicas_use_last_seen_and_warn(caplog: pytest.LogCaptureFixture) -> None:
    with caplog.at_level(logging.WARNING, logger="pingap_provider.src.registry"):
        registry = build_registry(
            [
                make_descriptor("web", "10.0.0.1:80", host="old.example.com", container="web-1"),
                make_descriptor("web", "10.0.0.2:80", host="new.example.com", container="web-2"),
            ]
        )

    assert registry["web"].predicate.host == "new.example.com"
    assert "using container web-2 over web-1" in caplog.text


def test_agreeing_replicas_do_not_warn(caplog: pytest.LogCaptureFixture) -> None:
    with caplog.at_level(logging.WARNING, logger="pingap_provider.src.registry"):
        build_registry(
            [
                make_descriptor("web", "10.0.0.1:80", container="web-1"),
                make_descriptor("web", "10.0.0.2:80", container="web-2"),
            ]
        )

    assert caplog.text == ""


# ---------------------------------------------------------------------------
# diff_registry
# ---------------------------------------------------------------------------


def test_identical_registries_produce_no_changes() -> None:
    registry = {"web": make_spec("web", "10.0.0.1:80")}

    assert diff_registry(registry, dict(registry)) == []


def test_changes_are_ordered_upserts_by_priority_then_deletes() -> None:
    target = {
        "b": make_spec("b", "10.0.0.2:80", priority=1),
        "a": make_spec("a", "10.0.0.1:80", priority=1),
        "z": make_spec("z", "10.0.0.3:80", priority=10),
        "same": make_spec("same", "10.0.0.4:80"),
    }
    confirmed = {
        "same": make_spec("same", "10.0.0.4:80"),
        "old-2": make_spec("old-2", "10.0.0.9:80"),
        "old-1": make_spec("old-1", "10.0.0.8:80"),
    }

    changes = diff_registry(target, confirmed)

    assert [(c.action, c.service) for c in changes] == [
        ("upsert", "z"),
        ("upsert", "a"),
        ("upsert", "b"),
        ("delete", "old-1"),
        ("delete", "old-2"),
    ]


def test_removing_last_replica_deletes_and_removing_one_of_several_upserts() -> None:
    confirmed = build_registry(
        [
            make_descriptor("web", "10.0.0.1:80"),
            make_descriptor("web", "10.0.0.2:80"),
            make_descriptor("api", "10.0.0.3:80"),
        ]
    )
    target = build_registry([make_descriptor("web", "10.0.0.2:80")])

    changes = diff_registry(target, confirmed)

    assert [(c.action, c.service) for c in changes] == [("upsert", "web"), ("delete", "api")]
    assert changes[0].spec is not None
    assert changes[0].spec.endpoints == (Endpoint("10.0.0.2:80"),)
