from __future__ import annotations

import threading
from typing import Any

import pytest

from mysql_operator.src.cache import (
    InvalidKeyError,
    ResourceCache,
    meta_namespace_key,
    split_meta_namespace_key,
    wait_for_cache_sync,
)


def _obj(name: str, namespace: str = "default", rv: str = "1") -> dict[str, Any]:
    return {"metadata": {"name": name, "namespace": namespace, "resourceVersion": rv}}


def _recording_cache() -> tuple[ResourceCache, list[tuple[str, str]]]:
    cache = ResourceCache("MysqlCluster")
    events: list[tuple[str, str]] = []
    cache.add_handler(lambda event_type, obj: events.append((event_type, meta_namespace_key(obj))))
    return cache, events


def test_meta_namespace_key() -> None:
    assert meta_namespace_key(_obj("foo")) == "default/foo"
    assert meta_namespace_key({"metadata": {"name": "crd"}}) == "crd"


@pytest.mark.parametrize(
    ("key", "expected"),
    [("default/foo", ("default", "foo")), ("foo", ("", "foo"))],
)
def test_split_meta_namespace_key(key: str, expected: tuple[str, str]) -> None:
    assert split_meta_namespace_key(key) == expected


@pytest.mark.parametrize("key", ["a/b/c", "default/", "", "/"])
def test_split_meta_namespace_key_rejects_malformed_keys(key: str) -> None:
    with pytest.raises(InvalidKeyError):
        split_meta_namespace_key(key)


def test_not_synced_until_first_replace() -> None:
    cache = ResourceCache("MysqlCluster")
    assert not cache.has_synced

    cache.apply("ADDED", _obj("foo"))
    assert not cache.has_synced

    cache.replace([])
    assert cache.has_synced


def test_replace_emits_deltas_against_current_contents() -> None:
    cache, events = _recording_cache()
    cache.replace([_obj("keep", rv="1"), _obj("change", rv="1"), _obj("gone", rv="1")])
    events.clear()

    cache.replace([_obj("keep", rv="1"), _obj("change", rv="2"), _obj("new", rv="3")])

    assert sorted(events) == [
        ("ADDED", "default/new"),
        ("DELETED", "default/gone"),
        ("MODIFIED", "default/change"),
    ]
    assert sorted(cache.keys()) == ["default/change", "default/keep", "default/new"]
    assert cache.has_synced


def test_apply_add_update_delete() -> None:
    cache, events = _recording_cache()
    cache.replace([])

    cache.apply("ADDED", _obj("foo", rv="1"))
    cache.apply("MODIFIED", _obj("foo", rv="2"))
    assert cache.get("default/foo")["metadata"]["resourceVersion"] == "2"

    cache.apply("DELETED", _obj("foo", rv="3"))
    assert cache.get("default/foo") is None
    assert len(cache) == 0
    assert events == [
        ("ADDED", "default/foo"),
        ("MODIFIED", "default/foo"),
        ("DELETED", "default/foo"),
    ]


def test_unknown_event_types_are_ignored() -> None:
    cache, events = _recording_cache()
    cache.apply("BOOKMARK", _obj("foo"))

    assert cache.get("default/foo") is None
    assert events == []


def test_get_returns_a_copy() -> None:
    cache = ResourceCache("MysqlCluster")
    cache.replace([_obj("foo")])

    fetched = cache.get("default/foo")
    fetched["metadata"]["name"] = "mutated"

    assert cache.get("default/foo")["metadata"]["name"] == "foo"


def test_failing_handler_does_not_block_other_handlers() -> None:
    cache = ResourceCache("MysqlCluster")
    seen: list[str] = []

    def _broken(event_type: str, obj: dict[str, Any]) -> None:
        raise RuntimeError("boom")

    cache.add_handler(_broken)
    cache.add_handler(lambda event_type, obj: seen.append(event_type))

    cache.apply("ADDED", _obj("foo"))

    assert seen == ["ADDED"]
    assert cache.get("default/foo") is not None


def test_handler_can_read_the_cache_back() -> None:
    cache = ResourceCache("MysqlCluster")
    observed: list[dict[str, Any] | None] = []
    cache.add_handler(lambda event_type, obj: observed.append(cache.get(meta_namespace_key(obj))))

    cache.apply("ADDED", _obj("foo"))

    assert observed[0] is not None


def test_wait_for_cache_sync_returns_true_once_synced() -> None:
    cache = ResourceCache("MysqlCluster")
    stop = threading.Event()
    threading.Timer(0.05, cache.replace, args=([],)).start()

    assert wait_for_cache_sync(stop, [cache], poll_seconds=0.01) is True


def test_wait_for_cache_sync_returns_false_when_stopped_first() -> None:
    cache = ResourceCache("MysqlCluster")
    stop = threading.Event()
    threading.Timer(0.05, stop.set).start()

    assert wait_for_cache_sync(stop, [cache], poll_seconds=0.01) is False
