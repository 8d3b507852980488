"""Tests for the session registry."""

import threading

import pytest

from conftest import wait_for_output
from segterm.errors import SessionLimitReached, SessionNotFound
from segterm.registry import SessionRegistry


@pytest.fixture()
def registry(sink, term_config):
    reg = SessionRegistry(sink, term_config)
    yield reg
    reg.close_all()


def test_create_is_idempotent(registry):
    assert registry.create("t1") is True
    session = registry.get("t1")
    assert registry.create("t1") is False
    assert registry.get("t1") is session
    assert len(registry) == 1


def test_concurrent_creates_yield_one_session(registry):
    results: list[bool] = []
    barrier = threading.Barrier(8)

    def _create():
        barrier.wait()
        results.append(registry.create("t1"))

    threads = [threading.Thread(target=_create) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(5)

    assert results.count(True) == 1
    assert len(registry) == 1


def test_spawn_twice_starts_one_process(registry):
    registry.create("t1")
    assert registry.spawn("t1") is True
    pid = registry.get("t1").pid
    assert registry.spawn("t1") is False
    assert registry.get("t1").pid == pid


def test_unknown_segment_raises_not_found(registry):
    with pytest.raises(SessionNotFound):
        registry.get("missing")
    with pytest.raises(SessionNotFound):
        registry.spawn("missing")
    with pytest.raises(SessionNotFound):
        registry.write("missing", "x")
    with pytest.raises(SessionNotFound):
        registry.resize("missing", 24, 80)


def test_close_is_idempotent(registry):
    registry.create("t1")
    assert registry.close("t1") is True
    assert registry.close("t1") is False
    assert registry.close("never-created") is False
    assert "t1" not in registry


def test_close_tears_down_session(registry):
    registry.create("t1")
    registry.spawn("t1")
    session = registry.get("t1")
    registry.remove("t1")
    assert session.closed


def test_max_sessions(sink, term_config):
    registry = SessionRegistry(sink, term_config, max_sessions=2)
    try:
        registry.create("a")
        registry.create("b")
        with pytest.raises(SessionLimitReached):
            registry.create("c")
        # Existing ids are still reusable at the limit
        assert registry.create("a") is False
        registry.close("a")
        assert registry.create("c") is True
    finally:
        registry.close_all()


def test_list_reports_sessions(registry):
    registry.create("t1")
    registry.create("t2")
    registry.spawn("t2")
    info = {s["segment"]: s for s in registry.list()}
    assert set(info) == {"t1", "t2"}
    assert info["t1"]["spawned"] is False
    assert info["t2"]["spawned"] is True
    assert info["t2"]["alive"] is True
    assert (info["t1"]["rows"], info["t1"]["cols"]) == (24, 80)


def test_segments_are_isolated(registry, sink):
    registry.create("a")
    registry.create("b")
    registry.spawn("a")
    registry.spawn("b")

    registry.write("a", "echo only-$((1+1))-in-a\n")
    registry.write("b", "echo marker-$((2+2))-b\n")

    output_b = wait_for_output(sink, "b", "marker-4-b")
    assert "only-" not in output_b


def test_scenario_create_spawn_write_resize_close(registry, sink):
    registry.create("t1")
    registry.spawn("t1")
    registry.write("t1", "echo hi\n")
    wait_for_output(sink, "t1", "\r\nhi\r\n")
    registry.resize("t1", 40, 120)
    registry.close("t1")
    with pytest.raises(SessionNotFound):
        registry.write("t1", "x")
    with pytest.raises(SessionNotFound):
        registry.resize("t1", 24, 80)


def test_close_all(registry):
    registry.create("a")
    registry.create("b")
    registry.spawn("b")
    sessions = [registry.get("a"), registry.get("b")]
    registry.close_all()
    assert len(registry) == 0
    assert all(s.closed for s in sessions)


def test_resize_out_of_range_is_rejected(registry):
    registry.create("t1")
    with pytest.raises(ValueError):
        registry.resize("t1", 70000, 80)
    assert registry.get("t1").info()["rows"] == 24
