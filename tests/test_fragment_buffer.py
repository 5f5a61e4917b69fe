import asyncio
from typing import Dict, List

import pytest

from shopchat.fragment_buffer import BufferState, FragmentBuffer


class FakeClock:
    def __init__(self, now: float = 0.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


class Collector:
    def __init__(self) -> None:
        self.flushes: Dict[str, List[List[str]]] = {}

    def for_user(self, user_id: str):
        async def on_flush(fragments: List[str]) -> None:
            self.flushes.setdefault(user_id, []).append(fragments)

        return on_flush


def test_rejects_non_positive_limits():
    with pytest.raises(ValueError):
        FragmentBuffer(silence_sec=0, max_fragments=5, max_window_sec=10)
    with pytest.raises(ValueError):
        FragmentBuffer(silence_sec=1, max_fragments=0, max_window_sec=10)


async def test_burst_flushes_once_in_order():
    buffer = FragmentBuffer(silence_sec=0.05, max_fragments=16, max_window_sec=5)
    collector = Collector()
    for text in ["ซีลาย", "26", "เบา"]:
        assert buffer.push("u1", text, collector.for_user("u1")) is None
    assert buffer.state("u1") is BufferState.BUFFERING

    await asyncio.sleep(0.2)
    await buffer.drain()

    assert collector.flushes == {"u1": [["ซีลาย", "26", "เบา"]]}
    assert buffer.state("u1") is BufferState.IDLE
    assert buffer.pending_users() == []


async def test_push_rearms_silence_timer():
    buffer = FragmentBuffer(silence_sec=0.2, max_fragments=16, max_window_sec=5)
    collector = Collector()
    buffer.push("u1", "a", collector.for_user("u1"))
    await asyncio.sleep(0.12)
    buffer.push("u1", "b", collector.for_user("u1"))
    await asyncio.sleep(0.12)
    assert collector.flushes == {}

    await asyncio.sleep(0.3)
    await buffer.drain()
    assert collector.flushes == {"u1": [["a", "b"]]}


async def test_fragment_cap_flushes_immediately_once():
    buffer = FragmentBuffer(silence_sec=0.05, max_fragments=3, max_window_sec=5)
    collector = Collector()
    buffer.push("u1", "1", collector.for_user("u1"))
    buffer.push("u1", "2", collector.for_user("u1"))
    task = buffer.push("u1", "3", collector.for_user("u1"))
    assert task is not None
    await task

    assert collector.flushes == {"u1": [["1", "2", "3"]]}
    # The armed silence timer was cancelled with the flush.
    await asyncio.sleep(0.15)
    assert collector.flushes == {"u1": [["1", "2", "3"]]}


async def test_window_cap_flushes_on_next_push():
    clock = FakeClock()
    buffer = FragmentBuffer(silence_sec=30, max_fragments=16, max_window_sec=5, clock=clock)
    collector = Collector()
    assert buffer.push("u1", "first", collector.for_user("u1")) is None
    clock.now = 6.0
    task = buffer.push("u1", "late", collector.for_user("u1"))
    assert task is not None
    await task
    assert collector.flushes == {"u1": [["first", "late"]]}


async def test_timer_is_capped_by_window():
    buffer = FragmentBuffer(silence_sec=30, max_fragments=16, max_window_sec=0.05)
    collector = Collector()
    buffer.push("u1", "only", collector.for_user("u1"))
    await asyncio.sleep(0.2)
    await buffer.drain()
    assert collector.flushes == {"u1": [["only"]]}


async def test_users_are_buffered_independently():
    buffer = FragmentBuffer(silence_sec=0.05, max_fragments=2, max_window_sec=5)
    collector = Collector()
    buffer.push("alice", "a1", collector.for_user("alice"))
    buffer.push("bob", "b1", collector.for_user("bob"))
    task = buffer.push("alice", "a2", collector.for_user("alice"))
    await task
    assert collector.flushes == {"alice": [["a1", "a2"]]}
    assert buffer.state("bob") is BufferState.BUFFERING

    await asyncio.sleep(0.2)
    await buffer.drain()
    assert collector.flushes["bob"] == [["b1"]]


async def test_push_during_flush_starts_fresh_entry():
    buffer = FragmentBuffer(silence_sec=0.05, max_fragments=1, max_window_sec=5)
    release = asyncio.Event()
    seen: List[List[str]] = []

    async def slow_flush(fragments: List[str]) -> None:
        seen.append(fragments)
        await release.wait()

    first = buffer.push("u1", "one", slow_flush)
    await asyncio.sleep(0)
    assert buffer.state("u1") is BufferState.IDLE

    second = buffer.push("u1", "two", slow_flush)
    release.set()
    await asyncio.gather(first, second)
    assert seen == [["one"], ["two"]]


async def test_callback_failure_is_isolated():
    buffer = FragmentBuffer(silence_sec=0.05, max_fragments=1, max_window_sec=5)
    collector = Collector()

    async def broken(fragments: List[str]) -> None:
        raise RuntimeError("boom")

    failing = buffer.push("u1", "x", broken)
    await failing
    assert failing.exception() is None

    ok = buffer.push("u2", "y", collector.for_user("u2"))
    await ok
    assert collector.flushes == {"u2": [["y"]]}


async def test_cancel_all_drops_pending_without_flushing():
    buffer = FragmentBuffer(silence_sec=0.05, max_fragments=16, max_window_sec=5)
    collector = Collector()
    buffer.push("u1", "a", collector.for_user("u1"))
    buffer.push("u2", "b", collector.for_user("u2"))

    assert buffer.cancel_all() == 2
    await asyncio.sleep(0.15)
    assert collector.flushes == {}
    assert buffer.pending_users() == []
