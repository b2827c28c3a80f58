"""Unit tests for steady_serial._fanout."""

import asyncio
import threading

import steady_serial


def test_dispatch_to_all():
    events = steady_serial.EventFanout("test")
    got_a, got_b = [], []
    events += got_a.append
    events.add(got_b.append)
    assert len(events) == 2

    assert events.dispatch("one") == 0
    assert events.dispatch("two") == 0
    assert got_a == ["one", "two"]
    assert got_b == ["one", "two"]


def test_failing_handler_is_isolated():
    events = steady_serial.EventFanout("test")
    got = []

    def broken(event):
        raise RuntimeError(f"broken by {event}")

    events += broken
    events += got.append

    assert events.dispatch(1) == 1
    assert events.dispatch(2) == 1
    assert got == [1, 2]


def test_remove_and_clear():
    events = steady_serial.EventFanout("test")
    got = []
    events += got.append
    events -= got.append
    events.dispatch("ignored")
    assert got == []
    assert len(events) == 0

    events += got.append
    events += got.append
    assert events.handlers() == (got.append, got.append)
    events.remove(got.append)
    events.dispatch("once")
    assert got == ["once"]

    events.clear()
    assert events.dispatch("nobody") == 0
    assert got == ["once"]


def test_handler_may_unsubscribe_during_dispatch():
    events = steady_serial.EventFanout("test")
    got = []

    def once(event):
        got.append(event)
        events.remove(once)

    events += once
    events += got.append
    events.dispatch("a")
    events.dispatch("b")
    assert got == ["a", "a", "b"]


def test_coroutine_handler_without_loop():
    events = steady_serial.EventFanout("test")
    got = []

    async def handler(event):
        await asyncio.sleep(0)
        got.append(event)

    events += handler
    assert events.dispatch("x") == 0
    assert got == ["x"]


def test_coroutine_handler_failure_counted():
    events = steady_serial.EventFanout("test")

    async def handler(event):
        raise ValueError(event)

    events += handler
    assert events.dispatch("bad") == 1


async def test_coroutine_handler_runs_on_subscriber_loop():
    events = steady_serial.EventFanout("test")
    loop = asyncio.get_running_loop()
    got = []

    async def handler(event):
        got.append((event, asyncio.get_running_loop()))

    events += handler  # captures this loop

    # dispatch from another thread, like the reader loop does
    failures = await asyncio.to_thread(events.dispatch, "from thread")
    assert failures == 0
    assert got == [("from thread", loop)]


async def test_coroutine_handler_timeout():
    events = steady_serial.EventFanout("test", handler_timeout=0.05)
    release = asyncio.Event()

    async def slow(event):
        await release.wait()

    events += slow
    assert await asyncio.to_thread(events.dispatch, "slow") == 1
    release.set()


async def test_dispatch_on_subscriber_loop_thread():
    events = steady_serial.EventFanout("test")
    got = []

    async def handler(event):
        got.append(event)

    events += handler
    assert events.dispatch("same thread") == 0  # scheduled, not awaited
    await asyncio.sleep(0.01)
    assert got == ["same thread"]


def test_concurrent_subscribe_and_dispatch():
    events = steady_serial.EventFanout("test")
    counts = []
    stop = threading.Event()

    def churn():
        while not stop.is_set():
            events.add(counts.append)
            events.remove(counts.append)

    thread = threading.Thread(target=churn)
    thread.start()
    try:
        for n in range(200):
            assert events.dispatch(n) == 0
    finally:
        stop.set()
        thread.join()
    assert len(events) == 0


def test_coroutine_handler_on_stopped_loop():
    events = steady_serial.EventFanout("test")
    loop = asyncio.new_event_loop()
    got = []

    async def handler(event):
        got.append(event)

    async def subscribe():
        events.add(handler)

    loop.run_until_complete(subscribe())  # captures a loop that then stops
    try:
        assert not loop.is_running() and not loop.is_closed()
        assert events.dispatch("late") == 0
        assert got == ["late"]
    finally:
        loop.close()
