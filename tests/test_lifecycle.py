import asyncio

import pytest

from conftest import FakeWebSocket, StalledWebSocket, join_frame
from connection import ConnectionHandle, ConnectionPhase, broadcast


async def test_open_assigns_ids_and_starts_unattached(lifecycle, connect):
    a, _ = connect()
    b, _ = connect()
    assert (a.id, b.id) == ("A", "B")
    assert a.phase is ConnectionPhase.UNATTACHED
    assert a.room is None
    assert lifecycle.connection_count() == 2
    assert lifecycle.lookup("A") is a.handle


async def test_close_without_room_notifies_nobody(lifecycle, connect, registry):
    a, ws_a = connect()
    b, ws_b = connect()
    await lifecycle.close(a)
    await lifecycle.flush()

    assert a.phase is ConnectionPhase.CLOSED
    assert ws_b.sent == []
    assert lifecycle.lookup("A") is None
    assert lifecycle.connection_count() == 1
    assert await registry.snapshot_all() == {}


async def test_close_notifies_remaining_members(router, lifecycle, connect, registry):
    a, ws_a = connect()
    b, ws_b = connect()
    await router.dispatch(a, join_frame("r1"))
    await router.dispatch(b, join_frame("r1"))
    await lifecycle.flush()
    ws_b.sent.clear()

    await lifecycle.close(a)
    await lifecycle.flush()

    assert ws_b.sent == [{"event": "peer_left", "payload": {"peerId": "A"}}]
    assert await registry.members("r1") == ["B"]
    assert a.room is None


async def test_last_member_closing_deletes_room(router, lifecycle, connect, registry):
    a, ws_a = connect()
    b, ws_b = connect()
    await router.dispatch(a, join_frame("r1"))
    await router.dispatch(b, join_frame("r1"))

    await lifecycle.close(a)
    await lifecycle.close(b)

    assert await registry.snapshot_all() == {}


async def test_close_twice_is_harmless(router, lifecycle, connect, registry):
    a, ws_a = connect()
    b, ws_b = connect()
    c, ws_c = connect()
    await router.dispatch(a, join_frame("r1"))
    await router.dispatch(b, join_frame("r1"))
    await router.dispatch(c, join_frame("r2"))
    await lifecycle.flush()
    ws_b.sent.clear()

    await lifecycle.close(a)
    await lifecycle.close(a)
    await lifecycle.flush()

    assert ws_b.sent == [{"event": "peer_left", "payload": {"peerId": "A"}}]
    assert await registry.snapshot_all() == {"r1": 1, "r2": 1}


async def test_leave_race_with_registry_is_tolerated(router, lifecycle, connect, registry):
    a, _ = connect()
    b, ws_b = connect()
    await router.dispatch(a, join_frame("r1"))
    await router.dispatch(b, join_frame("r1"))

    # Someone else already removed A
    await registry.leave("r1", "A")
    await lifecycle.close(a)

    assert await registry.members("r1") == ["B"]


async def test_cancelled_close_still_releases_room(router, lifecycle, connect, registry):
    a, ws_a = connect()
    b, ws_b = connect()
    await router.dispatch(a, join_frame("r1"))
    await router.dispatch(b, join_frame("r1"))
    await lifecycle.flush()
    ws_a.sent.clear()

    await registry._lock.acquire()
    try:
        closing = asyncio.create_task(lifecycle.close(b))
        await asyncio.sleep(0)
        closing.cancel()
        with pytest.raises(asyncio.CancelledError):
            await closing
    finally:
        registry._lock.release()

    await lifecycle.drain()
    await lifecycle.flush()

    assert lifecycle.lookup("B") is None
    assert await registry.members("r1") == ["A"]
    assert ws_a.sent == [{"event": "peer_left", "payload": {"peerId": "B"}}]


async def test_last_member_cancelled_close_deletes_room(router, lifecycle, connect, registry):
    a, _ = connect()
    await router.dispatch(a, join_frame("r1"))

    await registry._lock.acquire()
    try:
        closing = asyncio.create_task(lifecycle.close(a))
        await asyncio.sleep(0)
        closing.cancel()
        with pytest.raises(asyncio.CancelledError):
            await closing
    finally:
        registry._lock.release()
    await lifecycle.drain()

    assert await registry.snapshot_all() == {}


async def test_interrupted_vacate_keeps_room_for_retry(router, lifecycle, connect, registry):
    a, _ = connect()
    await router.dispatch(a, join_frame("r1"))

    await registry._lock.acquire()
    try:
        leaving = asyncio.create_task(lifecycle.vacate(a))
        await asyncio.sleep(0)
        leaving.cancel()
        with pytest.raises(asyncio.CancelledError):
            await leaving
    finally:
        registry._lock.release()

    assert a.room == "r1"
    await lifecycle.close(a)
    assert await registry.snapshot_all() == {}


async def test_peer_left_skips_members_whose_transport_died(router, lifecycle, connect):
    a, ws_a = connect()
    b, ws_b = connect(fail_sends=True)
    c, ws_c = connect()
    for state in (a, b, c):
        await router.dispatch(state, join_frame("r1"))
    await lifecycle.flush()
    ws_c.sent.clear()

    await lifecycle.close(a)
    await lifecycle.flush()

    assert ws_c.sent == [{"event": "peer_left", "payload": {"peerId": "A"}}]


async def test_handle_send_is_best_effort():
    ws = FakeWebSocket()
    handle = ConnectionHandle("X", ws)
    assert handle.send({"event": "peer_joined", "payload": {"peerId": "Y"}})
    await handle.flush()
    assert ws.sent == [{"event": "peer_joined", "payload": {"peerId": "Y"}}]

    ws.fail_sends = True
    assert handle.send({"event": "peer_joined", "payload": {"peerId": "Z"}})
    await handle.flush()
    # The failed write marks the handle closed; later sends are refused
    assert not handle.is_open
    assert not handle.send({"event": "peer_joined", "payload": {"peerId": "Z"}})
    assert len(ws.sent) == 1


async def test_handle_drops_when_queue_is_full():
    ws = StalledWebSocket()
    handle = ConnectionHandle("X", ws, queue_size=2)

    results = [handle.send({"event": "peer_left", "payload": {"peerId": str(n)}}) for n in range(5)]

    assert results == [True, True, False, False, False]
    handle.close()
    await handle.flush()


async def test_handle_close_discards_queued_messages():
    ws = StalledWebSocket()
    handle = ConnectionHandle("X", ws)
    handle.send({"event": "peer_left", "payload": {"peerId": "1"}})
    await asyncio.sleep(0)
    handle.send({"event": "peer_left", "payload": {"peerId": "2"}})

    handle.close()
    await asyncio.sleep(0)

    assert not handle.is_open
    assert handle._queue.empty()
    assert not handle.send({"event": "peer_left", "payload": {"peerId": "3"}})


async def test_broadcast_counts_queued_messages():
    good = ConnectionHandle("G", FakeWebSocket())
    closed = ConnectionHandle("C", FakeWebSocket())
    closed.close()
    assert broadcast([good, closed], {"event": "peer_left", "payload": {"peerId": "Q"}}) == 1
    assert broadcast([], {"event": "peer_left", "payload": {"peerId": "Q"}}) == 0
    good.close()
