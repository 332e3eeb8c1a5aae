import asyncio

import pytest

from tello_link.video.broadcaster import StreamBroadcaster


class FakeTransport:
    def __init__(self, *, buffered: int = 0, closing: bool = False) -> None:
        self.buffered = buffered
        self.closing = closing

    def is_closing(self) -> bool:
        return self.closing

    def get_write_buffer_size(self) -> int:
        return self.buffered


class FakeSocket:
    def __init__(self, *, fail: bool = False) -> None:
        self.closed = False
        self.fail = fail
        self.frames: list[bytes] = []
        self.close_calls = 0

    async def send_bytes(self, data: bytes) -> None:
        if self.fail:
            raise ConnectionResetError("Cannot write to closing transport")
        self.frames.append(data)

    async def close(self) -> None:
        self.close_calls += 1
        self.closed = True


class UnregisteringSocket(FakeSocket):
    """Removes another viewer while the broadcast is iterating."""

    def __init__(self, broadcaster: StreamBroadcaster) -> None:
        super().__init__()
        self.broadcaster = broadcaster
        self.victim = None

    async def send_bytes(self, data: bytes) -> None:
        await super().send_bytes(data)
        if self.victim is not None:
            self.broadcaster.unregister(self.victim)


@pytest.mark.asyncio
async def test_broadcast_reaches_ready_viewers_only():
    broadcaster = StreamBroadcaster(buffer_limit=100)
    ready = FakeSocket()
    backed_up = FakeSocket()
    closed = FakeSocket()
    closed.closed = True
    broadcaster.register(ready, transport=FakeTransport())
    slow = broadcaster.register(backed_up, transport=FakeTransport(buffered=101))
    broadcaster.register(closed, transport=FakeTransport())

    delivered = await broadcaster.broadcast(b"ts")

    assert delivered == 1
    assert ready.frames == [b"ts"]
    assert backed_up.frames == []
    assert slow.skipped_chunks == 1
    assert broadcaster.viewer_count == 3


@pytest.mark.asyncio
async def test_closing_transport_is_skipped_without_backlog():
    broadcaster = StreamBroadcaster()
    transport = FakeTransport(closing=True)
    socket = FakeSocket()
    broadcaster.register(socket, transport=transport)

    await broadcaster.broadcast(b"one")
    transport.closing = False
    await broadcaster.broadcast(b"two")

    assert socket.frames == [b"two"]


@pytest.mark.asyncio
async def test_failed_send_unregisters_viewer():
    broadcaster = StreamBroadcaster()
    broken = FakeSocket(fail=True)
    healthy = FakeSocket()
    broadcaster.register(broken)
    broadcaster.register(healthy)

    delivered = await broadcaster.broadcast(b"ts")

    assert delivered == 1
    assert broadcaster.viewer_count == 1
    assert [conn.socket for conn in broadcaster.viewers()] == [healthy]


@pytest.mark.asyncio
async def test_unregister_during_broadcast_is_safe():
    broadcaster = StreamBroadcaster()
    first = UnregisteringSocket(broadcaster)
    second = FakeSocket()
    broadcaster.register(first)
    victim = broadcaster.register(second)
    first.victim = victim

    await broadcaster.broadcast(b"a")
    await broadcaster.broadcast(b"b")

    assert first.frames == [b"a", b"b"]
    assert second.frames == [b"a"]
    assert broadcaster.viewer_count == 1


@pytest.mark.asyncio
async def test_close_all_closes_sockets():
    broadcaster = StreamBroadcaster()
    sockets = [FakeSocket(), FakeSocket()]
    for socket in sockets:
        broadcaster.register(socket, remote="127.0.0.1")

    await broadcaster.close_all()

    assert broadcaster.viewer_count == 0
    assert [socket.close_calls for socket in sockets] == [1, 1]


class StalledSocket(FakeSocket):
    """A viewer whose socket waits for a drain that never comes."""

    def __init__(self) -> None:
        super().__init__()
        self.release = asyncio.Event()
        self.attempts = 0

    async def send_bytes(self, data: bytes) -> None:
        self.attempts += 1
        await self.release.wait()
        await super().send_bytes(data)


@pytest.mark.asyncio
async def test_stalled_viewer_does_not_hold_back_others():
    broadcaster = StreamBroadcaster()
    stalled = StalledSocket()
    healthy = FakeSocket()
    stuck = broadcaster.register(stalled)
    broadcaster.register(healthy)

    first = await asyncio.wait_for(broadcaster.broadcast(b"one"), 0.5)
    second = await asyncio.wait_for(broadcaster.broadcast(b"two"), 0.5)

    assert (first, second) == (1, 1)
    assert healthy.frames == [b"one", b"two"]
    assert stalled.attempts == 1
    assert stuck.skipped_chunks == 1

    stalled.release.set()
    await asyncio.sleep(0)
    await asyncio.sleep(0)
    assert stalled.frames == [b"one"]
    assert stuck.sending is None

    await broadcaster.broadcast(b"three")
    assert stalled.frames == [b"one", b"three"]
