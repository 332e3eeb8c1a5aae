import asyncio

import pytest

from tello_link.connection import ConnectionState, LinkMonitor


class _Clock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


def _monitor(clock: _Clock) -> tuple[LinkMonitor, list]:
    monitor = LinkMonitor(link_timeout=5.0, monotonic=clock)
    transitions: list = []
    monitor.add_listener(lambda state, detail: transitions.append(state))
    return monitor, transitions


def test_handshake_transitions():
    monitor, transitions = _monitor(_Clock())

    monitor.mark_connecting()
    monitor.mark_connected()

    assert monitor.is_connected
    assert transitions == [ConnectionState.CONNECTING, ConnectionState.CONNECTED]


def test_silence_beyond_timeout_marks_link_lost_and_activity_restores():
    clock = _Clock()
    monitor, transitions = _monitor(clock)
    monitor.mark_connected()

    clock.now = 4.0
    monitor.note_activity()
    clock.now = 8.0
    assert monitor.check() == ConnectionState.CONNECTED

    clock.now = 9.5
    assert monitor.check() == ConnectionState.LOST

    monitor.note_activity()
    assert monitor.state == ConnectionState.CONNECTED
    assert transitions == [
        ConnectionState.CONNECTED,
        ConnectionState.LOST,
        ConnectionState.CONNECTED,
    ]


def test_activity_before_handshake_does_not_connect():
    monitor, transitions = _monitor(_Clock())

    monitor.note_activity()
    monitor.check()

    assert monitor.state == ConnectionState.DISCONNECTED
    assert transitions == []


def test_repeated_state_is_not_reannounced():
    monitor, transitions = _monitor(_Clock())

    monitor.mark_disconnected("initial")
    monitor.mark_connected()
    monitor.mark_connected()

    assert transitions == [ConnectionState.CONNECTED]


@pytest.mark.asyncio
async def test_watchdog_detects_lost_link():
    monitor = LinkMonitor(link_timeout=0.05, check_interval=0.01)
    lost = asyncio.Event()
    monitor.add_listener(
        lambda state, detail: lost.set() if state == ConnectionState.LOST else None
    )
    monitor.mark_connected()
    monitor.start()
    try:
        await asyncio.wait_for(lost.wait(), 1.0)
    finally:
        await monitor.stop()

    assert monitor.state == ConnectionState.LOST
