import asyncio

import pytest

from tello_link.commands import CommandTransport, classify_reply, command_verb
from tello_link.core.errors import MalformedResponse, ProtocolRejected


def _transport(link_config, device) -> CommandTransport:
    return CommandTransport(
        link_config.commands,
        link_config.command_address,
        endpoint_factory=device.factory,
    )


def test_classify_reply_accepts_ok_and_numbers():
    assert classify_reply(b"ok") == "ok"
    assert classify_reply(b"ok\r\n") == "ok"
    assert classify_reply(b"87") == "87"
    assert classify_reply("-12") == "-12"


def test_classify_reply_rejects_error_tokens():
    with pytest.raises(ProtocolRejected):
        classify_reply(b"error Not joystick")
    with pytest.raises(ProtocolRejected):
        classify_reply(b"ERROR")


@pytest.mark.parametrize("raw", [b"", b"\x00\x00", b"  ", b"unknown reply", b"12.5"])
def test_classify_reply_flags_malformed(raw):
    with pytest.raises(MalformedResponse):
        classify_reply(raw)


def test_command_verb():
    assert command_verb("  forward 50 ") == "forward"
    assert command_verb("battery?") == "battery?"
    assert command_verb("") == ""


@pytest.mark.asyncio
async def test_send_resolves_on_ok(link_config, device):
    transport = _transport(link_config, device)
    await transport.open()

    result = await transport.send("command")

    assert result.success is True
    assert result.response == "ok"
    assert result.attempts == 1
    assert device.sent == ["command"]
    transport.close()


@pytest.mark.asyncio
async def test_send_resolves_numeric_reply(link_config, device):
    device.script = [b"85"]
    transport = _transport(link_config, device)
    await transport.open()

    result = await transport.send("battery?")

    assert result.success is True
    assert result.response == "85"
    transport.close()


@pytest.mark.asyncio
async def test_error_reply_fails_without_retry(link_config, device):
    link_config.commands.max_attempts = 5
    device.script = [b"error Motor stop"]
    transport = _transport(link_config, device)
    await transport.open()

    result = await transport.send("takeoff")

    assert result.success is False
    assert result.error_code == "protocol_rejected"
    assert result.attempts == 1
    assert device.sent == ["takeoff"]
    transport.close()


@pytest.mark.asyncio
async def test_silent_device_exhausts_attempts_and_times_out(link_config, device):
    device.default = None
    transport = _transport(link_config, device)
    await transport.open()
    loop = asyncio.get_running_loop()

    started = loop.time()
    result = await transport.send("takeoff")
    elapsed = loop.time() - started

    timeout = link_config.commands.timeout_seconds
    delay = link_config.commands.retry_delay_seconds
    assert result.success is False
    assert result.error_code == "protocol_timeout"
    assert result.attempts == 3
    assert device.sent == ["takeoff"] * 3
    gaps = [later - earlier for earlier, later in zip(device.sent_at, device.sent_at[1:])]
    assert all(gap >= (timeout + delay) * 0.95 for gap in gaps)
    assert elapsed >= (3 * timeout + 2 * delay) * 0.95
    assert elapsed < 3 * timeout + 2 * delay + 0.1
    transport.close()


class _EchoDevice(asyncio.DatagramProtocol):
    """Answers like the drone on a real loopback socket."""

    def __init__(self, replies: dict) -> None:
        self.replies = replies
        self.received: list[str] = []
        self.transport = None

    def connection_made(self, transport) -> None:
        self.transport = transport

    def datagram_received(self, data: bytes, addr) -> None:
        text = data.decode("utf-8")
        self.received.append(text)
        self.transport.sendto(self.replies.get(text, b"ok"), addr)


@pytest.mark.asyncio
async def test_send_over_loopback_socket(link_config):
    loop = asyncio.get_running_loop()
    transport_, echo = await loop.create_datagram_endpoint(
        lambda: _EchoDevice({"battery?": b"91"}), local_addr=("127.0.0.1", 0)
    )
    port = transport_.get_extra_info("sockname")[1]
    link_config.commands.timeout_seconds = 1.0
    commands = CommandTransport(link_config.commands, ("127.0.0.1", port))
    await commands.open()

    try:
        handshake = await commands.send("command")
        battery = await commands.send("battery?")
    finally:
        commands.close()
        transport_.close()

    assert handshake.success is True
    assert handshake.attempts == 1
    assert battery.response == "91"
    assert echo.received == ["command", "battery?"]
    assert commands.is_open is False


@pytest.mark.asyncio
async def test_malformed_reply_is_retried_after_delay(link_config, device):
    device.script = [b"garbage", b"ok"]
    transport = _transport(link_config, device)
    await transport.open()

    result = await transport.send("land")

    assert result.success is True
    assert result.attempts == 2
    assert device.sent == ["land", "land"]
    gap = device.sent_at[1] - device.sent_at[0]
    assert gap >= link_config.commands.retry_delay_seconds * 0.9
    transport.close()


@pytest.mark.asyncio
async def test_malformed_replies_exhaust_budget(link_config, device):
    device.default = b"what"
    transport = _transport(link_config, device)
    await transport.open()

    result = await transport.send("command")

    assert result.success is False
    assert result.error_code == "malformed_response"
    assert result.attempts == link_config.commands.max_attempts
    transport.close()


@pytest.mark.asyncio
async def test_transmit_errors_are_retried(link_config, device):
    device.script = [OSError("network unreachable"), b"ok"]
    transport = _transport(link_config, device)
    await transport.open()

    result = await transport.send("streamon")

    assert result.success is True
    assert result.attempts == 2
    transport.close()


@pytest.mark.asyncio
async def test_concurrent_sends_are_serialized(link_config, device):
    device.script = [b"ok", b"75"]
    transport = _transport(link_config, device)
    await transport.open()

    first, second = await asyncio.gather(
        transport.send("command"), transport.send("battery?")
    )

    assert first.response == "ok"
    assert second.response == "75"
    assert device.sent == ["command", "battery?"]
    assert transport.pending_count == 0
    transport.close()


@pytest.mark.asyncio
async def test_stray_reply_between_commands_is_discarded(link_config, device):
    transport = _transport(link_config, device)
    await transport.open()
    await transport.send("command")

    # Late duplicate arriving while nothing is outstanding.
    device.endpoint.deliver(b"error", (device.host, 8889))
    result = await transport.send("battery?")

    assert result.success is True
    transport.close()


@pytest.mark.asyncio
async def test_replies_from_other_peers_are_ignored(link_config, device):
    link_config.commands.max_attempts = 1
    device.default = None
    transport = _transport(link_config, device)
    await transport.open()

    pending = asyncio.create_task(transport.send("command"))
    await asyncio.sleep(0)
    device.endpoint.deliver(b"ok", ("10.0.0.9", 8889))
    result = await pending

    assert result.success is False
    assert result.error_code == "protocol_timeout"
    transport.close()


@pytest.mark.asyncio
async def test_empty_command_is_rejected_without_transmit(link_config, device):
    transport = _transport(link_config, device)
    await transport.open()

    result = await transport.send("   ")

    assert result.success is False
    assert result.error_code == "precondition_failed"
    assert result.attempts == 0
    assert device.sent == []
    transport.close()


@pytest.mark.asyncio
async def test_send_before_open_fails(link_config, device):
    transport = _transport(link_config, device)

    result = await transport.send("command")

    assert result.success is False
    assert result.error_code == "precondition_failed"


@pytest.mark.asyncio
async def test_close_fails_outstanding_call(link_config, device):
    device.default = None
    link_config.commands.timeout_seconds = 5.0
    link_config.commands.maneuver_timeout_seconds = 5.0
    transport = _transport(link_config, device)
    await transport.open()

    pending = asyncio.create_task(transport.send("takeoff"))
    await asyncio.sleep(0.01)
    transport.close()
    result = await asyncio.wait_for(pending, 1.0)

    assert result.success is False
    assert result.error_code == "precondition_failed"
