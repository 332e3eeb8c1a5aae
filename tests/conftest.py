import asyncio
import signal
import sys
from pathlib import Path
from typing import Any, Callable, List, Optional

import pytest

from tello_link.config import LinkConfig, load_config


@pytest.fixture
def loop_factory():
    """Provide event loops for aiohttp pytest integration."""
    loops: list[asyncio.AbstractEventLoop] = []

    def factory() -> asyncio.AbstractEventLoop:
        if sys.platform.startswith("win"):
            loop = asyncio.SelectorEventLoop()
        else:
            loop = asyncio.new_event_loop()

        asyncio.set_event_loop(loop)
        loops.append(loop)
        return loop

    yield factory

    for loop in loops:
        loop.close()

    asyncio.set_event_loop(None)


@pytest.fixture
def link_config(tmp_path: Path) -> LinkConfig:
    """Defaults with short timings, ephemeral ports and a temporary media root."""

    config = load_config(tmp_path / "tello-link.cfg")
    config.drone.host = "127.0.0.1"
    config.drone.telemetry_port = 0
    config.drone.video_port = 0
    config.commands.timeout_seconds = 0.05
    config.commands.maneuver_timeout_seconds = 0.05
    config.commands.retry_delay_seconds = 0.02
    config.video.viewer_port = 0
    config.video.stop_grace_seconds = 0.2
    config.recording.stop_grace_seconds = 0.2
    config.media.root = tmp_path / "media"
    config.media.photo_poll_attempts = 3
    config.media.photo_poll_interval_seconds = 0.01
    config.logging.path = None
    return config


class FakeStdinTransport:
    def __init__(self) -> None:
        self.buffer_size = 0

    def get_write_buffer_size(self) -> int:
        return self.buffer_size


class FakeStdin:
    def __init__(self) -> None:
        self.transport = FakeStdinTransport()
        self.written: List[bytes] = []
        self.closed = False

    def write(self, data: bytes) -> None:
        if self.closed:
            raise BrokenPipeError("stdin closed")
        self.written.append(data)

    def is_closing(self) -> bool:
        return self.closed

    def close(self) -> None:
        self.closed = True


class FakeProcess:
    """Stands in for :class:`asyncio.subprocess.Process`.

    A graceful signal makes the process exit with ``signal_exit_code``
    unless ``ignore_signals`` is set; ``on_signal`` runs first so tests can
    simulate output written during shutdown.
    """

    def __init__(self, program: str, args: List[str], pid: int) -> None:
        self.program = program
        self.args = args
        self.pid = pid
        self.returncode: Optional[int] = None
        self.stdin = FakeStdin()
        self.stdout = asyncio.StreamReader()
        self.stderr = asyncio.StreamReader()
        self.signals: List[int] = []
        self.killed = False
        self.ignore_signals = False
        self.signal_exit_code = 0
        self.on_signal: Optional[Callable[["FakeProcess", int], None]] = None
        self._exited = asyncio.Event()

    @property
    def output_path(self) -> Path:
        return Path(self.args[-1])

    def send_signal(self, sig: int) -> None:
        if self.returncode is not None:
            raise ProcessLookupError
        self.signals.append(sig)
        if self.on_signal is not None:
            self.on_signal(self, sig)
        if not self.ignore_signals:
            self.exit(self.signal_exit_code)

    def terminate(self) -> None:
        self.send_signal(signal.SIGTERM)

    def kill(self) -> None:
        if self.returncode is not None:
            raise ProcessLookupError
        self.killed = True
        self.exit(-signal.SIGKILL)

    def exit(self, code: int) -> None:
        if self.returncode is not None:
            return
        self.returncode = code
        self.stdout.feed_eof()
        self.stderr.feed_eof()
        self._exited.set()

    async def wait(self) -> int:
        await self._exited.wait()
        assert self.returncode is not None
        return self.returncode


class FakeLauncher:
    """Records spawned processes; mimics ``asyncio.create_subprocess_exec``."""

    def __init__(self) -> None:
        self.processes: List[FakeProcess] = []
        self.fail_with: Optional[Exception] = None
        self.configure: Optional[Callable[[FakeProcess], None]] = None
        self._next_pid = 1000

    async def __call__(self, program: str, *args: str, **kwargs: Any) -> FakeProcess:
        if self.fail_with is not None:
            raise self.fail_with
        self._next_pid += 1
        process = FakeProcess(program, list(args), self._next_pid)
        if self.configure is not None:
            self.configure(process)
        self.processes.append(process)
        return process

    def by_output(self, suffix: str) -> List[FakeProcess]:
        return [p for p in self.processes if p.args and p.args[-1].endswith(suffix)]


@pytest.fixture
def launcher() -> FakeLauncher:
    return FakeLauncher()


class FakeEndpoint:
    def __init__(self, device: "FakeDevice", on_datagram, on_error) -> None:
        self._device = device
        self._on_datagram = on_datagram
        self._on_error = on_error
        self.closed = False

    @property
    def is_open(self) -> bool:
        return not self.closed

    def sendto(self, data: bytes, addr: Optional[tuple] = None) -> None:
        if self.closed:
            raise ConnectionError("endpoint closed")
        self._device.receive(self, data.decode("utf-8"), addr)

    def deliver(self, data: bytes, addr: tuple) -> None:
        self._on_datagram(data, addr)

    def close(self) -> None:
        self.closed = True


class FakeDevice:
    """Scripted drone on the command port.

    Each transmitted datagram consumes the next ``script`` entry: bytes are
    sent back as the reply, None stays silent and an exception is raised
    from ``sendto``. Once the script is exhausted ``default`` applies.
    """

    def __init__(
        self,
        *script: Any,
        default: Optional[bytes] = b"ok",
        host: str = "127.0.0.1",
    ) -> None:
        self.script: List[Any] = list(script)
        self.default = default
        self.host = host
        self.sent: List[str] = []
        self.sent_at: List[float] = []
        self.endpoint: Optional[FakeEndpoint] = None

    async def factory(self, on_datagram, *, name: str, on_error=None, **kwargs) -> FakeEndpoint:
        self.endpoint = FakeEndpoint(self, on_datagram, on_error)
        return self.endpoint

    def receive(self, endpoint: FakeEndpoint, text: str, addr: Optional[tuple]) -> None:
        loop = asyncio.get_running_loop()
        self.sent.append(text)
        self.sent_at.append(loop.time())
        reply = self.script.pop(0) if self.script else self.default
        if isinstance(reply, BaseException):
            raise reply
        if reply is None:
            return
        loop.call_soon(endpoint.deliver, reply, (self.host, 8889))


@pytest.fixture
def device() -> FakeDevice:
    return FakeDevice()
