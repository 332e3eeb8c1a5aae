"""ffmpeg child process supervision and argument builders.

Both the live transcoder and the recording branch run ffmpeg with the raw
H.264 feed on stdin. :class:`SupervisedProcess` owns the only reference to
the child: it spawns it, pumps its output, feeds its input, and turns the
exit into a single callback that says whether the exit was requested.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import signal
import sys
from collections import deque
from pathlib import Path
from typing import Any, Awaitable, Callable, Deque, List, Optional, Sequence

from ..config import RecordingConfig, VideoConfig
from ..core.errors import ProcessSpawnFailure
from ..core.protocols import ProcessLauncher
from ..core.utils import fire_and_forget

LOGGER = logging.getLogger(__name__)

StdoutHandler = Callable[[bytes], Any]
ExitHandler = Callable[[int, bool], Awaitable[None] | None]

STDERR_TAIL_LINES = 20


def build_live_args(config: VideoConfig, still_path: Path) -> List[str]:
    """Raw H.264 on stdin -> MPEG-TS on stdout plus a refreshed JPEG still."""

    return [
        "-hide_banner",
        "-loglevel",
        "warning",
        "-fflags",
        "nobuffer",
        "-flags",
        "low_delay",
        "-f",
        "h264",
        "-i",
        "pipe:0",
        # Primary output: MPEG-1 in MPEG-TS, playable by JSMpeg in the browser.
        "-map",
        "0:v",
        "-f",
        "mpegts",
        "-codec:v",
        "mpeg1video",
        "-s",
        f"{config.width}x{config.height}",
        "-b:v",
        config.bitrate,
        "-r",
        str(config.framerate),
        "-bf",
        "0",
        "pipe:1",
        # Secondary output: a single still file overwritten at a low rate.
        "-map",
        "0:v",
        "-vf",
        f"fps={config.still_fps:g}",
        "-update",
        "1",
        "-q:v",
        "2",
        "-y",
        str(still_path),
    ]


def build_recording_args(
    config: RecordingConfig, video: VideoConfig, output_path: Path
) -> List[str]:
    """Raw H.264 on stdin -> seekable MP4 with regular keyframes."""

    return [
        "-hide_banner",
        "-loglevel",
        "warning",
        "-fflags",
        "+genpts",
        "-r",
        str(video.framerate),
        "-f",
        "h264",
        "-i",
        "pipe:0",
        "-map",
        "0:v",
        "-c:v",
        config.codec,
        "-preset",
        config.preset,
        "-crf",
        str(config.crf),
        "-g",
        str(config.gop),
        "-pix_fmt",
        "yuv420p",
        "-movflags",
        "+faststart",
        "-f",
        "mp4",
        "-y",
        str(output_path),
    ]


class SupervisedProcess:
    """One supervised ffmpeg child.

    The instance doubles as a video consumer: :meth:`feed` writes a datagram
    to the child's stdin unless the pipe is closing or already holds more
    than ``buffer_limit`` unwritten bytes, in which case the datagram is
    dropped.
    """

    def __init__(
        self,
        name: str,
        program: str,
        args: Sequence[str],
        *,
        launcher: Optional[ProcessLauncher] = None,
        on_stdout: Optional[StdoutHandler] = None,
        on_exit: Optional[ExitHandler] = None,
        buffer_limit: int = 1024 * 1024,
        chunk_size: int = 8192,
    ) -> None:
        self.name = name
        self._program = program
        self._args = list(args)
        self._launcher = launcher or asyncio.create_subprocess_exec
        self._on_stdout = on_stdout
        self._on_exit = on_exit
        self._buffer_limit = buffer_limit
        self._chunk_size = chunk_size
        self._process: Optional[asyncio.subprocess.Process] = None
        self._pumps: List[asyncio.Task[None]] = []
        self._waiter: Optional[asyncio.Task[None]] = None
        self._stopping = False
        self._stderr_tail: Deque[str] = deque(maxlen=STDERR_TAIL_LINES)
        self._dropped = 0

    @property
    def pid(self) -> Optional[int]:
        return self._process.pid if self._process is not None else None

    @property
    def returncode(self) -> Optional[int]:
        return self._process.returncode if self._process is not None else None

    @property
    def running(self) -> bool:
        return self._process is not None and self._process.returncode is None

    @property
    def dropped_count(self) -> int:
        return self._dropped

    @property
    def stderr_tail(self) -> List[str]:
        return list(self._stderr_tail)

    @property
    def args(self) -> List[str]:
        return list(self._args)

    async def start(self) -> None:
        """Spawn the child and begin supervising it.

        Raises:
            ProcessSpawnFailure: The executable is missing or not runnable.
        """

        if self._process is not None:
            raise RuntimeError(f"{self.name} already started")

        stdout = asyncio.subprocess.PIPE if self._on_stdout else asyncio.subprocess.DEVNULL
        try:
            self._process = await self._launcher(
                self._program,
                *self._args,
                stdin=asyncio.subprocess.PIPE,
                stdout=stdout,
                stderr=asyncio.subprocess.PIPE,
            )
        except (OSError, ValueError) as exc:
            raise ProcessSpawnFailure(
                f"Failed to start {self.name} ({self._program}): {exc}"
            ) from exc

        LOGGER.info("%s started (pid %s)", self.name, self._process.pid)

        if self._on_stdout is not None and self._process.stdout is not None:
            self._pumps.append(asyncio.create_task(self._pump_stdout()))
        if self._process.stderr is not None:
            self._pumps.append(asyncio.create_task(self._pump_stderr()))
        self._waiter = asyncio.create_task(self._wait())

    def feed(self, data: bytes) -> bool:
        process = self._process
        stdin = process.stdin if process is not None else None
        if stdin is None or stdin.is_closing():
            self._dropped += 1
            return False
        if stdin.transport.get_write_buffer_size() > self._buffer_limit:
            self._dropped += 1
            return False
        try:
            stdin.write(data)
        except (BrokenPipeError, ConnectionResetError, RuntimeError):
            self._dropped += 1
            return False
        return True

    def close_stdin(self) -> None:
        process = self._process
        if process is not None and process.stdin is not None and not process.stdin.is_closing():
            with contextlib.suppress(BrokenPipeError, ConnectionResetError):
                process.stdin.close()

    async def stop(
        self,
        *,
        grace: float,
        graceful_signal: int = signal.SIGTERM,
        close_stdin: bool = False,
    ) -> Optional[int]:
        """Request exit, escalate to a hard kill after ``grace`` seconds.

        Returns the exit code once the exit handler has run.
        """

        process = self._process
        if process is None:
            return None

        self._stopping = True
        if process.returncode is None:
            if close_stdin:
                self.close_stdin()
            self._send_signal(graceful_signal)
            try:
                await asyncio.wait_for(process.wait(), grace)
            except asyncio.TimeoutError:
                LOGGER.warning(
                    "%s did not exit within %.1fs; killing pid %s",
                    self.name,
                    grace,
                    process.pid,
                )
                with contextlib.suppress(ProcessLookupError):
                    process.kill()

        if self._waiter is not None:
            await self._waiter
        return process.returncode

    def _send_signal(self, sig: int) -> None:
        process = self._process
        if process is None:
            return
        try:
            if sys.platform == "win32" and sig != signal.SIGTERM:
                process.terminate()
            else:
                process.send_signal(sig)
        except ProcessLookupError:
            pass

    async def _wait(self) -> None:
        assert self._process is not None
        returncode = await self._process.wait()
        for task in self._pumps:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        expected = self._stopping
        log = LOGGER.info if expected or returncode == 0 else LOGGER.warning
        log("%s exited with code %s", self.name, returncode)
        if self._on_exit is None:
            return
        try:
            result = self._on_exit(returncode, expected)
            if asyncio.iscoroutine(result):
                await result
            else:
                fire_and_forget(result, label=self.name)
        except Exception:  # pragma: no cover - defensive logging
            LOGGER.exception("%s exit handler raised", self.name)

    async def _pump_stdout(self) -> None:
        assert self._process is not None and self._process.stdout is not None
        reader = self._process.stdout
        while True:
            chunk = await reader.read(self._chunk_size)
            if not chunk:
                break
            try:
                result = self._on_stdout(chunk)  # type: ignore[misc]
                if asyncio.iscoroutine(result):
                    await result
            except Exception:  # pragma: no cover - defensive logging
                LOGGER.exception("%s stdout handler raised", self.name)

    async def _pump_stderr(self) -> None:
        assert self._process is not None and self._process.stderr is not None
        reader = self._process.stderr
        while True:
            line = await reader.readline()
            if not line:
                break
            text = line.decode("utf-8", errors="replace").rstrip()
            if text:
                self._stderr_tail.append(text)
                LOGGER.debug("%s: %s", self.name, text)
