"""Supervision of the external transcoding process.

One ``ProcessHandle`` exists per conversion. It moves from RUNNING to exactly
one of SUCCEEDED, FAILED or KILLED and fires at most one terminal callback.
A killed process fires none; the caller decides on its own what a cancelled
job looks like.
"""

import asyncio
import re
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Deque, Optional, Set

from amvconvert.engine.command_builder import InvocationSpec, command_as_string
from amvconvert.jobs.errors import EngineFailure
from amvconvert.utils.logging_config import get_logger

logger = get_logger(__name__)

STDERR_TAIL_LINES = 40
# per-line read limit on the engine's pipes; asyncio defaults to 64 KiB
STREAM_LIMIT = 1024 * 1024

_DURATION_RE = re.compile(r"Duration:\s*(\d+):(\d{2}):(\d{2}(?:\.\d+)?)")


class SupervisorState(str, Enum):
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    KILLED = "killed"


@dataclass
class SupervisorCallbacks:
    on_progress: Callable[[int], None]
    on_success: Callable[[], None]
    on_failure: Callable[[EngineFailure], None]


class ProcessHandle(ABC):
    """Cancellation handle for one running conversion."""

    state: SupervisorState = SupervisorState.RUNNING

    @abstractmethod
    def kill(self) -> None:
        """Forcefully stop the process. Safe to call repeatedly or after exit."""
        ...

    @abstractmethod
    async def wait(self) -> SupervisorState:
        """Wait until the handle reaches a terminal state."""
        ...


class TranscodeSupervisor(ABC):
    """Abstract interface for running the engine (real ffmpeg or a test fake)."""

    @abstractmethod
    async def start(
        self, spec: InvocationSpec, callbacks: SupervisorCallbacks
    ) -> ProcessHandle:
        """Spawn the engine for ``spec``.

        Raises:
            EngineFailure: the process could not be started at all.
        """
        ...

    @abstractmethod
    def kill_all(self) -> None:
        """Kill every process this supervisor still runs."""
        ...


class ProgressTracker:
    """Turns ffmpeg ``-progress`` output into a non-decreasing integer percent."""

    def __init__(self, duration: Optional[float] = None):
        self.duration = duration if duration and duration > 0 else None
        self.percent = 0

    def feed_stderr(self, line: str) -> None:
        # the first Duration line belongs to input #0, the real file
        if self.duration is not None:
            return
        match = _DURATION_RE.search(line)
        if match:
            h, m, s = match.groups()
            seconds = int(h) * 3600 + int(m) * 60 + float(s)
            if seconds > 0:
                self.duration = seconds

    def feed_progress(self, line: str) -> Optional[int]:
        """Consume one ``key=value`` line; return a new percent if it advanced."""
        key, _, value = line.partition("=")
        if key in ("out_time_us", "out_time_ms"):
            try:
                seconds = int(value) / 1_000_000
            except ValueError:
                return None
        elif key == "out_time":
            seconds = _hhmmss_to_seconds(value)
            if seconds is None:
                return None
        else:
            return None

        if self.duration is None:
            return None
        return self._advance(seconds / self.duration * 100.0)

    def _advance(self, percent: float) -> Optional[int]:
        value = max(0, min(100, int(percent)))
        if value <= self.percent:
            return None
        self.percent = value
        return value


def _hhmmss_to_seconds(time_str: str) -> Optional[float]:
    try:
        h, m, s = time_str.split(":")
        return int(h) * 3600 + int(m) * 60 + float(s)
    except ValueError:
        return None


async def _drain(stream: Optional[asyncio.StreamReader]) -> None:
    if stream is None:
        return
    while await stream.read(64 * 1024):
        pass


class FfmpegProcessHandle(ProcessHandle):

    def __init__(
        self,
        process: asyncio.subprocess.Process,
        spec: InvocationSpec,
        callbacks: SupervisorCallbacks,
    ):
        self.process = process
        self.spec = spec
        self.state = SupervisorState.RUNNING
        self._callbacks = callbacks
        self._tracker = ProgressTracker(spec.duration_hint)
        self._stderr_tail: Deque[str] = deque(maxlen=STDERR_TAIL_LINES)
        self._task: Optional[asyncio.Task] = None

    @property
    def pid(self) -> int:
        return self.process.pid

    def kill(self) -> None:
        if self.state is not SupervisorState.RUNNING:
            return
        self.state = SupervisorState.KILLED
        try:
            self.process.kill()
        except ProcessLookupError:
            pass
        logger.info(f"Killed ffmpeg pid={self.pid}")

    async def wait(self) -> SupervisorState:
        if self._task is not None:
            await asyncio.shield(self._task)
        return self.state

    async def supervise(self) -> None:
        readers = [
            asyncio.ensure_future(self._read_progress()),
            asyncio.ensure_future(self._read_stderr()),
        ]
        try:
            await asyncio.gather(*readers)
            returncode = await self.process.wait()
        except asyncio.CancelledError:
            self.kill()
            raise
        except Exception as exc:
            logger.exception(f"Lost track of ffmpeg pid={self.pid}")
            for reader in readers:
                reader.cancel()
            await asyncio.gather(*readers, return_exceptions=True)
            await self._reap()
            if self.state is SupervisorState.KILLED:
                return
            self.state = SupervisorState.FAILED
            failure = EngineFailure(
                f"ffmpeg supervision failed: {type(exc).__name__}: {exc}",
                returncode=self.process.returncode,
                stderr_tail=self._stderr_tail,
            )
            self._fire(self._callbacks.on_failure, failure)
            return

        if self.state is SupervisorState.KILLED:
            return
        if returncode == 0:
            self.state = SupervisorState.SUCCEEDED
            self._fire(self._callbacks.on_success)
        else:
            self.state = SupervisorState.FAILED
            failure = EngineFailure(
                f"ffmpeg exited with code {returncode}",
                returncode=returncode,
                stderr_tail=self._stderr_tail,
            )
            self._fire(self._callbacks.on_failure, failure)

    async def _read_progress(self) -> None:
        async for raw in self.process.stdout:
            line = raw.decode(errors="replace").strip()
            if not line:
                continue
            percent = self._tracker.feed_progress(line)
            if percent is not None and self.state is SupervisorState.RUNNING:
                self._fire(self._callbacks.on_progress, percent)

    async def _read_stderr(self) -> None:
        # drained concurrently so a full stderr pipe never stalls ffmpeg
        async for raw in self.process.stderr:
            line = raw.decode(errors="replace").rstrip()
            if not line:
                continue
            self._tracker.feed_stderr(line)
            self._stderr_tail.append(line)

    async def _reap(self) -> None:
        try:
            self.process.kill()
        except ProcessLookupError:
            pass
        # chunked reads cannot overrun the line limit, so both pipes reach EOF
        await asyncio.gather(_drain(self.process.stdout), _drain(self.process.stderr))
        await self.process.wait()

    def _fire(self, callback: Callable, *args) -> None:
        try:
            callback(*args)
        except Exception:
            logger.exception(f"Supervisor callback {callback!r} raised")


class FfmpegSupervisor(TranscodeSupervisor):
    """Runs ffmpeg with asyncio subprocesses, one handle per conversion."""

    def __init__(self, ffmpeg_bin: str):
        self.ffmpeg_bin = ffmpeg_bin
        self._handles: Set[FfmpegProcessHandle] = set()

    async def start(
        self, spec: InvocationSpec, callbacks: SupervisorCallbacks
    ) -> FfmpegProcessHandle:
        argv = spec.to_argv(self.ffmpeg_bin)
        logger.debug(f"Launching: {command_as_string(argv)}")
        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                limit=STREAM_LIMIT,
            )
        except OSError as exc:
            raise EngineFailure(f"could not start ffmpeg: {exc}") from exc

        handle = FfmpegProcessHandle(process, spec, callbacks)
        self._handles.add(handle)
        handle._task = asyncio.create_task(handle.supervise())
        handle._task.add_done_callback(lambda _t: self._handles.discard(handle))
        logger.info(f"Started ffmpeg pid={process.pid} -> {spec.output_path}")
        return handle

    def kill_all(self) -> None:
        for handle in list(self._handles):
            handle.kill()

    def running(self) -> int:
        return len(self._handles)
