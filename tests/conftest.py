"""
Shared test fixtures.

Provides: fake probe and supervisor standing in for ffprobe/ffmpeg, an
orchestrator wired to a temporary data directory, and helpers for writing
throwaway engine scripts.
"""

import asyncio
import os
import stat
import sys
from pathlib import Path
from typing import List, Optional

import pytest

from amvconvert.config import Settings
from amvconvert.engine.command_builder import InvocationSpec
from amvconvert.engine.probe import MediaInfo
from amvconvert.engine.supervisor import (
    ProcessHandle,
    SupervisorCallbacks,
    SupervisorState,
    TranscodeSupervisor,
)
from amvconvert.jobs.cleanup import CleanupScheduler
from amvconvert.jobs.errors import EngineFailure
from amvconvert.jobs.orchestrator import JobOrchestrator
from amvconvert.jobs.store import JobStore
from amvconvert.storage.artifacts import ArtifactStore


class FakeProbe:
    """Answers probe requests without ffprobe; can be held open with ``gate``."""

    def __init__(self, has_audio: bool = True, duration: float = 10.0):
        self.has_audio = has_audio
        self.duration = duration
        self.calls: List[str] = []
        self.gate: Optional[asyncio.Event] = None

    async def examine(self, input_path: str) -> MediaInfo:
        self.calls.append(input_path)
        if self.gate is not None:
            await self.gate.wait()
        return MediaInfo(
            has_audio=self.has_audio, has_video=True, duration_seconds=self.duration
        )

    async def has_audio_track(self, input_path: str) -> bool:
        return (await self.examine(input_path)).has_audio


class FakeHandle(ProcessHandle):

    def __init__(self):
        self.state = SupervisorState.RUNNING
        self.kill_calls = 0
        self._done = asyncio.Event()

    def kill(self) -> None:
        self.kill_calls += 1
        if self.state is SupervisorState.RUNNING:
            self.state = SupervisorState.KILLED
            self._done.set()

    async def wait(self) -> SupervisorState:
        await self._done.wait()
        return self.state

    def settle(self, state: SupervisorState) -> bool:
        if self.state is not SupervisorState.RUNNING:
            return False
        self.state = state
        self._done.set()
        return True


class FakeSupervisor(TranscodeSupervisor):
    """Stands in for ffmpeg.

    Modes:
        manual  - nothing happens until the test fires callbacks itself
        success - reports progress, writes the output file, then succeeds
        failure - reports a little progress, then fails
        hang    - runs until killed
    """

    def __init__(self, mode: str = "manual"):
        self.mode = mode
        self.fail_to_start = False
        self.runs: List[tuple] = []
        self._tasks = set()

    @property
    def last(self):
        return self.runs[-1]

    async def start(self, spec: InvocationSpec, callbacks: SupervisorCallbacks) -> FakeHandle:
        if self.fail_to_start:
            raise EngineFailure("could not start ffmpeg: [Errno 2] No such file")
        handle = FakeHandle()
        self.runs.append((spec, callbacks, handle))
        if self.mode in ("success", "failure"):
            task = asyncio.get_running_loop().create_task(self._script(spec, callbacks, handle))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
        return handle

    def kill_all(self) -> None:
        for _, _, handle in self.runs:
            handle.kill()

    async def _script(self, spec, callbacks, handle) -> None:
        for percent in (10, 35, 60, 85):
            await asyncio.sleep(0.01)
            if handle.state is not SupervisorState.RUNNING:
                return
            callbacks.on_progress(percent)
        await asyncio.sleep(0.01)
        if self.mode == "success":
            Path(spec.output_path).write_bytes(b"AMV\x00fake")
            if handle.settle(SupervisorState.SUCCEEDED):
                callbacks.on_success()
        else:
            Path(spec.output_path).write_bytes(b"partial")
            if handle.settle(SupervisorState.FAILED):
                callbacks.on_failure(
                    EngineFailure(
                        "ffmpeg exited with code 1",
                        returncode=1,
                        stderr_tail=["moov atom not found", "Invalid data found"],
                    )
                )


@pytest.fixture
def artifacts(tmp_path):
    return ArtifactStore(
        uploads_dir=str(tmp_path / "uploads"),
        converted_dir=str(tmp_path / "converted"),
        max_upload_bytes=1024 * 1024,
    )


@pytest.fixture
def store():
    return JobStore()


@pytest.fixture
def fake_probe():
    return FakeProbe()


@pytest.fixture
def fake_supervisor():
    return FakeSupervisor()


@pytest.fixture
def orchestrator(store, artifacts, fake_probe, fake_supervisor):
    orch = JobOrchestrator(
        store=store,
        artifacts=artifacts,
        probe=fake_probe,
        supervisor=fake_supervisor,
        cleanup=CleanupScheduler(store, artifacts),
        completed_ttl=3600.0,
        download_ttl=0.05,
    )
    yield orch
    orch.cleanup.cancel_all()


@pytest.fixture
def make_upload(artifacts):
    """Create a fake uploaded source file and return its path."""
    counter = {"n": 0}

    def _make(ext: str = ".mp4", content: bytes = b"\x00\x00\x00\x18ftypmp42") -> str:
        counter["n"] += 1
        path = os.path.join(artifacts.uploads_dir, f"upload-{counter['n']}{ext}")
        with open(path, "wb") as fh:
            fh.write(content)
        return path

    return _make


@pytest.fixture
def test_settings(tmp_path):
    return Settings(
        data_dir=str(tmp_path / "data"),
        max_upload_bytes=64 * 1024,
        completed_ttl_seconds=3600.0,
        download_ttl_seconds=0.1,
        log_level="DEBUG",
    )


@pytest.fixture
def write_script(tmp_path):
    """Write an executable /bin/sh script that plays the part of an engine binary."""
    if sys.platform == "win32":
        pytest.skip("shell-script engines need a POSIX shell")

    def _write(name: str, body: str) -> str:
        path = tmp_path / name
        path.write_text("#!/bin/sh\n" + body)
        path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
        return str(path)

    return _write


async def wait_until(predicate, timeout: float = 2.0, interval: float = 0.01) -> bool:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while loop.time() < deadline:
        if predicate():
            return True
        await asyncio.sleep(interval)
    return predicate()
