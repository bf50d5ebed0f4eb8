"""Conversion job orchestration.

Owns the job state machine: registers uploads as jobs, runs probe and engine
in the background, records progress and terminal status, and hands finished
jobs to the cleanup scheduler. Post-submission failures are recorded on the
job and only ever surface through status polling.
"""

import asyncio
import os
from dataclasses import dataclass
from functools import partial
from typing import Optional, Set

from amvconvert.engine.command_builder import build_amv_invocation
from amvconvert.engine.probe import StreamProbe
from amvconvert.engine.supervisor import (
    ProcessHandle,
    SupervisorCallbacks,
    TranscodeSupervisor,
)
from amvconvert.jobs.cleanup import CleanupScheduler
from amvconvert.jobs.errors import EngineFailure, NotReady, UnknownJob
from amvconvert.jobs.models import (
    GENERIC_FAILURE_MESSAGE,
    Job,
    JobStatus,
    StatusView,
    new_job_id,
)
from amvconvert.jobs.store import JobStore
from amvconvert.storage.artifacts import TARGET_EXTENSION, ArtifactStore
from amvconvert.utils.logging_config import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class DownloadTicket:
    job_id: str
    path: str
    filename: str


class JobOrchestrator:
    """Coordinates store, probe, supervisor and cleanup for every job."""

    def __init__(
        self,
        store: JobStore,
        artifacts: ArtifactStore,
        probe: StreamProbe,
        supervisor: TranscodeSupervisor,
        cleanup: CleanupScheduler,
        completed_ttl: float = 3600.0,
        download_ttl: float = 60.0,
        error_ttl: Optional[float] = None,
    ):
        self.store = store
        self.artifacts = artifacts
        self.probe = probe
        self.supervisor = supervisor
        self.cleanup = cleanup
        self.completed_ttl = completed_ttl
        self.download_ttl = download_ttl
        self.error_ttl = error_ttl
        self._tasks: Set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Client operations
    # ------------------------------------------------------------------

    async def submit(self, input_path: str, original_name: str) -> str:
        """Register a job for an uploaded file and start converting it."""
        job_id = new_job_id()
        job = Job(
            id=job_id,
            input_path=input_path,
            output_path=self.artifacts.output_path(job_id),
            original_name=original_name,
        )
        self.store.create(job)
        logger.info(f"Created job {job_id} for {original_name!r}")

        task = asyncio.create_task(self._run(job_id, input_path, job.output_path))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return job_id

    def query_status(self, job_id: str) -> StatusView:
        job = self.store.get(job_id)
        if job is None:
            raise UnknownJob(job_id)
        return StatusView.from_job(job)

    def cancel(self, job_id: str) -> bool:
        """Cancel a job and discard its files.

        Unknown ids count as already cancelled. Returns True if this call
        removed a job.
        """
        job = self.store.delete(job_id)
        if job is None:
            logger.debug(f"Cancel for unknown job {job_id} ignored")
            return False

        handle: Optional[ProcessHandle] = job.handle
        if handle is not None:
            handle.kill()
        job.finish(JobStatus.CANCELLED)
        self.artifacts.remove(job.input_path)
        self.artifacts.remove(job.output_path)
        logger.info(f"Cancelled job {job_id}")
        return True

    def download(self, job_id: str) -> DownloadTicket:
        """Resolve the artifact of a completed job.

        Raises:
            UnknownJob: no such job, or its artifact is already gone.
            NotReady: the job has not completed.
        """
        job = self.store.get(job_id)
        if job is None:
            raise UnknownJob(job_id)
        if job.status is not JobStatus.COMPLETED:
            raise NotReady(job_id)
        if not os.path.isfile(job.output_path):
            logger.warning(f"Artifact for completed job {job_id} is missing")
            raise UnknownJob(job_id)
        return DownloadTicket(
            job_id=job_id,
            path=job.output_path,
            filename=f"{job.original_name}{TARGET_EXTENSION}",
        )

    async def acknowledge_download(self, job_id: str) -> None:
        """Shorten the grace period once a download has been handed off.

        A coroutine so a response background task runs it on the event loop,
        where the cleanup timer is armed.
        """
        job = self.store.mutate(job_id, _mark_downloaded)
        if job is not None:
            self.cleanup.schedule(job_id, self.download_ttl)

    async def shutdown(self) -> None:
        """Stop every running conversion and pending timer."""
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self.supervisor.kill_all()
        self.cleanup.cancel_all()

    def active_jobs(self) -> int:
        count = 0
        for job_id in self.store.ids():
            job = self.store.get(job_id)
            if job is not None and job.status is JobStatus.PROCESSING:
                count += 1
        return count

    # ------------------------------------------------------------------
    # Background pipeline
    # ------------------------------------------------------------------

    async def _run(self, job_id: str, input_path: str, output_path: str) -> None:
        try:
            media = await self.probe.examine(input_path)
            if job_id not in self.store:
                return  # cancelled while probing

            spec = build_amv_invocation(
                input_path,
                output_path,
                has_audio=media.has_audio,
                duration_hint=media.duration_seconds or None,
            )
            if spec.synthesizes_audio:
                logger.info(f"Job {job_id}: no audio track, adding silent source")

            callbacks = SupervisorCallbacks(
                on_progress=partial(self._on_progress, job_id),
                on_success=partial(self._on_success, job_id),
                on_failure=partial(self._on_failure, job_id),
            )
            handle = await self.supervisor.start(spec, callbacks)

            if self.store.mutate(job_id, partial(_attach_handle, handle=handle)) is None:
                # cancelled while ffmpeg was starting
                handle.kill()
                self.artifacts.remove(output_path)
        except asyncio.CancelledError:
            raise
        except EngineFailure as failure:
            self._on_failure(job_id, failure)
        except Exception as exc:
            logger.exception(f"Job {job_id}: pipeline crashed")
            self._on_failure(job_id, EngineFailure(f"{type(exc).__name__}: {exc}"))

    def _on_progress(self, job_id: str, percent: int) -> None:
        self.store.mutate(job_id, lambda job: job.advance_progress(percent))

    def _on_success(self, job_id: str) -> None:
        job = self._finish(job_id, JobStatus.COMPLETED)
        if job is None:
            logger.debug(f"Late success for job {job_id} ignored")
            return
        self.artifacts.remove(job.input_path)
        self.cleanup.schedule(job_id, self.completed_ttl)
        logger.info(f"Job {job_id} completed")

    def _on_failure(self, job_id: str, failure: EngineFailure) -> None:
        logger.error(f"Conversion failed for job {job_id}: {failure.diagnostics()}")
        job = self._finish(job_id, JobStatus.ERROR, GENERIC_FAILURE_MESSAGE)
        if job is None:
            return
        self.artifacts.remove(job.input_path)
        if self.error_ttl is not None:
            self.cleanup.schedule(job_id, self.error_ttl)

    def _finish(
        self, job_id: str, status: JobStatus, error: Optional[str] = None
    ) -> Optional[Job]:
        """Apply a terminal transition; return the job only if this call made it."""
        changed = []
        job = self.store.mutate(
            job_id, lambda j: changed.append(j.finish(status, error))
        )
        if job is None or not changed[0]:
            return None
        return job


def _attach_handle(job: Job, handle: ProcessHandle) -> None:
    if job.status is JobStatus.PROCESSING:
        job.attach_handle(handle)


def _mark_downloaded(job: Job) -> None:
    job.downloaded = True
