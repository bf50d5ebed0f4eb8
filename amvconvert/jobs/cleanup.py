"""Delayed, idempotent removal of finished jobs and their files."""

import asyncio
from typing import Dict, Optional, Set

from amvconvert.jobs.store import JobStore
from amvconvert.storage.artifacts import ArtifactStore
from amvconvert.utils.logging_config import get_logger

logger = get_logger(__name__)


class CleanupScheduler:
    """Arms one-shot timers that purge a job's record and artifacts.

    Several timers may be armed for the same job (the long post-completion
    grace period, then a short one after a download). Whichever fires first
    does the work; the rest find nothing left and do nothing.
    """

    def __init__(self, store: JobStore, artifacts: ArtifactStore):
        self._store = store
        self._artifacts = artifacts
        self._timers: Dict[str, Set[asyncio.TimerHandle]] = {}

    def schedule(
        self,
        job_id: str,
        delay: float,
        loop: Optional[asyncio.AbstractEventLoop] = None,
    ) -> asyncio.TimerHandle:
        loop = loop or asyncio.get_running_loop()
        handle = loop.call_later(delay, self._fire, job_id)
        self._timers.setdefault(job_id, set()).add(handle)
        logger.debug(f"Cleanup for job {job_id} armed in {delay:.0f}s")
        return handle

    def purge(self, job_id: str) -> bool:
        """Remove the job's record and both artifacts now.

        Returns True if a record was removed by this call.
        """
        job = self._store.delete(job_id)
        if job is None:
            return False
        self._artifacts.remove(job.input_path)
        self._artifacts.remove(job.output_path)
        logger.info(f"Cleaned up job {job_id}")
        return True

    def pending(self, job_id: str) -> int:
        return sum(1 for h in self._timers.get(job_id, ()) if not h.cancelled())

    def cancel_all(self) -> None:
        for handles in self._timers.values():
            for handle in handles:
                handle.cancel()
        self._timers.clear()

    def _fire(self, job_id: str) -> None:
        # the first timer to fire disarms its siblings
        for handle in self._timers.pop(job_id, ()):
            handle.cancel()
        try:
            self.purge(job_id)
        except Exception:
            logger.exception(f"Cleanup for job {job_id} failed")
