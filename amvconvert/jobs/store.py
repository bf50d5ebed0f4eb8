"""In-memory registry of conversion jobs."""

import threading
from typing import Callable, Dict, List, Optional

from amvconvert.jobs.errors import DuplicateJobId
from amvconvert.jobs.models import Job


class JobStore:
    """Keyed job registry safe to touch from the event loop and worker threads.

    Reads hand out snapshot copies so callers never observe a record halfway
    through a ``mutate``. A missing id is never an error for ``delete`` or
    ``mutate``: a record can legitimately vanish between a lookup and a
    late-arriving engine callback or cleanup timer.
    """

    def __init__(self):
        self._jobs: Dict[str, Job] = {}
        self._lock = threading.RLock()

    def create(self, job: Job) -> None:
        with self._lock:
            if job.id in self._jobs:
                raise DuplicateJobId(job.id)
            self._jobs[job.id] = job

    def get(self, job_id: str) -> Optional[Job]:
        with self._lock:
            job = self._jobs.get(job_id)
            return job.model_copy() if job is not None else None

    def delete(self, job_id: str) -> Optional[Job]:
        """Remove and return the record, or None if it was already gone."""
        with self._lock:
            return self._jobs.pop(job_id, None)

    def mutate(self, job_id: str, fn: Callable[[Job], object]) -> Optional[Job]:
        """Apply ``fn`` to the stored record under exclusive access.

        Returns a snapshot of the record after the update, or None when the id
        is unknown (``fn`` is not called).
        """
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                return None
            fn(job)
            return job.model_copy()

    def ids(self) -> List[str]:
        with self._lock:
            return list(self._jobs)

    def __contains__(self, job_id: str) -> bool:
        with self._lock:
            return job_id in self._jobs

    def __len__(self) -> int:
        with self._lock:
            return len(self._jobs)
