"""Error types raised by the conversion job system.

Every error a client can see derives from ConverterError and carries the HTTP
status the API layer answers with.
"""

from typing import Optional, Sequence


class ConverterError(Exception):
    """Base class for client-visible conversion errors."""

    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class UnsupportedFormat(ConverterError):
    status_code = 400

    def __init__(self, filename: str):
        super().__init__("Unsupported file format")
        self.filename = filename


class NoFileUploaded(ConverterError):
    status_code = 400

    def __init__(self):
        super().__init__("No valid video file uploaded")


class PayloadTooLarge(ConverterError):
    status_code = 413

    def __init__(self, limit_bytes: int):
        super().__init__(f"File exceeds {_human_size(limit_bytes)} limit")
        self.limit_bytes = limit_bytes


class UnknownJob(ConverterError):
    status_code = 404

    def __init__(self, job_id: str):
        super().__init__("Job not found")
        self.job_id = job_id


class NotReady(ConverterError):
    status_code = 400

    def __init__(self, job_id: str):
        super().__init__("File not ready")
        self.job_id = job_id


class DuplicateJobId(ConverterError):
    status_code = 409

    def __init__(self, job_id: str):
        super().__init__(f"Job {job_id} already exists")
        self.job_id = job_id


class ProbeFailure(Exception):
    """ffprobe could not inspect a file. Never reaches a client."""


class EngineFailure(Exception):
    """The transcoding engine terminated abnormally.

    The stderr tail is kept for server-side logging only.
    """

    def __init__(
        self,
        reason: str,
        returncode: Optional[int] = None,
        stderr_tail: Sequence[str] = (),
    ):
        super().__init__(reason)
        self.reason = reason
        self.returncode = returncode
        self.stderr_tail = list(stderr_tail)

    def diagnostics(self) -> str:
        lines = [f"{self.reason} (exit code {self.returncode})"]
        lines.extend(f"  {line}" for line in self.stderr_tail)
        return "\n".join(lines)


def _human_size(num_bytes: int) -> str:
    for unit, factor in (("GB", 1024 ** 3), ("MB", 1024 ** 2), ("KB", 1024)):
        if num_bytes >= factor and num_bytes % factor == 0:
            return f"{num_bytes // factor}{unit}"
    return f"{num_bytes} bytes"
