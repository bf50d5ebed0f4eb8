"""Browser-facing conversion API.

  POST /api/convert            : receive a video upload, start a job
  GET  /api/status/{job_id}    : poll job progress
  POST /api/cancel/{job_id}    : stop a job and discard its files
  GET  /api/download/{job_id}  : stream the converted .amv file

Domain errors (ConverterError) are turned into JSON responses by the handler
registered in main.py.
"""

import os
from functools import partial
from typing import BinaryIO, Iterator, Optional
from urllib.parse import quote

from fastapi import APIRouter, File, HTTPException, UploadFile
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel
from starlette.background import BackgroundTask

from amvconvert.jobs.errors import NoFileUploaded, UnknownJob
from amvconvert.jobs.models import JobStatus, StatusView
from amvconvert.jobs.orchestrator import JobOrchestrator

router = APIRouter()

DOWNLOAD_CHUNK_SIZE = 1024 * 1024

# Wired in during lifespan
_orchestrator: Optional[JobOrchestrator] = None


def set_orchestrator(orchestrator: Optional[JobOrchestrator]):
    global _orchestrator
    _orchestrator = orchestrator


def get_orchestrator() -> Optional[JobOrchestrator]:
    return _orchestrator


def _require_orchestrator() -> JobOrchestrator:
    if _orchestrator is None:
        raise HTTPException(status_code=503, detail="Converter not ready")
    return _orchestrator


class ConvertResponse(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    job_id: str
    status: JobStatus


class CancelResponse(BaseModel):
    success: bool


# ---------------------------------------------------------------------------
# POST /api/convert
# ---------------------------------------------------------------------------

@router.post("/convert", response_model=ConvertResponse)
async def convert_video(video: Optional[UploadFile] = File(None)):
    """Accept a video upload, persist it, and start a conversion job."""
    orchestrator = _require_orchestrator()
    if video is None:
        raise NoFileUploaded()

    input_path, original_name = await orchestrator.artifacts.save_upload(video)
    job_id = await orchestrator.submit(input_path, original_name)
    return ConvertResponse(job_id=job_id, status=JobStatus.PROCESSING)


# ---------------------------------------------------------------------------
# GET /api/status/{job_id}
# ---------------------------------------------------------------------------

@router.get("/status/{job_id}", response_model=StatusView)
async def get_status(job_id: str):
    return _require_orchestrator().query_status(job_id)


# ---------------------------------------------------------------------------
# POST /api/cancel/{job_id}
# ---------------------------------------------------------------------------

@router.post("/cancel/{job_id}", response_model=CancelResponse)
async def cancel_job(job_id: str):
    """Cancel a job. Cancelling an unknown or already removed job succeeds."""
    _require_orchestrator().cancel(job_id)
    return CancelResponse(success=True)


# ---------------------------------------------------------------------------
# GET /api/download/{job_id}
# ---------------------------------------------------------------------------

@router.get("/download/{job_id}")
async def download_result(job_id: str):
    """Stream the converted file; cleanup is brought forward once it is sent.

    The artifact is opened before the response starts; a cleanup timer
    firing mid-transfer leaves the open file readable.
    """
    orchestrator = _require_orchestrator()
    ticket = orchestrator.download(job_id)
    try:
        artifact = open(ticket.path, "rb")
    except FileNotFoundError:
        raise UnknownJob(job_id)

    return StreamingResponse(
        _read_chunks(artifact),
        media_type="video/x-amv",
        headers={
            "Content-Disposition": _attachment(ticket.filename),
            "Content-Length": str(os.fstat(artifact.fileno()).st_size),
        },
        background=BackgroundTask(orchestrator.acknowledge_download, job_id),
    )


def _read_chunks(artifact: BinaryIO) -> Iterator[bytes]:
    with artifact:
        yield from iter(partial(artifact.read, DOWNLOAD_CHUNK_SIZE), b"")


def _attachment(filename: str) -> str:
    quoted = quote(filename)
    if quoted != filename:
        return f"attachment; filename*=utf-8''{quoted}"
    return f'attachment; filename="{filename}"'
