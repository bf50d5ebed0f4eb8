"""Health check endpoint."""

import platform
import shutil
import sys

from fastapi import APIRouter, Request

from amvconvert.api.convert import get_orchestrator

router = APIRouter()


@router.get("/health")
async def health_check(request: Request):
    """Service health, engine binaries and job counts."""
    settings = request.app.state.settings
    ffmpeg = settings.resolve_ffmpeg()
    ffprobe = settings.resolve_ffprobe()
    orchestrator = get_orchestrator()

    return {
        "status": "healthy" if orchestrator is not None else "starting",
        "ffmpeg": {"path": ffmpeg, "available": shutil.which(ffmpeg) is not None},
        "ffprobe": {"path": ffprobe, "available": shutil.which(ffprobe) is not None},
        "jobs": {
            "tracked": len(orchestrator.store) if orchestrator else 0,
            "active": orchestrator.active_jobs() if orchestrator else 0,
        },
        "python_version": sys.version,
        "platform": platform.platform(),
    }
