"""AMV Converter - FastAPI application.

Usage:
    uvicorn amvconvert.main:app
    # or
    amv-converter
"""

import os
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles

from amvconvert.api import convert as convert_api
from amvconvert.api.router import api_router, root_router
from amvconvert.config import Settings, settings as default_settings
from amvconvert.engine.probe import StreamProbe
from amvconvert.engine.supervisor import FfmpegSupervisor, TranscodeSupervisor
from amvconvert.jobs.cleanup import CleanupScheduler
from amvconvert.jobs.errors import ConverterError
from amvconvert.jobs.orchestrator import JobOrchestrator
from amvconvert.jobs.store import JobStore
from amvconvert.storage.artifacts import ArtifactStore
from amvconvert.utils.logging_config import get_logger, setup_logging

logger = get_logger(__name__)


def build_orchestrator(
    settings: Settings,
    supervisor: Optional[TranscodeSupervisor] = None,
    probe: Optional[StreamProbe] = None,
) -> JobOrchestrator:
    """Assemble store, artifacts, probe, supervisor and cleanup from settings."""
    store = JobStore()
    artifacts = ArtifactStore(
        uploads_dir=settings.uploads_dir,
        converted_dir=settings.converted_dir,
        max_upload_bytes=settings.max_upload_bytes,
    )
    return JobOrchestrator(
        store=store,
        artifacts=artifacts,
        probe=probe or StreamProbe(
            settings.resolve_ffprobe(), timeout=settings.probe_timeout_seconds
        ),
        supervisor=supervisor or FfmpegSupervisor(settings.resolve_ffmpeg()),
        cleanup=CleanupScheduler(store, artifacts),
        completed_ttl=settings.completed_ttl_seconds,
        download_ttl=settings.download_ttl_seconds,
        error_ttl=settings.error_ttl_seconds,
    )


def create_app(
    settings: Optional[Settings] = None,
    supervisor: Optional[TranscodeSupervisor] = None,
    probe: Optional[StreamProbe] = None,
) -> FastAPI:
    settings = settings or default_settings

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Startup and shutdown logic."""
        setup_logging(settings.log_level, settings.log_file)
        logger.info(f"Starting AMV Converter on {settings.host}:{settings.port}")
        logger.info(f"Data dir: {os.path.abspath(settings.data_dir)}")
        logger.info(f"ffmpeg: {settings.resolve_ffmpeg()}")
        logger.info(f"ffprobe: {settings.resolve_ffprobe()}")

        orchestrator = build_orchestrator(settings, supervisor=supervisor, probe=probe)
        # job state does not survive a restart, so neither do its files
        orchestrator.artifacts.sweep()
        convert_api.set_orchestrator(orchestrator)

        yield

        logger.info("Shutting down AMV Converter")
        convert_api.set_orchestrator(None)
        await orchestrator.shutdown()
        orchestrator.artifacts.sweep()

    app = FastAPI(
        title="AMV Converter",
        description="Converts uploaded videos to AMV for portable media players",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.settings = settings

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(ConverterError)
    async def converter_error_handler(request: Request, exc: ConverterError):
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": True, "message": exc.message},
        )

    app.include_router(root_router)
    app.include_router(api_router)

    # Front-end bundle, if one is shipped alongside the service
    if settings.static_dir and os.path.isdir(settings.static_dir):
        app.mount("/", StaticFiles(directory=settings.static_dir, html=True), name="static")

    return app


app = create_app()


def run():
    uvicorn.run(app, host=default_settings.host, port=default_settings.port)


if __name__ == "__main__":
    run()
