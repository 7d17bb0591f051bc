"""FastAPI application setup with lifespan and exception handlers."""

from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles

from vidweave import __version__, validate_dependencies
from vidweave.api.routes import router
from vidweave.config import settings
from vidweave.db import init_database, shutdown
from vidweave.errors import (
    InvalidInputError,
    ModelNotFoundError,
    ProjectNotFoundError,
    ProviderAuthError,
    VidweaveError,
)
from vidweave.workers.job_queue import build_job_queue

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager.

    Startup:
        - Validate system dependencies (ffmpeg, ffprobe)
        - Initialize database schema
        - Start the job workers

    Shutdown:
        - Stop workers, close provider and database connections
    """
    logger.info("Starting vidweave API...")
    validate_dependencies()
    await init_database()
    app.state.job_queue = build_job_queue()
    await app.state.job_queue.start()
    logger.info("API startup complete")

    yield

    logger.info("Shutting down vidweave API...")
    await app.state.job_queue.stop()
    await shutdown()
    logger.info("API shutdown complete")


app = FastAPI(
    title="vidweave API",
    version=__version__,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:5173"],
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(router)

# Stored clips, frames and final videos
settings.storage.media_dir.mkdir(parents=True, exist_ok=True)
app.mount("/media", StaticFiles(directory=str(settings.storage.media_dir)), name="media")

_ERROR_STATUS = {
    ProjectNotFoundError: 404,
    ModelNotFoundError: 404,
    InvalidInputError: 422,
    ProviderAuthError: 502,
}


@app.exception_handler(VidweaveError)
async def vidweave_exception_handler(request: Request, exc: VidweaveError):
    status_code = next(
        (code for cls, code in _ERROR_STATUS.items() if isinstance(exc, cls)), 500
    )
    logger.warning(f"{request.method} {request.url.path} -> {status_code}: {type(exc).__name__}: {exc}")
    return JSONResponse(
        status_code=status_code,
        content={"error": type(exc).__name__, "detail": str(exc)},
    )


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception):
    """Catch-all exception handler to prevent stack traces in API responses."""
    logger.error(f"Unhandled exception in {request.method} {request.url.path}: {type(exc).__name__}: {str(exc)}")
    return JSONResponse(
        status_code=500,
        content={
            "error": "Internal server error",
            "detail": str(exc),
        }
    )
