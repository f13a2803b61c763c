#!/usr/bin/env python
"""FastAPI server for the mangaloom web interface."""

import asyncio
import logging
import sys
from contextlib import asynccontextmanager
from pathlib import Path

# Add src directory to Python path for imports
src_dir = Path(__file__).parent.parent
if str(src_dir) not in sys.path:
    sys.path.insert(0, str(src_dir))

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from api.dependencies import close_services, get_event_bus, get_repository
from api.routers import episodes, pages, tts
from api.schemas import HealthResponse, RootResponse
from services.errors import (
    MangaloomError,
    NoContentError,
    NotFoundError,
    ProviderError,
    ProviderUnavailableError,
    ValidationError,
)
from utils.config import load_config, validate_config
from utils.logging import setup_logging

logger = logging.getLogger(__name__)

API_VERSION = "1.0.0"

# Most specific classes first; ProviderUnavailableError subclasses ProviderError
ERROR_STATUS_CODES: list[tuple[type[MangaloomError], int]] = [
    (ValidationError, 400),
    (NoContentError, 400),
    (NotFoundError, 404),
    (ProviderUnavailableError, 503),
    (ProviderError, 502),
]


def status_code_for(error: MangaloomError) -> int:
    for error_type, status_code in ERROR_STATUS_CODES:
        if isinstance(error, error_type):
            return status_code
    return 500


@asynccontextmanager
async def lifespan(app: FastAPI):
    config = load_config()
    setup_logging(config["log_level"], json_output=config["log_json"])
    for problem in validate_config(config):
        logger.warning(f"Config: {problem}")

    await get_repository().connect()

    sweeper = asyncio.create_task(
        get_event_bus().run_sweeper(
            config["event_channel_ttl_seconds"],
            config["event_sweep_interval_seconds"],
        )
    )
    logger.info(f"Mangaloom API {API_VERSION} started")
    try:
        yield
    finally:
        sweeper.cancel()
        await asyncio.gather(sweeper, return_exceptions=True)
        await close_services()
        logger.info("Mangaloom API stopped")


app = FastAPI(title="Mangaloom API", version=API_VERSION, lifespan=lifespan)

# CORS middleware for development
app.add_middleware(
    CORSMiddleware,
    allow_origins=load_config()["cors_origins"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(MangaloomError)
async def mangaloom_error_handler(request: Request, exc: MangaloomError) -> JSONResponse:
    status_code = status_code_for(exc)
    if status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc}")
    return JSONResponse(status_code=status_code, content={"detail": str(exc)})


app.include_router(episodes.router)
app.include_router(pages.router)
app.include_router(tts.router)


@app.get("/")
async def root() -> RootResponse:
    """Root endpoint."""
    return RootResponse(message="Mangaloom API", version=API_VERSION)


@app.get("/api/health")
async def health() -> HealthResponse:
    """Health check endpoint."""
    return HealthResponse(status="healthy")


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000, log_level="info")
