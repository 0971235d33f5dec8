"""FastAPI application for the escrow-sync daemon.

Run with ``uvicorn escrow_sync.app:app``; ``escrow-sync daemon start`` does
this in a background process.
"""

import os

from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .. import __version__
from ..utils.logging_config import setup_logging
from .errors import install_error_handlers
from .escrow import router as escrow_router
from .health import router as health_router
from .lifecycle import shutdown_event, startup_event

load_dotenv()
setup_logging(os.getenv("ESCROW_SYNC_LOG_LEVEL", "INFO"))


def _cors_origins() -> list[str]:
    raw = os.getenv("ESCROW_SYNC_CORS_ORIGINS", "")
    return [origin.strip() for origin in raw.split(",") if origin.strip()]


def create_app() -> FastAPI:
    application = FastAPI(title="escrow-sync", version=__version__)

    origins = _cors_origins()
    if origins:
        application.add_middleware(
            CORSMiddleware,
            allow_origins=origins,
            allow_credentials="*" not in origins,
            allow_methods=["GET", "POST"],
            allow_headers=["content-type", "x-escrow-session"],
        )

    install_error_handlers(application)

    @application.on_event("startup")
    async def _startup():
        await startup_event(application)

    @application.on_event("shutdown")
    async def _shutdown():
        await shutdown_event()

    application.include_router(escrow_router)
    application.include_router(health_router)
    return application


app = create_app()

__all__ = ["app", "create_app"]
