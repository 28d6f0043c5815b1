#!/usr/bin/env python3
"""
launchpad: FastAPI service that turns a repository into a running container.
"""
import logging
import os
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from launchpad import VERSION
from launchpad.api.builds import router as builds_router
from launchpad.api.metrics import router as metrics_router
from launchpad.core.config import Settings, get_settings
from launchpad.core.logging import setup_logging
from launchpad.core.orchestrator import Orchestrator, create_orchestrator
from launchpad.core.request_logging import RequestLoggingMiddleware

logger = logging.getLogger(__name__)

LISTEN_HOST = os.environ.get("LISTEN_HOST", "0.0.0.0")
PORT = int(os.environ.get("PORT", "8080"))


def _default_orchestrator(settings: Settings) -> Orchestrator:
    """SQL-backed orchestrator using the git and docker CLIs."""
    from launchpad.db.database import engine, init_db

    init_db(engine)
    return create_orchestrator(settings)


def create_app(
    orchestrator: Optional[Orchestrator] = None,
    settings: Optional[Settings] = None,
) -> FastAPI:
    """
    Build the application.

    Pass an orchestrator to substitute the ledger or pipeline stages
    (tests use an in-memory ledger and stub stages).
    """
    settings = settings or get_settings()
    owns_orchestrator = orchestrator is None
    if orchestrator is None:
        orchestrator = _default_orchestrator(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(
            f"service_started version={VERSION} publish_enabled={settings.publish_enabled}"
        )
        if owns_orchestrator:
            # Builds from a previous process have no task left to finish them
            orchestrator.fail_interrupted()
        yield
        await orchestrator.shutdown()

    app = FastAPI(
        title="launchpad",
        description="Build a repository into a container image and run it",
        version=VERSION,
        lifespan=lifespan,
    )
    app.state.orchestrator = orchestrator
    app.state.settings = settings

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        """Malformed or missing request fields are client errors (400)."""
        return JSONResponse(
            status_code=400,
            content={"detail": jsonable_encoder(exc.errors())},
        )

    app.add_middleware(RequestLoggingMiddleware)

    app.include_router(builds_router)
    app.include_router(metrics_router)

    @app.get("/health")
    def health():
        """Health check endpoint."""
        return {"status": "ok"}

    return app


setup_logging(get_settings().log_level)

app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host=LISTEN_HOST, port=PORT, log_config=None)
