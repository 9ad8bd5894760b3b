"""
api/main.py — punkt wejścia FastAPI.

Lifespan:
  - Składa runtime (broker in-memory, dispatcher, workery, klient)
  - Przy zamknięciu zatrzymuje konsumentów i zamyka transport
"""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, Request

from api.dependencies import get_settings
from api.routers import compilation, evaluate
from api.schemas import HealthResponse
from config import Settings
from contracts import CONTRACTS_VERSION
from runtime import build_runtime

logger = logging.getLogger("distcalc")


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings: Settings = app.state.settings

    logger.info("Starting dispatcher runtime...")
    app.state.runtime = build_runtime(settings)

    logger.info("DistCalc API ready.")
    yield

    logger.info("Shutting down — closing transport.")
    app.state.runtime.close()


def create_app(settings: Settings | None = None) -> FastAPI:
    settings = settings or Settings()
    logging.basicConfig(level=settings.log_level.upper())

    app = FastAPI(
        title=settings.app_title,
        version=settings.app_version,
        lifespan=lifespan,
    )
    app.state.settings = settings

    # Routers
    app.include_router(evaluate.router)
    app.include_router(compilation.router)

    # Health
    @app.get("/health", response_model=HealthResponse, tags=["health"])
    def health(request: Request, app_settings: Settings = Depends(get_settings)):
        runtime = request.app.state.runtime
        return HealthResponse(
            status="ok",
            pending_expressions=runtime.dispatcher.pending_count,
            waiting_clients=runtime.client.waiting,
            version=app_settings.app_version,
            contracts_version=CONTRACTS_VERSION,
        )

    return app


app = create_app()
