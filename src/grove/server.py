"""Grove server — FastAPI application around a GroveApp.

The lifespan starts the record store, completion worker and (unless
disabled) the phase scheduler loop; shutdown drains in-flight jobs.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI

from grove import __version__
from grove.api import configure as configure_api
from grove.api import router as api_router
from grove.app import GroveApp
from grove.config import GroveConfig

logger = logging.getLogger(__name__)


def create_app(
    grove_dir: Path | None = None,
    config: GroveConfig | None = None,
    *,
    run_scheduler: bool = True,
) -> FastAPI:
    """Create the FastAPI application."""
    grove = GroveApp(grove_dir, config)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """FastAPI lifespan — startup and shutdown."""
        await grove.start(scheduler=run_scheduler)
        configure_api(grove)
        yield
        await grove.stop()

    app = FastAPI(
        title="Grove",
        version=__version__,
        description="Multi-phase ticket dispatch for coding agents",
        lifespan=lifespan,
    )
    app.state.grove = grove

    app.include_router(api_router)

    @app.get("/health")
    async def health():
        """Health check endpoint with dispatch metrics."""
        paused = False
        if grove.pause:
            paused = (await grove.pause.state()).active
        return {
            "status": "ok",
            "strategy": grove.config.runtime.strategy if grove.config else None,
            "in_flight": grove.router.in_flight if grove.router else 0,
            "scheduler_running": bool(grove.scheduler and grove.scheduler._running),
            "paused": paused,
        }

    return app
