"""FastAPI application entrypoint for NOFX."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from prometheus_client import make_asgi_app

from nofx import __version__
from nofx.api.routes import router
from nofx.config import settings

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifecycle - startup and shutdown hooks."""
    from nofx.queue.worker import get_runtime, requeue_waiting_steps

    if settings.is_local_mode:
        logger.info("NOFX starting in local mode (SQLite + in-process queue)")
    else:
        logger.info("NOFX starting in production mode (PostgreSQL + Redis)")

    if settings.data_driver == "db" and settings.is_local_mode:
        # Auto-create tables for SQLite (no Alembic needed)
        from nofx.models.db import init_db

        await init_db()
        logger.info("Local database initialized")

    runtime = get_runtime()
    if not settings.redis_url:
        # The in-process queue lost its messages on restart
        await requeue_waiting_steps(runtime)

    if settings.scheduler_enabled:
        from nofx.queue.scheduler import start_scheduler

        await start_scheduler(runtime)
    else:
        logger.info("Scheduler disabled (SCHEDULER_ENABLED=false)")

    if settings.webhook_secret == "your-webhook-signing-secret" and settings.event_webhook_url:
        logger.warning(
            "Placeholder WEBHOOK_SECRET in use. Set a secure value for production."
        )

    yield

    # Shutdown
    if settings.scheduler_enabled:
        from nofx.queue.scheduler import stop_scheduler

        await stop_scheduler()
    await runtime.queue.close()
    if settings.data_driver == "db":
        from nofx.models.db import engine

        await engine.dispose()
    logger.info("NOFX shut down")


app = FastAPI(
    title="NOFX",
    description="Step-execution core for multi-step tool runs",
    version=__version__,
    lifespan=lifespan,
    docs_url="/api/docs",
    redoc_url="/api/redoc",
    openapi_url="/api/openapi.json",
)

app.include_router(router, prefix="/api")
app.mount("/metrics", make_asgi_app())


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "nofx.main:app",
        host="0.0.0.0",
        port=8080,
        reload=True,
    )
