from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, Dict, List

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from taskpulse.api.error_handling import register_exception_handlers
from taskpulse.api.routes import router
from taskpulse.config import get_settings
from taskpulse.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

__version__ = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start the background scheduler with the app and stop it on shutdown."""
    from taskpulse.service.runtime import get_runtime

    runtime = get_runtime()
    if runtime.settings.scheduler_enabled:
        try:
            await runtime.scheduler.start()
        except Exception as exc:
            logger.error("startup_scheduler_failed", error=str(exc))
            raise
        logger.info("scheduler_started_on_startup")

    yield

    try:
        runtime = get_runtime()
        await runtime.scheduler.stop()
        await runtime.scheduler.drain()
        runtime.close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="TaskPulse", version=__version__, lifespan=lifespan)


def _allowed_origins() -> List[str]:
    origins = [
        "http://localhost:3000",
        "http://127.0.0.1:3000",
        "http://localhost:5173",
    ]
    base_url = get_settings().app_base_url.rstrip("/")
    if base_url not in origins:
        origins.append(base_url)
    return origins


app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_origins(),
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
    expose_headers=["X-Request-ID"],
    max_age=3600,
)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Tag each request with X-Request-ID (client-supplied or generated) for log tracing."""
    client_request_id = request.headers.get("X-Request-ID")
    correlation_id = set_correlation_id(client_request_id)
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


register_exception_handlers(app)
app.include_router(router)


@app.get("/healthz")
async def health() -> Dict[str, Any]:
    from taskpulse.service.runtime import get_runtime

    runtime = get_runtime()
    scheduler = runtime.scheduler
    return {
        "status": "healthy",
        "version": __version__,
        "store": runtime.store_type,
        "scheduler": {
            "running": scheduler.running,
            "jobs": [
                {
                    "name": job.name,
                    "hour": job.trigger.hour,
                    "minute": job.trigger.minute,
                    "in_flight": scheduler.in_flight(job.name),
                }
                for job in scheduler.jobs
            ],
        },
    }


def create_app() -> FastAPI:
    return app
