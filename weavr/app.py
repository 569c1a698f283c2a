from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, Dict

from fastapi import FastAPI

from weavr.api.error_handling import register_exception_handlers
from weavr.api.routes import router
from weavr.engine.models import utcnow
from weavr.engine.registry import Kind
from weavr.logging import get_logger

logger = get_logger(__name__)

__version__ = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Load and arm every workflow on startup; tear down timers and clients on shutdown."""
    from weavr.runtime import get_runtime

    runtime = get_runtime()
    try:
        await runtime.start()
        logger.info("gateway_started", schedules=len(runtime.scheduler.list_schedules()))
    except Exception as exc:
        logger.error("startup_failed", error_type=type(exc).__name__, error=str(exc))
        raise

    yield

    await runtime.close()
    logger.info("gateway_stopped")


app = FastAPI(title="weavr", version=__version__, lifespan=lifespan)
register_exception_handlers(app)
app.include_router(router)


@app.get("/healthz")
async def health() -> Dict[str, Any]:
    from weavr.runtime import get_runtime

    runtime = get_runtime()
    return {
        "status": "healthy",
        "version": __version__,
        "uptime_seconds": round((utcnow() - runtime.started_at).total_seconds(), 3),
        "checks": {
            "scheduler": {"schedules": len(runtime.scheduler.list_schedules())},
            "registry": {
                "actions": len(runtime.registry.list(Kind.ACTION)),
                "triggers": len(runtime.registry.list(Kind.TRIGGER)),
            },
            "executor": {"runs": len(runtime.executor.list_runs())},
        },
    }


def main() -> None:
    import uvicorn

    from weavr.config import get_settings

    settings = get_settings()
    uvicorn.run("weavr.app:app", host=settings.host, port=settings.port)


if __name__ == "__main__":
    main()
