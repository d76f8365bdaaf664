from __future__ import annotations

import asyncio
import os
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Dict

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from opsflow.api.error_handling import register_exception_handlers
from opsflow.api.routes import router
from opsflow.config import get_settings
from opsflow.logging import configure_logging, get_logger, set_correlation_id

logger = get_logger(__name__)

__version__ = "0.1.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 3

_settings = get_settings()
configure_logging(_settings.log_level, json_output=_settings.log_json, development_mode=_settings.log_dev_mode)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start the flow workers on startup and release resources on shutdown."""
    from opsflow.service.runtime import get_runtime

    try:
        runtime = get_runtime()
        if runtime.settings.worker_enabled and not runtime.settings.test_mode:
            await runtime.workers.start()
            logger.info("flow_workers_started_on_startup", concurrency=runtime.workers.concurrency)
    except Exception as exc:
        logger.error("startup_flow_workers_failed", error=str(exc))

    yield

    try:
        runtime = get_runtime()
        await runtime.close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="Opsflow", version=__version__, lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_settings.cors_origins,
    allow_credentials=False,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "X-User-Id", "X-Tenant-Id", "X-Request-ID"],
    expose_headers=["X-Request-ID", "API-Version"],
    max_age=3600,
)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Tag every request with a correlation id for log tracing.

    The id comes from the X-Request-ID header when the client sends one and
    is echoed back on the response.
    """
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    response.headers.setdefault("API-Version", __version__)
    if request.url.path.startswith("/v1/"):
        response.headers.setdefault("Cache-Control", "no-store")
    return response


register_exception_handlers(app)
app.include_router(router)


@app.get("/healthz")
async def health() -> Dict[str, Any]:
    """Report store, Redis and worker status."""
    from opsflow.service.runtime import get_runtime

    runtime = get_runtime()
    checks: Dict[str, Dict[str, Any]] = {}
    overall_healthy = True

    async def _run_bounded(label: str, func) -> bool:
        try:
            await asyncio.wait_for(asyncio.to_thread(func), HEALTH_CHECK_TIMEOUT_SECONDS)
            return True
        except asyncio.TimeoutError:
            logger.error("health_check_timeout", component=label, timeout=HEALTH_CHECK_TIMEOUT_SECONDS)
        except Exception as exc:
            logger.error(f"health_check_{label}_failed", error=str(exc))
        return False

    if hasattr(runtime.store, "_connect"):

        def _db_ping() -> None:
            with runtime.store._connect() as conn:
                conn.execute("SELECT 1").fetchone()

        db_ok = await _run_bounded("database", _db_ping)
        checks["database"] = {"status": "healthy" if db_ok else "unhealthy"}
        overall_healthy = overall_healthy and db_ok
    else:
        checks["database"] = {"status": "healthy", "type": "memory"}

    if runtime.cache is not None:
        redis_ok = await _run_bounded("redis", runtime.cache.verify_connection)
        checks["redis"] = {"status": "healthy" if redis_ok else "unhealthy"}
        overall_healthy = overall_healthy and redis_ok
    else:
        checks["redis"] = {"status": "not_configured"}

    checks["workers"] = {
        "running": runtime.workers.running,
        "pending_ticks": await runtime.queue.pending(),
    }
    checks["planner"] = {"llm_configured": runtime.llm.is_configured}

    return {
        "status": "healthy" if overall_healthy else "unhealthy",
        "checks": checks,
        "version": __version__,
        "timestamp": datetime.utcnow().isoformat(),
    }


def create_app() -> FastAPI:
    return app


def main() -> None:
    """Serve the API with uvicorn; HOST and PORT come from the environment."""
    uvicorn.run(
        "opsflow.app:app",
        host=os.getenv("HOST", "127.0.0.1"),
        port=int(os.getenv("PORT", "8000")),
        log_config=None,
    )


if __name__ == "__main__":
    main()
