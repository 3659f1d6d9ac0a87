from __future__ import annotations

import asyncio
import contextlib
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict

from fastapi import FastAPI

from pinguard.api.error_handling import register_exception_handlers
from pinguard.api.routes import router
from pinguard.config import Settings
from pinguard.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

_settings = Settings.from_env()

__version__ = "0.1.0"
__build__ = _settings.build_sha

HEALTH_CHECK_TIMEOUT_SECONDS = 2.0

_background_tasks: list[asyncio.Task] = []


async def _run_audit_flush(interval_seconds: int) -> None:
    """Periodic audit queue flush; events below high severity wait for this."""

    from pinguard.service.runtime import get_runtime

    try:
        while True:
            await asyncio.sleep(interval_seconds)
            try:
                await get_runtime().audit.flush()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.warning("audit_flush_loop_failed", error=str(exc))
    except asyncio.CancelledError:
        logger.info("audit_flush_task_cancelled")


async def _run_maintenance(interval_seconds: int) -> None:
    """Background sweeps for attempts, devices, tokens, challenges, sessions and audit retention."""

    from pinguard.service.runtime import get_runtime

    try:
        while True:
            await asyncio.sleep(interval_seconds)
            results = await get_runtime().run_maintenance()
            logger.debug("maintenance_pass_complete", **results)
    except asyncio.CancelledError:
        logger.info("maintenance_task_cancelled")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start the background loops; shutdown cancels them and flushes audit events."""
    from pinguard.service.runtime import get_runtime

    try:
        runtime = get_runtime()
        _background_tasks.append(
            asyncio.create_task(_run_audit_flush(runtime.settings.audit_flush_interval_seconds))
        )
        _background_tasks.append(
            asyncio.create_task(_run_maintenance(runtime.settings.cleanup_interval_seconds))
        )
    except Exception as exc:
        logger.error("startup_background_tasks_failed", error=str(exc))

    yield

    try:
        runtime = get_runtime()
        for task in _background_tasks:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        _background_tasks.clear()
        await runtime.close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="PinGuard", version=__version__, lifespan=lifespan)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Tag each request with a correlation id from ``X-Request-ID`` or a fresh UUID."""
    client_request_id = request.headers.get("X-Request-ID")
    correlation_id = set_correlation_id(client_request_id)
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


@app.middleware("http")
async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "no-referrer")
    # Credentials and tokens must never sit in an intermediary cache
    if request.url.path.startswith("/v1/") or request.url.path == "/healthz":
        response.headers.setdefault("Cache-Control", "no-store, no-cache, must-revalidate, private")
    response.headers.setdefault("API-Version", __version__)
    return response


register_exception_handlers(app)
app.include_router(router)


@app.get("/healthz")
async def health() -> Dict[str, Any]:
    """Dependency health: database and Redis reachability plus build info."""
    from pinguard.service.runtime import get_runtime

    checks: Dict[str, Dict[str, Any]] = {}
    overall_healthy = True

    async def _run_bounded(label: str, func) -> bool:
        try:
            await asyncio.wait_for(asyncio.to_thread(func), HEALTH_CHECK_TIMEOUT_SECONDS)
            return True
        except asyncio.TimeoutError:
            logger.error("health_check_timeout", component=label, timeout=HEALTH_CHECK_TIMEOUT_SECONDS)
        except Exception as exc:
            logger.error("health_check_failed", component=label, error=str(exc))
        return False

    runtime = get_runtime()
    if hasattr(runtime.store, "_connect"):

        def _db_probe() -> None:
            with runtime.store._connect() as conn:
                conn.execute("SELECT 1").fetchone()

        db_ok = await _run_bounded("database", _db_probe)
        checks["database"] = {"status": "healthy" if db_ok else "unhealthy"}
        overall_healthy = overall_healthy and db_ok
    else:
        checks["database"] = {"status": "healthy", "type": "memory"}

    if runtime.cache is not None:
        redis_ok = await _run_bounded("redis", runtime.cache.verify_connection)
        checks["redis"] = {"status": "healthy" if redis_ok else "unhealthy", "degraded": not redis_ok}
        overall_healthy = overall_healthy and redis_ok
    else:
        checks["redis"] = {"status": "not_configured"}

    checks["audit_queue"] = {"status": "healthy", "pending": runtime.audit.pending}
    return {
        "status": "healthy" if overall_healthy else "unhealthy",
        "checks": checks,
        "version": __version__,
        "build": __build__,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


def create_app() -> FastAPI:
    return app
