"""
Fixmo - service marketplace backend.
Main FastAPI application entry point.
"""
import asyncio
import importlib
import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from fixmo.config import get_settings
from fixmo.api.router import api_router
from fixmo.exceptions import FixmoError
from fixmo.utils.logging import (
    configure_structured_logging,
    generate_correlation_id,
    set_correlation_id,
)

logger = logging.getLogger("fixmo")


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    """Injects a correlation ID into every request context and response header."""

    async def dispatch(self, request: Request, call_next) -> Response:
        cid = request.headers.get("X-Correlation-ID") or generate_correlation_id()
        set_correlation_id(cid)
        response = await call_next(request)
        response.headers["X-Correlation-ID"] = cid
        return response


async def fixmo_error_handler(request: Request, exc: FixmoError) -> JSONResponse:
    """Render domain errors as {"success": false, "message", "detail"}."""
    if exc.status_code >= 500:
        logger.error("Unhandled domain error on %s: %s", request.url.path, exc.message)
    else:
        logger.info("%s on %s: %s", type(exc).__name__, request.url.path, exc.message)
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "message": exc.message, "detail": exc.detail},
    )


BACKGROUND_WORKERS = (
    ("fixmo.workers.outbox_dispatcher", "run_outbox_dispatcher"),
    ("fixmo.workers.conversation_reconciler", "run_conversation_reconciler"),
    ("fixmo.workers.warranty_sweeper", "run_warranty_sweeper"),
)


def _init_sentry(settings) -> None:
    try:
        import sentry_sdk
        sentry_sdk.init(
            dsn=settings.sentry_dsn,
            traces_sample_rate=0.1,
            environment=settings.app_env,
        )
        logger.info("Sentry initialized")
    except Exception as e:
        logger.warning("Sentry initialization failed: %s", str(e))


async def _stop_workers(tasks: list[asyncio.Task]) -> None:
    for task in tasks:
        task.cancel()
    results = await asyncio.gather(*tasks, return_exceptions=True)
    for task, result in zip(tasks, results):
        if isinstance(result, Exception):
            logger.error("Worker %s exited with %r", task.get_name(), result)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start the background workers; cancel them and close Redis on shutdown."""
    settings = get_settings()
    logger.info("Fixmo starting up (env=%s)", settings.app_env)

    if not settings.sendgrid_api_key:
        logger.warning("SENDGRID_API_KEY not set - booking and warranty emails will not be sent.")
    if not settings.expo_access_token:
        logger.info("EXPO_ACCESS_TOKEN not set - push requests go out unauthenticated.")
    if settings.sentry_dsn:
        _init_sentry(settings)

    tasks: list[asyncio.Task] = []
    for module_path, func_name in BACKGROUND_WORKERS:
        run = getattr(importlib.import_module(module_path), func_name)
        tasks.append(asyncio.create_task(run(), name=func_name))
    logger.info("Started %d workers: %s", len(tasks), ", ".join(t.get_name() for t in tasks))

    yield

    logger.info("Fixmo shutting down - stopping %d workers", len(tasks))
    await _stop_workers(tasks)

    from fixmo.database import dispose_engine
    from fixmo.utils.redis_client import close_redis
    await close_redis()
    await dispose_engine()
    logger.info("Fixmo shutdown complete")


def create_app() -> FastAPI:
    settings = get_settings()
    configure_structured_logging(settings.log_level)

    application = FastAPI(
        title="Fixmo",
        description="Service marketplace backend: appointments, warranty claims and conversations",
        version="2.0.0",
        lifespan=lifespan,
    )

    origins = [o.strip() for o in settings.cors_origins.split(",") if o.strip()]
    application.add_middleware(
        CORSMiddleware,
        allow_origins=origins + [settings.app_base_url],
        allow_credentials=True,
        allow_methods=["GET", "POST", "PATCH", "OPTIONS"],
        allow_headers=["Authorization", "Content-Type", "X-Correlation-ID"],
        expose_headers=["X-Correlation-ID"],
    )
    # Added after CORS so it wraps preflight responses too
    application.add_middleware(CorrelationIdMiddleware)

    application.add_exception_handler(FixmoError, fixmo_error_handler)
    application.include_router(api_router)
    return application


app = create_app()
