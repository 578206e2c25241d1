"""
Operator entry point.

Runs the reconcile controller and the Kubernetes watches as background tasks
of a small FastAPI application that serves the health probes and the
Prometheus metrics endpoint.
"""
import asyncio
import sys
from contextlib import asynccontextmanager
from typing import AsyncGenerator

import sentry_sdk
from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse
from prometheus_fastapi_instrumentator import Instrumentator

from music_operator.api.v1 import health
from music_operator.config.logging import configure_logging, get_logger
from music_operator.config.settings import settings
from music_operator.exceptions import OperatorException
from music_operator.services.database_engine import get_engine
from music_operator.services.reconciler import MusicServiceReconciler
from music_operator.store.kubernetes import KubernetesStateStore
from music_operator.workers.controller import Controller
from music_operator.workers.event_watcher import KubernetesEventWatcher

# Configure logging
configure_logging()
logger = get_logger(__name__)

# Initialize Sentry for error tracking (production)
if settings.sentry_dsn and settings.is_production:
    sentry_sdk.init(
        dsn=settings.sentry_dsn,
        traces_sample_rate=settings.sentry_traces_sample_rate,
        environment=settings.environment,
        release=settings.app_version,
    )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator:
    """
    Application lifespan manager.

    Startup connects to the cluster, then starts the controller workers and
    the watch loops. Shutdown stops the watches first so no new keys arrive
    while the workers drain.
    """
    logger.info(
        "operator_starting",
        version=settings.app_version,
        environment=settings.environment,
        namespace=settings.watch_namespace or "*",
    )

    store = KubernetesStateStore()
    background_tasks = []
    try:
        logger.info("initializing_kubernetes_connection")
        await store.connect()

        reconciler = MusicServiceReconciler(store, engine=get_engine(settings.database_engine))
        controller = Controller(reconciler)
        watcher = KubernetesEventWatcher(store.clients, controller)

        await controller.start()
        background_tasks.append(asyncio.create_task(watcher.start()))

        app.state.controller = controller
        app.state.started = True
        logger.info(
            "operator_started",
            workers=controller.workers,
            background_tasks=len(background_tasks),
        )
    except KeyboardInterrupt:
        logger.info("operator_startup_interrupted")
        raise
    except Exception as e:
        logger.error("operator_startup_failed", error=str(e))
        await store.close()
        raise

    yield

    # Shutdown
    logger.info("operator_shutting_down")
    app.state.started = False
    await watcher.stop()
    for task in background_tasks:
        task.cancel()
    try:
        await asyncio.wait_for(
            asyncio.gather(*background_tasks, return_exceptions=True),
            timeout=30.0,
        )
        await asyncio.wait_for(controller.stop(), timeout=30.0)
        logger.info("background_tasks_stopped")
    except asyncio.TimeoutError:
        logger.warning("background_tasks_shutdown_timeout")

    await store.close()
    logger.info("kubernetes_connection_closed")
    logger.info("operator_shutdown_complete")


def create_app() -> FastAPI:
    """Build the FastAPI application."""
    application = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        description="Reconciles MusicService resources into StatefulSets, Services and autoscalers",
        docs_url=None if settings.is_production else "/docs",
        redoc_url=None,
        openapi_url=None if settings.is_production else "/openapi.json",
        lifespan=lifespan,
    )
    application.state.controller = None
    application.state.started = False

    @application.exception_handler(OperatorException)
    async def operator_exception_handler(request: Request, exc: OperatorException) -> JSONResponse:
        """Handle operator exceptions."""
        logger.error(
            "operator_exception",
            path=request.url.path,
            method=request.method,
            error=exc.message,
            status_code=exc.status_code,
            details=exc.details,
        )
        return JSONResponse(
            status_code=exc.status_code,
            content={
                "error": {
                    "message": exc.message,
                    "details": exc.details,
                    "status_code": exc.status_code,
                }
            },
        )

    @application.exception_handler(Exception)
    async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Handle all other exceptions."""
        logger.error(
            "unhandled_exception",
            path=request.url.path,
            method=request.method,
            error=str(exc),
            exc_info=True,
        )
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "error": {
                    "message": "Internal server error",
                    "details": {} if settings.is_production else {"error": str(exc)},
                    "status_code": 500,
                }
            },
        )

    @application.middleware("http")
    async def log_requests(request: Request, call_next):
        """Log probe and metrics requests at debug level."""
        response = await call_next(request)
        logger.debug(
            "request_completed",
            method=request.method,
            path=request.url.path,
            status_code=response.status_code,
        )
        return response

    if settings.prometheus_enabled:
        Instrumentator().instrument(application).expose(application, endpoint="/metrics")

    application.include_router(health.router, prefix="/health", tags=["Health"])

    @application.get("/", include_in_schema=False)
    async def root():
        """Root endpoint."""
        return {
            "name": settings.app_name,
            "version": settings.app_version,
            "environment": settings.environment,
            "status": "running",
        }

    return application


app = create_app()


def run() -> None:
    """Console entry point."""
    import uvicorn

    try:
        uvicorn.run(
            "music_operator.main:app",
            host=settings.host,
            port=settings.port,
            reload=settings.debug,
            log_level=settings.log_level.lower(),
        )
    except (KeyboardInterrupt, SystemExit):
        logger.info("operator_stopped")
    finally:
        sys.exit(0)


if __name__ == "__main__":
    run()
