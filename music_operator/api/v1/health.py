"""
Health check endpoints for monitoring and orchestration.
Provides liveness, readiness, and startup probes for the operator pod.
"""
from datetime import datetime, timezone

from fastapi import APIRouter, Request, status
from fastapi.responses import JSONResponse

from music_operator.config.settings import settings

router = APIRouter()


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


@router.get("/")
async def health_check():
    """
    Basic health check endpoint.
    Returns current status and version.
    """
    return {
        "status": "healthy",
        "version": settings.app_version,
        "environment": settings.environment,
        "timestamp": _timestamp(),
    }


@router.get("/live")
async def liveness():
    """
    Kubernetes liveness probe.
    Indicates whether the process should be restarted.
    """
    return {"status": "alive", "timestamp": _timestamp()}


@router.get("/ready")
async def readiness(request: Request):
    """
    Kubernetes readiness probe.
    Ready once the controller's workers are running.
    """
    controller = getattr(request.app.state, "controller", None)
    if controller is None or not controller.running:
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={
                "status": "not_ready",
                "controller": "stopped",
                "timestamp": _timestamp(),
            },
        )

    return {
        "status": "ready",
        "controller": "running",
        "workers": controller.workers,
        "queue_depth": len(controller.queue),
        "in_flight": controller.in_flight,
        "timestamp": _timestamp(),
    }


@router.get("/startup")
async def startup(request: Request):
    """
    Kubernetes startup probe.
    Indicates whether the cluster connection has been established.
    """
    if not getattr(request.app.state, "started", False):
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={"status": "starting", "timestamp": _timestamp()},
        )
    return {"status": "started", "timestamp": _timestamp()}
