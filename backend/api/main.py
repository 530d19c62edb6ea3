"""
StockSentry API — FastAPI Application Entry Point
"""

from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.requests import Request

from core.config import get_settings
from db.store import PolicyViolationError

settings = get_settings()
logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events."""
    logger.info("StockSentry API starting up", version=settings.app_version)
    yield
    from alerts.fanout import get_fanout
    from alerts.scheduler import get_scheduler

    await get_scheduler().dispatcher.drain(timeout=10.0)
    await get_fanout().close()
    logger.info("StockSentry API shutting down")


app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    description="Inventory alerting: stock and expiry health checks with deduplicated notifications",
    lifespan=lifespan,
)


@app.exception_handler(PolicyViolationError)
async def policy_violation_handler(request: Request, exc: PolicyViolationError):
    logger.info("api.policy_violation", path=request.url.path, reason=str(exc))
    return JSONResponse(status_code=409, content={"detail": str(exc)})


# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Import and register routers
from alerts.websocket import router as ws_router
from api.v1.routers import health_checks, notifications

app.include_router(notifications.router)
app.include_router(health_checks.router)
app.include_router(ws_router)


@app.get("/health")
async def health_check():
    """Liveness probe for load balancers."""
    return {"status": "healthy", "version": settings.app_version}
