import os
from contextlib import asynccontextmanager
from utils.utcnow import utcnow
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import traceback

from config import settings
from api.routes_reposition import router as reposition_router
from models.database import AsyncSessionLocal, init_database
from services.monitor_state import AUTO_REPOSITION_SERVICE, read_monitor_state
from services.notifier import notifier
from utils.logger import setup_logging, get_logger

# Setup logging
setup_logging(level=settings.LOG_LEVEL, json_format=settings.LOG_JSON)
logger = get_logger("main")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events"""
    logger.info("Starting auto-reposition service...")

    await init_database()
    logger.info("Database initialized")

    await notifier.start()

    try:
        yield
    finally:
        logger.info("Shutting down...")
        await notifier.shutdown()
        try:
            from services.price_feed import get_price_feed

            await get_price_feed().close()
        except Exception as exc:
            logger.warning("Price feed close failed", error=str(exc))
        logger.info("Shutdown complete")


app = FastAPI(
    title="DLMM Auto-Reposition",
    description="Out-of-range detection and automated repositioning for DLMM liquidity positions",
    version="1.0.0",
    lifespan=lifespan,
)


# Global exception handler
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(
        "Unhandled exception",
        path=request.url.path,
        method=request.method,
        error=str(exc),
        traceback=traceback.format_exc(),
    )
    return JSONResponse(
        status_code=500, content={"detail": "Internal server error", "error": str(exc)}
    )


# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# API routes
app.include_router(reposition_router, prefix="/api")


# Health checks
@app.get("/health")
async def health_check():
    """Basic health check - for load balancers"""
    return {"status": "ok"}


@app.get("/health/live")
async def liveness_check():
    """Liveness probe - is the service running?"""
    return {"status": "alive", "timestamp": utcnow().isoformat()}


@app.get("/health/ready")
async def readiness_check():
    """Readiness probe - database reachable and monitor heartbeat readable."""
    async with AsyncSessionLocal() as session:
        monitor = await read_monitor_state(session, AUTO_REPOSITION_SERVICE)
    checks = {
        "database": True,
        "monitor_has_run": monitor.get("last_run_at") is not None,
        "notifier": notifier.enabled,
    }
    return {
        "status": "ready" if checks["database"] else "not_ready",
        "checks": checks,
        "timestamp": utcnow().isoformat(),
    }


if __name__ == "__main__":
    import uvicorn

    port = int(os.environ.get("PORT", 8000))
    uvicorn.run(
        app,
        host="0.0.0.0",
        port=port,
        timeout_keep_alive=30,
    )
