import os
import traceback
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text

from config import settings
from api import router
from models.database import AsyncSessionLocal, init_database
from services.endpoint_rotation import endpoint_rotation
from services.trade_history_sync import trade_history_service
from utils.clock import utcnow
from utils.logger import setup_logging, get_logger

# Setup logging
setup_logging(level=settings.LOG_LEVEL, json_format=settings.LOG_JSON)
logger = get_logger("main")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events"""
    logger.info(
        "Starting futarchy trade history sync...",
        rpc_endpoints=len(settings.GNOSIS_RPC_URLS),
        polling=settings.TRADE_POLLING_ENABLED,
        realtime=settings.TRADE_REALTIME_ENABLED,
    )

    try:
        await init_database()
        logger.info("Database initialized")
        yield
    except Exception as e:
        logger.error("Startup failed", error=str(e), traceback=traceback.format_exc())
        raise
    finally:
        logger.info("Shutting down...")
        await trade_history_service.shutdown()
        logger.info("Shutdown complete")


app = FastAPI(
    title="Futarchy Trade History",
    description="Wallet trade history sync for futarchy markets on Gnosis Chain",
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
app.include_router(router, prefix="/api", tags=["Trade History"])


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
    """Readiness probe - is the service ready to accept traffic?"""
    database_ok = True
    try:
        async with AsyncSessionLocal() as session:
            await session.execute(text("SELECT 1"))
    except Exception as e:
        logger.warning("Readiness database check failed", error=str(e))
        database_ok = False

    rotation = endpoint_rotation.get_status()
    checks = {
        "database": database_ok,
        "rpc_available": any(not ep["cooling_down"] for ep in rotation["endpoints"]),
    }

    return {
        "status": "ready" if all(checks.values()) else "not_ready",
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
        # Single worker: symbol cache, endpoint rotation and pipelines are in-process state.
        timeout_keep_alive=30,
    )
