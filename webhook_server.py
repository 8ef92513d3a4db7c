"""
Escrow & Payout API Server
FastAPI application: intent endpoints, provider webhooks and background jobs
"""

import asyncio
import logging
import time
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from config import Config
from database import create_tables
from handlers.dispute_routes import router as dispute_router
from handlers.escrow_routes import router as escrow_router
from handlers.payout_routes import router as payout_router
from handlers.razorpay_webhook import router as razorpay_webhook_router
from jobs.scheduler import get_scheduler
from services.atomic_lock_manager import atomic_lock_manager
from services.circuit_breaker import get_all_breaker_states
from utils import request_deadline
from utils.exceptions import EscrowCoreError, RequestTimeoutError

logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')
logger = logging.getLogger(__name__)

_startup_timestamp = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Startup: schema, configuration report, background jobs.
    Shutdown: stop the scheduler.
    """
    global _startup_timestamp
    Config.log_environment_config()
    await create_tables()

    scheduler = get_scheduler()
    if Config.ENABLE_SCHEDULER:
        scheduler.start()
    else:
        logger.warning("⚠️ SCHEDULER DISABLED: background jobs will not run in this process")
    _startup_timestamp = time.time()
    logger.info("✅ Escrow core ready")

    yield

    scheduler.stop()
    logger.info("🔄 Escrow core shutting down")


app = FastAPI(
    title="Escrow & Payout Core",
    description="Custodial escrow orchestration and token-burn backed INR payouts",
    lifespan=lifespan
)


@app.middleware("http")
async def enforce_request_deadline(request: Request, call_next):
    token = request_deadline.start(Config.REQUEST_DEADLINE_SECONDS)
    try:
        return await asyncio.wait_for(call_next(request), timeout=Config.REQUEST_DEADLINE_SECONDS)
    except asyncio.TimeoutError:
        logger.warning(f"⏰ REQUEST_DEADLINE: {request.method} {request.url.path} exceeded {Config.REQUEST_DEADLINE_SECONDS}s")
        error = RequestTimeoutError(f"Request exceeded {Config.REQUEST_DEADLINE_SECONDS}s deadline")
        return JSONResponse(content=error.to_dict(), status_code=error.http_status)
    finally:
        request_deadline.reset(token)


@app.exception_handler(EscrowCoreError)
async def escrow_core_error_handler(request: Request, exc: EscrowCoreError):
    if exc.http_status >= 500:
        logger.error(f"❌ {exc.code}: {request.method} {request.url.path}: {exc.message}")
    return JSONResponse(content=exc.to_dict(), status_code=exc.http_status)


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        content={"code": "BAD_INPUT", "message": "Invalid request", "details": {"errors": jsonable_errors(exc)}},
        status_code=400,
    )


def jsonable_errors(exc: RequestValidationError):
    return [{"loc": list(e.get("loc", [])), "msg": e.get("msg")} for e in exc.errors()]


app.include_router(escrow_router)
app.include_router(dispute_router)
app.include_router(payout_router)
app.include_router(razorpay_webhook_router)


@app.get("/health")
async def health_check():
    uptime = time.time() - _startup_timestamp if _startup_timestamp else 0
    scheduler = get_scheduler()
    return {
        "status": "healthy",
        "service": "escrow-core",
        "uptime_seconds": round(uptime, 2),
        "scheduler_running": scheduler.running,
        "chain_configured": Config.chain_configured(),
        "payouts_configured": Config.payouts_configured(),
        "circuit_breakers": get_all_breaker_states(),
        "locks": atomic_lock_manager.get_metrics(),
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("webhook_server:app", host="0.0.0.0", port=Config.PORT)
