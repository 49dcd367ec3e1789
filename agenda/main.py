import asyncio
import logging
import os
import time
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

# Registers every table on Base.metadata
from . import (
    models,  # noqa: F401
    models_billing,  # noqa: F401
)
from .config import BILLING_MONITOR_IN_PROCESS, get_reminder_settings
from .database import Base, SessionLocal, engine
from .domain.billing.router import router as billing_router
from .domain.billing.router import webhooks_router as mercadopago_webhooks_router
from .domain.dunning.monitor import DunningMonitor
from .domain.wallet.router import router as wallet_router
from .notifications import build_senders

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

# Gateway and WhatsApp calls log every request at INFO
for noisy in ("httpx", "httpcore"):
    logging.getLogger(noisy).setLevel(logging.WARNING)


def _create_tables() -> None:
    try:
        Base.metadata.create_all(bind=engine, checkfirst=True)
        logger.info("✅ Billing tables ready")
    except Exception as e:
        # Several uvicorn workers may race on first boot
        if "already exists" in str(e) or "duplicate key" in str(e):
            logger.info("Billing tables created by another worker")
        else:
            logger.error(f"❌ Could not create billing tables: {e}")


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("🚀 Agenda API starting")
    _create_tables()

    monitor_task = None
    if BILLING_MONITOR_IN_PROCESS:
        monitor = DunningMonitor(SessionLocal, build_senders(), get_reminder_settings())
        monitor_task = asyncio.create_task(monitor.run_forever())
    else:
        logger.info("Billing monitor runs in the arq worker")

    yield

    if monitor_task is not None:
        monitor_task.cancel()
        try:
            await monitor_task
        except asyncio.CancelledError:
            pass
    logger.info("👋 Agenda API stopped")


app = FastAPI(title="Agenda API", version="1.0.0", lifespan=lifespan)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    started = time.perf_counter()
    try:
        response = await call_next(request)
    except Exception as e:
        logger.error(f"❌ {request.method} {request.url.path} failed: {e}")
        raise
    elapsed_ms = (time.perf_counter() - started) * 1000
    if elapsed_ms > 2000:
        logger.warning(f"🐌 {request.method} {request.url.path} took {elapsed_ms:.0f}ms")
    return response


cors_origins = [
    origin.strip()
    for origin in os.getenv("ALLOWED_ORIGINS", "http://localhost:5173,http://localhost:3000").split(",")
    if origin.strip()
]
app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "HEAD", "OPTIONS"],
    allow_headers=["*"],
)

app.include_router(billing_router)
app.include_router(wallet_router)
app.include_router(mercadopago_webhooks_router)


@app.get("/")
def root():
    return {"message": "Agenda API is running"}


@app.get("/health")
def health():
    return {"status": "healthy"}
