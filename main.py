from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
import asyncio
import os
from datetime import timedelta

from core.config import logger, PAYOUT_BATCH_SIZE, PAYOUT_INTERVAL_SEC, PENDING_SWEEP_AGE_MIN, PENDING_SWEEP_BATCH_SIZE  # type: ignore

# Routers
from routers import referrals, donations, payments, payouts  # type: ignore

app = FastAPI(title="Chainfund Core")

# ---- CORS setup ----
_default_origins = ",".join([
    "http://localhost:3000",
    "http://127.0.0.1:3000",
])
_origins_env = os.getenv("ALLOWED_ORIGINS") or os.getenv("CORS_ORIGINS") or os.getenv("APP_URL") or _default_origins
ALLOWED_ORIGINS = [o.strip().rstrip("/") for o in _origins_env.split(",") if o.strip()]
app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("Strict-Transport-Security", "max-age=63072000; includeSubDomains; preload")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    response.headers.setdefault("X-Frame-Options", "DENY")
    return response


app.include_router(referrals.router)
app.include_router(donations.router)
app.include_router(payments.router)
app.include_router(payouts.router)


@app.get("/health")
async def health():
    return {"status": "healthy", "service": "chainfund-core"}


async def _payout_batch_once():
    from core.database import SessionLocal
    from utils.payouts import run_batch

    db = SessionLocal()
    try:
        summary = await run_batch(db, PAYOUT_BATCH_SIZE)
        logger.info(f"[payouts.scheduler] claimed={summary['claimed']} completed={summary['completed']} failed={summary['failed']}")
    finally:
        db.close()


async def _pending_sweep_once():
    from core.database import SessionLocal
    from utils.reconciliation import sweep_pending

    db = SessionLocal()
    try:
        await sweep_pending(db, timedelta(minutes=PENDING_SWEEP_AGE_MIN), PENDING_SWEEP_BATCH_SIZE)
    finally:
        db.close()


async def _payout_scheduler_loop():
    while True:
        try:
            await _payout_batch_once()
        except Exception as ex:
            logger.exception(f"[payouts.scheduler] run failed: {ex}")
        try:
            await _pending_sweep_once()
        except Exception as ex:
            logger.exception(f"[payments.sweep] run failed: {ex}")
        await asyncio.sleep(PAYOUT_INTERVAL_SEC)


@app.on_event("startup")
async def _init_schema():
    try:
        from core.database import init_db
        init_db()
    except Exception as _ex:
        logger.warning(f"init_db failed: {_ex}")


@app.on_event("startup")
async def _start_payout_scheduler():
    flag = (os.getenv("RUN_PAYOUT_SCHEDULER") or "0").strip()
    if flag == "1":
        asyncio.create_task(_payout_scheduler_loop())
