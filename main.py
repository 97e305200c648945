# -*- coding: utf-8 -*-
# main.py - LibreTV backend (accounts, subscriptions, payments)

import os
import asyncio
import logging
import traceback
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

import ledger
from db import SessionLocal, init_db
from errors import register_error_handlers
from payments import PaymentGateway
from providers import build_providers
from sweeper import SWEEP_ENABLED, ExpirySweeper

from admin_routes import router as admin_router
from auth_routes import router as auth_router
from health_routes import router as health_router
from payment_routes import router as payment_router
from subscription_routes import router as subscription_router

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("libretv")

VERSION = "1.0.0"


def _seed_plans() -> None:
    db = SessionLocal()
    try:
        plans = ledger.ensure_default_plans(db)
        logger.info("subscription plans ready: %s", ", ".join(p.name for p in plans))
    finally:
        db.close()


# --------------------------------------------------------------------------------------
# Lifespan: resilient startup with diagnostics (appears in /api/ready)
# --------------------------------------------------------------------------------------
@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Warm the DB with retries, seed plans, start the expiry sweeper.
    A failure is captured and exposed via /api/ready instead of crashing the process.
    """
    state = app.state
    state.db_ready = False
    state.startup_ok = False
    state.startup_error = ""
    tries = int(os.getenv("DB_WARMUP_TRIES", "20"))
    delay = float(os.getenv("DB_WARMUP_DELAY", "1.5"))
    try:
        for i in range(tries):
            try:
                init_db()
                state.db_ready = True
                break
            except Exception as e:
                logger.warning("init_db attempt %s/%s failed: %s", i + 1, tries, e)
                await asyncio.sleep(delay)
        if not state.db_ready:
            raise RuntimeError(f"database not reachable after {tries} attempts")
        _seed_plans()
        if SWEEP_ENABLED:
            state.sweeper.start()
        state.startup_ok = True
    except Exception:
        state.startup_error = traceback.format_exc()
        logger.error("Startup failed:\n%s", state.startup_error)

    # still yield on failure so health/ready respond with details
    yield

    await state.sweeper.stop()
    SessionLocal.remove()


app = FastAPI(title="LibreTV Backend", version=VERSION, lifespan=lifespan)
app.state.gateway = PaymentGateway(build_providers())
app.state.sweeper = ExpirySweeper()
register_error_handlers(app)

# --------------------------------------------------------------------------------------
# CORS
# --------------------------------------------------------------------------------------
ALLOWED_ORIGINS = [
    "http://localhost:3000",
    "http://127.0.0.1:3000",
    "http://localhost:8080",
]
extra = (os.getenv("ALLOWED_ORIGINS") or "").strip()
if extra:
    ALLOWED_ORIGINS += [o.strip() for o in extra.split(",") if o.strip()]

app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    max_age=86400,
)


@app.get("/")
def root():
    return {"ok": True, "service": "libretv-backend", "version": VERSION}


app.include_router(health_router)
app.include_router(auth_router)
app.include_router(subscription_router)
app.include_router(payment_router)
app.include_router(admin_router)
