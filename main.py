from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
import asyncio
import os

from core.config import APP_NAME, RUN_BILLING_SCHEDULER, BILLING_SCHEDULER_INTERVAL_SEC, logger  # type: ignore

# Routers
from routers import billing, payments, webhooks, memberships  # type: ignore

app = FastAPI(title=APP_NAME)

# ---- CORS setup ----
_default_origins = ",".join([
    "http://localhost:3000",
    "http://localhost:5173",
    "http://127.0.0.1:3000",
    "http://127.0.0.1:5173",
])
_origins_env = os.getenv("ALLOWED_ORIGINS") or os.getenv("CORS_ORIGINS") or os.getenv("FRONTEND_ORIGIN") or _default_origins
ALLOWED_ORIGINS = [o.strip() for o in _origins_env.split(",") if o.strip()]
app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# --- Security headers ---
@app.middleware("http")
async def add_security_headers(request, call_next):
    response = await call_next(request)
    try:
        response.headers.setdefault("X-Content-Type-Options", "nosniff")
        response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
        response.headers.setdefault("X-Frame-Options", "DENY")
    except Exception as ex:
        logger.warning(f"security headers not applied: {ex}")
    return response


app.include_router(billing.router)
app.include_router(payments.router)
app.include_router(memberships.router)

app.include_router(webhooks.router)


async def _auto_billing_once():
    from core.database import SessionLocal
    from utils.auto_run import run_auto_billing
    db = SessionLocal()
    try:
        summary = await run_auto_billing(db)
        if not summary.get("skipped"):
            logger.info(f"[scheduler] auto billing: {summary}")
    finally:
        db.close()


async def _billing_scheduler_loop():
    # Wakes up hourly; the day marker makes every call after the first a no-op
    while True:
        try:
            await _auto_billing_once()
        except Exception as ex:
            logger.exception(f"[scheduler] auto billing failed: {ex}")
        await asyncio.sleep(BILLING_SCHEDULER_INTERVAL_SEC)


@app.on_event("startup")
async def _init_schema():
    try:
        from core.database import init_db
        init_db()
    except Exception as _ex:
        logger.warning(f"init_db failed: {_ex}")


@app.on_event("startup")
async def _start_billing_scheduler():
    if RUN_BILLING_SCHEDULER:
        asyncio.create_task(_billing_scheduler_loop())


@app.get("/")
async def root():
    return {"ok": True, "app": APP_NAME}
