import asyncio
import logging
import os
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.trustedhost import TrustedHostMiddleware

from chairbook.routers import admin, bookings, directory, notifications
from chairbook.services.push_sender import push_sender
from chairbook.services.remediation import REMEDIATION_ENABLED, remediation_scheduler

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="Chairbook Booking API", version="0.1.0")


def _parse_csv_env(name: str, default: str) -> list[str]:
    raw = os.getenv(name, default)
    return [item.strip() for item in raw.split(",") if item.strip()]


cors_origins = _parse_csv_env("CORS_ORIGINS", "*")
allow_any_origin = len(cors_origins) == 1 and cors_origins[0] == "*"

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    # Browsers reject wildcard CORS with credentials enabled.
    allow_credentials=not allow_any_origin,
    allow_methods=["*"],
    allow_headers=["*"],
)

trusted_hosts = _parse_csv_env("TRUSTED_HOSTS", "*")
if not (len(trusted_hosts) == 1 and trusted_hosts[0] == "*"):
    app.add_middleware(TrustedHostMiddleware, allowed_hosts=trusted_hosts)

app.include_router(bookings.router)
app.include_router(directory.router)
app.include_router(notifications.router)
app.include_router(admin.router)

_remediation_stop: Optional[asyncio.Event] = None
_remediation_task: Optional[asyncio.Task] = None


@app.on_event("startup")
async def start_remediation_loop():
    global _remediation_stop, _remediation_task
    if not REMEDIATION_ENABLED:
        logger.info("Remediation loop disabled by REMEDIATION_ENABLED")
        return
    _remediation_stop = asyncio.Event()
    _remediation_task = asyncio.create_task(remediation_scheduler.run_forever(_remediation_stop))


@app.on_event("shutdown")
async def stop_remediation_loop():
    global _remediation_task
    if _remediation_stop is None or _remediation_task is None:
        return
    _remediation_stop.set()
    try:
        await asyncio.wait_for(_remediation_task, timeout=10.0)
    except asyncio.TimeoutError:
        logger.warning("Remediation loop did not stop in time; cancelling")
        _remediation_task.cancel()
    _remediation_task = None


@app.get("/health")
def health():
    return {"status": "ok"}


@app.get("/ready")
def ready():
    return {
        "status": "ready",
        "database": "sqlite",
        "push_enabled": push_sender.enabled,
        "remediation_enabled": REMEDIATION_ENABLED,
        "remediation_interval_seconds": remediation_scheduler.interval_seconds,
    }
