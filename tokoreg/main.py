"""Tokoreg - multi-channel store registration service (FastAPI application)."""
# Load .env before any app code that might read config
from dotenv import load_dotenv
from pathlib import Path
load_dotenv(Path(__file__).resolve().parent.parent / ".env")

import logging

from fastapi import Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from tokoreg.config import get_settings
from tokoreg.database import Base, engine, get_db
# Import models so Base.metadata has all tables before create_all (schema source of truth)
from tokoreg.models import (  # noqa: F401
    Account, RegistrationSession, OneTimeCode, PendingRegistration, AuditLog,
)
from tokoreg.routers import auth, chat, registration
from tokoreg.services import reaper
from tokoreg.services.messages import TRY_AGAIN
from tokoreg.services.results import StorageUnavailable
from tokoreg.services.sessions import session_counts

settings = get_settings()
log = logging.getLogger("uvicorn.error")
app = FastAPI(title=settings.app_name, debug=settings.debug)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(registration.router)
app.include_router(chat.router)
app.include_router(auth.router)

scheduler = None


@app.exception_handler(StorageUnavailable)
def storage_unavailable_handler(request: Request, exc: StorageUnavailable):
    log.warning("[Storage] %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=503, content={"error": "storage_unavailable", "message": TRY_AGAIN})


@app.on_event("startup")
def startup():
    global scheduler
    try:
        Base.metadata.create_all(bind=engine)
    except SQLAlchemyError as e:
        log.warning("Database startup failed (tables skipped). Check DATABASE_URL and network. Error: %s", e)

    if not (settings.reaper_enabled or settings.archival_enabled):
        return
    from apscheduler.schedulers.background import BackgroundScheduler
    scheduler = BackgroundScheduler()
    if settings.reaper_enabled:
        scheduler.add_job(
            reaper.run_registration_reaper_job,
            "interval",
            minutes=settings.reaper_interval_minutes,
            id="registration_reaper",
            max_instances=1,
            coalesce=True,
        )
    if settings.archival_enabled:
        scheduler.add_job(
            reaper.run_registration_archival_job,
            "cron",
            hour=settings.archival_hour,
            minute=0,
            id="registration_archival",
            max_instances=1,
            coalesce=True,
        )
    scheduler.start()
    log.info("[Scheduler] Started (reaper every %d min, archival=%s)", settings.reaper_interval_minutes, settings.archival_enabled)


@app.on_event("shutdown")
def shutdown():
    if scheduler is not None and scheduler.running:
        scheduler.shutdown(wait=False)


@app.get("/")
def root():
    return {"app": settings.app_name, "status": "ok"}


@app.get("/health")
def health(db: Session = Depends(get_db)):
    try:
        counts = session_counts(db)
        database = "ok"
    except SQLAlchemyError as e:
        db.rollback()
        log.warning("Health check database error: %s", e)
        counts = {}
        database = "unavailable"
    return {
        "status": "healthy" if database == "ok" else "degraded",
        "database": database,
        "sessions": counts,
        "reaper": reaper.stats.as_dict(),
    }
