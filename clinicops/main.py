import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager
from sqlalchemy import text

from clinicops.config import settings
from clinicops.core.error_handling import register_exception_handlers
from clinicops.database import Base, SessionLocal, engine
from clinicops import models  # noqa: F401
from clinicops.routers import appointments, reminders, time_blocks
from clinicops.services.reminder_engine import get_reminder_engine

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Starting clinic operations backend...")

    try:
        Base.metadata.create_all(bind=engine)
        logger.info("Database tables ready")
    except Exception as e:
        logger.error(f"Failed to create tables: {e}")

    engine_enabled = settings.REMINDER_ENGINE_ENABLED
    if engine_enabled:
        reminder_engine = get_reminder_engine()
        reminder_engine.initialize(SessionLocal)
        await reminder_engine.start()
        logger.info("Reminder engine started")
    else:
        logger.info("Reminder engine disabled (set REMINDER_ENGINE_ENABLED=true to enable)")

    yield

    logger.info("Shutting down clinic operations backend...")
    if engine_enabled:
        await get_reminder_engine().stop()
    logger.info("Shutdown complete")


app = FastAPI(
    title="Clinic Operations API",
    description="Appointment booking, doctor availability and multi-channel reminders",
    version="1.0.0",
    lifespan=lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
register_exception_handlers(app)

app.include_router(appointments.router)
app.include_router(time_blocks.router)
app.include_router(reminders.router)


@app.get("/health")
def health_check():
    database = "connected"
    db = SessionLocal()
    try:
        db.execute(text("SELECT 1"))
    except Exception as e:
        logger.error(f"Health check database error: {e}")
        database = "unavailable"
    finally:
        db.close()
    return {
        "status": "healthy" if database == "connected" else "degraded",
        "database": database,
        "reminder_engine": "running" if get_reminder_engine().running else "stopped",
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "clinicops.main:app",
        host="0.0.0.0",
        port=8000,
        reload=True
    )
