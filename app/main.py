"""Main FastAPI application entry point."""
import logging
from contextlib import asynccontextmanager

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger
from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from app.config import settings, configure_logging
from app.database import engine, Base, SessionLocal
from app.api.routes import router
from app.middleware import RequestLoggingMiddleware
# Import models to register them with SQLAlchemy Base
from app.models.domain import User, Item, Reservation, Return
from app.models.audit import AuditLog, ActionMarker
from app.services.overdue import OverdueSweep

configure_logging()
logger = logging.getLogger(__name__)

scheduler = BackgroundScheduler(timezone="UTC")


def run_scheduled_sweep():
    """Scheduler entry point: one session per run, no acting user."""
    db = SessionLocal()
    try:
        result = OverdueSweep(db).run(acting_user_id=None)
        logger.info("Scheduled overdue sweep: %s", result["summary"])
    finally:
        db.close()


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Application startup...")
    Base.metadata.create_all(bind=engine)

    interval = settings.overdue_sweep_interval_minutes
    if interval > 0:
        scheduler.add_job(
            run_scheduled_sweep,
            trigger=IntervalTrigger(minutes=interval),
            id="overdue_sweep_job",
            name="Overdue sweep",
            replace_existing=True,
            misfire_grace_time=60 * interval,
            max_instances=1
        )
        scheduler.start()
        logger.info("Overdue sweep scheduled every %d minutes", interval)
    yield
    logger.info("Application shutdown...")
    if scheduler.running:
        scheduler.shutdown()


# Create FastAPI app
app = FastAPI(
    title="Brocy - Inventory and Reservations",
    description="Keeps item availability consistent with reservations, tracks overdue returns "
                "and applies trust-score penalties.",
    version="0.1.0",
    lifespan=lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(RequestLoggingMiddleware)


@app.exception_handler(SQLAlchemyError)
async def persistence_exception_handler(request: Request, exc: SQLAlchemyError):
    # The failing transaction has already been rolled back
    logger.error("Persistence failure on %s %s", request.method, request.url.path, exc_info=exc)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"detail": {"error": "Internal server error"}},
    )


# Include API routes
app.include_router(router, prefix="/api", tags=["Brocy"])


# Health check
@app.get("/health")
def health_check():
    return {"status": "healthy", "service": "Brocy"}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
