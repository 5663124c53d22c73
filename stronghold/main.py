from contextlib import asynccontextmanager
from typing import List, Optional
import logging
import sys

from fastapi import FastAPI
from sqlalchemy import text
from prometheus_fastapi_instrumentator import Instrumentator
import uvicorn

from stronghold.core.config import settings
from stronghold.db.session import get_db_session
from stronghold.notifications.broker import QueuePublisher
from stronghold.notifications.config import get_notification_settings
from stronghold.notifications.scanners import (
    DueItemScanner,
    build_appointment_reminder_scanner,
    build_membership_expiry_scanner,
)

# Configure logging
logging.basicConfig(
    level=settings.LOG_LEVEL,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    handlers=[logging.StreamHandler(sys.stdout)],
)

logger = logging.getLogger(__name__)


def build_default_scanners() -> List[DueItemScanner]:
    notification_settings = get_notification_settings()
    if not notification_settings.SCANNER_ENABLED:
        logger.info("[Startup] Scanners disabled via SCANNER_ENABLED")
        return []
    publisher = QueuePublisher(notification_settings)
    return [
        build_membership_expiry_scanner(notification_settings, publisher),
        build_appointment_reminder_scanner(notification_settings, publisher),
    ]


def close_publishers(scanners: List[DueItemScanner]) -> None:
    """Close each distinct publisher once; call after every scanner has stopped."""
    publishers = {id(scanner.publisher): scanner.publisher for scanner in scanners}
    for publisher in publishers.values():
        close = getattr(publisher, "close", None)
        if close is not None:
            close()


def create_app(
    scanners: Optional[List[DueItemScanner]] = None,
    metrics_enabled: Optional[bool] = None,
) -> FastAPI:
    """Scheduler host: runs the due-item scanners for the lifetime of the app."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(f"Starting up {settings.PROJECT_NAME}...")
        if app.state.scanners is None:
            app.state.scanners = build_default_scanners()
        for scanner in app.state.scanners:
            scanner.start()
        yield
        logger.info(f"Shutting down {settings.PROJECT_NAME}...")
        for scanner in app.state.scanners:
            await scanner.stop()
        close_publishers(app.state.scanners)

    app = FastAPI(
        title=settings.PROJECT_NAME,
        version=settings.VERSION,
        lifespan=lifespan,
    )
    app.state.scanners = scanners

    @app.get("/health", tags=["Health Check"])
    async def health_check():
        """Liveness plus per-scanner state"""
        try:
            with get_db_session() as db:
                db.execute(text("SELECT 1"))
            db_status = "healthy"
        except Exception as e:
            logger.error(f"Database health check failed: {e}")
            db_status = "unhealthy"

        scanner_status = {}
        for scanner in app.state.scanners or []:
            report = scanner.last_report
            scanner_status[scanner.name] = {
                "running": scanner.running,
                "state": scanner.state,
                "last_cycle": None if report is None else {
                    "today": report.today.isoformat(),
                    "matched": report.matched,
                    "published": report.published,
                    "skipped": report.skipped,
                    "failed": report.failed,
                },
            }
        return {
            "status": "healthy",
            "service": settings.PROJECT_NAME,
            "version": settings.VERSION,
            "database": db_status,
            "scanners": scanner_status,
        }

    if settings.METRICS_ENABLED if metrics_enabled is None else metrics_enabled:
        Instrumentator().instrument(app).expose(app, endpoint="/metrics")
    return app


app = create_app()


if __name__ == "__main__":
    uvicorn.run(
        "stronghold.main:app",
        host="0.0.0.0",
        port=8000,
        log_level="info",
    )
