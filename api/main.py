"""
FastAPI application initialization
"""

from fastapi import FastAPI
from api.routes import health, countries, runs
from core.config import settings
from core.logging import setup_logging
import logging
from api.middleware import RequestContextMiddleware
from boundaries.scheduler import BoundaryScheduler

# Configure logging
setup_logging()

logger = logging.getLogger(__name__)

# Create FastAPI app
app = FastAPI(
    title="Boundary Sync API",
    description="Status of the OpenStreetMap country and maritime boundary tables",
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc"
)

app.add_middleware(RequestContextMiddleware)

# Initialize Scheduler
scheduler = BoundaryScheduler()


# Include routers
app.include_router(health.router)
app.include_router(countries.router)
app.include_router(runs.router)


@app.on_event("startup")
async def startup_event():
    """Application startup event"""
    logger.info("Starting Boundary Sync API")
    logger.info(f"Environment: {settings.ENVIRONMENT}")
    logger.info(f"Database: {settings.DATABASE_URL.split('@')[1] if '@' in settings.DATABASE_URL else 'configured'}")

    if settings.SCHEDULER_ENABLED:
        scheduler.start()


@app.on_event("shutdown")
async def shutdown_event():
    """Application shutdown event"""
    logger.info("Shutting down Boundary Sync API")
    if scheduler.scheduler.running:
        scheduler.stop()


@app.get("/")
async def root():
    """Root endpoint"""
    return {
        "message": "Boundary Sync API",
        "version": "1.0.0",
        "docs": "/docs",
        "health": "/health",
        "endpoints": {
            "countries": "/countries",
            "runs": "/runs"
        }
    }
