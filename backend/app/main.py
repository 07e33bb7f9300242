"""Main FastAPI application."""

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles
import logging

# Import database and models first so every table is registered
from app.database import Base, init_db, check_database
from app.models import User, Prospect, Project, MiniSite  # noqa: F401

from app.config import settings
from app.api import auth
from app.routers import prospect_routes, project_routes
from app.services.file_storage import FileStorage
from app.services.progress_broker import ProgressBroker
from app.websocket import get_socket_app, get_connection_stats
from app.scheduler import start_scheduler, stop_scheduler

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s"
)
logger = logging.getLogger(__name__)

# Create FastAPI app
app = FastAPI(
    title="Prospect Import API",
    description="Turns developer brochures into bilingual project listings and mini-sites",
    version="1.0.0",
    redirect_slashes=False
)

# Lifetime-scoped services
app.state.progress_broker = ProgressBroker(retention_seconds=settings.PROGRESS_RETENTION_SECONDS)
app.state.file_storage = FileStorage(settings.UPLOAD_DIR, max_download_bytes=settings.max_upload_bytes)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"] if settings.CORS_ORIGINS == "*" else settings.CORS_ORIGINS.split(","),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# ============================================
# ROUTER REGISTRATION
# ============================================

app.include_router(auth.router, prefix="/api/auth", tags=["Authentication"])
app.include_router(prospect_routes.router)
app.include_router(project_routes.router)

# Uploaded files and extracted images
app.mount("/uploads", StaticFiles(directory=settings.UPLOAD_DIR, check_dir=False), name="uploads")

# Mount WebSocket
app.mount("/socket.io", get_socket_app())

# ============================================
# HEALTH & ROOT ENDPOINTS
# ============================================

@app.get("/health")
async def health_check():
    """Health check endpoint."""
    database_ok = await check_database()
    return {
        "status": "healthy" if database_ok else "degraded",
        "database": "connected" if database_ok else "unavailable",
        "version": "1.0.0",
        "environment": settings.ENVIRONMENT,
        "active_runs": len(app.state.progress_broker.running_ids()),
        "websocket": get_connection_stats(),
        "tables": sorted(Base.metadata.tables.keys()),
    }


@app.get("/")
async def root():
    return {
        "message": "Prospect Import API",
        "version": "1.0.0",
        "docs": "/docs",
        "health": "/health"
    }


# ============================================
# STARTUP & SHUTDOWN
# ============================================

@app.on_event("startup")
async def startup_event():
    """Run on application startup."""
    logger.info("Starting Prospect Import API...")
    logger.info(f"Registered {len(Base.metadata.tables)} SQLAlchemy tables: {', '.join(sorted(Base.metadata.tables))}")

    if settings.AUTO_CREATE_TABLES:
        try:
            await init_db()
        except Exception as e:
            logger.error(f"❌ Could not create tables: {e}")

    if not settings.GOOGLE_API_KEY:
        logger.warning("⚠️ GOOGLE_API_KEY is not set; processing will fail until it is configured")

    if settings.ENABLE_SCHEDULER:
        start_scheduler(app.state.progress_broker)

    logger.info("Application started successfully!")


@app.on_event("shutdown")
async def shutdown_event():
    """Run on application shutdown."""
    logger.info("Shutting down Prospect Import API...")
    await app.state.progress_broker.shutdown()
    stop_scheduler()
