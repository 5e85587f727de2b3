from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager
import logging

from pos_sync.routers import sync
from pos_sync.core.config import settings

# Configure logging
logging.basicConfig(level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO))
logger = logging.getLogger(__name__)

@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Starting sync engine...")

    # Build the coordinator (creates the local store tables on first run)
    from pos_sync.services.coordinator import SyncCoordinator
    coordinator = SyncCoordinator.from_settings(settings)
    await coordinator.initialize()
    app.state.coordinator = coordinator
    logger.info(f"✓ Local store ready at {settings.LOCAL_DATABASE_URL}")

    # Initialize and start background tasks
    from pos_sync.core.background_tasks import BackgroundTaskManager
    background_task_manager = BackgroundTaskManager(coordinator, settings)
    await background_task_manager.start()
    app.state.background_task_manager = background_task_manager
    logger.info("✓ Background tasks started")

    logger.info("Application startup complete")

    yield

    # Cleanup on shutdown
    logger.info("Application shutdown initiated...")

    await background_task_manager.stop()
    logger.info("✓ Background tasks stopped")

    await coordinator.close()
    logger.info("✓ Sync coordinator closed")

    logger.info("Application shutdown complete")

app = FastAPI(
    title="POS Offline Sync Engine",
    description="Local companion API for the offline-first POS sync engine",
    version="1.0.0",
    lifespan=lifespan
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(sync.router)           # Sync: /sync/* (queue, conflicts, status)

@app.get("/")
def read_root():
    return {
        "message": "POS Offline Sync Engine",
        "version": "1.0.0",
        "modules": {
            "sync": "/sync/* (status, queue, conflicts, connectivity)"
        },
        "docs": "/docs",
        "redoc": "/redoc"
    }

@app.get("/health")
def health_check():
    return {"status": "healthy"}
