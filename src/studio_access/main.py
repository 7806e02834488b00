"""Main application entry point."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from studio_access.api.routes import router as api_router, set_manager
from studio_access.config import settings
from studio_access.core.manager import StudioManager
from studio_access.db.database import dispose_db, init_db

# Configure logging
logging.basicConfig(
    level=logging.DEBUG if settings.debug else logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

# Global manager instance
manager: StudioManager | None = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    global manager

    logger.info("Starting studio access application...")

    # Initialize database
    await init_db()

    # Create and initialize manager
    manager = StudioManager(settings)
    await manager.initialize()
    set_manager(manager)

    # Start the manager
    await manager.start()

    logger.info("Application started successfully")

    yield

    # Shutdown
    logger.info("Shutting down studio access application...")
    if manager:
        await manager.stop()
    set_manager(None)
    await dispose_db()
    logger.info("Application shutdown complete")


app = FastAPI(
    title="Studio Access",
    description="Room bookings with smart-lock door passcodes",
    version="0.1.0",
    lifespan=lifespan,
)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Mount API routes
app.include_router(api_router, prefix="/api")


def main():
    """Run the application."""
    import uvicorn

    uvicorn.run(
        "studio_access.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
    )


if __name__ == "__main__":
    main()
