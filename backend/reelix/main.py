"""FastAPI application entry point for Reelix."""

import asyncio
import sys
from contextlib import asynccontextmanager

from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from loguru import logger

from reelix import __version__
from reelix.api import manager as ws_manager
from reelix.api import router as api_router
from reelix.api.validation import detect_makemkv
from reelix.api.validation import router as validation_router
from reelix.config import settings
from reelix.core.logging import setup_logging
from reelix.database import init_db
from reelix.services import runtime
from reelix.services.config_service import ensure_paths_exist, get_config, update_config


async def _autodetect_makemkv() -> None:
    """Fill in or correct the stored makemkvcon path."""
    config = await get_config()
    makemkv_result = await asyncio.to_thread(detect_makemkv)

    if not makemkv_result.found:
        if config.makemkv_path:
            logger.warning(f"Configured MakeMKV path not working: {makemkv_result.error}")
        else:
            logger.warning(f"MakeMKV not found: {makemkv_result.error}")
            logger.warning("Please install MakeMKV or configure path in Settings")
        return

    if makemkv_result.path != config.makemkv_path:
        await update_config(makemkv_path=makemkv_result.path)
        logger.info(f"MakeMKV path set: {config.makemkv_path!r} -> {makemkv_result.path}")
    logger.info(f"MakeMKV validated: {makemkv_result.version}")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage application lifespan - startup and shutdown."""
    # Startup
    setup_logging()
    logger.info("Starting Reelix Backend...")

    await init_db()
    logger.info("Database initialized")

    await _autodetect_makemkv()
    await ensure_paths_exist(await get_config())
    await runtime.upload_queue.resume_pending()

    yield

    # Shutdown
    logger.info("Shutting down Reelix Backend...")
    await runtime.rip_scheduler.shutdown()
    await runtime.upload_queue.shutdown()
    logger.info("Shutdown complete")


# Create FastAPI application
app = FastAPI(
    title="Reelix API",
    description="Disc ripping orchestration for Plex libraries",
    version=__version__,
    lifespan=lifespan,
)

# Add CORS middleware for frontend communication
app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:5173", "http://127.0.0.1:5173"],  # Vite dev server
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include API routes
app.include_router(api_router)
app.include_router(validation_router, prefix="/api", tags=["validation"])


@app.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket):
    """WebSocket endpoint streaming job, disk and reorder events."""
    await ws_manager.connect(websocket)
    try:
        while True:
            # Keep connection alive; clients only listen
            data = await websocket.receive_text()
            logger.debug(f"Received WebSocket message: {data}")
    except WebSocketDisconnect:
        await ws_manager.disconnect(websocket)
    except Exception as e:
        logger.error(f"WebSocket error: {e}")
        await ws_manager.disconnect(websocket)


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy"}


@app.get("/")
async def root():
    """Root endpoint - API status."""
    return {
        "name": "Reelix",
        "version": __version__,
        "status": "running",
    }


def run() -> None:
    import uvicorn

    try:
        uvicorn.run(app, host=settings.host, port=settings.port)
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    run()
