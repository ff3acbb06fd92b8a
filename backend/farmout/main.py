"""Farm-out dispatch API"""
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager

from farmout.core.config import get_settings
from farmout.core.logging import configure_logging, logger
from farmout.routers import drivers, farmout, settings as settings_router
from farmout.services.engine import farmout_engine


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    # Startup
    settings = get_settings()
    configure_logging(settings.log_level, settings.log_json)
    logger.info(
        "Farm-out dispatch API starting",
        version="0.1.0",
        dispatch_timezone=settings.dispatch_timezone,
        sms_gateway=settings.sms_enabled(),
        remote_ranking=settings.remote_ranking_enabled(),
    )
    farmout_engine.start()
    yield
    # Shutdown
    await farmout_engine.drain()
    farmout_engine.close()
    logger.info("Farm-out dispatch API shutting down")


app = FastAPI(
    title="Farm-out Dispatch API",
    description="Automatic farm-out dispatch: driver ranking, timed offers and escalation",
    version="0.1.0",
    lifespan=lifespan
)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(settings_router.router)
app.include_router(farmout.router)
app.include_router(drivers.router)


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "name": "Farm-out Dispatch API",
        "version": "0.1.0",
        "description": "Automatic farm-out dispatch engine",
        "endpoints": {
            "farmout": "/farmout",
            "settings": "/farmout/settings",
            "drivers": "/drivers",
        }
    }


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy"}
