"""LoadCover - load-coverage automation API"""
from contextlib import asynccontextmanager

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from loadcover.core.config import get_settings
from loadcover.core.logging import configure_logging, logger
from loadcover.routers import coverage
from loadcover.services.pipeline import get_pipeline


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    # Startup
    settings = get_settings()
    configure_logging(settings.log_level)
    scheduler = None
    if settings.scheduler_enabled:
        pipeline = get_pipeline()
        scheduler = AsyncIOScheduler(timezone="UTC")
        scheduler.add_job(
            pipeline.runner.tick,
            "interval",
            seconds=settings.scheduler_tick_seconds,
            id="coverage-job-tick",
            max_instances=1,
            coalesce=True,
        )
        scheduler.start()
    logger.info(
        "LoadCover API starting",
        version="0.1.0",
        scheduler_enabled=settings.scheduler_enabled,
        tick_seconds=settings.scheduler_tick_seconds,
    )
    yield
    # Shutdown
    if scheduler is not None:
        scheduler.shutdown(wait=False)
    logger.info("LoadCover API shutting down")


app = FastAPI(
    title="LoadCover API",
    description="Carrier matching, risk flagging, check-calls and fall-off recovery for freight loads",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(coverage.router)


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "name": "LoadCover API",
        "version": "0.1.0",
        "endpoints": {"coverage": "/coverage", "health": "/health"},
    }


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy"}
