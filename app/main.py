"""
Brand Metrics Platform
Main FastAPI application
"""
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import PlainTextResponse
from starlette.middleware.gzip import GZipMiddleware
from contextlib import asynccontextmanager

from app.config import get_settings
from app.utils.logger import log
from app import __version__

# Import routers
from app.api import health, metrics, sync
from app.middleware.security_middleware import SecurityMiddleware

settings = get_settings()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events"""
    # Startup
    log.info(f"Starting {settings.app_name} v{__version__}")
    log.info(f"Environment: {settings.environment}")

    # Initialize database
    try:
        from app.models.base import init_db
        init_db()
        log.info("Database initialized")
    except Exception as e:
        log.error(f"Database initialization error: {str(e)}")

    # Start the scheduler that drains the sync queues
    scheduler_started = False
    if settings.enable_scheduler:
        try:
            from app.scheduler import start_scheduler
            start_scheduler()
            scheduler_started = True
        except Exception as e:
            log.error(f"Scheduler startup error: {str(e)}")

    yield

    # Shutdown
    if scheduler_started:
        from app.scheduler import stop_scheduler
        stop_scheduler()
    log.info("Shutting down application")


# Create FastAPI app
app = FastAPI(
    title=settings.app_name,
    version=__version__,
    description="""
    Multi-tenant Shopify and Meta Ads analytics backend

    - Dashboard metrics bucketed by store-local hour or day
    - Queued historical backfills with retries and stall recovery
    - Rate-limited Meta Marketing API access per ad account
    """,
    lifespan=lifespan
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Configure appropriately for production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Security middleware (Basic Auth gate, cron secret, X-Robots-Tag)
app.add_middleware(SecurityMiddleware)

# Gzip compression for the larger metrics payloads
app.add_middleware(GZipMiddleware, minimum_size=500)

# Include routers
app.include_router(health.router, tags=["health"])
app.include_router(metrics.router)
app.include_router(sync.router)


@app.get("/robots.txt", response_class=PlainTextResponse)
async def robots_txt():
    """Block all crawlers"""
    return "User-agent: *\nDisallow: /\n"


@app.get("/")
async def root():
    """Root endpoint with API information"""
    return {
        "app": settings.app_name,
        "version": __version__,
        "docs": "/docs",
        "health": "/health",
        "status": "/status",
        "endpoints": {
            "brand_metrics": "GET /brands/{brand_id}/metrics",
            "meta_historical_sync": "POST /sync/meta/{connection_id}/historical",
            "shopify_historical_sync": "POST /sync/shopify/{connection_id}/historical",
            "sync_status": "GET /sync/status/{brand_id}",
            "process_queue": "POST /sync/process-queue",
            "queue_daily_syncs": "POST /sync/daily",
            "queue_status": "GET /sync/queue",
            "recover_stalled": "POST /sync/queue/recover-stalled",
            "cleanup_brand_jobs": "DELETE /sync/jobs/{brand_id}",
        }
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "app.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.debug,
    )
