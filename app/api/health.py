"""
Health check and status endpoints
"""
from fastapi import APIRouter
from datetime import datetime
from app.config import get_settings
from app import __version__

settings = get_settings()

router = APIRouter()


@router.get("/health")
async def health_check():
    """Health check endpoint"""
    return {
        "status": "healthy",
        "timestamp": datetime.utcnow().isoformat(),
        "version": __version__
    }


@router.get("/status")
async def get_status():
    """Get system status"""
    from app.scheduler import get_scheduler_status

    return {
        "app_name": settings.app_name,
        "version": __version__,
        "environment": settings.environment,
        "shop_timezone": settings.shop_timezone,
        "features": {
            "scheduler": settings.enable_scheduler,
            "queue": settings.queue_enabled,
        },
        "scheduler": get_scheduler_status(),
        "timestamp": datetime.utcnow().isoformat()
    }
