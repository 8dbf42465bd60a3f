"""
Health check endpoint
"""
from fastapi import APIRouter
from datetime import datetime

from kpi_coach import __version__

router = APIRouter()


@router.get("/health")
async def health_check():
    """Health check endpoint"""
    return {
        "status": "healthy",
        "timestamp": datetime.utcnow().isoformat(),
        "version": __version__
    }
