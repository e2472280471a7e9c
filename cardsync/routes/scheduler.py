"""
Scheduler management endpoints
"""

import logging
from typing import Any, Dict

from fastapi import APIRouter, Depends, HTTPException

from cardsync.core.security import get_current_username
from cardsync import scheduler as sync_scheduler

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/scheduler", tags=["scheduler"])


@router.get("/status", response_model=Dict[str, Any])
async def scheduler_status():
    """Get current scheduler status and configured jobs"""
    return await sync_scheduler.get_scheduler_status()


@router.post("/pause")
async def pause_scheduler(current_user: str = Depends(get_current_username)):
    """Pause all scheduled jobs"""
    active = sync_scheduler.scheduler
    if active and active.running:
        active.pause()
        logger.info(f"Scheduler paused by {current_user}")
        return {"status": "success", "message": "Scheduler paused"}
    return {"status": "warning", "message": "Scheduler not running"}


@router.post("/resume")
async def resume_scheduler(current_user: str = Depends(get_current_username)):
    """Resume all scheduled jobs"""
    active = sync_scheduler.scheduler
    if active is None:
        raise HTTPException(status_code=409, detail="Scheduler not initialized")
    active.resume()
    logger.info(f"Scheduler resumed by {current_user}")
    return {"status": "success", "message": "Scheduler resumed"}
