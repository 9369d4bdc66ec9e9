"""
Admin endpoints - backjob arbitration and warranty/conversation maintenance.
All routes require an admin token.
"""
import logging
import math
import uuid
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from fixmo.api.auth import get_current_admin
from fixmo.api.backjobs import backjob_response
from fixmo.database import get_db
from fixmo.schemas.api import (
    AdminBackjobUpdateRequest,
    AdminNotesRequest,
    BackjobListResponse,
    BackjobOut,
    BackjobResponse,
)
from fixmo.services import backjobs as backjob_service
from fixmo.services.actors import Actor
from fixmo.services.conversations import conversation_statistics, reconcile_conversations
from fixmo.services.warranty_sweep import sweep_expired_warranties
from fixmo.workers.health import WORKER_NAMES, worker_heartbeats

logger = logging.getLogger(__name__)
router = APIRouter(tags=["admin"])


@router.get("/api/v1/admin/backjobs", response_model=BackjobListResponse)
async def list_backjobs(
    status: Optional[str] = None,
    page: int = Query(default=1, ge=1),
    per_page: int = Query(default=10, ge=1, le=100),
    db: AsyncSession = Depends(get_db),
    admin: Actor = Depends(get_current_admin),
):
    backjobs, total = await backjob_service.list_backjobs(db, admin, status=status, page=page, per_page=per_page)
    return BackjobListResponse(
        data=[BackjobOut.model_validate(b) for b in backjobs],
        total=total,
        page=page,
        pages=math.ceil(total / per_page) if total else 0,
    )


@router.patch("/api/v1/admin/backjobs/{backjob_id}", response_model=BackjobResponse)
async def update_backjob(
    backjob_id: uuid.UUID,
    payload: AdminBackjobUpdateRequest,
    db: AsyncSession = Depends(get_db),
    admin: Actor = Depends(get_current_admin),
):
    """approve | cancel-by-admin (completes the appointment) | cancel-by-user (resumes warranty)."""
    backjob, appointment = await backjob_service.admin_update_backjob(
        db, backjob_id, payload.action, admin, admin_notes=payload.admin_notes,
    )
    return backjob_response(backjob, appointment, f"Backjob {payload.action} applied")


@router.post("/api/v1/admin/backjobs/{backjob_id}/approve-dispute", response_model=BackjobResponse)
async def approve_dispute(
    backjob_id: uuid.UUID,
    payload: AdminNotesRequest,
    db: AsyncSession = Depends(get_db),
    admin: Actor = Depends(get_current_admin),
):
    backjob, appointment = await backjob_service.admin_approve_dispute(
        db, backjob_id, admin, admin_notes=payload.admin_notes,
    )
    return backjob_response(backjob, appointment, "Dispute approved, backjob cancelled")


@router.post("/api/v1/admin/backjobs/{backjob_id}/reject-dispute", response_model=BackjobResponse)
async def reject_dispute(
    backjob_id: uuid.UUID,
    payload: AdminNotesRequest,
    db: AsyncSession = Depends(get_db),
    admin: Actor = Depends(get_current_admin),
):
    backjob, appointment = await backjob_service.admin_reject_dispute(
        db, backjob_id, admin, admin_notes=payload.admin_notes,
    )
    return backjob_response(backjob, appointment, "Dispute rejected, backjob reinstated")


@router.get("/api/v1/admin/warranty/status")
async def warranty_status(
    db: AsyncSession = Depends(get_db),
    admin: Actor = Depends(get_current_admin),
):
    """Sweep worker heartbeats plus conversation counts."""
    return {
        "success": True,
        "data": {
            "jobs": await _worker_heartbeats(),
            "statistics": await conversation_statistics(db),
            "timestamp": datetime.now(timezone.utc).isoformat(),
        },
    }


@router.post("/api/v1/admin/warranty/cleanup")
async def run_warranty_cleanup(
    db: AsyncSession = Depends(get_db),
    admin: Actor = Depends(get_current_admin),
):
    """Run the warranty sweep and the conversation reconcile now."""
    logger.info("Manual warranty cleanup triggered by admin %s", str(admin.user_id)[:8])
    sweep = await sweep_expired_warranties(db)
    reconcile = await reconcile_conversations(db)
    await db.commit()
    return {
        "success": True,
        "message": "Warranty cleanup completed",
        "data": {"warranty_sweep": sweep, "conversations": reconcile},
    }


async def _worker_heartbeats() -> dict:
    """Last heartbeat per worker, unhealthy and None when Redis cannot be read."""
    try:
        return await worker_heartbeats()
    except Exception as e:
        logger.warning("Worker heartbeat lookup failed: %s", str(e))
        return {name: {"healthy": False, "last_heartbeat": None} for name in WORKER_NAMES}
