import uuid

from fastapi import APIRouter, Depends, HTTPException, Request, status
from slowapi import Limiter
from slowapi.util import get_remote_address
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.database import get_db
from app.core.deps import get_current_user, require_admin
from app.core.redis import clear_pause, request_pause
from app.models.school import School
from app.models.user import User
from app.schemas.sync import (
    ProgressResponse,
    SyncLogResponse,
    SyncStatusResponse,
    SyncTriggerRequest,
    SyncTriggerResponse,
)
from app.services.checkpoints import describe_state, get_checkpoint, progress_for, recent_logs
from app.services.sync import run_sync_round

limiter = Limiter(key_func=get_remote_address, storage_uri=settings.rate_limit_storage_uri)

router = APIRouter(prefix="/sync", tags=["sync"])


async def _get_school(db: AsyncSession, school_id: uuid.UUID) -> School:
    school = await db.get(School, school_id)
    if school is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="School not found")
    return school


@router.post("", response_model=SyncTriggerResponse, status_code=202)
@limiter.limit("10/minute")
async def trigger_sync(
    request: Request,
    payload: SyncTriggerRequest,
    _admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """
    Start a round in the background and return the current progress at once.
    The caller polls /sync/{school_id}/status for the rest.
    """
    await _get_school(db, payload.school_id)
    progress = await db.run_sync(progress_for, payload.school_id)

    if payload.resume_only:
        checkpoint = await db.run_sync(get_checkpoint, payload.school_id)
        if checkpoint is None and progress.pending_count == 0:
            return SyncTriggerResponse(
                success=True,
                completed=True,
                message="Sync already complete",
                progress=ProgressResponse.from_progress(progress),
            )

    await clear_pause(str(payload.school_id))
    run_sync_round.delay(str(payload.school_id), 1, payload.resume_only)
    return SyncTriggerResponse(
        success=True,
        completed=False,
        message="Enrichment resumed in background" if payload.resume_only else "Sync started in background",
        progress=ProgressResponse.from_progress(progress),
    )


@router.post("/{school_id}/pause", status_code=202)
async def pause_sync(
    school_id: uuid.UUID,
    _admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Stop the running round at the next record and keep continuations from starting."""
    await _get_school(db, school_id)
    await request_pause(str(school_id))
    return {"school_id": str(school_id), "paused": True}


@router.get("/{school_id}/status", response_model=SyncStatusResponse)
async def sync_status(
    school_id: uuid.UUID,
    _user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    await _get_school(db, school_id)
    snapshot = await db.run_sync(describe_state, school_id)
    return SyncStatusResponse(
        school_id=school_id,
        state=snapshot.state.value,
        progress=ProgressResponse.from_progress(snapshot.progress),
        started_at=snapshot.started_at,
        updated_at=snapshot.updated_at,
    )


@router.get("/{school_id}/logs", response_model=list[SyncLogResponse])
async def sync_logs(
    school_id: uuid.UUID,
    limit: int = 20,
    _user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    await _get_school(db, school_id)
    return await db.run_sync(recent_logs, school_id, min(max(limit, 1), 100))
