"""Checkpoint store and sync-log bookkeeping.

The checkpoint row is the only durable state the enrichment loop resumes
from; the sync log is observability only and never read for control flow.
"""

import enum
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any

from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from app.core.config import settings
from app.models.sync import SyncCheckpoint, SyncLog
from app.services.tokens import as_utc
from app.services.transactions import count_pending, count_transactions

logger = logging.getLogger(__name__)


# ─── Checkpoint ───────────────────────────────────────────────────────────────

def get_checkpoint(db: Session, school_id: uuid.UUID) -> SyncCheckpoint | None:
    return db.execute(
        select(SyncCheckpoint).where(SyncCheckpoint.school_id == school_id)
    ).scalar_one_or_none()


def start_pass(
    db: Session, school_id: uuid.UUID, total: int, now: datetime | None = None
) -> SyncCheckpoint:
    """Create the checkpoint, or rewind an existing one to index 0 for a new pass."""
    now = now or datetime.now(timezone.utc)
    checkpoint = get_checkpoint(db, school_id)
    if checkpoint is None:
        checkpoint = SyncCheckpoint(school_id=school_id, success_count=0)
        db.add(checkpoint)
    checkpoint.last_processed_index = 0
    checkpoint.total_transactions = total
    checkpoint.success_count = checkpoint.success_count or 0
    checkpoint.started_at = now
    checkpoint.updated_at = now
    db.commit()
    return checkpoint


def save_progress(
    db: Session,
    checkpoint: SyncCheckpoint,
    index: int,
    success_count: int,
    now: datetime | None = None,
) -> None:
    checkpoint.last_processed_index = index
    checkpoint.success_count = success_count
    checkpoint.updated_at = now or datetime.now(timezone.utc)
    db.commit()


def delete_checkpoint(db: Session, school_id: uuid.UUID) -> None:
    db.execute(delete(SyncCheckpoint).where(SyncCheckpoint.school_id == school_id))
    db.commit()


# ─── State for the monitor page ───────────────────────────────────────────────

class SyncState(str, enum.Enum):
    NOT_STARTED = "not_started"
    COMPLETE = "complete"
    IN_PROGRESS = "in_progress"
    STALLED = "stalled"


@dataclass
class Progress:
    processed: int
    total: int
    success_count: int
    pending_count: int

    @property
    def percentage(self) -> int:
        if not self.total:
            return 100 if not self.pending_count else 0
        return round(self.processed / self.total * 100)

    def as_payload(self) -> dict[str, int]:
        return {
            "processed": self.processed,
            "total": self.total,
            "percentage": self.percentage,
            "successCount": self.success_count,
            "pendingCount": self.pending_count,
        }


@dataclass
class StateSnapshot:
    state: SyncState
    progress: Progress
    updated_at: datetime | None
    started_at: datetime | None


def progress_for(db: Session, school_id: uuid.UUID) -> Progress:
    checkpoint = get_checkpoint(db, school_id)
    pending = count_pending(db, school_id)
    if checkpoint is None:
        return Progress(processed=0, total=0, success_count=0, pending_count=pending)
    return Progress(
        processed=checkpoint.last_processed_index,
        total=checkpoint.total_transactions,
        success_count=checkpoint.success_count,
        pending_count=pending,
    )


def describe_state(
    db: Session,
    school_id: uuid.UUID,
    now: datetime | None = None,
    stall_after_seconds: int | None = None,
) -> StateSnapshot:
    """Classify the school's pipeline the way the monitor page shows it.

    A checkpoint that has not moved for ``stall_after_seconds`` is reported as
    stalled: no round is driving it any more.
    """
    now = now or datetime.now(timezone.utc)
    if stall_after_seconds is None:
        stall_after_seconds = settings.sync_stall_after_seconds

    checkpoint = get_checkpoint(db, school_id)
    progress = progress_for(db, school_id)
    if checkpoint is None:
        state = SyncState.COMPLETE if count_transactions(db, school_id) else SyncState.NOT_STARTED
        return StateSnapshot(state, progress, None, None)

    updated_at = as_utc(checkpoint.updated_at)
    idle = now - updated_at > timedelta(seconds=stall_after_seconds)
    return StateSnapshot(
        SyncState.STALLED if idle else SyncState.IN_PROGRESS,
        progress,
        updated_at,
        as_utc(checkpoint.started_at),
    )


# ─── Sync log ─────────────────────────────────────────────────────────────────

def open_round_log(
    db: Session, school_id: uuid.UUID, round_number: int, now: datetime | None = None
) -> SyncLog:
    log = SyncLog(
        school_id=school_id,
        round_number=round_number,
        status="running",
        transactions_fetched=0,
        transactions_enriched=0,
        categories_found=0,
        started_at=now or datetime.now(timezone.utc),
    )
    db.add(log)
    db.commit()
    return log


def close_round_log(
    db: Session,
    log: SyncLog,
    status: str,
    *,
    fetched: int | None = None,
    enriched: int | None = None,
    categories: int | None = None,
    error: str | None = None,
    details: dict[str, Any] | None = None,
    now: datetime | None = None,
) -> None:
    log.status = status
    if fetched is not None:
        log.transactions_fetched = fetched
    if enriched is not None:
        log.transactions_enriched = enriched
    if categories is not None:
        log.categories_found = categories
    log.error_message = error
    log.details = details
    log.completed_at = now or datetime.now(timezone.utc)
    db.commit()


def recent_logs(db: Session, school_id: uuid.UUID, limit: int = 20) -> list[SyncLog]:
    return list(
        db.execute(
            select(SyncLog)
            .where(SyncLog.school_id == school_id)
            .order_by(SyncLog.started_at.desc())
            .limit(limit)
        ).scalars().all()
    )
