"""Persistence helpers for ``synced_transactions``: chunked upsert and pending-set queries."""

import logging
import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import and_, delete, func, or_, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import Session

from app.core.config import settings
from app.models.sync import SyncCheckpoint
from app.models.transaction import SyncedTransaction
from app.services.mapper import ENRICHMENT_PENDING, FALLBACK_CATEGORIES

logger = logging.getLogger(__name__)

_CONFLICT_KEYS = ("school_id", "external_id")
_COLUMNS = [attr.key for attr in SyncedTransaction.__mapper__.column_attrs]


def _dialect_insert(db: Session):
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        return pg_insert
    if dialect == "sqlite":
        return sqlite_insert
    raise NotImplementedError(f"Upsert not supported on {dialect}")


def bulk_upsert(db: Session, rows: list[dict[str, Any]], chunk_size: int | None = None) -> int:
    """Insert-or-replace rows keyed by (school_id, external_id), one commit per chunk.

    A failing chunk is rolled back and the error re-raised; chunks already
    committed stay written (every write is idempotent, the next sync redoes it).
    """
    if not rows:
        return 0
    chunk_size = chunk_size or settings.sync_upsert_chunk_size
    insert = _dialect_insert(db)

    written = 0
    for start in range(0, len(rows), chunk_size):
        chunk = [{"id": uuid.uuid4(), **row} for row in rows[start:start + chunk_size]]
        stmt = insert(SyncedTransaction).values(chunk)
        stmt = stmt.on_conflict_do_update(
            index_elements=list(_CONFLICT_KEYS),
            set_={
                key: stmt.excluded[key]
                for key in chunk[0]
                if key not in _CONFLICT_KEYS and key != "id"
            },
        )
        try:
            db.execute(stmt)
            db.commit()
        except Exception:
            db.rollback()
            logger.error(
                "Upsert failed on chunk starting at row %d (%d of %d rows written)",
                start, written, len(rows),
            )
            raise
        written += len(chunk)
    return written


def snapshot(txn: SyncedTransaction) -> dict[str, Any]:
    """Detach an ORM row into a plain dict suitable for ``bulk_upsert``."""
    return {key: getattr(txn, key) for key in _COLUMNS}


def pending_clause():
    return and_(
        SyncedTransaction.category_name.in_(FALLBACK_CATEGORIES),
        SyncedTransaction.enrichment_status == ENRICHMENT_PENDING,
    )


def count_pending(db: Session, school_id: uuid.UUID) -> int:
    return db.execute(
        select(func.count())
        .select_from(SyncedTransaction)
        .where(SyncedTransaction.school_id == school_id, pending_clause())
    ).scalar_one()


def count_transactions(db: Session, school_id: uuid.UUID) -> int:
    return db.execute(
        select(func.count())
        .select_from(SyncedTransaction)
        .where(SyncedTransaction.school_id == school_id)
    ).scalar_one()


def count_by_type(db: Session, school_id: uuid.UUID) -> dict[str, int]:
    rows = db.execute(
        select(SyncedTransaction.type, func.count())
        .where(SyncedTransaction.school_id == school_id)
        .group_by(SyncedTransaction.type)
    ).all()
    return {type_: count for type_, count in rows}


def load_pass_records(
    db: Session, school_id: uuid.UUID, pass_started_at: datetime
) -> list[dict[str, Any]]:
    """The list an enrichment pass walks, in stable order.

    Rows still pending plus rows already resolved during this pass, so a
    checkpoint index keeps pointing at the same record across resumptions.
    """
    result = db.execute(
        select(SyncedTransaction)
        .where(
            SyncedTransaction.school_id == school_id,
            or_(
                pending_clause(),
                SyncedTransaction.category_synced_at >= pass_started_at,
            ),
        )
        .order_by(SyncedTransaction.transaction_date, SyncedTransaction.external_id)
    )
    return [snapshot(txn) for txn in result.scalars().all()]


def clear_school_transactions(db: Session, school_id: uuid.UUID) -> int:
    """Administrative clear: drop every synced row and the checkpoint of one school."""
    deleted = db.execute(
        delete(SyncedTransaction).where(SyncedTransaction.school_id == school_id)
    ).rowcount
    db.execute(delete(SyncCheckpoint).where(SyncCheckpoint.school_id == school_id))
    db.commit()
    logger.info("Cleared %d synced transactions for school %s", deleted, school_id)
    return deleted
