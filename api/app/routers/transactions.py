import uuid

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database import get_db
from app.core.deps import get_current_user
from app.models.transaction import SyncedTransaction
from app.models.user import User
from app.schemas.sync import SyncedTransactionResponse
from app.services.transactions import pending_clause

router = APIRouter(prefix="/transactions", tags=["transactions"])


@router.get("/", response_model=list[SyncedTransactionResponse])
async def list_transactions(
    school_id: uuid.UUID,
    type: str | None = Query(None, pattern="^(income|expense)$"),
    pending: bool | None = None,
    limit: int = Query(100, ge=1, le=1000),
    offset: int = Query(0, ge=0),
    _user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Read-only listing of synced rows, newest due date first."""
    query = select(SyncedTransaction).where(SyncedTransaction.school_id == school_id)
    if type:
        query = query.where(SyncedTransaction.type == type)
    if pending is True:
        query = query.where(pending_clause())
    elif pending is False:
        query = query.where(~pending_clause())

    result = await db.execute(
        query.order_by(SyncedTransaction.transaction_date.desc(), SyncedTransaction.external_id)
        .offset(offset)
        .limit(limit)
    )
    return result.scalars().all()


@router.get("/{transaction_id}", response_model=SyncedTransactionResponse)
async def get_transaction(
    transaction_id: uuid.UUID,
    _user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    txn = await db.get(SyncedTransaction, transaction_id)
    if txn is None:
        raise HTTPException(status_code=404, detail="Transaction not found")
    return txn
