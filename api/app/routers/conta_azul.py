import logging
import uuid

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.concurrency import run_in_threadpool

from app.core.config import settings
from app.core.database import get_db
from app.core.deps import require_admin
from app.models.school import School
from app.models.user import User
from app.schemas.sync import (
    AuthorizationCallbackRequest,
    ClearResponse,
    ClientCredentialsRequest,
    ConnectionResponse,
    TokensRequest,
)
from app.services.contaazul import AuthError, ContaAzulClient, FetchError
from app.services.tokens import (
    NotConnectedError,
    get_client_credentials,
    save_client_credentials,
    save_tokens,
)
from app.services.transactions import clear_school_transactions

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/conta-azul", tags=["conta-azul"])


async def _get_school(db: AsyncSession, school_id: uuid.UUID) -> School:
    school = await db.get(School, school_id)
    if school is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="School not found")
    return school


@router.post("/{school_id}/tokens", response_model=ConnectionResponse)
async def store_tokens(
    school_id: uuid.UUID,
    payload: TokensRequest,
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Store a token pair obtained elsewhere (e.g. by the front-end OAuth popup)."""
    await _get_school(db, school_id)
    return await db.run_sync(
        save_tokens, school_id, payload.access_token, payload.refresh_token, payload.expires_in, admin.id
    )


@router.post("/{school_id}/credentials", status_code=204)
async def store_client_credentials(
    school_id: uuid.UUID,
    payload: ClientCredentialsRequest,
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    await _get_school(db, school_id)
    await db.run_sync(save_client_credentials, school_id, payload.client_id, payload.client_secret, admin.id)


@router.post("/{school_id}/callback", response_model=ConnectionResponse)
async def authorization_callback(
    school_id: uuid.UUID,
    payload: AuthorizationCallbackRequest,
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Finish the OAuth authorization-code flow and store the resulting pair."""
    await _get_school(db, school_id)
    try:
        creds = await db.run_sync(get_client_credentials, school_id)
    except NotConnectedError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))

    redirect_uri = payload.redirect_uri or settings.conta_azul_redirect_uri
    try:
        pair = await run_in_threadpool(
            ContaAzulClient().exchange_code,
            payload.code, redirect_uri, creds.client_id, creds.client_secret,
        )
    except AuthError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    except FetchError as exc:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc))

    logger.info("School %s connected to Conta Azul by %s", school_id, admin.email)
    return await db.run_sync(
        save_tokens, school_id, pair.access_token, pair.refresh_token, pair.expires_in, admin.id
    )


@router.delete("/{school_id}/transactions", response_model=ClearResponse)
async def clear_synced_data(
    school_id: uuid.UUID,
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Drop every synced row and the checkpoint; the next sync starts from scratch."""
    await _get_school(db, school_id)
    deleted = await db.run_sync(clear_school_transactions, school_id)
    logger.info("Synced data of school %s cleared by %s", school_id, admin.email)
    return ClearResponse(deleted=deleted)
