"""Token store for the Conta Azul integration.

One ``ContaAzulConfig`` row per school holds the encrypted access/refresh pair.
``ensure_access_token`` refreshes proactively inside the expiry buffer and
commits the new pair before handing the access token to anyone.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.security import decrypt_value, encrypt_value
from app.models.conta_azul import ContaAzulConfig
from app.models.school import SchoolOAuthCredentials
from app.services.contaazul import ContaAzulClient

logger = logging.getLogger(__name__)


class NotConnectedError(Exception):
    """The school has no stored tokens or no client credentials."""


@dataclass(frozen=True)
class ClientCredentials:
    client_id: str
    client_secret: str


def as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes; everything we store is UTC
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def get_config(db: Session, school_id: uuid.UUID) -> ContaAzulConfig | None:
    return db.execute(
        select(ContaAzulConfig).where(ContaAzulConfig.school_id == school_id)
    ).scalar_one_or_none()


def save_tokens(
    db: Session,
    school_id: uuid.UUID,
    access_token: str,
    refresh_token: str,
    expires_in: int,
    updated_by: uuid.UUID | None = None,
    now: datetime | None = None,
) -> ContaAzulConfig:
    """Insert or update the school's token pair and commit."""
    now = now or datetime.now(timezone.utc)
    config = get_config(db, school_id)
    if config is None:
        config = ContaAzulConfig(school_id=school_id)
        db.add(config)

    config.encrypted_access_token = encrypt_value(access_token)
    config.encrypted_refresh_token = encrypt_value(refresh_token)
    config.expires_at = now + timedelta(seconds=expires_in)
    config.updated_by = updated_by
    config.updated_at = now
    db.commit()
    return config


def save_client_credentials(
    db: Session,
    school_id: uuid.UUID,
    client_id: str,
    client_secret: str,
    updated_by: uuid.UUID | None = None,
) -> SchoolOAuthCredentials:
    creds = db.execute(
        select(SchoolOAuthCredentials).where(SchoolOAuthCredentials.school_id == school_id)
    ).scalar_one_or_none()
    if creds is None:
        creds = SchoolOAuthCredentials(school_id=school_id)
        db.add(creds)
    creds.client_id = client_id
    creds.encrypted_client_secret = encrypt_value(client_secret)
    creds.updated_by = updated_by
    db.commit()
    return creds


def get_client_credentials(db: Session, school_id: uuid.UUID) -> ClientCredentials:
    """School-specific app credentials, else the deployment-wide fallback."""
    creds = db.execute(
        select(SchoolOAuthCredentials).where(SchoolOAuthCredentials.school_id == school_id)
    ).scalar_one_or_none()
    if creds is not None:
        return ClientCredentials(creds.client_id, decrypt_value(creds.encrypted_client_secret))
    if settings.conta_azul_client_id and settings.conta_azul_client_secret:
        return ClientCredentials(settings.conta_azul_client_id, settings.conta_azul_client_secret)
    raise NotConnectedError("Conta Azul OAuth credentials not found for this school")


def needs_refresh(config: ContaAzulConfig, now: datetime, buffer_seconds: int | None = None) -> bool:
    if buffer_seconds is None:
        buffer_seconds = settings.token_refresh_buffer_seconds
    return as_utc(config.expires_at) <= now + timedelta(seconds=buffer_seconds)


def ensure_access_token(
    db: Session,
    school_id: uuid.UUID,
    client: ContaAzulClient,
    now: datetime | None = None,
) -> str:
    """Return a usable access token, refreshing and persisting first when near expiry.

    Raises ``NotConnectedError`` when nothing is stored and lets ``AuthError``
    from the refresh call propagate (the school must reconnect).
    """
    now = now or datetime.now(timezone.utc)
    config = get_config(db, school_id)
    if config is None or not config.encrypted_access_token or not config.encrypted_refresh_token:
        raise NotConnectedError("Tokens not found. Please reconnect to Conta Azul.")

    if not needs_refresh(config, now):
        return decrypt_value(config.encrypted_access_token)

    logger.info("Access token for school %s expires at %s, refreshing", school_id, config.expires_at)
    creds = get_client_credentials(db, school_id)
    pair = client.refresh_access_token(
        decrypt_value(config.encrypted_refresh_token), creds.client_id, creds.client_secret
    )
    save_tokens(
        db, school_id, pair.access_token, pair.refresh_token, pair.expires_in,
        updated_by=config.updated_by, now=now,
    )
    logger.info("Tokens refreshed and saved for school %s", school_id)
    return pair.access_token
