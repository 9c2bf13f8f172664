import uuid
from datetime import date, datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field


class ProgressResponse(BaseModel):
    """Enrichment progress, keyed the way the monitor page reads it."""
    processed: int
    total: int
    percentage: int
    success_count: int = Field(alias="successCount")
    pending_count: int = Field(alias="pendingCount")

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_progress(cls, progress) -> "ProgressResponse":
        return cls.model_validate(progress.as_payload())


class SyncTriggerRequest(BaseModel):
    school_id: uuid.UUID
    resume_only: bool = False


class SyncTriggerResponse(BaseModel):
    success: bool
    completed: bool
    message: str
    progress: ProgressResponse


class SyncStatusResponse(BaseModel):
    school_id: uuid.UUID
    state: str                      # not_started | complete | in_progress | stalled
    progress: ProgressResponse
    started_at: datetime | None
    updated_at: datetime | None


class SyncLogResponse(BaseModel):
    id: uuid.UUID
    round_number: int
    status: str
    transactions_fetched: int
    transactions_enriched: int
    categories_found: int
    error_message: str | None
    details: dict | None
    started_at: datetime
    completed_at: datetime | None

    model_config = {"from_attributes": True}


# ─── Conta Azul connection ─────────────────────────

class TokensRequest(BaseModel):
    access_token: str = Field(min_length=1)
    refresh_token: str = Field(min_length=1)
    expires_in: int = Field(gt=0)


class ClientCredentialsRequest(BaseModel):
    client_id: str = Field(min_length=1)
    client_secret: str = Field(min_length=1)


class AuthorizationCallbackRequest(BaseModel):
    code: str = Field(min_length=1)
    redirect_uri: str | None = None


class ConnectionResponse(BaseModel):
    school_id: uuid.UUID
    expires_at: datetime | None
    updated_at: datetime | None

    model_config = {"from_attributes": True}


class ClearResponse(BaseModel):
    deleted: int


# ─── Synced transactions ───────────────────────────

class SyncedTransactionResponse(BaseModel):
    id: uuid.UUID
    external_id: str
    type: str                       # income | expense
    amount: Decimal
    description: str | None
    transaction_date: date
    status: str | None
    entity_name: str | None
    category_name: str | None
    category_color: str | None
    enrichment_status: str          # pending | enriched | no_category
    category_synced_at: datetime | None
    synced_at: datetime

    model_config = ConfigDict(from_attributes=True)
