import uuid
from datetime import date, datetime
from decimal import Decimal

from sqlalchemy import (
    JSON, Date, DateTime, ForeignKey, Numeric, String, UniqueConstraint, Uuid, func,
)
from sqlalchemy.orm import Mapped, mapped_column

from app.core.database import Base


class SyncedTransaction(Base):
    """Local copy of one Conta Azul receivable or payable installment."""
    __tablename__ = "synced_transactions"
    __table_args__ = (
        UniqueConstraint("school_id", "external_id", name="uq_synced_transactions_school_external"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    school_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("schools.id", ondelete="CASCADE"), index=True
    )
    external_id: Mapped[str] = mapped_column(String(100))   # receivable_<id> | payable_<id>
    type: Mapped[str] = mapped_column(String(10))           # income | expense
    amount: Mapped[Decimal] = mapped_column(Numeric(14, 2))
    description: Mapped[str] = mapped_column(String(500))
    transaction_date: Mapped[date] = mapped_column(Date, index=True)
    status: Mapped[str | None] = mapped_column(String(30))
    entity_name: Mapped[str | None] = mapped_column(String(255))

    # Categorization
    category_name: Mapped[str | None] = mapped_column(String(255))
    category_color: Mapped[str | None] = mapped_column(String(7))  # hex
    enrichment_status: Mapped[str] = mapped_column(
        String(20), default="pending", index=True
    )  # pending | enriched | no_category
    category_synced_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    raw_data: Mapped[dict | None] = mapped_column(JSON)
    synced_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
