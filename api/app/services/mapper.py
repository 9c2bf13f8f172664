"""Map Conta Azul receivable/payable search items onto ``synced_transactions`` rows.

Pure functions, no I/O. Every mapped row starts with the fallback category of
its type; the enrichment engine replaces it later.
"""

import uuid
from datetime import date, datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any

RECEIVABLE = "receivable"
PAYABLE = "payable"

INCOME = "income"
EXPENSE = "expense"

# status_traduzido values
STATUS_SETTLED = "RECEBIDO"
STATUS_OVERDUE = "ATRASADO"
STATUS_OPEN = "EM_ABERTO"
ALLOWED_STATUSES = frozenset({STATUS_SETTLED, STATUS_OVERDUE, STATUS_OPEN})

FALLBACK_INCOME_CATEGORY = "Receita"
FALLBACK_EXPENSE_CATEGORY = "Despesa"
FALLBACK_CATEGORIES = frozenset({FALLBACK_INCOME_CATEGORY, FALLBACK_EXPENSE_CATEGORY})

ENRICHMENT_PENDING = "pending"
ENRICHMENT_ENRICHED = "enriched"
ENRICHMENT_NO_CATEGORY = "no_category"

_SOURCES = {
    RECEIVABLE: {
        "type": INCOME,
        "category": FALLBACK_INCOME_CATEGORY,
        "color": "#22c55e",
        "description": "Conta a Receber",
    },
    PAYABLE: {
        "type": EXPENSE,
        "category": FALLBACK_EXPENSE_CATEGORY,
        "color": "#ef4444",
        "description": "Conta a Pagar",
    },
}


def make_external_id(source: str, source_id: Any) -> str:
    return f"{source}_{source_id}"


def detail_key(external_id: str) -> str:
    """Strip the source prefix: ``receivable_abc`` → ``abc``."""
    for source in _SOURCES:
        prefix = f"{source}_"
        if external_id.startswith(prefix):
            return external_id[len(prefix):]
    return external_id


def is_pending(category_name: str | None, enrichment_status: str | None) -> bool:
    return category_name in FALLBACK_CATEGORIES and enrichment_status == ENRICHMENT_PENDING


def select_amount(item: dict[str, Any]) -> Decimal:
    """Settled items count what was actually paid; open/overdue ones the nominal total."""
    raw = item.get("pago") if item.get("status_traduzido") == STATUS_SETTLED else item.get("total")
    try:
        return Decimal(str(raw)) if raw is not None else Decimal("0")
    except InvalidOperation:
        return Decimal("0")


def _parse_date(value: Any) -> date | None:
    if isinstance(value, date):
        return value
    if not value:
        return None
    try:
        return date.fromisoformat(str(value)[:10])
    except ValueError:
        return None


def map_item(
    item: dict[str, Any],
    source: str,
    school_id: uuid.UUID,
    synced_at: datetime | None = None,
) -> dict[str, Any] | None:
    """Return a row dict, or None when the item is filtered out."""
    meta = _SOURCES[source]
    status = item.get("status_traduzido")
    if status not in ALLOWED_STATUSES:
        return None
    transaction_date = _parse_date(item.get("data_vencimento"))
    if item.get("id") is None or transaction_date is None:
        return None

    counterpart = item.get("cliente") or item.get("fornecedor") or {}
    return {
        "school_id": school_id,
        "external_id": make_external_id(source, item["id"]),
        "type": meta["type"],
        "amount": select_amount(item),
        "description": item.get("descricao") or meta["description"],
        "transaction_date": transaction_date,
        "status": status,
        "entity_name": counterpart.get("nome") if isinstance(counterpart, dict) else None,
        "category_name": meta["category"],
        "category_color": meta["color"],
        "enrichment_status": ENRICHMENT_PENDING,
        "category_synced_at": None,
        "raw_data": item,
        "synced_at": synced_at or datetime.now(timezone.utc),
    }


def map_items(
    items: list[dict[str, Any]],
    source: str,
    school_id: uuid.UUID,
    synced_at: datetime | None = None,
) -> list[dict[str, Any]]:
    synced_at = synced_at or datetime.now(timezone.utc)
    rows = []
    for item in items:
        row = map_item(item, source, school_id, synced_at)
        if row is not None:
            rows.append(row)
    return rows
