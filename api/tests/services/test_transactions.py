"""
Tests for the bulk upsert writer and pending-set queries (SQLite dialect).
"""
import uuid
from datetime import date, datetime, timedelta, timezone

import pytest
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from app.models.transaction import SyncedTransaction
from app.services.checkpoints import get_checkpoint, start_pass
from app.services.mapper import RECEIVABLE, map_items
from app.services.transactions import (
    bulk_upsert,
    clear_school_transactions,
    count_by_type,
    count_pending,
    count_transactions,
    load_pass_records,
)


def _rows(school_id, items_factory, count=5):
    return map_items(items_factory("r", count, date(2025, 4, 1)), RECEIVABLE, school_id)


def _all(db, school_id):
    return db.execute(
        select(SyncedTransaction).where(SyncedTransaction.school_id == school_id)
        .order_by(SyncedTransaction.external_id)
    ).scalars().all()


# ── bulk_upsert ──────────────────────────────────────────────────────────────

class TestBulkUpsert:
    def test_inserts_rows(self, db, school_row, items):
        assert bulk_upsert(db, _rows(school_row.id, items)) == 5
        assert count_transactions(db, school_row.id) == 5

    def test_empty_is_noop(self, db):
        assert bulk_upsert(db, []) == 0

    def test_same_key_updates_in_place(self, db, school_row, items):
        rows = _rows(school_row.id, items, 3)
        bulk_upsert(db, rows)
        first_ids = {t.external_id: t.id for t in _all(db, school_row.id)}

        rows[0]["description"] = "Changed"
        bulk_upsert(db, rows)
        db.expire_all()

        stored = _all(db, school_row.id)
        assert len(stored) == 3
        assert stored[0].description == "Changed"
        # Conflict path keeps the original primary key
        assert {t.external_id: t.id for t in stored} == first_ids

    def test_refetch_resets_category_to_fallback(self, db, school_row, items):
        rows = _rows(school_row.id, items, 1)
        bulk_upsert(db, rows)
        enriched = {**rows[0], "category_name": "Mensalidades", "enrichment_status": "enriched",
                    "category_synced_at": datetime.now(timezone.utc)}
        bulk_upsert(db, [enriched])
        assert count_pending(db, school_row.id) == 0

        bulk_upsert(db, rows)
        assert count_pending(db, school_row.id) == 1

    def test_chunks_commit_independently(self, db, school_row, items):
        rows = _rows(school_row.id, items, 5)
        rows[3] = {**rows[3], "type": None}  # NOT NULL violation in the second chunk

        with pytest.raises(IntegrityError):
            bulk_upsert(db, rows, chunk_size=3)
        # First chunk stays written
        assert count_transactions(db, school_row.id) == 3

    def test_tenants_do_not_collide(self, db, school_row, items):
        other = uuid.uuid4()
        from app.models.school import School
        db.add(School(id=other, name="Outra", slug="outra"))
        db.commit()

        bulk_upsert(db, _rows(school_row.id, items, 2))
        bulk_upsert(db, _rows(other, items, 2))
        assert count_transactions(db, school_row.id) == 2
        assert count_transactions(db, other) == 2


# ── pending set ──────────────────────────────────────────────────────────────

class TestPendingQueries:
    def test_count_pending_ignores_resolved(self, db, school_row, items):
        rows = _rows(school_row.id, items, 4)
        rows[0]["category_name"] = "Mensalidades"
        rows[0]["enrichment_status"] = "enriched"
        rows[1]["enrichment_status"] = "no_category"
        bulk_upsert(db, rows)
        assert count_pending(db, school_row.id) == 2

    def test_count_by_type(self, db, school_row, items):
        bulk_upsert(db, _rows(school_row.id, items, 3))
        assert count_by_type(db, school_row.id) == {"income": 3}

    def test_pass_records_ordered_by_date(self, db, school_row, items):
        rows = list(reversed(_rows(school_row.id, items, 4)))
        bulk_upsert(db, rows)
        records = load_pass_records(db, school_row.id, datetime.now(timezone.utc))
        assert [r["external_id"] for r in records] == [
            "receivable_r-000", "receivable_r-001", "receivable_r-002", "receivable_r-003",
        ]

    def test_pass_records_keep_rows_resolved_during_pass(self, db, school_row, items):
        pass_started = datetime.now(timezone.utc) - timedelta(minutes=5)
        rows = _rows(school_row.id, items, 3)
        rows[0].update(category_name="Mensalidades", enrichment_status="enriched",
                       category_synced_at=datetime.now(timezone.utc))
        rows[1].update(category_name="Antiga", enrichment_status="enriched",
                       category_synced_at=pass_started - timedelta(days=1))
        bulk_upsert(db, rows)

        records = load_pass_records(db, school_row.id, pass_started)
        # r-000 resolved in this pass stays in place; r-001 was resolved before it
        assert [r["external_id"] for r in records] == ["receivable_r-000", "receivable_r-002"]


class TestClear:
    def test_clear_drops_rows_and_checkpoint(self, db, school_row, items):
        bulk_upsert(db, _rows(school_row.id, items, 3))
        start_pass(db, school_row.id, 3)

        assert clear_school_transactions(db, school_row.id) == 3
        assert count_transactions(db, school_row.id) == 0
        assert get_checkpoint(db, school_row.id) is None
