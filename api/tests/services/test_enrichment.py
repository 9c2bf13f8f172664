"""
Tests for category enrichment: the per-record retry state machine and the
checkpointed pass loop.  Time is a fake clock that advances only on sleep.
"""
from datetime import date

import pytest
from sqlalchemy import select

from app.models.transaction import SyncedTransaction
from app.services import enrichment
from app.services.checkpoints import get_checkpoint, save_progress
from app.services.contaazul import TokenInvalidError
from app.services.enrichment import (
    EnrichmentEngine,
    EnrichmentOutcome,
    EnrichmentTuning,
    RoundContext,
    extract_category,
    fetch_category,
)
from app.services.mapper import RECEIVABLE, map_items
from app.services.transactions import bulk_upsert, count_pending

TUNING = EnrichmentTuning(checkpoint_every=50)


def _seed(db, school_id, items, count=10):
    bulk_upsert(db, map_items(items("r", count, date(2025, 4, 1)), RECEIVABLE, school_id))


def _ctx(school_id, clock, budget=1000.0, probe=None):
    return RoundContext(
        school_id=school_id,
        time_budget=budget,
        delay=0.3,
        clock=clock.monotonic,
        sleep=clock.sleep,
        pause_probe=probe,
    )


def _row(db, key):
    db.expire_all()
    return db.execute(
        select(SyncedTransaction).where(SyncedTransaction.external_id == f"receivable_{key}")
    ).scalar_one()


def _enriched_count(db, school_id):
    db.expire_all()
    return len(db.execute(
        select(SyncedTransaction).where(
            SyncedTransaction.school_id == school_id,
            SyncedTransaction.enrichment_status == "enriched",
        )
    ).scalars().all())


# ── extract_category ─────────────────────────────────────────────────────────

class TestExtractCategory:
    def test_first_named_allocation(self):
        body = {"evento": {"rateio": [{"nome_categoria": None}, {"nome_categoria": "Mensalidades"}]}}
        assert extract_category(body) == "Mensalidades"

    def test_missing_allocation(self):
        assert extract_category({"evento": {"rateio": []}}) is None
        assert extract_category({"evento": None}) is None
        assert extract_category([]) is None


# ── fetch_category ───────────────────────────────────────────────────────────

class TestFetchCategory:
    def test_success(self, client, clock, school_row):
        ctx = _ctx(school_row.id, clock)
        lookup = fetch_category(client, "tok", "k1", ctx, TUNING)
        assert lookup.outcome is EnrichmentOutcome.SUCCESS
        assert lookup.category_name == "Category k1"

    def test_rate_limit_retries_same_record(self, client, fake_session, clock, response, school_row):
        fake_session.detail_script["k1"] = [response(429), response(429)]
        ctx = _ctx(school_row.id, clock)

        lookup = fetch_category(client, "tok", "k1", ctx, TUNING)

        assert lookup.outcome is EnrichmentOutcome.SUCCESS
        assert lookup.rate_limited == 2
        assert fake_session.detail_calls == ["k1", "k1", "k1"]
        assert clock.sleeps == [1.0, 2.0]
        assert ctx.delay > 0.3

    def test_rate_limit_wait_is_capped_and_unbounded(self, client, fake_session, clock, response, school_row):
        fake_session.detail_script["k1"] = [response(429)] * 8
        lookup = fetch_category(client, "tok", "k1", _ctx(school_row.id, clock), TUNING)
        assert lookup.outcome is EnrichmentOutcome.SUCCESS
        assert clock.sleeps == [1.0, 2.0, 4.0, 5.0, 5.0, 5.0, 5.0, 5.0]

    def test_server_error_bounded(self, client, fake_session, clock, response, school_row):
        fake_session.detail_script["k1"] = [response(500)] * 5
        lookup = fetch_category(client, "tok", "k1", _ctx(school_row.id, clock), TUNING)
        assert lookup.outcome is EnrichmentOutcome.HTTP_ERROR
        assert len(fake_session.detail_calls) == 3

    def test_server_error_then_success(self, client, fake_session, clock, response, school_row):
        fake_session.detail_script["k1"] = [response(502)]
        lookup = fetch_category(client, "tok", "k1", _ctx(school_row.id, clock), TUNING)
        assert lookup.outcome is EnrichmentOutcome.SUCCESS
        assert len(fake_session.detail_calls) == 2

    def test_network_error_bounded(self, client, fake_session, clock, transport_error, school_row):
        fake_session.detail_script["k1"] = [transport_error] * 3
        lookup = fetch_category(client, "tok", "k1", _ctx(school_row.id, clock), TUNING)
        assert lookup.outcome is EnrichmentOutcome.NETWORK_ERROR
        assert len(fake_session.detail_calls) == 3

    def test_other_client_error_not_retried(self, client, fake_session, clock, response, school_row):
        fake_session.detail_script["k1"] = [response(404)]
        lookup = fetch_category(client, "tok", "k1", _ctx(school_row.id, clock), TUNING)
        assert lookup.outcome is EnrichmentOutcome.HTTP_ERROR
        assert fake_session.detail_calls == ["k1"]
        assert clock.sleeps == []

    def test_unauthorized_is_fatal(self, client, fake_session, clock, response, school_row):
        fake_session.detail_script["k1"] = [response(401)]
        with pytest.raises(TokenInvalidError):
            fetch_category(client, "tok", "k1", _ctx(school_row.id, clock), TUNING)

    def test_no_allocation(self, client, fake_session, clock, school_row):
        fake_session.no_category.add("k1")
        lookup = fetch_category(client, "tok", "k1", _ctx(school_row.id, clock), TUNING)
        assert lookup.outcome is EnrichmentOutcome.NO_CATEGORY

    def test_invalid_json(self, client, fake_session, clock, response, school_row):
        fake_session.detail_script["k1"] = [response(200, None)]
        lookup = fetch_category(client, "tok", "k1", _ctx(school_row.id, clock), TUNING)
        assert lookup.outcome is EnrichmentOutcome.HTTP_ERROR

    def test_out_of_time_makes_no_call(self, client, fake_session, clock, school_row):
        ctx = _ctx(school_row.id, clock, budget=10)
        clock.now += 11
        lookup = fetch_category(client, "tok", "k1", ctx, TUNING)
        assert lookup.outcome is EnrichmentOutcome.INTERRUPTED
        assert fake_session.detail_calls == []

    def test_pause_interrupts_rate_limit_loop(self, client, fake_session, clock, response, school_row):
        fake_session.detail_script["k1"] = [response(429)] * 10
        ctx = _ctx(school_row.id, clock, probe=lambda: len(fake_session.detail_calls) >= 2)

        lookup = fetch_category(client, "tok", "k1", ctx, TUNING)

        assert lookup.outcome is EnrichmentOutcome.INTERRUPTED
        assert ctx.abort_requested
        assert len(fake_session.detail_calls) == 2

    def test_delay_settles_at_floor(self, client, clock, school_row):
        ctx = _ctx(school_row.id, clock)
        for i in range(30):
            fetch_category(client, "tok", f"k{i}", ctx, TUNING)
        assert ctx.delay == pytest.approx(TUNING.min_delay)


# ── EnrichmentEngine ─────────────────────────────────────────────────────────

class TestEngine:
    def test_completes_and_deletes_checkpoint(self, db, school_row, client, fake_session, clock, items):
        _seed(db, school_row.id, items)
        fake_session.no_category.add("r-003")

        report = EnrichmentEngine(db, client, "tok", _ctx(school_row.id, clock), TUNING).run()

        assert report.completed and report.reason == "completed"
        assert report.success_count == 9
        assert report.outcomes[EnrichmentOutcome.NO_CATEGORY] == 1
        assert get_checkpoint(db, school_row.id) is None
        assert count_pending(db, school_row.id) == 0
        assert _row(db, "r-000").category_name == "Category r-000"
        no_cat = _row(db, "r-003")
        assert (no_cat.category_name, no_cat.enrichment_status) == ("Receita", "no_category")

    def test_records_processed_in_date_order(self, db, school_row, client, fake_session, clock, items):
        _seed(db, school_row.id, items, 5)
        EnrichmentEngine(db, client, "tok", _ctx(school_row.id, clock), TUNING).run()
        assert fake_session.detail_calls == ["r-000", "r-001", "r-002", "r-003", "r-004"]

    def test_nothing_pending(self, db, school_row, client, fake_session, clock):
        report = EnrichmentEngine(db, client, "tok", _ctx(school_row.id, clock), TUNING).run()
        assert report.completed
        assert fake_session.detail_calls == []

    def test_checkpoint_only_moves_forward(self, db, school_row, client, clock, items, monkeypatch):
        _seed(db, school_row.id, items)
        saves = []

        def recording_save(db_, checkpoint, index, success_count, now=None):
            saves.append((index, checkpoint.total_transactions))
            save_progress(db_, checkpoint, index, success_count, now)

        monkeypatch.setattr(enrichment, "save_progress", recording_save)
        EnrichmentEngine(db, client, "tok", _ctx(school_row.id, clock), EnrichmentTuning(checkpoint_every=3)).run()

        assert [index for index, _ in saves] == [3, 6, 9, 10]
        assert saves[-1][0] == saves[-1][1] == 10

    def test_pause_keeps_last_saved_checkpoint(self, db, school_row, client, fake_session, clock, items):
        _seed(db, school_row.id, items)
        ctx = _ctx(school_row.id, clock, probe=lambda: len(fake_session.detail_calls) >= 5)

        report = EnrichmentEngine(db, client, "tok", ctx, EnrichmentTuning(checkpoint_every=3)).run()

        assert report.reason == "paused" and not report.completed
        checkpoint = get_checkpoint(db, school_row.id)
        assert checkpoint.last_processed_index == 3
        assert checkpoint.success_count == 3
        # Records 4 and 5 were looked up but never written
        assert _enriched_count(db, school_row.id) == 3
        assert _row(db, "r-004").category_name == "Receita"

    def test_time_budget_saves_exact_position(self, db, school_row, client, clock, items):
        _seed(db, school_row.id, items)

        report = EnrichmentEngine(db, client, "tok", _ctx(school_row.id, clock, budget=1.0), TUNING).run()

        assert report.reason == "timeout"
        assert 0 < report.processed < 10
        checkpoint = get_checkpoint(db, school_row.id)
        assert checkpoint.last_processed_index == report.processed
        assert _enriched_count(db, school_row.id) == report.processed
        assert count_pending(db, school_row.id) == 10 - report.processed

    def test_resume_skips_done_records(self, db, school_row, client, fake_session, clock, items):
        _seed(db, school_row.id, items)
        first = EnrichmentEngine(db, client, "tok", _ctx(school_row.id, clock, budget=1.0), TUNING).run()
        done = list(fake_session.detail_calls)

        second = EnrichmentEngine(db, client, "tok", _ctx(school_row.id, clock), TUNING).run()

        assert second.completed
        assert len(fake_session.detail_calls) == 10
        assert set(fake_session.detail_calls[len(done):]).isdisjoint(done)
        assert second.success_count == 10
        assert first.processed == len(done)

    def test_failed_record_retried_next_pass(self, db, school_row, client, fake_session, clock, response, items):
        _seed(db, school_row.id, items, 4)
        fake_session.detail_script["r-002"] = [response(404)]

        report = EnrichmentEngine(db, client, "tok", _ctx(school_row.id, clock), TUNING).run()

        assert report.completed
        assert report.passes == 2
        assert fake_session.detail_calls == ["r-000", "r-001", "r-002", "r-003", "r-002"]
        assert report.outcomes[EnrichmentOutcome.HTTP_ERROR] == 1

    def test_new_pending_rows_start_new_pass(self, db, school_row, client, fake_session, clock, items, item):
        _seed(db, school_row.id, items, 3)
        added = []

        def add_row(key):
            if key == "r-002" and not added:
                added.append(key)
                bulk_upsert(db, map_items([item("r-100", date(2024, 1, 1))], RECEIVABLE, school_row.id))

        fake_session.on_detail = add_row

        report = EnrichmentEngine(db, client, "tok", _ctx(school_row.id, clock), TUNING).run()

        assert report.completed
        assert report.passes == 2
        assert fake_session.detail_calls == ["r-000", "r-001", "r-002", "r-100"]
        assert count_pending(db, school_row.id) == 0

    def test_pass_without_progress_stops(self, db, school_row, client, fake_session, clock, response, items):
        _seed(db, school_row.id, items, 3)
        for key in ("r-000", "r-001", "r-002"):
            fake_session.detail_script[key] = [response(503)] * 3

        report = EnrichmentEngine(db, client, "tok", _ctx(school_row.id, clock), TUNING).run()

        assert not report.completed
        assert report.reason == "stalled"
        checkpoint = get_checkpoint(db, school_row.id)
        assert (checkpoint.last_processed_index, checkpoint.total_transactions) == (0, 3)
        assert len(fake_session.detail_calls) == 9

    def test_token_rejected_mid_pass(self, db, school_row, client, fake_session, clock, response, items):
        _seed(db, school_row.id, items, 5)
        fake_session.detail_script["r-003"] = [response(401)]

        with pytest.raises(TokenInvalidError):
            EnrichmentEngine(db, client, "tok", _ctx(school_row.id, clock), TUNING).run()

        assert get_checkpoint(db, school_row.id).last_processed_index == 0
        assert count_pending(db, school_row.id) == 5
