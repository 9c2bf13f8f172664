"""Conta Azul sync rounds — bulk fetch, fallback write, enrichment, self-continuation.

A round is one bounded run of the pipeline for one school. It fetches and
upserts everything when not ``resume_only``, then hands over to the
enrichment engine. If the engine runs out of time the round schedules the
next one on the Celery queue (``countdown``) and returns; after
``sync_max_rounds`` it gives up and reports failure.

One round per school at a time is assumed, not enforced.
"""

import logging
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.database import sync_session
from app.core.redis import is_pause_requested
from app.models.conta_azul import ContaAzulConfig
from app.models.school import School
from app.models.sync import SyncLog
from app.services.checkpoints import (
    Progress,
    SyncState,
    close_round_log,
    delete_checkpoint,
    describe_state,
    get_checkpoint,
    open_round_log,
    progress_for,
    start_pass,
)
from app.services.contaazul import (
    PAYABLES_ENDPOINT,
    RECEIVABLES_ENDPOINT,
    AuthError,
    ContaAzulClient,
    FetchError,
    TokenInvalidError,
)
from app.services.enrichment import EnrichmentEngine, EnrichmentReport, EnrichmentTuning, RoundContext
from app.services.mapper import EXPENSE, INCOME, PAYABLE, RECEIVABLE, map_items
from app.services.notifications import build_summary, school_result, send_sync_notification
from app.services.tokens import NotConnectedError, ensure_access_token
from app.services.transactions import bulk_upsert, count_by_type, count_pending
from app.worker import celery_app

logger = logging.getLogger(__name__)

RECONNECT_REQUIRED = "reconnect_required"
NOT_CONFIGURED = "not_configured"
FETCH_FAILED = "fetch_failed"
MAX_ROUNDS = "max_rounds"
PAUSED = "paused"

Scheduler = Callable[[uuid.UUID, int, bool, int], None]
Notifier = Callable[[dict[str, Any]], None]


@dataclass
class RoundResult:
    success: bool
    completed: bool
    message: str
    progress: Progress
    round_number: int
    continuation_scheduled: bool = False
    error_code: str | None = None
    details: dict[str, Any] = field(default_factory=dict)

    def as_payload(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "completed": self.completed,
            "message": self.message,
            "progress": self.progress.as_payload(),
            "roundNumber": self.round_number,
            "continuationScheduled": self.continuation_scheduled,
            "errorCode": self.error_code,
        }


def schedule_round(school_id: uuid.UUID, round_number: int, resume_only: bool, countdown: int) -> None:
    run_sync_round.apply_async(args=[str(school_id), round_number, resume_only], countdown=countdown)


def queue_notification(summary: dict[str, Any]) -> None:
    send_sync_notification.delay(summary)


class SyncRoundRunner:
    def __init__(
        self,
        db: Session,
        client: ContaAzulClient | None = None,
        *,
        scheduler: Scheduler | None = None,
        notifier: Notifier | None = None,
        pause_probe: Callable[[str], bool] | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
        tuning: EnrichmentTuning | None = None,
    ) -> None:
        self.db = db
        self.client = client or ContaAzulClient(sleep=sleep)
        self.scheduler = scheduler or schedule_round
        self.notifier = notifier or queue_notification
        self.pause_probe = pause_probe or is_pause_requested
        self.clock = clock
        self.sleep = sleep
        self.tuning = tuning or EnrichmentTuning.from_settings()
        self.max_rounds = settings.sync_max_rounds
        self.continuation_delay = settings.sync_continuation_delay_seconds

    def run(self, school_id: uuid.UUID, round_number: int = 1, resume_only: bool = False) -> RoundResult:
        school = self.db.get(School, school_id)
        if school is None:
            return RoundResult(
                False, False, "School not found", Progress(0, 0, 0, 0), round_number,
                error_code=NOT_CONFIGURED,
            )
        tag = f"[{school.slug}]"

        if round_number > self.max_rounds:
            return self._give_up(school, round_number, None)

        if self.pause_probe(str(school_id)):
            logger.info("%s Round %d skipped: sync paused", tag, round_number)
            log = open_round_log(self.db, school_id, round_number)
            close_round_log(self.db, log, "paused")
            return self._result(
                school_id, round_number, True, False, "Sync paused", error_code=PAUSED
            )

        if resume_only and get_checkpoint(self.db, school_id) is None and count_pending(self.db, school_id) == 0:
            logger.info("%s Nothing pending, sync already complete", tag)
            return self._result(school_id, round_number, True, True, "Sync already complete")

        logger.info("%s Round %d started (resume_only=%s)", tag, round_number, resume_only)
        log = open_round_log(self.db, school_id, round_number)
        ctx = RoundContext(
            school_id=school_id,
            round_number=round_number,
            time_budget=settings.sync_time_budget_seconds,
            delay=settings.enrichment_initial_delay,
            clock=self.clock,
            sleep=self.sleep,
            pause_probe=lambda: self.pause_probe(str(school_id)),
        )
        fetched = 0

        try:
            access_token = ensure_access_token(self.db, school_id, self.client)
            if not resume_only:
                fetched = self._bulk_fetch(school, access_token)
            report = EnrichmentEngine(self.db, self.client, access_token, ctx, self.tuning).run()
        except NotConnectedError as exc:
            return self._fail(school, log, round_number, str(exc), NOT_CONFIGURED, fetched)
        except (AuthError, TokenInvalidError) as exc:
            logger.error("%s Round %d: %s", tag, round_number, exc)
            return self._fail(school, log, round_number, str(exc), RECONNECT_REQUIRED, fetched)
        except FetchError as exc:
            logger.error("%s Round %d fetch failed: %s", tag, round_number, exc)
            if exc.status_code is None and round_number < self.max_rounds:
                # Transport failure: not an error state, retry the fetch in a later round
                self.db.rollback()
                close_round_log(self.db, log, "failed", fetched=fetched, error=str(exc))
                self.scheduler(school_id, round_number + 1, False, self.continuation_delay)
                return self._result(
                    school_id, round_number, False, False,
                    "Conta Azul unreachable, retrying in a new round",
                    continuation_scheduled=True, error_code=FETCH_FAILED,
                )
            return self._fail(school, log, round_number, str(exc), FETCH_FAILED, fetched)
        except Exception as exc:
            logger.exception("%s Round %d crashed", tag, round_number)
            try:
                self._fail(school, log, round_number, f"Unexpected error: {exc}", None, fetched)
            except Exception as cleanup_exc:
                logger.error("%s Could not record round %d failure: %s", tag, round_number, cleanup_exc)
            raise

        return self._finish(school, log, round_number, fetched, report, ctx)

    # ─── Steps ─────────────────────────────────────────────────────────────

    def _bulk_fetch(self, school: School, access_token: str) -> int:
        params = {
            "data_vencimento_de": settings.sync_start_date,
            "data_vencimento_ate": date.today().isoformat(),
        }
        synced_at = datetime.now(timezone.utc)
        rows: list[dict[str, Any]] = []
        for source, endpoint in ((RECEIVABLE, RECEIVABLES_ENDPOINT), (PAYABLE, PAYABLES_ENDPOINT)):
            items = self.client.fetch_all_pages(endpoint, access_token, params)
            mapped = map_items(items, source, school.id, synced_at)
            logger.info("[%s] %d %s items fetched, %d kept", school.slug, len(items), source, len(mapped))
            rows.extend(mapped)

        bulk_upsert(self.db, rows)

        # Every row is back on its fallback category, so the sync starts over
        delete_checkpoint(self.db, school.id)
        pending = count_pending(self.db, school.id)
        if pending:
            start_pass(self.db, school.id, pending)
        logger.info("[%s] %d rows written, %d pending enrichment", school.slug, len(rows), pending)
        return len(rows)

    def _finish(
        self,
        school: School,
        log: SyncLog,
        round_number: int,
        fetched: int,
        report: EnrichmentReport,
        ctx: RoundContext,
    ) -> RoundResult:
        tag = f"[{school.slug}]"
        enriched = sum(report.outcomes.values())
        details = {
            "reason": report.reason,
            "elapsed_seconds": round(ctx.elapsed(), 1),
            "passes": report.passes,
            "outcomes": {outcome.value: count for outcome, count in report.outcomes.items()},
        }
        progress = Progress(report.processed, report.total, report.success_count, report.pending_count)

        if report.completed:
            close_round_log(
                self.db, log, "completed", fetched=fetched, enriched=enriched,
                categories=report.categories_found, details=details,
            )
            logger.info("%s Sync complete after %d round(s)", tag, round_number)
            self._notify(school, True, round_number, report.success_count, None)
            return self._result(
                school.id, round_number, True, True,
                f"Sync complete: {report.success_count} categories found",
                details=details, progress=progress,
            )

        if report.reason == "paused":
            close_round_log(
                self.db, log, "paused", fetched=fetched, enriched=enriched,
                categories=report.categories_found, details=details,
            )
            return self._result(
                school.id, round_number, True, False, "Sync paused",
                error_code=PAUSED, details=details, progress=progress,
            )

        if round_number >= self.max_rounds:
            close_round_log(
                self.db, log, "failed", fetched=fetched, enriched=enriched,
                categories=report.categories_found, error="Round limit reached", details=details,
            )
            return self._give_up(school, round_number, details)

        close_round_log(
            self.db, log, "timeout", fetched=fetched, enriched=enriched,
            categories=report.categories_found, details=details,
        )
        self.scheduler(school.id, round_number + 1, True, self.continuation_delay)
        logger.info(
            "%s Round %d stopped (%s) at %d/%d, round %d in %ds",
            tag, round_number, report.reason, report.processed, report.total,
            round_number + 1, self.continuation_delay,
        )
        return self._result(
            school.id, round_number, True, False,
            f"Enrichment continues in round {round_number + 1}",
            continuation_scheduled=True, details=details, progress=progress,
        )

    def _give_up(self, school: School, round_number: int, details: dict[str, Any] | None) -> RoundResult:
        message = f"Gave up after {self.max_rounds} rounds with records still pending"
        logger.error("[%s] %s", school.slug, message)
        self._notify(school, False, round_number, None, message)
        return self._result(
            school.id, round_number, False, False, message, error_code=MAX_ROUNDS, details=details or {}
        )

    def _fail(
        self,
        school: School,
        log: SyncLog,
        round_number: int,
        message: str,
        error_code: str | None,
        fetched: int,
    ) -> RoundResult:
        # The checkpoint is left as it is so a manual retry resumes from it
        self.db.rollback()
        close_round_log(self.db, log, "failed", fetched=fetched, error=message)
        self._notify(school, False, round_number, None, message)
        return self._result(school.id, round_number, False, False, message, error_code=error_code)

    def _notify(
        self, school: School, success: bool, round_number: int, categories: int | None, error: str | None
    ) -> None:
        try:
            by_type = count_by_type(self.db, school.id)
            result = school_result(
                school.name,
                school.slug,
                success,
                receivables_count=by_type.get(INCOME, 0),
                payables_count=by_type.get(EXPENSE, 0),
                categories_found=categories or 0,
                pending_count=count_pending(self.db, school.id),
                rounds=round_number,
                error=error,
            )
            self.notifier(build_summary([result]))
        except Exception as exc:
            logger.warning("[%s] Could not queue sync notification: %s", school.slug, exc)

    def _result(
        self,
        school_id: uuid.UUID,
        round_number: int,
        success: bool,
        completed: bool,
        message: str,
        *,
        continuation_scheduled: bool = False,
        error_code: str | None = None,
        details: dict[str, Any] | None = None,
        progress: Progress | None = None,
    ) -> RoundResult:
        return RoundResult(
            success=success,
            completed=completed,
            message=message,
            progress=progress or progress_for(self.db, school_id),
            round_number=round_number,
            continuation_scheduled=continuation_scheduled,
            error_code=error_code,
            details=details or {},
        )


# ─── Celery tasks ─────────────────────────────────────────────────────────────

@celery_app.task(name="app.services.sync.run_sync_round")
def run_sync_round(school_id: str, round_number: int = 1, resume_only: bool = False) -> dict[str, Any]:
    """One round for one school; queued by the API, by itself and by the daily job."""
    with sync_session() as db:
        result = SyncRoundRunner(db).run(uuid.UUID(school_id), round_number, resume_only)
    return result.as_payload()


@celery_app.task(name="app.services.sync.sync_all_schools")
def sync_all_schools() -> int:
    """Daily job: start a fresh round for every school with Conta Azul tokens.

    Schools whose enrichment is actively running are skipped; a stalled
    checkpoint does not block the new round.
    """
    logger.info("Starting scheduled sync for all schools")
    queued = 0
    with sync_session() as db:
        school_ids = db.execute(select(ContaAzulConfig.school_id)).scalars().all()
        for school_id in school_ids:
            snapshot = describe_state(db, school_id)
            if snapshot.state is SyncState.IN_PROGRESS:
                logger.info("School %s has a round in progress, skipping", school_id)
                continue
            run_sync_round.delay(str(school_id))
            queued += 1
    logger.info("Queued sync for %d of %d school(s)", queued, len(school_ids))
    return queued
