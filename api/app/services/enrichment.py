"""Category enrichment — replace fallback categories with the real Conta Azul category.

One detail call per pending record, strictly sequential. The loop walks the
pass list from the checkpoint index, stages resolved rows in memory and every
``checkpoint_every`` records writes them together with the checkpoint, so a
crash costs at most that many calls of rework. It stops at the round's time
budget (final save first) or at a pause request (no save, the checkpoint keeps
its last saved value).

Per-record outcomes:
  success        category found → row updated, counted in success_count
  no_category    2xx without allocation → marked so later passes skip it
  http_error     5xx after the retry budget, or another 4xx → stays pending
  network_error  transport failure after the retry budget → stays pending
429 is retried without limit (bounded wait per attempt); 401 aborts the round.
"""

import enum
import logging
import time
import uuid
from collections import Counter
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

import requests
from sqlalchemy.orm import Session

from app.core.config import settings
from app.models.sync import SyncCheckpoint
from app.services.checkpoints import (
    delete_checkpoint,
    get_checkpoint,
    save_progress,
    start_pass,
)
from app.services.contaazul import ContaAzulClient, TokenInvalidError
from app.services.mapper import (
    ENRICHMENT_ENRICHED,
    ENRICHMENT_NO_CATEGORY,
    detail_key,
    is_pending,
)
from app.services.tokens import as_utc
from app.services.transactions import bulk_upsert, count_pending, load_pass_records

logger = logging.getLogger(__name__)


class EnrichmentOutcome(str, enum.Enum):
    SUCCESS = "success"
    NO_CATEGORY = "no_category"
    HTTP_ERROR = "http_error"
    NETWORK_ERROR = "network_error"
    INTERRUPTED = "interrupted"


@dataclass(frozen=True)
class EnrichmentTuning:
    checkpoint_every: int = 50
    min_delay: float = 0.15
    max_delay: float = 5.0
    rate_limit_base_wait: float = 1.0
    rate_limit_max_wait: float = 5.0
    retry_base_wait: float = 1.0
    max_attempts: int = 3

    @classmethod
    def from_settings(cls) -> "EnrichmentTuning":
        return cls(
            checkpoint_every=settings.sync_checkpoint_every,
            min_delay=settings.enrichment_min_delay,
            max_delay=settings.enrichment_max_delay,
            rate_limit_max_wait=settings.enrichment_rate_limit_max_wait,
            max_attempts=settings.enrichment_max_attempts,
        )


@dataclass
class RoundContext:
    """Mutable state of one round: clock, time budget, pacing and the abort flag."""

    school_id: uuid.UUID
    round_number: int = 1
    time_budget: float = 140.0
    delay: float = 0.3
    clock: Callable[[], float] = time.monotonic
    sleep: Callable[[float], None] = time.sleep
    pause_probe: Callable[[], bool] | None = None
    abort_requested: bool = False
    started: float = field(init=False)

    def __post_init__(self) -> None:
        self.started = self.clock()

    def elapsed(self) -> float:
        return self.clock() - self.started

    def out_of_time(self) -> bool:
        return self.elapsed() >= self.time_budget

    def should_stop(self) -> bool:
        if not self.abort_requested and self.pause_probe is not None and self.pause_probe():
            logger.info("Pause requested for school %s", self.school_id)
            self.abort_requested = True
        return self.abort_requested

    def wait(self, seconds: float) -> None:
        if seconds > 0:
            self.sleep(seconds)

    def speed_up(self, floor: float) -> None:
        self.delay = max(floor, self.delay * 0.9)

    def slow_down(self, ceiling: float, factor: float = 1.5, step: float = 0.0) -> None:
        self.delay = min(ceiling, self.delay * factor + step)


@dataclass
class CategoryLookup:
    outcome: EnrichmentOutcome
    category_name: str | None = None
    rate_limited: int = 0
    error: str | None = None


def extract_category(body: Any) -> str | None:
    """First allocation with a category name under ``evento.rateio``."""
    if not isinstance(body, dict):
        return None
    rateio = (body.get("evento") or {}).get("rateio") or []
    for allocation in rateio:
        if isinstance(allocation, dict) and allocation.get("nome_categoria"):
            return allocation["nome_categoria"]
    return None


def fetch_category(
    client: ContaAzulClient,
    access_token: str,
    key: str,
    ctx: RoundContext,
    tuning: EnrichmentTuning,
) -> CategoryLookup:
    rate_limited = 0
    failures = 0
    while True:
        if ctx.out_of_time() or ctx.should_stop():
            return CategoryLookup(EnrichmentOutcome.INTERRUPTED, rate_limited=rate_limited)

        try:
            resp = client.get_installment(key, access_token)
        except requests.RequestException as exc:
            failures += 1
            ctx.slow_down(tuning.max_delay, factor=1.0, step=0.5)
            if failures >= tuning.max_attempts:
                logger.warning("Installment %s: network error after %d attempts: %s", key, failures, exc)
                return CategoryLookup(EnrichmentOutcome.NETWORK_ERROR, rate_limited=rate_limited, error=str(exc))
            ctx.wait(tuning.retry_base_wait * failures)
            continue

        if resp.status_code == 429:
            rate_limited += 1
            ctx.slow_down(tuning.max_delay)
            wait = min(tuning.rate_limit_max_wait, tuning.rate_limit_base_wait * 2 ** (rate_limited - 1))
            logger.warning("Installment %s: rate limited (hit %d), waiting %.1fs", key, rate_limited, wait)
            ctx.wait(wait)
            continue

        if resp.status_code == 401:
            raise TokenInvalidError()

        if resp.status_code >= 500:
            failures += 1
            ctx.slow_down(tuning.max_delay, factor=1.0, step=0.5)
            if failures >= tuning.max_attempts:
                logger.warning("Installment %s: HTTP %d after %d attempts", key, resp.status_code, failures)
                return CategoryLookup(
                    EnrichmentOutcome.HTTP_ERROR, rate_limited=rate_limited, error=f"HTTP {resp.status_code}"
                )
            ctx.wait(tuning.retry_base_wait * failures)
            continue

        if not resp.ok:
            return CategoryLookup(
                EnrichmentOutcome.HTTP_ERROR, rate_limited=rate_limited, error=f"HTTP {resp.status_code}"
            )

        try:
            body = resp.json()
        except ValueError:
            return CategoryLookup(EnrichmentOutcome.HTTP_ERROR, rate_limited=rate_limited, error="invalid JSON")

        category = extract_category(body)
        ctx.speed_up(tuning.min_delay)
        if category:
            return CategoryLookup(EnrichmentOutcome.SUCCESS, category_name=category, rate_limited=rate_limited)
        return CategoryLookup(EnrichmentOutcome.NO_CATEGORY, rate_limited=rate_limited)


@dataclass
class EnrichmentReport:
    completed: bool
    reason: str              # completed | timeout | paused | stalled
    processed: int
    total: int
    success_count: int
    pending_count: int
    outcomes: Counter = field(default_factory=Counter)
    passes: int = 0

    @property
    def categories_found(self) -> int:
        return self.outcomes[EnrichmentOutcome.SUCCESS]


class EnrichmentEngine:
    """Runs enrichment passes for one school until done, out of time or paused."""

    def __init__(
        self,
        db: Session,
        client: ContaAzulClient,
        access_token: str,
        ctx: RoundContext,
        tuning: EnrichmentTuning | None = None,
    ) -> None:
        self.db = db
        self.client = client
        self.access_token = access_token
        self.ctx = ctx
        self.tuning = tuning or EnrichmentTuning.from_settings()
        self.outcomes: Counter = Counter()
        self.passes = 0

    def run(self) -> EnrichmentReport:
        school_id = self.ctx.school_id
        checkpoint = get_checkpoint(self.db, school_id)
        if checkpoint is None:
            pending = count_pending(self.db, school_id)
            if pending == 0:
                return self._report(True, "completed", 0, 0, 0)
            checkpoint = start_pass(self.db, school_id, pending)

        while True:
            self.passes += 1
            records = load_pass_records(self.db, school_id, as_utc(checkpoint.started_at))
            if checkpoint.total_transactions != len(records):
                # Rows were added or removed behind our back; keep progress display honest
                logger.warning(
                    "School %s: pass list has %d rows, checkpoint says %d",
                    school_id, len(records), checkpoint.total_transactions,
                )
                checkpoint.total_transactions = len(records)
                self.db.commit()

            start_index = min(checkpoint.last_processed_index, len(records))
            logger.info(
                "School %s round %d: pass %d from %d/%d",
                school_id, self.ctx.round_number, self.passes, start_index, len(records),
            )
            stopped, attempted, resolved = self._run_pass(checkpoint, records, start_index)
            if stopped is not None:
                return stopped

            success_count = checkpoint.success_count
            remaining = count_pending(self.db, school_id)
            if remaining == 0:
                delete_checkpoint(self.db, school_id)
                logger.info("School %s: enrichment complete (%d categories)", school_id, success_count)
                return self._report(True, "completed", len(records), len(records), success_count)

            logger.info("School %s: %d rows still pending, starting a new pass", school_id, remaining)
            checkpoint = start_pass(self.db, school_id, remaining)
            if attempted and not resolved:
                # Everything left failed this pass; let the next round retry after its delay
                return self._report(False, "stalled", 0, remaining, checkpoint.success_count)

    def _run_pass(
        self, checkpoint: SyncCheckpoint, records: list[dict[str, Any]], index: int
    ) -> tuple[EnrichmentReport | None, int, int]:
        """Walk ``records`` from ``index``. Returns (report if stopped early, attempted, resolved)."""
        success_count = checkpoint.success_count
        staged: list[dict[str, Any]] = []
        since_save = attempted = resolved = 0

        while index < len(records):
            if self.ctx.should_stop():
                # Staged rows are dropped on purpose: the checkpoint keeps its last saved value
                return self._report(
                    False, "paused", checkpoint.last_processed_index,
                    len(records), checkpoint.success_count,
                ), attempted, resolved
            if self.ctx.out_of_time():
                self._flush(checkpoint, staged, index, success_count)
                logger.info(
                    "School %s: time budget reached after %.0fs at %d/%d",
                    self.ctx.school_id, self.ctx.elapsed(), index, len(records),
                )
                return self._report(False, "timeout", index, len(records), success_count), attempted, resolved

            record = records[index]
            if not is_pending(record["category_name"], record["enrichment_status"]):
                index += 1
                continue

            lookup = fetch_category(
                self.client, self.access_token, detail_key(record["external_id"]), self.ctx, self.tuning
            )
            if lookup.outcome is EnrichmentOutcome.INTERRUPTED:
                continue

            attempted += 1
            self.outcomes[lookup.outcome] += 1
            now = datetime.now(timezone.utc)
            if lookup.outcome is EnrichmentOutcome.SUCCESS:
                record.update(
                    category_name=lookup.category_name,
                    enrichment_status=ENRICHMENT_ENRICHED,
                    category_synced_at=now,
                )
                staged.append(record)
                success_count += 1
                resolved += 1
            elif lookup.outcome is EnrichmentOutcome.NO_CATEGORY:
                record.update(enrichment_status=ENRICHMENT_NO_CATEGORY, category_synced_at=now)
                staged.append(record)
                resolved += 1
            logger.debug("%s → %s %s", record["external_id"], lookup.outcome.value, lookup.category_name or "")

            index += 1
            since_save += 1
            if since_save >= self.tuning.checkpoint_every:
                self._flush(checkpoint, staged, index, success_count)
                since_save = 0
            if index < len(records):
                self.ctx.wait(self.ctx.delay)

        self._flush(checkpoint, staged, index, success_count)
        return None, attempted, resolved

    def _flush(
        self, checkpoint: SyncCheckpoint, staged: list[dict[str, Any]], index: int, success_count: int
    ) -> None:
        if staged:
            bulk_upsert(self.db, staged)
            staged.clear()
        save_progress(self.db, checkpoint, index, success_count)
        logger.info(
            "School %s: checkpoint %d/%d (%d categories)",
            self.ctx.school_id, index, checkpoint.total_transactions, success_count,
        )

    def _report(
        self, completed: bool, reason: str, processed: int, total: int, success_count: int
    ) -> EnrichmentReport:
        return EnrichmentReport(
            completed=completed,
            reason=reason,
            processed=processed,
            total=total,
            success_count=success_count,
            pending_count=count_pending(self.db, self.ctx.school_id),
            outcomes=self.outcomes,
            passes=self.passes,
        )
