"""
One sync+score cycle for a scope.

open run -> fetch/normalize/upsert pages -> link -> reconcile deletions ->
score -> close run. The checkpoint only advances in the last step; any
failure or cancellation before it marks the run failed and leaves the
checkpoint where it was, so the next invocation replays the same window.
"""

import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError

from .config import SyncConfig
from .cursor import CursorTracker
from .database import Observation, ParticipantLink
from .fetcher import RateLimitedFetcher
from .ledger import RunCounts, RunLedger
from .linking import IdentityResolver, build_links
from .logger import StructuredLogger, get_logger
from .normalize import Record, isoformat_z, normalize_observation
from .reconciler import SKIPPED, DeletionReconciler
from .retry import RunCancelled, check_cancelled
from .schema import validate_observation
from .scoring import ScoringEngine
from .storage import RecordStore
from .upserter import IdempotentUpserter

OK = "ok"
PARTIAL = "partial"
FAILED = "failed"
CANCELLED = "cancelled"


@dataclass
class RunSummary:
    scope_id: str
    run_id: Optional[int] = None
    status: str = FAILED
    since: Optional[datetime] = None
    watermark: Optional[datetime] = None
    counts: RunCounts = field(default_factory=RunCounts)
    skipped_invalid: int = 0
    reconcile_strategy: Optional[str] = None
    failed_keys: List[str] = field(default_factory=list)
    error: Optional[str] = None

    def as_status(self) -> Dict[str, Any]:
        return {
            "status": self.status,
            "scope": self.scope_id,
            "run_id": self.run_id,
            "fetched": self.counts.records_fetched,
            "upserted": self.counts.records_upserted,
            "deleted": self.counts.records_deleted,
            "entries_written": self.counts.entries_written,
            "identity_misses": self.counts.identity_misses,
            "skipped_invalid": self.skipped_invalid,
            "failed_writes": len(self.failed_keys),
            "reconcile": self.reconcile_strategy,
            "since": isoformat_z(self.since) if self.since else None,
            "watermark": isoformat_z(self.watermark) if self.watermark else None,
            "error": self.error,
        }


class PipelineError(Exception):
    """A run ended without advancing the checkpoint. Carries the run summary."""

    def __init__(self, message: str, summary: RunSummary):
        super().__init__(message)
        self.summary = summary


class PartialRunError(PipelineError):
    """Some sub-batches failed terminally; committed batches stay committed."""
    pass


class SyncPipeline:
    def __init__(
        self,
        config: SyncConfig,
        store: Optional[RecordStore] = None,
        fetcher: Optional[RateLimitedFetcher] = None,
        logger: Optional[StructuredLogger] = None,
        cancel_event: Optional[threading.Event] = None,
    ):
        config.validate()
        self.config = config
        self.logger = logger or get_logger()
        self.cancel_event = cancel_event or threading.Event()
        self.store = store or RecordStore(config.db_url)
        self.ledger = RunLedger(self.store)
        self.fetcher = fetcher or RateLimitedFetcher(
            config.fetch, logger=self.logger, cancel_event=self.cancel_event
        )
        self.upserter = IdempotentUpserter(
            self.store, config.upsert, logger=self.logger, cancel_event=self.cancel_event
        )
        self.reconciler = DeletionReconciler(self.fetcher, self.store, logger=self.logger)
        self.scorer = ScoringEngine(self.store, config, logger=self.logger, cancel_event=self.cancel_event)
        self.cursor = CursorTracker(self.ledger, config.scope_id, config.safety_overlap_seconds)

    def cancel(self) -> None:
        self.cancel_event.set()

    def run(self) -> RunSummary:
        scope = self.config.scope_id
        summary = RunSummary(scope_id=scope)
        summary.run_id = self.ledger.open_run(scope)
        self.logger.info("Run opened", run_id=summary.run_id, scope=scope)

        try:
            summary.since = self.cursor.resume_point()
            resolver = IdentityResolver(self.store.load_identities())
            if not len(resolver):
                self.logger.warning("No participant identities loaded; every link will be unresolved", scope=scope)

            self._sync(summary, resolver)
            if summary.failed_keys:
                raise PartialRunError(
                    f"{len(summary.failed_keys)} row(s) could not be written", summary
                )

            check_cancelled(self.cancel_event)
            self._reconcile(summary)

            check_cancelled(self.cancel_event)
            scored = self.scorer.score_run(summary.run_id, scope)
            summary.counts.entries_written = scored.entries_written
            summary.counts.identity_misses = scored.unresolved

            check_cancelled(self.cancel_event)
            summary.watermark = self.ledger.close_run(summary.run_id, summary.watermark, summary.counts)
            summary.status = OK
            self.logger.info("Run closed", **summary.as_status())
            return summary

        except RunCancelled as e:
            summary.status = CANCELLED
            summary.error = str(e)
            self._mark_failed(summary)
            raise PipelineError(str(e), summary) from e
        except PipelineError as e:
            summary.status = PARTIAL
            summary.error = str(e)
            self._mark_failed(summary)
            raise
        except Exception as e:
            summary.status = FAILED
            summary.error = f"{type(e).__name__}: {e}"
            self._mark_failed(summary)
            raise PipelineError(summary.error, summary) from e

    def _sync(self, summary: RunSummary, resolver: IdentityResolver) -> None:
        counts = summary.counts
        for page in self.fetcher.iter_pages(self.config.source, summary.since):
            check_cancelled(self.cancel_event)

            records: List[Record] = []
            for raw in page:
                errors = validate_observation(raw)
                if errors:
                    summary.skipped_invalid += 1
                    self.logger.warning(
                        "Skipping invalid observation",
                        id=raw.get("id") if isinstance(raw, dict) else None,
                        errors=errors,
                    )
                    continue
                records.append(normalize_observation(raw))
            counts.records_fetched += len(page)

            written = self.upserter.upsert(Observation, [r.to_row() for r in records], ["external_id"])
            counts.records_upserted += written.written
            self.logger.record_upserted(written.written)
            summary.failed_keys.extend(written.failed_keys)

            failed = set(written.failed_keys)
            stored = [r for r in records if r.external_id not in failed]
            links, misses = build_links(self.config.scope_id, stored, resolver, self.config.novelty)
            if misses:
                self.logger.debug("Unresolved participants on page", count=len(misses))
            linked = self.upserter.upsert(ParticipantLink, links, ["scope_id", "external_id"])
            summary.failed_keys.extend(linked.failed_keys)

            for record in stored:
                if summary.watermark is None or record.updated_at > summary.watermark:
                    summary.watermark = record.updated_at

            self.ledger.update_counts(summary.run_id, counts)

        self.logger.info("Sync phase complete", fetched=counts.records_fetched,
                         upserted=counts.records_upserted, skipped=summary.skipped_invalid)

    def _reconcile(self, summary: RunSummary) -> None:
        if self.config.skip_deletions:
            summary.reconcile_strategy = SKIPPED
            return
        result = self.reconciler.reconcile(
            self.config.source, summary.since, self.config.scope_id, until=summary.watermark
        )
        summary.reconcile_strategy = result.strategy
        summary.counts.records_deleted = result.deleted
        self.logger.record_deleted(result.deleted)

    def _mark_failed(self, summary: RunSummary) -> None:
        self.logger.error("Run failed; checkpoint not advanced", **summary.as_status())
        try:
            self.ledger.fail_run(summary.run_id, summary.error or summary.status, summary.counts)
        except SQLAlchemyError as e:
            self.logger.error("Could not record run failure", run_id=summary.run_id, error=str(e))
