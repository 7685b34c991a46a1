"""
Adaptive batched upserts.

Rows are merged by their conflict key, so replaying a batch is a no-op.
Each batch gets a few immediate retries on transient store errors; a batch
that keeps timing out is bisected and each half is written on its own until
halves drop to the minimum size. Whatever still fails is reported in the
result, never swallowed.
"""

import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from .config import UpsertSettings
from .logger import StructuredLogger, get_logger
from .retry import check_cancelled
from .storage import RecordStore, StoreTimeoutError, StoreWriteError


@dataclass
class UpsertResult:
    written: int = 0
    failed_keys: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    attempts: int = 0
    bisections: int = 0

    @property
    def ok(self) -> bool:
        return not self.failed_keys

    def merge(self, other: "UpsertResult") -> "UpsertResult":
        self.written += other.written
        self.failed_keys.extend(other.failed_keys)
        self.errors.extend(other.errors)
        self.attempts += other.attempts
        self.bisections += other.bisections
        return self


def dedupe_last(rows: Sequence[Dict[str, Any]], conflict_keys: Sequence[str]) -> List[Dict[str, Any]]:
    """Keep one row per key: the last one seen."""
    latest: Dict[tuple, Dict[str, Any]] = {}
    for row in rows:
        latest[tuple(row[k] for k in conflict_keys)] = row
    return list(latest.values())


def _key_label(row: Dict[str, Any], conflict_keys: Sequence[str]) -> str:
    return "|".join(str(row[k]) for k in conflict_keys)


class IdempotentUpserter:
    def __init__(
        self,
        store: RecordStore,
        settings: Optional[UpsertSettings] = None,
        logger: Optional[StructuredLogger] = None,
        cancel_event: Optional[threading.Event] = None,
    ):
        self.store = store
        self.settings = settings or UpsertSettings()
        self.logger = logger or get_logger()
        self.cancel_event = cancel_event

    def upsert(self, model, rows: Sequence[Dict[str, Any]], conflict_keys: Sequence[str]) -> UpsertResult:
        """
        Write ``rows`` in batches of at most ``batch_size``.

        Batches run on a pool of ``max_workers`` threads; they share nothing
        but the (read-only) settings.
        """
        rows = dedupe_last(rows, conflict_keys)
        size = self.settings.batch_size
        batches = [rows[i:i + size] for i in range(0, len(rows), size)]
        result = UpsertResult()
        if not batches:
            return result

        if self.settings.max_workers <= 1 or len(batches) == 1:
            for batch in batches:
                check_cancelled(self.cancel_event)
                result.merge(self._write(model, batch, conflict_keys))
            return result

        with ThreadPoolExecutor(max_workers=self.settings.max_workers) as executor:
            futures = []
            for batch in batches:
                check_cancelled(self.cancel_event)
                futures.append(executor.submit(self._write, model, batch, conflict_keys))
            for future in as_completed(futures):
                result.merge(future.result())
        return result

    def _write(self, model, batch: List[Dict[str, Any]], conflict_keys: Sequence[str]) -> UpsertResult:
        table = model.__tablename__
        retries = self.settings.immediate_retries
        attempts = 0
        last_error: Optional[StoreWriteError] = None

        for attempt in range(retries + 1):
            check_cancelled(self.cancel_event)
            attempts += 1
            try:
                written = self.store.upsert_rows(model, batch, conflict_keys)
                return UpsertResult(written=written, attempts=attempts)
            except StoreWriteError as e:
                last_error = e
                if not e.transient:
                    break
                if attempt < retries:
                    self.logger.record_retry(type(e).__name__)
                    self.logger.warning("Store write failed, retrying batch", table=table,
                                        rows=len(batch), attempt=attempt + 1, error=str(e))

        if isinstance(last_error, StoreTimeoutError) and len(batch) > self.settings.min_batch_size:
            mid = len(batch) // 2
            self.logger.warning("Store write timed out, bisecting batch", table=table,
                                rows=len(batch), halves=[mid, len(batch) - mid])
            result = UpsertResult(attempts=attempts, bisections=1)
            result.merge(self._write(model, batch[:mid], conflict_keys))
            result.merge(self._write(model, batch[mid:], conflict_keys))
            return result

        self.logger.record_error(type(last_error).__name__)
        self.logger.error("Store write failed for sub-batch", table=table, rows=len(batch),
                          error=str(last_error))
        return UpsertResult(
            failed_keys=[_key_label(row, conflict_keys) for row in batch],
            errors=[str(last_error)],
            attempts=attempts,
        )
