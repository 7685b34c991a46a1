"""
Run ledger: ScoreRun lifecycle and the persisted sync checkpoint.

The checkpoint only moves on ``close_run`` and never moves backwards, so a
failed or cancelled run leaves the next invocation resuming from the same
place.
"""

from dataclasses import asdict, dataclass
from datetime import datetime
from typing import List, Optional

from sqlalchemy import select

from .database import Checkpoint, ScoreRun
from .normalize import ensure_utc, isoformat_z, parse_timestamp, to_db_time, utc_now
from .storage import RecordStore


class LedgerError(Exception):
    """Invalid run state transition."""
    pass


@dataclass
class RunCounts:
    records_fetched: int = 0
    records_upserted: int = 0
    records_deleted: int = 0
    entries_written: int = 0
    identity_misses: int = 0

    def as_dict(self) -> dict:
        return asdict(self)


def checkpoint_key(scope_id: str) -> str:
    return f"watermark:{scope_id}"


class RunLedger:
    def __init__(self, store: RecordStore):
        self.store = store

    def open_run(self, scope_id: str) -> int:
        with self.store.transaction() as session:
            run = ScoreRun(scope_id=scope_id, started_at=to_db_time(utc_now()), status="open")
            session.add(run)
            session.flush()
            return run.run_id

    def get_run(self, run_id: int) -> Optional[ScoreRun]:
        with self.store.session() as session:
            return session.get(ScoreRun, run_id)

    def update_counts(self, run_id: int, counts: RunCounts) -> None:
        with self.store.transaction() as session:
            run = self._require(session, run_id)
            self._apply_counts(run, counts)

    def close_run(self, run_id: int, watermark: Optional[datetime], counts: RunCounts) -> Optional[datetime]:
        """
        Close a run and advance the scope checkpoint.

        The stored watermark is ``max(previous checkpoint, watermark)``.
        Returns the watermark recorded on the run.
        """
        with self.store.transaction() as session:
            run = self._require(session, run_id)
            if run.status != "open":
                raise LedgerError(f"Run {run_id} is already {run.status}")

            key = checkpoint_key(run.scope_id)
            checkpoint = session.get(Checkpoint, key)
            previous = parse_timestamp(checkpoint.value) if checkpoint else None
            candidates = [w for w in (previous, ensure_utc(watermark)) if w is not None]
            through = max(candidates) if candidates else None

            now = utc_now()
            run.ended_at = to_db_time(now)
            run.status = "closed"
            run.error = None
            run.watermark_through = to_db_time(through)
            self._apply_counts(run, counts)

            if through is not None:
                if checkpoint is None:
                    session.add(Checkpoint(key=key, value=isoformat_z(through), updated_at=to_db_time(now)))
                else:
                    checkpoint.value = isoformat_z(through)
                    checkpoint.updated_at = to_db_time(now)
            return through

    def fail_run(self, run_id: int, error: str, counts: Optional[RunCounts] = None) -> None:
        with self.store.transaction() as session:
            run = self._require(session, run_id)
            if run.status == "closed":
                raise LedgerError(f"Run {run_id} is already closed")
            run.status = "failed"
            run.ended_at = to_db_time(utc_now())
            run.error = error[:2000]
            if counts is not None:
                self._apply_counts(run, counts)

    def last_watermark(self, scope_id: str) -> Optional[datetime]:
        """Checkpoint for the scope, else the latest closed run's watermark."""
        with self.store.session() as session:
            checkpoint = session.get(Checkpoint, checkpoint_key(scope_id))
            if checkpoint is not None:
                return parse_timestamp(checkpoint.value)
            query = (
                select(ScoreRun.watermark_through)
                .where(
                    ScoreRun.scope_id == scope_id,
                    ScoreRun.status == "closed",
                    ScoreRun.watermark_through.is_not(None),
                )
                .order_by(ScoreRun.run_id.desc())
                .limit(1)
            )
            return ensure_utc(session.scalar(query))

    def recent_runs(self, scope_id: Optional[str] = None, limit: int = 10) -> List[ScoreRun]:
        query = select(ScoreRun).order_by(ScoreRun.run_id.desc()).limit(limit)
        if scope_id:
            query = query.where(ScoreRun.scope_id == scope_id)
        with self.store.session() as session:
            return list(session.scalars(query))

    @staticmethod
    def _require(session, run_id: int) -> ScoreRun:
        run = session.get(ScoreRun, run_id)
        if run is None:
            raise LedgerError(f"Unknown run {run_id}")
        return run

    @staticmethod
    def _apply_counts(run: ScoreRun, counts: RunCounts) -> None:
        for name, value in counts.as_dict().items():
            setattr(run, name, value)
