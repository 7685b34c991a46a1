"""
Batch read/write interface to the relational store.

All writes go through dialect ``INSERT ... ON CONFLICT DO UPDATE`` or
scoped deletes; SQLAlchemy errors are classified here into
``StoreTimeoutError`` (eligible for bisection) and ``StoreWriteError``.
"""

import json
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Sequence, Set

from sqlalchemy import delete, func, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import DBAPIError, SQLAlchemyError

from .database import (
    DatabaseTarget,
    Observation,
    ParticipantIdentity,
    ParticipantLink,
    ScoreEntry,
    get_engine,
    session_factory,
)
from .normalize import Record, ensure_utc, to_db_time
from .retry import is_transient_error

DELETE_CHUNK = 500

TIMEOUT_MARKERS = (
    "timeout",
    "timed out",
    "database is locked",
    "canceling statement",
    "lock wait",
)


class StoreWriteError(Exception):
    """A store write failed. ``transient`` errors may be retried."""

    def __init__(self, message: str, transient: bool = False):
        super().__init__(message)
        self.transient = transient


class StoreTimeoutError(StoreWriteError):
    """A write hit a timeout-class error; the batch may be split and retried."""

    def __init__(self, message: str):
        super().__init__(message, transient=True)


def classify_store_error(exc: Exception) -> StoreWriteError:
    message = str(exc).lower()
    if any(marker in message for marker in TIMEOUT_MARKERS):
        return StoreTimeoutError(str(exc))
    transient = is_transient_error(exc) or bool(
        isinstance(exc, DBAPIError) and exc.connection_invalidated
    )
    return StoreWriteError(str(exc), transient=transient)


@dataclass(frozen=True)
class ScopedRecord:
    """A linked record as seen by the scoring engine."""

    participant_id: Optional[str]
    novelty_key: Optional[str]
    record: Record


def record_from_row(row: Observation) -> Record:
    return Record(
        external_id=row.external_id,
        updated_at=ensure_utc(row.updated_at),
        participant_ref=row.participant_ref,
        participant_login=row.participant_login,
        category_ref=row.category_ref,
        taxon_rank=row.taxon_rank,
        observed_at=ensure_utc(row.observed_at),
        created_at=ensure_utc(row.created_at),
        latitude=row.latitude,
        longitude=row.longitude,
        quality_tier=row.quality_tier,
        species_guess=row.species_guess,
        raw_payload=row.raw_payload or {},
    )


def _chunks(items: Sequence[Any], size: int) -> Iterable[Sequence[Any]]:
    for i in range(0, len(items), size):
        yield items[i:i + size]


class RecordStore:
    """Store operations used by the sync and scoring engines."""

    def __init__(self, target: DatabaseTarget):
        self.engine = get_engine(target)
        self._sessions = session_factory(target)

    @property
    def dialect(self) -> str:
        return self.engine.dialect.name

    def session(self):
        return self._sessions()

    def transaction(self):
        """Session context that commits on exit and rolls back on error."""
        return self._sessions.begin()

    def _insert(self, table):
        if self.dialect == "postgresql":
            return pg_insert(table)
        if self.dialect == "sqlite":
            return sqlite_insert(table)
        raise StoreWriteError(f"Upsert not supported for dialect '{self.dialect}'")

    # Writes

    def upsert_rows(self, model, rows: Sequence[Dict[str, Any]], conflict_keys: Sequence[str]) -> int:
        """
        Insert rows, replacing every non-key column on key conflict.

        Repeating the same call leaves the table unchanged.
        """
        if not rows:
            return 0
        table = model.__table__
        columns = list(rows[0].keys())
        missing = [k for k in conflict_keys if k not in columns]
        if missing:
            raise ValueError(f"Rows for {table.name} lack conflict key(s): {missing}")

        stmt = self._insert(table).values(list(rows))
        update_cols = [c for c in columns if c not in conflict_keys]
        if update_cols:
            stmt = stmt.on_conflict_do_update(
                index_elements=[table.c[k] for k in conflict_keys],
                set_={c: stmt.excluded[c] for c in update_cols},
            )
        else:
            stmt = stmt.on_conflict_do_nothing(index_elements=[table.c[k] for k in conflict_keys])

        try:
            with self._sessions.begin() as session:
                session.execute(stmt)
        except SQLAlchemyError as e:
            raise classify_store_error(e) from e
        return len(rows)

    def delete_records(self, external_ids: Iterable[str]) -> int:
        """Delete records and their links. Returns the number of records removed."""
        ids = sorted(set(external_ids))
        if not ids:
            return 0
        removed = 0
        try:
            with self._sessions.begin() as session:
                for chunk in _chunks(ids, DELETE_CHUNK):
                    session.execute(delete(ParticipantLink).where(ParticipantLink.external_id.in_(chunk)))
                    result = session.execute(delete(Observation).where(Observation.external_id.in_(chunk)))
                    removed += result.rowcount or 0
        except SQLAlchemyError as e:
            raise classify_store_error(e) from e
        return removed

    def withdraw_from_scope(self, scope_id: str, external_ids: Iterable[str]) -> int:
        """
        Drop a scope's links to ``external_ids``.

        A record is deleted only once no scope links it any more. Returns
        the number of links removed.
        """
        ids = sorted(set(external_ids))
        if not ids:
            return 0
        removed = 0
        try:
            with self._sessions.begin() as session:
                for chunk in _chunks(ids, DELETE_CHUNK):
                    result = session.execute(
                        delete(ParticipantLink).where(
                            ParticipantLink.scope_id == scope_id,
                            ParticipantLink.external_id.in_(chunk),
                        )
                    )
                    removed += result.rowcount or 0
                    still_linked = select(ParticipantLink.external_id).where(
                        ParticipantLink.external_id.in_(chunk)
                    )
                    session.execute(
                        delete(Observation).where(
                            Observation.external_id.in_(chunk),
                            Observation.external_id.not_in(still_linked),
                        )
                    )
        except SQLAlchemyError as e:
            raise classify_store_error(e) from e
        return removed

    def replace_score_entries(self, run_id: int, entries: Sequence[Dict[str, Any]]) -> int:
        """Wipe and rebuild the entries of one run inside a single transaction."""
        rows = [
            {
                "run_id": run_id,
                "participant_id": e["participant_id"],
                "breakdown_json": json.dumps(e["breakdown"], sort_keys=True, separators=(",", ":")),
                "total_points": e["total_points"],
            }
            for e in entries
        ]
        try:
            with self._sessions.begin() as session:
                session.execute(delete(ScoreEntry).where(ScoreEntry.run_id == run_id))
                if rows:
                    session.execute(ScoreEntry.__table__.insert(), rows)
        except SQLAlchemyError as e:
            raise classify_store_error(e) from e
        return len(rows)

    # Reads

    def existing_ids(self, external_ids: Iterable[str]) -> Set[str]:
        ids = sorted(set(external_ids))
        found: Set[str] = set()
        with self._sessions() as session:
            for chunk in _chunks(ids, DELETE_CHUNK):
                found.update(
                    session.scalars(select(Observation.external_id).where(Observation.external_id.in_(chunk)))
                )
        return found

    def ids_updated_between(
        self,
        since: datetime,
        until: Optional[datetime] = None,
        scope_id: Optional[str] = None,
    ) -> Set[str]:
        """
        Ids of stored records whose ``updated_at`` lies in ``[since, until]``.

        With ``scope_id``, only records linked to that scope.
        """
        query = select(Observation.external_id).where(Observation.updated_at >= to_db_time(since))
        if scope_id is not None:
            query = query.join(
                ParticipantLink, ParticipantLink.external_id == Observation.external_id
            ).where(ParticipantLink.scope_id == scope_id)
        if until is not None:
            query = query.where(Observation.updated_at <= to_db_time(until))
        with self._sessions() as session:
            return set(session.scalars(query))

    def get_record(self, external_id: str) -> Optional[Record]:
        with self._sessions() as session:
            row = session.get(Observation, external_id)
            return record_from_row(row) if row is not None else None

    def load_scope(self, scope_id: str) -> List[ScopedRecord]:
        """Included links of a scope joined to their records, in key order."""
        query = (
            select(ParticipantLink, Observation)
            .join(Observation, Observation.external_id == ParticipantLink.external_id)
            .where(ParticipantLink.scope_id == scope_id, ParticipantLink.included.is_(True))
            .order_by(ParticipantLink.external_id)
        )
        with self._sessions() as session:
            return [
                ScopedRecord(
                    participant_id=link.participant_id,
                    novelty_key=link.novelty_key,
                    record=record_from_row(obs),
                )
                for link, obs in session.execute(query)
            ]

    def load_identities(self, provider: str = "inat") -> List[Dict[str, Optional[str]]]:
        query = (
            select(ParticipantIdentity)
            .where(ParticipantIdentity.provider == provider)
            .order_by(ParticipantIdentity.participant_id)
        )
        with self._sessions() as session:
            return [
                {
                    "participant_id": row.participant_id,
                    "external_user_id": row.external_user_id,
                    "external_username": row.external_username,
                }
                for row in session.scalars(query)
            ]

    def score_entries(self, run_id: int) -> List[ScoreEntry]:
        query = select(ScoreEntry).where(ScoreEntry.run_id == run_id).order_by(ScoreEntry.participant_id)
        with self._sessions() as session:
            return list(session.scalars(query))

    def count(self, model) -> int:
        with self._sessions() as session:
            return session.scalar(select(func.count()).select_from(model)) or 0
