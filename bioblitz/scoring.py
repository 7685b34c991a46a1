"""
Deterministic per-participant scoring.

One run goes through ``collect -> bucket-novelty -> suppress-duplicates ->
aggregate -> write``. Every step orders its inputs explicitly, so the same
record/link set always produces the same entries, and the write replaces
the run's entries wholesale.

Invariant:
Given identical inputs and configuration, ``compute`` returns identical
entries (same participants, breakdowns and totals).
"""

import math
import threading
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Dict, List, Optional, Sequence, Tuple

from .config import DuplicateRubric, NoveltyRubric, ScoringWeights, SyncConfig
from .linking import novelty_key, round_coord
from .logger import StructuredLogger, get_logger
from .normalize import Record
from .retry import RetryPolicy, exponential_backoff
from .storage import RecordStore, ScopedRecord, StoreWriteError


@dataclass(frozen=True)
class ParticipantScore:
    participant_id: str
    breakdown: Dict[str, object]
    total_points: float

    def as_entry(self) -> Dict[str, object]:
        return {
            "participant_id": self.participant_id,
            "breakdown": self.breakdown,
            "total_points": self.total_points,
        }


@dataclass
class ScoreResult:
    run_id: int
    scores: List[ParticipantScore] = field(default_factory=list)
    unresolved: int = 0
    entries_written: int = 0


def _time_order(record: Record) -> Tuple[float, str]:
    when = record.recorded_at
    return (when.timestamp() if when else float("-inf"), record.external_id)


def collect(scoped: Sequence[ScopedRecord]) -> Tuple[Dict[str, List[Record]], int]:
    """Group records by participant; unresolved links are counted and dropped."""
    grouped: Dict[str, List[Record]] = defaultdict(list)
    unresolved = 0
    for item in scoped:
        if not item.participant_id:
            unresolved += 1
            continue
        grouped[item.participant_id].append(item.record)
    for records in grouped.values():
        records.sort(key=lambda r: r.external_id)
    return dict(grouped), unresolved


def rank_novelty(grouped: Dict[str, List[Record]], rubric: NoveltyRubric) -> Tuple[Dict[str, float], Dict[str, int]]:
    """
    Rank eligible records inside each novelty bucket, earliest first.

    Returns ``(novelty points per participant, rank per external_id)``.
    Rank N earns ``rank_points[N-1]``; ranks past the table earn ``after_points``.
    """
    buckets: Dict[str, List[Tuple[Tuple[float, str], str, str]]] = defaultdict(list)
    for participant_id, records in grouped.items():
        for record in records:
            key = novelty_key(record, rubric)
            if key is not None:
                buckets[key].append((_time_order(record), record.external_id, participant_id))

    points: Dict[str, List[float]] = defaultdict(list)
    ranks: Dict[str, int] = {}
    for key in sorted(buckets):
        for rank, (_, external_id, participant_id) in enumerate(sorted(buckets[key]), start=1):
            ranks[external_id] = rank
            if rank <= len(rubric.rank_points):
                points[participant_id].append(rubric.rank_points[rank - 1])
            else:
                points[participant_id].append(rubric.after_points)

    totals = {participant_id: math.fsum(values) for participant_id, values in points.items()}
    return totals, ranks


def count_duplicates(records: Sequence[Record], rubric: DuplicateRubric) -> int:
    """
    Adjacent same-taxon pairs within the window at the same rounded spot.

    Only neighbours in time order are compared, so N identical observations
    in a row count N-1 duplicates.
    """
    timed = sorted((r for r in records if r.observed_at is not None), key=_time_order)
    window = timedelta(hours=rubric.window_hours)
    decimals = rubric.geo_round_decimals
    duplicates = 0
    for prev, curr in zip(timed, timed[1:]):
        if prev.category_ref is None or prev.category_ref != curr.category_ref:
            continue
        if curr.observed_at - prev.observed_at > window:
            continue
        spots = [
            round_coord(prev.latitude, decimals), round_coord(prev.longitude, decimals),
            round_coord(curr.latitude, decimals), round_coord(curr.longitude, decimals),
        ]
        if any(v is None for v in spots):
            continue
        if spots[0] == spots[2] and spots[1] == spots[3]:
            duplicates += 1
    return duplicates


def local_days(records: Sequence[Record], offset_hours: float) -> List[str]:
    """Distinct calendar days touched, in a fixed offset from UTC."""
    offset = timedelta(hours=offset_hours)
    return sorted({(r.observed_at + offset).date().isoformat() for r in records if r.observed_at is not None})


def aggregate(
    participant_id: str,
    records: Sequence[Record],
    novelty_sum: float,
    duplicates: int,
    config: SyncConfig,
) -> ParticipantScore:
    weights: ScoringWeights = config.weights
    observations = len(records)
    unique = len({r.category_ref for r in records if r.category_ref is not None})
    top_quality = sum(1 for r in records if r.quality_tier == weights.top_quality_tier)
    fine_rank = sum(1 for r in records if (r.taxon_rank or "") in config.novelty.eligible_ranks)
    days = local_days(records, weights.day_offset_hours)

    total = math.fsum([
        weights.volume * math.log1p(observations),
        weights.unique * math.log1p(unique),
        weights.quality * top_quality,
        weights.rank * fine_rank,
        weights.participation * len(days),
        novelty_sum,
        -duplicates * config.duplicates.penalty_each,
    ])

    breakdown = {
        "O": observations,
        "U": unique,
        "RG": top_quality,
        "SL": fine_rank,
        "D": len(days),
        "novelty_sum": round(novelty_sum, 6),
        "duplicates": duplicates,
        "per_day": days,
    }
    return ParticipantScore(
        participant_id=participant_id,
        breakdown=breakdown,
        total_points=round(total, weights.round_decimals),
    )


def compute(scoped: Sequence[ScopedRecord], config: SyncConfig) -> Tuple[List[ParticipantScore], int]:
    """Pure scoring of a run's linked records. Returns scores ordered by participant."""
    grouped, unresolved = collect(scoped)
    novelty, _ = rank_novelty(grouped, config.novelty)
    scores = []
    for participant_id in sorted(grouped):
        records = grouped[participant_id]
        duplicates = count_duplicates(records, config.duplicates)
        scores.append(aggregate(participant_id, records, novelty.get(participant_id, 0.0), duplicates, config))
    return scores, unresolved


class ScoringEngine:
    def __init__(
        self,
        store: RecordStore,
        config: SyncConfig,
        logger: Optional[StructuredLogger] = None,
        policy: Optional[RetryPolicy] = None,
        cancel_event: Optional[threading.Event] = None,
    ):
        self.store = store
        self.config = config
        self.logger = logger or get_logger()
        self.policy = policy or config.fetch.retry_policy()
        self.cancel_event = cancel_event

    def score_run(self, run_id: int, scope_id: Optional[str] = None) -> ScoreResult:
        """Recompute and replace every entry of ``run_id``. Safe to re-invoke."""
        scope_id = scope_id or self.config.scope_id
        scoped = self.store.load_scope(scope_id)
        scores, unresolved = compute(scoped, self.config)

        if unresolved:
            self.logger.record_identity_miss(unresolved)
            self.logger.warning("Skipping links without a resolved participant",
                                run_id=run_id, scope=scope_id, unresolved=unresolved)

        written = self._write(run_id, [s.as_entry() for s in scores])
        self.logger.record_entries(written)
        self.logger.info("Scored run", run_id=run_id, scope=scope_id,
                         participants=len(scores), linked=len(scoped))
        return ScoreResult(run_id=run_id, scores=scores, unresolved=unresolved, entries_written=written)

    def _write(self, run_id: int, entries: List[Dict[str, object]]) -> int:
        def on_retry(attempt, exc, delay):
            self.logger.record_retry(type(exc).__name__)
            self.logger.warning("Score write failed, retrying", run_id=run_id,
                                attempt=attempt, delay=delay, error=str(exc))

        replace = exponential_backoff(
            policy=self.policy,
            cancel_event=self.cancel_event,
            exceptions=(StoreWriteError,),
            on_retry=on_retry,
            retry_if=lambda e: getattr(e, "transient", False),
        )(self.store.replace_score_entries)
        return replace(run_id, entries)
