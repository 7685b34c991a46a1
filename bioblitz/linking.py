"""
Identity resolution and ParticipantLink derivation.

A record is linked to a scope whether or not its author resolves to a
participant; unresolved links keep ``participant_id = None`` and are
skipped at scoring time.
"""

import math
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional, Tuple

from .config import NoveltyRubric
from .normalize import Record


def round_coord(value: Optional[float], decimals: int) -> Optional[float]:
    if value is None or not math.isfinite(value):
        return None
    # + 0.0 folds -0.0 into 0.0
    return round(value, decimals) + 0.0


def time_bucket_start(when: datetime, width_hours: float) -> datetime:
    width = width_hours * 3600.0
    seconds = when.timestamp()
    return datetime.fromtimestamp(math.floor(seconds / width) * width, tz=timezone.utc)


def novelty_key(record: Record, rubric: NoveltyRubric) -> Optional[str]:
    """
    Bucket key ``taxon|lat,lon|bucket-start`` for novelty ranking.

    None when novelty is disabled or the record is not eligible: coarser
    than species rank, quality tier not accepted, or no usable location.
    """
    if not rubric.enabled:
        return None
    if record.category_ref is None:
        return None
    if (record.taxon_rank or "") not in rubric.eligible_ranks:
        return None
    if (record.quality_tier or "") not in rubric.require_quality:
        return None

    decimals = rubric.geo_round_decimals
    lat = round_coord(record.latitude, decimals)
    lon = round_coord(record.longitude, decimals)
    if lat is None or lon is None:
        return None

    when = record.recorded_at
    if when is None:
        return None
    bucket = time_bucket_start(when, rubric.time_bucket_hours)
    return f"{record.category_ref}|{lat:.{decimals}f},{lon:.{decimals}f}|{bucket.isoformat().replace('+00:00', 'Z')}"


class IdentityResolver:
    """Upstream account → participant, by user id first, then by login."""

    def __init__(self, identities: Iterable[Dict[str, Optional[str]]]):
        self.by_id: Dict[str, str] = {}
        self.by_login: Dict[str, str] = {}
        for row in identities:
            participant = row.get("participant_id")
            if not participant:
                continue
            if row.get("external_user_id"):
                self.by_id[str(row["external_user_id"]).strip()] = participant
            if row.get("external_username"):
                self.by_login[str(row["external_username"]).strip().lower()] = participant

    def __len__(self) -> int:
        return len(set(self.by_id.values()) | set(self.by_login.values()))

    def resolve(self, record: Record) -> Optional[str]:
        if record.participant_ref and record.participant_ref in self.by_id:
            return self.by_id[record.participant_ref]
        if record.participant_login:
            return self.by_login.get(record.participant_login.lower())
        return None


def build_links(
    scope_id: str,
    records: Iterable[Record],
    resolver: IdentityResolver,
    rubric: NoveltyRubric,
) -> Tuple[List[Dict[str, object]], List[str]]:
    """
    Link rows for ``records`` plus the external ids whose author did not resolve.
    """
    rows: List[Dict[str, object]] = []
    misses: List[str] = []
    for record in records:
        participant = resolver.resolve(record)
        if participant is None:
            misses.append(record.external_id)
        rows.append({
            "scope_id": scope_id,
            "external_id": record.external_id,
            "participant_id": participant,
            "included": True,
            "novelty_key": novelty_key(record, rubric),
        })
    return rows, misses
