"""
Canonical record shape and the mapping from upstream observation JSON.

This is the only module that reads the untyped upstream payload. Every
optional field is modelled as nullable; a missing nested object never
fails normalization.
"""

import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

# Date-only observations are pinned to this UTC hour.
DATE_ONLY_HOUR_UTC = 18


@dataclass(frozen=True)
class Record:
    """One externally sourced observation."""

    external_id: str
    updated_at: datetime
    participant_ref: Optional[str] = None
    participant_login: Optional[str] = None
    category_ref: Optional[int] = None
    taxon_rank: Optional[str] = None
    observed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    quality_tier: Optional[str] = None
    species_guess: Optional[str] = None
    raw_payload: Dict[str, Any] = field(default_factory=dict, compare=False)

    @property
    def recorded_at(self) -> Optional[datetime]:
        """Best available time the observation was made."""
        return self.observed_at or self.created_at or self.updated_at

    def to_row(self) -> Dict[str, Any]:
        return {
            "external_id": self.external_id,
            "participant_ref": self.participant_ref,
            "participant_login": self.participant_login,
            "category_ref": self.category_ref,
            "taxon_rank": self.taxon_rank,
            "observed_at": to_db_time(self.observed_at),
            "updated_at": to_db_time(self.updated_at),
            "created_at": to_db_time(self.created_at),
            "latitude": self.latitude,
            "longitude": self.longitude,
            "quality_tier": self.quality_tier,
            "species_guess": self.species_guess,
            "raw_payload": self.raw_payload,
        }


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """Naive values are taken as UTC; aware values are converted to UTC."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def to_db_time(dt: Optional[datetime]) -> Optional[datetime]:
    """Store timestamps as naive UTC so every dialect compares them the same way."""
    if dt is None:
        return None
    return ensure_utc(dt).replace(tzinfo=None)


def isoformat_z(dt: datetime) -> str:
    return ensure_utc(dt).isoformat().replace("+00:00", "Z")


def parse_timestamp(value: Any) -> Optional[datetime]:
    if not isinstance(value, str) or not value.strip():
        return None
    try:
        return ensure_utc(datetime.fromisoformat(value.strip().replace("Z", "+00:00")))
    except ValueError:
        return None


def _finite(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        f = float(value)
    except (TypeError, ValueError):
        return None
    return f if math.isfinite(f) else None


def extract_coordinates(obs: Dict[str, Any]) -> Tuple[Optional[float], Optional[float]]:
    """
    Return ``(latitude, longitude)``.

    Prefers ``geojson.coordinates`` (``[lon, lat]``), falls back to the
    ``"lat,lon"`` location string. If either value is unusable both are None.
    """
    geojson = obs.get("geojson")
    coords = geojson.get("coordinates") if isinstance(geojson, dict) else None
    if isinstance(coords, (list, tuple)) and len(coords) >= 2:
        lat, lon = _finite(coords[1]), _finite(coords[0])
    elif isinstance(obs.get("location"), str) and "," in obs["location"]:
        lat_s, lon_s = obs["location"].split(",", 1)
        lat, lon = _finite(lat_s.strip()), _finite(lon_s.strip())
    else:
        return None, None

    if lat is None or lon is None:
        return None, None
    return lat, lon


def observed_time(obs: Dict[str, Any]) -> Optional[datetime]:
    observed = parse_timestamp(obs.get("time_observed_at"))
    if observed is not None:
        return observed
    day = obs.get("observed_on")
    if isinstance(day, str) and len(day) >= 10:
        return parse_timestamp(f"{day[:10]}T{DATE_ONLY_HOUR_UTC:02d}:00:00Z")
    return None


def _nested(obs: Dict[str, Any], key: str) -> Dict[str, Any]:
    value = obs.get(key)
    return value if isinstance(value, dict) else {}


def _str_or_none(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _int_or_none(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def normalize_observation(obs: Dict[str, Any]) -> Record:
    """
    Map one upstream observation to a canonical Record.

    Callers validate ``id`` and ``updated_at`` first (see schema.py); a
    missing ``updated_at`` here falls back to the epoch rather than raising.
    """
    user = _nested(obs, "user")
    taxon = _nested(obs, "taxon")
    lat, lon = extract_coordinates(obs)
    login = _str_or_none(user.get("login"))

    return Record(
        external_id=str(obs["id"]),
        updated_at=parse_timestamp(obs.get("updated_at")) or EPOCH,
        participant_ref=_str_or_none(user.get("id")),
        participant_login=login.lower() if login else None,
        category_ref=_int_or_none(taxon.get("id")),
        taxon_rank=_str_or_none(taxon.get("rank")),
        observed_at=observed_time(obs),
        created_at=parse_timestamp(obs.get("created_at")),
        latitude=lat,
        longitude=lon,
        quality_tier=_str_or_none(obs.get("quality_grade")),
        species_guess=_str_or_none(obs.get("species_guess")),
        raw_payload=obs,
    )
