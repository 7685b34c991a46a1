"""
Run configuration.

A ``SyncConfig`` is built once at startup (from the environment, CLI flags
and an optional rubric file) and handed to every component. Nothing below
this module reads ``os.environ``.
"""

import json
import math
import os
from dataclasses import dataclass, field, replace
from datetime import date
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple

from .retry import RetryPolicy

UPSTREAM_MAX_PAGE_SIZE = 200
DEFAULT_API_BASE = "https://api.inaturalist.org/v1"

SPECIES_OR_FINER = ("species", "subspecies", "variety", "form")


class ConfigError(ValueError):
    """Missing or contradictory configuration. Raised before any I/O."""
    pass


@dataclass(frozen=True)
class SourceFilter:
    """Upstream filter window for one scope."""

    d1: Optional[date] = None
    d2: Optional[date] = None
    bbox: Optional[Tuple[float, float, float, float]] = None  # swlat, swlng, nelat, nelng
    user_ids: Tuple[str, ...] = ()
    project_id: Optional[str] = None

    def is_empty(self) -> bool:
        return not (self.d1 or self.d2 or self.bbox or self.user_ids or self.project_id)

    def to_params(self) -> Dict[str, str]:
        params: Dict[str, str] = {}
        if self.d1:
            params["d1"] = self.d1.isoformat()
        if self.d2:
            params["d2"] = self.d2.isoformat()
        if self.bbox:
            swlat, swlng, nelat, nelng = self.bbox
            params.update(
                swlat=repr(swlat), swlng=repr(swlng), nelat=repr(nelat), nelng=repr(nelng)
            )
        if self.user_ids:
            params["user_id"] = ",".join(self.user_ids)
        if self.project_id:
            params["project_id"] = self.project_id
        return params


@dataclass(frozen=True)
class FetchSettings:
    base_url: str = DEFAULT_API_BASE
    deleted_url: Optional[str] = None
    page_size: int = UPSTREAM_MAX_PAGE_SIZE
    pacing_interval: float = 1.0
    backoff_base: float = 1.0
    backoff_cap: float = 60.0
    max_retries: int = 5
    jitter: float = 0.25
    timeout: float = 30.0

    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_retries=self.max_retries,
            base_delay=self.backoff_base,
            max_delay=self.backoff_cap,
            jitter=self.jitter,
        )


@dataclass(frozen=True)
class UpsertSettings:
    batch_size: int = 200
    min_batch_size: int = 10
    immediate_retries: int = 2
    max_workers: int = 1


@dataclass(frozen=True)
class NoveltyRubric:
    enabled: bool = True
    geo_round_decimals: int = 2
    time_bucket_hours: float = 6.0
    rank_points: Tuple[float, ...] = (5.0, 3.0, 2.0, 1.0, 1.0, 0.5)
    after_points: float = 0.2
    require_quality: Tuple[str, ...] = ("needs_id", "research")
    eligible_ranks: Tuple[str, ...] = SPECIES_OR_FINER


@dataclass(frozen=True)
class DuplicateRubric:
    window_hours: float = 1.0
    penalty_each: float = 1.0
    geo_round_decimals: int = 2


@dataclass(frozen=True)
class ScoringWeights:
    volume: float = 6.0
    unique: float = 7.0
    quality: float = 1.5
    rank: float = 0.5
    participation: float = 3.0
    top_quality_tier: str = "research"
    # Local day boundary as a fixed offset from UTC (not system local time).
    day_offset_hours: float = -8.0
    round_decimals: int = 2


@dataclass(frozen=True)
class SyncConfig:
    scope_id: str
    db_url: str = "sqlite:///data/bioblitz.db"
    source: SourceFilter = field(default_factory=SourceFilter)
    fetch: FetchSettings = field(default_factory=FetchSettings)
    upsert: UpsertSettings = field(default_factory=UpsertSettings)
    novelty: NoveltyRubric = field(default_factory=NoveltyRubric)
    duplicates: DuplicateRubric = field(default_factory=DuplicateRubric)
    weights: ScoringWeights = field(default_factory=ScoringWeights)
    safety_overlap_seconds: float = 30.0
    skip_deletions: bool = False

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "SyncConfig":
        """Build a config from ``BIOBLITZ_*`` variables."""
        env = _Env(os.environ if environ is None else environ)

        pacing = env.get_float("PACING_INTERVAL")
        if pacing is None:
            rps = env.get_float("RATE_LIMIT_RPS")
            if rps is not None:
                if rps <= 0:
                    raise ConfigError("BIOBLITZ_RATE_LIMIT_RPS must be positive")
                pacing = 1.0 / rps

        fetch_defaults = FetchSettings()
        upsert_defaults = UpsertSettings()
        novelty_defaults = NoveltyRubric()
        dup_defaults = DuplicateRubric()
        weight_defaults = ScoringWeights()

        config = cls(
            scope_id=env.get_str("SCOPE_ID") or "",
            db_url=env.get_str("DB_URL") or cls.db_url,
            source=SourceFilter(
                d1=env.get_date("D1"),
                d2=env.get_date("D2"),
                bbox=env.get_bbox("BBOX"),
                user_ids=tuple(env.get_list("USER_IDS")),
                project_id=env.get_str("PROJECT_ID"),
            ),
            fetch=FetchSettings(
                base_url=env.get_str("API_BASE") or fetch_defaults.base_url,
                deleted_url=env.get_str("DELETED_URL"),
                page_size=env.get_int("PAGE_SIZE", fetch_defaults.page_size),
                pacing_interval=pacing if pacing is not None else fetch_defaults.pacing_interval,
                backoff_base=env.get_float("BACKOFF_BASE", fetch_defaults.backoff_base),
                backoff_cap=env.get_float("BACKOFF_CAP", fetch_defaults.backoff_cap),
                max_retries=env.get_int("MAX_RETRIES", fetch_defaults.max_retries),
                timeout=env.get_float("HTTP_TIMEOUT", fetch_defaults.timeout),
            ),
            upsert=UpsertSettings(
                batch_size=env.get_int("BATCH_SIZE", upsert_defaults.batch_size),
                min_batch_size=env.get_int("MIN_BATCH_SIZE", upsert_defaults.min_batch_size),
                immediate_retries=env.get_int("WRITE_RETRIES", upsert_defaults.immediate_retries),
                max_workers=env.get_int("WRITE_WORKERS", upsert_defaults.max_workers),
            ),
            novelty=replace(
                novelty_defaults,
                geo_round_decimals=env.get_int("GEO_ROUND", novelty_defaults.geo_round_decimals),
                time_bucket_hours=env.get_float("TIME_BUCKET_HOURS", novelty_defaults.time_bucket_hours),
            ),
            duplicates=replace(
                dup_defaults,
                window_hours=env.get_float("DUP_WINDOW_HOURS", dup_defaults.window_hours),
                penalty_each=env.get_float("DUP_PENALTY", dup_defaults.penalty_each),
            ),
            weights=replace(
                weight_defaults,
                volume=env.get_float("W_VOLUME", weight_defaults.volume),
                unique=env.get_float("W_UNIQUE", weight_defaults.unique),
                quality=env.get_float("W_QUALITY", weight_defaults.quality),
                rank=env.get_float("W_RANK", weight_defaults.rank),
                participation=env.get_float("W_PARTICIPATION", weight_defaults.participation),
                day_offset_hours=env.get_float("DAY_OFFSET_HOURS", weight_defaults.day_offset_hours),
            ),
            safety_overlap_seconds=env.get_float("SAFETY_OVERLAP_SECONDS", 30.0),
            skip_deletions=env.get_bool("SKIP_DELETIONS", False),
        )

        rubric_path = env.get_str("RUBRIC_FILE")
        if rubric_path:
            config = config.with_rubric(load_rubric(Path(rubric_path)))
        return config

    def with_rubric(self, rubric: Dict[str, Any]) -> "SyncConfig":
        """
        Overlay a rubric document on the scoring sections.

        The document uses the classroom rubric layout: ``novelty_bonus``,
        ``duplicates`` and ``scoring`` objects; unknown keys are ignored.
        """
        nb = rubric.get("novelty_bonus") or {}
        dup = rubric.get("duplicates") or {}
        sc = rubric.get("scoring") or {}

        novelty = replace(
            self.novelty,
            enabled=bool(nb.get("enabled", self.novelty.enabled)),
            geo_round_decimals=int(nb.get("geo_round_decimals", self.novelty.geo_round_decimals)),
            time_bucket_hours=float(nb.get("time_bucket_hours", self.novelty.time_bucket_hours)),
            rank_points=tuple(float(p) for p in nb.get("rank_points", self.novelty.rank_points)),
            after_points=float(nb.get("after_points", self.novelty.after_points)),
            require_quality=tuple(nb.get("require_quality", self.novelty.require_quality)),
        )
        duplicates = replace(
            self.duplicates,
            window_hours=float(dup.get("window_hours", self.duplicates.window_hours)),
            penalty_each=float(dup.get("penalty_each", self.duplicates.penalty_each)),
        )
        weights = replace(
            self.weights,
            volume=float(sc.get("volume_ln_k", self.weights.volume)),
            unique=float(sc.get("unique_ln_k", self.weights.unique)),
            quality=float(sc.get("research_grade_each", self.weights.quality)),
            rank=float(sc.get("species_or_lower_each", self.weights.rank)),
            participation=float(sc.get("day_participation_each", self.weights.participation)),
        )
        return replace(self, novelty=novelty, duplicates=duplicates, weights=weights)

    def validate(self) -> None:
        """Raise ConfigError on the first problem found."""
        errors = self.problems()
        if errors:
            raise ConfigError("; ".join(errors))

    def problems(self) -> List[str]:
        errors: List[str] = []
        if not self.scope_id.strip():
            errors.append("scope id is required")
        if self.source.is_empty():
            errors.append("at least one source filter (dates, bbox, users, project) is required")
        if self.source.d1 and self.source.d2 and self.source.d1 > self.source.d2:
            errors.append("d1 must not be after d2")
        if self.source.bbox:
            swlat, swlng, nelat, nelng = self.source.bbox
            if not all(math.isfinite(v) for v in self.source.bbox):
                errors.append("bbox coordinates must be finite")
            elif swlat > nelat or swlng > nelng:
                errors.append("bbox south-west corner must be below and left of north-east corner")
        if not 1 <= self.fetch.page_size <= UPSTREAM_MAX_PAGE_SIZE:
            errors.append(f"page size must be between 1 and {UPSTREAM_MAX_PAGE_SIZE}")
        if self.fetch.pacing_interval <= 0:
            errors.append("pacing interval must be positive")
        if self.fetch.max_retries < 0:
            errors.append("max retries must not be negative")
        if self.fetch.backoff_base <= 0 or self.fetch.backoff_base > self.fetch.backoff_cap:
            errors.append("backoff base must be positive and not exceed the cap")
        if self.upsert.min_batch_size < 1 or self.upsert.batch_size < 1:
            errors.append("batch sizes must be positive")
        elif self.upsert.min_batch_size > self.upsert.batch_size:
            errors.append("minimum batch size must not exceed batch size")
        if self.upsert.max_workers < 1:
            errors.append("write workers must be at least 1")
        if self.upsert.immediate_retries < 0:
            errors.append("write retries must not be negative")
        if not self.novelty.rank_points:
            errors.append("novelty rank points must not be empty")
        if self.novelty.time_bucket_hours <= 0:
            errors.append("novelty time bucket must be positive")
        if self.duplicates.window_hours < 0:
            errors.append("duplicate window must not be negative")
        if self.safety_overlap_seconds < 0:
            errors.append("safety overlap must not be negative")
        return errors


def load_rubric(path: Path) -> Dict[str, Any]:
    if not path.exists():
        raise ConfigError(f"Rubric file not found: {path}")
    try:
        with path.open("r", encoding="utf-8") as f:
            data = json.load(f)
    except json.JSONDecodeError as e:
        raise ConfigError(f"Rubric file is not valid JSON: {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError(f"Rubric file must hold a JSON object: {path}")
    # Rubric rows are sometimes stored wrapped as {"json": {...}}.
    return data.get("json", data) if isinstance(data.get("json"), dict) else data


class _Env:
    """Typed accessors over ``BIOBLITZ_*`` variables."""

    prefix = "BIOBLITZ_"

    def __init__(self, environ: Mapping[str, str]):
        self._environ = environ

    def get_str(self, name: str) -> Optional[str]:
        value = self._environ.get(self.prefix + name)
        if value is None or not value.strip():
            return None
        return value.strip()

    def get_int(self, name: str, default: int) -> int:
        raw = self.get_str(name)
        if raw is None:
            return default
        try:
            return int(raw)
        except ValueError:
            raise ConfigError(f"{self.prefix}{name} must be an integer, got {raw!r}")

    def get_float(self, name: str, default: Optional[float] = None) -> Optional[float]:
        raw = self.get_str(name)
        if raw is None:
            return default
        try:
            return float(raw)
        except ValueError:
            raise ConfigError(f"{self.prefix}{name} must be a number, got {raw!r}")

    def get_bool(self, name: str, default: bool) -> bool:
        raw = self.get_str(name)
        if raw is None:
            return default
        return raw.lower() in ("1", "true", "yes", "on")

    def get_list(self, name: str) -> List[str]:
        raw = self.get_str(name)
        if raw is None:
            return []
        return [part.strip() for part in raw.split(",") if part.strip()]

    def get_date(self, name: str) -> Optional[date]:
        raw = self.get_str(name)
        if raw is None:
            return None
        return parse_date(raw, self.prefix + name)

    def get_bbox(self, name: str) -> Optional[Tuple[float, float, float, float]]:
        raw = self.get_str(name)
        if raw is None:
            return None
        return parse_bbox(raw, self.prefix + name)


def parse_date(raw: str, label: str = "date") -> date:
    try:
        return date.fromisoformat(raw[:10])
    except ValueError:
        raise ConfigError(f"{label} must be YYYY-MM-DD, got {raw!r}")


def parse_bbox(raw: str, label: str = "bbox") -> Tuple[float, float, float, float]:
    parts = [p.strip() for p in raw.split(",")]
    if len(parts) != 4:
        raise ConfigError(f"{label} must be swlat,swlng,nelat,nelng")
    try:
        swlat, swlng, nelat, nelng = (float(p) for p in parts)
    except ValueError:
        raise ConfigError(f"{label} coordinates must be numbers, got {raw!r}")
    return swlat, swlng, nelat, nelng
