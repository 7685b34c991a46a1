"""
Database schema and connection management.

Uses SQLAlchemy; SQLite by default, any dialect with ``ON CONFLICT``
support (PostgreSQL) via a full database URL.
"""

import json
import threading
from pathlib import Path
from typing import Dict, Union

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    JSON,
    String,
    Text,
    UniqueConstraint,
    create_engine,
)
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker

Base = declarative_base()

DatabaseTarget = Union[str, Path]


class Observation(Base):
    """Synchronized upstream record. One row per external_id."""

    __tablename__ = "observations"

    external_id = Column(String, primary_key=True)
    participant_ref = Column(String, nullable=True)  # upstream user id
    participant_login = Column(String, nullable=True)
    category_ref = Column(Integer, nullable=True)  # taxon id
    taxon_rank = Column(String, nullable=True)
    observed_at = Column(DateTime, nullable=True)
    updated_at = Column(DateTime, nullable=False)
    created_at = Column(DateTime, nullable=True)
    latitude = Column(Float, nullable=True)
    longitude = Column(Float, nullable=True)
    quality_tier = Column(String, nullable=True)
    species_guess = Column(String, nullable=True)
    raw_payload = Column(JSON, nullable=True)

    __table_args__ = (Index("ix_observations_updated_at", "updated_at"),)


class ParticipantIdentity(Base):
    """Maps an upstream account to a participant."""

    __tablename__ = "participant_identities"

    id = Column(Integer, primary_key=True, autoincrement=True)
    participant_id = Column(String, nullable=False)
    provider = Column(String, nullable=False, default="inat")
    external_user_id = Column(String, nullable=True)
    external_username = Column(String, nullable=True)

    __table_args__ = (UniqueConstraint("provider", "participant_id", name="uq_identity_provider_participant"),)


class ParticipantLink(Base):
    """Association of a record with a scoring scope."""

    __tablename__ = "participant_links"

    scope_id = Column(String, primary_key=True)
    external_id = Column(String, ForeignKey("observations.external_id"), primary_key=True)
    participant_id = Column(String, nullable=True)  # null when identity resolution failed
    included = Column(Boolean, nullable=False, default=True)
    novelty_key = Column(String, nullable=True)


class ScoreRun(Base):
    """One sync+score invocation."""

    __tablename__ = "score_runs"

    run_id = Column(Integer, primary_key=True, autoincrement=True)
    scope_id = Column(String, nullable=False, index=True)
    started_at = Column(DateTime, nullable=False)
    ended_at = Column(DateTime, nullable=True)
    watermark_through = Column(DateTime, nullable=True)
    status = Column(String, nullable=False, default="open")  # open, closed, failed
    error = Column(Text, nullable=True)
    records_fetched = Column(Integer, nullable=False, default=0)
    records_upserted = Column(Integer, nullable=False, default=0)
    records_deleted = Column(Integer, nullable=False, default=0)
    entries_written = Column(Integer, nullable=False, default=0)
    identity_misses = Column(Integer, nullable=False, default=0)


class ScoreEntry(Base):
    """One participant's result for a run."""

    __tablename__ = "score_entries"

    run_id = Column(Integer, ForeignKey("score_runs.run_id"), primary_key=True)
    participant_id = Column(String, primary_key=True)
    breakdown_json = Column(Text, nullable=False)  # canonical JSON, sorted keys
    total_points = Column(Float, nullable=False)

    @property
    def breakdown(self) -> dict:
        return json.loads(self.breakdown_json)


class Checkpoint(Base):
    """Key-value ledger for sync checkpoints."""

    __tablename__ = "checkpoints"

    key = Column(String, primary_key=True)
    value = Column(String, nullable=False)
    updated_at = Column(DateTime, nullable=False)


_engines: Dict[str, Engine] = {}
_engines_lock = threading.Lock()


def database_url(target: DatabaseTarget) -> str:
    """Accept either a SQLAlchemy URL or a path to a SQLite file."""
    if isinstance(target, str) and "://" in target:
        return target
    return f"sqlite:///{Path(target)}"


def get_engine(target: DatabaseTarget) -> Engine:
    """
    Return the shared engine for a database.

    One engine per URL so every worker thread draws from the same pool.
    """
    url = database_url(target)
    with _engines_lock:
        engine = _engines.get(url)
        if engine is None:
            connect_args = {}
            if url.startswith("sqlite"):
                connect_args = {"timeout": 30, "check_same_thread": False}
            engine = create_engine(url, connect_args=connect_args)
            _engines[url] = engine
        return engine


def dispose_engines() -> None:
    with _engines_lock:
        for engine in _engines.values():
            engine.dispose()
        _engines.clear()


def init_database(target: DatabaseTarget) -> Engine:
    """
    Initialize database and create tables.

    Args:
        target: SQLite file path or database URL

    Returns:
        The engine bound to the database
    """
    url = database_url(target)
    if url.startswith("sqlite:///") and not url.endswith(":memory:"):
        Path(url[len("sqlite:///"):]).parent.mkdir(parents=True, exist_ok=True)
    engine = get_engine(url)
    Base.metadata.create_all(engine)
    return engine


def session_factory(target: DatabaseTarget) -> sessionmaker:
    return sessionmaker(bind=get_engine(target), expire_on_commit=False)
