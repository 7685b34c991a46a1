"""
Tests for identity resolution and link derivation.
"""

import pytest
from dataclasses import replace
from datetime import datetime, timezone

from bioblitz.config import NoveltyRubric
from bioblitz.linking import (
    IdentityResolver,
    build_links,
    novelty_key,
    round_coord,
    time_bucket_start,
)
from bioblitz.normalize import Record


def utc(*args) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


def record(external_id="1", **kwargs) -> Record:
    defaults = dict(
        updated_at=utc(2024, 5, 1, 12),
        participant_ref="7",
        participant_login="alice",
        category_ref=52,
        taxon_rank="species",
        observed_at=utc(2024, 5, 1, 10, 30),
        latitude=37.7749,
        longitude=-122.4194,
        quality_tier="research",
    )
    defaults.update(kwargs)
    return Record(external_id=external_id, **defaults)


@pytest.fixture
def resolver() -> IdentityResolver:
    return IdentityResolver([
        {"participant_id": "p-alice", "external_user_id": "7", "external_username": "alice"},
        {"participant_id": "p-bob", "external_user_id": None, "external_username": "Bob"},
        {"participant_id": None, "external_user_id": "99", "external_username": None},
    ])


class TestNoveltyKey:
    """Bucket keys for novelty ranking."""

    def test_key_format(self):
        key = novelty_key(record(), NoveltyRubric())
        assert key == "52|37.77,-122.42|2024-05-01T06:00:00Z"

    def test_same_bucket_same_key(self):
        rubric = NoveltyRubric()
        a = record("1", observed_at=utc(2024, 5, 1, 6, 0), latitude=37.771)
        b = record("2", observed_at=utc(2024, 5, 1, 11, 59), latitude=37.774)
        assert novelty_key(a, rubric) == novelty_key(b, rubric)

    def test_bucket_boundary(self):
        rubric = NoveltyRubric()
        a = record("1", observed_at=utc(2024, 5, 1, 11, 59))
        b = record("2", observed_at=utc(2024, 5, 1, 12, 0))
        assert novelty_key(a, rubric) != novelty_key(b, rubric)

    def test_negative_zero_folds(self):
        key = novelty_key(record(latitude=-0.001, longitude=0.001), NoveltyRubric())
        assert "|0.00,0.00|" in key

    @pytest.mark.parametrize("changes", [
        {"taxon_rank": "genus"},
        {"quality_tier": "casual"},
        {"category_ref": None},
        {"latitude": None},
        {"longitude": float("nan")},
    ])
    def test_ineligible_records(self, changes):
        assert novelty_key(record(**changes), NoveltyRubric()) is None

    def test_disabled(self):
        assert novelty_key(record(), replace(NoveltyRubric(), enabled=False)) is None

    def test_falls_back_to_created_time(self):
        r = record(observed_at=None, created_at=utc(2024, 5, 1, 13))
        assert novelty_key(r, NoveltyRubric()).endswith("2024-05-01T12:00:00Z")


class TestHelpers:
    def test_round_coord(self):
        assert round_coord(1.23456, 2) == 1.23
        assert round_coord(None, 2) is None
        assert round_coord(float("inf"), 2) is None
        assert str(round_coord(-0.0001, 2)) == "0.0"

    def test_time_bucket_start(self):
        assert time_bucket_start(utc(2024, 5, 1, 17, 45), 6) == utc(2024, 5, 1, 12)
        assert time_bucket_start(utc(2024, 5, 1, 17, 45), 0.5) == utc(2024, 5, 1, 17, 30)


class TestIdentityResolver:
    """User id first, then login."""

    def test_resolve_by_id(self, resolver):
        assert resolver.resolve(record(participant_ref="7", participant_login="someone")) == "p-alice"

    def test_resolve_by_login_case_insensitive(self, resolver):
        assert resolver.resolve(record(participant_ref="12", participant_login="BOB")) == "p-bob"

    def test_unresolved(self, resolver):
        assert resolver.resolve(record(participant_ref="12", participant_login="carol")) is None
        assert resolver.resolve(record(participant_ref=None, participant_login=None)) is None

    def test_rows_without_participant_ignored(self, resolver):
        assert len(resolver) == 2
        assert resolver.resolve(record(participant_ref="99", participant_login=None)) is None


class TestBuildLinks:
    """Every record is linked; misses keep a null participant."""

    def test_links_and_misses(self, resolver):
        records = [
            record("1"),
            record("2", participant_ref="12", participant_login="carol"),
            record("3", taxon_rank="genus"),
        ]

        rows, misses = build_links("spring-2024", records, resolver, NoveltyRubric())

        assert misses == ["2"]
        assert [r["external_id"] for r in rows] == ["1", "2", "3"]
        assert rows[0] == {
            "scope_id": "spring-2024",
            "external_id": "1",
            "participant_id": "p-alice",
            "included": True,
            "novelty_key": "52|37.77,-122.42|2024-05-01T06:00:00Z",
        }
        assert rows[1]["participant_id"] is None
        assert rows[2]["novelty_key"] is None
