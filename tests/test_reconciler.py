"""
Tests for deletion reconciliation.
"""

import pytest
from dataclasses import replace
from datetime import datetime, timezone

from bioblitz.config import SourceFilter
from bioblitz.database import Observation, ParticipantLink
from bioblitz.fetcher import RateLimitedFetcher, RequestPacer
from bioblitz.normalize import normalize_observation
from bioblitz.reconciler import FEED, SET_DIFFERENCE, DeletionReconciler
from bioblitz.retry import RetryPolicy

from conftest import FakeResponse

SINCE = datetime(2024, 5, 1, tzinfo=timezone.utc)
FILTERS = SourceFilter(project_id="city-nature")
DELETED_URL = "https://api.test/v1/observations/deleted"


@pytest.fixture
def seeded(store, observation_factory):
    """Records 1..5 updated inside the window, 6 updated before it."""
    rows = [
        normalize_observation(observation_factory(i, updated_at="2024-05-02T00:00:00Z")).to_row()
        for i in range(1, 6)
    ]
    rows.append(normalize_observation(observation_factory(6, updated_at="2024-04-01T00:00:00Z")).to_row())
    store.upsert_rows(Observation, rows, ["external_id"])
    store.upsert_rows(ParticipantLink, [
        {"scope_id": "s", "external_id": str(i), "participant_id": "p1", "included": True, "novelty_key": None}
        for i in range(1, 7)
    ], ["scope_id", "external_id"])
    return store


def build(store, settings, handler, fake_session_factory):
    session = fake_session_factory(handler=handler)
    fetcher = RateLimitedFetcher(
        settings,
        session=session,
        policy=RetryPolicy(max_retries=1, base_delay=0.001, max_delay=0.001, jitter=0.0),
        pacer=RequestPacer(0.0),
    )
    return DeletionReconciler(fetcher, store), session


class TestFeedPath:
    """Explicit deletion feed."""

    def test_feed_deletes_reported_ids(self, seeded, fast_fetch_settings, fake_session_factory):
        settings = replace(fast_fetch_settings, deleted_url=DELETED_URL)

        def handler(url, params):
            assert url == DELETED_URL
            return FakeResponse(200, {"results": [{"id": 2}, {"id": 4}, {"id": 999}]})

        reconciler, session = build(seeded, settings, handler, fake_session_factory)
        result = reconciler.reconcile(FILTERS, SINCE, "s")

        assert result.strategy == FEED
        assert result.deleted_ids == ["2", "4"]
        assert result.deleted == 2
        assert seeded.existing_ids([str(i) for i in range(1, 7)]) == {"1", "3", "5", "6"}
        assert len(session.calls) == 1

    def test_feed_removes_links(self, seeded, fast_fetch_settings, fake_session_factory):
        settings = replace(fast_fetch_settings, deleted_url=DELETED_URL)
        reconciler, _ = build(
            seeded, settings, lambda url, params: FakeResponse(200, {"results": [3]}), fake_session_factory
        )
        reconciler.reconcile(FILTERS, SINCE, "s")
        assert "3" not in {s.record.external_id for s in seeded.load_scope("s")}


class TestSetDifferenceFallback:
    """Fallback when the feed is missing or failing."""

    def test_no_feed_configured(self, seeded, fast_fetch_settings, fake_session_factory):
        def handler(url, params):
            assert url.endswith("/observations")
            return FakeResponse(200, {"results": [{"id": 1}, {"id": 2}, {"id": 5}]})

        reconciler, _ = build(seeded, fast_fetch_settings, handler, fake_session_factory)
        result = reconciler.reconcile(FILTERS, SINCE, "s")

        assert result.strategy == SET_DIFFERENCE
        assert result.deleted_ids == ["3", "4"]
        assert result.feed_error is not None
        # Record 6 is outside the window and untouched.
        assert seeded.existing_ids(["6"]) == {"6"}

    def test_feed_failure_falls_back(self, seeded, fast_fetch_settings, fake_session_factory):
        settings = replace(fast_fetch_settings, deleted_url=DELETED_URL)

        def handler(url, params):
            if url == DELETED_URL:
                return FakeResponse(404, text="not found")
            return FakeResponse(200, {"results": [{"id": i} for i in (1, 2, 3, 4)]})

        reconciler, session = build(seeded, settings, handler, fake_session_factory)
        result = reconciler.reconcile(FILTERS, SINCE, "s")

        assert result.strategy == SET_DIFFERENCE
        assert result.deleted_ids == ["5"]
        assert "404" in result.feed_error
        assert [c["url"] for c in session.calls] == [DELETED_URL, "https://api.test/v1/observations"]

    def test_feed_server_errors_fall_back(self, seeded, fast_fetch_settings, fake_session_factory):
        settings = replace(fast_fetch_settings, deleted_url=DELETED_URL)

        def handler(url, params):
            if url == DELETED_URL:
                return FakeResponse(503, text="down")
            return FakeResponse(200, {"results": [{"id": i} for i in range(1, 6)]})

        reconciler, _ = build(seeded, settings, handler, fake_session_factory)
        result = reconciler.reconcile(FILTERS, SINCE, "s")

        assert result.strategy == SET_DIFFERENCE
        assert result.deleted == 0

    def test_window_upper_bound(self, seeded, fast_fetch_settings, fake_session_factory):
        """Records updated after ``until`` are not candidates for deletion."""
        reconciler, _ = build(
            seeded, fast_fetch_settings,
            lambda url, params: FakeResponse(200, {"results": []}),
            fake_session_factory,
        )
        result = reconciler.reconcile(FILTERS, SINCE, "s", until=datetime(2024, 5, 1, 12, tzinfo=timezone.utc))
        assert result.deleted == 0
        assert seeded.count(Observation) == 6

    def test_empty_local_window_skips_fetch(self, store, fast_fetch_settings, fake_session_factory):
        reconciler, session = build(
            store, fast_fetch_settings,
            lambda url, params: FakeResponse(200, {"results": []}),
            fake_session_factory,
        )
        result = reconciler.reconcile(FILTERS, SINCE, "s")
        assert result.strategy == SET_DIFFERENCE
        assert result.deleted == 0
        assert session.calls == []


class TestScopeIsolation:
    """Set difference only touches the scope being synced."""

    @pytest.fixture
    def two_scopes(self, store, observation_factory):
        rows = [
            normalize_observation(observation_factory(i, updated_at="2024-05-02T00:00:00Z")).to_row()
            for i in range(1, 7)
        ]
        store.upsert_rows(Observation, rows, ["external_id"])
        links = [("autumn", i) for i in (1, 2, 3)] + [("spring", i) for i in (4, 5)] + [
            ("autumn", 6), ("spring", 6),
        ]
        store.upsert_rows(ParticipantLink, [
            {"scope_id": scope, "external_id": str(i), "participant_id": "p1", "included": True, "novelty_key": None}
            for scope, i in links
        ], ["scope_id", "external_id"])
        return store

    def test_other_scope_records_survive(self, two_scopes, fast_fetch_settings, fake_session_factory):
        reconciler, _ = build(
            two_scopes, fast_fetch_settings,
            lambda url, params: FakeResponse(200, {"results": [{"id": 4}, {"id": 5}, {"id": 6}]}),
            fake_session_factory,
        )

        result = reconciler.reconcile(SourceFilter(project_id="spring"), SINCE, "spring")

        assert result.deleted == 0
        assert two_scopes.existing_ids([str(i) for i in range(1, 7)]) == {"1", "2", "3", "4", "5", "6"}
        assert len(two_scopes.load_scope("autumn")) == 4

    def test_shared_record_keeps_other_scope_link(self, two_scopes, fast_fetch_settings, fake_session_factory):
        reconciler, _ = build(
            two_scopes, fast_fetch_settings,
            lambda url, params: FakeResponse(200, {"results": [{"id": 4}]}),
            fake_session_factory,
        )

        result = reconciler.reconcile(SourceFilter(project_id="spring"), SINCE, "spring")

        assert result.deleted_ids == ["5", "6"]
        # 5 was only in spring; 6 is still linked from autumn.
        assert two_scopes.existing_ids(["5", "6"]) == {"6"}
        assert [s.record.external_id for s in two_scopes.load_scope("spring")] == ["4"]
        assert [s.record.external_id for s in two_scopes.load_scope("autumn")] == ["1", "2", "3", "6"]
