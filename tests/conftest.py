"""
Pytest configuration and shared fixtures.
"""

import pytest
from datetime import date
from pathlib import Path
from typing import Any, Dict, List, Optional

from bioblitz.config import FetchSettings, SourceFilter, SyncConfig, UpsertSettings
from bioblitz.database import dispose_engines, init_database
from bioblitz.logger import get_logger, reset_logger
from bioblitz.retry import RetryPolicy
from bioblitz.storage import RecordStore


class FakeResponse:
    """Just enough of requests.Response for the fetcher."""

    def __init__(self, status_code: int = 200, payload: Any = None,
                 text: Optional[str] = None, headers: Optional[Dict[str, str]] = None):
        self.status_code = status_code
        self._payload = payload
        self.text = text if text is not None else ("" if payload is None else str(payload))
        self.headers = headers or {}

    def json(self):
        if self._payload is None:
            raise ValueError("No JSON object could be decoded")
        return self._payload


class FakeSession:
    """
    Stand-in for requests.Session.

    Replies from a queue of responses, or from ``handler(url, params)``.
    An exception in the queue is raised instead of returned.
    """

    def __init__(self, responses: Optional[List[Any]] = None, handler=None):
        self.headers: Dict[str, str] = {}
        self.calls: List[Dict[str, Any]] = []
        self._responses = list(responses or [])
        self._handler = handler

    def get(self, url, params=None, timeout=None):
        self.calls.append({"url": url, "params": dict(params or {}), "timeout": timeout})
        if self._handler is not None:
            result = self._handler(url, dict(params or {}))
        else:
            result = self._responses.pop(0)
        if isinstance(result, Exception):
            raise result
        return result


def make_observation(
    obs_id,
    updated_at: str = "2024-05-01T12:00:00Z",
    user_id: Optional[int] = 1,
    login: Optional[str] = "alice",
    taxon_id: Optional[int] = 100,
    rank: str = "species",
    quality: str = "research",
    observed: Optional[str] = "2024-05-01T10:00:00Z",
    lat: Optional[float] = 37.77,
    lon: Optional[float] = -122.42,
) -> Dict[str, Any]:
    """Upstream observation JSON in the shape the source returns."""
    obs: Dict[str, Any] = {
        "id": obs_id,
        "updated_at": updated_at,
        "created_at": updated_at,
        "quality_grade": quality,
        "species_guess": "California poppy",
    }
    if observed is not None:
        obs["time_observed_at"] = observed
        obs["observed_on"] = observed[:10]
    if user_id is not None or login is not None:
        obs["user"] = {"id": user_id, "login": login}
    if taxon_id is not None:
        obs["taxon"] = {"id": taxon_id, "rank": rank, "name": "Eschscholzia californica"}
    if lat is not None and lon is not None:
        obs["geojson"] = {"type": "Point", "coordinates": [lon, lat]}
        obs["location"] = f"{lat},{lon}"
    return obs


@pytest.fixture(autouse=True)
def quiet_logger():
    """Process-wide logger with no console or file output."""
    reset_logger()
    logger = get_logger(enable_file=False, enable_console=False)
    yield logger
    reset_logger()


@pytest.fixture(autouse=True)
def _dispose_engines():
    yield
    dispose_engines()


@pytest.fixture
def observation_factory():
    return make_observation


@pytest.fixture
def fake_session_factory():
    return FakeSession


@pytest.fixture
def db_path(tmp_path) -> Path:
    return tmp_path / "bioblitz.db"


@pytest.fixture
def store(db_path) -> RecordStore:
    """Empty store on a temporary SQLite file."""
    init_database(db_path)
    return RecordStore(db_path)


@pytest.fixture
def fast_policy() -> RetryPolicy:
    """Millisecond backoff, no jitter."""
    return RetryPolicy(max_retries=3, base_delay=0.001, max_delay=0.01, jitter=0.0)


@pytest.fixture
def fast_fetch_settings() -> FetchSettings:
    return FetchSettings(
        base_url="https://api.test/v1",
        page_size=200,
        pacing_interval=0.001,
        backoff_base=0.001,
        backoff_cap=0.01,
        max_retries=3,
        jitter=0.0,
        timeout=5.0,
    )


@pytest.fixture
def sync_config(db_path, fast_fetch_settings) -> SyncConfig:
    return SyncConfig(
        scope_id="spring-2024",
        db_url=str(db_path),
        source=SourceFilter(d1=date(2024, 5, 1), d2=date(2024, 5, 31)),
        fetch=fast_fetch_settings,
        upsert=UpsertSettings(batch_size=200, min_batch_size=10, immediate_retries=2, max_workers=1),
    )
