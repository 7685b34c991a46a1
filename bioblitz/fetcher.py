"""
Paginated, rate-limited upstream client.

Every request, whether a sync page, a deletion feed call or a reconciliation
re-fetch, passes through one ``RequestPacer`` so the source never sees
concurrent or too-frequent calls. 429/5xx and network timeouts are retried
under the shared ``RetryPolicy``; any other non-success status fails fast.
"""

import threading
import time
from datetime import datetime
from typing import Any, Callable, Dict, Iterator, List, Optional, Set

import requests

from . import __version__
from .config import FetchSettings, SourceFilter, UPSTREAM_MAX_PAGE_SIZE
from .logger import StructuredLogger, get_logger
from .normalize import isoformat_z
from .retry import RetryPolicy, check_cancelled, parse_retry_after

BODY_SNIPPET_CHARS = 500


class UpstreamError(Exception):
    """
    A request to the upstream source failed.

    ``retryable`` is True when the failure was transient but retries ran
    out; False for terminal statuses, which are never retried.
    """

    def __init__(self, message: str, status: Optional[int] = None, url: str = "",
                 body: str = "", retryable: bool = False):
        super().__init__(message)
        self.status = status
        self.url = url
        self.body = body
        self.retryable = retryable


class DeletionFeedUnavailable(Exception):
    """No deletion feed is configured for this source."""
    pass


def _snippet(text: str) -> str:
    text = text or ""
    if len(text) <= BODY_SNIPPET_CHARS:
        return text
    return text[:BODY_SNIPPET_CHARS] + "...[truncated]"


class RequestPacer:
    """Global minimum interval between upstream requests."""

    def __init__(self, min_interval: float, clock: Callable[[], float] = time.monotonic):
        self.min_interval = min_interval
        self._clock = clock
        self._lock = threading.Lock()
        self._next_allowed: Optional[float] = None

    def wait(self, policy: RetryPolicy, cancel_event: Optional[threading.Event] = None) -> None:
        with self._lock:
            if self._next_allowed is not None:
                delay = self._next_allowed - self._clock()
                if delay > 0:
                    policy.sleep(delay, cancel_event)
            self._next_allowed = self._clock() + self.min_interval


class RateLimitedFetcher:
    """Reads observation pages, the deletion feed and window id sets."""

    def __init__(
        self,
        settings: FetchSettings,
        session: Optional[requests.Session] = None,
        policy: Optional[RetryPolicy] = None,
        pacer: Optional[RequestPacer] = None,
        logger: Optional[StructuredLogger] = None,
        cancel_event: Optional[threading.Event] = None,
    ):
        self.settings = settings
        self.page_size = min(settings.page_size, UPSTREAM_MAX_PAGE_SIZE)
        self.policy = policy or settings.retry_policy()
        self.pacer = pacer or RequestPacer(settings.pacing_interval)
        self.logger = logger or get_logger()
        self.cancel_event = cancel_event
        self._session = session or requests.Session()
        self._session.headers.setdefault("User-Agent", f"bioblitz/{__version__}")

    @property
    def observations_url(self) -> str:
        return f"{self.settings.base_url.rstrip('/')}/observations"

    def iter_pages(
        self,
        filters: SourceFilter,
        since: datetime,
        start_page: int = 1,
    ) -> Iterator[List[Dict[str, Any]]]:
        """
        Yield pages of raw observations, oldest ``updated_at`` first.

        Stops after an empty page or a page shorter than the page size.
        Calling again with the same arguments replays the same requests.
        """
        page = start_page
        while True:
            check_cancelled(self.cancel_event)
            params: Dict[str, Any] = {
                "order_by": "updated_at",
                "order": "asc",
                "per_page": self.page_size,
                "page": page,
                "updated_since": isoformat_z(since),
            }
            params.update(filters.to_params())

            payload = self._request_json(self.observations_url, params)
            rows = payload.get("results") or []
            if not isinstance(rows, list):
                raise UpstreamError(
                    f"Unexpected 'results' type on page {page}: {type(rows).__name__}",
                    url=self.observations_url,
                )
            if not rows:
                return

            self.logger.record_page()
            self.logger.debug("Fetched page", page=page, rows=len(rows))
            yield rows

            if len(rows) < self.page_size:
                return
            page += 1

    def fetch_deleted_ids(self, since: datetime) -> Set[str]:
        """Ids the source reports as deleted since ``since``."""
        if not self.settings.deleted_url:
            raise DeletionFeedUnavailable("No deletion feed configured")

        payload = self._request_json(self.settings.deleted_url, {"since": isoformat_z(since)})
        results = payload.get("results") or []
        if not isinstance(results, list):
            raise UpstreamError("Deletion feed returned a non-list 'results'", url=self.settings.deleted_url)

        ids: Set[str] = set()
        for item in results:
            value = item.get("id") if isinstance(item, dict) else item
            if value is not None:
                ids.add(str(value))
        return ids

    def fetch_window_ids(self, filters: SourceFilter, since: datetime) -> Set[str]:
        """Full re-fetch of the ids currently visible upstream for the window."""
        ids: Set[str] = set()
        for rows in self.iter_pages(filters, since):
            ids.update(str(o["id"]) for o in rows if isinstance(o, dict) and o.get("id") is not None)
        return ids

    def _request_json(self, url: str, params: Dict[str, Any]) -> Dict[str, Any]:
        """
        GET with pacing and backoff.

        - 429/5xx: backoff with jitter, at least as long as Retry-After.
        - network timeout / connection error: backoff with jitter.
        - any other non-2xx: UpstreamError immediately.
        """
        max_retries = self.policy.max_retries

        for attempt in range(max_retries + 1):
            self.pacer.wait(self.policy, self.cancel_event)
            self.logger.record_api_call()

            try:
                resp = self._session.get(url, params=params, timeout=self.settings.timeout)
            except (requests.exceptions.Timeout, requests.exceptions.ConnectionError) as e:
                error_type = type(e).__name__
                if attempt >= max_retries:
                    self.logger.record_error(error_type)
                    raise UpstreamError(
                        f"Upstream unreachable after {attempt + 1} attempts: {e}",
                        url=url, retryable=True,
                    ) from e
                delay = self.policy.compute_delay(attempt)
                self.logger.record_retry(error_type)
                self.logger.warning("Upstream request failed, retrying", url=url, error=str(e),
                                    attempt=attempt + 1, delay=round(delay, 2))
                self.policy.sleep(delay, self.cancel_event)
                continue

            if 200 <= resp.status_code < 300:
                try:
                    payload = resp.json()
                except ValueError as e:
                    raise UpstreamError(
                        f"Upstream returned invalid JSON ({resp.status_code}): {url}",
                        status=resp.status_code, url=url, body=_snippet(resp.text),
                    ) from e
                if not isinstance(payload, dict):
                    raise UpstreamError(
                        f"Upstream returned a non-object body: {url}",
                        status=resp.status_code, url=url, body=_snippet(resp.text),
                    )
                return payload

            error_type = f"HTTPError_{resp.status_code}"
            if self.policy.is_retryable_status(resp.status_code):
                if attempt >= max_retries:
                    self.logger.record_error(error_type)
                    raise UpstreamError(
                        f"Upstream error {resp.status_code} after {attempt + 1} attempts: {url}",
                        status=resp.status_code, url=url, body=_snippet(resp.text), retryable=True,
                    )
                retry_after = parse_retry_after(resp.headers.get("Retry-After"))
                delay = self.policy.compute_delay(attempt, retry_after)
                self.logger.record_retry(error_type)
                self.logger.warning("Upstream throttled or unavailable, backing off", url=url,
                                    status=resp.status_code, attempt=attempt + 1,
                                    delay=round(delay, 2), retry_after=retry_after)
                self.policy.sleep(delay, self.cancel_event)
                continue

            self.logger.record_error(error_type)
            body = _snippet(resp.text)
            self.logger.error("Upstream request failed", url=url, status=resp.status_code, body=body)
            raise UpstreamError(
                f"Upstream request failed ({resp.status_code}): {url}\n{body}",
                status=resp.status_code, url=url, body=body,
            )

        raise UpstreamError(f"Retry budget exhausted: {url}", url=url, retryable=True)
