"""
Deletion reconciliation for the synced window.

Primary path: the source's "deleted since" feed, applied to every stored
copy of the reported ids. Fallback, only when the feed is absent or fails:
re-fetch the scope's window and withdraw the scope's links to stored ids
(same scope, same window) that the source no longer returns. Records no
other scope links are deleted with them.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional

import requests

from .config import SourceFilter
from .fetcher import DeletionFeedUnavailable, RateLimitedFetcher, UpstreamError
from .logger import StructuredLogger, get_logger
from .storage import RecordStore

FEED = "feed"
SET_DIFFERENCE = "set_difference"
SKIPPED = "skipped"


@dataclass
class ReconcileResult:
    strategy: str
    deleted_ids: List[str] = field(default_factory=list)
    feed_error: Optional[str] = None

    @property
    def deleted(self) -> int:
        return len(self.deleted_ids)


class DeletionReconciler:
    def __init__(
        self,
        fetcher: RateLimitedFetcher,
        store: RecordStore,
        logger: Optional[StructuredLogger] = None,
    ):
        self.fetcher = fetcher
        self.store = store
        self.logger = logger or get_logger()

    def reconcile(
        self,
        filters: SourceFilter,
        since: datetime,
        scope_id: str,
        until: Optional[datetime] = None,
    ) -> ReconcileResult:
        try:
            return self._from_feed(since)
        except DeletionFeedUnavailable as e:
            self.logger.info("No deletion feed, reconciling by set difference")
            return self._from_set_difference(filters, since, scope_id, until, feed_error=str(e))
        except (UpstreamError, requests.exceptions.RequestException) as e:
            self.logger.warning("Deletion feed failed, reconciling by set difference", error=str(e))
            return self._from_set_difference(filters, since, scope_id, until, feed_error=str(e))

    def _from_feed(self, since: datetime) -> ReconcileResult:
        reported = self.fetcher.fetch_deleted_ids(since)
        present = self.store.existing_ids(reported)
        deleted = sorted(present)
        removed = self.store.delete_records(deleted)
        self.logger.info("Applied deletion feed", reported=len(reported), deleted=removed)
        return ReconcileResult(strategy=FEED, deleted_ids=deleted)

    def _from_set_difference(
        self,
        filters: SourceFilter,
        since: datetime,
        scope_id: str,
        until: Optional[datetime],
        feed_error: Optional[str] = None,
    ) -> ReconcileResult:
        local = self.store.ids_updated_between(since, until, scope_id=scope_id)
        if not local:
            return ReconcileResult(strategy=SET_DIFFERENCE, feed_error=feed_error)

        upstream = self.fetcher.fetch_window_ids(filters, since)
        stale = sorted(local - upstream)
        removed = self.store.withdraw_from_scope(scope_id, stale)
        self.logger.info("Reconciled window by set difference", scope=scope_id, local=len(local),
                         upstream=len(upstream), deleted=removed)
        return ReconcileResult(strategy=SET_DIFFERENCE, deleted_ids=stale, feed_error=feed_error)
