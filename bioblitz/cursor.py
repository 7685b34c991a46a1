from datetime import datetime, timedelta

from .ledger import RunLedger
from .normalize import EPOCH

DEFAULT_SAFETY_OVERLAP_SECONDS = 30.0


class CursorTracker:
    """
    Resume point for the next fetch of a scope.

    The last committed watermark minus a small overlap, so updates that
    landed right at the previous boundary are fetched again. Re-delivered
    records are no-ops for the keyed upsert.
    """

    def __init__(self, ledger: RunLedger, scope_id: str,
                 overlap_seconds: float = DEFAULT_SAFETY_OVERLAP_SECONDS):
        self.ledger = ledger
        self.scope_id = scope_id
        self.overlap = timedelta(seconds=overlap_seconds)

    def last_watermark(self) -> datetime:
        return self.ledger.last_watermark(self.scope_id) or EPOCH

    def resume_point(self) -> datetime:
        since = self.last_watermark() - self.overlap
        return max(since, EPOCH)
