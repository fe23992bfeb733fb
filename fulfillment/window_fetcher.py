"""
Paginated order-history fetch with automatic window splitting.

Providers cap how many pages one query may return. When a window reaches
that ceiling the fetcher bisects it and fetches both halves instead,
down to single days. A single day that still overflows is accepted with the
ceiling-bound result set and reported, since no finer granularity exists.

Splitting uses an explicit stack rather than recursion; depth is capped at
the number of halvings needed to reach one day from the root window.
"""
from dataclasses import dataclass, field
from datetime import date
from typing import List, Optional

from fulfillment.config import config
from fulfillment.events import emit_window_overflow
from fulfillment.exceptions import ProviderAuthError, ProviderError
from fulfillment.models import ProviderOrder, SyncWindow
from fulfillment.observability import get_logger, timed
from fulfillment.providers.base import ProviderAdapter
from fulfillment.resilience import CircuitOpenError

logger = get_logger(__name__)


def max_split_depth(days: int) -> int:
    """Halvings needed to reduce a window of ``days`` to one day (ceil(log2))."""
    return max(days - 1, 0).bit_length()


@dataclass
class FetchResult:
    """Outcome of fetching one window and all of its sub-windows."""
    window: SyncWindow
    records: List[ProviderOrder] = field(default_factory=list)
    complete: bool = True
    hit_page_ceiling: bool = False
    overflow_days: List[date] = field(default_factory=list)
    error: Optional[str] = None
    pages_fetched: int = 0
    splits: int = 0
    max_depth: int = 0
    skipped: int = 0  # entries the adapter could not decode


@dataclass
class _PageWalk:
    records: List[ProviderOrder]
    pages: int
    skipped: int
    ceiling_hit: bool


class WindowFetcher:
    """
    Fetches every record of a window from one provider adapter.

    Usage:
        fetcher = WindowFetcher(adapter)
        result = await fetcher.fetch(SyncWindow(start, end))
        if not result.complete:
            ...  # window must be retried by a later run
    """

    def __init__(self, adapter: ProviderAdapter, page_ceiling: Optional[int] = None):
        self.adapter = adapter
        self.page_ceiling = page_ceiling or config.sync.page_ceiling

    @property
    def account_id(self) -> str:
        return self.adapter.account.id

    @timed("window_fetch", warn_threshold_ms=60000)
    async def fetch(self, window: SyncWindow) -> FetchResult:
        """
        Fetch ``window``, splitting it while it overflows the page ceiling.

        Never raises provider errors: a failed sub-window marks the result
        incomplete and carries the error text. Records from sub-windows that
        did succeed are still returned.
        """
        result = FetchResult(window=window)
        depth_cap = window.depth + max_split_depth(window.days)
        stack: List[SyncWindow] = [window]

        while stack:
            current = stack.pop()
            result.max_depth = max(result.max_depth, current.depth - window.depth)

            try:
                walk = await self._walk_pages(current)
            except ProviderError as e:
                result.complete = False
                result.error = self._merge_error(result.error, current, e)
                logger.warning(
                    f"Window {current} failed: {e}",
                    extra={"account_id": self.account_id, "depth": current.depth},
                )
                if isinstance(e, (ProviderAuthError, CircuitOpenError)):
                    # Every remaining sub-window would fail the same way
                    break
                continue

            result.pages_fetched += walk.pages
            result.skipped += walk.skipped

            if not walk.ceiling_hit:
                result.records.extend(walk.records)
                continue

            if not current.is_single_day and current.depth < depth_cap:
                left, right = current.split()
                # Oldest half is processed first
                stack.append(right)
                stack.append(left)
                result.splits += 1
                logger.info(
                    f"Page ceiling hit for {current}, splitting into {left} and {right}",
                    extra={"account_id": self.account_id, "depth": current.depth},
                )
                continue

            # Irreducible window: keep what the ceiling allowed
            result.records.extend(walk.records)
            result.hit_page_ceiling = True
            result.overflow_days.append(current.start)
            logger.warning(
                f"Accepted overflow for {current}: {len(walk.records)} records at the "
                f"{self.page_ceiling}-page ceiling",
                extra={"account_id": self.account_id, "records": len(walk.records)},
            )
            await emit_window_overflow(self.account_id, current.start.isoformat(), len(walk.records))

        return result

    async def _walk_pages(self, window: SyncWindow) -> _PageWalk:
        records: List[ProviderOrder] = []
        skipped = 0
        pages = 0
        exhausted = False

        for page_number in range(1, self.page_ceiling + 1):
            page = await self.adapter.fetch_order_history(window.start, window.end, page_number)
            pages += 1
            records.extend(page.records)
            skipped += page.skipped
            if not page.has_more or not (page.records or page.skipped):
                exhausted = True
                break

        return _PageWalk(records=records, pages=pages, skipped=skipped, ceiling_hit=not exhausted)

    @staticmethod
    def _merge_error(existing: Optional[str], window: SyncWindow, error: Exception) -> str:
        message = f"{window}: {error}"
        return f"{existing}; {message}" if existing else message
