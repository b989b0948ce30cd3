"""
Live views: keep the latest query result for one account current by
re-running the query whenever the notifier signals a change.
"""

import asyncio
import logging
from typing import Any, Callable, Dict, Generic, List, Optional, TypeVar

from .models import EnrichedTrade, Listing, RecordKind
from .notifier import ChangeNotifier
from .queries import ListingQueryEngine, SortBy, StatusFilter, TradeQueryEngine, TypeFilter

logger = logging.getLogger(__name__)

T = TypeVar("T")


class _LiveView(Generic[T]):
    kind = RecordKind.TRADE

    def __init__(self, notifier: ChangeNotifier, account_id: str,
                 on_update: Optional[Callable[[List[T]], Any]] = None):
        self.notifier = notifier
        self.account_id = account_id
        self.on_update = on_update

        self.items: List[T] = []
        self.refresh_count = 0
        self.last_error: Optional[Exception] = None
        self._key: Optional[str] = None
        self._lock = asyncio.Lock()

    async def _query(self) -> List[T]:
        raise NotImplementedError

    async def open(self) -> List[T]:
        """Load the initial result and start listening for changes."""
        self._key = self.notifier.register(self.account_id, self.refresh, kinds=(self.kind,))
        return await self.refresh()

    def close(self):
        if self._key:
            self.notifier.unregister(self._key)
            self._key = None

    async def refresh(self) -> List[T]:
        async with self._lock:
            try:
                self.items = await self._query()
            except Exception as e:
                self.last_error = e
                logger.error(f"{type(self).__name__} refresh for {self.account_id} failed: {e}")
                raise
            self.last_error = None
            self.refresh_count += 1

        if self.on_update:
            result = self.on_update(self.items)
            if asyncio.iscoroutine(result):
                await result
        return self.items


class LiveTradeView(_LiveView[EnrichedTrade]):
    """Trades of one account, refreshed on every trade change affecting it."""

    kind = RecordKind.TRADE

    def __init__(self, notifier: ChangeNotifier, engine: TradeQueryEngine, account_id: str,
                 search_term: Optional[str] = None,
                 type_filter: TypeFilter = TypeFilter.ALL,
                 status_filter: StatusFilter = StatusFilter.ALL,
                 sort_by: SortBy = SortBy.NEWEST,
                 on_update: Optional[Callable[[List[EnrichedTrade]], Any]] = None):
        super().__init__(notifier, account_id, on_update)
        self.engine = engine
        self.params: Dict[str, Any] = {
            "search_term": search_term,
            "type_filter": type_filter,
            "status_filter": status_filter,
            "sort_by": sort_by,
        }

    async def _query(self) -> List[EnrichedTrade]:
        return await self.engine.list_trades(self.account_id, **self.params)


class LiveListingView(_LiveView[Listing]):
    """Listings owned by one account."""

    kind = RecordKind.LISTING

    def __init__(self, notifier: ChangeNotifier, engine: ListingQueryEngine, owner_id: str,
                 search_term: Optional[str] = None, sort_by: SortBy = SortBy.NEWEST,
                 on_update: Optional[Callable[[List[Listing]], Any]] = None):
        super().__init__(notifier, owner_id, on_update)
        self.engine = engine
        self.search_term = search_term
        self.sort_by = sort_by

    async def _query(self) -> List[Listing]:
        return await self.engine.list_listings(self.account_id, self.search_term, self.sort_by)
