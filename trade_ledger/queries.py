"""
Query Engines

Read-only projections over the record store. Every call reads fresh state;
nothing is cached between calls, so calling again after a change
notification always yields the current view.
"""

import asyncio
import logging
import time
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional

from .config import Config
from .models import (
    Account, EnrichedTrade, Listing, MonthlySales, RecordKind, Trade, TradeState, TradeType,
)
from .monitoring import MetricsCollector
from .persistence import RecordStore
from .retry import retry_transient

logger = logging.getLogger(__name__)


class SortBy(Enum):
    NEWEST = "newest"
    OLDEST = "oldest"
    HIGHEST_PRICE = "highestPrice"
    LOWEST_PRICE = "lowestPrice"


class TypeFilter(Enum):
    ALL = "all"
    BUYING = "buying"
    SELLING = "selling"


class StatusFilter(Enum):
    ALL = "all"
    COMPLETED = "completed"
    IN_PROGRESS = "inProgress"


def _sort_key(sort_by: SortBy, created_at: float, price: float) -> float:
    # Negated keys keep the sort stable, so ties stay in insertion order
    if sort_by == SortBy.NEWEST:
        return -created_at
    if sort_by == SortBy.OLDEST:
        return created_at
    if sort_by == SortBy.HIGHEST_PRICE:
        return -price
    return price


def _matches_term(term: str, values: Iterable[Any]) -> bool:
    return any(term in str(value).lower() for value in values if value is not None)


class ListingQueryEngine:
    """Filtered, searched and sorted views over one owner's listings."""

    def __init__(self, store: RecordStore, metrics: Optional[MetricsCollector] = None,
                 search_fields: Optional[Iterable[str]] = None):
        self.store = store
        self.metrics = metrics or MetricsCollector()
        self.search_fields = tuple(search_fields or Config.SEARCH_FIELDS)

    def matches(self, listing: Listing, search_term: Optional[str]) -> bool:
        if not search_term:
            return True
        term = search_term.strip().lower()
        if not term:
            return True
        values = [listing.fields.get(name) for name in self.search_fields]
        return _matches_term(term, values) or term in listing.id.lower()

    async def list_listings(
        self,
        owner_id: str,
        search_term: Optional[str] = None,
        sort_by: SortBy = SortBy.NEWEST,
    ) -> List[Listing]:
        start_time = time.time()
        records = await retry_transient(
            self.store.query,
            RecordKind.LISTING,
            lambda r: r.get("owner_id") == owner_id,
            operation=f"listings of {owner_id}",
        )
        listings = [Listing.from_dict(r) for r in records]
        listings = [listing for listing in listings if self.matches(listing, search_term)]
        listings = sorted(listings, key=lambda listing: _sort_key(sort_by, listing.created_at, listing.price))

        self.metrics.record_query("list_listings", (time.time() - start_time) * 1000, len(listings))
        return listings


class TradeQueryEngine:
    """
    Joins trades with their listing and both counterparties and answers
    per-account trade views and sales summaries.
    """

    def __init__(self, store: RecordStore, metrics: Optional[MetricsCollector] = None,
                 search_fields: Optional[Iterable[str]] = None):
        self.store = store
        self.metrics = metrics or MetricsCollector()
        self.search_fields = tuple(search_fields or Config.TRADE_SEARCH_FIELDS)

    async def _get(self, kind: RecordKind, record_id: Optional[str]) -> Optional[Dict[str, Any]]:
        if not record_id:
            return None
        return await retry_transient(
            self.store.get, kind, record_id, operation=f"get {kind.value} {record_id}"
        )

    async def _trades_of(self, account_id: str) -> List[Trade]:
        records = await retry_transient(
            self.store.query,
            RecordKind.TRADE,
            lambda r: account_id in (r.get("buyer_id"), r.get("seller_id")),
            operation=f"trades of {account_id}",
        )
        return [Trade.from_dict(r) for r in records]

    async def enrich(self, trade: Trade, account_id: str) -> EnrichedTrade:
        """Join one trade. Deleted listings or accounts come back as None."""
        listing_data, buyer_data, seller_data = await asyncio.gather(
            self._get(RecordKind.LISTING, trade.listing_id),
            self._get(RecordKind.ACCOUNT, trade.buyer_id),
            self._get(RecordKind.ACCOUNT, trade.seller_id),
        )
        return EnrichedTrade(
            trade=trade,
            type=TradeType.BUYING if trade.buyer_id == account_id else TradeType.SELLING,
            listing=Listing.from_dict(listing_data) if listing_data else None,
            buyer=Account.from_dict(buyer_data).summary() if buyer_data else None,
            seller=Account.from_dict(seller_data).summary() if seller_data else None,
        )

    def matches(self, enriched: EnrichedTrade, search_term: Optional[str]) -> bool:
        if not search_term:
            return True
        term = search_term.strip().lower()
        if not term:
            return True
        values: List[Any] = [enriched.trade.id, enriched.trade.listing_id]
        if enriched.listing is not None:
            values.extend(enriched.listing.fields.get(name) for name in self.search_fields)
        return _matches_term(term, values)

    async def list_trades(
        self,
        account_id: str,
        search_term: Optional[str] = None,
        type_filter: TypeFilter = TypeFilter.ALL,
        status_filter: StatusFilter = StatusFilter.ALL,
        sort_by: SortBy = SortBy.NEWEST,
    ) -> List[EnrichedTrade]:
        """
        All trades where account_id is buyer or seller, joined and filtered.

        typeFilter is derived per trade (buying when account_id is the buyer).
        inProgress means any state other than completed.
        """
        start_time = time.time()
        trades = await self._trades_of(account_id)

        if status_filter == StatusFilter.COMPLETED:
            trades = [t for t in trades if t.state == TradeState.COMPLETED]
        elif status_filter == StatusFilter.IN_PROGRESS:
            trades = [t for t in trades if t.state != TradeState.COMPLETED]

        enriched = await asyncio.gather(*(self.enrich(t, account_id) for t in trades))

        results = []
        for item in enriched:
            if type_filter == TypeFilter.BUYING and item.type != TradeType.BUYING:
                continue
            if type_filter == TypeFilter.SELLING and item.type != TradeType.SELLING:
                continue
            if not self.matches(item, search_term):
                continue
            results.append(item)

        results.sort(key=lambda e: _sort_key(sort_by, e.trade.created_at, e.price))

        self.metrics.record_query("list_trades", (time.time() - start_time) * 1000, len(results))
        return results

    async def monthly_sales_summary(self, account_id: str, year: int) -> List[MonthlySales]:
        """
        Count and total of completed sales per month of year, January first.

        Trades are bucketed by completed_at, falling back to created_at for
        records without one. The amount is the recorded sale price, or the
        listing price when the trade predates sale prices.
        """
        start_time = time.time()
        records = await retry_transient(
            self.store.query,
            RecordKind.TRADE,
            lambda r: r.get("seller_id") == account_id and r.get("state") == TradeState.COMPLETED.value,
            operation=f"sales of {account_id}",
        )
        months = [MonthlySales(month=m) for m in range(1, 13)]

        for record in records:
            trade = Trade.from_dict(record)
            settled_at = trade.created_at
            if Config.SALES_SUMMARY_USE_COMPLETION_TIME and trade.completed_at:
                settled_at = trade.completed_at
            when = datetime.fromtimestamp(settled_at, tz=timezone.utc)
            if when.year != year:
                continue

            amount = trade.sale_price
            if amount is None:
                listing = await self._get(RecordKind.LISTING, trade.listing_id)
                amount = float(listing.get("price") or 0) if listing else 0.0

            bucket = months[when.month - 1]
            bucket.count += 1
            bucket.total_amount += float(amount)

        self.metrics.record_query(
            "monthly_sales_summary", (time.time() - start_time) * 1000, sum(m.count for m in months)
        )
        return months
