"""
Tests for the listing and trade query engines.
"""

from datetime import datetime, timezone
import pytest

import sys
import os
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from trade_ledger.models import Account, Listing, RecordKind, Trade, TradeState, TradeType
from trade_ledger.monitoring import MetricsCollector
from trade_ledger.persistence import RecordStore
from trade_ledger.queries import (
    ListingQueryEngine, SortBy, StatusFilter, TradeQueryEngine, TypeFilter,
)


def ts(year, month, day=15):
    return datetime(year, month, day, 12, tzinfo=timezone.utc).timestamp()


@pytest.fixture
def store(tmp_path):
    return RecordStore(str(tmp_path / "ledger.db"))


@pytest.fixture
def metrics():
    return MetricsCollector()


async def add_listing(store, listing_id, price, created_at, owner="S", **fields):
    listing = Listing(id=listing_id, owner_id=owner, price=price, fields=fields, created_at=created_at)
    await store.insert(RecordKind.LISTING, listing.to_dict())
    return listing


async def add_trade(store, trade_id, listing_id, buyer="B", seller="S", state=TradeState.PENDING,
                    created_at=1000.0, completed_at=None, sale_price=None):
    trade = Trade(id=trade_id, listing_id=listing_id, buyer_id=buyer, seller_id=seller, state=state,
                  created_at=created_at, completed_at=completed_at, sale_price=sale_price)
    await store.insert(RecordKind.TRADE, trade.to_dict())
    return trade


class TestListingQueries:

    @pytest.mark.asyncio
    async def test_sort_orders(self, store, metrics):
        await add_listing(store, "l100", 100, created_at=1.0)
        await add_listing(store, "l50", 50, created_at=2.0)
        await add_listing(store, "l200", 200, created_at=3.0)
        engine = ListingQueryEngine(store, metrics)

        lowest = await engine.list_listings("S", sort_by=SortBy.LOWEST_PRICE)
        assert [l.price for l in lowest] == [50, 100, 200]

        highest = await engine.list_listings("S", sort_by=SortBy.HIGHEST_PRICE)
        assert [l.price for l in highest] == [200, 100, 50]

        newest = await engine.list_listings("S", sort_by=SortBy.NEWEST)
        assert [l.created_at for l in newest] == [3.0, 2.0, 1.0]

        oldest = await engine.list_listings("S", sort_by=SortBy.OLDEST)
        assert [l.id for l in oldest] == ["l100", "l50", "l200"]

        assert metrics.get_counter("queries_list_listings") == 4

    @pytest.mark.asyncio
    async def test_ties_keep_insertion_order(self, store):
        await add_listing(store, "first", 100, created_at=5.0)
        await add_listing(store, "second", 100, created_at=5.0)
        engine = ListingQueryEngine(store)

        for sort_by in SortBy:
            result = await engine.list_listings("S", sort_by=sort_by)
            assert [l.id for l in result] == ["first", "second"]

    @pytest.mark.asyncio
    async def test_only_owner_listings(self, store):
        await add_listing(store, "mine", 10, created_at=1.0)
        await add_listing(store, "theirs", 10, created_at=1.0, owner="X")

        result = await ListingQueryEngine(store).list_listings("S")
        assert [l.id for l in result] == ["mine"]

    @pytest.mark.asyncio
    async def test_search(self, store):
        await add_listing(store, "lst_r7", 9000, created_at=1.0, brand="Yamaha", model="R7", trim="Pro")
        await add_listing(store, "lst_cb", 7000, created_at=2.0, brand="Honda", model="CB650R", trim="Base")
        engine = ListingQueryEngine(store)

        assert [l.id for l in await engine.list_listings("S", search_term="r7")] == ["lst_r7"]
        assert await engine.list_listings("S", search_term="kawasaki") == []
        assert [l.id for l in await engine.list_listings("S", search_term="YAMAHA")] == ["lst_r7"]
        assert [l.id for l in await engine.list_listings("S", search_term="lst_c")] == ["lst_cb"]
        assert len(await engine.list_listings("S", search_term="  ")) == 2

    @pytest.mark.asyncio
    async def test_results_are_fresh_each_call(self, store):
        engine = ListingQueryEngine(store)
        assert await engine.list_listings("S") == []

        await add_listing(store, "l1", 10, created_at=1.0)
        assert len(await engine.list_listings("S")) == 1


class TestTradeQueries:

    async def seed(self, store):
        for account_id, name in [("S", "Sam"), ("B", "Bea"), ("X", "Xan")]:
            await store.insert(RecordKind.ACCOUNT, Account(id=account_id, name=name).to_dict())
        await add_listing(store, "l1", 100, created_at=1.0, brand="Yamaha", model="R7")
        await add_listing(store, "l2", 300, created_at=2.0, brand="Honda", model="CB650R")
        await add_listing(store, "l3", 200, created_at=3.0, owner="X", brand="Ducati", model="Monster")

        await add_trade(store, "t1", "l1", buyer="B", seller="S", created_at=10.0)
        await add_trade(store, "t2", "l2", buyer="B", seller="S", state=TradeState.COMPLETED,
                        created_at=20.0, completed_at=25.0, sale_price=300)
        await add_trade(store, "t3", "l3", buyer="S", seller="X", created_at=30.0)

    @pytest.mark.asyncio
    async def test_enriched_join_and_type(self, store):
        await self.seed(store)
        engine = TradeQueryEngine(store)

        trades = await engine.list_trades("S", sort_by=SortBy.OLDEST)

        assert [e.trade.id for e in trades] == ["t1", "t2", "t3"]
        assert [e.type for e in trades] == [TradeType.SELLING, TradeType.SELLING, TradeType.BUYING]
        assert trades[0].listing.id == "l1"
        assert trades[0].buyer.name == "Bea"
        assert trades[0].seller.name == "Sam"

    @pytest.mark.asyncio
    async def test_filters(self, store):
        await self.seed(store)
        engine = TradeQueryEngine(store)

        buying = await engine.list_trades("S", type_filter=TypeFilter.BUYING)
        assert [e.trade.id for e in buying] == ["t3"]

        selling = await engine.list_trades("S", type_filter=TypeFilter.SELLING)
        assert {e.trade.id for e in selling} == {"t1", "t2"}

        completed = await engine.list_trades("S", status_filter=StatusFilter.COMPLETED)
        assert [e.trade.id for e in completed] == ["t2"]

        in_progress = await engine.list_trades("S", status_filter=StatusFilter.IN_PROGRESS)
        assert {e.trade.id for e in in_progress} == {"t1", "t3"}

        searched = await engine.list_trades("S", search_term="ducati")
        assert [e.trade.id for e in searched] == ["t3"]

    @pytest.mark.asyncio
    async def test_sort_by_price(self, store):
        await self.seed(store)
        engine = TradeQueryEngine(store)

        trades = await engine.list_trades("S", sort_by=SortBy.HIGHEST_PRICE)
        assert [e.price for e in trades] == [300, 200, 100]

    @pytest.mark.asyncio
    async def test_completed_trade_priced_at_sale_price(self, store):
        await self.seed(store)
        # Listing repriced after the sale
        await store.conditional_write(RecordKind.LISTING, "l2", {}, {"price": 50})
        engine = TradeQueryEngine(store)

        trades = await engine.list_trades("S", sort_by=SortBy.LOWEST_PRICE)

        assert [e.trade.id for e in trades] == ["t1", "t3", "t2"]
        assert [e.price for e in trades] == [100, 200, 300]
        assert trades[-1].listing.price == 50

    @pytest.mark.asyncio
    async def test_deleted_references_become_placeholders(self, store):
        await self.seed(store)
        await store.delete(RecordKind.LISTING, "l2")
        await store.delete(RecordKind.ACCOUNT, "B")
        engine = TradeQueryEngine(store)

        trades = {e.trade.id: e for e in await engine.list_trades("S")}

        assert trades["t2"].listing is None
        assert trades["t2"].price == 300
        assert trades["t2"].buyer is None
        assert trades["t2"].seller.name == "Sam"
        assert trades["t2"].to_dict()["listing"] is None

    @pytest.mark.asyncio
    async def test_unrelated_account_sees_nothing(self, store):
        await self.seed(store)
        assert await TradeQueryEngine(store).list_trades("nobody") == []


class TestMonthlySalesSummary:

    @pytest.mark.asyncio
    async def test_buckets_completed_sales_by_month(self, store):
        await add_listing(store, "l1", 100, created_at=1.0)
        await add_listing(store, "l2", 250, created_at=1.0)
        await add_listing(store, "l3", 80, created_at=1.0)

        # Created in January, completed in February: counts for February
        await add_trade(store, "t1", "l1", state=TradeState.COMPLETED,
                        created_at=ts(2024, 1, 30), completed_at=ts(2024, 2, 2), sale_price=100)
        await add_trade(store, "t2", "l2", state=TradeState.COMPLETED,
                        created_at=ts(2024, 2, 10), completed_at=ts(2024, 2, 11), sale_price=250)
        # Legacy record without completion time or sale price
        await add_trade(store, "t3", "l3", state=TradeState.COMPLETED, created_at=ts(2024, 7))
        # Excluded: pending, other year, account is buyer
        await add_trade(store, "t4", "l1", created_at=ts(2024, 3))
        await add_trade(store, "t5", "l1", state=TradeState.COMPLETED,
                        created_at=ts(2023, 3), completed_at=ts(2023, 3), sale_price=999)
        await add_trade(store, "t6", "l1", buyer="S", seller="X", state=TradeState.COMPLETED,
                        created_at=ts(2024, 3), completed_at=ts(2024, 3), sale_price=999)

        summary = await TradeQueryEngine(store).monthly_sales_summary("S", 2024)

        assert [m.month for m in summary] == list(range(1, 13))
        assert summary[0].count == 0
        assert summary[1].count == 2
        assert summary[1].total_amount == 350
        assert summary[2].count == 0
        assert summary[6].count == 1
        assert summary[6].total_amount == 80
        assert sum(m.count for m in summary) == 3

    @pytest.mark.asyncio
    async def test_empty_year(self, store):
        summary = await TradeQueryEngine(store).monthly_sales_summary("S", 2024)
        assert len(summary) == 12
        assert all(m.count == 0 and m.total_amount == 0 for m in summary)
