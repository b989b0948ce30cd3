"""
Tests for the change notifier and the live views built on it.
"""

import asyncio
from unittest.mock import Mock
import pytest

import sys
import os
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from trade_ledger.catalog import ListingCatalog
from trade_ledger.lifecycle import TradeLifecycle
from trade_ledger.live_views import LiveListingView, LiveTradeView
from trade_ledger.models import RecordKind
from trade_ledger.monitoring import AlertManager, MetricsCollector
from trade_ledger.notifier import ChangeNotifier, affected_accounts
from trade_ledger.persistence import ChangeEvent, ChangeOp, RecordStore
from trade_ledger.queries import ListingQueryEngine, StatusFilter, TradeQueryEngine


@pytest.fixture
def store(tmp_path):
    return RecordStore(str(tmp_path / "ledger.db"))


@pytest.fixture
def metrics():
    return MetricsCollector()


@pytest.fixture
def notifier(store, metrics):
    notifier = ChangeNotifier(store, metrics)
    notifier.start()
    yield notifier
    notifier.stop()


@pytest.fixture
def lifecycle(store, metrics):
    return TradeLifecycle(store, AlertManager(webhook_url=None), metrics)


@pytest.fixture
def catalog(store):
    return ListingCatalog(store)


async def seed(catalog):
    for account_id in ("S", "B", "C"):
        await catalog.register_account(account_id, account_id.lower())
    return await catalog.create_listing("S", 100, {"brand": "Yamaha"})


def trade_event(op=ChangeOp.UPDATE, record=None, previous=None):
    return ChangeEvent(RecordKind.TRADE, op, "t1", record, previous)


class TestAffectedAccounts:

    def test_trade_parties_from_record_and_previous(self):
        event = trade_event(ChangeOp.DELETE, None, {"buyer_id": "B", "seller_id": "S"})
        assert affected_accounts(event) == {"B", "S"}

    def test_listing_owner(self):
        event = ChangeEvent(RecordKind.LISTING, ChangeOp.INSERT, "l1", {"owner_id": "S"}, None)
        assert affected_accounts(event) == {"S"}


class TestChangeNotifier:

    @pytest.mark.asyncio
    async def test_parties_notified_on_trade_changes(self, notifier, lifecycle, catalog):
        listing = await seed(catalog)
        buyer_cb, seller_cb, other_cb = Mock(), Mock(), Mock()
        notifier.register("B", buyer_cb)
        notifier.register("S", seller_cb)
        notifier.register("C", other_cb)

        trade = await lifecycle.create_trade(listing.id, "B")
        await notifier.drain()
        assert buyer_cb.call_count >= 1
        assert seller_cb.call_count >= 1
        other_cb.assert_not_called()

        buyer_cb.reset_mock()
        await lifecycle.cancel_trade(trade.id, "B")
        await notifier.drain()
        assert buyer_cb.call_count >= 1
        buyer_cb.assert_called_with()

    @pytest.mark.asyncio
    async def test_requery_after_signal_sees_committed_write(self, store, notifier, lifecycle, catalog):
        listing = await seed(catalog)
        trade = await lifecycle.create_trade(listing.id, "B")
        await notifier.drain()
        engine = TradeQueryEngine(store)
        observed = []

        async def requery():
            trades = await engine.list_trades("B")
            observed.append([e.trade.state.value for e in trades])

        notifier.register("B", requery)
        await lifecycle.complete_trade(trade.id, "S")
        await notifier.drain()

        assert observed
        assert observed[-1] == ["completed"]

    @pytest.mark.asyncio
    async def test_listing_changes_notify_owner(self, notifier, catalog):
        await catalog.register_account("S", "s")
        owner_cb = Mock()
        notifier.register("S", owner_cb, kinds=(RecordKind.LISTING,))

        await catalog.create_listing("S", 10, {"brand": "Honda"})
        await notifier.drain()
        assert owner_cb.call_count >= 1

    @pytest.mark.asyncio
    async def test_signals_coalesce(self, notifier):
        callback = Mock()
        notifier.register("B", callback)
        event = trade_event(record={"buyer_id": "B", "seller_id": "S"})

        for _ in range(3):
            notifier._on_change(event)
        await notifier.drain()

        assert callback.call_count == 1
        assert notifier.get_stats()["coalesced"] == 2

    @pytest.mark.asyncio
    async def test_unregister_and_stop(self, notifier, lifecycle, catalog):
        listing = await seed(catalog)
        callback = Mock()
        key = notifier.register("B", callback)
        assert notifier.unregister(key)
        assert not notifier.unregister(key)

        await lifecycle.create_trade(listing.id, "B")
        await notifier.drain()
        callback.assert_not_called()

        notifier.register("B", callback)
        notifier.stop()
        assert not notifier.running
        await lifecycle.create_trade(listing.id, "B")
        await notifier.drain()
        callback.assert_not_called()

    @pytest.mark.asyncio
    async def test_failing_callback_is_isolated(self, notifier, metrics):
        def broken():
            raise RuntimeError("view gone")

        healthy = Mock()
        notifier.register("B", broken)
        notifier.register("B", healthy)

        notifier._on_change(trade_event(record={"buyer_id": "B", "seller_id": "S"}))
        await notifier.drain()

        healthy.assert_called_once_with()
        assert metrics.get_counter("notifications_failed") == 1


class TestLiveViews:

    @pytest.mark.asyncio
    async def test_live_trade_view_follows_changes(self, store, notifier, lifecycle, catalog):
        listing = await seed(catalog)
        updates = []
        view = LiveTradeView(notifier, TradeQueryEngine(store), "B",
                             status_filter=StatusFilter.IN_PROGRESS,
                             on_update=lambda items: updates.append(len(items)))

        assert await view.open() == []

        trade = await lifecycle.create_trade(listing.id, "B")
        await notifier.drain()
        assert [e.trade.id for e in view.items] == [trade.id]

        await lifecycle.complete_trade(trade.id, "S")
        await notifier.drain()
        assert view.items == []
        assert updates[0] == 0
        assert updates[-1] == 0
        assert view.refresh_count >= 3

        view.close()
        await lifecycle.create_trade(
            (await catalog.create_listing("S", 5, {})).id, "B"
        )
        await notifier.drain()
        assert view.items == []

    @pytest.mark.asyncio
    async def test_live_listing_view(self, store, notifier, catalog):
        await catalog.register_account("S", "s")
        view = LiveListingView(notifier, ListingQueryEngine(store), "S")
        await view.open()

        listing = await catalog.create_listing("S", 10, {"brand": "Honda"})
        await notifier.drain()
        assert [l.id for l in view.items] == [listing.id]

        await catalog.update_listing(listing.id, "S", price=12)
        await notifier.drain()
        assert view.items[0].price == 12

    @pytest.mark.asyncio
    async def test_async_on_update(self, store, notifier, catalog):
        await catalog.register_account("S", "s")
        seen = asyncio.Event()

        async def on_update(items):
            if items:
                seen.set()

        view = LiveListingView(notifier, ListingQueryEngine(store), "S", on_update=on_update)
        await view.open()
        await catalog.create_listing("S", 10, {})
        await notifier.drain()
        assert seen.is_set()

    def test_views_exported_from_package(self):
        import trade_ledger

        assert trade_ledger.LiveTradeView is LiveTradeView
        assert trade_ledger.LiveListingView is LiveListingView
        assert {"LiveTradeView", "LiveListingView"} <= set(trade_ledger.__all__)
