"""
Command-line interface for the trade ledger.

Every command acts as the account given with --as and prints JSON.

Examples:
  trade-ledger register-account alice --name "Alice"
  trade-ledger --as alice create-listing 4500 --field brand=Yamaha --field model=R7
  trade-ledger --as bob create-trade lst_0123456789ab
  trade-ledger --as alice complete trd_0123456789ab
  trade-ledger --as alice sales-summary 2024
"""

import argparse
import asyncio
import json
import logging
import sys
from typing import Any, Dict, List, Optional

from .catalog import ListingCatalog
from .config import Config
from .errors import InvalidOperationError, LedgerError
from .identity import IdentityProvider, StaticIdentity, require_account
from .lifecycle import TradeLifecycle
from .monitoring import AlertManager, MetricsCollector
from .persistence import RecordStore
from .queries import ListingQueryEngine, SortBy, StatusFilter, TradeQueryEngine, TypeFilter
from .reconciler import Reconciler

logger = logging.getLogger(__name__)


class LedgerSystem:
    """Wires the store, the lifecycle, the catalog and the query engines."""

    def __init__(self, db_path: Optional[str] = None):
        self.store = RecordStore(db_path)
        self.alerts = AlertManager()
        self.metrics = MetricsCollector()

        self.lifecycle = TradeLifecycle(self.store, self.alerts, self.metrics)
        self.catalog = ListingCatalog(self.store)
        self.listings = ListingQueryEngine(self.store, self.metrics)
        self.trades = TradeQueryEngine(self.store, self.metrics)
        self.reconciler = Reconciler(self.store, self.alerts)

    async def close(self):
        """Replay deferred sold-items updates, then release resources."""
        if len(self.lifecycle.retry_queue):
            await self.lifecycle.retry_pending_index_updates()
            if len(self.lifecycle.retry_queue):
                logger.warning(
                    f"{len(self.lifecycle.retry_queue)} sold-items updates still pending at "
                    f"shutdown; run 'reconcile' to rebuild them"
                )
        await self.store.drain()
        await self.alerts.close()


def _parse_fields(pairs: Optional[List[str]]) -> Dict[str, str]:
    fields = {}
    for pair in pairs or []:
        if "=" not in pair:
            raise InvalidOperationError(f"Expected NAME=VALUE, got {pair!r}")
        name, value = pair.split("=", 1)
        fields[name.strip()] = value.strip()
    return fields


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="trade-ledger",
        description="Listings and trades ledger",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="Examples:" + __doc__.split("Examples:", 1)[1],
    )
    parser.add_argument("--as", dest="account", default=None,
                        help="Account id the command acts as")
    parser.add_argument("--db", default=None,
                        help=f"SQLite database path (default: {Config.DB_PATH})")
    parser.add_argument("--verbose", action="store_true", help="Log to the console")

    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("register-account", help="Create an account")
    p.add_argument("account_id")
    p.add_argument("--name", default="")
    p.add_argument("--avatar", default=None)

    p = sub.add_parser("create-listing", help="Post a listing")
    p.add_argument("price", type=float)
    p.add_argument("--field", action="append", metavar="NAME=VALUE",
                   help="Descriptive field, repeatable")
    p.add_argument("--media", action="append", help="Media reference, repeatable")

    p = sub.add_parser("create-trade", help="Open a trade on a listing")
    p.add_argument("listing_id")

    p = sub.add_parser("complete", help="Complete a trade (seller)")
    p.add_argument("trade_id")

    p = sub.add_parser("cancel", help="Cancel a pending trade (buyer or seller)")
    p.add_argument("trade_id")

    p = sub.add_parser("delete-listing", help="Delete an unsold listing")
    p.add_argument("listing_id")

    p = sub.add_parser("listings", help="List your listings")
    p.add_argument("--search", default=None)
    p.add_argument("--sort", choices=[s.value for s in SortBy], default=SortBy.NEWEST.value)

    p = sub.add_parser("trades", help="List your trades")
    p.add_argument("--search", default=None)
    p.add_argument("--type", choices=[t.value for t in TypeFilter], default=TypeFilter.ALL.value)
    p.add_argument("--status", choices=[s.value for s in StatusFilter], default=StatusFilter.ALL.value)
    p.add_argument("--sort", choices=[s.value for s in SortBy], default=SortBy.NEWEST.value)

    p = sub.add_parser("sales-summary", help="Monthly completed sales for a year")
    p.add_argument("year", type=int)

    sub.add_parser("reconcile", help="Repair sold flags and sold items from trade states")

    return parser


async def execute(args: argparse.Namespace, system: LedgerSystem, identity: IdentityProvider) -> Any:
    command = args.command

    if command == "register-account":
        account = await system.catalog.register_account(args.account_id, args.name, args.avatar)
        return account.to_dict()
    if command == "reconcile":
        report = await system.reconciler.run()
        return report.to_dict()

    actor = require_account(identity)

    if command == "create-listing":
        listing = await system.catalog.create_listing(
            actor, args.price, _parse_fields(args.field), args.media
        )
        return listing.to_dict()
    if command == "create-trade":
        trade = await system.lifecycle.create_trade(args.listing_id, actor)
        return trade.to_dict()
    if command == "complete":
        trade = await system.lifecycle.complete_trade(args.trade_id, actor)
        return trade.to_dict()
    if command == "cancel":
        await system.lifecycle.cancel_trade(args.trade_id, actor)
        return {"cancelled": args.trade_id}
    if command == "delete-listing":
        media = await system.lifecycle.delete_listing(args.listing_id, actor)
        return {"deleted": args.listing_id, "media": media}
    if command == "listings":
        listings = await system.listings.list_listings(actor, args.search, SortBy(args.sort))
        return [listing.to_dict() for listing in listings]
    if command == "trades":
        trades = await system.trades.list_trades(
            actor,
            search_term=args.search,
            type_filter=TypeFilter(args.type),
            status_filter=StatusFilter(args.status),
            sort_by=SortBy(args.sort),
        )
        return [t.to_dict() for t in trades]
    if command == "sales-summary":
        months = await system.trades.monthly_sales_summary(actor, args.year)
        return [m.to_dict() for m in months]

    raise ValueError(f"Unknown command {command}")


async def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.verbose:
        Config.setup_logging()

    system = LedgerSystem(args.db)
    try:
        result = await execute(args, system, StaticIdentity(args.account))
    except LedgerError as e:
        print(json.dumps(e.to_dict(), indent=2))
        return 1
    finally:
        await system.close()

    print(json.dumps(result, indent=2, default=str))
    return 0


def run():
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
