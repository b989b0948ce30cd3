"""
Reconciler

Rebuilds the derived fields (Listing.sold, Account.sold_items) from the
authoritative Trade.state. Every repair is a guarded single-record write
and a lost guard is simply reported. Listings are marked unsold only when
the scan saw no completed trade, so run it while no completion is in flight.
"""

import logging
import time
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .errors import LedgerError
from .models import RecordKind, TradeState
from .monitoring import AlertManager
from .persistence import RecordStore
from .retry import retry_transient

logger = logging.getLogger(__name__)


@dataclass
class ReconcileReport:
    listings_checked: int = 0
    listings_marked_sold: List[str] = field(default_factory=list)
    listings_marked_unsold: List[str] = field(default_factory=list)
    sold_items_added: List[Dict[str, str]] = field(default_factory=list)
    violations: List[Dict[str, Any]] = field(default_factory=list)
    skipped: List[Dict[str, Any]] = field(default_factory=list)
    duration_ms: int = 0

    @property
    def repaired(self) -> int:
        return (len(self.listings_marked_sold) + len(self.listings_marked_unsold)
                + len(self.sold_items_added))

    @property
    def clean(self) -> bool:
        return self.repaired == 0 and not self.violations

    def to_dict(self) -> Dict[str, Any]:
        return {
            "listings_checked": self.listings_checked,
            "listings_marked_sold": self.listings_marked_sold,
            "listings_marked_unsold": self.listings_marked_unsold,
            "sold_items_added": self.sold_items_added,
            "violations": self.violations,
            "skipped": self.skipped,
            "repaired": self.repaired,
            "duration_ms": self.duration_ms,
        }


class Reconciler:
    def __init__(self, store: RecordStore, alerts: Optional[AlertManager] = None):
        self.store = store
        self.alerts = alerts or AlertManager()

    async def _scan(self, kind: RecordKind) -> List[Dict[str, Any]]:
        return await retry_transient(self.store.query, kind, operation=f"scan {kind.value}")

    async def run(self) -> ReconcileReport:
        start_time = time.time()
        report = ReconcileReport()

        listings = await self._scan(RecordKind.LISTING)
        trades = await self._scan(RecordKind.TRADE)

        completed_by_listing: Dict[str, List[Dict[str, Any]]] = defaultdict(list)
        for trade in trades:
            if trade.get("state") == TradeState.COMPLETED.value:
                completed_by_listing[trade["listing_id"]].append(trade)

        for listing in listings:
            report.listings_checked += 1
            completed = completed_by_listing.get(listing["id"], [])

            if len(completed) > 1:
                # Cannot tell which sale is real; leave it to an operator
                violation = {
                    "listing_id": listing["id"],
                    "trade_ids": [t["id"] for t in completed],
                    "reason": "multiple completed trades",
                }
                report.violations.append(violation)
                await self.alerts.critical(
                    "Multiple completed trades",
                    f"Listing {listing['id']} has {len(completed)} completed trades",
                    violation,
                )
                continue

            await self._repair_sold_flag(report, listing, completed[0] if completed else None)
            if completed:
                await self._repair_sold_items(report, completed[0])

        report.duration_ms = int((time.time() - start_time) * 1000)
        if report.clean:
            logger.info(f"Reconciliation clean: {report.listings_checked} listings checked")
        else:
            logger.warning(
                f"Reconciliation repaired {report.repaired} records, "
                f"{len(report.violations)} violations"
            )
        return report

    async def _repair_sold_flag(self, report: ReconcileReport, listing: Dict[str, Any], trade):
        should_be_sold = trade is not None
        if bool(listing.get("sold")) == should_be_sold:
            return

        changes = {"sold": should_be_sold, "sold_trade_id": trade["id"] if trade else None}
        result = await self._write(report, RecordKind.LISTING, listing["id"],
                                   {"sold": bool(listing.get("sold"))}, changes)
        if result:
            target = report.listings_marked_sold if should_be_sold else report.listings_marked_unsold
            target.append(listing["id"])
            logger.warning(f"Listing {listing['id']} sold flag repaired to {should_be_sold}")

    async def _repair_sold_items(self, report: ReconcileReport, trade: Dict[str, Any]):
        seller_id = trade["seller_id"]
        account = await retry_transient(self.store.get, RecordKind.ACCOUNT, seller_id)
        if account is None:
            report.skipped.append({"account_id": seller_id, "reason": "seller account missing"})
            return

        sold_items = account.get("sold_items") or []
        if trade["listing_id"] in sold_items:
            return

        result = await self._write(report, RecordKind.ACCOUNT, seller_id,
                                   {"sold_items": sold_items},
                                   {"sold_items": sold_items + [trade["listing_id"]]})
        if result:
            report.sold_items_added.append({"account_id": seller_id, "listing_id": trade["listing_id"]})
            logger.warning(f"Added listing {trade['listing_id']} to sold items of {seller_id}")

    async def _write(self, report, kind, record_id, expected, changes) -> bool:
        try:
            result = await self.store.conditional_write(kind, record_id, expected, changes)
        except LedgerError as e:
            report.skipped.append({"record_id": record_id, "reason": e.message})
            return False
        if not result.ok:
            report.skipped.append({"record_id": record_id, "reason": result.outcome.value})
            return False
        return True
