"""
Trade Lifecycle

Owns the trade state machine and the completion protocol that keeps the
trade, the listing and the seller's sold-items index consistent without a
multi-record transaction.

Completion runs as a saga of guarded single-record writes:
  1. Trade     pending -> completed      (guard: still pending)
  2. Listing   sold False -> True        (guard: exists, not sold)
     on failure: compensate step 1 (completed -> pending), raise Conflict
  3. Account   append listing id to seller's sold_items (idempotent)
     on failure: queue for retry, never surfaced to the caller

Trade.state is the authoritative record of intent, Listing.sold the
authoritative record of availability, Account.sold_items a secondary index.
"""

import asyncio
import logging
import time
import uuid
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Deque, Dict, List, Optional, Set

from .config import Config
from .errors import (
    ConflictError, DataIntegrityError, ForbiddenError, InvalidOperationError,
    InvalidStateError, LedgerError, NotFoundError, TransientError,
)
from .models import Account, Listing, RecordKind, Trade, TradeState, can_transition
from .monitoring import AlertManager, MetricsCollector
from .persistence import RecordStore, WriteOutcome
from .retry import retry_transient

logger = logging.getLogger(__name__)


def new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:12]}"


class SagaStatus(Enum):
    COMPLETED = "completed"
    COMPENSATED = "compensated"  # trade rolled back to pending
    ABORTED = "aborted"          # step 1 guard failed, nothing written
    SETTLED_WITH_PENDING_INDEX = "settled_with_pending_index"  # step 3 deferred
    INTEGRITY_FAILURE = "integrity_failure"


@dataclass
class SagaStep:
    name: str
    status: str  # succeeded, failed, compensated, deferred
    error: Optional[str] = None


@dataclass
class SagaResult:
    """Record of one completion protocol run."""
    saga_id: str
    trade_id: str
    listing_id: str
    seller_id: str
    status: Optional[SagaStatus] = None
    steps: List[SagaStep] = field(default_factory=list)
    error_message: Optional[str] = None
    duration_ms: int = 0
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def add_step(self, name: str, status: str, error: Optional[str] = None):
        self.steps.append(SagaStep(name, status, error))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "saga_id": self.saga_id,
            "trade_id": self.trade_id,
            "listing_id": self.listing_id,
            "seller_id": self.seller_id,
            "status": self.status.value if self.status else None,
            "steps": [
                {"name": s.name, "status": s.status, "error": s.error}
                for s in self.steps
            ],
            "error_message": self.error_message,
            "duration_ms": self.duration_ms,
            "created_at": self.created_at.isoformat(),
        }


@dataclass
class PendingIndexUpdate:
    seller_id: str
    listing_id: str
    attempts: int = 0
    last_error: Optional[str] = None
    queued_at: float = field(default_factory=time.time)


class SoldItemsRetryQueue:
    """Sold-items appends that failed after the trade and listing settled."""

    def __init__(self):
        self._items: Dict[tuple, PendingIndexUpdate] = {}

    def add(self, seller_id: str, listing_id: str, error: Optional[str] = None) -> PendingIndexUpdate:
        key = (seller_id, listing_id)
        item = self._items.get(key)
        if item is None:
            item = PendingIndexUpdate(seller_id, listing_id)
            self._items[key] = item
        item.attempts += 1
        item.last_error = error
        return item

    def remove(self, seller_id: str, listing_id: str):
        self._items.pop((seller_id, listing_id), None)

    def pending(self) -> List[PendingIndexUpdate]:
        return list(self._items.values())

    def __len__(self) -> int:
        return len(self._items)


class TradeLifecycle:
    """
    Creates trades and transitions them through pending -> completed or
    pending -> cancelled.

    Sole writer of Trade.state, Listing.sold and Account.sold_items. Every
    operation takes the acting account id explicitly.
    """

    def __init__(
        self,
        store: RecordStore,
        alerts: Optional[AlertManager] = None,
        metrics: Optional[MetricsCollector] = None,
        retry_queue: Optional[SoldItemsRetryQueue] = None,
    ):
        self.store = store
        self.alerts = alerts or AlertManager()
        self.metrics = metrics or MetricsCollector()
        self.retry_queue = retry_queue or SoldItemsRetryQueue()

        self.recent_sagas: Deque[SagaResult] = deque(maxlen=200)
        self._inflight: Set[asyncio.Future] = set()

        self.stats = {
            "trades_created": 0,
            "trades_cancelled": 0,
            "sagas_attempted": 0,
            "sagas_completed": 0,
            "sagas_compensated": 0,
            "sagas_aborted": 0,
            "index_updates_deferred": 0,
            "integrity_failures": 0,
        }

    # Reads (retried on transient failures)
    async def _read(self, kind: RecordKind, record_id: str) -> Optional[Dict[str, Any]]:
        return await retry_transient(
            self.store.get, kind, record_id, operation=f"get {kind.value} {record_id}"
        )

    async def _get_trade(self, trade_id: str) -> Trade:
        data = await self._read(RecordKind.TRADE, trade_id)
        if data is None:
            raise NotFoundError(f"Trade {trade_id} not found", {"trade_id": trade_id})
        return Trade.from_dict(data)

    async def _get_listing(self, listing_id: str) -> Listing:
        data = await self._read(RecordKind.LISTING, listing_id)
        if data is None:
            raise NotFoundError(f"Listing {listing_id} not found", {"listing_id": listing_id})
        return Listing.from_dict(data)

    # Trade creation
    async def create_trade(self, listing_id: str, buyer_id: str) -> Trade:
        """
        Open a pending trade on a listing that is still for sale.

        Raises NotFoundError, ConflictError (listing sold) or
        InvalidOperationError (buyer owns the listing).
        """
        listing = await self._get_listing(listing_id)
        if listing.sold:
            raise ConflictError(f"Listing {listing_id} is already sold", {"listing_id": listing_id})
        if buyer_id == listing.owner_id:
            raise InvalidOperationError(
                "Buyer cannot open a trade on their own listing",
                {"listing_id": listing_id, "buyer_id": buyer_id},
            )

        trade = Trade(
            id=new_id("trd"),
            listing_id=listing_id,
            buyer_id=buyer_id,
            seller_id=listing.owner_id,
        )
        result = await self.store.insert(RecordKind.TRADE, trade.to_dict())
        if not result.ok:
            raise ConflictError(f"Trade id {trade.id} already exists", {"trade_id": trade.id})

        # The listing may have sold or disappeared between the read and the insert
        current = await self._read(RecordKind.LISTING, listing_id)
        if current is None or current.get("sold"):
            await self.store.delete(RecordKind.TRADE, trade.id, expected={"state": TradeState.PENDING.value})
            if current is None:
                raise NotFoundError(f"Listing {listing_id} was deleted", {"listing_id": listing_id})
            raise ConflictError(f"Listing {listing_id} sold concurrently", {"listing_id": listing_id})

        self.stats["trades_created"] += 1
        self.metrics.record_trade_event("created")
        logger.info(f"Trade {trade.id} opened on listing {listing_id} by buyer {buyer_id}")
        return trade

    # Cancellation
    async def cancel_trade(self, trade_id: str, actor_id: str) -> None:
        """
        Cancel a pending trade by deleting it. Buyer or seller only.

        Pending trades never touched the listing or the account, so nothing
        else needs to change.
        """
        trade = await self._get_trade(trade_id)
        if actor_id not in trade.party_ids():
            raise ForbiddenError(
                f"Account {actor_id} is not a party to trade {trade_id}",
                {"trade_id": trade_id, "actor_id": actor_id},
            )
        if not can_transition(trade.state, TradeState.CANCELLED):
            raise InvalidStateError(
                f"Trade {trade_id} is {trade.state.value}, only pending trades can be cancelled",
                {"trade_id": trade_id, "state": trade.state.value},
            )

        result = await self.store.delete(
            RecordKind.TRADE, trade_id, expected={"state": TradeState.PENDING.value}
        )
        if result.outcome == WriteOutcome.NOT_FOUND:
            raise NotFoundError(f"Trade {trade_id} not found", {"trade_id": trade_id})
        if result.outcome == WriteOutcome.GUARD_FAILED:
            raise ConflictError(
                f"Trade {trade_id} changed state during cancellation", {"trade_id": trade_id}
            )

        self.stats["trades_cancelled"] += 1
        self.metrics.record_trade_event("cancelled")
        logger.info(f"Trade {trade_id} cancelled by {actor_id}")

    # Completion
    async def complete_trade(self, trade_id: str, actor_id: str) -> Trade:
        """
        Mark a pending trade as completed. Seller only.

        Raises NotFoundError, ForbiddenError, InvalidStateError (not pending),
        ConflictError (lost a race or the listing is no longer available;
        the trade is left pending) or DataIntegrityError (the rollback could
        not be applied; an alert has been raised).
        """
        trade = await self._get_trade(trade_id)
        if actor_id != trade.seller_id:
            raise ForbiddenError(
                f"Only the seller can complete trade {trade_id}",
                {"trade_id": trade_id, "actor_id": actor_id},
            )
        if not can_transition(trade.state, TradeState.COMPLETED):
            raise InvalidStateError(
                f"Trade {trade_id} is {trade.state.value}, only pending trades can be completed",
                {"trade_id": trade_id, "state": trade.state.value},
            )

        listing_data = await self._read(RecordKind.LISTING, trade.listing_id)
        if listing_data is None or listing_data.get("sold"):
            raise ConflictError(
                f"Listing {trade.listing_id} is no longer available",
                {"trade_id": trade_id, "listing_id": trade.listing_id},
            )
        listing = Listing.from_dict(listing_data)

        # Once step 1 commits the protocol must run to the end, so the saga is
        # shielded from cancellation of the calling task.
        task = asyncio.ensure_future(self._run_completion(trade, listing))
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)
        return await asyncio.shield(task)

    async def _run_completion(self, trade: Trade, listing: Listing) -> Trade:
        saga = SagaResult(
            saga_id=new_id("saga"),
            trade_id=trade.id,
            listing_id=listing.id,
            seller_id=trade.seller_id,
        )
        start_time = time.time()
        self.stats["sagas_attempted"] += 1

        try:
            completed = await self._step_complete_trade(saga, trade, listing)
            await self._step_mark_listing_sold(saga, completed)
            await self._step_append_sold_item(saga, completed)
            if saga.status is None:
                saga.status = SagaStatus.COMPLETED
            return completed
        except LedgerError as e:
            saga.error_message = e.message
            raise
        finally:
            saga.duration_ms = int((time.time() - start_time) * 1000)
            self._record_saga(saga)

    async def _step_complete_trade(self, saga: SagaResult, trade: Trade, listing: Listing) -> Trade:
        """Step 1: pending -> completed, guarded by state == pending."""
        changes = {
            "state": TradeState.COMPLETED.value,
            "completed_at": time.time(),
            "sale_price": listing.price,
            "saga_id": saga.saga_id,
        }
        try:
            result = await self.store.conditional_write(
                RecordKind.TRADE, trade.id, {"state": TradeState.PENDING.value}, changes
            )
        except TransientError as e:
            # The write may or may not have committed; find out before going on.
            current = await self._resolve_read(saga, trade, RecordKind.TRADE, trade.id)
            if current is not None and current.get("saga_id") == saga.saga_id:
                logger.info(f"Saga {saga.saga_id}: step 1 committed despite timeout")
                saga.add_step("complete_trade", "succeeded")
                return Trade.from_dict(current)

            saga.add_step("complete_trade", "failed", str(e))
            if await self._withdraw_late_completion(saga, trade):
                saga.status = SagaStatus.COMPENSATED
            else:
                saga.status = SagaStatus.ABORTED
            raise

        if not result.ok:
            saga.add_step("complete_trade", "failed", result.outcome.value)
            saga.status = SagaStatus.ABORTED
            raise ConflictError(
                f"Trade {trade.id} is no longer pending",
                {"trade_id": trade.id, "outcome": result.outcome.value},
            )

        saga.add_step("complete_trade", "succeeded")
        return Trade.from_dict(result.record)

    async def _step_mark_listing_sold(self, saga: SagaResult, trade: Trade):
        """Step 2: listing sold False -> True; compensates step 1 on failure."""
        try:
            result = await self.store.conditional_write(
                RecordKind.LISTING,
                trade.listing_id,
                {"sold": False},
                {"sold": True, "sold_trade_id": trade.id},
            )
            failure = None if result.ok else result.outcome.value
            if (result.outcome == WriteOutcome.GUARD_FAILED
                    and (result.previous or {}).get("sold_trade_id") == trade.id):
                # Already settled for this trade, e.g. by the reconciler
                failure = None
        except TransientError as e:
            current = await self._resolve_read(saga, trade, RecordKind.LISTING, trade.listing_id)
            if current is not None and current.get("sold_trade_id") == trade.id:
                logger.info(f"Saga {saga.saga_id}: step 2 committed despite timeout")
                failure = None
            else:
                failure = f"transient: {e}"

        if failure is None:
            saga.add_step("mark_listing_sold", "succeeded")
            return

        saga.add_step("mark_listing_sold", "failed", failure)
        logger.warning(
            f"Saga {saga.saga_id}: listing {trade.listing_id} could not be marked sold "
            f"({failure}), rolling back trade {trade.id}"
        )
        await self._compensate_trade(saga, trade)
        saga.status = SagaStatus.COMPENSATED
        raise ConflictError(
            f"Listing {trade.listing_id} is no longer available",
            {"trade_id": trade.id, "listing_id": trade.listing_id, "reason": failure},
        )

    async def _compensate_trade(self, saga: SagaResult, trade: Trade):
        """Revert step 1. Retried until it lands or the budget is spent."""

        async def revert():
            result = await self.store.conditional_write(
                RecordKind.TRADE,
                trade.id,
                {"state": TradeState.COMPLETED.value, "saga_id": saga.saga_id},
                {"state": TradeState.PENDING.value, "completed_at": None, "sale_price": None, "saga_id": None},
            )
            if result.ok:
                return True
            # An earlier attempt that timed out may already have applied the revert
            previous = result.previous or {}
            return (
                result.outcome == WriteOutcome.GUARD_FAILED
                and previous.get("state") == TradeState.PENDING.value
                and previous.get("saga_id") is None
            )

        try:
            reverted = await retry_transient(
                revert,
                attempts=Config.COMPENSATION_MAX_RETRIES,
                operation=f"compensate trade {trade.id}",
            )
        except TransientError as e:
            reverted = False
            reason = f"compensation retries exhausted: {e}"
        else:
            reason = "compensation guard failed"

        if reverted:
            saga.add_step("compensate_trade", "compensated")
            logger.warning(f"Saga {saga.saga_id}: trade {trade.id} rolled back to pending")
            return

        saga.add_step("compensate_trade", "failed", reason)
        await self._integrity_failure(saga, trade, reason)

    async def _withdraw_late_completion(self, saga: SagaResult, trade: Trade) -> bool:
        """
        Settle a step 1 write whose timeout left it unresolved.

        The store's worker thread outlives the caller's timeout, so the write
        can still commit after the first re-read. Wait out one more store
        timeout, look again and revert the trade if this saga's write landed.
        Returns True when a revert was applied.
        """
        await asyncio.sleep(self.store.timeout)
        current = await self._resolve_read(saga, trade, RecordKind.TRADE, trade.id)
        if current is None or current.get("saga_id") != saga.saga_id:
            logger.info(f"Saga {saga.saga_id}: step 1 for trade {trade.id} did not commit")
            return False

        logger.warning(
            f"Saga {saga.saga_id}: step 1 for trade {trade.id} committed after its timeout, "
            f"rolling back"
        )
        await self._compensate_trade(saga, trade)
        return True

    async def _resolve_read(
        self, saga: SagaResult, trade: Trade, kind: RecordKind, record_id: str
    ) -> Optional[Dict[str, Any]]:
        """Read used to settle an ambiguous write; exhausting retries is an integrity failure."""
        try:
            return await retry_transient(
                self.store.get, kind, record_id,
                attempts=Config.COMPENSATION_MAX_RETRIES,
                operation=f"resolve {kind.value} {record_id}",
            )
        except TransientError as e:
            await self._integrity_failure(saga, trade, f"outcome of {kind.value} update unknown: {e}")

    async def _alert(self, send, *args):
        """Raise an operator alert; a failing alert channel never fails the saga."""
        try:
            await send(*args)
        except Exception as e:
            logger.error(f"Alert delivery failed: {e}")

    async def _integrity_failure(self, saga: SagaResult, trade: Trade, reason: str):
        saga.status = SagaStatus.INTEGRITY_FAILURE
        self.stats["integrity_failures"] += 1
        logger.critical(
            f"Saga {saga.saga_id}: trade {trade.id} may be completed while listing "
            f"{trade.listing_id} is unsold: {reason}"
        )
        await self._alert(self.alerts.data_integrity_violation, trade.id, trade.listing_id, reason)
        raise DataIntegrityError(
            f"Trade {trade.id} could not be reconciled with listing {trade.listing_id}",
            {"trade_id": trade.id, "listing_id": trade.listing_id, "reason": reason},
        )

    async def _step_append_sold_item(self, saga: SagaResult, trade: Trade):
        """Step 3: best effort. Failures are queued, never raised."""
        try:
            await self._append_sold_item(trade.seller_id, trade.listing_id)
        except LedgerError as e:
            saga.add_step("append_sold_item", "deferred", e.message)
            saga.status = SagaStatus.SETTLED_WITH_PENDING_INDEX
            self.retry_queue.add(trade.seller_id, trade.listing_id, e.message)
            self.stats["index_updates_deferred"] += 1
            self.metrics.increment("index_updates_deferred")
            logger.warning(
                f"Saga {saga.saga_id}: sold-items update for seller {trade.seller_id} "
                f"deferred: {e.message}"
            )
            await self._alert(self.alerts.index_update_deferred, trade.seller_id, trade.listing_id, e.message)
            return

        saga.add_step("append_sold_item", "succeeded")

    async def _append_sold_item(self, seller_id: str, listing_id: str):
        """Idempotently add listing_id to the seller's sold_items."""
        for _ in range(Config.MAX_RETRIES):
            data = await self._read(RecordKind.ACCOUNT, seller_id)
            if data is None:
                raise NotFoundError(f"Account {seller_id} not found", {"account_id": seller_id})

            account = Account.from_dict(data)
            if listing_id in account.sold_items:
                return

            result = await self.store.conditional_write(
                RecordKind.ACCOUNT,
                seller_id,
                {"sold_items": data.get("sold_items") or []},
                {"sold_items": account.sold_items + [listing_id]},
            )
            if result.ok:
                return
            if result.outcome == WriteOutcome.NOT_FOUND:
                raise NotFoundError(f"Account {seller_id} not found", {"account_id": seller_id})
            # Another append won the race; re-read and try again

        raise ConflictError(
            f"Sold-items of {seller_id} kept changing",
            {"account_id": seller_id, "listing_id": listing_id},
        )

    async def retry_pending_index_updates(self) -> int:
        """
        Replay deferred sold-items appends. Returns how many were applied.

        Nothing runs this on a timer. The owner of the lifecycle calls it
        periodically and on shutdown; the queue is in memory, so whatever is
        left when the process exits is rebuilt by Reconciler.run().
        """
        applied = 0
        for item in self.retry_queue.pending():
            try:
                await self._append_sold_item(item.seller_id, item.listing_id)
            except LedgerError as e:
                self.retry_queue.add(item.seller_id, item.listing_id, e.message)
                logger.warning(
                    f"Sold-items retry for {item.seller_id}/{item.listing_id} failed "
                    f"(attempt {item.attempts}): {e.message}"
                )
                continue
            self.retry_queue.remove(item.seller_id, item.listing_id)
            applied += 1

        if applied:
            logger.info(f"Applied {applied} deferred sold-items updates")
        return applied

    # Listing deletion
    async def delete_listing(self, listing_id: str, actor_id: str) -> List[str]:
        """
        Delete a listing on behalf of its owner.

        Rejected with ConflictError while a pending trade references it and
        with InvalidStateError once it has been sold. Returns the listing's
        media references so the caller can remove the stored files.
        """
        listing = await self._get_listing(listing_id)
        if actor_id != listing.owner_id:
            raise ForbiddenError(
                f"Only the owner can delete listing {listing_id}",
                {"listing_id": listing_id, "actor_id": actor_id},
            )

        trades = await retry_transient(
            self.store.query,
            RecordKind.TRADE,
            lambda t: t.get("listing_id") == listing_id,
            operation=f"trades for listing {listing_id}",
        )
        states = {t.get("state") for t in trades}
        if listing.sold or TradeState.COMPLETED.value in states:
            raise InvalidStateError(
                f"Listing {listing_id} has a completed trade and cannot be deleted",
                {"listing_id": listing_id},
            )
        if TradeState.PENDING.value in states:
            raise ConflictError(
                f"Listing {listing_id} has pending trades; cancel them first",
                {"listing_id": listing_id, "pending": [t["id"] for t in trades if t.get("state") == "pending"]},
            )

        result = await self.store.delete(RecordKind.LISTING, listing_id, expected={"sold": False})
        if result.outcome == WriteOutcome.NOT_FOUND:
            raise NotFoundError(f"Listing {listing_id} not found", {"listing_id": listing_id})
        if result.outcome == WriteOutcome.GUARD_FAILED:
            raise ConflictError(f"Listing {listing_id} changed during deletion", {"listing_id": listing_id})

        logger.info(f"Listing {listing_id} deleted by {actor_id}")
        return list(listing.media)

    # Housekeeping
    async def purge_cancelled_trades(self) -> int:
        """Delete trade records left in the cancelled state."""
        cancelled = await retry_transient(
            self.store.query,
            RecordKind.TRADE,
            lambda t: t.get("state") == TradeState.CANCELLED.value,
            operation="cancelled trades",
        )
        purged = 0
        for record in cancelled:
            result = await self.store.delete(
                RecordKind.TRADE, record["id"], expected={"state": TradeState.CANCELLED.value}
            )
            if result.ok:
                purged += 1
        if purged:
            logger.info(f"Purged {purged} cancelled trades")
        return purged

    def _record_saga(self, saga: SagaResult):
        self.recent_sagas.append(saga)
        status = saga.status or SagaStatus.ABORTED
        if status in (SagaStatus.COMPLETED, SagaStatus.SETTLED_WITH_PENDING_INDEX):
            self.stats["sagas_completed"] += 1
        elif status == SagaStatus.COMPENSATED:
            self.stats["sagas_compensated"] += 1
        elif status == SagaStatus.ABORTED:
            self.stats["sagas_aborted"] += 1
        self.metrics.record_saga(status.value, saga.duration_ms)

        logger.info(
            f"Saga {saga.saga_id} for trade {saga.trade_id}: status={status.value} "
            f"time={saga.duration_ms}ms"
        )

    def get_stats(self) -> Dict[str, Any]:
        return {
            **self.stats,
            "pending_index_updates": len(self.retry_queue),
            "inflight_sagas": len(self._inflight),
            "recent_sagas": [s.to_dict() for s in list(self.recent_sagas)[-10:]],
        }
