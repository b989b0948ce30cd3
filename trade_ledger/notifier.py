"""
Change Notifier

Turns the record store's change feed into "something changed" signals for
the accounts affected by each write. Callbacks receive no payload and are
expected to re-query for the current state.
"""

import asyncio
import itertools
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, FrozenSet, Iterable, List, Optional, Set, Union

from .models import RecordKind
from .monitoring import MetricsCollector
from .persistence import ChangeEvent, RecordStore, SubscriptionHandle

logger = logging.getLogger(__name__)

SignalCallback = Callable[[], Union[None, Awaitable[None]]]


@dataclass
class Subscription:
    key: str
    account_id: str
    callback: SignalCallback
    kinds: FrozenSet[RecordKind]
    scheduled: bool = False  # a signal is queued and its callback has not started
    delivered: int = 0
    coalesced: int = 0


def affected_accounts(event: ChangeEvent) -> Set[str]:
    """Accounts whose views depend on the changed record."""
    accounts: Set[str] = set()
    for record in (event.record, event.previous):
        if not record:
            continue
        if event.kind == RecordKind.TRADE:
            accounts.update(a for a in (record.get("buyer_id"), record.get("seller_id")) if a)
        elif event.kind == RecordKind.LISTING:
            if record.get("owner_id"):
                accounts.add(record["owner_id"])
        elif event.kind == RecordKind.ACCOUNT:
            accounts.add(record["id"])
    return accounts


class ChangeNotifier:
    """
    Registry of account subscriptions fed by the store's change feed.

    Trade changes signal the buyer and the seller, listing changes signal
    the owner. Signals for one subscription coalesce while a delivery is
    queued but not yet running; at least one signal always follows a
    committed write.
    """

    def __init__(self, store: RecordStore, metrics: Optional[MetricsCollector] = None):
        self.store = store
        self.metrics = metrics or MetricsCollector()

        self._subscriptions: Dict[str, Subscription] = {}
        self._keys = itertools.count(1)
        self._handles: List[SubscriptionHandle] = []
        self._tasks: Set[asyncio.Future] = set()

    @property
    def running(self) -> bool:
        return bool(self._handles)

    def start(self, kinds: Iterable[RecordKind] = (RecordKind.TRADE, RecordKind.LISTING)):
        """Subscribe to the store's change feed."""
        if self.running:
            return
        for kind in kinds:
            self._handles.append(self.store.subscribe(kind, self._on_change))
        logger.info(f"Change notifier started for {[k.value for k in kinds]}")

    def stop(self):
        for handle in self._handles:
            handle.cancel()
        self._handles = []
        logger.info("Change notifier stopped")

    def register(
        self,
        account_id: str,
        callback: SignalCallback,
        kinds: Iterable[RecordKind] = (RecordKind.TRADE,),
    ) -> str:
        """Register callback for changes affecting account_id. Returns the key."""
        key = f"sub_{next(self._keys)}"
        self._subscriptions[key] = Subscription(key, account_id, callback, frozenset(kinds))
        logger.debug(f"Registered {key} for account {account_id}")
        return key

    def unregister(self, key: str) -> bool:
        return self._subscriptions.pop(key, None) is not None

    def _on_change(self, event: ChangeEvent):
        accounts = affected_accounts(event)
        if not accounts:
            return
        for sub in list(self._subscriptions.values()):
            if event.kind in sub.kinds and sub.account_id in accounts:
                self._signal(sub)

    def _signal(self, sub: Subscription):
        if sub.scheduled:
            sub.coalesced += 1
            return
        sub.scheduled = True
        task = asyncio.ensure_future(self._invoke(sub))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _invoke(self, sub: Subscription):
        # Clearing the flag before the callback runs means a write landing
        # during the callback schedules a fresh signal.
        sub.scheduled = False
        if sub.key not in self._subscriptions:
            return
        try:
            result = sub.callback()
            if asyncio.iscoroutine(result):
                await result
        except Exception as e:
            self.metrics.record_notification(delivered=False)
            logger.error(f"Notification callback {sub.key} for {sub.account_id} failed: {e}")
            return
        sub.delivered += 1
        self.metrics.record_notification()

    async def drain(self):
        """Wait for queued notifications, including those scheduled by pending store events."""
        await self.store.drain()
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
            await self.store.drain()

    def get_stats(self) -> Dict:
        subs = list(self._subscriptions.values())
        return {
            "running": self.running,
            "subscriptions": len(subs),
            "delivered": sum(s.delivered for s in subs),
            "coalesced": sum(s.coalesced for s in subs),
            "pending": len(self._tasks),
        }
