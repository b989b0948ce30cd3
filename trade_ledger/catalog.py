"""
Listing Catalog

Owner-facing operations on listings and the thin account registration
helper. Never writes Listing.sold; that flag belongs to TradeLifecycle.
"""

import logging
import math
from typing import Any, Dict, List, Optional

from .errors import (
    ConflictError, ForbiddenError, InvalidOperationError, InvalidStateError, NotFoundError,
)
from .lifecycle import new_id
from .models import Account, Listing, RecordKind
from .persistence import RecordStore, WriteOutcome
from .retry import retry_transient

logger = logging.getLogger(__name__)


class ListingCatalog:
    """Create, edit and look up listings and accounts."""

    def __init__(self, store: RecordStore):
        self.store = store

    async def register_account(
        self,
        account_id: str,
        name: str,
        avatar: Optional[str] = None,
        profile: Optional[Dict[str, Any]] = None,
    ) -> Account:
        account = Account(id=account_id, name=name, avatar=avatar, profile=profile or {})
        result = await self.store.insert(RecordKind.ACCOUNT, account.to_dict())
        if not result.ok:
            raise ConflictError(f"Account {account_id} already exists", {"account_id": account_id})
        logger.info(f"Registered account {account_id}")
        return account

    async def get_account(self, account_id: str) -> Account:
        data = await retry_transient(self.store.get, RecordKind.ACCOUNT, account_id)
        if data is None:
            raise NotFoundError(f"Account {account_id} not found", {"account_id": account_id})
        return Account.from_dict(data)

    async def get_listing(self, listing_id: str) -> Listing:
        data = await retry_transient(self.store.get, RecordKind.LISTING, listing_id)
        if data is None:
            raise NotFoundError(f"Listing {listing_id} not found", {"listing_id": listing_id})
        return Listing.from_dict(data)

    async def create_listing(
        self,
        owner_id: str,
        price: float,
        fields: Optional[Dict[str, Any]] = None,
        media: Optional[List[str]] = None,
    ) -> Listing:
        """Post a new listing for an existing account."""
        price = _validate_price(price)
        await self.get_account(owner_id)

        listing = Listing(
            id=new_id("lst"),
            owner_id=owner_id,
            price=price,
            fields=dict(fields or {}),
            media=list(media or []),
        )
        result = await self.store.insert(RecordKind.LISTING, listing.to_dict())
        if not result.ok:
            raise ConflictError(f"Listing id {listing.id} already exists", {"listing_id": listing.id})

        logger.info(f"Listing {listing.id} created by {owner_id} at {listing.price}")
        return listing

    async def update_listing(
        self,
        listing_id: str,
        actor_id: str,
        fields: Optional[Dict[str, Any]] = None,
        price: Optional[float] = None,
        media: Optional[List[str]] = None,
    ) -> Listing:
        """
        Edit descriptive fields, price or media of an unsold listing.

        fields are merged into the existing ones. The write is guarded on the
        listing still being unsold, so an edit racing a completion loses.
        """
        listing = await self.get_listing(listing_id)
        if actor_id != listing.owner_id:
            raise ForbiddenError(
                f"Only the owner can edit listing {listing_id}",
                {"listing_id": listing_id, "actor_id": actor_id},
            )
        if listing.sold:
            raise InvalidStateError(
                f"Listing {listing_id} is sold and can no longer be edited",
                {"listing_id": listing_id},
            )

        changes: Dict[str, Any] = {}
        if fields:
            changes["fields"] = {**listing.fields, **fields}
        if price is not None:
            changes["price"] = _validate_price(price)
        if media is not None:
            changes["media"] = list(media)
        if not changes:
            return listing

        result = await self.store.conditional_write(
            RecordKind.LISTING, listing_id, {"sold": False}, changes
        )
        if result.outcome == WriteOutcome.NOT_FOUND:
            raise NotFoundError(f"Listing {listing_id} not found", {"listing_id": listing_id})
        if result.outcome == WriteOutcome.GUARD_FAILED:
            raise InvalidStateError(
                f"Listing {listing_id} was sold during the edit", {"listing_id": listing_id}
            )

        logger.info(f"Listing {listing_id} updated by {actor_id}: {sorted(changes)}")
        return Listing.from_dict(result.record)


def _validate_price(price) -> float:
    try:
        value = float(price)
    except (TypeError, ValueError):
        raise InvalidOperationError(f"Price must be a number, got {price!r}", {"price": price})
    if not math.isfinite(value) or value < 0:
        raise InvalidOperationError(
            f"Price must be a finite non-negative number, got {price}", {"price": price}
        )
    return value
