"""
Record types for listings, trades and accounts, plus the enriched
projections built by the query engines.
"""

import time
from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Any, Dict, List, Optional


class RecordKind(Enum):
    LISTING = "listing"
    TRADE = "trade"
    ACCOUNT = "account"


class TradeState(Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


# pending -> completed and pending -> cancelled only
VALID_TRANSITIONS = {
    TradeState.PENDING: (TradeState.COMPLETED, TradeState.CANCELLED),
    TradeState.COMPLETED: (),
    TradeState.CANCELLED: (),
}


def can_transition(current: TradeState, target: TradeState) -> bool:
    return target in VALID_TRANSITIONS.get(current, ())


@dataclass
class Listing:
    """A sale offer owned by one account."""
    id: str
    owner_id: str
    price: float
    fields: Dict[str, Any] = field(default_factory=dict)  # brand, model, trim, ...
    media: List[str] = field(default_factory=list)
    sold: bool = False
    sold_trade_id: Optional[str] = None  # trade that settled this listing
    created_at: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Listing":
        return cls(
            id=data["id"],
            owner_id=data["owner_id"],
            price=float(data.get("price") or 0),
            fields=dict(data.get("fields") or {}),
            media=list(data.get("media") or []),
            sold=bool(data.get("sold", False)),
            sold_trade_id=data.get("sold_trade_id"),
            created_at=float(data.get("created_at") or 0),
        )


@dataclass
class Trade:
    """A buyer/seller agreement over exactly one listing."""
    id: str
    listing_id: str
    buyer_id: str
    seller_id: str
    state: TradeState = TradeState.PENDING
    created_at: float = field(default_factory=time.time)
    completed_at: Optional[float] = None
    sale_price: Optional[float] = None
    saga_id: Optional[str] = None  # completion run that wrote state=completed

    def party_ids(self) -> List[str]:
        return [self.buyer_id, self.seller_id]

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["state"] = self.state.value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Trade":
        return cls(
            id=data["id"],
            listing_id=data["listing_id"],
            buyer_id=data["buyer_id"],
            seller_id=data["seller_id"],
            state=TradeState(data.get("state", TradeState.PENDING.value)),
            created_at=float(data.get("created_at") or 0),
            completed_at=data.get("completed_at"),
            sale_price=data.get("sale_price"),
            saga_id=data.get("saga_id"),
        )


@dataclass
class Account:
    """A participant. sold_items is a derived, append-only index."""
    id: str
    name: str = ""
    avatar: Optional[str] = None
    profile: Dict[str, Any] = field(default_factory=dict)
    sold_items: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Account":
        return cls(
            id=data["id"],
            name=data.get("name") or "",
            avatar=data.get("avatar"),
            profile=dict(data.get("profile") or {}),
            sold_items=list(data.get("sold_items") or []),
        )

    def summary(self) -> "AccountSummary":
        return AccountSummary(id=self.id, name=self.name, avatar=self.avatar)


@dataclass
class AccountSummary:
    id: str
    name: str
    avatar: Optional[str] = None


class TradeType(Enum):
    BUYING = "buying"
    SELLING = "selling"


@dataclass
class EnrichedTrade:
    """
    A trade joined with its listing and both counterparties.

    listing, buyer and seller are None when the referenced record has been
    deleted; consumers render a placeholder.
    """
    trade: Trade
    type: TradeType
    listing: Optional[Listing] = None
    buyer: Optional[AccountSummary] = None
    seller: Optional[AccountSummary] = None

    @property
    def price(self) -> float:
        """Recorded sale price, else the listing's current price."""
        if self.trade.sale_price is not None:
            return self.trade.sale_price
        if self.listing is not None:
            return self.listing.price
        return 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "trade": self.trade.to_dict(),
            "type": self.type.value,
            "listing": self.listing.to_dict() if self.listing else None,
            "buyer": asdict(self.buyer) if self.buyer else None,
            "seller": asdict(self.seller) if self.seller else None,
        }


@dataclass
class MonthlySales:
    month: int  # 1..12
    count: int = 0
    total_amount: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
