"""
Trade Ledger
Listings, trades and sold-items kept consistent over a single-record store
"""

from .config import Config
from .errors import (
    LedgerError, NotFoundError, ConflictError, InvalidStateError,
    InvalidOperationError, ForbiddenError, TransientError, DataIntegrityError
)
from .persistence import RecordStore
from .lifecycle import TradeLifecycle, SagaResult, SagaStatus
from .catalog import ListingCatalog
from .notifier import ChangeNotifier
from .live_views import LiveTradeView, LiveListingView
from .queries import ListingQueryEngine, TradeQueryEngine, SortBy, TypeFilter, StatusFilter
from .reconciler import Reconciler, ReconcileReport
from .identity import IdentityProvider, StaticIdentity

__version__ = "1.0.0"
__all__ = [
    "Config",
    "LedgerError",
    "NotFoundError",
    "ConflictError",
    "InvalidStateError",
    "InvalidOperationError",
    "ForbiddenError",
    "TransientError",
    "DataIntegrityError",
    "RecordStore",
    "TradeLifecycle",
    "SagaResult",
    "SagaStatus",
    "ListingCatalog",
    "ChangeNotifier",
    "LiveTradeView",
    "LiveListingView",
    "ListingQueryEngine",
    "TradeQueryEngine",
    "SortBy",
    "TypeFilter",
    "StatusFilter",
    "Reconciler",
    "ReconcileReport",
    "IdentityProvider",
    "StaticIdentity",
]
