"""
Persistence layer: record storage and change feed.
"""

from .record_store import (
    RecordStore, WriteOutcome, WriteResult, ChangeOp, ChangeEvent, SubscriptionHandle
)

__all__ = [
    "RecordStore",
    "WriteOutcome",
    "WriteResult",
    "ChangeOp",
    "ChangeEvent",
    "SubscriptionHandle",
]
