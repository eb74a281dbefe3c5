"""runledger persistence layer."""

from runledger.store.ledger import MessageLedger, Session
from runledger.store.pool import StorePool

__all__ = [
    "MessageLedger",
    "Session",
    "StorePool",
]
