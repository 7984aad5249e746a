"""Persistence layer for ledger, watermark and identity state."""

from .store import ShareLedgerStore, AtomicTransaction

__all__ = [
    "ShareLedgerStore",
    "AtomicTransaction",
]
