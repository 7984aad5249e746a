"""
Event Sync

- TradeProcessor: applies one trade event to the share ledger
- SyncEngine: per-chain watermark-driven ingestion loop
- SyncCoordinator: runs one engine per configured chain
"""

from .processor import TradeProcessor
from .engine import SyncEngine
from .coordinator import SyncCoordinator

__all__ = ["TradeProcessor", "SyncEngine", "SyncCoordinator"]
