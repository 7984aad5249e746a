"""
ShareGate Data Types

Plain data structures shared by the chain clients, the sync engine,
the moderation path and the identity binder.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional


class ModerationAction(Enum):
    """Chat permission change for one member."""
    RESTRICT = "RESTRICT"      # read-only
    UNRESTRICT = "UNRESTRICT"  # full member permissions


class SyncState(Enum):
    """Event sync engine states."""
    IDLE = "IDLE"
    FETCH_HEIGHT = "FETCH_HEIGHT"
    CAUGHT_UP = "CAUGHT_UP"
    HAS_RANGE = "HAS_RANGE"
    FETCH_EVENTS = "FETCH_EVENTS"
    PROCESS_BATCH = "PROCESS_BATCH"
    ADVANCE_WATERMARK = "ADVANCE_WATERMARK"
    ERROR_BACKOFF = "ERROR_BACKOFF"


@dataclass(frozen=True)
class DecodedTradeEvent:
    """
    One buy or sell of shares, normalized across chains.

    Addresses are canonical (lowercase, no 0x). event_key identifies the
    on-chain emission (tx + log index, or tx digest + event seq) and is
    what makes re-delivery of the same event harmless.
    """
    trader: str
    subject: str
    is_buy: bool
    share_amount: int
    chain_id: str
    event_key: Optional[str] = None
    position: Optional[int] = None  # block number or timestamp surrogate


@dataclass
class CursorPage:
    """One page of events from a cursor-based chain."""
    events: List[DecodedTradeEvent]
    next_cursor: Optional[str]
    has_next_page: bool
    last_position: Optional[int] = None


@dataclass
class Watermark:
    """Persisted ingestion progress for one chain."""
    chain_id: str
    position: int
    metadata: Optional[str] = None  # full cursor JSON for cursor chains
    updated_at: float = 0.0

    @property
    def cursor(self) -> Optional[str]:
        return self.metadata


@dataclass
class TradeLedgerEntry:
    """Share balance of one trader in one subject on one chain."""
    trader: str
    subject: str
    chain_id: str
    share_amount: int


@dataclass
class IdentityBinding:
    """Wallet address bound to a Telegram user."""
    address: str
    chain_id: str
    messaging_identity: str
    is_banned: bool = False
    created_at: float = 0.0


@dataclass
class SubjectChatBinding:
    """Operator-registered chat and bot for a subject."""
    agent_name: str
    subject_address: str
    chain_id: str
    bot_token: str
    chat_group_id: str
    invite_url: str = ""
    bio: Optional[str] = None
    created_at: float = 0.0

    def to_public_dict(self) -> Dict[str, Any]:
        """Fields safe to expose over HTTP (never the bot token)."""
        return {
            "agent_name": self.agent_name,
            "subject_address": self.subject_address,
            "chain": self.chain_id,
            "created_at": self.created_at,
        }


@dataclass(frozen=True)
class ModerationRequest:
    """A moderation decision produced by the trade processor."""
    subject: str
    chain_id: str
    address: str
    messaging_identity: str
    action: ModerationAction


@dataclass
class TradeOutcome:
    """Result of applying one trade event to the ledger."""
    applied: bool
    balance: Optional[int] = None
    requests: List[ModerationRequest] = field(default_factory=list)


@dataclass
class VerificationResult:
    """Outcome of an identity verification request."""
    success: bool
    error: Optional[str] = None
    address: Optional[str] = None
    balance: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"success": self.success}
        if self.error is not None:
            data["error"] = self.error
        return data
