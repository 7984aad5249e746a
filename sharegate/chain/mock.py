"""
Mock Chain Clients

In-memory chain backends for offline development and tests. They keep
the ChainClient contract (emission order, event keys, error kinds) without
touching a node.

Use cases:
- Unit testing the sync engine and identity binder
- Scripted scenarios (head advances, RPC outages, poison events)
"""

import json
from typing import Dict, List, Optional, Tuple

from ..addresses import normalize_address
from ..errors import ChainRpcError, InvalidSignatureError
from ..types import CursorPage, DecodedTradeEvent
from .base import ChainClient, CursorChainClient, RangeChainClient


class _MockBackend(ChainClient):
    """Balances, signatures and scripted outages shared by both mocks."""

    def __init__(self, chain_id: str):
        super().__init__(chain_id, rpc_url="mock://" + chain_id)
        self.balances: Dict[Tuple[str, str], int] = {}
        self.signatures: Dict[Tuple[str, str], str] = {}
        self.fail_calls = 0
        self.calls: List[Tuple] = []

    def set_balance(self, subject: str, holder: str, amount: int):
        self.balances[(normalize_address(subject), normalize_address(holder))] = amount

    def register_signature(self, message: str, signature: str, signer: str):
        """Make recover_signer(message, signature) return signer."""
        self.signatures[(message, signature)] = normalize_address(signer)

    def _maybe_fail(self, method: str):
        self.calls.append((method,))
        if self.fail_calls > 0:
            self.fail_calls -= 1
            raise ChainRpcError(f"{method} failed: mock outage")

    async def start(self):
        pass

    async def stop(self):
        pass

    async def read_balance(self, subject: str, holder: str) -> int:
        self._maybe_fail("read_balance")
        return self.balances.get((normalize_address(subject), normalize_address(holder)), 0)

    def recover_signer(self, message: str, signature: str) -> str:
        signer = self.signatures.get((message, signature))
        if signer is None:
            raise InvalidSignatureError("Recovery failed: unknown signature")
        return signer


class MockChainClient(_MockBackend, RangeChainClient):
    """
    Range-based mock: trades live in numbered blocks.

    Usage:
        client = MockChainClient("monad")
        client.add_trade(10, trader, subject, is_buy=True, amount=5)
        client.head = 20
        events = await client.fetch_events(1, 20)
    """

    def __init__(self, chain_id: str = "monad", head: int = 0):
        super().__init__(chain_id)
        self.head = head
        self._blocks: Dict[int, List[DecodedTradeEvent]] = {}

    def add_trade(self, block: int, trader: str, subject: str, is_buy: bool,
                  amount: int, event_key: Optional[str] = None) -> DecodedTradeEvent:
        """Append a trade to block; the head moves up to cover it."""
        events = self._blocks.setdefault(block, [])
        event = DecodedTradeEvent(
            trader=normalize_address(trader),
            subject=normalize_address(subject),
            is_buy=is_buy,
            share_amount=amount,
            chain_id=self.chain_id,
            event_key=event_key or f"{self.chain_id}:0x{block:064x}:{len(events)}",
            position=block,
        )
        events.append(event)
        self.head = max(self.head, block)
        return event

    async def current_position(self) -> int:
        self._maybe_fail("current_position")
        return self.head

    async def fetch_events(self, from_block: int, to_block: int) -> List[DecodedTradeEvent]:
        self._maybe_fail("fetch_events")
        self.calls[-1] = ("fetch_events", from_block, to_block)
        events = []
        for block in sorted(self._blocks):
            if from_block <= block <= to_block:
                events.extend(self._blocks[block])
        return events


class MockCursorChainClient(_MockBackend, CursorChainClient):
    """
    Cursor-based mock: one ordered event stream, paged by position.

    Cursors are JSON objects {"txDigest": ..., "eventSeq": ...} where
    eventSeq is the index of the last delivered event.
    """

    def __init__(self, chain_id: str = "sui"):
        super().__init__(chain_id)
        self._stream: List[DecodedTradeEvent] = []

    def add_event(self, trader: str, subject: str, is_buy: bool, amount: int,
                  timestamp_ms: Optional[int] = None) -> DecodedTradeEvent:
        seq = len(self._stream)
        event = DecodedTradeEvent(
            trader=normalize_address(trader),
            subject=normalize_address(subject),
            is_buy=is_buy,
            share_amount=amount,
            chain_id=self.chain_id,
            event_key=f"{self.chain_id}:digest{seq}:0",
            position=timestamp_ms if timestamp_ms is not None else 1_700_000_000_000 + seq,
        )
        self._stream.append(event)
        return event

    @staticmethod
    def cursor_for(seq: int) -> str:
        return json.dumps({"txDigest": f"digest{seq}", "eventSeq": str(seq)}, separators=(",", ":"))

    async def current_position(self) -> int:
        self._maybe_fail("current_position")
        return len(self._stream)

    async def fetch_page(self, cursor: Optional[str], limit: int) -> CursorPage:
        self._maybe_fail("fetch_page")
        self.calls[-1] = ("fetch_page", cursor, limit)
        start = 0 if cursor is None else int(json.loads(cursor)["eventSeq"]) + 1
        events = self._stream[start:start + limit]
        if not events:
            return CursorPage(events=[], next_cursor=None, has_next_page=False)

        last = start + len(events) - 1
        return CursorPage(
            events=list(events),
            next_cursor=self.cursor_for(last),
            has_next_page=last + 1 < len(self._stream),
            last_position=events[-1].position,
        )
