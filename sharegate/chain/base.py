"""
Chain Client Base

Shared JSON-RPC transport and the contract every chain backend fulfils:
- current_position(): latest height (or an always-valid sentinel)
- RangeChainClient.fetch_events(): events of a block range, emission order
- CursorChainClient.fetch_page(): events after an opaque cursor
- read_balance(): read-only shares balance accessor
- recover_signer(): signature-scheme specific signer recovery

Every backend normalizes its events to DecodedTradeEvent.
"""

import asyncio
import itertools
import logging
from typing import Any, List, Optional

import aiohttp

from ..errors import ChainRpcError
from ..types import CursorPage, DecodedTradeEvent


class ChainClient:
    """
    Base class for chain backends.

    Usage:
        client = create_chain_client(chain_config)
        await client.start()
        head = await client.current_position()
        events = await client.fetch_events(from_block, head)
        await client.stop()
    """

    #: "range" or "cursor"; set by the two variants below.
    kind = ""

    def __init__(self, chain_id: str, rpc_url: str, request_timeout: float = 30.0):
        self.chain_id = chain_id
        self.rpc_url = rpc_url
        self.request_timeout = request_timeout
        self._logger = logging.getLogger(f"ChainClient[{chain_id}]")
        self._session: Optional[aiohttp.ClientSession] = None
        self._request_ids = itertools.count(1)

    async def start(self):
        """Open the HTTP session."""
        if self._session is None:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.request_timeout)
            )

    async def stop(self):
        """Close the HTTP session."""
        if self._session:
            await self._session.close()
            self._session = None

    # =========================================================================
    # JSON-RPC transport
    # =========================================================================

    async def _rpc(self, method: str, params: Any) -> Any:
        """
        Perform one JSON-RPC call and return its result.

        Raises ChainRpcError on transport errors, non-200 answers,
        JSON-RPC errors or a missing result.
        """
        if self._session is None:
            await self.start()

        payload = {
            "jsonrpc": "2.0",
            "id": next(self._request_ids),
            "method": method,
            "params": params,
        }

        try:
            async with self._session.post(
                self.rpc_url,
                json=payload,
                headers={"Content-Type": "application/json"}
            ) as response:
                if response.status != 200:
                    raise ChainRpcError(f"{method} failed: HTTP {response.status}")
                data = await response.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            raise ChainRpcError(f"{method} failed: {e}") from e

        if not isinstance(data, dict):
            raise ChainRpcError(f"{method} returned a non-object response")
        if data.get("error") is not None:
            raise ChainRpcError(f"{method} returned error: {data['error']}")
        if "result" not in data:
            raise ChainRpcError(f"{method} returned no result")

        self._logger.debug(f"{method} ok")
        return data["result"]

    # =========================================================================
    # Backend contract
    # =========================================================================

    async def probe(self):
        """One cheap call proving the node is reachable. Raises ChainRpcError."""
        await self.current_position()

    async def current_position(self) -> int:
        raise NotImplementedError

    async def read_balance(self, subject: str, holder: str) -> int:
        raise NotImplementedError

    def recover_signer(self, message: str, signature: str) -> str:
        """Return the canonical address that produced signature over message."""
        raise NotImplementedError

    def get_stats(self) -> dict:
        return {
            "chain_id": self.chain_id,
            "kind": self.kind,
            "session_open": self._session is not None,
        }


class RangeChainClient(ChainClient):
    """Chains synced by numeric block ranges; the watermark is a height."""

    kind = "range"

    async def fetch_events(self, from_block: int, to_block: int) -> List[DecodedTradeEvent]:
        """Events in [from_block, to_block], emission order."""
        raise NotImplementedError


class CursorChainClient(ChainClient):
    """Chains resumed from an opaque event cursor kept as watermark metadata."""

    kind = "cursor"

    async def fetch_page(self, cursor: Optional[str], limit: int) -> CursorPage:
        """The page of events strictly after cursor."""
        raise NotImplementedError
