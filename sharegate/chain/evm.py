"""
EVM Chain Client

Monad (or any EVM-style chain) backend:
- Head height via eth_blockNumber
- Trade events via eth_getLogs, decoded with eth_abi
- sharesBalance(subject, holder) via eth_call
- EIP-191 personal-sign recovery via eth_account
"""

from typing import Any, Dict, List

from eth_abi import decode, encode
from eth_account import Account
from eth_account.messages import encode_defunct
from eth_utils import keccak

from ..addresses import normalize_address, to_rpc_address
from ..config import EvmChainConfig
from ..errors import ChainRpcError, EventDecodeError, InvalidSignatureError
from ..types import DecodedTradeEvent
from .base import RangeChainClient


TRADE_EVENT_SIGNATURE = "Trade(address,address,bool,uint256,uint256,uint256,uint256,uint256)"
TRADE_EVENT_TOPIC = "0x" + keccak(text=TRADE_EVENT_SIGNATURE).hex()

# trader, subject, isBuy, shareAmount, ethAmount, protocolEthAmount, subjectEthAmount, supply
TRADE_EVENT_TYPES = ["address", "address", "bool", "uint256",
                     "uint256", "uint256", "uint256", "uint256"]

SHARES_BALANCE_SELECTOR = keccak(text="sharesBalance(address,address)")[:4]

# Ledger rows are SQLite INTEGERs.
MAX_SHARE_AMOUNT = 2 ** 63 - 1


def _hex_to_int(value: Any) -> int:
    if isinstance(value, int):
        return value
    return int(value, 16)


def _hex_to_bytes(value: str) -> bytes:
    if value.startswith(("0x", "0X")):
        value = value[2:]
    return bytes.fromhex(value)


class EvmChainClient(RangeChainClient):
    """JSON-RPC client for the shares contract on an EVM-style chain."""

    def __init__(self, config: EvmChainConfig):
        super().__init__(config.chain_id, config.rpc_url, config.request_timeout)
        self.config = config
        self.contract_address = to_rpc_address(config.contract_address)

    async def current_position(self) -> int:
        result = await self._rpc("eth_blockNumber", [])
        try:
            return _hex_to_int(result)
        except (TypeError, ValueError):
            raise ChainRpcError(f"eth_blockNumber returned {result!r}")

    # =========================================================================
    # Event fetching
    # =========================================================================

    async def fetch_events(self, from_block: int, to_block: int) -> List[DecodedTradeEvent]:
        """
        Fetch Trade events in [from_block, to_block] (inclusive).

        Logs are ordered by (blockNumber, logIndex). Removed (reorged) logs
        are dropped; logs that fail to decode are logged and skipped.
        """
        params = [{
            "address": self.contract_address,
            "fromBlock": hex(from_block),
            "toBlock": hex(to_block),
            "topics": [TRADE_EVENT_TOPIC],
        }]
        logs = await self._rpc("eth_getLogs", params)
        if not isinstance(logs, list):
            raise ChainRpcError(f"eth_getLogs returned {type(logs).__name__}")

        try:
            logs = sorted(
                (log for log in logs if not log.get("removed")),
                key=lambda log: (_hex_to_int(log["blockNumber"]), _hex_to_int(log["logIndex"]))
            )
        except (KeyError, TypeError, ValueError) as e:
            raise ChainRpcError(f"eth_getLogs returned malformed logs: {e}")

        events = []
        for log in logs:
            try:
                events.append(self.decode_trade_log(log))
            except EventDecodeError as e:
                self._logger.warning(f"Skipping undecodable log: {e}")
        return events

    def decode_trade_log(self, log: Dict[str, Any]) -> DecodedTradeEvent:
        """Decode one eth_getLogs entry into a DecodedTradeEvent."""
        try:
            values = decode(TRADE_EVENT_TYPES, _hex_to_bytes(log["data"]))
            tx_hash = log["transactionHash"]
            log_index = _hex_to_int(log["logIndex"])
            block_number = _hex_to_int(log["blockNumber"])
        except Exception as e:
            raise EventDecodeError(f"bad Trade log {log.get('transactionHash')}: {e}") from e

        trader, subject, is_buy, share_amount = values[0], values[1], values[2], values[3]
        if share_amount > MAX_SHARE_AMOUNT:
            raise EventDecodeError(f"share amount {share_amount} out of range in {tx_hash}")

        return DecodedTradeEvent(
            trader=normalize_address(trader),
            subject=normalize_address(subject),
            is_buy=bool(is_buy),
            share_amount=int(share_amount),
            chain_id=self.chain_id,
            event_key=f"{self.chain_id}:{tx_hash.lower()}:{log_index}",
            position=block_number,
        )

    # =========================================================================
    # Contract reads
    # =========================================================================

    async def read_balance(self, subject: str, holder: str) -> int:
        """sharesBalance(subject, holder) at the latest block."""
        call_data = SHARES_BALANCE_SELECTOR + encode(
            ["address", "address"],
            [to_rpc_address(subject), to_rpc_address(holder)]
        )
        result = await self._rpc("eth_call", [
            {"to": self.contract_address, "data": "0x" + call_data.hex()},
            "latest",
        ])
        try:
            (balance,) = decode(["uint256"], _hex_to_bytes(result))
        except Exception as e:
            raise ChainRpcError(f"sharesBalance returned {result!r}: {e}") from e
        return int(balance)

    # =========================================================================
    # Signatures
    # =========================================================================

    def recover_signer(self, message: str, signature: str) -> str:
        """Recover the EIP-191 personal-sign signer of message."""
        try:
            sig_bytes = _hex_to_bytes(signature.strip())
        except (AttributeError, ValueError) as e:
            raise InvalidSignatureError(f"Invalid signature hex: {e}")

        if len(sig_bytes) != 65:
            raise InvalidSignatureError("Signature must be 65 bytes")

        try:
            recovered = Account.recover_message(encode_defunct(text=message), signature=sig_bytes)
        except Exception as e:
            raise InvalidSignatureError(f"Recovery failed: {e}")
        return normalize_address(recovered)

    def get_stats(self) -> dict:
        stats = super().get_stats()
        stats["contract"] = self.contract_address
        stats["start_block"] = self.config.start_block
        return stats
