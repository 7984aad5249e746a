"""
Chain Clients

One backend per ledger family, selected by the tagged chain config:
- EvmChainClient: numeric block ranges (Monad)
- MoveChainClient: opaque event cursors (Sui)
"""

from ..config import ChainConfig, EvmChainConfig, MoveChainConfig
from ..errors import ConfigError
from .base import ChainClient, CursorChainClient, RangeChainClient
from .evm import EvmChainClient
from .move import MoveChainClient


def create_chain_client(config: ChainConfig) -> ChainClient:
    """Build the backend matching a chain config variant."""
    if isinstance(config, EvmChainConfig):
        return EvmChainClient(config)
    if isinstance(config, MoveChainConfig):
        return MoveChainClient(config)
    raise ConfigError(f"Unsupported chain config: {type(config).__name__}")


__all__ = [
    "ChainClient",
    "RangeChainClient",
    "CursorChainClient",
    "EvmChainClient",
    "MoveChainClient",
    "create_chain_client",
]
