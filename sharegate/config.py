"""
Configuration

Loads settings from the environment (and a .env file when present) into
dataclasses. Chain configs are a closed set of tagged variants, one per
supported ledger family.

Required for the EVM chain (monad):
    CHAIN_RPC, SHARES_CONTRACT_ADDRESS, START_BLOCK
Required for the Move chain (sui):
    SUI_RPC, SUI_CONTRACT, SUI_SHARES_TRADING_OBJECT_ID
"""

import os
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Union

from dotenv import load_dotenv

from .addresses import is_valid_address, normalize_address
from .errors import ConfigError


EVM_CHAIN_ID = "monad"
MOVE_CHAIN_ID = "sui"

DEFAULT_SUI_RPC = "https://fullnode.mainnet.sui.io:443"


@dataclass
class SyncConfig:
    """Sync loop pacing."""
    batch_size: int = 100          # blocks per range (EVM)
    page_size: int = 100           # events per page (Move)
    idle_interval: float = 60.0    # caught up with the chain head
    error_backoff: float = 10.0    # after an RPC or storage failure
    iteration_delay: float = 1.0   # between successful iterations
    marker_retention: float = 7 * 24 * 3600.0  # age before idempotency markers are pruned
    prune_interval: float = 3600.0


@dataclass
class EvmChainConfig:
    """EVM-style chain: numeric block heights, log filters, ECDSA signatures."""
    rpc_url: str
    contract_address: str
    start_block: int
    chain_id: str = EVM_CHAIN_ID
    request_timeout: float = 30.0
    kind: str = field(default="evm", init=False)


@dataclass
class MoveChainConfig:
    """Move-based chain: opaque event cursors, scheme-tagged signatures."""
    rpc_url: str
    package_id: str
    trading_object_id: str
    start_cursor: Optional[str] = None
    module: str = "shares_trading"
    chain_id: str = MOVE_CHAIN_ID
    request_timeout: float = 30.0
    kind: str = field(default="move", init=False)


ChainConfig = Union[EvmChainConfig, MoveChainConfig]


@dataclass
class AppConfig:
    """Top-level application configuration."""
    chains: List[ChainConfig]
    database_path: str = "data/sharegate.db"
    http_host: str = "0.0.0.0"
    http_port: int = 8088
    sign_url: str = "http://127.0.0.1:3000/web3-sign"
    sync: SyncConfig = field(default_factory=SyncConfig)
    log_level: str = "INFO"

    def chain_ids(self) -> List[str]:
        return [c.chain_id for c in self.chains]

    def get_chain(self, chain_id: str) -> Optional[ChainConfig]:
        for chain in self.chains:
            if chain.chain_id == chain_id:
                return chain
        return None

    @property
    def default_chain_id(self) -> str:
        return self.chains[0].chain_id


# =============================================================================
# Environment parsing
# =============================================================================

def _require(env: Dict[str, str], name: str) -> str:
    value = env.get(name, "").strip()
    if not value:
        raise ConfigError(f"{name} not set")
    return value


def _int(env: Dict[str, str], name: str, default: Optional[int] = None) -> int:
    raw = env.get(name, "").strip()
    if not raw:
        if default is None:
            raise ConfigError(f"{name} not set")
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigError(f"{name} must be a number, got {raw!r}")


def _float(env: Dict[str, str], name: str, default: float) -> float:
    raw = env.get(name, "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        raise ConfigError(f"{name} must be a number, got {raw!r}")


def _evm_config(env: Dict[str, str], timeout: float) -> EvmChainConfig:
    contract = _require(env, "SHARES_CONTRACT_ADDRESS")
    if not is_valid_address(contract, length=40):
        raise ConfigError(f"Invalid contract address: {contract}")

    start_block = _int(env, "START_BLOCK")
    if start_block < 0:
        raise ConfigError("START_BLOCK must be >= 0")

    return EvmChainConfig(
        rpc_url=_require(env, "CHAIN_RPC"),
        contract_address=normalize_address(contract),
        start_block=start_block,
        request_timeout=timeout,
    )


def _move_config(env: Dict[str, str], timeout: float) -> MoveChainConfig:
    package_id = _require(env, "SUI_CONTRACT")
    object_id = _require(env, "SUI_SHARES_TRADING_OBJECT_ID")
    for name, value in (("SUI_CONTRACT", package_id),
                        ("SUI_SHARES_TRADING_OBJECT_ID", object_id)):
        if not is_valid_address(value):
            raise ConfigError(f"Invalid {name}: {value}")

    return MoveChainConfig(
        rpc_url=env.get("SUI_RPC", "").strip() or DEFAULT_SUI_RPC,
        package_id=normalize_address(package_id),
        trading_object_id=normalize_address(object_id),
        start_cursor=env.get("SUI_START_CURSOR", "").strip() or None,
        request_timeout=timeout,
    )


def config_from_env(env: Optional[Dict[str, str]] = None) -> AppConfig:
    """Build AppConfig from a mapping (defaults to os.environ)."""
    if env is None:
        env = dict(os.environ)

    timeout = _float(env, "RPC_TIMEOUT", 30.0)
    enabled = [
        name.strip().lower()
        for name in env.get("ENABLED_CHAINS", EVM_CHAIN_ID).split(",")
        if name.strip()
    ]
    if not enabled:
        raise ConfigError("ENABLED_CHAINS is empty")

    chains: List[ChainConfig] = []
    for name in enabled:
        if name == EVM_CHAIN_ID:
            chains.append(_evm_config(env, timeout))
        elif name == MOVE_CHAIN_ID:
            chains.append(_move_config(env, timeout))
        else:
            raise ConfigError(f"Unsupported chain type: {name}")

    sync = SyncConfig(
        batch_size=_int(env, "SYNC_BATCH_SIZE", 100),
        page_size=_int(env, "SYNC_PAGE_SIZE", 100),
        idle_interval=_float(env, "SYNC_IDLE_INTERVAL", 60.0),
        error_backoff=_float(env, "SYNC_ERROR_BACKOFF", 10.0),
        iteration_delay=_float(env, "SYNC_ITERATION_DELAY", 1.0),
        marker_retention=_float(env, "SYNC_MARKER_RETENTION", 7 * 24 * 3600.0),
    )
    if sync.batch_size < 1 or sync.page_size < 1:
        raise ConfigError("SYNC_BATCH_SIZE and SYNC_PAGE_SIZE must be positive")

    return AppConfig(
        chains=chains,
        database_path=env.get("DATABASE_PATH", "").strip() or "data/sharegate.db",
        http_host=env.get("HTTP_HOST", "").strip() or "0.0.0.0",
        http_port=_int(env, "HTTP_PORT", 8088),
        sign_url=env.get("SIGN_URL", "").strip() or "http://127.0.0.1:3000/web3-sign",
        sync=sync,
        log_level=(env.get("LOG_LEVEL", "").strip() or "INFO").upper(),
    )


def load_config(env_file: Optional[str] = None) -> AppConfig:
    """Load .env (if any) into the process environment, then parse it."""
    if env_file:
        load_dotenv(env_file)
    else:
        load_dotenv()
    return config_from_env()
