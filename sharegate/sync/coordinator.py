"""
Sync Coordinator

Runs one Event Sync Engine per configured chain:
- Probes every chain client before anything starts (startup abort on failure)
- Bootstraps each chain's watermark from its configured start position
- Runs the engines as independent asyncio tasks sharing only the store
- Stops them cooperatively and closes the clients
"""

import asyncio
import logging
import time
from typing import Dict, List, Optional

from ..chain import ChainClient
from ..config import ChainConfig, EvmChainConfig, MoveChainConfig, SyncConfig
from ..errors import ConfigError
from ..moderation import ModerationDispatcher
from ..persistence import ShareLedgerStore
from .engine import SyncEngine
from .processor import TradeProcessor


class SyncCoordinator:
    """
    Owns the per-chain sync tasks.

    Usage:
        coordinator = SyncCoordinator(clients, config.chains, store, dispatcher, config.sync)
        await coordinator.start()
        ...
        await coordinator.stop()
    """

    def __init__(
        self,
        clients: Dict[str, ChainClient],
        chain_configs: List[ChainConfig],
        store: ShareLedgerStore,
        dispatcher: Optional[ModerationDispatcher] = None,
        sync_config: Optional[SyncConfig] = None,
        stop_event: Optional[asyncio.Event] = None,
        shutdown_timeout: float = 30.0
    ):
        self._clients = clients
        self._chain_configs = chain_configs
        self._store = store
        self._dispatcher = dispatcher
        self._sync_config = sync_config or SyncConfig()
        self._owns_stop_event = stop_event is None
        self._stop_event = stop_event or asyncio.Event()
        self._shutdown_timeout = shutdown_timeout

        self._processor = TradeProcessor(store)
        self._engines: Dict[str, SyncEngine] = {}
        self._tasks: Dict[str, asyncio.Task] = {}
        self._running = False
        self._start_time: Optional[float] = None
        self._logger = logging.getLogger("SyncCoordinator")

    @staticmethod
    def _start_position(chain_config: ChainConfig):
        if isinstance(chain_config, EvmChainConfig):
            # Watermark is the last processed block
            return chain_config.start_block - 1, None
        if isinstance(chain_config, MoveChainConfig):
            return 0, chain_config.start_cursor
        raise ConfigError(f"Unsupported chain config: {type(chain_config).__name__}")

    async def start(self):
        """
        Probe the chains, bootstrap watermarks and start one task per chain.

        Raises ChainRpcError when a node is unreachable; nothing is started
        in that case. A stop requested while probing also leaves the sync
        tasks unstarted.
        """
        if self._owns_stop_event:
            self._stop_event.clear()

        for chain_config in self._chain_configs:
            client = self._clients.get(chain_config.chain_id)
            if client is None:
                raise ConfigError(f"No chain client for {chain_config.chain_id}")
            await client.start()
            await client.probe()
            self._logger.info(f"Chain {chain_config.chain_id} reachable at {client.rpc_url}")

        if self._stop_event.is_set():
            self._logger.info("Stop requested during startup, sync not started")
            return

        for chain_config in self._chain_configs:
            position, cursor = self._start_position(chain_config)
            engine = SyncEngine(
                self._clients[chain_config.chain_id],
                self._store,
                self._processor,
                self._dispatcher,
                self._sync_config,
                start_position=position,
                start_cursor=cursor,
                stop_event=self._stop_event,
            )
            engine.bootstrap()
            self._engines[chain_config.chain_id] = engine

        self._running = True
        self._start_time = time.time()
        for chain_id, engine in self._engines.items():
            self._tasks[chain_id] = asyncio.create_task(engine.run(), name=f"sync-{chain_id}")

        self._logger.info(f"Started sync for {', '.join(self._engines)}")

    async def stop(self):
        """Signal the engines, wait for them, then close the clients."""
        self._stop_event.set()
        tasks = list(self._tasks.values())
        if tasks:
            done, pending = await asyncio.wait(tasks, timeout=self._shutdown_timeout)
            for task in pending:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            for task in done:
                if not task.cancelled() and task.exception() is not None:
                    self._logger.error(f"Sync task {task.get_name()} failed: {task.exception()}")

        for client in self._clients.values():
            await client.stop()

        self._tasks.clear()
        self._running = False
        self._logger.info("Sync stopped")

    async def wait(self):
        """Wait until every sync task has finished."""
        if self._tasks:
            await asyncio.gather(*self._tasks.values(), return_exceptions=True)

    @property
    def engines(self) -> Dict[str, SyncEngine]:
        return dict(self._engines)

    @property
    def processor(self) -> TradeProcessor:
        return self._processor

    def get_stats(self) -> Dict:
        return {
            "running": self._running,
            "uptime": time.time() - self._start_time if self._start_time else 0,
            "processor": self._processor.get_stats(),
            "chains": {chain_id: engine.get_stats() for chain_id, engine in self._engines.items()},
        }
