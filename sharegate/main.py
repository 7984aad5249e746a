"""
ShareGate service entry point.

Wires the store, chain clients, sync coordinator, moderation path,
bot pool and HTTP API together and runs them until SIGINT/SIGTERM.

Usage:
    sharegate [--env-file PATH] [--debug]
    python -m sharegate.main --debug
"""

import argparse
import asyncio
import logging
import signal
import sys
from typing import Dict, List, Optional

from aiohttp import web

from .api import create_app
from .chain import ChainClient, create_chain_client
from .config import AppConfig, load_config
from .errors import ChainRpcError, ConfigError
from .identity import IdentityBinder
from .moderation import BotWorkerPool, ModerationDispatcher
from .persistence import ShareLedgerStore
from .sync import SyncCoordinator


LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


class ShareGateService:
    """Owns every long-lived component of the running service."""

    def __init__(self, config: AppConfig):
        self.config = config
        self._stop_event = asyncio.Event()
        self._logger = logging.getLogger("ShareGateService")

        self.store: Optional[ShareLedgerStore] = None
        self.clients: Dict[str, ChainClient] = {}
        self.dispatcher: Optional[ModerationDispatcher] = None
        self.bot_pool: Optional[BotWorkerPool] = None
        self.coordinator: Optional[SyncCoordinator] = None
        self._runner: Optional[web.AppRunner] = None

    def request_stop(self):
        if not self._stop_event.is_set():
            self._logger.info("Shutdown requested")
            self._stop_event.set()

    def _install_signal_handlers(self):
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self.request_stop)
            except NotImplementedError:
                # Windows event loops
                signal.signal(sig, lambda signum, frame: self.request_stop())

    async def run(self):
        self._install_signal_handlers()

        self.store = ShareLedgerStore(self.config.database_path)
        self.clients = {c.chain_id: create_chain_client(c) for c in self.config.chains}
        self.dispatcher = ModerationDispatcher(self.store)
        self.bot_pool = BotWorkerPool(self.store, self.config.sign_url)
        self.coordinator = SyncCoordinator(
            self.clients,
            self.config.chains,
            self.store,
            self.dispatcher,
            self.config.sync,
            stop_event=self._stop_event,
        )
        binder = IdentityBinder(self.clients, self.store, self.dispatcher)

        try:
            await self.coordinator.start()
            if self._stop_event.is_set():
                return
            await self.bot_pool.start()

            app = create_app(self.store, binder, self.config.chain_ids(), self.bot_pool)
            self._runner = web.AppRunner(app)
            await self._runner.setup()
            site = web.TCPSite(self._runner, self.config.http_host, self.config.http_port)
            await site.start()
            self._logger.info(
                f"ShareGate running on {self.config.http_host}:{self.config.http_port} "
                f"for chains {', '.join(self.config.chain_ids())}"
            )

            await self._stop_event.wait()
        finally:
            await self.shutdown()

    async def shutdown(self):
        self._stop_event.set()
        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None
        if self.bot_pool is not None:
            await self.bot_pool.stop()
        if self.coordinator is not None:
            await self.coordinator.stop()
        else:
            for client in self.clients.values():
                await client.stop()
        if self.dispatcher is not None:
            await self.dispatcher.close()
        if self.store is not None:
            self.store.close()
            self.store = None
        self._logger.info("ShareGate stopped")


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="ShareGate - share-gated Telegram chat membership",
        formatter_class=argparse.RawDescriptionHelpFormatter
    )
    parser.add_argument(
        "--env-file",
        default=None,
        help="Path to a .env file (default: ./.env if present)"
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug logging"
    )
    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)

    try:
        config = load_config(args.env_file)
    except ConfigError as e:
        logging.basicConfig(level=logging.ERROR, format=LOG_FORMAT)
        logging.getLogger("ShareGate").error(f"Configuration error: {e}")
        return 2

    level = logging.DEBUG if args.debug else getattr(logging, config.log_level, logging.INFO)
    logging.basicConfig(level=level, format=LOG_FORMAT)
    logger = logging.getLogger("ShareGate")

    service = ShareGateService(config)
    try:
        asyncio.run(service.run())
    except (ConfigError, ChainRpcError) as e:
        logger.error(f"Startup failed: {e}")
        return 1
    except KeyboardInterrupt:
        pass
    return 0


if __name__ == "__main__":
    sys.exit(main())
