"""
Unit tests for the sync coordinator.

Tests:
- One engine per configured chain, both chains synced concurrently
- Startup aborts when a chain node is unreachable
- Missing chain client is a configuration error
- A stop requested while starting is honoured, never cleared
"""

import asyncio
import os
import tempfile

import pytest

from sharegate.chain.mock import MockChainClient, MockCursorChainClient
from sharegate.config import EvmChainConfig, MoveChainConfig, SyncConfig
from sharegate.errors import ChainRpcError, ConfigError
from sharegate.persistence import ShareLedgerStore
from sharegate.sync import SyncCoordinator


TRADER = "aa" * 20
SUBJECT = "bb" * 20
FAST = SyncConfig(idle_interval=0.01, error_backoff=0.01, iteration_delay=0.0)


@pytest.fixture
def store():
    fd, path = tempfile.mkstemp(suffix=".db")
    os.close(fd)
    store = ShareLedgerStore(path)
    yield store
    store.close()
    os.unlink(path)


def chain_configs(start_block: int = 10):
    return [
        EvmChainConfig(rpc_url="mock://monad", contract_address="11" * 20, start_block=start_block),
        MoveChainConfig(rpc_url="mock://sui", package_id="12" * 32, trading_object_id="34" * 32),
    ]


async def wait_for(predicate, attempts: int = 100):
    for _ in range(attempts):
        if predicate():
            return True
        await asyncio.sleep(0.02)
    return predicate()


class TestSyncCoordinator:

    @pytest.mark.asyncio
    async def test_syncs_every_chain(self, store):
        monad = MockChainClient("monad")
        monad.add_trade(5, TRADER, SUBJECT, is_buy=True, amount=100)
        monad.add_trade(12, TRADER, SUBJECT, is_buy=True, amount=3)
        sui = MockCursorChainClient("sui")
        sui.add_event(TRADER, SUBJECT, is_buy=True, amount=7)
        sui.add_event(TRADER, SUBJECT, is_buy=False, amount=2)

        coordinator = SyncCoordinator({"monad": monad, "sui": sui}, chain_configs(), store, sync_config=FAST)
        await coordinator.start()
        try:
            assert set(coordinator.engines) == {"monad", "sui"}
            synced = await wait_for(lambda: (
                store.get_share_amount(TRADER, SUBJECT, "monad") == 3
                and store.get_share_amount(TRADER, SUBJECT, "sui") == 5
            ))
            assert synced
            assert all(e.is_running for e in coordinator.engines.values())
        finally:
            await coordinator.stop()

        # Block 5 is before the start block
        assert store.get_watermark("monad").position == 12
        assert store.get_watermark("sui").cursor == MockCursorChainClient.cursor_for(1)

        stats = coordinator.get_stats()
        assert stats["running"] is False
        assert stats["chains"]["monad"]["running"] is False
        assert stats["processor"]["buys"] == 2

    @pytest.mark.asyncio
    async def test_start_watermark_is_block_before_start(self, store):
        monad = MockChainClient("monad", head=9)
        sui = MockCursorChainClient("sui")
        coordinator = SyncCoordinator({"monad": monad, "sui": sui}, chain_configs(start_block=10),
                                      store, sync_config=FAST)
        await coordinator.start()
        await coordinator.stop()

        assert store.get_watermark("monad").position == 9
        assert ("fetch_events", 10, 9) not in monad.calls

    @pytest.mark.asyncio
    async def test_unreachable_node_aborts_startup(self, store):
        monad = MockChainClient("monad")
        monad.fail_calls = 1
        sui = MockCursorChainClient("sui")
        coordinator = SyncCoordinator({"monad": monad, "sui": sui}, chain_configs(), store, sync_config=FAST)

        with pytest.raises(ChainRpcError):
            await coordinator.start()

        assert coordinator.engines == {}
        assert store.get_watermark("monad") is None

    @pytest.mark.asyncio
    async def test_missing_client(self, store):
        coordinator = SyncCoordinator({"monad": MockChainClient("monad")}, chain_configs(), store)
        with pytest.raises(ConfigError):
            await coordinator.start()

    @pytest.mark.asyncio
    async def test_stop_during_startup_is_kept(self, store):
        stop_event = asyncio.Event()

        class StoppingClient(MockChainClient):
            async def probe(self):
                await super().probe()
                stop_event.set()

        monad = StoppingClient("monad")
        sui = MockCursorChainClient("sui")
        coordinator = SyncCoordinator({"monad": monad, "sui": sui}, chain_configs(), store,
                                      sync_config=FAST, stop_event=stop_event)
        await coordinator.start()

        assert stop_event.is_set()
        assert coordinator.engines == {}
        assert coordinator.get_stats()["running"] is False
        assert store.get_watermark("monad") is None
        await coordinator.stop()

    @pytest.mark.asyncio
    async def test_shared_stop_event_is_not_cleared(self, store):
        stop_event = asyncio.Event()
        stop_event.set()
        coordinator = SyncCoordinator({"monad": MockChainClient("monad"), "sui": MockCursorChainClient("sui")},
                                      chain_configs(), store, sync_config=FAST, stop_event=stop_event)
        await coordinator.start()

        assert stop_event.is_set()
        assert coordinator.engines == {}
