"""
Event Sync Engine

Per-chain loop that follows the chain head and feeds trade events to the
trade processor:

    IDLE -> FETCH_HEIGHT -> (CAUGHT_UP | HAS_RANGE) -> FETCH_EVENTS
         -> PROCESS_BATCH -> ADVANCE_WATERMARK -> IDLE

with ERROR_BACKOFF reachable from any RPC or storage failure.

Range chains (EVM): the watermark is the last fully processed block, each
iteration covers [watermark + 1, min(watermark + batch_size, head)].
Cursor chains (Sui): each iteration processes the page after the stored
cursor; the cursor JSON is kept as watermark metadata next to a numeric
timestamp surrogate.

A whole batch (ledger writes, idempotency markers, watermark) commits in
one transaction; moderation requests are dispatched after the commit,
the last one per member only. Within a batch the processor sees the ban
state implied by requests queued earlier in that batch.
"""

import asyncio
import logging
import sqlite3
import time
from typing import Dict, List, Optional, Tuple

from ..chain import ChainClient, CursorChainClient, RangeChainClient
from ..config import SyncConfig
from ..errors import ChainRpcError, ConfigError, EventDecodeError, WatermarkError
from ..moderation import ModerationDispatcher
from ..persistence import ShareLedgerStore
from ..types import DecodedTradeEvent, ModerationRequest, SyncState, Watermark
from .processor import TradeProcessor


# Per-event failures that skip the event instead of failing the batch.
POISON_EVENT_ERRORS = (sqlite3.IntegrityError, EventDecodeError, ValueError, OverflowError)


def latest_per_member(requests: List[ModerationRequest]) -> List[ModerationRequest]:
    """Keep only the last request per (address, subject, chain), in order."""
    latest: Dict[Tuple[Optional[str], str, str], ModerationRequest] = {}
    for request in requests:
        key = (request.address, request.subject, request.chain_id)
        latest.pop(key, None)
        latest[key] = request
    return list(latest.values())


class SyncEngine:
    """
    Event sync loop for one chain.

    Usage:
        engine = SyncEngine(client, store, processor, dispatcher, config.sync,
                            start_position=start_block - 1)
        task = asyncio.create_task(engine.run())
        ...
        stop_event.set()
    """

    def __init__(
        self,
        client: ChainClient,
        store: ShareLedgerStore,
        processor: TradeProcessor,
        dispatcher: Optional[ModerationDispatcher] = None,
        config: Optional[SyncConfig] = None,
        start_position: int = 0,
        start_cursor: Optional[str] = None,
        stop_event: Optional[asyncio.Event] = None
    ):
        if not isinstance(client, (RangeChainClient, CursorChainClient)):
            raise ConfigError(f"Unsupported chain client: {type(client).__name__}")
        self.client = client
        self.chain_id = client.chain_id
        self._store = store
        self._processor = processor
        self._dispatcher = dispatcher
        self.config = config or SyncConfig()
        self._start_position = start_position
        self._start_cursor = start_cursor
        self._stop_event = stop_event or asyncio.Event()

        self.state = SyncState.IDLE
        self._running = False
        self._logger = logging.getLogger(f"SyncEngine[{self.chain_id}]")

        self._stats = {
            "iterations": 0,
            "batches": 0,
            "events_processed": 0,
            "events_failed": 0,
            "duplicates": 0,
            "caught_up": 0,
            "errors": 0,
            "requests_dispatched": 0,
            "requests_superseded": 0,
            "markers_pruned": 0,
        }
        self._last_prune = 0.0
        self._last_error: Optional[str] = None
        self._last_batch_time: Optional[float] = None

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def bootstrap(self) -> Watermark:
        """Return the stored watermark, inserting the start position on first run."""
        return self._store.bootstrap_watermark(
            self.chain_id, self._start_position, self._start_cursor
        )

    async def run(self):
        """Run iterations until the stop event is set."""
        self._running = True
        watermark = self.bootstrap()
        self._logger.info(
            f"Sync started at position {watermark.position}"
            + (f" cursor {watermark.cursor}" if watermark.cursor else "")
        )

        try:
            while not self._stop_event.is_set():
                delay = await self.run_once()
                await self._sleep(delay)
        finally:
            self._running = False
            self._logger.info("Sync stopped")

    def stop(self):
        self._stop_event.set()

    async def _sleep(self, delay: float):
        """Sleep that returns early when the stop event fires."""
        if delay <= 0:
            return
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            pass

    # =========================================================================
    # State machine
    # =========================================================================

    async def run_once(self) -> float:
        """Execute one iteration. Returns the delay before the next one."""
        self._stats["iterations"] += 1
        try:
            if isinstance(self.client, CursorChainClient):
                return await self._cursor_iteration()
            return await self._range_iteration()
        except ChainRpcError as e:
            return self._backoff(f"RPC error: {e}")
        except (sqlite3.Error, WatermarkError) as e:
            return self._backoff(f"Storage error: {e}")

    async def _range_iteration(self) -> float:
        self.state = SyncState.IDLE
        watermark = self.bootstrap()

        self.state = SyncState.FETCH_HEIGHT
        head = await self.client.current_position()

        if watermark.position >= head:
            self.state = SyncState.CAUGHT_UP
            self._stats["caught_up"] += 1
            self._logger.debug(f"Caught up at block {watermark.position} (head {head})")
            return self.config.idle_interval

        self.state = SyncState.HAS_RANGE
        from_block = watermark.position + 1
        to_block = min(watermark.position + self.config.batch_size, head)

        self.state = SyncState.FETCH_EVENTS
        events = await self.client.fetch_events(from_block, to_block)
        self._logger.info(f"Processing blocks {from_block}-{to_block}: {len(events)} events")

        requests = self._commit_batch(events, to_block)
        await self._dispatch(requests)
        self._prune_markers()

        self.state = SyncState.IDLE
        return self.config.iteration_delay

    async def _cursor_iteration(self) -> float:
        self.state = SyncState.IDLE
        watermark = self.bootstrap()

        self.state = SyncState.FETCH_EVENTS
        page = await self.client.fetch_page(watermark.cursor, self.config.page_size)

        if not page.events and page.next_cursor in (None, watermark.cursor):
            self.state = SyncState.CAUGHT_UP
            self._stats["caught_up"] += 1
            self._logger.debug(f"No new events after cursor {watermark.cursor}")
            return self.config.idle_interval

        self.state = SyncState.HAS_RANGE
        self._logger.info(f"Processing page after {watermark.cursor}: {len(page.events)} events")

        # Surrogate only; never allowed to move backwards
        position = max(watermark.position, page.last_position or watermark.position)
        requests = self._commit_batch(page.events, position, page.next_cursor or watermark.cursor)
        await self._dispatch(requests)
        self._prune_markers()

        if not page.has_next_page:
            self.state = SyncState.CAUGHT_UP
            self._stats["caught_up"] += 1
            return self.config.idle_interval

        self.state = SyncState.IDLE
        return self.config.iteration_delay

    def _backoff(self, reason: str) -> float:
        self.state = SyncState.ERROR_BACKOFF
        self._stats["errors"] += 1
        self._last_error = reason
        self._logger.warning(f"{reason}; retrying in {self.config.error_backoff}s")
        return self.config.error_backoff

    # =========================================================================
    # Batch processing
    # =========================================================================

    def _commit_batch(
        self,
        events: List[DecodedTradeEvent],
        position: int,
        metadata: Optional[str] = None
    ) -> List[ModerationRequest]:
        """
        Apply events and advance the watermark in one transaction.

        Each event runs in its own savepoint; a poison event is rolled back,
        logged and skipped. Returns the moderation requests to dispatch
        once the transaction has committed, one per member: the last action
        queued for them in this batch.
        """
        requests: List[ModerationRequest] = []
        pending_bans: Dict[Tuple[str, str], bool] = {}
        processed = 0
        failed = 0
        duplicates = 0

        with self._store.atomic():
            self.state = SyncState.PROCESS_BATCH
            for event in events:
                try:
                    with self._store.savepoint():
                        outcome = self._processor.apply(event, pending_bans)
                except POISON_EVENT_ERRORS as e:
                    failed += 1
                    self._logger.error(f"Skipping event {event.event_key}: {e}")
                    continue

                if outcome.applied:
                    processed += 1
                else:
                    duplicates += 1
                requests.extend(outcome.requests)

            self.state = SyncState.ADVANCE_WATERMARK
            if not self._store.advance_watermark(self.chain_id, position, metadata):
                raise WatermarkError(f"{self.chain_id} watermark did not advance to {position}")

        self._stats["batches"] += 1
        self._stats["events_processed"] += processed
        self._stats["events_failed"] += failed
        self._stats["duplicates"] += duplicates
        self._last_batch_time = time.time()
        self._logger.info(
            f"Watermark -> {position} ({processed} applied, {duplicates} duplicate, {failed} failed)"
        )

        latest = latest_per_member(requests)
        self._stats["requests_superseded"] += len(requests) - len(latest)
        return latest

    def _prune_markers(self):
        now = time.time()
        if now - self._last_prune < self.config.prune_interval:
            return
        self._last_prune = now
        self._stats["markers_pruned"] += self._store.prune_processed_events(
            self.chain_id, now - self.config.marker_retention
        )

    async def _dispatch(self, requests: List[ModerationRequest]):
        if self._dispatcher is None:
            return
        for request in requests:
            await self._dispatcher.dispatch(request)
            self._stats["requests_dispatched"] += 1

    # =========================================================================
    # Stats
    # =========================================================================

    @property
    def is_running(self) -> bool:
        return self._running

    def get_stats(self) -> Dict:
        watermark = self._store.get_watermark(self.chain_id)
        return {
            **self._stats,
            "chain_id": self.chain_id,
            "state": self.state.value,
            "running": self._running,
            "watermark": watermark.position if watermark else None,
            "cursor": watermark.cursor if watermark else None,
            "last_error": self._last_error,
            "last_batch_time": self._last_batch_time,
        }
