"""
Share Ledger Store

SQLite persistence for everything the core reads and writes:
- sync_status: per-chain watermark (block height, or cursor surrogate + cursor JSON)
- trades: (trader, subject, chain) -> share amount
- processed_events: per-event idempotency markers
- user_mappings: (address, chain) -> Telegram user id + ban flag
- telegram_bots: operator-registered chat/bot per subject

All addresses are normalized here, so every write path agrees on one
canonical form. The connection runs in autocommit mode; atomic() groups
several writes into one transaction and savepoint() isolates a single
event inside it.
"""

import logging
import sqlite3
import time
from contextlib import contextmanager
from pathlib import Path
from threading import RLock
from typing import Dict, List, Optional

from ..addresses import normalize_address
from ..types import IdentityBinding, SubjectChatBinding, TradeLedgerEntry, Watermark


class ShareLedgerStore:
    """
    SQLite-backed ledger, watermark and identity storage.

    Usage:
        store = ShareLedgerStore("data/sharegate.db")
        with store.atomic():
            store.add_shares(trader, subject, "monad", 10)
            store.advance_watermark("monad", 1234)
        store.close()
    """

    def __init__(self, db_path: str = "data/sharegate.db"):
        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)

        self.db_path = db_path
        self._logger = logging.getLogger("ShareLedgerStore")
        self._lock = RLock()
        self._tx_depth = 0
        self._savepoint_seq = 0
        self.conn = sqlite3.connect(db_path, check_same_thread=False, isolation_level=None)
        self.conn.row_factory = sqlite3.Row

        self._create_schema()

    def _create_schema(self):
        """Create tables and indexes."""
        cursor = self.conn.cursor()

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS sync_status (
                chain_id TEXT PRIMARY KEY,
                last_synced_block INTEGER NOT NULL,
                metadata TEXT,
                updated_at REAL NOT NULL
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS trades (
                trader TEXT NOT NULL,
                subject TEXT NOT NULL,
                chain_id TEXT NOT NULL,
                share_amount INTEGER NOT NULL DEFAULT 0,
                updated_at REAL NOT NULL,
                PRIMARY KEY (trader, subject, chain_id)
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS processed_events (
                event_key TEXT PRIMARY KEY,
                chain_id TEXT NOT NULL,
                processed_at REAL NOT NULL
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS user_mappings (
                address TEXT NOT NULL,
                chain_id TEXT NOT NULL,
                telegram_id TEXT NOT NULL,
                is_banned INTEGER NOT NULL DEFAULT 0,
                created_at REAL NOT NULL,
                PRIMARY KEY (address, chain_id)
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS telegram_bots (
                agent_name TEXT PRIMARY KEY,
                bio TEXT,
                invite_url TEXT NOT NULL,
                bot_token TEXT NOT NULL,
                chat_group_id TEXT NOT NULL,
                subject_address TEXT NOT NULL,
                chain_id TEXT NOT NULL,
                created_at REAL NOT NULL,
                UNIQUE (subject_address, chain_id)
            )
        """)

        cursor.execute("CREATE INDEX IF NOT EXISTS idx_trades_trader ON trades(trader, chain_id)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_processed_events_chain ON processed_events(chain_id)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_telegram_bots_created ON telegram_bots(created_at DESC)")

        self._logger.info(f"Initialized share ledger store: {self.db_path}")

    # =========================================================================
    # Transactions
    # =========================================================================

    def atomic(self):
        """
        Context manager for atomic multi-write transactions.

        Usage:
            with store.atomic():
                store.add_shares(...)
                store.advance_watermark(...)
            # committed together, or all rolled back on error

        Nested use degrades to a savepoint.
        """
        return AtomicTransaction(self)

    @contextmanager
    def savepoint(self):
        """Roll back only the enclosed writes on error, then re-raise."""
        with self._lock:
            self._savepoint_seq += 1
            name = f"sp_{self._savepoint_seq}"
            self.conn.execute(f"SAVEPOINT {name}")
            try:
                yield
            except BaseException:
                self.conn.execute(f"ROLLBACK TO SAVEPOINT {name}")
                self.conn.execute(f"RELEASE SAVEPOINT {name}")
                raise
            else:
                self.conn.execute(f"RELEASE SAVEPOINT {name}")

    def begin_transaction(self):
        self._lock.acquire()
        try:
            self.conn.execute("BEGIN IMMEDIATE")
        except Exception:
            self._lock.release()
            raise
        self._tx_depth += 1

    def commit_transaction(self):
        try:
            self.conn.execute("COMMIT")
        finally:
            self._tx_depth -= 1
            self._lock.release()

    def rollback_transaction(self):
        try:
            if self.conn.in_transaction:
                self.conn.execute("ROLLBACK")
        finally:
            self._tx_depth -= 1
            self._lock.release()

    @property
    def in_transaction(self) -> bool:
        return self._tx_depth > 0

    # =========================================================================
    # Watermarks
    # =========================================================================

    def get_watermark(self, chain_id: str) -> Optional[Watermark]:
        """Load the persisted watermark for a chain, or None."""
        with self._lock:
            row = self.conn.execute(
                "SELECT * FROM sync_status WHERE chain_id = ?", (chain_id,)
            ).fetchone()
        if row is None:
            return None
        return Watermark(
            chain_id=row["chain_id"],
            position=row["last_synced_block"],
            metadata=row["metadata"],
            updated_at=row["updated_at"],
        )

    def bootstrap_watermark(self, chain_id: str, position: int,
                            metadata: Optional[str] = None) -> Watermark:
        """Return the chain's watermark, inserting the start position on first run."""
        with self._lock:
            self.conn.execute("""
                INSERT OR IGNORE INTO sync_status (chain_id, last_synced_block, metadata, updated_at)
                VALUES (?, ?, ?, ?)
            """, (chain_id, position, metadata, time.time()))
            return self.get_watermark(chain_id)

    def advance_watermark(self, chain_id: str, position: int,
                          metadata: Optional[str] = None) -> bool:
        """
        Move the watermark forward to position.

        Never regresses: returns False (and writes nothing) when position
        is below the stored value. metadata, when given, replaces the
        stored cursor.
        """
        now = time.time()
        with self._lock:
            cursor = self.conn.execute("""
                UPDATE sync_status
                SET last_synced_block = ?,
                    metadata = COALESCE(?, metadata),
                    updated_at = ?
                WHERE chain_id = ? AND last_synced_block <= ?
            """, (position, metadata, now, chain_id, position))
            if cursor.rowcount:
                return True

            inserted = self.conn.execute("""
                INSERT OR IGNORE INTO sync_status (chain_id, last_synced_block, metadata, updated_at)
                VALUES (?, ?, ?, ?)
            """, (chain_id, position, metadata, now))
            if inserted.rowcount:
                return True

        self._logger.warning(f"Refusing to move {chain_id} watermark back to {position}")
        return False

    # =========================================================================
    # Idempotency markers
    # =========================================================================

    def has_processed_event(self, event_key: str) -> bool:
        with self._lock:
            row = self.conn.execute(
                "SELECT 1 FROM processed_events WHERE event_key = ?", (event_key,)
            ).fetchone()
        return row is not None

    def mark_event_processed(self, event_key: str, chain_id: str) -> bool:
        """Record event_key. Returns False if it was already recorded."""
        with self._lock:
            cursor = self.conn.execute("""
                INSERT OR IGNORE INTO processed_events (event_key, chain_id, processed_at)
                VALUES (?, ?, ?)
            """, (event_key, chain_id, time.time()))
        return cursor.rowcount == 1

    def prune_processed_events(self, chain_id: str, older_than: float) -> int:
        """
        Drop chain_id markers recorded before older_than (epoch seconds).

        A marker is only consulted when its batch is delivered again, which
        cannot happen once the watermark has moved past it.
        Returns the number of rows removed.
        """
        with self._lock:
            cursor = self.conn.execute("""
                DELETE FROM processed_events WHERE chain_id = ? AND processed_at < ?
            """, (chain_id, older_than))
        if cursor.rowcount:
            self._logger.info(f"Pruned {cursor.rowcount} {chain_id} event markers")
        return cursor.rowcount

    # =========================================================================
    # Share ledger
    # =========================================================================

    def add_shares(self, trader: str, subject: str, chain_id: str, amount: int) -> int:
        """Upsert: share_amount += amount (seeded with amount). Returns the new balance."""
        trader, subject = normalize_address(trader), normalize_address(subject)
        with self._lock:
            self.conn.execute("""
                INSERT INTO trades (trader, subject, chain_id, share_amount, updated_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(trader, subject, chain_id) DO UPDATE SET
                    share_amount = trades.share_amount + excluded.share_amount,
                    updated_at = excluded.updated_at
            """, (trader, subject, chain_id, amount, time.time()))
            return self.get_share_amount(trader, subject, chain_id)

    def remove_shares(self, trader: str, subject: str, chain_id: str,
                      amount: int) -> Optional[int]:
        """share_amount -= amount. Returns the new balance, or None if no row exists."""
        trader, subject = normalize_address(trader), normalize_address(subject)
        with self._lock:
            cursor = self.conn.execute("""
                UPDATE trades
                SET share_amount = share_amount - ?, updated_at = ?
                WHERE trader = ? AND subject = ? AND chain_id = ?
            """, (amount, time.time(), trader, subject, chain_id))
            if cursor.rowcount == 0:
                return None
            return self.get_share_amount(trader, subject, chain_id)

    def get_share_amount(self, trader: str, subject: str, chain_id: str) -> Optional[int]:
        with self._lock:
            row = self.conn.execute("""
                SELECT share_amount FROM trades
                WHERE trader = ? AND subject = ? AND chain_id = ?
            """, (normalize_address(trader), normalize_address(subject), chain_id)).fetchone()
        return None if row is None else row["share_amount"]

    def get_user_shares(self, trader: str, chain_id: Optional[str] = None) -> List[TradeLedgerEntry]:
        """All ledger rows of a trader, optionally limited to one chain."""
        query = "SELECT trader, subject, chain_id, share_amount FROM trades WHERE trader = ?"
        params = [normalize_address(trader)]
        if chain_id is not None:
            query += " AND chain_id = ?"
            params.append(chain_id)
        query += " ORDER BY chain_id, subject"

        with self._lock:
            rows = self.conn.execute(query, params).fetchall()
        return [
            TradeLedgerEntry(
                trader=row["trader"],
                subject=row["subject"],
                chain_id=row["chain_id"],
                share_amount=row["share_amount"],
            )
            for row in rows
        ]

    # =========================================================================
    # Identity bindings
    # =========================================================================

    def bind_identity(self, address: str, chain_id: str, telegram_id: str) -> bool:
        """Create the binding if absent (first write wins). True if created."""
        with self._lock:
            cursor = self.conn.execute("""
                INSERT OR IGNORE INTO user_mappings (address, chain_id, telegram_id, is_banned, created_at)
                VALUES (?, ?, ?, 0, ?)
            """, (normalize_address(address), chain_id, str(telegram_id), time.time()))
        return cursor.rowcount == 1

    def get_identity(self, address: str, chain_id: str) -> Optional[IdentityBinding]:
        with self._lock:
            row = self.conn.execute("""
                SELECT * FROM user_mappings WHERE address = ? AND chain_id = ?
            """, (normalize_address(address), chain_id)).fetchone()
        if row is None:
            return None
        return IdentityBinding(
            address=row["address"],
            chain_id=row["chain_id"],
            messaging_identity=row["telegram_id"],
            is_banned=bool(row["is_banned"]),
            created_at=row["created_at"],
        )

    def set_banned(self, address: str, chain_id: str, banned: bool) -> bool:
        """Update the ban flag. False if the address has no binding."""
        with self._lock:
            cursor = self.conn.execute("""
                UPDATE user_mappings SET is_banned = ? WHERE address = ? AND chain_id = ?
            """, (1 if banned else 0, normalize_address(address), chain_id))
        return cursor.rowcount == 1

    # =========================================================================
    # Subject chat bindings
    # =========================================================================

    def add_subject_chat(self, binding: SubjectChatBinding) -> SubjectChatBinding:
        """
        Register a subject's chat and bot.

        Raises sqlite3.IntegrityError if the agent name or the
        (subject, chain) pair is already registered.
        """
        binding.subject_address = normalize_address(binding.subject_address)
        binding.created_at = binding.created_at or time.time()
        with self._lock:
            self.conn.execute("""
                INSERT INTO telegram_bots (
                    agent_name, bio, invite_url, bot_token, chat_group_id,
                    subject_address, chain_id, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                binding.agent_name,
                binding.bio,
                binding.invite_url,
                binding.bot_token,
                str(binding.chat_group_id),
                binding.subject_address,
                binding.chain_id,
                binding.created_at,
            ))
        return binding

    def get_subject_chat(self, subject: str, chain_id: str) -> Optional[SubjectChatBinding]:
        with self._lock:
            row = self.conn.execute("""
                SELECT * FROM telegram_bots WHERE subject_address = ? AND chain_id = ?
            """, (normalize_address(subject), chain_id)).fetchone()
        return None if row is None else self._row_to_subject_chat(row)

    def get_subject_chat_by_agent(self, agent_name: str) -> Optional[SubjectChatBinding]:
        with self._lock:
            row = self.conn.execute(
                "SELECT * FROM telegram_bots WHERE agent_name = ?", (agent_name,)
            ).fetchone()
        return None if row is None else self._row_to_subject_chat(row)

    def list_subject_chats(self, limit: Optional[int] = None, offset: int = 0) -> List[SubjectChatBinding]:
        """Registered subject chats, newest first."""
        query = "SELECT * FROM telegram_bots ORDER BY created_at DESC, agent_name"
        params: List = []
        if limit is not None:
            query += " LIMIT ? OFFSET ?"
            params = [limit, offset]
        with self._lock:
            rows = self.conn.execute(query, params).fetchall()
        return [self._row_to_subject_chat(row) for row in rows]

    def count_subject_chats(self) -> int:
        with self._lock:
            row = self.conn.execute("SELECT COUNT(*) AS n FROM telegram_bots").fetchone()
        return row["n"]

    def _row_to_subject_chat(self, row: sqlite3.Row) -> SubjectChatBinding:
        return SubjectChatBinding(
            agent_name=row["agent_name"],
            subject_address=row["subject_address"],
            chain_id=row["chain_id"],
            bot_token=row["bot_token"],
            chat_group_id=row["chat_group_id"],
            invite_url=row["invite_url"],
            bio=row["bio"],
            created_at=row["created_at"],
        )

    # =========================================================================
    # Utility
    # =========================================================================

    def get_stats(self) -> Dict:
        with self._lock:
            counts = {
                table: self.conn.execute(f"SELECT COUNT(*) AS n FROM {table}").fetchone()["n"]
                for table in ("trades", "processed_events", "user_mappings", "telegram_bots")
            }
        counts["db_path"] = self.db_path
        return counts

    def close(self):
        """Close database connection."""
        with self._lock:
            self.conn.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()


class AtomicTransaction:
    """Context manager for atomic multi-write transactions."""

    def __init__(self, store: ShareLedgerStore):
        self._store = store
        self._nested = None

    def __enter__(self):
        if self._store.in_transaction:
            self._nested = self._store.savepoint()
            self._nested.__enter__()
        else:
            self._store.begin_transaction()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self._nested is not None:
            return self._nested.__exit__(exc_type, exc_val, exc_tb)

        if exc_type is not None:
            self._store.rollback_transaction()
            return False

        try:
            self._store.commit_transaction()
        except Exception:
            # COMMIT failure leaves the transaction open
            if self._store.conn.in_transaction:
                self._store.conn.execute("ROLLBACK")
            raise
        return False
