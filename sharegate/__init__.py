"""
ShareGate

Tracks ownership of tokenized shares traded on chain and uses that
ownership to gate membership of Telegram group chats.

Components:
- chain: per-chain RPC clients (EVM-style and Move-based)
- persistence: SQLite ledger, watermark and identity storage
- sync: per-chain event sync engines and the trade processor
- moderation: Telegram restrict/unrestrict dispatch and bot workers
- identity: signature verification and wallet <-> Telegram binding
- api: HTTP routes consumed by the signing page and admin tools
"""

__version__ = "0.3.0"
