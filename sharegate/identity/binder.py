"""
Identity Binder

Proves that a chat member controls a wallet and admits or restricts them
from the subject's chat according to the live on-chain share balance.

Flow for one verification:
1. Recover the signer of the challenge (the member's Telegram user id)
2. Fail closed on a recovery failure or an address mismatch
3. Bind address -> Telegram id (first write wins)
4. Read the live balance from the chain, not from the ledger
5. Unrestrict when balance > 0, restrict otherwise
"""

import logging
from typing import Dict

from ..addresses import normalize_address
from ..chain import ChainClient
from ..errors import ChainRpcError, InvalidSignatureError
from ..moderation import ModerationDispatcher
from ..persistence import ShareLedgerStore
from ..types import ModerationAction, VerificationResult


class IdentityBinder:
    """
    Signature-driven admission check.

    Usage:
        binder = IdentityBinder(clients, store, dispatcher)
        result = await binder.verify(telegram_id, signature, address, subject, "monad")
    """

    def __init__(
        self,
        clients: Dict[str, ChainClient],
        store: ShareLedgerStore,
        dispatcher: ModerationDispatcher
    ):
        self._clients = clients
        self._store = store
        self._dispatcher = dispatcher
        self._logger = logging.getLogger("IdentityBinder")
        self._stats = {
            "verified": 0,
            "admitted": 0,
            "rejected": 0,
            "errors": 0,
        }

    async def verify(
        self,
        challenge: str,
        signature: str,
        claimed_address: str,
        subject: str,
        chain_id: str
    ) -> VerificationResult:
        """Verify ownership of claimed_address and apply the admission decision."""
        client = self._clients.get(chain_id)
        if client is None:
            self._stats["errors"] += 1
            return VerificationResult(success=False, error=f"Unsupported chain: {chain_id}")

        try:
            subject = normalize_address(subject)
        except ValueError as e:
            self._stats["errors"] += 1
            return VerificationResult(success=False, error=f"Invalid subject address: {e}")

        telegram_id = str(challenge).strip()

        try:
            claimed = normalize_address(claimed_address)
            recovered = client.recover_signer(telegram_id, signature)
        except (InvalidSignatureError, ValueError) as e:
            self._logger.warning(f"Verify signature failed for user {telegram_id}: {e}")
            return await self._reject(subject, chain_id, telegram_id, f"Signature verification failed: {e}")

        if recovered != claimed:
            self._logger.warning(f"Address mismatch: signed by {recovered}, claimed {claimed}")
            return await self._reject(subject, chain_id, telegram_id, "Address mismatch with signature")

        self._stats["verified"] += 1
        if self._store.bind_identity(claimed, chain_id, telegram_id):
            self._logger.info(f"Bound {claimed} to telegram user {telegram_id} on {chain_id}")

        try:
            balance = await client.read_balance(subject, claimed)
        except ChainRpcError as e:
            self._stats["errors"] += 1
            self._logger.error(f"Balance read failed for {claimed} in {subject}: {e}")
            return VerificationResult(success=False, error=f"Failed to read shares balance: {e}", address=claimed)

        self._logger.info(f"{claimed} holds {balance} shares of {subject} on {chain_id}")

        if balance > 0:
            self._stats["admitted"] += 1
            await self._dispatcher.apply(
                subject, chain_id, telegram_id, ModerationAction.UNRESTRICT, address=claimed
            )
            return VerificationResult(success=True, address=claimed, balance=balance)

        self._stats["rejected"] += 1
        await self._dispatcher.apply(
            subject, chain_id, telegram_id, ModerationAction.RESTRICT, address=claimed
        )
        return VerificationResult(success=False, error="No shares held", address=claimed, balance=balance)

    async def _reject(self, subject: str, chain_id: str, telegram_id: str, error: str) -> VerificationResult:
        """Restrict the requester without touching any binding row."""
        self._stats["rejected"] += 1
        await self._dispatcher.apply(subject, chain_id, telegram_id, ModerationAction.RESTRICT)
        return VerificationResult(success=False, error=error)

    def get_stats(self) -> Dict:
        return dict(self._stats)
