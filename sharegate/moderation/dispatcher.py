"""
Moderation Dispatcher

Executes restrict/unrestrict actions in a subject's Telegram chat using
that subject's own bot credentials, and records the confirmed outcome on
the member's identity binding (the only writer of is_banned).

No retries: a failed action is logged and dropped. The next trade event
that satisfies the same balance predicate produces the same request.
"""

import logging
from typing import Callable, Dict, Optional

from ..errors import TelegramApiError
from ..persistence import ShareLedgerStore
from ..types import ModerationAction, ModerationRequest
from .telegram import TelegramBotApi


class ModerationDispatcher:
    """
    Applies moderation actions against the messaging platform.

    Usage:
        dispatcher = ModerationDispatcher(store)
        await dispatcher.apply(subject, "monad", telegram_id, ModerationAction.RESTRICT, address)
        await dispatcher.close()
    """

    def __init__(
        self,
        store: ShareLedgerStore,
        api_factory: Optional[Callable[[str], TelegramBotApi]] = None
    ):
        self._store = store
        self._api_factory = api_factory or TelegramBotApi
        self._apis: Dict[str, TelegramBotApi] = {}
        self._logger = logging.getLogger("ModerationDispatcher")
        self._stats = {
            "applied": 0,
            "failed": 0,
            "unbound_subject": 0,
        }

    def _api_for(self, bot_token: str) -> TelegramBotApi:
        api = self._apis.get(bot_token)
        if api is None:
            api = self._api_factory(bot_token)
            self._apis[bot_token] = api
        return api

    async def apply(
        self,
        subject: str,
        chain_id: str,
        messaging_identity: str,
        action: ModerationAction,
        address: Optional[str] = None
    ) -> bool:
        """
        Restrict or unrestrict messaging_identity in the subject's chat.

        When address is given and the platform confirms the action, the
        address's binding is updated (RESTRICT -> banned). Returns True on
        confirmed success.
        """
        chat = self._store.get_subject_chat(subject, chain_id)
        if chat is None:
            self._stats["unbound_subject"] += 1
            self._logger.info(f"No telegram bot info found for subject {subject} on {chain_id}")
            return False

        api = self._api_for(chat.bot_token)
        try:
            await api.restrict_chat_member(chat.chat_group_id, messaging_identity, action)
        except (TelegramApiError, ValueError) as e:
            self._stats["failed"] += 1
            self._logger.error(
                f"{action.value} of user {messaging_identity} in chat {chat.chat_group_id} failed: {e}"
            )
            return False

        self._stats["applied"] += 1
        self._logger.info(
            f"{action.value} user {messaging_identity} in chat {chat.chat_group_id} (subject {subject})"
        )

        if address is not None:
            self._store.set_banned(address, chain_id, action == ModerationAction.RESTRICT)
        return True

    async def dispatch(self, request: ModerationRequest) -> bool:
        """Apply a request produced by the trade processor."""
        return await self.apply(
            request.subject,
            request.chain_id,
            request.messaging_identity,
            request.action,
            address=request.address,
        )

    def get_stats(self) -> Dict:
        return dict(self._stats)

    async def close(self):
        for api in self._apis.values():
            await api.close()
        self._apis.clear()
