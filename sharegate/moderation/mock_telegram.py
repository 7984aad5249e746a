"""
Mock Telegram Bot API

Records every call instead of talking to Telegram. Drop-in for
TelegramBotApi wherever an api_factory is accepted.

Usage:
    bots = MockTelegramRegistry()
    dispatcher = ModerationDispatcher(store, api_factory=bots.factory)
    ...
    assert bots.restrictions == [("-100123", "42", ModerationAction.RESTRICT)]
"""

import asyncio
from typing import Any, Dict, List, Optional, Tuple

from telegram import Update

from ..errors import TelegramApiError
from ..types import ModerationAction


class MockTelegramApi:
    """In-memory stand-in for one bot token."""

    def __init__(self, token: str, registry: Optional["MockTelegramRegistry"] = None):
        self.token = token
        self._registry = registry
        self.updates: "asyncio.Queue[List[Update]]" = asyncio.Queue()
        self.sent: List[Tuple[Any, str, Optional[str], Optional[str]]] = []
        self.fail_restrict: Optional[str] = None
        self.closed = False

    async def restrict_chat_member(self, chat_id: str, user_id: str,
                                   action: ModerationAction) -> bool:
        if self.fail_restrict:
            raise TelegramApiError("restrictChatMember", self.fail_restrict, 400)
        int(user_id)
        if self._registry is not None:
            self._registry.restrictions.append((str(chat_id), str(user_id), action))
        return True

    async def send_message(self, chat_id: Any, text: str,
                           button_text: Optional[str] = None,
                           button_url: Optional[str] = None) -> Any:
        self.sent.append((chat_id, text, button_text, button_url))
        return {"message_id": len(self.sent)}

    async def get_updates(self, offset: Optional[int] = None, timeout: int = 30) -> List[Update]:
        try:
            return await asyncio.wait_for(self.updates.get(), timeout=0.05)
        except asyncio.TimeoutError:
            return []

    async def close(self):
        self.closed = True


class MockTelegramRegistry:
    """Creates one MockTelegramApi per token and collects their calls."""

    def __init__(self):
        self.apis: Dict[str, MockTelegramApi] = {}
        self.restrictions: List[Tuple[str, str, ModerationAction]] = []
        self.fail_restrict: Optional[str] = None

    def factory(self, token: str) -> MockTelegramApi:
        api = self.apis.get(token)
        if api is None:
            api = MockTelegramApi(token, self)
            api.fail_restrict = self.fail_restrict
            self.apis[token] = api
        return api
