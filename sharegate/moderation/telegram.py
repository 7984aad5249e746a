"""
Telegram Bot API Client

Thin wrapper around python-telegram-bot's Bot for the methods the service
uses:
- restrictChatMember (restrict to read-only / restore permissions)
- sendMessage (sign prompts with an inline URL button)
- getUpdates (long polling for new chat members)

Every telegram.error.TelegramError surfaces as TelegramApiError.

API Documentation: https://core.telegram.org/bots/api
"""

import logging
from typing import Any, Awaitable, List, Optional, Union

from telegram import Bot, ChatPermissions, InlineKeyboardButton, InlineKeyboardMarkup, Message, Update
from telegram.error import BadRequest, Forbidden, InvalidToken, RetryAfter, TelegramError
from telegram.request import HTTPXRequest

from ..errors import TelegramApiError
from ..types import ModerationAction


TELEGRAM_API_URL = "https://api.telegram.org/bot"

RESTRICTED_PERMISSIONS = {
    "can_send_messages": False,
    "can_send_audios": False,
    "can_send_documents": False,
    "can_send_photos": False,
    "can_send_videos": False,
    "can_send_video_notes": False,
    "can_send_voice_notes": False,
    "can_send_polls": False,
    "can_send_other_messages": False,
    "can_add_web_page_previews": False,
}

MEMBER_PERMISSIONS = {
    "can_send_messages": True,
    "can_send_audios": True,
    "can_send_documents": True,
    "can_send_photos": True,
    "can_send_videos": True,
    "can_send_video_notes": True,
    "can_send_voice_notes": True,
    "can_send_polls": True,
    "can_send_other_messages": True,
    "can_add_web_page_previews": True,
}

# Answers meaning "already in the requested state".
_IDEMPOTENT_ERRORS = ("not modified", "chat_not_modified")


def permissions_for(action: ModerationAction) -> ChatPermissions:
    if action == ModerationAction.RESTRICT:
        return ChatPermissions(**RESTRICTED_PERMISSIONS)
    return ChatPermissions(**MEMBER_PERMISSIONS)


def _error_code(error: TelegramError) -> int:
    if isinstance(error, BadRequest):
        return 400
    if isinstance(error, InvalidToken):
        return 401
    if isinstance(error, Forbidden):
        return 403
    if isinstance(error, RetryAfter):
        return 429
    return 0


class TelegramBotApi:
    """
    Bot API client bound to one bot token.

    Usage:
        api = TelegramBotApi(token)
        await api.restrict_chat_member(chat_id, user_id, ModerationAction.RESTRICT)
        await api.close()
    """

    def __init__(self, token: str, api_url: str = TELEGRAM_API_URL, request_timeout: float = 65.0):
        self._request = HTTPXRequest(
            connection_pool_size=8, connect_timeout=request_timeout, read_timeout=request_timeout
        )
        self._updates_request = HTTPXRequest(connect_timeout=request_timeout, read_timeout=request_timeout)
        self._bot = Bot(
            token,
            base_url=api_url,
            request=self._request,
            get_updates_request=self._updates_request,
        )
        self._logger = logging.getLogger("TelegramBotApi")

    async def _call(self, method: str, request: Awaitable[Any]) -> Any:
        try:
            return await request
        except TelegramError as e:
            description = str(e.message)
            if any(marker in description.lower() for marker in _IDEMPOTENT_ERRORS):
                self._logger.debug(f"{method}: {description} (treated as success)")
                return True
            raise TelegramApiError(method, description, _error_code(e)) from e

    # =========================================================================
    # Methods
    # =========================================================================

    async def restrict_chat_member(self, chat_id: str, user_id: str,
                                   action: ModerationAction) -> bool:
        """Apply the permission set for action to one chat member."""
        await self._call("restrictChatMember", self._bot.restrict_chat_member(
            chat_id=chat_id,
            user_id=int(user_id),
            permissions=permissions_for(action),
        ))
        return True

    async def send_message(self, chat_id: Union[int, str], text: str,
                           button_text: Optional[str] = None,
                           button_url: Optional[str] = None) -> Union[Message, bool]:
        reply_markup = None
        if button_text and button_url:
            reply_markup = InlineKeyboardMarkup([[InlineKeyboardButton(button_text, url=button_url)]])
        return await self._call("sendMessage", self._bot.send_message(
            chat_id=chat_id,
            text=text,
            reply_markup=reply_markup,
        ))

    async def get_updates(self, offset: Optional[int] = None, timeout: int = 30) -> List[Update]:
        result = await self._call("getUpdates", self._bot.get_updates(
            offset=offset,
            timeout=timeout,
            allowed_updates=[Update.MESSAGE],
        ))
        return list(result) if isinstance(result, (list, tuple)) else []

    async def close(self):
        await self._request.shutdown()
        await self._updates_request.shutdown()
