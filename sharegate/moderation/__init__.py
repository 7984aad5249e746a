"""
Moderation

- TelegramBotApi: Bot API client (restrict, send message, updates)
- ModerationDispatcher: applies restrict/unrestrict and records the outcome
- BotWorkerPool: supervised per-subject bots sending sign prompts
"""

from .telegram import TelegramBotApi, permissions_for
from .dispatcher import ModerationDispatcher
from .bot_pool import BotWorker, BotWorkerPool, build_sign_url

__all__ = [
    "TelegramBotApi",
    "permissions_for",
    "ModerationDispatcher",
    "BotWorker",
    "BotWorkerPool",
    "build_sign_url",
]
