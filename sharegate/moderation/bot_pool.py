"""
Bot Worker Pool

One supervised worker per registered subject chat. Each worker owns its
bot credentials, long-polls Telegram for updates and sends every new chat
member a link to the signing page. Workers are added at startup from the
stored subject bindings and at runtime when an admin registers a new bot;
a crashed worker is restarted after a delay.
"""

import asyncio
import logging
from typing import Callable, Dict, Optional, Tuple
from urllib.parse import urlencode

from telegram import Update

from ..errors import TelegramApiError
from ..persistence import ShareLedgerStore
from ..types import SubjectChatBinding
from .telegram import TelegramBotApi


SIGN_PROMPT = "Please sign to verify wallet ownership:"
SIGN_BUTTON = "ClickToSign"


def build_sign_url(base_url: str, user_id: str, subject: str, chain_id: str) -> str:
    """Signing page link carrying the challenge (Telegram user id)."""
    query = urlencode({"challenge": user_id, "subject": subject, "chain": chain_id})
    return f"{base_url}?{query}"


class BotWorker:
    """Long-polling loop for one subject's bot."""

    def __init__(
        self,
        binding: SubjectChatBinding,
        api: TelegramBotApi,
        sign_url: str,
        poll_timeout: int = 30,
        error_delay: float = 5.0
    ):
        self.binding = binding
        self._api = api
        self._sign_url = sign_url
        self._poll_timeout = poll_timeout
        self._error_delay = error_delay
        self._offset: Optional[int] = None
        self._logger = logging.getLogger(f"BotWorker[{binding.agent_name}]")
        self.prompts_sent = 0

    async def run(self, stop_event: asyncio.Event):
        """Poll until stop_event is set. Telegram errors are retried after a delay."""
        self._logger.info(f"Bot started for subject {self.binding.subject_address}")
        while not stop_event.is_set():
            try:
                await self.poll_once()
            except TelegramApiError as e:
                self._logger.warning(f"Polling failed: {e}")
                try:
                    await asyncio.wait_for(stop_event.wait(), timeout=self._error_delay)
                except asyncio.TimeoutError:
                    pass

    async def poll_once(self):
        updates = await self._api.get_updates(offset=self._offset, timeout=self._poll_timeout)
        for update in updates:
            self._offset = update.update_id + 1
            await self.handle_update(update)

    async def handle_update(self, update: Update):
        message = update.message
        if message is None:
            return
        chat_id = message.chat_id

        for user in message.new_chat_members or ():
            if user.is_bot:
                continue
            user_id = str(user.id)
            self._logger.info(
                f"[newChatMember] chat ID: {chat_id}, user ID: {user_id}, "
                f"user name: @{user.username or 'nick user'}"
            )
            url = build_sign_url(
                self._sign_url, user_id, self.binding.subject_address, self.binding.chain_id
            )
            try:
                await self._api.send_message(user_id, SIGN_PROMPT, SIGN_BUTTON, url)
                self.prompts_sent += 1
            except TelegramApiError as e:
                # Users who never opened a DM with the bot cannot be messaged
                self._logger.warning(f"Could not send sign prompt to {user_id}: {e}")

        left = message.left_chat_member
        if left:
            self._logger.info(
                f"[MemberLeft] chat ID: {chat_id}, user ID: {left.id}, "
                f"user name: @{left.username or 'nick user'}"
            )


class BotWorkerPool:
    """
    Supervised workers keyed by (subject, chain).

    Usage:
        pool = BotWorkerPool(store, sign_url)
        await pool.start()       # one worker per stored binding
        pool.add(new_binding)    # runtime registration
        await pool.stop()
    """

    def __init__(
        self,
        store: ShareLedgerStore,
        sign_url: str,
        api_factory: Optional[Callable[[str], TelegramBotApi]] = None,
        restart_delay: float = 10.0,
        poll_timeout: int = 30
    ):
        self._store = store
        self._sign_url = sign_url
        self._api_factory = api_factory or TelegramBotApi
        self._restart_delay = restart_delay
        self._poll_timeout = poll_timeout
        self._logger = logging.getLogger("BotWorkerPool")

        self._stop_event = asyncio.Event()
        self._workers: Dict[Tuple[str, str], BotWorker] = {}
        self._tasks: Dict[Tuple[str, str], asyncio.Task] = {}
        self._apis: Dict[Tuple[str, str], TelegramBotApi] = {}
        self._restarts = 0

    async def start(self):
        """Start a worker for every stored subject binding."""
        self._stop_event.clear()
        for binding in self._store.list_subject_chats():
            self.add(binding)
        self._logger.info(f"Bot pool started with {len(self._tasks)} workers")

    def add(self, binding: SubjectChatBinding) -> bool:
        """Start a worker for binding. False if one already runs for its subject."""
        key = (binding.subject_address, binding.chain_id)
        if key in self._tasks:
            return False

        api = self._api_factory(binding.bot_token)
        worker = BotWorker(binding, api, self._sign_url, poll_timeout=self._poll_timeout)
        self._apis[key] = api
        self._workers[key] = worker
        self._tasks[key] = asyncio.create_task(self._supervise(key, worker))
        self._logger.info(f"Added bot worker for {binding.agent_name} ({binding.chain_id})")
        return True

    async def remove(self, subject: str, chain_id: str) -> bool:
        """Stop and drop the worker for a subject."""
        key = (subject, chain_id)
        task = self._tasks.pop(key, None)
        if task is None:
            return False
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        self._workers.pop(key, None)
        api = self._apis.pop(key, None)
        if api:
            await api.close()
        return True

    async def _supervise(self, key: Tuple[str, str], worker: BotWorker):
        while not self._stop_event.is_set():
            try:
                await worker.run(self._stop_event)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self._restarts += 1
                self._logger.error(f"Bot worker {key} crashed: {e}; restarting in {self._restart_delay}s")
                try:
                    await asyncio.wait_for(self._stop_event.wait(), timeout=self._restart_delay)
                except asyncio.TimeoutError:
                    pass

    async def stop(self):
        """Stop all workers and close their API sessions."""
        self._stop_event.set()
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        for api in self._apis.values():
            await api.close()
        self._tasks.clear()
        self._workers.clear()
        self._apis.clear()
        self._logger.info("Bot pool stopped")

    @property
    def worker_count(self) -> int:
        return len(self._tasks)

    def get_stats(self) -> Dict:
        return {
            "workers": len(self._tasks),
            "restarts": self._restarts,
            "prompts_sent": sum(w.prompts_sent for w in self._workers.values()),
        }
