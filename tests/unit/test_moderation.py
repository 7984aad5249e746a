"""
Unit tests for the moderation path.

Tests:
- python-telegram-bot backed client against a local aiohttp server
- Dispatcher: unbound subjects, platform failures, ban flag updates
- Bot worker pool: sign prompts, runtime add/remove, restart on crash
"""

import asyncio
import json
import os
import tempfile
from datetime import datetime, timezone
from urllib.parse import parse_qs, urlparse

import pytest
from aiohttp import web
from aiohttp import test_utils
from telegram import Chat, ChatPermissions, Message, Update, User

from sharegate.errors import TelegramApiError
from sharegate.moderation import (
    BotWorker,
    BotWorkerPool,
    ModerationDispatcher,
    TelegramBotApi,
    build_sign_url,
    permissions_for,
)
from sharegate.moderation.mock_telegram import MockTelegramApi, MockTelegramRegistry
from sharegate.persistence import ShareLedgerStore
from sharegate.types import ModerationAction, ModerationRequest, SubjectChatBinding


TRADER = "aa" * 20
SUBJECT = "bb" * 20


@pytest.fixture
def store():
    fd, path = tempfile.mkstemp(suffix=".db")
    os.close(fd)
    store = ShareLedgerStore(path)
    yield store
    store.close()
    os.unlink(path)


def subject_chat(name: str = "alpha", subject: str = SUBJECT, token: str = "token") -> SubjectChatBinding:
    return SubjectChatBinding(
        agent_name=name,
        subject_address=subject,
        chain_id="monad",
        bot_token=token,
        chat_group_id="-100123",
        invite_url="https://t.me/+invite",
    )


def chat_update(update_id: int, chat_id: int = -100123, new_members=None, left=None) -> Update:
    return Update(update_id, message=Message(
        message_id=update_id,
        date=datetime.now(timezone.utc),
        chat=Chat(chat_id, Chat.SUPERGROUP),
        new_chat_members=new_members,
        left_chat_member=left,
    ))


class TestPermissions:

    def test_restrict_denies_everything(self):
        permissions = permissions_for(ModerationAction.RESTRICT)
        assert isinstance(permissions, ChatPermissions)
        assert not any(permissions.to_dict().values())

    def test_unrestrict_allows_messages(self):
        permissions = permissions_for(ModerationAction.UNRESTRICT)
        assert permissions.can_send_messages is True
        assert all(permissions.to_dict().values())


class TestTelegramBotApi:

    async def _serve(self, answers: dict):
        received = []

        async def handler(request):
            method = request.match_info["method"]
            received.append((request.match_info["token"], method, dict(await request.post())))
            answer = answers[method]
            return web.json_response(answer, status=answer.get("error_code", 200))

        app = web.Application()
        app.router.add_post("/bot{token}/{method}", handler)
        server = test_utils.TestServer(app)
        await server.start_server()
        return server, received

    @staticmethod
    def api_for(server, token: str = "t") -> TelegramBotApi:
        return TelegramBotApi(token, api_url=f"http://{server.host}:{server.port}/bot", request_timeout=5.0)

    @pytest.mark.asyncio
    async def test_restrict_chat_member_payload(self):
        server, received = await self._serve({"restrictChatMember": {"ok": True, "result": True}})
        api = self.api_for(server, "123:abc")
        try:
            assert await api.restrict_chat_member("-100123", "42", ModerationAction.RESTRICT)
        finally:
            await api.close()
            await server.close()

        token, method, body = received[0]
        assert token == "123:abc"
        assert method == "restrictChatMember"
        assert body["chat_id"] == "-100123"
        assert body["user_id"] == "42"
        assert json.loads(body["permissions"])["can_send_messages"] is False

    @pytest.mark.asyncio
    async def test_error_answer_raises(self):
        server, _ = await self._serve({"restrictChatMember": {
            "ok": False, "error_code": 400, "description": "Bad Request: user not found"
        }})
        api = self.api_for(server)
        try:
            with pytest.raises(TelegramApiError) as exc_info:
                await api.restrict_chat_member("-1", "42", ModerationAction.RESTRICT)
        finally:
            await api.close()
            await server.close()

        assert exc_info.value.error_code == 400
        assert "user not found" in exc_info.value.description.lower()

    @pytest.mark.asyncio
    async def test_forbidden_answer_keeps_code(self):
        server, _ = await self._serve({"sendMessage": {
            "ok": False, "error_code": 403, "description": "Forbidden: bot was blocked by the user"
        }})
        api = self.api_for(server)
        try:
            with pytest.raises(TelegramApiError) as exc_info:
                await api.send_message("42", "hello")
        finally:
            await api.close()
            await server.close()

        assert exc_info.value.error_code == 403
        assert exc_info.value.method == "sendMessage"

    @pytest.mark.asyncio
    async def test_not_modified_counts_as_success(self):
        server, _ = await self._serve({"restrictChatMember": {
            "ok": False, "error_code": 400, "description": "Bad Request: CHAT_NOT_MODIFIED"
        }})
        api = self.api_for(server)
        try:
            assert await api.restrict_chat_member("-1", "42", ModerationAction.UNRESTRICT)
        finally:
            await api.close()
            await server.close()

    @pytest.mark.asyncio
    async def test_send_message_with_button(self):
        server, received = await self._serve({"sendMessage": {"ok": True, "result": {
            "message_id": 1, "date": 0, "chat": {"id": 42, "type": "private"}
        }}})
        api = self.api_for(server)
        try:
            message = await api.send_message("42", "hello", "ClickToSign", "https://sign.example/?challenge=42")
        finally:
            await api.close()
            await server.close()

        assert message.message_id == 1
        body = received[0][2]
        assert body["text"] == "hello"
        button = json.loads(body["reply_markup"])["inline_keyboard"][0][0]
        assert button == {"text": "ClickToSign", "url": "https://sign.example/?challenge=42"}

    @pytest.mark.asyncio
    async def test_get_updates_returns_update_objects(self):
        server, received = await self._serve({"getUpdates": {"ok": True, "result": [{
            "update_id": 5,
            "message": {
                "message_id": 9,
                "date": 0,
                "chat": {"id": -100123, "type": "supergroup"},
                "new_chat_members": [{"id": 42, "is_bot": False, "first_name": "Alice"}],
            },
        }]}})
        api = self.api_for(server)
        try:
            updates = await api.get_updates(offset=5, timeout=0)
        finally:
            await api.close()
            await server.close()

        assert [u.update_id for u in updates] == [5]
        assert updates[0].message.new_chat_members[0].id == 42
        assert received[0][2]["offset"] == "5"

    @pytest.mark.asyncio
    async def test_unreachable_api_raises(self):
        api = TelegramBotApi("t", api_url="http://127.0.0.1:1/bot", request_timeout=2.0)
        try:
            with pytest.raises(TelegramApiError):
                await api.get_updates(timeout=0)
        finally:
            await api.close()


class TestModerationDispatcher:

    @pytest.mark.asyncio
    async def test_unbound_subject_is_noop(self, store):
        bots = MockTelegramRegistry()
        dispatcher = ModerationDispatcher(store, api_factory=bots.factory)

        ok = await dispatcher.apply(SUBJECT, "monad", "42", ModerationAction.RESTRICT, address=TRADER)

        assert ok is False
        assert bots.restrictions == []
        assert dispatcher.get_stats()["unbound_subject"] == 1

    @pytest.mark.asyncio
    async def test_restrict_sets_ban_flag(self, store):
        bots = MockTelegramRegistry()
        dispatcher = ModerationDispatcher(store, api_factory=bots.factory)
        store.add_subject_chat(subject_chat())
        store.bind_identity(TRADER, "monad", "42")

        ok = await dispatcher.dispatch(ModerationRequest(
            subject=SUBJECT,
            chain_id="monad",
            address=TRADER,
            messaging_identity="42",
            action=ModerationAction.RESTRICT,
        ))

        assert ok is True
        assert bots.restrictions == [("-100123", "42", ModerationAction.RESTRICT)]
        assert store.get_identity(TRADER, "monad").is_banned is True

        await dispatcher.apply(SUBJECT, "monad", "42", ModerationAction.UNRESTRICT, address=TRADER)
        assert store.get_identity(TRADER, "monad").is_banned is False

    @pytest.mark.asyncio
    async def test_platform_failure_leaves_flag(self, store):
        bots = MockTelegramRegistry()
        bots.fail_restrict = "Bad Request: not enough rights"
        dispatcher = ModerationDispatcher(store, api_factory=bots.factory)
        store.add_subject_chat(subject_chat())
        store.bind_identity(TRADER, "monad", "42")

        ok = await dispatcher.apply(SUBJECT, "monad", "42", ModerationAction.RESTRICT, address=TRADER)

        assert ok is False
        assert store.get_identity(TRADER, "monad").is_banned is False
        assert dispatcher.get_stats()["failed"] == 1

    @pytest.mark.asyncio
    async def test_without_address_no_binding_is_created(self, store):
        bots = MockTelegramRegistry()
        dispatcher = ModerationDispatcher(store, api_factory=bots.factory)
        store.add_subject_chat(subject_chat())

        assert await dispatcher.apply(SUBJECT, "monad", "42", ModerationAction.RESTRICT)
        assert store.get_identity(TRADER, "monad") is None

    @pytest.mark.asyncio
    async def test_api_reused_per_token_and_closed(self, store):
        bots = MockTelegramRegistry()
        dispatcher = ModerationDispatcher(store, api_factory=bots.factory)
        store.add_subject_chat(subject_chat())

        await dispatcher.apply(SUBJECT, "monad", "1", ModerationAction.RESTRICT)
        await dispatcher.apply(SUBJECT, "monad", "2", ModerationAction.RESTRICT)
        await dispatcher.close()

        assert list(bots.apis) == ["token"]
        assert bots.apis["token"].closed


class TestBotWorker:

    def test_sign_url(self):
        url = build_sign_url("http://sign.example/web3-sign", "42", SUBJECT, "monad")
        parsed = urlparse(url)
        assert parsed.path == "/web3-sign"
        assert parse_qs(parsed.query) == {"challenge": ["42"], "subject": [SUBJECT], "chain": ["monad"]}

    @pytest.mark.asyncio
    async def test_new_member_gets_sign_prompt(self):
        api = MockTelegramApi("token")
        worker = BotWorker(subject_chat(), api, "http://sign.example/web3-sign")

        await worker.handle_update(chat_update(1, new_members=[
            User(42, "Alice", False, username="alice"),
            User(7, "Some", True, username="some_bot"),
        ]))

        assert len(api.sent) == 1
        chat_id, text, button_text, button_url = api.sent[0]
        assert chat_id == "42"
        assert button_text == "ClickToSign"
        assert "challenge=42" in button_url
        assert worker.prompts_sent == 1

    @pytest.mark.asyncio
    async def test_left_member_is_only_logged(self):
        api = MockTelegramApi("token")
        worker = BotWorker(subject_chat(), api, "http://sign.example")
        await worker.handle_update(chat_update(2, chat_id=-1, left=User(42, "Alice", False)))
        assert api.sent == []

    @pytest.mark.asyncio
    async def test_update_without_message_is_ignored(self):
        api = MockTelegramApi("token")
        worker = BotWorker(subject_chat(), api, "http://sign.example")
        await worker.handle_update(Update(3))
        assert api.sent == []

    @pytest.mark.asyncio
    async def test_poll_advances_offset(self):
        api = MockTelegramApi("token")
        worker = BotWorker(subject_chat(), api, "http://sign.example")
        api.updates.put_nowait([Update(10), Update(11)])

        await worker.poll_once()

        assert worker._offset == 12


class TestBotWorkerPool:

    @pytest.mark.asyncio
    async def test_starts_worker_per_stored_subject(self, store):
        bots = MockTelegramRegistry()
        store.add_subject_chat(subject_chat("alpha", SUBJECT, "t1"))
        store.add_subject_chat(subject_chat("beta", "cc" * 20, "t2"))
        pool = BotWorkerPool(store, "http://sign.example", api_factory=bots.factory)

        await pool.start()
        try:
            assert pool.worker_count == 2
            assert pool.add(subject_chat("alpha", SUBJECT, "t1")) is False
        finally:
            await pool.stop()

        assert pool.worker_count == 0
        assert all(api.closed for api in bots.apis.values())

    @pytest.mark.asyncio
    async def test_runtime_add_and_remove(self, store):
        bots = MockTelegramRegistry()
        pool = BotWorkerPool(store, "http://sign.example", api_factory=bots.factory)
        await pool.start()
        try:
            assert pool.add(subject_chat()) is True
            api = bots.apis["token"]
            api.updates.put_nowait([chat_update(1, new_members=[User(42, "Alice", False)])])
            for _ in range(50):
                if api.sent:
                    break
                await asyncio.sleep(0.02)
            assert api.sent

            assert await pool.remove(SUBJECT, "monad") is True
            assert await pool.remove(SUBJECT, "monad") is False
            assert pool.worker_count == 0
        finally:
            await pool.stop()

    @pytest.mark.asyncio
    async def test_crashed_worker_is_restarted(self, store):
        attempts = []

        class CrashingApi(MockTelegramApi):
            async def get_updates(self, offset=None, timeout=30):
                attempts.append(offset)
                if len(attempts) == 1:
                    raise RuntimeError("bot crashed")
                return await super().get_updates(offset, timeout)

        pool = BotWorkerPool(store, "http://sign.example",
                             api_factory=lambda token: CrashingApi(token), restart_delay=0.01)
        await pool.start()
        try:
            pool.add(subject_chat())
            for _ in range(50):
                if len(attempts) > 1:
                    break
                await asyncio.sleep(0.02)
        finally:
            await pool.stop()

        assert len(attempts) > 1
        assert pool.get_stats()["restarts"] >= 1
