"""
HTTP API

Thin aiohttp.web layer over the identity binder, the subject registry and
the share ledger:

    POST /verify-signature          wallet ownership proof from the sign page
    POST /add_tg_bot                register a subject chat and start its bot
    GET  /agents                    paginated subject list
    GET  /agents/{agent_name}       one subject
    GET  /agent/detail/{agent_name} subject detail (invite url, bio)
    GET  /users/{user_address}/shares

Every response carries permissive CORS headers.
"""

import logging
import sqlite3
from typing import Any, Dict, List, Optional

from aiohttp import web

from ..addresses import normalize_address
from ..identity import IdentityBinder
from ..moderation import BotWorkerPool
from ..persistence import ShareLedgerStore
from ..types import SubjectChatBinding


CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET, POST, OPTIONS",
    "Access-Control-Allow-Headers": "*",
}

DEFAULT_PAGE_SIZE = 10

logger = logging.getLogger("ShareGateApi")


@web.middleware
async def cors_middleware(request: web.Request, handler):
    if request.method == "OPTIONS":
        response = web.Response(status=204)
    else:
        try:
            response = await handler(request)
        except web.HTTPException as e:
            e.headers.update(CORS_HEADERS)
            raise
    response.headers.update(CORS_HEADERS)
    return response


def _error(message: str, status: int, **extra) -> web.Response:
    body: Dict[str, Any] = {"success": False, "error": message}
    body.update(extra)
    return web.json_response(body, status=status)


async def _json_body(request: web.Request) -> Optional[Dict[str, Any]]:
    try:
        payload = await request.json()
    except ValueError:
        return None
    return payload if isinstance(payload, dict) else None


class ShareGateApi:
    """Route handlers bound to the running service components."""

    def __init__(
        self,
        store: ShareLedgerStore,
        binder: IdentityBinder,
        chain_ids: List[str],
        bot_pool: Optional[BotWorkerPool] = None
    ):
        self._store = store
        self._binder = binder
        self._chain_ids = chain_ids
        self._bot_pool = bot_pool

    def _chain(self, value: Optional[str]) -> Optional[str]:
        """Requested chain, the first configured one when absent, None if unknown."""
        chain_id = (value or "").strip().lower() or self._chain_ids[0]
        return chain_id if chain_id in self._chain_ids else None

    # =========================================================================
    # Identity
    # =========================================================================

    async def verify_signature(self, request: web.Request) -> web.Response:
        payload = await _json_body(request)
        if payload is None:
            return _error("Invalid JSON body", 400)

        missing = [k for k in ("challenge", "signature", "shares_subject", "user") if not payload.get(k)]
        if missing:
            return _error(f"Missing fields: {', '.join(missing)}", 400)

        chain_id = self._chain(payload.get("chain"))
        if chain_id is None:
            return _error(f"Unsupported chain: {payload.get('chain')}", 400)

        result = await self._binder.verify(
            str(payload["challenge"]),
            str(payload["signature"]),
            str(payload["user"]),
            str(payload["shares_subject"]),
            chain_id,
        )
        return web.json_response(result.to_dict())

    # =========================================================================
    # Subjects
    # =========================================================================

    async def add_tg_bot(self, request: web.Request) -> web.Response:
        payload = await _json_body(request)
        if payload is None:
            return _error("Invalid JSON body", 400)

        required = ("bot_token", "chat_group_id", "subject_address", "agent_name", "invite_url")
        missing = [k for k in required if not payload.get(k)]
        if missing:
            return _error(f"Missing fields: {', '.join(missing)}", 400)

        chain_id = self._chain(payload.get("chain"))
        if chain_id is None:
            return _error(f"Unsupported chain: {payload.get('chain')}", 400)

        try:
            subject = normalize_address(str(payload["subject_address"]))
        except ValueError as e:
            return _error(f"Invalid subject address: {e}", 400)

        binding = SubjectChatBinding(
            agent_name=str(payload["agent_name"]),
            subject_address=subject,
            chain_id=chain_id,
            bot_token=str(payload["bot_token"]),
            chat_group_id=str(payload["chat_group_id"]),
            invite_url=str(payload["invite_url"]),
            bio=payload.get("bio"),
        )
        try:
            self._store.add_subject_chat(binding)
        except sqlite3.IntegrityError as e:
            return _error(f"Failed to add bot: {e}", 409)

        logger.info(f"New Telegram bot added, agent: {binding.agent_name}")
        if self._bot_pool is not None:
            self._bot_pool.add(binding)
        return web.json_response({"success": True})

    async def list_agents(self, request: web.Request) -> web.Response:
        try:
            page = int(request.query.get("page", 1))
            page_size = int(request.query.get("page_size", DEFAULT_PAGE_SIZE))
        except ValueError:
            return _error("Invalid pagination parameters", 400)
        if page < 1 or page_size < 1:
            return _error("Invalid pagination parameters", 400)

        agents = self._store.list_subject_chats(limit=page_size, offset=(page - 1) * page_size)
        return web.json_response({
            "agents": [a.to_public_dict() for a in agents],
            "total": self._store.count_subject_chats(),
            "page": page,
            "page_size": page_size,
        })

    async def get_agent(self, request: web.Request) -> web.Response:
        agent = self._store.get_subject_chat_by_agent(request.match_info["agent_name"])
        if agent is None:
            return _error("Agent not found", 404, agent=None)
        return web.json_response({"agent": agent.to_public_dict(), "success": True})

    async def get_agent_detail(self, request: web.Request) -> web.Response:
        agent = self._store.get_subject_chat_by_agent(request.match_info["agent_name"])
        if agent is None:
            return _error("Agent not found", 404)
        return web.json_response({
            "agent_name": agent.agent_name,
            "subject_address": agent.subject_address,
            "chain": agent.chain_id,
            "invite_url": agent.invite_url,
            "bio": agent.bio,
            "success": True,
        })

    # =========================================================================
    # Ledger
    # =========================================================================

    async def get_user_shares(self, request: web.Request) -> web.Response:
        try:
            user = normalize_address(request.match_info["user_address"])
        except ValueError as e:
            return _error(f"Invalid user address: {e}", 400)

        chain_id = self._chain(request.query.get("chain"))
        if chain_id is None:
            return _error(f"Unsupported chain: {request.query.get('chain')}", 400)

        shares = self._store.get_user_shares(user, chain_id)
        return web.json_response({
            "user_address": user,
            "chain": chain_id,
            "shares": [
                {"subject_address": s.subject, "shares_amount": str(s.share_amount)}
                for s in shares
            ],
        })


def create_app(
    store: ShareLedgerStore,
    binder: IdentityBinder,
    chain_ids: List[str],
    bot_pool: Optional[BotWorkerPool] = None
) -> web.Application:
    """Build the aiohttp application with all routes registered."""
    api = ShareGateApi(store, binder, chain_ids, bot_pool)
    app = web.Application(middlewares=[cors_middleware])
    app.router.add_post("/verify-signature", api.verify_signature)
    app.router.add_post("/add_tg_bot", api.add_tg_bot)
    app.router.add_get("/agents", api.list_agents)
    app.router.add_get("/agents/{agent_name}", api.get_agent)
    app.router.add_get("/agent/detail/{agent_name}", api.get_agent_detail)
    app.router.add_get("/users/{user_address}/shares", api.get_user_shares)
    app["api"] = api
    return app
