from __future__ import annotations

import json
from typing import Any

from aiohttp import web

from dmcrm.backend.rest import DiscordRestClient
from dmcrm.errors import (
    AuthFailed,
    CRMError,
    DuplicateAccount,
    NotFound,
    PeerNotFound,
    RateLimited,
    SendRejected,
    SessionNotReady,
    TransientNetwork,
)
from dmcrm.manager import SessionManager
from dmcrm.services.account_service import AccountService
from dmcrm.services.logger_service import LoggerService
from dmcrm.services.message_service import MessageStore


def _error(status: int, message: str, **extra: Any) -> web.Response:
    return web.json_response({"error": message, **extra}, status=status)


def error_response(exc: CRMError) -> web.Response:
    if isinstance(exc, NotFound):
        return _error(404, str(exc), code="NotFound")
    if isinstance(exc, PeerNotFound):
        return _error(404, str(exc), code="PeerNotFound")
    if isinstance(exc, AuthFailed):
        return _error(401, str(exc), code="AuthFailed")
    if isinstance(exc, RateLimited):
        return _error(429, "Rate limited, try again later.", code="RateLimited", retryAfter=exc.retry_after)
    if isinstance(exc, SessionNotReady):
        return _error(409, str(exc), code="SessionNotReady")
    if isinstance(exc, TransientNetwork):
        return _error(502, str(exc), code="TransientSendFailure")
    if isinstance(exc, SendRejected):
        return _error(502, str(exc), code="SendRejected", upstreamStatus=exc.status)
    return _error(500, str(exc), code=type(exc).__name__)


async def _json_body(request: web.Request) -> dict[str, Any] | None:
    try:
        body = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        return None
    return body if isinstance(body, dict) else None


class OperatorApi:
    """HTTP surface used by the dashboard: health, sends and account CRUD."""

    def __init__(
        self,
        *,
        manager: SessionManager,
        accounts: AccountService,
        messages: MessageStore,
        rest: DiscordRestClient,
        logger: LoggerService,
    ) -> None:
        self.manager = manager
        self.accounts = accounts
        self.messages = messages
        self.rest = rest
        self.logger = logger

    def build_app(self) -> web.Application:
        app = web.Application()
        app.router.add_get("/health", self.health)
        app.router.add_post("/send-message", self.send_message)
        app.router.add_get("/accounts", self.list_accounts)
        app.router.add_post("/accounts", self.create_account)
        app.router.add_delete("/accounts/{account_id}", self.delete_account)
        app.router.add_get("/accounts/{account_id}/messages", self.account_messages)
        app.router.add_get("/accounts/{account_id}/conversations", self.account_conversations)
        return app

    async def health(self, request: web.Request) -> web.Response:
        return web.json_response({"status": "healthy", **self.manager.status()})

    async def send_message(self, request: web.Request) -> web.Response:
        body = await _json_body(request)
        if body is None:
            return _error(400, "Request body must be a JSON object")
        account_id = str(body.get("accountId") or "").strip()
        user_id = str(body.get("userId") or "").strip()
        content = body.get("content")
        if not account_id or not user_id or not isinstance(content, str) or not content.strip():
            return _error(400, "Missing required fields: accountId, userId, content")
        self.logger.log("http.send_message", account_id=account_id, peer_id=user_id, chars=len(content))
        try:
            sent = await self.manager.send_message(account_id, user_id, content)
        except CRMError as exc:
            self.logger.log("http.send_failed", account_id=account_id, error_type=type(exc).__name__, error=str(exc)[:200])
            return error_response(exc)
        return web.json_response({"success": True, "message": "Message sent successfully", **sent.as_result()})

    async def list_accounts(self, request: web.Request) -> web.Response:
        rows = []
        for account in self.accounts.list_all():
            row = account.public_dict()
            row["session_state"] = self.manager.session_state(account.id)
            rows.append(row)
        return web.json_response({"accounts": rows})

    async def create_account(self, request: web.Request) -> web.Response:
        body = await _json_body(request)
        token = str((body or {}).get("token") or "").strip()
        if not token:
            return _error(400, "Please enter a Discord token")
        try:
            profile = await self.rest.fetch_profile(token)
        except AuthFailed:
            return _error(401, "Invalid user token. Please check your token and try again.", code="AuthFailed")
        except CRMError as exc:
            return error_response(exc)
        try:
            account = self.accounts.create(
                credential=token,
                user_id=profile.id,
                display_name=profile.display_name,
                avatar_url=profile.avatar_url,
            )
        except DuplicateAccount:
            return _error(409, "This Discord account is already added.", code="DuplicateAccount")
        return web.json_response(account.public_dict(), status=201)

    async def delete_account(self, request: web.Request) -> web.Response:
        account_id = request.match_info["account_id"]
        if not self.accounts.delete(account_id):
            return _error(404, f"Account {account_id} not found", code="NotFound")
        return web.json_response({"deleted": True, "id": account_id})

    async def account_messages(self, request: web.Request) -> web.Response:
        account_id = request.match_info["account_id"]
        if self.accounts.get(account_id) is None:
            return _error(404, f"Account {account_id} not found", code="NotFound")
        peer_id = request.query.get("peer_id") or None
        rows = [record.to_row() for record in self.messages.query(account_id, peer_id=peer_id)]
        return web.json_response({"messages": rows})

    async def account_conversations(self, request: web.Request) -> web.Response:
        account_id = request.match_info["account_id"]
        if self.accounts.get(account_id) is None:
            return _error(404, f"Account {account_id} not found", code="NotFound")
        rows = [summary.to_dict() for summary in self.messages.conversations(account_id)]
        return web.json_response({"conversations": rows})
