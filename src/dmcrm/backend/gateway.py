from __future__ import annotations

import asyncio
from typing import Any

import aiohttp
import discord

from dmcrm.backend.base import BackendConnection, ConnectionLost, SessionEvent
from dmcrm.backend.rest import DiscordRestClient
from dmcrm.errors import AuthFailed, MalformedPayload, PeerNotFound, TransientNetwork
from dmcrm.models import DirectChannel, MessageEvent, SelfIdentity, SentMessage
from dmcrm.payloads import parse_direct_channel, parse_message, parse_self_user, parse_user
from dmcrm.services.logger_service import LoggerService

# Gateway close code for an invalid token.
CLOSE_AUTHENTICATION_FAILED = 4004


class _GatewayClient(discord.Client):
    def __init__(self, gateway_owner: "DiscordGatewayConnection") -> None:
        super().__init__()
        self.gateway_owner = gateway_owner

    async def on_ready(self) -> None:
        self.gateway_owner._mark_ready()

    async def on_message(self, message: discord.Message) -> None:
        self.gateway_owner._ingest(message)


class DiscordGatewayConnection(BackendConnection):
    """User-token gateway session; sends go through the raw REST client."""

    def __init__(self, account_id: str, credential: str, *, rest: DiscordRestClient, logger: LoggerService) -> None:
        super().__init__(account_id, credential)
        self.rest = rest
        self.logger = logger
        self._client: _GatewayClient | None = None
        self._runner: asyncio.Task | None = None
        self._ready = asyncio.Event()
        self._sink: asyncio.Queue[SessionEvent] | None = None
        self._self_id = ""
        self._closing = False
        self._channels: dict[str, Any] = {}

    async def open(self, sink: asyncio.Queue[SessionEvent]) -> SelfIdentity:
        self._sink = sink
        self._ready = asyncio.Event()
        self._closing = False
        client = _GatewayClient(self)
        self._client = client
        try:
            await client.login(self.credential)
        except discord.LoginFailure as exc:
            await client.close()
            raise AuthFailed(str(exc) or "credential rejected") from exc
        except (discord.HTTPException, aiohttp.ClientError, OSError) as exc:
            await client.close()
            raise TransientNetwork(f"login failed: {exc}") from exc

        self._runner = asyncio.create_task(client.connect(reconnect=True), name=f"gateway-{self.account_id}")
        ready_wait = asyncio.create_task(self._ready.wait())
        done, _pending = await asyncio.wait({self._runner, ready_wait}, return_when=asyncio.FIRST_COMPLETED)
        if self._runner in done:
            ready_wait.cancel()
            error = None if self._runner.cancelled() else self._runner.exception()
            self._closing = True
            await client.close()
            raise _map_connect_error(error)
        if client.user is None:
            self._closing = True
            await client.close()
            await asyncio.gather(self._runner, return_exceptions=True)
            raise TransientNetwork("gateway ready without a user")
        self._runner.add_done_callback(self._on_runner_done)
        identity = parse_self_user(client.user)
        self._self_id = identity.id
        return identity

    async def close(self) -> None:
        self._closing = True
        if self._client is not None:
            await self._client.close()
        if self._runner is not None:
            await asyncio.gather(self._runner, return_exceptions=True)
        self._channels.clear()

    async def list_direct_channels(self) -> list[DirectChannel]:
        client = self._require_client()
        out: list[DirectChannel] = []
        for channel in client.private_channels:
            if not isinstance(channel, discord.DMChannel) or channel.recipient is None:
                continue
            try:
                parsed = parse_direct_channel(channel)
            except MalformedPayload as exc:
                self.logger.log("gateway.malformed_channel", account_id=self.account_id, error=str(exc)[:200])
                continue
            self._channels[parsed.id] = channel
            out.append(parsed)
        return out

    async def fetch_history(self, channel: DirectChannel, limit: int) -> list[MessageEvent]:
        client = self._require_client()
        native = self._channels.get(channel.id) or client.get_channel(int(channel.id))
        if native is None:
            raise PeerNotFound(f"channel {channel.id} is not cached")
        try:
            messages = [message async for message in native.history(limit=limit)]
        except discord.HTTPException as exc:
            raise TransientNetwork(f"history fetch failed for channel {channel.id}: {exc}") from exc
        out: list[MessageEvent] = []
        for message in messages:
            try:
                out.append(
                    parse_message(message, account_id=self.account_id, self_id=self._self_id, recipient=channel.recipient)
                )
            except MalformedPayload as exc:
                self.logger.log("gateway.malformed_payload", account_id=self.account_id, error=str(exc)[:200])
        return out

    async def open_direct_channel(self, peer_id: str) -> DirectChannel:
        client = self._require_client()
        if not str(peer_id).isdigit():
            raise PeerNotFound(f"unknown peer {peer_id!r}")
        try:
            user = client.get_user(int(peer_id)) or await client.fetch_user(int(peer_id))
            native = user.dm_channel or await user.create_dm()
        except discord.NotFound as exc:
            raise PeerNotFound(f"peer {peer_id} not found") from exc
        except discord.HTTPException as exc:
            raise TransientNetwork(f"could not open DM with {peer_id}: {exc}") from exc
        channel = DirectChannel(id=str(native.id), recipient=parse_user(user))
        self._channels[channel.id] = native
        return channel

    async def post_message(self, channel: DirectChannel, content: str, *, nonce: str) -> SentMessage:
        return await self.rest.post_message(self.credential, channel, content, nonce=nonce)

    def _require_client(self) -> _GatewayClient:
        if self._client is None or self._client.is_closed():
            raise TransientNetwork(f"gateway for account {self.account_id} is not connected")
        return self._client

    def _mark_ready(self) -> None:
        # also fires after each reconnect; setting the event twice is harmless
        if self._client is not None and self._client.user is not None:
            self._self_id = str(self._client.user.id)
        self._ready.set()

    def _ingest(self, message: discord.Message) -> None:
        if self._sink is None or not isinstance(message.channel, discord.DMChannel):
            return
        try:
            recipient = parse_user(message.channel.recipient) if message.channel.recipient else None
            event = parse_message(message, account_id=self.account_id, self_id=self._self_id, recipient=recipient)
        except MalformedPayload as exc:
            self.logger.log("gateway.malformed_payload", account_id=self.account_id, error=str(exc)[:200])
            return
        self._sink.put_nowait(event)

    def _on_runner_done(self, task: asyncio.Task) -> None:
        if self._closing or self._sink is None:
            return
        if task.cancelled():
            reason = "cancelled"
        else:
            error = task.exception()
            reason = repr(error) if error is not None else "gateway closed"
        self._sink.put_nowait(ConnectionLost(reason=reason))


def _map_connect_error(error: BaseException | None) -> Exception:
    if isinstance(error, discord.ConnectionClosed) and error.code == CLOSE_AUTHENTICATION_FAILED:
        return AuthFailed("gateway rejected the credential")
    if isinstance(error, discord.LoginFailure):
        return AuthFailed(str(error) or "credential rejected")
    if error is None:
        return TransientNetwork("gateway closed before ready")
    return TransientNetwork(f"gateway connect failed: {error!r}")
