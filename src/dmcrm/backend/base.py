from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Callable, Union

from dmcrm.models import DirectChannel, MessageEvent, SelfIdentity, SentMessage


@dataclass(frozen=True)
class ConnectionLost:
    """Pushed onto a session's event queue when the gateway dies after ready."""

    reason: str


SessionEvent = Union[MessageEvent, ConnectionLost]


class BackendConnection:
    """One account's link to the messaging backend.

    Implementations parse backend payloads into the typed models before
    anything crosses this interface. Inbound direct messages are delivered by
    putting ``MessageEvent`` objects on the queue handed to ``open``.
    """

    def __init__(self, account_id: str, credential: str) -> None:
        self.account_id = account_id
        self.credential = credential

    async def open(self, sink: asyncio.Queue[SessionEvent]) -> SelfIdentity:
        raise NotImplementedError

    async def close(self) -> None:
        raise NotImplementedError

    async def list_direct_channels(self) -> list[DirectChannel]:
        raise NotImplementedError

    async def fetch_history(self, channel: DirectChannel, limit: int) -> list[MessageEvent]:
        """Return up to ``limit`` recent messages, newest first."""
        raise NotImplementedError

    async def open_direct_channel(self, peer_id: str) -> DirectChannel:
        raise NotImplementedError

    async def post_message(self, channel: DirectChannel, content: str, *, nonce: str) -> SentMessage:
        raise NotImplementedError


ConnectionFactory = Callable[[str, str], BackendConnection]
