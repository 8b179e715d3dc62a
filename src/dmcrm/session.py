from __future__ import annotations

import asyncio
import random

from dmcrm.backend.base import BackendConnection, ConnectionLost, SessionEvent
from dmcrm.backend.rest import generate_nonce
from dmcrm.errors import AuthFailed, CRMError, SessionNotReady, TransientNetwork
from dmcrm.models import MessageEvent, SelfIdentity, SentMessage
from dmcrm.services.history_service import HistoryImporter, ImportSummary
from dmcrm.services.logger_service import LoggerService
from dmcrm.services.recorder_service import MessageRecorder

DISCONNECTED = "disconnected"
CONNECTING = "connecting"
READY = "ready"

TRANSITIONS: dict[str, frozenset[str]] = {
    DISCONNECTED: frozenset({CONNECTING}),
    CONNECTING: frozenset({READY, DISCONNECTED}),
    READY: frozenset({DISCONNECTED}),
}


class Session:
    """One account's live connection: inbound recording and the send primitive."""

    def __init__(
        self,
        account_id: str,
        credential: str,
        *,
        connection: BackendConnection,
        recorder: MessageRecorder,
        importer: HistoryImporter,
        logger: LoggerService,
        rng: random.Random | None = None,
    ) -> None:
        self.account_id = account_id
        self.credential = credential
        self.connection = connection
        self.recorder = recorder
        self.importer = importer
        self.logger = logger
        self.state = DISCONNECTED
        self.self_identity: SelfIdentity | None = None
        self.backfill_task: asyncio.Task[ImportSummary] | None = None
        self._rng = rng or random.Random()
        self._events: asyncio.Queue[SessionEvent] = asyncio.Queue()
        self._consumer: asyncio.Task | None = None

    @property
    def ready(self) -> bool:
        return self.state == READY

    def _transition(self, target: str) -> None:
        if target not in TRANSITIONS[self.state]:
            raise RuntimeError(f"session {self.account_id}: illegal transition {self.state} -> {target}")
        self.state = target

    async def start(self) -> None:
        if self.state != DISCONNECTED:
            return
        self._transition(CONNECTING)
        self._events = asyncio.Queue()
        self.logger.log("session.connecting", account_id=self.account_id)
        try:
            identity = await self.connection.open(self._events)
        except AuthFailed as exc:
            self._transition(DISCONNECTED)
            self.logger.log(
                "session.auth_failed",
                account_id=self.account_id,
                credential_length=len(self.credential),
                error=str(exc)[:200],
            )
            raise
        except CRMError as exc:
            self._transition(DISCONNECTED)
            self.logger.log("session.start_failed", account_id=self.account_id, error=str(exc)[:200])
            raise
        except Exception as exc:
            self._transition(DISCONNECTED)
            self.logger.log("session.start_failed", account_id=self.account_id, error=str(exc)[:200])
            raise TransientNetwork(f"session {self.account_id} failed to connect: {exc}") from exc

        self.self_identity = identity
        self._transition(READY)
        self.logger.log(
            "session.ready",
            account_id=self.account_id,
            self_id=identity.id,
            display_name=identity.display_name,
        )
        self._consumer = asyncio.create_task(self._consume(), name=f"session-events-{self.account_id}")
        self.backfill_task = asyncio.create_task(
            self.importer.backfill(self.account_id, self.connection),
            name=f"session-backfill-{self.account_id}",
        )

    async def stop(self) -> None:
        if self._consumer is not None:
            self._consumer.cancel()
            await asyncio.gather(self._consumer, return_exceptions=True)
            self._consumer = None
        if self.state != DISCONNECTED:
            self._transition(DISCONNECTED)
        await self.connection.close()
        self.logger.log("session.stopped", account_id=self.account_id)

    async def send(self, peer_id: str, content: str) -> SentMessage:
        if self.state != READY:
            raise SessionNotReady(f"session {self.account_id} is {self.state}")
        channel = await self.connection.open_direct_channel(str(peer_id))
        nonce = generate_nonce(self._rng)
        self.logger.log("session.sending", account_id=self.account_id, peer_id=peer_id, channel_id=channel.id)
        sent = await self.connection.post_message(channel, content, nonce=nonce)
        self.logger.log(
            "session.sent",
            account_id=self.account_id,
            peer_id=peer_id,
            message_id=sent.message_id,
        )
        return sent

    async def _consume(self) -> None:
        while True:
            item = await self._events.get()
            if isinstance(item, ConnectionLost):
                self.logger.log("session.connection_lost", account_id=self.account_id, reason=item.reason)
                if self.state == READY:
                    self._transition(DISCONNECTED)
                return
            if isinstance(item, MessageEvent):
                await self._record(item)

    async def _record(self, event: MessageEvent) -> None:
        try:
            await self.recorder.persist(event)
        except Exception:  # noqa: BLE001
            # logged by the recorder
            return
