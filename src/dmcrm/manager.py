from __future__ import annotations

import time
from typing import Any, Callable

from dmcrm.backend.base import ConnectionFactory
from dmcrm.errors import NotFound
from dmcrm.models import MessageEvent, SentMessage
from dmcrm.services.account_service import AccountService
from dmcrm.services.history_service import HistoryImporter
from dmcrm.services.logger_service import LoggerService
from dmcrm.services.recorder_service import MessageRecorder
from dmcrm.session import Session


class SessionManager:
    """Owns the account_id -> Session registry.

    Nothing else creates, stops or looks up sessions; collaborators hold a
    reference to the manager instead.
    """

    def __init__(
        self,
        *,
        accounts: AccountService,
        recorder: MessageRecorder,
        importer: HistoryImporter,
        logger: LoggerService,
        connection_factory: ConnectionFactory,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.accounts = accounts
        self.recorder = recorder
        self.importer = importer
        self.logger = logger
        self.connection_factory = connection_factory
        self._clock = clock
        self.started_at = clock()
        self._sessions: dict[str, Session] = {}
        self._starting: set[str] = set()
        self._abandoned: set[str] = set()

    def is_registered(self, account_id: str) -> bool:
        return str(account_id) in self._sessions

    def session_state(self, account_id: str) -> str | None:
        session = self._sessions.get(str(account_id))
        return session.state if session is not None else None

    def build_session(self, account_id: str, credential: str) -> Session:
        return Session(
            account_id,
            credential,
            connection=self.connection_factory(account_id, credential),
            recorder=self.recorder,
            importer=self.importer,
            logger=self.logger,
        )

    async def add_session(self, account_id: str, credential: str) -> bool:
        key = str(account_id)
        if key in self._sessions or key in self._starting:
            self.logger.log("manager.add_skipped", account_id=key, reason="already_registered")
            return False
        self._starting.add(key)
        abandoned = False
        try:
            session = self.build_session(key, credential)
            await session.start()
        except Exception as exc:
            self.logger.log("manager.add_failed", account_id=key, error_type=type(exc).__name__, error=str(exc)[:200])
            raise
        finally:
            self._starting.discard(key)
            abandoned = key in self._abandoned
            self._abandoned.discard(key)
        if abandoned:
            # removed while the session was still connecting
            await session.stop()
            self.logger.log("manager.add_abandoned", account_id=key)
            return False
        self._sessions[key] = session
        self.logger.log("manager.added", account_id=key, total=len(self._sessions))
        return True

    async def remove_session(self, account_id: str) -> bool:
        key = str(account_id)
        session = self._sessions.pop(key, None)
        if session is None:
            if key in self._starting:
                self._abandoned.add(key)
            return False
        try:
            await session.stop()
        finally:
            self.logger.log("manager.removed", account_id=key, total=len(self._sessions))
        return True

    async def send_message(self, account_id: str, peer_id: str, content: str) -> SentMessage:
        key = str(account_id)
        session = self._sessions.get(key)
        if session is None:
            raise NotFound(f"No bot found for account {key}")
        sent = await session.send(peer_id, content)
        self_id = session.self_identity.id if session.self_identity else ""
        event = MessageEvent(
            account_id=key,
            self_id=self_id,
            remote_message_id=sent.message_id,
            channel_id=sent.channel_id,
            author_id=self_id,
            peer=sent.peer,
            content=sent.content,
            created_at=sent.created_at,
        )
        try:
            await self.recorder.persist(event)
        except Exception as exc:  # noqa: BLE001
            self.logger.log(
                "manager.record_sent_failed",
                account_id=key,
                message_id=sent.message_id,
                error=str(exc)[:200],
            )
        return sent

    def status(self) -> dict[str, Any]:
        return {
            "totalBots": len(self._sessions),
            "activeBots": sorted(self._sessions.keys()),
            "uptime": max(0.0, self._clock() - self.started_at),
        }

    async def initialize(self) -> int:
        accounts = self.accounts.list_all()
        self.logger.log("manager.initializing", accounts=len(accounts))
        for account in accounts:
            try:
                await self.add_session(account.id, account.credential)
            except Exception:  # noqa: BLE001
                # add_session already logged the failure
                continue
        self.logger.log("manager.initialized", active=len(self._sessions))
        return len(self._sessions)

    async def shutdown(self) -> None:
        for account_id in list(self._sessions.keys()):
            try:
                await self.remove_session(account_id)
            except Exception as exc:  # noqa: BLE001
                self.logger.log("manager.stop_failed", account_id=account_id, error=str(exc)[:200])
