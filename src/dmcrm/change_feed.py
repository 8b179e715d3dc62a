from __future__ import annotations

import asyncio

from dmcrm.manager import SessionManager
from dmcrm.models import ACCOUNT_DELETE, ACCOUNT_INSERT, AccountChange
from dmcrm.services.account_service import AccountService
from dmcrm.services.logger_service import LoggerService


class ChangeFeedListener:
    """Keeps the session registry in step with account inserts and deletes."""

    def __init__(self, accounts: AccountService, manager: SessionManager, logger: LoggerService) -> None:
        self.accounts = accounts
        self.manager = manager
        self.logger = logger
        self._queue: asyncio.Queue[AccountChange] | None = None
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._queue = self.accounts.subscribe()
        self._task = asyncio.create_task(self._run(), name="account-change-feed")
        self.logger.log("change_feed.subscribed")

    async def stop(self) -> None:
        if self._queue is not None:
            self.accounts.unsubscribe(self._queue)
            self._queue = None
        if self._task is not None:
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
            self._task = None

    async def drain(self) -> None:
        """Wait until every queued notification has been handled."""
        if self._queue is not None:
            await self._queue.join()

    async def _run(self) -> None:
        queue = self._queue
        if queue is None:
            return
        while True:
            change = await queue.get()
            try:
                await self.handle(change)
            finally:
                queue.task_done()

    async def handle(self, change: AccountChange) -> None:
        if change.kind == ACCOUNT_INSERT:
            account = self.accounts.get(change.account_id)
            if account is None:
                self.logger.log("change_feed.insert_ignored", account_id=change.account_id, reason="account_missing")
                return
            self.logger.log("change_feed.insert", account_id=change.account_id)
            try:
                await self.manager.add_session(account.id, account.credential)
            except Exception:  # noqa: BLE001
                # add_session logged it
                return
        elif change.kind == ACCOUNT_DELETE:
            self.logger.log("change_feed.delete", account_id=change.account_id)
            try:
                await self.manager.remove_session(change.account_id)
            except Exception as exc:  # noqa: BLE001
                self.logger.log("change_feed.remove_failed", account_id=change.account_id, error=str(exc)[:200])
        else:
            self.logger.log("change_feed.unknown_kind", account_id=change.account_id, kind=change.kind)
