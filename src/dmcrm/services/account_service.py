from __future__ import annotations

import asyncio
import uuid
from datetime import datetime, timezone
from typing import Any

from dmcrm.errors import DuplicateAccount
from dmcrm.models import ACCOUNT_DELETE, ACCOUNT_INSERT, Account, AccountChange
from dmcrm.services.logger_service import LoggerService
from dmcrm.services.message_service import MessageStore
from dmcrm.storage import MessagePackStore


class AccountService:
    """Account collection plus its insert/delete change feed."""

    def __init__(self, store: MessagePackStore, messages: MessageStore, logger: LoggerService) -> None:
        self.store = store
        self.messages = messages
        self.logger = logger
        self._subscribers: list[asyncio.Queue[AccountChange]] = []

    def root(self) -> dict[str, dict[str, Any]]:
        node = self.store.data.setdefault("accounts", {})
        if not isinstance(node, dict):
            self.store.data["accounts"] = {}
            self.store.touch()
            node = self.store.data["accounts"]
        return node

    def subscribe(self) -> asyncio.Queue[AccountChange]:
        queue: asyncio.Queue[AccountChange] = asyncio.Queue()
        self._subscribers.append(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue[AccountChange]) -> None:
        if queue in self._subscribers:
            self._subscribers.remove(queue)

    def _publish(self, change: AccountChange) -> None:
        for queue in list(self._subscribers):
            queue.put_nowait(change)

    def create(
        self,
        *,
        credential: str,
        user_id: str,
        display_name: str,
        avatar_url: str | None = None,
    ) -> Account:
        credential = str(credential or "").strip()
        user_id = str(user_id or "").strip()
        if not credential or not user_id:
            raise ValueError("credential and user_id are required.")
        if self.find_by_user_id(user_id) is not None:
            raise DuplicateAccount(f"Discord user {user_id} is already registered.")
        account = Account(
            id=uuid.uuid4().hex,
            credential=credential,
            user_id=user_id,
            display_name=str(display_name or user_id),
            avatar_url=avatar_url or None,
            created_at=datetime.now(tz=timezone.utc).isoformat(),
        )
        self.root()[account.id] = account.to_row()
        self.store.touch()
        self.logger.log("account.created", account_id=account.id, user_id=user_id)
        self._publish(AccountChange(kind=ACCOUNT_INSERT, account_id=account.id, credential=account.credential))
        return account

    def get(self, account_id: str) -> Account | None:
        row = self.root().get(str(account_id))
        if not isinstance(row, dict):
            return None
        return Account.from_row(row)

    def find_by_user_id(self, user_id: str) -> Account | None:
        for row in self.root().values():
            if isinstance(row, dict) and str(row.get("user_id", "")) == str(user_id):
                return Account.from_row(row)
        return None

    def list_all(self) -> list[Account]:
        rows = [Account.from_row(row) for row in self.root().values() if isinstance(row, dict)]
        return sorted(rows, key=lambda account: account.created_at)

    def delete(self, account_id: str) -> bool:
        key = str(account_id)
        if self.root().pop(key, None) is None:
            return False
        removed = self.messages.delete_for_account(key)
        self.store.touch()
        self.logger.log("account.deleted", account_id=key, messages_removed=removed)
        self._publish(AccountChange(kind=ACCOUNT_DELETE, account_id=key))
        return True
