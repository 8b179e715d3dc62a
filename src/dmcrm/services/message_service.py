from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any

from dmcrm.errors import DuplicateMessage
from dmcrm.models import ConversationSummary, Direction, MessageRecord, PeerIdentity
from dmcrm.storage import MessagePackStore


class MessageStore:
    """Append-only message rows with a unique index on (account_id, remote_message_id)."""

    def __init__(self, store: MessagePackStore) -> None:
        self.store = store
        self._index: set[tuple[str, str]] | None = None
        # rows list the index was built from; store.load() swaps it out
        self._indexed_rows: list[dict[str, Any]] | None = None

    def rows(self) -> list[dict[str, Any]]:
        node = self.store.data.setdefault("messages", [])
        if not isinstance(node, list):
            self.store.data["messages"] = []
            self.store.touch()
            node = self.store.data["messages"]
        return node

    def _unique_index(self) -> set[tuple[str, str]]:
        rows = self.rows()
        if self._index is None or self._indexed_rows is not rows:
            index: set[tuple[str, str]] = set()
            for row in rows:
                remote_id = row.get("remote_message_id")
                if remote_id:
                    index.add((str(row.get("account_id", "")), str(remote_id)))
            self._index = index
            self._indexed_rows = rows
        return self._index

    def exists(self, account_id: str, remote_message_id: str | None) -> bool:
        if not remote_message_id:
            return False
        return (str(account_id), str(remote_message_id)) in self._unique_index()

    def insert(
        self,
        *,
        account_id: str,
        remote_message_id: str | None,
        peer: PeerIdentity,
        direction: Direction,
        content: str,
        timestamp: datetime,
    ) -> MessageRecord:
        index = self._unique_index()
        key = (str(account_id), str(remote_message_id)) if remote_message_id else None
        if key is not None and key in index:
            raise DuplicateMessage(f"message {remote_message_id} already stored for account {account_id}")
        record = MessageRecord(
            id=uuid.uuid4().hex,
            account_id=str(account_id),
            remote_message_id=str(remote_message_id) if remote_message_id else None,
            peer_id=peer.id,
            peer_display_name=peer.display_name,
            peer_avatar_url=peer.avatar_url,
            direction=direction,
            content=content,
            timestamp=timestamp,
        )
        self.rows().append(record.to_row())
        if key is not None:
            index.add(key)
        self.store.touch()
        return record

    def query(self, account_id: str, *, peer_id: str | None = None) -> list[MessageRecord]:
        out: list[MessageRecord] = []
        for row in self.rows():
            if str(row.get("account_id", "")) != str(account_id):
                continue
            if peer_id is not None and str(row.get("peer_id", "")) != str(peer_id):
                continue
            out.append(MessageRecord.from_row(row))
        out.sort(key=lambda record: record.timestamp)
        return out

    def conversations(self, account_id: str) -> list[ConversationSummary]:
        latest: dict[str, MessageRecord] = {}
        for record in self.query(account_id):
            latest[record.peer_id] = record
        summaries = [
            ConversationSummary(
                peer_id=record.peer_id,
                peer_display_name=record.peer_display_name,
                peer_avatar_url=record.peer_avatar_url,
                last_message=record.content,
                last_message_time=record.timestamp,
                direction=record.direction,
            )
            for record in latest.values()
        ]
        summaries.sort(key=lambda summary: summary.last_message_time, reverse=True)
        return summaries

    def delete_for_account(self, account_id: str) -> int:
        rows = self.rows()
        kept = [row for row in rows if str(row.get("account_id", "")) != str(account_id)]
        removed = len(rows) - len(kept)
        if removed:
            rows[:] = kept
            self._index = None
            self.store.touch()
        return removed
