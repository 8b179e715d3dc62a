from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Literal

SENT = "sent"
RECEIVED = "received"
Direction = Literal["sent", "received"]

ACCOUNT_INSERT = "insert"
ACCOUNT_DELETE = "delete"


def utc_iso(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def parse_utc(value: str) -> datetime:
    parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


@dataclass(frozen=True)
class Account:
    id: str
    credential: str
    user_id: str
    display_name: str
    avatar_url: str | None
    created_at: str

    def to_row(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "credential": self.credential,
            "user_id": self.user_id,
            "display_name": self.display_name,
            "avatar_url": self.avatar_url,
            "created_at": self.created_at,
        }

    def public_dict(self) -> dict[str, Any]:
        row = self.to_row()
        row.pop("credential", None)
        return row

    @staticmethod
    def from_row(row: dict[str, Any]) -> "Account":
        return Account(
            id=str(row["id"]),
            credential=str(row["credential"]),
            user_id=str(row.get("user_id", "")),
            display_name=str(row.get("display_name", "")),
            avatar_url=row.get("avatar_url") or None,
            created_at=str(row.get("created_at", "")),
        )


@dataclass(frozen=True)
class AccountChange:
    kind: str
    account_id: str
    credential: str | None = None


@dataclass(frozen=True)
class PeerIdentity:
    id: str
    display_name: str
    avatar_url: str | None = None


@dataclass(frozen=True)
class SelfIdentity:
    id: str
    display_name: str


@dataclass(frozen=True)
class DirectChannel:
    id: str
    recipient: PeerIdentity


@dataclass(frozen=True)
class MessageEvent:
    """A direct message observed on the wire, already bound to its owning session."""

    account_id: str
    self_id: str
    remote_message_id: str | None
    channel_id: str
    author_id: str
    peer: PeerIdentity
    content: str
    created_at: datetime
    is_system: bool = False

    @property
    def direction(self) -> Direction:
        return SENT if self.author_id == self.self_id else RECEIVED


@dataclass(frozen=True)
class SentMessage:
    message_id: str
    channel_id: str
    content: str
    peer: PeerIdentity
    created_at: datetime

    def as_result(self) -> dict[str, str]:
        return {"messageId": self.message_id, "content": self.content}


@dataclass(frozen=True)
class MessageRecord:
    id: str
    account_id: str
    remote_message_id: str | None
    peer_id: str
    peer_display_name: str
    peer_avatar_url: str | None
    direction: Direction
    content: str
    timestamp: datetime

    def to_row(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "account_id": self.account_id,
            "remote_message_id": self.remote_message_id,
            "peer_id": self.peer_id,
            "peer_display_name": self.peer_display_name,
            "peer_avatar_url": self.peer_avatar_url,
            "direction": self.direction,
            "content": self.content,
            "timestamp": utc_iso(self.timestamp),
        }

    @staticmethod
    def from_row(row: dict[str, Any]) -> "MessageRecord":
        remote_id = row.get("remote_message_id")
        return MessageRecord(
            id=str(row["id"]),
            account_id=str(row["account_id"]),
            remote_message_id=str(remote_id) if remote_id else None,
            peer_id=str(row["peer_id"]),
            peer_display_name=str(row.get("peer_display_name", "")),
            peer_avatar_url=row.get("peer_avatar_url") or None,
            direction=SENT if row.get("direction") == SENT else RECEIVED,
            content=str(row.get("content", "")),
            timestamp=parse_utc(row["timestamp"]),
        )


@dataclass(frozen=True)
class Skipped:
    remote_message_id: str | None
    reason: str = "duplicate"


@dataclass(frozen=True)
class ConversationSummary:
    peer_id: str
    peer_display_name: str
    peer_avatar_url: str | None
    last_message: str
    last_message_time: datetime
    direction: Direction

    def to_dict(self) -> dict[str, Any]:
        return {
            "peer_id": self.peer_id,
            "peer_display_name": self.peer_display_name,
            "peer_avatar_url": self.peer_avatar_url,
            "last_message": self.last_message,
            "last_message_time": utc_iso(self.last_message_time),
            "direction": self.direction,
        }
