from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from dmcrm.errors import MalformedPayload
from dmcrm.models import DirectChannel, MessageEvent, PeerIdentity, SelfIdentity, SentMessage, parse_utc
from dmcrm.utils.discord_utils import avatar_hash, avatar_url, display_name_of, field

# Discord message types that carry user-authored text: DEFAULT and REPLY.
USER_MESSAGE_TYPES = frozenset({0, 19})


def _snowflake(value: Any, what: str) -> str:
    text = str(value if value is not None else "").strip()
    if not text.isdigit():
        raise MalformedPayload(f"{what} is not a snowflake: {value!r}")
    return text


def parse_user(user: Any) -> PeerIdentity:
    if user is None:
        raise MalformedPayload("user payload missing")
    user_id = _snowflake(field(user, "id"), "user id")
    return PeerIdentity(
        id=user_id,
        display_name=display_name_of(user),
        avatar_url=avatar_url(user_id, avatar_hash(user)),
    )


def parse_self_user(user: Any) -> SelfIdentity:
    peer = parse_user(user)
    return SelfIdentity(id=peer.id, display_name=peer.display_name)


def parse_timestamp(value: Any) -> datetime:
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)
    if isinstance(value, str) and value.strip():
        try:
            return parse_utc(value.strip())
        except ValueError:
            raise MalformedPayload(f"bad timestamp: {value!r}") from None
    raise MalformedPayload(f"timestamp missing: {value!r}")


def _is_system(message: Any) -> bool:
    probe = field(message, "is_system")
    if callable(probe):
        return bool(probe())
    kind = field(message, "type")
    if isinstance(kind, int):
        return kind not in USER_MESSAGE_TYPES
    kind_value = getattr(kind, "value", None)
    if isinstance(kind_value, int):
        return kind_value not in USER_MESSAGE_TYPES
    return False


def parse_message(
    message: Any,
    *,
    account_id: str,
    self_id: str,
    recipient: PeerIdentity | None,
) -> MessageEvent:
    """Map a gateway object or REST message dict into a ``MessageEvent``.

    ``recipient`` is the other party of the DM channel; it names the peer of
    messages authored by the account itself.
    """

    remote_id = _snowflake(field(message, "id"), "message id")
    author = parse_user(field(message, "author"))
    channel_id = field(message, "channel_id") or field(field(message, "channel"), "id")
    if author.id == self_id:
        if recipient is None:
            raise MalformedPayload(f"self-authored message {remote_id} has no recipient")
        peer = recipient
    else:
        peer = author
    raw_created = field(message, "created_at")
    if raw_created is None:
        raw_created = field(message, "timestamp")
    return MessageEvent(
        account_id=account_id,
        self_id=self_id,
        remote_message_id=remote_id,
        channel_id=_snowflake(channel_id, "channel id"),
        author_id=author.id,
        peer=peer,
        content=str(field(message, "content") or ""),
        created_at=parse_timestamp(raw_created),
        is_system=_is_system(message),
    )


def parse_sent_message(payload: Any, *, channel: DirectChannel) -> SentMessage:
    if not isinstance(payload, dict):
        raise MalformedPayload(f"send response is not an object: {type(payload).__name__}")
    raw_ts = payload.get("timestamp")
    created_at = parse_timestamp(raw_ts) if raw_ts else datetime.now(tz=timezone.utc)
    return SentMessage(
        message_id=_snowflake(payload.get("id"), "message id"),
        channel_id=str(payload.get("channel_id") or channel.id),
        content=str(payload.get("content") or ""),
        peer=channel.recipient,
        created_at=created_at,
    )


def parse_direct_channel(channel: Any) -> DirectChannel:
    channel_id = _snowflake(field(channel, "id"), "channel id")
    recipient = field(channel, "recipient")
    if recipient is None:
        recipients = field(channel, "recipients") or []
        recipient = recipients[0] if recipients else None
    return DirectChannel(id=channel_id, recipient=parse_user(recipient))
