from __future__ import annotations

from typing import Any

CDN_AVATAR_URL = "https://cdn.discordapp.com/avatars/{user_id}/{avatar}.png"


def field(source: Any, name: str, default: Any = None) -> Any:
    """Read ``name`` from a JSON dict or a library object alike."""
    if isinstance(source, dict):
        return source.get(name, default)
    return getattr(source, name, default)


def avatar_hash(user: Any) -> str | None:
    """
    Extract the avatar hash from a user payload.

    REST payloads carry the hash as a string; gateway library objects expose an
    asset object with the hash under ``key``.
    """

    raw = field(user, "avatar")
    if raw is None:
        return None
    if isinstance(raw, str):
        return raw.strip() or None
    key = getattr(raw, "key", None)
    return str(key) if key else None


def avatar_url(user_id: str, avatar: str | None) -> str | None:
    if not avatar:
        return None
    return CDN_AVATAR_URL.format(user_id=user_id, avatar=avatar)


def display_name_of(user: Any) -> str:
    for name in ("global_name", "display_name", "username", "name"):
        value = field(user, name)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return str(field(user, "id", "") or "unknown")
