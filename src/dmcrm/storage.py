from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any

import msgpack


DEFAULT_STORE: dict[str, Any] = {
    "meta": {"version": 1},
    "accounts": {},
    "messages": [],
    "logs": [],
}

AUTOSAVE_INTERVAL_SEC = 5


class MessagePackStore:
    """Single-file msgpack document backing accounts, messages and log rows.

    Callers mutate ``data`` in place and call ``touch()``; the autosave loop
    flushes dirty state atomically through a temp file.
    """

    def __init__(self, path: Path) -> None:
        self.path = path
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = asyncio.Lock()
        self._dirty = False
        self.data: dict[str, Any] = {}

    @property
    def dirty(self) -> bool:
        return self._dirty

    async def load(self) -> None:
        async with self._lock:
            if not self.path.exists():
                self.data = _clone_defaults()
                await self._save_unlocked()
                return
            raw = self.path.read_bytes()
            self.data = msgpack.unpackb(raw, raw=False)
            self._ensure_schema()

    async def autosave_loop(self) -> None:
        while True:
            await asyncio.sleep(AUTOSAVE_INTERVAL_SEC)
            if self._dirty:
                await self.save()

    async def save(self) -> None:
        async with self._lock:
            await self._save_unlocked()

    async def _save_unlocked(self) -> None:
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        packed = msgpack.packb(self.data, use_bin_type=True)
        tmp.write_bytes(packed)
        tmp.replace(self.path)
        self._dirty = False

    def touch(self) -> None:
        self._dirty = True

    def _ensure_schema(self) -> None:
        defaults = _clone_defaults()
        for key, value in defaults.items():
            if key not in self.data or not isinstance(self.data[key], type(value)):
                self.data[key] = value
                self._dirty = True
        accounts = self.data["accounts"]
        broken = [key for key, row in accounts.items() if not isinstance(row, dict) or not row.get("credential")]
        for key in broken:
            del accounts[key]
        messages = self.data["messages"]
        kept = [row for row in messages if isinstance(row, dict) and row.get("account_id") in accounts]
        if broken or len(kept) != len(messages):
            # rows whose account is gone
            self.data["messages"] = kept
            self._dirty = True


def _clone_defaults() -> dict[str, Any]:
    return msgpack.unpackb(msgpack.packb(DEFAULT_STORE, use_bin_type=True), raw=False)
