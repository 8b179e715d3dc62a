from __future__ import annotations

from datetime import datetime, timezone
from typing import Callable

from dmcrm.storage import MessagePackStore

REDACTED_KEYS = frozenset({"credential", "token", "authorization"})


class LoggerService:
    def __init__(self, store: MessagePackStore, *, buffer_size: int = 2000) -> None:
        self.store = store
        self.buffer_size = max(1, int(buffer_size))
        self._listeners: list[Callable[[dict[str, object]], None]] = []

    def subscribe(self, listener: Callable[[dict[str, object]], None]) -> None:
        self._listeners.append(listener)

    def log(self, event: str, **data: object) -> None:
        clean = {key: ("***" if key.lower() in REDACTED_KEYS else value) for key, value in data.items()}
        row = {
            "ts": datetime.now(tz=timezone.utc).isoformat(),
            "event": event,
            "data": clean,
        }
        logs = self.store.data.setdefault("logs", [])
        logs.append(row)
        if len(logs) > self.buffer_size:
            del logs[: len(logs) - self.buffer_size]
        self.store.touch()
        print(f"[{row['ts']}] {event} {clean}")
        for listener in self._listeners:
            try:
                listener(row)
            except Exception:  # noqa: BLE001
                continue

    def recent(self, limit: int = 50, *, prefix: str = "") -> list[dict[str, object]]:
        rows = [row for row in self.store.data.get("logs", []) if str(row.get("event", "")).startswith(prefix)]
        return rows[-max(0, int(limit)):] if limit else []
