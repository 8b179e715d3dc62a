from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path


@dataclass(frozen=True)
class Settings:
    store_path: Path
    http_host: str
    http_port: int
    discord_api_base: str
    history_page_size: int
    client_locale: str
    client_timezone: str
    log_buffer_size: int

    @staticmethod
    def load(path: Path | None = None) -> "Settings":
        values = _parse_passwords_file(path or Path("passwords.txt"))
        store_path = Path(values.get("STORE_PATH", "data/dmcrm.msgpack"))
        http_host = values.get("HTTP_HOST", "0.0.0.0").strip() or "0.0.0.0"
        http_port = _parse_int(values, "HTTP_PORT", 3001)
        discord_api_base = values.get("DISCORD_API_BASE", "https://discord.com/api/v9").strip().rstrip("/")
        history_page_size = _parse_int(values, "HISTORY_PAGE_SIZE", 50)
        client_locale = values.get("CLIENT_LOCALE", "en-US").strip() or "en-US"
        client_timezone = values.get("CLIENT_TIMEZONE", "America/New_York").strip() or "America/New_York"
        log_buffer_size = _parse_int(values, "LOG_BUFFER_SIZE", 2000)
        if not 1 <= history_page_size <= 100:
            raise RuntimeError("HISTORY_PAGE_SIZE must be between 1 and 100.")
        if not discord_api_base:
            raise RuntimeError("DISCORD_API_BASE must not be empty.")
        return Settings(
            store_path=store_path,
            http_host=http_host,
            http_port=http_port,
            discord_api_base=discord_api_base,
            history_page_size=history_page_size,
            client_locale=client_locale,
            client_timezone=client_timezone,
            log_buffer_size=max(1, log_buffer_size),
        )


def _parse_int(values: dict[str, str], key: str, default: int) -> int:
    raw = values.get(key, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        raise RuntimeError(f"{key} must be an integer, got {raw!r}.") from None


def _parse_passwords_file(path: Path) -> dict[str, str]:
    if not path.exists():
        raise RuntimeError(f"{path} not found. Copy passwords.example.txt to {path.name} and fill values.")
    values: dict[str, str] = {}
    for raw_line in path.read_text(encoding="utf-8").splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#"):
            continue
        if "=" not in line:
            continue
        key, value = line.split("=", 1)
        values[key.strip()] = value.strip()
    return values
