from __future__ import annotations

import json
import random
from typing import Any

import aiohttp

from dmcrm.errors import AuthFailed, MalformedPayload, PeerNotFound, RateLimited, SendRejected, TransientNetwork
from dmcrm.models import DirectChannel, PeerIdentity, SentMessage
from dmcrm.payloads import parse_sent_message, parse_user

NONCE_LENGTH = 19
CLIENT_USER_AGENT = (
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/131.0.0.0 Safari/537.36"
)
CONNECT_TIMEOUT_SEC = 30


def generate_nonce(rng: random.Random | None = None) -> str:
    """19 random digits in 1-9, the shape the web client sends."""
    rng = rng or random.Random()
    return "".join(str(rng.randint(1, 9)) for _ in range(NONCE_LENGTH))


class DiscordRestClient:
    """Raw HTTP calls made with the browser client's framing."""

    def __init__(self, api_base: str, *, locale: str = "en-US", timezone_name: str = "America/New_York") -> None:
        self.api_base = api_base.rstrip("/")
        self.locale = locale
        self.timezone_name = timezone_name

    def build_headers(self, credential: str) -> dict[str, str]:
        return {
            "accept": "*/*",
            "accept-language": f"{self.locale},en;q=0.9",
            "content-type": "application/json",
            "authorization": credential,
            "origin": "https://discord.com",
            "referer": "https://discord.com/channels/@me",
            "sec-ch-ua": '"Chromium";v="131", "Not_A Brand";v="24"',
            "sec-ch-ua-mobile": "?0",
            "sec-ch-ua-platform": '"macOS"',
            "sec-fetch-dest": "empty",
            "sec-fetch-mode": "cors",
            "sec-fetch-site": "same-origin",
            "user-agent": CLIENT_USER_AGENT,
            "x-debug-options": "bugReporterEnabled",
            "x-discord-locale": self.locale,
            "x-discord-timezone": self.timezone_name,
        }

    async def fetch_profile(self, credential: str) -> PeerIdentity:
        data = await self._request("GET", "/users/@me", credential=credential)
        return parse_user(data)

    async def post_message(self, credential: str, channel: DirectChannel, content: str, *, nonce: str) -> SentMessage:
        payload = {
            "mobile_network_type": "unknown",
            "content": str(content),
            "nonce": nonce,
            "tts": False,
            "flags": 0,
        }
        data = await self._request("POST", f"/channels/{channel.id}/messages", credential=credential, payload=payload)
        return parse_sent_message(data, channel=channel)

    async def _request(
        self,
        method: str,
        path: str,
        *,
        credential: str,
        payload: dict[str, Any] | None = None,
    ) -> Any:
        url = f"{self.api_base}{path}"
        timeout = aiohttp.ClientTimeout(total=None, sock_connect=CONNECT_TIMEOUT_SEC)
        try:
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.request(method, url, headers=self.build_headers(credential), json=payload) as response:
                    body = await response.text()
                    if response.status >= 400:
                        _raise_for_status(response.status, body, response.headers)
        except aiohttp.ClientError as exc:
            raise TransientNetwork(f"{method} {path} failed: {exc}") from exc
        try:
            return json.loads(body) if body else {}
        except json.JSONDecodeError:
            raise MalformedPayload(f"{method} {path} returned non-JSON body: {body[:120]!r}") from None


def _error_message(body: str) -> str:
    try:
        data = json.loads(body)
    except json.JSONDecodeError:
        return body[:300]
    if isinstance(data, dict) and data.get("message"):
        return str(data["message"])
    return body[:300]


def _retry_after(body: str, headers: Any) -> float | None:
    try:
        data = json.loads(body)
    except json.JSONDecodeError:
        data = {}
    raw = data.get("retry_after") if isinstance(data, dict) else None
    if raw is None:
        raw = headers.get("Retry-After") if headers is not None else None
    try:
        return float(raw) if raw is not None else None
    except (TypeError, ValueError):
        return None


def _raise_for_status(status: int, body: str, headers: Any) -> None:
    message = f"Discord API error {status}: {_error_message(body)}"
    if status == 401:
        raise AuthFailed(message)
    if status == 429:
        raise RateLimited(message, retry_after=_retry_after(body, headers))
    if status == 404:
        raise PeerNotFound(message)
    if status >= 500:
        raise TransientNetwork(message)
    raise SendRejected(message, status=status)
