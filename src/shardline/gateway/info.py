"""
gateway/info.py — Gateway Metadata Lookup

Thin REST collaborator: ``GET {api_base}/gateway/bot`` authenticated with
the bot token, returning the socket URL and the recommended shard count.
Any failure is fatal to ShardManager.connect(): no URL, no shards.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Optional

import httpx

from shardline.exceptions import GatewayInfoError
from shardline.observability.logger import get_logger

log = get_logger(__name__)

DEFAULT_API_BASE = "https://discord.com/api/v10"
_USER_AGENT = "shardline/1.0.0"


@dataclass(frozen=True)
class GatewayInfo:
    url: str
    shards: int
    session_start_limit: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_json(cls, body: Any) -> "GatewayInfo":
        if not isinstance(body, dict):
            raise GatewayInfoError(f"gateway lookup returned {type(body).__name__}, expected object")
        url = body.get("url")
        shards = body.get("shards")
        if not isinstance(url, str) or not url:
            raise GatewayInfoError("gateway lookup response has no 'url'")
        if not isinstance(shards, int) or shards < 1:
            raise GatewayInfoError(f"gateway lookup returned invalid shard count {shards!r}")
        return cls(
            url=url,
            shards=shards,
            session_start_limit=dict(body.get("session_start_limit") or {}),
        )


class GatewayInfoClient:
    """
    Fetches GatewayInfo over HTTPS.

    Pass an ``httpx.AsyncClient`` to share a connection pool (or to inject a
    MockTransport in tests); otherwise a short-lived client is created per
    fetch.
    """

    def __init__(
        self,
        token: str,
        *,
        api_base: str = DEFAULT_API_BASE,
        timeout: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self._token = token
        self._api_base = api_base.rstrip("/")
        self._timeout = timeout
        self._client = client

    async def fetch(self) -> GatewayInfo:
        url = f"{self._api_base}/gateway/bot"
        headers = {
            "Authorization": f"Bot {self._token}",
            "User-Agent": _USER_AGENT,
        }
        try:
            if self._client is not None:
                response = await self._client.get(url, headers=headers, timeout=self._timeout)
            else:
                async with httpx.AsyncClient(timeout=self._timeout) as client:
                    response = await client.get(url, headers=headers)
        except httpx.HTTPError as e:
            log.error("gateway_info.request_failed", url=url, error=str(e))
            raise GatewayInfoError(f"gateway lookup failed: {e}") from e

        if response.status_code != 200:
            log.error("gateway_info.bad_status", url=url, status=response.status_code)
            raise GatewayInfoError(
                f"gateway lookup returned HTTP {response.status_code}",
                status_code=response.status_code,
            )

        try:
            body = response.json()
        except ValueError as e:
            raise GatewayInfoError(f"gateway lookup returned invalid JSON: {e}") from e

        info = GatewayInfo.from_json(body)
        log.info("gateway_info.fetched", url=info.url, shards=info.shards)
        return info

    async def __call__(self) -> GatewayInfo:
        return await self.fetch()
