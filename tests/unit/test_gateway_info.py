"""
tests/unit/test_gateway_info.py — Gateway Metadata Lookup Tests

Uses httpx.MockTransport; no network.
"""

import httpx
import pytest

from shardline.exceptions import GatewayInfoError
from shardline.gateway.info import GatewayInfo, GatewayInfoClient

API_BASE = "https://api.test/v10"


def _client(handler) -> GatewayInfoClient:
    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return GatewayInfoClient("tok", api_base=API_BASE, client=http)


class TestGatewayInfoClient:
    @pytest.mark.asyncio
    async def test_fetch_success(self):
        requests = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(
                200,
                json={
                    "url": "wss://gateway.test",
                    "shards": 2,
                    "session_start_limit": {"total": 1000, "remaining": 999},
                },
            )

        info = await _client(handler).fetch()
        assert info == GatewayInfo(
            url="wss://gateway.test",
            shards=2,
            session_start_limit={"total": 1000, "remaining": 999},
        )
        assert str(requests[0].url) == "https://api.test/v10/gateway/bot"
        assert requests[0].headers["Authorization"] == "Bot tok"

    @pytest.mark.asyncio
    async def test_callable(self):
        client = _client(lambda r: httpx.Response(200, json={"url": "wss://g", "shards": 1}))
        info = await client()
        assert info.shards == 1

    @pytest.mark.asyncio
    async def test_http_error_status(self):
        client = _client(lambda r: httpx.Response(401, json={"message": "401: Unauthorized"}))
        with pytest.raises(GatewayInfoError) as exc_info:
            await client.fetch()
        assert exc_info.value.status_code == 401

    @pytest.mark.asyncio
    async def test_network_failure(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(GatewayInfoError):
            await _client(handler).fetch()

    @pytest.mark.asyncio
    async def test_invalid_json(self):
        client = _client(lambda r: httpx.Response(200, content=b"<html>"))
        with pytest.raises(GatewayInfoError):
            await client.fetch()

    @pytest.mark.asyncio
    async def test_missing_shards(self):
        client = _client(lambda r: httpx.Response(200, json={"url": "wss://g"}))
        with pytest.raises(GatewayInfoError):
            await client.fetch()


class TestGatewayInfo:
    def test_zero_shards_rejected(self):
        with pytest.raises(GatewayInfoError):
            GatewayInfo.from_json({"url": "wss://g", "shards": 0})

    def test_non_object_rejected(self):
        with pytest.raises(GatewayInfoError):
            GatewayInfo.from_json(["wss://g", 1])

    def test_session_start_limit_optional(self):
        info = GatewayInfo.from_json({"url": "wss://g", "shards": 3})
        assert info.session_start_limit == {}
