import asyncio

import httpx
import pytest

from dfs_client import DataForSEOClient, normalize_endpoint
from errors import ApiError
from factories import envelope, fake_client, task


class TestNormalizeEndpoint:
    def test_bare_path_gets_version_prefix(self):
        assert normalize_endpoint("on_page/task_post") == "v3/on_page/task_post"

    def test_versioned_paths_are_kept(self):
        assert normalize_endpoint("v3/on_page/pages") == "v3/on_page/pages"
        assert normalize_endpoint("/v3/on_page/pages") == "v3/on_page/pages"


class TestCall:
    def test_returns_envelope_and_sums_task_costs(self):
        client, fake = fake_client({
            "on_page/task_post": envelope([task(cost=0.0125), task(cost=0.0025)]),
        })

        async def go():
            async with client:
                first = await client.call("on_page/task_post", [{"target": "acme.com"}])
                await client.call("/v3/on_page/task_post", [{"target": "acme.com"}])
                return first

        data = asyncio.run(go())
        assert data["status_code"] == 20000
        assert client.total_cost == pytest.approx(0.03)
        assert fake.calls[0] == ("on_page/task_post", [{"target": "acme.com"}])

    def test_sends_basic_auth(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["auth"] = request.headers.get("authorization", "")
            return httpx.Response(200, json=envelope([]))

        client = DataForSEOClient("me", "secret", transport=httpx.MockTransport(handler))
        asyncio.run(client.get("on_page/summary/abc"))
        assert seen["auth"].startswith("Basic ")

    def test_http_error_uses_error_field(self):
        client, _ = fake_client({"x": httpx.Response(401, json={"error": "Unauthorized"})})
        with pytest.raises(ApiError) as exc:
            asyncio.run(client.call("x", []))
        assert exc.value.message == "Unauthorized"
        assert exc.value.status_code == 401

    def test_http_error_without_body(self):
        client, _ = fake_client({"x": httpx.Response(503, text="down")})
        with pytest.raises(ApiError, match="API error 503"):
            asyncio.run(client.call("x", []))

    def test_error_envelope_raises_with_provider_code(self):
        client, _ = fake_client({
            "x": {"status_code": 40501, "status_message": "Invalid Field: 'location_name'.", "tasks": []},
        })
        with pytest.raises(ApiError) as exc:
            asyncio.run(client.call("x", []))
        assert exc.value.status_code == 40501
        assert "location_name" in exc.value.message

    def test_invalid_json(self):
        client, _ = fake_client({"x": httpx.Response(200, text="<html>")})
        with pytest.raises(ApiError, match="Invalid JSON"):
            asyncio.run(client.get("x"))

    def test_transport_failure(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        client = DataForSEOClient("me", "secret", transport=httpx.MockTransport(handler))
        with pytest.raises(ApiError, match="Failed to reach DataForSEO"):
            asyncio.run(client.get("x"))
