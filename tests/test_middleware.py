"""Tests for the rate limiting middleware."""

import httpx
import pytest
import pytest_asyncio
from starlette.applications import Starlette
from starlette.middleware import Middleware
from starlette.responses import PlainTextResponse
from starlette.routing import Route

from rediscoord.middleware.rate_limit import RateLimitMiddleware
from rediscoord.redis.rate_limiter import RateLimiter


async def hello(request):
    return PlainTextResponse("ok")


def build_app(limiter: RateLimiter, sliding: bool) -> Starlette:
    return Starlette(
        routes=[Route("/items", hello), Route("/health", hello)],
        middleware=[
            Middleware(
                RateLimitMiddleware,
                limiter=limiter,
                limit=2,
                window_seconds=3600,
                sliding=sliding,
            )
        ],
    )


@pytest.fixture(params=[True, False], ids=["sliding", "fixed"])
def app(request, redis):
    return build_app(RateLimiter(redis), sliding=request.param)


@pytest_asyncio.fixture
async def http(app):
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


class TestRateLimitMiddleware:
    """Per-client limiting over HTTP."""

    async def test_adds_rate_limit_headers(self, http):
        response = await http.get("/items")

        assert response.status_code == 200
        assert response.headers["X-RateLimit-Limit"] == "2"
        assert response.headers["X-RateLimit-Remaining"] == "1"
        assert int(response.headers["X-RateLimit-Reset"]) > 0

    async def test_rejects_over_limit(self, http):
        for _ in range(2):
            assert (await http.get("/items")).status_code == 200

        response = await http.get("/items")

        assert response.status_code == 429
        assert response.json()["error"]["code"] == "RATE_LIMIT_EXCEEDED"
        assert int(response.headers["Retry-After"]) >= 1
        assert response.headers["X-RateLimit-Remaining"] == "0"

    async def test_clients_limited_separately(self, http):
        for _ in range(2):
            await http.get("/items", headers={"X-Client-ID": "alice"})

        assert (await http.get("/items", headers={"X-Client-ID": "alice"})).status_code == 429
        assert (await http.get("/items", headers={"X-Client-ID": "bob"})).status_code == 200

    async def test_excluded_paths_not_limited(self, http):
        for _ in range(5):
            response = await http.get("/health")
            assert response.status_code == 200
            assert "X-RateLimit-Limit" not in response.headers
