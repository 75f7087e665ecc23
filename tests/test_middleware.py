"""Middleware tests: request id, rate limiting, CORS, error mapping."""

import pytest
from httpx import AsyncClient


@pytest.mark.asyncio
async def test_request_id_generated(client: AsyncClient) -> None:
    """Request ID is auto-generated when not provided."""
    response = await client.get("/health")
    assert "x-request-id" in response.headers
    assert len(response.headers["x-request-id"]) == 36  # UUID format


@pytest.mark.asyncio
async def test_request_id_preserved(client: AsyncClient) -> None:
    """Custom request ID is echoed back in response."""
    response = await client.get("/health", headers={"X-Request-Id": "test-abc-123"})
    assert response.headers["x-request-id"] == "test-abc-123"


@pytest.mark.asyncio
async def test_no_rate_limit_without_redis(client: AsyncClient) -> None:
    response = await client.get("/version")
    assert response.status_code == 200
    assert "x-ratelimit-limit" not in response.headers


@pytest.mark.asyncio
async def test_rate_limit_headers(client: AsyncClient, mock_redis) -> None:
    """Rate limit headers are present on non-exempt endpoints."""
    response = await client.get("/version")
    assert response.headers["x-ratelimit-limit"] == "100"
    assert response.headers["x-ratelimit-remaining"] == "99"


@pytest.mark.asyncio
async def test_rate_limit_blocks_excess(client: AsyncClient, mock_redis) -> None:
    """101st request returns 429 with Retry-After header."""
    for _ in range(100):
        await client.get("/version")
    response = await client.get("/version")
    assert response.status_code == 429
    assert "retry-after" in response.headers
    assert response.json()["code"] == "rate_limited"
    assert "x-request-id" in response.headers


@pytest.mark.asyncio
async def test_partners_limited_per_key(client: AsyncClient, mock_redis) -> None:
    await client.get("/version", headers={"X-Partner-Key": "pk-kcr-abcdefgh12345678"})
    key = mock_redis.pipeline.return_value.incr.call_args.args[0]
    assert key.startswith("ratelimit:partner:pk-kcr-abcdefg:")


@pytest.mark.asyncio
async def test_health_exempt_from_rate_limit(client: AsyncClient, mock_redis) -> None:
    """Health endpoint is exempt from rate limiting: 200 requests all succeed."""
    for _ in range(200):
        response = await client.get("/health")
        assert response.status_code == 200
    mock_redis.pipeline.assert_not_called()


@pytest.mark.asyncio
async def test_cors_preflight(client: AsyncClient) -> None:
    """CORS preflight returns access-control-allow-origin for configured origin."""
    response = await client.options(
        "/health",
        headers={
            "Origin": "http://localhost:8081",
            "Access-Control-Request-Method": "GET",
        },
    )
    assert response.headers["access-control-allow-origin"] == "http://localhost:8081"


@pytest.mark.asyncio
async def test_404_returns_json(client: AsyncClient) -> None:
    """Unknown paths return 404 with JSON body."""
    response = await client.get("/nonexistent-path")
    assert response.status_code == 404
    assert response.headers["content-type"] == "application/json"
    assert response.json()["detail"] == "Not Found"


@pytest.mark.asyncio
async def test_domain_errors_carry_stable_code(client: AsyncClient, make_account, auth_headers) -> None:
    """Typed failures map to their status and machine-readable code."""
    account = await make_account()
    response = await client.get("/api/v1/rewards/coupons/9999", headers=auth_headers(account.id))
    assert response.status_code == 404
    assert response.json() == {"detail": "Coupon 9999 not found", "code": "not_found"}


@pytest.mark.asyncio
async def test_validation_errors_are_json(client: AsyncClient, make_account, auth_headers) -> None:
    account = await make_account()
    response = await client.get("/api/v1/points/history?limit=0", headers=auth_headers(account.id))
    assert response.status_code == 422
    data = response.json()
    assert data["detail"] == "Validation error"
    assert data["errors"][0]["loc"] == ["query", "limit"]
