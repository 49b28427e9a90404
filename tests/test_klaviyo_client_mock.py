"""Unit tests for KlaviyoClient (mocked, no real API calls)."""
import asyncio
import json
from unittest.mock import AsyncMock, MagicMock, patch

import aiohttp
import pytest

from kdash_core.dashboard.aggregator import DashboardAggregator
from kdash_core.klaviyo.aggregates import AggregateQueryExecutor
from kdash_core.klaviyo.catalog import MetricCatalogResolver
from kdash_core.klaviyo.client import (
    KlaviyoClient,
    extract_error_message,
    parse_retry_delay,
)
from kdash_core.klaviyo.exceptions import (
    KlaviyoApiError,
    KlaviyoThrottledError,
    KlaviyoTransportError,
)
from kdash_core.klaviyo.pagination import PaginatedFetcher
from kdash_core.klaviyo.rate_limiter import RateLimiter


def _mock_response(status, body=None, headers=None, text=None):
    response = AsyncMock()
    response.status = status
    response.headers = headers or {}
    response.json.return_value = body
    if text is None:
        text = json.dumps(body) if body is not None else ""
    response.text.return_value = text
    response.__aenter__.return_value = response
    return response


def _throttled(detail="Request was throttled. Expected available in 2 seconds."):
    return _mock_response(
        429, {"errors": [{"status": 429, "title": "Throttled", "detail": detail}]}
    )


@pytest.fixture
def mock_session():
    """Mock aiohttp ClientSession."""
    return MagicMock()


@pytest.fixture
def klaviyo_client(mock_session):
    """KlaviyoClient with mocked session and no rate-limit spacing."""
    return KlaviyoClient(
        session=mock_session,
        rate_limiter=RateLimiter(min_interval=0),
    )


@pytest.mark.asyncio
async def test_get_success_sends_auth_and_revision(klaviyo_client, mock_session):
    """Test GET returns decoded body with auth and revision headers."""
    mock_session.request.return_value = _mock_response(200, {"data": [{"id": "1"}]})

    result = await klaviyo_client.request(
        "pk_test_key", "/lists/", params={"page[size]": 10}
    )

    assert result == {"data": [{"id": "1"}]}
    method, url = mock_session.request.call_args.args
    kwargs = mock_session.request.call_args.kwargs
    assert method == "GET"
    assert url == "https://a.klaviyo.com/api/lists/"
    assert kwargs["headers"]["Authorization"] == "Klaviyo-API-Key pk_test_key"
    assert kwargs["headers"]["revision"] == "2024-10-15"
    assert kwargs["params"] == {"page[size]": 10}
    assert "json" not in kwargs


@pytest.mark.asyncio
async def test_post_sends_json_body(klaviyo_client, mock_session):
    """Test POST sends body as JSON and not as params."""
    mock_session.request.return_value = _mock_response(200, {"data": {}})
    body = {"data": {"type": "metric-aggregate"}}

    await klaviyo_client.request("pk_test_key", "/metric-aggregates/", "POST", body=body)

    kwargs = mock_session.request.call_args.kwargs
    assert mock_session.request.call_args.args[0] == "POST"
    assert kwargs["json"] == body
    assert "params" not in kwargs


@pytest.mark.asyncio
async def test_no_content_returns_empty_dict(klaviyo_client, mock_session):
    """Test 204 responses decode to an empty dict."""
    mock_session.request.return_value = _mock_response(204)

    assert await klaviyo_client.request("pk_test_key", "/lists/") == {}


@pytest.mark.asyncio
async def test_http_429_uses_retry_hint_from_detail(klaviyo_client, mock_session):
    """Test a '2 seconds' hint delays the retry by 2s."""
    mock_session.request.side_effect = [
        _throttled(),
        _mock_response(200, {"data": []}),
    ]

    with patch("kdash_core.klaviyo.client.asyncio.sleep", new_callable=AsyncMock) as sleep:
        result = await klaviyo_client.request("pk_test_key", "/flows/")

    assert result == {"data": []}
    assert mock_session.request.call_count == 2
    sleep.assert_awaited_once_with(2.0)


@pytest.mark.asyncio
async def test_http_429_defaults_to_one_second(klaviyo_client, mock_session):
    """Test a 429 without any hint waits the 1s default."""
    mock_session.request.side_effect = [
        _mock_response(429, {"errors": [{"title": "Throttled"}]}),
        _mock_response(200, {"data": []}),
    ]

    with patch("kdash_core.klaviyo.client.asyncio.sleep", new_callable=AsyncMock) as sleep:
        await klaviyo_client.request("pk_test_key", "/flows/")

    sleep.assert_awaited_once_with(1.0)


@pytest.mark.asyncio
async def test_http_429_falls_back_to_retry_after_header(klaviyo_client, mock_session):
    """Test Retry-After is used when the body carries no hint."""
    mock_session.request.side_effect = [
        _mock_response(429, {"errors": []}, headers={"Retry-After": "3"}),
        _mock_response(200, {"data": []}),
    ]

    with patch("kdash_core.klaviyo.client.asyncio.sleep", new_callable=AsyncMock) as sleep:
        await klaviyo_client.request("pk_test_key", "/flows/")

    sleep.assert_awaited_once_with(3.0)


@pytest.mark.asyncio
async def test_http_429_exhausted_after_three_attempts(klaviyo_client, mock_session):
    """Test the third throttled attempt raises without a fourth request."""
    mock_session.request.side_effect = [_throttled(), _throttled(), _throttled(), _throttled()]

    with patch("kdash_core.klaviyo.client.asyncio.sleep", new_callable=AsyncMock) as sleep:
        with pytest.raises(KlaviyoThrottledError) as exc_info:
            await klaviyo_client.request("pk_test_key", "/flows/")

    assert mock_session.request.call_count == 3
    assert sleep.await_count == 2
    assert exc_info.value.attempts == 3
    assert "/flows/" in str(exc_info.value)


@pytest.mark.asyncio
async def test_rate_limiter_acquired_for_every_attempt(mock_session):
    """Test each retry passes through the rate limiter again."""
    limiter = AsyncMock()
    client = KlaviyoClient(session=mock_session, rate_limiter=limiter)
    mock_session.request.side_effect = [_throttled(), _mock_response(200, {"data": []})]

    with patch("kdash_core.klaviyo.client.asyncio.sleep", new_callable=AsyncMock):
        await client.request("pk_test_key", "/flows/")

    assert limiter.acquire.await_count == 2


@pytest.mark.asyncio
async def test_http_500_raises_api_error_with_detail(klaviyo_client, mock_session):
    """Test non-429 errors raise immediately with the upstream detail."""
    mock_session.request.return_value = _mock_response(
        500,
        {"errors": [{"title": "Server Error", "detail": "Something went wrong"}]},
    )

    with pytest.raises(KlaviyoApiError) as exc_info:
        await klaviyo_client.request("pk_test_key", "/flows/")

    assert exc_info.value.status == 500
    assert exc_info.value.message == "Something went wrong"
    assert mock_session.request.call_count == 1


@pytest.mark.asyncio
async def test_http_error_with_non_json_body(klaviyo_client, mock_session):
    """Test an HTML error page falls back to a generic message."""
    mock_session.request.return_value = _mock_response(
        502, text="<html>Bad Gateway</html>"
    )

    with pytest.raises(KlaviyoApiError) as exc_info:
        await klaviyo_client.request("pk_test_key", "/flows/")

    assert exc_info.value.message == "HTTP 502"


@pytest.mark.asyncio
async def test_success_with_non_json_body_raises_api_error(klaviyo_client, mock_session):
    """Test an HTML 200 (e.g. from a proxy) is classified, not a raw decode error."""
    response = _mock_response(200, text="<html>Maintenance</html>")
    response.json.side_effect = json.JSONDecodeError("Expecting value", "<html>", 0)
    mock_session.request.return_value = response

    with pytest.raises(KlaviyoApiError) as exc_info:
        await klaviyo_client.request("pk_test_key", "/metrics/")

    assert exc_info.value.status == 200
    assert exc_info.value.message == "Invalid JSON in response body"
    assert exc_info.value.endpoint == "/metrics/"


@pytest.mark.asyncio
async def test_success_with_non_object_body_raises_api_error(klaviyo_client, mock_session):
    """Test a JSON array at the top level is rejected."""
    mock_session.request.return_value = _mock_response(200, [{"id": "1"}])

    with pytest.raises(KlaviyoApiError, match="Expected a JSON object"):
        await klaviyo_client.request("pk_test_key", "/metrics/")


@pytest.mark.asyncio
async def test_catalog_load_with_non_json_body_fails_classified(mock_session):
    """Test a snapshot build surfaces an undecodable catalog as KlaviyoApiError."""
    response = _mock_response(200, text="<html>Maintenance</html>")
    response.json.side_effect = json.JSONDecodeError("Expecting value", "<html>", 0)
    mock_session.request.return_value = response

    client = KlaviyoClient(session=mock_session, rate_limiter=RateLimiter(min_interval=0))
    fetcher = PaginatedFetcher(client)
    resolver = MetricCatalogResolver(fetcher)
    aggregator = DashboardAggregator(
        client, fetcher, resolver, AggregateQueryExecutor(client)
    )

    with pytest.raises(KlaviyoApiError):
        await aggregator.build("pk_test_key", deadline=5)

    assert mock_session.request.call_count == 1


@pytest.mark.asyncio
async def test_api_error_redacts_credential(klaviyo_client, mock_session):
    """Test the private key never leaks into the exception message."""
    mock_session.request.return_value = _mock_response(
        401,
        {"errors": [{"detail": "Invalid API key pk_secret_123"}]},
    )

    with pytest.raises(KlaviyoApiError) as exc_info:
        await klaviyo_client.request("pk_secret_123", "/accounts/")

    assert "pk_secret_123" not in str(exc_info.value)
    assert "[REDACTED]" in exc_info.value.message


@pytest.mark.asyncio
async def test_connection_error_raises_transport_error(klaviyo_client, mock_session):
    """Test network failures are classified and not retried."""
    mock_session.request.side_effect = aiohttp.ClientConnectionError("reset by peer")

    with pytest.raises(KlaviyoTransportError) as exc_info:
        await klaviyo_client.request("pk_test_key", "/flows/")

    assert "reset by peer" in str(exc_info.value)
    assert mock_session.request.call_count == 1


@pytest.mark.asyncio
async def test_timeout_raises_transport_error(klaviyo_client, mock_session):
    """Test per-request timeouts are classified as transport errors."""
    mock_session.request.side_effect = asyncio.TimeoutError()

    with pytest.raises(KlaviyoTransportError):
        await klaviyo_client.request("pk_test_key", "/flows/")

    assert mock_session.request.call_count == 1


def test_parse_retry_delay_variants():
    """Test retry hint parsing from detail text and headers."""
    assert parse_retry_delay({"errors": [{"detail": "available in 1 second"}]}) == 1.0
    assert parse_retry_delay({"errors": [{"detail": "Try again in 12 Seconds."}]}) == 12.0
    assert parse_retry_delay({"errors": [{"detail": "slow down"}]}) is None
    assert parse_retry_delay({}, retry_after="5") == 5.0
    assert parse_retry_delay({}, retry_after="soon") is None
    assert parse_retry_delay("not json") is None


def test_extract_error_message_priority():
    """Test detail wins over title, then message, then HTTP status."""
    assert extract_error_message({"errors": [{"title": "T", "detail": "D"}]}, 400) == "D"
    assert extract_error_message({"errors": [{"title": "T"}]}, 400) == "T"
    assert extract_error_message({"message": "M"}, 400) == "M"
    assert extract_error_message({}, 418) == "HTTP 418"


def test_invalid_max_attempts(mock_session):
    """Test max_attempts must allow at least one request."""
    with pytest.raises(ValueError):
        KlaviyoClient(session=mock_session, max_attempts=0)


@pytest.mark.asyncio
async def test_rate_limiter_failure_is_transport_error(mock_session):
    """Test a limiter that cannot admit the call fails before any HTTP request."""
    limiter = MagicMock()
    limiter.acquire = AsyncMock(
        side_effect=KlaviyoTransportError("Rate limiter Redis error: refused")
    )
    client = KlaviyoClient(session=mock_session, rate_limiter=limiter)

    with pytest.raises(KlaviyoTransportError):
        await client.request("pk_test_key", "/metrics/")

    mock_session.request.assert_not_called()
