"""Unit tests for cursor pagination."""
from unittest.mock import AsyncMock, MagicMock

import pytest

from kdash_core.klaviyo.exceptions import KlaviyoApiError
from kdash_core.klaviyo.pagination import PaginatedFetcher, cursor_to_request


BASE_URL = "https://a.klaviyo.com/api"


def _page(start, size, next_url=None):
    return {
        "data": [{"id": str(i)} for i in range(start, start + size)],
        "links": {"self": "ignored", "next": next_url},
    }


@pytest.fixture
def mock_client():
    client = MagicMock()
    client.base_url = BASE_URL
    client.request = AsyncMock()
    return client


def test_cursor_to_request_strips_api_root():
    """Test the duplicated /api prefix is removed and params kept verbatim."""
    endpoint, params = cursor_to_request(
        "https://a.klaviyo.com/api/events/?filter=equals(metric_id,%22ABC%22)"
        "&page%5Bcursor%5D=bmV4dA%3D%3D&page%5Bsize%5D=100",
        BASE_URL,
    )

    assert endpoint == "/events/"
    assert params == [
        ("filter", 'equals(metric_id,"ABC")'),
        ("page[cursor]", "bmV4dA=="),
        ("page[size]", "100"),
    ]


def test_cursor_to_request_without_api_root():
    """Test paths outside the API root are left alone."""
    endpoint, params = cursor_to_request(
        "https://a.klaviyo.com/apiary/things/?page%5Bcursor%5D=x", BASE_URL
    )

    assert endpoint == "/apiary/things/"
    assert params == [("page[cursor]", "x")]


def test_cursor_to_request_keeps_repeated_keys():
    """Test repeated query keys are all forwarded in their original order."""
    endpoint, params = cursor_to_request(
        f"{BASE_URL}/profiles/?fields%5Bprofile%5D=email&fields%5Bprofile%5D=phone_number"
        "&page%5Bcursor%5D=abc",
        BASE_URL,
    )

    assert endpoint == "/profiles/"
    assert params == [
        ("fields[profile]", "email"),
        ("fields[profile]", "phone_number"),
        ("page[cursor]", "abc"),
    ]


@pytest.mark.asyncio
async def test_fetch_all_follows_three_pages(mock_client):
    """Test 100/100/50 pages yield 250 items in order and then stop."""
    mock_client.request.side_effect = [
        _page(0, 100, f"{BASE_URL}/events/?page%5Bcursor%5D=p2"),
        _page(100, 100, f"{BASE_URL}/events/?page%5Bcursor%5D=p3"),
        _page(200, 50, None),
    ]
    fetcher = PaginatedFetcher(mock_client)

    items = await fetcher.fetch_all(
        "pk_test", "/events/", {"filter": 'equals(metric_id,"ABC")', "page[size]": 100}
    )

    assert len(items) == 250
    assert [item["id"] for item in items] == [str(i) for i in range(250)]
    assert mock_client.request.await_count == 3

    first, second, third = mock_client.request.await_args_list
    assert first.args == ("pk_test", "/events/", "GET")
    assert first.kwargs["params"] == {"filter": 'equals(metric_id,"ABC")', "page[size]": 100}
    assert second.args[1] == "/events/"
    assert second.kwargs["params"] == [("page[cursor]", "p2")]
    assert third.kwargs["params"] == [("page[cursor]", "p3")]


@pytest.mark.asyncio
async def test_fetch_all_single_page_without_links(mock_client):
    """Test a response with no links block ends the sequence."""
    mock_client.request.return_value = {"data": [{"id": "a"}, {"id": "b"}]}
    fetcher = PaginatedFetcher(mock_client)

    items = await fetcher.fetch_all("pk_test", "/lists/")

    assert items == [{"id": "a"}, {"id": "b"}]
    assert mock_client.request.await_count == 1


@pytest.mark.asyncio
async def test_fetch_all_does_not_deduplicate(mock_client):
    """Test repeated items across pages are kept."""
    mock_client.request.side_effect = [
        {"data": [{"id": "x"}], "links": {"next": f"{BASE_URL}/flows/?page%5Bcursor%5D=2"}},
        {"data": [{"id": "x"}], "links": {"next": None}},
    ]
    fetcher = PaginatedFetcher(mock_client)

    items = await fetcher.fetch_all("pk_test", "/flows/")

    assert items == [{"id": "x"}, {"id": "x"}]


@pytest.mark.asyncio
async def test_fetch_all_propagates_page_failure(mock_client):
    """Test an error on a later page fails the whole fetch."""
    mock_client.request.side_effect = [
        _page(0, 10, f"{BASE_URL}/flows/?page%5Bcursor%5D=2"),
        KlaviyoApiError(500, "boom", "/flows/"),
    ]
    fetcher = PaginatedFetcher(mock_client)

    with pytest.raises(KlaviyoApiError):
        await fetcher.fetch_all("pk_test", "/flows/")

    assert mock_client.request.await_count == 2
