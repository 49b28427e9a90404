"""Cursor pagination over Klaviyo list endpoints."""
import logging
from typing import Optional, Union
from urllib.parse import parse_qsl, urlparse

from .client import KlaviyoClient


logger = logging.getLogger(__name__)


def cursor_to_request(next_url: str, base_url: str) -> tuple[str, list[tuple[str, str]]]:
    """Split a links.next URL into an endpoint and its query parameters.

    The API root path already carried by base_url (e.g. "/api") is stripped so
    the endpoint can be joined back onto it. Query parameters are passed on
    verbatim as ordered pairs, so page[cursor] and any repeated keys survive.

    Args:
        next_url: Absolute URL from links.next
        base_url: Client base URL

    Returns:
        (endpoint, [(key, value), ...])
    """
    parsed = urlparse(next_url)
    path = parsed.path or "/"
    root = urlparse(base_url).path.rstrip("/")
    if root and (path == root or path.startswith(f"{root}/")):
        path = path[len(root):] or "/"
    params = parse_qsl(parsed.query, keep_blank_values=True)
    return path, params


class PaginatedFetcher:
    """Exhausts a list endpoint by following links.next."""

    def __init__(self, client: KlaviyoClient):
        self.client = client

    async def fetch_all(
        self,
        credential: str,
        endpoint: str,
        params: Optional[Union[dict, list[tuple[str, str]]]] = None,
    ) -> list[dict]:
        """Fetch every page of a list endpoint.

        Pages are requested strictly one after another; items are returned in
        arrival order without deduplication.

        Args:
            credential: Tenant private API key
            endpoint: List endpoint, e.g. "/flows/"
            params: Query parameters for the first page only

        Returns:
            All items across pages
        """
        items: list[dict] = []
        page_count = 0
        next_endpoint, next_params = endpoint, params

        while True:
            response = await self.client.request(
                credential, next_endpoint, "GET", params=next_params
            )
            page_count += 1

            data = response.get("data")
            if isinstance(data, list):
                items.extend(data)
            elif data:
                items.append(data)

            logger.debug(
                "Fetched page %s of %s: %s items (total: %s)",
                page_count,
                endpoint,
                len(data) if isinstance(data, list) else int(bool(data)),
                len(items),
            )

            next_url = (response.get("links") or {}).get("next")
            if not next_url:
                break
            next_endpoint, next_params = cursor_to_request(
                next_url, self.client.base_url
            )

        logger.info(
            "Fetched %s items from %s in %s pages", len(items), endpoint, page_count
        )
        return items
