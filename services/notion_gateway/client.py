"""Notion gateway - database queries, page patches and block listings."""

import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

import httpx
from notion_client import AsyncClient
from notion_client.errors import APIResponseError, HTTPResponseError, RequestTimeoutError

from shared.exceptions import CredentialError, RemoteError, TransportError
from shared.models import NotionCredentials

from .rate_limit import handle_rate_limit

logger = logging.getLogger(__name__)

QUERY_PAGE_SIZE = 100
BLOCK_PAGE_SIZE = 50


@dataclass
class QueryPage:
    """One page of a paginated Notion listing."""
    results: List[Dict[str, Any]] = field(default_factory=list)
    next_cursor: Optional[str] = None
    has_more: bool = False


def normalize_identifier(notion_id: str) -> str:
    """Strip dashes from a Notion id."""
    return notion_id.replace("-", "")


def _parse_listing(response: Any) -> QueryPage:
    if not isinstance(response, dict) or not isinstance(response.get("results"), list):
        raise RemoteError.invalid_response("listing without a results array")
    has_more = bool(response.get("has_more", False))
    next_cursor = response.get("next_cursor")
    return QueryPage(
        results=[item for item in response["results"] if isinstance(item, dict)],
        next_cursor=next_cursor if has_more else None,
        has_more=has_more and bool(next_cursor),
    )


class NotionTaskClient:
    """Talks to the Notion API on behalf of the sync service.

    Wraps the official ``notion_client.AsyncClient`` (one per token/version
    pair) and translates its failures into the application error taxonomy:
    ``RemoteError`` for API/HTTP errors and malformed payloads,
    ``TransportError`` for network failures and timeouts. Cancellation is
    never translated.
    """

    def __init__(self, timeout_ms: int = 60_000, max_rate_limit_retries: int = 3):
        """
        Initialize the gateway.

        Args:
            timeout_ms: Per-request timeout applied by the Notion client
            max_rate_limit_retries: Retries on HTTP 429 before giving up
        """
        self.timeout_ms = timeout_ms
        self._clients: Dict[Tuple[str, str], AsyncClient] = {}
        self._call = handle_rate_limit(max_retries=max_rate_limit_retries)(self._invoke)

    def _client_for(self, credentials: NotionCredentials) -> AsyncClient:
        if credentials is None or not credentials.usable:
            raise CredentialError()
        key = (credentials.token, credentials.notion_version)
        client = self._clients.get(key)
        if client is None:
            client = AsyncClient(
                auth=credentials.token,
                notion_version=credentials.notion_version,
                timeout_ms=self.timeout_ms,
            )
            self._clients[key] = client
        return client

    async def aclose(self) -> None:
        """Close every underlying HTTP client."""
        clients = list(self._clients.values())
        self._clients.clear()
        for client in clients:
            await client.aclose()

    @staticmethod
    async def _invoke(call: Callable[..., Awaitable[Any]], **kwargs) -> Any:
        return await call(**kwargs)

    async def _send(self, operation: str, call: Callable[..., Awaitable[Any]], **kwargs) -> Any:
        try:
            return await self._call(call, **kwargs)
        except APIResponseError as e:
            logger.error(f"Notion API error during {operation}: {e}")
            raise RemoteError(status_code=e.status, body=getattr(e, 'body', '') or str(e)) from e
        except HTTPResponseError as e:
            logger.error(f"Notion HTTP error during {operation}: {e}")
            raise RemoteError(status_code=e.status, body=getattr(e, 'body', '') or '') from e
        except RequestTimeoutError as e:
            logger.error(f"Notion request timed out during {operation}")
            raise TransportError("Request to Notion timed out.") from e
        except httpx.TransportError as e:
            logger.error(f"Network error during {operation}: {e}")
            raise TransportError(f"Could not reach Notion: {e}") from e

    async def query_database(
        self,
        credentials: NotionCredentials,
        filter: Optional[Dict[str, Any]] = None,
        page_size: int = QUERY_PAGE_SIZE,
        cursor: Optional[str] = None
    ) -> QueryPage:
        """
        Query one page of the task database.

        Args:
            credentials: Notion credentials (database id included)
            filter: Notion filter object
            page_size: Results per page (Notion caps this at 100)
            cursor: start_cursor from the previous page

        Returns:
            QueryPage with raw page objects

        Raises:
            CredentialError, RemoteError, TransportError
        """
        client = self._client_for(credentials)
        kwargs: Dict[str, Any] = {
            "database_id": credentials.database_id,
            "page_size": page_size,
        }
        if filter is not None:
            kwargs["filter"] = filter
        if cursor:
            kwargs["start_cursor"] = cursor

        response = await self._send("database query", client.databases.query, **kwargs)
        page = _parse_listing(response)
        logger.debug(f"Database query returned {len(page.results)} pages (has_more={page.has_more})")
        return page

    async def update_page(
        self,
        credentials: NotionCredentials,
        page_id: str,
        properties: Dict[str, Any],
        archived: Optional[bool] = None
    ) -> Dict[str, Any]:
        """
        Patch page properties and optionally its archived flag.

        Returns:
            The updated page object
        """
        client = self._client_for(credentials)
        kwargs: Dict[str, Any] = {"page_id": page_id, "properties": properties}
        if archived is not None:
            kwargs["archived"] = archived

        response = await self._send("page update", client.pages.update, **kwargs)
        if not isinstance(response, dict) or "id" not in response:
            raise RemoteError.invalid_response("page update without a page object")
        return response

    async def fetch_block_children(
        self,
        credentials: NotionCredentials,
        block_id: str,
        page_size: Optional[int] = BLOCK_PAGE_SIZE,
        cursor: Optional[str] = None
    ) -> QueryPage:
        """List one page of a block's children."""
        client = self._client_for(credentials)
        kwargs: Dict[str, Any] = {"block_id": normalize_identifier(block_id)}
        if page_size is not None:
            kwargs["page_size"] = page_size
        if cursor:
            kwargs["start_cursor"] = cursor

        response = await self._send("block children listing", client.blocks.children.list, **kwargs)
        return _parse_listing(response)

    async def first_bookmark_url(self, credentials: NotionCredentials, page_id: str) -> Optional[str]:
        """
        Walk a page's top-level blocks and return the first bookmark URL.

        Args:
            credentials: Notion credentials
            page_id: Page whose content is scanned

        Returns:
            The bookmark URL, or None when the page has no bookmark block
        """
        cursor = None
        page_count = 0
        while True:
            page_count += 1
            listing = await self.fetch_block_children(
                credentials, page_id, page_size=BLOCK_PAGE_SIZE, cursor=cursor
            )
            logger.debug(f"Block page {page_count} of {page_id}: {len(listing.results)} blocks")

            for block in listing.results:
                if block.get("type") != "bookmark":
                    continue
                url = (block.get("bookmark") or {}).get("url")
                if url:
                    return url

            if not listing.has_more:
                return None
            cursor = listing.next_cursor
