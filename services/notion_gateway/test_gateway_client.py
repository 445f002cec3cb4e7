"""Unit tests for the Notion gateway client."""

import pytest
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
from notion_client.errors import APIResponseError, RequestTimeoutError

from shared.exceptions import CredentialError, RemoteError, TransportError
from shared.models import NotionCredentials
from services.notion_gateway.client import NotionTaskClient, normalize_identifier
from services.notion_gateway.rate_limit import _extract_retry_after, handle_rate_limit

CREDENTIALS = NotionCredentials(token="secret_abc", database_id="db123", notion_version="2022-06-28")


def api_error(status: int, code: str, body: str = "", headers=None) -> APIResponseError:
    """Build an APIResponseError without going through an HTTP response."""
    error = APIResponseError.__new__(APIResponseError)
    Exception.__init__(error, body or code)
    error.status = status
    error.code = code
    error.body = body
    error.headers = headers or {}
    return error


def listing(results, next_cursor=None, has_more=False):
    return {"object": "list", "results": results, "next_cursor": next_cursor, "has_more": has_more}


@pytest.fixture
def mock_notion_client():
    """Create a mock async Notion client."""
    mock_client = MagicMock()
    mock_client.databases.query = AsyncMock()
    mock_client.pages.update = AsyncMock()
    mock_client.blocks.children.list = AsyncMock()
    mock_client.aclose = AsyncMock()
    return mock_client


@pytest.fixture
def gateway(mock_notion_client):
    """Create a NotionTaskClient whose AsyncClient is mocked."""
    with patch('services.notion_gateway.client.AsyncClient', return_value=mock_notion_client) as client_cls:
        gateway = NotionTaskClient(timeout_ms=5000)
        gateway.client_cls = client_cls
        yield gateway


@pytest.fixture
def no_sleep():
    with patch('services.notion_gateway.rate_limit.asyncio.sleep', new_callable=AsyncMock) as sleep:
        yield sleep


class TestQueryDatabase:

    @pytest.mark.asyncio
    async def test_query_first_page(self, gateway, mock_notion_client):
        mock_notion_client.databases.query.return_value = listing(
            [{"id": "page-1"}, {"id": "page-2"}], next_cursor="cursor-2", has_more=True
        )

        page = await gateway.query_database(CREDENTIALS, filter={"or": []}, page_size=100)

        assert [r["id"] for r in page.results] == ["page-1", "page-2"]
        assert page.has_more is True
        assert page.next_cursor == "cursor-2"
        mock_notion_client.databases.query.assert_awaited_once_with(
            database_id="db123", page_size=100, filter={"or": []}
        )

    @pytest.mark.asyncio
    async def test_query_with_cursor(self, gateway, mock_notion_client):
        mock_notion_client.databases.query.return_value = listing([])

        page = await gateway.query_database(CREDENTIALS, cursor="cursor-2")

        assert page.has_more is False
        assert page.next_cursor is None
        assert mock_notion_client.databases.query.call_args.kwargs["start_cursor"] == "cursor-2"

    @pytest.mark.asyncio
    async def test_client_built_once_per_token(self, gateway, mock_notion_client):
        mock_notion_client.databases.query.return_value = listing([])

        await gateway.query_database(CREDENTIALS)
        await gateway.query_database(CREDENTIALS)

        gateway.client_cls.assert_called_once_with(
            auth="secret_abc", notion_version="2022-06-28", timeout_ms=5000
        )

    @pytest.mark.asyncio
    async def test_malformed_listing(self, gateway, mock_notion_client):
        mock_notion_client.databases.query.return_value = {"object": "error"}

        with pytest.raises(RemoteError) as exc_info:
            await gateway.query_database(CREDENTIALS)

        assert exc_info.value.status_code is None

    @pytest.mark.asyncio
    async def test_unusable_credentials(self, gateway, mock_notion_client):
        blank = NotionCredentials(token=" ", database_id="db123", notion_version="2022-06-28")

        with pytest.raises(CredentialError):
            await gateway.query_database(blank)

        mock_notion_client.databases.query.assert_not_awaited()


class TestErrorTranslation:

    @pytest.mark.asyncio
    async def test_api_error_becomes_remote_error(self, gateway, mock_notion_client):
        mock_notion_client.pages.update.side_effect = api_error(
            400, "validation_error", body='{"message": "Status is not a property"}'
        )

        with pytest.raises(RemoteError) as exc_info:
            await gateway.update_page(CREDENTIALS, "page-1", properties={})

        assert exc_info.value.status_code == 400
        assert "Status is not a property" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_timeout_becomes_transport_error(self, gateway, mock_notion_client):
        mock_notion_client.pages.update.side_effect = RequestTimeoutError()

        with pytest.raises(TransportError):
            await gateway.update_page(CREDENTIALS, "page-1", properties={})

    @pytest.mark.asyncio
    async def test_network_error_becomes_transport_error(self, gateway, mock_notion_client):
        mock_notion_client.databases.query.side_effect = httpx.ConnectError("connection refused")

        with pytest.raises(TransportError) as exc_info:
            await gateway.query_database(CREDENTIALS)

        assert "connection refused" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_update_page_without_page_object(self, gateway, mock_notion_client):
        mock_notion_client.pages.update.return_value = {"object": "list"}

        with pytest.raises(RemoteError):
            await gateway.update_page(CREDENTIALS, "page-1", properties={})


class TestRateLimit:
    """Tests for rate limit handling."""

    @pytest.mark.asyncio
    async def test_rate_limit_retry_success(self, gateway, mock_notion_client, no_sleep):
        """Test successful retry after rate limit."""
        mock_notion_client.pages.update.side_effect = [
            api_error(429, "rate_limited", headers={'Retry-After': '2'}),
            {"id": "page-1"},
        ]

        result = await gateway.update_page(CREDENTIALS, "page-1", properties={}, archived=False)

        assert result["id"] == "page-1"
        assert mock_notion_client.pages.update.await_count == 2
        no_sleep.assert_awaited_once_with(2.0)

    @pytest.mark.asyncio
    async def test_rate_limit_max_retries_exceeded(self, gateway, mock_notion_client, no_sleep):
        """Test failure after exceeding max retries."""
        mock_notion_client.databases.query.side_effect = api_error(429, "rate_limited")

        with pytest.raises(RemoteError) as exc_info:
            await gateway.query_database(CREDENTIALS)

        assert exc_info.value.status_code == 429
        # Initial attempt + 3 retries
        assert mock_notion_client.databases.query.await_count == 4

    @pytest.mark.asyncio
    async def test_other_api_errors_are_not_retried(self, no_sleep):
        call = AsyncMock(side_effect=api_error(404, "object_not_found"))

        with pytest.raises(APIResponseError):
            await handle_rate_limit(max_retries=3)(call)()

        assert call.await_count == 1
        no_sleep.assert_not_awaited()

    def test_retry_after_defaults(self):
        assert _extract_retry_after(api_error(429, "rate_limited")) == 1.0
        assert _extract_retry_after(api_error(429, "rate_limited", headers={'retry-after': '3'})) == 3.0
        assert _extract_retry_after(api_error(429, "rate_limited", headers={'Retry-After': 'soon'})) == 1.0


class TestBookmarks:

    @pytest.mark.asyncio
    async def test_first_bookmark_across_pages(self, gateway, mock_notion_client):
        mock_notion_client.blocks.children.list.side_effect = [
            listing([{"type": "paragraph"}], next_cursor="c2", has_more=True),
            listing([
                {"type": "bookmark", "bookmark": {"url": "https://example.com/first"}},
                {"type": "bookmark", "bookmark": {"url": "https://example.com/second"}},
            ]),
        ]

        url = await gateway.first_bookmark_url(CREDENTIALS, "aaaa-bbbb-cccc")

        assert url == "https://example.com/first"
        first_call, second_call = mock_notion_client.blocks.children.list.call_args_list
        assert first_call.kwargs == {"block_id": "aaaabbbbcccc", "page_size": 50}
        assert second_call.kwargs["start_cursor"] == "c2"

    @pytest.mark.asyncio
    async def test_no_bookmark(self, gateway, mock_notion_client):
        mock_notion_client.blocks.children.list.return_value = listing([{"type": "to_do"}])

        assert await gateway.first_bookmark_url(CREDENTIALS, "page-1") is None


def test_normalize_identifier():
    assert normalize_identifier("1234-5678-abcd") == "12345678abcd"


@pytest.mark.asyncio
async def test_aclose_closes_clients(gateway, mock_notion_client):
    mock_notion_client.databases.query.return_value = listing([])
    await gateway.query_database(CREDENTIALS)

    await gateway.aclose()

    mock_notion_client.aclose.assert_awaited_once()
