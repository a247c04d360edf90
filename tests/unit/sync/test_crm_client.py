"""Tests for the partner CRM API client."""

from datetime import datetime

import httpx
import pytest

from portalsync.core.config import CrmSettings
from portalsync.core.exceptions import ExternalApiError
from portalsync.sync import CrmClient


def make_client(handler) -> CrmClient:
    """Create a client backed by a mock transport."""
    return CrmClient(
        CrmSettings(base_url="https://crm.example.com/", api_key="k", tenant_id="7", page_size=2),
        transport=httpx.MockTransport(handler),
    )


def page(results: list[dict]) -> httpx.Response:
    """A successful CRM list response."""
    return httpx.Response(200, json={"success": True, "data": {"results": results}})


class TestCrmClient:
    """Tests for CrmClient."""

    @pytest.mark.asyncio
    async def test_pages_until_short_page(self) -> None:
        """Test skip/take paging."""
        requests = []
        pages = [page([{"Id": 1}, {"Id": 2}]), page([{"Id": 3}])]

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return pages.pop(0)

        async with make_client(handler) as client:
            accounts = await client.list_accounts()

        assert [a["Id"] for a in accounts] == [1, 2, 3]
        assert [r.url.params["skip"] for r in requests] == ["0", "2"]
        assert requests[0].url.path == "/api/objects/v1/Account"
        assert requests[0].headers["Authorization"] == "prm-key k"
        assert requests[0].headers["X-PRM-TenantId"] == "7"
        assert "Partner_Tier__cf" in requests[0].url.params["fields"]

    @pytest.mark.asyncio
    async def test_since_filter(self) -> None:
        """Test the incremental filter expression."""
        requests = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return page([])

        async with make_client(handler) as client:
            await client.list_users(since=datetime(2026, 3, 1, 6, 30, 0))

        assert requests[0].url.params["filter"] == "(Updated > '2026-03-01T06:30:00')"
        assert requests[0].url.path == "/api/objects/v1/User"

    @pytest.mark.asyncio
    async def test_unsuccessful_payload(self) -> None:
        """Test that success=false is an error."""

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"success": False, "message": "tenant disabled"})

        async with make_client(handler) as client:
            with pytest.raises(ExternalApiError) as exc_info:
                await client.list_accounts()

        assert exc_info.value.message == "tenant disabled"

    @pytest.mark.asyncio
    async def test_http_error(self) -> None:
        """Test that non-200 responses are errors."""

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(401, text="unauthorized")

        async with make_client(handler) as client:
            with pytest.raises(ExternalApiError) as exc_info:
                await client.list_accounts()

        assert exc_info.value.status_code == 401
        assert exc_info.value.service == "crm"
