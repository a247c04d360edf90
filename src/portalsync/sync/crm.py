"""
Partner CRM API client.

Async client for the partner CRM object API. Lists are paged with
``skip``/``take`` and the last page is the first one shorter than the
page size.
"""

import logging
from datetime import datetime
from typing import Any, Optional

import httpx

from portalsync.core.config import CrmSettings
from portalsync.core.exceptions import ExternalApiError

logger = logging.getLogger(__name__)


SERVICE_NAME = "crm"
OBJECTS_PATH = "/api/objects/v1"

ACCOUNT_FIELDS = (
    "Id", "Name", "Partner_Tier__cf", "Account_Status__cf", "Account_Owner__cf",
    "Account_Owner_Email__cf", "Partner_Type__cf", "Website", "CrmId",
    "MailingCity", "MailingCountry", "Region", "MemberCount", "Updated",
    "ParentAccountId",
)
USER_FIELDS = (
    "Id", "Email", "FirstName", "LastName", "Title", "Phone", "Account",
    "AccountName", "Contact_Status__cf", "IsActive", "CrmId", "Updated",
)


class CrmClient:
    """
    Client for the partner CRM API.

    Args:
        settings: Base URL, credentials and page size
        transport: Optional httpx transport (tests use MockTransport)
    """

    def __init__(
        self,
        settings: CrmSettings,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._settings = settings
        self._client = httpx.AsyncClient(
            base_url=settings.base_url.rstrip("/") + OBJECTS_PATH,
            headers={
                "Authorization": f"prm-key {settings.api_key}",
                "X-PRM-TenantId": settings.tenant_id,
                "Accept": "application/json",
            },
            timeout=settings.timeout_seconds,
            transport=transport,
        )

    async def aclose(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.aclose()

    async def __aenter__(self) -> "CrmClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    async def _get_page(self, object_type: str, params: dict[str, Any]) -> dict[str, Any]:
        path = f"/{object_type}"
        try:
            response = await self._client.get(path, params=params)
        except httpx.RequestError as e:
            raise ExternalApiError(
                f"CRM API request failed: {e}",
                service=SERVICE_NAME,
                endpoint=path,
            ) from e

        if response.status_code != 200:
            raise ExternalApiError(
                f"CRM API returned status {response.status_code}",
                service=SERVICE_NAME,
                status_code=response.status_code,
                endpoint=path,
                body=response.text[:200],
            )
        try:
            payload = response.json()
        except ValueError as e:
            raise ExternalApiError(
                "CRM API returned invalid JSON",
                service=SERVICE_NAME,
                status_code=response.status_code,
                endpoint=path,
            ) from e
        if not payload.get("success", False):
            raise ExternalApiError(
                payload.get("message") or "CRM API request failed",
                service=SERVICE_NAME,
                status_code=response.status_code,
                endpoint=path,
            )
        return payload.get("data") or {}

    async def fetch_all(
        self,
        object_type: str,
        fields: tuple[str, ...],
        since: Optional[datetime] = None,
    ) -> list[dict[str, Any]]:
        """
        Fetch every record of an object type.

        Args:
            object_type: CRM object name, e.g. ``Account``
            fields: Fields to request
            since: Only records updated after this time

        Returns:
            All matching records
        """
        take = self._settings.page_size
        params: dict[str, Any] = {"fields": ",".join(fields), "take": take}
        if since is not None:
            params["filter"] = f"(Updated > '{since.replace(tzinfo=None).isoformat()}')"

        records: list[dict[str, Any]] = []
        skip = 0
        while True:
            data = await self._get_page(object_type, {**params, "skip": skip})
            results = data.get("results") or []
            records.extend(results)
            skip += len(results)
            if len(results) < take:
                break
        logger.debug(f"CRM {object_type}: fetched {len(records)} records")
        return records

    async def list_accounts(self, since: Optional[datetime] = None) -> list[dict[str, Any]]:
        """Partner accounts."""
        return await self.fetch_all("Account", ACCOUNT_FIELDS, since)

    async def list_users(self, since: Optional[datetime] = None) -> list[dict[str, Any]]:
        """Partner contacts."""
        return await self.fetch_all("User", USER_FIELDS, since)
