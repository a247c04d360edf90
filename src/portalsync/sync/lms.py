"""
LMS API client.

Async client for the LMS REST API. List endpoints are paginated with
``links.next`` and fetched 100 records at a time with a short pause
between pages to stay under the provider's rate limit.
"""

import asyncio
import logging
from datetime import datetime
from typing import Any, Awaitable, Callable, Optional

import httpx

from portalsync.core.config import LmsSettings
from portalsync.core.exceptions import ExternalApiError

logger = logging.getLogger(__name__)


SERVICE_NAME = "lms"

PageCallback = Callable[[int, int], None]


def lms_error(status_code: int, endpoint: str, detail: Optional[str] = None) -> ExternalApiError:
    """Map an LMS HTTP status to a descriptive error."""
    if status_code == 401:
        message = "LMS API authentication failed - check API key"
    elif status_code == 403:
        message = "LMS API access forbidden - check permissions"
    elif status_code == 404:
        message = f"LMS API endpoint not found: {endpoint}"
    elif status_code == 429:
        message = "LMS API rate limit exceeded"
    elif status_code == 500:
        message = "LMS API internal server error - API may be down"
    elif status_code in (502, 503, 504):
        message = f"LMS API unavailable ({status_code}) - API may be down"
    else:
        message = f"LMS API error ({status_code}): {detail or 'Unknown error'}"
    return ExternalApiError(
        message,
        service=SERVICE_NAME,
        status_code=status_code,
        endpoint=endpoint,
        body=detail,
    )


def _error_detail(response: httpx.Response) -> Optional[str]:
    try:
        payload = response.json()
    except ValueError:
        return response.text[:500] or None
    if isinstance(payload, dict):
        errors = payload.get("errors")
        if isinstance(errors, list) and errors and isinstance(errors[0], dict):
            return errors[0].get("detail")
        if payload.get("error"):
            return str(payload["error"])
    return None


class LmsClient:
    """
    Client for the LMS API.

    Args:
        settings: Base URL, key and pacing settings
        transport: Optional httpx transport (tests use MockTransport)
        sleep: Coroutine used for pacing delays
    """

    def __init__(
        self,
        settings: LmsSettings,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._settings = settings
        self._sleep = sleep
        self._client = httpx.AsyncClient(
            base_url=settings.base_url,
            headers={
                "Accept": "application/json",
                "Content-Type": "application/json",
                "X-Api-Key": settings.api_key,
            },
            timeout=settings.timeout_seconds,
            transport=transport,
        )

    async def aclose(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.aclose()

    async def __aenter__(self) -> "LmsClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    # -------------------------------------------------------------------------
    # Requests
    # -------------------------------------------------------------------------

    async def get(self, path: str, params: Optional[dict[str, Any]] = None) -> dict[str, Any]:
        """
        GET a JSON document.

        A 429 response is retried once after the configured wait.

        Raises:
            ExternalApiError: On a non-2xx response or transport failure
        """
        for attempt in range(2):
            try:
                response = await self._client.get(path, params=params)
            except httpx.RequestError as e:
                raise ExternalApiError(
                    f"LMS API request failed: {e}",
                    service=SERVICE_NAME,
                    endpoint=path,
                ) from e

            if response.status_code == 429 and attempt == 0:
                logger.warning(f"LMS rate limit hit on {path}, retrying")
                await self._sleep(self._settings.rate_limit_wait_seconds)
                continue
            if response.status_code >= 400:
                raise lms_error(response.status_code, path, _error_detail(response))
            try:
                return response.json()
            except ValueError as e:
                raise ExternalApiError(
                    "LMS API returned invalid JSON",
                    service=SERVICE_NAME,
                    status_code=response.status_code,
                    endpoint=path,
                ) from e
        raise lms_error(429, path)

    async def fetch_all(
        self,
        path: str,
        params: Optional[dict[str, Any]] = None,
        on_page: Optional[PageCallback] = None,
    ) -> list[dict[str, Any]]:
        """
        Fetch every page of a list endpoint.

        Args:
            path: Endpoint path
            params: Extra query parameters for the first page
            on_page: Called with (page number, records so far)

        Returns:
            All records across pages
        """
        query = dict(params or {})
        query.setdefault("limit", self._settings.page_size)

        records: list[dict[str, Any]] = []
        url: Optional[str] = path
        page = 1
        while url:
            payload = await self.get(url, params=query)
            data = payload.get("data") or []
            records.extend(data)
            if on_page is not None:
                on_page(page, len(records))
            logger.debug(f"{path}: page {page}, {len(data)} records (total {len(records)})")

            next_link = (payload.get("links") or {}).get("next")
            if not next_link:
                break
            # next links carry their own query string
            url, query = next_link, None
            page += 1
            await self._sleep(self._settings.page_delay_seconds)

        return records

    # -------------------------------------------------------------------------
    # Endpoints
    # -------------------------------------------------------------------------

    @staticmethod
    def _since_params(since: Optional[datetime]) -> dict[str, Any]:
        if since is None:
            return {}
        return {"filter[updated_at][gteq]": since.isoformat()}

    async def list_people(self, since: Optional[datetime] = None, on_page: Optional[PageCallback] = None):
        """All LMS users, optionally only those updated since a time."""
        return await self.fetch_all("/v2/people", self._since_params(since), on_page)

    async def list_groups(self, since: Optional[datetime] = None, on_page: Optional[PageCallback] = None):
        """All LMS groups, optionally only those updated since a time."""
        return await self.fetch_all("/v2/groups", self._since_params(since), on_page)

    async def list_courses(self, since: Optional[datetime] = None, on_page: Optional[PageCallback] = None):
        """All LMS courses, optionally only those updated since a time."""
        return await self.fetch_all("/v2/courses", self._since_params(since), on_page)

    async def list_course_properties(self, on_page: Optional[PageCallback] = None):
        """Custom properties of every course."""
        return await self.fetch_all("/v2/properties/courses", None, on_page)

    async def list_transcripts(self, user_id: str) -> list[dict[str, Any]]:
        """Every transcript entry of one user."""
        return await self.fetch_all(f"/v2/transcripts/{user_id}")
