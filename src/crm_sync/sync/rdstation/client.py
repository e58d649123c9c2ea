"""Async HTTP client for the RD Station CRM list endpoints.

Provides RDStationClient.fetch_page, which issues exactly one page request
per call (plus in-place retries), extracts the page items and detects
whether another page follows.

Retry policy (tenacity): HTTP 408/425/429/500/502/503/504, timeouts and
transport errors are retried up to 3 attempts with a 0.7s x attempt
backoff. Exhausted timeouts surface as HTTP 504 and exhausted transport
errors as HTTP 500. Other 4xx responses fail the page immediately.

A 401 in bearer mode with fallback allowed flips the shared AuthState to
query_token mode and re-issues the request once; a 401 that cannot fall
back raises RDStationAuthError.
"""

from __future__ import annotations

import re
from typing import Any
from urllib.parse import urlparse

import httpx
import structlog
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_incrementing,
)
from tenacity.wait import wait_base

from src.crm_sync.config import Settings, get_settings
from src.crm_sync.sync.errors import (
    RDStationAuthError,
    RDStationHTTPError,
    RDStationTransientError,
)
from src.crm_sync.sync.normalizers import pick_first, safe_str
from src.crm_sync.sync.rdstation.auth import PRIMARY_API_HOST, AuthState
from src.crm_sync.sync.rdstation.pagination import detect_next_page, extract_items
from src.crm_sync.sync.schemas import AuthMode, PageResult, ResourceName

logger = structlog.get_logger(__name__)

RETRIABLE_STATUSES = frozenset({408, 425, 429, 500, 502, 503, 504})
MAX_ATTEMPTS = 3

_ABSOLUTE_URL = re.compile(r"^https?://", re.IGNORECASE)


class RDStationClient:
    """Async client for the RD Station CRM paginated list endpoints.

    Args:
        access_token: Sanitized CRM token (no "Bearer " prefix).
        settings: Application settings; defaults to get_settings().
        wait: tenacity wait strategy between attempts (0.7s x attempt).
    """

    def __init__(
        self,
        access_token: str,
        settings: Settings | None = None,
        wait: wait_base | None = None,
    ) -> None:
        self._access_token = access_token
        self._settings = settings or get_settings()
        self._wait = wait if wait is not None else wait_incrementing(start=0.7, increment=0.7)

    def effective_page_size(self, records_per_page: int, auth_state: AuthState) -> int:
        if auth_state.mode == AuthMode.QUERY_TOKEN:
            return min(records_per_page, self._settings.RDSTATION_LEGACY_MAX_RECORDS_PER_PAGE)
        return records_per_page

    def _timeout(self, auth_state: AuthState) -> float:
        if auth_state.mode == AuthMode.QUERY_TOKEN:
            return self._settings.RDSTATION_LEGACY_TIMEOUT
        return self._settings.RDSTATION_BEARER_TIMEOUT

    def _build_request(
        self,
        resource: ResourceName,
        page: int,
        page_size: int,
        cursor_hint: str,
        auth_state: AuthState,
    ) -> tuple[str, dict[str, str], dict[str, str]]:
        """Return (url, params, headers) for one page request."""
        default_url = f"{auth_state.api_url.rstrip('/')}/{resource.value}"
        hint = safe_str(cursor_hint)
        params: dict[str, str] = {}
        url = default_url

        if hint and _ABSOLUTE_URL.match(hint):
            # Never hand the query token to the v2 host
            legacy_to_primary = (
                auth_state.mode == AuthMode.QUERY_TOKEN
                and urlparse(hint).hostname == PRIMARY_API_HOST
            )
            if not legacy_to_primary:
                url = hint
            hint = ""

        if url == default_url:
            params = {"page": str(page), "limit": str(page_size), "per_page": str(page_size)}
            if hint:
                params["cursor"] = hint
                params["next_page"] = hint

        headers = {"Accept": "application/json"}
        if auth_state.mode == AuthMode.QUERY_TOKEN:
            params["token"] = self._access_token
        else:
            headers["Authorization"] = f"Bearer {self._access_token}"
        return url, params, headers

    async def _get(
        self,
        url: str,
        params: dict[str, str],
        headers: dict[str, str],
        timeout: float,
    ) -> httpx.Response:
        async with httpx.AsyncClient(timeout=timeout) as client:
            return await client.get(url, params=params, headers=headers)

    @staticmethod
    def _decode(response: httpx.Response) -> dict[str, Any]:
        try:
            payload = response.json()
        except ValueError:
            return {}
        return payload if isinstance(payload, dict) else {"data": payload}

    @staticmethod
    def _error_detail(response: httpx.Response, payload: dict[str, Any]) -> str:
        return pick_first(payload, ["message", "error", "error_description"]) or safe_str(
            response.text
        )[:220]

    async def _request_page(
        self,
        resource: ResourceName,
        page: int,
        records_per_page: int,
        cursor_hint: str,
        auth_state: AuthState,
    ) -> PageResult:
        page_size = self.effective_page_size(records_per_page, auth_state)
        url, params, headers = self._build_request(resource, page, page_size, cursor_hint, auth_state)
        response = await self._get(url, params, headers, self._timeout(auth_state))

        if response.status_code == 401 and auth_state.can_fall_back:
            auth_state.activate_legacy_fallback(self._settings.RDSTATION_LEGACY_API_URL)
            page_size = self.effective_page_size(records_per_page, auth_state)
            url, params, headers = self._build_request(
                resource, page, page_size, cursor_hint, auth_state
            )
            response = await self._get(url, params, headers, self._timeout(auth_state))

        payload = self._decode(response)

        if response.status_code == 401:
            if auth_state.mode == AuthMode.QUERY_TOKEN:
                raise RDStationAuthError(
                    "invalid_token. Legacy token mode was rejected as well; "
                    "check the account API token"
                )
            raise RDStationAuthError(
                "invalid_token. Send only the RD Station CRM access token, "
                "without the Bearer prefix"
            )

        if response.status_code in RETRIABLE_STATUSES:
            logger.warning(
                "rdstation.retriable_status",
                resource=resource.value,
                page=page,
                status_code=response.status_code,
            )
            raise RDStationTransientError(
                response.status_code, self._error_detail(response, payload)
            )

        if response.is_error:
            raise RDStationHTTPError(response.status_code, self._error_detail(response, payload))

        items = extract_items(payload, resource.value)
        pagination = detect_next_page(
            payload,
            page=page,
            records_per_page=page_size,
            received=len(items),
            link_header=response.headers.get("link"),
        )
        logger.info(
            "rdstation.page_fetched",
            resource=resource.value,
            page=page,
            received=len(items),
            has_next=pagination.has_next,
            auth_mode=auth_state.mode.value,
        )
        return PageResult(
            items=items,
            has_next=pagination.has_next,
            next_page=pagination.next_page,
            next_cursor=pagination.next_cursor,
        )

    async def fetch_page(
        self,
        resource: ResourceName,
        page: int,
        records_per_page: int,
        cursor_hint: str,
        auth_state: AuthState,
    ) -> PageResult:
        """Fetch one page of a CRM resource.

        Args:
            resource: List endpoint to read.
            page: 1-based page number (ignored when cursor_hint is a URL).
            records_per_page: Requested page size (capped at 50 in legacy mode).
            cursor_hint: Opaque next-cursor token or absolute next URL, or "".
            auth_state: Shared auth state; may be flipped to legacy mode.

        Returns:
            PageResult with the page items and continuation.

        Raises:
            RDStationAuthError: 401 that cannot be recovered.
            RDStationHTTPError: Non-retriable or exhausted failures.
        """
        retrying = AsyncRetrying(
            stop=stop_after_attempt(MAX_ATTEMPTS),
            wait=self._wait,
            retry=retry_if_exception_type(
                (httpx.TimeoutException, httpx.TransportError, RDStationTransientError)
            ),
            reraise=True,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    return await self._request_page(
                        resource, page, records_per_page, cursor_hint, auth_state
                    )
        except httpx.TimeoutException as exc:
            logger.error("rdstation.request_timeout", resource=resource.value, page=page)
            raise RDStationHTTPError(504, "timeout_rdstation_api") from exc
        except httpx.TransportError as exc:
            logger.error(
                "rdstation.network_error",
                resource=resource.value,
                page=page,
                error=str(exc),
            )
            raise RDStationHTTPError(500, "network failure reaching RD Station") from exc
        raise RDStationHTTPError(500, "persistent failure reaching RD Station")
