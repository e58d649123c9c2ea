"""Unit tests for the RD Station CRM client, auth state and pagination.

All HTTP traffic is mocked by patching httpx.AsyncClient.get; tenacity
waits are disabled with wait_none() so retries run instantly.
"""

from __future__ import annotations

from unittest.mock import AsyncMock, patch

import httpx
import pytest
from tenacity import wait_none

from src.crm_sync.config import Settings
from src.crm_sync.sync.errors import RDStationAuthError, RDStationHTTPError
from src.crm_sync.sync.rdstation.auth import build_auth_state, resolve_legacy_api_url
from src.crm_sync.sync.rdstation.client import RDStationClient
from src.crm_sync.sync.rdstation.pagination import (
    detect_next_page,
    extract_items,
    parse_link_header_next,
)
from src.crm_sync.sync.schemas import AuthMode, ResourceName

PRIMARY_URL = "https://api.rd.services/crm/v2"
LEGACY_URL = "https://crm.rdstation.com/api/v1"


def _response(status_code: int, payload: dict | None = None, headers: dict | None = None):
    return httpx.Response(
        status_code,
        json=payload if payload is not None else {},
        headers=headers,
        request=httpx.Request("GET", PRIMARY_URL),
    )


def _page(size: int, resource: str = "organizations") -> dict:
    return {resource: [{"id": f"{resource}-{i}"} for i in range(size)]}


@pytest.fixture
def client() -> RDStationClient:
    return RDStationClient("tok-123", settings=Settings(_env_file=None), wait=wait_none())


def _auth(mode: str | None = None, api_url: str = PRIMARY_URL):
    return build_auth_state(mode, api_url, LEGACY_URL)


# ── Pagination ─────────────────────────────────────────────────────────────


class TestPaginationTermination:
    @pytest.mark.asyncio
    async def test_short_third_page_stops(self, client):
        """Pages of [100, 100, 37] with 100 per page end after the third page."""
        responses = [_response(200, _page(100)), _response(200, _page(100)), _response(200, _page(37))]
        auth_state = _auth()

        with patch("httpx.AsyncClient.get", new_callable=AsyncMock, side_effect=responses):
            results = [
                await client.fetch_page(ResourceName.ORGANIZATIONS, page, 100, "", auth_state)
                for page in (1, 2, 3)
            ]

        assert [len(r.items) for r in results] == [100, 100, 37]
        assert [r.has_next for r in results] == [True, True, False]
        assert results[0].next_page == 2
        assert results[1].next_page == 3


class TestDetectNextPage:
    def test_explicit_next_token(self):
        result = detect_next_page({"meta": {"next_page": "abc"}}, 1, 100, 100)
        assert result.has_next
        assert result.next_cursor == "abc"
        assert result.next_page == 2

    def test_link_header(self):
        header = '<https://api.rd.services/crm/v2/deals?page=3>; rel="next"'
        result = detect_next_page({}, 2, 100, 100, link_header=header)
        assert result.has_next
        assert result.next_cursor == "https://api.rd.services/crm/v2/deals?page=3"

    def test_has_more_false_overrides_full_page(self):
        result = detect_next_page({"has_more": False}, 1, 100, 100)
        assert not result.has_next

    def test_has_more_true_on_short_page(self):
        result = detect_next_page({"hasMore": True}, 1, 100, 10)
        assert result.has_next

    def test_total_pages(self):
        assert detect_next_page({"total_pages": 3}, 2, 100, 5).has_next
        assert not detect_next_page({"total_pages": 3}, 3, 100, 100).has_next

    def test_boolean_next_is_not_a_token(self):
        result = detect_next_page({"next": True, "has_more": False}, 1, 100, 100)
        assert not result.has_next

    def test_empty_page_ends(self):
        assert not detect_next_page({}, 1, 100, 0).has_next

    def test_parse_link_header_without_next(self):
        assert parse_link_header_next('<https://x>; rel="prev"') == ""
        assert parse_link_header_next(None) == ""


class TestExtractItems:
    def test_resource_key(self):
        assert extract_items({"deals": [1, 2]}, "deals") == [1, 2]

    def test_nested_data_object(self):
        assert extract_items({"data": {"items": [1]}}, "contacts") == [1]

    def test_data_list(self):
        assert extract_items({"data": [3]}, "contacts") == [3]

    def test_unknown_shape(self):
        assert extract_items({"foo": "bar"}, "contacts") == []
        assert extract_items(None, "contacts") == []


# ── Requests and Auth ──────────────────────────────────────────────────────


class TestRequests:
    @pytest.mark.asyncio
    async def test_bearer_request_shape(self, client):
        with patch(
            "httpx.AsyncClient.get",
            new_callable=AsyncMock,
            return_value=_response(200, _page(2, "contacts")),
        ) as mock_get:
            await client.fetch_page(ResourceName.CONTACTS, 4, 25, "", _auth())

        url = mock_get.call_args.args[0]
        params = mock_get.call_args.kwargs["params"]
        headers = mock_get.call_args.kwargs["headers"]
        assert url == f"{PRIMARY_URL}/contacts"
        assert params == {"page": "4", "limit": "25", "per_page": "25"}
        assert headers["Authorization"] == "Bearer tok-123"
        assert "token" not in params

    @pytest.mark.asyncio
    async def test_opaque_cursor_is_sent_as_params(self, client):
        with patch(
            "httpx.AsyncClient.get", new_callable=AsyncMock, return_value=_response(200, _page(1))
        ) as mock_get:
            await client.fetch_page(ResourceName.ORGANIZATIONS, 2, 100, "cur-2", _auth())

        params = mock_get.call_args.kwargs["params"]
        assert params["cursor"] == "cur-2"
        assert params["next_page"] == "cur-2"

    @pytest.mark.asyncio
    async def test_absolute_next_url_is_followed(self, client):
        next_url = f"{PRIMARY_URL}/deals?page=2&token_page=xyz"
        with patch(
            "httpx.AsyncClient.get", new_callable=AsyncMock, return_value=_response(200, _page(1, "deals"))
        ) as mock_get:
            await client.fetch_page(ResourceName.DEALS, 2, 100, next_url, _auth())

        assert mock_get.call_args.args[0] == next_url
        assert mock_get.call_args.kwargs["params"] == {}

    @pytest.mark.asyncio
    async def test_legacy_mode_never_follows_primary_host_url(self, client):
        auth_state = _auth("query_token")
        next_url = f"{PRIMARY_URL}/deals?page=2"
        with patch(
            "httpx.AsyncClient.get", new_callable=AsyncMock, return_value=_response(200, _page(1, "deals"))
        ) as mock_get:
            await client.fetch_page(ResourceName.DEALS, 2, 100, next_url, auth_state)

        assert mock_get.call_args.args[0] == f"{LEGACY_URL}/deals"
        params = mock_get.call_args.kwargs["params"]
        assert params["page"] == "2"
        assert params["limit"] == "50"
        assert params["token"] == "tok-123"
        assert "cursor" not in params


class TestAuthFallback:
    @pytest.mark.asyncio
    async def test_401_switches_to_legacy_token_mode(self, client):
        auth_state = _auth()
        responses = [_response(401, {"message": "unauthorized"}), _response(200, _page(3))]

        with patch(
            "httpx.AsyncClient.get", new_callable=AsyncMock, side_effect=responses
        ) as mock_get:
            result = await client.fetch_page(ResourceName.ORGANIZATIONS, 1, 100, "", auth_state)

        assert len(result.items) == 3
        assert auth_state.mode == AuthMode.QUERY_TOKEN
        assert auth_state.api_url == LEGACY_URL
        assert auth_state.fallback_activated
        retry_call = mock_get.call_args_list[1]
        assert retry_call.args[0] == f"{LEGACY_URL}/organizations"
        assert retry_call.kwargs["params"]["token"] == "tok-123"
        assert retry_call.kwargs["params"]["limit"] == "50"
        assert "Authorization" not in retry_call.kwargs["headers"]

    @pytest.mark.asyncio
    async def test_fallback_is_one_way(self, client):
        auth_state = _auth()
        responses = [_response(401), _response(401)]

        with patch("httpx.AsyncClient.get", new_callable=AsyncMock, side_effect=responses):
            with pytest.raises(RDStationAuthError) as exc_info:
                await client.fetch_page(ResourceName.ORGANIZATIONS, 1, 100, "", auth_state)

        assert exc_info.value.status_code == 401
        assert exc_info.value.is_client_error
        assert auth_state.mode == AuthMode.QUERY_TOKEN

    @pytest.mark.asyncio
    async def test_pinned_bearer_mode_does_not_fall_back(self, client):
        auth_state = _auth("bearer")
        with patch(
            "httpx.AsyncClient.get", new_callable=AsyncMock, return_value=_response(401)
        ) as mock_get:
            with pytest.raises(RDStationAuthError):
                await client.fetch_page(ResourceName.ORGANIZATIONS, 1, 100, "", auth_state)

        assert mock_get.call_count == 1
        assert auth_state.mode == AuthMode.BEARER

    def test_legacy_url_derivation(self):
        assert resolve_legacy_api_url(PRIMARY_URL, LEGACY_URL) == LEGACY_URL
        assert resolve_legacy_api_url("https://crm.example.com/crm/v2", LEGACY_URL) == (
            "https://crm.example.com/api/v1"
        )
        assert resolve_legacy_api_url("", LEGACY_URL) == LEGACY_URL
        assert resolve_legacy_api_url("not a url", LEGACY_URL) == LEGACY_URL


class TestRetries:
    @pytest.mark.asyncio
    async def test_transient_status_is_retried(self, client):
        responses = [_response(503), _response(429), _response(200, _page(5))]
        with patch(
            "httpx.AsyncClient.get", new_callable=AsyncMock, side_effect=responses
        ) as mock_get:
            result = await client.fetch_page(ResourceName.ORGANIZATIONS, 1, 100, "", _auth())

        assert len(result.items) == 5
        assert mock_get.call_count == 3

    @pytest.mark.asyncio
    async def test_exhausted_transient_status_raises(self, client):
        with patch(
            "httpx.AsyncClient.get", new_callable=AsyncMock, return_value=_response(502)
        ) as mock_get:
            with pytest.raises(RDStationHTTPError) as exc_info:
                await client.fetch_page(ResourceName.ORGANIZATIONS, 1, 100, "", _auth())

        assert exc_info.value.status_code == 502
        assert not exc_info.value.is_client_error
        assert mock_get.call_count == 3

    @pytest.mark.asyncio
    async def test_client_error_is_not_retried(self, client):
        with patch(
            "httpx.AsyncClient.get",
            new_callable=AsyncMock,
            return_value=_response(400, {"message": "bad filter"}),
        ) as mock_get:
            with pytest.raises(RDStationHTTPError) as exc_info:
                await client.fetch_page(ResourceName.ORGANIZATIONS, 1, 100, "", _auth())

        assert exc_info.value.status_code == 400
        assert "bad filter" in str(exc_info.value)
        assert mock_get.call_count == 1

    @pytest.mark.asyncio
    async def test_timeouts_surface_as_504(self, client):
        with patch(
            "httpx.AsyncClient.get",
            new_callable=AsyncMock,
            side_effect=httpx.ReadTimeout("timed out"),
        ) as mock_get:
            with pytest.raises(RDStationHTTPError) as exc_info:
                await client.fetch_page(ResourceName.ORGANIZATIONS, 1, 100, "", _auth())

        assert exc_info.value.status_code == 504
        assert mock_get.call_count == 3

    @pytest.mark.asyncio
    async def test_network_errors_surface_as_500(self, client):
        with patch(
            "httpx.AsyncClient.get",
            new_callable=AsyncMock,
            side_effect=httpx.ConnectError("refused"),
        ):
            with pytest.raises(RDStationHTTPError) as exc_info:
                await client.fetch_page(ResourceName.ORGANIZATIONS, 1, 100, "", _auth())

        assert exc_info.value.status_code == 500
