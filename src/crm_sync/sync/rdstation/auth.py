"""Auth-mode state for the RD Station CRM API.

RD Station accepts two credential placements:
- bearer: ``Authorization: Bearer <token>`` against the v2 API
- query_token: ``?token=<token>`` against the legacy v1 API

AuthState is a one-way two-state machine. A run that starts in bearer mode
with fallback allowed switches to query_token on the first 401 and never
switches back. It is owned by the orchestrator and mutated in place by the
client so the switch survives across pages of the same invocation.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from urllib.parse import urlparse

import structlog

from src.crm_sync.sync.normalizers import safe_str
from src.crm_sync.sync.schemas import AuthMode

logger = structlog.get_logger(__name__)

LEGACY_MODE_ALIASES = ("query_token", "querytoken", "legacy", "token_query")
PRIMARY_API_HOST = "api.rd.services"


def resolve_legacy_api_url(api_url: str, legacy_default: str) -> str:
    """Derive the legacy v1 base URL from a configured base URL.

    The v2 host has no legacy counterpart, so it maps to the default legacy
    URL. Other hosts keep their host and swap ``/crm/v2`` for ``/api/v1``.
    """
    normalized = safe_str(api_url).rstrip("/")
    if not normalized:
        return legacy_default
    if re.search(r"/api/v1$", normalized, flags=re.IGNORECASE):
        return normalized

    parsed = urlparse(normalized)
    if not parsed.scheme or not parsed.netloc:
        return legacy_default
    if parsed.hostname == PRIMARY_API_HOST:
        return legacy_default

    return re.sub(r"/crm/v2$", "/api/v1", normalized, flags=re.IGNORECASE)


@dataclass
class AuthState:
    """Current credential placement and base URL for a run."""

    mode: AuthMode
    api_url: str
    allow_legacy_fallback: bool
    fallback_activated: bool = False

    @property
    def can_fall_back(self) -> bool:
        return (
            self.mode == AuthMode.BEARER
            and self.allow_legacy_fallback
            and not self.fallback_activated
        )

    def activate_legacy_fallback(self, legacy_default: str) -> None:
        """Switch to query_token mode for the rest of the run."""
        if not self.can_fall_back:
            return
        previous_url = self.api_url
        self.mode = AuthMode.QUERY_TOKEN
        self.api_url = resolve_legacy_api_url(self.api_url, legacy_default)
        self.fallback_activated = True
        logger.warning(
            "rdstation.auth_fallback_activated",
            previous_api_url=previous_url,
            api_url=self.api_url,
        )


def build_auth_state(auth_mode: str | None, api_url: str, legacy_default: str) -> AuthState:
    """Build the initial auth state from the requested mode.

    Args:
        auth_mode: Requested mode. Legacy aliases pin query_token mode,
            "bearer" pins bearer mode, anything else is bearer with fallback.
        api_url: Configured (primary) base URL.
        legacy_default: Default legacy base URL.

    Returns:
        A fresh AuthState.
    """
    mode = safe_str(auth_mode).lower()
    if mode in LEGACY_MODE_ALIASES:
        return AuthState(
            mode=AuthMode.QUERY_TOKEN,
            api_url=resolve_legacy_api_url(api_url, legacy_default),
            allow_legacy_fallback=False,
        )
    if mode == AuthMode.BEARER.value:
        return AuthState(mode=AuthMode.BEARER, api_url=api_url, allow_legacy_fallback=False)
    return AuthState(mode=AuthMode.BEARER, api_url=api_url, allow_legacy_fallback=True)
