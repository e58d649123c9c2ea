"""RD Station CRM API access -- paginated list client with one-way auth fallback.

Provides:
- RDStationClient: One page per call, tenacity retries, legacy auth fallback
- AuthState / build_auth_state: Bearer -> query_token state machine
- detect_next_page / extract_items: Pagination convention detection
"""

from src.crm_sync.sync.rdstation.auth import AuthState, build_auth_state, resolve_legacy_api_url
from src.crm_sync.sync.rdstation.client import RDStationClient
from src.crm_sync.sync.rdstation.pagination import detect_next_page, extract_items

__all__ = [
    "AuthState",
    "RDStationClient",
    "build_auth_state",
    "detect_next_page",
    "extract_items",
    "resolve_legacy_api_url",
]
