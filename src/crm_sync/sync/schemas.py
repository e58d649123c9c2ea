"""Pydantic schemas for the RD Station reconciliation engine.

Defines all structured types that cross module boundaries:
- Enums: ResourceName, SyncScope, AuthMode, LocalEntityType, OpportunityStatus,
  OpportunityStage, StopReason, JobStatus
- Invocation contract: SyncRequest, SyncCursor, SyncSummary, SyncResult
- Parsed external records: ParsedOrganization, ParsedContact, ParsedDeal
- Local store payloads: CompanyCreate/Read/Update, ContactCreate/Read,
  OpportunityCreate/Read/Update, IntegrationLinkRead, SyncJobRead
- Collaborators: PageResult, RegistryCompany
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, model_validator

from src.crm_sync.sync.normalizers import (
    SOUTH_STATES,
    as_dict,
    clamp_int,
    normalize_state,
    normalize_text,
    parse_bool,
    safe_str,
    sanitize_access_token,
)

# ── Enums ───────────────────────────────────────────────────────────────────


class ResourceName(str, Enum):
    """External CRM list endpoints, walked in this fixed order."""

    ORGANIZATIONS = "organizations"
    CONTACTS = "contacts"
    DEALS = "deals"


RESOURCE_ORDER: list[ResourceName] = [
    ResourceName.ORGANIZATIONS,
    ResourceName.CONTACTS,
    ResourceName.DEALS,
]


class SyncScope(str, Enum):
    """Which resources an invocation walks."""

    CUSTOMERS_WHATSAPP_ONLY = "customers_whatsapp_only"
    FULL = "full"
    SOUTH_CNPJ_ONLY = "south_cnpj_only"


class AuthMode(str, Enum):
    """Credential placement for the CRM API."""

    BEARER = "bearer"
    QUERY_TOKEN = "query_token"


class LocalEntityType(str, Enum):
    COMPANY = "company"
    CONTACT = "contact"
    OPPORTUNITY = "opportunity"


class OpportunityStatus(str, Enum):
    OPEN = "open"
    WON = "won"
    LOST = "lost"
    ON_HOLD = "on_hold"


class OpportunityStage(str, Enum):
    """Fixed ordered funnel. Declaration order is the funnel order."""

    LEAD = "lead"
    QUALIFICACAO = "qualificacao"
    PROPOSTA = "proposta"
    FOLLOW_UP = "follow_up"
    STAND_BY = "stand_by"
    GANHO = "ganho"
    PERDIDO = "perdido"


class StopReason(str, Enum):
    COMPLETED = "completed"
    EXECUTION_GUARD = "execution_guard"
    PAGE_CHUNK_LIMIT = "page_chunk_limit"
    DEALS_LIMIT = "deals_limit"


class JobStatus(str, Enum):
    RUNNING = "running"
    SUCCESS = "success"
    ERROR = "error"


# ── Cursor ──────────────────────────────────────────────────────────────────


def _per_resource(value: Any) -> dict[str, Any]:
    return {resource.value: value for resource in RESOURCE_ORDER}


class SyncCursor(BaseModel):
    """Resumable position of a logical sync, carried between invocations.

    resource_index only moves forward within a logical sync; page numbers only
    advance for the active resource. deals_imported carries the deals_limit
    budget across invocations.
    """

    resource_index: int = 0
    page_by_resource: dict[str, int] = Field(default_factory=lambda: _per_resource(1))
    next_by_resource: dict[str, str] = Field(default_factory=lambda: _per_resource(""))
    deals_imported: int = 0

    @classmethod
    def parse(cls, raw: Any, max_pages: int) -> SyncCursor:
        """Build a cursor from untrusted input, clamping every field."""
        data = as_dict(raw)
        pages = as_dict(data.get("page_by_resource"))
        tokens = as_dict(data.get("next_by_resource"))
        page_ceiling = max(1, max_pages)
        return cls(
            resource_index=clamp_int(data.get("resource_index"), 0, len(RESOURCE_ORDER), 0),
            page_by_resource={
                resource.value: clamp_int(pages.get(resource.value), 1, page_ceiling, 1)
                for resource in RESOURCE_ORDER
            },
            next_by_resource={
                resource.value: safe_str(tokens.get(resource.value))
                for resource in RESOURCE_ORDER
            },
            deals_imported=clamp_int(data.get("deals_imported"), 0, 1_000_000, 0),
        )

    @property
    def is_exhausted(self) -> bool:
        return self.resource_index >= len(RESOURCE_ORDER)

    @property
    def current_resource(self) -> ResourceName | None:
        if self.is_exhausted:
            return None
        return RESOURCE_ORDER[self.resource_index]

    def page_for(self, resource: ResourceName) -> int:
        return self.page_by_resource.get(resource.value, 1)

    def token_for(self, resource: ResourceName) -> str:
        return self.next_by_resource.get(resource.value, "")

    def advance_page(self, resource: ResourceName, next_page: int, next_token: str) -> None:
        """Move the active resource forward; never backwards."""
        current = self.page_for(resource)
        self.page_by_resource[resource.value] = max(current + 1, next_page)
        self.next_by_resource[resource.value] = next_token

    def advance_resource(self, resource: ResourceName) -> None:
        self.next_by_resource[resource.value] = ""
        self.resource_index += 1


# ── Request ─────────────────────────────────────────────────────────────────

_REQUEST_ALIASES: dict[str, tuple[str, ...]] = {
    "access_token": ("access_token", "accessToken", "token"),
    "api_url": ("api_url", "apiUrl"),
    "auth_mode": ("auth_mode", "authMode"),
    "sync_scope": ("sync_scope", "syncScope"),
    "deals_only": ("deals_only", "dealsOnly"),
    "deal_stage_filter": ("deal_stage_filter", "dealStageFilter"),
    "deal_pipeline_filter": ("deal_pipeline_filter", "dealPipelineFilter"),
    "deals_limit": ("deals_limit", "dealsLimit"),
    "allowed_states": ("allowed_states", "allowedStates"),
    "records_per_page": ("records_per_page", "recordsPerPage"),
    "max_pages": ("max_pages", "maxPages"),
    "page_chunk_size": ("page_chunk_size", "pageChunkSize"),
    "execution_guard_ms": ("execution_guard_ms", "executionGuardMs"),
    "dry_run": ("dry_run", "dryRun"),
    "enrichment_batch_limit": ("enrichment_batch_limit", "enrichmentBatchLimit"),
    "cursor": ("cursor",),
}

_FULL_SCOPE_ALIASES = ("full", "crm_full", "all", "everything", "deals")
_SOUTH_SCOPE_ALIASES = ("south_cnpj_only", "south", "sul")


def resolve_sync_scope(value: Any) -> SyncScope:
    raw = safe_str(value).lower()
    if raw in _FULL_SCOPE_ALIASES:
        return SyncScope.FULL
    if raw in _SOUTH_SCOPE_ALIASES:
        return SyncScope.SOUTH_CNPJ_ONLY
    return SyncScope.CUSTOMERS_WHATSAPP_ONLY


def sanitize_allowed_states(value: Any) -> list[str]:
    if isinstance(value, str):
        value = value.split(",")
    if not isinstance(value, (list, tuple, set)):
        return []
    states: list[str] = []
    for item in value:
        state = normalize_state(item)
        if state and state not in states:
            states.append(state)
    return states


class SyncRequest(BaseModel):
    """Entry-point payload for one engine invocation.

    Accepts snake_case and camelCase keys. Numeric knobs are clamped rather
    than rejected so that a stale client can never wedge a resumable sync.
    """

    access_token: str
    api_url: str | None = None
    auth_mode: str | None = None
    sync_scope: SyncScope = SyncScope.CUSTOMERS_WHATSAPP_ONLY
    deals_only: bool = False
    deal_stage_filter: str | None = None
    deal_pipeline_filter: str | None = None
    deals_limit: int = 0
    allowed_states: list[str] = Field(default_factory=list)
    records_per_page: int = 100
    max_pages: int = 50
    page_chunk_size: int = 4
    execution_guard_ms: int = 90000
    dry_run: bool = False
    enrichment_batch_limit: int | None = None
    cursor: SyncCursor | None = None

    @model_validator(mode="before")
    @classmethod
    def _coerce(cls, data: Any) -> Any:
        raw = as_dict(data)
        values: dict[str, Any] = {}
        for field_name, aliases in _REQUEST_ALIASES.items():
            for alias in aliases:
                if raw.get(alias) is not None:
                    values[field_name] = raw[alias]
                    break

        scope = resolve_sync_scope(values.get("sync_scope"))
        max_pages = clamp_int(values.get("max_pages"), 1, 500, 50)
        allowed_states = sanitize_allowed_states(values.get("allowed_states"))
        if scope == SyncScope.SOUTH_CNPJ_ONLY and not allowed_states:
            allowed_states = list(SOUTH_STATES)
        full = scope == SyncScope.FULL

        cursor_raw = values.get("cursor")
        if isinstance(cursor_raw, SyncCursor):
            cursor_raw = cursor_raw.model_dump()

        enrichment_limit = values.get("enrichment_batch_limit")
        return {
            "access_token": sanitize_access_token(values.get("access_token")),
            "api_url": safe_str(values.get("api_url")) or None,
            "auth_mode": safe_str(values.get("auth_mode")) or None,
            "sync_scope": scope,
            "deals_only": full and parse_bool(values.get("deals_only"), False),
            "deal_stage_filter": (safe_str(values.get("deal_stage_filter")) or None) if full else None,
            "deal_pipeline_filter": (
                (safe_str(values.get("deal_pipeline_filter")) or None) if full else None
            ),
            "deals_limit": clamp_int(values.get("deals_limit"), 0, 500, 0) if full else 0,
            "allowed_states": allowed_states,
            "records_per_page": clamp_int(values.get("records_per_page"), 1, 500, 100),
            "max_pages": max_pages,
            "page_chunk_size": clamp_int(values.get("page_chunk_size"), 1, 20, 4),
            "execution_guard_ms": clamp_int(
                values.get("execution_guard_ms"), 20000, 110000, 90000
            ),
            "dry_run": parse_bool(values.get("dry_run"), False),
            "enrichment_batch_limit": (
                None if enrichment_limit is None else clamp_int(enrichment_limit, 0, 100, 0)
            ),
            "cursor": (
                SyncCursor.parse(cursor_raw, max_pages) if isinstance(cursor_raw, dict) else None
            ),
        }

    @property
    def normalized_stage_filter(self) -> str:
        return normalize_text(self.deal_stage_filter).strip()

    @property
    def normalized_pipeline_filter(self) -> str:
        return normalize_text(self.deal_pipeline_filter).strip()


# ── Summary / Result ────────────────────────────────────────────────────────


class SyncSummary(BaseModel):
    """Per-invocation counters plus a capped sample of per-record errors."""

    pages_processed: int = 0
    records_received: int = 0
    processed: int = 0
    companies_processed: int = 0
    contacts_processed: int = 0
    opportunities_processed: int = 0
    companies_created: int = 0
    companies_updated: int = 0
    companies_skipped_existing: int = 0
    companies_skipped_by_state: int = 0
    companies_enriched: int = 0
    contacts_created: int = 0
    contacts_skipped_without_company: int = 0
    contacts_skipped_without_whatsapp: int = 0
    contacts_skipped_existing_whatsapp: int = 0
    opportunities_created: int = 0
    opportunities_updated: int = 0
    opportunities_matched_by_similarity: int = 0
    opportunities_matched_by_pipeline_stage_fallback: int = 0
    opportunities_skipped_by_scope: int = 0
    opportunities_skipped_by_pipeline_filter: int = 0
    opportunities_skipped_by_stage_filter: int = 0
    opportunities_skipped_without_company: int = 0
    links_updated: int = 0
    links_kept_existing: int = 0
    skipped_without_identifier: int = 0
    skipped_without_cnpj: int = 0
    skipped_invalid_cnpj: int = 0
    skipped_invalid_payload: int = 0
    enrichment_errors: int = 0
    errors: list[str] = Field(default_factory=list)

    def bump(self, counter: str, amount: int = 1) -> None:
        setattr(self, counter, getattr(self, counter) + amount)

    def add_error(self, message: str, cap: int = 30) -> None:
        if len(self.errors) < cap:
            self.errors.append(message)

    def counters(self) -> dict[str, int]:
        """All integer counters, without the error sample."""
        return self.model_dump(exclude={"errors"})


class SyncResult(SyncSummary):
    """Invocation response: counters, continuation and effective settings."""

    sync_job_id: str
    has_more: bool = False
    next_cursor: SyncCursor | None = None
    next_resource: ResourceName | None = None
    stop_reason: StopReason = StopReason.COMPLETED
    sync_scope: SyncScope = SyncScope.CUSTOMERS_WHATSAPP_ONLY
    api_url: str = ""
    api_url_used: str = ""
    auth_mode_used: AuthMode = AuthMode.BEARER
    dry_run: bool = False
    records_per_page: int = 100
    max_pages: int = 50
    page_chunk_size: int = 4
    execution_guard_ms: int = 90000
    deals_only: bool = False
    deal_stage_filter: str | None = None
    deal_pipeline_filter: str | None = None
    deals_limit: int = 0
    allowed_states: list[str] = Field(default_factory=list)
    started_at: datetime | None = None
    finished_at: datetime | None = None


# ── Parsed External Records ─────────────────────────────────────────────────


class ParsedOrganization(BaseModel):
    external_id: str = ""
    tax_id: str = ""
    legal_name: str = ""
    trade_name: str = ""
    email: str = ""
    phone: str | None = None
    city: str = ""
    state: str = ""
    address_full: str = ""


class ParsedContact(BaseModel):
    external_id: str = ""
    full_name: str = ""
    email: str = ""
    phone: str | None = None
    role_title: str = ""
    organization_external_id: str = ""
    organization_tax_id: str = ""


class ParsedDeal(BaseModel):
    external_id: str = ""
    title: str = ""
    organization_external_id: str = ""
    organization: ParsedOrganization | None = None
    contact_external_id: str = ""
    amount: float = 0.0
    status_raw: str = ""
    stage_raw: str = ""
    pipeline_raw: str = ""
    expected_close_date: str | None = None


# ── Local Store Payloads ────────────────────────────────────────────────────


class CompanyCreate(BaseModel):
    legal_name: str
    trade_name: str
    tax_id: str
    email: str | None = None
    phone: str | None = None
    address_full: str | None = None
    city: str | None = None
    state: str | None = None
    source_segment: str | None = None


class CompanyRead(CompanyCreate):
    id: str
    created_at: datetime | None = None
    updated_at: datetime | None = None


class CompanyUpdate(BaseModel):
    legal_name: str | None = None
    trade_name: str | None = None
    email: str | None = None
    phone: str | None = None
    address_full: str | None = None
    city: str | None = None
    state: str | None = None

    def is_empty(self) -> bool:
        return not self.model_dump(exclude_none=True)


class ContactCreate(BaseModel):
    company_id: str
    full_name: str
    phone: str
    email: str | None = None
    role_title: str | None = None


class ContactRead(ContactCreate):
    id: str
    created_at: datetime | None = None


class OpportunityCreate(BaseModel):
    company_id: str
    title: str
    stage: OpportunityStage = OpportunityStage.LEAD
    status: OpportunityStatus = OpportunityStatus.OPEN
    estimated_value: float = 0.0
    expected_close_date: str | None = None
    primary_contact_id: str | None = None


class OpportunityRead(OpportunityCreate):
    id: str
    created_at: datetime | None = None
    updated_at: datetime | None = None


class OpportunityUpdate(BaseModel):
    company_id: str | None = None
    primary_contact_id: str | None = None
    title: str | None = None
    stage: OpportunityStage | None = None
    status: OpportunityStatus | None = None
    estimated_value: float | None = None
    expected_close_date: str | None = None


class IntegrationLinkRead(BaseModel):
    id: str
    provider: str
    local_entity_type: LocalEntityType
    local_entity_id: str
    external_id: str
    last_synced_at: datetime | None = None


class SyncJobRead(BaseModel):
    id: str
    provider: str
    resource_scope: str
    status: JobStatus
    config: dict[str, Any] = Field(default_factory=dict)
    result_snapshot: dict[str, Any] | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None
    error_message: str | None = None


# ── Collaborators ───────────────────────────────────────────────────────────


class PageResult(BaseModel):
    """One page from a CRM list endpoint plus the detected continuation."""

    items: list[Any] = Field(default_factory=list)
    has_next: bool = False
    next_page: int = 1
    next_cursor: str = ""


class RegistryCompany(BaseModel):
    """Company data returned by the public registry lookup."""

    tax_id: str
    legal_name: str = ""
    trade_name: str = ""
    email: str = ""
    phone: str | None = None
    address_full: str = ""
    city: str = ""
    state: str = ""
