"""Abstract storage contract used by the reconciliation engine.

CRMStore defines the select/insert/update operations the engine needs over
the five collections it touches: companies, contacts, opportunities,
integration_links and sync_jobs. The engine never deletes anything.

Implementations:
- PostgresStore (src.crm_sync.sync.postgres): SQLAlchemy async, production
- tests use an in-memory fake implementing the same contract

Uniqueness collisions MUST be raised as UniqueViolationError so the upsert
engine can run its insert-then-reconcile path.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any

from src.crm_sync.sync.schemas import (
    CompanyCreate,
    CompanyRead,
    CompanyUpdate,
    ContactCreate,
    ContactRead,
    IntegrationLinkRead,
    JobStatus,
    LocalEntityType,
    OpportunityCreate,
    OpportunityRead,
    OpportunityUpdate,
    SyncJobRead,
)


class CRMStore(ABC):
    """Read/write contract over the local CRM tables."""

    # ── Integration links ───────────────────────────────────────────────────

    @abstractmethod
    async def find_linked_local_id(
        self,
        provider: str,
        entity_type: LocalEntityType,
        external_id: str,
    ) -> str | None:
        """Return the local entity id linked to external_id, if any."""
        ...

    @abstractmethod
    async def find_links_for_local_ids(
        self,
        provider: str,
        entity_type: LocalEntityType,
        local_ids: list[str],
    ) -> dict[str, str]:
        """Return {local_entity_id: external_id} for the linked subset of local_ids."""
        ...

    @abstractmethod
    async def upsert_link(
        self,
        provider: str,
        entity_type: LocalEntityType,
        local_id: str,
        external_id: str,
    ) -> IntegrationLinkRead:
        """Create or refresh a link.

        Match by external id (re-pointing local_entity_id), else insert.
        A local entity already linked to a different external id keeps that
        link and UniqueViolationError is raised. last_synced_at is always
        refreshed.
        """
        ...

    # ── Companies ───────────────────────────────────────────────────────────

    @abstractmethod
    async def get_company(self, company_id: str) -> CompanyRead | None:
        ...

    @abstractmethod
    async def find_company_by_tax_id(self, tax_id: str) -> CompanyRead | None:
        """Find a company by tax id stored as raw digits or formatted."""
        ...

    @abstractmethod
    async def insert_company(self, data: CompanyCreate) -> CompanyRead:
        """Insert a company. Raises UniqueViolationError on a tax id collision."""
        ...

    @abstractmethod
    async def update_company(self, company_id: str, data: CompanyUpdate) -> CompanyRead | None:
        """Apply the non-None fields of data."""
        ...

    @abstractmethod
    async def list_companies_by_source(
        self,
        source_segment: str,
        limit: int,
    ) -> list[CompanyRead]:
        """Most recently updated companies tagged with source_segment."""
        ...

    # ── Contacts ────────────────────────────────────────────────────────────

    @abstractmethod
    async def find_contact_by_phones(self, phones: list[str]) -> ContactRead | None:
        """Find any contact whose phone equals one of the candidate representations."""
        ...

    @abstractmethod
    async def insert_contact(self, data: ContactCreate) -> ContactRead:
        ...

    # ── Opportunities ───────────────────────────────────────────────────────

    @abstractmethod
    async def get_opportunity(self, opportunity_id: str) -> OpportunityRead | None:
        ...

    @abstractmethod
    async def list_opportunities_for_company(self, company_id: str) -> list[OpportunityRead]:
        ...

    @abstractmethod
    async def insert_opportunity(self, data: OpportunityCreate) -> OpportunityRead:
        ...

    @abstractmethod
    async def update_opportunity(
        self,
        opportunity_id: str,
        data: OpportunityUpdate,
    ) -> OpportunityRead | None:
        ...

    # ── Sync jobs ───────────────────────────────────────────────────────────

    @abstractmethod
    async def create_sync_job(
        self,
        provider: str,
        resource_scope: str,
        config: dict[str, Any],
    ) -> SyncJobRead:
        """Insert a job row in running status."""
        ...

    @abstractmethod
    async def finish_sync_job(
        self,
        job_id: str,
        status: JobStatus,
        result_snapshot: dict[str, Any] | None = None,
        error_message: str | None = None,
    ) -> None:
        """Mark a job terminal (success or error) and stamp finished_at."""
        ...
