"""Opportunistic company enrichment from the public company registry.

A company needs enrichment when its legal or trade name, city or state is
empty, or when its address is weak (empty, a bare state code, or the
degenerate "UF, CEP 00000-000" shape). Enrichment patches only fields that
are currently empty; populated fields are never overwritten.

Runs inline right after a company is created or linked, and as a bounded
batch sweep over companies imported by this integration so older imports
are backfilled over time. Registry and storage failures are counted and
sampled on the summary, never raised.
"""

from __future__ import annotations

from collections.abc import Callable

import structlog

from src.crm_sync.sync.errors import RegistryLookupError, StoreError
from src.crm_sync.sync.normalizers import is_weak_address, safe_str
from src.crm_sync.sync.registry import CompanyRegistryClient
from src.crm_sync.sync.schemas import CompanyRead, CompanyUpdate, RegistryCompany, SyncSummary
from src.crm_sync.sync.store import CRMStore

logger = structlog.get_logger(__name__)

SOURCE_SEGMENT = "RD Station"


def needs_enrichment(company: CompanyRead) -> bool:
    return (
        not safe_str(company.legal_name)
        or not safe_str(company.trade_name)
        or not safe_str(company.city)
        or not safe_str(company.state)
        or is_weak_address(company.address_full)
    )


def build_enrichment_patch(company: CompanyRead, found: RegistryCompany) -> CompanyUpdate:
    """Patch filling only the empty fields of company from a registry result."""

    def fill(current: str | None, incoming: str | None) -> str | None:
        if safe_str(current) or not safe_str(incoming):
            return None
        return incoming

    address = None
    if is_weak_address(company.address_full) and not is_weak_address(found.address_full):
        address = found.address_full

    return CompanyUpdate(
        legal_name=fill(company.legal_name, found.legal_name),
        trade_name=fill(company.trade_name, found.trade_name or found.legal_name),
        email=fill(company.email, found.email),
        phone=fill(company.phone, found.phone),
        address_full=address,
        city=fill(company.city, found.city),
        state=fill(company.state, found.state),
    )


class CompanyEnricher:
    """Fills empty company fields from the registry.

    Args:
        store: CRMStore used to read and patch companies.
        registry: Registry client (cached per invocation).
        max_errors: Cap on sampled error messages.
    """

    def __init__(
        self,
        store: CRMStore,
        registry: CompanyRegistryClient,
        max_errors: int = 30,
    ) -> None:
        self._store = store
        self._registry = registry
        self._max_errors = max_errors

    needs_enrichment = staticmethod(needs_enrichment)

    async def enrich(
        self,
        company: CompanyRead,
        summary: SyncSummary,
        dry_run: bool = False,
    ) -> bool:
        """Enrich one company in place.

        Args:
            company: Current company row.
            summary: Invocation summary receiving counters and errors.
            dry_run: When True, the registry is consulted but nothing is written.

        Returns:
            True when at least one field was (or would be) filled.
        """
        if not needs_enrichment(company):
            return False

        try:
            found = await self._registry.lookup(company.tax_id)
        except RegistryLookupError as exc:
            summary.bump("enrichment_errors")
            summary.add_error(f"enrichment:{company.id}:{exc}", self._max_errors)
            return False
        if found is None:
            return False

        patch = build_enrichment_patch(company, found)
        if patch.is_empty():
            return False

        if not dry_run:
            try:
                await self._store.update_company(company.id, patch)
            except StoreError as exc:
                summary.bump("enrichment_errors")
                summary.add_error(f"enrichment:{company.id}:{exc}", self._max_errors)
                return False

        summary.bump("companies_enriched")
        logger.info(
            "enrichment.company_enriched",
            company_id=company.id,
            fields=sorted(patch.model_dump(exclude_none=True)),
            dry_run=dry_run,
        )
        return True

    async def sweep(
        self,
        summary: SyncSummary,
        scan_limit: int,
        batch_limit: int,
        has_time: Callable[[], bool] | None = None,
    ) -> int:
        """Backfill previously imported companies.

        Scans up to scan_limit companies tagged with the integration source
        segment and enriches at most batch_limit of those that need it,
        stopping early when has_time() turns False.

        Returns:
            Number of companies enriched.
        """
        if batch_limit <= 0 or scan_limit <= 0:
            return 0

        companies = await self._store.list_companies_by_source(SOURCE_SEGMENT, scan_limit)
        pending = [company for company in companies if needs_enrichment(company)][:batch_limit]

        enriched = 0
        for company in pending:
            if has_time is not None and not has_time():
                break
            if await self.enrich(company, summary):
                enriched += 1

        logger.info(
            "enrichment.sweep_complete",
            scanned=len(companies),
            attempted=len(pending),
            enriched=enriched,
        )
        return enriched
