"""Identity resolution between RD Station records and local entities.

Resolution order per entity type:
- Companies: integration link by external id, then tax id
- Contacts: integration link by external id, then any phone representation
- Opportunities: integration link by external id, then fuzzy match against
  the same company's opportunities that are not already linked to another
  deal

Natural-key and fuzzy matches only bootstrap a link; once a link exists it
always wins. IdentityResolver keeps an external-org-id -> company-id cache
for the lifetime of one invocation.
"""

from __future__ import annotations

import structlog
from pydantic import BaseModel

from src.crm_sync.sync.matching import MatchDecision, MatchingThresholds, select_best_match
from src.crm_sync.sync.normalizers import phone_lookup_candidates
from src.crm_sync.sync.schemas import (
    LocalEntityType,
    OpportunityStage,
    OpportunityStatus,
    ParsedContact,
    ParsedDeal,
    ParsedOrganization,
)
from src.crm_sync.sync.store import CRMStore

logger = structlog.get_logger(__name__)


class CompanyResolution(BaseModel):
    company_id: str | None = None
    via: str = "none"

    @property
    def found(self) -> bool:
        return self.company_id is not None


class OpportunityResolution(BaseModel):
    opportunity_id: str | None = None
    via: str = "none"
    decision: MatchDecision | None = None


class IdentityResolver:
    """Maps external records to existing local entities without writing.

    Args:
        store: CRMStore used for link and natural-key lookups.
        provider: Integration provider key stored on links.
        thresholds: Fuzzy opportunity matching constants.
    """

    def __init__(
        self,
        store: CRMStore,
        provider: str = "rdstation",
        thresholds: MatchingThresholds | None = None,
    ) -> None:
        self._store = store
        self._provider = provider
        self._thresholds = thresholds or MatchingThresholds()
        self._company_cache: dict[str, str] = {}

    def remember_company(self, external_id: str, company_id: str) -> None:
        if external_id and company_id:
            self._company_cache[external_id] = company_id

    async def _linked(self, entity_type: LocalEntityType, external_id: str) -> str | None:
        if not external_id:
            return None
        return await self._store.find_linked_local_id(self._provider, entity_type, external_id)

    async def _by_external_org(self, external_id: str) -> CompanyResolution:
        if not external_id:
            return CompanyResolution()
        cached = self._company_cache.get(external_id)
        if cached:
            return CompanyResolution(company_id=cached, via="cache")
        linked = await self._linked(LocalEntityType.COMPANY, external_id)
        if linked:
            self.remember_company(external_id, linked)
            return CompanyResolution(company_id=linked, via="link")
        return CompanyResolution()

    async def _by_tax_id(self, tax_id: str) -> CompanyResolution:
        if not tax_id:
            return CompanyResolution()
        company = await self._store.find_company_by_tax_id(tax_id)
        if company is None:
            return CompanyResolution()
        return CompanyResolution(company_id=company.id, via="tax_id")

    # ── Companies ───────────────────────────────────────────────────────────

    async def resolve_company(self, organization: ParsedOrganization) -> CompanyResolution:
        """Resolve an organization by link, then by tax id."""
        resolution = await self._by_external_org(organization.external_id)
        if resolution.found:
            return resolution
        return await self._by_tax_id(organization.tax_id)

    async def resolve_company_for_contact(self, contact: ParsedContact) -> CompanyResolution:
        resolution = await self._by_external_org(contact.organization_external_id)
        if resolution.found:
            return resolution
        return await self._by_tax_id(contact.organization_tax_id)

    async def resolve_company_for_deal(self, deal: ParsedDeal) -> CompanyResolution:
        resolution = await self._by_external_org(deal.organization_external_id)
        if resolution.found:
            return resolution
        if deal.organization is None:
            return CompanyResolution()
        if deal.organization.external_id != deal.organization_external_id:
            resolution = await self._by_external_org(deal.organization.external_id)
            if resolution.found:
                return resolution
        return await self._by_tax_id(deal.organization.tax_id)

    # ── Contacts ────────────────────────────────────────────────────────────

    async def resolve_contact(self, contact: ParsedContact) -> tuple[str | None, str]:
        """Resolve a contact by link, then by phone lookup candidates.

        Returns:
            (contact_id or None, via) where via is "link", "phone" or "none".
        """
        linked = await self._linked(LocalEntityType.CONTACT, contact.external_id)
        if linked:
            return linked, "link"

        candidates = phone_lookup_candidates(contact.phone)
        if not candidates:
            return None, "none"
        existing = await self._store.find_contact_by_phones(candidates)
        if existing is None:
            return None, "none"
        return existing.id, "phone"

    async def resolve_contact_id(self, external_id: str) -> str | None:
        """Linked local contact for a deal's contact reference."""
        return await self._linked(LocalEntityType.CONTACT, external_id)

    # ── Opportunities ───────────────────────────────────────────────────────

    async def resolve_opportunity(
        self,
        deal: ParsedDeal,
        company_id: str,
        stage: OpportunityStage,
        status: OpportunityStatus,
    ) -> OpportunityResolution:
        """Resolve a deal to an existing opportunity.

        Args:
            deal: Parsed deal.
            company_id: Resolved local company of the deal.
            stage: Mapped deal stage.
            status: Mapped deal status.

        Returns:
            OpportunityResolution; opportunity_id is None when a new
            opportunity should be created.
        """
        linked = await self._linked(LocalEntityType.OPPORTUNITY, deal.external_id)
        if linked:
            existing = await self._store.get_opportunity(linked)
            if existing is not None:
                return OpportunityResolution(opportunity_id=existing.id, via="link")
            logger.warning(
                "resolver.dangling_opportunity_link",
                external_id=deal.external_id,
                opportunity_id=linked,
            )

        candidates = await self._store.list_opportunities_for_company(company_id)
        if not candidates:
            return OpportunityResolution()

        links = await self._store.find_links_for_local_ids(
            self._provider,
            LocalEntityType.OPPORTUNITY,
            [candidate.id for candidate in candidates],
        )
        free = [
            candidate
            for candidate in candidates
            if links.get(candidate.id) in (None, deal.external_id)
        ]
        decision = select_best_match(
            deal.title,
            deal.amount,
            stage,
            status,
            free,
            self._thresholds,
        )
        if decision is None:
            return OpportunityResolution()

        logger.info(
            "resolver.opportunity_matched_by_similarity",
            external_id=deal.external_id,
            opportunity_id=decision.opportunity_id,
            rule=decision.rule,
            score=round(decision.score.score, 4),
        )
        return OpportunityResolution(
            opportunity_id=decision.opportunity_id,
            via="similarity",
            decision=decision,
        )
