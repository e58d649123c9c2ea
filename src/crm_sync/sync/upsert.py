"""Idempotent create/patch of companies, contacts and opportunities.

UpsertEngine turns parsed RD Station records into local rows:
- Companies: skip without identifier/tax id, link or patch existing rows
  (empty fields only), create new rows only for valid tax ids inside the
  allowed states, reconcile tax-id insert races, enrich inline
- Contacts: require a company and a phone; created once, never patched
- Opportunities: stage/pipeline filters, link or fuzzy match, create or patch

Every successful create or match refreshes the integration link, unless the
matched entity is already linked to another external record. In dry-run
mode all lookups run and skip counters are kept, but nothing is written.
"""

from __future__ import annotations

import structlog

from src.crm_sync.sync.enrichment import SOURCE_SEGMENT, CompanyEnricher
from src.crm_sync.sync.errors import RegistryLookupError, UniqueViolationError
from src.crm_sync.sync.matching import map_opportunity_stage, map_opportunity_status
from src.crm_sync.sync.normalizers import format_tax_id, is_valid_tax_id, normalize_text, safe_str
from src.crm_sync.sync.registry import CompanyRegistryClient
from src.crm_sync.sync.resolver import IdentityResolver
from src.crm_sync.sync.schemas import (
    CompanyCreate,
    CompanyRead,
    CompanyUpdate,
    ContactCreate,
    LocalEntityType,
    OpportunityCreate,
    OpportunityStage,
    OpportunityUpdate,
    ParsedContact,
    ParsedDeal,
    ParsedOrganization,
    SyncSummary,
)
from src.crm_sync.sync.store import CRMStore

logger = structlog.get_logger(__name__)


def _fill(current: str | None, incoming: str | None) -> str | None:
    if safe_str(current) or not safe_str(incoming):
        return None
    return incoming


def company_patch_from_organization(company: CompanyRead, org: ParsedOrganization) -> CompanyUpdate:
    """Empty-fields-only patch of an existing company from an incoming organization."""
    return CompanyUpdate(
        legal_name=_fill(company.legal_name, org.legal_name),
        trade_name=_fill(company.trade_name, org.trade_name),
        email=_fill(company.email, org.email),
        phone=_fill(company.phone, org.phone),
        address_full=_fill(company.address_full, org.address_full),
        city=_fill(company.city, org.city),
        state=_fill(company.state, org.state),
    )


def matches_stage_filter(stage_filter: str, stage: OpportunityStage, stage_raw: str) -> bool:
    """A normalized stage filter matches the mapped stage or a substring of the raw stage."""
    if not stage_filter:
        return True
    return stage_filter == stage.value or stage_filter in normalize_text(stage_raw)


def matches_pipeline_filter(pipeline_filter: str, pipeline_raw: str) -> bool:
    if not pipeline_filter:
        return True
    return pipeline_filter in normalize_text(pipeline_raw)


class UpsertEngine:
    """Writes parsed records into the local store and keeps links current.

    Args:
        store: CRMStore for reads and writes.
        resolver: IdentityResolver sharing this invocation's company cache.
        enricher: CompanyEnricher for inline enrichment.
        registry: Registry client used to learn a missing state.
        summary: Invocation summary receiving all counters.
        provider: Integration provider key stored on links.
        dry_run: When True, nothing is written.
        allowed_states: Region allow-list for company creation (empty = all).
        stage_filter: Normalized deal stage filter ("" = all).
        pipeline_filter: Normalized deal pipeline filter ("" = all).
        enrich_inline: Run registry enrichment right after create/link.
    """

    def __init__(
        self,
        store: CRMStore,
        resolver: IdentityResolver,
        enricher: CompanyEnricher,
        registry: CompanyRegistryClient,
        summary: SyncSummary,
        provider: str = "rdstation",
        dry_run: bool = False,
        allowed_states: list[str] | None = None,
        stage_filter: str = "",
        pipeline_filter: str = "",
        enrich_inline: bool = True,
    ) -> None:
        self._store = store
        self._resolver = resolver
        self._enricher = enricher
        self._registry = registry
        self._summary = summary
        self._provider = provider
        self._dry_run = dry_run
        self._allowed_states = list(allowed_states or [])
        self._stage_filter = stage_filter
        self._pipeline_filter = pipeline_filter
        self._enrich_inline = enrich_inline

    # ── Links ───────────────────────────────────────────────────────────────

    async def touch_link(self, entity_type: LocalEntityType, local_id: str, external_id: str) -> None:
        """Create or refresh the integration link for a matched or created entity.

        A local entity already linked to a different external id keeps its
        link. The collision is counted and the link table is left untouched.
        """
        if not local_id or not external_id:
            return
        linked = await self._store.find_links_for_local_ids(self._provider, entity_type, [local_id])
        current = linked.get(local_id)
        if current and current != external_id:
            self._keep_existing_link(entity_type, local_id, external_id, current)
            return
        if self._dry_run:
            return
        try:
            await self._store.upsert_link(self._provider, entity_type, local_id, external_id)
        except UniqueViolationError as exc:
            # Another invocation linked the entity between lookup and write.
            self._keep_existing_link(entity_type, local_id, external_id, exc.constraint)
            return
        self._summary.bump("links_updated")

    def _keep_existing_link(
        self,
        entity_type: LocalEntityType,
        local_id: str,
        external_id: str,
        linked_to: str,
    ) -> None:
        self._summary.bump("links_kept_existing")
        logger.info(
            "upsert.link_kept_existing",
            entity_type=entity_type.value,
            local_id=local_id,
            external_id=external_id,
            linked_to=linked_to,
        )

    # ── Companies ───────────────────────────────────────────────────────────

    async def _state_for_filter(self, org: ParsedOrganization) -> str:
        if org.state:
            return org.state
        try:
            found = await self._registry.lookup(org.tax_id)
        except RegistryLookupError as exc:
            logger.warning("upsert.state_lookup_failed", tax_id=org.tax_id, error=str(exc))
            return ""
        return found.state if found else ""

    async def _link_existing_company(self, company_id: str, org: ParsedOrganization) -> str:
        await self.touch_link(LocalEntityType.COMPANY, company_id, org.external_id)
        self._resolver.remember_company(org.external_id, company_id)

        company = await self._store.get_company(company_id)
        patched = False
        if company is not None:
            patch = company_patch_from_organization(company, org)
            if not patch.is_empty() and not self._dry_run:
                company = await self._store.update_company(company_id, patch) or company
                patched = True
            if self._enrich_inline:
                await self._enricher.enrich(company, self._summary, dry_run=self._dry_run)

        self._summary.bump("companies_updated" if patched else "companies_skipped_existing")
        self._summary.bump("companies_processed")
        return company_id

    async def upsert_company(self, org: ParsedOrganization) -> str | None:
        """Link, patch or create the local company for an organization.

        Returns:
            Local company id, or None when skipped (or would be created in dry run).
        """
        if not org.external_id and not org.tax_id:
            self._summary.bump("skipped_without_identifier")
            return None
        if not org.tax_id:
            self._summary.bump("skipped_without_cnpj")
            return None

        resolution = await self._resolver.resolve_company(org)
        if resolution.company_id:
            return await self._link_existing_company(resolution.company_id, org)

        if not is_valid_tax_id(org.tax_id):
            self._summary.bump("skipped_invalid_cnpj")
            return None

        if self._allowed_states:
            state = await self._state_for_filter(org)
            if state not in self._allowed_states:
                self._summary.bump("companies_skipped_by_state")
                logger.debug(
                    "upsert.company_skipped_by_state",
                    external_id=org.external_id,
                    state=state,
                    allowed_states=self._allowed_states,
                )
                return None

        if self._dry_run:
            self._summary.bump("companies_processed")
            return None

        legal_name = org.legal_name or org.trade_name or f"EMPRESA RD {org.external_id or org.tax_id}"
        payload = CompanyCreate(
            legal_name=legal_name,
            trade_name=org.trade_name or legal_name,
            tax_id=format_tax_id(org.tax_id),
            email=org.email or None,
            phone=org.phone,
            address_full=org.address_full or None,
            city=org.city or None,
            state=org.state or None,
            source_segment=SOURCE_SEGMENT,
        )
        try:
            company = await self._store.insert_company(payload)
        except UniqueViolationError:
            winner = await self._store.find_company_by_tax_id(org.tax_id)
            if winner is None:
                raise
            logger.info(
                "upsert.company_insert_race_reconciled",
                tax_id=org.tax_id,
                company_id=winner.id,
            )
            return await self._link_existing_company(winner.id, org)

        self._summary.bump("companies_created")
        await self.touch_link(LocalEntityType.COMPANY, company.id, org.external_id)
        self._resolver.remember_company(org.external_id, company.id)
        if self._enrich_inline:
            await self._enricher.enrich(company, self._summary)
        self._summary.bump("companies_processed")
        return company.id

    # ── Contacts ────────────────────────────────────────────────────────────

    async def upsert_contact(self, contact: ParsedContact) -> str | None:
        """Link an existing contact or create a new one.

        Returns:
            Local contact id, or None when skipped (or would be created in dry run).
        """
        if not contact.external_id and not contact.email and not contact.phone:
            self._summary.bump("skipped_without_identifier")
            return None
        if not contact.organization_external_id and not contact.organization_tax_id:
            self._summary.bump("contacts_skipped_without_company")
            return None
        if not contact.phone:
            self._summary.bump("contacts_skipped_without_whatsapp")
            return None

        company = await self._resolver.resolve_company_for_contact(contact)
        if not company.company_id:
            self._summary.bump("contacts_skipped_without_company")
            return None

        contact_id, via = await self._resolver.resolve_contact(contact)
        if contact_id:
            await self.touch_link(LocalEntityType.CONTACT, contact_id, contact.external_id)
            self._summary.bump("contacts_skipped_existing_whatsapp")
            self._summary.bump("contacts_processed")
            logger.debug("upsert.contact_matched", contact_id=contact_id, via=via)
            return contact_id

        if self._dry_run:
            self._summary.bump("contacts_processed")
            return None

        created = await self._store.insert_contact(
            ContactCreate(
                company_id=company.company_id,
                full_name=contact.full_name or f"Contato RD {contact.external_id or 'sem-id'}",
                phone=contact.phone,
                email=contact.email or None,
                role_title=contact.role_title or None,
            )
        )
        self._summary.bump("contacts_created")
        await self.touch_link(LocalEntityType.CONTACT, created.id, contact.external_id)
        self._summary.bump("contacts_processed")
        return created.id

    # ── Opportunities ───────────────────────────────────────────────────────

    async def _company_for_deal(self, deal: ParsedDeal) -> str | None:
        resolution = await self._resolver.resolve_company_for_deal(deal)
        if resolution.company_id:
            return resolution.company_id
        if deal.organization is not None and deal.organization.tax_id:
            return await self.upsert_company(deal.organization)
        return None

    async def upsert_opportunity(self, deal: ParsedDeal) -> str | None:
        """Create or patch the local opportunity for a deal.

        Returns:
            Local opportunity id, or None when skipped (or not written in dry run).
        """
        if not deal.external_id:
            self._summary.bump("skipped_without_identifier")
            return None

        status = map_opportunity_status(deal.status_raw)
        stage = map_opportunity_stage(deal.stage_raw, status)

        if not matches_pipeline_filter(self._pipeline_filter, deal.pipeline_raw):
            self._summary.bump("opportunities_skipped_by_pipeline_filter")
            return None
        if not matches_stage_filter(self._stage_filter, stage, deal.stage_raw):
            self._summary.bump("opportunities_skipped_by_stage_filter")
            return None

        company_id = await self._company_for_deal(deal)
        if not company_id:
            self._summary.bump("opportunities_skipped_without_company")
            return None

        resolution = await self._resolver.resolve_opportunity(deal, company_id, stage, status)
        if resolution.decision is not None:
            self._summary.bump("opportunities_matched_by_similarity")
            if resolution.decision.rule == "stage_assisted":
                self._summary.bump("opportunities_matched_by_pipeline_stage_fallback")

        if self._dry_run:
            self._summary.bump("opportunities_processed")
            return resolution.opportunity_id

        primary_contact_id = await self._resolver.resolve_contact_id(deal.contact_external_id)
        title = deal.title or f"Oportunidade RD {deal.external_id}"

        if resolution.opportunity_id:
            existing = await self._store.get_opportunity(resolution.opportunity_id)
            await self._store.update_opportunity(
                resolution.opportunity_id,
                OpportunityUpdate(
                    company_id=company_id,
                    primary_contact_id=primary_contact_id
                    or (existing.primary_contact_id if existing else None),
                    title=title,
                    stage=stage,
                    status=status,
                    estimated_value=max(deal.amount, 0.0),
                    expected_close_date=deal.expected_close_date
                    or (existing.expected_close_date if existing else None),
                ),
            )
            opportunity_id = resolution.opportunity_id
            self._summary.bump("opportunities_updated")
        else:
            created = await self._store.insert_opportunity(
                OpportunityCreate(
                    company_id=company_id,
                    primary_contact_id=primary_contact_id,
                    title=title,
                    stage=stage,
                    status=status,
                    estimated_value=max(deal.amount, 0.0),
                    expected_close_date=deal.expected_close_date,
                )
            )
            opportunity_id = created.id
            self._summary.bump("opportunities_created")

        await self.touch_link(LocalEntityType.OPPORTUNITY, opportunity_id, deal.external_id)
        self._summary.bump("opportunities_processed")
        return opportunity_id
