"""Unit tests for registry-backed company enrichment."""

from __future__ import annotations

import pytest

from src.crm_sync.sync.enrichment import (
    SOURCE_SEGMENT,
    CompanyEnricher,
    build_enrichment_patch,
    needs_enrichment,
)
from src.crm_sync.sync.schemas import CompanyCreate, CompanyRead, RegistryCompany, SyncSummary
from tests.fakes import FakeRegistry, make_tax_id

TAX_ID = make_tax_id(777)


def _make_company(**overrides) -> CompanyRead:
    defaults = {
        "id": "company-1",
        "legal_name": "ACME LTDA",
        "trade_name": "ACME",
        "tax_id": TAX_ID,
        "city": "SAO PAULO",
        "state": "SP",
        "address_full": "RUA A, 10, CENTRO",
        "source_segment": SOURCE_SEGMENT,
    }
    defaults.update(overrides)
    return CompanyRead(**defaults)


def _registry_company(**overrides) -> RegistryCompany:
    defaults = {
        "tax_id": TAX_ID,
        "legal_name": "ACME INDUSTRIA E COMERCIO LTDA",
        "trade_name": "ACME",
        "email": "fiscal@acme.com",
        "phone": "(11) 3333-4444",
        "city": "CAMPINAS",
        "state": "SP",
        "address_full": "AVENIDA BRASIL, 100, CENTRO, CAMPINAS (SP), SP, CEP 13000-000",
    }
    defaults.update(overrides)
    return RegistryCompany(**defaults)


class TestNeedsEnrichment:
    def test_complete_company(self):
        assert not needs_enrichment(_make_company())

    def test_weak_address(self):
        assert needs_enrichment(_make_company(address_full="SP"))
        assert needs_enrichment(_make_company(address_full="SP, CEP 01000-000"))

    def test_missing_city_or_state(self):
        assert needs_enrichment(_make_company(city=None))
        assert needs_enrichment(_make_company(state=""))


class TestBuildPatch:
    def test_populated_fields_are_never_overwritten(self):
        company = _make_company(address_full="SP", email=None)
        patch = build_enrichment_patch(company, _registry_company())

        assert patch.city is None
        assert patch.state is None
        assert patch.legal_name is None
        assert patch.address_full == _registry_company().address_full
        assert patch.email == "fiscal@acme.com"

    def test_weak_registry_address_is_ignored(self):
        patch = build_enrichment_patch(
            _make_company(address_full=""), _registry_company(address_full="SP")
        )
        assert patch.address_full is None


class TestEnrich:
    @pytest.mark.asyncio
    async def test_fills_only_empty_fields(self, store):
        company = await store.insert_company(
            CompanyCreate(
                legal_name="ACME LTDA",
                trade_name="ACME",
                tax_id=TAX_ID,
                city="SAO PAULO",
                state="SP",
                address_full="SP",
            )
        )
        registry = FakeRegistry(companies={TAX_ID: _registry_company()})
        summary = SyncSummary()

        enriched = await CompanyEnricher(store, registry).enrich(company, summary)

        assert enriched
        updated = store.companies[company.id]
        assert updated.city == "SAO PAULO"
        assert updated.legal_name == "ACME LTDA"
        assert updated.address_full.startswith("AVENIDA BRASIL")
        assert summary.companies_enriched == 1

    @pytest.mark.asyncio
    async def test_missing_state_is_filled_city_kept(self, store):
        company = await store.insert_company(
            CompanyCreate(
                legal_name="ACME LTDA",
                trade_name="ACME",
                tax_id=TAX_ID,
                city="SAO PAULO",
                address_full="RUA A, 10, CENTRO",
            )
        )
        registry = FakeRegistry(
            companies={TAX_ID: RegistryCompany(tax_id=TAX_ID, city="CAMPINAS", state="SP")}
        )

        await CompanyEnricher(store, registry).enrich(company, SyncSummary())

        updated = store.companies[company.id]
        assert updated.city == "SAO PAULO"
        assert updated.state == "SP"

    @pytest.mark.asyncio
    async def test_complete_company_skips_registry(self, store):
        registry = FakeRegistry()
        enriched = await CompanyEnricher(store, registry).enrich(_make_company(), SyncSummary())
        assert not enriched
        assert registry.lookups == []

    @pytest.mark.asyncio
    async def test_registry_failure_is_counted_not_raised(self, store):
        registry = FakeRegistry(failing={TAX_ID})
        summary = SyncSummary()

        enriched = await CompanyEnricher(store, registry).enrich(
            _make_company(city=None), summary
        )

        assert not enriched
        assert summary.enrichment_errors == 1
        assert summary.errors and summary.errors[0].startswith("enrichment:company-1:")

    @pytest.mark.asyncio
    async def test_dry_run_counts_without_writing(self, store):
        company = await store.insert_company(
            CompanyCreate(legal_name="ACME", trade_name="ACME", tax_id=TAX_ID)
        )
        registry = FakeRegistry(companies={TAX_ID: _registry_company()})
        summary = SyncSummary()

        enriched = await CompanyEnricher(store, registry).enrich(company, summary, dry_run=True)

        assert enriched
        assert store.companies[company.id].city is None
        assert summary.companies_enriched == 1


class TestSweep:
    @pytest.mark.asyncio
    async def test_sweep_respects_batch_limit(self, store):
        registry = FakeRegistry()
        for seed in range(1, 6):
            tax_id = make_tax_id(seed)
            registry.companies[tax_id] = _registry_company(tax_id=tax_id)
            await store.insert_company(
                CompanyCreate(
                    legal_name="",
                    trade_name="",
                    tax_id=tax_id,
                    source_segment=SOURCE_SEGMENT,
                )
            )
        await store.insert_company(
            CompanyCreate(legal_name="", trade_name="", tax_id=make_tax_id(99))
        )
        summary = SyncSummary()

        enriched = await CompanyEnricher(store, registry).sweep(
            summary, scan_limit=200, batch_limit=3
        )

        assert enriched == 3
        assert len(registry.lookups) == 3
        assert make_tax_id(99) not in registry.lookups

    @pytest.mark.asyncio
    async def test_sweep_stops_when_out_of_time(self, store):
        registry = FakeRegistry()
        await store.insert_company(
            CompanyCreate(
                legal_name="", trade_name="", tax_id=TAX_ID, source_segment=SOURCE_SEGMENT
            )
        )

        enriched = await CompanyEnricher(store, registry).sweep(
            SyncSummary(), scan_limit=10, batch_limit=10, has_time=lambda: False
        )

        assert enriched == 0
        assert registry.lookups == []

    @pytest.mark.asyncio
    async def test_zero_limits_do_nothing(self, store):
        assert await CompanyEnricher(store, FakeRegistry()).sweep(SyncSummary(), 0, 10) == 0
        assert await CompanyEnricher(store, FakeRegistry()).sweep(SyncSummary(), 10, 0) == 0
