"""Unit tests for the RD Station record parsers.

Exercises ranked-key extraction over the payload variants the CRM API
returns: nested address objects vs. root fields, embedded organizations,
named-object stages and contact lists.
"""

from __future__ import annotations

from src.crm_sync.sync.parsers import parse_contact, parse_deal, parse_organization


class TestParseOrganization:
    def test_nested_address_object(self):
        org = parse_organization(
            {
                "id": "org-1",
                "name": "Acme Ltda",
                "cnpj": "11.222.333/0001-81",
                "email": "CONTATO@ACME.COM",
                "phone": "11 98765-4321",
                "address": {
                    "street": "Rua A",
                    "number": "10",
                    "district": "Centro",
                    "city": "Campinas - SP",
                    "state": "SP",
                    "zip_code": "13000-000",
                },
            }
        )

        assert org.external_id == "org-1"
        assert org.tax_id == "11222333000181"
        assert org.legal_name == "Acme Ltda"
        assert org.trade_name == "Acme Ltda"
        assert org.email == "contato@acme.com"
        assert org.phone == "(11) 98765-4321"
        assert org.city == "CAMPINAS"
        assert org.state == "SP"
        assert org.address_full == "RUA A, 10, CENTRO, CAMPINAS (SP), SP, CEP 13000-000"

    def test_root_level_portuguese_fields(self):
        org = parse_organization(
            {"id": 7, "razao_social": "Grafica Sul SA", "cidade": "Curitiba", "uf": "Paraná"}
        )

        assert org.external_id == "7"
        assert org.legal_name == "Grafica Sul SA"
        assert org.state == "PR"
        assert org.city == "CURITIBA"
        assert org.tax_id == ""

    def test_wrong_length_tax_id_is_dropped(self):
        org = parse_organization({"id": "org-2", "cnpj": "123.456"})
        assert org.tax_id == ""

    def test_non_dict_payload(self):
        org = parse_organization("not a record")
        assert org.external_id == ""
        assert org.phone is None


class TestParseContact:
    def test_embedded_organization(self):
        contact = parse_contact(
            {
                "id": "c1",
                "name": "Maria Souza",
                "phone": "(11) 98765-4321",
                "title": "Compras",
                "emails": [],
                "organization": {"id": "org-1", "cnpj": "11222333000181"},
            }
        )

        assert contact.external_id == "c1"
        assert contact.full_name == "Maria Souza"
        assert contact.phone == "(11) 98765-4321"
        assert contact.role_title == "Compras"
        assert contact.organization_external_id == "org-1"
        assert contact.organization_tax_id == "11222333000181"

    def test_root_organization_reference_wins(self):
        contact = parse_contact(
            {
                "id": "c2",
                "organization_id": "org-9",
                "organization_cnpj": "11.222.333/0001-81",
                "organization": {"id": "org-other"},
            }
        )

        assert contact.organization_external_id == "org-9"
        assert contact.organization_tax_id == "11222333000181"

    def test_invalid_phone_becomes_none(self):
        contact = parse_contact({"id": "c3", "phone": "123"})
        assert contact.phone is None


class TestParseDeal:
    def test_full_deal_payload(self):
        deal = parse_deal(
            {
                "id": "d1",
                "name": "Canon imagePRESS V700",
                "organization": {"id": "org-1", "name": "Acme", "cnpj": "11222333000181"},
                "contacts": [{"id": "c1"}, {"id": "c2"}],
                "amount": "125.900,00",
                "deal_stage": {"name": "Proposta"},
                "status": "ongoing",
                "pipeline": {"name": "Vendas"},
                "expected_close_date": "30/06/2026",
            }
        )

        assert deal.external_id == "d1"
        assert deal.title == "Canon imagePRESS V700"
        assert deal.organization_external_id == "org-1"
        assert deal.organization is not None
        assert deal.organization.tax_id == "11222333000181"
        assert deal.contact_external_id == "c1"
        assert deal.amount == 125900.0
        assert deal.stage_raw == "Proposta"
        assert deal.status_raw == "ongoing"
        assert deal.pipeline_raw == "Vendas"
        assert deal.expected_close_date == "2026-06-30"

    def test_contact_object_and_numeric_amount(self):
        deal = parse_deal(
            {
                "id": "d2",
                "title": "Suprimentos",
                "contact": {"id": "c9"},
                "value": 500,
                "stage": "Qualificação",
            }
        )

        assert deal.contact_external_id == "c9"
        assert deal.amount == 500.0
        assert deal.stage_raw == "Qualificação"
        assert deal.organization is None
        assert deal.organization_external_id == ""
        assert deal.expected_close_date is None

    def test_missing_fields_default_safely(self):
        deal = parse_deal({})
        assert deal.external_id == ""
        assert deal.amount == 0.0
        assert deal.contact_external_id == ""
