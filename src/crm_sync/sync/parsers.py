"""RD Station record parsers.

Turns raw organization, contact and deal payloads into canonical
ParsedOrganization / ParsedContact / ParsedDeal records. Field extraction
uses ranked key lists: the first non-empty value wins, so a new response
variant only needs its key appended to the relevant list.
"""

from __future__ import annotations

from typing import Any

from src.crm_sync.sync.normalizers import (
    as_dict,
    build_address_full,
    format_phone,
    normalize_city,
    normalize_state,
    normalize_tax_id,
    parse_date_only,
    parse_money,
    pick_first,
    pick_first_list,
    pick_first_object,
    pick_first_value,
)
from src.crm_sync.sync.schemas import ParsedContact, ParsedDeal, ParsedOrganization

# ── Key Lists ───────────────────────────────────────────────────────────────

ORGANIZATION_ID_KEYS = ["id", "uuid", "organization_id", "organizationId", "code"]
CONTACT_ID_KEYS = ["id", "uuid", "contact_id", "contactId", "code"]
DEAL_ID_KEYS = ["id", "uuid", "deal_id", "dealId", "code"]

LEGAL_NAME_KEYS = ["legal_name", "razao_social", "name", "company_name"]
TRADE_NAME_KEYS = ["name", "trade_name", "nome_fantasia", "nickname"]
TAX_ID_KEYS = ["cnpj", "tax_id", "document", "cpf_cnpj", "cnpj_cpf"]
EMAIL_KEYS = ["email", "primary_email", "contact_email"]
PHONE_KEYS = ["phone", "mobile_phone", "whatsapp", "telephone"]
ADDRESS_OBJECT_KEYS = ["address", "endereco", "company_address"]

NESTED_ORGANIZATION_KEYS = ["organization", "company", "account"]
ORGANIZATION_REF_KEYS = ["organization_id", "organizationId", "company_id", "account_id"]
NESTED_REF_ID_KEYS = ["id", "uuid", "organization_id"]

CONTACT_NAME_KEYS = ["name", "full_name", "nome"]
ROLE_TITLE_KEYS = ["job_title", "position", "title", "cargo"]
CONTACT_TAX_ID_KEYS = ["organization_cnpj", "company_cnpj"]

DEAL_TITLE_KEYS = ["name", "title", "deal_name"]
DEAL_CONTACT_REF_KEYS = ["contact_id", "contactId", "person_id"]
DEAL_CONTACT_OBJECT_KEYS = ["contact", "person"]
DEAL_CONTACT_LIST_KEYS = ["contacts", "people"]
NESTED_CONTACT_ID_KEYS = ["id", "uuid", "contact_id"]
AMOUNT_KEYS = ["amount", "value", "deal_value", "total_value", "revenue"]
STATUS_KEYS = ["status", "deal_status", "outcome", "state"]
STAGE_KEYS = ["stage", "stage_name", "deal_stage", "pipeline_stage", "funnel_stage"]
PIPELINE_KEYS = ["pipeline", "pipeline_name", "deal_pipeline", "funnel", "funnel_name"]
CLOSE_DATE_KEYS = ["expected_close_date", "close_date", "forecast_close_date", "closed_at"]

_NAMED_OBJECT_KEYS = ["name", "nome", "title", "label"]


def _address_field(address: dict[str, Any], row: dict[str, Any], keys: list[str]) -> str:
    return pick_first(address, keys) or pick_first(row, keys)


def _named_value(row: dict[str, Any], keys: list[str]) -> str:
    """Read a field that may be a plain string or a {"name": ...} object."""
    text = pick_first(row, keys)
    if text:
        return text
    return pick_first(pick_first_object(row, keys), _NAMED_OBJECT_KEYS)


# ── Parsers ─────────────────────────────────────────────────────────────────


def parse_organization(raw: Any) -> ParsedOrganization:
    """Parse an RD Station organization (or an organization embedded in a deal).

    Address fields are read from a nested address object first and then
    from the record root.
    """
    row = as_dict(raw)
    address = pick_first_object(row, ADDRESS_OBJECT_KEYS)

    state = normalize_state(_address_field(address, row, ["state", "uf"]))
    city = normalize_city(_address_field(address, row, ["city", "cidade"]), state).upper()

    return ParsedOrganization(
        external_id=pick_first(row, ORGANIZATION_ID_KEYS),
        tax_id=normalize_tax_id(pick_first_value(row, TAX_ID_KEYS)),
        legal_name=pick_first(row, LEGAL_NAME_KEYS),
        trade_name=pick_first(row, TRADE_NAME_KEYS),
        email=pick_first(row, EMAIL_KEYS).lower(),
        phone=format_phone(pick_first(row, PHONE_KEYS)),
        city=city,
        state=state,
        address_full=build_address_full(
            street=_address_field(address, row, ["street", "logradouro"]),
            number=_address_field(address, row, ["number", "numero"]),
            complement=_address_field(address, row, ["complement", "complemento"]),
            district=_address_field(address, row, ["district", "bairro"]),
            city=city,
            state=state,
            postal_code=_address_field(address, row, ["zip_code", "cep"]),
        ),
    )


def parse_contact(raw: Any) -> ParsedContact:
    row = as_dict(raw)
    organization = pick_first_object(row, NESTED_ORGANIZATION_KEYS)

    tax_id_raw = pick_first_value(row, CONTACT_TAX_ID_KEYS)
    if tax_id_raw is None:
        tax_id_raw = pick_first_value(organization, TAX_ID_KEYS)

    return ParsedContact(
        external_id=pick_first(row, CONTACT_ID_KEYS),
        full_name=pick_first(row, CONTACT_NAME_KEYS),
        email=pick_first(row, ["email", "primary_email"]).lower(),
        phone=format_phone(pick_first(row, PHONE_KEYS)),
        role_title=pick_first(row, ROLE_TITLE_KEYS),
        organization_external_id=(
            pick_first(row, ORGANIZATION_REF_KEYS)
            or pick_first(organization, NESTED_REF_ID_KEYS)
        ),
        organization_tax_id=normalize_tax_id(tax_id_raw),
    )


def parse_deal(raw: Any) -> ParsedDeal:
    """Parse an RD Station deal.

    The contact reference falls back to the first entry of a contacts list.
    An embedded organization object, when present, is parsed as well so the
    deal can be attached to a company the organizations walk never saw.
    """
    row = as_dict(raw)
    organization = pick_first_object(row, NESTED_ORGANIZATION_KEYS)

    contact_external_id = pick_first(row, DEAL_CONTACT_REF_KEYS) or pick_first(
        pick_first_object(row, DEAL_CONTACT_OBJECT_KEYS), NESTED_CONTACT_ID_KEYS
    )
    if not contact_external_id:
        contacts = pick_first_list(row, DEAL_CONTACT_LIST_KEYS)
        if contacts:
            contact_external_id = pick_first(contacts[0], NESTED_CONTACT_ID_KEYS)

    return ParsedDeal(
        external_id=pick_first(row, DEAL_ID_KEYS),
        title=pick_first(row, DEAL_TITLE_KEYS),
        organization_external_id=(
            pick_first(row, ORGANIZATION_REF_KEYS)
            or pick_first(organization, NESTED_REF_ID_KEYS)
        ),
        organization=parse_organization(organization) if organization else None,
        contact_external_id=contact_external_id,
        amount=parse_money(pick_first_value(row, AMOUNT_KEYS)),
        status_raw=_named_value(row, STATUS_KEYS),
        stage_raw=_named_value(row, STAGE_KEYS),
        pipeline_raw=_named_value(row, PIPELINE_KEYS),
        expected_close_date=parse_date_only(pick_first_value(row, CLOSE_DATE_KEYS)),
    )
