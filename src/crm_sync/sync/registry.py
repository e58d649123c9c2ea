"""Async client for the public company registry (BrasilAPI CNPJ lookup).

CompanyRegistryClient.lookup(tax_id) returns a RegistryCompany built from
the registry's Portuguese field names, or None when the tax id is unknown
(404) or rejected (400). Transient failures are retried with tenacity; a
lookup that still fails raises RegistryLookupError. Results (including
misses) are cached per client instance, which lives for one invocation.
"""

from __future__ import annotations

from typing import Any

import httpx
import structlog
from tenacity import retry, retry_if_exception, stop_after_attempt, wait_exponential

from src.crm_sync.config import Settings, get_settings
from src.crm_sync.sync.errors import RegistryLookupError
from src.crm_sync.sync.normalizers import (
    as_dict,
    build_address_full,
    collapse_spaces,
    format_phone,
    normalize_city,
    normalize_state,
    normalize_tax_id,
    normalize_text,
    pick_first,
)
from src.crm_sync.sync.schemas import RegistryCompany

logger = structlog.get_logger(__name__)


def _is_transient(exc: BaseException) -> bool:
    """429 and 5xx responses, connection failures and timeouts."""
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        return status == 429 or status >= 500
    return isinstance(exc, (httpx.ConnectError, httpx.TimeoutException))


_registry_retry = retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=0.5, min=0.5, max=4),
    retry=retry_if_exception(_is_transient),
    reraise=True,
)

_NOT_FOUND_STATUSES = (400, 404)


def parse_registry_company(tax_id: str, payload: Any) -> RegistryCompany:
    """Map a BrasilAPI CNPJ payload onto RegistryCompany."""
    row = as_dict(payload)
    state = normalize_state(pick_first(row, ["uf"]))
    city = normalize_city(pick_first(row, ["municipio"]), state).upper()

    street = pick_first(row, ["logradouro"])
    street_type = pick_first(row, ["descricao_tipo_de_logradouro"])
    if street_type and not normalize_text(street).startswith(normalize_text(street_type)):
        street = collapse_spaces(f"{street_type} {street}")

    return RegistryCompany(
        tax_id=tax_id,
        legal_name=pick_first(row, ["razao_social"]).upper(),
        trade_name=pick_first(row, ["nome_fantasia"]).upper(),
        email=pick_first(row, ["email"]).lower(),
        phone=format_phone(pick_first(row, ["ddd_telefone_1", "ddd_telefone_2"])),
        city=city,
        state=state,
        address_full=build_address_full(
            street=street,
            number=pick_first(row, ["numero"]),
            complement=pick_first(row, ["complemento"]),
            district=pick_first(row, ["bairro"]),
            city=city,
            state=state,
            postal_code=pick_first(row, ["cep"]),
        ),
    )


class CompanyRegistryClient:
    """Lookup of company master data by tax id.

    Args:
        settings: Application settings; defaults to get_settings().
    """

    def __init__(self, settings: Settings | None = None) -> None:
        self._settings = settings or get_settings()
        self._base_url = self._settings.COMPANY_REGISTRY_URL.rstrip("/")
        self._cache: dict[str, RegistryCompany | None] = {}

    @_registry_retry
    async def _fetch(self, tax_id: str) -> dict[str, Any] | None:
        async with httpx.AsyncClient(timeout=self._settings.COMPANY_REGISTRY_TIMEOUT) as client:
            response = await client.get(
                f"{self._base_url}/{tax_id}",
                headers={"Accept": "application/json"},
            )
            if response.status_code in _NOT_FOUND_STATUSES:
                return None
            response.raise_for_status()
            return as_dict(response.json())

    async def lookup(self, tax_id: str) -> RegistryCompany | None:
        """Look up a company by tax id.

        Args:
            tax_id: Tax id in any format; normalized to 14 digits.

        Returns:
            RegistryCompany, or None when the registry does not know the tax id.

        Raises:
            RegistryLookupError: Registry unavailable after retries.
        """
        digits = normalize_tax_id(tax_id)
        if not digits:
            return None
        if digits in self._cache:
            return self._cache[digits]

        try:
            payload = await self._fetch(digits)
        except httpx.HTTPStatusError as exc:
            logger.warning(
                "registry.lookup_failed",
                tax_id=digits,
                status_code=exc.response.status_code,
            )
            raise RegistryLookupError(digits, exc.response.status_code) from exc
        except (httpx.TransportError, ValueError) as exc:
            logger.warning("registry.lookup_failed", tax_id=digits, error=str(exc))
            raise RegistryLookupError(digits) from exc

        company = parse_registry_company(digits, payload) if payload is not None else None
        self._cache[digits] = company
        logger.info("registry.lookup_complete", tax_id=digits, found=company is not None)
        return company
