"""Unit tests for the company registry client (CNPJ lookup).

HTTP is mocked by patching httpx.AsyncClient.get.
"""

from __future__ import annotations

from unittest.mock import AsyncMock, patch

import httpx
import pytest

from src.crm_sync.config import Settings
from src.crm_sync.sync.errors import RegistryLookupError
from src.crm_sync.sync.registry import CompanyRegistryClient, parse_registry_company
from tests.fakes import make_tax_id

TAX_ID = make_tax_id(2024)

REGISTRY_PAYLOAD = {
    "cnpj": TAX_ID,
    "razao_social": "Grafica Exemplo Ltda",
    "nome_fantasia": "Grafica Exemplo",
    "email": "FISCAL@EXEMPLO.COM",
    "ddd_telefone_1": "4133334444",
    "descricao_tipo_de_logradouro": "RUA",
    "logradouro": "XV DE NOVEMBRO",
    "numero": "100",
    "complemento": "",
    "bairro": "CENTRO",
    "municipio": "CURITIBA",
    "uf": "PR",
    "cep": "80020310",
}


def _response(status_code: int, payload=None) -> httpx.Response:
    return httpx.Response(
        status_code,
        json=payload if payload is not None else {},
        request=httpx.Request("GET", f"https://brasilapi.com.br/api/cnpj/v1/{TAX_ID}"),
    )


class TestParseRegistryCompany:
    def test_maps_portuguese_fields(self):
        company = parse_registry_company(TAX_ID, REGISTRY_PAYLOAD)

        assert company.legal_name == "GRAFICA EXEMPLO LTDA"
        assert company.trade_name == "GRAFICA EXEMPLO"
        assert company.email == "fiscal@exemplo.com"
        assert company.phone == "(41) 3333-4444"
        assert company.city == "CURITIBA"
        assert company.state == "PR"
        assert company.address_full == (
            "RUA XV DE NOVEMBRO, 100, CENTRO, CURITIBA (PR), PR, CEP 80020-310"
        )

    def test_street_type_is_not_duplicated(self):
        payload = {**REGISTRY_PAYLOAD, "logradouro": "RUA XV DE NOVEMBRO"}
        company = parse_registry_company(TAX_ID, payload)
        assert company.address_full.startswith("RUA XV DE NOVEMBRO, 100")


class TestLookup:
    @pytest.mark.asyncio
    async def test_found_and_cached(self):
        client = CompanyRegistryClient(Settings(_env_file=None))
        with patch(
            "httpx.AsyncClient.get",
            new_callable=AsyncMock,
            return_value=_response(200, REGISTRY_PAYLOAD),
        ) as mock_get:
            first = await client.lookup(f"{TAX_ID[:2]}.{TAX_ID[2:5]}.{TAX_ID[5:8]}/{TAX_ID[8:12]}-{TAX_ID[12:]}")
            second = await client.lookup(TAX_ID)

        assert first is not None
        assert first == second
        assert mock_get.call_count == 1
        assert mock_get.call_args.args[0].endswith(f"/{TAX_ID}")

    @pytest.mark.asyncio
    async def test_unknown_tax_id_returns_none(self):
        client = CompanyRegistryClient(Settings(_env_file=None))
        with patch(
            "httpx.AsyncClient.get", new_callable=AsyncMock, return_value=_response(404)
        ) as mock_get:
            assert await client.lookup(TAX_ID) is None
            assert await client.lookup(TAX_ID) is None

        assert mock_get.call_count == 1

    @pytest.mark.asyncio
    async def test_invalid_input_skips_http(self):
        client = CompanyRegistryClient(Settings(_env_file=None))
        with patch("httpx.AsyncClient.get", new_callable=AsyncMock) as mock_get:
            assert await client.lookup("123") is None
        mock_get.assert_not_called()

    @pytest.mark.asyncio
    async def test_unavailable_registry_raises(self):
        client = CompanyRegistryClient(Settings(_env_file=None))
        with patch(
            "httpx.AsyncClient.get", new_callable=AsyncMock, return_value=_response(503)
        ) as mock_get:
            with pytest.raises(RegistryLookupError) as exc_info:
                await client.lookup(TAX_ID)

        assert exc_info.value.status_code == 503
        assert mock_get.call_count == 3

    @pytest.mark.asyncio
    async def test_rejected_request_is_not_retried(self):
        client = CompanyRegistryClient(Settings(_env_file=None))
        with patch(
            "httpx.AsyncClient.get", new_callable=AsyncMock, return_value=_response(403)
        ) as mock_get:
            with pytest.raises(RegistryLookupError) as exc_info:
                await client.lookup(TAX_ID)

        assert exc_info.value.status_code == 403
        assert mock_get.call_count == 1

    @pytest.mark.asyncio
    async def test_rate_limit_is_retried(self):
        client = CompanyRegistryClient(Settings(_env_file=None))
        with patch(
            "httpx.AsyncClient.get",
            new_callable=AsyncMock,
            side_effect=[_response(429), _response(200, REGISTRY_PAYLOAD)],
        ) as mock_get:
            company = await client.lookup(TAX_ID)

        assert company is not None
        assert company.state == "PR"
        assert mock_get.call_count == 2
