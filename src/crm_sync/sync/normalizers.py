"""Pure normalizers turning heterogeneous CRM values into canonical shapes.

Every function here is total: malformed input degrades to an empty string,
zero, None or False instead of raising. External-field extraction is done
with ranked key lists ("first non-empty of an ordered key list") so new API
response variants only require extending a list.

Provides:
- Tax id (CNPJ): normalize_tax_id, format_tax_id, is_valid_tax_id
- Phones: format_phone, phone_lookup_candidates
- Money and dates: parse_money, parse_date_only
- Addresses: normalize_state, normalize_city, format_postal_code,
  build_address_full, is_weak_address
- Request coercion: clamp_int, parse_bool, sanitize_access_token
- Ranked-key helpers: as_dict, safe_str, pick_first, pick_first_object,
  pick_first_list
"""

from __future__ import annotations

import math
import re
import unicodedata
from datetime import datetime, timezone
from typing import Any

# ── Ranked-key helpers ──────────────────────────────────────────────────────


def as_dict(value: Any) -> dict[str, Any]:
    """Return value if it is a mapping, else an empty dict."""
    if isinstance(value, dict):
        return value
    return {}


def safe_str(value: Any) -> str:
    """Stringify and strip, treating None as empty."""
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value).strip()


def pick_first(source: Any, keys: list[str]) -> str:
    """Return the first non-empty string value found under keys."""
    row = as_dict(source)
    for key in keys:
        value = row.get(key)
        if isinstance(value, (dict, list)):
            continue
        text = safe_str(value)
        if text:
            return text
    return ""


def pick_first_object(source: Any, keys: list[str]) -> dict[str, Any]:
    """Return the first dict value found under keys."""
    row = as_dict(source)
    for key in keys:
        candidate = row.get(key)
        if isinstance(candidate, dict):
            return candidate
    return {}


def pick_first_list(source: Any, keys: list[str]) -> list[Any]:
    """Return the first list value found under keys."""
    row = as_dict(source)
    for key in keys:
        candidate = row.get(key)
        if isinstance(candidate, list):
            return candidate
    return []


def pick_first_value(source: Any, keys: list[str]) -> Any:
    """Return the first value that is not None/empty string, keeping its type."""
    row = as_dict(source)
    for key in keys:
        value = row.get(key)
        if value is None:
            continue
        if isinstance(value, str) and not value.strip():
            continue
        return value
    return None


# ── Text ────────────────────────────────────────────────────────────────────


def digits_only(value: Any) -> str:
    return re.sub(r"\D", "", safe_str(value))


def normalize_text(value: Any) -> str:
    """Accent-stripped, lower-cased text."""
    decomposed = unicodedata.normalize("NFD", safe_str(value))
    stripped = "".join(ch for ch in decomposed if not unicodedata.combining(ch))
    return stripped.lower()


def collapse_spaces(value: Any) -> str:
    return re.sub(r"\s+", " ", safe_str(value)).strip()


# ── Tax id (CNPJ) ───────────────────────────────────────────────────────────

_FIRST_CHECK_WEIGHTS = [5, 4, 3, 2, 9, 8, 7, 6, 5, 4, 3, 2]
_SECOND_CHECK_WEIGHTS = [6, 5, 4, 3, 2, 9, 8, 7, 6, 5, 4, 3, 2]


def normalize_tax_id(value: Any) -> str:
    """Return the 14 raw digits of a tax id, or "" when it has another length."""
    digits = digits_only(value)
    return digits if len(digits) == 14 else ""


def format_tax_id(value: Any) -> str:
    """Format as NN.NNN.NNN/NNNN-NN, or "" when not 14 digits."""
    digits = normalize_tax_id(value)
    if not digits:
        return ""
    return f"{digits[:2]}.{digits[2:5]}.{digits[5:8]}/{digits[8:12]}-{digits[12:]}"


def _check_digit(base: str, weights: list[int]) -> int:
    total = sum(int(digit) * weight for digit, weight in zip(base, weights))
    remainder = total % 11
    return 0 if remainder < 2 else 11 - remainder


def is_valid_tax_id(value: Any) -> bool:
    """Validate both mod-11 check digits of a 14-digit tax id."""
    digits = normalize_tax_id(value)
    if not digits:
        return False
    if len(set(digits)) == 1:
        return False
    first = _check_digit(digits[:12], _FIRST_CHECK_WEIGHTS)
    second = _check_digit(digits[:12] + str(first), _SECOND_CHECK_WEIGHTS)
    return digits[12] == str(first) and digits[13] == str(second)


# ── Phones ──────────────────────────────────────────────────────────────────


def _national_phone_digits(value: Any) -> str:
    digits = digits_only(value)
    if len(digits) in (12, 13) and digits.startswith("55"):
        digits = digits[2:]
    if len(digits) > 11:
        digits = digits[-11:]
    return digits


def format_phone(value: Any) -> str | None:
    """Format a Brazilian phone as (DD) DDDD-DDDD or (DD) DDDDD-DDDD.

    Returns None when the number cannot be resolved to 10 or 11 digits.
    """
    digits = _national_phone_digits(value)
    if len(digits) not in (10, 11):
        return None
    area, local = digits[:2], digits[2:]
    if len(digits) == 10:
        return f"({area}) {local[:4]}-{local[4:]}"
    return f"({area}) {local[:5]}-{local[5:]}"


def phone_lookup_candidates(value: Any) -> list[str]:
    """Representations of a phone used to absorb formatting drift between systems.

    Order: raw, formatted, all digits, country-stripped, last 10 digits.
    """
    raw = safe_str(value)
    all_digits = digits_only(raw)
    national = _national_phone_digits(raw)
    candidates = [raw, format_phone(raw) or "", all_digits, national, all_digits[-10:]]

    unique: list[str] = []
    for candidate in candidates:
        text = safe_str(candidate)
        if text and text not in unique:
            unique.append(text)
    return unique


# ── Money and dates ─────────────────────────────────────────────────────────


def parse_money(value: Any) -> float:
    """Parse a monetary amount written with either decimal convention.

    When both separators are present the right-most one is the decimal mark;
    a lone comma is treated as decimal. Anything unparseable becomes 0.
    """
    if value is None or isinstance(value, bool):
        return 0.0
    if isinstance(value, (int, float)):
        return float(value) if math.isfinite(value) else 0.0

    cleaned = re.sub(r"[^\d.,-]", "", safe_str(value))
    if not cleaned:
        return 0.0

    has_comma = "," in cleaned
    has_dot = "." in cleaned
    normalized = cleaned
    if has_comma and has_dot:
        if cleaned.rfind(",") > cleaned.rfind("."):
            normalized = cleaned.replace(".", "").replace(",", ".")
        else:
            normalized = cleaned.replace(",", "")
    elif has_comma:
        normalized = cleaned.replace(",", ".", 1)

    try:
        parsed = float(normalized)
    except ValueError:
        return 0.0
    return parsed if math.isfinite(parsed) else 0.0


_BR_DATE = re.compile(r"^(\d{2})/(\d{2})/(\d{4})$")


def parse_date_only(value: Any) -> str | None:
    """Return YYYY-MM-DD for DD/MM/YYYY or ISO-8601 input, else None."""
    raw = safe_str(value)
    if not raw:
        return None

    match = _BR_DATE.match(raw)
    if match:
        day, month, year = (int(part) for part in match.groups())
        if 1 <= day <= 31 and 1 <= month <= 12 and year >= 1900:
            return f"{year:04d}-{month:02d}-{day:02d}"
        return None

    iso = raw[:-1] + "+00:00" if raw.endswith(("Z", "z")) else raw
    try:
        parsed = datetime.fromisoformat(iso)
    except ValueError:
        return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc)
    return parsed.date().isoformat()


# ── Addresses ───────────────────────────────────────────────────────────────

STATE_CODES = frozenset({
    "AC", "AL", "AP", "AM", "BA", "CE", "DF", "ES", "GO", "MA", "MT", "MS", "MG", "PA",
    "PB", "PR", "PE", "PI", "RJ", "RN", "RS", "RO", "RR", "SC", "SP", "SE", "TO",
})

STATE_BY_NAME: dict[str, str] = {
    "acre": "AC",
    "alagoas": "AL",
    "amapa": "AP",
    "amazonas": "AM",
    "bahia": "BA",
    "ceara": "CE",
    "distrito federal": "DF",
    "espirito santo": "ES",
    "goias": "GO",
    "maranhao": "MA",
    "mato grosso": "MT",
    "mato grosso do sul": "MS",
    "minas gerais": "MG",
    "para": "PA",
    "paraiba": "PB",
    "parana": "PR",
    "pernambuco": "PE",
    "piaui": "PI",
    "rio de janeiro": "RJ",
    "rio grande do norte": "RN",
    "rio grande do sul": "RS",
    "rondonia": "RO",
    "roraima": "RR",
    "santa catarina": "SC",
    "sao paulo": "SP",
    "sergipe": "SE",
    "tocantins": "TO",
}

SOUTH_STATES = ("PR", "SC", "RS")


def normalize_state(value: Any) -> str:
    """Resolve a state to its two-letter code, or "" when unknown."""
    raw = safe_str(value).upper()
    if not raw:
        return ""

    for token in re.findall(r"\b([A-Z]{2})\b", raw):
        if token in STATE_CODES:
            return token
        break

    letters = re.sub(r"[^A-Z]", "", raw)
    if len(letters) == 2 and letters in STATE_CODES:
        return letters

    name = re.sub(r"[^a-z\s]", " ", normalize_text(raw))
    return STATE_BY_NAME.get(collapse_spaces(name), "")


def normalize_city(value: Any, state: str = "") -> str:
    """Strip trailing state markers such as "(SP)", "- SP", "/SP", ", SP"."""
    city = collapse_spaces(value)
    if not city:
        return ""
    city = re.sub(r"\s*\([A-Za-z]{2}\)\s*$", "", city)
    city = re.sub(r"\s*[-/]\s*[A-Za-z]{2}\s*$", "", city)
    city = re.sub(r"\s*,\s*[A-Za-z]{2}\s*$", "", city)
    city = collapse_spaces(city)
    if state:
        city = re.sub(rf"\s+{re.escape(state)}$", "", city, flags=re.IGNORECASE).strip()
    return city


def format_postal_code(value: Any) -> str:
    digits = digits_only(value)
    if len(digits) != 8:
        return ""
    return f"{digits[:5]}-{digits[5:]}"


def build_address_full(
    street: str = "",
    number: str = "",
    complement: str = "",
    district: str = "",
    city: str = "",
    state: str = "",
    postal_code: str = "",
) -> str:
    """Assemble an upper-cased single-line address, skipping empty fragments."""
    uf = normalize_state(state)
    city_name = normalize_city(city, uf).upper()
    city_state = f"{city_name} ({uf})" if city_name and uf else city_name
    cep = format_postal_code(postal_code)

    parts = [
        collapse_spaces(street).upper(),
        collapse_spaces(number).upper(),
        collapse_spaces(complement).upper(),
        collapse_spaces(district).upper(),
        city_state,
        uf,
        f"CEP {cep}" if cep else "",
    ]
    return ", ".join(part for part in parts if part)


_DEGENERATE_ADDRESS = re.compile(r"^[A-Z]{2}\s*,\s*CEP\s*\d{5}-?\d{3}$")


def is_weak_address(value: Any) -> bool:
    """True for empty addresses, a bare state code, or "UF, CEP 00000-000"."""
    address = collapse_spaces(value).upper()
    if not address:
        return True
    if re.fullmatch(r"[A-Z]{2}", address):
        return True
    return bool(_DEGENERATE_ADDRESS.match(address))


# ── Request coercion ────────────────────────────────────────────────────────


def clamp_int(value: Any, low: int, high: int, default: int) -> int:
    """Floor value into [low, high]; non-numeric input yields default."""
    if value is None or isinstance(value, bool):
        return default
    try:
        parsed = float(value)
    except (TypeError, ValueError):
        return default
    if not math.isfinite(parsed):
        return default
    return min(high, max(low, math.floor(parsed)))


def parse_bool(value: Any, default: bool = False) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    raw = safe_str(value).lower()
    if raw in ("1", "true", "yes", "sim", "on"):
        return True
    if raw in ("0", "false", "no", "nao", "não", "off"):
        return False
    return default


def sanitize_access_token(value: Any) -> str:
    """Strip quotes, a leading "Bearer " and any whitespace from a token."""
    raw = re.sub(r"^['\"]+|['\"]+$", "", safe_str(value))
    raw = re.sub(r"^bearer(?:\s+|$)", "", raw, flags=re.IGNORECASE)
    return re.sub(r"\s+", "", raw).strip()
