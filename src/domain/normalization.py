from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Final, Mapping

from src.domain.phone import NormalizedPhone, normalize_phone


# Credentials, cookies and referer (may carry PII in query strings) are never stored.
HEADER_WHITELIST: Final[tuple[str, ...]] = (
    "content-type",
    "user-agent",
    "x-forwarded-for",
    "cf-connecting-ip",
    "x-real-ip",
    "origin",
    "accept",
    "accept-language",
)

PHONE_KEYS: Final[tuple[str, ...]] = ("phone", "telefono", "mobile")
FIRST_NAME_KEYS: Final[tuple[str, ...]] = ("first_name", "firstName", "nome")
LAST_NAME_KEYS: Final[tuple[str, ...]] = ("last_name", "lastName", "cognome")
EMAIL_KEYS: Final[tuple[str, ...]] = ("email",)
CITY_KEYS: Final[tuple[str, ...]] = ("city", "citta")
CAP_KEYS: Final[tuple[str, ...]] = ("cap", "zip")


class MissingPhoneError(ValueError):
    pass


@dataclass(frozen=True)
class NormalizedLead:
    phone_raw: str
    phone: NormalizedPhone
    first_name: str | None
    last_name: str | None
    email: str | None
    city: str | None
    cap: str | None


def filter_headers(headers: Mapping[str, str]) -> dict[str, str]:
    lowered = {str(k).lower(): v for k, v in headers.items()}
    return {key: lowered[key] for key in HEADER_WHITELIST if lowered.get(key)}


def client_ip(headers: Mapping[str, str]) -> str:
    lowered = {str(k).lower(): v for k, v in headers.items()}
    forwarded = lowered.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    return lowered.get("cf-connecting-ip") or "unknown"


def apply_field_mapping(payload: dict[str, Any], mapping: Mapping[str, str] | None) -> dict[str, Any]:
    """
    Copy payload[source] into result[target] for each mapping entry, then pass through
    every payload key that is not used as a mapping source. Returns a new dict.
    """
    if not mapping:
        return dict(payload)
    result: dict[str, Any] = {}
    for target_field, source_field in mapping.items():
        if source_field in payload:
            result[target_field] = payload[source_field]
    mapped_sources = set(mapping.values())
    for key, value in payload.items():
        if key not in mapped_sources:
            result[key] = value
    return result


def _first_text(payload: Mapping[str, Any], keys: tuple[str, ...]) -> str | None:
    for key in keys:
        value = payload.get(key)
        if value is None or value == "" or value is False:
            continue
        text = str(value).strip()
        if text:
            return text
    return None


def extract_lead(payload: Mapping[str, Any], default_country: str = "IT") -> NormalizedLead:
    phone_raw = _first_text(payload, PHONE_KEYS)
    if not phone_raw:
        raise MissingPhoneError("Phone number is required")

    email = _first_text(payload, EMAIL_KEYS)
    return NormalizedLead(
        phone_raw=phone_raw,
        phone=normalize_phone(phone_raw, default_country=default_country),
        first_name=_first_text(payload, FIRST_NAME_KEYS),
        last_name=_first_text(payload, LAST_NAME_KEYS),
        email=email.lower() if email else None,
        city=_first_text(payload, CITY_KEYS),
        cap=_first_text(payload, CAP_KEYS),
    )
