from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Final


COUNTRY_PREFIXES: Final[dict[str, str]] = {
    "39": "IT",
    "44": "GB",
    "49": "DE",
    "33": "FR",
    "34": "ES",
    "41": "CH",
    "43": "AT",
    "1": "US",
}

# Longest calling code first so "39" is tried before "1"-style short codes.
_SORTED_PREFIXES: Final[list[tuple[str, str]]] = sorted(
    COUNTRY_PREFIXES.items(), key=lambda item: len(item[0]), reverse=True
)
_NATIONAL_NUMBER_LENGTH: Final[int] = 10
_NON_DIGITS = re.compile(r"\D")


@dataclass(frozen=True)
class NormalizedPhone:
    normalized: str
    country_code: str
    assumed_country: bool
    raw: str


def normalize_phone(phone: str, default_country: str = "IT") -> NormalizedPhone:
    raw = phone.strip()
    digits = _NON_DIGITS.sub("", raw)
    if len(digits) > _NATIONAL_NUMBER_LENGTH:
        for prefix, country in _SORTED_PREFIXES:
            if digits.startswith(prefix):
                return NormalizedPhone(
                    normalized=digits[len(prefix):],
                    country_code=country,
                    assumed_country=False,
                    raw=raw,
                )
    return NormalizedPhone(
        normalized=digits,
        country_code=default_country,
        assumed_country=True,
        raw=raw,
    )


def is_valid_phone_number(phone: str) -> bool:
    digits = _NON_DIGITS.sub("", phone)
    return 6 <= len(digits) <= 15

