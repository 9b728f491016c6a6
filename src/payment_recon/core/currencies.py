from __future__ import annotations

import re

_ALIASES = {
    "RS": "LKR",
    "RS.": "LKR",
    "US$": "USD",
    "$": "USD",
    "CA$": "CAD",
    "A$": "AUD",
    "£": "GBP",
    "€": "EUR",
}

# Uppercase words that look like ISO codes but show up in bank/slip text.
_NOT_CURRENCIES = {"REF", "INV", "THE", "AND", "FOR", "NEW", "GMT", "UTC", "ACC", "TXN", "NO"}

_CODE_RE = re.compile(r"^[A-Z]{3}$")


def normalize_currency(raw: str | None) -> str | None:
    if not raw:
        return None
    value = str(raw).strip().upper()
    if not value:
        return None
    if value in _ALIASES:
        return _ALIASES[value]
    if value in _NOT_CURRENCIES or not _CODE_RE.match(value):
        return None
    return value
