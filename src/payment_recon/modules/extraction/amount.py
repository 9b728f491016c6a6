from __future__ import annotations

import re
from collections.abc import Callable
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation

from payment_recon.core.currencies import normalize_currency

_CURRENCY = r"LKR|Rs\.?|USD|GBP|EUR|AUD|CAD"

AMOUNT_LABEL_RE = re.compile(
    r"amount\s*[:\-]?\s*"
    rf"(?:\(\s*(?P<paren_currency>{_CURRENCY})\s*\)\s*|(?P<currency>{_CURRENCY})\s*)?"
    r"(?P<number>[\d,]+(?:\.\d{1,2})?)",
    re.I,
)


@dataclass(frozen=True)
class AmountMatch:
    amount: Decimal
    currency: str | None
    strategy: str


def _from_match(m: re.Match[str] | None, strategy: str) -> AmountMatch | None:
    if m is None:
        return None
    digits = m.group("number").replace(",", "")
    if not digits:
        return None
    try:
        amount = Decimal(digits).quantize(Decimal("0.01"))
    except InvalidOperation:
        return None
    currency = normalize_currency(m.group("paren_currency") or m.group("currency"))
    return AmountMatch(amount=amount, currency=currency, strategy=strategy)


def _split_lines(text: str) -> list[str]:
    return [ln.strip() for ln in re.split(r"\r?\n", text) if ln.strip()]


def _single_line(text: str) -> AmountMatch | None:
    for ln in _split_lines(text):
        found = _from_match(AMOUNT_LABEL_RE.search(ln), "single_line")
        if found:
            return found
    return None


def _two_line_window(text: str) -> AmountMatch | None:
    # The label and its number are often wrapped onto separate lines.
    lines = _split_lines(text)
    for i, ln in enumerate(lines):
        nxt = lines[i + 1] if i + 1 < len(lines) else ""
        found = _from_match(AMOUNT_LABEL_RE.search(f"{ln} {nxt}"), "two_line_window")
        if found:
            return found
    return None


def _global_scan(text: str) -> AmountMatch | None:
    return _from_match(AMOUNT_LABEL_RE.search(text), "global_scan")


AmountStrategy = Callable[[str], AmountMatch | None]

# Tried in order; the first strategy that yields an amount wins.
STRATEGIES: tuple[AmountStrategy, ...] = (_single_line, _two_line_window, _global_scan)


def find_amount(
    text: str, *, strategies: tuple[AmountStrategy, ...] = STRATEGIES
) -> AmountMatch | None:
    raw = str(text or "").replace("\u202f", " ").replace("\xa0", " ")
    if not raw.strip():
        return None
    for strategy in strategies:
        found = strategy(raw)
        if found is not None:
            return found
    return None


_SNIPPET_AMOUNT_RE = re.compile(
    r"(?<![A-Za-z])(?P<currency>LKR|Rs\.?|USD|GBP|EUR|AUD|CAD|US\$|CA\$|A\$|\$|£|€)\s*"
    r"(?P<number>\d[\d,]*(?:\.\d{1,2})?)",
    re.I,
)


def find_labeled_amount(text: str) -> AmountMatch | None:
    """Amount from a notification snippet: an ``Amount:`` label or a currency-prefixed number."""
    found = find_amount(text)
    if found is not None:
        return found
    m = _SNIPPET_AMOUNT_RE.search(str(text or ""))
    if m is None:
        return None
    try:
        amount = Decimal(m.group("number").replace(",", "")).quantize(Decimal("0.01"))
    except InvalidOperation:
        return None
    return AmountMatch(
        amount=amount, currency=normalize_currency(m.group("currency")), strategy="snippet"
    )
