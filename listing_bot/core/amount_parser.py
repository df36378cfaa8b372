# listing_bot/core/amount_parser.py
"""
Free-text price parsing for the price-correction flow.

    "5000000"      -> 5000000
    "5m" / "5M"    -> 5000000
    "2.5m"         -> 2500000
    "750k"         -> 750000
    "₦ 1,200,000"  -> 1200000
    "abc"          -> None
"""
from __future__ import annotations

import re
from decimal import Decimal, ROUND_HALF_UP, InvalidOperation
from typing import Optional

_CURRENCY = r"naira|ngn|[₦$€£]"
_CURRENCY_RE = re.compile(rf"(?i)({_CURRENCY})")
_LEADING_N_RE = re.compile(r"(?i)^n(?=\d)")
_SEPARATORS_RE = re.compile(r"[,\s_]")
_NUMBER_RE = re.compile(r"^\d+(?:\.\d+)?$|^\.\d+$")

# Loose pre-check used while a confirmation is pending: decides whether a
# text message is a price correction at all. Accepts the same currency
# markers parse_amount strips, before or after the number.
_AMOUNT_LIKE_RE = re.compile(
    rf"(?i)^\s*(?:{_CURRENCY}|n)?\s*\d[\d,\s_]*(?:\.\d+)?\s*[km]?\s*(?:{_CURRENCY})?\s*$"
)

_MULTIPLIERS = {
    "m": Decimal(1_000_000),
    "k": Decimal(1_000),
}


def parse_amount(text: str) -> Optional[int]:
    """
    Parse a user-typed amount into an integer.

    Currency symbols, thousands separators and whitespace are stripped.
    A trailing ``m``/``k`` (any case) multiplies by a million/thousand.
    The value is rounded half-up to the nearest integer.
    Returns None when anything non-numeric remains.
    """
    if not text:
        return None

    cleaned = _CURRENCY_RE.sub("", text)
    cleaned = _SEPARATORS_RE.sub("", cleaned)
    cleaned = _LEADING_N_RE.sub("", cleaned)

    multiplier = Decimal(1)
    if cleaned and cleaned[-1].lower() in _MULTIPLIERS:
        multiplier = _MULTIPLIERS[cleaned[-1].lower()]
        cleaned = cleaned[:-1]

    if not _NUMBER_RE.match(cleaned):
        return None

    try:
        value = Decimal(cleaned) * multiplier
    except InvalidOperation:
        return None

    return int(value.quantize(Decimal(1), rounding=ROUND_HALF_UP))


def looks_like_amount(text: str) -> bool:
    """True if the text lexically resembles a price (digits, optional currency and k/m suffix)."""
    return bool(text and _AMOUNT_LIKE_RE.match(text))
