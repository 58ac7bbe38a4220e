"""Price parsing (upstream value -> float | None) and display formatting."""

from __future__ import annotations

import math
import re
from decimal import ROUND_HALF_UP, Decimal

_NUMBER_RE = re.compile(r"(\d+(?:,\d{3})*(?:\.\d+)?)")
_NULL_TOKENS = {"", "null", "none", "undefined", "unknown", "n/a", "tba", "tbd"}
_FREE_TOKENS = {"free", "free admission", "no cover", "$0", "0.00"}

_FREE_PATTERNS = tuple(
    re.compile(pattern)
    for pattern in (
        r"\bfree\s+(?:admission|entry|event|show)\b",
        r"\badmission\s+is\s+free\b",
        r"\bno\s+cover(?:\s+charge)?\b",
        r"\bfree\s+(?:and\s+open|to\s+attend|to\s+the\s+public)\b",
        r"\bcomplimentary\s+(?:admission|event)\b",
    )
)
_CONTEXTUAL_PRICE_PATTERNS = tuple(
    re.compile(pattern, re.IGNORECASE)
    for pattern in (
        r"(?:tickets?|price|admission|cover|entry)[:\s]*\$(\d+(?:\.\d{2})?)",
        r"\$(\d+(?:\.\d{2})?)\s*(?:tickets?|admission|cover|entry|per\s+person|advance|adv)\b",
        r"(?:cost|fee)s?[:\s]+\$(\d+(?:\.\d{2})?)",
        r"(?:tickets?\s+)?(?:start(?:ing)?|from)\s+(?:at\s+)?\$(\d+(?:\.\d{2})?)",
    )
)


def parse_price(value: float | int | str | None) -> float | None:
    """0 or "0" is free (0.0); missing or unparseable is unknown (None).

    Strings may carry currency symbols, thousands separators or a range, in
    which case the lower bound is used. Negative amounts are treated as unknown.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = float(value)
        if math.isnan(number) or math.isinf(number) or number < 0:
            return None
        return number

    text = str(value).strip().lower()
    if text in _NULL_TOKENS:
        return None
    if text in _FREE_TOKENS:
        return 0.0
    if text.startswith("-"):
        return None
    match = _NUMBER_RE.search(text)
    if match is None:
        return None
    return float(match.group(1).replace(",", ""))


def format_price(value: float | int | str | None) -> str:
    """Display form: "Free", "Unknown" or "$<nearest dollar>"."""
    price = parse_price(value)
    if price is None:
        return "Unknown"
    if price == 0:
        return "Free"
    rounded = Decimal(str(price)).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
    return f"${rounded}"


def is_free_text(text: str) -> bool:
    lowered = text.lower()
    return any(pattern.search(lowered) for pattern in _FREE_PATTERNS)


def extract_price_from_text(text: str | None) -> float | None:
    """Conservative fallback for listings without a structured price."""
    if not text:
        return None
    if is_free_text(text):
        return 0.0
    for pattern in _CONTEXTUAL_PRICE_PATTERNS:
        match = pattern.search(text)
        if match:
            return float(match.group(1))
    return None
