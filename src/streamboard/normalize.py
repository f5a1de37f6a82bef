"""Parsing of locale-formatted chart numbers and validation of scraped names.

kworb.net renders counts as ``5,992,905``, ``1.2M`` or ``+650K`` and uses bare
symbols (``=``, ``-``) as "no change" markers. Everything here is pure and
never raises on bad input.
"""

from __future__ import annotations

import re
from decimal import ROUND_HALF_EVEN, Decimal

# Markers kworb uses for "no change" / "no value" in delta columns
NO_CHANGE_MARKERS: frozenset[str] = frozenset({"", "-", "=", "0", "+", "–", "—"})

UNIT_MULTIPLIERS: dict[str, int] = {
    "K": 1_000,
    "M": 1_000_000,
}

# Largest value a SQLite INTEGER column holds; anything above is a scraping artifact
MAX_COUNT = 2**63 - 1

_SEPARATORS_RE = re.compile(r"[,\s]")
_NUMBER_RE = re.compile(r"^\d*\.?\d+$|^\d+\.$")
_SYMBOL_ONLY_RE = re.compile(r"^[=+\-\s]+$")
_DIGITS_DASHES_RE = re.compile(r"^[\d\s\-=]+$")
_WHITESPACE_RE = re.compile(r"\s+")


def _parse_magnitude(text: str) -> int | None:
    cleaned = _SEPARATORS_RE.sub("", text)
    if not cleaned:
        return None

    multiplier = 1
    suffix = cleaned[-1].upper()
    if suffix in UNIT_MULTIPLIERS:
        multiplier = UNIT_MULTIPLIERS[suffix]
        cleaned = cleaned[:-1]

    if not _NUMBER_RE.match(cleaned):
        return None
    try:
        value = (Decimal(cleaned) * multiplier).to_integral_value(rounding=ROUND_HALF_EVEN)
    except ArithmeticError:
        return None
    if value > MAX_COUNT:
        return None
    return int(value)


def normalize_count(text: str | None) -> int:
    """
    Parse a count such as ``"5,992,905"``, ``"1.2M"`` or ``"650K"``.

    Returns 0 for empty or unparseable input and for values too large to
    store. A leading sign is ignored, the result is always non-negative.
    """
    if not text:
        return 0
    return _parse_magnitude(text.strip().lstrip("+-")) or 0


def normalize_signed_delta(text: str | None) -> int | None:
    """
    Parse a signed delta such as ``"-994,294"`` or ``"+1.2M"``.

    Returns None for empty input, a "no change" marker or unparseable text.
    """
    if text is None:
        return None
    cleaned = text.strip()
    if cleaned in NO_CHANGE_MARKERS:
        return None

    negative = cleaned[0] in ("-", "−", "–")
    value = _parse_magnitude(cleaned.lstrip("+-−–"))
    if not value:
        return None
    return -value if negative else value


def normalize_key(name: str) -> str:
    """Identity key for a display name: case-folded with whitespace collapsed."""
    return _WHITESPACE_RE.sub(" ", name).strip().casefold()


def clean_text(text: str) -> str:
    """Collapse runs of whitespace and strip."""
    return _WHITESPACE_RE.sub(" ", text).strip()


def is_valid_name(name: str | None) -> bool:
    """
    Check whether a scraped artist or track name looks like real data.

    Rejects names that are empty or shorter than two characters, consist only
    of position-change symbols or digits, or contain no alphabetic character.
    """
    if name is None:
        return False
    stripped = name.strip()
    if len(stripped) < 2:
        return False
    if stripped in NO_CHANGE_MARKERS:
        return False
    if _SYMBOL_ONLY_RE.match(stripped) or _DIGITS_DASHES_RE.match(stripped):
        return False
    return any(ch.isalpha() for ch in stripped)


## Tests


def test_normalize_count_units():
    assert normalize_count("1.2M") == 1_200_000
    assert normalize_count("650K") == 650_000
    assert normalize_count("5,992,905") == 5_992_905


def test_normalize_count_garbage():
    assert normalize_count("") == 0
    assert normalize_count("n/a") == 0
    assert normalize_count("=") == 0
    assert normalize_count(None) == 0
    assert normalize_count("9" * 400) == 0


def test_normalize_signed_delta():
    assert normalize_signed_delta("-994,294") == -994_294
    assert normalize_signed_delta("+1.5K") == 1_500
    assert normalize_signed_delta("0") is None
    assert normalize_signed_delta("-") is None
    assert normalize_signed_delta("") is None


def test_is_valid_name():
    assert is_valid_name("Taylor Swift")
    assert is_valid_name("아이유")
    assert not is_valid_name("=")
    assert not is_valid_name("+ -")
    assert not is_valid_name("12 - 3")
    assert not is_valid_name("x")
    assert not is_valid_name("")
