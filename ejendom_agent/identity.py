"""
Property Identity
=================
One stable identity for a property across every discovery source.

    canonical_key("Algade 1")           -> "addr:algade 1"
    canonical_key("Algade 1", "999")    -> "bfe:999"

A BFE number (the national property id) always wins over the address text.
"""

import re
from typing import Any, Callable, Iterable, List, Optional, TypeVar

from .errors import ValidationError

T = TypeVar("T")

_COUNTRY_SUFFIX = re.compile(r",?\s*\b(denmark|danmark)\s*$")
_TRAILING_PUNCT = re.compile(r"[,\s]+$")

# Applied in order after lowercasing
_ABBREVIATIONS = [
    (re.compile(r"\balle\b"), "allé"),
    (re.compile(r"\bstr\."), "stræde"),
    (re.compile(r"\bkbh\."), "københavn"),
    (re.compile(r"\bkbh\b"), "københavn"),
    (re.compile(r"\bgl\."), "gammel"),
    (re.compile(r"\bskt\."), "sankt"),
]


def normalize(address: Optional[str]) -> str:
    """Normalize a Danish address for comparison. Idempotent."""
    addr = re.sub(r"\s+", " ", (address or "").strip().lower())
    addr = _TRAILING_PUNCT.sub("", addr)

    while True:
        stripped = _TRAILING_PUNCT.sub("", _COUNTRY_SUFFIX.sub("", addr))
        if stripped == addr:
            break
        addr = stripped

    for pattern, replacement in _ABBREVIATIONS:
        addr = pattern.sub(replacement, addr)

    addr = re.sub(r"\s+", " ", addr).strip()
    return _TRAILING_PUNCT.sub("", addr)


def clean_bfe(bfe: Any) -> Optional[str]:
    """Return the BFE number as a string, or None when it is missing."""
    if bfe is None or isinstance(bfe, bool):
        return None
    value = str(bfe).strip()
    return value or None


def canonical_key(address: Optional[str], bfe: Any = None) -> str:
    """`bfe:<n>` when a BFE is known, else `addr:<normalized address>`."""
    bfe_value = clean_bfe(bfe)
    if bfe_value:
        return f"bfe:{bfe_value}"
    normalized = normalize(address)
    if not normalized:
        raise ValidationError(f"Cannot derive a canonical key from address {address!r}")
    return f"addr:{normalized}"


def _field(record: Any, name: str) -> Any:
    if isinstance(record, dict):
        return record.get(name)
    return getattr(record, name, None)


def record_key(record: Any) -> str:
    """Canonical key of a dict or object with `address` and optional `bfe`."""
    return canonical_key(_field(record, "address"), _field(record, "bfe"))


def same_property(a: Any, b: Any) -> bool:
    """
    True when both records carry the same BFE, or when at most one carries a
    BFE and the normalized addresses match. Two different BFEs always mean two
    properties, whatever the address says.
    """
    bfe_a, bfe_b = clean_bfe(_field(a, "bfe")), clean_bfe(_field(b, "bfe"))
    if bfe_a and bfe_b:
        return bfe_a == bfe_b
    return normalize(_field(a, "address")) == normalize(_field(b, "address"))


def deduplicate(records: Iterable[T], key: Callable[[T], str] = record_key) -> List[T]:
    """Keep the first record per canonical key, preserving input order."""
    seen = set()
    unique = []
    for record in records:
        k = key(record)
        if k in seen:
            continue
        seen.add(k)
        unique.append(record)
    return unique


def format_location(postal_code: Optional[str] = None, city: Optional[str] = None) -> str:
    loc = " ".join(p for p in [(postal_code or "").strip(), (city or "").strip()] if p)
    return loc or "—"


def format_address_line(
    address: Optional[str] = None,
    postal_code: Optional[str] = None,
    city: Optional[str] = None,
) -> str:
    """'Vejnavn 1, 1050 København'. Falls back to whichever half is present."""
    a = (address or "").strip()
    loc = " ".join(p for p in [(postal_code or "").strip(), (city or "").strip()] if p)
    if not a and not loc:
        return "—"
    if not a:
        return loc
    if not loc:
        return a
    return f"{a}, {loc}"
