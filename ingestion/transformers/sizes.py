"""
Size list normalization.

Sizes arrive as whatever the source shows ("9.5", "US 10", "2XL", " m ").
They are deduplicated first (the input order carries no meaning), then the
whole list is classified and re-encoded in a canonical order.
"""

import enum
import re
from typing import Iterable, List, Tuple


class SizeKind(str, enum.Enum):
    SHOE = "shoe"
    APPAREL = "apparel"
    OTHER = "other"


SHOE_SIZE = re.compile(r"^(?:(US|EU|UK)\s*)?(\d{1,2}(?:\.5)?)$", re.IGNORECASE)

APPAREL_ORDER = ["XXS", "XS", "S", "M", "L", "XL", "XXL", "XXXL", "4XL", "5XL"]
APPAREL_ALIASES = {"2XL": "XXL", "3XL": "XXXL", "XXXXL": "4XL", "XXXXXL": "5XL"}


def _shoe(value: str) -> Tuple[float, str, str]:
    match = SHOE_SIZE.match(value)
    prefix = (match.group(1) or "").upper()
    number = match.group(2)
    label = f"{prefix} {number}" if prefix else number
    return float(number), prefix, label


def _apparel(value: str) -> str:
    upper = value.upper()
    return APPAREL_ALIASES.get(upper, upper)


def is_shoe_sizes(values: Iterable[str]) -> bool:
    values = list(values)
    return bool(values) and all(SHOE_SIZE.match(v) for v in values)


def is_apparel_sizes(values: Iterable[str]) -> bool:
    values = list(values)
    return bool(values) and all(_apparel(v) in APPAREL_ORDER for v in values)


def normalize_sizes(values: Iterable[str]) -> Tuple[SizeKind, List[str]]:
    """
    Deduplicate, classify and order a size list.

    Returns:
        (kind, sizes): shoe sizes in numeric order, apparel sizes in
        XXS..5XL order, anything else sorted lexicographically

    Example:
        normalize_sizes(["10", "9.5", "10", "US 8"]) -> (SHOE, ["US 8", "9.5", "10"])
        normalize_sizes(["2XL", "m", "S", "M"]) -> (APPAREL, ["S", "M", "XXL"])
    """
    distinct = {str(v).strip() for v in values if v is not None and str(v).strip()}
    if not distinct:
        return SizeKind.OTHER, []

    if is_shoe_sizes(distinct):
        shoes = {}
        for value in distinct:
            number, prefix, label = _shoe(value)
            shoes[label] = (number, prefix)
        return SizeKind.SHOE, sorted(shoes, key=lambda label: shoes[label])

    if is_apparel_sizes(distinct):
        apparel = {_apparel(v) for v in distinct}
        return SizeKind.APPAREL, sorted(apparel, key=APPAREL_ORDER.index)

    return SizeKind.OTHER, sorted(distinct)
