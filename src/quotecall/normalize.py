"""Normalizers shared by the turn decision schema and the extraction pipeline.

LLM output arrives loosely typed ("$45.00", "2 weeks", "in stock"), so every
numeric and enum field passes through these before it is stored.
"""

import re

AVAILABILITY_VALUES = ("IN_STOCK", "BACKORDERED", "SPECIAL_ORDER", "UNKNOWN")

# Keys are uppercased with spaces, hyphens and underscores removed
_AVAILABILITY_MAP = {
    "INSTOCK": "IN_STOCK",
    "AVAILABLE": "IN_STOCK",
    "ONHAND": "IN_STOCK",
    "READY": "IN_STOCK",
    "BACKORDERED": "BACKORDERED",
    "BACKORDER": "BACKORDERED",
    "OUTOFSTOCK": "BACKORDERED",
    "UNAVAILABLE": "BACKORDERED",
    "SPECIALORDER": "SPECIAL_ORDER",
    "CUSTOMORDER": "SPECIAL_ORDER",
    "CUSTOM": "SPECIAL_ORDER",
}

# Checked in order; negatives first so "OUT OF STOCK" or "NOT IN STOCK" never reads as in stock
_AVAILABILITY_PHRASES = (
    ("NOTINSTOCK", "BACKORDERED"),
    ("NOSTOCK", "BACKORDERED"),
    ("NOTAVAILABLE", "BACKORDERED"),
    ("NOTONHAND", "BACKORDERED"),
    ("NOLONGER", "BACKORDERED"),
    ("OUTOFSTOCK", "BACKORDERED"),
    ("BACKORDER", "BACKORDERED"),
    ("UNAVAILABLE", "BACKORDERED"),
    ("SPECIALORDER", "SPECIAL_ORDER"),
    ("CUSTOMORDER", "SPECIAL_ORDER"),
    ("INSTOCK", "IN_STOCK"),
    ("ONHAND", "IN_STOCK"),
)


def normalize_part_number(part_number: str | None) -> str:
    """Uppercase and strip whitespace and hyphens: "abc-123 x" -> "ABC123X"."""
    if not part_number:
        return ""
    return re.sub(r"[\s-]", "", str(part_number)).upper()


def normalize_availability(value) -> str:
    if not value:
        return "UNKNOWN"
    key = re.sub(r"[\s_\-]", "", str(value)).upper()
    if key in _AVAILABILITY_MAP:
        return _AVAILABILITY_MAP[key]
    # "In stock, ships today" and similar phrases
    for fragment, availability in _AVAILABILITY_PHRASES:
        if fragment in key:
            return availability
    return "UNKNOWN"


def parse_lead_time_days(value) -> int | None:
    """First integer in the text, times 7 when the unit is weeks.

    "2 days" -> 2, "3-4 weeks" -> 21, "ships today" -> None.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return max(int(value), 0)
    text = str(value).lower()
    match = re.search(r"\d+", text)
    if not match:
        return None
    days = int(match.group(0))
    if "week" in text:
        days *= 7
    return days


def parse_price(value) -> float | None:
    """Coerce "$1,245.50", "45", 45 into a float. Unparseable or negative -> None."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value) if value >= 0 else None
    text = str(value).replace(",", "")
    match = re.search(r"-?\d+(?:\.\d+)?", text)
    if not match:
        return None
    price = float(match.group(0))
    if price < 0:
        return None
    return price


def parse_quantity(value, default: int = 1) -> int:
    if value is None or isinstance(value, bool):
        return default
    if isinstance(value, (int, float)):
        return int(value) if value > 0 else default
    match = re.search(r"\d+", str(value))
    if not match or int(match.group(0)) <= 0:
        return default
    return int(match.group(0))
