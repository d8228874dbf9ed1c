"""
Shared ETL utilities for data transformation and extraction.

Tolerant parsers used when normalizing TikTok Shop payloads: missing or
malformed monetary fields become zero instead of failing the record.
"""

import logging
import re
from decimal import Decimal, InvalidOperation
from typing import Any, Optional

logger = logging.getLogger(__name__)

ZERO = Decimal("0")


def coerce_decimal(value: Any, default: Decimal = ZERO) -> Decimal:
    """
    Safely coerce an upstream amount to Decimal.

    Examples:
        >>> coerce_decimal("19.99")
        Decimal('19.99')
        >>> coerce_decimal(None)
        Decimal('0')
        >>> coerce_decimal({"amount": "4.50"})
        Decimal('4.50')
    """
    if value is None or value == "":
        return default

    # Some finance endpoints wrap amounts as {"amount": "...", "currency": "..."}
    if isinstance(value, dict):
        return coerce_decimal(value.get("amount"), default)

    try:
        if isinstance(value, float):
            return Decimal(str(value))
        return Decimal(str(value).strip())
    except (InvalidOperation, ValueError, TypeError):
        logger.warning(f"Could not parse amount: {value!r}")
        return default


def coerce_int(value: Any) -> Optional[int]:
    """
    Safely coerce value to integer.

    Examples:
        >>> coerce_int("95.0")
        95
        >>> coerce_int("invalid")
        None
    """
    if value is None:
        return None

    try:
        if isinstance(value, str):
            if "." in value:
                return int(float(value))
            return int(value)

        if isinstance(value, (int, float)):
            return int(value)

        return None
    except (ValueError, TypeError):
        return None


def first_present(data: dict, *keys: str, default: Any = None) -> Any:
    """Return the first truthy value among keys, mirroring upstream field renames."""
    for key in keys:
        value = data.get(key)
        if value not in (None, "", 0, "0"):
            return value
    return default


def variant_display_name(sku: dict) -> str:
    """
    Human-readable variant name for a TikTok SKU.

    Joins sales attribute values ("Red / XL"); without attributes, strips
    trailing digits from the seller SKU and capitalizes it ("blue03" -> "Blue").
    """
    attributes = sku.get("sales_attributes") or []
    seller_sku = sku.get("seller_sku") or ""

    if attributes:
        names = [a.get("value_name") or a.get("name") or "" for a in attributes]
        return " / ".join(n for n in names if n) or seller_sku or "Default"

    cleaned = re.sub(r"\d+$", "", seller_sku or "Default")
    if not cleaned:
        return "Default"
    return cleaned[:1].upper() + cleaned[1:].lower()
