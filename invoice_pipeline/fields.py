"""Typed access to extracted invoice fields.

Every stage looks fields up through these helpers so that name matching and
amount parsing behave the same way from validation through ledger coding.
"""

from __future__ import annotations

import re
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional, Sequence

from invoice_pipeline.errors import FieldNotFound, InputError
from invoice_pipeline.models import BoundingBox, ExtractedField, LineItem

INVOICE_ID_NEEDLES = ("invoice number", "invoice no", "invoice #", "invoice id", "inv no", "invoice num")
DATE_NEEDLES = ("date",)
DUE_DATE_NEEDLES = ("due date", "payment due", "due")
TOTAL_NEEDLES = ("total",)
TOTAL_EXCLUDE = ("subtotal", "sub total", "total tax", "tax total")
SUBTOTAL_NEEDLES = ("subtotal", "sub total")
TAX_NEEDLES = ("tax", "gst", "vat")
TAX_EXCLUDE = ("tax id", "taxid", "gstin", "gst number", "gst no", "vat number", "vat no")
VENDOR_NEEDLES = ("vendor", "supplier", "seller")
GSTIN_NEEDLES = ("gstin", "gst number", "gst no")

_SEPARATORS = re.compile(r"[\s_\-:]+")
_NUMERIC = re.compile(r"-?\d+(?:\.\d+)?")


def normalize_name(name: str) -> str:
    return _SEPARATORS.sub(" ", str(name or "")).strip().lower()


def find_field(
    fields: Iterable[ExtractedField],
    needles: Sequence[str],
    exclude: Sequence[str] = (),
) -> Optional[ExtractedField]:
    """Return the first field whose name contains any needle, or ``None``."""
    for extracted in fields:
        name = normalize_name(extracted.name)
        if any(token in name for token in exclude):
            continue
        if any(needle in name for needle in needles):
            return extracted
    return None


def require_field(
    fields: Iterable[ExtractedField],
    needles: Sequence[str],
    exclude: Sequence[str] = (),
    label: Optional[str] = None,
) -> ExtractedField:
    found = find_field(fields, needles, exclude)
    if found is None:
        raise FieldNotFound(label or needles[0])
    return found


def parse_amount(value: Any) -> Optional[float]:
    """Read a monetary amount such as ``"$1,234.50"`` or ``"₹1,18,000"``."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float, Decimal)):
        return float(value)
    cleaned = str(value).replace(",", "").replace(" ", "")
    negative = cleaned.startswith("-") or (cleaned.startswith("(") and cleaned.endswith(")"))
    match = _NUMERIC.search(cleaned)
    if not match:
        return None
    amount = abs(float(match.group(0)))
    return -amount if negative else amount


def field_amount(fields: Iterable[ExtractedField], needles: Sequence[str], exclude: Sequence[str] = ()) -> Optional[float]:
    found = find_field(fields, needles, exclude)
    return parse_amount(found.value) if found else None


def total_amount(fields: Iterable[ExtractedField]) -> Optional[float]:
    return field_amount(fields, TOTAL_NEEDLES, TOTAL_EXCLUDE)


def tax_amount(fields: Iterable[ExtractedField]) -> Optional[float]:
    return field_amount(fields, TAX_NEEDLES, TAX_EXCLUDE)


def field_value(fields: Iterable[ExtractedField], needles: Sequence[str], exclude: Sequence[str] = ()) -> Optional[str]:
    found = find_field(fields, needles, exclude)
    return found.value.strip() if found and found.value else None


def _confidence(raw: Any) -> float:
    try:
        value = float(raw)
    except (TypeError, ValueError) as exc:
        raise InputError(f"Invalid confidence value: {raw!r}") from exc
    if value > 1.0:
        value = value / 100.0
    if not 0.0 <= value <= 1.0:
        raise InputError(f"Confidence out of range: {raw!r}")
    return value


def _location(item: Dict[str, Any]) -> BoundingBox:
    box = item.get("location") or item.get("boundingBox") or item.get("bounding_box") or {}
    if not isinstance(box, dict):
        raise InputError("Field location must be an object")
    try:
        return BoundingBox(
            page=int(box.get("page", item.get("page", 1)) or 1),
            left=float(box.get("left", 0.0) or 0.0),
            top=float(box.get("top", 0.0) or 0.0),
            width=float(box.get("width", 0.0) or 0.0),
            height=float(box.get("height", 0.0) or 0.0),
        )
    except (TypeError, ValueError) as exc:
        raise InputError(f"Invalid field location: {box!r}") from exc


def fields_from_payload(items: Any) -> List[ExtractedField]:
    """Build fields from JSON payload entries.

    Accepts a list of ``{"name"|"fieldName", "value", "confidence", "location"}``
    objects, or a mapping of name to value / ``{"value", "confidence"}``.
    """
    if isinstance(items, dict):
        items = [
            {"name": name, **(value if isinstance(value, dict) else {"value": value, "confidence": 1.0})}
            for name, value in items.items()
        ]
    if not isinstance(items, list):
        raise InputError("fields must be a list or an object")

    fields: List[ExtractedField] = []
    for index, item in enumerate(items):
        if not isinstance(item, dict):
            raise InputError(f"Field #{index} must be an object")
        name = item.get("name") or item.get("fieldName") or item.get("field_name")
        if not name:
            raise InputError(f"Field #{index} has no name")
        value = item.get("value")
        fields.append(
            ExtractedField(
                name=str(name),
                value="" if value is None else str(value),
                confidence=_confidence(item.get("confidence", 1.0)),
                location=_location(item),
            )
        )
    return fields


# Required-field label -> (needles, excluded tokens, display name)
REQUIRED_FIELD_LOOKUP = {
    "invoice_id": (INVOICE_ID_NEEDLES, (), "Invoice Number"),
    "date": (DATE_NEEDLES, (), "Date"),
    "total": (TOTAL_NEEDLES, TOTAL_EXCLUDE, "Total"),
    "tax": (TAX_NEEDLES, TAX_EXCLUDE, "Tax"),
    "vendor": (VENDOR_NEEDLES, (), "Vendor"),
    "subtotal": (SUBTOTAL_NEEDLES, (), "Subtotal"),
    "due_date": (DUE_DATE_NEEDLES, (), "Due Date"),
}

DATE_FORMATS = (
    "%Y-%m-%d",
    "%d/%m/%Y",
    "%m/%d/%Y",
    "%d-%m-%Y",
    "%d.%m.%Y",
    "%d %b %Y",
    "%d %B %Y",
    "%b %d, %Y",
    "%B %d, %Y",
)


def parse_date(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    text = str(value).strip()
    for fmt in DATE_FORMATS:
        try:
            return datetime.strptime(text, fmt)
        except ValueError:
            continue
    return None


def line_items_from_payload(items: Any) -> List[LineItem]:
    if not items:
        return []
    if not isinstance(items, list):
        raise InputError("line_items must be a list")
    result = []
    for item in items:
        if not isinstance(item, dict):
            raise InputError("Each line item must be an object")
        result.append(
            LineItem(
                description=str(item.get("description", "")),
                quantity=parse_amount(item.get("quantity")),
                unit_price=parse_amount(item.get("unit_price")),
                amount=parse_amount(item.get("amount")),
            )
        )
    return result
