import json
import logging
import os
import time
from typing import Any, Dict, Iterable, List, Optional, Sequence

from invoice_pipeline.common import json_dumps, utc_now, with_error_handling
from invoice_pipeline.config import PipelineConfig
from invoice_pipeline.errors import InputError
from invoice_pipeline.fields import (
    DATE_NEEDLES,
    DUE_DATE_NEEDLES,
    REQUIRED_FIELD_LOOKUP,
    SUBTOTAL_NEEDLES,
    TAX_EXCLUDE,
    TAX_NEEDLES,
    TOTAL_EXCLUDE,
    TOTAL_NEEDLES,
    field_amount,
    field_value,
    fields_from_payload,
    find_field,
    line_items_from_payload,
    parse_amount,
    parse_date,
)
from invoice_pipeline.models import ExtractedField, LineItem, ValidationResult

logger = logging.getLogger(__name__)
logger.setLevel(os.getenv("LOG_LEVEL", "INFO"))

MAX_TAX_RATE = 0.35
LINE_ITEM_TOLERANCE = 1.0


def _missing_required(fields: Sequence[ExtractedField], required: Iterable[str]) -> List[str]:
    errors = []
    for label in required:
        needles, exclude, display = REQUIRED_FIELD_LOOKUP.get(label, ((label.replace("_", " "),), (), label))
        if find_field(fields, needles, exclude) is None:
            errors.append(f"Missing required field: {display}")
    return errors


def _consistency(fields: Sequence[ExtractedField], line_items: Sequence[LineItem]) -> List[str]:
    errors = []
    total_field = find_field(fields, TOTAL_NEEDLES, TOTAL_EXCLUDE)
    tax_field = find_field(fields, TAX_NEEDLES, TAX_EXCLUDE)
    total = parse_amount(total_field.value) if total_field else None
    tax = parse_amount(tax_field.value) if tax_field else None

    if total_field is not None and total is None:
        errors.append(f"Total amount is not a number: {total_field.value!r}")
    if tax_field is not None and tax is None:
        errors.append(f"Tax amount is not a number: {tax_field.value!r}")
    if total is not None and total <= 0:
        errors.append(f"Total amount must be greater than zero (found {total:.2f})")
    if tax is not None and tax < 0:
        errors.append(f"Tax amount must not be negative (found {tax:.2f})")

    if total is not None and tax is not None and total >= 0 and tax >= 0:
        if tax > total:
            errors.append(f"Tax ({tax:.2f}) exceeds invoice total ({total:.2f})")
        elif total - tax > 0:
            rate = tax / (total - tax)
            if rate > MAX_TAX_RATE:
                errors.append(f"Implied tax rate {rate:.1%} is outside the 0-35% range")

    invoice_date = parse_date(field_value(fields, DATE_NEEDLES, exclude=("due",)))
    due_date = parse_date(field_value(fields, DUE_DATE_NEEDLES))
    if invoice_date and due_date and due_date < invoice_date:
        errors.append("Due date is before the invoice date")

    amounts = [item.amount for item in line_items if item.amount is not None]
    if amounts:
        subtotal = field_amount(fields, SUBTOTAL_NEEDLES)
        if subtotal is None and total is not None:
            subtotal = total - (tax or 0.0)
        if subtotal is not None:
            line_sum = sum(amounts)
            if abs(line_sum - subtotal) > LINE_ITEM_TOLERANCE:
                errors.append(f"Line items sum to {line_sum:.2f} but subtotal is {subtotal:.2f}")
    return errors


def validate_fields(
    fields: Sequence[ExtractedField],
    line_items: Optional[Sequence[LineItem]] = None,
    config: Optional[PipelineConfig] = None,
) -> ValidationResult:
    """Check required fields, extraction confidence and arithmetic consistency.

    Pure and deterministic: the same field list always gives the same result.
    """
    config = config or PipelineConfig()
    errors = _missing_required(fields, config.required_fields)
    warnings: List[str] = []

    threshold = config.low_confidence_threshold
    low_confidence = [f for f in fields if f.confidence < threshold]
    if low_confidence:
        message = f"{len(low_confidence)} fields have low confidence (<{threshold:.0%})"
        if config.low_confidence_is_error:
            errors.append(message)
        else:
            warnings.append(message)

    errors.extend(_consistency(fields, line_items or []))
    return ValidationResult(valid=not errors, errors=errors, warnings=warnings)


@with_error_handling
def lambda_handler(event: Dict[str, Any], _context: Any) -> Dict[str, Any]:
    start = time.time()
    try:
        logger.info("Received event: %s", json.dumps(event, default=str))
        if not isinstance(event, dict) or "fields" not in event:
            raise InputError("Event must contain 'fields'")
        fields = fields_from_payload(event["fields"])
        line_items = line_items_from_payload(event.get("line_items"))
        result = validate_fields(fields, line_items, PipelineConfig.from_env())
        return json.loads(json_dumps({"status": "success", "validation": result, "timestamp": utc_now()}))
    except ValueError as exc:
        logger.warning("Validation error: %s", exc)
        return {
            "status": "error",
            "error_type": "validation_error",
            "message": str(exc),
            "timestamp": utc_now(),
        }
    finally:
        logger.info("Validation completed in %.2fs", time.time() - start)
