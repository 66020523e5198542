import json
import logging
import os
import re
import time
from typing import Any, Dict, List, Optional, Sequence

from invoice_pipeline.common import json_dumps, utc_now, with_error_handling
from invoice_pipeline.config import PipelineConfig, normalize_jurisdiction
from invoice_pipeline.errors import InputError
from invoice_pipeline.fields import (
    GSTIN_NEEDLES,
    SUBTOTAL_NEEDLES,
    TAX_EXCLUDE,
    TAX_NEEDLES,
    field_amount,
    field_value,
    fields_from_payload,
    find_field,
    parse_amount,
    total_amount,
)
from invoice_pipeline.models import ComplianceResult, ExtractedField, TaxBreakdown

logger = logging.getLogger(__name__)
logger.setLevel(os.getenv("LOG_LEVEL", "INFO"))

GSTIN_PATTERN = re.compile(r"^[0-9]{2}[A-Z]{5}[0-9]{4}[A-Z]{1}[1-9A-Z]{1}Z[0-9A-Z]{1}$")
TAX_NOT_FOUND = "Tax/GST field not found on invoice"


def expected_tax(total: float, rate: float) -> float:
    """Tax contained in a tax-inclusive ``total`` at ``rate``."""
    return total * rate / (1 + rate)


def check_compliance(
    fields: Sequence[ExtractedField],
    jurisdiction: Optional[str] = None,
    config: Optional[PipelineConfig] = None,
) -> ComplianceResult:
    config = config or PipelineConfig()
    code, rate = config.rate_for(jurisdiction)
    violations: List[str] = []

    total = total_amount(fields)
    tax_field = find_field(fields, TAX_NEEDLES, TAX_EXCLUDE)
    found = parse_amount(tax_field.value) if tax_field else None
    expected = None

    if tax_field is None:
        violations.append(TAX_NOT_FOUND)
    elif found is None:
        violations.append(f"Tax/GST value could not be read: {tax_field.value!r}")
    elif total is not None and found is not None:
        expected = expected_tax(total, rate)
        if abs(found - expected) > config.tax_tolerance * total:
            violations.append(
                f"Tax calculation may be incorrect (Expected: ~{expected:.2f}, Found: {tax_field.value})"
            )

    if code == "IN":
        gstin = field_value(fields, GSTIN_NEEDLES)
        if gstin and not GSTIN_PATTERN.match(gstin.replace(" ", "").upper()):
            violations.append(f"Invalid GSTIN format: {gstin}")

    return ComplianceResult(
        compliant=not violations,
        violations=violations,
        jurisdiction=code,
        tax_rate=rate,
        expected_tax=round(expected, 2) if expected is not None else None,
        found_tax=found,
    )


def tax_breakdown(fields: Sequence[ExtractedField], result: ComplianceResult) -> TaxBreakdown:
    """Subtotal and tax components shown in the tax analysis panel.

    Indian GST splits evenly into CGST and SGST for intra-state supply.
    """
    total = total_amount(fields) or 0.0
    tax = result.found_tax or 0.0
    subtotal = field_amount(fields, SUBTOTAL_NEEDLES)
    if subtotal is None:
        subtotal = total - tax
    components: Dict[str, float] = {}
    if result.jurisdiction == "IN":
        components = {"CGST": round(tax / 2, 2), "SGST": round(tax / 2, 2)}
    elif tax:
        components = {"TAX": round(tax, 2)}
    return TaxBreakdown(
        subtotal=round(subtotal, 2),
        tax=round(tax, 2),
        total=round(total, 2),
        rate=result.tax_rate,
        jurisdiction=result.jurisdiction,
        components=components,
    )


@with_error_handling
def lambda_handler(event: Dict[str, Any], _context: Any) -> Dict[str, Any]:
    start = time.time()
    try:
        logger.info("Received event: %s", json.dumps(event, default=str))
        if not isinstance(event, dict) or "fields" not in event:
            raise InputError("Event must contain 'fields'")
        fields = fields_from_payload(event["fields"])
        config = PipelineConfig.from_env()
        jurisdiction = normalize_jurisdiction(event.get("jurisdiction")) or None
        try:
            result = check_compliance(fields, jurisdiction, config)
        except KeyError as exc:
            raise InputError(str(exc.args[0]) if exc.args else "Unknown jurisdiction") from exc
        return json.loads(
            json_dumps(
                {
                    "status": "success",
                    "compliance": result,
                    "tax_breakdown": tax_breakdown(fields, result),
                    "timestamp": utc_now(),
                }
            )
        )
    except ValueError as exc:
        logger.warning("Validation error: %s", exc)
        return {
            "status": "error",
            "error_type": "validation_error",
            "message": str(exc),
            "timestamp": utc_now(),
        }
    finally:
        logger.info("Compliance check completed in %.2fs", time.time() - start)
