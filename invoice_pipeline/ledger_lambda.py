import json
import logging
import os
import time
from typing import Any, Dict, List, Optional, Sequence, Tuple

from invoice_pipeline.bedrock import ExpenseClassifier
from invoice_pipeline.common import json_dumps, utc_now, with_error_handling
from invoice_pipeline.config import PipelineConfig
from invoice_pipeline.errors import InputError, LedgerImbalanceError, ParseError, ProviderError
from invoice_pipeline.fields import TOTAL_EXCLUDE, TOTAL_NEEDLES, fields_from_payload, parse_amount, require_field, tax_amount
from invoice_pipeline.models import ExtractedField, LedgerEntry

logger = logging.getLogger(__name__)
logger.setLevel(os.getenv("LOG_LEVEL", "INFO"))

EXPENSE_ACCOUNT = ("Office Expenses", "6100")
INPUT_TAX_ACCOUNT = ("Input GST", "1530")
PAYABLE_ACCOUNT = ("Accounts Payable", "2100")
BALANCE_TOLERANCE = 1e-6


def code_invoice(
    fields: Sequence[ExtractedField],
    expense_account: Optional[Tuple[str, str]] = None,
) -> List[LedgerEntry]:
    """Post an approved invoice: expense and input tax debits against one payable credit."""
    total_field = require_field(fields, TOTAL_NEEDLES, TOTAL_EXCLUDE, label="Total")
    total = parse_amount(total_field.value)
    if total is None or total <= 0:
        raise InputError(f"Invoice total is not a positive amount: {total_field.value!r}")
    tax = tax_amount(fields) or 0.0
    if not 0 <= tax <= total:
        raise InputError(f"Tax {tax:.2f} is outside [0, {total:.2f}]")

    account, code = expense_account or EXPENSE_ACCOUNT
    entries = [LedgerEntry(account, code, total - tax, 0.0, "Invoice expense")]
    if tax > 0:
        entries.append(LedgerEntry(INPUT_TAX_ACCOUNT[0], INPUT_TAX_ACCOUNT[1], tax, 0.0, "GST on purchases"))
    entries.append(LedgerEntry(PAYABLE_ACCOUNT[0], PAYABLE_ACCOUNT[1], 0.0, total, "Vendor invoice payable"))
    assert_balanced(entries, total)
    return entries


def assert_balanced(entries: Sequence[LedgerEntry], total: float) -> None:
    debits = sum(entry.debit for entry in entries)
    credits = sum(entry.credit for entry in entries)
    if abs(debits - credits) > BALANCE_TOLERANCE or abs(credits - total) > BALANCE_TOLERANCE:
        raise LedgerImbalanceError(
            f"Ledger out of balance: debits {debits:.6f}, credits {credits:.6f}, total {total:.6f}"
        )


def expense_account_for(fields: Sequence[ExtractedField], classifier: Any = None) -> Tuple[str, str]:
    """Ask the classifier for an expense account, keeping the default on any model failure."""
    if classifier is None:
        return EXPENSE_ACCOUNT
    try:
        return classifier.classify(fields)
    except (ProviderError, ParseError) as exc:
        logger.warning("Expense classification unavailable, using %s: %s", EXPENSE_ACCOUNT[1], exc)
        return EXPENSE_ACCOUNT


@with_error_handling
def lambda_handler(event: Dict[str, Any], _context: Any) -> Dict[str, Any]:
    start = time.time()
    try:
        logger.info("Received event: %s", json.dumps(event, default=str))
        if not isinstance(event, dict) or "fields" not in event:
            raise InputError("Event must contain 'fields'")
        fields = fields_from_payload(event["fields"])
        classifier = None
        if PipelineConfig.from_env().use_bedrock:
            classifier = ExpenseClassifier()
        entries = code_invoice(fields, expense_account_for(fields, classifier))
        return json.loads(json_dumps({"status": "success", "ledger_entries": entries, "timestamp": utc_now()}))
    except (ValueError, KeyError) as exc:
        logger.warning("Validation error: %s", exc)
        return {
            "status": "error",
            "error_type": "validation_error",
            "message": str(exc),
            "timestamp": utc_now(),
        }
    finally:
        logger.info("Ledger coding completed in %.2fs", time.time() - start)
