"""DynamoDB persistence for pipeline runs."""

from __future__ import annotations

import logging
import os
from typing import Any, Dict, List, Optional

from boto3.dynamodb.conditions import Attr
from botocore.exceptions import BotoCoreError, ClientError

from invoice_pipeline.common import from_decimal, resource, to_decimal, utc_now
from invoice_pipeline.errors import ProviderError
from invoice_pipeline.fields import DATE_NEEDLES, INVOICE_ID_NEEDLES, VENDOR_NEEDLES, field_value, total_amount
from invoice_pipeline.models import HistoricalInvoice, PipelineRun

LOGGER = logging.getLogger(__name__)
LOGGER.setLevel(os.getenv("LOG_LEVEL", "INFO"))

INVOICE_TABLE = os.getenv("INVOICE_TABLE", "invoice-pipeline-invoices")


class InvoiceStore:
    """Upsert runs keyed by ``invoice_id`` and read vendor history back."""

    def __init__(self, table_name: Optional[str] = None, table: Any = None):
        self.table_name = table_name or INVOICE_TABLE
        self._table = table

    @property
    def table(self):
        if self._table is None:
            self._table = resource("dynamodb").Table(self.table_name)
        return self._table

    def save_run(self, run: PipelineRun, vendor: Optional[str] = None) -> Dict[str, Any]:
        item = {
            "invoice_id": run.invoice_id,
            "run_id": run.run_id,
            "vendor": vendor or field_value(run.fields, VENDOR_NEEDLES) or "UNKNOWN",
            "invoice_number": field_value(run.fields, INVOICE_ID_NEEDLES),
            "amount": total_amount(run.fields),
            "invoice_date": field_value(run.fields, DATE_NEEDLES, exclude=("due",)),
            "state": run.state.value,
            "decision": run.decision.value if run.decision else None,
            "reason": run.reason,
            "recorded_at": run.finished_at or utc_now(),
            "run": run.to_dict(),
        }
        item = to_decimal({k: v for k, v in item.items() if v is not None})
        try:
            self.table.put_item(Item=item)
        except (ClientError, BotoCoreError) as exc:
            raise ProviderError("dynamodb", f"save_run failed for {run.invoice_id}: {exc}") from exc
        LOGGER.info("Stored run %s for invoice %s", run.run_id, run.invoice_id)
        return item

    def get(self, invoice_id: str) -> Optional[Dict[str, Any]]:
        try:
            response = self.table.get_item(Key={"invoice_id": invoice_id})
        except (ClientError, BotoCoreError) as exc:
            raise ProviderError("dynamodb", f"get failed for {invoice_id}: {exc}") from exc
        item = response.get("Item")
        return from_decimal(item) if item else None

    def history_for_vendor(self, vendor: str, exclude_invoice_id: Optional[str] = None) -> List[HistoricalInvoice]:
        items: List[Dict[str, Any]] = []
        kwargs: Dict[str, Any] = {"FilterExpression": Attr("vendor").eq(vendor)}
        try:
            while True:
                response = self.table.scan(**kwargs)
                items.extend(response.get("Items", []))
                last_key = response.get("LastEvaluatedKey")
                if not last_key:
                    break
                kwargs["ExclusiveStartKey"] = last_key
        except (ClientError, BotoCoreError) as exc:
            raise ProviderError("dynamodb", f"history lookup failed for vendor {vendor}: {exc}") from exc

        history = []
        for item in items:
            if item.get("invoice_id") == exclude_invoice_id or item.get("amount") is None:
                continue
            history.append(
                HistoricalInvoice(
                    invoice_number=item.get("invoice_number"),
                    amount=float(item["amount"]),
                    invoice_date=item.get("invoice_date"),
                    recorded_at=item.get("recorded_at"),
                )
            )
        return history
