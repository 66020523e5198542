import io
import json
import logging
import os
import time
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import openpyxl
from openpyxl.styles import Font, PatternFill

from invoice_pipeline.common import client, utc_now
from invoice_pipeline.errors import InputError
from invoice_pipeline.invoice_store import InvoiceStore

logger = logging.getLogger(__name__)
logger.setLevel(os.getenv("LOG_LEVEL", "INFO"))

RED = PatternFill(start_color="FFC7CE", end_color="FFC7CE", fill_type="solid")
YELLOW = PatternFill(start_color="FFEB9C", end_color="FFEB9C", fill_type="solid")
GREEN = PatternFill(start_color="C6EFCE", end_color="C6EFCE", fill_type="solid")
LEVEL_FILLS = {"HIGH": RED, "MEDIUM": YELLOW, "LOW": GREEN}


def markdown_report(run: Dict[str, Any]) -> str:
    lines = ["# Invoice Processing Report", ""]
    lines.append(f"- **Invoice**: {run.get('invoice_id') or '(unknown)'}")
    lines.append(f"- **Run**: {run.get('run_id')}")
    lines.append(f"- **State**: {run.get('state')}")
    lines.append(f"- **Decision**: {run.get('decision') or '(none)'}")
    if run.get("reason"):
        lines.append(f"- **Reason**: {run['reason']}")
    if run.get("error"):
        lines.append(f"- **Error**: {run['error']}")

    validation = run.get("validation") or {}
    lines += ["", "## Validation"]
    if not validation:
        lines.append("Not run.")
    elif validation.get("valid"):
        lines.append("All checks passed.")
    for message in validation.get("errors", []):
        lines.append(f"- {message}")
    for message in validation.get("warnings", []):
        lines.append(f"- warning: {message}")

    compliance = run.get("compliance") or {}
    lines += ["", "## Tax compliance"]
    if not compliance:
        lines.append("Not run.")
    else:
        lines.append(f"Jurisdiction {compliance.get('jurisdiction')} at {compliance.get('tax_rate', 0) * 100:.0f}%.")
        for violation in compliance.get("violations", []):
            lines.append(f"- {violation}")

    risk = run.get("risk") or {}
    lines += ["", "## Fraud risk"]
    if not risk:
        lines.append("Not run.")
    else:
        lines.append(f"Score {risk.get('score')} ({risk.get('level')}).")
        for flag in risk.get("flags", []):
            lines.append(f"- `{flag}`")
        for indicator in risk.get("indicators", []):
            lines.append(f"- {indicator['category']}: {indicator['description']} (severity {indicator['severity']})")

    entries = run.get("ledger_entries") or []
    lines += ["", "## Ledger entries"]
    if not entries:
        lines.append("No entries created.")
    else:
        lines.append("| Account | Code | Debit | Credit |")
        lines.append("|---|---|---:|---:|")
        for entry in entries:
            lines.append(f"| {entry['account']} | {entry['code']} | {entry['debit']:,.2f} | {entry['credit']:,.2f} |")
    return "\n".join(lines)


def excel_report(run: Dict[str, Any]) -> bytes:
    wb = openpyxl.Workbook()
    ws = wb.active
    ws.title = "Summary"
    risk = run.get("risk") or {}
    rows = [
        ("Invoice", run.get("invoice_id")),
        ("Run", run.get("run_id")),
        ("State", run.get("state")),
        ("Decision", run.get("decision")),
        ("Reason", run.get("reason")),
        ("Risk Score", risk.get("score")),
        ("Risk Level", risk.get("level")),
    ]
    for label, value in rows:
        ws.append([label, value])
    for row in ws.iter_rows(min_col=1, max_col=1):
        row[0].font = Font(bold=True)
    if risk.get("level") in LEVEL_FILLS:
        ws["B7"].fill = LEVEL_FILLS[risk["level"]]

    ledger = wb.create_sheet("Ledger")
    ledger.append(["Account", "Code", "Debit", "Credit", "Description"])
    for entry in run.get("ledger_entries") or []:
        ledger.append([entry["account"], entry["code"], entry["debit"], entry["credit"], entry["description"]])

    flags = wb.create_sheet("Flags")
    flags.append(["Source", "Message", "Severity"])
    for message in (run.get("validation") or {}).get("errors", []):
        flags.append(["validation", message, None])
    for message in (run.get("compliance") or {}).get("violations", []):
        flags.append(["compliance", message, None])
    for message in risk.get("flags", []):
        flags.append(["risk", message, None])
    for indicator in risk.get("indicators", []):
        flags.append([indicator["category"], indicator["description"], indicator["severity"]])
    for r in range(2, flags.max_row + 1):
        severity = flags.cell(r, 3).value
        fill = RED if severity is None or severity >= 0.7 else YELLOW if severity >= 0.4 else None
        if fill:
            for c in range(1, 4):
                flags.cell(r, c).fill = fill

    buffer = io.BytesIO()
    wb.save(buffer)
    return buffer.getvalue()


def generate_report(run: Dict[str, Any], out_bucket: Optional[str] = None, out_key_prefix: str = "reports/") -> Dict[str, Any]:
    md = markdown_report(run)
    xlsx = excel_report(run)
    if not out_bucket:
        return {"generated": ["report.md", "report.xlsx"], "markdown": md}

    s3 = client("s3")
    ts = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%SZ")
    base = f"{out_key_prefix}{run.get('invoice_id') or 'invoice'}_{ts}"
    s3.put_object(Bucket=out_bucket, Key=base + ".md", Body=md.encode("utf-8"), ContentType="text/markdown")
    s3.put_object(
        Bucket=out_bucket,
        Key=base + ".xlsx",
        Body=xlsx,
        ContentType="application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
    )
    logger.info("Report written to s3://%s/%s", out_bucket, base)
    return {"s3": {"bucket": out_bucket, "prefix": base}, "generated": ["report.md", "report.xlsx"]}


def lambda_handler(event: Dict[str, Any], _context: Any) -> Dict[str, Any]:
    start = time.time()
    try:
        logger.info("Received event: %s", json.dumps(event, default=str))
        if not isinstance(event, dict):
            raise InputError("Event must be a dictionary")
        run = event.get("run")
        if run is None:
            invoice_id = event.get("invoice_id")
            if not invoice_id:
                raise InputError("Event must contain 'run' or 'invoice_id'")
            item = InvoiceStore().get(invoice_id)
            if not item:
                raise InputError(f"No stored run for invoice {invoice_id}")
            run = item.get("run") or item
        result = generate_report(run, os.getenv("REPORTS_BUCKET"))
        return {"status": "success", **result, "timestamp": utc_now()}
    except ValueError as exc:
        logger.warning("Validation error: %s", exc)
        return {
            "status": "error",
            "error_type": "validation_error",
            "message": str(exc),
            "timestamp": utc_now(),
        }
    except Exception as exc:
        logger.error("Unhandled error: %s", exc, exc_info=True)
        return {
            "status": "error",
            "error_type": "internal_error",
            "message": str(exc),
            "timestamp": utc_now(),
        }
    finally:
        logger.info("Report generation completed in %.2fs", time.time() - start)
