"""Early-exit orchestration of the invoice pipeline.

One ``PipelineRun`` is created per invocation. Stages run in order and each
gate may end the run with a REJECTED decision; only an invoice that passes
validation, tax compliance and fraud scoring is coded to the ledger and
APPROVED. Unexpected exceptions end the run as FAILED with no decision.
"""

from __future__ import annotations

import logging
import os
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Dict, List, Optional, Sequence

from invoice_pipeline.common import AuditLogger
from invoice_pipeline.compliance_lambda import check_compliance, tax_breakdown
from invoice_pipeline.config import JURISDICTION_CURRENCIES, PipelineConfig
from invoice_pipeline.errors import ProviderError
from invoice_pipeline.fields import INVOICE_ID_NEEDLES, VENDOR_NEEDLES, field_value
from invoice_pipeline.fraud_lambda import assess_risk, risk_areas
from invoice_pipeline.ledger_lambda import code_invoice, expense_account_for
from invoice_pipeline.models import (
    ExtractedField,
    HistoricalInvoice,
    LineItem,
    PipelineRun,
    PipelineState,
)
from invoice_pipeline.progress import FRAUD_ANALYSIS, LEDGER_ENTRIES, TAX_ANALYSIS, ProgressReporter
from invoice_pipeline.validation_lambda import validate_fields

logger = logging.getLogger(__name__)
logger.setLevel(os.getenv("LOG_LEVEL", "INFO"))

AGENT_NAMES: Dict[PipelineState, str] = {
    PipelineState.EXTRACTING: "OCR Agent",
    PipelineState.VALIDATING: "Validation Agent",
    PipelineState.CHECKING_COMPLIANCE: "Tax Compliance Agent",
    PipelineState.SCORING_RISK: "Fraud Detection Agent",
    PipelineState.CODING_LEDGER: "GL Coding Agent",
}
STAGE_LABELS: Dict[PipelineState, str] = {
    PipelineState.VALIDATING: "Validation",
    PipelineState.CHECKING_COMPLIANCE: "Tax compliance",
    PipelineState.SCORING_RISK: "Fraud detection",
}
RUNNING_MESSAGES: Dict[PipelineState, str] = {
    PipelineState.EXTRACTING: "Starting document text extraction...",
    PipelineState.VALIDATING: "Validating extracted data...",
    PipelineState.CHECKING_COMPLIANCE: "Checking tax compliance...",
    PipelineState.SCORING_RISK: "Analyzing for fraud patterns...",
    PipelineState.CODING_LEDGER: "Assigning general ledger codes...",
}
GATES = (PipelineState.VALIDATING, PipelineState.CHECKING_COMPLIANCE, PipelineState.SCORING_RISK)


class PipelineOrchestrator:
    def __init__(
        self,
        extractor: Any = None,
        reporter: Optional[ProgressReporter] = None,
        history_store: Any = None,
        classifier: Any = None,
        config: Optional[PipelineConfig] = None,
    ):
        self.extractor = extractor
        self.reporter = reporter or ProgressReporter()
        self.history_store = history_store
        self.classifier = classifier
        self.config = config or PipelineConfig()
        self.audit = AuditLogger(__name__)

    def run(
        self,
        document: Any,
        invoice_id: Optional[str] = None,
        vendor: Optional[str] = None,
        jurisdiction: Optional[str] = None,
    ) -> PipelineRun:
        if self.extractor is None:
            raise ValueError("No extractor configured")
        run = PipelineRun(invoice_id=invoice_id or getattr(document, "key", None) or "")
        run.invoice_id = run.invoice_id or run.run_id
        return self._execute(run, lambda: self._extract(run, document), vendor, jurisdiction)

    def run_fields(
        self,
        fields: Sequence[ExtractedField],
        line_items: Optional[Sequence[LineItem]] = None,
        invoice_id: Optional[str] = None,
        vendor: Optional[str] = None,
        jurisdiction: Optional[str] = None,
    ) -> PipelineRun:
        """Run the gates on fields that were already extracted."""
        run = PipelineRun(
            invoice_id=invoice_id or field_value(fields, INVOICE_ID_NEEDLES) or "",
            fields=list(fields),
            line_items=list(line_items or []),
        )
        run.invoice_id = run.invoice_id or run.run_id
        return self._execute(run, None, vendor, jurisdiction)

    def _execute(
        self,
        run: PipelineRun,
        extract: Optional[Callable[[], None]],
        vendor: Optional[str],
        jurisdiction: Optional[str],
    ) -> PipelineRun:
        self.audit.log_workflow_event(run.run_id, "pipeline", "started", {"invoice_id": run.invoice_id, "mode": self.config.mode})
        try:
            if extract is not None:
                extract()
            if self.config.mode == "audit":
                passed = self._audit_gates(run, vendor, jurisdiction)
            else:
                passed = self._sequential_gates(run, vendor, jurisdiction)
            if passed:
                self._code_ledger(run)
        except Exception as exc:
            logger.exception("Pipeline run %s failed", run.run_id)
            self.audit.log_error(exc, {"run_id": run.run_id, "state": run.state.value})
            self.reporter.error("Processing failed", exc)
            if not run.is_terminal:
                run.fail(str(exc))
        self.audit.log_workflow_event(
            run.run_id,
            "pipeline",
            run.state.value,
            {"decision": run.decision.value if run.decision else None, "reason": run.reason, "error": run.error},
        )
        return run

    def _extract(self, run: PipelineRun, document: Any) -> None:
        agent = AGENT_NAMES[PipelineState.EXTRACTING]
        self.reporter.agent_activity(agent, "running", RUNNING_MESSAGES[PipelineState.EXTRACTING])
        result = self.extractor.extract(document, on_field=self.reporter.field_extracted)
        run.fields = list(result.fields)
        run.line_items = list(result.line_items)
        if result.error:
            message = "OCR completed with limited data"
        else:
            message = f"Extracted {len(run.fields)} fields successfully"
        self.reporter.agent_activity(agent, "completed", message)
        self.audit.log_workflow_event(run.run_id, "extraction", "completed", {"fields": len(run.fields), "error": result.error})

    def _sequential_gates(self, run: PipelineRun, vendor: Optional[str], jurisdiction: Optional[str]) -> bool:
        checks = self._checks(run, vendor, jurisdiction)
        for state in GATES:
            run.advance(state)
            self._started(state)
            if not self._settle(run, state, self._attempt(state, checks[state])):
                return False
        return True

    def _audit_gates(self, run: PipelineRun, vendor: Optional[str], jurisdiction: Optional[str]) -> bool:
        """Run every check over the same snapshot, then gate in pipeline order."""
        checks = self._checks(run, vendor, jurisdiction)
        for state in GATES:
            self._started(state)
        with ThreadPoolExecutor(max_workers=len(GATES)) as pool:
            futures = {state: pool.submit(self._attempt, state, checks[state]) for state in GATES}
            outcomes = {state: future.result() for state, future in futures.items()}
        stop = next((state for state in GATES if outcomes[state]), None)
        for state in GATES:
            if stop is None or GATES.index(state) <= GATES.index(stop):
                run.advance(state)
            self._report(run, state, outcomes[state])
        if stop is not None:
            self._reject(run, outcomes[stop])
            return False
        return True

    def _checks(self, run: PipelineRun, vendor: Optional[str], jurisdiction: Optional[str]) -> Dict[PipelineState, Callable[[], Optional[str]]]:
        return {
            PipelineState.VALIDATING: lambda: self._validate(run),
            PipelineState.CHECKING_COMPLIANCE: lambda: self._check_compliance(run, jurisdiction),
            PipelineState.SCORING_RISK: lambda: self._score_risk(run, vendor),
        }

    def _attempt(self, state: PipelineState, check: Callable[[], Optional[str]]) -> Optional[str]:
        try:
            return check()
        except ProviderError as exc:
            logger.warning("%s unavailable: %s", STAGE_LABELS[state], exc)
            return f"{STAGE_LABELS[state]} unavailable: {exc}"

    def _started(self, state: PipelineState) -> None:
        self.reporter.agent_activity(AGENT_NAMES[state], "running", RUNNING_MESSAGES[state])

    def _settle(self, run: PipelineRun, state: PipelineState, reason: Optional[str]) -> bool:
        self._report(run, state, reason)
        if reason:
            self._reject(run, reason)
            return False
        return True

    def _report(self, run: PipelineRun, state: PipelineState, reason: Optional[str]) -> None:
        agent = AGENT_NAMES[state]
        if reason:
            self.reporter.agent_activity(agent, "rejected", reason)
            self.audit.log_workflow_event(run.run_id, state.value.lower(), "rejected", {"reason": reason})
        else:
            self.reporter.agent_activity(agent, "completed", self._completed_message(run, state))
            self.audit.log_workflow_event(run.run_id, state.value.lower(), "passed")

    def _reject(self, run: PipelineRun, reason: str) -> None:
        run.reject(reason)
        self._complete(run)

    def _completed_message(self, run: PipelineRun, state: PipelineState) -> str:
        if state == PipelineState.VALIDATING:
            return "All fields validated successfully"
        if state == PipelineState.CHECKING_COMPLIANCE:
            return "Invoice is tax compliant"
        return f"Fraud risk score: {run.risk.score}% ({run.risk.level.value})"

    def _validate(self, run: PipelineRun) -> Optional[str]:
        run.validation = validate_fields(run.fields, run.line_items, self.config)
        if run.validation.valid:
            return None
        return "Validation failed: " + ", ".join(run.validation.errors)

    def _check_compliance(self, run: PipelineRun, jurisdiction: Optional[str]) -> Optional[str]:
        result = check_compliance(run.fields, jurisdiction, self.config)
        run.compliance = result
        breakdown = tax_breakdown(run.fields, result)
        self.reporter.emit(
            TAX_ANALYSIS,
            {
                "subtotal": breakdown.subtotal,
                "tax": breakdown.tax,
                "total": breakdown.total,
                "components": breakdown.components,
                "cgst": breakdown.components.get("CGST"),
                "sgst": breakdown.components.get("SGST"),
                "jurisdiction": result.jurisdiction,
                "currency": JURISDICTION_CURRENCIES.get(result.jurisdiction),
                "taxRate": round(result.tax_rate * 100, 2),
                "expectedTax": result.expected_tax,
                "compliant": result.compliant,
                "violations": result.violations,
            },
        )
        if result.compliant:
            return None
        return "Tax compliance failed: " + ", ".join(result.violations)

    def _history(self, run: PipelineRun, vendor: Optional[str]) -> Optional[List[HistoricalInvoice]]:
        if self.history_store is None:
            return None
        vendor = vendor or field_value(run.fields, VENDOR_NEEDLES)
        if not vendor:
            return None
        return self.history_store.history_for_vendor(vendor, exclude_invoice_id=run.invoice_id)

    def _score_risk(self, run: PipelineRun, vendor: Optional[str]) -> Optional[str]:
        risk = assess_risk(run.fields, self._history(run, vendor), self.config)
        run.risk = risk
        self.reporter.emit(
            FRAUD_ANALYSIS,
            {
                "riskScore": risk.score,
                "riskLevel": risk.level.value,
                "flags": risk.flags,
                "riskAreas": risk_areas(run.fields, self.config),
                "indicators": [indicator.to_dict() for indicator in risk.indicators],
                "compositeScore": risk.composite_score,
            },
        )
        if risk.score > self.config.risk_threshold:
            return "High fraud risk: " + ", ".join(risk.flags)
        return None

    def _code_ledger(self, run: PipelineRun) -> None:
        state = PipelineState.CODING_LEDGER
        run.advance(state)
        self._started(state)
        account = expense_account_for(run.fields, self.classifier)
        run.ledger_entries = code_invoice(run.fields, account)
        self.reporter.emit(
            LEDGER_ENTRIES,
            {
                "entries": [entry.to_dict() for entry in run.ledger_entries],
                "totalDebit": sum(entry.debit for entry in run.ledger_entries),
                "totalCredit": sum(entry.credit for entry in run.ledger_entries),
                "balanced": True,
            },
        )
        self.reporter.agent_activity(AGENT_NAMES[state], "completed", f"Created {len(run.ledger_entries)} GL entries")
        run.approve()
        self._complete(run)

    def _complete(self, run: PipelineRun) -> None:
        summary = run.summary()
        self.reporter.processing_complete(
            run.decision.value,
            {
                "fieldsExtracted": summary["fields_extracted"],
                "validationPassed": summary["validation_passed"],
                "taxCompliant": summary["tax_compliant"],
                "fraudRisk": summary["fraud_risk"],
                "glEntriesCreated": summary["ledger_entries_created"],
                "reason": run.reason,
            },
            run.reason,
        )
