"""Data classes shared by the pipeline stages."""

from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from invoice_pipeline.common import utc_now


class Decision(str, Enum):
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


class PipelineState(str, Enum):
    EXTRACTING = "EXTRACTING"
    VALIDATING = "VALIDATING"
    CHECKING_COMPLIANCE = "CHECKING_COMPLIANCE"
    SCORING_RISK = "SCORING_RISK"
    CODING_LEDGER = "CODING_LEDGER"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self in (PipelineState.APPROVED, PipelineState.REJECTED, PipelineState.FAILED)


class RiskLevel(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"


def classify_risk(score: float) -> RiskLevel:
    if score > 50:
        return RiskLevel.HIGH
    if score > 25:
        return RiskLevel.MEDIUM
    return RiskLevel.LOW


@dataclass(frozen=True)
class BoundingBox:
    page: int = 1
    left: float = 0.0
    top: float = 0.0
    width: float = 0.0
    height: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class ExtractedField:
    name: str
    value: str
    confidence: float
    location: BoundingBox = field(default_factory=BoundingBox)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "value": self.value,
            "confidence": self.confidence,
            "location": self.location.to_dict(),
        }


@dataclass(frozen=True)
class LineItem:
    description: str
    quantity: Optional[float] = None
    unit_price: Optional[float] = None
    amount: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class ValidationResult:
    valid: bool
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class ComplianceResult:
    compliant: bool
    violations: List[str] = field(default_factory=list)
    jurisdiction: str = ""
    tax_rate: float = 0.0
    expected_tax: Optional[float] = None
    found_tax: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class TaxBreakdown:
    subtotal: float
    tax: float
    total: float
    rate: float
    jurisdiction: str
    components: Dict[str, float] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class RiskIndicator:
    category: str
    description: str
    severity: float

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class RiskAssessment:
    score: float
    level: RiskLevel
    flags: List[str] = field(default_factory=list)
    indicators: List[RiskIndicator] = field(default_factory=list)
    composite_score: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "score": self.score,
            "level": self.level.value,
            "flags": list(self.flags),
            "indicators": [indicator.to_dict() for indicator in self.indicators],
            "composite_score": self.composite_score,
        }


@dataclass(frozen=True)
class LedgerEntry:
    account: str
    code: str
    debit: float
    credit: float
    description: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class PipelineRun:
    """One invocation of the pipeline for a single invoice.

    A run is created per invocation and never re-entered: once ``decision`` is
    set it stays fixed, and a FAILED run carries an ``error`` but no decision.
    """

    invoice_id: str
    run_id: str = field(default_factory=lambda: f"run-{uuid.uuid4().hex[:12]}")
    fields: List[ExtractedField] = field(default_factory=list)
    line_items: List[LineItem] = field(default_factory=list)
    validation: Optional[ValidationResult] = None
    compliance: Optional[ComplianceResult] = None
    risk: Optional[RiskAssessment] = None
    ledger_entries: List[LedgerEntry] = field(default_factory=list)
    state: PipelineState = PipelineState.EXTRACTING
    decision: Optional[Decision] = None
    reason: Optional[str] = None
    error: Optional[str] = None
    started_at: str = field(default_factory=utc_now)
    finished_at: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.state.is_terminal

    def advance(self, state: PipelineState) -> None:
        if self.is_terminal:
            raise RuntimeError(f"Run {self.run_id} already finished in state {self.state.value}")
        self.state = state

    def approve(self) -> None:
        self._finish(PipelineState.APPROVED, Decision.APPROVED, None)

    def reject(self, reason: str) -> None:
        self._finish(PipelineState.REJECTED, Decision.REJECTED, reason)

    def fail(self, error: str) -> None:
        if self.is_terminal:
            raise RuntimeError(f"Run {self.run_id} already finished in state {self.state.value}")
        self.state = PipelineState.FAILED
        self.error = error
        self.finished_at = utc_now()

    def _finish(self, state: PipelineState, decision: Decision, reason: Optional[str]) -> None:
        if self.is_terminal:
            raise RuntimeError(f"Run {self.run_id} already finished in state {self.state.value}")
        self.state = state
        self.decision = decision
        self.reason = reason
        self.finished_at = utc_now()

    def summary(self) -> Dict[str, Any]:
        return {
            "fields_extracted": len(self.fields),
            "validation_passed": self.validation.valid if self.validation else None,
            "tax_compliant": self.compliance.compliant if self.compliance else None,
            "fraud_risk": self.risk.score if self.risk else None,
            "ledger_entries_created": len(self.ledger_entries),
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "invoice_id": self.invoice_id,
            "state": self.state.value,
            "decision": self.decision.value if self.decision else None,
            "reason": self.reason,
            "error": self.error,
            "fields": [f.to_dict() for f in self.fields],
            "line_items": [item.to_dict() for item in self.line_items],
            "validation": self.validation.to_dict() if self.validation else None,
            "compliance": self.compliance.to_dict() if self.compliance else None,
            "risk": self.risk.to_dict() if self.risk else None,
            "ledger_entries": [entry.to_dict() for entry in self.ledger_entries],
            "summary": self.summary(),
            "started_at": self.started_at,
            "finished_at": self.finished_at,
        }


@dataclass(frozen=True)
class HistoricalInvoice:
    """A previously processed invoice from the same vendor."""

    invoice_number: Optional[str]
    amount: float
    invoice_date: Optional[str] = None
    recorded_at: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
