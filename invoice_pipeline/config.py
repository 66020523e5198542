"""Pipeline configuration loaded from environment variables."""

from __future__ import annotations

import os
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, Mapping, Optional, Tuple

from invoice_pipeline.models import ValidationResult

# Standard rate per jurisdiction used by the compliance gate.
JURISDICTION_TAX_RATES: Dict[str, float] = {
    "IN": 0.18,
    "DE": 0.19,
    "UK": 0.20,
    "CA": 0.13,
    "US": 0.0,
    "SG": 0.09,
    "AU": 0.10,
}

JURISDICTION_CURRENCIES: Dict[str, str] = {
    "IN": "INR",
    "DE": "EUR",
    "UK": "GBP",
    "CA": "CAD",
    "US": "USD",
    "SG": "SGD",
    "AU": "AUD",
}

JURISDICTION_ALIASES: Dict[str, str] = {
    "INDIA": "IN",
    "GERMANY": "DE",
    "GB": "UK",
    "UNITED KINGDOM": "UK",
    "CANADA": "CA",
    "USA": "US",
    "UNITED STATES": "US",
    "SINGAPORE": "SG",
    "AUSTRALIA": "AU",
}

DEFAULT_REQUIRED_FIELDS: Tuple[str, ...] = ("invoice_id", "date", "total")
APPROVAL_THRESHOLDS: Tuple[float, ...] = (1000.0, 5000.0, 10000.0, 25000.0)


def _env_bool(env: Mapping[str, str], name: str, default: bool) -> bool:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _env_float(env: Mapping[str, str], name: str, default: Optional[float]) -> Optional[float]:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    return float(raw)


def normalize_jurisdiction(value: Optional[str]) -> str:
    code = (value or "").strip().upper()
    return JURISDICTION_ALIASES.get(code, code)


@dataclass
class PipelineConfig:
    default_jurisdiction: str = "IN"
    tax_rate_override: Optional[float] = None
    tax_tolerance: float = 0.02
    required_fields: Tuple[str, ...] = DEFAULT_REQUIRED_FIELDS
    low_confidence_threshold: float = 0.85
    low_confidence_is_error: bool = True
    very_low_confidence_threshold: float = 0.70
    very_low_confidence_count: int = 2
    high_value_threshold: float = 1_000_000.0
    risk_threshold: float = 50.0
    approval_thresholds: Tuple[float, ...] = APPROVAL_THRESHOLDS
    mode: str = "sequential"
    use_bedrock: bool = False
    invoice_table: str = "invoice-pipeline-invoices"
    connections_table: str = "invoice-pipeline-connections"
    reports_bucket: Optional[str] = None
    tax_rates: Dict[str, float] = field(default_factory=lambda: dict(JURISDICTION_TAX_RATES))

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "PipelineConfig":
        env = os.environ if env is None else env
        return cls(
            default_jurisdiction=normalize_jurisdiction(env.get("DEFAULT_JURISDICTION", "IN")),
            tax_rate_override=_env_float(env, "TAX_RATE_OVERRIDE", None),
            tax_tolerance=_env_float(env, "TAX_TOLERANCE", 0.02),
            low_confidence_threshold=_env_float(env, "LOW_CONFIDENCE_THRESHOLD", 0.85),
            low_confidence_is_error=_env_bool(env, "LOW_CONFIDENCE_IS_ERROR", True),
            very_low_confidence_threshold=_env_float(env, "VERY_LOW_CONFIDENCE_THRESHOLD", 0.70),
            high_value_threshold=_env_float(env, "HIGH_VALUE_THRESHOLD", 1_000_000.0),
            risk_threshold=_env_float(env, "RISK_THRESHOLD", 50.0),
            mode=env.get("PIPELINE_MODE", "sequential").strip().lower() or "sequential",
            use_bedrock=_env_bool(env, "USE_BEDROCK", False),
            invoice_table=env.get("INVOICE_TABLE", "invoice-pipeline-invoices"),
            connections_table=env.get("CONNECTIONS_TABLE", "invoice-pipeline-connections"),
            reports_bucket=env.get("REPORTS_BUCKET") or None,
        )

    def rate_for(self, jurisdiction: Optional[str] = None) -> Tuple[str, float]:
        code = normalize_jurisdiction(jurisdiction) or self.default_jurisdiction
        if self.tax_rate_override is not None:
            return code, self.tax_rate_override
        if code not in self.tax_rates:
            raise KeyError(f"No tax rate configured for jurisdiction {code}")
        return code, self.tax_rates[code]

    def validate(self) -> ValidationResult:
        errors = []
        warnings = []
        if self.mode not in ("sequential", "audit"):
            errors.append(f"Unsupported pipeline mode: {self.mode}")
        if not 0.0 <= self.tax_tolerance < 1.0:
            errors.append("TAX_TOLERANCE must be between 0 and 1")
        if self.tax_rate_override is None and self.default_jurisdiction not in self.tax_rates:
            errors.append(f"No tax rate configured for jurisdiction {self.default_jurisdiction}")
        if self.very_low_confidence_threshold > self.low_confidence_threshold:
            warnings.append("Very-low confidence threshold is above the low confidence threshold")
        if not self.reports_bucket:
            warnings.append("REPORTS_BUCKET not set; reports will be returned inline")
        return ValidationResult(valid=not errors, errors=errors, warnings=warnings)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
