"""Fraud risk scoring.

The gate score is additive and deterministic. When the vendor's previous
invoices are available the historical heuristics below run as well; their
indicators and weighted composite are reported next to the score but do not
change it.
"""

from __future__ import annotations

import json
import logging
import os
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Sequence, Tuple

import numpy as np

from invoice_pipeline.common import json_dumps, utc_now, with_error_handling
from invoice_pipeline.config import APPROVAL_THRESHOLDS, PipelineConfig
from invoice_pipeline.errors import InputError
from invoice_pipeline.fields import (
    DATE_NEEDLES,
    INVOICE_ID_NEEDLES,
    TOTAL_EXCLUDE,
    TOTAL_NEEDLES,
    field_value,
    fields_from_payload,
    find_field,
    parse_amount,
    parse_date,
    total_amount,
)
from invoice_pipeline.models import (
    ExtractedField,
    HistoricalInvoice,
    RiskAssessment,
    RiskIndicator,
    classify_risk,
)

logger = logging.getLogger(__name__)
logger.setLevel(os.getenv("LOG_LEVEL", "INFO"))

MISSING_INVOICE_POINTS = 20
HIGH_VALUE_POINTS = 15
LOW_CONFIDENCE_POINTS = 10

ZSCORE_ANOMALY = 3.0
ZSCORE_DEVIATION = 2.0
MIN_SAMPLES = 5
CLUSTER_BUCKET = 100
CLUSTER_SHARE = 0.4
THRESHOLD_MARGIN = 0.05
DUPLICATE_AMOUNT_TOLERANCE = 0.01
DUPLICATE_WINDOW_DAYS = 7
NEW_VENDOR_HIGH_AMOUNT = 5000
ROUND_NUMBER_LIMIT = 5
FREQUENCY_WINDOW_DAYS = 30
FREQUENCY_LIMIT = 10

CATEGORY_WEIGHTS: Dict[str, float] = {
    "duplicate": 1.0,
    "vendor_anomaly": 0.7,
    "amount_anomaly": 0.6,
    "pattern_anomaly": 0.5,
    "frequency_anomaly": 0.4,
}
DEFAULT_WEIGHT = 0.5


def score_fields(fields: Sequence[ExtractedField], config: Optional[PipelineConfig] = None) -> Tuple[int, List[str]]:
    """Return ``(score, flags)`` for the additive point rules."""
    config = config or PipelineConfig()
    score = 0
    flags: List[str] = []

    if find_field(fields, INVOICE_ID_NEEDLES) is None:
        score += MISSING_INVOICE_POINTS
        flags.append("Missing invoice number")

    total = total_amount(fields)
    if total is not None and total > config.high_value_threshold:
        score += HIGH_VALUE_POINTS
        flags.append("Unusually high amount")

    very_low = [f for f in fields if f.confidence < config.very_low_confidence_threshold]
    if len(very_low) > config.very_low_confidence_count:
        score += LOW_CONFIDENCE_POINTS
        flags.append(f"{len(very_low)} fields with very low confidence")

    return min(max(score, 0), 100), flags


def amount_zscore(current: float, amounts: Sequence[float]) -> float:
    """Population z-score of ``current`` against prior amounts; 0 when undefined."""
    values = np.array([a for a in amounts if a > 0], dtype=float)
    if values.size == 0:
        return 0.0
    std_dev = float(np.std(values))
    if std_dev == 0:
        return 0.0
    return float(abs(current - float(np.mean(values))) / std_dev)


def amount_pattern_indicators(current: float, amounts: Sequence[float]) -> List[RiskIndicator]:
    indicators: List[RiskIndicator] = []
    samples = [a for a in amounts if a > 0]
    if len(samples) < MIN_SAMPLES:
        return indicators

    z = amount_zscore(current, samples)
    if z > ZSCORE_ANOMALY:
        indicators.append(
            RiskIndicator("amount_anomaly", f"Amount is {z:.1f} standard deviations from vendor mean", min(1.0, z / 5))
        )
    if round_number_clustering(samples):
        indicators.append(RiskIndicator("pattern_anomaly", "Invoice amounts show unusual clustering pattern", 0.5))
    return indicators


def round_number_clustering(amounts: Sequence[float], bucket: int = CLUSTER_BUCKET, share: float = CLUSTER_SHARE) -> bool:
    """True when more than ``share`` of amounts fall in the same ``bucket``-wide band."""
    values = np.array([a for a in amounts if a > 0], dtype=float)
    if values.size == 0:
        return False
    _, counts = np.unique(np.floor(values / bucket), return_counts=True)
    return bool(counts.max() > values.size * share)


def just_below_threshold(amount: float, thresholds: Sequence[float] = APPROVAL_THRESHOLDS) -> Optional[float]:
    """The approval threshold ``amount`` sits just under, if any."""
    for threshold in thresholds:
        if threshold * (1 - THRESHOLD_MARGIN) <= amount < threshold:
            return threshold
    return None


def _as_datetime(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        parsed = parse_date(value)
    if parsed is not None and parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def detect_duplicates(
    invoice_number: Optional[str],
    amount: Optional[float],
    invoice_date: Optional[str],
    history: Sequence[HistoricalInvoice],
) -> List[RiskIndicator]:
    indicators: List[RiskIndicator] = []
    if invoice_number:
        wanted = invoice_number.strip().lower()
        matches = [h for h in history if h.invoice_number and h.invoice_number.strip().lower() == wanted]
        if matches:
            indicators.append(
                RiskIndicator("duplicate", f"Invoice number {invoice_number} already exists for this vendor", 1.0)
            )

    current_date = _as_datetime(invoice_date)
    if amount and current_date:
        window = timedelta(days=DUPLICATE_WINDOW_DAYS)
        similar = []
        for prior in history:
            prior_date = _as_datetime(prior.invoice_date)
            if prior_date is None or prior.amount <= 0:
                continue
            diff = abs(prior.amount - amount) / max(amount, prior.amount)
            if diff < DUPLICATE_AMOUNT_TOLERANCE and abs(prior_date - current_date) <= window:
                similar.append(prior)
        if similar:
            indicators.append(
                RiskIndicator("duplicate", "Similar amount invoices found within 7-day window", 0.7)
            )

    if amount and amount > 0 and amount % 100 == 0:
        round_count = sum(1 for h in history if h.amount > 0 and h.amount % 100 == 0)
        if round_count > ROUND_NUMBER_LIMIT:
            indicators.append(
                RiskIndicator("pattern_anomaly", "Suspicious pattern: multiple round-number invoices", 0.4)
            )
    return indicators


def new_vendor_indicators(amount: Optional[float], history: Sequence[HistoricalInvoice], now: Optional[datetime] = None) -> List[RiskIndicator]:
    indicators: List[RiskIndicator] = []
    amount = amount or 0.0

    if not history:
        indicators.append(RiskIndicator("vendor_anomaly", "New vendor with no historical record", 0.4))
        if amount > NEW_VENDOR_HIGH_AMOUNT:
            indicators.append(RiskIndicator("amount_anomaly", f"High-value first invoice: {amount:.2f}", 0.5))
        return indicators

    amounts = [h.amount for h in history if h.amount > 0]
    z = amount_zscore(amount, amounts)
    if z > ZSCORE_DEVIATION:
        mean = float(np.mean(amounts))
        indicators.append(
            RiskIndicator(
                "amount_anomaly",
                f"Amount deviates {(amount - mean) / mean:.1%} from historical average",
                min(0.6, z / 5),
            )
        )

    now = now or datetime.now(timezone.utc)
    recent = []
    for prior in history:
        seen_at = _as_datetime(prior.recorded_at) or _as_datetime(prior.invoice_date)
        if seen_at is not None and now - seen_at < timedelta(days=FREQUENCY_WINDOW_DAYS):
            recent.append(prior)
    if len(recent) > FREQUENCY_LIMIT:
        indicators.append(
            RiskIndicator("frequency_anomaly", f"High frequency: {len(recent)} invoices in 30 days", 0.3)
        )
    return indicators


def composite_risk_score(indicators: Sequence[RiskIndicator]) -> float:
    """Weighted average severity in [0, 1]; weights come from the indicator category."""
    if not indicators:
        return 0.0
    weights = np.array([CATEGORY_WEIGHTS.get(i.category, DEFAULT_WEIGHT) for i in indicators], dtype=float)
    severities = np.array([i.severity for i in indicators], dtype=float)
    return round(float(np.sum(severities * weights) / np.sum(weights)), 4)


def historical_indicators(fields: Sequence[ExtractedField], history: Sequence[HistoricalInvoice]) -> List[RiskIndicator]:
    total = total_amount(fields)
    invoice_number = field_value(fields, INVOICE_ID_NEEDLES)
    invoice_date = field_value(fields, DATE_NEEDLES, exclude=("due",))

    indicators = new_vendor_indicators(total, history)
    indicators.extend(detect_duplicates(invoice_number, total, invoice_date, history))
    if total is not None:
        indicators.extend(amount_pattern_indicators(total, [h.amount for h in history]))
        threshold = just_below_threshold(total)
        if threshold is not None:
            indicators.append(
                RiskIndicator("pattern_anomaly", f"Amount suspiciously close to approval threshold: {threshold:.0f}", 0.5)
            )
    return indicators


def assess_risk(
    fields: Sequence[ExtractedField],
    history: Optional[Sequence[HistoricalInvoice]] = None,
    config: Optional[PipelineConfig] = None,
) -> RiskAssessment:
    score, flags = score_fields(fields, config)
    assessment = RiskAssessment(score=score, level=classify_risk(score), flags=flags)
    if history is not None:
        assessment.indicators = historical_indicators(fields, history)
        assessment.composite_score = composite_risk_score(assessment.indicators)
    return assessment


def risk_areas(fields: Sequence[ExtractedField], config: Optional[PipelineConfig] = None) -> List[Dict[str, Any]]:
    """Document regions to highlight on the fraud heat map."""
    config = config or PipelineConfig()
    areas: List[Dict[str, Any]] = []
    for index, extracted in enumerate(fields):
        if extracted.confidence >= config.very_low_confidence_threshold:
            continue
        box = extracted.location
        areas.append(
            {
                "id": f"risk-{index}",
                "x": box.left,
                "y": box.top,
                "width": box.width,
                "height": box.height,
                "page": box.page,
                "riskLevel": "MEDIUM",
                "reason": f"Low confidence field: {extracted.name} ({round(extracted.confidence * 100)}%)",
                "score": round((1 - extracted.confidence) * 100),
            }
        )

    total_field = find_field(fields, TOTAL_NEEDLES, TOTAL_EXCLUDE)
    amount = parse_amount(total_field.value) if total_field else None
    if total_field and amount is not None and amount > config.high_value_threshold:
        box = total_field.location
        areas.append(
            {
                "id": "risk-amount",
                "x": box.left,
                "y": box.top,
                "width": box.width,
                "height": box.height,
                "page": box.page,
                "riskLevel": "HIGH",
                "reason": "Unusually high invoice amount detected",
                "score": HIGH_VALUE_POINTS,
            }
        )
    return areas


def _history_from_payload(items: Any) -> Optional[List[HistoricalInvoice]]:
    if items is None:
        return None
    if not isinstance(items, list):
        raise InputError("history must be a list")
    history = []
    for item in items:
        if not isinstance(item, dict):
            raise InputError("Each history entry must be an object")
        amount = parse_amount(item.get("amount"))
        if amount is None:
            raise InputError(f"History entry without amount: {item!r}")
        history.append(
            HistoricalInvoice(
                invoice_number=item.get("invoice_number"),
                amount=amount,
                invoice_date=item.get("invoice_date"),
                recorded_at=item.get("recorded_at"),
            )
        )
    return history


@with_error_handling
def lambda_handler(event: Dict[str, Any], _context: Any) -> Dict[str, Any]:
    start = time.time()
    try:
        logger.info("Received event: %s", json.dumps(event, default=str))
        if not isinstance(event, dict) or "fields" not in event:
            raise InputError("Event must contain 'fields'")
        fields = fields_from_payload(event["fields"])
        config = PipelineConfig.from_env()
        assessment = assess_risk(fields, _history_from_payload(event.get("history")), config)
        return json.loads(
            json_dumps(
                {
                    "status": "success",
                    "risk": assessment,
                    "risk_areas": risk_areas(fields, config),
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
        logger.info("Risk scoring completed in %.2fs", time.time() - start)
