import pytest

from invoice_pipeline import validation_lambda
from invoice_pipeline.config import PipelineConfig
from invoice_pipeline.models import ExtractedField, LineItem
from invoice_pipeline.validation_lambda import validate_fields


@pytest.fixture(autouse=True)
def set_env(monkeypatch):
    monkeypatch.setenv("AWS_DEFAULT_REGION", "us-east-1")
    monkeypatch.delenv("LOW_CONFIDENCE_IS_ERROR", raising=False)


def _field(name, value, confidence=0.95):
    return ExtractedField(name=name, value=value, confidence=confidence)


def _invoice(**overrides):
    values = {"invoice_number": "INV-1", "date": "2024-01-15", "total": "119", "tax": "19"}
    values.update(overrides)
    return [_field(name, value) for name, value in values.items() if value is not None]


def test_complete_invoice_is_valid():
    result = validate_fields(_invoice())
    assert result.valid
    assert result.errors == []


@pytest.mark.parametrize(
    "missing, label",
    [("total", "Total"), ("date", "Date"), ("invoice_number", "Invoice Number")],
)
def test_missing_required_field_is_reported(missing, label):
    result = validate_fields(_invoice(**{missing: None}))
    assert not result.valid
    assert f"Missing required field: {label}" in result.errors


def test_subtotal_alone_does_not_count_as_total():
    fields = [_field("invoice_number", "INV-1"), _field("date", "2024-01-15"), _field("Subtotal", "100")]
    result = validate_fields(fields)
    assert "Missing required field: Total" in result.errors


def test_low_confidence_is_a_hard_error_by_default():
    fields = _invoice() + [_field("vendor", "Acme", confidence=0.6)]
    result = validate_fields(fields)
    assert not result.valid
    assert "1 fields have low confidence (<85%)" in result.errors


def test_low_confidence_can_be_downgraded_to_warning():
    fields = _invoice() + [_field("vendor", "Acme", confidence=0.6)]
    result = validate_fields(fields, config=PipelineConfig(low_confidence_is_error=False))
    assert result.valid
    assert result.warnings == ["1 fields have low confidence (<85%)"]


def test_tax_greater_than_total():
    result = validate_fields(_invoice(tax="150"))
    assert not result.valid
    assert any("exceeds invoice total" in error for error in result.errors)


def test_implied_rate_out_of_range():
    result = validate_fields(_invoice(total="150", tax="50"))
    assert any("outside the 0-35% range" in error for error in result.errors)


def test_due_date_before_invoice_date():
    fields = _invoice() + [_field("Due Date", "2024-01-01")]
    result = validate_fields(fields)
    assert "Due date is before the invoice date" in result.errors


def test_line_items_must_match_subtotal():
    items = [LineItem("Widget", 1, 60.0, 60.0), LineItem("Gadget", 1, 30.0, 30.0)]
    result = validate_fields(_invoice(), items)
    assert "Line items sum to 90.00 but subtotal is 100.00" in result.errors

    items.append(LineItem("Cable", 1, 10.0, 10.0))
    assert validate_fields(_invoice(), items).valid


def test_unreadable_total_is_reported():
    result = validate_fields(_invoice(total="N/A"))
    assert not result.valid
    assert "Total amount is not a number: 'N/A'" in result.errors


def test_unreadable_tax_is_reported():
    result = validate_fields(_invoice(tax="illegible"))
    assert not result.valid
    assert "Tax amount is not a number: 'illegible'" in result.errors


def test_zero_total_is_reported():
    result = validate_fields(_invoice(total="0", tax="0"))
    assert not result.valid
    assert "Total amount must be greater than zero (found 0.00)" in result.errors


def test_negative_tax_is_reported():
    result = validate_fields(_invoice(tax="-5"))
    assert "Tax amount must not be negative (found -5.00)" in result.errors


def test_validation_is_deterministic():
    fields = _invoice(total=None)
    assert validate_fields(fields) == validate_fields(fields)


def test_handler_returns_validation_result():
    event = {
        "fields": [
            {"name": "invoice_number", "value": "INV-1", "confidence": 0.99},
            {"name": "date", "value": "2024-01-15", "confidence": 0.99},
            {"name": "total", "value": "119", "confidence": 0.99},
            {"name": "tax", "value": "19", "confidence": 0.99},
        ]
    }
    response = validation_lambda.lambda_handler(event, None)
    assert response["status"] == "success"
    assert response["validation"]["valid"] is True


def test_handler_rejects_payload_without_fields():
    response = validation_lambda.lambda_handler({"invoice": "INV-1"}, None)
    assert response["status"] == "error"
    assert response["error_type"] == "validation_error"
