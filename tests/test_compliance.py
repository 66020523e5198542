import pytest

from invoice_pipeline import compliance_lambda
from invoice_pipeline.compliance_lambda import TAX_NOT_FOUND, check_compliance, expected_tax, tax_breakdown
from invoice_pipeline.config import PipelineConfig
from invoice_pipeline.models import ExtractedField


@pytest.fixture(autouse=True)
def set_env(monkeypatch):
    monkeypatch.setenv("AWS_DEFAULT_REGION", "us-east-1")
    monkeypatch.delenv("DEFAULT_JURISDICTION", raising=False)
    monkeypatch.delenv("TAX_RATE_OVERRIDE", raising=False)


def _fields(total="119", tax="19", **extra):
    fields = [ExtractedField("invoice_number", "INV-1", 0.95), ExtractedField("total", total, 0.95)]
    if tax is not None:
        fields.append(ExtractedField("tax", tax, 0.95))
    fields.extend(ExtractedField(name, value, 0.95) for name, value in extra.items())
    return fields


def test_sample_invoice_is_compliant_at_18_percent():
    result = check_compliance(_fields())
    assert result.compliant
    assert result.jurisdiction == "IN"
    assert result.tax_rate == 0.18
    assert result.expected_tax == pytest.approx(18.15, abs=0.01)
    assert result.found_tax == 19.0


def test_missing_tax_field_is_a_violation():
    result = check_compliance(_fields(tax=None))
    assert not result.compliant
    assert result.violations == [TAX_NOT_FOUND]
    assert TAX_NOT_FOUND == "Tax/GST field not found on invoice"


def test_unreadable_tax_is_a_violation():
    result = check_compliance(_fields(tax="illegible"))
    assert not result.compliant
    assert result.violations == ["Tax/GST value could not be read: 'illegible'"]


def test_tax_mismatch_reports_expected_and_found():
    result = check_compliance(_fields(tax="5"))
    assert not result.compliant
    assert result.violations == ["Tax calculation may be incorrect (Expected: ~18.15, Found: 5)"]


@pytest.mark.parametrize("total", [1.0, 119.0, 2500.0, 118000.0, 2_000_000.0])
@pytest.mark.parametrize("offset", [-0.019, 0.0, 0.019])
def test_tax_within_tolerance_is_compliant(total, offset):
    tax = expected_tax(total, 0.18) + offset * total
    result = check_compliance(_fields(total=f"{total:.6f}", tax=f"{tax:.6f}"))
    assert result.compliant, result.violations


def test_jurisdiction_rates_are_looked_up():
    result = check_compliance(_fields(total="119", tax="19"), jurisdiction="Germany")
    assert result.jurisdiction == "DE"
    assert result.compliant
    assert not check_compliance(_fields(total="119", tax="19"), jurisdiction="US").compliant


def test_rate_override_and_tolerance_are_configurable():
    config = PipelineConfig(tax_rate_override=0.10, tax_tolerance=0.001)
    result = check_compliance(_fields(total="110", tax="10"), config=config)
    assert result.compliant
    assert result.tax_rate == 0.10


def test_unknown_jurisdiction_raises_key_error():
    with pytest.raises(KeyError):
        check_compliance(_fields(), jurisdiction="XX")


def test_gstin_format_is_checked_for_india():
    assert check_compliance(_fields(GSTIN="27AAPFU0939F1ZV")).compliant
    result = check_compliance(_fields(GSTIN="12345"))
    assert result.violations == ["Invalid GSTIN format: 12345"]
    assert check_compliance(_fields(GSTIN="12345"), jurisdiction="UK", config=PipelineConfig(tax_rate_override=0.18)).compliant


def test_tax_breakdown_splits_gst():
    fields = _fields()
    breakdown = tax_breakdown(fields, check_compliance(fields))
    assert breakdown.subtotal == 100.0
    assert breakdown.components == {"CGST": 9.5, "SGST": 9.5}
    assert breakdown.rate == 0.18


def test_handler_reports_unknown_jurisdiction_as_validation_error():
    event = {"fields": {"total": "119", "tax": "19"}, "jurisdiction": "XX"}
    response = compliance_lambda.lambda_handler(event, None)
    assert response["status"] == "error"
    assert response["error_type"] == "validation_error"
    assert "XX" in response["message"]


def test_handler_returns_breakdown():
    response = compliance_lambda.lambda_handler({"fields": {"total": "119", "tax": "19"}}, None)
    assert response["status"] == "success"
    assert response["compliance"]["compliant"] is True
    assert response["tax_breakdown"]["components"]["CGST"] == 9.5
