"""Tests for DynamoDB persistence of pipeline runs."""

from unittest.mock import Mock

import boto3
import pytest
from botocore.exceptions import ClientError
from moto import mock_aws

from invoice_pipeline.errors import ProviderError
from invoice_pipeline.invoice_store import InvoiceStore
from invoice_pipeline.models import ExtractedField, LedgerEntry, PipelineRun


@pytest.fixture(autouse=True)
def set_env(monkeypatch):
    monkeypatch.setenv("AWS_DEFAULT_REGION", "us-east-1")
    monkeypatch.setenv("AWS_ACCESS_KEY_ID", "testing")
    monkeypatch.setenv("AWS_SECRET_ACCESS_KEY", "testing")
    monkeypatch.delenv("LOCALSTACK_URL", raising=False)


@pytest.fixture
def table():
    with mock_aws():
        dynamodb = boto3.resource("dynamodb", region_name="us-east-1")
        yield dynamodb.create_table(
            TableName="invoices",
            KeySchema=[{"AttributeName": "invoice_id", "KeyType": "HASH"}],
            AttributeDefinitions=[{"AttributeName": "invoice_id", "AttributeType": "S"}],
            BillingMode="PAY_PER_REQUEST",
        )


def _approved_run(invoice_id, number, total, date="2024-01-15", vendor_field=None):
    fields = [
        ExtractedField("Invoice Number", number, 0.97),
        ExtractedField("Invoice Date", date, 0.96),
        ExtractedField("Total", total, 0.99),
    ]
    if vendor_field:
        fields.append(ExtractedField("Vendor", vendor_field, 0.9))
    run = PipelineRun(invoice_id=invoice_id, fields=fields)
    run.ledger_entries = [LedgerEntry("Accounts Payable", "2100", 0.0, float(total), "Vendor invoice payable")]
    run.approve()
    return run


class TestInvoiceStore:
    def test_save_and_get_round_trip(self, table):
        store = InvoiceStore("invoices")
        store.save_run(_approved_run("inv-1", "INV-1", "1180.50"), vendor="Acme")

        item = store.get("inv-1")
        assert item["vendor"] == "Acme"
        assert item["amount"] == 1180.5
        assert item["decision"] == "APPROVED"
        assert item["invoice_date"] == "2024-01-15"
        assert item["run"]["ledger_entries"][0]["credit"] == 1180.5
        assert item["run"]["fields"][0]["confidence"] == 0.97

    def test_get_missing_invoice_returns_none(self, table):
        assert InvoiceStore("invoices").get("nope") is None

    def test_vendor_comes_from_fields_when_not_given(self, table):
        store = InvoiceStore("invoices")
        item = store.save_run(_approved_run("inv-2", "INV-2", "500", vendor_field="Globex"))
        assert item["vendor"] == "Globex"
        unknown = store.save_run(_approved_run("inv-3", "INV-3", "500"))
        assert unknown["vendor"] == "UNKNOWN"

    def test_history_for_vendor_excludes_current_invoice(self, table):
        store = InvoiceStore("invoices")
        store.save_run(_approved_run("inv-1", "INV-1", "1000", "2024-01-01"), vendor="Acme")
        store.save_run(_approved_run("inv-2", "INV-2", "1200", "2024-01-08"), vendor="Acme")
        store.save_run(_approved_run("inv-3", "INV-3", "900"), vendor="Globex")

        history = store.history_for_vendor("Acme", exclude_invoice_id="inv-2")
        assert [(h.invoice_number, h.amount, h.invoice_date) for h in history] == [("INV-1", 1000.0, "2024-01-01")]
        assert len(store.history_for_vendor("Acme")) == 2

    def test_missing_table_raises_provider_error(self, table):
        store = InvoiceStore("does-not-exist")
        with pytest.raises(ProviderError) as excinfo:
            store.save_run(_approved_run("inv-1", "INV-1", "100"))
        assert excinfo.value.provider == "dynamodb"

    def test_scan_errors_are_wrapped(self):
        broken = Mock()
        broken.scan.side_effect = ClientError(
            {"Error": {"Code": "ProvisionedThroughputExceededException", "Message": "slow"}}, "Scan"
        )
        with pytest.raises(ProviderError):
            InvoiceStore(table=broken).history_for_vendor("Acme")
