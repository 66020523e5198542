"""Tests for run report generation."""

from io import BytesIO

import boto3
import openpyxl
import pytest
from moto import mock_aws

from invoice_pipeline import invoice_store, report_lambda
from invoice_pipeline.coordinator import PipelineOrchestrator
from invoice_pipeline.invoice_store import InvoiceStore
from invoice_pipeline.models import ExtractedField
from invoice_pipeline.progress import CollectingSink, ProgressReporter
from invoice_pipeline.report_lambda import excel_report, generate_report, markdown_report


@pytest.fixture(autouse=True)
def set_env(monkeypatch):
    monkeypatch.setenv("AWS_DEFAULT_REGION", "us-east-1")
    monkeypatch.setenv("AWS_ACCESS_KEY_ID", "testing")
    monkeypatch.setenv("AWS_SECRET_ACCESS_KEY", "testing")
    monkeypatch.delenv("LOCALSTACK_URL", raising=False)
    monkeypatch.delenv("REPORTS_BUCKET", raising=False)


def _run(tax="19"):
    fields = [
        ExtractedField("invoice_number", "INV-1", 0.95),
        ExtractedField("date", "2024-01-15", 0.95),
        ExtractedField("total", "119", 0.95),
        ExtractedField("tax", tax, 0.95),
    ]
    orchestrator = PipelineOrchestrator(reporter=ProgressReporter(CollectingSink()))
    return orchestrator.run_fields(fields, invoice_id="INV-1").to_dict()


class TestMarkdownReport:
    def test_approved_run(self):
        md = markdown_report(_run())
        assert md.startswith("# Invoice Processing Report")
        assert "- **Decision**: APPROVED" in md
        assert "| Office Expenses | 6100 | 100.00 | 0.00 |" in md
        assert "| Accounts Payable | 2100 | 0.00 | 119.00 |" in md

    def test_rejected_run_lists_violations(self):
        md = markdown_report(_run(tax="5"))
        assert "- **Decision**: REJECTED" in md
        assert "- Tax calculation may be incorrect (Expected: ~18.15, Found: 5)" in md
        assert "No entries created." in md
        assert "## Fraud risk\nNot run." in md


class TestExcelReport:
    def test_workbook_sheets(self):
        wb = openpyxl.load_workbook(BytesIO(excel_report(_run())))
        assert wb.sheetnames == ["Summary", "Ledger", "Flags"]
        assert wb["Summary"]["B4"].value == "APPROVED"
        assert wb["Summary"]["B7"].value == "LOW"
        assert wb["Ledger"].max_row == 4

    def test_flags_sheet_collects_violations(self):
        wb = openpyxl.load_workbook(BytesIO(excel_report(_run(tax="5"))))
        flags = wb["Flags"]
        assert flags.cell(2, 1).value == "compliance"
        assert flags.cell(2, 2).value.startswith("Tax calculation may be incorrect")


class TestGenerateReport:
    def test_inline_without_bucket(self):
        result = generate_report(_run())
        assert result["generated"] == ["report.md", "report.xlsx"]
        assert "# Invoice Processing Report" in result["markdown"]

    @mock_aws
    def test_uploads_to_bucket(self):
        s3 = boto3.client("s3", region_name="us-east-1")
        s3.create_bucket(Bucket="reports")
        result = generate_report(_run(), out_bucket="reports")

        keys = sorted(obj["Key"] for obj in s3.list_objects_v2(Bucket="reports")["Contents"])
        assert len(keys) == 2
        assert keys[0].startswith("reports/INV-1_") and keys[0].endswith(".md")
        assert keys[1].endswith(".xlsx")
        assert result["s3"]["prefix"] == keys[0][:-3]


class TestHandler:
    def test_inline_run(self):
        response = report_lambda.lambda_handler({"run": _run()}, None)
        assert response["status"] == "success"
        assert "APPROVED" in response["markdown"]

    def test_missing_input(self):
        response = report_lambda.lambda_handler({}, None)
        assert response["status"] == "error"
        assert response["error_type"] == "validation_error"

    @mock_aws
    def test_stored_run(self, monkeypatch):
        monkeypatch.setattr(invoice_store, "INVOICE_TABLE", "invoices")
        boto3.resource("dynamodb", region_name="us-east-1").create_table(
            TableName="invoices",
            KeySchema=[{"AttributeName": "invoice_id", "KeyType": "HASH"}],
            AttributeDefinitions=[{"AttributeName": "invoice_id", "AttributeType": "S"}],
            BillingMode="PAY_PER_REQUEST",
        )
        orchestrator = PipelineOrchestrator(reporter=ProgressReporter(CollectingSink()))
        fields = [
            ExtractedField("invoice_number", "INV-7", 0.95),
            ExtractedField("date", "2024-01-15", 0.95),
            ExtractedField("total", "119", 0.95),
            ExtractedField("tax", "19", 0.95),
        ]
        InvoiceStore().save_run(orchestrator.run_fields(fields, invoice_id="INV-7"))

        response = report_lambda.lambda_handler({"invoice_id": "INV-7"}, None)
        assert response["status"] == "success"
        assert "| Input GST | 1530 | 19.00 | 0.00 |" in response["markdown"]

        missing = report_lambda.lambda_handler({"invoice_id": "INV-404"}, None)
        assert missing["error_type"] == "validation_error"
