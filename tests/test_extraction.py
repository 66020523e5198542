from unittest.mock import Mock

import pytest
from botocore.exceptions import ClientError

from invoice_pipeline import extraction_lambda
from invoice_pipeline.errors import InputError
from invoice_pipeline.extraction_lambda import (
    DocumentRef,
    ExtractionResult,
    TextractExtractor,
    document_from_event,
    fields_from_blocks,
    line_items_from_tables,
    tables_from_blocks,
)


@pytest.fixture(autouse=True)
def set_env(monkeypatch):
    monkeypatch.setenv("AWS_DEFAULT_REGION", "us-east-1")
    monkeypatch.setenv("AWS_ACCESS_KEY_ID", "testing")
    monkeypatch.setenv("AWS_SECRET_ACCESS_KEY", "testing")


def _words(prefix, text):
    words = []
    for i, word in enumerate(text.split()):
        words.append({"Id": f"{prefix}-w{i}", "BlockType": "WORD", "Text": word})
    return words


def _key_value(prefix, key, value, confidence=96.5, page=1):
    key_words = _words(f"{prefix}k", key)
    value_words = _words(f"{prefix}v", value)
    key_block = {
        "Id": f"{prefix}-key",
        "BlockType": "KEY_VALUE_SET",
        "EntityTypes": ["KEY"],
        "Confidence": 99.0,
        "Relationships": [
            {"Type": "VALUE", "Ids": [f"{prefix}-value"]},
            {"Type": "CHILD", "Ids": [w["Id"] for w in key_words]},
        ],
    }
    value_block = {
        "Id": f"{prefix}-value",
        "BlockType": "KEY_VALUE_SET",
        "EntityTypes": ["VALUE"],
        "Confidence": confidence,
        "Page": page,
        "Geometry": {"BoundingBox": {"Left": 0.5, "Top": 0.1, "Width": 0.2, "Height": 0.03}},
        "Relationships": [{"Type": "CHILD", "Ids": [w["Id"] for w in value_words]}],
    }
    return [key_block, value_block] + key_words + value_words


def _table(rows):
    blocks = []
    cell_ids = []
    for r, row in enumerate(rows, start=1):
        for c, text in enumerate(row, start=1):
            words = _words(f"c{r}{c}", text)
            cell_id = f"cell-{r}-{c}"
            cell_ids.append(cell_id)
            blocks.append(
                {
                    "Id": cell_id,
                    "BlockType": "CELL",
                    "RowIndex": r,
                    "ColumnIndex": c,
                    "Relationships": [{"Type": "CHILD", "Ids": [w["Id"] for w in words]}],
                }
            )
            blocks.extend(words)
    return [{"Id": "table-1", "BlockType": "TABLE", "Relationships": [{"Type": "CHILD", "Ids": cell_ids}]}] + blocks


def _invoice_blocks():
    return _key_value("a", "Invoice Number:", "INV-1") + _key_value("b", "Total", "119.00", confidence=88.0)


def test_fields_from_blocks_pairs_keys_and_values():
    fields = fields_from_blocks(_invoice_blocks())
    assert [(f.name, f.value) for f in fields] == [("Invoice Number", "INV-1"), ("Total", "119.00")]
    assert fields[0].confidence == pytest.approx(0.965)
    assert fields[1].confidence == pytest.approx(0.88)
    assert fields[0].location.left == pytest.approx(0.5)


def test_extract_reports_each_field_as_found():
    textract = Mock()
    textract.analyze_document.return_value = {"Blocks": _invoice_blocks()}
    seen = []
    result = TextractExtractor(textract_client=textract).extract(b"%PDF-1.4", on_field=seen.append)
    assert [f.name for f in seen] == ["Invoice Number", "Total"]
    assert result.error is None
    assert textract.analyze_document.call_args.kwargs["Document"] == {"Bytes": b"%PDF-1.4"}


def test_small_s3_document_uses_synchronous_analysis():
    textract = Mock()
    textract.analyze_document.return_value = {"Blocks": _invoice_blocks()}
    s3 = Mock()
    s3.head_object.return_value = {"ContentLength": 2048}
    result = TextractExtractor(textract_client=textract, s3_client=s3).extract(DocumentRef("docs", "inv.pdf"))
    assert len(result.fields) == 2
    assert textract.analyze_document.call_args.kwargs["Document"] == {"S3Object": {"Bucket": "docs", "Name": "inv.pdf"}}
    textract.start_document_analysis.assert_not_called()


def test_large_document_polls_and_follows_next_token():
    blocks = _invoice_blocks()
    textract = Mock()
    textract.start_document_analysis.return_value = {"JobId": "job-1"}
    textract.get_document_analysis.side_effect = [
        {"JobStatus": "IN_PROGRESS"},
        {"JobStatus": "SUCCEEDED", "Blocks": blocks[:3], "NextToken": "page-2"},
        {"JobStatus": "SUCCEEDED", "Blocks": blocks[3:]},
    ]
    extractor = TextractExtractor(textract_client=textract, async_threshold_bytes=100, poll_interval=0)
    result = extractor.extract(DocumentRef("docs", "big.pdf", size_bytes=10_000))
    assert [f.value for f in result.fields] == ["INV-1", "119.00"]
    assert textract.get_document_analysis.call_args_list[-1].kwargs == {"JobId": "job-1", "NextToken": "page-2"}


def test_failed_job_gives_empty_result():
    textract = Mock()
    textract.start_document_analysis.return_value = {"JobId": "job-2"}
    textract.get_document_analysis.return_value = {"JobStatus": "FAILED", "StatusMessage": "unsupported format"}
    extractor = TextractExtractor(textract_client=textract, async_threshold_bytes=100, poll_interval=0)
    result = extractor.extract(DocumentRef("docs", "big.pdf", size_bytes=10_000))
    assert result.fields == []
    assert "job job-2 failed: unsupported format" in result.error


def test_poll_timeout_gives_empty_result():
    textract = Mock()
    textract.start_document_analysis.return_value = {"JobId": "job-3"}
    extractor = TextractExtractor(textract_client=textract, async_threshold_bytes=100, timeout_seconds=0)
    result = extractor.extract(DocumentRef("docs", "big.pdf", size_bytes=10_000))
    assert result.fields == []
    assert "timed out" in result.error


def test_client_error_gives_empty_result():
    textract = Mock()
    textract.analyze_document.side_effect = ClientError(
        {"Error": {"Code": "ProvisionedThroughputExceededException", "Message": "busy"}}, "AnalyzeDocument"
    )
    result = TextractExtractor(textract_client=textract).extract(b"data")
    assert result == ExtractionResult(error=result.error)
    assert result.error.startswith("textract:")


def test_line_items_from_tables_skip_total_rows():
    blocks = _table([["Description", "Qty", "Amount"], ["Widget", "2", "100.00"], ["Total", "", "100.00"]])
    items = line_items_from_tables(tables_from_blocks(blocks))
    assert len(items) == 1
    assert items[0].description == "Widget"
    assert items[0].quantity == 2.0
    assert items[0].amount == 100.0


def test_tables_without_line_item_headers_are_ignored():
    blocks = _table([["Bank", "Branch"], ["HDFC", "Mumbai"]])
    assert line_items_from_tables(tables_from_blocks(blocks)) == []


@pytest.mark.parametrize(
    "event, expected",
    [
        ({"bucket": "docs", "key": "a.pdf"}, ("docs", "a.pdf")),
        ({"file_info": {"bucket": "docs", "key": "b.pdf"}}, ("docs", "b.pdf")),
        ({"Records": [{"s3": {"bucket": {"name": "docs"}, "object": {"key": "c.pdf"}}}]}, ("docs", "c.pdf")),
    ],
)
def test_document_from_event(event, expected):
    document = document_from_event(event)
    assert (document.bucket, document.key) == expected


@pytest.mark.parametrize("event", [{}, {"Records": [{"s3": {}}]}, "not-an-event"])
def test_document_from_event_rejects_missing_location(event):
    with pytest.raises(InputError):
        document_from_event(event)


def test_handler_without_location_is_validation_error():
    response = extraction_lambda.lambda_handler({"foo": "bar"}, None)
    assert response["status"] == "error"
    assert response["error_type"] == "validation_error"


def test_handler_marks_degraded_extraction(monkeypatch):
    extractor = Mock()
    extractor.extract.return_value = ExtractionResult(error="textract: busy")
    monkeypatch.setattr(extraction_lambda, "TextractExtractor", lambda: extractor)
    response = extraction_lambda.lambda_handler({"bucket": "docs", "key": "a.pdf"}, None)
    assert response["status"] == "degraded"
    assert response["field_count"] == 0
    assert response["error"] == "textract: busy"
