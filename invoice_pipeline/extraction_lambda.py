"""Textract-backed invoice field extractor."""

from __future__ import annotations

import json
import logging
import os
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple, Union

import pandas as pd
from botocore.exceptions import BotoCoreError, ClientError

from invoice_pipeline.common import client, json_dumps, utc_now, with_error_handling
from invoice_pipeline.errors import InputError, ProviderError
from invoice_pipeline.models import BoundingBox, ExtractedField, LineItem

LOGGER = logging.getLogger(__name__)
LOGGER.setLevel(os.getenv("LOG_LEVEL", "INFO"))

ASYNC_THRESHOLD_BYTES = int(os.getenv("ASYNC_THRESHOLD_BYTES", str(500 * 1024)))
TEXTRACT_TIMEOUT_SECONDS = int(os.getenv("TEXTRACT_TIMEOUT_SECONDS", "300"))
TEXTRACT_FEATURE_TYPES = ["FORMS", "TABLES"]
POLL_INTERVAL_SECONDS = 2

COLUMN_ALIASES: Dict[str, Iterable[str]] = {
    "description": ("description", "item", "particulars", "service", "product"),
    "quantity": ("qty", "quantity", "hours", "units"),
    "unit_price": ("unit price", "rate", "price", "unit cost"),
    "amount": ("amount", "line total", "total", "value"),
}
LINE_ITEM_KEYWORDS = {"description", "item", "qty", "quantity", "amount", "price", "rate"}


@dataclass(frozen=True)
class DocumentRef:
    bucket: str
    key: str
    size_bytes: Optional[int] = None

    @property
    def uri(self) -> str:
        return f"s3://{self.bucket}/{self.key}"


Document = Union[DocumentRef, bytes]


@dataclass
class ExtractionResult:
    fields: List[ExtractedField] = field(default_factory=list)
    line_items: List[LineItem] = field(default_factory=list)
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "fields": [f.to_dict() for f in self.fields],
            "line_items": [item.to_dict() for item in self.line_items],
            "error": self.error,
        }


class TextractExtractor:
    """Turn a document into ``ExtractedField``s using Textract FORMS and TABLES.

    Provider failures never propagate: the result carries an empty field list
    and the error message, so the validator's required-field check rejects the
    invoice on its own terms.
    """

    def __init__(
        self,
        textract_client: Any = None,
        s3_client: Any = None,
        async_threshold_bytes: int = ASYNC_THRESHOLD_BYTES,
        timeout_seconds: int = TEXTRACT_TIMEOUT_SECONDS,
        poll_interval: float = POLL_INTERVAL_SECONDS,
    ):
        self.textract = textract_client or client("textract")
        self._s3 = s3_client
        self.async_threshold_bytes = async_threshold_bytes
        self.timeout_seconds = timeout_seconds
        self.poll_interval = poll_interval

    @property
    def s3(self):
        if self._s3 is None:
            self._s3 = client("s3")
        return self._s3

    def extract(
        self,
        document: Document,
        on_field: Optional[Callable[[ExtractedField], Any]] = None,
    ) -> ExtractionResult:
        try:
            blocks = self._analyze(document)
        except ProviderError as exc:
            LOGGER.error("Extraction failed: %s", exc)
            return ExtractionResult(error=str(exc))

        fields = fields_from_blocks(blocks)
        for extracted in fields:
            if on_field is not None:
                on_field(extracted)
        line_items = line_items_from_tables(tables_from_blocks(blocks))
        LOGGER.info("Extracted %d fields and %d line items", len(fields), len(line_items))
        return ExtractionResult(fields=fields, line_items=line_items)

    def _analyze(self, document: Document) -> List[Dict[str, Any]]:
        try:
            if isinstance(document, (bytes, bytearray)):
                response = self.textract.analyze_document(
                    Document={"Bytes": bytes(document)},
                    FeatureTypes=TEXTRACT_FEATURE_TYPES,
                )
                return response.get("Blocks", [])

            size = document.size_bytes
            if size is None:
                size = self.s3.head_object(Bucket=document.bucket, Key=document.key)["ContentLength"]
            s3_object = {"S3Object": {"Bucket": document.bucket, "Name": document.key}}
            if size > self.async_threshold_bytes:
                job = self.textract.start_document_analysis(
                    DocumentLocation=s3_object,
                    FeatureTypes=TEXTRACT_FEATURE_TYPES,
                )
                return self._poll(job["JobId"])
            response = self.textract.analyze_document(Document=s3_object, FeatureTypes=TEXTRACT_FEATURE_TYPES)
            return response.get("Blocks", [])
        except (ClientError, BotoCoreError) as exc:
            raise ProviderError("textract", str(exc)) from exc

    def _poll(self, job_id: str) -> List[Dict[str, Any]]:
        deadline = time.time() + self.timeout_seconds
        blocks: List[Dict[str, Any]] = []
        next_token: Optional[str] = None

        while time.time() < deadline:
            kwargs = {"JobId": job_id}
            if next_token:
                kwargs["NextToken"] = next_token
            response = self.textract.get_document_analysis(**kwargs)
            status = response.get("JobStatus")
            if status == "SUCCEEDED":
                blocks.extend(response.get("Blocks", []))
                next_token = response.get("NextToken")
                if not next_token:
                    return blocks
            elif status == "FAILED":
                raise ProviderError("textract", f"job {job_id} failed: {response.get('StatusMessage')}")
            else:
                time.sleep(self.poll_interval)

        raise ProviderError("textract", f"job {job_id} timed out after {self.timeout_seconds}s")


def _block_text(block: Dict[str, Any], block_map: Dict[str, Dict[str, Any]]) -> str:
    text_parts: List[str] = []
    for relationship in block.get("Relationships", []):
        if relationship.get("Type") != "CHILD":
            continue
        for child_id in relationship.get("Ids", []):
            child = block_map.get(child_id)
            if not child:
                continue
            if child.get("BlockType") == "WORD":
                text_parts.append(child.get("Text", ""))
            elif child.get("BlockType") == "SELECTION_ELEMENT" and child.get("SelectionStatus") == "SELECTED":
                text_parts.append("X")
    return " ".join(text_parts).strip()


def _bounding_box(block: Dict[str, Any]) -> BoundingBox:
    box = block.get("Geometry", {}).get("BoundingBox", {})
    return BoundingBox(
        page=int(block.get("Page", 1) or 1),
        left=float(box.get("Left", 0.0)),
        top=float(box.get("Top", 0.0)),
        width=float(box.get("Width", 0.0)),
        height=float(box.get("Height", 0.0)),
    )


def fields_from_blocks(blocks: List[Dict[str, Any]]) -> List[ExtractedField]:
    """Pair KEY_VALUE_SET key blocks with their values.

    Textract reports confidence on a 0-100 scale; fields carry it as 0-1.
    """
    block_map = {block["Id"]: block for block in blocks if "Id" in block}
    fields: List[ExtractedField] = []

    for block in blocks:
        if block.get("BlockType") != "KEY_VALUE_SET" or "KEY" not in block.get("EntityTypes", []):
            continue
        name = _block_text(block, block_map).rstrip(":").strip()
        if not name:
            continue
        value_block = None
        for relationship in block.get("Relationships", []):
            if relationship.get("Type") == "VALUE":
                for value_id in relationship.get("Ids", []):
                    value_block = block_map.get(value_id)
                    if value_block:
                        break
        if value_block is None:
            continue
        value = _block_text(value_block, block_map)
        confidence = float(value_block.get("Confidence", block.get("Confidence", 0.0))) / 100.0
        fields.append(
            ExtractedField(
                name=name,
                value=value,
                confidence=min(max(confidence, 0.0), 1.0),
                location=_bounding_box(value_block),
            )
        )
    return fields


def tables_from_blocks(blocks: List[Dict[str, Any]]) -> List[List[List[str]]]:
    id_map = {block["Id"]: block for block in blocks if "Id" in block}
    tables: List[List[List[str]]] = []

    for block in blocks:
        if block.get("BlockType") != "TABLE":
            continue
        rows: Dict[int, Dict[int, str]] = {}
        for relationship in block.get("Relationships", []):
            if relationship.get("Type") != "CHILD":
                continue
            for cell_id in relationship.get("Ids", []):
                cell = id_map.get(cell_id)
                if not cell or cell.get("BlockType") != "CELL":
                    continue
                rows.setdefault(cell.get("RowIndex", 1), {})[cell.get("ColumnIndex", 1)] = _block_text(cell, id_map)
        ordered_rows = [[rows[r].get(c, "") for c in sorted(rows[r])] for r in sorted(rows)]
        if ordered_rows:
            tables.append(ordered_rows)
    return tables


def _table_to_df(rows: List[List[str]]) -> Optional[pd.DataFrame]:
    if len(rows) < 2:
        return None
    header = [(cell or "").strip().lower() for cell in rows[0]]
    if not any(header):
        return None
    width = len(header)
    body = [(row + [""] * width)[:width] for row in rows[1:]]
    df = pd.DataFrame(body, columns=header)
    df = _rename_columns(df)
    for column in ("quantity", "unit_price", "amount"):
        if column in df:
            df[column] = pd.to_numeric(
                df[column].astype(str).str.replace(r"[^0-9.\-]", "", regex=True), errors="coerce"
            )
    return df


def _rename_columns(df: pd.DataFrame) -> pd.DataFrame:
    rename: Dict[str, str] = {}
    seen: set = set()
    for column in df.columns:
        for target, aliases in COLUMN_ALIASES.items():
            if target not in seen and any(alias in column for alias in aliases):
                rename[column] = target
                seen.add(target)
                break
    return df.rename(columns=rename)


def _optional_float(value: Any) -> Optional[float]:
    if value is None or pd.isna(value):
        return None
    return float(value)


def line_items_from_tables(tables: List[List[List[str]]]) -> List[LineItem]:
    items: List[LineItem] = []
    for table in tables:
        if not table or not any(keyword in " ".join(table[0]).lower() for keyword in LINE_ITEM_KEYWORDS):
            continue
        df = _table_to_df(table)
        if df is None or df.empty or "amount" not in df:
            continue
        for _, row in df.iterrows():
            description = str(row.get("description", "") or "").strip()
            if description.lower().startswith(("total", "subtotal", "sub total", "tax")):
                continue
            amount = _optional_float(row.get("amount"))
            if amount is None and not description:
                continue
            items.append(
                LineItem(
                    description=description,
                    quantity=_optional_float(row.get("quantity")),
                    unit_price=_optional_float(row.get("unit_price")),
                    amount=amount,
                )
            )
    return items


def _object_location(event: Dict[str, Any]) -> Tuple[str, str]:
    if event.get("bucket") and event.get("key"):
        return str(event["bucket"]), str(event["key"])
    if "file_info" in event:
        info = event["file_info"] or {}
        bucket = info.get("bucket") or event.get("bucket")
        if bucket and info.get("key"):
            return str(bucket), str(info["key"])
    records = event.get("Records") or []
    if records:
        try:
            record = records[0]["s3"]
            return record["bucket"]["name"], record["object"]["key"]
        except (KeyError, TypeError) as exc:
            raise InputError("Malformed S3 event record") from exc
    raise InputError("Event did not contain bucket/key information")


def document_from_event(event: Dict[str, Any]) -> DocumentRef:
    if not isinstance(event, dict):
        raise InputError("Event must be a dictionary")
    bucket, key = _object_location(event)
    return DocumentRef(bucket=bucket, key=key)


@with_error_handling
def lambda_handler(event: Dict[str, Any], _context: Any) -> Dict[str, Any]:
    start = time.time()
    try:
        LOGGER.info("Received event: %s", json.dumps(event, default=str))
        document = document_from_event(event)
        result = TextractExtractor().extract(document)
        return json.loads(
            json_dumps(
                {
                    "status": "ok" if result.error is None else "degraded",
                    "bucket": document.bucket,
                    "key": document.key,
                    "field_count": len(result.fields),
                    **result.to_dict(),
                    "timestamp": utc_now(),
                }
            )
        )
    except ValueError as exc:
        LOGGER.warning("Validation error: %s", exc)
        return {
            "status": "error",
            "error_type": "validation_error",
            "message": str(exc),
            "timestamp": utc_now(),
        }
    finally:
        LOGGER.info("Extraction completed in %.2fs", time.time() - start)
