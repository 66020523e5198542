"""API Gateway WebSocket routes: connection bookkeeping and invoice processing."""

import json
import logging
import os
import time
from typing import Any, Dict

from botocore.exceptions import BotoCoreError, ClientError

from invoice_pipeline.common import resource, utc_now
from invoice_pipeline.coordinator_lambda import build_reporter, process_event
from invoice_pipeline.errors import InputError
from invoice_pipeline.progress import ERROR, PROCESSING_STARTED, ProgressReporter

logger = logging.getLogger(__name__)
logger.setLevel(os.getenv("LOG_LEVEL", "INFO"))


def _connections_table():
    return resource("dynamodb").Table(os.getenv("CONNECTIONS_TABLE", "invoice-pipeline-connections"))


def _response(status_code: int, body: Any) -> Dict[str, Any]:
    return {"statusCode": status_code, "body": body if isinstance(body, str) else json.dumps(body)}


def handle_connect(connection_id: str) -> Dict[str, Any]:
    try:
        _connections_table().put_item(
            Item={"connectionId": connection_id, "timestamp": int(time.time() * 1000), "connectedAt": utc_now()}
        )
    except (ClientError, BotoCoreError) as exc:
        logger.error("Error storing connection %s: %s", connection_id, exc)
        return _response(500, {"error": "Failed to establish connection"})
    logger.info("Connection %s stored", connection_id)
    return _response(200, {"message": "Connected successfully"})


def handle_disconnect(connection_id: str) -> Dict[str, Any]:
    try:
        _connections_table().delete_item(Key={"connectionId": connection_id})
    except (ClientError, BotoCoreError) as exc:
        logger.error("Error removing connection %s: %s", connection_id, exc)
        return _response(500, {"error": "Failed to disconnect"})
    logger.info("Connection %s removed", connection_id)
    return _response(200, {"message": "Disconnected successfully"})


def handle_process_invoice(event: Dict[str, Any], reporter: ProgressReporter) -> Dict[str, Any]:
    try:
        body = json.loads(event.get("body") or "{}")
    except json.JSONDecodeError:
        reporter.emit(ERROR, {"message": "Request body is not valid JSON"})
        return _response(400, "Invalid JSON body")
    if not isinstance(body, dict):
        reporter.emit(ERROR, {"message": "Request body must be an object"})
        return _response(400, "Invalid request body")

    s3_key = body.get("s3Key")
    if not s3_key:
        reporter.emit(ERROR, {"message": "Missing s3Key in request"})
        return _response(400, "Missing s3Key")
    bucket = body.get("s3Bucket") or os.getenv("S3_DOCUMENTS_BUCKET")
    if not bucket:
        reporter.emit(ERROR, {"message": "Missing s3Bucket in request"})
        return _response(400, "Missing s3Bucket")

    invoice_id = body.get("invoiceId") or s3_key
    reporter.emit(
        PROCESSING_STARTED,
        {"invoiceId": invoice_id, "message": "Invoice processing started", "timestamp": utc_now()},
    )
    try:
        run = process_event(
            {
                "bucket": bucket,
                "key": s3_key,
                "invoice_id": invoice_id,
                "vendor": body.get("vendor"),
                "jurisdiction": body.get("jurisdiction"),
                "mode": body.get("mode"),
            },
            reporter=reporter,
        )
    except InputError as exc:
        reporter.emit(ERROR, {"message": "Failed to process invoice", "error": str(exc)})
        return _response(400, {"error": str(exc)})

    return _response(
        200,
        {
            "message": "Processing finished",
            "runId": run.run_id,
            "state": run.state.value,
            "decision": run.decision.value if run.decision else None,
        },
    )


def handle_default(event: Dict[str, Any], reporter: ProgressReporter) -> Dict[str, Any]:
    reporter.emit(
        "echo",
        {"message": "Message received. Send {\"action\": \"processInvoice\", \"s3Key\": ...} to start.", "body": event.get("body")},
    )
    return _response(200, "Message received")


def lambda_handler(event: Dict[str, Any], _context: Any) -> Dict[str, Any]:
    start = time.time()
    request = (event or {}).get("requestContext") or {}
    connection_id = request.get("connectionId")
    route = request.get("routeKey")
    if not connection_id:
        return _response(400, "No connection ID")
    try:
        logger.info("WebSocket route %s for %s", route, connection_id)
        if route == "$connect":
            return handle_connect(connection_id)
        if route == "$disconnect":
            return handle_disconnect(connection_id)

        reporter = build_reporter(connection_id, request.get("domainName"), request.get("stage"))
        if route == "processInvoice":
            return handle_process_invoice(event, reporter)
        if route == "$default":
            return handle_default(event, reporter)
        logger.warning("Unknown route: %s", route)
        return _response(400, f"Unknown route: {route}")
    except Exception as exc:
        logger.error("WebSocket handler error: %s", exc, exc_info=True)
        return _response(500, {"error": "Internal server error"})
    finally:
        logger.info("WebSocket route %s handled in %.2fs", route, time.time() - start)
