"""Shared helpers for the invoice pipeline Lambdas.

Client factories honour ``LOCALSTACK_URL`` so the handlers can run against a
local AWS emulator, and ``AuditLogger`` gives every workflow step the same
structured log line.
"""

from __future__ import annotations

import functools
import json
import logging
import os
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, Optional

import boto3
from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)
if not logger.handlers:
    logging.basicConfig(level=logging.INFO)


def is_localstack() -> bool:
    return bool(os.environ.get("LOCALSTACK_URL"))


def _client_kwargs(region: Optional[str], endpoint_url: Optional[str]) -> Dict[str, Any]:
    kw: Dict[str, Any] = {}
    if region:
        kw["region_name"] = region
    if endpoint_url:
        kw["endpoint_url"] = endpoint_url
    elif is_localstack():
        kw["endpoint_url"] = os.environ["LOCALSTACK_URL"]
    return kw


def client(service: str, region: Optional[str] = None, endpoint_url: Optional[str] = None):
    return boto3.client(service, **_client_kwargs(region, endpoint_url))


def resource(service: str, region: Optional[str] = None, endpoint_url: Optional[str] = None):
    return boto3.resource(service, **_client_kwargs(region, endpoint_url))


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def with_error_handling(func):
    """Log, count and re-raise any exception escaping a handler."""

    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except Exception as e:
            logger.error("Error in %s: %s", func.__name__, e, exc_info=True)
            try:
                cw = client("cloudwatch")
                cw.put_metric_data(
                    Namespace="InvoicePipeline",
                    MetricData=[{"MetricName": "Errors", "Value": 1, "Unit": "Count"}],
                )
            except Exception as metric_error:  # pragma: no cover - metrics are best-effort
                logger.debug("Error metric not published: %s", metric_error)
            raise

    return wrapper


def _json_default(o: Any) -> Any:
    if isinstance(o, Decimal):
        return float(o)
    if hasattr(o, "to_dict"):
        return o.to_dict()
    return str(o)


def json_dumps(obj: Any, **kwargs: Any) -> str:
    return json.dumps(obj, default=_json_default, **kwargs)


def to_decimal(value: Any) -> Any:
    """Recursively convert floats so DynamoDB accepts the item."""
    if isinstance(value, float):
        return Decimal(str(value))
    if isinstance(value, dict):
        return {k: to_decimal(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_decimal(v) for v in value]
    return value


def from_decimal(value: Any) -> Any:
    if isinstance(value, Decimal):
        return int(value) if value == value.to_integral_value() else float(value)
    if isinstance(value, dict):
        return {k: from_decimal(v) for k, v in value.items()}
    if isinstance(value, list):
        return [from_decimal(v) for v in value]
    return value


class AuditLogger:
    """Structured logging for the pipeline audit trail."""

    def __init__(self, logger_name: str = __name__):
        self.logger = logging.getLogger(logger_name)
        self.logger.setLevel(os.environ.get("LOG_LEVEL", "INFO"))

    def log_workflow_event(
        self, workflow_id: str, step: str, status: str, details: Optional[Dict[str, Any]] = None
    ) -> None:
        message = f"Workflow {workflow_id} - {step}: {status}"
        if details:
            message += f" | {json_dumps(details)}"
        self.logger.info(message)

    def log_error(self, error: Exception, context: Optional[Dict[str, Any]] = None) -> None:
        message = f"Error: {type(error).__name__} - {error}"
        if context:
            message += f" | Context: {json_dumps(context)}"
        self.logger.error(message)
