"""Progress events and the sinks that deliver them.

Subscribers are observers only: a sink that fails to deliver never stops a
pipeline run, ``ProgressReporter`` logs the failure and carries on.
"""

from __future__ import annotations

import logging
import os
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional

from botocore.exceptions import BotoCoreError, ClientError

from invoice_pipeline.common import client, json_dumps, resource, utc_now
from invoice_pipeline.models import ExtractedField

logger = logging.getLogger(__name__)
logger.setLevel(os.getenv("LOG_LEVEL", "INFO"))

AGENT_ACTIVITY = "agent_activity"
FIELD_EXTRACTED = "field_extracted"
TAX_ANALYSIS = "tax_analysis"
FRAUD_ANALYSIS = "fraud_analysis"
LEDGER_ENTRIES = "ledger_entries"
PROCESSING_STARTED = "processing_started"
PROCESSING_COMPLETE = "processing_complete"
ERROR = "error"


@dataclass
class ProgressEvent:
    type: str
    data: Dict[str, Any]
    timestamp: str = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type, "data": self.data, "timestamp": self.timestamp}

    def to_json(self) -> str:
        return json_dumps(self.to_dict())


class LoggingSink:
    def __init__(self, logger_name: str = __name__):
        self.logger = logging.getLogger(logger_name)

    def send(self, event: ProgressEvent) -> None:
        self.logger.info("progress %s: %s", event.type, json_dumps(event.data))


class CollectingSink:
    """Keeps every event in memory; used for synchronous callers and tests."""

    def __init__(self) -> None:
        self.events: List[ProgressEvent] = []

    def send(self, event: ProgressEvent) -> None:
        self.events.append(event)

    def of_type(self, event_type: str) -> List[ProgressEvent]:
        return [event for event in self.events if event.type == event_type]


class FanOutSink:
    def __init__(self, sinks: Iterable[Any]):
        self.sinks = list(sinks)

    def send(self, event: ProgressEvent) -> None:
        failures = []
        for sink in self.sinks:
            try:
                sink.send(event)
            except Exception as exc:
                failures.append(exc)
        if failures:
            raise failures[0]


class WebSocketSink:
    """Push events to one API Gateway WebSocket connection."""

    def __init__(
        self,
        connection_id: str,
        domain_name: str,
        stage: str,
        connections_table: Optional[str] = None,
        api_client: Any = None,
        table: Any = None,
    ):
        self.connection_id = connection_id
        self.endpoint = f"https://{domain_name}/{stage}"
        self.api_client = api_client or client("apigatewaymanagementapi", endpoint_url=self.endpoint)
        self._table = table
        self.connections_table = connections_table or os.getenv(
            "CONNECTIONS_TABLE", "invoice-pipeline-connections"
        )
        self.gone = False

    @property
    def table(self):
        if self._table is None:
            self._table = resource("dynamodb").Table(self.connections_table)
        return self._table

    def send(self, event: ProgressEvent) -> None:
        if self.gone:
            return
        try:
            self.api_client.post_to_connection(
                ConnectionId=self.connection_id,
                Data=event.to_json().encode("utf-8"),
            )
            logger.debug("Message sent to %s: %s", self.connection_id, event.type)
        except ClientError as exc:
            code = exc.response.get("Error", {}).get("Code")
            status = exc.response.get("ResponseMetadata", {}).get("HTTPStatusCode")
            if code == "GoneException" or status == 410:
                logger.info("Connection %s is stale, removing", self.connection_id)
                self.gone = True
                self._forget_connection()
                return
            raise

    def _forget_connection(self) -> None:
        try:
            self.table.delete_item(Key={"connectionId": self.connection_id})
        except (ClientError, BotoCoreError) as exc:
            logger.warning("Could not remove stale connection %s: %s", self.connection_id, exc)


class ProgressReporter:
    """Builds pipeline events and delivers them best-effort."""

    def __init__(self, sink: Any = None, run_id: Optional[str] = None):
        self.sink = sink or LoggingSink()
        self.run_id = run_id
        self.failed_deliveries = 0
        self._lock = threading.Lock()

    def emit(self, event_type: str, data: Dict[str, Any]) -> ProgressEvent:
        payload = dict(data)
        if self.run_id and "runId" not in payload:
            payload["runId"] = self.run_id
        event = ProgressEvent(type=event_type, data=payload)
        try:
            self.sink.send(event)
        except Exception as exc:
            with self._lock:
                self.failed_deliveries += 1
            logger.warning("Progress event %s not delivered: %s", event_type, exc)
        return event

    def agent_activity(self, agent_name: str, status: str, message: str, **extra: Any) -> ProgressEvent:
        return self.emit(
            AGENT_ACTIVITY,
            {"agentName": agent_name, "status": status, "message": message, "timestamp": utc_now(), **extra},
        )

    def field_extracted(self, extracted: ExtractedField) -> ProgressEvent:
        return self.emit(FIELD_EXTRACTED, extracted.to_dict())

    def processing_complete(self, decision: str, summary: Dict[str, Any], reason: Optional[str] = None) -> ProgressEvent:
        data: Dict[str, Any] = {
            "message": "All agents completed" if decision == "APPROVED" else "Processing stopped at a gate",
            "decision": decision,
            "summary": summary,
            "timestamp": utc_now(),
        }
        if reason:
            data["reason"] = reason
        return self.emit(PROCESSING_COMPLETE, data)

    def error(self, message: str, error: Exception | str) -> ProgressEvent:
        return self.emit(ERROR, {"message": message, "error": str(error)})
