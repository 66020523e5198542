import json
import logging
import os
import time
from typing import Any, Dict, List, Optional

from invoice_pipeline.bedrock import ExpenseClassifier
from invoice_pipeline.common import json_dumps, utc_now
from invoice_pipeline.config import PipelineConfig, normalize_jurisdiction
from invoice_pipeline.coordinator import PipelineOrchestrator
from invoice_pipeline.errors import InputError, ProviderError
from invoice_pipeline.extraction_lambda import DocumentRef, TextractExtractor, document_from_event
from invoice_pipeline.fields import fields_from_payload, line_items_from_payload
from invoice_pipeline.invoice_store import InvoiceStore
from invoice_pipeline.models import PipelineRun
from invoice_pipeline.progress import FanOutSink, LoggingSink, ProgressReporter, WebSocketSink

logger = logging.getLogger(__name__)
logger.setLevel(os.getenv("LOG_LEVEL", "INFO"))


def build_reporter(connection_id: Optional[str] = None, domain_name: Optional[str] = None, stage: Optional[str] = None, config: Optional[PipelineConfig] = None) -> ProgressReporter:
    sinks: List[Any] = [LoggingSink("invoice_pipeline.events")]
    if connection_id and domain_name and stage:
        sinks.append(
            WebSocketSink(
                connection_id,
                domain_name,
                stage,
                connections_table=(config or PipelineConfig()).connections_table,
            )
        )
    return ProgressReporter(FanOutSink(sinks))


def build_orchestrator(config: PipelineConfig, reporter: ProgressReporter, store: Optional[InvoiceStore] = None, with_extractor: bool = True) -> PipelineOrchestrator:
    return PipelineOrchestrator(
        extractor=TextractExtractor() if with_extractor else None,
        reporter=reporter,
        history_store=store,
        classifier=ExpenseClassifier() if config.use_bedrock else None,
        config=config,
    )


def _config_for(event: Dict[str, Any]) -> PipelineConfig:
    config = PipelineConfig.from_env()
    if event.get("mode"):
        config.mode = str(event["mode"]).strip().lower()
    checked = config.validate()
    if not checked.valid:
        raise InputError("; ".join(checked.errors))
    jurisdiction = normalize_jurisdiction(event.get("jurisdiction"))
    if jurisdiction and config.tax_rate_override is None and jurisdiction not in config.tax_rates:
        raise InputError(f"No tax rate configured for jurisdiction {jurisdiction}")
    return config


def persist_run(store: Optional[InvoiceStore], run: PipelineRun, vendor: Optional[str] = None) -> bool:
    if store is None:
        return False
    try:
        store.save_run(run, vendor)
        return True
    except ProviderError as exc:
        logger.warning("Run %s not persisted: %s", run.run_id, exc)
        return False


def process_event(event: Dict[str, Any], reporter: Optional[ProgressReporter] = None) -> PipelineRun:
    """Run the pipeline for a direct invocation; raises ``InputError`` for bad payloads."""
    if not isinstance(event, dict):
        raise InputError("Event must be a dictionary")
    config = _config_for(event)
    reporter = reporter or build_reporter(event.get("connection_id"), event.get("domain_name"), event.get("stage"), config)
    store = InvoiceStore(config.invoice_table) if os.getenv("INVOICE_TABLE") else None
    vendor = event.get("vendor")
    jurisdiction = normalize_jurisdiction(event.get("jurisdiction")) or None

    if "fields" in event:
        fields = fields_from_payload(event["fields"])
        line_items = line_items_from_payload(event.get("line_items"))
        orchestrator = build_orchestrator(config, reporter, store, with_extractor=False)
        run = orchestrator.run_fields(fields, line_items, event.get("invoice_id"), vendor, jurisdiction)
    else:
        document: DocumentRef = document_from_event(event)
        orchestrator = build_orchestrator(config, reporter, store)
        run = orchestrator.run(document, event.get("invoice_id") or document.key, vendor, jurisdiction)

    persist_run(store, run, vendor)
    return run


def lambda_handler(event: Dict[str, Any], _context: Any) -> Dict[str, Any]:
    start = time.time()
    try:
        logger.info("Received event: %s", json.dumps(event, default=str))
        run = process_event(event)
        return json.loads(
            json_dumps(
                {
                    "status": "failed" if run.error else "completed",
                    "decision": run.decision.value if run.decision else None,
                    "reason": run.reason,
                    "error": run.error,
                    "summary": run.summary(),
                    "run": run,
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
    except Exception as exc:
        logger.error("Unhandled error: %s", exc, exc_info=True)
        return {
            "status": "error",
            "error_type": "internal_error",
            "message": str(exc),
            "timestamp": utc_now(),
        }
    finally:
        logger.info("Pipeline invocation completed in %.2fs", time.time() - start)
