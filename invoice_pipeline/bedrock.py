"""Narrow interface to the hosted language model.

Prompt text and completion parsing live here; callers get a dict back or a
``ProviderError`` / ``ParseError`` and never handle raw model text.
"""

from __future__ import annotations

import json
import logging
import os
from typing import Any, Dict, Optional, Sequence, Tuple

from botocore.exceptions import BotoCoreError, ClientError

from invoice_pipeline.common import client
from invoice_pipeline.errors import ParseError, ProviderError

LOGGER = logging.getLogger(__name__)
LOGGER.setLevel(os.getenv("LOG_LEVEL", "INFO"))

BEDROCK_MODEL_ID = os.getenv("BEDROCK_MODEL_ID", "anthropic.claude-3-5-sonnet-20240620-v1:0")
BEDROCK_REGION = os.getenv("BEDROCK_REGION", "us-east-1")
MAX_TOKENS = 1024

EXPENSE_ACCOUNTS: Dict[str, str] = {
    "6100": "Office Expenses",
    "6200": "Professional Services",
    "6300": "Software & Subscriptions",
    "6400": "Travel",
    "6500": "Utilities",
    "6600": "Repairs & Maintenance",
}

EXPENSE_PROMPT = (
    "You are an accounts payable clerk. Choose the single best expense account for the invoice"
    " described below from this chart of accounts:\n{accounts}\n\n"
    "Invoice fields:\n{fields}\n\n"
    'Respond with JSON only: {{"code": "<account code>", "account": "<account name>", "reason": "<short reason>"}}'
)


def extract_json(text: str) -> Dict[str, Any]:
    """Recover the outermost JSON object from completion text."""
    if not text or not isinstance(text, str):
        raise ParseError("Model response did not contain completion text")
    text = text.strip()
    start = text.find("{")
    end = text.rfind("}")
    if start == -1 or end < start:
        raise ParseError("No JSON object found in model response")
    try:
        parsed = json.loads(text[start : end + 1])
    except json.JSONDecodeError as exc:
        raise ParseError(f"Unable to parse completion JSON: {exc}") from exc
    if not isinstance(parsed, dict):
        raise ParseError("Model response JSON is not an object")
    return parsed


def _completion_text(body: Dict[str, Any]) -> Optional[str]:
    content = body.get("content")
    if isinstance(content, list):
        texts = [part.get("text", "") for part in content if isinstance(part, dict) and part.get("type") == "text"]
        if texts:
            return "".join(texts)
    text = body.get("completion") or body.get("outputText")
    if not text and isinstance(body.get("results"), list) and body["results"]:
        first = body["results"][0]
        text = first.get("outputText") or first.get("completion")
    return text


class ModelClient:
    def __init__(self, runtime_client: Any = None, model_id: str = BEDROCK_MODEL_ID):
        self.runtime_client = runtime_client or client("bedrock-runtime", region=BEDROCK_REGION)
        self.model_id = model_id

    def invoke_json(self, prompt: str) -> Dict[str, Any]:
        payload = {
            "anthropic_version": "bedrock-2023-05-31",
            "max_tokens": MAX_TOKENS,
            "temperature": 0.0,
            "messages": [{"role": "user", "content": prompt}],
        }
        try:
            LOGGER.info("Invoking Bedrock model %s", self.model_id)
            response = self.runtime_client.invoke_model(modelId=self.model_id, body=json.dumps(payload))
        except (ClientError, BotoCoreError) as exc:
            raise ProviderError("bedrock", str(exc)) from exc

        raw = response.get("body")
        if hasattr(raw, "read"):
            raw = raw.read()
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8")
        try:
            body = json.loads(raw) if isinstance(raw, str) else (raw or {})
        except json.JSONDecodeError as exc:
            raise ParseError(f"Unable to decode Bedrock response body: {exc}") from exc
        return extract_json(_completion_text(body))


class ExpenseClassifier:
    """Pick the expense account for an invoice with the model."""

    def __init__(self, model: Optional[ModelClient] = None, accounts: Optional[Dict[str, str]] = None):
        self.model = model or ModelClient()
        self.accounts = accounts or EXPENSE_ACCOUNTS

    def classify(self, fields: Sequence[Any]) -> Tuple[str, str]:
        """Return ``(account name, code)``; raises ``ParseError`` for unknown codes."""
        prompt = EXPENSE_PROMPT.format(
            accounts="\n".join(f"- {code}: {name}" for code, name in self.accounts.items()),
            fields="\n".join(f"- {f.name}: {f.value}" for f in fields),
        )
        answer = self.model.invoke_json(prompt)
        code = str(answer.get("code", "")).strip()
        if code not in self.accounts:
            raise ParseError(f"Model chose an unknown account code: {code!r}")
        return self.accounts[code], code
