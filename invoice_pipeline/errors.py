"""Exception types for the invoice pipeline.

A gate rejection is never an exception: stages return results and the
coordinator turns a failing gate into a REJECTED decision. These classes cover
the remaining cases.
"""


class PipelineError(Exception):
    """Base class for pipeline failures."""


class InputError(PipelineError, ValueError):
    """Malformed or missing document reference / payload. The run never starts."""


class ProviderError(PipelineError):
    """An external service (Textract, Bedrock, DynamoDB) failed or timed out."""

    def __init__(self, provider: str, message: str):
        super().__init__(f"{provider}: {message}")
        self.provider = provider


class ParseError(PipelineError):
    """Model output could not be turned into structured data."""


class FieldNotFound(PipelineError, KeyError):
    def __init__(self, label: str):
        super().__init__(label)
        self.label = label

    def __str__(self) -> str:
        return f"Field not found: {self.label}"


class LedgerImbalanceError(PipelineError):
    """Generated postings do not balance."""
