"""Error taxonomy for the ingestion and query pipelines.

- ConfigurationError: invalid chunking/index/pipeline settings, never retried
- IntegrationError: a collaborator returned malformed or mismatched data
- ExternalServiceError: network failure, rate limit or provider outage
- DataQualityWarning: non-fatal signal reported alongside a result
"""
from typing import Optional


class PipelineError(Exception):
    """Base class for all pipeline failures."""


class ConfigurationError(PipelineError, ValueError):
    """Invalid configuration detected before any processing."""


class IndexNotFoundError(ConfigurationError):
    """Operation targeted an index that was never created."""

    def __init__(self, index_name: str):
        super().__init__(f"Index not found: {index_name!r}")
        self.index_name = index_name


class FilterError(PipelineError, ValueError):
    """A filter predicate is not well-formed."""


class IntegrationError(PipelineError):
    """External contract violation (e.g. vector count != chunk count)."""

    def __init__(
        self,
        message: str,
        *,
        step: Optional[str] = None,
        document_id: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.step = step
        self.document_id = document_id

    def __str__(self) -> str:
        context = []
        if self.step:
            context.append(f"step={self.step}")
        if self.document_id:
            context.append(f"document={self.document_id}")
        if context:
            return f"{self.message} ({', '.join(context)})"
        return self.message


class ExternalServiceError(PipelineError):
    """Transport-level failure reported by a provider."""

    def __init__(
        self,
        message: str,
        *,
        provider: Optional[str] = None,
        status_code: Optional[int] = None,
    ):
        super().__init__(message)
        self.provider = provider
        self.status_code = status_code


class DataQualityWarning(UserWarning):
    """Non-fatal data problem (empty cleaned output, zero chunks)."""

    def __init__(
        self,
        message: str,
        *,
        step: str,
        document_id: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.step = step
        self.document_id = document_id

    def to_dict(self) -> dict:
        return {
            "message": self.message,
            "step": self.step,
            "document_id": self.document_id,
        }
