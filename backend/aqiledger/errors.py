"""Exception taxonomy shared by the ingestion API and the pipeline jobs."""

from __future__ import annotations


class PipelineError(Exception):
    """Base class for every error raised by the pipeline."""


class ValidationError(PipelineError):
    """Rejected ingestion input. Nothing was written."""

    def __init__(self, message: str, field: str | None = None):
        super().__init__(message)
        self.message = message
        self.field = field


class BatchClosedError(PipelineError):
    """A reading arrived for an hour whose batch has left PENDING."""

    code = "BATCH_CLOSED"

    def __init__(self, reading_id: str, status: str | None = None):
        detail = f"Batch {reading_id} is closed"
        if status:
            detail += f" (status {status})"
        super().__init__(detail)
        self.reading_id = reading_id
        self.status = status


class EmptyBatchError(PipelineError):
    """Merkle tree requested over zero leaves."""


class ExternalServiceError(PipelineError):
    """Storage pinning or narrative generation failed."""

    def __init__(self, service: str, message: str, status_code: int | None = None):
        super().__init__(f"{service}: {message}")
        self.service = service
        self.status_code = status_code

    @property
    def retryable(self) -> bool:
        if self.status_code is None:
            return True
        if self.status_code == 429:
            return True
        return not 400 <= self.status_code < 500


class ConfigurationError(PipelineError):
    """Invalid configuration detected at startup."""


class IllegalTransitionError(PipelineError):
    """A status change that the lifecycle does not allow."""

    def __init__(self, entity_id: str, current: str, target: str):
        super().__init__(f"{entity_id}: illegal transition {current} -> {target}")
        self.entity_id = entity_id
        self.current = current
        self.target = target


class ConcurrencyError(PipelineError):
    """Optimistic write kept losing to concurrent writers."""
