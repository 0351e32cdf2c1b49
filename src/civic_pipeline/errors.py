"""Typed error taxonomy for the civic extraction pipeline.

Run-level failures raise one of these exceptions. Item-level problems are
recorded on result objects as :class:`FieldValidationError` instances and
never raised past the component that found them.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from .models import PipelineMetrics


class PipelineError(Exception):
    """Base class for pipeline failures.

    The orchestrator attaches the run's metrics before re-raising so callers
    can inspect telemetry for failed runs.
    """

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message
        self.metrics: Optional["PipelineMetrics"] = None


class ParseError(PipelineError):
    """Model output could not be turned into a JSON object."""

    def __init__(self, message: str, excerpt: str = "") -> None:
        super().__init__(message)
        self.excerpt = excerpt


class ValidationError(PipelineError):
    """Rule set is missing a required piece of its shape."""

    def __init__(self, message: str, field: Optional[str] = None) -> None:
        super().__init__(message)
        self.field = field


class ExtractionError(PipelineError):
    """Selectors matched nothing usable on the page."""

    CONTAINER_NOT_FOUND = "container_not_found"
    NO_ITEMS = "no_items"
    NO_VALID_ITEMS = "no_valid_items"
    FETCH_FAILED = "fetch_failed"

    def __init__(self, message: str, kind: str = NO_ITEMS) -> None:
        super().__init__(message)
        self.kind = kind


class FieldValidationError(PipelineError):
    """A required field is missing on one item. Always non-fatal."""

    def __init__(
        self,
        field_name: str,
        item_index: Optional[int] = None,
        reason: str = "missing",
    ) -> None:
        location = f"Item {item_index}: " if item_index is not None else ""
        super().__init__(f'{location}Required field "{field_name}" {reason}')
        self.field_name = field_name
        self.item_index = item_index
        self.reason = reason


class RemotePromptServiceError(PipelineError):
    """Non-2xx response from a remote prompt or model service."""

    def __init__(self, service: str, status_code: Optional[int], detail: str = "") -> None:
        status = status_code if status_code is not None else "no response"
        message = f"{service} returned {status}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)
        self.service = service
        self.status_code = status_code


class PipelineTimeoutError(PipelineError):
    """A pipeline run exceeded its overall timeout."""


class ConfigError(PipelineError):
    """Settings or region configuration is invalid."""
