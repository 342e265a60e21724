"""
Error taxonomy and typed degradation results.

Failures that only affect response quality (retrieval, summarization,
style hints, cost precision) are reported as degraded ``Outcome`` values.
Failures that affect whether a correct response can exist at all
(history unreadable, model call failed) are raised.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Generic, TypeVar

T = TypeVar("T")


class CoachAgentError(Exception):
    """Base class for all coach-agent errors."""


class ContextBuildError(CoachAgentError):
    """The conversation history store could not be read."""


class ProviderError(CoachAgentError):
    """A network dependency (model or embedding provider) failed."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class TransientProviderError(ProviderError):
    """A 5xx or network-level failure that is worth retrying."""


class ClientProviderError(ProviderError):
    """A definitive client-side failure (malformed request, auth rejection)."""


class ClassificationError(CoachAgentError):
    """The retrieval classifier model failed or returned garbage."""


class SummarizationError(CoachAgentError):
    """The summarization model call failed."""


class ToolExecutionError(CoachAgentError):
    """A tool handler failed."""


class ConfigurationError(CoachAgentError):
    """Missing credentials or catalog entry for a feature."""


class ModelInvocationError(CoachAgentError):
    """The generation call itself failed. Terminal for the turn."""


def classify_provider_error(exc: BaseException) -> ProviderError:
    """Map an SDK or transport exception onto the provider error taxonomy.

    Errors without an HTTP status (timeouts, connection resets) are
    transient. 4xx responses are definitive and must not be retried.
    """
    if isinstance(exc, ProviderError):
        return exc

    status = getattr(exc, "status_code", None)
    if status is None:
        response = getattr(exc, "response", None)
        status = getattr(response, "status_code", None)

    if isinstance(status, int) and 400 <= status < 500:
        return ClientProviderError(str(exc) or exc.__class__.__name__, status_code=status)
    return TransientProviderError(str(exc) or exc.__class__.__name__, status_code=status)


class OutcomeStatus(str, Enum):
    """How an operation that is allowed to degrade actually finished."""

    OK = "ok"
    DEGRADED = "degraded"
    ERROR = "error"


@dataclass(frozen=True)
class Outcome(Generic[T]):
    """A value plus the path taken to produce it."""

    value: T
    status: OutcomeStatus = OutcomeStatus.OK
    error_kind: str | None = None
    detail: str | None = None

    @classmethod
    def ok(cls, value: T) -> "Outcome[T]":
        return cls(value=value)

    @classmethod
    def degraded(cls, value: T, error: BaseException | str, detail: str | None = None) -> "Outcome[T]":
        kind = error if isinstance(error, str) else error.__class__.__name__
        if detail is None and isinstance(error, BaseException):
            detail = str(error)
        return cls(value=value, status=OutcomeStatus.DEGRADED, error_kind=kind, detail=detail)

    @classmethod
    def error(cls, value: T, error: BaseException | str, detail: str | None = None) -> "Outcome[T]":
        kind = error if isinstance(error, str) else error.__class__.__name__
        if detail is None and isinstance(error, BaseException):
            detail = str(error)
        return cls(value=value, status=OutcomeStatus.ERROR, error_kind=kind, detail=detail)

    @property
    def is_ok(self) -> bool:
        return self.status == OutcomeStatus.OK

    def as_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "error_kind": self.error_kind,
            "detail": self.detail,
        }
