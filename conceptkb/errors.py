"""Error taxonomy and result envelopes for pipeline operations.

Components raise :class:`ConceptPipelineError` subclasses internally. The
public operations catch them at their boundary and hand back an
:class:`OperationResult`, so callers branch on ``result.success`` and
``result.error.kind`` instead of exception types. Batch work collects one
:class:`ItemResult` per item into a :class:`BatchReport`.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Callable, Dict, Generic, List, Optional, TypeVar

from loguru import logger
from pydantic import BaseModel, Field

T = TypeVar("T")


class ErrorKind(str, Enum):
    """Machine-checkable failure categories."""

    VALIDATION = "validation"
    CONFLICT = "conflict"
    NOT_FOUND = "not_found"
    UPSTREAM_FAILURE = "upstream_failure"
    INCONSISTENCY = "inconsistency"
    FATAL = "fatal"


class ConceptPipelineError(Exception):
    """Base error carrying an :class:`ErrorKind` and resumption context."""

    kind: ErrorKind = ErrorKind.FATAL

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(message)
        self.message = message
        self.details: Dict[str, Any] = details

    def to_error(self) -> "OperationError":
        return OperationError(kind=self.kind, message=self.message, details=self.details)


class ValidationFailure(ConceptPipelineError):
    kind = ErrorKind.VALIDATION


class ConflictError(ConceptPipelineError):
    kind = ErrorKind.CONFLICT


class NotFoundError(ConceptPipelineError):
    kind = ErrorKind.NOT_FOUND


class UpstreamError(ConceptPipelineError):
    kind = ErrorKind.UPSTREAM_FAILURE


class InconsistencyError(ConceptPipelineError):
    kind = ErrorKind.INCONSISTENCY


class InvalidTransitionError(ValidationFailure):
    """Raised when a session status change is not allowed."""


class OperationError(BaseModel):
    """Failure payload: kind + readable message + context (session id, phase, counts)."""

    kind: ErrorKind
    message: str
    details: Dict[str, Any] = Field(default_factory=dict)


class OperationResult(BaseModel, Generic[T]):
    """Discriminated success/failure envelope for exposed operations."""

    success: bool
    data: Optional[T] = None
    error: Optional[OperationError] = None

    @classmethod
    def ok(cls, data: T) -> "OperationResult[T]":
        return cls(success=True, data=data)

    @classmethod
    def fail(cls, kind: ErrorKind, message: str, **details: Any) -> "OperationResult[T]":
        return cls(success=False, error=OperationError(kind=kind, message=message, details=details))

    @classmethod
    def from_exception(cls, exc: ConceptPipelineError) -> "OperationResult[T]":
        return cls(success=False, error=exc.to_error())

    def unwrap(self) -> T:
        """Return ``data`` or raise the error this result carries."""
        if self.success:
            return self.data  # type: ignore[return-value]
        assert self.error is not None
        error_cls = _ERRORS_BY_KIND.get(self.error.kind, ConceptPipelineError)
        raise error_cls(self.error.message, **self.error.details)


class ItemResult(BaseModel):
    """Outcome of one item inside a batch (one concept, one decision)."""

    key: str
    success: bool
    action: Optional[str] = None
    concept_id: Optional[str] = None
    error: Optional[OperationError] = None

    @classmethod
    def succeeded(
        cls, key: str, action: str | None = None, concept_id: str | None = None
    ) -> "ItemResult":
        return cls(key=key, success=True, action=action, concept_id=concept_id)

    @classmethod
    def failed(
        cls, key: str, kind: ErrorKind, message: str, action: str | None = None
    ) -> "ItemResult":
        return cls(
            key=key,
            success=False,
            action=action,
            error=OperationError(kind=kind, message=message),
        )


class BatchReport(BaseModel):
    """Per-item results collected for a batch."""

    items: List[ItemResult] = Field(default_factory=list)

    def add(self, item: ItemResult) -> ItemResult:
        self.items.append(item)
        return item

    @property
    def succeeded(self) -> List[ItemResult]:
        return [item for item in self.items if item.success]

    @property
    def failed(self) -> List[ItemResult]:
        return [item for item in self.items if not item.success]

    @property
    def all_succeeded(self) -> bool:
        return not self.failed


def run_operation(operation: str, fn: Callable[[], T], **context: Any) -> OperationResult[T]:
    """Run ``fn`` and wrap its outcome in an :class:`OperationResult`.

    Known pipeline errors keep their kind; anything else is reported as
    ``fatal`` after being logged with its traceback.
    """
    try:
        return OperationResult.ok(fn())
    except ConceptPipelineError as exc:
        for key, value in context.items():
            exc.details.setdefault(key, value)
        logger.warning(f"{operation} failed ({exc.kind.value}): {exc.message}")
        return OperationResult.from_exception(exc)
    except Exception as exc:  # noqa: BLE001
        logger.exception(f"Unexpected error during {operation}")
        return OperationResult.fail(ErrorKind.FATAL, f"{operation} failed: {exc}", **context)


_ERRORS_BY_KIND: Dict[ErrorKind, type[ConceptPipelineError]] = {
    ErrorKind.VALIDATION: ValidationFailure,
    ErrorKind.CONFLICT: ConflictError,
    ErrorKind.NOT_FOUND: NotFoundError,
    ErrorKind.UPSTREAM_FAILURE: UpstreamError,
    ErrorKind.INCONSISTENCY: InconsistencyError,
    ErrorKind.FATAL: ConceptPipelineError,
}
