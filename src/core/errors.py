"""
Error taxonomy shared by the synthesis pipeline and the selection queue.

Structural errors (validation, not found, state conflict, precondition)
abort the call that raised them. Per-item errors inside batch phases are
captured in a Result and counted instead of propagated.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Generic, List, Optional, TypeVar

T = TypeVar("T")


class SynthesisEngineError(Exception):
    """Base class for all errors raised by this package."""

    code = "engine_error"
    # True when the failing call is guaranteed to have mutated nothing.
    nothing_happened = True

    def __init__(self, message: str, **details: Any):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "error": self.code,
            "message": self.message,
            "nothing_happened": self.nothing_happened,
        }
        if self.details:
            payload["details"] = self.details
        return payload


class ValidationError(SynthesisEngineError):
    """Missing or malformed required parameter."""

    code = "validation_error"


class NotFoundError(SynthesisEngineError):
    """Digest, candidate or item absent."""

    code = "not_found"


class ExternalServiceError(SynthesisEngineError):
    """Embedding or text-model call failed."""

    code = "external_service_error"
    nothing_happened = False


class ModelTimeoutError(ExternalServiceError, TimeoutError):
    """A text-model call exceeded its deadline."""

    code = "timeout"


class StateConflictError(SynthesisEngineError):
    """Queue item not in the state required for the requested transition."""

    code = "state_conflict"


class PreconditionError(SynthesisEngineError):
    """Candidate is missing content required for development."""

    code = "precondition_failed"


@dataclass(frozen=True)
class Result(Generic[T]):
    """
    Outcome of one unit of work in a batch phase.
    """
    value: Optional[T] = None
    error: Optional[SynthesisEngineError] = None
    key: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, value: T, key: Optional[str] = None) -> "Result[T]":
        return cls(value=value, key=key)

    @classmethod
    def failure(cls, error: SynthesisEngineError, key: Optional[str] = None) -> "Result[T]":
        return cls(error=error, key=key)


@dataclass
class BatchReport:
    """
    Aggregate of per-item results: how much was processed, how much failed.
    """
    processed: int = 0
    errors: int = 0
    messages: List[str] = field(default_factory=list)

    def record(self, result: Result) -> None:
        if result.ok:
            self.processed += 1
        else:
            self.errors += 1
            label = f"{result.key}: " if result.key else ""
            self.messages.append(f"{label}{result.error.message}")

    def merge(self, other: "BatchReport") -> None:
        self.processed += other.processed
        self.errors += other.errors
        self.messages.extend(other.messages)
