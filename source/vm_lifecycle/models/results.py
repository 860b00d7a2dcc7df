"""
Typed operation outcomes.

Every expected failure (bad input, missing entity, conflicting state, a
failing external tool) is returned as a failed ``Result`` carrying a
machine-readable ``ErrorKind``. Only document store faults propagate as
exceptions.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Generic, TypeVar

from pydantic import BaseModel, ValidationError

T = TypeVar("T")


class ErrorCategory(str, Enum):
    validation = "validation"
    not_found = "not_found"
    conflict = "conflict"
    external_tool = "external_tool"
    internal = "internal"


class ErrorKind(str, Enum):
    missing_field = "missing_field"
    invalid_field = "invalid_field"
    invalid_format = "invalid_format"
    invalid_name = "invalid_name"
    invalid_size = "invalid_size"
    not_editable = "not_editable"

    not_found = "not_found"
    disk_not_found = "disk_not_found"
    iso_not_found = "iso_not_found"
    disk_missing = "disk_missing"
    iso_missing = "iso_missing"

    already_exists = "already_exists"
    name_collision = "name_collision"
    shrink_not_allowed = "shrink_not_allowed"
    vm_running = "vm_running"

    tool_error = "tool_error"
    launch_failed = "launch_failed"
    stop_failed = "stop_failed"
    stop_timeout = "stop_timeout"

    internal = "internal"

    @property
    def category(self) -> ErrorCategory:
        return _CATEGORIES[self]


_CATEGORIES: dict[ErrorKind, ErrorCategory] = {
    ErrorKind.missing_field: ErrorCategory.validation,
    ErrorKind.invalid_field: ErrorCategory.validation,
    ErrorKind.invalid_format: ErrorCategory.validation,
    ErrorKind.invalid_name: ErrorCategory.validation,
    ErrorKind.invalid_size: ErrorCategory.validation,
    ErrorKind.not_editable: ErrorCategory.validation,
    ErrorKind.not_found: ErrorCategory.not_found,
    ErrorKind.disk_not_found: ErrorCategory.not_found,
    ErrorKind.iso_not_found: ErrorCategory.not_found,
    ErrorKind.disk_missing: ErrorCategory.not_found,
    ErrorKind.iso_missing: ErrorCategory.not_found,
    ErrorKind.already_exists: ErrorCategory.conflict,
    ErrorKind.name_collision: ErrorCategory.conflict,
    ErrorKind.shrink_not_allowed: ErrorCategory.conflict,
    ErrorKind.vm_running: ErrorCategory.conflict,
    ErrorKind.tool_error: ErrorCategory.external_tool,
    ErrorKind.launch_failed: ErrorCategory.external_tool,
    ErrorKind.stop_failed: ErrorCategory.external_tool,
    ErrorKind.stop_timeout: ErrorCategory.external_tool,
    ErrorKind.internal: ErrorCategory.internal,
}


@dataclass(frozen=True)
class OperationError:
    kind: ErrorKind
    reason: str = ""

    @property
    def category(self) -> ErrorCategory:
        return self.kind.category


@dataclass
class Result(Generic[T]):
    value: T | None = None
    error: OperationError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def kind(self) -> ErrorKind | None:
        return self.error.kind if self.error else None

    @property
    def category(self) -> ErrorCategory | None:
        return self.error.category if self.error else None

    @classmethod
    def success(cls, value: T | None = None) -> "Result[T]":
        return cls(value=value)

    @classmethod
    def fail(cls, kind: ErrorKind, reason: str = "") -> "Result[T]":
        return cls(error=OperationError(kind=kind, reason=reason))

    @classmethod
    def from_validation_error(cls, exc: ValidationError) -> "Result[T]":
        errors = exc.errors()
        missing = [_field_name(e) for e in errors if e.get("type") == "missing"]
        if missing:
            return cls.fail(
                ErrorKind.missing_field,
                f"Missing required fields: {', '.join(missing)}",
            )
        forbidden = [
            _field_name(e) for e in errors if e.get("type") == "extra_forbidden"
        ]
        if forbidden:
            return cls.fail(
                ErrorKind.not_editable,
                f"Fields cannot be edited: {', '.join(forbidden)}",
            )
        details = "; ".join(f"{_field_name(e)}: {e.get('msg')}" for e in errors)
        return cls.fail(ErrorKind.invalid_field, details)

    def with_context(self, context: str) -> "Result[T]":
        """Prefix the failure reason; successes are returned untouched."""
        if self.error is None:
            return self
        reason = f"{context}: {self.error.reason}" if self.error.reason else context
        return Result(error=OperationError(kind=self.error.kind, reason=reason))

    def to_response(
        self, serialize: Callable[[Any], Any] | None = None
    ) -> "OperationResponse":
        data = self.value
        if serialize is not None and data is not None:
            data = serialize(data)
        if self.error is None:
            return OperationResponse(ok=True, data=data)
        return OperationResponse(
            ok=False,
            kind=self.error.kind,
            category=self.error.category,
            reason=self.error.reason,
        )


def _field_name(err: Any) -> str:
    loc = err.get("loc") or ()
    return ".".join(str(p) for p in loc) or "?"


@dataclass(frozen=True)
class ReconciliationDrift:
    """Persisted status that disagreed with the observed host state."""

    vm_id: str
    persisted: str
    observed: str
    detail: str = ""


class OperationResponse(BaseModel):
    ok: bool
    kind: ErrorKind | None = None
    category: ErrorCategory | None = None
    reason: str = ""
    data: Any = None
