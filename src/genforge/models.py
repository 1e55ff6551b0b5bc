"""Shared data model for validation errors, patches and auto-fix sessions."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional


class GenforgeError(Exception):
    """Base class for genforge errors."""


class ErrorType(str, Enum):
    """Classification of a validation error."""

    SYNTAX = "syntax"
    IMPORT = "import"
    REFERENCE = "reference"
    TYPE = "type"
    RUNTIME = "runtime"
    UNKNOWN = "unknown"


# Lower value is fixed first.
ERROR_PRIORITY: dict[ErrorType, int] = {
    ErrorType.SYNTAX: 1,
    ErrorType.IMPORT: 2,
    ErrorType.REFERENCE: 3,
    ErrorType.TYPE: 4,
    ErrorType.RUNTIME: 5,
    ErrorType.UNKNOWN: 6,
}


@dataclass(frozen=True)
class ParsedError:
    """A single validation error. Immutable once created."""

    type: ErrorType
    message: str
    file: Optional[str] = None
    line: Optional[int] = None
    column: Optional[int] = None
    stack: Optional[str] = None
    suggestion: Optional[str] = None

    @property
    def key(self) -> tuple[str, Optional[str]]:
        """Identity used when comparing error lists across validations."""
        return (self.message, self.file)

    @property
    def location(self) -> str:
        if not self.file:
            return "<unknown>"
        if self.line is None:
            return self.file
        return f"{self.file}:{self.line}"

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type.value,
            "message": self.message,
            "file": self.file,
            "line": self.line,
            "column": self.column,
            "stack": self.stack,
            "suggestion": self.suggestion,
        }


@dataclass
class ValidationResult:
    """Outcome of validating code or a project."""

    success: bool
    errors: list[ParsedError] = field(default_factory=list)

    @classmethod
    def from_errors(cls, errors: list[ParsedError]) -> ValidationResult:
        return cls(success=not errors, errors=list(errors))

    def error_messages(self) -> list[str]:
        return [e.message for e in self.errors]

    def to_dict(self) -> dict[str, Any]:
        return {"success": self.success, "errors": [e.to_dict() for e in self.errors]}


@dataclass
class CodePatch:
    """A textual edit to one file.

    Exactly one mode applies: a 1-based inclusive line range when line_start
    is set, a verbatim replacement when old_content is set, otherwise a full
    file replacement.
    """

    file: str
    new_content: str
    old_content: str = ""
    line_start: Optional[int] = None
    line_end: Optional[int] = None
    description: str = ""

    @property
    def mode(self) -> str:
        if self.line_start is not None:
            return "lines"
        if self.old_content:
            return "replace"
        return "full"

    def to_dict(self) -> dict[str, Any]:
        return {
            "file": self.file,
            "mode": self.mode,
            "old_content": self.old_content,
            "new_content": self.new_content,
            "line_start": self.line_start,
            "line_end": self.line_end,
            "description": self.description,
        }


class AutoFixStatus(str, Enum):
    """Lifecycle of an auto-fix session."""

    IDLE = "idle"
    ANALYZING = "analyzing"
    FIXING = "fixing"
    VALIDATING = "validating"
    COMPLETED = "completed"
    FAILED = "failed"
    MAX_ITERATIONS_REACHED = "max_iterations_reached"


@dataclass
class FixAttempt:
    """One iteration of the fix loop.

    patch is the edit that was written, or None when the apply callback
    only reported success (for example because the error was already gone).
    """

    id: str
    iteration: int
    error: ParsedError
    fix: str
    success: bool
    validation_result: ValidationResult
    patch: Optional[CodePatch] = None
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "iteration": self.iteration,
            "error": self.error.to_dict(),
            "fix": self.fix,
            "success": self.success,
            "patch": self.patch.to_dict() if self.patch else None,
            "validation": self.validation_result.to_dict(),
            "timestamp": self.timestamp,
        }


@dataclass
class AutoFixSession:
    """State of one auto-fix run for a project."""

    id: str
    project_id: str
    max_iterations: int
    status: AutoFixStatus = AutoFixStatus.IDLE
    current_iteration: int = 0
    original_errors: list[ParsedError] = field(default_factory=list)
    fix_attempts: list[FixAttempt] = field(default_factory=list)
    resolved_errors: list[ParsedError] = field(default_factory=list)
    unresolved_errors: list[ParsedError] = field(default_factory=list)
    started_at: float = field(default_factory=time.time)
    completed_at: Optional[float] = None

    @property
    def total_time_ms(self) -> Optional[int]:
        if self.completed_at is None:
            return None
        return int((self.completed_at - self.started_at) * 1000)

    @property
    def progress(self) -> float:
        """Percentage of the iteration budget spent."""
        if self.max_iterations <= 0:
            return 100.0
        return self.current_iteration / self.max_iterations * 100

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "project_id": self.project_id,
            "status": self.status.value,
            "max_iterations": self.max_iterations,
            "current_iteration": self.current_iteration,
            "original_errors": [e.to_dict() for e in self.original_errors],
            "resolved_errors": [e.to_dict() for e in self.resolved_errors],
            "unresolved_errors": [e.to_dict() for e in self.unresolved_errors],
            "fix_attempts": [a.to_dict() for a in self.fix_attempts],
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "total_time_ms": self.total_time_ms,
        }
