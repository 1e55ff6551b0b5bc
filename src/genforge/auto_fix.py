"""Iterative auto-fix loop.

A session repeatedly picks the most urgent unresolved error, generates a fix
for it, hands the fix to an apply callback and re-validates, until every
error is resolved, the iteration budget is spent, or the session is
cancelled. Reaching the budget is a normal outcome ("partially fixed").
"""

from __future__ import annotations

import logging
import re
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Optional, Union

from .models import (
    ERROR_PRIORITY,
    AutoFixSession,
    AutoFixStatus,
    CodePatch,
    FixAttempt,
    GenforgeError,
    ParsedError,
    ValidationResult,
)
from .project_memory import ChangeMetrics, ProjectMemoryService

logger = logging.getLogger(__name__)

DEFAULT_MAX_ITERATIONS = 5

ValidateFunction = Callable[[], ValidationResult]
ApplyFixFunction = Callable[[str, ParsedError], Union[bool, CodePatch, None]]
LLMFixFunction = Callable[[str, "FixContext"], str]
ProgressCallback = Callable[[AutoFixSession, Optional[FixAttempt]], None]


class AutoFixError(GenforgeError):
    """Raised for unknown sessions or when validation itself breaks."""


@dataclass
class FixContext:
    """What the fix generator knows about the project around an error."""

    project_id: str
    related_files: list[str] = field(default_factory=list)
    recent_changes: list[str] = field(default_factory=list)
    successful_fixes: list[str] = field(default_factory=list)
    similar_errors: list[str] = field(default_factory=list)


@dataclass
class FixStrategy:
    """Pattern-matched fix description. Lower priority is tried first."""

    type: str
    pattern: re.Pattern
    priority: int
    template: str

    def matches(self, error: ParsedError) -> bool:
        return bool(self.pattern.search(error.message))

    def fix(self, error: ParsedError, context: FixContext) -> str:
        return self.template.format(message=error.message)


DEFAULT_STRATEGIES = [
    FixStrategy(
        type="missing_import",
        pattern=re.compile(r"Cannot find module|is not defined", re.I),
        priority=1,
        template="Add missing import for: {message}",
    ),
    FixStrategy(
        type="type_mismatch",
        pattern=re.compile(r"Type '.*' is not assignable|Argument of type", re.I),
        priority=2,
        template="Fix type mismatch: {message}",
    ),
    FixStrategy(
        type="null_check",
        pattern=re.compile(r"Object is possibly 'null'|Object is possibly 'undefined'", re.I),
        priority=3,
        template="Add null/undefined check: {message}",
    ),
    FixStrategy(
        type="syntax_error",
        pattern=re.compile(r"Unexpected token|SyntaxError", re.I),
        priority=1,
        template="Fix syntax error: {message}",
    ),
    FixStrategy(
        type="missing_property",
        pattern=re.compile(r"Property '.*' does not exist", re.I),
        priority=2,
        template="Add missing property: {message}",
    ),
]


def prioritize_error(errors: list[ParsedError]) -> ParsedError:
    """Most urgent error; the first one wins among equals."""
    if not errors:
        raise ValueError("No errors to prioritize")
    return min(errors, key=lambda e: ERROR_PRIORITY.get(e.type, 10))


def build_fix_prompt(error: ParsedError, context: Optional[FixContext] = None) -> str:
    prompt = f"Fix the following {error.type.value} error:\n\n"
    prompt += f"Error: {error.message}\n"
    if error.file:
        prompt += f"File: {error.file}\n"
    if error.line:
        prompt += f"Line: {error.line}\n"
    if error.suggestion:
        prompt += f"Suggestion: {error.suggestion}\n"
    if error.stack:
        prompt += f"Stack trace:\n{error.stack[:500]}\n"

    if context is not None:
        if context.related_files:
            prompt += f"\nRelated files: {', '.join(context.related_files)}\n"
        if context.successful_fixes:
            prompt += "\nFixes that worked for similar errors before:\n"
            prompt += "".join(f"- {fix}\n" for fix in context.successful_fixes)

    prompt += "\nProvide the corrected code that fixes this error."
    return prompt


def _new_id() -> str:
    return f"fix_{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}"


class AutoFixLoopService:
    """Runs auto-fix sessions and keeps them until cleared.

    Sessions for the same project are not serialized against each other;
    callers that run two at once share memory and file state.
    """

    def __init__(
        self,
        memory: Optional[ProjectMemoryService] = None,
        default_max_iterations: int = DEFAULT_MAX_ITERATIONS,
        strategies: Optional[list[FixStrategy]] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.memory = memory or ProjectMemoryService()
        self.default_max_iterations = default_max_iterations
        self.strategies = sorted(strategies if strategies is not None else DEFAULT_STRATEGIES,
                                 key=lambda s: s.priority)
        self._clock = clock
        self._sessions: dict[str, AutoFixSession] = {}
        self._llm_fix: Optional[LLMFixFunction] = None
        self._cancelled: set[str] = set()

    def set_llm_fix_function(self, fn: Optional[LLMFixFunction]) -> None:
        self._llm_fix = fn
        logger.info("LLM fix function registered" if fn else "LLM fix function removed")

    def start_session(self, project_id: str, max_iterations: Optional[int] = None) -> AutoFixSession:
        session = AutoFixSession(
            id=_new_id(),
            project_id=project_id,
            max_iterations=max_iterations or self.default_max_iterations,
            status=AutoFixStatus.ANALYZING,
            started_at=self._clock(),
        )
        self._sessions[session.id] = session
        logger.info(f"Auto-fix session {session.id} started for {project_id} "
                    f"(max {session.max_iterations} iterations)")
        return session

    def _validate(self, session: AutoFixSession, validate: ValidateFunction) -> ValidationResult:
        try:
            return validate()
        except Exception as e:
            session.status = AutoFixStatus.FAILED
            session.completed_at = self._clock()
            logger.error(f"Validation failed in session {session.id}: {e}")
            raise AutoFixError(f"Validation failed: {e}") from e

    def run_fix_loop(
        self,
        session_id: str,
        validate: ValidateFunction,
        apply_fix: ApplyFixFunction,
        on_progress: Optional[ProgressCallback] = None,
    ) -> AutoFixSession:
        """Drive a session to a terminal status.

        Args:
            session_id: Session from start_session.
            validate: Returns the current validation result.
            apply_fix: Applies a fix for an error. Returns the CodePatch it
                wrote, True when the error needs no further change, or a
                falsy value when nothing could be applied.
            on_progress: Called after every iteration with the attempt
                recorded in it, or None when no fix was applied.

        Returns:
            The session, with status completed, max_iterations_reached, or
            failed if it was cancelled.

        Raises:
            AutoFixError: If the session is unknown or validate raises.
        """
        session = self._sessions.get(session_id)
        if session is None:
            raise AutoFixError(f"Session {session_id} not found")

        logger.info(f"Starting fix loop {session_id}")
        result = self._validate(session, validate)
        session.original_errors = list(result.errors)
        session.unresolved_errors = list(result.errors)

        while (
            session.current_iteration < session.max_iterations
            and session.unresolved_errors
            and session.id not in self._cancelled
        ):
            session.current_iteration += 1
            session.status = AutoFixStatus.FIXING
            logger.info(f"Fix iteration {session.current_iteration}/{session.max_iterations}, "
                        f"{len(session.unresolved_errors)} errors remaining")

            error = prioritize_error(session.unresolved_errors)
            context = self.build_fix_context(session.project_id, error)

            try:
                fix = self.generate_fix(error, context)
            except Exception as e:
                logger.error(f"Failed to generate fix for {error.location}: {e}")
                self._notify(on_progress, session, None)
                continue

            try:
                applied = apply_fix(fix, error)
            except Exception as e:
                logger.warning(f"Applying fix raised for {error.location}: {e}")
                applied = False

            if not applied:
                logger.warning(f"Fix could not be applied: {error.message[:80]}")
                self._notify(on_progress, session, None)
                continue

            session.status = AutoFixStatus.VALIDATING
            result = self._validate(session, validate)

            still_present = any(e.key == error.key for e in result.errors)
            attempt = FixAttempt(
                id=_new_id(),
                iteration=session.current_iteration,
                error=error,
                fix=fix,
                success=result.success or not still_present,
                validation_result=result,
                patch=applied if isinstance(applied, CodePatch) else None,
                timestamp=self._clock(),
            )
            session.fix_attempts.append(attempt)

            if attempt.success:
                session.resolved_errors.append(error)
                session.unresolved_errors = [e for e in session.unresolved_errors if e.key != error.key]
                original_keys = {e.key for e in session.original_errors}
                unresolved_keys = {e.key for e in session.unresolved_errors}
                for new_error in result.errors:
                    if new_error.key not in original_keys and new_error.key not in unresolved_keys:
                        session.unresolved_errors.append(new_error)
                        unresolved_keys.add(new_error.key)
                logger.info(f"Fixed {error.type.value} error: {error.message[:50]}")
            else:
                logger.warning(f"Fix attempt failed: {error.message[:50]}")

            self._record(session, error, fix, attempt.success)
            self._notify(on_progress, session, attempt)

        session.completed_at = self._clock()
        if session.id in self._cancelled:
            session.status = AutoFixStatus.FAILED
        elif not session.unresolved_errors:
            session.status = AutoFixStatus.COMPLETED
        else:
            session.status = AutoFixStatus.MAX_ITERATIONS_REACHED

        logger.info(
            f"Auto-fix session {session_id} finished: {session.status.value}, "
            f"{session.current_iteration} iterations, {len(session.resolved_errors)} resolved, "
            f"{len(session.unresolved_errors)} unresolved"
        )
        return session

    @staticmethod
    def _notify(callback: Optional[ProgressCallback], session: AutoFixSession,
                attempt: Optional[FixAttempt]) -> None:
        if callback is None:
            return
        try:
            callback(session, attempt)
        except Exception as e:
            logger.warning(f"Progress callback failed: {e}")

    def _record(self, session: AutoFixSession, error: ParsedError, fix: str, success: bool) -> None:
        files = [error.file] if error.file else []
        self.memory.record_change(
            session.project_id,
            type="bugfix",
            files=files,
            description=f"Auto-fix attempt {session.current_iteration}: {error.type.value} error",
            metrics=ChangeMetrics(files_changed=len(files)),
        )
        self.memory.record_error(
            session.project_id,
            type=error.type,
            message=error.message,
            fix_successful=success,
            file=error.file,
            line=error.line,
            fix=fix,
        )

    def prioritize_error(self, errors: list[ParsedError]) -> ParsedError:
        return prioritize_error(errors)

    def build_fix_context(self, project_id: str, error: ParsedError) -> FixContext:
        context = FixContext(project_id=project_id)
        if error.file:
            context.related_files = self.memory.get_related_files(project_id, error.file)
        context.recent_changes = [c.description for c in self.memory.get_changes(project_id)[-5:]]
        context.successful_fixes = self.memory.get_successful_fixes(project_id, error.type)
        context.similar_errors = [e.message for e in self.memory.get_similar_errors(project_id, error.message)[-5:]]
        return context

    def generate_fix(self, error: ParsedError, context: FixContext) -> str:
        """Strategy text, else the LLM's answer, else the error's own suggestion."""
        for strategy in self.strategies:
            if strategy.matches(error):
                return strategy.fix(error, context)

        if self._llm_fix is not None:
            return self._llm_fix(build_fix_prompt(error, context), context)

        return error.suggestion or f"Fix {error.type.value} error: {error.message}"

    def get_session(self, session_id: str) -> Optional[AutoFixSession]:
        return self._sessions.get(session_id)

    def get_session_status(self, session_id: str) -> Optional[dict[str, Any]]:
        session = self._sessions.get(session_id)
        if session is None:
            return None
        return {
            "status": session.status,
            "progress": session.progress,
            "resolved": len(session.resolved_errors),
            "unresolved": len(session.unresolved_errors),
        }

    def list_sessions(self, project_id: Optional[str] = None) -> list[AutoFixSession]:
        return [s for s in self._sessions.values() if project_id is None or s.project_id == project_id]

    def cancel_session(self, session_id: str) -> bool:
        """Mark a session failed; the loop stops before its next iteration."""
        session = self._sessions.get(session_id)
        if session is None:
            return False
        self._cancelled.add(session_id)
        session.status = AutoFixStatus.FAILED
        session.completed_at = self._clock()
        logger.info(f"Auto-fix session {session_id} cancelled")
        return True

    def clear_session(self, session_id: str) -> None:
        self._sessions.pop(session_id, None)
        self._cancelled.discard(session_id)
