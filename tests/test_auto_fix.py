"""Tests for the auto-fix loop."""

from __future__ import annotations

import re
from unittest.mock import MagicMock

import pytest

from genforge.auto_fix import (
    AutoFixError,
    AutoFixLoopService,
    FixContext,
    FixStrategy,
    build_fix_prompt,
    prioritize_error,
)
from genforge.models import AutoFixStatus, CodePatch, ErrorType, ParsedError, ValidationResult
from genforge.project_memory import ProjectMemoryService

SYNTAX = ParsedError(type=ErrorType.SYNTAX, message="Unexpected token '}'", file="src/App.tsx", line=4)
IMPORT = ParsedError(type=ErrorType.IMPORT, message="Cannot find module './x'", file="src/App.tsx", line=1)
TYPE = ParsedError(
    type=ErrorType.TYPE, message="Type 'string' is not assignable to type 'number'", file="src/a.ts", line=2
)
UNKNOWN = ParsedError(type=ErrorType.UNKNOWN, message="Something odd", file="src/a.ts")


class ScriptedValidator:
    """Returns the given error lists in order, repeating the last one."""

    def __init__(self, *rounds: list[ParsedError]):
        self.rounds = list(rounds)
        self.calls = 0

    def __call__(self) -> ValidationResult:
        index = min(self.calls, len(self.rounds) - 1)
        self.calls += 1
        return ValidationResult.from_errors(self.rounds[index])


@pytest.fixture
def memory(clock) -> ProjectMemoryService:
    return ProjectMemoryService(clock=clock)


@pytest.fixture
def service(memory: ProjectMemoryService, clock) -> AutoFixLoopService:
    return AutoFixLoopService(memory=memory, clock=clock)


class TestPrioritizeError:
    def test_syntax_before_everything(self) -> None:
        assert prioritize_error([TYPE, IMPORT, SYNTAX]) is SYNTAX

    def test_first_wins_among_equals(self) -> None:
        other = ParsedError(type=ErrorType.TYPE, message="other")
        assert prioritize_error([TYPE, other]) is TYPE

    def test_empty_raises(self) -> None:
        with pytest.raises(ValueError):
            prioritize_error([])


class TestGenerateFix:
    """Tests for fix text generation."""

    def test_strategy_match(self, service: AutoFixLoopService) -> None:
        fix = service.generate_fix(IMPORT, FixContext(project_id="p1"))
        assert fix == "Add missing import for: Cannot find module './x'"

    def test_strategies_sorted_by_priority(self, memory: ProjectMemoryService) -> None:
        strategies = [
            FixStrategy("late", re.compile("odd"), 5, "late: {message}"),
            FixStrategy("early", re.compile("Something"), 1, "early: {message}"),
        ]
        service = AutoFixLoopService(memory=memory, strategies=strategies)

        assert service.generate_fix(UNKNOWN, FixContext(project_id="p1")) == "early: Something odd"

    def test_llm_used_when_no_strategy(self, service: AutoFixLoopService) -> None:
        llm = MagicMock(return_value="llm fix")
        service.set_llm_fix_function(llm)

        fix = service.generate_fix(UNKNOWN, FixContext(project_id="p1"))

        assert fix == "llm fix"
        prompt = llm.call_args[0][0]
        assert prompt.startswith("Fix the following unknown error:")

    def test_suggestion_fallback(self, service: AutoFixLoopService) -> None:
        error = ParsedError(type=ErrorType.UNKNOWN, message="odd", suggestion="Do the thing")
        assert service.generate_fix(error, FixContext(project_id="p1")) == "Do the thing"

    def test_generic_fallback(self, service: AutoFixLoopService) -> None:
        assert service.generate_fix(UNKNOWN, FixContext(project_id="p1")) == "Fix unknown error: Something odd"


class TestBuildFixPrompt:
    def test_includes_location_and_history(self) -> None:
        context = FixContext(project_id="p1", related_files=["src/b.ts"], successful_fixes=["cast it"])

        prompt = build_fix_prompt(TYPE, context)

        assert "File: src/a.ts\n" in prompt
        assert "Line: 2\n" in prompt
        assert "Related files: src/b.ts" in prompt
        assert "- cast it\n" in prompt
        assert prompt.endswith("Provide the corrected code that fixes this error.")


class TestRunFixLoop:
    """Tests for AutoFixLoopService.run_fix_loop."""

    def test_already_valid(self, service: AutoFixLoopService) -> None:
        session = service.start_session("p1")
        apply_fix = MagicMock(return_value=True)

        result = service.run_fix_loop(session.id, ScriptedValidator([]), apply_fix)

        assert result.status == AutoFixStatus.COMPLETED
        assert result.current_iteration == 0
        apply_fix.assert_not_called()

    def test_fixes_in_priority_order(self, service: AutoFixLoopService) -> None:
        """Syntax is fixed before import, and both end up resolved."""
        session = service.start_session("p1")
        validator = ScriptedValidator([IMPORT, SYNTAX], [IMPORT], [])
        apply_fix = MagicMock(return_value=True)

        result = service.run_fix_loop(session.id, validator, apply_fix)

        assert result.status == AutoFixStatus.COMPLETED
        assert [call.args[1] for call in apply_fix.call_args_list] == [SYNTAX, IMPORT]
        assert result.resolved_errors == [SYNTAX, IMPORT]
        assert result.unresolved_errors == []
        assert result.current_iteration == 2
        assert [a.success for a in result.fix_attempts] == [True, True]

    def test_stops_after_exactly_max_iterations(self, service: AutoFixLoopService) -> None:
        session = service.start_session("p1", max_iterations=3)
        validator = ScriptedValidator([TYPE])
        apply_fix = MagicMock(return_value=True)

        result = service.run_fix_loop(session.id, validator, apply_fix)

        assert result.status == AutoFixStatus.MAX_ITERATIONS_REACHED
        assert result.current_iteration == 3
        assert apply_fix.call_count == 3
        assert result.unresolved_errors == [TYPE]
        assert all(not a.success for a in result.fix_attempts)
        assert result.progress == 100.0

    def test_unapplied_fix_still_spends_iteration(self, service: AutoFixLoopService) -> None:
        session = service.start_session("p1", max_iterations=2)
        progress = MagicMock()

        result = service.run_fix_loop(
            session.id, ScriptedValidator([TYPE]), MagicMock(return_value=False), progress
        )

        assert result.status == AutoFixStatus.MAX_ITERATIONS_REACHED
        assert result.fix_attempts == []
        assert progress.call_count == 2
        assert progress.call_args[0][1] is None

    def test_apply_exception_treated_as_not_applied(self, service: AutoFixLoopService) -> None:
        session = service.start_session("p1", max_iterations=1)

        result = service.run_fix_loop(
            session.id, ScriptedValidator([TYPE]), MagicMock(side_effect=OSError("disk full"))
        )

        assert result.status == AutoFixStatus.MAX_ITERATIONS_REACHED

    def test_fix_generation_failure_spends_iteration(self, service: AutoFixLoopService) -> None:
        """A raising fix generator costs an iteration and applies nothing."""
        session = service.start_session("p1", max_iterations=3)
        service.set_llm_fix_function(MagicMock(side_effect=RuntimeError("model down")))
        apply_fix = MagicMock(return_value=True)
        progress = MagicMock()

        result = service.run_fix_loop(session.id, ScriptedValidator([UNKNOWN]), apply_fix, progress)

        assert result.status == AutoFixStatus.MAX_ITERATIONS_REACHED
        assert result.current_iteration == 3
        assert result.fix_attempts == []
        assert result.unresolved_errors == [UNKNOWN]
        apply_fix.assert_not_called()
        assert progress.call_count == 3
        assert all(call.args[1] is None for call in progress.call_args_list)

    def test_applied_patch_recorded_on_attempt(self, service: AutoFixLoopService) -> None:
        session = service.start_session("p1")
        patch = CodePatch(file="src/App.tsx", new_content="}", line_start=4, line_end=4)

        result = service.run_fix_loop(session.id, ScriptedValidator([SYNTAX], []), MagicMock(return_value=patch))

        assert result.fix_attempts[0].patch is patch
        assert result.to_dict()["fix_attempts"][0]["patch"]["mode"] == "lines"

    def test_bare_true_records_no_patch(self, service: AutoFixLoopService) -> None:
        session = service.start_session("p1")

        result = service.run_fix_loop(session.id, ScriptedValidator([SYNTAX], []), MagicMock(return_value=True))

        assert result.fix_attempts[0].patch is None

    def test_new_errors_join_unresolved(self, service: AutoFixLoopService) -> None:
        """A fix that introduces a fresh error adds it to the queue once."""
        session = service.start_session("p1", max_iterations=5)
        validator = ScriptedValidator([SYNTAX], [TYPE, TYPE], [])

        result = service.run_fix_loop(session.id, validator, MagicMock(return_value=True))

        assert result.status == AutoFixStatus.COMPLETED
        assert result.resolved_errors == [SYNTAX, TYPE]
        assert result.original_errors == [SYNTAX]

    def test_records_changes_and_errors(
        self, service: AutoFixLoopService, memory: ProjectMemoryService
    ) -> None:
        session = service.start_session("p1")

        service.run_fix_loop(session.id, ScriptedValidator([SYNTAX], []), MagicMock(return_value=True))

        changes = memory.get_changes("p1")
        assert [c.type for c in changes] == ["bugfix"]
        assert changes[0].files == ["src/App.tsx"]
        history = memory.get_error_history("p1")
        assert history[0].fix_successful is True
        assert history[0].fix == "Fix syntax error: Unexpected token '}'"

    def test_successful_fix_feeds_next_context(
        self, service: AutoFixLoopService, memory: ProjectMemoryService
    ) -> None:
        memory.record_error("p1", ErrorType.TYPE, "old", fix_successful=True, fix="cast to number")

        context = service.build_fix_context("p1", TYPE)

        assert context.successful_fixes == ["cast to number"]

    def test_validate_exception_fails_session(self, service: AutoFixLoopService) -> None:
        session = service.start_session("p1")
        validate = MagicMock(side_effect=RuntimeError("tsc crashed"))

        with pytest.raises(AutoFixError):
            service.run_fix_loop(session.id, validate, MagicMock())

        assert session.status == AutoFixStatus.FAILED
        assert session.completed_at is not None

    def test_unknown_session(self, service: AutoFixLoopService) -> None:
        with pytest.raises(AutoFixError):
            service.run_fix_loop("missing", ScriptedValidator([]), MagicMock())

    def test_cancel_stops_loop(self, service: AutoFixLoopService) -> None:
        session = service.start_session("p1", max_iterations=5)

        def cancel_on_first(s, attempt) -> None:
            service.cancel_session(s.id)

        result = service.run_fix_loop(
            session.id, ScriptedValidator([TYPE]), MagicMock(return_value=True), cancel_on_first
        )

        assert result.status == AutoFixStatus.FAILED
        assert result.current_iteration == 1

    def test_progress_callback_errors_ignored(self, service: AutoFixLoopService) -> None:
        session = service.start_session("p1")

        result = service.run_fix_loop(
            session.id,
            ScriptedValidator([SYNTAX], []),
            MagicMock(return_value=True),
            MagicMock(side_effect=RuntimeError("ui gone")),
        )

        assert result.status == AutoFixStatus.COMPLETED

    def test_total_time(self, service: AutoFixLoopService, clock) -> None:
        session = service.start_session("p1")
        clock.advance(2.5)

        result = service.run_fix_loop(session.id, ScriptedValidator([]), MagicMock())

        assert result.total_time_ms == 2500


class TestSessions:
    def test_status_and_listing(self, service: AutoFixLoopService) -> None:
        first = service.start_session("p1", max_iterations=4)
        service.start_session("p2")

        status = service.get_session_status(first.id)

        assert status == {"status": AutoFixStatus.ANALYZING, "progress": 0.0, "resolved": 0, "unresolved": 0}
        assert [s.project_id for s in service.list_sessions("p1")] == ["p1"]
        assert len(service.list_sessions()) == 2

    def test_default_max_iterations(self, memory: ProjectMemoryService) -> None:
        service = AutoFixLoopService(memory=memory, default_max_iterations=7)
        assert service.start_session("p1").max_iterations == 7

    def test_cancel_unknown_and_clear(self, service: AutoFixLoopService) -> None:
        session = service.start_session("p1")

        assert service.cancel_session("missing") is False
        service.clear_session(session.id)

        assert service.get_session(session.id) is None
        assert service.get_session_status(session.id) is None

    def test_session_to_dict(self, service: AutoFixLoopService) -> None:
        session = service.start_session("p1")
        service.run_fix_loop(session.id, ScriptedValidator([SYNTAX], []), MagicMock(return_value=True))

        data = session.to_dict()

        assert data["status"] == "completed"
        assert data["fix_attempts"][0]["error"]["type"] == "syntax"
        assert data["resolved_errors"][0]["message"] == "Unexpected token '}'"
