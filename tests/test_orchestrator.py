"""Tests for the generation phase controller."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Optional
from unittest.mock import MagicMock

import pytest

from genforge.completion import (
    DEFAULT_MOCK_CODE,
    CompletionClient,
    CompletionError,
    MockCompletionClient,
)
from genforge.config import Config
from genforge.dependency_graph import SourceFile
from genforge.events import (
    CodeChunkEvent,
    CompleteEvent,
    ErrorEvent,
    FixAttemptEvent,
    PhaseChangeEvent,
    ReviewEvent,
    SearchEvent,
    SearchResultEvent,
    TasksUpdatedEvent,
    ThinkingEvent,
    ValidationEvent,
)
from genforge.models import AutoFixStatus, ErrorType, ParsedError, ValidationResult
from genforge.orchestrator import (
    CANCELLED_MESSAGE,
    Orchestrator,
    OrchestratorPlan,
    QualityProfile,
    ReviewSummary,
    SearchHit,
    TaskStatus,
    TaskType,
    format_search_results,
    join_files,
    parse_files_from_code,
)
from genforge.prompts import FIX_SYSTEM_PROMPT, PLANNING_SYSTEM_PROMPT, REVIEW_SYSTEM_PROMPT
from genforge.run_logger import RunLogger

BUILDER_KEY = "You write React code"
PLANNER_KEY = "product-minded software architect"
FIXER_KEY = "You are a code fixer"


def make_orchestrator(
    client: Optional[CompletionClient] = None,
    settings: Optional[Config] = None,
    **kwargs,
) -> tuple[Orchestrator, list]:
    events: list = []
    orchestrator = Orchestrator(
        client or MockCompletionClient(),
        on_event=events.append,
        settings=settings or Config(),
        **kwargs,
    )
    return orchestrator, events


def of_type(events: list, event_type: type) -> list:
    return [e for e in events if isinstance(e, event_type)]


def phases(events: list) -> list[str]:
    return [e.phase for e in of_type(events, PhaseChangeEvent)]


def plan_response(**overrides) -> str:
    data = {
        "summary": "Todo app with filters",
        "architecture": "App with a TodoList child",
        "qualityProfile": "production",
        "tasks": [
            {"id": "1", "title": "Build UI", "type": "build"},
            {"id": "2", "title": "Validate", "type": "validate"},
            {"id": "3", "title": "Review", "type": "review"},
        ],
    }
    data.update(overrides)
    return json.dumps(data)


class FakeSearchClient:
    def __init__(self, results: dict):
        self.results = results
        self.queries: list[str] = []

    def search(self, query: str) -> list[SearchHit]:
        self.queries.append(query)
        result = self.results.get(query, [])
        if isinstance(result, Exception):
            raise result
        return result


class FailingReviewClient(MockCompletionClient):
    def complete(self, prompt, system_prompt=None, *args, **kwargs):
        if system_prompt == REVIEW_SYSTEM_PROMPT:
            raise CompletionError("review endpoint down")
        return super().complete(prompt, system_prompt, *args, **kwargs)


class TestHappyPath:
    """A run against the default mock responses."""

    def test_phase_sequence(self) -> None:
        orchestrator, events = make_orchestrator()

        result = orchestrator.run("Build a counter")

        assert result.success is True
        assert phases(events) == ["planning", "building", "validating", "reviewing", "complete"]
        assert isinstance(events[-1], CompleteEvent)

    def test_code_streamed_in_chunks(self) -> None:
        orchestrator, events = make_orchestrator()

        result = orchestrator.run("Build a counter")

        chunks = of_type(events, CodeChunkEvent)
        assert len(chunks) > 1
        assert "".join(c.content for c in chunks) == DEFAULT_MOCK_CODE
        assert result.code == DEFAULT_MOCK_CODE.strip()
        assert result.files == {"App.tsx": DEFAULT_MOCK_CODE.strip()}

    def test_tasks_completed(self) -> None:
        orchestrator, events = make_orchestrator()

        orchestrator.run("Build a counter")

        plan = orchestrator.state.plan
        assert [t.status for t in plan.tasks] == [TaskStatus.COMPLETED, TaskStatus.COMPLETED]
        last_update = of_type(events, TasksUpdatedEvent)[-1]
        assert (last_update.completed_count, last_update.total_count) == (2, 2)

    def test_review_summary(self) -> None:
        orchestrator, events = make_orchestrator()

        result = orchestrator.run("Build a counter")

        assert result.review_summary.summary.startswith("Mock review")
        review_event = of_type(events, ReviewEvent)[0]
        assert review_event.issue_count == 1
        assert review_event.severity_counts == {"high": 0, "medium": 0, "low": 1}
        assert events[-1].review_summary is result.review_summary

    def test_validation_passed_once(self) -> None:
        orchestrator, events = make_orchestrator()

        orchestrator.run("Build a counter")

        assert [e.valid for e in of_type(events, ValidationEvent)] == [True]
        assert not of_type(events, FixAttemptEvent)

    def test_review_disabled(self) -> None:
        settings = Config()
        settings.orchestrator.enable_review = False
        orchestrator, events = make_orchestrator(settings=settings)

        result = orchestrator.run("Build a counter")

        assert "reviewing" not in phases(events)
        assert result.review_summary is None

    def test_failing_event_handler_does_not_stop_run(self) -> None:
        orchestrator = Orchestrator(MockCompletionClient(), on_event=MagicMock(side_effect=RuntimeError("ui gone")))

        assert orchestrator.run("Build a counter").success is True

    def test_models_and_temperatures(self) -> None:
        client = MockCompletionClient()
        settings = Config()
        settings.llm.model = "coder"
        settings.llm.planner_model = "thinker"
        orchestrator, _ = make_orchestrator(client, settings)

        orchestrator.run("Build a counter")

        models = {c["system_prompt"]: c["model"] for c in client.calls}
        assert models[PLANNING_SYSTEM_PROMPT] == "thinker"
        assert models[REVIEW_SYSTEM_PROMPT] == "thinker"
        builder_calls = [c for c in client.calls if BUILDER_KEY in (c["system_prompt"] or "")]
        assert builder_calls[0]["model"] == "coder"
        assert builder_calls[0]["prompt"] == "Build a counter"


class TestPlanning:
    """Tests for the planning phase."""

    def test_plan_from_response(self) -> None:
        client = MockCompletionClient({PLANNER_KEY: plan_response()})
        orchestrator, _ = make_orchestrator(client)

        result = orchestrator.run("Build a todo app")

        plan = orchestrator.state.plan
        assert result.summary == "Todo app with filters"
        assert plan.quality_profile == QualityProfile.PRODUCTION
        assert [t.type for t in plan.tasks] == [TaskType.BUILD, TaskType.VALIDATE, TaskType.REVIEW]
        assert all(t.status == TaskStatus.COMPLETED for t in plan.tasks)

    def test_simple_plan_after_retries(self) -> None:
        client = MockCompletionClient({PLANNER_KEY: "I'd build a nice todo app!"})
        orchestrator, events = make_orchestrator(client)

        result = orchestrator.run("make a todo app")

        planning_calls = [c for c in client.calls if c["system_prompt"] == PLANNING_SYSTEM_PROMPT]
        assert len(planning_calls) == 3
        assert "MUST be valid JSON" not in planning_calls[0]["prompt"]
        assert "MUST be valid JSON" in planning_calls[1]["prompt"]
        assert result.success is True
        assert result.summary == "Building: make a todo app"
        assert [t.title for t in orchestrator.state.plan.tasks] == ["Generate App", "Validate"]
        refining = [e for e in of_type(events, ThinkingEvent) if "Refining approach" in e.content]
        assert len(refining) == 2

    def test_planning_retries_configurable(self) -> None:
        client = MockCompletionClient({PLANNER_KEY: "nope"})
        settings = Config()
        settings.orchestrator.planning_retries = 0
        orchestrator, _ = make_orchestrator(client, settings)

        orchestrator.run("make a todo app")

        assert len([c for c in client.calls if c["system_prompt"] == PLANNING_SYSTEM_PROMPT]) == 1

    def test_planner_failure_reported(self) -> None:
        client = MagicMock(spec=CompletionClient)
        client.complete.side_effect = CompletionError("HTTP 500 for key sk-abcdefghijklmnopqrstuvwxyz")
        orchestrator, events = make_orchestrator(client)

        result = orchestrator.run("Build a counter")

        assert result.success is False
        error = of_type(events, ErrorEvent)[0]
        assert "sk-abcdefghijklmnopqrstuvwxyz" not in error.message
        assert "HTTP 500" in error.message
        assert orchestrator.state.phase.value == "failed"
        assert not of_type(events, CompleteEvent)


class TestDesignAndSearch:
    """Tests for the optional design and search phases."""

    def test_design_notes_reach_builder(self) -> None:
        client = MockCompletionClient({PLANNER_KEY: plan_response(designNotes="Empty states need a friendly hint")})
        orchestrator, events = make_orchestrator(client)

        orchestrator.run("Build a todo app")

        assert phases(events)[:3] == ["planning", "designing", "building"]
        builder_call = next(c for c in client.calls if BUILDER_KEY in (c["system_prompt"] or ""))
        assert "DESIGN NOTES:\nEmpty states need a friendly hint" in builder_call["system_prompt"]

    def test_design_disabled(self) -> None:
        client = MockCompletionClient({PLANNER_KEY: plan_response(designNotes="Use cards")})
        settings = Config()
        settings.orchestrator.enable_design = False
        orchestrator, events = make_orchestrator(client, settings)

        orchestrator.run("Build a todo app")

        assert "designing" not in phases(events)
        builder_call = next(c for c in client.calls if BUILDER_KEY in (c["system_prompt"] or ""))
        assert "DESIGN NOTES" not in builder_call["system_prompt"]

    def test_search_results_reach_builder(self) -> None:
        client = MockCompletionClient({
            PLANNER_KEY: plan_response(searchNeeded=True, searchQueries=["q1", "q2", "q3", "q4"]),
        })
        search = FakeSearchClient({
            "q1": [SearchHit(title="React docs", url="https://react.dev", snippet="Hooks")],
            "q2": RuntimeError("rate limited"),
        })
        orchestrator, events = make_orchestrator(client, search_client=search)

        orchestrator.run("Build a todo app")

        assert "searching" in phases(events)
        assert search.queries == ["q1", "q2", "q3"]
        assert [e.query for e in of_type(events, SearchEvent)] == ["q1", "q2", "q3"]
        assert [(e.query, e.result_count) for e in of_type(events, SearchResultEvent)] == [("q1", 1)]
        builder_call = next(c for c in client.calls if BUILDER_KEY in (c["system_prompt"] or ""))
        assert "WEB SEARCH RESULTS:\n- React docs (https://react.dev): Hooks" in builder_call["system_prompt"]

    def test_search_skipped_without_client(self) -> None:
        client = MockCompletionClient({PLANNER_KEY: plan_response(searchNeeded=True, searchQueries=["q1"])})
        orchestrator, events = make_orchestrator(client)

        orchestrator.run("Build a todo app")

        assert "searching" not in phases(events)

    def test_search_queries_ignored_when_not_needed(self) -> None:
        client = MockCompletionClient({PLANNER_KEY: plan_response(searchNeeded=False, searchQueries=["q1"])})
        search = FakeSearchClient({})
        orchestrator, _ = make_orchestrator(client, search_client=search)

        orchestrator.run("Build a todo app")

        assert search.queries == []


class TestFixing:
    """Tests for the auto-fix pass and the diagnose/fix loop."""

    def test_auto_fix_repairs_broken_build(self) -> None:
        client = MockCompletionClient({BUILDER_KEY: "function App() {"})
        orchestrator, events = make_orchestrator(client)

        result = orchestrator.run("Build a counter")

        assert "fixing" in phases(events)
        assert result.success is True
        assert result.code == DEFAULT_MOCK_CODE.strip()
        session = result.fix_session
        assert session is not None
        assert [a.success for a in session.fix_attempts] == [True, True, True]
        assert [a.patch is not None for a in session.fix_attempts] == [True, False, False]
        assert len(session.resolved_errors) == 3
        assert session.status == AutoFixStatus.COMPLETED
        assert not of_type(events, FixAttemptEvent)
        fix_calls = [c for c in client.calls if c["system_prompt"] == FIX_SYSTEM_PROMPT]
        assert len(fix_calls) == 1

    def test_one_patch_clearing_two_errors_completes(self) -> None:
        """Errors left queued after the code already validates resolve without another patch."""

        def validator(code: str, file: Optional[str] = None) -> ValidationResult:
            if "BAD" not in code:
                return ValidationResult.from_errors([])
            path = file or "App.tsx"
            return ValidationResult.from_errors([
                ParsedError(type=ErrorType.SYNTAX, message="';' expected.", file=path, line=1),
                ParsedError(
                    type=ErrorType.TYPE,
                    message="Type 'number' is not assignable to type 'string'.",
                    file=path,
                    line=1,
                ),
            ])

        client = MockCompletionClient({BUILDER_KEY: "const BAD: string = 1\n" + DEFAULT_MOCK_CODE})
        orchestrator, events = make_orchestrator(client, validator=validator)

        result = orchestrator.run("Build a counter")

        session = result.fix_session
        assert session is not None
        assert session.status == AutoFixStatus.COMPLETED
        assert len(session.resolved_errors) == 2
        assert session.unresolved_errors == []
        assert session.current_iteration == 2
        assert [a.success for a in session.fix_attempts] == [True, True]
        assert session.fix_attempts[0].patch.mode == "full"
        assert session.fix_attempts[1].patch is None
        assert "BAD" not in result.code
        assert not of_type(events, FixAttemptEvent)

    def test_auto_fix_history_kept_under_default_project(self) -> None:
        """Without a project id, fix attempts still feed the default key while files are not recorded."""
        client = MockCompletionClient({BUILDER_KEY: "function App() {"})
        orchestrator, _ = make_orchestrator(client)

        orchestrator.run("Build a counter")

        assert [c.type for c in orchestrator.memory.get_changes("default")] == ["bugfix"] * 3
        assert [e.fix_successful for e in orchestrator.memory.get_error_history("default")] == [True] * 3
        assert orchestrator.memory.get_project_summary("default")["file_count"] == 0

    def test_fix_loop_when_auto_fix_disabled(self) -> None:
        client = MockCompletionClient({BUILDER_KEY: "function App() {"})
        settings = Config()
        settings.orchestrator.enable_auto_fix = False
        orchestrator, events = make_orchestrator(client, settings)

        result = orchestrator.run("Build a counter")

        assert [(e.attempt, e.max_attempts) for e in of_type(events, FixAttemptEvent)] == [(1, 3)]
        assert [e.valid for e in of_type(events, ValidationEvent)] == [False, True]
        assert result.code == DEFAULT_MOCK_CODE.strip()
        assert result.fix_session is None
        diagnosis = [e for e in of_type(events, ThinkingEvent) if e.content.startswith("Diagnosis: Mock diagnosis")]
        assert len(diagnosis) == 1

    def test_fix_loop_gives_up_after_max_attempts(self) -> None:
        client = MockCompletionClient({BUILDER_KEY: "function App() {", FIXER_KEY: "function Broken() {"})
        settings = Config()
        settings.orchestrator.enable_auto_fix = False
        orchestrator, events = make_orchestrator(client, settings)

        result = orchestrator.run("Build a counter")

        assert [e.attempt for e in of_type(events, FixAttemptEvent)] == [1, 2, 3]
        assert result.success is True
        assert result.code == "function Broken() {"
        assert orchestrator.state.fix_attempts == 3

    def test_errors_recorded_for_project(self) -> None:
        client = MockCompletionClient({BUILDER_KEY: "function App() {"})
        settings = Config()
        settings.orchestrator.enable_auto_fix = False
        orchestrator, _ = make_orchestrator(client, settings, project_id="p1")

        orchestrator.run("Build a counter")

        history = orchestrator.memory.get_error_history("p1")
        assert history
        assert all(not entry.fix_successful for entry in history)


class TestAbort:
    def test_abort_during_build(self) -> None:
        orchestrator = Orchestrator(MockCompletionClient(chunk_size=10))
        events = []

        def handler(event) -> None:
            events.append(event)
            if isinstance(event, CodeChunkEvent):
                orchestrator.abort()

        orchestrator.on_event = handler
        result = orchestrator.run("Build a counter")

        assert result.success is False
        assert result.code == ""
        assert len(of_type(events, CodeChunkEvent)) == 1
        assert of_type(events, ErrorEvent)[0].message == CANCELLED_MESSAGE
        assert "validating" not in phases(events)
        assert orchestrator.aborted is True

    def test_abort_flag_reset_on_next_run(self) -> None:
        orchestrator, _ = make_orchestrator()
        orchestrator.abort()

        assert orchestrator.run("Build a counter").success is True


class TestReview:
    def test_unparseable_review(self) -> None:
        client = MockCompletionClient({"principal engineer": "Looks great to me"})
        orchestrator, _ = make_orchestrator(client)

        result = orchestrator.run("Build a counter")

        assert result.success is True
        assert result.review_summary.summary == "Review completed (parsing failed)"
        assert result.review_summary.issues == []

    def test_review_error_does_not_fail_run(self) -> None:
        orchestrator, events = make_orchestrator(FailingReviewClient())

        result = orchestrator.run("Build a counter")

        assert result.success is True
        assert result.review_summary.summary == "Review skipped due to error"
        assert of_type(events, ReviewEvent)[0].issue_count == 0


class TestRefinementAndMemory:
    """Tests for refinement context and memory recording."""

    def test_refinement_context(self, sample_files: list[SourceFile]) -> None:
        client = MockCompletionClient()
        orchestrator, events = make_orchestrator(client, project_id="p1")

        result = orchestrator.run("Add a footer", existing_files=sample_files, target_file="src/App.tsx")

        builder_call = next(c for c in client.calls if BUILDER_KEY in (c["system_prompt"] or ""))
        system_prompt = builder_call["system_prompt"]
        assert "TARGET FILE: src/App.tsx" in system_prompt
        assert "EXISTING CODE:\nimport { Header }" in system_prompt
        assert "src/components/Header.tsx" in system_prompt
        assert any(e.content.startswith("Using 3 related files") for e in of_type(events, ThinkingEvent))
        assert list(result.files) == ["src/App.tsx"]

        active = {d.file: d.access_types for d in orchestrator.memory.get_active_dependencies("p1")}
        assert active["src/App.tsx"] == {"write"}
        assert active["src/utils.ts"] == {"read"}

    def test_existing_code_goes_to_planner(self) -> None:
        client = MockCompletionClient()
        orchestrator, _ = make_orchestrator(client)

        orchestrator.run("Add dark mode", existing_code="const legacy = true;")

        planning_call = next(c for c in client.calls if c["system_prompt"] == PLANNING_SYSTEM_PROMPT)
        assert "EXISTING CODE TO MODIFY:\nconst legacy = true;" in planning_call["prompt"]

    def test_memory_recorded(self) -> None:
        orchestrator, _ = make_orchestrator(project_id="p1")

        orchestrator.run("Build a counter")

        memory = orchestrator.memory
        metadata = memory.get_file_metadata("p1", "App.tsx")
        assert metadata.purpose == "Generated code"
        assert metadata.exports == ["App"]
        assert metadata.lines_of_code > 0
        change = memory.get_changes("p1")[-1]
        assert (change.type, change.files, change.agent_type) == ("creation", ["App.tsx"], "orchestrator")
        assert change.prompt == "Build a counter"
        decisions = memory.get_context_for_generation("p1")["recent_decisions"]
        assert decisions[-1].category == "technical"

    def test_memory_not_recorded_without_project(self) -> None:
        orchestrator, _ = make_orchestrator()

        orchestrator.run("Build a counter")

        assert orchestrator.memory.get_file_metadata("default", "App.tsx") is None

    def test_history_reaches_next_plan(self) -> None:
        client = MockCompletionClient()
        orchestrator, _ = make_orchestrator(client, project_id="p1")

        orchestrator.run("Build a counter")
        orchestrator.run("Add a reset button")

        planning_calls = [c for c in client.calls if c["system_prompt"] == PLANNING_SYSTEM_PROMPT]
        assert "PROJECT CONTEXT:" not in planning_calls[0]["prompt"]
        assert "PROJECT CONTEXT:\nProject has 1 files" in planning_calls[-1]["prompt"]

    def test_multi_file_output(self) -> None:
        code = (
            "[FILE: src/App.tsx]\n" + DEFAULT_MOCK_CODE
            + "\n[FILE: src/format.ts]\nexport const format = (n: number) => String(n);\n"
        )
        client = MockCompletionClient({BUILDER_KEY: code})
        orchestrator, _ = make_orchestrator(client, project_id="p1")

        result = orchestrator.run("Split out a formatter")

        assert sorted(result.files) == ["src/App.tsx", "src/format.ts"]
        assert orchestrator.memory.get_file_metadata("p1", "src/format.ts").exports == ["format"]


class TestRunLogging:
    def test_api_calls_logged(self, tmp_path: Path) -> None:
        run_logger = RunLogger(log_dir=tmp_path, request="Build a counter")
        orchestrator, _ = make_orchestrator(run_logger=run_logger)

        orchestrator.run("Build a counter")

        purposes = [call["purpose"] for call in run_logger.log_data["api_calls"]]
        assert purposes == ["planning", "building", "review"]
        assert run_logger.stats.phases[-1] == "complete"
        assert run_logger.stats.code_chunks > 0


class TestPlanParsing:
    """Tests for OrchestratorPlan and ReviewSummary parsing."""

    def test_plan_defaults(self) -> None:
        plan = OrchestratorPlan.from_response({"tasks": [{"type": "dance"}, "junk"], "qualityProfile": "shiny"})

        assert plan.summary == "Building your application"
        assert plan.quality_profile == QualityProfile.DEMO
        assert len(plan.tasks) == 1
        assert (plan.tasks[0].id, plan.tasks[0].title, plan.tasks[0].type) == ("1", "Task 1", TaskType.BUILD)

    def test_plan_to_dict(self) -> None:
        plan = OrchestratorPlan.from_response(json.loads(plan_response(designNotes="cards")))

        data = plan.to_dict()

        assert data["qualityProfile"] == "production"
        assert data["designNotes"] == "cards"
        assert "searchQueries" not in data
        assert data["tasks"][0]["status"] == "pending"

    def test_review_severity_normalized(self) -> None:
        review = ReviewSummary.from_response({
            "issues": [
                {"severity": "critical", "description": "XSS"},
                {"severity": "low"},
                42,
            ],
        })

        assert review.summary == "Review completed"
        assert [(i.severity, i.description) for i in review.issues] == [
            ("medium", "XSS"),
            ("low", "No description provided"),
        ]
        assert review.severity_counts() == {"high": 0, "medium": 1, "low": 1}


class TestFileBlocks:
    def test_parse_files_from_code(self) -> None:
        code = "[FILE: src/a.ts]\nexport const a = 1;\n\n[FILE: src/empty.ts]\n\n[FILE: src/b.ts]\nexport const b = 2;"

        files = parse_files_from_code(code)

        assert [(f.path, f.content) for f in files] == [
            ("src/a.ts", "export const a = 1;"),
            ("src/b.ts", "export const b = 2;"),
        ]

    def test_plain_code_has_no_blocks(self) -> None:
        assert parse_files_from_code(DEFAULT_MOCK_CODE) == []

    def test_join_files(self) -> None:
        files = [SourceFile("a.ts", "const a = 1;"), SourceFile("b.ts", "const b = 2;")]

        joined = join_files(files)

        assert joined == "[FILE: a.ts]\nconst a = 1;\n\n[FILE: b.ts]\nconst b = 2;"
        assert parse_files_from_code(joined) == files

    @pytest.mark.parametrize(
        ("hit", "expected"),
        [
            (SearchHit(title="Docs"), "- Docs"),
            (SearchHit(title="Docs", url="https://x.dev"), "- Docs (https://x.dev)"),
            (SearchHit(title="Docs", snippet="Use hooks"), "- Docs: Use hooks"),
        ],
    )
    def test_format_search_results(self, hit: SearchHit, expected: str) -> None:
        assert format_search_results([hit]) == expected
