"""Phase controller for a generation run.

Sequences planning, optional design and search, building, validation,
fixing and review for one user request, emitting an event per step.
"""

from __future__ import annotations

import logging
import re
import time
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Callable, Iterable, Optional, Protocol, Union

from .auto_fix import AutoFixLoopService
from .completion import (
    CompletionClient,
    CompletionPatchGenerator,
    extract_json_from_response,
    sanitize_error,
    strip_code_fences,
)
from .config import Config
from .dependency_graph import DependencyGraphService, SourceFile, build_graph, coerce_files, render_context
from .events import (
    CodeChunkEvent,
    CompleteEvent,
    ErrorEvent,
    EventCallback,
    FixAttemptEvent,
    OrchestratorEvent,
    PhaseChangeEvent,
    ReviewEvent,
    SearchEvent,
    SearchResultEvent,
    StatusEvent,
    TaskCompleteEvent,
    TasksUpdatedEvent,
    TaskStartEvent,
    ThinkingEvent,
    ValidationEvent,
)
from .models import AutoFixSession, CodePatch, FixAttempt, GenforgeError, ValidationResult
from .patching import PatchApplier
from .project_memory import ProjectMemoryService, content_hash, count_lines, estimate_complexity
from .prompts import (
    DIAGNOSIS_SYSTEM_PROMPT,
    FIX_SYSTEM_PROMPT,
    PLANNING_SYSTEM_PROMPT,
    REVIEW_SYSTEM_PROMPT,
    render_building_context,
    render_building_prompt,
    render_diagnosis_prompt,
    render_fix_prompt,
    render_planning_prompt,
    render_review_prompt,
)
from .run_logger import RunLogger
from .tokens import estimate_tokens
from .validation import validate_code, validate_files
from .workspace import MemoryFileStore

logger = logging.getLogger(__name__)

DEFAULT_PROJECT_ID = "default"
DEFAULT_ENTRY_FILE = "App.tsx"
CANCELLED_MESSAGE = "Generation cancelled"

_FILE_MARKER_RE = re.compile(r"\[FILE:\s*(.+?)\]")

Validator = Callable[..., ValidationResult]


class Phase(str, Enum):
    PLANNING = "planning"
    DESIGNING = "designing"
    SEARCHING = "searching"
    BUILDING = "building"
    VALIDATING = "validating"
    FIXING = "fixing"
    REVIEWING = "reviewing"
    COMPLETE = "complete"
    FAILED = "failed"


class TaskType(str, Enum):
    PLAN = "plan"
    BUILD = "build"
    FIX = "fix"
    SEARCH = "search"
    VALIDATE = "validate"
    REVIEW = "review"


class TaskStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


class QualityProfile(str, Enum):
    PROTOTYPE = "prototype"
    DEMO = "demo"
    PRODUCTION = "production"


def _enum_or(enum_cls, value: Any, default):
    try:
        return enum_cls(value)
    except ValueError:
        return default


@dataclass
class OrchestratorTask:
    id: str
    title: str
    description: str = ""
    type: TaskType = TaskType.BUILD
    status: TaskStatus = TaskStatus.PENDING
    result: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        data = {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "type": self.type.value,
            "status": self.status.value,
        }
        if self.result is not None:
            data["result"] = self.result
        if self.error is not None:
            data["error"] = self.error
        return data


@dataclass
class OrchestratorPlan:
    summary: str
    tasks: list[OrchestratorTask] = field(default_factory=list)
    architecture: str = ""
    quality_profile: QualityProfile = QualityProfile.DEMO
    stack_profile: Optional[str] = None
    design_notes: Optional[str] = None
    search_queries: list[str] = field(default_factory=list)

    @classmethod
    def from_response(cls, data: dict[str, Any]) -> OrchestratorPlan:
        """Build a plan from the planner's JSON, filling gaps with defaults.

        Search queries are kept only when the planner asked for a search.
        """
        tasks = []
        for i, raw in enumerate(data.get("tasks") or []):
            if not isinstance(raw, dict):
                continue
            tasks.append(
                OrchestratorTask(
                    id=str(raw.get("id") or i + 1),
                    title=raw.get("title") or f"Task {i + 1}",
                    description=raw.get("description") or "",
                    type=_enum_or(TaskType, raw.get("type"), TaskType.BUILD),
                )
            )
        queries = (data.get("searchQueries") or []) if data.get("searchNeeded") else []
        return cls(
            summary=data.get("summary") or "Building your application",
            tasks=tasks,
            architecture=data.get("architecture") or "",
            quality_profile=_enum_or(QualityProfile, data.get("qualityProfile"), QualityProfile.DEMO),
            stack_profile=data.get("stackProfile"),
            design_notes=data.get("designNotes") or None,
            search_queries=[str(q) for q in queries if q],
        )

    @classmethod
    def simple(cls, user_request: str) -> OrchestratorPlan:
        """Fallback plan when the planner never returns usable JSON."""
        return cls(
            summary=f"Building: {user_request[:100]}",
            tasks=[
                OrchestratorTask(id="1", title="Generate App", description=user_request, type=TaskType.BUILD),
                OrchestratorTask(id="2", title="Validate", description="Check code quality", type=TaskType.VALIDATE),
            ],
        )

    def tasks_of(self, task_type: TaskType) -> list[OrchestratorTask]:
        return [t for t in self.tasks if t.type == task_type]

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "summary": self.summary,
            "architecture": self.architecture,
            "qualityProfile": self.quality_profile.value,
            "tasks": [t.to_dict() for t in self.tasks],
        }
        if self.stack_profile:
            data["stackProfile"] = self.stack_profile
        if self.design_notes:
            data["designNotes"] = self.design_notes
        if self.search_queries:
            data["searchQueries"] = list(self.search_queries)
        return data


@dataclass
class ReviewIssue:
    severity: str
    description: str
    file: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        data = {"severity": self.severity, "description": self.description}
        if self.file:
            data["file"] = self.file
        return data


@dataclass
class ReviewSummary:
    summary: str
    strengths: list[str] = field(default_factory=list)
    issues: list[ReviewIssue] = field(default_factory=list)
    recommendations: list[str] = field(default_factory=list)

    @classmethod
    def from_response(cls, data: dict[str, Any]) -> ReviewSummary:
        issues = []
        for raw in data.get("issues") or []:
            if not isinstance(raw, dict):
                continue
            severity = raw.get("severity")
            issues.append(
                ReviewIssue(
                    severity=severity if severity in ("high", "medium", "low") else "medium",
                    description=raw.get("description") or "No description provided",
                    file=raw.get("file"),
                )
            )
        return cls(
            summary=data.get("summary") or "Review completed",
            strengths=list(data.get("strengths") or []),
            issues=issues,
            recommendations=list(data.get("recommendations") or []),
        )

    def severity_counts(self) -> dict[str, int]:
        counts = {"high": 0, "medium": 0, "low": 0}
        for issue in self.issues:
            counts[issue.severity] = counts.get(issue.severity, 0) + 1
        return counts

    def to_dict(self) -> dict[str, Any]:
        return {
            "summary": self.summary,
            "strengths": list(self.strengths),
            "issues": [i.to_dict() for i in self.issues],
            "recommendations": list(self.recommendations),
        }


@dataclass
class AgentMessage:
    role: str  # "planner", "builder" or "system"
    content: str


@dataclass
class OrchestratorState:
    phase: Phase = Phase.PLANNING
    plan: Optional[OrchestratorPlan] = None
    current_task_index: int = 0
    generated_code: str = ""
    validation_errors: list[str] = field(default_factory=list)
    fix_attempts: int = 0
    max_fix_attempts: int = 3
    web_search_results: str = ""
    messages: list[AgentMessage] = field(default_factory=list)
    review_summary: Optional[ReviewSummary] = None


@dataclass
class OrchestrationResult:
    success: bool
    code: str
    summary: str
    files: dict[str, str] = field(default_factory=dict)
    review_summary: Optional[ReviewSummary] = None
    fix_session: Optional[AutoFixSession] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "code": self.code,
            "summary": self.summary,
            "files": dict(self.files),
            "review_summary": self.review_summary.to_dict() if self.review_summary else None,
            "fix_session": self.fix_session.to_dict() if self.fix_session else None,
        }


@dataclass
class SearchHit:
    title: str
    url: str = ""
    snippet: str = ""


class SearchClient(Protocol):
    def search(self, query: str) -> list[SearchHit]: ...


class GenerationAborted(GenforgeError):
    """Raised inside a run once abort() has been called."""


def format_search_results(hits: Iterable[SearchHit]) -> str:
    lines = []
    for hit in hits:
        line = f"- {hit.title}"
        if hit.url:
            line += f" ({hit.url})"
        if hit.snippet:
            line += f": {hit.snippet}"
        lines.append(line)
    return "\n".join(lines)


def parse_files_from_code(code: str) -> list[SourceFile]:
    """Split `[FILE: path]` blocks into files. Empty blocks are dropped."""
    matches = list(_FILE_MARKER_RE.finditer(code))
    files = []
    for i, match in enumerate(matches):
        path = match.group(1).strip()
        end = matches[i + 1].start() if i + 1 < len(matches) else len(code)
        content = code[match.end():end].strip()
        if path and content:
            files.append(SourceFile(path=path, content=content))
    return files


def join_files(files: Iterable[SourceFile]) -> str:
    return "\n\n".join(f"[FILE: {f.path}]\n{f.content}" for f in files)


class Orchestrator:
    """Runs one request at a time through the generation phases.

    Collaborators are injected; memory, the auto-fix service and the graph
    cache default to fresh instances sized from the configuration.
    """

    def __init__(
        self,
        completion: CompletionClient,
        on_event: Optional[EventCallback] = None,
        project_id: Optional[str] = None,
        settings: Optional[Config] = None,
        memory: Optional[ProjectMemoryService] = None,
        auto_fix: Optional[AutoFixLoopService] = None,
        graphs: Optional[DependencyGraphService] = None,
        search_client: Optional[SearchClient] = None,
        validator: Validator = validate_code,
        run_logger: Optional[RunLogger] = None,
    ):
        self.completion = completion
        self.on_event = on_event
        self.project_id = project_id
        self.settings = settings or Config()
        limits = self.settings.memory
        self.memory = memory or ProjectMemoryService(
            max_projects=limits.max_projects,
            max_tracked_projects=limits.max_tracked_projects,
            max_changes=limits.max_changes_per_project,
            max_errors=limits.max_errors_per_project,
        )
        self.auto_fix = auto_fix or AutoFixLoopService(
            memory=self.memory, default_max_iterations=self.settings.auto_fix.max_iterations
        )
        self.graphs = graphs or DependencyGraphService(max_graphs=limits.max_graphs)
        self.search_client = search_client
        self.validator = validator
        self.run_logger = run_logger
        self.state = self._initial_state()
        self._aborted = False

    @property
    def memory_key(self) -> str:
        return self.project_id or DEFAULT_PROJECT_ID

    def _initial_state(self) -> OrchestratorState:
        return OrchestratorState(max_fix_attempts=self.settings.orchestrator.max_fix_attempts)

    def abort(self) -> None:
        """Request cancellation; takes effect at the next phase or chunk boundary."""
        self._aborted = True

    @property
    def aborted(self) -> bool:
        return self._aborted

    def _check_aborted(self) -> None:
        if self._aborted:
            raise GenerationAborted(CANCELLED_MESSAGE)

    def _emit(self, event: OrchestratorEvent) -> None:
        if isinstance(event, PhaseChangeEvent):
            self.state.phase = Phase(event.phase)
        if self.run_logger is not None:
            self.run_logger(event)
        if self.on_event is None:
            return
        try:
            self.on_event(event)
        except Exception as e:
            logger.error(f"Event handler failed on {event.type.value}: {e}")

    def _emit_tasks_updated(self) -> None:
        plan = self.state.plan
        if plan is None:
            return
        tasks = tuple(replace(t) for t in plan.tasks)
        completed = sum(1 for t in tasks if t.status == TaskStatus.COMPLETED)
        self._emit(TasksUpdatedEvent(tasks=tasks, completed_count=completed, total_count=len(tasks)))

    def _set_task_status(self, tasks: list[OrchestratorTask], status: TaskStatus) -> None:
        for task in tasks:
            task.status = status
            snapshot = replace(task)
            if status == TaskStatus.IN_PROGRESS:
                self._emit(TaskStartEvent(task=snapshot))
            elif status == TaskStatus.COMPLETED:
                self._emit(TaskCompleteEvent(task=snapshot))
        if tasks:
            self._emit_tasks_updated()

    @property
    def _planner_model(self) -> str:
        return self.settings.llm.planner_model or self.settings.llm.model

    def _complete(self, purpose: str, system_prompt: str, prompt: str, model: str, temperature: float) -> str:
        started = time.monotonic()
        try:
            response = self.completion.complete(
                prompt, system_prompt=system_prompt, temperature=temperature, model=model
            )
        except Exception as e:
            self._log_call(purpose, model, system_prompt + prompt, "", started, error=str(e))
            raise
        self._log_call(purpose, model, system_prompt + prompt, response, started)
        return response

    def _log_call(self, purpose, model, prompt, response, started, error=None) -> None:
        if self.run_logger is None:
            return
        self.run_logger.log_api_call(
            purpose=purpose,
            model=model,
            input_tokens=estimate_tokens(prompt),
            output_tokens=estimate_tokens(response),
            success=error is None,
            error=sanitize_error(error) if error else None,
            duration_ms=int((time.monotonic() - started) * 1000),
        )

    # -- run -----------------------------------------------------------------

    def run(
        self,
        user_request: str,
        existing_code: Optional[str] = None,
        existing_files: Optional[Iterable[Any]] = None,
        target_file: Optional[str] = None,
    ) -> OrchestrationResult:
        """Generate code for a request.

        Args:
            user_request: Natural-language description of the change.
            existing_code: Current code when modifying an app.
            existing_files: Project files for refinement context.
            target_file: File being refined within existing_files.

        Returns:
            OrchestrationResult. Failures are reported through an error event
            and success=False rather than raised.
        """
        self.state = self._initial_state()
        self._aborted = False
        files = coerce_files(existing_files or [])
        if existing_code is None and target_file:
            existing_code = next((f.content for f in files if f.path == target_file), None)

        try:
            self._emit(PhaseChangeEvent(phase=Phase.PLANNING.value, message="Analyzing your request..."))
            plan = self._planning_phase(user_request, existing_code)
            self._check_aborted()
            self.state.plan = plan
            self._emit_tasks_updated()

            if plan.design_notes and self.settings.orchestrator.enable_design:
                self._design_phase(plan)

            if plan.search_queries and self.search_client is not None:
                self._emit(PhaseChangeEvent(
                    phase=Phase.SEARCHING.value, message="Searching for relevant information..."
                ))
                self._search_phase(plan.search_queries)

            self._check_aborted()
            self._emit(PhaseChangeEvent(phase=Phase.BUILDING.value, message="Generating code..."))
            code = self._building_phase(plan, user_request, existing_code, files, target_file)
            self.state.generated_code = code

            self._check_aborted()
            self._emit(PhaseChangeEvent(phase=Phase.VALIDATING.value, message="Validating generated code..."))
            self._set_task_status(plan.tasks_of(TaskType.VALIDATE), TaskStatus.IN_PROGRESS)
            validation = self.validator(code)
            self.state.validation_errors = validation.error_messages()
            self._emit(ValidationEvent(valid=validation.success, errors=tuple(self.state.validation_errors)))

            fix_session = None
            if not validation.success:
                self._emit(PhaseChangeEvent(phase=Phase.FIXING.value, message="Auto-fixing detected issues..."))
                self._record_errors(validation, fixed=False)
                if self.settings.orchestrator.enable_auto_fix:
                    fix_session = self._auto_fix_phase(target_file)
                    self._check_aborted()
                    validation = self.validator(self.state.generated_code)
                if not validation.success:
                    self.state.generated_code = self._fix_loop(
                        self.state.generated_code, validation.error_messages()
                    )
                    validation = self.validator(self.state.generated_code)
                self._record_errors(validation, fixed=validation.success)
            self._set_task_status(plan.tasks_of(TaskType.VALIDATE), TaskStatus.COMPLETED)

            self._check_aborted()
            review = None
            if self.settings.orchestrator.enable_review:
                self._emit(PhaseChangeEvent(phase=Phase.REVIEWING.value, message="Reviewing the code..."))
                self._set_task_status(plan.tasks_of(TaskType.REVIEW), TaskStatus.IN_PROGRESS)
                review = self._review_phase(self.state.generated_code, plan)
                self.state.review_summary = review
                self._emit(ReviewEvent(
                    summary=review.summary,
                    issue_count=len(review.issues),
                    severity_counts=review.severity_counts(),
                ))
                self._set_task_status(plan.tasks_of(TaskType.REVIEW), TaskStatus.COMPLETED)

            generated = self._generated_files(self.state.generated_code, target_file)
            self._record_to_memory(user_request, plan, generated, files)

            self._emit(PhaseChangeEvent(phase=Phase.COMPLETE.value, message="Generation complete!"))
            self._emit(CompleteEvent(code=self.state.generated_code, summary=plan.summary, review_summary=review))
            return OrchestrationResult(
                success=True,
                code=self.state.generated_code,
                summary=plan.summary,
                files={f.path: f.content for f in generated},
                review_summary=review,
                fix_session=fix_session,
            )
        except GenerationAborted:
            logger.info("Generation cancelled")
            self.state.phase = Phase.FAILED
            self._emit(ErrorEvent(message=CANCELLED_MESSAGE))
            return OrchestrationResult(success=False, code="", summary="")
        except Exception as e:
            message = sanitize_error(str(e))
            logger.error(f"Generation failed in {self.state.phase.value}: {message}")
            self.state.phase = Phase.FAILED
            self._emit(ErrorEvent(message=message))
            return OrchestrationResult(success=False, code=self.state.generated_code, summary=message)

    # -- phases --------------------------------------------------------------

    def _planning_phase(self, user_request: str, existing_code: Optional[str]) -> OrchestratorPlan:
        self._emit(ThinkingEvent(
            model="planner",
            content="Reading your request and identifying what kind of application you want to build...",
        ))
        memory_context = self.memory.get_context_for_generation(self.memory_key)
        has_history = bool(self.memory.get_project_summary(self.memory_key)["file_count"])
        retries = self.settings.orchestrator.planning_retries

        for attempt in range(retries + 1):
            self._check_aborted()
            if attempt > 0:
                self._emit(ThinkingEvent(model="planner", content="Refining approach (constrain output)..."))
            prompt = render_planning_prompt(
                user_request,
                existing_code=existing_code or "",
                project_context=memory_context["summary"] if has_history else "",
                conventions=memory_context["conventions"] if has_history else (),
                decisions=memory_context["recent_decisions"],
                retry=attempt > 0,
            )
            response = self._complete(
                "planning", PLANNING_SYSTEM_PROMPT, prompt,
                self._planner_model, self.settings.llm.planner_temperature,
            )
            data, error = extract_json_from_response(response)
            if data is not None:
                plan = OrchestratorPlan.from_response(data)
                self.state.messages.append(AgentMessage(role="planner", content=plan.summary))
                logger.info(f"Plan ready: {len(plan.tasks)} tasks, profile {plan.quality_profile.value}")
                return plan
            logger.warning(f"Plan JSON parse attempt {attempt + 1}/{retries + 1} failed: {error}")

        logger.warning("All planning retries exhausted, using simple plan")
        return OrchestratorPlan.simple(user_request)

    def _design_phase(self, plan: OrchestratorPlan) -> None:
        self._emit(PhaseChangeEvent(phase=Phase.DESIGNING.value, message="Working out the user experience..."))
        self._emit(ThinkingEvent(model="planner", content=f"Design notes: {plan.design_notes[:500]}"))

    def _search_phase(self, queries: list[str]) -> None:
        queries = queries[: self.settings.orchestrator.max_search_queries]
        self._emit(ThinkingEvent(
            model="web_search", content=f'Searching the web for relevant information: "{queries[0]}"...'
        ))
        results = []
        for query in queries:
            self._check_aborted()
            self._emit(SearchEvent(query=query))
            try:
                hits = self.search_client.search(query)
            except Exception as e:
                logger.warning(f"Search failed for {query!r}: {e}")
                continue
            if hits:
                self._emit(SearchResultEvent(query=query, result_count=len(hits)))
                results.append(format_search_results(hits))
        self.state.web_search_results = "\n\n".join(results)

    def _refinement_context(self, files: list[SourceFile], target_file: Optional[str]) -> tuple[str, list[str]]:
        """Related-files block and hot files for an edit of target_file."""
        if not files or not target_file:
            return "", []

        selection = self.graphs.get_context_for_refinement(
            self.memory_key, target_file, files, self.settings.context.max_context_tokens
        )
        self.memory.track_active_dependency(self.memory_key, target_file, "write")
        for path in selection.paths:
            self.memory.track_active_dependency(self.memory_key, path, "read")
        priority = [
            p for p in self.memory.get_high_priority_files(
                self.memory_key, self.settings.context.high_priority_budget
            )
            if p != target_file
        ]
        if selection.context_files:
            self._emit(ThinkingEvent(
                model="builder",
                content=f"Using {len(selection.context_files)} related files "
                        f"(~{selection.total_token_estimate} tokens) as context",
            ))
        return render_context(selection, files), priority

    def _building_phase(
        self,
        plan: OrchestratorPlan,
        user_request: str,
        existing_code: Optional[str],
        files: list[SourceFile],
        target_file: Optional[str],
    ) -> str:
        related, priority = self._refinement_context(files, target_file)
        context = render_building_context(
            search_results=self.state.web_search_results,
            design_notes=plan.design_notes if self.settings.orchestrator.enable_design else None,
            target_file=target_file,
            existing_code=existing_code,
            related_files=related,
            priority_files=priority,
            error_history=self.memory.get_error_patterns(self.memory_key)[:5],
        )
        system_prompt = render_building_prompt(context, plan.to_dict())

        self._emit(ThinkingEvent(model="builder", content="Starting code generation with the implementation plan..."))
        build_tasks = plan.tasks_of(TaskType.BUILD)
        self._set_task_status(build_tasks, TaskStatus.IN_PROGRESS)

        chunks = []
        started = time.monotonic()
        model = self.settings.llm.model
        try:
            for delta in self.completion.stream(
                user_request,
                system_prompt=system_prompt,
                temperature=self.settings.llm.builder_temperature,
                model=model,
            ):
                if self._aborted:
                    break
                if delta:
                    chunks.append(delta)
                    self._emit(CodeChunkEvent(content=delta))
        except Exception as e:
            self._log_call("building", model, system_prompt + user_request, "".join(chunks), started, str(e))
            for task in build_tasks:
                task.error = str(e)
            self._set_task_status(build_tasks, TaskStatus.FAILED)
            raise
        full = "".join(chunks)
        self._log_call("building", model, system_prompt + user_request, full, started)
        self._check_aborted()

        code = strip_code_fences(full)
        self.state.messages.append(AgentMessage(role="builder", content=code))
        self._set_task_status(build_tasks, TaskStatus.COMPLETED)
        return code

    def _generated_files(self, code: str, target_file: Optional[str]) -> list[SourceFile]:
        files = parse_files_from_code(code)
        if files:
            return files
        return [SourceFile(path=target_file or DEFAULT_ENTRY_FILE, content=code)] if code else []

    def _auto_fix_phase(self, target_file: Optional[str]) -> Optional[AutoFixSession]:
        """Rule and model patches over the generated files via the fix loop."""
        files = self._generated_files(self.state.generated_code, target_file)
        if not files:
            return None
        multi_file = bool(parse_files_from_code(self.state.generated_code))
        store = MemoryFileStore(files)

        def validate() -> ValidationResult:
            paths = store.list_files()
            if len(paths) == 1:
                return self.validator(store.read(paths[0]), file=paths[0])
            return validate_files(store.as_source_files())

        def on_progress(session: AutoFixSession, attempt: Optional[FixAttempt]) -> None:
            if self._aborted:
                self.auto_fix.cancel_session(session.id)
                return
            self._emit(StatusEvent(
                message=f"Auto-fix: {session.status.value} (iteration {session.current_iteration})"
            ))

        applier = PatchApplier(
            store,
            patch_function=CompletionPatchGenerator(self.completion, self.settings.llm.builder_temperature),
            export_index=build_graph(files).export_index(),
        )

        def apply_fix(fix: str, error) -> Union[bool, CodePatch, None]:
            # Errors seeded before an earlier patch stay queued; once the
            # files validate they count as fixed without another edit.
            if validate().success:
                return True
            return applier(fix, error)

        session = self.auto_fix.start_session(self.memory_key, self.settings.auto_fix.max_iterations)
        try:
            session = self.auto_fix.run_fix_loop(session.id, validate, apply_fix, on_progress)
        finally:
            if multi_file:
                self.state.generated_code = join_files(store.as_source_files())
            else:
                self.state.generated_code = store.read(files[0].path)

        applied = sum(1 for a in session.fix_attempts if a.success)
        self._emit(ThinkingEvent(
            model="builder",
            content=f"Auto-fix: {applied}/{len(session.fix_attempts)} fixes applied ({session.status.value})",
        ))
        return session

    def _fix_loop(self, code: str, errors: list[str]) -> str:
        """Diagnose-then-rewrite until valid or out of attempts."""
        current_code = code
        current_errors = errors
        while self.state.fix_attempts < self.state.max_fix_attempts and current_errors:
            self._check_aborted()
            self.state.fix_attempts += 1
            self._emit(FixAttemptEvent(attempt=self.state.fix_attempts, max_attempts=self.state.max_fix_attempts))

            diagnosis = self._complete(
                "diagnosis", DIAGNOSIS_SYSTEM_PROMPT, render_diagnosis_prompt(current_errors, current_code),
                self._planner_model, self.settings.llm.planner_temperature,
            )
            self._emit(ThinkingEvent(model="planner", content=f"Diagnosis: {diagnosis[:200]}..."))

            self._emit(ThinkingEvent(model="builder", content="Applying fixes..."))
            fixed = strip_code_fences(self._complete(
                "fix", FIX_SYSTEM_PROMPT, render_fix_prompt(current_errors, current_code, diagnosis),
                self.settings.llm.model, self.settings.llm.builder_temperature,
            ))
            validation = self.validator(fixed)
            self._emit(ValidationEvent(valid=validation.success, errors=tuple(validation.error_messages())))
            if validation.success:
                return fixed
            current_code = fixed
            current_errors = validation.error_messages()
        return current_code

    def _review_phase(self, code: str, plan: OrchestratorPlan) -> ReviewSummary:
        self._emit(ThinkingEvent(
            model="planner", content="Reviewing code quality, architecture, security, and UX..."
        ))
        prompt = render_review_prompt(plan.summary, plan.quality_profile.value, code)
        try:
            response = self._complete(
                "review", REVIEW_SYSTEM_PROMPT, prompt,
                self._planner_model, self.settings.llm.planner_temperature,
            )
        except Exception as e:
            logger.error(f"Review phase error: {sanitize_error(str(e))}")
            return ReviewSummary(summary="Review skipped due to error")

        data, error = extract_json_from_response(response)
        if data is None:
            logger.warning(f"Review JSON parse failed, returning minimal review: {error}")
            return ReviewSummary(summary="Review completed (parsing failed)")
        return ReviewSummary.from_response(data)

    # -- memory --------------------------------------------------------------

    def _record_errors(self, validation: ValidationResult, fixed: bool) -> None:
        if not self.project_id:
            return
        for error in validation.errors:
            self.memory.record_error(
                self.project_id, error.type, error.message, fixed, file=error.file, line=error.line
            )

    def _record_to_memory(
        self,
        user_request: str,
        plan: OrchestratorPlan,
        generated: list[SourceFile],
        existing: list[SourceFile],
    ) -> None:
        if not self.project_id or not generated:
            return

        merged = {f.path: f for f in existing}
        merged.update({f.path: f for f in generated})
        graph = self.graphs.build_graph(self.project_id, list(merged.values()))

        for f in generated:
            node = graph.get(f.path)
            self.memory.record_file_metadata(
                self.project_id,
                f.path,
                purpose="Generated code",
                dependencies=node.imports if node else [],
                exports=node.exports if node else [],
                content_hash=content_hash(f.content),
                lines_of_code=count_lines(f.content),
                complexity=estimate_complexity(f.content),
            )
        if plan.summary:
            self.memory.record_decision(
                self.project_id,
                "technical",
                plan.summary[:50],
                plan.summary,
                rationale="User request",
            )
        self.memory.record_change(
            self.project_id,
            "creation",
            [f.path for f in generated],
            plan.summary,
            prompt=user_request,
            agent_type="orchestrator",
        )
        logger.info(f"Recorded {len(generated)} generated files to memory for {self.project_id}")
