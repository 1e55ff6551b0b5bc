"""Events emitted while a generation run progresses.

Each variant is its own frozen dataclass with a fixed EventType, so
consumers dispatch on the class (or on `event.type`) instead of a loose
dict. `to_dict()` produces the wire shape with camelCase keys.
"""

from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass, field, fields
from datetime import datetime
from enum import Enum
from typing import Any, Callable, ClassVar, Optional, Union

logger = logging.getLogger(__name__)

MAX_STATE_LOGS = 100


class EventType(str, Enum):
    """Types of events emitted during a generation run."""

    PHASE_CHANGE = "phase_change"
    TASK_START = "task_start"
    TASK_COMPLETE = "task_complete"
    TASKS_UPDATED = "tasks_updated"
    THINKING = "thinking"
    CODE_CHUNK = "code_chunk"
    SEARCH = "search"
    SEARCH_RESULT = "search_result"
    VALIDATION = "validation"
    FIX_ATTEMPT = "fix_attempt"
    REVIEW = "review"
    COMPLETE = "complete"
    STATUS = "status"
    ERROR = "error"


def _camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part.title() for part in rest)


def _wire(value: Any) -> Any:
    if hasattr(value, "to_dict"):
        return value.to_dict()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {k: _wire(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_wire(v) for v in value]
    return value


class _EventBase:
    type: ClassVar[EventType]

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"type": self.type.value}
        for f in fields(self):
            value = getattr(self, f.name)
            if value is None and f.name == "review_summary":
                continue
            data[_camel(f.name)] = _wire(value)
        return data

    def to_json(self) -> str:
        return json.dumps(self.to_dict())


@dataclass(frozen=True)
class PhaseChangeEvent(_EventBase):
    type: ClassVar[EventType] = EventType.PHASE_CHANGE
    phase: str
    message: str


@dataclass(frozen=True)
class TaskStartEvent(_EventBase):
    type: ClassVar[EventType] = EventType.TASK_START
    task: Any


@dataclass(frozen=True)
class TaskCompleteEvent(_EventBase):
    type: ClassVar[EventType] = EventType.TASK_COMPLETE
    task: Any


@dataclass(frozen=True)
class TasksUpdatedEvent(_EventBase):
    type: ClassVar[EventType] = EventType.TASKS_UPDATED
    tasks: tuple
    completed_count: int
    total_count: int


@dataclass(frozen=True)
class ThinkingEvent(_EventBase):
    """Progress narration; model is "planner", "builder" or "web_search"."""

    type: ClassVar[EventType] = EventType.THINKING
    model: str
    content: str


@dataclass(frozen=True)
class CodeChunkEvent(_EventBase):
    type: ClassVar[EventType] = EventType.CODE_CHUNK
    content: str


@dataclass(frozen=True)
class SearchEvent(_EventBase):
    type: ClassVar[EventType] = EventType.SEARCH
    query: str


@dataclass(frozen=True)
class SearchResultEvent(_EventBase):
    type: ClassVar[EventType] = EventType.SEARCH_RESULT
    query: str
    result_count: int


@dataclass(frozen=True)
class ValidationEvent(_EventBase):
    type: ClassVar[EventType] = EventType.VALIDATION
    valid: bool
    errors: tuple


@dataclass(frozen=True)
class FixAttemptEvent(_EventBase):
    type: ClassVar[EventType] = EventType.FIX_ATTEMPT
    attempt: int
    max_attempts: int


@dataclass(frozen=True)
class ReviewEvent(_EventBase):
    type: ClassVar[EventType] = EventType.REVIEW
    summary: str
    issue_count: int
    severity_counts: dict


@dataclass(frozen=True)
class CompleteEvent(_EventBase):
    type: ClassVar[EventType] = EventType.COMPLETE
    code: str
    summary: str
    review_summary: Any = None


@dataclass(frozen=True)
class StatusEvent(_EventBase):
    type: ClassVar[EventType] = EventType.STATUS
    message: str


@dataclass(frozen=True)
class ErrorEvent(_EventBase):
    type: ClassVar[EventType] = EventType.ERROR
    message: str


OrchestratorEvent = Union[
    PhaseChangeEvent,
    TaskStartEvent,
    TaskCompleteEvent,
    TasksUpdatedEvent,
    ThinkingEvent,
    CodeChunkEvent,
    SearchEvent,
    SearchResultEvent,
    ValidationEvent,
    FixAttemptEvent,
    ReviewEvent,
    CompleteEvent,
    StatusEvent,
    ErrorEvent,
]

EventCallback = Callable[[OrchestratorEvent], None]


@dataclass
class GenerationState:
    """Snapshot of a run as seen through its events."""

    phase: str = ""
    tasks: list = field(default_factory=list)
    tasks_completed: int = 0
    total_tasks: int = 0
    current_task: Optional[str] = None
    code_chars: int = 0
    fix_attempts: int = 0
    max_fix_attempts: int = 0
    valid: Optional[bool] = None
    review_summary: Optional[str] = None
    finished: bool = False
    errors: list = field(default_factory=list)
    logs: list = field(default_factory=list)
    started_at: str = ""

    def to_dict(self) -> dict:
        """Convert state to dictionary."""
        return asdict(self)


class EventEmitter:
    """Fans events out to subscribers and tracks a GenerationState.

    A failing subscriber is logged and skipped; the remaining subscribers
    still see the event.
    """

    def __init__(self) -> None:
        self._subscribers: list[EventCallback] = []
        self._state = GenerationState()
        self.history: list[OrchestratorEvent] = []
        self.keep_history = False

    @property
    def state(self) -> GenerationState:
        return self._state

    def reset_state(self) -> None:
        self._state = GenerationState()
        self.history.clear()

    def subscribe(self, callback: EventCallback) -> None:
        self._subscribers.append(callback)

    def unsubscribe(self, callback: EventCallback) -> None:
        if callback in self._subscribers:
            self._subscribers.remove(callback)

    def __call__(self, event: OrchestratorEvent) -> None:
        self.emit(event)

    def emit(self, event: OrchestratorEvent) -> None:
        self._update_state(event)
        if self.keep_history:
            self.history.append(event)

        for callback in list(self._subscribers):
            try:
                callback(event)
            except Exception as e:
                logger.error(f"Error in event subscriber: {e}")

    def _log(self, message: str, level: str = "info") -> None:
        self._state.logs.append({
            "timestamp": datetime.now().isoformat(),
            "message": message,
            "level": level,
        })
        # Keep only last 100 logs
        if len(self._state.logs) > MAX_STATE_LOGS:
            self._state.logs = self._state.logs[-MAX_STATE_LOGS:]

    def _update_state(self, event: OrchestratorEvent) -> None:
        state = self._state

        if isinstance(event, PhaseChangeEvent):
            if not state.started_at:
                state.started_at = datetime.now().isoformat()
            state.phase = str(getattr(event.phase, "value", event.phase))
            self._log(event.message)

        elif isinstance(event, TasksUpdatedEvent):
            state.tasks = [_wire(t) for t in event.tasks]
            state.tasks_completed = event.completed_count
            state.total_tasks = event.total_count

        elif isinstance(event, TaskStartEvent):
            state.current_task = getattr(event.task, "title", None)

        elif isinstance(event, TaskCompleteEvent):
            state.current_task = None

        elif isinstance(event, CodeChunkEvent):
            state.code_chars += len(event.content)

        elif isinstance(event, ValidationEvent):
            state.valid = event.valid

        elif isinstance(event, FixAttemptEvent):
            state.fix_attempts = event.attempt
            state.max_fix_attempts = event.max_attempts

        elif isinstance(event, ReviewEvent):
            state.review_summary = event.summary

        elif isinstance(event, StatusEvent):
            self._log(event.message)

        elif isinstance(event, CompleteEvent):
            state.finished = True

        elif isinstance(event, ErrorEvent):
            state.finished = True
            state.errors.append({
                "timestamp": datetime.now().isoformat(),
                "message": event.message,
            })
            self._log(event.message, level="error")
