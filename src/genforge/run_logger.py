"""Structured run logs for generation runs.

A RunLogger subscribes to the orchestrator's events, counts what happened,
and writes one JSON file per run with the phases, fix attempts, completion
calls and errors.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Optional

from rich.console import Console

from .events import (
    CodeChunkEvent,
    ErrorEvent,
    FixAttemptEvent,
    OrchestratorEvent,
    PhaseChangeEvent,
    ReviewEvent,
    TaskCompleteEvent,
    TaskStartEvent,
    ValidationEvent,
)

logger = logging.getLogger(__name__)


@dataclass
class APICallLog:
    """Log entry for a completion call."""

    timestamp: str
    purpose: str  # "planning", "building", "diagnosis", "fix", "review", "patch"
    model: str = ""
    input_tokens: int = 0
    output_tokens: int = 0
    success: bool = True
    error: Optional[str] = None
    duration_ms: int = 0


@dataclass
class GenerationStats:
    """Statistics for one generation run."""

    start_time: datetime = field(default_factory=datetime.now)
    end_time: Optional[datetime] = None
    phases: list[str] = field(default_factory=list)
    tasks_attempted: int = 0
    tasks_completed: int = 0
    validations_run: int = 0
    validations_passed: int = 0
    fix_attempts: int = 0
    code_chunks: int = 0
    review_issues: int = 0
    total_input_tokens: int = 0
    total_output_tokens: int = 0
    api_calls: list[APICallLog] = field(default_factory=list)

    @property
    def total_tokens(self) -> int:
        return self.total_input_tokens + self.total_output_tokens

    @property
    def duration_seconds(self) -> float:
        end = self.end_time or datetime.now()
        return (end - self.start_time).total_seconds()

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "start_time": self.start_time.isoformat(),
            "end_time": self.end_time.isoformat() if self.end_time else None,
            "duration_seconds": self.duration_seconds,
            "phases": list(self.phases),
            "tasks": {
                "attempted": self.tasks_attempted,
                "completed": self.tasks_completed,
            },
            "validations": {
                "run": self.validations_run,
                "passed": self.validations_passed,
            },
            "fix_attempts": self.fix_attempts,
            "code_chunks": self.code_chunks,
            "review_issues": self.review_issues,
            "tokens": {
                "input": self.total_input_tokens,
                "output": self.total_output_tokens,
                "total": self.total_tokens,
            },
            "api_calls": len(self.api_calls),
        }


class RunLogger:
    """JSON log for one generation run."""

    def __init__(self, log_dir: Optional[Path] = None, request: str = "generation"):
        """Initialize the run logger.

        Args:
            log_dir: Directory for log files. Defaults to logs/genforge.
            request: The user request, used in the file name.
        """
        self.log_dir = Path(log_dir) if log_dir else Path("logs/genforge")
        self.request = request
        self.stats = GenerationStats()

        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        safe_request = "".join(c if c.isalnum() else "_" for c in request[:30])
        self.log_file = self.log_dir / f"{timestamp}_{safe_request}.json"

        self.log_data: dict = {
            "session": {
                "id": timestamp,
                "request": request,
                "start_time": datetime.now().isoformat(),
            },
            "phases": [],
            "fix_attempts": [],
            "api_calls": [],
            "errors": [],
        }

    def __call__(self, event: OrchestratorEvent) -> None:
        """Event subscriber hook."""
        now = datetime.now().isoformat()

        if isinstance(event, PhaseChangeEvent):
            phase = str(getattr(event.phase, "value", event.phase))
            self.stats.phases.append(phase)
            self.log_data["phases"].append({"phase": phase, "message": event.message, "timestamp": now})
        elif isinstance(event, TaskStartEvent):
            self.stats.tasks_attempted += 1
        elif isinstance(event, TaskCompleteEvent):
            self.stats.tasks_completed += 1
        elif isinstance(event, CodeChunkEvent):
            self.stats.code_chunks += 1
        elif isinstance(event, ValidationEvent):
            self.stats.validations_run += 1
            if event.valid:
                self.stats.validations_passed += 1
        elif isinstance(event, FixAttemptEvent):
            self.stats.fix_attempts += 1
            self.log_data["fix_attempts"].append(
                {"attempt": event.attempt, "max_attempts": event.max_attempts, "timestamp": now}
            )
        elif isinstance(event, ReviewEvent):
            self.stats.review_issues = event.issue_count
        elif isinstance(event, ErrorEvent):
            self.log_error(event.message)

    def log_api_call(
        self,
        purpose: str,
        model: str = "",
        input_tokens: int = 0,
        output_tokens: int = 0,
        success: bool = True,
        error: Optional[str] = None,
        duration_ms: int = 0,
    ) -> None:
        call = APICallLog(
            timestamp=datetime.now().isoformat(),
            purpose=purpose,
            model=model,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            success=success,
            error=error,
            duration_ms=duration_ms,
        )
        self.stats.api_calls.append(call)
        self.stats.total_input_tokens += input_tokens
        self.stats.total_output_tokens += output_tokens

        self.log_data["api_calls"].append({
            "timestamp": call.timestamp,
            "purpose": purpose,
            "model": model,
            "input_tokens": input_tokens,
            "output_tokens": output_tokens,
            "success": success,
            "error": error,
            "duration_ms": duration_ms,
        })

    def log_error(self, error: str, context: Optional[dict] = None) -> None:
        self.log_data["errors"].append({
            "timestamp": datetime.now().isoformat(),
            "error": error,
            "context": context or {},
        })

    def finalize(self, success: bool, summary: Optional[str] = None) -> Optional[Path]:
        """Write the log file. Returns its path, or None if writing failed."""
        self.stats.end_time = datetime.now()

        self.log_data["session"]["end_time"] = self.stats.end_time.isoformat()
        self.log_data["session"]["success"] = success
        self.log_data["session"]["summary"] = summary
        self.log_data["stats"] = self.stats.to_dict()

        try:
            self.log_dir.mkdir(parents=True, exist_ok=True)
            with open(self.log_file, "w", encoding="utf-8") as f:
                json.dump(self.log_data, f, indent=2)
            logger.info(f"Run log written to: {self.log_file}")
            return self.log_file
        except OSError as e:
            logger.error(f"Failed to write run log: {e}")
            return None

    def print_summary(self, console: Optional[Console] = None) -> None:
        console = console or Console()
        stats = self.stats
        console.rule("Generation summary")
        console.print(f"Request: {self.request}")
        console.print(f"Duration: {stats.duration_seconds:.1f}s")
        console.print(f"Phases: {' -> '.join(stats.phases) or '-'}")
        console.print(f"Tasks: {stats.tasks_completed}/{stats.tasks_attempted} completed")
        console.print(f"Validations: {stats.validations_passed}/{stats.validations_run} passed")
        console.print(f"Fix attempts: {stats.fix_attempts}")
        console.print(f"Review issues: {stats.review_issues}")
        console.print(
            f"Tokens (estimated): {stats.total_tokens:,} "
            f"({stats.total_input_tokens:,} in, {stats.total_output_tokens:,} out)"
        )
        console.print(f"API calls: {len(stats.api_calls)}")
        console.print(f"Log file: {self.log_file}")
        console.rule()
