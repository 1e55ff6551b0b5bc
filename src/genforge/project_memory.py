"""Per-project memory: file metadata, decisions, changes, error history and
access-weighted file priorities.

All state is partitioned by project id into size-bounded LRU stores, so the
oldest project's history is silently dropped once a cap is exceeded.
"""

from __future__ import annotations

import hashlib
import logging
import re
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Optional, Union

from .dependency_graph import detect_cycles
from .lru import LRUStore
from .models import ErrorType
from .tokens import UNKNOWN_FILE_TOKENS, estimate_line_tokens

logger = logging.getLogger(__name__)

ACCESS_TYPES = ("read", "write", "import", "export")
RECENCY_WINDOW_SECONDS = 60 * 60


class FileType(str, Enum):
    COMPONENT = "component"
    PAGE = "page"
    API_ROUTE = "api_route"
    MODEL = "model"
    SERVICE = "service"
    UTILITY = "utility"
    CONFIG = "config"
    STYLE = "style"
    TEST = "test"
    TYPE = "type"
    UNKNOWN = "unknown"


def infer_file_type(path: str) -> FileType:
    """Guess a file's role from its path. First matching rule wins."""
    p = path.lower()
    if "/pages/" in p or "/routes/" in p:
        return FileType.PAGE
    if "/components/" in p:
        return FileType.COMPONENT
    if "/api/" in p or "/routes.ts" in p:
        return FileType.API_ROUTE
    if "/models/" in p or "schema" in p:
        return FileType.MODEL
    if "/services/" in p:
        return FileType.SERVICE
    if "/utils/" in p or "/lib/" in p:
        return FileType.UTILITY
    if "/types/" in p or p.endswith(".d.ts"):
        return FileType.TYPE
    if ".test." in p or ".spec." in p:
        return FileType.TEST
    if ".css" in p or ".scss" in p:
        return FileType.STYLE
    if "config" in p or ".json" in p:
        return FileType.CONFIG
    return FileType.UNKNOWN


_QUOTED_PATH_RE = re.compile(r"['\"`][\w/.-]+['\"`]")
_DIGITS_RE = re.compile(r"\d+")
_CAMEL_CASE_RE = re.compile(r"\b[A-Z][a-z]+[A-Z]\w+\b")


def extract_error_pattern(message: str) -> str:
    """Normalize an error message so similar errors compare equal.

    >>> extract_error_pattern("Cannot find module './utils' at line 12")
    "Cannot find module '<path>' at line <n>"
    """
    pattern = _QUOTED_PATH_RE.sub("'<path>'", message)
    pattern = _DIGITS_RE.sub("<n>", pattern)
    pattern = _CAMEL_CASE_RE.sub("<identifier>", pattern)
    return pattern[:100]


def word_overlap(a: str, b: str) -> float:
    """Shared lowercase words divided by the larger word set."""
    words_a = set(a.lower().split())
    words_b = set(b.lower().split())
    largest = max(len(words_a), len(words_b))
    if largest == 0:
        return 0.0
    return len(words_a & words_b) / largest


def _new_id(prefix: str) -> str:
    return f"{prefix}_{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}"


def _type_value(error_type: Union[ErrorType, str]) -> str:
    return error_type.value if isinstance(error_type, ErrorType) else str(error_type)


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------


@dataclass
class FileMetadata:
    path: str
    purpose: str = "Unknown"
    type: FileType = FileType.UNKNOWN
    dependencies: list[str] = field(default_factory=list)
    exports: list[str] = field(default_factory=list)
    last_modified: float = 0.0
    content_hash: str = ""
    lines_of_code: int = 0
    complexity: str = "low"


@dataclass
class ArchitecturalDecision:
    id: str
    project_id: str
    category: str
    title: str
    description: str
    rationale: str = ""
    alternatives: list[str] = field(default_factory=list)
    consequences: list[str] = field(default_factory=list)
    created_at: float = 0.0
    status: str = "active"
    superseded_by: Optional[str] = None


@dataclass
class ChangeMetrics:
    files_changed: int = 0
    lines_added: int = 0
    lines_removed: int = 0
    tokens_used: int = 0


@dataclass
class ChangeRecord:
    id: str
    project_id: str
    timestamp: float
    type: str
    files: list[str]
    description: str
    prompt: Optional[str] = None
    agent_type: Optional[str] = None
    metrics: ChangeMetrics = field(default_factory=ChangeMetrics)


@dataclass
class PatternUsage:
    pattern: str
    category: str
    frequency: int
    files: list[str]
    last_used: float


@dataclass
class CodingConvention:
    name: str
    description: str
    examples: list[str]
    enforced_since: float


@dataclass
class ProjectContext:
    id: str
    project_id: str
    files: dict[str, FileMetadata] = field(default_factory=dict)
    decisions: list[ArchitecturalDecision] = field(default_factory=list)
    changes: list[ChangeRecord] = field(default_factory=list)
    patterns: list[PatternUsage] = field(default_factory=list)
    conventions: list[CodingConvention] = field(default_factory=list)
    last_updated: float = 0.0


@dataclass
class ErrorHistoryEntry:
    id: str
    timestamp: float
    type: str
    message: str
    pattern: str
    fix_successful: bool
    file: Optional[str] = None
    line: Optional[int] = None
    fix: Optional[str] = None


@dataclass
class ErrorPatternStats:
    pattern: str
    count: int
    success_rate: float


@dataclass
class ActiveDependency:
    """A tracked file whose priority is recomputed on every access."""

    file: str
    access_count: int
    last_accessed: float
    access_types: set[str] = field(default_factory=set)
    priority: float = 1.0


@dataclass
class ErrorHistoryContext:
    recent_errors: list[ErrorHistoryEntry]
    similar_errors: list[ErrorHistoryEntry]
    successful_fixes: list[str]
    error_patterns: list[ErrorPatternStats]


@dataclass
class DiffHunk:
    start: int
    end: int
    type: str  # "add" or "remove"


@dataclass
class SmartDiff:
    change_type: str  # "none", "minor", "significant" or "rewrite"
    change_ratio: float
    added: int
    removed: int
    modified: int
    hunks: list[DiffHunk]


@dataclass
class ChangeImpact:
    direct_dependents: list[str]
    transitive_dependents: list[str]
    impact_level: str  # "low", "medium", "high" or "critical"
    recommendations: list[str]


def compute_smart_diff(old_content: str, new_content: str) -> SmartDiff:
    """Line-set diff with a coarse change classification.

    A line counts as removed when it no longer appears anywhere in the new
    content (and vice versa for added), so moved lines are not changes.
    Adjacent hunks of the same kind within 3 lines are merged.
    """
    old_lines = old_content.split("\n")
    new_lines = new_content.split("\n")
    old_set = set(old_lines)
    new_set = set(new_lines)

    hunks: list[DiffHunk] = []
    removed_at = set()
    added_at = set()
    for i, line in enumerate(old_lines):
        if line not in new_set:
            removed_at.add(i)
            hunks.append(DiffHunk(i + 1, i + 1, "remove"))
    for i, line in enumerate(new_lines):
        if line not in old_set:
            added_at.add(i)
            hunks.append(DiffHunk(i + 1, i + 1, "add"))

    added = len(added_at)
    removed = len(removed_at)
    max_lines = max(len(old_lines), len(new_lines))
    ratio = (added + removed) / max_lines if max_lines else 0.0

    if ratio == 0:
        change_type = "none"
    elif ratio < 0.1:
        change_type = "minor"
    elif ratio < 0.5:
        change_type = "significant"
    else:
        change_type = "rewrite"

    merged: list[DiffHunk] = []
    for hunk in sorted(hunks, key=lambda h: h.start):
        last = merged[-1] if merged else None
        if last is not None and hunk.start <= last.end + 3 and hunk.type == last.type:
            last.end = max(last.end, hunk.end)
        else:
            merged.append(DiffHunk(hunk.start, hunk.end, hunk.type))

    return SmartDiff(
        change_type=change_type,
        change_ratio=ratio,
        added=added,
        removed=removed,
        modified=len(added_at & removed_at),
        hunks=merged,
    )


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------


class ProjectMemoryService:
    """Project memory keyed by project id.

    Args:
        max_projects: Cap on project contexts kept.
        max_tracked_projects: Cap on projects with error history or
            access tracking.
        max_changes: Change records kept per project (oldest dropped).
        max_errors: Error history entries kept per project (oldest dropped).
        clock: Returns the current time in seconds.
    """

    def __init__(
        self,
        max_projects: int = 200,
        max_tracked_projects: int = 500,
        max_changes: int = 100,
        max_errors: int = 100,
        clock: Callable[[], float] = time.time,
    ):
        self.max_changes = max_changes
        self.max_errors = max_errors
        self._clock = clock
        self._contexts: LRUStore[str, ProjectContext] = LRUStore(max_projects, name="project contexts")
        self._errors: LRUStore[str, list[ErrorHistoryEntry]] = LRUStore(
            max_tracked_projects, name="error histories"
        )
        self._active: LRUStore[str, dict[str, ActiveDependency]] = LRUStore(
            max_tracked_projects, name="active dependencies"
        )

    # -- project context ---------------------------------------------------

    def initialize_project(self, project_id: str) -> ProjectContext:
        context = self._contexts.get(project_id)
        if context is None:
            now = self._clock()
            context = ProjectContext(
                id=_new_id("mem"),
                project_id=project_id,
                conventions=self._default_conventions(now),
                last_updated=now,
            )
            self._contexts.set(project_id, context)
            logger.info(f"Project memory initialized for {project_id}")
        return context

    def has_project(self, project_id: str) -> bool:
        return project_id in self._contexts

    @staticmethod
    def _default_conventions(now: float) -> list[CodingConvention]:
        return [
            CodingConvention(
                name="TypeScript Strict",
                description="Use strict TypeScript with proper typing",
                examples=["const fn = (param: string): number => { ... }"],
                enforced_since=now,
            ),
            CodingConvention(
                name="Functional Components",
                description="Use React functional components with hooks",
                examples=["export function MyComponent() { ... }"],
                enforced_since=now,
            ),
            CodingConvention(
                name="Named Exports",
                description="Prefer named exports over default exports",
                examples=["export { MyComponent };"],
                enforced_since=now,
            ),
        ]

    def record_file_metadata(self, project_id: str, path: str, **updates: Any) -> FileMetadata:
        """Create or update metadata for a file. Unset fields keep old values."""
        context = self.initialize_project(project_id)
        existing = context.files.get(path)
        now = self._clock()

        def pick(name: str, default: Any) -> Any:
            value = updates.get(name)
            if value:
                return value
            if existing is not None:
                return getattr(existing, name)
            return default

        metadata = FileMetadata(
            path=path,
            purpose=pick("purpose", "Unknown"),
            type=FileType(pick("type", infer_file_type(path))),
            dependencies=list(pick("dependencies", [])),
            exports=list(pick("exports", [])),
            last_modified=now,
            content_hash=pick("content_hash", ""),
            lines_of_code=int(pick("lines_of_code", 0)),
            complexity=pick("complexity", "low"),
        )
        context.files[path] = metadata
        context.last_updated = now
        return metadata

    def get_file_metadata(self, project_id: str, path: str) -> Optional[FileMetadata]:
        context = self._contexts.get(project_id)
        return context.files.get(path) if context else None

    def record_decision(
        self,
        project_id: str,
        category: str,
        title: str,
        description: str,
        rationale: str = "",
        alternatives: Optional[list[str]] = None,
        consequences: Optional[list[str]] = None,
    ) -> ArchitecturalDecision:
        context = self.initialize_project(project_id)
        decision = ArchitecturalDecision(
            id=_new_id("mem"),
            project_id=project_id,
            category=category,
            title=title,
            description=description,
            rationale=rationale,
            alternatives=list(alternatives or []),
            consequences=list(consequences or []),
            created_at=self._clock(),
        )
        context.decisions.append(decision)
        context.last_updated = decision.created_at
        logger.info(f"Architectural decision recorded for {project_id}: [{category}] {title}")
        return decision

    def supersede_decision(self, project_id: str, decision_id: str, new_decision_id: str) -> bool:
        context = self.initialize_project(project_id)
        for decision in context.decisions:
            if decision.id == decision_id:
                decision.status = "superseded"
                decision.superseded_by = new_decision_id
                context.last_updated = self._clock()
                logger.info(f"Decision {decision_id} superseded by {new_decision_id}")
                return True
        return False

    def record_change(
        self,
        project_id: str,
        type: str,
        files: list[str],
        description: str,
        prompt: Optional[str] = None,
        agent_type: Optional[str] = None,
        metrics: Optional[ChangeMetrics] = None,
    ) -> ChangeRecord:
        """Append a change record, keeping only the newest max_changes."""
        context = self.initialize_project(project_id)
        change = ChangeRecord(
            id=_new_id("mem"),
            project_id=project_id,
            timestamp=self._clock(),
            type=type,
            files=list(files),
            description=description,
            prompt=prompt,
            agent_type=agent_type,
            metrics=metrics or ChangeMetrics(files_changed=len(files)),
        )
        context.changes.append(change)
        if len(context.changes) > self.max_changes:
            context.changes = context.changes[-self.max_changes:]
        context.last_updated = change.timestamp
        return change

    def get_changes(self, project_id: str) -> list[ChangeRecord]:
        context = self._contexts.get(project_id)
        return list(context.changes) if context else []

    def record_pattern_usage(self, project_id: str, pattern: str, category: str, files: list[str]) -> None:
        context = self.initialize_project(project_id)
        now = self._clock()
        for usage in context.patterns:
            if usage.pattern == pattern:
                usage.frequency += 1
                usage.files.extend(f for f in files if f not in usage.files)
                usage.last_used = now
                break
        else:
            context.patterns.append(
                PatternUsage(pattern=pattern, category=category, frequency=1, files=list(files), last_used=now)
            )
        context.last_updated = now

    def get_project_summary(self, project_id: str) -> dict[str, Any]:
        context = self.initialize_project(project_id)
        file_types = {ft.value: 0 for ft in FileType}
        for metadata in context.files.values():
            file_types[metadata.type.value] += 1

        return {
            "file_count": len(context.files),
            "file_types": file_types,
            "recent_changes": context.changes[-10:],
            "active_decisions": [d for d in context.decisions if d.status == "active"],
            "top_patterns": sorted(context.patterns, key=lambda p: p.frequency, reverse=True)[:5],
        }

    def get_file_purposes(self, project_id: str) -> dict[str, str]:
        context = self.initialize_project(project_id)
        return {path: meta.purpose for path, meta in context.files.items()}

    def get_related_files(self, project_id: str, file_path: str) -> list[str]:
        """Files the given file depends on, followed by files depending on it."""
        context = self._contexts.get(project_id)
        if context is None:
            return []
        metadata = context.files.get(file_path)
        if metadata is None:
            return []

        related = list(dict.fromkeys(metadata.dependencies))
        for path, meta in context.files.items():
            if file_path in meta.dependencies and path not in related:
                related.append(path)
        return related

    def get_context_for_generation(self, project_id: str) -> dict[str, Any]:
        context = self.initialize_project(project_id)
        summary = self.get_project_summary(project_id)
        type_counts = ", ".join(
            f"{count} {file_type}s" for file_type, count in summary["file_types"].items() if count > 0
        )
        structure = "\n".join(
            f"- {path} ({context.files[path].type.value}): {context.files[path].purpose}"
            for path in sorted(context.files)
        )
        return {
            "summary": f"Project has {summary['file_count']} files across {type_counts}",
            "conventions": list(context.conventions),
            "recent_decisions": summary["active_decisions"][-5:],
            "file_structure": structure or "No files tracked yet",
        }

    def build_dependency_graph(self, project_id: str) -> dict[str, Any]:
        """Graph of recorded file dependencies with orphans and cycles."""
        context = self.initialize_project(project_id)
        nodes = []
        edges = []
        referenced: set[str] = set()
        adjacency: dict[str, list[str]] = {}

        for path, meta in context.files.items():
            nodes.append({"id": path, "type": meta.type.value, "purpose": meta.purpose})
            for dep in meta.dependencies:
                edges.append({"from": path, "to": dep})
                referenced.add(dep)
                adjacency.setdefault(path, []).append(dep)

        orphans = [
            path for path, meta in context.files.items()
            if not meta.dependencies and path not in referenced
        ]
        cycles = detect_cycles(adjacency)
        logger.debug(
            f"Memory graph for {project_id}: {len(nodes)} nodes, {len(edges)} edges, "
            f"{len(orphans)} orphans, {len(cycles)} cycles"
        )
        return {"nodes": nodes, "edges": edges, "orphans": orphans, "cycles": cycles}

    def get_change_impact(self, project_id: str, file_path: str) -> ChangeImpact:
        """Estimate how far a change to file_path ripples through dependents."""
        context = self.initialize_project(project_id)
        direct = [path for path, meta in context.files.items() if file_path in meta.dependencies]

        transitive: list[str] = []
        seen: set[str] = set()
        queue = list(direct)
        while queue:
            current = queue.pop(0)
            if current in seen:
                continue
            seen.add(current)
            transitive.append(current)
            for path, meta in context.files.items():
                if current in meta.dependencies and path not in seen:
                    queue.append(path)

        total = len(direct) + len(transitive)
        levels = ["low", "medium", "high", "critical"]
        if total == 0:
            level = 0
        elif total <= 3:
            level = 1
        elif total <= 10:
            level = 2
        else:
            level = 3

        metadata = context.files.get(file_path)
        if metadata is not None and metadata.type in (FileType.TYPE, FileType.MODEL):
            level = min(level + 1, 3)

        recommendations = []
        if level >= 2:
            recommendations.append("Consider making changes incrementally and testing after each step")
            recommendations.append(f"This change may affect {total} files")
        if metadata is not None and metadata.type == FileType.TYPE:
            recommendations.append("Type changes may require updates to all dependent files")
        if len(direct) > 5:
            recommendations.append("Consider extracting shared logic into smaller modules")

        return ChangeImpact(
            direct_dependents=direct,
            transitive_dependents=transitive,
            impact_level=levels[level],
            recommendations=recommendations,
        )

    def get_file_hierarchy(self, project_id: str) -> Optional[dict[str, Any]]:
        """Nested folder tree (files map to None) with simple stats."""
        context = self._contexts.get(project_id)
        if context is None:
            return None

        tree: dict[str, Any] = {}
        folders: set[str] = set()
        max_depth = 0
        for path in context.files:
            parts = path.split("/")
            current = tree
            for i, part in enumerate(parts[:-1]):
                folders.add("/".join(parts[: i + 1]))
                current = current.setdefault(part, {})
            current[parts[-1]] = None
            max_depth = max(max_depth, len(parts))

        return {
            "tree": tree,
            "stats": {"files": len(context.files), "folders": len(folders), "max_depth": max_depth},
        }

    def clear_project_memory(self, project_id: str) -> None:
        self._contexts.delete(project_id)
        logger.info(f"Project memory cleared for {project_id}")

    # -- error history -----------------------------------------------------

    def record_error(
        self,
        project_id: str,
        type: Union[ErrorType, str],
        message: str,
        fix_successful: bool,
        file: Optional[str] = None,
        line: Optional[int] = None,
        fix: Optional[str] = None,
    ) -> ErrorHistoryEntry:
        history = self._errors.get(project_id)
        if history is None:
            history = []
        entry = ErrorHistoryEntry(
            id=_new_id("err"),
            timestamp=self._clock(),
            type=_type_value(type),
            message=message,
            pattern=extract_error_pattern(message),
            fix_successful=fix_successful,
            file=file,
            line=line,
            fix=fix,
        )
        history.append(entry)
        if len(history) > self.max_errors:
            del history[: len(history) - self.max_errors]
        self._errors.set(project_id, history)
        return entry

    def get_error_history(self, project_id: str) -> list[ErrorHistoryEntry]:
        return list(self._errors.get(project_id) or [])

    def get_similar_errors(self, project_id: str, error_message: str) -> list[ErrorHistoryEntry]:
        """Past errors with the same pattern or more than half their words shared."""
        pattern = extract_error_pattern(error_message)
        return [
            entry for entry in self._errors.get(project_id) or []
            if entry.pattern == pattern or word_overlap(entry.message, error_message) > 0.5
        ]

    def get_successful_fixes(self, project_id: str, error_type: Union[ErrorType, str]) -> list[str]:
        """The last 5 fixes that worked for this error type."""
        wanted = _type_value(error_type)
        fixes = [
            entry.fix for entry in self._errors.get(project_id) or []
            if entry.type == wanted and entry.fix_successful and entry.fix
        ]
        return fixes[-5:]

    def get_error_patterns(self, project_id: str) -> list[ErrorPatternStats]:
        counts: dict[str, list[int]] = {}
        for entry in self._errors.get(project_id) or []:
            stats = counts.setdefault(entry.pattern, [0, 0])
            stats[0] += 1
            if entry.fix_successful:
                stats[1] += 1
        ranked = sorted(counts.items(), key=lambda item: item[1][0], reverse=True)
        return [
            ErrorPatternStats(pattern=pattern, count=total, success_rate=fixed / total)
            for pattern, (total, fixed) in ranked[:10]
        ]

    def build_context_with_error_history(
        self,
        project_id: str,
        error_type: Optional[Union[ErrorType, str]] = None,
        error_message: Optional[str] = None,
    ) -> ErrorHistoryContext:
        history = self._errors.get(project_id) or []
        return ErrorHistoryContext(
            recent_errors=history[-5:],
            similar_errors=self.get_similar_errors(project_id, error_message) if error_message else [],
            successful_fixes=self.get_successful_fixes(project_id, error_type) if error_type else [],
            error_patterns=self.get_error_patterns(project_id),
        )

    def clear_error_history(self, project_id: str) -> None:
        self._errors.delete(project_id)
        self._active.delete(project_id)
        logger.info(f"Error history cleared for {project_id}")

    # -- active dependencies -----------------------------------------------

    def track_active_dependency(self, project_id: str, file: str, access_type: str) -> ActiveDependency:
        """Record a file access and recompute every tracked file's priority."""
        if access_type not in ACCESS_TYPES:
            raise ValueError(f"Unknown access type: {access_type}")

        deps = self._active.get(project_id)
        if deps is None:
            deps = {}
        now = self._clock()

        dep = deps.get(file)
        if dep is None:
            dep = ActiveDependency(file=file, access_count=1, last_accessed=now, access_types={access_type})
            deps[file] = dep
        else:
            dep.access_count += 1
            dep.last_accessed = now
            dep.access_types.add(access_type)

        self._update_priorities(deps.values(), now)
        self._active.set(project_id, deps)
        return dep

    @staticmethod
    def _update_priorities(deps, now: float) -> None:
        window_start = now - RECENCY_WINDOW_SECONDS
        for dep in deps:
            recency = (dep.last_accessed - window_start) / RECENCY_WINDOW_SECONDS
            priority = min(dep.access_count / 10, 1) * 30
            priority += max(0.0, recency) * 40
            priority += len(dep.access_types) * 10
            if "write" in dep.access_types:
                priority += 20
            dep.priority = min(priority, 100)

    def get_active_dependencies(self, project_id: str, limit: int = 20) -> list[ActiveDependency]:
        deps = (self._active.get(project_id) or {}).values()
        return sorted(deps, key=lambda d: d.priority, reverse=True)[:limit]

    def get_high_priority_files(self, project_id: str, token_budget: int) -> list[str]:
        """Pick the hottest files whose estimated size fits the budget.

        Tracked files come from access history; recorded but untracked files
        get a fixed priority by role (models and types first, then routes
        and services, then entry files).
        """
        context = self._contexts.get(project_id)
        files = context.files if context else {}
        candidates: list[tuple[str, float, int]] = []

        for dep in self.get_active_dependencies(project_id, 50):
            metadata = files.get(dep.file)
            tokens = estimate_line_tokens(metadata.lines_of_code) if metadata else UNKNOWN_FILE_TOKENS
            candidates.append((dep.file, dep.priority, tokens))

        tracked = {c[0] for c in candidates}
        for path, metadata in files.items():
            if path in tracked:
                continue
            priority = 0
            name = path.lower()
            if "index" in name or "main" in name or "app" in name:
                priority = 30
            if metadata.type in (FileType.MODEL, FileType.TYPE):
                priority = 40
            if metadata.type in (FileType.API_ROUTE, FileType.SERVICE):
                priority = 35
            if priority > 0:
                candidates.append((path, priority, estimate_line_tokens(metadata.lines_of_code)))

        candidates.sort(key=lambda c: c[1], reverse=True)

        selected = []
        used = 0
        for path, _, tokens in candidates:
            if used + tokens <= token_budget:
                selected.append(path)
                used += tokens
        return selected

    def destroy(self) -> None:
        self._contexts.clear()
        self._errors.clear()
        self._active.clear()
        logger.info("Project memory destroyed")


def count_lines(content: str) -> int:
    return content.count("\n") + 1 if content else 0


def content_hash(content: str) -> str:
    """First 16 hex digits of the content's SHA-256."""
    return hashlib.sha256(content.encode("utf-8")).hexdigest()[:16]


def estimate_complexity(content: str) -> str:
    lines = count_lines(content)
    branches = len(re.findall(r"\b(if|for|while|switch|case|catch)\b", content))
    score = lines / 100 + branches / 10
    if score < 1:
        return "low"
    if score < 3:
        return "medium"
    return "high"
