"""Import/export dependency graph for JavaScript/TypeScript file sets.

Builds a directed graph from a flat list of files, computes entry points,
BFS depth and cycles, and selects the files most relevant to an edit under
a token budget.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Iterable, Iterator, Mapping, NamedTuple, Optional, Sequence

from .lru import LRUStore
from .tokens import estimate_tokens

logger = logging.getLogger(__name__)

# Probing order for relative imports. Order matters: first hit wins.
RESOLUTION_SUFFIXES = ("", ".ts", ".tsx", ".js", ".jsx", "/index.ts", "/index.tsx", "/index.js")

DECLARATION_KEYWORDS = {"function", "class", "const", "let", "var", "interface", "type", "enum"}
SHARED_FILE_MARKERS = ("schema", "types", "shared")

DEFAULT_MAX_GRAPHS = 50
DEFAULT_CONTEXT_TOKENS = 4000


@dataclass
class SourceFile:
    """A file path and its content."""

    path: str
    content: str


def coerce_files(files: Iterable[Any]) -> list[SourceFile]:
    """Accept SourceFile objects, dicts, or (path, content) tuples."""
    result = []
    for f in files:
        if isinstance(f, SourceFile):
            result.append(f)
        elif isinstance(f, Mapping):
            result.append(SourceFile(path=f["path"], content=f.get("content", "")))
        elif isinstance(f, tuple):
            result.append(SourceFile(path=f[0], content=f[1]))
        else:
            result.append(SourceFile(path=f.path, content=f.content))
    return result


# ---------------------------------------------------------------------------
# Scanner
# ---------------------------------------------------------------------------


class Token(NamedTuple):
    kind: str  # "ident", "string" or "punct"
    value: str


def _is_ident_start(ch: str) -> bool:
    return ch.isalpha() or ch in "_$"


def _is_ident_char(ch: str) -> bool:
    return ch.isalnum() or ch in "_$"


def scan_tokens(source: str) -> Iterator[Token]:
    """Yield identifiers, string literals and punctuation, skipping comments.

    Template literals are yielded as strings only when they contain no
    substitutions; numbers and regex literals come out as punctuation noise,
    which the recognizers ignore.
    """
    i = 0
    n = len(source)
    while i < n:
        ch = source[i]
        if ch.isspace():
            i += 1
        elif source.startswith("//", i):
            end = source.find("\n", i)
            i = n if end == -1 else end + 1
        elif source.startswith("/*", i):
            end = source.find("*/", i + 2)
            i = n if end == -1 else end + 2
        elif ch in "'\"`":
            j = i + 1
            chars = []
            while j < n and source[j] != ch:
                if source[j] == "\\" and j + 1 < n:
                    chars.append(source[j + 1])
                    j += 2
                    continue
                if source[j] == "\n" and ch != "`":
                    break
                chars.append(source[j])
                j += 1
            value = "".join(chars)
            i = j + 1
            if ch == "`" and "${" in value:
                yield Token("punct", "`")
            else:
                yield Token("string", value)
        elif _is_ident_start(ch):
            j = i + 1
            while j < n and _is_ident_char(source[j]):
                j += 1
            yield Token("ident", source[i:j])
            i = j
        else:
            yield Token("punct", ch)
            i += 1


def _string_after_from(tokens: Sequence[Token], start: int) -> Optional[str]:
    """Find `from "<x>"` at or after start, stopping at the statement end."""
    j = start
    while j < len(tokens):
        tok = tokens[j]
        if tok == Token("punct", ";"):
            return None
        if tok.kind == "ident" and tok.value in ("import", "export") and j > start:
            return None
        if (
            tok == Token("ident", "from")
            and j + 1 < len(tokens)
            and tokens[j + 1].kind == "string"
        ):
            return tokens[j + 1].value
        j += 1
    return None


def extract_import_specifiers(content: str) -> list[str]:
    """Return module specifiers referenced by import/require forms, in order."""
    tokens = list(scan_tokens(content))
    specifiers: list[str] = []

    for i, tok in enumerate(tokens):
        if tok.kind != "ident":
            continue
        prev = tokens[i - 1] if i > 0 else None
        if prev == Token("punct", "."):
            continue
        nxt = tokens[i + 1] if i + 1 < len(tokens) else None
        found: Optional[str] = None

        if tok.value == "import":
            if nxt is None:
                continue
            if nxt.kind == "string":
                found = nxt.value
            elif nxt == Token("punct", "("):
                if i + 2 < len(tokens) and tokens[i + 2].kind == "string":
                    found = tokens[i + 2].value
            elif nxt != Token("punct", "."):
                found = _string_after_from(tokens, i + 1)
        elif tok.value == "require":
            if nxt == Token("punct", "(") and i + 2 < len(tokens) and tokens[i + 2].kind == "string":
                found = tokens[i + 2].value
        elif tok.value == "export":
            if nxt in (Token("punct", "{"), Token("punct", "*")) or nxt == Token("ident", "type"):
                found = _string_after_from(tokens, i + 1)

        if found and found not in specifiers:
            specifiers.append(found)

    return specifiers


def extract_exports(content: str) -> list[str]:
    """Return exported names from declarations, export lists and CommonJS forms."""
    tokens = list(scan_tokens(content))
    exports: list[str] = []

    def add(name: str) -> None:
        if name and name not in exports:
            exports.append(name)

    for i, tok in enumerate(tokens):
        if tok.kind != "ident":
            continue
        if tok.value == "export" and (i == 0 or tokens[i - 1] != Token("punct", ".")):
            j = i + 1
            if j < len(tokens) and tokens[j] == Token("punct", "{"):
                j += 1
                expect_name = True
                while j < len(tokens) and tokens[j] != Token("punct", "}"):
                    t = tokens[j]
                    if t == Token("punct", ","):
                        expect_name = True
                    elif t.kind == "ident" and expect_name:
                        if t.value == "type" and j + 1 < len(tokens) and tokens[j + 1].kind == "ident" \
                                and tokens[j + 1].value != "as":
                            j += 1
                            t = tokens[j]
                        add(t.value)
                        expect_name = False
                    j += 1
                continue
            for modifier in ("default", "declare", "async", "abstract"):
                if j < len(tokens) and tokens[j] == Token("ident", modifier):
                    j += 1
            if j < len(tokens) and tokens[j].kind == "ident" and tokens[j].value in DECLARATION_KEYWORDS:
                j += 1
                if j < len(tokens) and tokens[j] == Token("ident", "enum"):
                    j += 1
                if j < len(tokens) and tokens[j] == Token("punct", "*"):
                    j += 1
                if j < len(tokens) and tokens[j].kind == "ident":
                    add(tokens[j].value)
        elif tok.value == "module":
            if (
                i + 3 < len(tokens)
                and tokens[i + 1] == Token("punct", ".")
                and tokens[i + 2] == Token("ident", "exports")
                and tokens[i + 3] == Token("punct", "=")
                and i + 4 < len(tokens)
                and tokens[i + 4].kind == "ident"
            ):
                add(tokens[i + 4].value)
        elif tok.value == "exports" and (i == 0 or tokens[i - 1] != Token("punct", ".")):
            if (
                i + 3 < len(tokens)
                and tokens[i + 1] == Token("punct", ".")
                and tokens[i + 2].kind == "ident"
                and tokens[i + 3] == Token("punct", "=")
            ):
                add(tokens[i + 2].value)

    return exports


def resolve_relative_import(from_path: str, specifier: str, known_paths: Iterable[str]) -> Optional[str]:
    """Resolve a ./ or ../ specifier against the importing file.

    Returns None for bare specifiers and for relative paths with no match.
    """
    if not (specifier.startswith("./") or specifier.startswith("../")):
        return None

    known = known_paths if isinstance(known_paths, (set, frozenset, dict)) else set(known_paths)
    parts = from_path.split("/")[:-1]
    for segment in specifier.split("/"):
        if segment == "..":
            if parts:
                parts.pop()
        elif segment and segment != ".":
            parts.append(segment)
    base = "/".join(parts)

    for suffix in RESOLUTION_SUFFIXES:
        candidate = base + suffix
        if candidate in known:
            return candidate
    return None


def detect_cycles(adjacency: Mapping[str, Sequence[str]]) -> list[list[str]]:
    """Report one cycle per back edge found by depth-first search.

    Each cycle is the DFS path slice from the first occurrence of the
    repeated node through the repeat, e.g. ["a", "b", "a"]. Overlapping
    cycles are not merged.
    """
    cycles: list[list[str]] = []
    visited: set[str] = set()
    on_stack: set[str] = set()
    path: list[str] = []

    for start in adjacency:
        if start in visited:
            continue
        visited.add(start)
        on_stack.add(start)
        path.append(start)
        stack = [(start, iter(adjacency.get(start, ())))]

        while stack:
            node, neighbors = stack[-1]
            descended = False
            for neighbor in neighbors:
                if neighbor not in visited:
                    visited.add(neighbor)
                    on_stack.add(neighbor)
                    path.append(neighbor)
                    stack.append((neighbor, iter(adjacency.get(neighbor, ()))))
                    descended = True
                    break
                if neighbor in on_stack:
                    cycles.append(path[path.index(neighbor):] + [neighbor])
            if not descended:
                stack.pop()
                path.pop()
                on_stack.discard(node)

    return cycles


# ---------------------------------------------------------------------------
# Graph
# ---------------------------------------------------------------------------


@dataclass
class FileNode:
    """A file in the dependency graph."""

    path: str
    imports: list[str] = field(default_factory=list)
    exports: list[str] = field(default_factory=list)
    imported_by: list[str] = field(default_factory=list)
    depth: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "path": self.path,
            "imports": list(self.imports),
            "exports": list(self.exports),
            "imported_by": list(self.imported_by),
            "depth": self.depth,
        }


@dataclass
class DependencyGraph:
    """Nodes keyed by path (input order), plus entry points."""

    nodes: dict[str, FileNode] = field(default_factory=dict)
    entry_points: list[str] = field(default_factory=list)

    def get(self, path: str) -> Optional[FileNode]:
        return self.nodes.get(path)

    def adjacency(self) -> dict[str, list[str]]:
        return {path: list(node.imports) for path, node in self.nodes.items()}

    def cycles(self) -> list[list[str]]:
        return detect_cycles(self.adjacency())

    def export_index(self) -> dict[str, str]:
        """Map each exported name to the first file that exports it."""
        index: dict[str, str] = {}
        for path, node in self.nodes.items():
            for name in node.exports:
                index.setdefault(name, path)
        return index

    def to_dict(self) -> dict[str, Any]:
        return {
            "nodes": [node.to_dict() for node in self.nodes.values()],
            "entry_points": list(self.entry_points),
            "cycles": self.cycles(),
        }


def _assign_depths(nodes: dict[str, FileNode], entry_points: list[str]) -> None:
    visited: set[str] = set()
    queue = [(path, 0) for path in entry_points]
    head = 0
    while head < len(queue):
        path, depth = queue[head]
        head += 1
        if path in visited:
            continue
        visited.add(path)
        node = nodes.get(path)
        if node is None:
            continue
        node.depth = depth
        for imp in node.imports:
            if imp not in visited:
                queue.append((imp, depth + 1))


def build_graph(files: Iterable[Any]) -> DependencyGraph:
    """Build a dependency graph from a list of files.

    Only relative imports that resolve to a file in the set become edges.
    Nodes unreachable from any entry point keep depth 0.
    """
    source_files = coerce_files(files)
    known = {f.path for f in source_files}
    nodes: dict[str, FileNode] = {}

    for f in source_files:
        imports: list[str] = []
        for spec in extract_import_specifiers(f.content):
            resolved = resolve_relative_import(f.path, spec, known)
            if resolved and resolved not in imports:
                imports.append(resolved)
        nodes[f.path] = FileNode(path=f.path, imports=imports, exports=extract_exports(f.content))

    for path, node in nodes.items():
        for imp in node.imports:
            target = nodes.get(imp)
            if target is not None and path not in target.imported_by:
                target.imported_by.append(path)

    entry_points = [path for path, node in nodes.items() if not node.imported_by]
    _assign_depths(nodes, entry_points)
    return DependencyGraph(nodes=nodes, entry_points=entry_points)


# ---------------------------------------------------------------------------
# Context selection
# ---------------------------------------------------------------------------


@dataclass
class ContextFile:
    path: str
    relevance: float
    reason: str

    def to_dict(self) -> dict[str, Any]:
        return {"path": self.path, "relevance": self.relevance, "reason": self.reason}


@dataclass
class ContextSelection:
    """Files chosen to accompany an edit of primary_file."""

    primary_file: str
    context_files: list[ContextFile] = field(default_factory=list)
    total_token_estimate: int = 0

    @property
    def paths(self) -> list[str]:
        return [cf.path for cf in self.context_files]

    def to_dict(self) -> dict[str, Any]:
        return {
            "primary_file": self.primary_file,
            "context_files": [cf.to_dict() for cf in self.context_files],
            "total_token_estimate": self.total_token_estimate,
        }


def select_context(
    graph: DependencyGraph,
    target_file: str,
    files: Iterable[Any],
    max_context_tokens: int = DEFAULT_CONTEXT_TOKENS,
) -> ContextSelection:
    """Rank related files by relevance and pack them greedily into the budget.

    Candidates are direct imports (0.9), direct importers (0.7), second-level
    imports (0.4) and one shared schema/types file (0.8). Ties keep insertion
    order. A candidate that does not fit is skipped and smaller ones after it
    may still be taken.
    """
    source_files = coerce_files(files)
    target = graph.get(target_file)
    if target is None:
        return ContextSelection(primary_file=target_file)

    candidates: list[ContextFile] = []
    seen: set[str] = set()

    def add(path: str, relevance: float, reason: str) -> None:
        if path == target_file or path in seen:
            return
        seen.add(path)
        candidates.append(ContextFile(path=path, relevance=relevance, reason=reason))

    for imp in target.imports:
        if imp in graph.nodes:
            add(imp, 0.9, f"Imported by {target_file}")

    for dep in target.imported_by:
        add(dep, 0.7, f"Imports {target_file}")

    for imp in target.imports:
        imp_node = graph.get(imp)
        if imp_node is None:
            continue
        for second in imp_node.imports:
            add(second, 0.4, f"Transitively imported via {imp}")

    shared = next(
        (f for f in source_files if any(marker in f.path for marker in SHARED_FILE_MARKERS)),
        None,
    )
    if shared is not None:
        add(shared.path, 0.8, "Shared types/schema file")

    candidates.sort(key=lambda c: c.relevance, reverse=True)

    content_by_path = {f.path: f.content for f in source_files}
    selected: list[ContextFile] = []
    total = 0
    for candidate in candidates:
        content = content_by_path.get(candidate.path)
        if content is None:
            continue
        tokens = estimate_tokens(content)
        if total + tokens > max_context_tokens:
            continue
        total += tokens
        selected.append(candidate)

    return ContextSelection(primary_file=target_file, context_files=selected, total_token_estimate=total)


def render_context(selection: ContextSelection, files: Iterable[Any]) -> str:
    """Render a selection as an inlined related-files block for a prompt."""
    if not selection.context_files:
        return ""

    content_by_path = {f.path: f.content for f in coerce_files(files)}
    parts = [
        "\n## Related Files Context",
        "These files are related to the file being modified. "
        "Use them to understand imports, types, and dependencies:\n",
    ]
    for cf in selection.context_files:
        content = content_by_path.get(cf.path)
        if content is None:
            continue
        ext = cf.path.rsplit(".", 1)[-1] if "." in cf.path.rsplit("/", 1)[-1] else "tsx"
        parts.append(f"### {cf.path} ({cf.reason})\n```{ext}\n{content}\n```\n")
    return "\n".join(parts)


class DependencyGraphService:
    """Per-project graph cache with context selection on top."""

    def __init__(self, max_graphs: int = DEFAULT_MAX_GRAPHS):
        self._graphs: LRUStore[str, DependencyGraph] = LRUStore(max_graphs, name="graphs")

    def build_graph(self, project_id: str, files: Iterable[Any]) -> DependencyGraph:
        """Build and cache the graph for a project, replacing any previous one."""
        graph = build_graph(files)
        self._graphs.set(project_id, graph)
        logger.info(
            f"Built dependency graph for {project_id}: {len(graph.nodes)} files, "
            f"{len(graph.entry_points)} entry points"
        )
        return graph

    def get_graph(self, project_id: str) -> Optional[DependencyGraph]:
        return self._graphs.get(project_id)

    def invalidate_graph(self, project_id: str) -> None:
        self._graphs.delete(project_id)

    def get_context_for_refinement(
        self,
        project_id: str,
        target_file: str,
        files: Iterable[Any],
        max_context_tokens: int = DEFAULT_CONTEXT_TOKENS,
    ) -> ContextSelection:
        """Select related files for editing target_file.

        Uses the cached graph for the project, building it if absent.
        """
        files = coerce_files(files)
        graph = self._graphs.get(project_id)
        if graph is None:
            graph = self.build_graph(project_id, files)

        selection = select_context(graph, target_file, files, max_context_tokens)
        logger.debug(
            f"Context for {target_file}: {len(selection.context_files)} files, "
            f"~{selection.total_token_estimate} tokens"
        )
        return selection

    def build_refinement_context(
        self,
        project_id: str,
        target_file: str,
        files: Iterable[Any],
        max_context_tokens: int = DEFAULT_CONTEXT_TOKENS,
    ) -> str:
        files = coerce_files(files)
        selection = self.get_context_for_refinement(project_id, target_file, files, max_context_tokens)
        return render_context(selection, files)

    def clear(self) -> None:
        self._graphs.clear()
