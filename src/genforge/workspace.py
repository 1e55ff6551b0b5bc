"""File access for patch application and project checks.

A FileStore is what the auto-fix loop reads and writes through. The disk
implementation keeps every path inside the project root; the in-memory one
holds generated files during an orchestration run.
"""

from __future__ import annotations

import logging
import shlex
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Optional, Protocol, Union

from .dependency_graph import SourceFile
from .models import GenforgeError

logger = logging.getLogger(__name__)

SOURCE_SUFFIXES = (".ts", ".tsx", ".js", ".jsx", ".mjs", ".cjs", ".json", ".css")
IGNORED_DIRS = {"node_modules", ".git", "dist", "build", ".next", "coverage"}


class WorkspaceError(GenforgeError):
    """Raised for unreadable files or paths outside the project root."""


class FileStore(Protocol):
    def read(self, path: str) -> str: ...

    def write(self, path: str, content: str) -> None: ...

    def exists(self, path: str) -> bool: ...

    def list_files(self) -> list[str]: ...


@dataclass
class CheckResult:
    """Result of running a check command (type checker, linter, build)."""

    passed: bool
    exit_code: int
    stdout: str
    stderr: str
    command: str

    @property
    def output(self) -> str:
        """Combined stdout and stderr output."""
        parts = []
        if self.stdout:
            parts.append(self.stdout)
        if self.stderr:
            parts.append(self.stderr)
        return "\n".join(parts)


class MemoryFileStore:
    """Dict-backed file store, insertion ordered."""

    def __init__(self, files: Optional[Union[dict[str, str], Iterable[SourceFile]]] = None):
        self._files: dict[str, str] = {}
        if isinstance(files, dict):
            self._files.update(files)
        elif files is not None:
            for f in files:
                self._files[f.path] = f.content

    def read(self, path: str) -> str:
        try:
            return self._files[path]
        except KeyError:
            raise WorkspaceError(f"File not found: {path}") from None

    def write(self, path: str, content: str) -> None:
        self._files[path] = content

    def exists(self, path: str) -> bool:
        return path in self._files

    def list_files(self) -> list[str]:
        return list(self._files)

    def as_source_files(self) -> list[SourceFile]:
        return [SourceFile(path=p, content=c) for p, c in self._files.items()]

    def as_dict(self) -> dict[str, str]:
        return dict(self._files)


class ProjectWorkspace:
    """Project files on disk, scoped under a root directory."""

    def __init__(self, root: Path):
        self.root = Path(root).resolve()

    def _resolve(self, path: str) -> Path:
        candidate = (self.root / path).resolve()
        if candidate != self.root and self.root not in candidate.parents:
            raise WorkspaceError(f"Path escapes project root: {path}")
        return candidate

    def read(self, path: str) -> str:
        target = self._resolve(path)
        try:
            return target.read_text(encoding="utf-8")
        except OSError as e:
            raise WorkspaceError(f"Cannot read {path}: {e}") from e

    def write(self, path: str, content: str) -> None:
        target = self._resolve(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(content, encoding="utf-8")
        logger.debug(f"Wrote {path} ({len(content)} chars)")

    def exists(self, path: str) -> bool:
        try:
            return self._resolve(path).is_file()
        except WorkspaceError:
            return False

    def list_files(self) -> list[str]:
        """Source files under the root, as sorted POSIX-style relative paths."""
        paths = []
        for p in self.root.rglob("*"):
            if not p.is_file() or p.suffix not in SOURCE_SUFFIXES:
                continue
            rel = p.relative_to(self.root)
            if any(part in IGNORED_DIRS for part in rel.parts):
                continue
            paths.append(rel.as_posix())
        return sorted(paths)

    def source_files(self) -> list[SourceFile]:
        return [SourceFile(path=p, content=self.read(p)) for p in self.list_files()]

    def run_check(self, command: str, timeout: int = 300) -> CheckResult:
        """Run a check command in the project root and capture output.

        Args:
            command: Command line, e.g. "npx tsc --noEmit".
            timeout: Timeout in seconds (default: 5 minutes).

        Returns:
            CheckResult with pass status and output.
        """
        cmd_list = shlex.split(command, posix=True)
        logger.info(f"Running check: {command}")

        try:
            result = subprocess.run(
                cmd_list,
                capture_output=True,
                text=True,
                timeout=timeout,
                cwd=self.root,
            )
            return CheckResult(
                passed=result.returncode == 0,
                exit_code=result.returncode,
                stdout=result.stdout,
                stderr=result.stderr,
                command=command,
            )
        except subprocess.TimeoutExpired:
            logger.warning(f"Check timed out after {timeout}s")
            return CheckResult(
                passed=False,
                exit_code=-1,
                stdout="",
                stderr=f"Check timed out after {timeout} seconds",
                command=command,
            )
        except FileNotFoundError as e:
            logger.error(f"Check command not found: {e}")
            return CheckResult(
                passed=False,
                exit_code=-1,
                stdout="",
                stderr=f"Command not found: {cmd_list[0] if cmd_list else command}",
                command=command,
            )
