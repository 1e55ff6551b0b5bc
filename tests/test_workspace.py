"""Tests for file stores and check commands."""

from __future__ import annotations

import shlex
import subprocess
import sys
from pathlib import Path
from unittest.mock import patch

import pytest

from genforge.dependency_graph import SourceFile
from genforge.workspace import CheckResult, MemoryFileStore, ProjectWorkspace, WorkspaceError


class TestMemoryFileStore:
    def test_read_write(self) -> None:
        store = MemoryFileStore({"a.ts": "1"})
        store.write("b.ts", "2")

        assert store.read("b.ts") == "2"
        assert store.list_files() == ["a.ts", "b.ts"]
        assert store.exists("a.ts")

    def test_from_source_files(self) -> None:
        store = MemoryFileStore([SourceFile("a.ts", "x")])
        assert store.as_source_files() == [SourceFile("a.ts", "x")]
        assert store.as_dict() == {"a.ts": "x"}

    def test_missing_file(self) -> None:
        with pytest.raises(WorkspaceError):
            MemoryFileStore().read("nope.ts")


class TestProjectWorkspace:
    """Tests for ProjectWorkspace."""

    def test_list_files_skips_ignored(self, sample_project: Path) -> None:
        workspace = ProjectWorkspace(sample_project)

        assert workspace.list_files() == [
            "src/App.tsx",
            "src/components/Header.tsx",
            "src/main.tsx",
            "src/utils.ts",
        ]

    def test_source_files(self, sample_project: Path, sample_files: list[SourceFile]) -> None:
        workspace = ProjectWorkspace(sample_project)
        by_path = {f.path: f.content for f in workspace.source_files()}
        assert by_path["src/utils.ts"] == {f.path: f.content for f in sample_files}["src/utils.ts"]

    def test_write_creates_directories(self, tmp_path: Path) -> None:
        workspace = ProjectWorkspace(tmp_path)
        workspace.write("src/new/file.ts", "export {};\n")

        assert (tmp_path / "src" / "new" / "file.ts").read_text() == "export {};\n"
        assert workspace.exists("src/new/file.ts")

    def test_rejects_paths_outside_root(self, tmp_path: Path) -> None:
        workspace = ProjectWorkspace(tmp_path / "project")

        with pytest.raises(WorkspaceError):
            workspace.read("../secret.ts")
        with pytest.raises(WorkspaceError):
            workspace.write("../secret.ts", "x")
        assert workspace.exists("../secret.ts") is False

    def test_read_missing(self, tmp_path: Path) -> None:
        with pytest.raises(WorkspaceError):
            ProjectWorkspace(tmp_path).read("missing.ts")


class TestRunCheck:
    """Tests for ProjectWorkspace.run_check."""

    def test_passing_command(self, tmp_path: Path) -> None:
        command = f"{shlex.quote(sys.executable)} -c \"print('ok')\""

        result = ProjectWorkspace(tmp_path).run_check(command)

        assert result.passed is True
        assert result.exit_code == 0
        assert "ok" in result.output

    def test_failing_command(self, tmp_path: Path) -> None:
        command = f"{shlex.quote(sys.executable)} -c \"import sys; sys.stderr.write('bad'); sys.exit(3)\""

        result = ProjectWorkspace(tmp_path).run_check(command)

        assert result.passed is False
        assert result.exit_code == 3
        assert result.stderr == "bad"

    def test_missing_command(self, tmp_path: Path) -> None:
        result = ProjectWorkspace(tmp_path).run_check("genforge-no-such-tool --flag")

        assert result.passed is False
        assert result.exit_code == -1
        assert "Command not found: genforge-no-such-tool" in result.stderr

    def test_timeout(self, tmp_path: Path) -> None:
        with patch(
            "genforge.workspace.subprocess.run",
            side_effect=subprocess.TimeoutExpired(cmd="tsc", timeout=1),
        ):
            result = ProjectWorkspace(tmp_path).run_check("tsc --noEmit", timeout=1)

        assert result.passed is False
        assert result.stderr == "Check timed out after 1 seconds"


class TestCheckResult:
    def test_output_combines_streams(self) -> None:
        result = CheckResult(passed=False, exit_code=1, stdout="out", stderr="err", command="x")
        assert result.output == "out\nerr"

    def test_output_empty(self) -> None:
        result = CheckResult(passed=True, exit_code=0, stdout="", stderr="", command="x")
        assert result.output == ""
