"""Shared test fixtures for genforge tests."""

from __future__ import annotations

from pathlib import Path

import pytest

from genforge.dependency_graph import SourceFile


class FakeClock:
    """Manually advanced clock for time-dependent services."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def no_dotenv(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep a developer's .env and GENFORGE_* variables out of config tests."""
    monkeypatch.setattr("genforge.config.load_dotenv", lambda: None)
    for name in (
        "GENFORGE_LLM_ENDPOINT",
        "GENFORGE_LLM_MODEL",
        "GENFORGE_PLANNER_MODEL",
        "GENFORGE_LLM_API_KEY",
        "GENFORGE_TIMEOUT",
        "GENFORGE_LOG_LEVEL",
        "GENFORGE_MOCK_MODE",
        "GENFORGE_RETRY_MAX_ATTEMPTS",
        "GENFORGE_RETRY_BACKOFF_BASE",
        "GENFORGE_RETRY_BACKOFF_MAX",
    ):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def sample_files() -> list[SourceFile]:
    """A small React project: main -> App -> (Header, utils), Header -> utils."""
    return [
        SourceFile(
            path="src/main.tsx",
            content='import React from "react";\nimport App from "./App";\n\nrender(<App />);\n',
        ),
        SourceFile(
            path="src/App.tsx",
            content=(
                'import { Header } from "./components/Header";\n'
                'import { formatDate } from "./utils";\n\n'
                "export default function App() {\n"
                "  return <Header title={formatDate(new Date())} />;\n"
                "}\n"
            ),
        ),
        SourceFile(
            path="src/components/Header.tsx",
            content=(
                'import { capitalize } from "../utils";\n\n'
                "export function Header({ title }: { title: string }) {\n"
                "  return <h1>{capitalize(title)}</h1>;\n"
                "}\n"
            ),
        ),
        SourceFile(
            path="src/utils.ts",
            content=(
                "export function formatDate(d: Date) {\n  return d.toISOString();\n}\n\n"
                "export const capitalize = (s: string) => s.toUpperCase();\n"
            ),
        ),
    ]


@pytest.fixture
def sample_project(tmp_path: Path, sample_files: list[SourceFile]) -> Path:
    """sample_files written to disk, plus files the workspace must skip."""
    for f in sample_files:
        target = tmp_path / f.path
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(f.content)
    (tmp_path / "node_modules" / "react").mkdir(parents=True)
    (tmp_path / "node_modules" / "react" / "index.js").write_text("module.exports = {};\n")
    (tmp_path / "README.md").write_text("# sample\n")
    return tmp_path
