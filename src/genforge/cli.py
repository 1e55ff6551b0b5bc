"""CLI entrypoint for genforge.

Commands work on a project directory: `generate` runs the full generation
pipeline against a completion endpoint, `graph` and `context` inspect the
import graph, and `fix` runs the auto-fix loop against a check command.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Optional, Union

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.syntax import Syntax
from rich.table import Table

from . import __version__
from .auto_fix import AutoFixError, AutoFixLoopService
from .completion import CompletionPatchGenerator, create_completion_client
from .config import Config
from .dependency_graph import build_graph, render_context, select_context
from .events import (
    CodeChunkEvent,
    CompleteEvent,
    ErrorEvent,
    EventEmitter,
    FixAttemptEvent,
    OrchestratorEvent,
    PhaseChangeEvent,
    ReviewEvent,
    SearchResultEvent,
    StatusEvent,
    ThinkingEvent,
    ValidationEvent,
)
from .models import (
    AutoFixSession,
    AutoFixStatus,
    CodePatch,
    ErrorType,
    FixAttempt,
    ParsedError,
    ValidationResult,
)
from .orchestrator import Orchestrator
from .patching import PatchApplier
from .project_memory import ProjectMemoryService
from .run_logger import RunLogger
from .tokens import format_token_count
from .validation import parse_compiler_output, validate_files
from .workspace import ProjectWorkspace, WorkspaceError

# Initialize Typer app
app = typer.Typer(
    name="genforge",
    help="LLM-driven code generation with context selection and auto-fix.",
    add_completion=False,
)

console = Console()


def setup_logging(verbose: bool = False, level: Optional[str] = None) -> None:
    """Configure logging with Rich handler.

    Args:
        verbose: If True, set DEBUG level; otherwise `level` or INFO.
        level: Level name, e.g. from GENFORGE_LOG_LEVEL.
    """
    resolved = logging.DEBUG if verbose else getattr(logging, (level or "INFO").upper(), logging.INFO)
    logging.basicConfig(
        level=resolved,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True)],
        force=True,
    )


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"genforge version {__version__}")
        raise typer.Exit()


def load_config(repo: Path, mock: bool = False) -> Config:
    repo_path = repo.resolve()
    if not repo_path.exists():
        console.print(f"[red]Error:[/red] Directory does not exist: {repo_path}")
        raise typer.Exit(1)

    config = Config.from_env(repo_path)
    if mock:
        config.mock_mode = True
    return config


def exit_on_config_errors(config: Config) -> None:
    errors = config.validate()
    if errors:
        console.print("[red]Configuration errors:[/red]")
        for error in errors:
            console.print(f"  - {error}")
        raise typer.Exit(1)


@app.callback()
def main(
    version: bool = typer.Option(
        None,
        "--version",
        "-v",
        callback=version_callback,
        is_eager=True,
        help="Show version and exit.",
    ),
) -> None:
    """LLM-driven code generation with context selection and auto-fix."""
    pass


class EventPrinter:
    """Renders orchestrator events to the console."""

    def __init__(self, show_code: bool = False):
        self.show_code = show_code

    def __call__(self, event: OrchestratorEvent) -> None:
        if isinstance(event, PhaseChangeEvent):
            console.print(f"[bold cyan]{event.phase}[/bold cyan] {event.message}")
        elif isinstance(event, ThinkingEvent):
            console.print(f"  [dim]{event.model}: {event.content}[/dim]")
        elif isinstance(event, CodeChunkEvent):
            if self.show_code:
                console.print(event.content, end="", markup=False, highlight=False)
        elif isinstance(event, SearchResultEvent):
            console.print(f"  [dim]{event.result_count} results for {event.query!r}[/dim]")
        elif isinstance(event, ValidationEvent):
            if event.valid:
                console.print("  [green]Validation passed[/green]")
            else:
                console.print(f"  [yellow]{len(event.errors)} validation error(s)[/yellow]")
                for error in event.errors:
                    console.print(f"    - {error}", markup=False)
        elif isinstance(event, FixAttemptEvent):
            console.print(f"  Fix attempt {event.attempt}/{event.max_attempts}")
        elif isinstance(event, ReviewEvent):
            counts = event.severity_counts
            console.print(
                f"  Review: {event.summary} ({event.issue_count} issues: "
                f"{counts.get('high', 0)} high, {counts.get('medium', 0)} medium, {counts.get('low', 0)} low)"
            )
        elif isinstance(event, StatusEvent):
            console.print(f"  [dim]{event.message}[/dim]")
        elif isinstance(event, CompleteEvent):
            console.print(f"[bold green]Done:[/bold green] {event.summary}")
        elif isinstance(event, ErrorEvent):
            console.print(f"[red]Error:[/red] {event.message}")


@app.command()
def generate(
    request: str = typer.Argument(..., help="What to build or change."),
    repo: Path = typer.Option(
        Path.cwd(),
        "--repo",
        "-r",
        help="Project directory (config/genforge.yaml and logs live here).",
    ),
    project_id: Optional[str] = typer.Option(
        None,
        "--project-id",
        help="Project id for memory (default: the directory name).",
    ),
    existing: Optional[Path] = typer.Option(
        None,
        "--existing",
        "-e",
        help="File with existing code to modify.",
    ),
    target: Optional[str] = typer.Option(
        None,
        "--target",
        "-t",
        help="Project file being refined; related files are added as context.",
    ),
    output: Optional[Path] = typer.Option(
        None,
        "--output",
        "-o",
        help="Write generated code here instead of printing it.",
    ),
    max_fix_attempts: Optional[int] = typer.Option(
        None,
        "--max-fix-attempts",
        help="Override orchestrator.max_fix_attempts.",
    ),
    mock: bool = typer.Option(
        False,
        "--mock",
        "-m",
        help="Run in mock mode (no API calls).",
    ),
    log_dir: Optional[Path] = typer.Option(
        None,
        "--log-dir",
        help="Directory for the JSON run log (default: logs/genforge).",
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose",
        help="Enable verbose output.",
    ),
) -> None:
    """Plan, generate, validate, fix and review code for a request.

    Examples:
        genforge generate "a todo list with filters" --mock

        genforge generate "add a dark mode toggle" --repo ./app --target src/App.tsx
    """
    config = load_config(repo, mock)
    setup_logging(verbose, config.log_level)
    if max_fix_attempts is not None:
        config.orchestrator.max_fix_attempts = max_fix_attempts
    exit_on_config_errors(config)

    existing_code = None
    if existing is not None:
        try:
            existing_code = existing.read_text(encoding="utf-8")
        except OSError as e:
            console.print(f"[red]Error:[/red] Cannot read {existing}: {e}")
            raise typer.Exit(1)

    existing_files = None
    if target:
        workspace = ProjectWorkspace(config.repo_path)
        if not workspace.exists(target):
            console.print(f"[red]Error:[/red] Target file not found: {target}")
            raise typer.Exit(1)
        existing_files = workspace.source_files()

    run_logger = RunLogger(log_dir or config.log_dir, request)
    emitter = EventEmitter()
    emitter.subscribe(EventPrinter(show_code=verbose and output is None))

    client = create_completion_client(config)
    orchestrator = Orchestrator(
        client,
        on_event=emitter,
        project_id=project_id or config.repo_path.name,
        settings=config,
        run_logger=run_logger,
    )
    try:
        result = orchestrator.run(request, existing_code, existing_files, target)
    except KeyboardInterrupt:
        orchestrator.abort()
        console.print("[yellow]Interrupted[/yellow]")
        raise typer.Exit(130)
    finally:
        client.close()

    run_logger.finalize(result.success, result.summary)
    run_logger.print_summary(console)

    if not result.success:
        raise typer.Exit(1)

    if output is not None:
        output.parent.mkdir(parents=True, exist_ok=True)
        output.write_text(result.code + "\n", encoding="utf-8")
        console.print(f"[green]Code written to:[/green] {output}")
    else:
        console.print(Syntax(result.code, "tsx", line_numbers=False))


@app.command()
def graph(
    directory: Path = typer.Argument(Path("."), help="Project directory to scan."),
    as_json: bool = typer.Option(False, "--json", help="Print the graph as JSON."),
) -> None:
    """Show the import graph of a project."""
    workspace = ProjectWorkspace(directory)
    dep_graph = build_graph(workspace.source_files())

    if as_json:
        console.print_json(json.dumps(dep_graph.to_dict()))
        return

    table = Table(show_header=True, header_style="bold", box=None)
    table.add_column("File")
    table.add_column("Depth", width=6)
    table.add_column("Imports")
    table.add_column("Imported by")
    table.add_column("Exports")
    for path in sorted(dep_graph.nodes):
        node = dep_graph.nodes[path]
        table.add_row(
            path,
            str(node.depth),
            ", ".join(node.imports) or "-",
            ", ".join(node.imported_by) or "-",
            ", ".join(node.exports) or "-",
        )
    console.print(table)
    console.print(f"\n[bold]Entry points:[/bold] {', '.join(dep_graph.entry_points) or '-'}")

    cycles = dep_graph.cycles()
    if cycles:
        console.print(f"[yellow]Cycles ({len(cycles)}):[/yellow]")
        for cycle in cycles:
            console.print(f"  {' -> '.join(cycle)}")


@app.command()
def context(
    directory: Path = typer.Argument(..., help="Project directory to scan."),
    target: str = typer.Argument(..., help="File being edited, relative to the directory."),
    budget: int = typer.Option(4000, "--budget", "-b", help="Token budget for context files."),
    render: bool = typer.Option(False, "--render", help="Print the prompt block with file contents."),
) -> None:
    """Show which related files would accompany an edit of TARGET."""
    workspace = ProjectWorkspace(directory)
    files = workspace.source_files()
    dep_graph = build_graph(files)
    if dep_graph.get(target) is None:
        console.print(f"[red]Error:[/red] {target} is not a source file in {directory}")
        raise typer.Exit(1)

    selection = select_context(dep_graph, target, files, budget)
    if render:
        console.print(render_context(selection, files), markup=False, highlight=False)
        return

    table = Table(show_header=True, header_style="bold", box=None)
    table.add_column("File")
    table.add_column("Relevance", width=10)
    table.add_column("Reason")
    for cf in selection.context_files:
        table.add_row(cf.path, f"{cf.relevance:.2f}", cf.reason)
    console.print(table)
    console.print(
        f"\n{len(selection.context_files)} files, ~{format_token_count(selection.total_token_estimate)} "
        f"(budget {budget})"
    )


def check_validator(workspace: ProjectWorkspace, command: Optional[str], timeout: int):
    """Validation function for the fix loop over files on disk."""

    def validate() -> ValidationResult:
        if not command:
            return validate_files(workspace.source_files())
        result = workspace.run_check(command, timeout=timeout)
        if result.passed:
            return ValidationResult(success=True, errors=[])
        errors = parse_compiler_output(result.output)
        if not errors:
            tail = result.output.strip()[-500:] or f"exit code {result.exit_code}"
            errors = [ParsedError(type=ErrorType.UNKNOWN, message=f"Check failed: {tail}")]
        return ValidationResult.from_errors(errors)

    return validate


@app.command()
def fix(
    directory: Path = typer.Argument(Path("."), help="Project directory to fix."),
    check: Optional[str] = typer.Option(
        None,
        "--check",
        "-c",
        help="Check command whose output lists errors, e.g. 'npx tsc --noEmit'. "
             "Defaults to auto_fix.check_command, else the built-in structural checks.",
    ),
    max_iterations: Optional[int] = typer.Option(
        None,
        "--max-iterations",
        "-n",
        help="Maximum fix iterations (default from config).",
    ),
    mock: bool = typer.Option(
        False,
        "--mock",
        "-m",
        help="Run in mock mode (rule-based patches only, no API calls).",
    ),
    no_llm: bool = typer.Option(
        False,
        "--no-llm",
        help="Only use the rule-based patches.",
    ),
    strict: bool = typer.Option(
        False,
        "--strict",
        help="Exit non-zero when errors remain after the last iteration.",
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose",
        help="Enable verbose output.",
    ),
) -> None:
    """Run the auto-fix loop over a project until its checks pass."""
    config = load_config(directory, mock)
    setup_logging(verbose, config.log_level)
    if max_iterations is not None:
        config.auto_fix.max_iterations = max_iterations
    exit_on_config_errors(config)

    workspace = ProjectWorkspace(config.repo_path)
    try:
        files = workspace.source_files()
    except WorkspaceError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1)

    patch_function = None
    client = None
    if config.mock_mode and not no_llm:
        console.print("[dim]Mock mode: using rule-based patches only[/dim]")
    elif not no_llm:
        client = create_completion_client(config)
        patch_function = CompletionPatchGenerator(client, config.llm.builder_temperature)
    applier = PatchApplier(workspace, patch_function, build_graph(files).export_index())

    memory = ProjectMemoryService(
        max_projects=config.memory.max_projects,
        max_tracked_projects=config.memory.max_tracked_projects,
    )
    service = AutoFixLoopService(memory=memory, default_max_iterations=config.auto_fix.max_iterations)

    def on_progress(session: AutoFixSession, attempt: Optional[FixAttempt]) -> None:
        if attempt is None:
            console.print(f"  [dim]Iteration {session.current_iteration}: no fix applied[/dim]")
        else:
            mark = "[green]fixed[/green]" if attempt.success else "[yellow]not fixed[/yellow]"
            console.print(
                f"  Iteration {attempt.iteration}: {mark} {attempt.error.location}: {attempt.error.message}",
                highlight=False,
            )

    validate = check_validator(workspace, check or config.auto_fix.check_command, config.auto_fix.check_timeout)
    last_valid = False

    def record_validation() -> ValidationResult:
        nonlocal last_valid
        result = validate()
        last_valid = result.success
        return result

    def apply_fix(fix_text: str, error: ParsedError) -> Union[bool, CodePatch, None]:
        # Errors queued before an earlier patch may already be gone, in
        # which case the next validation resolves them.
        if last_valid:
            return True
        return applier(fix_text, error)

    session = service.start_session(config.repo_path.name)
    try:
        session = service.run_fix_loop(session.id, record_validation, apply_fix, on_progress)
    except AutoFixError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1)
    finally:
        if client is not None:
            client.close()

    console.print(
        f"\n[bold]{session.status.value}[/bold]: {len(session.resolved_errors)} resolved, "
        f"{len(session.unresolved_errors)} unresolved in {session.current_iteration} iterations"
    )
    for patch in applier.applied:
        console.print(f"  [dim]{patch.file}: {patch.description or patch.mode}[/dim]")
    for error in session.unresolved_errors:
        console.print(f"  [yellow]-[/yellow] {error.location}: {error.message}", highlight=False)

    if session.status == AutoFixStatus.COMPLETED:
        return
    if session.status == AutoFixStatus.MAX_ITERATIONS_REACHED:
        console.print("[yellow]Partially fixed[/yellow]")
        if strict:
            raise typer.Exit(1)
        return
    raise typer.Exit(1)


if __name__ == "__main__":
    app()
