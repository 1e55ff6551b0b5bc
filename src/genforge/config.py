"""Configuration management for genforge."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

import yaml
from dotenv import load_dotenv


DEFAULT_ENDPOINT = "http://localhost:1234/v1"
DEFAULT_MODEL = "local-model"


def _env_flag(name: str, default: str = "") -> bool:
    return os.getenv(name, default).lower() in ("true", "1", "yes")


@dataclass
class LLMSettings:
    """Settings for the OpenAI-compatible completion endpoint."""

    endpoint: str = DEFAULT_ENDPOINT
    model: str = DEFAULT_MODEL
    planner_model: Optional[str] = None
    planner_temperature: float = 0.3
    builder_temperature: float = 0.2
    max_tokens: int = 8192
    timeout: int = 120

    @classmethod
    def from_dict(cls, data: dict) -> LLMSettings:
        """Create LLMSettings from dictionary."""
        return cls(
            endpoint=data.get("endpoint", DEFAULT_ENDPOINT),
            model=data.get("model", DEFAULT_MODEL),
            planner_model=data.get("planner_model"),
            planner_temperature=float(data.get("planner_temperature", 0.3)),
            builder_temperature=float(data.get("builder_temperature", 0.2)),
            max_tokens=int(data.get("max_tokens", 8192)),
            timeout=int(data.get("timeout", 120)),
        )


@dataclass
class OrchestratorSettings:
    """Settings for the generation phase controller."""

    max_fix_attempts: int = 3
    planning_retries: int = 2
    max_search_queries: int = 3
    enable_design: bool = True
    enable_review: bool = True
    enable_auto_fix: bool = True

    @classmethod
    def from_dict(cls, data: dict) -> OrchestratorSettings:
        """Create OrchestratorSettings from dictionary."""
        return cls(
            max_fix_attempts=int(data.get("max_fix_attempts", 3)),
            planning_retries=int(data.get("planning_retries", 2)),
            max_search_queries=int(data.get("max_search_queries", 3)),
            enable_design=data.get("enable_design", True),
            enable_review=data.get("enable_review", True),
            enable_auto_fix=data.get("enable_auto_fix", True),
        )


@dataclass
class AutoFixSettings:
    """Settings for the iterative auto-fix loop."""

    max_iterations: int = 5
    check_command: Optional[str] = None
    check_timeout: int = 300

    @classmethod
    def from_dict(cls, data: dict) -> AutoFixSettings:
        """Create AutoFixSettings from dictionary."""
        return cls(
            max_iterations=int(data.get("max_iterations", 5)),
            check_command=data.get("check_command"),
            check_timeout=int(data.get("check_timeout", 300)),
        )


@dataclass
class MemorySettings:
    """Capacity limits for per-project state."""

    max_projects: int = 200
    max_tracked_projects: int = 500
    max_graphs: int = 50
    max_changes_per_project: int = 100
    max_errors_per_project: int = 100

    @classmethod
    def from_dict(cls, data: dict) -> MemorySettings:
        """Create MemorySettings from dictionary."""
        return cls(
            max_projects=int(data.get("max_projects", 200)),
            max_tracked_projects=int(data.get("max_tracked_projects", 500)),
            max_graphs=int(data.get("max_graphs", 50)),
            max_changes_per_project=int(data.get("max_changes_per_project", 100)),
            max_errors_per_project=int(data.get("max_errors_per_project", 100)),
        )


@dataclass
class ContextSettings:
    """Token budgets used when assembling refinement context."""

    max_context_tokens: int = 4000
    high_priority_budget: int = 8000

    @classmethod
    def from_dict(cls, data: dict) -> ContextSettings:
        """Create ContextSettings from dictionary."""
        return cls(
            max_context_tokens=int(data.get("max_context_tokens", 4000)),
            high_priority_budget=int(data.get("high_priority_budget", 8000)),
        )


@dataclass
class Config:
    """Configuration settings for genforge."""

    # API Keys
    llm_api_key: Optional[str] = None

    # Paths
    repo_path: Path = field(default_factory=Path.cwd)
    config_dir: Path = field(default_factory=lambda: Path.cwd() / "config")
    log_dir: Path = field(default_factory=lambda: Path.cwd() / "logs" / "genforge")

    # Runtime Settings
    log_level: str = "INFO"
    mock_mode: bool = False

    # Retry Settings
    retry_max_attempts: int = 3
    retry_backoff_base: float = 2.0  # Base seconds for exponential backoff
    retry_backoff_max: float = 60.0  # Maximum backoff in seconds

    # Sections (loaded from genforge.yaml, env overrides applied on top)
    llm: LLMSettings = field(default_factory=LLMSettings)
    orchestrator: OrchestratorSettings = field(default_factory=OrchestratorSettings)
    auto_fix: AutoFixSettings = field(default_factory=AutoFixSettings)
    memory: MemorySettings = field(default_factory=MemorySettings)
    context: ContextSettings = field(default_factory=ContextSettings)

    @classmethod
    def from_dict(cls, data: dict, **kwargs) -> Config:
        """Create Config sections from a parsed YAML document."""
        return cls(
            llm=LLMSettings.from_dict(data.get("llm", {}) or {}),
            orchestrator=OrchestratorSettings.from_dict(data.get("orchestrator", {}) or {}),
            auto_fix=AutoFixSettings.from_dict(data.get("auto_fix", {}) or {}),
            memory=MemorySettings.from_dict(data.get("memory", {}) or {}),
            context=ContextSettings.from_dict(data.get("context", {}) or {}),
            **kwargs,
        )

    @staticmethod
    def load_file(config_dir: Path) -> dict:
        """Load genforge.yaml from the config directory, or {} if missing."""
        config_path = config_dir / "genforge.yaml"
        if config_path.exists():
            with open(config_path, encoding="utf-8") as f:
                return yaml.safe_load(f) or {}
        return {}

    @classmethod
    def from_env(cls, repo_path: Optional[Path] = None) -> Config:
        """Load configuration from the YAML file and environment variables.

        Environment variables win over values from config/genforge.yaml.

        Args:
            repo_path: Optional path to the repository. Defaults to CWD.

        Returns:
            Config instance populated from file and environment.
        """
        load_dotenv()

        repo = Path(repo_path) if repo_path else Path.cwd()
        config_dir = repo / "config"

        config = cls.from_dict(
            cls.load_file(config_dir),
            llm_api_key=os.getenv("GENFORGE_LLM_API_KEY"),
            repo_path=repo,
            config_dir=config_dir,
            log_dir=repo / "logs" / "genforge",
            log_level=os.getenv("GENFORGE_LOG_LEVEL", "INFO"),
            mock_mode=_env_flag("GENFORGE_MOCK_MODE"),
            retry_max_attempts=int(os.getenv("GENFORGE_RETRY_MAX_ATTEMPTS", "3")),
            retry_backoff_base=float(os.getenv("GENFORGE_RETRY_BACKOFF_BASE", "2.0")),
            retry_backoff_max=float(os.getenv("GENFORGE_RETRY_BACKOFF_MAX", "60.0")),
        )

        if os.getenv("GENFORGE_LLM_ENDPOINT"):
            config.llm.endpoint = os.environ["GENFORGE_LLM_ENDPOINT"]
        if os.getenv("GENFORGE_LLM_MODEL"):
            config.llm.model = os.environ["GENFORGE_LLM_MODEL"]
        if os.getenv("GENFORGE_PLANNER_MODEL"):
            config.llm.planner_model = os.environ["GENFORGE_PLANNER_MODEL"]
        if os.getenv("GENFORGE_TIMEOUT"):
            config.llm.timeout = int(os.environ["GENFORGE_TIMEOUT"])

        return config

    def validate(self) -> list[str]:
        """Validate configuration and return list of errors.

        Returns:
            List of validation error messages. Empty if valid.
        """
        errors = []

        if not self.mock_mode and not self.llm.endpoint.startswith(("http://", "https://")):
            errors.append(f"LLM endpoint must be an http(s) URL: {self.llm.endpoint}")

        if not self.repo_path.exists():
            errors.append(f"Repository path does not exist: {self.repo_path}")

        if self.orchestrator.max_fix_attempts < 0:
            errors.append("orchestrator.max_fix_attempts must be >= 0")

        if self.auto_fix.max_iterations < 1:
            errors.append("auto_fix.max_iterations must be >= 1")

        if self.context.max_context_tokens <= 0:
            errors.append("context.max_context_tokens must be positive")

        return errors

    @property
    def config_file(self) -> Path:
        """Path to genforge.yaml."""
        return self.config_dir / "genforge.yaml"
