"""
Configuration loading and validation for Spec Loop.

This module handles:
- Loading spec-loop.yaml from the project root
- Environment variable resolution (${VAR} syntax)
- SPECLOOP_* environment overrides
- Per-run overrides from CLI flags
- Default values for optional fields
"""

from __future__ import annotations

import os
import re
import shlex
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml

from spec_loop.errors import SpecLoopError

CONFIG_FILENAME = "spec-loop.yaml"

DEFAULT_MAX_LOOPS = 25
DEFAULT_MAX_REVIEW_FIX_LOOPS = 3
DEFAULT_MAX_TASKS_PER_RUN = 0
DEFAULT_SPECS_DIR = ".agents/specs"
DEFAULT_STATE_DIR = ".spec-loop"
DEFAULT_CB_NO_PROGRESS_THRESHOLD = 3
DEFAULT_CB_COOLDOWN_MINUTES = 30


class ConfigError(SpecLoopError):
    """Raised when configuration is invalid or cannot be loaded."""
    pass


@dataclass
class ProjectConfig:
    """Project commands the agent is told to run."""
    type: str = ""                             # Detected project type (python, rust, ...)
    verify_command: str = ""                   # Lint / typecheck command
    test_command: str = ""                     # Test command


@dataclass
class ClaudeConfig:
    """Claude Code CLI configuration."""
    binary: str = "claude"                     # Path to claude binary
    model: str = ""                            # Optional --model value
    extra_args: list[str] = field(default_factory=list)  # Appended verbatim


@dataclass
class LoopConfig:
    """Iteration budgets."""
    max_loops: int = DEFAULT_MAX_LOOPS                        # Iterations per invocation
    max_review_fix_loops: int = DEFAULT_MAX_REVIEW_FIX_LOOPS  # Fix attempts per task
    max_tasks_per_run: int = DEFAULT_MAX_TASKS_PER_RUN        # 0 = unlimited


@dataclass
class CircuitBreakerConfig:
    """No-progress circuit breaker settings."""
    no_progress_threshold: int = DEFAULT_CB_NO_PROGRESS_THRESHOLD
    cooldown_minutes: int = DEFAULT_CB_COOLDOWN_MINUTES


@dataclass
class SpecLoopConfig:
    """
    Main configuration for Spec Loop.

    This is the top-level config loaded from spec-loop.yaml.
    """
    # Paths
    repo_root: str = "."
    specs_dir: str = DEFAULT_SPECS_DIR
    state_dir: str = DEFAULT_STATE_DIR
    session_dir: str = ""                      # Defaults to <state_dir>/sessions

    # Nested configurations
    project: ProjectConfig = field(default_factory=ProjectConfig)
    claude: ClaudeConfig = field(default_factory=ClaudeConfig)
    loop: LoopConfig = field(default_factory=LoopConfig)
    circuit_breaker: CircuitBreakerConfig = field(default_factory=CircuitBreakerConfig)

    def __post_init__(self) -> None:
        """Convert repo_root to an absolute path."""
        self.repo_root = str(Path(self.repo_root).absolute())

    def _resolve(self, value: str) -> Path:
        path = Path(value)
        if path.is_absolute():
            return path
        return Path(self.repo_root) / path

    @property
    def config_path(self) -> Path:
        """Absolute path to spec-loop.yaml."""
        return Path(self.repo_root) / CONFIG_FILENAME

    @property
    def specs_path(self) -> Path:
        """Absolute path to the specs directory."""
        return self._resolve(self.specs_dir)

    @property
    def state_path(self) -> Path:
        """Absolute path to the .spec-loop directory."""
        return self._resolve(self.state_dir)

    @property
    def sessions_path(self) -> Path:
        """Absolute path to the sessions directory (breaker + checkpoint live here too)."""
        if self.session_dir:
            return self._resolve(self.session_dir)
        return self.state_path / "sessions"

    @property
    def logs_path(self) -> Path:
        """Absolute path to the JSONL logs directory."""
        return self.state_path / "logs"

    def validate(self) -> None:
        """
        Check numeric limits.

        Raises:
            ConfigError: If a limit is out of range.
        """
        if self.loop.max_loops < 1:
            raise ConfigError(f"loop.max_loops must be a positive integer (got: {self.loop.max_loops})")
        if self.loop.max_review_fix_loops < 1:
            raise ConfigError(
                "loop.max_review_fix_loops must be a positive integer "
                f"(got: {self.loop.max_review_fix_loops})"
            )
        if self.loop.max_tasks_per_run < 0:
            raise ConfigError(
                f"loop.max_tasks_per_run must be >= 0 (got: {self.loop.max_tasks_per_run})"
            )
        if self.circuit_breaker.no_progress_threshold < 1:
            raise ConfigError(
                "circuit_breaker.no_progress_threshold must be a positive integer "
                f"(got: {self.circuit_breaker.no_progress_threshold})"
            )
        if self.circuit_breaker.cooldown_minutes < 0:
            raise ConfigError(
                f"circuit_breaker.cooldown_minutes must be >= 0 (got: {self.circuit_breaker.cooldown_minutes})"
            )


def _resolve_env_vars(value: Any) -> Any:
    """
    Resolve ${VAR} references in strings, recursively through dicts and lists.
    """
    if isinstance(value, str):
        pattern = re.compile(r'\$\{([A-Za-z_][A-Za-z0-9_]*)\}')

        def replace(match: re.Match) -> str:
            var_name = match.group(1)
            env_value = os.environ.get(var_name)
            if env_value is None:
                raise ConfigError(f"Environment variable ${{{var_name}}} is not set")
            return env_value

        return pattern.sub(replace, value)

    if isinstance(value, dict):
        return {k: _resolve_env_vars(v) for k, v in value.items()}

    if isinstance(value, list):
        return [_resolve_env_vars(item) for item in value]

    return value


def _as_int(value: Any, name: str) -> int:
    if isinstance(value, bool):
        raise ConfigError(f"{name} must be an integer (got: {value!r})")
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ConfigError(f"{name} must be an integer (got: {value!r})")


def _split_args(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, list):
        return [str(v) for v in value]
    return shlex.split(str(value))


def _parse_project_config(data: dict[str, Any]) -> ProjectConfig:
    """Parse project configuration from dict."""
    return ProjectConfig(
        type=data.get("type", "") or "",
        verify_command=data.get("verify_command", "") or "",
        test_command=data.get("test_command", "") or "",
    )


def _parse_claude_config(data: dict[str, Any]) -> ClaudeConfig:
    """Parse Claude configuration from dict."""
    return ClaudeConfig(
        binary=data.get("binary") or os.environ.get("CLAUDE_BIN", "claude"),
        model=data.get("model", "") or "",
        extra_args=_split_args(data.get("extra_args", os.environ.get("CLAUDE_EXTRA_ARGS"))),
    )


def _parse_loop_config(data: dict[str, Any]) -> LoopConfig:
    """Parse loop limits from dict."""
    return LoopConfig(
        max_loops=_as_int(data.get("max_loops", DEFAULT_MAX_LOOPS), "loop.max_loops"),
        max_review_fix_loops=_as_int(
            data.get("max_review_fix_loops", DEFAULT_MAX_REVIEW_FIX_LOOPS),
            "loop.max_review_fix_loops",
        ),
        max_tasks_per_run=_as_int(
            data.get("max_tasks_per_run", DEFAULT_MAX_TASKS_PER_RUN),
            "loop.max_tasks_per_run",
        ),
    )


def _parse_circuit_breaker_config(data: dict[str, Any]) -> CircuitBreakerConfig:
    """Parse circuit breaker configuration from dict."""
    return CircuitBreakerConfig(
        no_progress_threshold=_as_int(
            data.get("no_progress_threshold", DEFAULT_CB_NO_PROGRESS_THRESHOLD),
            "circuit_breaker.no_progress_threshold",
        ),
        cooldown_minutes=_as_int(
            data.get("cooldown_minutes", DEFAULT_CB_COOLDOWN_MINUTES),
            "circuit_breaker.cooldown_minutes",
        ),
    )


def apply_env_overrides(config: SpecLoopConfig) -> SpecLoopConfig:
    """
    Apply SPECLOOP_* environment overrides in place.

    Integer overrides that do not parse are ignored.
    """
    int_overrides = {
        "SPECLOOP_MAX_LOOPS": "max_loops",
        "SPECLOOP_MAX_REVIEW_FIX_LOOPS": "max_review_fix_loops",
        "SPECLOOP_MAX_TASKS_PER_RUN": "max_tasks_per_run",
    }
    for env_var, attr in int_overrides.items():
        raw = os.environ.get(env_var)
        if raw is None:
            continue
        try:
            setattr(config.loop, attr, int(raw))
        except ValueError:
            continue

    if os.environ.get("SPECLOOP_SPECS_DIR"):
        config.specs_dir = os.environ["SPECLOOP_SPECS_DIR"]
    if os.environ.get("SPECLOOP_SESSION_DIR"):
        config.session_dir = os.environ["SPECLOOP_SESSION_DIR"]

    return config


def apply_run_overrides(
    config: SpecLoopConfig,
    *,
    max_loops: Optional[int] = None,
    max_review_fix_loops: Optional[int] = None,
    max_tasks: Optional[int] = None,
) -> SpecLoopConfig:
    """Apply CLI flag overrides in place and re-validate."""
    if max_loops is not None:
        config.loop.max_loops = max_loops
    if max_review_fix_loops is not None:
        config.loop.max_review_fix_loops = max_review_fix_loops
    if max_tasks is not None:
        config.loop.max_tasks_per_run = max_tasks
    config.validate()
    return config


def default_config(repo_root: str = ".") -> SpecLoopConfig:
    """Defaults plus environment overrides, without reading any file."""
    config = SpecLoopConfig(repo_root=repo_root, claude=_parse_claude_config({}))
    return apply_env_overrides(config)


def load_config(config_path: Optional[str] = None) -> SpecLoopConfig:
    """
    Load configuration from spec-loop.yaml.

    Args:
        config_path: Optional path to config file. If not provided,
                     looks for spec-loop.yaml in the current directory.

    Returns:
        SpecLoopConfig: Loaded and validated configuration.

    Raises:
        ConfigError: If config is invalid or cannot be loaded.
    """
    path = Path(config_path) if config_path else Path(CONFIG_FILENAME)
    if not path.exists():
        raise ConfigError(f"Configuration file not found: {path}")

    try:
        with open(path, "r", encoding="utf-8") as f:
            raw_data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in config file: {e}")

    if not raw_data:
        raise ConfigError("Configuration file is empty")
    if not isinstance(raw_data, dict):
        raise ConfigError("Configuration file must contain a mapping")

    data = _resolve_env_vars(raw_data)

    config = SpecLoopConfig(
        repo_root=data.get("repo_root") or str(path.absolute().parent),
        specs_dir=data.get("specs_dir", DEFAULT_SPECS_DIR),
        state_dir=data.get("state_dir", DEFAULT_STATE_DIR),
        session_dir=data.get("session_dir", "") or "",
        project=_parse_project_config(data.get("project") or {}),
        claude=_parse_claude_config(data.get("claude") or {}),
        loop=_parse_loop_config(data.get("loop") or {}),
        circuit_breaker=_parse_circuit_breaker_config(data.get("circuit_breaker") or {}),
    )
    apply_env_overrides(config)
    config.validate()
    return config


# Project detection for `spec-loop init`

_PROJECT_MARKERS: list[tuple[tuple[str, ...], str]] = [
    (("tsconfig.json",), "typescript"),
    (("package.json",), "javascript"),
    (("pyproject.toml", "setup.py", "setup.cfg"), "python"),
    (("Cargo.toml",), "rust"),
    (("go.mod",), "go"),
    (("Gemfile",), "ruby"),
    (("build.gradle", "build.gradle.kts"), "java"),
    (("Package.swift",), "swift"),
]

VERIFY_COMMANDS = {
    "typescript": "npm run lint && npm run typecheck",
    "javascript": "npm run lint",
    "python": "python -m py_compile",
    "rust": "cargo clippy && cargo check",
    "go": "go vet ./...",
    "ruby": "bundle exec rubocop",
    "java": "./gradlew check",
    "swift": "swift build",
}

TEST_COMMANDS = {
    "typescript": "npm test",
    "javascript": "npm test",
    "python": "python -m pytest",
    "rust": "cargo test",
    "go": "go test ./...",
    "ruby": "bundle exec rspec",
    "java": "./gradlew test",
    "swift": "swift test",
}


def detect_project_type(root: Path) -> str:
    """Guess the project type from marker files in root."""
    for markers, project_type in _PROJECT_MARKERS:
        if any((root / marker).exists() for marker in markers):
            return project_type
    return "generic"


def render_config_yaml(project: ProjectConfig) -> str:
    """Render the commented spec-loop.yaml written by `spec-loop init`."""
    body = yaml.safe_dump(
        {
            "project": {
                "type": project.type,
                "verify_command": project.verify_command,
                "test_command": project.test_command,
            }
        },
        sort_keys=False,
    )
    return (
        "# spec-loop configuration\n"
        "# Generated by spec-loop init\n\n"
        f"{body}\n"
        "# claude:\n"
        "#   binary: claude\n"
        "#   model: \"\"\n"
        "#   extra_args: []\n\n"
        "# loop:\n"
        f"#   max_loops: {DEFAULT_MAX_LOOPS}\n"
        f"#   max_review_fix_loops: {DEFAULT_MAX_REVIEW_FIX_LOOPS}\n"
        "#   max_tasks_per_run: 0\n\n"
        "# circuit_breaker:\n"
        f"#   no_progress_threshold: {DEFAULT_CB_NO_PROGRESS_THRESHOLD}\n"
        f"#   cooldown_minutes: {DEFAULT_CB_COOLDOWN_MINUTES}\n\n"
        f"# specs_dir: {DEFAULT_SPECS_DIR}\n"
        f"# state_dir: {DEFAULT_STATE_DIR}\n"
    )
