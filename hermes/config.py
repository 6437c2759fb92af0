"""
Hermes Configuration
====================

Typed configuration for the task loop, agent invocation and parallel
execution.

Loading reads the project ``.env`` into the environment first, then layers
values in this order (later wins):
1. Dataclass defaults
2. ``.hermes/config.yaml`` in the project
3. ``HERMES_*`` environment variables
"""

from dataclasses import dataclass, field, asdict, fields
from pathlib import Path
from typing import Any, Dict, List, Optional
import logging
import os
import re
import shlex

import yaml
from dotenv import load_dotenv

from hermes.errors import ConfigError

logger = logging.getLogger(__name__)

CONFIG_FILE = Path(".hermes") / "config.yaml"

CONFLICT_RESOLUTION_CHOICES = ("ai-assisted", "take-first", "take-last", "manual")
FAILURE_STRATEGY_CHOICES = ("continue", "fail-fast")


@dataclass
class AIConfig:
    """
    Agent invocation settings.

    Attributes:
        provider: Provider name (informational, used in logs)
        command: Agent command line; the prompt is appended as the last argument
        timeout: Per-invocation budget in seconds
        max_retries: Attempts per task before it is marked BLOCKED
        retry_delay: Initial backoff delay in seconds
        max_retry_delay: Backoff ceiling in seconds
        stream_output: Consume the provider's streaming variant
    """
    provider: str = "claude"
    command: List[str] = field(default_factory=lambda: ["claude", "-p"])
    timeout: int = 300
    max_retries: int = 3
    retry_delay: float = 5.0
    max_retry_delay: float = 60.0
    stream_output: bool = False


@dataclass
class TaskModeConfig:
    auto_commit: bool = True
    autonomous: bool = True
    max_consecutive_errors: int = 5


@dataclass
class LoopConfig:
    max_calls_per_hour: int = 100
    error_delay: float = 10.0


@dataclass
class PathsConfig:
    hermes_dir: str = ".hermes"
    tasks_dir: str = ".hermes/tasks"
    logs_dir: str = ".hermes/logs"


@dataclass
class ParallelConfig:
    """
    Parallel execution settings.

    Attributes:
        enabled: Run batches through the parallel executor
        max_workers: Concurrent agents (1-10)
        conflict_resolution: Strategy for high severity conflicts
        isolated_workspaces: One git worktree per task
        worktree_dir: Root for worktrees (defaults to a per-repo temp directory)
        failure_strategy: "continue" or "fail-fast"
        max_cost_per_hour: USD ceiling for agent calls (0 = unlimited)
        semantic_check: Ask the agent for semantic conflicts after auto-merges
    """
    enabled: bool = False
    max_workers: int = 3
    conflict_resolution: str = "ai-assisted"
    isolated_workspaces: bool = True
    worktree_dir: Optional[str] = None
    failure_strategy: str = "continue"
    max_cost_per_hour: float = 0.0
    semantic_check: bool = False


@dataclass
class HermesConfig:
    """Complete hermes configuration."""
    ai: AIConfig = field(default_factory=AIConfig)
    task_mode: TaskModeConfig = field(default_factory=TaskModeConfig)
    loop: LoopConfig = field(default_factory=LoopConfig)
    paths: PathsConfig = field(default_factory=PathsConfig)
    parallel: ParallelConfig = field(default_factory=ParallelConfig)

    @classmethod
    def load(cls, project_path: str = ".", use_env: bool = True) -> "HermesConfig":
        """
        Load configuration for a project.

        Args:
            project_path: Project root containing ``.hermes/``
            use_env: Apply ``.env`` and ``HERMES_*`` overrides

        Returns:
            Validated HermesConfig

        Raises:
            ConfigError: If the config file is unreadable or values are invalid
        """
        root = Path(project_path)
        config = cls()

        if use_env:
            load_dotenv(root / ".env")

        config_path = root / CONFIG_FILE
        if config_path.exists():
            try:
                data = yaml.safe_load(config_path.read_text(encoding="utf-8")) or {}
            except yaml.YAMLError as e:
                raise ConfigError(f"Invalid YAML in {config_path}: {e}")
            if not isinstance(data, dict):
                raise ConfigError(f"{config_path} must contain a mapping")
            config.apply(data)
            logger.debug(f"Loaded configuration from {config_path}")

        if use_env:
            config.apply_env(os.environ)

        config.validate()
        return config

    def apply(self, data: Dict[str, Any]) -> None:
        """Merge a (possibly camelCase) mapping into this config."""
        for section_name, values in data.items():
            section_key = _snake(section_name)
            section = getattr(self, section_key, None)
            if section is None or not isinstance(values, dict):
                logger.warning(f"Ignoring unknown config section: {section_name}")
                continue
            known = {f.name for f in fields(section)}
            for key, value in values.items():
                attr = _snake(key)
                if attr not in known:
                    logger.warning(f"Ignoring unknown config key: {section_name}.{key}")
                    continue
                if attr == "command" and isinstance(value, str):
                    value = shlex.split(value)
                setattr(section, attr, value)

    def apply_env(self, env: Dict[str, str]) -> None:
        """Apply ``HERMES_*`` environment overrides."""
        if env.get("HERMES_MAX_WORKERS"):
            self.parallel.max_workers = _to_int("HERMES_MAX_WORKERS", env["HERMES_MAX_WORKERS"])
        if env.get("HERMES_AI_TIMEOUT"):
            self.ai.timeout = _to_int("HERMES_AI_TIMEOUT", env["HERMES_AI_TIMEOUT"])
        if env.get("HERMES_AI_COMMAND"):
            self.ai.command = shlex.split(env["HERMES_AI_COMMAND"])
        if env.get("HERMES_PARALLEL"):
            self.parallel.enabled = env["HERMES_PARALLEL"].strip().lower() in ("1", "true", "yes", "on")
        if env.get("HERMES_CONFLICT_RESOLUTION"):
            self.parallel.conflict_resolution = env["HERMES_CONFLICT_RESOLUTION"].strip()
        if env.get("HERMES_WORKTREE_DIR"):
            self.parallel.worktree_dir = env["HERMES_WORKTREE_DIR"]
        if env.get("HERMES_MAX_COST_PER_HOUR"):
            try:
                self.parallel.max_cost_per_hour = float(env["HERMES_MAX_COST_PER_HOUR"])
            except ValueError:
                raise ConfigError(f"HERMES_MAX_COST_PER_HOUR must be a number (got {env['HERMES_MAX_COST_PER_HOUR']!r})")

    def validate(self) -> None:
        """Raise ConfigError for out-of-range values."""
        if not 1 <= self.parallel.max_workers <= 10:
            raise ConfigError(f"parallel.max_workers must be between 1 and 10 (got {self.parallel.max_workers})")
        if self.parallel.conflict_resolution not in CONFLICT_RESOLUTION_CHOICES:
            raise ConfigError(
                f"parallel.conflict_resolution must be one of {', '.join(CONFLICT_RESOLUTION_CHOICES)}"
            )
        if self.parallel.failure_strategy not in FAILURE_STRATEGY_CHOICES:
            raise ConfigError(
                f"parallel.failure_strategy must be one of {', '.join(FAILURE_STRATEGY_CHOICES)}"
            )
        if self.ai.max_retries < 1:
            raise ConfigError("ai.max_retries must be at least 1")
        if self.ai.timeout <= 0:
            raise ConfigError("ai.timeout must be positive")
        if not self.ai.command:
            raise ConfigError("ai.command must not be empty")

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _snake(name: str) -> str:
    return re.sub(r"(?<!^)(?=[A-Z])", "_", name).lower()


def _to_int(name: str, value: str) -> int:
    try:
        return int(value)
    except ValueError:
        raise ConfigError(f"{name} must be an integer (got {value!r})")
