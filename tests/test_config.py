"""
Test HermesConfig loading and validation
"""

import os
import sys
sys.path.insert(0, '.')

import pytest

from hermes.config import HermesConfig
from hermes.errors import ConfigError


def write_config(project, text):
    path = project / ".hermes" / "config.yaml"
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text)
    return path


def test_defaults(tmp_path):
    config = HermesConfig.load(str(tmp_path), use_env=False)

    assert config.parallel.enabled is False
    assert config.parallel.max_workers == 3
    assert config.parallel.conflict_resolution == "ai-assisted"
    assert config.ai.command == ["claude", "-p"]
    assert config.ai.max_retries == 3
    assert config.task_mode.auto_commit is True
    assert config.paths.tasks_dir == ".hermes/tasks"


def test_yaml_with_camel_case_keys(tmp_path):
    """Test YAML values override defaults, camelCase keys included"""
    print("\n=== Test: YAML Config ===")

    write_config(tmp_path, """
ai:
  command: "my-agent --print"
  maxRetries: 5
  timeout: 120
taskMode:
  autoCommit: false
parallel:
  enabled: true
  maxWorkers: 5
  conflictResolution: take-first
  failureStrategy: fail-fast
""")
    config = HermesConfig.load(str(tmp_path), use_env=False)

    assert config.ai.command == ["my-agent", "--print"]
    assert config.ai.max_retries == 5
    assert config.ai.timeout == 120
    assert config.task_mode.auto_commit is False
    assert config.parallel.enabled is True
    assert config.parallel.max_workers == 5
    assert config.parallel.conflict_resolution == "take-first"
    assert config.parallel.failure_strategy == "fail-fast"
    print("[PASS]")


def test_unknown_keys_are_ignored(tmp_path):
    write_config(tmp_path, "parallel:\n  maxWorkers: 2\n  turbo: true\nextras:\n  a: 1\n")
    config = HermesConfig.load(str(tmp_path), use_env=False)

    assert config.parallel.max_workers == 2
    assert not hasattr(config.parallel, "turbo")


def test_env_overrides():
    config = HermesConfig()
    config.apply_env({
        "HERMES_MAX_WORKERS": "7",
        "HERMES_PARALLEL": "yes",
        "HERMES_AI_COMMAND": "agent run",
        "HERMES_CONFLICT_RESOLUTION": "manual",
        "HERMES_MAX_COST_PER_HOUR": "2.5",
    })

    assert config.parallel.max_workers == 7
    assert config.parallel.enabled is True
    assert config.ai.command == ["agent", "run"]
    assert config.parallel.conflict_resolution == "manual"
    assert config.parallel.max_cost_per_hour == 2.5


def test_env_file_is_loaded(tmp_path, monkeypatch):
    monkeypatch.delenv("HERMES_MAX_WORKERS", raising=False)
    (tmp_path / ".env").write_text("HERMES_MAX_WORKERS=4\n")

    try:
        config = HermesConfig.load(str(tmp_path))
    finally:
        os.environ.pop("HERMES_MAX_WORKERS", None)

    assert config.parallel.max_workers == 4


def test_env_file_is_read_before_yaml(tmp_path, monkeypatch):
    """Test .env is loaded ahead of config.yaml and its HERMES_* values win"""
    monkeypatch.delenv("HERMES_MAX_WORKERS", raising=False)
    (tmp_path / ".env").write_text("HERMES_MAX_WORKERS=6\n")
    write_config(tmp_path, "parallel:\n  maxWorkers: 2\n")
    try:
        config = HermesConfig.load(str(tmp_path))
    finally:
        os.environ.pop("HERMES_MAX_WORKERS", None)
    assert config.parallel.max_workers == 6

    (tmp_path / ".env").write_text("HERMES_MAX_WORKERS=5\n")
    write_config(tmp_path, "parallel: [unclosed\n")
    try:
        with pytest.raises(ConfigError):
            HermesConfig.load(str(tmp_path))
        assert os.environ.get("HERMES_MAX_WORKERS") == "5"
    finally:
        os.environ.pop("HERMES_MAX_WORKERS", None)


@pytest.mark.parametrize("text", [
    "parallel:\n  maxWorkers: 11\n",
    "parallel:\n  maxWorkers: 0\n",
    "parallel:\n  conflictResolution: coin-flip\n",
    "parallel:\n  failureStrategy: retry-forever\n",
    "ai:\n  maxRetries: 0\n",
])
def test_invalid_values_raise(tmp_path, text):
    write_config(tmp_path, text)

    with pytest.raises(ConfigError):
        HermesConfig.load(str(tmp_path), use_env=False)


def test_invalid_yaml_raises(tmp_path):
    write_config(tmp_path, "parallel: [unclosed\n")

    with pytest.raises(ConfigError):
        HermesConfig.load(str(tmp_path), use_env=False)


def test_non_integer_env_raises():
    with pytest.raises(ConfigError):
        HermesConfig().apply_env({"HERMES_MAX_WORKERS": "many"})


def test_to_dict():
    data = HermesConfig().to_dict()

    assert data["parallel"]["max_workers"] == 3
    assert data["ai"]["provider"] == "claude"
