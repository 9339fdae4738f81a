"""
taskwave: unit tests for config loader

Purpose
- Validate deterministic config loading from defaults, TOML, env overrides, and CLI overrides.

What this test file should cover
- Precedence: CLI > env > file > defaults.
- Env var path mapping and type coercion.
- Path normalization relative to the config file.
- Error reporting for missing files, bad TOML and invalid values.
"""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from taskwave.config import (
    ConfigLoadError,
    ConfigValidationError,
    dump_effective_config,
    load_config,
)


def _write_config(path: Path, text: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")


def test_loader_precedence_default_file_env_cli(tmp_path: Path) -> None:
    config_path = tmp_path / "taskwave.toml"
    default_path = tmp_path / "default.toml"
    _write_config(default_path, "")
    _write_config(
        config_path,
        """
[delegation]
max_parallel = 4
""".strip(),
    )

    default_loaded = load_config(default_path, environ={})
    file_loaded = load_config(config_path, environ={})
    env_loaded = load_config(config_path, environ={"TASKWAVE_DELEGATION_MAX_PARALLEL": "6"})
    cli_loaded = load_config(
        config_path,
        environ={"TASKWAVE_DELEGATION_MAX_PARALLEL": "6"},
        cli_overrides={"delegation.max_parallel": 7},
    )

    assert default_loaded["delegation"]["max_parallel"] == 3
    assert file_loaded["delegation"]["max_parallel"] == 4
    assert env_loaded["delegation"]["max_parallel"] == 6
    assert cli_loaded["delegation"]["max_parallel"] == 7


def test_env_mapping_coerces_each_kind(tmp_path: Path) -> None:
    config_path = tmp_path / "taskwave.toml"
    _write_config(config_path, "")

    loaded = load_config(
        config_path,
        environ={
            "TASKWAVE_DELEGATION_MODE": "bounded-recursive",
            "TASKWAVE_CORRECTION_MAX_TOTAL_CORRECTIONS": " 9 ",
            "TASKWAVE_CORRECTION_BOOST_COMPLEXITY_ON_CORRECTION": "off",
            "TASKWAVE_OBSERVABILITY_LOG_LEVEL": "DEBUG",
            "UNRELATED_VARIABLE": "ignored",
        },
    )

    assert loaded["delegation"]["mode"] == "bounded-recursive"
    assert loaded["correction"]["max_total_corrections"] == 9
    assert loaded["correction"]["boost_complexity_on_correction"] is False
    assert loaded["observability"]["log_level"] == "DEBUG"


@pytest.mark.parametrize(
    ("name", "value", "message"),
    [
        ("TASKWAVE_DELEGATION_MAX_DEPTH", "deep", "must be an integer"),
        ("TASKWAVE_STORAGE_ALLOW_DIRECT_WRITE_FALLBACK", "maybe", "must be a boolean"),
    ],
)
def test_invalid_env_coercion_raises_actionable_error(
    tmp_path: Path, name: str, value: str, message: str
) -> None:
    config_path = tmp_path / "taskwave.toml"
    _write_config(config_path, "")

    with pytest.raises(ConfigLoadError, match=message) as exc_info:
        load_config(config_path, environ={name: value})
    assert name in str(exc_info.value)


def test_cli_overrides_skip_none_and_accept_nested_mappings(tmp_path: Path) -> None:
    config_path = tmp_path / "taskwave.toml"
    _write_config(config_path, "")

    loaded = load_config(
        config_path,
        environ={},
        cli_overrides={
            "delegation.max_parallel": None,
            "correction": {"max_corrections_per_task": 4},
        },
    )

    assert loaded["delegation"]["max_parallel"] == 3
    assert loaded["correction"]["max_corrections_per_task"] == 4
    assert loaded["correction"]["max_total_corrections"] == 5


def test_missing_explicit_config_file_is_an_error(tmp_path: Path) -> None:
    with pytest.raises(ConfigLoadError, match="config file not found"):
        load_config(tmp_path / "absent.toml", environ={})


def test_missing_default_config_file_uses_defaults(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.chdir(tmp_path)

    loaded = load_config(environ={})

    assert loaded["delegation"]["mode"] == "leaf-only"
    assert loaded["storage"]["state_dir"] == (tmp_path.resolve() / ".taskwave/state").as_posix()


def test_invalid_toml_is_reported(tmp_path: Path) -> None:
    config_path = tmp_path / "taskwave.toml"
    _write_config(config_path, "[delegation\nmax_parallel = 1\n")

    with pytest.raises(ConfigLoadError, match="invalid TOML"):
        load_config(config_path, environ={})


def test_invalid_values_list_every_issue(tmp_path: Path) -> None:
    config_path = tmp_path / "taskwave.toml"
    _write_config(
        config_path,
        """
[delegation]
mode = "anything-goes"
max_parallel = -1

[storage]
retention_days = 3
""".strip(),
    )

    with pytest.raises(ConfigValidationError) as exc_info:
        load_config(config_path, environ={})

    paths = {issue.path for issue in exc_info.value.issues}
    assert paths == {"delegation.mode", "delegation.max_parallel", "storage.retention_days"}
    assert str(exc_info.value).startswith("invalid config:\n- ")


def test_path_normalization_is_relative_to_config_file(tmp_path: Path) -> None:
    config_path = tmp_path / "nested" / "taskwave.toml"
    _write_config(
        config_path,
        """
[storage]
state_dir = "run/state"

[observability]
log_dir = "/var/log/taskwave/../taskwave"
""".strip(),
    )

    loaded = load_config(config_path, environ={})
    base = config_path.resolve().parent

    assert loaded["storage"]["state_dir"] == (base / "run/state").as_posix()
    assert loaded["observability"]["log_dir"] == "/var/log/taskwave"
    assert loaded["worktrees"]["base_dir"] == ""


def test_dump_effective_config_is_deterministic(tmp_path: Path) -> None:
    config_path = tmp_path / "taskwave.toml"
    _write_config(config_path, "")

    first = dump_effective_config(load_config(config_path, environ={}))
    second = dump_effective_config(load_config(config_path, environ={}))

    assert first == second
    payload = json.loads(first)
    assert list(payload) == sorted(payload)
    assert payload["meta"] == {"schema_version": 1}
