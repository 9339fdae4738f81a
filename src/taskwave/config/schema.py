"""
Typed config schema, defaults and strict validation for ``taskwave.toml``.

Validation never raises on bad input; it collects ``ConfigValidationIssue``
items with dotted paths so every problem in a file is reported at once.
``assert_valid_config`` is the raising wrapper used by the loader.
"""

from __future__ import annotations

import copy
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from typing import Any, Final, TypedDict

from taskwave.constants import CONFIG_SCHEMA_VERSION, LOG_DIR, STATE_DIR, STREAM_REGISTRY_FILE
from taskwave.control_plane.correction import CorrectionConfig
from taskwave.control_plane.delegation import DelegationMode, DelegationPolicy

PATH_FIELDS: Final[tuple[tuple[str, ...], ...]] = (
    ("storage", "state_dir"),
    ("worktrees", "base_dir"),
    ("observability", "log_dir"),
)

_LOG_LEVELS: Final[tuple[str, ...]] = ("DEBUG", "INFO", "WARNING", "ERROR")
_LOG_FORMATS: Final[tuple[str, ...]] = ("json", "console")


class MetaConfig(TypedDict):
    schema_version: int


class DelegationSection(TypedDict):
    mode: str
    max_depth: int
    max_parallel: int
    runaway_threshold: int


class CorrectionSection(TypedDict):
    max_corrections_per_task: int
    max_total_corrections: int
    boost_complexity_on_correction: bool


class StorageSection(TypedDict):
    state_dir: str
    stream_registry: str
    allow_direct_write_fallback: bool


class WorktreesSection(TypedDict):
    base_dir: str
    branch_prefix: str


class ObservabilitySection(TypedDict):
    log_level: str
    log_format: str
    log_dir: str


class TaskwaveConfig(TypedDict):
    meta: MetaConfig
    delegation: DelegationSection
    correction: CorrectionSection
    storage: StorageSection
    worktrees: WorktreesSection
    observability: ObservabilitySection


# An empty base_dir means "use the system temp directory".
DEFAULT_CONFIG: Final[TaskwaveConfig] = {
    "meta": {"schema_version": CONFIG_SCHEMA_VERSION},
    "delegation": {
        "mode": DelegationMode.LEAF_ONLY.value,
        "max_depth": 1,
        "max_parallel": 3,
        "runaway_threshold": 5,
    },
    "correction": {
        "max_corrections_per_task": 2,
        "max_total_corrections": 5,
        "boost_complexity_on_correction": True,
    },
    "storage": {
        "state_dir": STATE_DIR.as_posix(),
        "stream_registry": STREAM_REGISTRY_FILE,
        "allow_direct_write_fallback": True,
    },
    "worktrees": {
        "base_dir": "",
        "branch_prefix": "taskwave",
    },
    "observability": {
        "log_level": "INFO",
        "log_format": "json",
        "log_dir": LOG_DIR.as_posix(),
    },
}


@dataclass(frozen=True, slots=True)
class ConfigValidationIssue:
    """Single structured validation failure."""

    path: str
    message: str


class ConfigValidationError(ValueError):
    """Raised when strict config validation fails."""

    def __init__(self, issues: Sequence[ConfigValidationIssue]) -> None:
        self.issues = tuple(issues)
        if not self.issues:
            rendered = "unknown validation failure"
        else:
            rendered = "\n".join(f"- {item.path}: {item.message}" for item in self.issues)
        super().__init__(f"invalid config:\n{rendered}")


class _IssueCollector:
    __slots__ = ("_items",)

    def __init__(self) -> None:
        self._items: list[ConfigValidationIssue] = []

    def add(self, path: str, message: str) -> None:
        self._items.append(ConfigValidationIssue(path=path, message=message))

    def items(self) -> list[ConfigValidationIssue]:
        return list(self._items)


def default_config() -> TaskwaveConfig:
    """Return a deep copy of the built-in defaults."""

    return copy.deepcopy(DEFAULT_CONFIG)


def merge_config(base: Mapping[str, object], overlay: Mapping[str, object]) -> dict[str, Any]:
    """Deep-merge ``overlay`` onto a copy of ``base``."""

    merged = _deep_copy_mapping(base)
    _merge_into(merged, overlay)
    return merged


def validate_config(config: Mapping[str, object] | object) -> list[ConfigValidationIssue]:
    """Return every problem found in ``config``; an empty list means valid."""

    issues = _IssueCollector()
    if not isinstance(config, Mapping):
        issues.add("<root>", f"expected object, got {type(config).__name__}")
        return issues.items()

    validators: dict[str, Callable[[Mapping[str, object], str, _IssueCollector], None]] = {
        "meta": _validate_meta,
        "delegation": _validate_delegation,
        "correction": _validate_correction,
        "storage": _validate_storage,
        "worktrees": _validate_worktrees,
        "observability": _validate_observability,
    }
    _reject_unknown_keys(config, set(validators), "", issues)
    for key in sorted(validators):
        raw = config.get(key)
        if raw is None:
            issues.add(key, "missing required section")
            continue
        if not isinstance(raw, Mapping):
            issues.add(key, f"expected object, got {type(raw).__name__}")
            continue
        validators[key](raw, key, issues)
    return issues.items()


def assert_valid_config(config: Mapping[str, object] | object) -> dict[str, Any]:
    """Validate config and raise ``ConfigValidationError`` on failure."""

    issues = validate_config(config)
    if issues:
        raise ConfigValidationError(issues)
    assert isinstance(config, Mapping)
    return _deep_copy_mapping(config)


def delegation_policy_from_config(config: Mapping[str, Any]) -> DelegationPolicy:
    section = config["delegation"]
    return DelegationPolicy.for_mode(
        section["mode"],
        max_depth=section["max_depth"],
        max_parallel=section["max_parallel"],
        runaway_threshold=section["runaway_threshold"],
    )


def correction_config_from_config(config: Mapping[str, Any]) -> CorrectionConfig:
    section = config["correction"]
    return CorrectionConfig(
        max_corrections_per_task=section["max_corrections_per_task"],
        max_total_corrections=section["max_total_corrections"],
        boost_complexity_on_correction=section["boost_complexity_on_correction"],
    )


def _validate_meta(payload: Mapping[str, object], path: str, issues: _IssueCollector) -> None:
    _reject_unknown_keys(payload, {"schema_version"}, path, issues)
    _require_keys(payload, {"schema_version"}, path, issues)
    if "schema_version" in payload:
        version = _as_int(payload["schema_version"], _join(path, "schema_version"), issues, 1)
        if version is not None and version != CONFIG_SCHEMA_VERSION:
            issues.add(
                _join(path, "schema_version"),
                f"unsupported schema version {version}; expected {CONFIG_SCHEMA_VERSION}",
            )


def _validate_delegation(
    payload: Mapping[str, object], path: str, issues: _IssueCollector
) -> None:
    allowed = {"mode", "max_depth", "max_parallel", "runaway_threshold"}
    _reject_unknown_keys(payload, allowed, path, issues)
    _require_keys(payload, allowed, path, issues)
    if "mode" in payload:
        _as_enum(
            payload["mode"],
            _join(path, "mode"),
            issues,
            tuple(mode.value for mode in DelegationMode),
        )
    if "max_depth" in payload:
        _as_int(payload["max_depth"], _join(path, "max_depth"), issues, 0)
    if "max_parallel" in payload:
        _as_int(payload["max_parallel"], _join(path, "max_parallel"), issues, 0)
    if "runaway_threshold" in payload:
        _as_int(payload["runaway_threshold"], _join(path, "runaway_threshold"), issues, 1)


def _validate_correction(
    payload: Mapping[str, object], path: str, issues: _IssueCollector
) -> None:
    allowed = {
        "max_corrections_per_task",
        "max_total_corrections",
        "boost_complexity_on_correction",
    }
    _reject_unknown_keys(payload, allowed, path, issues)
    _require_keys(payload, allowed, path, issues)
    for key in ("max_corrections_per_task", "max_total_corrections"):
        if key in payload:
            _as_int(payload[key], _join(path, key), issues, 0)
    if "boost_complexity_on_correction" in payload:
        _as_bool(
            payload["boost_complexity_on_correction"],
            _join(path, "boost_complexity_on_correction"),
            issues,
        )


def _validate_storage(payload: Mapping[str, object], path: str, issues: _IssueCollector) -> None:
    allowed = {"state_dir", "stream_registry", "allow_direct_write_fallback"}
    _reject_unknown_keys(payload, allowed, path, issues)
    _require_keys(payload, allowed, path, issues)
    if "state_dir" in payload:
        _as_path_text(payload["state_dir"], _join(path, "state_dir"), issues)
    if "stream_registry" in payload:
        registry = _as_str(payload["stream_registry"], _join(path, "stream_registry"), issues)
        if registry is not None and ("/" in registry or "\\" in registry):
            issues.add(_join(path, "stream_registry"), "must be a bare file name")
    if "allow_direct_write_fallback" in payload:
        _as_bool(
            payload["allow_direct_write_fallback"],
            _join(path, "allow_direct_write_fallback"),
            issues,
        )


def _validate_worktrees(
    payload: Mapping[str, object], path: str, issues: _IssueCollector
) -> None:
    allowed = {"base_dir", "branch_prefix"}
    _reject_unknown_keys(payload, allowed, path, issues)
    _require_keys(payload, allowed, path, issues)
    if "base_dir" in payload:
        base_dir = payload["base_dir"]
        if not isinstance(base_dir, str):
            issues.add(_join(path, "base_dir"), f"expected string, got {type(base_dir).__name__}")
        elif "\x00" in base_dir:
            issues.add(_join(path, "base_dir"), "must not contain NUL bytes")
    if "branch_prefix" in payload:
        prefix = _as_str(payload["branch_prefix"], _join(path, "branch_prefix"), issues)
        if prefix is not None and (
            " " in prefix or "/" in prefix or ".." in prefix or prefix.startswith("-")
        ):
            issues.add(_join(path, "branch_prefix"), "must be a valid git ref component")


def _validate_observability(
    payload: Mapping[str, object], path: str, issues: _IssueCollector
) -> None:
    allowed = {"log_level", "log_format", "log_dir"}
    _reject_unknown_keys(payload, allowed, path, issues)
    _require_keys(payload, allowed, path, issues)
    if "log_level" in payload:
        _as_enum(payload["log_level"], _join(path, "log_level"), issues, _LOG_LEVELS)
    if "log_format" in payload:
        _as_enum(payload["log_format"], _join(path, "log_format"), issues, _LOG_FORMATS)
    if "log_dir" in payload:
        _as_path_text(payload["log_dir"], _join(path, "log_dir"), issues)


def _as_str(value: object, path: str, issues: _IssueCollector) -> str | None:
    if not isinstance(value, str):
        issues.add(path, f"expected string, got {type(value).__name__}")
        return None
    parsed = value.strip()
    if not parsed:
        issues.add(path, "must not be empty")
        return None
    return parsed


def _as_path_text(value: object, path: str, issues: _IssueCollector) -> str | None:
    parsed = _as_str(value, path, issues)
    if parsed is None:
        return None
    if "\x00" in parsed:
        issues.add(path, "must not contain NUL bytes")
        return None
    return parsed


def _as_bool(value: object, path: str, issues: _IssueCollector) -> bool | None:
    if isinstance(value, bool):
        return value
    issues.add(path, f"expected boolean, got {type(value).__name__}")
    return None


def _as_int(value: object, path: str, issues: _IssueCollector, minimum: int) -> int | None:
    if isinstance(value, bool) or not isinstance(value, int):
        issues.add(path, f"expected integer, got {type(value).__name__}")
        return None
    if value < minimum:
        issues.add(path, f"must be >= {minimum}")
        return None
    return value


def _as_enum(
    value: object,
    path: str,
    issues: _IssueCollector,
    allowed_values: tuple[str, ...],
) -> str | None:
    parsed = _as_str(value, path, issues)
    if parsed is None:
        return None
    if parsed not in allowed_values:
        expected = ", ".join(sorted(allowed_values))
        issues.add(path, f"invalid value {parsed!r}; expected one of: {expected}")
        return None
    return parsed


def _reject_unknown_keys(
    payload: Mapping[str, object],
    allowed: set[str],
    path: str,
    issues: _IssueCollector,
) -> None:
    for key in sorted(str(key) for key in payload):
        if key not in allowed:
            issues.add(_join(path, key), "unknown field")


def _require_keys(
    payload: Mapping[str, object],
    required: set[str],
    path: str,
    issues: _IssueCollector,
) -> None:
    for key in sorted(required):
        if key not in payload:
            issues.add(_join(path, key), "missing required field")


def _join(path: str, key: str) -> str:
    if not path:
        return key
    return f"{path}.{key}"


def _merge_into(target: dict[str, Any], overlay: Mapping[str, object]) -> None:
    for key in sorted(overlay):
        value = overlay[key]
        if isinstance(value, Mapping):
            existing = target.get(key)
            nested = existing if isinstance(existing, dict) else {}
            _merge_into(nested, value)
            target[key] = nested
        else:
            target[key] = copy.deepcopy(value)


def _deep_copy_mapping(value: Mapping[str, object]) -> dict[str, Any]:
    return {key: copy.deepcopy(value[key]) for key in sorted(value)}


__all__ = [
    "DEFAULT_CONFIG",
    "PATH_FIELDS",
    "ConfigValidationError",
    "ConfigValidationIssue",
    "TaskwaveConfig",
    "assert_valid_config",
    "correction_config_from_config",
    "default_config",
    "delegation_policy_from_config",
    "merge_config",
    "validate_config",
]
