"""
Config package public API.

Load ``taskwave.toml`` with ``TASKWAVE_`` environment overrides and turn the
validated sections into delegation and correction settings.
"""

from taskwave.config.loader import (
    DEFAULT_CONFIG_FILE,
    ENV_PREFIX,
    ConfigLoadError,
    dump_effective_config,
    load_config,
    normalize_paths,
)
from taskwave.config.schema import (
    DEFAULT_CONFIG,
    PATH_FIELDS,
    ConfigValidationError,
    ConfigValidationIssue,
    TaskwaveConfig,
    assert_valid_config,
    correction_config_from_config,
    default_config,
    delegation_policy_from_config,
    merge_config,
    validate_config,
)

__all__ = [
    "ConfigLoadError",
    "ConfigValidationError",
    "ConfigValidationIssue",
    "DEFAULT_CONFIG",
    "DEFAULT_CONFIG_FILE",
    "ENV_PREFIX",
    "PATH_FIELDS",
    "TaskwaveConfig",
    "assert_valid_config",
    "correction_config_from_config",
    "default_config",
    "delegation_policy_from_config",
    "dump_effective_config",
    "load_config",
    "merge_config",
    "normalize_paths",
    "validate_config",
]
