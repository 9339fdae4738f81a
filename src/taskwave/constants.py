"""Stable constants shared across orchestrator planes."""

from __future__ import annotations

from pathlib import PurePosixPath
from typing import Final

# Git branch naming for isolated work-stream checkouts.
DEFAULT_WORK_BRANCH_PREFIX: Final[str] = "taskwave"
WORKTREES_DIR_NAME: Final[str] = "taskwave-worktrees"

# Schema versions for persisted contracts.
CONFIG_SCHEMA_VERSION: Final[int] = 1
PLAN_SCHEMA_VERSION: Final[int] = 1
STREAM_REGISTRY_SCHEMA_VERSION: Final[int] = 1

# Default runtime paths (relative to the config file unless overridden).
STATE_DIR: Final[PurePosixPath] = PurePosixPath(".taskwave/state")
LOG_DIR: Final[PurePosixPath] = PurePosixPath(".taskwave/logs")
STREAM_REGISTRY_FILE: Final[str] = "work-streams.json"
EXECUTION_LOG_FILE: Final[str] = "execution-log.md"

# Temp-file naming used by atomic writes; cleanup scans for the same shape.
TEMP_FILE_PREFIX: Final[str] = "."
TEMP_FILE_SUFFIX: Final[str] = ".tmp"

# Complexity ladder, lowest first.
COMPLEXITY_LADDER: Final[tuple[str, ...]] = (
    "trivial",
    "simple",
    "moderate",
    "complex",
    "expert",
)

# Worktree directories older than this are treated as abandoned by earlier sessions.
ORPHAN_WORKTREE_MAX_AGE_SECONDS: Final[int] = 60 * 60

__all__ = [
    "COMPLEXITY_LADDER",
    "CONFIG_SCHEMA_VERSION",
    "DEFAULT_WORK_BRANCH_PREFIX",
    "EXECUTION_LOG_FILE",
    "LOG_DIR",
    "ORPHAN_WORKTREE_MAX_AGE_SECONDS",
    "PLAN_SCHEMA_VERSION",
    "STATE_DIR",
    "STREAM_REGISTRY_FILE",
    "STREAM_REGISTRY_SCHEMA_VERSION",
    "TEMP_FILE_PREFIX",
    "TEMP_FILE_SUFFIX",
    "WORKTREES_DIR_NAME",
]
