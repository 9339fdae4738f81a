"""Integration plane: isolated worktrees and work-stream coordination."""

from taskwave.integration_plane.work_streams import (
    InvalidTransitionError,
    WorkStreamCoordinator,
    load_stream_registry,
)
from taskwave.integration_plane.worktree_manager import (
    IsolationProvider,
    WorktreeInfo,
    WorktreeManager,
    WorktreeMergeResult,
    sanitize_identifier,
)

__all__ = [
    "InvalidTransitionError",
    "IsolationProvider",
    "WorkStreamCoordinator",
    "WorktreeInfo",
    "WorktreeManager",
    "WorktreeMergeResult",
    "load_stream_registry",
    "sanitize_identifier",
]
