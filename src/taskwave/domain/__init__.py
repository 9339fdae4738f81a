"""Domain model: plans, tasks, waves and work streams."""

from taskwave.domain.models import (
    ExecutionStrategy,
    Plan,
    Task,
    TaskComplexity,
    TaskResult,
    TaskStatus,
    Wave,
    WorkStream,
    WorkStreamStatus,
    WorkStreamSummary,
)

__all__ = [
    "ExecutionStrategy",
    "Plan",
    "Task",
    "TaskComplexity",
    "TaskResult",
    "TaskStatus",
    "Wave",
    "WorkStream",
    "WorkStreamStatus",
    "WorkStreamSummary",
]
