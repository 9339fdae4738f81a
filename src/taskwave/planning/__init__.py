"""Planning layer: dependency graphs and wave scheduling."""

from taskwave.planning.task_graph import (
    CycleError,
    GraphValidationResult,
    MissingDependencyError,
    StructuralError,
    TaskGraph,
    compute_waves,
    downstream_of,
    validate_plan,
)

__all__ = [
    "CycleError",
    "GraphValidationResult",
    "MissingDependencyError",
    "StructuralError",
    "TaskGraph",
    "compute_waves",
    "downstream_of",
    "validate_plan",
]
