"""Control plane: delegation limits, upstream corrections and plan execution."""

from taskwave.control_plane.correction import (
    CORRECTION_SIGNAL_INSTRUCTION,
    CorrectionConfig,
    CorrectionHistory,
    CorrectionManager,
    CorrectionRejection,
    CorrectionRequest,
    CorrectionResult,
    parse_correction_signals,
)
from taskwave.control_plane.delegation import (
    DEFAULT_SIGNAL_PATTERNS,
    BlockLogEntry,
    DelegationDecision,
    DelegationGuard,
    DelegationMode,
    DelegationPolicy,
    DelegationStats,
    DenialReason,
    build_delegation_constraint_block,
)
from taskwave.control_plane.executor import ExecutionReport, PlanExecutor, TaskContext, Worker

__all__ = [
    "CORRECTION_SIGNAL_INSTRUCTION",
    "DEFAULT_SIGNAL_PATTERNS",
    "BlockLogEntry",
    "CorrectionConfig",
    "CorrectionHistory",
    "CorrectionManager",
    "CorrectionRejection",
    "CorrectionRequest",
    "CorrectionResult",
    "DelegationDecision",
    "DelegationGuard",
    "DelegationMode",
    "DelegationPolicy",
    "DelegationStats",
    "DenialReason",
    "ExecutionReport",
    "PlanExecutor",
    "TaskContext",
    "Worker",
    "build_delegation_constraint_block",
    "parse_correction_signals",
]
