"""
Upstream correction and subgraph invalidation.

A downstream task that finds its input broken asks for its producer to be
re-run. An accepted correction resets the target and every transitive
dependent to ``pending`` so the scheduler picks them up again. Budgets cap the
number of corrections per task and per session so correction loops always
terminate.
"""

from __future__ import annotations

import re
from collections.abc import MutableMapping, MutableSet
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import TYPE_CHECKING, Any, Final

import structlog

from taskwave.planning.task_graph import downstream_of

if TYPE_CHECKING:
    from taskwave.domain.models import Plan, TaskComplexity


class CorrectionRejection(StrEnum):
    GLOBAL_BUDGET = "global_budget"
    TASK_BUDGET = "task_budget"
    UNKNOWN_TARGET = "unknown_target"


@dataclass(frozen=True, slots=True)
class CorrectionRequest:
    requested_by: str
    target_task_id: str
    problem: str
    fix_hint: str
    timestamp: datetime = field(default_factory=lambda: datetime.now(tz=UTC))


@dataclass(slots=True)
class CorrectionHistory:
    task_id: str
    correction_count: int = 0
    corrections: list[CorrectionRequest] = field(default_factory=list)


@dataclass(frozen=True, slots=True)
class CorrectionConfig:
    max_corrections_per_task: int = 2
    max_total_corrections: int = 5
    boost_complexity_on_correction: bool = True

    def __post_init__(self) -> None:
        if self.max_corrections_per_task < 0:
            raise ValueError("max_corrections_per_task must be >= 0")
        if self.max_total_corrections < 0:
            raise ValueError("max_total_corrections must be >= 0")


@dataclass(frozen=True, slots=True)
class CorrectionResult:
    accepted: bool
    reason: str
    request: CorrectionRequest
    invalidated_task_ids: tuple[str, ...] = ()
    reason_code: CorrectionRejection | None = None
    boosted_complexity: TaskComplexity | None = None


_SIGNAL_PATTERN: Final[re.Pattern[str]] = re.compile(
    r"<!--CORRECTION:([^:>\n]+):([^:>\n]+):((?:(?!-->)[^>\n])+)-->"
)

CORRECTION_SIGNAL_INSTRUCTION: Final[str] = """
## Upstream Correction Protocol

If you determine that this task's output is incorrect because an UPSTREAM dependency
produced flawed results:

1. Identify which upstream task produced the bad output (by its task ID, e.g. "task-1")
2. Describe what's wrong with the upstream output
3. Describe specifically what the upstream task should fix

Emit a correction signal as an HTML comment (invisible when rendered, parsed by the
orchestrator):

<!--CORRECTION:task-id:Problem description:What to fix-->

Example:
<!--CORRECTION:task-1:The parser drops trailing fields:Keep empty trailing fields in the output-->

You may emit multiple correction signals if multiple upstream tasks need fixing.
Only emit corrections when the issue clearly originates from an upstream task's output,
not when the current task simply failed on its own.
"""


def parse_correction_signals(text: str, requested_by: str) -> list[CorrectionRequest]:
    """
    Extract ``<!--CORRECTION:target:problem:hint-->`` markers from ``text``.

    Fields are trimmed. A marker with any blank field is skipped on its own.
    """
    requests: list[CorrectionRequest] = []
    for match in _SIGNAL_PATTERN.finditer(text):
        target, problem, hint = (part.strip() for part in match.groups())
        if not (target and problem and hint):
            continue
        requests.append(
            CorrectionRequest(
                requested_by=requested_by,
                target_task_id=target,
                problem=problem,
                fix_hint=hint,
            )
        )
    return requests


class CorrectionManager:
    """Per-session correction budgets, history and invalidation."""

    def __init__(
        self,
        config: CorrectionConfig | None = None,
        *,
        logger: Any | None = None,
    ) -> None:
        self._config = config if config is not None else CorrectionConfig()
        self._history: dict[str, CorrectionHistory] = {}
        self._total_corrections = 0
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    @property
    def config(self) -> CorrectionConfig:
        return self._config

    @property
    def total_corrections(self) -> int:
        return self._total_corrections

    def history(self, task_id: str) -> CorrectionHistory | None:
        return self._history.get(task_id)

    def request_correction(
        self,
        request: CorrectionRequest,
        plan: Plan,
        *,
        results: MutableMapping[str, Any] | None = None,
        completed: MutableSet[str] | None = None,
    ) -> CorrectionResult:
        """
        Invalidate ``request.target_task_id`` and everything downstream of it.

        Checks, in order, the session budget, the per-task budget and that the
        target exists. A rejected request leaves the plan, ``results`` and
        ``completed`` untouched.
        """
        config = self._config
        target_id = request.target_task_id

        if self._total_corrections >= config.max_total_corrections:
            return self._reject(
                request,
                CorrectionRejection.GLOBAL_BUDGET,
                f"Global correction budget exhausted ({config.max_total_corrections} max). "
                f'Task "{target_id}" will not be re-run.',
            )

        existing = self._history.get(target_id)
        count = existing.correction_count if existing is not None else 0
        if count >= config.max_corrections_per_task:
            return self._reject(
                request,
                CorrectionRejection.TASK_BUDGET,
                f'Task "{target_id}" has already been corrected {count} time(s) '
                f"(max {config.max_corrections_per_task}). "
                "Further corrections would risk an infinite loop.",
            )

        target = plan.get(target_id)
        if target is None:
            return self._reject(
                request,
                CorrectionRejection.UNKNOWN_TARGET,
                f'Target task "{target_id}" not found in plan.',
            )

        invalidated = (target_id, *downstream_of(plan, target_id))

        history = self._history.setdefault(target_id, CorrectionHistory(task_id=target_id))
        history.correction_count += 1
        history.corrections.append(request)
        self._total_corrections += 1

        for task_id in invalidated:
            if completed is not None:
                completed.discard(task_id)
            if results is not None:
                results.pop(task_id, None)
            task = plan.get(task_id)
            if task is not None:
                task.reset()

        boosted: TaskComplexity | None = None
        if config.boost_complexity_on_correction:
            target.complexity = target.complexity.escalated()
            boosted = target.complexity

        self._logger.info(
            "correction_accepted",
            target_task_id=target_id,
            requested_by=request.requested_by,
            invalidated=list(invalidated),
            boosted_complexity=boosted.value if boosted is not None else None,
            total_corrections=self._total_corrections,
        )
        return CorrectionResult(
            accepted=True,
            reason=(
                f"Correction accepted. Invalidated {len(invalidated)} task(s). "
                f'Re-running "{target_id}" with correction context.'
            ),
            request=request,
            invalidated_task_ids=invalidated,
            boosted_complexity=boosted,
        )

    def has_pending_corrections(self, task_id: str) -> bool:
        history = self._history.get(task_id)
        return history is not None and bool(history.corrections)

    def build_correction_context(self, task_id: str) -> str:
        """Render the correction notice prepended to a re-run task's context."""
        history = self._history.get(task_id)
        if history is None or not history.corrections:
            return ""

        lines = [
            "",
            "=== CORRECTION NOTICE ===",
            "This task has been re-run because a downstream task discovered issues "
            "in your previous output.",
            f"Correction attempt: {history.correction_count}/"
            f"{self._config.max_corrections_per_task}",
            "",
        ]
        for index, correction in enumerate(history.corrections, start=1):
            lines.append(f'--- Correction {index} (from "{correction.requested_by}") ---')
            lines.append(f"Problem: {correction.problem}")
            lines.append(f"What to fix: {correction.fix_hint}")
            lines.append("")

        lines.append(
            "IMPORTANT: Address ALL corrections above. Do NOT repeat the same mistakes. "
            "If you are unsure, ask clarifying questions rather than guessing."
        )
        lines.append("=== END CORRECTION NOTICE ===")
        lines.append("")
        return "\n".join(lines)

    def diagnostics(self) -> str:
        lines = ["=== Correction Diagnostics ===", ""]
        lines.append(
            f"Total corrections: {self._total_corrections}/{self._config.max_total_corrections}"
        )
        lines.append("")

        if not self._history:
            lines.append("No corrections have been requested.")
        else:
            for task_id, history in self._history.items():
                lines.append(
                    f"{task_id}: {history.correction_count}/"
                    f"{self._config.max_corrections_per_task} corrections"
                )
                for correction in history.corrections:
                    lines.append(f'  - From "{correction.requested_by}": {correction.problem}')

        return "\n".join(lines)

    def reset(self) -> None:
        """Forget all history and budgets. Call at session boundaries."""
        self._history.clear()
        self._total_corrections = 0

    def _reject(
        self,
        request: CorrectionRequest,
        reason_code: CorrectionRejection,
        reason: str,
    ) -> CorrectionResult:
        self._logger.warning(
            "correction_rejected",
            target_task_id=request.target_task_id,
            requested_by=request.requested_by,
            reason_code=reason_code.value,
            total_corrections=self._total_corrections,
        )
        return CorrectionResult(
            accepted=False,
            reason=reason,
            request=request,
            reason_code=reason_code,
        )


__all__ = [
    "CORRECTION_SIGNAL_INSTRUCTION",
    "CorrectionConfig",
    "CorrectionHistory",
    "CorrectionManager",
    "CorrectionRejection",
    "CorrectionRequest",
    "CorrectionResult",
    "parse_correction_signals",
]
