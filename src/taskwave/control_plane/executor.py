"""
Plan execution loop.

``PlanExecutor`` drives a plan to completion wave by wave. Ready tasks run
concurrently behind the delegation guard for ``parallel`` plans and one at a
time otherwise. After each wave, correction signals found in worker output
are applied, which may reset already finished tasks; the next iteration
recomputes waves over whatever is still unfinished.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any

import structlog

from taskwave.control_plane.correction import parse_correction_signals
from taskwave.control_plane.delegation import DenialReason, build_delegation_constraint_block
from taskwave.domain.models import ExecutionStrategy, Task, TaskResult, TaskStatus
from taskwave.planning.task_graph import TaskGraph, compute_waves

if TYPE_CHECKING:
    from taskwave.control_plane.correction import CorrectionManager, CorrectionResult
    from taskwave.control_plane.delegation import DelegationGuard
    from taskwave.domain.models import Plan
    from taskwave.persistence.safe_io import SafeStore
    from taskwave.utils.concurrency import CancellationToken

_LOG_HEADER = "# Execution Log\n\n"

RUNAWAY_ABORT_NOTE = "[ABORTED: delegation runaway detected]"


@dataclass(frozen=True, slots=True)
class TaskContext:
    """Everything a worker receives besides the task itself."""

    preamble: str
    attempt: int
    dependency_results: Mapping[str, TaskResult] = field(default_factory=dict)


Worker = Callable[[Task, TaskContext], Awaitable[TaskResult]]


@dataclass(slots=True)
class ExecutionReport:
    results: dict[str, TaskResult] = field(default_factory=dict)
    completed: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    corrections: list[CorrectionResult] = field(default_factory=list)
    waves_run: int = 0

    @property
    def succeeded(self) -> bool:
        return not self.failed


class PlanExecutor:
    """Run a plan's tasks through an external worker callback."""

    def __init__(
        self,
        guard: DelegationGuard,
        corrections: CorrectionManager,
        worker: Worker,
        *,
        store: SafeStore | None = None,
        log_path: str | Path | None = None,
        logger: Any | None = None,
    ) -> None:
        if (store is None) != (log_path is None):
            raise ValueError("store and log_path must be provided together")
        self._guard = guard
        self._corrections = corrections
        self._worker = worker
        self._store = store
        self._log_path = Path(log_path) if log_path is not None else None
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    async def run(
        self,
        plan: Plan,
        cancel_token: CancellationToken | None = None,
    ) -> ExecutionReport:
        """
        Execute ``plan`` until every task is completed or failed.

        Raises ``StructuralError`` before any task runs when the plan cannot be
        scheduled, and ``asyncio.CancelledError`` once ``cancel_token`` fires.
        """
        compute_waves(plan)

        report = ExecutionReport()
        for task in plan.tasks:
            if task.status is TaskStatus.COMPLETED and task.result is not None:
                report.results[task.id] = task.result

        self._logger.info(
            "plan_execution_started",
            plan_id=plan.id,
            tasks=len(plan),
            strategy=plan.strategy.value,
            mode=self._guard.mode.value,
        )
        await self._log_line(f"PLAN START {plan.id}: {len(plan)} task(s), {plan.strategy.value}")

        while True:
            if cancel_token is not None:
                cancel_token.raise_if_cancelled()

            await self._fail_blocked_tasks(plan, report)
            unfinished = [task for task in plan.tasks if not task.is_done]
            if not unfinished:
                break

            ready = self._first_wave(unfinished)
            report.waves_run += 1
            wave_tasks = [plan.require(task_id) for task_id in ready]

            if self._runs_concurrently(plan, wave_tasks):
                await self._run_concurrent(wave_tasks, report, cancel_token)
            else:
                for task in wave_tasks:
                    if cancel_token is not None:
                        cancel_token.raise_if_cancelled()
                    await self._run_task(task, report)

            self._apply_corrections(plan, wave_tasks, report)

        report.completed = [task.id for task in plan.tasks if task.status is TaskStatus.COMPLETED]
        report.failed = [task.id for task in plan.tasks if task.status is TaskStatus.FAILED]
        self._logger.info(
            "plan_execution_finished",
            plan_id=plan.id,
            completed=len(report.completed),
            failed=len(report.failed),
            waves_run=report.waves_run,
            corrections=len(report.corrections),
        )
        await self._log_line(
            f"PLAN DONE {plan.id}: {len(report.completed)} completed, {len(report.failed)} failed"
        )
        return report

    def _runs_concurrently(self, plan: Plan, wave_tasks: list[Task]) -> bool:
        return (
            plan.strategy is ExecutionStrategy.PARALLEL
            and not self._guard.is_no_delegation
            and self._guard.max_parallel > 0
            and len(wave_tasks) > 1
        )

    @staticmethod
    def _first_wave(unfinished: list[Task]) -> tuple[str, ...]:
        pending_ids = {task.id for task in unfinished}
        graph = TaskGraph(nodes=[task.id for task in unfinished])
        for task in unfinished:
            for dependency in task.dependencies:
                if dependency in pending_ids:
                    graph.add_edge(dependency, task.id)
        return graph.waves()[0].task_ids

    async def _run_concurrent(
        self,
        wave_tasks: list[Task],
        report: ExecutionReport,
        cancel_token: CancellationToken | None,
    ) -> None:
        async def admitted(task: Task) -> Task | None:
            decision = await self._guard.wait_for_slot(0, cancel_token)
            if not decision.allowed:
                if decision.reason_code is DenialReason.CANCELLED:
                    return None
                return task
            try:
                await self._run_task(task, report)
            finally:
                self._guard.release_delegation()
            return None

        deferred = await asyncio.gather(*(admitted(task) for task in wave_tasks))
        for task in deferred:
            if task is None:
                continue
            if cancel_token is not None:
                cancel_token.raise_if_cancelled()
            # Denied a slot (frozen or over budget): run inline.
            await self._run_task(task, report)

    async def _run_task(self, task: Task, report: ExecutionReport) -> None:
        task.status = TaskStatus.RUNNING
        self._logger.info(
            "task_started",
            task_id=task.id,
            complexity=task.complexity.value,
            attempts=task.attempts,
        )
        await self._log_line(f"TASK START {task.id}: {task.title} ({task.complexity.value})")

        result: TaskResult | None = None
        while task.attempts < task.max_attempts:
            task.attempts += 1
            context = TaskContext(
                preamble=self._preamble(task),
                attempt=task.attempts,
                dependency_results={
                    dependency: report.results[dependency]
                    for dependency in task.dependencies
                    if dependency in report.results
                },
            )
            result = await self._invoke_worker(task, context)
            if self._guard.check_for_runaway(result.output) and self._guard.is_frozen:
                result = self._abort_runaway(task, result)
                break
            if result.success:
                break

        if result is None:
            result = TaskResult(success=False, review_notes="No attempts remaining")

        task.result = result
        task.assigned_worker = result.worker
        task.status = TaskStatus.COMPLETED if result.success else TaskStatus.FAILED
        report.results[task.id] = result

        self._logger.info(
            "task_finished",
            task_id=task.id,
            success=result.success,
            attempts=task.attempts,
            worker=result.worker,
            duration_ms=result.duration_ms,
        )
        outcome = "TASK DONE" if result.success else "TASK FAILED"
        await self._log_line(
            f"{outcome} {task.id}: {result.worker or 'unknown'} ({result.duration_ms / 1000:.1f}s)"
        )

    def _abort_runaway(self, task: Task, result: TaskResult) -> TaskResult:
        """Fail a task whose own output froze the delegation guard."""
        self._logger.warning("task_aborted_runaway", task_id=task.id, attempt=task.attempts)
        return TaskResult(
            success=False,
            output=f"{result.output}\n{RUNAWAY_ABORT_NOTE}",
            worker=result.worker,
            review_notes="Aborted: delegation runaway detected",
            duration_ms=result.duration_ms,
        )

    async def _invoke_worker(self, task: Task, context: TaskContext) -> TaskResult:
        started = time.monotonic()
        try:
            return await self._worker(task, context)
        except Exception as exc:
            self._logger.warning(
                "task_worker_error",
                task_id=task.id,
                attempt=context.attempt,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            return TaskResult(
                success=False,
                review_notes=f"Worker error: {type(exc).__name__}: {exc}",
                duration_ms=(time.monotonic() - started) * 1000,
            )

    def _preamble(self, task: Task) -> str:
        parts = [
            self._corrections.build_correction_context(task.id),
            build_delegation_constraint_block(self._guard.policy),
        ]
        return "\n".join(part for part in parts if part)

    def _apply_corrections(
        self,
        plan: Plan,
        wave_tasks: list[Task],
        report: ExecutionReport,
    ) -> None:
        completed = {task.id for task in plan.tasks if task.status is TaskStatus.COMPLETED}
        for task in wave_tasks:
            result = report.results.get(task.id)
            if result is None:
                continue
            for request in parse_correction_signals(result.output, task.id):
                outcome = self._corrections.request_correction(
                    request,
                    plan,
                    results=report.results,
                    completed=completed,
                )
                report.corrections.append(outcome)

    async def _fail_blocked_tasks(self, plan: Plan, report: ExecutionReport) -> None:
        """Fail pending tasks whose dependencies failed, cascading downstream."""
        changed = True
        while changed:
            changed = False
            for task in plan.tasks:
                if task.status is not TaskStatus.PENDING:
                    continue
                failed_dependency = next(
                    (
                        dependency
                        for dependency in task.dependencies
                        if plan.require(dependency).status is TaskStatus.FAILED
                    ),
                    None,
                )
                if failed_dependency is None:
                    continue
                result = TaskResult(
                    success=False,
                    review_notes=f"Skipped: dependency {failed_dependency!r} failed",
                )
                task.status = TaskStatus.FAILED
                task.result = result
                report.results[task.id] = result
                changed = True
                self._logger.info(
                    "task_skipped",
                    task_id=task.id,
                    failed_dependency=failed_dependency,
                )
                await self._log_line(
                    f"TASK SKIPPED {task.id}: dependency {failed_dependency} failed"
                )

    async def _log_line(self, text: str) -> None:
        if self._store is None or self._log_path is None:
            return
        timestamp = datetime.now(tz=UTC).isoformat(timespec="seconds").replace("+00:00", "Z")
        await self._store.safe_append(self._log_path, f"- [{timestamp}] {text}\n", _LOG_HEADER)


__all__ = [
    "RUNAWAY_ABORT_NOTE",
    "ExecutionReport",
    "PlanExecutor",
    "TaskContext",
    "Worker",
]
