"""Unit tests for the wave-by-wave plan executor."""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

import pytest

from taskwave.control_plane.correction import CorrectionConfig, CorrectionManager
from taskwave.control_plane.delegation import DelegationGuard, DelegationPolicy
from taskwave.control_plane.executor import RUNAWAY_ABORT_NOTE, PlanExecutor, TaskContext
from taskwave.domain.models import ExecutionStrategy, Plan, Task, TaskResult, TaskStatus
from taskwave.persistence.safe_io import MemoryBackend, SafeStore
from taskwave.planning.task_graph import CycleError
from taskwave.utils.concurrency import CancellationToken

if TYPE_CHECKING:
    from tests.conftest import RecordingLogger


def _plan(
    edges: dict[str, tuple[str, ...]],
    strategy: ExecutionStrategy = ExecutionStrategy.PARALLEL,
) -> Plan:
    return Plan(
        tasks=[
            Task(id=task_id, title=task_id, dependencies=deps)
            for task_id, deps in edges.items()
        ],
        strategy=strategy,
    )


def _executor(
    worker: object,
    logger: RecordingLogger,
    *,
    policy: DelegationPolicy | None = None,
    corrections: CorrectionManager | None = None,
    store: SafeStore | None = None,
) -> PlanExecutor:
    return PlanExecutor(
        DelegationGuard(policy, logger=logger),
        corrections if corrections is not None else CorrectionManager(logger=logger),
        worker,  # type: ignore[arg-type]
        store=store,
        log_path="state/execution-log.md" if store is not None else None,
        logger=logger,
    )


@pytest.mark.asyncio
async def test_runs_dependencies_before_dependents(recording_logger: RecordingLogger) -> None:
    order: list[str] = []
    seen_inputs: dict[str, tuple[str, ...]] = {}

    async def worker(task: Task, context: TaskContext) -> TaskResult:
        order.append(task.id)
        seen_inputs[task.id] = tuple(context.dependency_results)
        return TaskResult(success=True, output=f"{task.id} done", worker="w")

    plan = _plan({"a": (), "b": ("a",), "c": ("a",), "d": ("b", "c")})
    report = await _executor(worker, recording_logger).run(plan)

    assert report.succeeded
    assert report.completed == ["a", "b", "c", "d"]
    assert report.waves_run == 3
    assert order[0] == "a" and order[-1] == "d"
    assert seen_inputs["d"] == ("b", "c")
    assert all(task.status is TaskStatus.COMPLETED for task in plan)


@pytest.mark.asyncio
async def test_parallel_wave_respects_the_parallel_cap(recording_logger: RecordingLogger) -> None:
    active = 0
    peak = 0

    async def worker(task: Task, context: TaskContext) -> TaskResult:
        nonlocal active, peak
        active += 1
        peak = max(peak, active)
        await asyncio.sleep(0.01)
        active -= 1
        return TaskResult(success=True)

    plan = _plan({f"t{index}": () for index in range(6)})
    report = await _executor(
        worker, recording_logger, policy=DelegationPolicy(max_parallel=2, runaway_threshold=10)
    ).run(plan)

    assert report.succeeded
    assert peak == 2


@pytest.mark.asyncio
async def test_serial_plans_run_one_task_at_a_time(recording_logger: RecordingLogger) -> None:
    active = 0
    peak = 0

    async def worker(task: Task, context: TaskContext) -> TaskResult:
        nonlocal active, peak
        active += 1
        peak = max(peak, active)
        await asyncio.sleep(0)
        active -= 1
        return TaskResult(success=True)

    plan = _plan({"a": (), "b": (), "c": ()}, strategy=ExecutionStrategy.SERIAL)
    await _executor(worker, recording_logger).run(plan)

    assert peak == 1


@pytest.mark.asyncio
async def test_failure_skips_dependents(recording_logger: RecordingLogger) -> None:
    async def worker(task: Task, context: TaskContext) -> TaskResult:
        return TaskResult(success=task.id != "a", review_notes="broken" if task.id == "a" else "")

    plan = _plan({"a": (), "b": ("a",), "c": ("b",), "x": ()})
    report = await _executor(worker, recording_logger).run(plan)

    assert not report.succeeded
    assert report.failed == ["a", "b", "c"]
    assert report.completed == ["x"]
    assert report.results["c"].review_notes == "Skipped: dependency 'b' failed"


@pytest.mark.asyncio
async def test_worker_errors_become_failed_results_and_retry(
    recording_logger: RecordingLogger,
) -> None:
    calls = 0

    async def worker(task: Task, context: TaskContext) -> TaskResult:
        nonlocal calls
        calls += 1
        if context.attempt == 1:
            raise RuntimeError("transient")
        return TaskResult(success=True)

    plan = Plan(tasks=[Task(id="a", title="A", max_attempts=2)])
    report = await _executor(worker, recording_logger).run(plan)

    assert report.succeeded
    assert calls == 2
    assert plan.require("a").attempts == 2
    assert recording_logger.named("task_worker_error")[0]["error_type"] == "RuntimeError"


@pytest.mark.asyncio
async def test_correction_signal_reruns_the_upstream_task(
    recording_logger: RecordingLogger,
) -> None:
    runs: list[str] = []
    preambles: dict[str, list[str]] = {}

    async def worker(task: Task, context: TaskContext) -> TaskResult:
        runs.append(task.id)
        preambles.setdefault(task.id, []).append(context.preamble)
        if task.id == "b" and runs.count("b") == 1:
            return TaskResult(
                success=True,
                output="<!--CORRECTION:a:Header row missing:Emit the header row-->",
            )
        return TaskResult(success=True, output=f"{task.id} ok")

    plan = _plan({"a": (), "b": ("a",)})
    corrections = CorrectionManager(CorrectionConfig(), logger=recording_logger)
    report = await _executor(worker, recording_logger, corrections=corrections).run(plan)

    assert runs == ["a", "b", "a", "b"]
    assert report.succeeded
    assert len(report.corrections) == 1
    assert report.corrections[0].invalidated_task_ids == ("a", "b")
    assert "=== CORRECTION NOTICE ===" in preambles["a"][1]
    assert "DELEGATION POLICY: LEAF-ONLY (STRICT)" in preambles["a"][0]


@pytest.mark.asyncio
async def test_runaway_output_freezes_the_guard(recording_logger: RecordingLogger) -> None:
    async def worker(task: Task, context: TaskContext) -> TaskResult:
        return TaskResult(success=True, output="I will spawn a subagent for this.")

    plan = _plan({"a": (), "b": (), "c": ()})
    guard = DelegationGuard(DelegationPolicy(runaway_threshold=2), logger=recording_logger)
    executor = PlanExecutor(guard, CorrectionManager(logger=recording_logger), worker)

    report = await executor.run(plan)

    assert guard.is_frozen
    assert report.completed == ["a"]
    assert report.failed == ["b", "c"]


@pytest.mark.asyncio
async def test_task_that_trips_the_runaway_freeze_is_aborted(
    recording_logger: RecordingLogger,
) -> None:
    calls = 0

    async def worker(task: Task, context: TaskContext) -> TaskResult:
        nonlocal calls
        calls += 1
        return TaskResult(success=True, output="I will orchestrate and spawn a subagent.")

    plan = _plan({"a": ()})
    plan.require("a").max_attempts = 3
    guard = DelegationGuard(DelegationPolicy(runaway_threshold=1), logger=recording_logger)
    executor = PlanExecutor(guard, CorrectionManager(logger=recording_logger), worker, logger=recording_logger)

    report = await executor.run(plan)

    assert guard.is_frozen
    assert report.failed == ["a"]
    assert calls == 1
    result = plan.require("a").result
    assert result is not None
    assert not result.success
    assert result.output.endswith(RUNAWAY_ABORT_NOTE)
    assert result.review_notes == "Aborted: delegation runaway detected"
    assert recording_logger.named("task_aborted_runaway") == [{"task_id": "a", "attempt": 1}]


@pytest.mark.asyncio
async def test_cyclic_plan_is_rejected_before_any_work(recording_logger: RecordingLogger) -> None:
    called = False

    async def worker(task: Task, context: TaskContext) -> TaskResult:
        nonlocal called
        called = True
        return TaskResult(success=True)

    with pytest.raises(CycleError):
        await _executor(worker, recording_logger).run(_plan({"a": ("b",), "b": ("a",)}))
    assert not called


@pytest.mark.asyncio
async def test_cancelled_token_stops_the_run(recording_logger: RecordingLogger) -> None:
    token = CancellationToken()

    async def worker(task: Task, context: TaskContext) -> TaskResult:
        token.cancel()
        return TaskResult(success=True)

    plan = _plan({"a": (), "b": ("a",)})
    with pytest.raises(asyncio.CancelledError):
        await _executor(worker, recording_logger).run(plan, token)

    assert plan.require("a").status is TaskStatus.COMPLETED
    assert plan.require("b").status is TaskStatus.PENDING


@pytest.mark.asyncio
async def test_execution_log_is_appended(recording_logger: RecordingLogger) -> None:
    backend = MemoryBackend()
    store = SafeStore(backend, logger=recording_logger)

    async def worker(task: Task, context: TaskContext) -> TaskResult:
        return TaskResult(success=True, worker="local")

    plan = _plan({"a": ()})
    await _executor(worker, recording_logger, store=store).run(plan)

    log = backend.files["state/execution-log.md"].decode("utf-8")
    assert log.startswith("# Execution Log\n\n")
    assert "TASK START a: a (moderate)" in log
    assert "TASK DONE a: local" in log
    assert f"PLAN DONE {plan.id}: 1 completed, 0 failed" in log


def test_store_and_log_path_go_together(recording_logger: RecordingLogger) -> None:
    async def worker(task: Task, context: TaskContext) -> TaskResult:
        return TaskResult(success=True)

    with pytest.raises(ValueError, match="together"):
        PlanExecutor(
            DelegationGuard(logger=recording_logger),
            CorrectionManager(logger=recording_logger),
            worker,
            store=SafeStore(MemoryBackend()),
        )
