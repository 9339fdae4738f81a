"""Unit tests for upstream corrections and subgraph invalidation."""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest

from taskwave.control_plane.correction import (
    CorrectionConfig,
    CorrectionManager,
    CorrectionRejection,
    CorrectionRequest,
    parse_correction_signals,
)
from taskwave.domain.models import Plan, Task, TaskComplexity, TaskResult, TaskStatus

if TYPE_CHECKING:
    from tests.conftest import RecordingLogger


def _completed(task_id: str, *deps: str) -> Task:
    return Task(
        id=task_id,
        title=task_id.upper(),
        dependencies=deps,
        status=TaskStatus.COMPLETED,
        attempts=1,
        result=TaskResult(success=True, output=f"{task_id} output"),
    )


def _chain() -> Plan:
    return Plan(tasks=[_completed("a"), _completed("b", "a"), _completed("c", "b")])


def _request(target: str, requested_by: str = "c") -> CorrectionRequest:
    return CorrectionRequest(
        requested_by=requested_by,
        target_task_id=target,
        problem="Column order is wrong",
        fix_hint="Emit columns in header order",
    )


def test_correction_invalidates_target_and_downstream_only(
    recording_logger: RecordingLogger,
) -> None:
    plan = _chain()
    results = {task.id: task.result for task in plan}
    completed = {"a", "b", "c"}
    manager = CorrectionManager(logger=recording_logger)

    outcome = manager.request_correction(
        _request("b"), plan, results=results, completed=completed
    )

    assert outcome.accepted
    assert outcome.invalidated_task_ids == ("b", "c")
    assert completed == {"a"}
    assert set(results) == {"a"}
    assert plan.require("a").status is TaskStatus.COMPLETED
    for task_id in ("b", "c"):
        task = plan.require(task_id)
        assert task.status is TaskStatus.PENDING
        assert task.result is None
        assert task.attempts == 0
    assert manager.total_corrections == 1
    assert recording_logger.named("correction_accepted")[0]["invalidated"] == ["b", "c"]


def test_accepted_correction_boosts_only_the_target() -> None:
    plan = _chain()
    manager = CorrectionManager()

    outcome = manager.request_correction(_request("b"), plan)

    assert outcome.boosted_complexity is TaskComplexity.COMPLEX
    assert plan.require("b").complexity is TaskComplexity.COMPLEX
    assert plan.require("c").complexity is TaskComplexity.MODERATE


def test_boost_can_be_disabled() -> None:
    plan = _chain()
    manager = CorrectionManager(CorrectionConfig(boost_complexity_on_correction=False))

    outcome = manager.request_correction(_request("b"), plan)

    assert outcome.boosted_complexity is None
    assert plan.require("b").complexity is TaskComplexity.MODERATE


def test_third_correction_of_same_task_is_rejected_and_plan_untouched(
    recording_logger: RecordingLogger,
) -> None:
    plan = _chain()
    manager = CorrectionManager(
        CorrectionConfig(max_corrections_per_task=2), logger=recording_logger
    )

    for _ in range(2):
        assert manager.request_correction(_request("b"), plan).accepted
        for task_id in ("b", "c"):
            plan.require(task_id).status = TaskStatus.COMPLETED

    before = plan.to_dict()
    completed = {"a", "b", "c"}
    outcome = manager.request_correction(_request("b"), plan, completed=completed)

    assert not outcome.accepted
    assert outcome.reason_code is CorrectionRejection.TASK_BUDGET
    assert plan.to_dict() == before
    assert completed == {"a", "b", "c"}
    assert recording_logger.named("correction_rejected")[0]["reason_code"] == "task_budget"


def test_global_budget_is_checked_first() -> None:
    plan = Plan(tasks=[_completed(task_id) for task_id in ("a", "b", "c")])
    manager = CorrectionManager(CorrectionConfig(max_total_corrections=2))

    assert manager.request_correction(_request("a"), plan).accepted
    assert manager.request_correction(_request("b"), plan).accepted

    outcome = manager.request_correction(_request("missing"), plan)
    assert outcome.reason_code is CorrectionRejection.GLOBAL_BUDGET
    assert "Global correction budget exhausted (2 max)" in outcome.reason


def test_unknown_target_is_rejected_without_recording_history() -> None:
    manager = CorrectionManager()

    outcome = manager.request_correction(_request("ghost"), _chain())

    assert outcome.reason_code is CorrectionRejection.UNKNOWN_TARGET
    assert manager.total_corrections == 0
    assert manager.history("ghost") is None


def test_correction_context_lists_every_request() -> None:
    plan = _chain()
    manager = CorrectionManager()
    manager.request_correction(_request("a", requested_by="b"), plan)
    manager.request_correction(
        CorrectionRequest(
            requested_by="c",
            target_task_id="a",
            problem="Dates are local time",
            fix_hint="Use UTC",
        ),
        plan,
    )

    context = manager.build_correction_context("a")

    assert "=== CORRECTION NOTICE ===" in context
    assert "Correction attempt: 2/2" in context
    assert '--- Correction 1 (from "b") ---' in context
    assert "What to fix: Use UTC" in context
    assert context.rstrip().endswith("=== END CORRECTION NOTICE ===")
    assert manager.has_pending_corrections("a")
    assert manager.build_correction_context("b") == ""


def test_diagnostics_and_reset() -> None:
    plan = _chain()
    manager = CorrectionManager()
    assert "No corrections have been requested." in manager.diagnostics()

    manager.request_correction(_request("b"), plan)
    report = manager.diagnostics()
    assert "Total corrections: 1/5" in report
    assert "b: 1/2 corrections" in report

    manager.reset()
    assert manager.total_corrections == 0
    assert not manager.has_pending_corrections("b")


def test_parse_correction_signals() -> None:
    text = (
        "Finished parsing.\n"
        "<!--CORRECTION: task-1 : Drops trailing fields : Keep empty trailing fields -->\n"
        "<!--CORRECTION:task-2:   :Nothing to fix-->\n"
        "<!--CORRECTION:task-3:Wrong encoding:Read as UTF-8-->"
    )

    requests = parse_correction_signals(text, "task-4")

    assert [(item.target_task_id, item.problem, item.fix_hint) for item in requests] == [
        ("task-1", "Drops trailing fields", "Keep empty trailing fields"),
        ("task-3", "Wrong encoding", "Read as UTF-8"),
    ]
    assert all(item.requested_by == "task-4" for item in requests)


def test_malformed_marker_does_not_swallow_the_next_one() -> None:
    text = (
        "<!--CORRECTION:task-1:only two fields-->\n"
        "Rows look fine otherwise.\n"
        "<!--CORRECTION:task-2:Wrong delimiter:Split on tabs-->"
    )

    requests = parse_correction_signals(text, "task-3")

    assert [(item.target_task_id, item.problem, item.fix_hint) for item in requests] == [
        ("task-2", "Wrong delimiter", "Split on tabs"),
    ]


def test_marker_fields_do_not_span_lines() -> None:
    text = "<!--CORRECTION:task-1:Broken\nheader:Fix it-->"

    assert parse_correction_signals(text, "task-2") == []


def test_config_rejects_negative_budgets() -> None:
    with pytest.raises(ValueError, match="max_total_corrections"):
        CorrectionConfig(max_total_corrections=-1)
