"""Unit tests for domain model validation and serialization."""

from __future__ import annotations

import json
from datetime import UTC, datetime

import pytest

from taskwave.domain.models import (
    ExecutionStrategy,
    Plan,
    Task,
    TaskComplexity,
    TaskResult,
    TaskStatus,
    WorkStream,
    WorkStreamStatus,
    WorkStreamSummary,
)


def test_complexity_escalates_one_tier_and_clamps_at_expert() -> None:
    assert TaskComplexity.TRIVIAL.escalated() is TaskComplexity.SIMPLE
    assert TaskComplexity.COMPLEX.escalated() is TaskComplexity.EXPERT
    assert TaskComplexity.EXPERT.escalated() is TaskComplexity.EXPERT
    assert TaskComplexity.MODERATE.rank == 2


def test_task_dependencies_are_deduplicated_in_declared_order() -> None:
    task = Task(id="c", title="Third", dependencies=("b", "a", "b"))
    assert task.dependencies == ("b", "a")


def test_task_rejects_invalid_fields() -> None:
    with pytest.raises(ValueError, match="Task.id"):
        Task(id="  ", title="blank")
    with pytest.raises(ValueError, match="Task.max_attempts"):
        Task(id="a", title="A", max_attempts=0)
    with pytest.raises(ValueError, match="Task.complexity"):
        Task(id="a", title="A", complexity="impossible")  # type: ignore[arg-type]


def test_task_reset_clears_runtime_state_but_keeps_complexity() -> None:
    task = Task(
        id="a",
        title="A",
        complexity=TaskComplexity.COMPLEX,
        status=TaskStatus.COMPLETED,
        attempts=2,
        max_attempts=3,
        assigned_worker="worker-1",
        result=TaskResult(success=True, output="done"),
    )

    task.reset()

    assert task.status is TaskStatus.PENDING
    assert task.result is None
    assert task.attempts == 0
    assert task.assigned_worker is None
    assert task.complexity is TaskComplexity.COMPLEX


def test_plan_rejects_duplicate_task_ids() -> None:
    with pytest.raises(ValueError, match="duplicate task id 'a'"):
        Plan(tasks=[Task(id="a", title="A"), Task(id="a", title="A again")])


def test_plan_lookup_helpers() -> None:
    plan = Plan(tasks=[Task(id="a", title="A"), Task(id="b", title="B", dependencies=("a",))])

    assert "a" in plan
    assert "z" not in plan
    assert len(plan) == 2
    assert plan.task_ids == ("a", "b")
    assert plan.get("z") is None
    assert plan.require("b").dependencies == ("a",)
    with pytest.raises(KeyError):
        plan.require("z")


def test_plan_from_dict_applies_defaults() -> None:
    plan = Plan.from_dict(
        {
            "id": "plan-1",
            "strategy": "serial",
            "tasks": [
                {"id": "fetch"},
                {"id": "parse", "dependencies": ["fetch"], "complexity": "simple"},
            ],
        }
    )

    assert plan.id == "plan-1"
    assert plan.strategy is ExecutionStrategy.SERIAL
    assert plan.require("fetch").title == "fetch"
    assert plan.require("parse").complexity is TaskComplexity.SIMPLE
    assert all(task.status is TaskStatus.PENDING for task in plan)


def test_plan_from_dict_rejects_unknown_fields_and_versions() -> None:
    with pytest.raises(ValueError, match="unexpected fields"):
        Plan.from_dict({"tasks": [], "owner": "someone"})
    with pytest.raises(ValueError, match="unsupported version"):
        Plan.from_dict({"schema_version": 99, "tasks": []})
    with pytest.raises(ValueError, match="Plan.tasks"):
        Plan.from_dict({"tasks": "a,b"})


def test_plan_json_carries_runtime_state() -> None:
    finished = datetime(2026, 3, 1, 9, 30, tzinfo=UTC)
    plan = Plan(
        id="plan-2",
        tasks=[
            Task(
                id="a",
                title="A",
                status=TaskStatus.COMPLETED,
                attempts=1,
                result=TaskResult(success=True, output="ok", worker="w1", finished_at=finished),
            )
        ],
    )

    payload = json.loads(plan.to_json())
    assert payload["schema_version"] == 1
    assert payload["tasks"][0]["result"]["finished_at"] == "2026-03-01T09:30:00.000000Z"

    restored = Plan.from_dict(payload)
    task = restored.require("a")
    assert task.status is TaskStatus.COMPLETED
    assert task.result is not None
    assert task.result.worker == "w1"
    assert task.result.finished_at == finished


def test_task_result_requires_aware_datetimes() -> None:
    with pytest.raises(ValueError, match="timezone-aware"):
        TaskResult(success=True, finished_at=datetime(2026, 1, 1))


def test_work_stream_from_dict_validates_status() -> None:
    payload = {
        "id": "api",
        "name": "API layer",
        "branch": "taskwave/session/api",
        "root_path": "/tmp/wt/api",
        "status": "active",
        "dependencies": ["schema"],
        "phases": ["design", "build"],
        "created_at": "2026-03-01T00:00:00Z",
        "updated_at": "2026-03-01T00:05:00Z",
    }
    stream = WorkStream.from_dict(payload)
    assert stream.status is WorkStreamStatus.ACTIVE
    assert stream.phases == ("design", "build")
    assert stream.to_dict()["updated_at"] == "2026-03-01T00:05:00.000000Z"

    with pytest.raises(ValueError, match="WorkStream.status"):
        WorkStream.from_dict({**payload, "status": "paused"})


def test_work_stream_summary_total() -> None:
    summary = WorkStreamSummary(active=1, completed=2, failed=0, pending=3, merging=1)
    assert summary.total == 7
    assert summary.to_dict()["pending"] == 3
