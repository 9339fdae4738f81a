"""Unit tests for the task graph and wave scheduler."""

from __future__ import annotations

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from taskwave.domain.models import Plan, Task
from taskwave.planning.task_graph import (
    CycleError,
    MissingDependencyError,
    StructuralError,
    TaskGraph,
    compute_waves,
    downstream_of,
    validate_plan,
)


def _plan(edges: dict[str, tuple[str, ...]]) -> Plan:
    return Plan(
        tasks=[
            Task(id=task_id, title=task_id, dependencies=deps)
            for task_id, deps in edges.items()
        ]
    )


def _diamond() -> Plan:
    return _plan({"a": (), "b": ("a",), "c": ("a",), "d": ("b", "c")})


def test_waves_layer_a_diamond() -> None:
    waves = compute_waves(_diamond())

    assert [wave.task_ids for wave in waves] == [("a",), ("b", "c"), ("d",)]
    assert [wave.level for wave in waves] == [0, 1, 2]


def test_independent_tasks_share_the_first_wave_in_declared_order() -> None:
    waves = compute_waves(_plan({"z": (), "m": (), "a": ()}))
    assert [wave.task_ids for wave in waves] == [("z", "m", "a")]


def test_empty_plan_has_no_waves() -> None:
    assert compute_waves(Plan(tasks=[])) == ()


def test_wave_members_follow_declaration_order_not_release_order() -> None:
    plan = _plan({"root": (), "slow": ("root",), "late": ("root",), "x": (), "y": ("x",)})
    waves = compute_waves(plan)
    assert waves[1].task_ids == ("slow", "late", "y")


def test_cycle_raises_with_the_cycle_path() -> None:
    plan = _plan({"a": ("c",), "b": ("a",), "c": ("b",), "free": ()})

    with pytest.raises(CycleError) as exc_info:
        compute_waves(plan)

    assert exc_info.value.cycles == (("a", "b", "c", "a"),)
    assert set(exc_info.value.stuck) == {"a", "b", "c"}
    assert isinstance(exc_info.value, StructuralError)


def test_self_dependency_is_a_cycle() -> None:
    with pytest.raises(CycleError) as exc_info:
        compute_waves(_plan({"a": ("a",)}))
    assert exc_info.value.cycles == (("a", "a"),)


def test_missing_dependency_is_reported_before_cycles() -> None:
    plan = _plan({"a": ("b",), "b": ("a",), "c": ("ghost",)})

    with pytest.raises(MissingDependencyError) as exc_info:
        compute_waves(plan)

    assert exc_info.value.missing == (("c", "ghost"),)


def test_downstream_of_diamond_has_no_duplicates() -> None:
    plan = _diamond()

    assert downstream_of(plan, "a") == ("b", "c", "d")
    assert downstream_of(plan, "b") == ("d",)
    assert downstream_of(plan, "d") == ()
    assert downstream_of(plan, "unknown") == ()


def test_validate_plan_reports_everything_without_raising() -> None:
    plan = _plan({"a": (), "b": ("a",), "x": ("y",), "y": ("x",), "z": ("nope",)})

    result = validate_plan(plan)

    assert not result.valid
    assert result.cycles == (("x", "y", "x"),)
    assert result.missing_dependencies == (("z", "nope"),)
    assert result.orphans == ("x", "y", "z")
    assert result.to_dict()["missing_dependencies"] == [{"task_id": "z", "missing": "nope"}]


def test_validate_plan_accepts_a_clean_plan() -> None:
    result = validate_plan(_diamond())
    assert result.valid
    assert result.to_dict() == {
        "valid": True,
        "cycles": [],
        "missing_dependencies": [],
        "orphans": [],
    }


def test_graph_queries_and_node_removal() -> None:
    graph = TaskGraph.from_plan(_diamond())

    assert graph.roots() == ("a",)
    assert graph.get_dependencies("d") == ("b", "c")
    assert graph.get_dependencies("d", transitive=True) == ("b", "c", "a")
    assert graph.get_runnable({"a"}) == ("b", "c")
    assert graph.topological_sort() == ("a", "b", "c", "d")

    graph.remove_node("b")
    assert graph.edges == (("a", "c"), ("c", "d"))
    with pytest.raises(KeyError):
        graph.get_dependents("b")


def test_graph_serialization_preserves_order() -> None:
    graph = TaskGraph(nodes=["b", "a"], edges=[("b", "a")])
    restored = TaskGraph.deserialize(graph.serialize())

    assert restored.nodes == ("b", "a")
    assert restored.edges == (("b", "a"),)

    with pytest.raises(ValueError, match="Duplicate node"):
        TaskGraph.deserialize({"nodes": ["a", "a"], "edges": []})
    with pytest.raises(TypeError):
        TaskGraph.deserialize({"nodes": "ab", "edges": []})


@st.composite
def _acyclic_plans(draw: st.DrawFn) -> Plan:
    size = draw(st.integers(min_value=1, max_value=12))
    ids = [f"t{index}" for index in range(size)]
    tasks = []
    for index, task_id in enumerate(ids):
        earlier = ids[:index]
        deps = draw(st.lists(st.sampled_from(earlier), unique=True)) if earlier else []
        tasks.append(Task(id=task_id, title=task_id, dependencies=tuple(deps)))
    order = draw(st.permutations(tasks))
    return Plan(tasks=list(order))


@settings(max_examples=75, deadline=None)
@given(_acyclic_plans())
def test_every_task_lands_in_exactly_one_wave_after_its_dependencies(plan: Plan) -> None:
    waves = compute_waves(plan)

    level_of: dict[str, int] = {}
    for wave in waves:
        for task_id in wave.task_ids:
            assert task_id not in level_of
            level_of[task_id] = wave.level

    assert set(level_of) == set(plan.task_ids)
    for task in plan:
        for dependency in task.dependencies:
            assert level_of[task.id] > level_of[dependency]
