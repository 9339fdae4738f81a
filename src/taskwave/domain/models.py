"""Dataclass domain models with strict validation and canonical serialization."""

from __future__ import annotations

import json
import uuid
from collections.abc import Iterator, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum, StrEnum
from typing import NoReturn, TypeVar

from taskwave.constants import COMPLEXITY_LADDER, PLAN_SCHEMA_VERSION

JSONScalar = str | int | float | bool | None
JSONValue = JSONScalar | list["JSONValue"] | dict[str, "JSONValue"]

TEnum = TypeVar("TEnum", bound=Enum)

_MAX_TEXT = 65_536
_MAX_TITLE = 512


class TaskComplexity(StrEnum):
    TRIVIAL = "trivial"
    SIMPLE = "simple"
    MODERATE = "moderate"
    COMPLEX = "complex"
    EXPERT = "expert"

    @property
    def rank(self) -> int:
        return COMPLEXITY_LADDER.index(self.value)

    def escalated(self) -> TaskComplexity:
        """Return the next tier up the ladder, clamped at ``expert``."""
        next_rank = min(self.rank + 1, len(COMPLEXITY_LADDER) - 1)
        return TaskComplexity(COMPLEXITY_LADDER[next_rank])


class TaskStatus(StrEnum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class ExecutionStrategy(StrEnum):
    SERIAL = "serial"
    PARALLEL = "parallel"


class WorkStreamStatus(StrEnum):
    INITIALIZING = "initializing"
    ACTIVE = "active"
    MERGING = "merging"
    COMPLETED = "completed"
    FAILED = "failed"


def _fail(path: str, message: str) -> NoReturn:
    raise ValueError(f"{path}: {message}")


def _utc_now() -> datetime:
    return datetime.now(tz=UTC)


def _expect_object(
    value: object,
    path: str,
    *,
    required: set[str],
    optional: set[str] | None = None,
) -> dict[str, object]:
    if not isinstance(value, Mapping):
        _fail(path, f"expected object, got {type(value).__name__}")

    parsed: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            _fail(path, f"object keys must be strings, got {type(key).__name__}")
        parsed[key] = item

    allowed = required | (optional or set())
    unknown = sorted(key for key in parsed if key not in allowed)
    if unknown:
        _fail(path, f"unexpected fields: {unknown}")

    missing = sorted(key for key in required if key not in parsed)
    if missing:
        _fail(path, f"missing required fields: {missing}")

    return parsed


def _as_str(
    value: object,
    path: str,
    *,
    min_len: int = 1,
    max_len: int = _MAX_TEXT,
    strip: bool = True,
) -> str:
    if not isinstance(value, str):
        _fail(path, f"expected string, got {type(value).__name__}")
    normalized = value.strip() if strip else value
    if len(normalized) < min_len:
        _fail(path, f"must be at least {min_len} character(s)")
    if len(normalized) > max_len:
        _fail(path, f"must be <= {max_len} characters")
    return normalized


def _as_optional_str(value: object, path: str) -> str | None:
    if value is None:
        return None
    return _as_str(value, path)


def _as_bool(value: object, path: str) -> bool:
    if isinstance(value, bool):
        return value
    _fail(path, f"expected boolean, got {type(value).__name__}")


def _as_int(value: object, path: str, *, minimum: int | None = None) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        _fail(path, f"expected integer, got {type(value).__name__}")
    if minimum is not None and value < minimum:
        _fail(path, f"must be >= {minimum}")
    return value


def _as_float(value: object, path: str, *, minimum: float | None = None) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        _fail(path, f"expected number, got {type(value).__name__}")
    parsed = float(value)
    if minimum is not None and parsed < minimum:
        _fail(path, f"must be >= {minimum}")
    return parsed


def _as_datetime(value: object, path: str) -> datetime:
    parsed: datetime
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str):
        text = value[:-1] + "+00:00" if value.endswith("Z") else value
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError as exc:
            _fail(path, f"invalid ISO-8601 datetime: {value!r} ({exc})")
    else:
        _fail(path, f"expected datetime or ISO-8601 string, got {type(value).__name__}")

    if parsed.tzinfo is None or parsed.utcoffset() is None:
        _fail(path, "datetime must be timezone-aware UTC")
    return parsed.astimezone(UTC)


def _datetime_to_iso8601z(value: datetime) -> str:
    normalized = _as_datetime(value, "datetime")
    return normalized.isoformat(timespec="microseconds").replace("+00:00", "Z")


def _as_enum(enum_type: type[TEnum], value: object, path: str) -> TEnum:
    if isinstance(value, enum_type):
        return value
    if not isinstance(value, str):
        _fail(path, f"expected string enum value, got {type(value).__name__}")
    try:
        return enum_type(value)
    except ValueError:
        allowed = ", ".join(sorted(item.value for item in enum_type))
        _fail(path, f"invalid value {value!r}; expected one of: {allowed}")


def _as_ordered_ids(value: object, path: str) -> tuple[str, ...]:
    """Parse a sequence of ids, dropping repeats but keeping first-seen order."""
    if isinstance(value, (str, bytes)) or not isinstance(value, (list, tuple)):
        _fail(path, f"expected array, got {type(value).__name__}")

    ordered: dict[str, None] = {}
    for index, item in enumerate(value):
        ordered.setdefault(_as_str(item, f"{path}[{index}]", max_len=_MAX_TITLE), None)
    return tuple(ordered)


@dataclass(slots=True)
class TaskResult:
    """Outcome reported by a worker for one task attempt."""

    success: bool
    output: str = ""
    worker: str | None = None
    review_notes: str = ""
    duration_ms: float = 0.0
    finished_at: datetime = field(default_factory=_utc_now)

    def __post_init__(self) -> None:
        self.success = _as_bool(self.success, "TaskResult.success")
        if not isinstance(self.output, str):
            _fail("TaskResult.output", f"expected string, got {type(self.output).__name__}")
        self.worker = _as_optional_str(self.worker, "TaskResult.worker")
        self.duration_ms = _as_float(self.duration_ms, "TaskResult.duration_ms", minimum=0.0)
        self.finished_at = _as_datetime(self.finished_at, "TaskResult.finished_at")

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "success": self.success,
            "output": self.output,
            "worker": self.worker,
            "review_notes": self.review_notes,
            "duration_ms": self.duration_ms,
            "finished_at": _datetime_to_iso8601z(self.finished_at),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> TaskResult:
        parsed = _expect_object(
            data,
            "TaskResult",
            required={"success"},
            optional={"output", "worker", "review_notes", "duration_ms", "finished_at"},
        )
        return cls(
            success=_as_bool(parsed["success"], "TaskResult.success"),
            output=_as_str(parsed.get("output", ""), "TaskResult.output", min_len=0, strip=False),
            worker=_as_optional_str(parsed.get("worker"), "TaskResult.worker"),
            review_notes=_as_str(
                parsed.get("review_notes", ""), "TaskResult.review_notes", min_len=0
            ),
            duration_ms=_as_float(parsed.get("duration_ms", 0.0), "TaskResult.duration_ms"),
            finished_at=_as_datetime(
                parsed.get("finished_at", _utc_now()), "TaskResult.finished_at"
            ),
        )


@dataclass(slots=True)
class Task:
    """
    One unit of work inside a plan.

    ``status``, ``result``, ``attempts`` and ``assigned_worker`` are runtime
    fields. Only orchestrator components (the plan executor and the
    correction manager) write them.
    """

    id: str
    title: str
    dependencies: tuple[str, ...] = ()
    complexity: TaskComplexity = TaskComplexity.MODERATE
    status: TaskStatus = TaskStatus.PENDING
    attempts: int = 0
    max_attempts: int = 1
    assigned_worker: str | None = None
    result: TaskResult | None = None
    description: str = ""

    def __post_init__(self) -> None:
        self.id = _as_str(self.id, "Task.id", max_len=_MAX_TITLE)
        self.title = _as_str(self.title, "Task.title", max_len=_MAX_TITLE)
        self.dependencies = _as_ordered_ids(self.dependencies, f"Task[{self.id}].dependencies")
        self.complexity = _as_enum(TaskComplexity, self.complexity, "Task.complexity")
        self.status = _as_enum(TaskStatus, self.status, "Task.status")
        self.attempts = _as_int(self.attempts, "Task.attempts", minimum=0)
        self.max_attempts = _as_int(self.max_attempts, "Task.max_attempts", minimum=1)
        self.assigned_worker = _as_optional_str(self.assigned_worker, "Task.assigned_worker")
        if self.result is not None and not isinstance(self.result, TaskResult):
            _fail("Task.result", "must be TaskResult or None")

    @property
    def is_done(self) -> bool:
        return self.status in {TaskStatus.COMPLETED, TaskStatus.FAILED}

    def reset(self) -> None:
        """Return the task to a fresh pending state, keeping its complexity."""
        self.status = TaskStatus.PENDING
        self.result = None
        self.attempts = 0
        self.assigned_worker = None

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "dependencies": list(self.dependencies),
            "complexity": self.complexity.value,
            "status": self.status.value,
            "attempts": self.attempts,
            "max_attempts": self.max_attempts,
            "assigned_worker": self.assigned_worker,
            "result": self.result.to_dict() if self.result is not None else None,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> Task:
        parsed = _expect_object(
            data,
            "Task",
            required={"id"},
            optional={
                "title",
                "description",
                "dependencies",
                "complexity",
                "status",
                "attempts",
                "max_attempts",
                "assigned_worker",
                "result",
            },
        )
        task_id = _as_str(parsed["id"], "Task.id", max_len=_MAX_TITLE)
        raw_result = parsed.get("result")
        result = None
        if raw_result is not None:
            if not isinstance(raw_result, Mapping):
                _fail(f"Task[{task_id}].result", "expected object")
            result = TaskResult.from_dict(raw_result)

        return cls(
            id=task_id,
            title=_as_str(parsed.get("title", task_id), "Task.title", max_len=_MAX_TITLE),
            description=_as_str(parsed.get("description", ""), "Task.description", min_len=0),
            dependencies=_as_ordered_ids(
                parsed.get("dependencies", ()), f"Task[{task_id}].dependencies"
            ),
            complexity=_as_enum(
                TaskComplexity, parsed.get("complexity", "moderate"), "Task.complexity"
            ),
            status=_as_enum(TaskStatus, parsed.get("status", "pending"), "Task.status"),
            attempts=_as_int(parsed.get("attempts", 0), "Task.attempts", minimum=0),
            max_attempts=_as_int(parsed.get("max_attempts", 1), "Task.max_attempts", minimum=1),
            assigned_worker=_as_optional_str(
                parsed.get("assigned_worker"), "Task.assigned_worker"
            ),
            result=result,
        )


@dataclass(slots=True)
class Plan:
    """
    Ordered collection of tasks with a declared execution strategy.

    The plan's identity is fixed at construction while its tasks are mutated
    in place during a run. Structural validity (resolved, acyclic dependencies)
    is checked by the graph scheduler rather than here, so a broken plan can
    still be loaded and diagnosed.
    """

    tasks: list[Task]
    strategy: ExecutionStrategy = ExecutionStrategy.PARALLEL
    summary: str = ""
    id: str = field(default_factory=lambda: uuid.uuid4().hex)

    def __post_init__(self) -> None:
        self.tasks = list(self.tasks)
        self.strategy = _as_enum(ExecutionStrategy, self.strategy, "Plan.strategy")
        self.id = _as_str(self.id, "Plan.id", max_len=_MAX_TITLE)

        seen: set[str] = set()
        for index, task in enumerate(self.tasks):
            if not isinstance(task, Task):
                _fail(f"Plan.tasks[{index}]", "must be Task")
            if task.id in seen:
                _fail("Plan.tasks", f"duplicate task id {task.id!r}")
            seen.add(task.id)

    def __iter__(self) -> Iterator[Task]:
        return iter(self.tasks)

    def __len__(self) -> int:
        return len(self.tasks)

    def __contains__(self, task_id: object) -> bool:
        return any(task.id == task_id for task in self.tasks)

    @property
    def task_ids(self) -> tuple[str, ...]:
        return tuple(task.id for task in self.tasks)

    def get(self, task_id: str) -> Task | None:
        for task in self.tasks:
            if task.id == task_id:
                return task
        return None

    def require(self, task_id: str) -> Task:
        task = self.get(task_id)
        if task is None:
            raise KeyError(f"Unknown task: {task_id}")
        return task

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "schema_version": PLAN_SCHEMA_VERSION,
            "id": self.id,
            "summary": self.summary,
            "strategy": self.strategy.value,
            "tasks": [task.to_dict() for task in self.tasks],
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), sort_keys=True, indent=2, ensure_ascii=False)

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> Plan:
        parsed = _expect_object(
            data,
            "Plan",
            required={"tasks"},
            optional={"schema_version", "id", "summary", "strategy"},
        )
        version = _as_int(parsed.get("schema_version", PLAN_SCHEMA_VERSION), "Plan.schema_version")
        if version != PLAN_SCHEMA_VERSION:
            _fail("Plan.schema_version", f"unsupported version {version}")

        raw_tasks = parsed["tasks"]
        if not isinstance(raw_tasks, (list, tuple)):
            _fail("Plan.tasks", f"expected array, got {type(raw_tasks).__name__}")
        tasks: list[Task] = []
        for index, raw_task in enumerate(raw_tasks):
            if not isinstance(raw_task, Mapping):
                _fail(f"Plan.tasks[{index}]", "expected object")
            tasks.append(Task.from_dict(raw_task))

        kwargs: dict[str, object] = {}
        if "id" in parsed:
            kwargs["id"] = _as_str(parsed["id"], "Plan.id", max_len=_MAX_TITLE)
        return cls(
            tasks=tasks,
            strategy=_as_enum(
                ExecutionStrategy, parsed.get("strategy", "parallel"), "Plan.strategy"
            ),
            summary=_as_str(parsed.get("summary", ""), "Plan.summary", min_len=0),
            **kwargs,  # type: ignore[arg-type]
        )


@dataclass(frozen=True, slots=True)
class Wave:
    """One scheduling level: tasks that may run concurrently."""

    level: int
    task_ids: tuple[str, ...]

    def to_dict(self) -> dict[str, JSONValue]:
        return {"level": self.level, "task_ids": list(self.task_ids)}


@dataclass(slots=True)
class WorkStream:
    """An independently progressing line of work in its own checkout."""

    id: str
    name: str
    branch: str
    root_path: str
    status: WorkStreamStatus = WorkStreamStatus.INITIALIZING
    dependencies: tuple[str, ...] = ()
    phases: tuple[str, ...] = ()
    created_at: datetime = field(default_factory=_utc_now)
    updated_at: datetime = field(default_factory=_utc_now)

    def __post_init__(self) -> None:
        self.id = _as_str(self.id, "WorkStream.id", max_len=_MAX_TITLE)
        self.name = _as_str(self.name, "WorkStream.name", max_len=_MAX_TITLE)
        self.branch = _as_str(self.branch, "WorkStream.branch", min_len=0, max_len=_MAX_TITLE)
        self.root_path = _as_str(self.root_path, "WorkStream.root_path", min_len=0)
        self.status = _as_enum(WorkStreamStatus, self.status, "WorkStream.status")
        self.dependencies = _as_ordered_ids(
            self.dependencies, f"WorkStream[{self.id}].dependencies"
        )
        self.phases = tuple(
            _as_str(phase, f"WorkStream[{self.id}].phases[{index}]")
            for index, phase in enumerate(self.phases)
        )
        self.created_at = _as_datetime(self.created_at, "WorkStream.created_at")
        self.updated_at = _as_datetime(self.updated_at, "WorkStream.updated_at")

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "id": self.id,
            "name": self.name,
            "branch": self.branch,
            "root_path": self.root_path,
            "status": self.status.value,
            "dependencies": list(self.dependencies),
            "phases": list(self.phases),
            "created_at": _datetime_to_iso8601z(self.created_at),
            "updated_at": _datetime_to_iso8601z(self.updated_at),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> WorkStream:
        parsed = _expect_object(
            data,
            "WorkStream",
            required={"id", "name", "branch", "root_path", "status"},
            optional={"dependencies", "phases", "created_at", "updated_at"},
        )
        raw_phases = parsed.get("phases", ())
        if not isinstance(raw_phases, (list, tuple)):
            _fail("WorkStream.phases", f"expected array, got {type(raw_phases).__name__}")
        now = _utc_now()
        return cls(
            id=_as_str(parsed["id"], "WorkStream.id"),
            name=_as_str(parsed["name"], "WorkStream.name"),
            branch=_as_str(parsed["branch"], "WorkStream.branch", min_len=0),
            root_path=_as_str(parsed["root_path"], "WorkStream.root_path", min_len=0),
            status=_as_enum(WorkStreamStatus, parsed["status"], "WorkStream.status"),
            dependencies=_as_ordered_ids(
                parsed.get("dependencies", ()), "WorkStream.dependencies"
            ),
            phases=tuple(raw_phases),  # validated in __post_init__
            created_at=_as_datetime(parsed.get("created_at", now), "WorkStream.created_at"),
            updated_at=_as_datetime(parsed.get("updated_at", now), "WorkStream.updated_at"),
        )


@dataclass(frozen=True, slots=True)
class WorkStreamSummary:
    """Status distribution across all registered streams."""

    active: int
    completed: int
    failed: int
    pending: int
    merging: int

    @property
    def total(self) -> int:
        return self.active + self.completed + self.failed + self.pending + self.merging

    def to_dict(self) -> dict[str, int]:
        return {
            "active": self.active,
            "completed": self.completed,
            "failed": self.failed,
            "pending": self.pending,
            "merging": self.merging,
        }


__all__ = [
    "ExecutionStrategy",
    "JSONValue",
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
