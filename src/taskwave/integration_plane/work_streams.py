"""
Parallel work-stream coordination.

A work stream is an independent line of work running in its own isolated
checkout. The coordinator provisions checkouts through an
``IsolationProvider``, orders streams with the same wave scheduler used for
tasks, and persists the stream registry after every lifecycle transition.
"""

from __future__ import annotations

import asyncio
import json
from datetime import UTC, datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any, Final

import structlog

from taskwave.constants import STREAM_REGISTRY_FILE
from taskwave.domain.models import (
    ExecutionStrategy,
    Plan,
    Task,
    TaskComplexity,
    Wave,
    WorkStream,
    WorkStreamStatus,
    WorkStreamSummary,
)
from taskwave.persistence.safe_io import SafeStore, StorageError
from taskwave.planning.task_graph import compute_waves

if TYPE_CHECKING:
    from collections.abc import Sequence

    from taskwave.integration_plane.worktree_manager import IsolationProvider


class InvalidTransitionError(ValueError):
    """Raised when a lifecycle operation does not apply to the stream's status."""


_START_FROM: Final[frozenset[WorkStreamStatus]] = frozenset({WorkStreamStatus.INITIALIZING})
_COMPLETE_FROM: Final[frozenset[WorkStreamStatus]] = frozenset(
    {WorkStreamStatus.INITIALIZING, WorkStreamStatus.ACTIVE}
)


async def load_stream_registry(
    store: SafeStore,
    registry_path: str | Path,
) -> tuple[WorkStream, ...]:
    """Read a persisted registry. A missing or empty file yields no streams."""
    text = await store.safe_read(registry_path)
    if not text.strip():
        return ()
    try:
        payload = json.loads(text)
    except json.JSONDecodeError as exc:
        raise StorageError(f"work-stream registry is not valid JSON: {registry_path}") from exc
    if not isinstance(payload, list):
        raise StorageError(f"work-stream registry must be a JSON array: {registry_path}")

    streams: list[WorkStream] = []
    for index, item in enumerate(payload):
        if not isinstance(item, dict):
            raise StorageError(f"work-stream registry entry {index} must be an object")
        try:
            streams.append(WorkStream.from_dict(item))
        except ValueError as exc:
            raise StorageError(f"work-stream registry entry {index} is invalid: {exc}") from exc
    return tuple(streams)


class WorkStreamCoordinator:
    """Lifecycle, ordering and persistence for a session's work streams."""

    def __init__(
        self,
        isolation: IsolationProvider,
        state_dir: str | Path,
        *,
        store: SafeStore | None = None,
        registry_file: str = STREAM_REGISTRY_FILE,
        logger: Any | None = None,
    ) -> None:
        self._isolation = isolation
        self._registry_path = Path(state_dir) / registry_file
        self._logger = logger if logger is not None else structlog.get_logger(__name__)
        self._store = store if store is not None else SafeStore(logger=self._logger)
        self._streams: dict[str, WorkStream] = {}

    @property
    def registry_path(self) -> Path:
        return self._registry_path

    @property
    def streams(self) -> tuple[WorkStream, ...]:
        return tuple(self._streams.values())

    def get_stream(self, stream_id: str) -> WorkStream | None:
        return self._streams.get(stream_id)

    def status_of(self, stream_id: str) -> WorkStreamStatus | None:
        stream = self._streams.get(stream_id)
        return stream.status if stream is not None else None

    async def initialize(self) -> bool:
        """
        Prepare isolation and merge the persisted registry into memory.

        Returns ``False`` when isolated checkouts are unavailable; the registry
        is not loaded in that case.
        """
        ready = await asyncio.to_thread(self._isolation.initialize)
        if not ready:
            self._logger.error(
                "work_stream_isolation_unavailable",
                registry_path=str(self._registry_path),
            )
            return False

        for stream in await load_stream_registry(self._store, self._registry_path):
            self._streams[stream.id] = stream
        self._logger.info(
            "work_streams_loaded",
            registry_path=str(self._registry_path),
            count=len(self._streams),
        )
        return True

    async def create_stream(
        self,
        stream_id: str,
        name: str,
        *,
        phases: Sequence[str] = (),
        dependencies: Sequence[str] = (),
    ) -> WorkStream:
        """Provision an isolated checkout and register the stream as ``initializing``."""
        if stream_id in self._streams:
            raise ValueError(f"work stream already exists: {stream_id}")

        worktree = await asyncio.to_thread(self._isolation.create_worktree, stream_id)
        stream = WorkStream(
            id=stream_id,
            name=name,
            branch=worktree.branch,
            root_path=str(worktree.path),
            status=WorkStreamStatus.INITIALIZING,
            dependencies=tuple(dependencies),
            phases=tuple(phases),
        )
        self._streams[stream_id] = stream
        self._logger.info(
            "work_stream_created",
            stream_id=stream_id,
            branch=stream.branch,
            root_path=stream.root_path,
        )
        await self._save()
        return stream

    async def start_stream(self, stream_id: str) -> WorkStream:
        stream = self._require(stream_id)
        if stream.status not in _START_FROM:
            raise InvalidTransitionError(
                f"cannot start work stream {stream_id!r} from status {stream.status.value!r}"
            )
        await self._transition(stream, WorkStreamStatus.ACTIVE)
        return stream

    async def pause_stream(self, stream_id: str) -> bool:
        """Move an ``active`` stream back to ``initializing``; other statuses are left alone."""
        stream = self._require(stream_id)
        if stream.status is not WorkStreamStatus.ACTIVE:
            return False
        await self._transition(stream, WorkStreamStatus.INITIALIZING)
        return True

    async def complete_stream(self, stream_id: str) -> bool:
        """
        Merge the stream back into the base branch.

        On success the stream becomes ``completed`` and its checkout is removed.
        On failure it becomes ``failed`` and the checkout is kept for inspection.
        """
        stream = self._require(stream_id)
        if stream.status not in _COMPLETE_FROM:
            raise InvalidTransitionError(
                f"cannot complete work stream {stream_id!r} from status {stream.status.value!r}"
            )

        await self._transition(stream, WorkStreamStatus.MERGING)
        try:
            result = await asyncio.to_thread(self._isolation.merge_worktree, stream_id)
        except Exception as exc:
            self._logger.error(
                "work_stream_merge_failed",
                stream_id=stream_id,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            await self._transition(stream, WorkStreamStatus.FAILED)
            raise

        if not result.success:
            self._logger.error(
                "work_stream_merge_failed",
                stream_id=stream_id,
                error=result.error,
                conflict_files=list(result.conflict_files),
            )
            await self._transition(stream, WorkStreamStatus.FAILED)
            return False

        await self._transition(stream, WorkStreamStatus.COMPLETED)
        await asyncio.to_thread(self._isolation.cleanup_worktree, stream_id)
        return True

    def execution_waves(self) -> tuple[Wave, ...]:
        """Order streams by their declared dependencies using the task wave scheduler."""
        if not self._streams:
            return ()
        plan = Plan(
            tasks=[
                Task(
                    id=stream.id,
                    title=stream.name,
                    dependencies=stream.dependencies,
                    complexity=TaskComplexity.TRIVIAL,
                )
                for stream in self._streams.values()
            ],
            strategy=ExecutionStrategy.PARALLEL,
            summary="Work-stream execution order",
        )
        return compute_waves(plan)

    def summary(self) -> WorkStreamSummary:
        counts = {status: 0 for status in WorkStreamStatus}
        for stream in self._streams.values():
            counts[stream.status] += 1
        return WorkStreamSummary(
            active=counts[WorkStreamStatus.ACTIVE],
            completed=counts[WorkStreamStatus.COMPLETED],
            failed=counts[WorkStreamStatus.FAILED],
            pending=counts[WorkStreamStatus.INITIALIZING],
            merging=counts[WorkStreamStatus.MERGING],
        )

    async def cleanup(self) -> None:
        """Remove every checkout and forget all streams."""
        await asyncio.to_thread(self._isolation.cleanup_all)
        self._streams.clear()
        await self._save()
        self._logger.info("work_streams_cleaned_up", registry_path=str(self._registry_path))

    def _require(self, stream_id: str) -> WorkStream:
        stream = self._streams.get(stream_id)
        if stream is None:
            raise KeyError(f"Unknown work stream: {stream_id}")
        return stream

    async def _transition(self, stream: WorkStream, status: WorkStreamStatus) -> None:
        previous = stream.status
        stream.status = status
        stream.updated_at = datetime.now(tz=UTC)
        self._logger.info(
            "work_stream_transition",
            stream_id=stream.id,
            from_status=previous.value,
            to_status=status.value,
        )
        await self._save()

    async def _save(self) -> None:
        payload = [stream.to_dict() for stream in self._streams.values()]
        await self._store.safe_write(
            self._registry_path,
            json.dumps(payload, indent=2, sort_keys=True) + "\n",
        )


__all__ = [
    "InvalidTransitionError",
    "WorkStreamCoordinator",
    "load_stream_registry",
]
