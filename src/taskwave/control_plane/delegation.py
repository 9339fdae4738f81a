"""
Delegation admission control.

One ``DelegationGuard`` is created per orchestration session and consulted
before every worker spawn. It enforces the session's ``DelegationPolicy``:

- mode (``leaf-only`` | ``bounded-recursive`` | ``no-delegation``)
- recursion depth and parallel caps
- a total spawn budget of ``runaway_threshold * max(max_parallel, 1)``
- runaway detection over worker output (``leaf-only`` only)

Admission outcomes are returned as ``DelegationDecision`` values; the guard
never raises for a denial. Decisions and freezes are logged with ``structlog``.
"""

from __future__ import annotations

import asyncio
import re
from collections import deque
from contextlib import suppress
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import TYPE_CHECKING, Any, Final

import structlog

if TYPE_CHECKING:
    from taskwave.utils.concurrency import CancellationToken


class DelegationMode(StrEnum):
    """How much delegation workers are permitted."""

    LEAF_ONLY = "leaf-only"
    BOUNDED_RECURSIVE = "bounded-recursive"
    NO_DELEGATION = "no-delegation"


class DenialReason(StrEnum):
    DISABLED = "disabled"
    FROZEN = "frozen"
    DEPTH = "depth"
    CAPACITY = "capacity"
    BUDGET = "budget"
    CANCELLED = "cancelled"


DEFAULT_SIGNAL_PATTERNS: Final[tuple[str, ...]] = (
    r"\bspawn\s+(a\s+)?sub\s*agent",
    r"\bdelegate\s+(this\s+)?task",
    r"\bcreate\s+(a\s+)?(new\s+)?agent",
    r"\blaunch\s+(a\s+)?(new\s+)?sub\s*agent",
    r"\bfork\s+(a\s+)?(new\s+)?agent",
    r"\brecursive\s+planning",
    r"\bspawn\s+another\s+agent",
    r"\bre-plan\s+the\s+(global\s+)?mission",
    r"\bI('ll| will)\s+orchestrate",
    r"\bI('ll| will)\s+decompose\s+this",
)

DEFAULT_RUNAWAY_THRESHOLD: Final[int] = 5

_MODE_LIMITS: Final[dict[DelegationMode, tuple[int, int]]] = {
    DelegationMode.LEAF_ONLY: (1, 3),
    DelegationMode.BOUNDED_RECURSIVE: (2, 4),
    DelegationMode.NO_DELEGATION: (0, 0),
}


@dataclass(frozen=True, slots=True)
class DelegationPolicy:
    """Immutable per-session delegation limits."""

    mode: DelegationMode = DelegationMode.LEAF_ONLY
    max_depth: int = 1
    max_parallel: int = 3
    runaway_threshold: int = DEFAULT_RUNAWAY_THRESHOLD
    signal_patterns: tuple[str, ...] = DEFAULT_SIGNAL_PATTERNS

    def __post_init__(self) -> None:
        object.__setattr__(self, "mode", DelegationMode(self.mode))
        if self.max_depth < 0:
            raise ValueError("max_depth must be >= 0")
        if self.max_parallel < 0:
            raise ValueError("max_parallel must be >= 0")
        if self.runaway_threshold < 1:
            raise ValueError("runaway_threshold must be >= 1")
        object.__setattr__(self, "signal_patterns", tuple(self.signal_patterns))
        for pattern in self.signal_patterns:
            try:
                re.compile(pattern)
            except re.error as exc:
                raise ValueError(f"invalid signal pattern {pattern!r}: {exc}") from exc

    @classmethod
    def for_mode(
        cls,
        mode: DelegationMode | str,
        *,
        max_depth: int | None = None,
        max_parallel: int | None = None,
        runaway_threshold: int | None = None,
        signal_patterns: tuple[str, ...] | None = None,
    ) -> DelegationPolicy:
        """
        Build a policy with per-mode defaults.

        ``leaf-only`` clamps depth to 1 so workers can never re-delegate.
        ``no-delegation`` always has zero depth and zero parallelism.
        """
        resolved = DelegationMode(mode)
        default_depth, default_parallel = _MODE_LIMITS[resolved]

        if resolved is DelegationMode.NO_DELEGATION:
            depth, parallel = 0, 0
        else:
            depth = default_depth if max_depth is None else max_depth
            parallel = default_parallel if max_parallel is None else max_parallel
            if resolved is DelegationMode.LEAF_ONLY:
                depth = min(depth, 1)

        return cls(
            mode=resolved,
            max_depth=depth,
            max_parallel=parallel,
            runaway_threshold=(
                DEFAULT_RUNAWAY_THRESHOLD if runaway_threshold is None else runaway_threshold
            ),
            signal_patterns=DEFAULT_SIGNAL_PATTERNS if signal_patterns is None else signal_patterns,
        )

    @property
    def total_ceiling(self) -> int:
        return self.runaway_threshold * max(self.max_parallel, 1)

    def to_dict(self) -> dict[str, object]:
        return {
            "mode": self.mode.value,
            "max_depth": self.max_depth,
            "max_parallel": self.max_parallel,
            "runaway_threshold": self.runaway_threshold,
        }


@dataclass(frozen=True, slots=True)
class DelegationDecision:
    allowed: bool
    reason: str | None = None
    reason_code: DenialReason | None = None
    frozen: bool = False


@dataclass(frozen=True, slots=True)
class BlockLogEntry:
    timestamp: datetime
    reason: str

    def to_dict(self) -> dict[str, str]:
        return {
            "timestamp": self.timestamp.isoformat().replace("+00:00", "Z"),
            "reason": self.reason,
        }


@dataclass(frozen=True, slots=True)
class DelegationStats:
    """Point-in-time snapshot of guard counters for audit output."""

    mode: DelegationMode
    total_spawned: int
    active_count: int
    max_depth_reached: int
    delegations_blocked: int
    frozen: bool
    runaway_signals: int
    block_log: tuple[BlockLogEntry, ...] = field(default_factory=tuple)

    def to_dict(self) -> dict[str, object]:
        return {
            "mode": self.mode.value,
            "total_spawned": self.total_spawned,
            "active_count": self.active_count,
            "max_depth_reached": self.max_depth_reached,
            "delegations_blocked": self.delegations_blocked,
            "frozen": self.frozen,
            "runaway_signals": self.runaway_signals,
            "block_log": [entry.to_dict() for entry in self.block_log],
        }


_CANCELLED_REASON: Final[str] = "Cancelled while waiting for delegation slot"


class DelegationGuard:
    """
    Stateful per-session admission guard.

    The guard belongs to the orchestrator; workers never see it. Callers that
    hit the parallel cap can park in :meth:`wait_for_slot`, which hands out
    freed slots to waiters in FIFO order.
    """

    def __init__(
        self,
        policy: DelegationPolicy | None = None,
        *,
        logger: Any | None = None,
    ) -> None:
        self._policy = policy if policy is not None else DelegationPolicy()
        self._signal_patterns = tuple(
            re.compile(pattern, re.IGNORECASE) for pattern in self._policy.signal_patterns
        )
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

        self._total_spawned = 0
        self._active_count = 0
        self._max_depth_reached = 0
        self._delegations_blocked = 0
        self._frozen = False
        self._runaway_signals = 0
        self._block_log: list[BlockLogEntry] = []
        self._waiters: deque[asyncio.Future[DelegationDecision | None]] = deque()

        self._logger.info("delegation_guard_initialized", **self._policy.to_dict())

    # Accessors

    @property
    def policy(self) -> DelegationPolicy:
        return self._policy

    @property
    def mode(self) -> DelegationMode:
        return self._policy.mode

    @property
    def is_no_delegation(self) -> bool:
        return self._policy.mode is DelegationMode.NO_DELEGATION

    @property
    def is_frozen(self) -> bool:
        return self._frozen

    @property
    def max_parallel(self) -> int:
        return self._policy.max_parallel

    @property
    def active_count(self) -> int:
        return self._active_count

    @property
    def pending_waiters(self) -> int:
        return sum(1 for waiter in self._waiters if not waiter.done())

    def stats(self) -> DelegationStats:
        return DelegationStats(
            mode=self._policy.mode,
            total_spawned=self._total_spawned,
            active_count=self._active_count,
            max_depth_reached=self._max_depth_reached,
            delegations_blocked=self._delegations_blocked,
            frozen=self._frozen,
            runaway_signals=self._runaway_signals,
            block_log=tuple(self._block_log),
        )

    # Admission

    def request_delegation(self, depth: int) -> DelegationDecision:
        """Admit or deny one delegation at ``depth`` (0 = orchestrator)."""
        policy = self._policy
        if policy.mode is DelegationMode.NO_DELEGATION:
            return self._block(
                "Delegation disabled (no-delegation mode)",
                DenialReason.DISABLED,
            )

        if self._frozen:
            return self._block(
                "Delegation frozen: runaway behavior detected",
                DenialReason.FROZEN,
                frozen=True,
            )

        if depth >= policy.max_depth:
            return self._block(
                f"Depth {depth} exceeds max allowed depth {policy.max_depth}",
                DenialReason.DEPTH,
            )

        if self._active_count >= policy.max_parallel:
            return self._block(
                f"Active worker count {self._active_count} is at parallel cap "
                f"{policy.max_parallel}",
                DenialReason.CAPACITY,
            )

        ceiling = policy.total_ceiling
        if self._total_spawned >= ceiling:
            return self._block(
                f"Total workers spawned ({self._total_spawned}) exceeds session budget "
                f"({ceiling})",
                DenialReason.BUDGET,
            )

        self._total_spawned += 1
        self._active_count += 1
        self._max_depth_reached = max(self._max_depth_reached, depth + 1)
        return DelegationDecision(allowed=True)

    def release_delegation(self) -> None:
        """Mark one delegated worker finished and wake the oldest waiter."""
        if self._active_count > 0:
            self._active_count -= 1
        self._wake_next()

    async def wait_for_slot(
        self,
        depth: int,
        cancel_token: CancellationToken | None = None,
    ) -> DelegationDecision:
        """
        Admit immediately, or park until a slot frees up.

        Only a capacity denial parks the caller. A woken waiter re-attempts
        admission and, if beaten to the slot, re-parks at the head of the queue.
        Cancellation and freezing resolve the wait with a negative decision.
        """
        decision = self.request_delegation(depth)
        if decision.allowed or decision.reason_code is not DenialReason.CAPACITY:
            return decision

        at_head = False
        while True:
            if cancel_token is not None and cancel_token.is_cancelled:
                return self._cancelled(depth)

            waiter: asyncio.Future[DelegationDecision | None] = (
                asyncio.get_running_loop().create_future()
            )
            if at_head:
                self._waiters.appendleft(waiter)
            else:
                self._waiters.append(waiter)

            woken, outcome = await self._park(waiter, cancel_token)
            if not woken:
                return self._cancelled(depth)
            if outcome is not None:
                return outcome

            decision = self.request_delegation(depth)
            if decision.allowed or decision.reason_code is not DenialReason.CAPACITY:
                return decision
            at_head = True

    # Runaway control

    def check_for_runaway(self, text: str) -> bool:
        """
        Scan worker output for self-delegation phrases.

        Only active in ``leaf-only`` mode. At most one signal is counted per
        call. Returns ``True`` when a signal was counted.
        """
        if self._policy.mode is not DelegationMode.LEAF_ONLY:
            return False

        if not any(pattern.search(text) for pattern in self._signal_patterns):
            return False

        self._runaway_signals += 1
        threshold = self._policy.runaway_threshold
        self._logger.warning(
            "delegation_signal_detected",
            signals=self._runaway_signals,
            threshold=threshold,
        )

        if self._runaway_signals >= threshold and not self._frozen:
            self._frozen = True
            self._audit(
                f"RUNAWAY FREEZE: {self._runaway_signals} delegation signals reached "
                f"threshold {threshold}"
            )
            self._logger.warning(
                "delegation_frozen",
                cause="runaway",
                signals=self._runaway_signals,
                threshold=threshold,
            )
            self._reject_waiters()
        return True

    def freeze(self, reason: str) -> None:
        """Block all further delegation and reject every parked waiter."""
        self._frozen = True
        self._audit(f"MANUAL FREEZE: {reason}")
        self._logger.warning("delegation_frozen", cause="manual", reason=reason)
        self._reject_waiters()

    def reset(self, *, override: bool = False) -> None:
        """
        Clear the freeze and session counters.

        Requires ``override=True``; a frozen guard otherwise stays frozen for
        the rest of the session. In-flight delegations keep their active slots.
        """
        if not override:
            raise ValueError("DelegationGuard.reset requires override=True")
        self._frozen = False
        self._total_spawned = self._active_count
        self._delegations_blocked = 0
        self._runaway_signals = 0
        self._max_depth_reached = 0
        self._audit("MANUAL OVERRIDE: guard reset")
        self._logger.warning("delegation_guard_reset", active_count=self._active_count)

    # Internals

    def _block(
        self,
        reason: str,
        reason_code: DenialReason,
        *,
        frozen: bool = False,
    ) -> DelegationDecision:
        self._delegations_blocked += 1
        self._audit(reason)
        self._logger.warning(
            "delegation_blocked",
            reason=reason,
            reason_code=reason_code.value,
            active_count=self._active_count,
            total_spawned=self._total_spawned,
        )
        return DelegationDecision(
            allowed=False,
            reason=reason,
            reason_code=reason_code,
            frozen=frozen,
        )

    def _cancelled(self, depth: int) -> DelegationDecision:
        self._logger.info("delegation_wait_cancelled", depth=depth)
        return DelegationDecision(
            allowed=False,
            reason=_CANCELLED_REASON,
            reason_code=DenialReason.CANCELLED,
        )

    def _audit(self, reason: str) -> None:
        self._block_log.append(BlockLogEntry(timestamp=datetime.now(tz=UTC), reason=reason))

    def _wake_next(self) -> None:
        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                waiter.set_result(None)
                return

    def _reject_waiters(self) -> None:
        decision = DelegationDecision(
            allowed=False,
            reason="Delegation frozen",
            reason_code=DenialReason.FROZEN,
            frozen=True,
        )
        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                waiter.set_result(decision)

    async def _park(
        self,
        waiter: asyncio.Future[DelegationDecision | None],
        cancel_token: CancellationToken | None,
    ) -> tuple[bool, DelegationDecision | None]:
        """Wait for ``waiter``; returns ``(woken, final_decision)``."""
        cancel_task: asyncio.Task[None] | None = None
        try:
            if cancel_token is None:
                return True, await asyncio.shield(waiter)

            cancel_task = asyncio.ensure_future(cancel_token.wait())
            await asyncio.wait({waiter, cancel_task}, return_when=asyncio.FIRST_COMPLETED)
            if waiter.done():
                return True, waiter.result()
            self._discard_waiter(waiter)
            return False, None
        except asyncio.CancelledError:
            if waiter.done() and waiter.result() is None:
                # Woken but abandoned: hand the slot to the next waiter.
                self._wake_next()
            else:
                self._discard_waiter(waiter)
            raise
        finally:
            if cancel_task is not None and not cancel_task.done():
                cancel_task.cancel()

    def _discard_waiter(self, waiter: asyncio.Future[DelegationDecision | None]) -> None:
        waiter.cancel()
        with suppress(ValueError):
            self._waiters.remove(waiter)


def build_delegation_constraint_block(policy: DelegationPolicy) -> str:
    """Return the worker-contract text injected ahead of each task's context."""
    if policy.mode is DelegationMode.NO_DELEGATION:
        lines = [
            "",
            "DELEGATION POLICY: NONE",
            "You are the sole executor. No delegation or worker spawning is permitted.",
            "Execute the task directly and return your results.",
            "",
        ]
    elif policy.mode is DelegationMode.BOUNDED_RECURSIVE:
        lines = [
            "",
            "DELEGATION POLICY: BOUNDED RECURSIVE",
            "You may use your native delegation capabilities if available.",
            "However, the following limits are enforced by the orchestrator:",
            f"  - Maximum delegation depth: {policy.max_depth}",
            f"  - Maximum parallel agents: {policy.max_parallel}",
            "If you exceed these limits, your delegation requests will be blocked.",
            "Focus on completing your assigned task scope.",
            "",
        ]
    else:
        lines = [
            "",
            "DELEGATION POLICY: LEAF-ONLY (STRICT)",
            "You are a LEAF EXECUTOR. You MUST NOT:",
            "  - Spawn, create, fork, or delegate to other agents",
            "  - Decompose this task into subtasks for other agents",
            "  - Attempt recursive planning or re-plan the global mission",
            '  - Suggest that "another agent" should handle part of this task',
            "",
            "You MUST:",
            "  - Execute the complete task yourself using your available tools",
            "  - Return structured results: artifacts, diffs, findings",
            "  - Respect the scope defined in the task description",
            "",
            "If the task feels too large, do your best within scope. The orchestrator",
            "will handle re-planning if needed. You handle execution only.",
            "",
        ]
    return "\n".join(lines)


__all__ = [
    "DEFAULT_SIGNAL_PATTERNS",
    "BlockLogEntry",
    "DelegationDecision",
    "DelegationGuard",
    "DelegationMode",
    "DelegationPolicy",
    "DelegationStats",
    "DenialReason",
    "build_delegation_constraint_block",
]
