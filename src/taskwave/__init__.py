"""
taskwave: scheduling and safety core for multi-agent task orchestration.

Plans are split into dependency waves, worker delegation is bounded by a
guard, downstream tasks can push corrections upstream, shared state is written
atomically under per-path locks, and independent work streams run in isolated
git worktrees.

Importing the package has no side effects; submodules are imported on demand.
"""

__version__ = "0.1.0"

__all__ = ["__version__"]
