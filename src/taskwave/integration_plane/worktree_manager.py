"""Git-worktree isolation for parallel work streams."""

from __future__ import annotations

import os
import re
import shutil
import subprocess
import tempfile
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any, Final, Protocol

import structlog

from taskwave.constants import (
    DEFAULT_WORK_BRANCH_PREFIX,
    ORPHAN_WORKTREE_MAX_AGE_SECONDS,
    WORKTREES_DIR_NAME,
)
from taskwave.utils.fs import is_within, safe_delete

if TYPE_CHECKING:
    from collections.abc import Mapping, Sequence

_SAFE_ID_PATTERN = re.compile(r"^[A-Za-z0-9._-]+$")
_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9_-]")
_CONFLICT_PATTERN = re.compile(r"^(UU|AA|DD|AU|UA|DU|UD)\s")
_SESSION_PREFIX_LEN: Final[int] = 16
_IDENTITY_ARGS: Final[tuple[str, ...]] = (
    "-c",
    "user.name=taskwave",
    "-c",
    "user.email=taskwave@localhost",
)


@dataclass(frozen=True, slots=True)
class WorktreeInfo:
    stream_id: str
    branch: str
    path: Path


@dataclass(frozen=True, slots=True)
class WorktreeMergeResult:
    """Outcome of merging one worktree branch back into the base branch."""

    stream_id: str
    success: bool
    has_changes: bool
    conflict_files: tuple[str, ...] = ()
    error: str | None = None


@dataclass(frozen=True, slots=True)
class _WorktreeRecord:
    path: Path
    branch_ref: str | None


class IsolationProvider(Protocol):
    """Per-stream isolated checkouts, as used by the work-stream coordinator."""

    def initialize(self) -> bool: ...

    def create_worktree(self, stream_id: str) -> WorktreeInfo: ...

    def merge_worktree(self, stream_id: str) -> WorktreeMergeResult: ...

    def cleanup_worktree(self, stream_id: str) -> None: ...

    def cleanup_all(self) -> None: ...


class WorktreeManager:
    """
    Create, merge and remove one ``git worktree`` per work stream.

    Worktrees live under ``<base_dir>/<session_id>/<stream_id>`` on branches
    named ``<prefix>/<session_id[:16]>/<stream_id>``. Recursive deletes are only
    ever performed inside ``base_dir``.
    """

    def __init__(
        self,
        repo_root: str | Path,
        session_id: str,
        *,
        base_dir: str | Path | None = None,
        branch_prefix: str = DEFAULT_WORK_BRANCH_PREFIX,
        orphan_max_age_seconds: float = ORPHAN_WORKTREE_MAX_AGE_SECONDS,
        env_overrides: Mapping[str, str] | None = None,
        logger: Any | None = None,
    ) -> None:
        resolved_repo = Path(repo_root).expanduser().resolve(strict=True)
        if not resolved_repo.is_dir():
            raise NotADirectoryError(f"{resolved_repo} is not a directory")

        root = (
            Path(base_dir).expanduser()
            if base_dir is not None
            else Path(tempfile.gettempdir()) / WORKTREES_DIR_NAME
        )

        self._repo_root = resolved_repo
        self._session_id = _validate_identifier(session_id, "session_id")
        self._base_root = root.resolve(strict=False)
        self._session_dir = self._base_root / self._session_id
        self._branch_prefix = _validate_identifier(branch_prefix, "branch_prefix")
        self._orphan_max_age_seconds = orphan_max_age_seconds
        self._env_overrides = dict(env_overrides or {})
        self._logger = logger if logger is not None else structlog.get_logger(__name__)
        self._lock = threading.RLock()

        self._worktrees: dict[str, WorktreeInfo] = {}
        self._base_branch = ""
        self._initialized = False

    @property
    def base_branch(self) -> str:
        return self._base_branch

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    @property
    def session_dir(self) -> Path:
        return self._session_dir

    @property
    def worktrees(self) -> tuple[WorktreeInfo, ...]:
        with self._lock:
            return tuple(self._worktrees.values())

    def get(self, stream_id: str) -> WorktreeInfo | None:
        with self._lock:
            return self._worktrees.get(stream_id)

    def initialize(self) -> bool:
        """
        Verify git and the repository, record the base branch, prune orphans.

        Returns ``False`` when worktrees cannot be used here.
        """
        with self._lock:
            try:
                self._run_git(["--version"], check=True)
                self._run_git(["rev-parse", "--is-inside-work-tree"], check=True)
                branch = self._run_git(["rev-parse", "--abbrev-ref", "HEAD"], check=True)
                base_branch = branch.stdout.strip()
                if base_branch == "HEAD":
                    short = self._run_git(["rev-parse", "--short", "HEAD"], check=True)
                    base_branch = short.stdout.strip()
            except (OSError, RuntimeError) as exc:
                self._logger.warning(
                    "worktree_initialize_failed",
                    repo_root=str(self._repo_root),
                    error=str(exc),
                )
                return False

            self._base_branch = base_branch
            self._cleanup_orphans()
            self._initialized = True
            self._logger.info(
                "worktree_manager_initialized",
                repo_root=str(self._repo_root),
                base_branch=base_branch,
                session_id=self._session_id,
            )
            return True

    def create_worktree(self, stream_id: str) -> WorktreeInfo:
        """Fork a branch from HEAD and check it out in a fresh worktree."""
        if not self._initialized:
            raise RuntimeError("WorktreeManager not initialized; call initialize() first")

        sanitized = sanitize_identifier(stream_id)
        branch = f"{self._branch_prefix}/{self._session_id[:_SESSION_PREFIX_LEN]}/{sanitized}"
        worktree_path = self._session_dir / sanitized

        with self._lock:
            if stream_id in self._worktrees:
                raise FileExistsError(f"worktree already registered for stream: {stream_id}")
            if worktree_path.exists() or worktree_path.is_symlink():
                raise FileExistsError(f"worktree directory already exists: {worktree_path}")
            if self._branch_exists(branch):
                raise FileExistsError(f"worktree branch already exists: {branch}")

            self._session_dir.mkdir(parents=True, exist_ok=True)
            self._run_git(
                ["worktree", "add", "--quiet", "-b", branch, str(worktree_path)],
                check=True,
            )

            info = WorktreeInfo(stream_id=stream_id, branch=branch, path=worktree_path)
            self._worktrees[stream_id] = info
            self._logger.info(
                "worktree_created",
                stream_id=stream_id,
                branch=branch,
                path=str(worktree_path),
            )
            return info

    def commit_changes(self, stream_id: str) -> bool:
        """Stage and commit everything in the worktree. Returns ``False`` when clean."""
        with self._lock:
            info = self._worktrees.get(stream_id)
            if info is None:
                return False

            status = self._run_git(["status", "--porcelain"], cwd=info.path, check=True)
            if not status.stdout.strip():
                return False

            self._run_git(["add", "-A"], cwd=info.path, check=True)
            self._run_git(
                [*_IDENTITY_ARGS, "commit", "--quiet", "-m", f"taskwave stream: {stream_id}"],
                cwd=info.path,
                check=True,
            )
            return True

    def merge_worktree(self, stream_id: str) -> WorktreeMergeResult:
        """
        Merge the stream's branch into the base branch with ``--no-ff``.

        Conflicting merges are aborted so the repository is always left clean.
        """
        with self._lock:
            info = self._worktrees.get(stream_id)
            if info is None:
                return WorktreeMergeResult(
                    stream_id=stream_id,
                    success=False,
                    has_changes=False,
                    error="Worktree not found",
                )

            try:
                self.commit_changes(stream_id)
                log = self._run_git(
                    ["log", f"{self._base_branch}..{info.branch}", "--oneline"],
                    check=True,
                )
            except RuntimeError as exc:
                return WorktreeMergeResult(
                    stream_id=stream_id,
                    success=False,
                    has_changes=False,
                    error=str(exc),
                )

            if not log.stdout.strip():
                return WorktreeMergeResult(stream_id=stream_id, success=True, has_changes=False)

            merged = self._run_git(
                [
                    *_IDENTITY_ARGS,
                    "merge",
                    info.branch,
                    "--no-ff",
                    "-m",
                    f'taskwave: merge stream "{stream_id}"',
                ],
                check=False,
            )
            if merged.returncode == 0:
                self._logger.info("worktree_merged", stream_id=stream_id, branch=info.branch)
                return WorktreeMergeResult(stream_id=stream_id, success=True, has_changes=True)

            return self._handle_merge_failure(stream_id)

    def merge_all_sequentially(self, stream_ids: Sequence[str]) -> tuple[WorktreeMergeResult, ...]:
        """Merge streams in order, stashing local changes of the main checkout around it."""
        with self._lock:
            stashed = False
            status = self._run_git(["status", "--porcelain"], check=False)
            if status.returncode == 0 and status.stdout.strip():
                stash = self._run_git(
                    ["stash", "push", "-m", "taskwave: auto-stash before worktree merge"],
                    check=False,
                )
                stashed = stash.returncode == 0

            try:
                return tuple(self.merge_worktree(stream_id) for stream_id in stream_ids)
            finally:
                if stashed:
                    popped = self._run_git(["stash", "pop"], check=False)
                    if popped.returncode != 0:
                        self._logger.warning(
                            "worktree_stash_pop_failed",
                            detail=popped.stderr.strip(),
                        )

    def cleanup_worktree(self, stream_id: str) -> None:
        """Remove the stream's worktree directory and branch."""
        with self._lock:
            info = self._worktrees.pop(stream_id, None)
            if info is None:
                return
            self._remove_worktree(info.path, info.branch)
            self._prune_empty_dir(self._session_dir)
            self._logger.info("worktree_removed", stream_id=stream_id, branch=info.branch)

    def cleanup_all(self) -> None:
        with self._lock:
            for stream_id in tuple(self._worktrees):
                self.cleanup_worktree(stream_id)
            self._run_git(["worktree", "prune"], check=False)
            self._prune_empty_dir(self._session_dir)

    def _handle_merge_failure(self, stream_id: str) -> WorktreeMergeResult:
        status = self._run_git(["status", "--porcelain"], check=False)
        conflict_files = tuple(
            line[3:].strip()
            for line in status.stdout.splitlines()
            if _CONFLICT_PATTERN.match(line)
        )
        self._run_git(["merge", "--abort"], check=False)

        if conflict_files:
            error = f"Merge conflicts in {len(conflict_files)} file(s): {', '.join(conflict_files)}"
        else:
            error = "Merge failed (non-conflict error)"
        self._logger.warning(
            "worktree_merge_failed",
            stream_id=stream_id,
            conflict_files=list(conflict_files),
            error=error,
        )
        return WorktreeMergeResult(
            stream_id=stream_id,
            success=False,
            has_changes=True,
            conflict_files=conflict_files,
            error=error,
        )

    def _cleanup_orphans(self) -> None:
        """Drop worktrees, branches and directories left by earlier sessions."""
        self._run_git(["worktree", "prune"], check=False)

        session_marker = self._session_id[:_SESSION_PREFIX_LEN]
        listed = self._run_git(
            ["branch", "--list", "--format=%(refname:short)", f"{self._branch_prefix}/*"],
            check=False,
        )
        branches = [line.strip() for line in listed.stdout.splitlines() if line.strip()]
        if branches:
            paths_by_ref = {
                record.branch_ref: record.path
                for record in self._worktree_records()
                if record.branch_ref
            }
            for branch in branches:
                parts = branch.split("/")
                if len(parts) >= 2 and parts[1] == session_marker:
                    continue
                path = paths_by_ref.get(f"refs/heads/{branch}")
                if path is not None:
                    self._remove_worktree(path, None)
                self._run_git(["branch", "-D", branch], check=False)
                self._logger.info("worktree_orphan_branch_removed", branch=branch)

        if not self._base_root.is_dir():
            return
        cutoff = time.time() - self._orphan_max_age_seconds
        for entry in sorted(self._base_root.iterdir(), key=lambda path: path.name):
            if entry.name == self._session_id or entry.is_symlink() or not entry.is_dir():
                continue
            try:
                if entry.stat().st_mtime > cutoff:
                    continue
                safe_delete(entry, self._base_root)
            except (OSError, ValueError) as exc:
                self._logger.warning(
                    "worktree_orphan_cleanup_failed",
                    path=str(entry),
                    error=str(exc),
                )
                continue
            self._logger.info("worktree_orphan_dir_removed", path=str(entry))

    def _remove_worktree(self, path: Path, branch: str | None) -> None:
        self._run_git(["worktree", "remove", "--force", str(path)], check=False)
        if (path.exists() or path.is_symlink()) and self._is_managed(path):
            safe_delete(path, self._base_root)
        if branch is not None and self._branch_exists(branch):
            self._run_git(["branch", "-D", branch], check=False)

    def _is_managed(self, path: Path) -> bool:
        return is_within(path.parent, self._base_root)

    def _prune_empty_dir(self, directory: Path) -> None:
        if directory.is_dir() and not directory.is_symlink() and not any(directory.iterdir()):
            if self._is_managed(directory):
                directory.rmdir()

    def _branch_exists(self, branch_name: str) -> bool:
        result = self._run_git(
            ["show-ref", "--verify", "--quiet", f"refs/heads/{branch_name}"],
            check=False,
        )
        return result.returncode == 0

    def _worktree_records(self) -> tuple[_WorktreeRecord, ...]:
        result = self._run_git(["worktree", "list", "--porcelain"], check=True)
        records: list[_WorktreeRecord] = []

        path_value: Path | None = None
        branch_ref: str | None = None
        for line in result.stdout.splitlines():
            if not line.strip():
                if path_value is not None:
                    records.append(_WorktreeRecord(path=path_value, branch_ref=branch_ref))
                path_value = None
                branch_ref = None
                continue

            field, _, value = line.partition(" ")
            if field == "worktree":
                path_value = Path(value.strip()).expanduser().resolve(strict=False)
            elif field == "branch":
                branch_ref = value.strip()

        if path_value is not None:
            records.append(_WorktreeRecord(path=path_value, branch_ref=branch_ref))

        return tuple(records)

    def _run_git(
        self,
        args: Sequence[str],
        *,
        cwd: Path | None = None,
        check: bool,
    ) -> subprocess.CompletedProcess[str]:
        if shutil.which("git") is None:
            raise FileNotFoundError("git executable not found on PATH")
        env = os.environ.copy()
        env["GIT_TERMINAL_PROMPT"] = "0"
        env.setdefault("GIT_CONFIG_NOSYSTEM", "1")
        env.update(self._env_overrides)
        proc = subprocess.run(
            ["git", *args],
            cwd=cwd if cwd is not None else self._repo_root,
            env=env,
            check=False,
            text=True,
            capture_output=True,
            timeout=30,
        )
        if check and proc.returncode != 0:
            cmd = "git " + " ".join(args)
            detail = proc.stderr.strip() or proc.stdout.strip()
            raise RuntimeError(f"command failed with exit code {proc.returncode}: {cmd}: {detail}")
        return proc


def sanitize_identifier(value: str) -> str:
    """Map ``value`` onto characters that are safe in branch and directory names."""
    if not value:
        raise ValueError("identifier must not be empty")
    return _UNSAFE_CHARS.sub("_", value)


def _validate_identifier(value: str, field_name: str) -> str:
    if not value:
        raise ValueError(f"{field_name} must not be empty")
    if "/" in value:
        raise ValueError(f"{field_name} must not contain '/'")
    if value in {".", ".."}:
        raise ValueError(f"{field_name} must not be '.' or '..'")
    if _SAFE_ID_PATTERN.fullmatch(value) is None:
        raise ValueError(f"{field_name} contains unsupported characters: {value!r}")
    return value


__all__ = [
    "IsolationProvider",
    "WorktreeInfo",
    "WorktreeManager",
    "WorktreeMergeResult",
    "sanitize_identifier",
]
