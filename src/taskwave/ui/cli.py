"""Command-line interface router for taskwave."""

from __future__ import annotations

import argparse
import asyncio
import json
import secrets
import sys
import time
from collections.abc import Iterator, Mapping, Sequence
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml

from taskwave.config import (
    ConfigLoadError,
    ConfigValidationError,
    dump_effective_config,
    load_config,
)
from taskwave.domain.models import Plan
from taskwave.integration_plane.work_streams import load_stream_registry
from taskwave.observability.logging import LoggingConfig, setup_logging, shutdown_logging
from taskwave.persistence.safe_io import SafeStore
from taskwave.planning.task_graph import (
    StructuralError,
    compute_waves,
    downstream_of,
    validate_plan,
)

_YAML_SUFFIXES = frozenset({".yaml", ".yml"})


@dataclass(frozen=True, slots=True)
class CLIError(RuntimeError):
    """Typed CLI failure with an explicit process exit code."""

    message: str
    exit_code: int = 1

    def __str__(self) -> str:
        return self.message


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------


def build_parser() -> argparse.ArgumentParser:
    """Build the argparse command router."""

    parser = argparse.ArgumentParser(
        prog="taskwave",
        description=(
            "taskwave: wave scheduling, delegation limits and work-stream tooling.\n\n"
            "Common workflows:\n"
            "  taskwave validate plan.yaml       Pre-flight check a plan's dependencies\n"
            "  taskwave waves plan.yaml          Show which tasks can run together\n"
            "  taskwave streams                  List persisted work streams\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "--config",
        dest="config_path",
        default=None,
        help="Path to taskwave TOML config (default: ./taskwave.toml if present).",
    )
    common.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        default=False,
        help="Mirror structured logs to stderr.",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    validate_parser = subparsers.add_parser(
        "validate",
        parents=[common],
        help="Report cycles, missing dependencies and unreachable tasks in a plan.",
    )
    validate_parser.add_argument("plan_path", help="Plan file (JSON or YAML)")
    validate_parser.add_argument("--json", action="store_true", help="Emit JSON output")
    validate_parser.set_defaults(handler=_cmd_validate)

    waves_parser = subparsers.add_parser(
        "waves",
        parents=[common],
        help="Print the execution waves of a plan.",
    )
    waves_parser.add_argument("plan_path", help="Plan file (JSON or YAML)")
    waves_parser.add_argument("--json", action="store_true", help="Emit JSON output")
    waves_parser.set_defaults(handler=_cmd_waves)

    downstream_parser = subparsers.add_parser(
        "downstream",
        parents=[common],
        help="List every task that transitively depends on TASK_ID.",
    )
    downstream_parser.add_argument("plan_path", help="Plan file (JSON or YAML)")
    downstream_parser.add_argument("task_id", help="Task whose dependents to list")
    downstream_parser.add_argument("--json", action="store_true", help="Emit JSON output")
    downstream_parser.set_defaults(handler=_cmd_downstream)

    streams_parser = subparsers.add_parser(
        "streams",
        parents=[common],
        help="List work streams from the persisted registry.",
    )
    streams_parser.add_argument(
        "--state-dir",
        default=None,
        help="State directory holding the registry (default: storage.state_dir).",
    )
    streams_parser.add_argument("--json", action="store_true", help="Emit JSON output")
    streams_parser.set_defaults(handler=_cmd_streams)

    gc_parser = subparsers.add_parser(
        "gc-temp",
        parents=[common],
        help="Remove temp files left behind by interrupted atomic writes.",
    )
    gc_parser.add_argument("directory", help="Directory to scan (not recursive)")
    gc_parser.set_defaults(handler=_cmd_gc_temp)

    config_parser = subparsers.add_parser(
        "config",
        parents=[common],
        help="Print the effective configuration.",
    )
    config_parser.set_defaults(handler=_cmd_config)

    return parser


# ---------------------------------------------------------------------------
# Entrypoints
# ---------------------------------------------------------------------------


def run_cli(argv: Sequence[str] | None = None) -> int:
    """Parse argv, route to a command handler, and return the process exit code."""

    parser = build_parser()
    namespace = parser.parse_args(list(argv) if argv is not None else None)
    handler = getattr(namespace, "handler", None)
    if not callable(handler):
        parser.print_help(sys.stderr)
        return 2

    try:
        result = handler(namespace)
    except CLIError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return exc.exit_code
    return int(result)


# ---------------------------------------------------------------------------
# Command handlers
# ---------------------------------------------------------------------------


def _cmd_validate(args: argparse.Namespace) -> int:
    plan = _load_plan(args.plan_path)
    report = validate_plan(plan)

    if args.json:
        _emit_json({"command": "validate", "plan_id": plan.id, **report.to_dict()})
        return 0 if report.valid else 1

    if report.valid:
        print(f"plan {plan.id}: {len(plan)} task(s), no structural problems")
        return 0

    print(f"plan {plan.id}: structural problems found")
    for cycle in report.cycles:
        print(f"  cycle: {' -> '.join(cycle)}")
    for task_id, missing in report.missing_dependencies:
        print(f"  missing dependency: {task_id} -> {missing}")
    for orphan in report.orphans:
        print(f"  unreachable: {orphan}")
    return 1


def _cmd_waves(args: argparse.Namespace) -> int:
    plan = _load_plan(args.plan_path)
    try:
        waves = compute_waves(plan)
    except StructuralError as exc:
        raise CLIError(str(exc), exit_code=1) from exc

    if args.json:
        _emit_json(
            {
                "command": "waves",
                "plan_id": plan.id,
                "waves": [wave.to_dict() for wave in waves],
            }
        )
        return 0

    for wave in waves:
        print(f"wave {wave.level}: {', '.join(wave.task_ids)}")
    return 0


def _cmd_downstream(args: argparse.Namespace) -> int:
    plan = _load_plan(args.plan_path)
    if args.task_id not in plan:
        raise CLIError(f"unknown task: {args.task_id}", exit_code=1)

    dependents = downstream_of(plan, args.task_id)
    if args.json:
        _emit_json(
            {"command": "downstream", "task_id": args.task_id, "downstream": list(dependents)}
        )
        return 0

    if not dependents:
        print(f"{args.task_id}: no downstream tasks")
    for task_id in dependents:
        print(task_id)
    return 0


def _cmd_streams(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    storage = config["storage"]
    state_dir = Path(args.state_dir) if args.state_dir else Path(storage["state_dir"])
    registry_path = state_dir / storage["stream_registry"]

    with _command_logging(args, config):
        store = SafeStore(allow_direct_write_fallback=storage["allow_direct_write_fallback"])
        streams = asyncio.run(load_stream_registry(store, registry_path))

    if args.json:
        _emit_json(
            {
                "command": "streams",
                "registry_path": registry_path.as_posix(),
                "streams": [stream.to_dict() for stream in streams],
            }
        )
        return 0

    if not streams:
        print(f"no work streams in {registry_path.as_posix()}")
        return 0
    for stream in streams:
        depends = f" (after {', '.join(stream.dependencies)})" if stream.dependencies else ""
        print(f"{stream.id} [{stream.status.value}] {stream.branch}{depends}")
    return 0


def _cmd_gc_temp(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    directory = Path(args.directory)
    if not directory.is_dir():
        raise CLIError(f"not a directory: {directory}", exit_code=2)

    with _command_logging(args, config):
        removed = asyncio.run(SafeStore().cleanup_temp_files(directory))
    print(f"removed {removed} temp file(s) from {directory.as_posix()}")
    return 0


def _cmd_config(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    print(dump_effective_config(config))
    return 0


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _emit_json(payload: Mapping[str, object]) -> None:
    print(json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False))


def _load_effective_config(args: argparse.Namespace) -> dict[str, Any]:
    try:
        return load_config(args.config_path)
    except (ConfigLoadError, ConfigValidationError) as exc:
        raise CLIError(str(exc), exit_code=2) from exc


def _load_plan(raw_path: str) -> Plan:
    path = Path(raw_path).expanduser()
    if not path.is_file():
        raise CLIError(f"plan file not found: {path}", exit_code=2)

    try:
        text = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise CLIError(f"unable to read plan file {path}: {exc}", exit_code=2) from exc

    try:
        if path.suffix.lower() in _YAML_SUFFIXES:
            payload = yaml.safe_load(text)
        else:
            payload = json.loads(text)
    except (yaml.YAMLError, json.JSONDecodeError) as exc:
        raise CLIError(f"unable to parse plan file {path}: {exc}", exit_code=2) from exc

    if not isinstance(payload, Mapping):
        raise CLIError(f"plan file {path} must contain an object", exit_code=2)
    try:
        return Plan.from_dict(payload)
    except ValueError as exc:
        raise CLIError(f"invalid plan {path}: {exc}", exit_code=2) from exc


@contextmanager
def _command_logging(args: argparse.Namespace, config: Mapping[str, Any]) -> Iterator[None]:
    run_id = f"cli-{time.strftime('%Y%m%dT%H%M%SZ', time.gmtime())}-{secrets.token_hex(3)}"
    handle = setup_logging(
        LoggingConfig.from_config(
            config["observability"],
            run_id=run_id,
            log_to_stdout=bool(args.verbose),
        )
    )
    try:
        yield
    finally:
        shutdown_logging(handle)


__all__ = ["CLIError", "build_parser", "run_cli"]
