"""
Review Loop
===========

Runs a reviewer agent and a fixer agent against a repository in a loop until
the review comes back clean, the fixer has nothing left to apply, or the
iteration limit is reached.

Usage:
  review-loop run --project-dir .
  review-loop run --commit abc123 --max-iterations 3
  review-loop status
  review-loop stop --project-dir .
  review-loop logs --project-dir .
"""

from __future__ import annotations

import argparse
import json
import logging
import signal
import sys
import threading
from dataclasses import asdict, replace
from pathlib import Path
from typing import Any, Optional

from .config import ConfigError, ReviewLoopConfig, default_config_path, load_config, resolve_logs_dir
from .runtime.domain.models import CycleState
from .runtime.orchestrator.engine import CycleEngine
from .runtime.orchestrator.prompts import ReviewOptions
from .runtime.storage.session_lock import (
    DEFAULT_STALE_AFTER_SECONDS,
    list_active_sessions,
    lock_path_for,
    read_lock,
    release_session_lock,
    remove_all_locks,
)
from .runtime.storage.session_log import list_sessions, mark_running_sessions, summarize_session

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_USAGE = 2
EXIT_INTERRUPTED = 130


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _load(args: argparse.Namespace) -> ReviewLoopConfig:
    return load_config(args.config)


def _logs_root(args: argparse.Namespace, config: Optional[ReviewLoopConfig]) -> Path:
    if args.logs_dir is not None:
        return args.logs_dir
    return resolve_logs_dir(config)


def _try_load(args: argparse.Namespace) -> Optional[ReviewLoopConfig]:
    try:
        return _load(args)
    except ConfigError:
        return None


def _print_json(payload: Any) -> None:
    print(json.dumps(payload, indent=2, sort_keys=True))


def cmd_run(args: argparse.Namespace) -> int:
    try:
        config = _load(args)
    except ConfigError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return EXIT_USAGE
    if args.max_iterations is not None:
        if args.max_iterations < 1:
            print("Error: --max-iterations must be at least 1", file=sys.stderr)
            return EXIT_USAGE
        config = replace(config, max_iterations=args.max_iterations)
    if args.simplifier:
        config = replace(config, simplifier=True)

    cancel_event = threading.Event()

    def _on_signal(signum: int, _frame: Any) -> None:
        logger.warning("Received signal %d; stopping after the current step", signum)
        cancel_event.set()

    previous = {sig: signal.signal(sig, _on_signal) for sig in (signal.SIGINT, signal.SIGTERM)}

    def _on_status(state: CycleState) -> None:
        if not args.quiet:
            print(f"[{state.iteration}/{state.max_iterations}] {state.status}", flush=True)

    engine = CycleEngine(
        config,
        args.project_dir,
        logs_root=_logs_root(args, config),
        branch=args.branch,
        review_options=ReviewOptions(commit_sha=args.commit, custom_instructions=args.instructions),
        force_max_iterations=args.force_max_iterations,
        cancel_event=cancel_event,
        session_name=args.session_name,
        mode="background" if args.background else "foreground",
        echo=not args.quiet,
        on_status=_on_status,
    )
    try:
        result = engine.run()
    finally:
        for sig, handler in previous.items():
            signal.signal(sig, handler)

    if args.json:
        _print_json(result.to_dict())
    else:
        print(f"\n{result.final_status}: {result.reason}")
        if result.session_path:
            print(f"Session log: {result.session_path}")
    if result.final_status == "Interrupted":
        return EXIT_INTERRUPTED
    return EXIT_OK if result.success else EXIT_FAILED


def cmd_status(args: argparse.Namespace) -> int:
    config = _try_load(args)
    stale_after = config.stale_after_seconds if config else DEFAULT_STALE_AFTER_SECONDS
    sessions = list_active_sessions(_logs_root(args, config), stale_after)
    if args.json:
        _print_json([record.to_dict() for record in sessions])
        return EXIT_OK
    if not sessions:
        print("No active review sessions.")
        return EXIT_OK
    for record in sessions:
        iteration = f" iteration {record.iteration}" if record.iteration is not None else ""
        print(
            f"{record.session_name} [{record.state}{iteration}] pid {record.pid} "
            f"{record.project_path} ({record.branch}) last heartbeat {record.last_heartbeat}"
        )
    return EXIT_OK


def cmd_stop(args: argparse.Namespace) -> int:
    """Remove lock files. Does not signal the running process."""
    config = _try_load(args)
    logs_root = _logs_root(args, config)
    if args.all:
        removed = remove_all_locks(logs_root)
        print(f"Removed {removed} lock file(s).")
        return EXIT_OK
    record = read_lock(logs_root, args.project_dir, args.branch)
    if record is None:
        print("No session lock for this project.")
        return EXIT_FAILED
    if release_session_lock(lock_path_for(logs_root, args.project_dir, args.branch), record.session_id):
        print(f"Released lock held by session {record.session_id} (pid {record.pid}).")
        return EXIT_OK
    print("Lock changed hands while releasing; nothing removed.", file=sys.stderr)
    return EXIT_FAILED


def cmd_logs(args: argparse.Namespace) -> int:
    config = _try_load(args)
    logs_root = _logs_root(args, config)
    paths = list_sessions(logs_root, None if args.all else args.project_dir.resolve())[: args.limit]
    summaries = [summarize_session(path) for path in paths]
    stale_after = config.stale_after_seconds if config else DEFAULT_STALE_AFTER_SECONDS
    mark_running_sessions(summaries, list_active_sessions(logs_root, stale_after))
    if args.json:
        _print_json([asdict(summary) for summary in summaries])
        return EXIT_OK
    if not summaries:
        print("No sessions recorded.")
        return EXIT_OK
    for summary in summaries:
        counts = " ".join(f"{p}={n}" for p, n in summary.priority_counts.items() if n)
        line = (
            f"{Path(summary.path).name}: {summary.status}, {summary.iterations} iteration(s), "
            f"{summary.total_fixes} fixed, {summary.total_skipped} skipped"
        )
        if counts:
            line += f" ({counts})"
        print(line)
        if summary.reason:
            print(f"  {summary.reason}")
    return EXIT_OK


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="review-loop",
        description="Review Loop - iterate a reviewer agent and a fixer agent until the code is clean",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help=f"Configuration file (default: {default_config_path()})",
    )
    parser.add_argument(
        "--logs-dir",
        type=Path,
        default=None,
        help="Directory for session logs and locks (default: from config)",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    parser.add_argument("--json", action="store_true", help="Print machine-readable output")
    subparsers = parser.add_subparsers(dest="command", required=True)

    def _project_args(sub: argparse.ArgumentParser) -> None:
        sub.add_argument(
            "--project-dir",
            type=Path,
            default=Path("."),
            help="Project directory (default: current directory)",
        )
        sub.add_argument("--branch", type=str, default=None, help="Branch to key the session on")

    run = subparsers.add_parser("run", help="Run the review/fix loop")
    _project_args(run)
    target = run.add_mutually_exclusive_group()
    target.add_argument("--commit", type=str, default=None, help="Review a single commit")
    target.add_argument("--instructions", type=str, default=None, help="Custom review instructions")
    run.add_argument(
        "--max-iterations",
        type=int,
        default=None,
        help="Override the configured iteration limit",
    )
    run.add_argument(
        "--force-max-iterations",
        action="store_true",
        help="Keep iterating even when the fixer reports nothing left to do",
    )
    run.add_argument("--simplifier", action="store_true", help="Run the code simplifier first")
    run.add_argument("--session-name", type=str, default=None, help="Display name for the session")
    run.add_argument("--background", action="store_true", help="Record the session as a background run")
    run.add_argument("-q", "--quiet", action="store_true", help="Do not echo agent output")
    run.set_defaults(func=cmd_run)

    status = subparsers.add_parser("status", help="List active sessions")
    status.set_defaults(func=cmd_status)

    stop = subparsers.add_parser("stop", help="Remove a session lock")
    _project_args(stop)
    stop.add_argument("--all", action="store_true", help="Remove every lock file")
    stop.set_defaults(func=cmd_stop)

    logs = subparsers.add_parser("logs", help="Summarize recorded sessions")
    _project_args(logs)
    logs.add_argument("--all", action="store_true", help="Include every project")
    logs.add_argument("--limit", type=int, default=10, help="Number of sessions to show (default: 10)")
    logs.set_defaults(func=cmd_logs)
    return parser


def main(argv: Optional[list[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    _configure_logging(args.verbose)
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
