"""Command line entry point: ``review-fleet run`` and ``review-fleet serve``."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import signal
import sys
from typing import Any, NoReturn, Sequence

from .config import PRIORITY_THRESHOLDS, ReviewSettings, get_settings
from .exit_codes import EXIT_CODES
from .orchestrator import Orchestrator, RunSummary
from .server import configure_logging, create_server, open_journal

logger = logging.getLogger(__name__)


class ReviewArgumentParser(argparse.ArgumentParser):
    """Argument errors exit with the invalid-flag status."""

    def error(self, message: str) -> NoReturn:
        self.print_usage(sys.stderr)
        self.exit(EXIT_CODES["invalid"], f"{self.prog}: error: {message}\n")


def _positive_int(value: str) -> int:
    try:
        parsed = int(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"expected an integer, got {value!r}") from exc
    if parsed < 1:
        raise argparse.ArgumentTypeError("must be >= 1")
    return parsed


def _positive_float(value: str) -> float:
    try:
        parsed = float(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"expected a number, got {value!r}") from exc
    if parsed <= 0:
        raise argparse.ArgumentTypeError("must be > 0")
    return parsed


def _repo_name(value: str) -> str:
    owner, _, name = value.partition("/")
    if not owner or not name or "/" in name:
        raise argparse.ArgumentTypeError(f"expected owner/name, got {value!r}")
    return value


def build_parser() -> argparse.ArgumentParser:
    parser = ReviewArgumentParser(prog="review-fleet", description="AI review across many repositories")
    sub = parser.add_subparsers(dest="cmd")

    p_run = sub.add_parser("run", help="Discover, score and review work items")
    p_run.add_argument(
        "repos", nargs="*", type=_repo_name, help="owner/name repositories (default: configured list)"
    )
    p_run.add_argument("--mode", choices=("plan", "apply"))
    p_run.add_argument("--dry-run", action="store_true", help="Plan only; touch no worktrees or state")
    p_run.add_argument("--json", action="store_true", help="Print the run summary as JSON")
    p_run.add_argument("--max-repos", type=_positive_int)
    p_run.add_argument("--max-runtime", type=_positive_float, help="Minutes")
    p_run.add_argument("--max-questions", type=_positive_int)
    p_run.add_argument("--parallel", type=_positive_int)
    p_run.add_argument("--threshold", choices=PRIORITY_THRESHOLDS)
    p_run.add_argument("--keep-worktrees", action="store_true")
    p_run.set_defaults(func=cmd_run)

    p_serve = sub.add_parser("serve", help="Run the MCP server for answering questions")
    p_serve.set_defaults(func=cmd_serve)

    return parser


def settings_from_args(args: argparse.Namespace, base: ReviewSettings | None = None) -> ReviewSettings:
    """Layer command line flags over environment settings."""

    base = base or get_settings()
    overrides: dict[str, Any] = {}
    if args.repos:
        overrides["repos"] = tuple(dict.fromkeys(args.repos))
    if args.mode:
        overrides["mode"] = args.mode
    if args.dry_run:
        overrides["dry_run"] = True
    if args.keep_worktrees:
        overrides["keep_worktrees"] = True
    for flag, field in (
        ("max_repos", "max_repos"),
        ("max_runtime", "max_runtime_minutes"),
        ("max_questions", "max_questions"),
        ("parallel", "parallel"),
        ("threshold", "priority_threshold"),
    ):
        value = getattr(args, flag)
        if value is not None:
            overrides[field] = value
    return base.model_copy(update=overrides)


def format_summary(summary: RunSummary) -> str:
    lines = [
        f"Run {summary.run_id} [{summary.mode}] {summary.status} (exit {summary.exit_code})",
        f"  items found: {summary.items_found} "
        f"(issues {summary.by_type['issues']}, prs {summary.by_type['prs']})",
        f"  repos reviewed: {summary.repos_reviewed}, failed: {summary.repos_failed}, "
        f"skipped: {summary.repos_skipped}",
        f"  questions asked: {summary.questions_asked}",
        f"  duration: {summary.duration_seconds:.1f}s",
    ]
    if summary.stop_reason:
        lines.append(f"  stopped: {summary.stop_reason}")
    if summary.pending_repos:
        lines.append("  pending: " + ", ".join(summary.pending_repos))
    if summary.error:
        lines.append(f"  error: {summary.error}")
    return "\n".join(lines)


async def _run_orchestrator(orchestrator: Orchestrator) -> RunSummary:
    loop = asyncio.get_running_loop()
    installed: list[signal.Signals] = []
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, orchestrator.request_stop)
            installed.append(sig)
        except (NotImplementedError, RuntimeError):
            pass
    try:
        return await orchestrator.run()
    finally:
        for sig in installed:
            loop.remove_signal_handler(sig)


def cmd_run(args: argparse.Namespace) -> int:
    settings = settings_from_args(args)
    configure_logging(settings.log_level)
    if not settings.repos:
        print("No repositories given; pass owner/name arguments or set REVIEW_FLEET_REPOS", file=sys.stderr)
        return EXIT_CODES["invalid"]

    journal, _ = open_journal(settings)
    orchestrator = Orchestrator(settings, journal=journal)
    summary = asyncio.run(_run_orchestrator(orchestrator))
    if args.json:
        print(json.dumps(summary.to_dict(), indent=2))
    else:
        print(format_summary(summary))
    return summary.exit_code


def cmd_serve(args: argparse.Namespace) -> int:
    settings = get_settings()
    configure_logging(settings.log_level)
    server = create_server(settings)
    logger.info("Launching review-fleet MCP server", extra={"log_level": settings.log_level})
    server.run()
    return 0


def main(argv: Sequence[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not hasattr(args, "func"):
        parser.print_help()
        return EXIT_CODES["invalid"]
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
