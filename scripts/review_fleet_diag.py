"""review-fleet diagnostics CLI."""

from __future__ import annotations

import argparse
import json

from review_fleet.config import ReviewSettings
from review_fleet.questions import QuestionQueue, QuestionQueueError
from review_fleet.state import (
    CheckpointError,
    CheckpointStore,
    DirectoryLock,
    ReviewStateStore,
    RunLock,
    StateStoreError,
)
from review_fleet.storage import EventJournal, JournalUnavailableError


def load_settings() -> ReviewSettings:
    return ReviewSettings()


def load_journal(settings: ReviewSettings) -> EventJournal:
    if settings.journal_path is None:
        print("Journal unavailable: REVIEW_FLEET_JOURNAL_PATH is not set")
        raise SystemExit(1)
    try:
        return EventJournal(settings.journal_path)
    except JournalUnavailableError as exc:
        print(f"Journal unavailable: {exc}")
        raise SystemExit(1)


def cmd_state(args: argparse.Namespace) -> None:
    settings = load_settings()
    store = ReviewStateStore(settings.review_dir)
    try:
        state = store.load()
    except StateStoreError as exc:
        print(f"State unreadable: {exc}")
        raise SystemExit(1)
    if args.repo:
        print(json.dumps(state["repos"].get(args.repo), indent=2))
        return
    print(json.dumps(state, indent=2))


def cmd_checkpoint(args: argparse.Namespace) -> None:
    settings = load_settings()
    checkpoints = CheckpointStore(ReviewStateStore(settings.review_dir))
    try:
        checkpoint = checkpoints.load()
    except CheckpointError as exc:
        print(f"Checkpoint unreadable: {exc}")
        raise SystemExit(1)
    if checkpoint is None:
        print(json.dumps(None))
        return
    payload = checkpoint.to_dict()
    payload["matches_config"] = checkpoint.config_hash == settings.config_hash()
    print(json.dumps(payload, indent=2))


def cmd_questions(args: argparse.Namespace) -> None:
    settings = load_settings()
    queue = QuestionQueue(settings.review_dir)
    try:
        questions = queue.filter(args.status)
    except QuestionQueueError as exc:
        print(f"Question queue unreadable: {exc}")
        raise SystemExit(1)
    if args.json:
        print(json.dumps([question.model_dump() for question in questions], indent=2))
        return
    for question in questions:
        prompt = question.questions[0].prompt if question.questions else question.context.excerpt
        print(f"{question.id} [{question.status}/{question.priority}] {question.repo}: {prompt[:80]}")


def cmd_locks(args: argparse.Namespace) -> None:
    settings = load_settings()
    review_dir = settings.review_dir
    locks = {
        "run": RunLock(settings.state_dir),
        "state": ReviewStateStore(review_dir).state_lock(),
        "questions": DirectoryLock(review_dir / "questions.lock.d", review_dir / "questions.lock.info"),
    }
    payload = {}
    for name, lock in locks.items():
        holder = lock.holder()
        payload[name] = {
            "path": str(lock.lock_dir),
            "held": lock.lock_dir.exists(),
            "stale": lock.is_stale(),
            "holder": holder.to_dict() if holder else None,
        }
    print(json.dumps(payload, indent=2))


def cmd_events(args: argparse.Namespace) -> None:
    settings = load_settings()
    journal = load_journal(settings)
    try:
        events = journal.events(
            session_id=args.session_id, event_type=args.event_type, limit=args.limit
        )
    except JournalUnavailableError as exc:
        print(f"Journal unavailable: {exc}")
        raise SystemExit(1)

    payload = [
        {
            "event_id": event.id,
            "session_id": event.session_id,
            "event_type": event.event_type,
            "repo": event.metadata.get("repo"),
            "timestamp": event.timestamp.isoformat(),
            "document": event.document,
        }
        for event in events
    ]
    print(json.dumps(payload, indent=2))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="review-fleet diagnostics")
    sub = parser.add_subparsers(dest="cmd")

    p_state = sub.add_parser("state", help="Dump the review state document")
    p_state.add_argument("--repo", help="Only show one repository's record")
    p_state.set_defaults(func=cmd_state)

    p_checkpoint = sub.add_parser("checkpoint", help="Show the resumable checkpoint")
    p_checkpoint.set_defaults(func=cmd_checkpoint)

    p_questions = sub.add_parser("questions", help="List queued questions")
    p_questions.add_argument("--status", choices=("pending", "answered", "skipped", "snoozed"))
    p_questions.add_argument("--json", action="store_true", help="Output JSON")
    p_questions.set_defaults(func=cmd_questions)

    p_locks = sub.add_parser("locks", help="Show lock holders and staleness")
    p_locks.set_defaults(func=cmd_locks)

    p_events = sub.add_parser("events", help="List journaled session events")
    p_events.add_argument("--session-id")
    p_events.add_argument("--event-type")
    p_events.add_argument(
        "--limit",
        type=int,
        default=None,
        help="If provided, show only the latest N events",
    )
    p_events.set_defaults(func=cmd_events)

    return parser


def main(argv: list[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not hasattr(args, "func"):
        parser.print_help()
        return
    args.func(args)


if __name__ == "__main__":
    main()
