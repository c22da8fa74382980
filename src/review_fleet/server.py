"""FastMCP server exposing the question queue and review status."""

from __future__ import annotations

import json
import logging
from typing import Optional

from fastmcp import Context, FastMCP

from . import __version__
from .config import ReviewSettings, get_settings
from .questions import QuestionQueue
from .state import CheckpointStore, ReviewStateStore
from .storage import EventJournal, JournalUnavailableError
from .tools import register_tools, review_status_payload

LOG_FORMAT = "[%(asctime)s] [%(levelname)s] %(name)s: %(message)s"


def configure_logging(level: str) -> None:
    """Configure root logging for review-fleet processes."""

    logging.basicConfig(level=getattr(logging, level, logging.INFO), format=LOG_FORMAT)


def open_journal(settings: ReviewSettings) -> tuple[EventJournal | None, dict[str, object]]:
    """Open the event journal if one is configured; never raises."""

    metadata: dict[str, object] = {
        "available": False,
        "path": str(settings.journal_path) if settings.journal_path else None,
        "error": None,
    }
    if settings.journal_path is None:
        return None, metadata
    try:
        journal = EventJournal(settings.journal_path)
        journal.ping()
    except JournalUnavailableError as exc:
        metadata["error"] = str(exc)
        return None, metadata
    metadata["available"] = True
    return journal, metadata


def create_server(
    settings: Optional[ReviewSettings] = None,
    queue: QuestionQueue | None = None,
    state_store: ReviewStateStore | None = None,
) -> FastMCP:
    """Instantiate the FastMCP server with its tools and status resource."""

    settings = settings or get_settings()
    state_store = state_store or ReviewStateStore(settings.review_dir)
    queue = queue or QuestionQueue(settings.review_dir)
    checkpoints = CheckpointStore(state_store)
    journal, journal_metadata = open_journal(settings)

    server = FastMCP(
        name="Review Fleet",
        version=__version__,
        instructions=(
            "Review Fleet runs AI review sessions across many repositories. Sessions that "
            "need a human decision raise questions here; list, answer, skip or snooze them."
        ),
    )

    handles = register_tools(
        server,
        queue=queue,
        state_store=state_store,
        checkpoints=checkpoints,
        settings=settings,
    )

    @server.resource(
        "resource://review-fleet/status",
        name="review_fleet_status",
        title="Review Fleet Status",
        description="Run lock, checkpoint, question counts and recent runs.",
        mime_type="application/json",
        tags={"status", "health"},
    )
    def status_resource(context: Context) -> str:
        payload = review_status_payload(
            settings, state_store=state_store, checkpoints=checkpoints, queue=queue
        )
        payload["server_version"] = __version__
        payload["log_level"] = settings.log_level
        payload["journal"] = journal_metadata
        payload["request_id"] = getattr(context, "request_id", None)
        return json.dumps(payload)

    setattr(server, "question_queue", queue)
    setattr(server, "state_store", state_store)
    setattr(server, "journal", journal)
    setattr(server, "journal_metadata", journal_metadata)
    setattr(server, "tool_handles", handles)
    return server


def main() -> None:
    """Entry point for running the review-fleet MCP server."""

    settings = get_settings()
    configure_logging(settings.log_level)

    server = create_server(settings)
    logging.getLogger(__name__).info(
        "Launching review-fleet MCP server",
        extra={
            "version": __version__,
            "log_level": settings.log_level,
            "journal_available": getattr(server, "journal_metadata", {}).get("available"),
        },
    )
    server.run()


if __name__ == "__main__":
    main()
