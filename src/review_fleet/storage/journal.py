"""Session lifecycle journal kept in a local Chroma collection.

Every event is one document whose metadata carries the session id, the event
type and the time it was written; ``events`` reads them back oldest first.
"""

from __future__ import annotations

import itertools
import json
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Protocol

COLLECTION_NAME = "review_fleet_events"


class JournalUnavailableError(RuntimeError):
    """Raised when the journal's Chroma collection cannot be opened."""


class EventCollection(Protocol):
    def add(self, *, documents: list[str], metadatas: list[dict[str, Any]], ids: list[str]) -> None:
        ...

    def get(self, *, where: dict[str, Any] | None = None) -> dict[str, list[Any]]:
        ...


@dataclass(slots=True)
class JournalEvent:
    id: str
    session_id: str
    event_type: str
    document: str
    metadata: dict[str, Any]
    timestamp: datetime

    @classmethod
    def from_record(cls, event_id: str, document: str, metadata: dict[str, Any]) -> "JournalEvent":
        return cls(
            id=event_id,
            session_id=metadata.get("session_id", ""),
            event_type=metadata.get("event_type", ""),
            document=document,
            metadata=metadata,
            timestamp=datetime.fromisoformat(metadata["timestamp"]),
        )

    @property
    def sort_key(self) -> tuple[datetime, int]:
        return self.timestamp, int(self.metadata.get("sequence", 0))


def _flatten(metadata: dict[str, Any]) -> dict[str, Any]:
    # Chroma metadata values must be scalars.
    flat: dict[str, Any] = {}
    for key, value in metadata.items():
        scalar = value is None or isinstance(value, (str, int, float, bool))
        flat[key] = value if scalar else json.dumps(value, default=str)
    return flat


def _where(**conditions: Any) -> dict[str, Any] | None:
    clauses = [{key: value} for key, value in conditions.items() if value is not None]
    if not clauses:
        return None
    return clauses[0] if len(clauses) == 1 else {"$and": clauses}


def open_collection(path: Path, name: str = COLLECTION_NAME) -> EventCollection:
    try:
        import chromadb
    except ImportError as exc:  # pragma: no cover - depends on environment
        raise JournalUnavailableError(
            "chromadb package is not installed; install review-fleet with the journal extra"
        ) from exc
    return chromadb.PersistentClient(path=str(path)).get_or_create_collection(name)


class EventJournal:
    """Write-mostly record of what each session did during a run."""

    def __init__(
        self,
        path: Path,
        *,
        collection_factory: Callable[[], EventCollection] | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.path = Path(path)
        self._collection_factory = collection_factory or (lambda: open_collection(self.path))
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._collection: EventCollection | None = None
        self._sequence = itertools.count(1)

    @property
    def collection(self) -> EventCollection:
        if self._collection is None:
            self._collection = self._collection_factory()
        return self._collection

    def ping(self) -> bool:
        return self.collection is not None

    def record_event(
        self,
        *,
        session_id: str,
        event_type: str,
        body: Any,
        metadata: dict[str, Any] | None = None,
    ) -> JournalEvent:
        document = body if isinstance(body, str) else json.dumps(body, default=str)
        record = _flatten(metadata or {})
        record.update(
            session_id=session_id,
            event_type=event_type,
            timestamp=self._clock().isoformat(),
            sequence=next(self._sequence),
        )
        event_id = f"{session_id}:{uuid.uuid4().hex}"
        self.collection.add(documents=[document], metadatas=[record], ids=[event_id])
        return JournalEvent.from_record(event_id, document, record)

    def record_state_change(
        self, *, session_id: str, repo: str, run_id: str, previous: str, current: str
    ) -> JournalEvent:
        return self.record_event(
            session_id=session_id,
            event_type="state_change",
            body={"from": previous, "to": current},
            metadata={"repo": repo, "run_id": run_id, "state": current},
        )

    def record_wait(
        self, *, session_id: str, repo: str, run_id: str, wait_info: dict[str, Any]
    ) -> JournalEvent:
        return self.record_event(
            session_id=session_id,
            event_type="wait_detected",
            body=wait_info,
            metadata={
                "repo": repo,
                "run_id": run_id,
                "reason": wait_info.get("reason"),
                "risk_level": wait_info.get("risk_level"),
            },
        )

    def record_stall_recovery(
        self, *, session_id: str, repo: str, run_id: str, action: str, attempt: int
    ) -> JournalEvent:
        return self.record_event(
            session_id=session_id,
            event_type="stall_recovery",
            body={"action": action, "attempt": attempt},
            metadata={"repo": repo, "run_id": run_id, "action": action},
        )

    def events(
        self,
        *,
        session_id: str | None = None,
        event_type: str | None = None,
        limit: int | None = None,
    ) -> list[JournalEvent]:
        """Matching events oldest first; ``limit`` keeps the newest ones."""

        result = self.collection.get(where=_where(session_id=session_id, event_type=event_type))
        events = sorted(
            (
                JournalEvent.from_record(event_id, document, metadata)
                for event_id, document, metadata in zip(
                    result.get("ids", []), result.get("documents", []), result.get("metadatas", [])
                )
            ),
            key=lambda event: event.sort_key,
        )
        return events[-limit:] if limit else events


__all__ = ["EventJournal", "JournalEvent", "JournalUnavailableError", "open_collection"]
