"""Work item data models."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum, IntEnum


class ItemKind(str, Enum):
    ISSUE = "issue"
    PR = "pr"


class PriorityLevel(IntEnum):
    """Ordered priority levels; comparisons follow urgency."""

    LOW = 0
    NORMAL = 1
    HIGH = 2
    CRITICAL = 3


@dataclass(frozen=True, slots=True)
class WorkItem:
    """An issue or pull request discovered as candidate review work."""

    repo: str
    kind: ItemKind
    number: int
    title: str
    labels: tuple[str, ...] = ()
    created_at: datetime | None = None
    updated_at: datetime | None = None
    is_draft: bool = False

    @property
    def key(self) -> str:
        return f"{self.repo}#{self.kind.value}-{self.number}"

    def to_line(self) -> str:
        """Serialize into the pipe-delimited form used in plans and logs."""

        title = self.title.replace("|", " ")
        return "|".join(
            [
                self.repo,
                self.kind.value,
                str(self.number),
                title,
                ",".join(self.labels),
                self.created_at.isoformat() if self.created_at else "",
                self.updated_at.isoformat() if self.updated_at else "",
                "true" if self.is_draft else "false",
            ]
        )

    @classmethod
    def from_line(cls, line: str) -> "WorkItem":
        parts = line.rstrip("\n").split("|")
        if len(parts) < 3:
            raise ValueError(f"Malformed work item line: {line!r}")
        parts += [""] * (8 - len(parts))
        repo, kind, number, title, labels, created, updated, draft = parts[:8]
        return cls(
            repo=repo,
            kind=ItemKind(kind),
            number=int(number),
            title=title,
            labels=tuple(label for label in labels.split(",") if label),
            created_at=datetime.fromisoformat(created) if created else None,
            updated_at=datetime.fromisoformat(updated) if updated else None,
            is_draft=draft == "true",
        )


@dataclass(frozen=True, slots=True)
class ScoredItem:
    item: WorkItem
    score: int
    level: PriorityLevel = field(default=PriorityLevel.LOW)


def parse_item_key(key: str) -> tuple[str, ItemKind, int]:
    """Split ``owner/repo#kind-number`` into its parts."""

    repo, sep, rest = key.rpartition("#")
    kind, dash, number = rest.partition("-")
    if not sep or not dash or not repo:
        raise ValueError(f"Malformed item key: {key!r}")
    return repo, ItemKind(kind), int(number)


__all__ = ["ItemKind", "PriorityLevel", "ScoredItem", "WorkItem", "parse_item_key"]
