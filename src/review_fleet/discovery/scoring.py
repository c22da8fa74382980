"""Priority scoring for discovered work items."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Callable, Iterable

from .models import ItemKind, PriorityLevel, ScoredItem, WorkItem

BASE_SCORES = {ItemKind.PR: 20, ItemKind.ISSUE: 10}

# Checked in order; the first matching category wins.
LABEL_BONUSES: tuple[tuple[str, tuple[str, ...], int], ...] = (
    ("security", ("security",), 50),
    ("bug", ("bug",), 30),
    ("enhancement", ("enhancement", "feature"), 10),
)

LEVEL_THRESHOLDS: tuple[tuple[int, PriorityLevel], ...] = (
    (150, PriorityLevel.CRITICAL),
    (120, PriorityLevel.HIGH),
    (50, PriorityLevel.NORMAL),
)

DRAFT_PENALTY = 15
RECENTLY_REVIEWED_PENALTY = 20
STALE_PENALTY = 10


def _label_category(labels: Iterable[str]) -> tuple[str | None, int]:
    lowered = [label.lower() for label in labels]
    for category, needles, bonus in LABEL_BONUSES:
        if any(needle in label for label in lowered for needle in needles):
            return category, bonus
    return None, 0


def _days_since(moment: datetime | None, now: datetime) -> int | None:
    if moment is None:
        return None
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return max(0, (now - moment).days)


def score_item(
    item: WorkItem,
    *,
    now: datetime | None = None,
    recently_reviewed: bool = False,
) -> int:
    """Compute the priority score of a work item, clamped to zero."""

    now = now or datetime.now(timezone.utc)
    score = BASE_SCORES[item.kind]

    category, bonus = _label_category(item.labels)
    score += bonus

    age_days = _days_since(item.created_at, now)
    updated_days = _days_since(item.updated_at, now)

    if category in {"security", "bug"} and age_days is not None:
        if age_days > 60:
            score += 50
        elif age_days > 30:
            score += 30

    if age_days is not None and age_days > 180 and (updated_days is None or updated_days > 30):
        score -= STALE_PENALTY

    if updated_days is not None:
        if updated_days <= 2:
            score += 15
        elif updated_days <= 7:
            score += 10
        elif updated_days <= 14:
            score += 5

    if item.kind is ItemKind.PR and item.is_draft:
        score -= DRAFT_PENALTY
    if recently_reviewed:
        score -= RECENTLY_REVIEWED_PENALTY

    return max(0, score)


def priority_level(score: int) -> PriorityLevel:
    for threshold, level in LEVEL_THRESHOLDS:
        if score >= threshold:
            return level
    return PriorityLevel.LOW


def parse_threshold(name: str) -> PriorityLevel | None:
    """Map a threshold name to a level; ``all`` means no filtering."""

    normalized = name.strip().lower()
    if normalized == "all":
        return None
    try:
        return PriorityLevel[normalized.upper()]
    except KeyError as exc:
        raise ValueError(f"Unknown priority threshold: {name!r}") from exc


def score_and_sort(
    items: Iterable[WorkItem],
    threshold: str = "all",
    *,
    now: datetime | None = None,
    recently_reviewed: Callable[[WorkItem], bool] | None = None,
) -> list[ScoredItem]:
    """Score items, drop those below ``threshold`` and sort by descending score.

    ``sorted`` is stable, so equal scores keep discovery order.
    """

    minimum = parse_threshold(threshold)
    now = now or datetime.now(timezone.utc)
    scored: list[ScoredItem] = []
    for item in items:
        reviewed = bool(recently_reviewed and recently_reviewed(item))
        score = score_item(item, now=now, recently_reviewed=reviewed)
        level = priority_level(score)
        if minimum is not None and level < minimum:
            continue
        scored.append(ScoredItem(item=item, score=score, level=level))
    return sorted(scored, key=lambda entry: entry.score, reverse=True)


__all__ = ["parse_threshold", "priority_level", "score_and_sort", "score_item"]
