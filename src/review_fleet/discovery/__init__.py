"""Work-item discovery and scoring."""

from .github import DiscoveryError, FakeGhRunner, GhRunner, GitHubDiscovery, discover_work_items
from .models import ItemKind, PriorityLevel, ScoredItem, WorkItem, parse_item_key
from .scoring import parse_threshold, priority_level, score_and_sort, score_item

__all__ = [
    "DiscoveryError",
    "FakeGhRunner",
    "GhRunner",
    "GitHubDiscovery",
    "ItemKind",
    "PriorityLevel",
    "ScoredItem",
    "WorkItem",
    "discover_work_items",
    "parse_item_key",
    "parse_threshold",
    "priority_level",
    "score_and_sort",
    "score_item",
]
