"""Batched GitHub work-item discovery via the ``gh`` CLI."""

from __future__ import annotations

import asyncio
import json
import logging
import shutil
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Iterable, Sequence

from ..session.utils import sanitize_environment
from .models import ItemKind, WorkItem

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 25
SCOPES = {"all", "issues", "prs"}

_ITEM_FIELDS = "number title createdAt updatedAt labels(first: 20) { nodes { name } }"


class DiscoveryError(RuntimeError):
    """Raised when work items cannot be fetched."""


class GhNotFoundError(DiscoveryError):
    """Raised when the gh executable cannot be located."""


@dataclass(slots=True)
class GhExecutionResult:
    args: tuple[str, ...]
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0


class GhRunner:
    """Execute gh CLI commands asynchronously."""

    def __init__(self, executable: Path | None = None) -> None:
        self._executable_path = self._resolve_executable(executable)

    @staticmethod
    def _resolve_executable(explicit: Path | None) -> Path:
        if explicit is not None:
            candidate = Path(explicit)
            if candidate.exists() and candidate.is_file():
                return candidate
            raise GhNotFoundError(f"gh executable not found at {candidate}")

        binary = shutil.which("gh")
        if binary is None:
            raise GhNotFoundError("gh CLI executable not found on PATH")
        return Path(binary)

    async def run(self, *args: str) -> GhExecutionResult:
        cmd = [str(self._executable_path), *args]
        process = await asyncio.create_subprocess_exec(
            *cmd,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=sanitize_environment(),
        )
        stdout_bytes, stderr_bytes = await process.communicate()
        return GhExecutionResult(
            args=tuple(cmd),
            returncode=process.returncode,
            stdout=stdout_bytes.decode("utf-8", errors="replace"),
            stderr=stderr_bytes.decode("utf-8", errors="replace"),
        )


class FakeGhRunner(GhRunner):
    """Test double returning canned gh responses."""

    def __init__(self, responses: Iterable[GhExecutionResult | str] | None = None) -> None:  # type: ignore[override]
        self._responses = list(responses or [])
        self._invocations: list[tuple[str, ...]] = []
        self._executable_path = Path("/tmp/fake-gh")

    async def run(self, *args: str) -> GhExecutionResult:  # type: ignore[override]
        self._invocations.append(tuple(args))
        if self._responses:
            response = self._responses.pop(0)
            if isinstance(response, str):
                return GhExecutionResult(args=tuple(args), returncode=0, stdout=response, stderr="")
            return response
        return GhExecutionResult(args=tuple(args), returncode=0, stdout='{"data": {}}', stderr="")

    @property
    def invocations(self) -> list[tuple[str, ...]]:
        return self._invocations


def build_batch_query(repos: Sequence[str], scope: str = "all") -> tuple[str, dict[str, str]]:
    """Build an aliased GraphQL query plus its variables for a batch of repositories.

    Repository names only ever travel as GraphQL variables.
    """

    if scope not in SCOPES:
        raise ValueError(f"Unknown discovery scope: {scope!r}")

    declarations: list[str] = []
    selections: list[str] = []
    variables: dict[str, str] = {}
    for index, repo in enumerate(repos):
        owner, _, name = repo.partition("/")
        if not owner or not name:
            raise ValueError(f"Repository '{repo}' must look like owner/name")
        variables[f"owner{index}"] = owner
        variables[f"name{index}"] = name
        declarations.append(f"$owner{index}: String!, $name{index}: String!")

        parts = ["nameWithOwner isArchived isFork updatedAt"]
        if scope in {"all", "issues"}:
            parts.append(
                "issues(states: OPEN, first: 100, orderBy: {field: UPDATED_AT, direction: DESC}) "
                f"{{ nodes {{ {_ITEM_FIELDS} }} }}"
            )
        if scope in {"all", "prs"}:
            parts.append(
                "pullRequests(states: OPEN, first: 100, orderBy: {field: UPDATED_AT, direction: DESC}) "
                f"{{ nodes {{ {_ITEM_FIELDS} isDraft }} }}"
            )
        selections.append(
            f"repo{index}: repository(owner: $owner{index}, name: $name{index}) {{ {' '.join(parts)} }}"
        )

    query = f"query({', '.join(declarations)}) {{ {' '.join(selections)} }}"
    return query, variables


def _parse_timestamp(raw: Any) -> datetime | None:
    if not isinstance(raw, str) or not raw:
        return None
    return datetime.fromisoformat(raw.replace("Z", "+00:00"))


def _alias_index(alias: str) -> int:
    suffix = alias[len("repo") :]
    return int(suffix) if suffix.isdigit() else 0


def parse_batch_response(payload: dict[str, Any]) -> list[WorkItem]:
    """Flatten a batch GraphQL response into work items.

    Archived and forked repositories are skipped; missing data yields no items.
    """

    data = payload.get("data") or {}
    items: list[WorkItem] = []
    for alias in sorted(data, key=_alias_index):
        node = data.get(alias)
        if not isinstance(node, dict):
            continue
        repo = node.get("nameWithOwner")
        if not repo:
            continue
        if node.get("isArchived") or node.get("isFork"):
            logger.debug("Skipping repository", extra={"repo": repo, "archived": node.get("isArchived")})
            continue

        for field_name, kind in (("issues", ItemKind.ISSUE), ("pullRequests", ItemKind.PR)):
            connection = node.get(field_name) or {}
            for entry in connection.get("nodes") or []:
                if not isinstance(entry, dict) or entry.get("number") is None:
                    continue
                labels = tuple(
                    label["name"]
                    for label in ((entry.get("labels") or {}).get("nodes") or [])
                    if isinstance(label, dict) and label.get("name")
                )
                items.append(
                    WorkItem(
                        repo=repo,
                        kind=kind,
                        number=int(entry["number"]),
                        title=(entry.get("title") or "").replace("|", " "),
                        labels=labels,
                        created_at=_parse_timestamp(entry.get("createdAt")),
                        updated_at=_parse_timestamp(entry.get("updatedAt")),
                        is_draft=bool(entry.get("isDraft")) if kind is ItemKind.PR else False,
                    )
                )
    return items


class GitHubDiscovery:
    """Discover open issues and pull requests across many repositories."""

    def __init__(self, runner: GhRunner | None = None, *, batch_size: int = DEFAULT_BATCH_SIZE) -> None:
        if batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        self._runner = runner
        self._batch_size = batch_size

    @property
    def runner(self) -> GhRunner:
        if self._runner is None:
            self._runner = GhRunner()
        return self._runner

    async def discover(self, repos: Sequence[str], scope: str = "all") -> list[WorkItem]:
        unique = list(dict.fromkeys(repos))
        items: list[WorkItem] = []
        for start in range(0, len(unique), self._batch_size):
            batch = unique[start : start + self._batch_size]
            items.extend(await self._fetch_batch(batch, scope))
        logger.info(
            "Discovered work items",
            extra={"repo_count": len(unique), "item_count": len(items), "scope": scope},
        )
        return items

    async def _fetch_batch(self, repos: Sequence[str], scope: str) -> list[WorkItem]:
        query, variables = build_batch_query(repos, scope)
        args = ["api", "graphql", "-f", f"query={query}"]
        for name, value in variables.items():
            args.extend(["-f", f"{name}={value}"])
        result = await self.runner.run(*args)
        failure = f"gh api graphql failed with exit code {result.returncode}: {result.stderr.strip()}"
        if not result.stdout.strip():
            if not result.ok:
                raise DiscoveryError(failure)
            return []
        try:
            payload = json.loads(result.stdout)
        except json.JSONDecodeError as exc:
            if not result.ok:
                raise DiscoveryError(failure) from exc
            raise DiscoveryError(f"gh api graphql returned invalid JSON: {exc}") from exc
        if not isinstance(payload, dict):
            raise DiscoveryError("gh api graphql returned a non-object response")
        # gh exits non-zero when any alias errors; the other repositories still have data.
        if not result.ok and not payload.get("data"):
            raise DiscoveryError(failure)
        if payload.get("errors"):
            logger.warning(
                "GraphQL response carried errors",
                extra={"repos": list(repos), "errors": payload["errors"]},
            )
        return parse_batch_response(payload)

    async def graphql_remaining(self) -> int | None:
        """Remaining GraphQL quota, or ``None`` when it cannot be determined."""

        result = await self.runner.run("api", "rate_limit")
        if not result.ok:
            return None
        try:
            payload = json.loads(result.stdout)
            return int(payload["resources"]["graphql"]["remaining"])
        except (json.JSONDecodeError, KeyError, TypeError, ValueError):
            logger.debug("Unparseable rate limit response", extra={"stdout": result.stdout[:200]})
            return None


async def discover_work_items(
    repos: Sequence[str],
    scope: str = "all",
    *,
    runner: GhRunner | None = None,
) -> list[WorkItem]:
    """Convenience wrapper around :class:`GitHubDiscovery`."""

    return await GitHubDiscovery(runner).discover(repos, scope)


__all__ = [
    "DiscoveryError",
    "FakeGhRunner",
    "GhExecutionResult",
    "GhNotFoundError",
    "GhRunner",
    "GitHubDiscovery",
    "build_batch_query",
    "discover_work_items",
    "parse_batch_response",
]
