"""Top-level review run: schedule, poll, checkpoint, drain, summarize."""

from __future__ import annotations

import asyncio
import logging
import shutil
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Iterable, Sequence

from .budget import CostBudget
from .config import ReviewSettings
from .discovery import DiscoveryError, GitHubDiscovery, ItemKind, WorkItem, score_and_sort
from .exit_codes import aggregate_exit_code, classify_error, exit_code_for
from .governor import RateLimitGovernor
from .patterns import DetectionPatterns, PatternLoadError, PatternLoader
from .questions import PatchSummary, QuestionQueue, QuestionQueueError, QuestionRouter
from .session import (
    DriverUnavailableError,
    PollResult,
    SessionDriver,
    SessionDriverError,
    SessionState,
    SessionSupervisor,
    SupervisedSession,
    create_driver,
)
from .session.monitor import matches_error
from .session.stream import find_result, parse_events, plain_text
from .state import (
    Checkpoint,
    CheckpointError,
    CheckpointStore,
    LockError,
    LockHeldError,
    ReviewStateStore,
    RunLock,
    StateStoreError,
)
from .storage import EventJournal
from .workspace import DigestCache, DigestError, GitError, WorktreeError, WorktreeManager
from .workspace.digest import DIGEST_RELATIVE_PATH
from .workspace.git import diff_stats

logger = logging.getLogger(__name__)

PromptBuilder = Callable[[str, Sequence[WorkItem], str, Path | None], str]
RepoPathResolver = Callable[[str], Path]

# Persistence failures that end a run with a summary instead of a traceback.
STATE_ERRORS = (StateStoreError, CheckpointError, QuestionQueueError, LockError)

# Stop reasons that interrupt active sessions instead of letting them finish.
INTERRUPTING_STOPS = {"interrupted", "max_runtime"}


def generate_run_id(now: datetime | None = None) -> str:
    now = now or datetime.now(timezone.utc)
    return f"{now:%Y%m%d-%H%M%S}-{uuid.uuid4().hex[:6]}"


def pending_repositories(items: Iterable[WorkItem]) -> list[str]:
    """Unique repositories in first-seen order."""

    return list(dict.fromkeys(item.repo for item in items))


def prefetch_candidates(pending: Sequence[str], window: int, already: Iterable[str] = ()) -> list[str]:
    """The next ``window`` pending repositories that are not already warm."""

    seen = set(already)
    return [repo for repo in pending[: max(0, window)] if repo not in seen]


def default_prompt(repo: str, items: Sequence[WorkItem], mode: str, digest_path: Path | None) -> str:
    lines = [f"Review mode: {mode}", f"Repository: {repo}", "Work items:"]
    lines.extend(f"- {item.key}: {item.title}" for item in items)
    if digest_path is not None:
        lines.append(f"Repository digest: {digest_path}")
    lines.append(f"Write an updated digest to {DIGEST_RELATIVE_PATH}.")
    return "\n".join(lines)


@dataclass(slots=True)
class RunSummary:
    run_id: str
    mode: str
    status: str
    exit_code: int
    dry_run: bool = False
    repos_reviewed: int = 0
    repos_failed: int = 0
    repos_skipped: int = 0
    items_found: int = 0
    by_type: dict[str, int] = field(default_factory=lambda: {"issues": 0, "prs": 0})
    questions_asked: int = 0
    duration_seconds: float = 0.0
    stop_reason: str | None = None
    resumed: bool = False
    repos: dict[str, str] = field(default_factory=dict)
    pending_repos: list[str] = field(default_factory=list)
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "mode": self.mode,
            "status": self.status,
            "exit_code": self.exit_code,
            "dry_run": self.dry_run,
            "repos_reviewed": self.repos_reviewed,
            "repos_failed": self.repos_failed,
            "repos_skipped": self.repos_skipped,
            "items_found": self.items_found,
            "by_type": dict(self.by_type),
            "questions_asked": self.questions_asked,
            "duration_seconds": round(self.duration_seconds, 3),
            "stop_reason": self.stop_reason,
            "resumed": self.resumed,
            "repos": dict(self.repos),
            "pending_repos": list(self.pending_repos),
            "error": self.error,
        }


class Orchestrator:
    """Drive one agent session per repository under a concurrency limit."""

    def __init__(
        self,
        settings: ReviewSettings,
        *,
        driver: SessionDriver | None = None,
        discovery: GitHubDiscovery | None = None,
        state_store: ReviewStateStore | None = None,
        journal: EventJournal | None = None,
        governor: RateLimitGovernor | None = None,
        patterns: DetectionPatterns | None = None,
        prompt_builder: PromptBuilder | None = None,
        repo_path_resolver: RepoPathResolver | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.settings = settings
        self.review_dir = settings.review_dir
        self._driver = driver
        self.discovery = discovery
        self.state_store = state_store or ReviewStateStore(self.review_dir)
        self.checkpoints = CheckpointStore(self.state_store)
        self.queue = QuestionQueue(self.review_dir)
        self.digests = DigestCache(self.review_dir / "digests")
        self.journal = journal
        self.governor = governor or RateLimitGovernor(settings.parallel)
        self._patterns = patterns
        self.prompt_builder = prompt_builder or default_prompt
        self.repo_path_resolver = repo_path_resolver or self._default_repo_path
        self._clock = clock
        self.run_lock = RunLock(settings.state_dir)
        self._stop_event = asyncio.Event()
        self._stop_reason: str | None = None

        self.run_id: str = ""
        self.budget = CostBudget(
            max_repos=settings.max_repos,
            max_runtime_minutes=settings.max_runtime_minutes,
            max_questions=settings.max_questions,
            clock=clock,
        )
        self.supervisor: SessionSupervisor | None = None
        self.router: QuestionRouter | None = None
        self.worktrees: WorktreeManager | None = None
        self.items_by_repo: dict[str, list[WorkItem]] = {}
        self.pending: list[str] = []
        self.completed: list[str] = []
        self.outcomes: dict[str, str] = {}
        self._error_kinds: list[str] = []
        self._prefetched: dict[str, asyncio.Task] = {}
        self._started_at = 0.0

    def _default_repo_path(self, repo: str) -> Path:
        owner, _, name = repo.partition("/")
        nested = self.settings.projects_dir / owner / name
        return nested if nested.exists() else self.settings.projects_dir / name

    def request_stop(self, reason: str = "interrupted") -> None:
        """Ask the loop to drain at the next tick."""

        self._stop_reason = self._stop_reason or reason
        self._stop_event.set()

    def _check_prerequisites(self) -> SessionDriver:
        if self._driver is not None:
            return self._driver
        if shutil.which(self.settings.agent_command) is None:
            raise DriverUnavailableError(
                f"Agent command '{self.settings.agent_command}' not found on PATH"
            )
        return create_driver(
            self.settings.driver,
            [self.settings.agent_command, *self.settings.agent_flags],
            log_dir=self.review_dir / "sessions",
            session_prefix=self.settings.session_prefix,
        )

    def _load_patterns(self) -> DetectionPatterns:
        if self._patterns is None:
            self._patterns = PatternLoader(self.settings.pattern_paths).effective()
        return self._patterns

    async def _discover(self, items: Sequence[WorkItem] | None) -> list[WorkItem]:
        if items is not None:
            return list(items)
        discovery = self.discovery or GitHubDiscovery()
        discovered = await discovery.discover(self.settings.repos)
        remaining = await discovery.graphql_remaining()
        if remaining is not None:
            self.governor.update_github_remaining(remaining)
        return discovered

    def _rank(self, items: list[WorkItem]) -> list[WorkItem]:
        days = self.settings.recent_review_days

        def _recent(item: WorkItem) -> bool:
            return days > 0 and self.state_store.is_recently_reviewed(item.repo, days)

        scored = score_and_sort(items, self.settings.priority_threshold, recently_reviewed=_recent)
        return [entry.item for entry in scored]

    def _failed_summary(self, status: str, kind: str, error: Exception) -> RunSummary:
        logger.error("Review run aborted", extra={"status": status, "error": str(error)})
        return RunSummary(
            run_id=self.run_id or "",
            mode=self.settings.mode,
            status=status,
            exit_code=exit_code_for(classify_error(kind)),
            dry_run=self.settings.dry_run,
            error=str(error),
        )

    async def run(self, items: Sequence[WorkItem] | None = None) -> RunSummary:
        self._started_at = self._clock()
        try:
            driver = self._check_prerequisites()
            patterns = self._load_patterns()
        except DriverUnavailableError as exc:
            return self._failed_summary("failed", "missing_dependency", exc)
        except PatternLoadError as exc:
            return self._failed_summary("failed", "invalid_flag", exc)

        try:
            discovered = await self._discover(items)
        except DiscoveryError as exc:
            return self._failed_summary("failed", "missing_dependency", exc)

        try:
            ranked = self._rank(discovered)
        except StateStoreError as exc:
            return self._failed_summary("failed", "state_error", exc)
        for item in ranked:
            self.items_by_repo.setdefault(item.repo, []).append(item)
        pending = pending_repositories(ranked)

        if self.settings.dry_run:
            self.run_id = generate_run_id()
            self.pending = pending
            summary = self._build_summary(discovered, status="planned")
            logger.info("Dry run planned", extra={"run_id": self.run_id, "repos": len(pending)})
            return summary

        self.run_id = generate_run_id()
        try:
            self.run_lock.acquire(self.run_id, self.settings.mode)
        except LockHeldError as exc:
            return self._failed_summary("lock_held", "missing_dependency", exc)

        try:
            return await self._run_locked(driver, patterns, discovered, pending)
        except STATE_ERRORS as exc:
            await self._abandon_sessions()
            summary = self._failed_summary("failed", "state_error", exc)
            summary.repos = dict(self.outcomes)
            summary.pending_repos = list(self.pending)
            return summary
        finally:
            await self._abandon_sessions()
            self.run_lock.release()

    async def _abandon_sessions(self) -> None:
        """Interrupt whatever is still running and keep a resumable checkpoint."""

        await self._settle_prefetch()
        if self.supervisor is None or len(self.supervisor) == 0:
            return
        await self._drain()
        try:
            self._save_checkpoint()
        except STATE_ERRORS as exc:
            logger.error("Final checkpoint failed", extra={"run_id": self.run_id, "error": str(exc)})

    async def _run_locked(
        self,
        driver: SessionDriver,
        patterns: DetectionPatterns,
        discovered: list[WorkItem],
        pending: list[str],
    ) -> RunSummary:
        self.state_store.init_state()
        checkpoint = self.checkpoints.resume_or_reset(self.settings.config_hash())
        resumed = checkpoint is not None
        if checkpoint is not None:
            self.run_id = checkpoint.run_id
            self.run_lock.relabel(self.run_id, self.settings.mode)
            self.completed = list(checkpoint.completed_repos)
            done = set(self.completed)
            pending = [repo for repo in pending if repo not in done]

        self.pending = pending
        self.budget.reset()
        self.supervisor = SessionSupervisor(
            driver,
            patterns=patterns,
            stall_threshold=self.settings.stall_threshold_seconds,
            clock=self._clock,
        )
        self.router = QuestionRouter(self.queue, driver)
        self.worktrees = WorktreeManager(self.review_dir, self.run_id)
        logger.info(
            "Review run started",
            extra={
                "run_id": self.run_id,
                "mode": self.settings.mode,
                "pending": len(self.pending),
                "resumed": resumed,
                "driver": driver.capabilities().name,
            },
        )
        self._save_checkpoint()

        await self._loop()

        clean = not self.pending and len(self.supervisor) == 0 and self._stop_reason is None
        status = self._final_status(clean)
        summary = self._build_summary(discovered, status=status)
        summary.resumed = resumed
        self.state_store.record_review_run(self.run_id, summary.to_dict())
        if clean:
            self.checkpoints.clear()
            if not self.settings.keep_worktrees:
                self.worktrees.cleanup_run()
        else:
            self._save_checkpoint()
        logger.info("Review run finished", extra=summary.to_dict())
        return summary

    def _final_status(self, clean: bool) -> str:
        if self._stop_reason == "interrupted":
            return "interrupted"
        if self._stop_reason == "circuit_open":
            return "halted"
        if self._stop_reason is not None:
            return "budget_exhausted"
        if any(outcome == "failed" for outcome in self.outcomes.values()):
            return "partial"
        return "completed" if clean else "partial"

    def _build_summary(self, discovered: list[WorkItem], *, status: str) -> RunSummary:
        kinds = [item.kind for item in discovered]
        error_codes = [exit_code_for(classify_error(kind)) for kind in self._error_kinds]
        if status == "interrupted":
            error_codes.append(exit_code_for("interrupted"))
        elif status in {"budget_exhausted", "halted"}:
            error_codes.append(exit_code_for("partial"))
        return RunSummary(
            run_id=self.run_id,
            mode=self.settings.mode,
            status=status,
            exit_code=aggregate_exit_code(error_codes),
            dry_run=self.settings.dry_run,
            repos_reviewed=sum(1 for outcome in self.outcomes.values() if outcome == "completed"),
            repos_failed=sum(1 for outcome in self.outcomes.values() if outcome == "failed"),
            repos_skipped=sum(1 for outcome in self.outcomes.values() if outcome == "skipped"),
            items_found=len(discovered),
            by_type={
                "issues": sum(1 for kind in kinds if kind is ItemKind.ISSUE),
                "prs": sum(1 for kind in kinds if kind is ItemKind.PR),
            },
            questions_asked=self.budget.questions_asked,
            duration_seconds=self._clock() - self._started_at,
            stop_reason=self._stop_reason,
            repos=dict(self.outcomes),
            pending_repos=list(self.pending),
        )

    def _save_checkpoint(self) -> None:
        assert self.supervisor is not None
        active = [record.repo for record in self.supervisor.sessions.values()]
        self.checkpoints.save(
            Checkpoint(
                run_id=self.run_id,
                mode=self.settings.mode,
                config_hash=self.settings.config_hash(),
                completed_repos=list(self.completed),
                pending_repos=active + [repo for repo in self.pending if repo not in active],
            )
        )

    async def _loop(self) -> None:
        assert self.supervisor is not None
        draining = False
        while True:
            await self._route_answers()

            reason = self.budget.exhausted_reason()
            if self._stop_reason is None and reason and (
                self.pending or (reason == "max_runtime" and len(self.supervisor) > 0)
            ):
                self._stop_reason = reason
                logger.warning(
                    "Budget exhausted; draining",
                    extra={"run_id": self.run_id, "reason": reason, **self.budget.snapshot()},
                )
            if self._stop_reason is not None and not draining:
                draining = True
                if self._stop_reason in INTERRUPTING_STOPS:
                    await self._drain()
                self._save_checkpoint()

            if not draining:
                await self._schedule()
                self._prefetch()
                if self.pending and len(self.supervisor) == 0 and self.governor.circuit_open():
                    self._stop_reason = "circuit_open"
                    logger.error(
                        "Too many session errors; halting run",
                        extra={"run_id": self.run_id, **self.governor.status()},
                    )
                    break

            if len(self.supervisor) == 0 and (draining or not self.pending):
                break

            for result in await self.supervisor.poll_all():
                await self._handle(result)

            try:
                await asyncio.wait_for(
                    self._stop_event.wait(), timeout=self.settings.poll_interval_seconds
                )
            except asyncio.TimeoutError:
                pass

        await self._settle_prefetch()

    async def _drain(self) -> None:
        """Interrupt active sessions and return their repositories to pending."""

        assert self.supervisor is not None
        for record in list(self.supervisor.sessions.values()):
            try:
                await self.supervisor.interrupt(record.session_id)
            except SessionDriverError as exc:
                logger.warning(
                    "Interrupt failed",
                    extra={"session_id": record.session_id, "error": str(exc)},
                )
            await self.supervisor.end(record.session_id)
            if record.repo not in self.pending:
                self.pending.insert(0, record.repo)
            logger.info(
                "Session interrupted for drain",
                extra={"session_id": record.session_id, "repo": record.repo},
            )

    async def _settle_prefetch(self) -> None:
        """Wait for warm-up workers and remove worktrees no session will use."""

        tasks, self._prefetched = self._prefetched, {}
        if not tasks:
            return
        results = await asyncio.gather(*tasks.values(), return_exceptions=True)
        for repo, result in zip(tasks, results):
            if isinstance(result, BaseException):
                logger.warning("Prefetch failed", extra={"repo": repo, "error": str(result)})
            elif result is not None and self.worktrees is not None:
                self.worktrees.remove_worktree(repo)

    async def _schedule(self) -> None:
        assert self.supervisor is not None
        while self.pending and len(self.supervisor) < self.settings.parallel:
            if not self.governor.can_start(len(self.supervisor)):
                break
            if not self.budget.check_budget():
                break
            repo = self.pending.pop(0)
            await self._start_repo(repo)

    def _prefetch(self) -> None:
        assert self.supervisor is not None
        if len(self.supervisor) >= self.settings.parallel:
            return
        for repo in prefetch_candidates(self.pending, self.settings.prefetch_window, self._prefetched):
            self._prefetched[repo] = asyncio.create_task(
                asyncio.to_thread(self._prepare_worktree, repo)
            )

    def _prepare_worktree(self, repo: str) -> Path | None:
        assert self.worktrees is not None
        return self.worktrees.prepare_worktree(repo, self.repo_path_resolver(repo))

    async def _start_repo(self, repo: str) -> None:
        assert self.supervisor is not None and self.worktrees is not None
        self.budget.increment_repos_processed()
        started = self._clock()
        task = self._prefetched.pop(repo, None)
        try:
            if task is not None:
                worktree = await task
            else:
                worktree = await asyncio.to_thread(self._prepare_worktree, repo)
        except (WorktreeError, GitError) as exc:
            self._finish_repo(repo, "failed", started, note=str(exc), error_kind="session_failed")
            return

        if worktree is None:
            self._finish_repo(repo, "skipped", started, note="not a git repository")
            return

        digest_path = self.digests.apply_cached_digest(repo, worktree)
        items = self.items_by_repo.get(repo, [])
        prompt = self.prompt_builder(repo, items, self.settings.mode, digest_path)
        try:
            record = await self.supervisor.start(repo, worktree, prompt, items)
        except SessionDriverError as exc:
            self._finish_repo(repo, "failed", started, note=str(exc), error_kind="session_failed")
            return

        self._journal(
            "record_event",
            session_id=record.session_id,
            event_type="session_started",
            body={"repo": repo, "worktree": str(worktree)},
            metadata={"repo": repo, "run_id": self.run_id},
        )
        self._save_checkpoint()

    def _finish_repo(
        self,
        repo: str,
        outcome: str,
        started: float,
        *,
        note: str = "",
        error_kind: str | None = None,
        questions: int = 0,
    ) -> None:
        items = self.items_by_repo.get(repo, [])
        item_outcome = {"completed": "reviewed"}.get(outcome, outcome)
        for item in items:
            self.state_store.record_item_outcome(
                item.repo, item.kind.value, item.number, item_outcome, note, run_id=self.run_id
            )
        self.state_store.record_repo_outcome(
            repo,
            outcome,
            self._clock() - started,
            items_processed=len(items),
            questions=questions,
            run_id=self.run_id,
        )
        self.outcomes[repo] = outcome
        if repo not in self.completed:
            self.completed.append(repo)
        if error_kind:
            self._error_kinds.append(error_kind)
            logger.warning("Repository failed", extra={"repo": repo, "note": note})
        self._save_checkpoint()

    async def _end_session(
        self,
        record: SupervisedSession,
        outcome: str,
        *,
        note: str = "",
        error_kind: str | None = None,
    ) -> None:
        assert self.supervisor is not None and self.worktrees is not None
        await self.supervisor.end(record.session_id)
        if outcome == "completed":
            try:
                self.digests.update_cache(record.repo, record.worktree_path)
            except (DigestError, GitError, OSError) as exc:
                logger.warning("Digest update failed", extra={"repo": record.repo, "error": str(exc)})
        if not self.settings.keep_worktrees:
            self.worktrees.remove_worktree(record.repo)
        questions = sum(1 for q in self.queue.load() if q.repo == record.repo)
        self._finish_repo(
            record.repo,
            outcome,
            record.started_at,
            note=note,
            error_kind=error_kind,
            questions=questions,
        )
        self._journal(
            "record_event",
            session_id=record.session_id,
            event_type="session_finished",
            body={"repo": record.repo, "outcome": outcome, "note": note},
            metadata={"repo": record.repo, "run_id": self.run_id, "outcome": outcome},
        )

    async def _handle(self, result: PollResult) -> None:
        assert self.supervisor is not None
        if result.session_id not in self.supervisor:
            return
        record = self.supervisor.get(result.session_id)
        state = result.effective
        previous = record.last_state
        if previous is not state:
            record.last_state = state
            self._journal(
                "record_state_change",
                session_id=record.session_id,
                repo=record.repo,
                run_id=self.run_id,
                previous=previous.value if previous else "none",
                current=state.value,
            )

        if state is SessionState.COMPLETE:
            summary = find_result(parse_events(record.last_output)) or {}
            if summary.get("is_error"):
                await self._end_session(
                    record, "failed", note=str(summary.get("status")), error_kind="session_failed"
                )
            else:
                await self._end_session(record, "completed", note=str(summary.get("text") or "")[:500])
        elif state is SessionState.ERROR:
            signature = matches_error(plain_text(record.last_output), self.supervisor.patterns)
            if signature and ("rate" in signature or "429" in signature or "quota" in signature):
                self.governor.record_model_rate_limit()
            self.governor.record_error()
            await self._end_session(
                record,
                "failed",
                note=f"session error ({signature or 'exited'})",
                error_kind="session_failed",
            )
        elif state is SessionState.WAITING and not record.parked and result.wait_info is not None:
            tool_use_id = result.wait_info.tool_use_id
            if tool_use_id is None or tool_use_id != record.answered_tool_use_id:
                self._raise_question(record, result)
        elif state is SessionState.STALLED and not record.parked:
            attempt = record.history.stall_attempts + 1
            try:
                action, _ = await self.supervisor.handle_stalled_session(record.session_id)
            except SessionDriverError as exc:
                await self._end_session(
                    record, "failed", note=f"restart failed: {exc}", error_kind="session_failed"
                )
                return
            self._journal(
                "record_stall_recovery",
                session_id=record.session_id,
                repo=record.repo,
                run_id=self.run_id,
                action=action.value,
                attempt=attempt,
            )

    def _raise_question(self, record: SupervisedSession, result: PollResult) -> None:
        assert self.router is not None and self.worktrees is not None
        wait_info = result.wait_info
        assert wait_info is not None
        patch = PatchSummary()
        info = self.worktrees.get_worktree(record.repo)
        if info is not None:
            try:
                files, insertions, deletions = diff_stats(record.worktree_path, info.base_ref)
                patch = PatchSummary(files_changed=files, insertions=insertions, deletions=deletions)
            except GitError:
                pass
        question = self.router.raise_question(
            record.session_id, record.repo, wait_info, patch_summary=patch
        )
        self._journal(
            "record_wait",
            session_id=record.session_id,
            repo=record.repo,
            run_id=self.run_id,
            wait_info=wait_info.to_dict(),
        )
        if question is None:
            return
        record.question_id = question.id
        self.budget.increment_questions_asked()

    async def _route_answers(self) -> None:
        assert self.supervisor is not None and self.router is not None
        for record in list(self.supervisor.sessions.values()):
            if not record.parked:
                continue
            question = next((q for q in self.queue.load() if q.id == record.question_id), None)
            if question is None:
                record.question_id = None
                continue
            if question.status == "answered" and question.routed_at is None:
                if await self.router.route_answer(question):
                    self.supervisor.answer_routed(record.session_id)
            elif question.status == "skipped":
                await self._end_session(record, "skipped", note="question skipped")

    def _journal(self, method: str, **kwargs: Any) -> None:
        if self.journal is None:
            return
        try:
            getattr(self.journal, method)(**kwargs)
        except Exception as exc:  # journal is best effort
            logger.warning("Journal write failed", extra={"error": str(exc)})


__all__ = [
    "Orchestrator",
    "RunSummary",
    "default_prompt",
    "generate_run_id",
    "pending_repositories",
    "prefetch_candidates",
]
