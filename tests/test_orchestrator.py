from __future__ import annotations

import asyncio
import json
from pathlib import Path

import pytest

from conftest import init_repo, requires_git
from review_fleet.discovery import ItemKind, WorkItem
from review_fleet.governor import RateLimitGovernor
from review_fleet.orchestrator import (
    Orchestrator,
    default_prompt,
    generate_run_id,
    pending_repositories,
    prefetch_candidates,
)
from review_fleet.patterns import default_patterns
from review_fleet.session import FakeSessionDriver
from review_fleet.session.driver import FakeSession
from review_fleet.session.supervisor import COMPACT_COMMAND
from review_fleet.state import Checkpoint, CheckpointStore, ReviewStateStore, RunLock
from review_fleet.workspace import DigestCache
from review_fleet.workspace.digest import DIGEST_RELATIVE_PATH

ITEMS = [
    WorkItem(repo="acme/api", kind=ItemKind.ISSUE, number=1, title="Crash on start", labels=("bug",)),
    WorkItem(repo="acme/web", kind=ItemKind.ISSUE, number=3, title="Typo in footer"),
    WorkItem(repo="acme/api", kind=ItemKind.PR, number=2, title="Fix crash on start"),
]

ASK_LINE = json.dumps(
    {
        "type": "assistant",
        "message": {
            "content": [
                {
                    "type": "tool_use",
                    "id": "toolu_1",
                    "name": "AskUserQuestion",
                    "input": {
                        "questions": [
                            {
                                "question": "Close #3 as a duplicate?",
                                "options": [{"label": "Yes"}, {"label": "No"}],
                            }
                        ]
                    },
                }
            ]
        },
    }
)


class RecordingJournal:
    def __init__(self) -> None:
        self.calls: list[tuple[str, dict]] = []

    def record_event(self, **kwargs):
        self.calls.append(("record_event", kwargs))

    def record_state_change(self, **kwargs):
        self.calls.append(("record_state_change", kwargs))

    def record_wait(self, **kwargs):
        self.calls.append(("record_wait", kwargs))

    def record_stall_recovery(self, **kwargs):
        self.calls.append(("record_stall_recovery", kwargs))

    def named(self, name: str) -> list[dict]:
        return [kwargs for call, kwargs in self.calls if call == name]


class AnsweringDriver(FakeSessionDriver):
    """Sessions ask one question and finish once it is answered."""

    async def send_input(self, session_id: str, text: str) -> None:
        await super().send_input(session_id, text)
        self.emit(
            session_id,
            json.dumps(
                {
                    "type": "user",
                    "message": {
                        "content": [{"type": "tool_result", "tool_use_id": "toolu_1", "content": text}]
                    },
                }
            )
            + "\n",
        )
        self.finish(session_id)


def _finishing_driver(*, is_error: bool = False, digest: str | None = None) -> FakeSessionDriver:
    driver = FakeSessionDriver()

    def on_start(session_id: str, session: FakeSession) -> None:
        if digest is not None:
            target = session.worktree_path / DIGEST_RELATIVE_PATH
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(digest, encoding="utf-8")
        driver.finish(session_id, is_error=is_error)

    driver.on_start = on_start
    return driver


@pytest.fixture
def projects(make_settings, tmp_path: Path):
    root = tmp_path / "projects"
    init_repo(root / "acme" / "api", files={"app.py": "print('api')\n"})
    init_repo(root / "acme" / "web", files={"index.html": "<p>hi</p>\n"})
    return root


def test_pending_repositories_keeps_first_seen_order() -> None:
    assert pending_repositories(ITEMS) == ["acme/api", "acme/web"]


def test_prefetch_candidates_skips_warm_repos() -> None:
    pending = ["a/one", "a/two", "a/three"]

    assert prefetch_candidates(pending, 2) == ["a/one", "a/two"]
    assert prefetch_candidates(pending, 2, already={"a/one"}) == ["a/two"]
    assert prefetch_candidates(pending, 0) == []


def test_generate_run_id_is_safe_for_paths() -> None:
    run_id = generate_run_id()

    assert len(run_id.split("-")) == 3
    assert run_id.replace("-", "").isalnum()


def test_default_prompt_lists_items_and_digest(tmp_path: Path) -> None:
    prompt = default_prompt("acme/api", ITEMS[:1], "plan", tmp_path / "digest.md")

    assert "Repository: acme/api" in prompt
    assert "- acme/api#issue-1: Crash on start" in prompt
    assert f"Repository digest: {tmp_path / 'digest.md'}" in prompt


@requires_git
def test_run_reviews_every_repository(make_settings, projects) -> None:
    settings = make_settings(parallel=2)
    driver = _finishing_driver(digest="# acme digest\n")
    journal = RecordingJournal()
    orchestrator = Orchestrator(settings, driver=driver, journal=journal, patterns=default_patterns())

    summary = asyncio.run(orchestrator.run(ITEMS))

    assert summary.status == "completed"
    assert summary.exit_code == 0
    assert summary.repos == {"acme/api": "completed", "acme/web": "completed"}
    assert summary.items_found == 3
    assert summary.by_type == {"issues": 2, "prs": 1}
    assert summary.pending_repos == []
    assert len(driver.started) == 2

    state = ReviewStateStore(settings.review_dir).load()
    assert state["repos"]["acme/api"]["items_processed"] == 2
    assert state["items"]["acme/api#pr-2"]["outcome"] == "reviewed"
    assert state["runs"][summary.run_id]["status"] == "completed"
    assert not (settings.review_dir / "review-checkpoint.json").exists()
    assert not (settings.review_dir / "worktrees" / summary.run_id).exists()
    assert not RunLock(settings.state_dir).lock_dir.exists()

    cached = DigestCache(settings.review_dir / "digests").get("acme/api")
    assert cached is not None
    assert "# acme digest" in cached.summary

    event_types = [kwargs["event_type"] for kwargs in journal.named("record_event")]
    assert event_types.count("session_started") == 2
    assert event_types.count("session_finished") == 2

    changes = journal.named("record_state_change")
    for session_id in driver.started:
        mine = [change for change in changes if change["session_id"] == session_id]
        assert mine[0]["previous"] == "none"
        assert mine[-1]["current"] == "complete"
    assert len(orchestrator.supervisor) == 0


@requires_git
def test_failed_and_skipped_repositories(make_settings, tmp_path: Path) -> None:
    root = tmp_path / "projects"
    init_repo(root / "acme" / "api")
    (root / "acme" / "web").mkdir(parents=True)
    settings = make_settings(parallel=2)
    driver = _finishing_driver(is_error=True)

    summary = asyncio.run(Orchestrator(settings, driver=driver, patterns=default_patterns()).run(ITEMS))

    assert summary.repos == {"acme/api": "failed", "acme/web": "skipped"}
    assert summary.status == "partial"
    assert summary.exit_code == 1
    assert summary.repos_failed == 1
    assert summary.repos_skipped == 1
    state = ReviewStateStore(settings.review_dir).load()
    assert state["items"]["acme/web#issue-3"]["outcome"] == "skipped"


@requires_git
def test_rate_limited_session_triggers_backoff(make_settings, projects) -> None:
    settings = make_settings()
    driver = FakeSessionDriver()
    driver.on_start = lambda session_id, session: driver.emit(
        session_id, "Error: rate limit exceeded, retry later\n"
    )
    orchestrator = Orchestrator(settings, driver=driver, patterns=default_patterns())

    summary = asyncio.run(orchestrator.run(ITEMS[:1]))

    assert summary.repos == {"acme/api": "failed"}
    assert summary.exit_code == 1
    assert orchestrator.governor.in_backoff()


def test_missing_agent_command_is_a_system_error(make_settings) -> None:
    settings = make_settings(agent_command="review-fleet-missing-agent")

    summary = asyncio.run(Orchestrator(settings).run(ITEMS))

    assert summary.status == "failed"
    assert summary.exit_code == 3
    assert "not found" in summary.error


def test_second_run_fails_fast_while_lock_held(make_settings) -> None:
    settings = make_settings()
    lock = RunLock(settings.state_dir)
    lock.acquire("20250601-080000-abcdef", "plan")
    try:
        summary = asyncio.run(
            Orchestrator(settings, driver=FakeSessionDriver(), patterns=default_patterns()).run(ITEMS)
        )
    finally:
        lock.release()

    assert summary.status == "lock_held"
    assert summary.exit_code == 3
    assert "20250601-080000-abcdef" in summary.error


def test_dry_run_touches_nothing(make_settings) -> None:
    settings = make_settings(dry_run=True)
    driver = FakeSessionDriver()

    summary = asyncio.run(Orchestrator(settings, driver=driver, patterns=default_patterns()).run(ITEMS))

    assert summary.status == "planned"
    assert summary.exit_code == 0
    assert summary.dry_run is True
    assert summary.pending_repos == ["acme/api", "acme/web"]
    assert driver.started == []
    assert not settings.review_dir.exists()


@requires_git
def test_resume_skips_completed_repositories(make_settings, projects) -> None:
    settings = make_settings()
    store = ReviewStateStore(settings.review_dir)
    CheckpointStore(store).save(
        Checkpoint(
            run_id="20250601-080000-abcdef",
            mode=settings.mode,
            config_hash=settings.config_hash(),
            completed_repos=["acme/api"],
            pending_repos=["acme/web"],
        )
    )
    driver = _finishing_driver()

    summary = asyncio.run(Orchestrator(settings, driver=driver, patterns=default_patterns()).run(ITEMS))

    assert summary.resumed is True
    assert summary.run_id == "20250601-080000-abcdef"
    assert summary.repos == {"acme/web": "completed"}
    assert [session.worktree_path.name for session in driver.sessions.values()] == ["acme_web"]
    assert not CheckpointStore(store).path.exists()


@requires_git
def test_checkpoint_from_other_config_is_archived(make_settings, projects) -> None:
    settings = make_settings()
    store = ReviewStateStore(settings.review_dir)
    CheckpointStore(store).save(
        Checkpoint(
            run_id="20250601-080000-abcdef",
            mode="apply",
            config_hash="ffffffffffffffff",
            completed_repos=["acme/api"],
        )
    )

    summary = asyncio.run(
        Orchestrator(settings, driver=_finishing_driver(), patterns=default_patterns()).run(ITEMS)
    )

    assert summary.resumed is False
    assert set(summary.repos) == {"acme/api", "acme/web"}
    assert (settings.review_dir / "review-checkpoint.20250601-080000-abcdef.stale.json").exists()


@requires_git
def test_max_repos_budget_leaves_rest_pending(make_settings, projects) -> None:
    settings = make_settings(parallel=2, max_repos=1)

    summary = asyncio.run(
        Orchestrator(settings, driver=_finishing_driver(), patterns=default_patterns()).run(ITEMS)
    )

    assert summary.status == "budget_exhausted"
    assert summary.stop_reason == "max_repos"
    assert summary.exit_code == 1
    assert len(summary.repos) == 1
    assert len(summary.pending_repos) == 1
    checkpoint = CheckpointStore(ReviewStateStore(settings.review_dir)).load()
    assert checkpoint is not None
    assert checkpoint.pending_repos == summary.pending_repos


@requires_git
def test_question_is_parked_then_answered(make_settings, projects) -> None:
    settings = make_settings()
    driver = AnsweringDriver()
    driver.on_start = lambda session_id, session: driver.emit(session_id, ASK_LINE + "\n")
    orchestrator = Orchestrator(settings, driver=driver, patterns=default_patterns())

    async def scenario():
        task = asyncio.create_task(orchestrator.run(ITEMS[:1]))
        question = None
        for _ in range(500):
            await asyncio.sleep(0.01)
            pending = orchestrator.queue.pending()
            if pending:
                question = pending[0]
                break
        assert question is not None
        orchestrator.queue.mark_answered(question.id, "Yes")
        return await task, question

    summary, question = asyncio.run(scenario())

    assert summary.status == "completed"
    assert summary.questions_asked == 1
    assert question.repo == "acme/api"
    assert question.questions[0].prompt == "Close #3 as a duplicate?"
    assert driver.sessions[question.session_id].inputs == ["Yes"]
    assert orchestrator.queue.get(question.id).routed_at is not None


@requires_git
def test_interrupt_drains_and_keeps_checkpoint(make_settings, projects) -> None:
    settings = make_settings()
    driver = FakeSessionDriver()
    orchestrator = Orchestrator(settings, driver=driver, patterns=default_patterns())

    async def scenario():
        task = asyncio.create_task(orchestrator.run(ITEMS[:1]))
        for _ in range(500):
            await asyncio.sleep(0.01)
            if driver.started:
                break
        orchestrator.request_stop()
        return await task

    summary = asyncio.run(scenario())

    assert summary.status == "interrupted"
    assert summary.exit_code == 5
    assert summary.pending_repos == ["acme/api"]
    assert driver.sessions[driver.started[0]].interrupts == 1
    checkpoint = CheckpointStore(ReviewStateStore(settings.review_dir)).load()
    assert checkpoint is not None
    assert checkpoint.pending_repos == ["acme/api"]


class ManualClock:
    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


async def _until(predicate, attempts: int = 500) -> None:
    for _ in range(attempts):
        if predicate():
            return
        await asyncio.sleep(0.01)
    raise AssertionError("condition never held")


def _session_for(driver: FakeSessionDriver, slug: str) -> str:
    return next(sid for sid, session in driver.sessions.items() if session.worktree_path.name == slug)


@requires_git
def test_answered_text_question_is_not_asked_again(make_settings, projects) -> None:
    settings = make_settings()
    driver = FakeSessionDriver()
    driver.on_start = lambda session_id, session: driver.emit(
        session_id, "Should I delete the legacy module? [y/N]\n> "
    )
    orchestrator = Orchestrator(settings, driver=driver, patterns=default_patterns())

    async def scenario():
        task = asyncio.create_task(orchestrator.run(ITEMS[:1]))
        await _until(lambda: bool(orchestrator.queue.pending()))
        question = orchestrator.queue.pending()[0]
        orchestrator.queue.mark_answered(question.id, "y")
        session = driver.sessions[question.session_id]
        await _until(lambda: session.inputs == ["y"])
        # The prompt is still on screen while the agent has not reacted yet.
        await asyncio.sleep(0.3)
        reasked = orchestrator.queue.pending()
        driver.finish(question.session_id)
        return await task, question, reasked

    summary, question, reasked = asyncio.run(scenario())

    assert reasked == []
    assert summary.status == "completed"
    assert summary.questions_asked == 1
    assert len(orchestrator.queue.load()) == 1
    assert driver.sessions[question.session_id].inputs == ["y"]


def test_unreadable_pattern_file_is_an_invalid_run(make_settings, tmp_path: Path) -> None:
    patterns_dir = tmp_path / "patterns"
    patterns_dir.mkdir()
    (patterns_dir / "bad.yml").write_text("id: [unclosed\n", encoding="utf-8")
    settings = make_settings(pattern_paths=(patterns_dir,))
    driver = FakeSessionDriver()

    summary = asyncio.run(Orchestrator(settings, driver=driver).run(ITEMS))

    assert summary.status == "failed"
    assert summary.exit_code == 4
    assert "bad.yml" in summary.error
    assert driver.started == []


def test_corrupt_review_state_is_a_system_error(make_settings) -> None:
    settings = make_settings(recent_review_days=7)
    settings.review_dir.mkdir(parents=True)
    (settings.review_dir / "review-state.json").write_text("{oops", encoding="utf-8")
    driver = FakeSessionDriver()

    summary = asyncio.run(Orchestrator(settings, driver=driver, patterns=default_patterns()).run(ITEMS))

    assert summary.status == "failed"
    assert summary.exit_code == 3
    assert "corrupt" in summary.error
    assert driver.started == []


@requires_git
def test_corrupt_question_queue_mid_run_stops_sessions(make_settings, projects) -> None:
    settings = make_settings(parallel=2)
    driver = FakeSessionDriver()
    orchestrator = Orchestrator(settings, driver=driver, patterns=default_patterns())

    async def scenario():
        task = asyncio.create_task(orchestrator.run(ITEMS))
        await _until(lambda: len(driver.started) == 2)
        (settings.review_dir / "review-questions.json").write_text("{oops", encoding="utf-8")
        driver.finish(_session_for(driver, "acme_api"))
        return await task

    summary = asyncio.run(scenario())

    assert summary.status == "failed"
    assert summary.exit_code == 3
    assert "corrupt" in summary.error
    assert summary.pending_repos == ["acme/web"]
    web = _session_for(driver, "acme_web")
    assert driver.sessions[web].interrupts == 1
    assert web in driver.stopped
    assert len(orchestrator.supervisor) == 0
    checkpoint = CheckpointStore(ReviewStateStore(settings.review_dir)).load()
    assert checkpoint is not None
    assert checkpoint.pending_repos == ["acme/web"]
    assert not RunLock(settings.state_dir).lock_dir.exists()


@requires_git
def test_max_runtime_interrupts_and_requeues_active_sessions(make_settings, projects) -> None:
    settings = make_settings(max_runtime_minutes=1)
    clock = ManualClock()
    driver = FakeSessionDriver()
    orchestrator = Orchestrator(settings, driver=driver, patterns=default_patterns(), clock=clock)

    async def scenario():
        task = asyncio.create_task(orchestrator.run(ITEMS))
        await _until(lambda: bool(driver.started))
        clock.now += 61
        return await task

    summary = asyncio.run(scenario())

    assert summary.status == "budget_exhausted"
    assert summary.stop_reason == "max_runtime"
    assert summary.exit_code == 1
    assert summary.repos == {}
    assert summary.pending_repos == ["acme/api", "acme/web"]
    session_id = driver.started[0]
    assert driver.sessions[session_id].interrupts == 1
    assert session_id in driver.stopped
    checkpoint = CheckpointStore(ReviewStateStore(settings.review_dir)).load()
    assert checkpoint is not None
    assert checkpoint.pending_repos == ["acme/api", "acme/web"]


@requires_git
def test_silent_session_is_nudged_then_compacted(make_settings, projects) -> None:
    settings = make_settings(stall_threshold_seconds=0.05)
    driver = FakeSessionDriver()
    journal = RecordingJournal()
    orchestrator = Orchestrator(settings, driver=driver, journal=journal, patterns=default_patterns())

    async def scenario():
        task = asyncio.create_task(orchestrator.run(ITEMS[:1]))
        await _until(lambda: bool(driver.started))
        session = driver.sessions[driver.started[0]]
        await _until(lambda: COMPACT_COMMAND in session.inputs)
        driver.finish(driver.started[0])
        return await task

    summary = asyncio.run(scenario())

    assert summary.status == "completed"
    assert driver.sessions[driver.started[0]].inputs[:3] == ["", "", COMPACT_COMMAND]
    recoveries = journal.named("record_stall_recovery")
    assert [entry["action"] for entry in recoveries[:3]] == ["nudge", "nudge", "compact"]
    assert [entry["attempt"] for entry in recoveries[:3]] == [1, 2, 3]
    assert recoveries[0]["repo"] == "acme/api"


@requires_git
def test_repeated_session_errors_halt_the_run(make_settings, projects) -> None:
    settings = make_settings(parallel=1)
    driver = FakeSessionDriver()

    def on_start(session_id: str, session: FakeSession) -> None:
        session.alive = False

    driver.on_start = on_start
    governor = RateLimitGovernor(1, error_threshold=1)
    orchestrator = Orchestrator(settings, driver=driver, governor=governor, patterns=default_patterns())

    summary = asyncio.run(orchestrator.run(ITEMS))

    assert summary.status == "halted"
    assert summary.stop_reason == "circuit_open"
    assert summary.exit_code == 1
    assert summary.repos == {"acme/api": "failed"}
    assert summary.pending_repos == ["acme/web"]
    assert len(driver.started) == 1
    assert orchestrator.worktrees.get_worktree("acme/web") is None
    checkpoint = CheckpointStore(ReviewStateStore(settings.review_dir)).load()
    assert checkpoint is not None
    assert checkpoint.pending_repos == ["acme/web"]


def _backing_off_orchestrator(settings, driver: FakeSessionDriver) -> Orchestrator:
    governor = RateLimitGovernor(settings.parallel)
    governor.record_model_rate_limit()
    return Orchestrator(settings, driver=driver, governor=governor, patterns=default_patterns())


def _prefetched_web(orchestrator: Orchestrator) -> bool:
    return orchestrator.worktrees is not None and orchestrator.worktrees.get_worktree("acme/web") is not None


@requires_git
def test_prefetched_worktree_is_used_by_the_next_session(make_settings, projects) -> None:
    settings = make_settings(parallel=2, prefetch_window=2)
    driver = FakeSessionDriver()

    def on_start(session_id: str, session: FakeSession) -> None:
        if session.worktree_path.name == "acme_web":
            driver.finish(session_id)

    driver.on_start = on_start
    orchestrator = _backing_off_orchestrator(settings, driver)

    async def scenario():
        task = asyncio.create_task(orchestrator.run(ITEMS))
        await _until(lambda: _prefetched_web(orchestrator))
        started_before = list(driver.started)
        warm_path = orchestrator.worktrees.get_worktree("acme/web").path
        driver.finish(started_before[0])
        return await task, started_before, warm_path

    summary, started_before, warm_path = asyncio.run(scenario())

    assert len(started_before) == 1
    assert summary.status == "completed"
    assert summary.repos == {"acme/api": "completed", "acme/web": "completed"}
    assert driver.sessions[driver.started[1]].worktree_path == warm_path


@requires_git
def test_interrupt_removes_unused_prefetched_worktrees(make_settings, projects) -> None:
    settings = make_settings(parallel=2, prefetch_window=2)
    driver = FakeSessionDriver()
    orchestrator = _backing_off_orchestrator(settings, driver)

    async def scenario():
        task = asyncio.create_task(orchestrator.run(ITEMS))
        await _until(lambda: _prefetched_web(orchestrator))
        warm_path = orchestrator.worktrees.get_worktree("acme/web").path
        orchestrator.request_stop()
        return await task, warm_path

    summary, warm_path = asyncio.run(scenario())

    assert summary.status == "interrupted"
    assert summary.pending_repos == ["acme/api", "acme/web"]
    assert len(driver.started) == 1
    assert orchestrator.worktrees.get_worktree("acme/web") is None
    assert not warm_path.exists()
    assert orchestrator.worktrees.get_worktree("acme/api") is not None
