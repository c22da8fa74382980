from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from review_fleet.state import (
    Checkpoint,
    CheckpointError,
    CheckpointStore,
    ReviewStateStore,
    StateStoreError,
)

NOW = datetime(2025, 6, 1, tzinfo=timezone.utc)


@pytest.fixture
def store(tmp_path: Path) -> ReviewStateStore:
    return ReviewStateStore(tmp_path / "review", clock=lambda: NOW)


def test_init_state_is_idempotent(store: ReviewStateStore) -> None:
    store.init_state()
    store.record_item_outcome("acme/api", "issue", 3, "reviewed")

    state = store.init_state()

    assert state["version"] == 2
    assert "acme/api#issue-3" in state["items"]
    assert not (store.review_dir / "state.lock.d").exists()


def test_record_outcomes(store: ReviewStateStore) -> None:
    store.record_item_outcome("acme/api", "pr", 9, "failed", "tests red", run_id="run-1")
    store.record_repo_outcome("acme/api", "completed", 12.34567, items_processed=2, questions=1, run_id="run-1")
    store.record_review_run("run-1", {"status": "completed", "exit_code": 0})

    state = store.load()

    assert state["items"]["acme/api#pr-9"] == {
        "type": "pr",
        "outcome": "failed",
        "note": "tests red",
        "recorded_at": NOW.isoformat(),
        "run_id": "run-1",
    }
    repo = state["repos"]["acme/api"]
    assert repo["duration_seconds"] == 12.346
    assert repo["items_processed"] == 2
    assert repo["last_review"] == NOW.isoformat()
    assert state["runs"]["run-1"]["status"] == "completed"


def test_is_recently_reviewed(store: ReviewStateStore) -> None:
    store.record_repo_outcome("acme/api", "completed", 1.0)

    assert store.is_recently_reviewed("acme/api", 7, now=NOW + timedelta(days=3))
    assert not store.is_recently_reviewed("acme/api", 7, now=NOW + timedelta(days=8))
    assert not store.is_recently_reviewed("acme/web", 7)


def test_corrupt_state_raises(store: ReviewStateStore) -> None:
    store.review_dir.mkdir(parents=True)
    store.state_file.write_text("{broken", encoding="utf-8")

    with pytest.raises(StateStoreError):
        store.load()


def test_update_holds_the_state_lock(store: ReviewStateStore) -> None:
    seen: list[bool] = []

    store.update(lambda state: seen.append((store.review_dir / "state.lock.d").is_dir()))

    assert seen == [True]
    assert not (store.review_dir / "state.lock.d").exists()


def _checkpoint(config_hash: str = "abc") -> Checkpoint:
    return Checkpoint(
        run_id="20250601-000000-abcdef",
        mode="plan",
        config_hash=config_hash,
        completed_repos=["acme/api"],
        pending_repos=["acme/web", "acme/cli"],
    )


def test_checkpoint_save_and_load(store: ReviewStateStore) -> None:
    checkpoints = CheckpointStore(store)
    checkpoints.save(_checkpoint())

    payload = json.loads(checkpoints.path.read_text(encoding="utf-8"))
    loaded = checkpoints.load()

    assert payload["repos_total"] == 3
    assert payload["repos_completed"] == 1
    assert payload["repos_pending"] == 2
    assert loaded is not None and loaded.pending_repos == ["acme/web", "acme/cli"]


def test_resume_with_matching_hash(store: ReviewStateStore) -> None:
    checkpoints = CheckpointStore(store)
    checkpoints.save(_checkpoint("abc"))

    resumed = checkpoints.resume_or_reset("abc")

    assert resumed is not None
    assert resumed.run_id == "20250601-000000-abcdef"
    assert checkpoints.path.exists()


def test_config_change_archives_checkpoint(store: ReviewStateStore) -> None:
    checkpoints = CheckpointStore(store)
    checkpoints.save(_checkpoint("abc"))

    assert checkpoints.resume_or_reset("def") is None
    assert not checkpoints.path.exists()
    assert (store.review_dir / "review-checkpoint.20250601-000000-abcdef.stale.json").exists()


def test_corrupt_checkpoint_is_archived(store: ReviewStateStore) -> None:
    checkpoints = CheckpointStore(store)
    store.review_dir.mkdir(parents=True)
    checkpoints.path.write_text("{nope", encoding="utf-8")

    with pytest.raises(CheckpointError):
        checkpoints.load()
    assert checkpoints.resume_or_reset("abc") is None
    archived = list(store.review_dir.glob("review-checkpoint.corrupt-*.stale.json"))
    assert len(archived) == 1


def test_checkpoint_from_dict_rejects_bad_shapes() -> None:
    with pytest.raises(CheckpointError):
        Checkpoint.from_dict([])
    with pytest.raises(CheckpointError):
        Checkpoint.from_dict({"mode": "plan"})
    with pytest.raises(CheckpointError):
        Checkpoint.from_dict({"run_id": "x", "pending_repos": "acme/api"})


def test_clear_removes_checkpoint(store: ReviewStateStore) -> None:
    checkpoints = CheckpointStore(store)
    checkpoints.save(_checkpoint())
    checkpoints.clear()

    assert checkpoints.load() is None
