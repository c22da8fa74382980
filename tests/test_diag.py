from __future__ import annotations

import argparse
import importlib.util
import json
from datetime import datetime, timezone
from pathlib import Path

import pytest

from review_fleet.questions import Question, QuestionQueue
from review_fleet.state import Checkpoint, CheckpointStore, ReviewStateStore


def _load_diag():
    module_path = Path(__file__).resolve().parents[1] / "scripts" / "review_fleet_diag.py"
    spec = importlib.util.spec_from_file_location("review_fleet_diag_test_module", module_path)
    assert spec and spec.loader
    diag = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(diag)
    return diag


@pytest.fixture
def diag(monkeypatch, make_settings):
    settings = make_settings()
    module = _load_diag()
    monkeypatch.setattr(module, "load_settings", lambda: settings)
    return module, settings


def test_events_without_journal_exits(diag, capsys) -> None:
    module, _ = diag

    with pytest.raises(SystemExit) as excinfo:
        module.main(["events"])

    assert excinfo.value.code == 1
    assert "Journal unavailable" in capsys.readouterr().out


def test_events_lists_journal_entries(diag, monkeypatch, capsys) -> None:
    module, _ = diag
    stamp = datetime(2025, 6, 1, 8, 0, tzinfo=timezone.utc)

    class StubJournal:
        def __init__(self) -> None:
            self.query = None

        def events(self, *, session_id=None, event_type=None, limit=None):
            self.query = {"session_id": session_id, "event_type": event_type, "limit": limit}
            return [
                argparse.Namespace(
                    id="s-1:abc",
                    session_id="s-1",
                    event_type="stall_recovery",
                    metadata={"repo": "acme/api"},
                    timestamp=stamp,
                    document='{"action": "nudge", "attempt": 1}',
                )
            ]

    stub = StubJournal()
    monkeypatch.setattr(module, "load_journal", lambda _settings: stub)

    module.main(["events", "--event-type", "stall_recovery"])

    payload = json.loads(capsys.readouterr().out)
    assert stub.query == {"session_id": None, "event_type": "stall_recovery", "limit": None}
    assert payload == [
        {
            "event_id": "s-1:abc",
            "session_id": "s-1",
            "event_type": "stall_recovery",
            "repo": "acme/api",
            "timestamp": stamp.isoformat(),
            "document": '{"action": "nudge", "attempt": 1}',
        }
    ]


def test_checkpoint_reports_config_match(diag, capsys) -> None:
    module, settings = diag
    store = ReviewStateStore(settings.review_dir)
    CheckpointStore(store).save(
        Checkpoint(
            run_id="20250601-080000-abcdef",
            mode="plan",
            config_hash="0000000000000000",
            pending_repos=["acme/web"],
        )
    )

    module.main(["checkpoint"])

    payload = json.loads(capsys.readouterr().out)
    assert payload["run_id"] == "20250601-080000-abcdef"
    assert payload["matches_config"] is False


def test_state_for_single_repo(diag, capsys) -> None:
    module, settings = diag
    store = ReviewStateStore(settings.review_dir)
    store.record_repo_outcome("acme/api", "completed", 12.5, items_processed=2)

    module.main(["state", "--repo", "acme/api"])

    payload = json.loads(capsys.readouterr().out)
    assert payload["outcome"] == "completed"
    assert payload["items_processed"] == 2


def test_corrupt_state_exits(diag, capsys) -> None:
    module, settings = diag
    settings.review_dir.mkdir(parents=True)
    (settings.review_dir / "review-state.json").write_text("{oops", encoding="utf-8")

    with pytest.raises(SystemExit) as excinfo:
        module.main(["state"])

    assert excinfo.value.code == 1
    assert "State unreadable" in capsys.readouterr().out


def test_questions_text_listing(diag, capsys) -> None:
    module, settings = diag
    queue = QuestionQueue(settings.review_dir)
    question = queue.enqueue(Question(session_id="s-1", repo="acme/api", priority="high"))

    module.main(["questions", "--status", "pending"])

    out = capsys.readouterr().out
    assert out.startswith(f"{question.id} [pending/high] acme/api")


def test_locks_reports_all_locks(diag, capsys) -> None:
    module, _ = diag

    module.main(["locks"])

    payload = json.loads(capsys.readouterr().out)
    assert set(payload) == {"run", "state", "questions"}
    assert all(entry["held"] is False for entry in payload.values())
