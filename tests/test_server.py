from __future__ import annotations

import pytest

from review_fleet import server as server_module
from review_fleet.questions import QuestionQueue
from review_fleet.storage import JournalUnavailableError


class StubJournal:
    def __init__(self, path, **_) -> None:
        self.path = path

    def ping(self) -> bool:
        return True


class BrokenJournal(StubJournal):
    def ping(self) -> bool:
        raise JournalUnavailableError("chromadb package is not installed")


def test_open_journal_without_path(make_settings) -> None:
    journal, metadata = server_module.open_journal(make_settings())

    assert journal is None
    assert metadata == {"available": False, "path": None, "error": None}


def test_open_journal_available(monkeypatch, make_settings, tmp_path) -> None:
    monkeypatch.setattr(server_module, "EventJournal", StubJournal)

    journal, metadata = server_module.open_journal(make_settings(journal_path=tmp_path / "journal"))

    assert isinstance(journal, StubJournal)
    assert metadata["available"] is True


def test_open_journal_unavailable_is_reported(monkeypatch, make_settings, tmp_path) -> None:
    monkeypatch.setattr(server_module, "EventJournal", BrokenJournal)

    journal, metadata = server_module.open_journal(make_settings(journal_path=tmp_path / "journal"))

    assert journal is None
    assert metadata["available"] is False
    assert "chromadb" in metadata["error"]


def test_create_server_wires_queue_and_tools(make_settings) -> None:
    settings = make_settings()
    queue = QuestionQueue(settings.review_dir)

    server = server_module.create_server(settings, queue=queue)

    assert getattr(server, "question_queue") is queue
    assert getattr(server, "journal") is None
    handles = getattr(server, "tool_handles")
    assert handles.list_questions is not None
    assert handles.review_status is not None


@pytest.mark.parametrize(("level", "expected"), [("DEBUG", 10), ("WARNING", 30)])
def test_configure_logging_accepts_levels(monkeypatch, level, expected) -> None:
    calls = {}
    monkeypatch.setattr(server_module.logging, "basicConfig", lambda **kwargs: calls.update(kwargs))

    server_module.configure_logging(level)

    assert calls["level"] == expected
    assert calls["format"] == server_module.LOG_FORMAT
