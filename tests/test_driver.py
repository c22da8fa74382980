from __future__ import annotations

import asyncio
import shutil
from pathlib import Path

import pytest

from review_fleet.session import driver as driver_module
from review_fleet.session.driver import (
    DriverUnavailableError,
    FakeSessionDriver,
    SessionDriverError,
    SessionNotFoundError,
    SubprocessDriver,
    TmuxDriver,
    create_driver,
)
from review_fleet.session.monitor import Observation, SessionState, detect_raw_state
from review_fleet.session.utils import sanitize_environment

ASK_LINE = (
    '{"type":"assistant","message":{"content":[{"type":"tool_use","id":"toolu_1",'
    '"name":"AskUserQuestion","input":{"questions":[{"question":"Proceed?"}]}}]}}'
)
RESULT_LINE = '{"type":"result","subtype":"success","is_error":false,"duration_ms":10}'


def _script(tmp_path: Path, body: str) -> Path:
    script = tmp_path / "agent"
    script.write_text("#!/bin/sh\n" + body, encoding="utf-8")
    script.chmod(0o755)
    return script


async def _wait_for(predicate, driver, session_id, attempts: int = 200):
    state = await driver.get_raw_state(session_id)
    for _ in range(attempts):
        if predicate(state):
            return state
        await asyncio.sleep(0.02)
        state = await driver.get_raw_state(session_id)
    return state


def test_subprocess_driver_runs_agent_and_accepts_input(tmp_path: Path) -> None:
    script = _script(tmp_path, 'echo "prompt: $1"\nread line\necho "got: $line"\n')
    worktree = tmp_path / "acme-api"
    worktree.mkdir()

    async def scenario():
        driver = SubprocessDriver([str(script)], log_dir=tmp_path / "logs")
        session_id = await driver.start(worktree, "Review acme/api")
        await driver.send_input(session_id, "yes")
        state = await _wait_for(lambda raw: not raw.alive, driver, session_id)
        await driver.stop(session_id)
        return session_id, state

    session_id, state = asyncio.run(scenario())

    assert session_id.startswith("local-acme-api-")
    assert state.alive is False
    assert state.driver_state == "exited"
    assert state.exit_code == 0
    assert "prompt: Review acme/api" in state.output
    assert "got: yes" in state.output


def test_subprocess_driver_reports_pending_question_as_waiting(tmp_path: Path) -> None:
    script = _script(tmp_path, f"echo '{ASK_LINE}'\nsleep 5\n")

    async def scenario():
        driver = SubprocessDriver([str(script)], log_dir=tmp_path / "logs")
        session_id = await driver.start(tmp_path, "prompt")
        state = await _wait_for(lambda raw: raw.output_size > 0, driver, session_id)
        await driver.stop(session_id)
        gone = await driver.get_raw_state(session_id)
        return state, gone

    state, gone = asyncio.run(scenario())

    assert state.alive is True
    assert state.driver_state == "waiting"
    assert gone.alive is False
    assert gone.driver_state == "dead"


def test_subprocess_driver_unknown_session(tmp_path: Path) -> None:
    driver = SubprocessDriver(["true"], log_dir=tmp_path)

    with pytest.raises(SessionNotFoundError):
        asyncio.run(driver.send_input("local-missing", "hi"))


def test_subprocess_driver_launch_failure(tmp_path: Path) -> None:
    driver = SubprocessDriver([str(tmp_path / "missing-agent")], log_dir=tmp_path / "logs")

    with pytest.raises(SessionDriverError, match="Failed to launch agent"):
        asyncio.run(driver.start(tmp_path, "prompt"))


def test_tmux_driver_requires_executable(tmp_path: Path) -> None:
    with pytest.raises(DriverUnavailableError):
        TmuxDriver(["claude"], log_dir=tmp_path, executable=tmp_path / "missing-tmux")


def test_tmux_driver_reads_log_after_session_is_gone(tmp_path: Path) -> None:
    tmux = tmp_path / "tmux"
    tmux.write_text("#!/bin/sh\nexit 1\n", encoding="utf-8")
    tmux.chmod(0o755)
    driver = TmuxDriver(["claude"], log_dir=tmp_path / "logs", executable=tmux)
    (tmp_path / "logs").mkdir()
    driver.log_path("rf-acme-api-abc123").write_text(RESULT_LINE + "\n", encoding="utf-8")

    finished = asyncio.run(driver.get_raw_state("rf-acme-api-abc123"))
    unknown = asyncio.run(driver.get_raw_state("rf-never-started"))
    foreign = asyncio.run(driver.get_raw_state("../../etc/passwd"))

    assert finished.alive is False
    assert finished.driver_state == "exited"
    assert RESULT_LINE in finished.output
    assert detect_raw_state(Observation(output=finished.output, alive=False)) is SessionState.COMPLETE
    assert unknown.driver_state == "dead"
    assert foreign.driver_state == "dead"


@pytest.mark.skipif(shutil.which("tmux") is None, reason="tmux executable not available")
def test_tmux_driver_captures_output_of_fast_agent(tmp_path: Path) -> None:
    script = _script(tmp_path, f"echo '{RESULT_LINE}'\n")
    worktree = tmp_path / "acme-api"
    worktree.mkdir()

    async def scenario():
        driver = TmuxDriver([str(script)], log_dir=tmp_path / "logs", session_prefix="rftest-")
        session_id = await driver.start(worktree, "Review acme/api")
        try:
            return await _wait_for(lambda raw: not raw.alive, driver, session_id)
        finally:
            await driver.stop(session_id)

    state = asyncio.run(scenario())

    assert state.alive is False
    assert RESULT_LINE in state.output
    assert detect_raw_state(Observation(output=state.output, alive=False)) is SessionState.COMPLETE


def test_create_driver_falls_back_without_tmux(monkeypatch, tmp_path: Path) -> None:
    monkeypatch.setattr(driver_module.shutil, "which", lambda _name: None)

    driver = create_driver("auto", ["claude"], log_dir=tmp_path)

    assert isinstance(driver, SubprocessDriver)
    assert driver.capabilities().to_dict()["name"] == "local"
    with pytest.raises(DriverUnavailableError):
        create_driver("tmux", ["claude"], log_dir=tmp_path)
    with pytest.raises(DriverUnavailableError, match="Unknown driver"):
        create_driver("screen", ["claude"], log_dir=tmp_path)


def test_fake_driver_records_lifecycle(tmp_path: Path) -> None:
    async def scenario():
        driver = FakeSessionDriver(fail_on=lambda path: path.name == "broken")
        session_id = await driver.start(tmp_path / "ok", "prompt")
        driver.emit(session_id, ASK_LINE + "\n")
        waiting = await driver.get_raw_state(session_id)
        await driver.send_input(session_id, "yes")
        driver.finish(session_id)
        finished = await driver.get_raw_state(session_id)
        await driver.stop(session_id)
        stopped = await driver.get_raw_state(session_id)
        with pytest.raises(SessionDriverError):
            await driver.start(tmp_path / "broken", "prompt")
        return driver, session_id, waiting, finished, stopped

    driver, session_id, waiting, finished, stopped = asyncio.run(scenario())

    assert waiting.driver_state == "waiting"
    assert '"type":"result"' in finished.output
    assert stopped.alive is False
    assert stopped.driver_state == "exited"
    assert driver.sessions[session_id].inputs == ["yes"]
    assert driver.stopped == [session_id]


def test_sanitize_environment_drops_python_paths(monkeypatch) -> None:
    monkeypatch.setenv("PYTHONPATH", "/tmp/elsewhere")
    monkeypatch.setenv("REVIEW_FLEET_MODE", "plan")

    env = sanitize_environment({"EXTRA": "1"})

    assert "PYTHONPATH" not in env
    assert env["REVIEW_FLEET_MODE"] == "plan"
    assert env["EXTRA"] == "1"
