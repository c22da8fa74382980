"""Session drivers: one long-running agent process per worktree."""

from __future__ import annotations

import asyncio
import logging
import re
import shutil
import signal
import tempfile
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import IO, Callable, Protocol, Sequence

from .stream import find_ask_user_question, parse_events
from .utils import sanitize_environment

logger = logging.getLogger(__name__)

# Bytes of trailing output handed to detection on each poll.
OUTPUT_TAIL_BYTES = 64 * 1024

# Runs inside the tmux pane: $1 is the log file, the rest is the agent command.
PANE_WRAPPER = 'log="$1"; shift; exec "$@" >>"$log" 2>&1'


class SessionDriverError(RuntimeError):
    """Base class for session driver errors."""


class SessionNotFoundError(SessionDriverError):
    """Raised when a session id is unknown or already gone."""


class DriverUnavailableError(SessionDriverError):
    """Raised when no usable session driver can be constructed."""


@dataclass(slots=True)
class RawState:
    """Unclassified view of a session as reported by its driver."""

    alive: bool
    output: str = ""
    output_size: int = 0
    driver_state: str = "running"
    exit_code: int | None = None


@dataclass(slots=True)
class DriverCapabilities:
    name: str
    parallel_sessions: bool
    supports_input: bool = True

    def to_dict(self) -> dict[str, object]:
        return {
            "name": self.name,
            "parallel_sessions": self.parallel_sessions,
            "supports_input": self.supports_input,
        }


class SessionDriver(Protocol):
    """Capability interface the orchestrator depends on."""

    name: str

    async def start(self, worktree_path: Path, prompt: str) -> str:
        ...

    async def send_input(self, session_id: str, text: str) -> None:
        ...

    async def get_raw_state(self, session_id: str) -> RawState:
        ...

    async def interrupt(self, session_id: str) -> None:
        ...

    async def stop(self, session_id: str) -> None:
        ...

    async def is_alive(self, session_id: str) -> bool:
        ...

    def capabilities(self) -> DriverCapabilities:
        ...


def _session_slug(worktree_path: Path) -> str:
    slug = re.sub(r"[^A-Za-z0-9_-]+", "-", Path(worktree_path).name).strip("-")
    return (slug or "session")[:40]


def _read_tail(path: Path) -> tuple[str, int]:
    try:
        size = path.stat().st_size
    except FileNotFoundError:
        return "", 0
    with path.open("rb") as handle:
        if size > OUTPUT_TAIL_BYTES:
            handle.seek(size - OUTPUT_TAIL_BYTES)
        data = handle.read()
    return data.decode("utf-8", errors="replace"), size


def _live_state(output: str) -> str:
    """A live agent blocked on an AskUserQuestion call is waiting, not running."""

    if find_ask_user_question(parse_events(output)) is not None:
        return "waiting"
    return "running"


class TmuxDriver:
    """Run each agent inside a detached tmux session, logging its pane to a file."""

    name = "tmux"

    def __init__(
        self,
        agent_command: Sequence[str],
        *,
        log_dir: Path,
        session_prefix: str = "rf-",
        executable: Path | None = None,
    ) -> None:
        if not agent_command:
            raise ValueError("agent_command must not be empty")
        self._agent_command = list(agent_command)
        self._log_dir = Path(log_dir)
        self._prefix = session_prefix
        self._executable = self._resolve_executable(executable)

    @staticmethod
    def _resolve_executable(explicit: Path | None) -> Path:
        if explicit is not None:
            candidate = Path(explicit)
            if candidate.exists() and candidate.is_file():
                return candidate
            raise DriverUnavailableError(f"tmux executable not found at {candidate}")
        binary = shutil.which("tmux")
        if binary is None:
            raise DriverUnavailableError("tmux executable not found on PATH")
        return Path(binary)

    async def _tmux(self, *args: str) -> tuple[int, str, str]:
        process = await asyncio.create_subprocess_exec(
            str(self._executable),
            *args,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=sanitize_environment(),
        )
        stdout, stderr = await process.communicate()
        return (
            process.returncode,
            stdout.decode("utf-8", errors="replace"),
            stderr.decode("utf-8", errors="replace"),
        )

    def log_path(self, session_id: str) -> Path:
        return self._log_dir / f"{session_id}.log"

    def _owns(self, session_id: str) -> bool:
        return session_id.startswith(self._prefix) and re.fullmatch(r"[A-Za-z0-9_-]+", session_id) is not None

    async def _exists(self, session_id: str) -> bool:
        if not self._owns(session_id):
            return False
        code, _, _ = await self._tmux("has-session", "-t", f"={session_id}")
        return code == 0

    async def start(self, worktree_path: Path, prompt: str) -> str:
        session_id = f"{self._prefix}{_session_slug(worktree_path)}-{uuid.uuid4().hex[:6]}"
        self._log_dir.mkdir(parents=True, exist_ok=True)
        log_path = self.log_path(session_id)
        log_path.touch()

        # The pane command writes the log itself; the log outlives the session.
        code, _, stderr = await self._tmux(
            "new-session",
            "-d",
            "-s",
            session_id,
            "-x",
            "250",
            "-y",
            "50",
            "-c",
            str(worktree_path),
            "sh",
            "-c",
            PANE_WRAPPER,
            "sh",
            str(log_path),
            *self._agent_command,
            prompt,
        )
        if code != 0:
            raise SessionDriverError(f"tmux new-session failed: {stderr.strip()}")
        await self._tmux("set-option", "-t", session_id, "remain-on-exit", "on")
        logger.info(
            "Started tmux session",
            extra={"session_id": session_id, "worktree": str(worktree_path)},
        )
        return session_id

    async def send_input(self, session_id: str, text: str) -> None:
        if not await self._exists(session_id):
            raise SessionNotFoundError(f"Session {session_id} not found")
        if text:
            await self._tmux("send-keys", "-t", session_id, "-l", text)
        await self._tmux("send-keys", "-t", session_id, "Enter")

    async def _pane_status(self, session_id: str) -> tuple[bool, int | None]:
        code, stdout, _ = await self._tmux(
            "display-message", "-p", "-t", session_id, "#{pane_dead} #{pane_dead_status}"
        )
        if code != 0:
            return True, None
        parts = stdout.split()
        dead = bool(parts) and parts[0] == "1"
        exit_code = int(parts[1]) if dead and len(parts) > 1 and parts[1].lstrip("-").isdigit() else None
        return dead, exit_code

    async def get_raw_state(self, session_id: str) -> RawState:
        if not self._owns(session_id):
            return RawState(alive=False, driver_state="dead")
        log_path = self.log_path(session_id)
        if not await self._exists(session_id):
            if not log_path.exists():
                return RawState(alive=False, driver_state="dead")
            output, size = _read_tail(log_path)
            return RawState(alive=False, output=output, output_size=size, driver_state="exited")
        output, size = _read_tail(log_path)
        dead, exit_code = await self._pane_status(session_id)
        return RawState(
            alive=not dead,
            output=output,
            output_size=size,
            driver_state="exited" if dead else _live_state(output),
            exit_code=exit_code,
        )

    async def interrupt(self, session_id: str) -> None:
        if not await self._exists(session_id):
            raise SessionNotFoundError(f"Session {session_id} not found")
        await self._tmux("send-keys", "-t", session_id, "C-c")

    async def stop(self, session_id: str) -> None:
        if await self._exists(session_id):
            await self._tmux("kill-session", "-t", f"={session_id}")
            logger.info("Stopped tmux session", extra={"session_id": session_id})

    async def is_alive(self, session_id: str) -> bool:
        if not await self._exists(session_id):
            return False
        dead, _ = await self._pane_status(session_id)
        return not dead

    def capabilities(self) -> DriverCapabilities:
        return DriverCapabilities(name=self.name, parallel_sessions=True)


@dataclass(slots=True)
class _LocalProcess:
    process: asyncio.subprocess.Process
    log_path: Path
    log_handle: IO[bytes]


class SubprocessDriver:
    """Degraded driver used when tmux is unavailable: plain child processes."""

    name = "local"

    def __init__(self, agent_command: Sequence[str], *, log_dir: Path | None = None) -> None:
        if not agent_command:
            raise ValueError("agent_command must not be empty")
        self._agent_command = list(agent_command)
        self._log_dir = Path(log_dir) if log_dir else Path(tempfile.mkdtemp(prefix="review-fleet-"))
        self._processes: dict[str, _LocalProcess] = {}

    async def start(self, worktree_path: Path, prompt: str) -> str:
        session_id = f"local-{_session_slug(worktree_path)}-{uuid.uuid4().hex[:6]}"
        self._log_dir.mkdir(parents=True, exist_ok=True)
        log_path = self._log_dir / f"{session_id}.log"
        handle = log_path.open("ab")
        try:
            process = await asyncio.create_subprocess_exec(
                *self._agent_command,
                prompt,
                cwd=str(worktree_path),
                stdin=asyncio.subprocess.PIPE,
                stdout=handle,
                stderr=asyncio.subprocess.STDOUT,
                env=sanitize_environment(),
            )
        except OSError as exc:
            handle.close()
            raise SessionDriverError(f"Failed to launch agent: {exc}") from exc
        self._processes[session_id] = _LocalProcess(process=process, log_path=log_path, log_handle=handle)
        logger.info("Started local session", extra={"session_id": session_id, "pid": process.pid})
        return session_id

    def _get(self, session_id: str) -> _LocalProcess:
        try:
            return self._processes[session_id]
        except KeyError as exc:
            raise SessionNotFoundError(f"Session {session_id} not found") from exc

    async def send_input(self, session_id: str, text: str) -> None:
        entry = self._get(session_id)
        stdin = entry.process.stdin
        if entry.process.returncode is not None or stdin is None:
            raise SessionNotFoundError(f"Session {session_id} has exited")
        stdin.write((text + "\n").encode("utf-8"))
        try:
            await stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as exc:
            raise SessionNotFoundError(f"Session {session_id} closed its input") from exc

    async def get_raw_state(self, session_id: str) -> RawState:
        entry = self._processes.get(session_id)
        if entry is None:
            return RawState(alive=False, driver_state="dead")
        entry.log_handle.flush()
        output, size = _read_tail(entry.log_path)
        returncode = entry.process.returncode
        return RawState(
            alive=returncode is None,
            output=output,
            output_size=size,
            driver_state=_live_state(output) if returncode is None else "exited",
            exit_code=returncode,
        )

    async def interrupt(self, session_id: str) -> None:
        entry = self._get(session_id)
        if entry.process.returncode is not None:
            raise SessionNotFoundError(f"Session {session_id} has exited")
        entry.process.send_signal(signal.SIGINT)

    async def stop(self, session_id: str) -> None:
        entry = self._processes.pop(session_id, None)
        if entry is None:
            return
        if entry.process.returncode is None:
            entry.process.terminate()
            try:
                await asyncio.wait_for(entry.process.wait(), timeout=5.0)
            except asyncio.TimeoutError:
                entry.process.kill()
                await entry.process.wait()
        entry.log_handle.close()
        logger.info("Stopped local session", extra={"session_id": session_id})

    async def is_alive(self, session_id: str) -> bool:
        entry = self._processes.get(session_id)
        return entry is not None and entry.process.returncode is None

    def capabilities(self) -> DriverCapabilities:
        return DriverCapabilities(name=self.name, parallel_sessions=True)


@dataclass(slots=True)
class FakeSession:
    worktree_path: Path
    prompt: str
    output: str = ""
    alive: bool = True
    driver_state: str = "running"
    inputs: list[str] = field(default_factory=list)
    interrupts: int = 0


class FakeSessionDriver:
    """Test double whose sessions produce whatever output a test feeds them."""

    name = "fake"

    def __init__(self, *, fail_on: Callable[[Path], bool] | None = None) -> None:
        self.sessions: dict[str, FakeSession] = {}
        self.started: list[str] = []
        self.stopped: list[str] = []
        self._fail_on = fail_on
        self._counter = 0
        self.on_start: Callable[[str, FakeSession], None] | None = None

    async def start(self, worktree_path: Path, prompt: str) -> str:
        if self._fail_on is not None and self._fail_on(Path(worktree_path)):
            raise SessionDriverError(f"Refusing to start session in {worktree_path}")
        self._counter += 1
        session_id = f"fake-{self._counter}"
        session = FakeSession(worktree_path=Path(worktree_path), prompt=prompt)
        self.sessions[session_id] = session
        self.started.append(session_id)
        if self.on_start is not None:
            self.on_start(session_id, session)
        return session_id

    def emit(self, session_id: str, text: str) -> None:
        self.sessions[session_id].output += text

    def finish(self, session_id: str, *, is_error: bool = False) -> None:
        subtype = "error" if is_error else "success"
        self.emit(
            session_id,
            f'{{"type":"result","subtype":"{subtype}","is_error":{str(is_error).lower()},'
            f'"duration_ms":1200,"session_id":"{session_id}","total_cost_usd":0.01}}\n',
        )

    def _get(self, session_id: str) -> FakeSession:
        session = self.sessions.get(session_id)
        if session is None or not session.alive:
            raise SessionNotFoundError(f"Session {session_id} not found")
        return session

    async def send_input(self, session_id: str, text: str) -> None:
        self._get(session_id).inputs.append(text)

    async def get_raw_state(self, session_id: str) -> RawState:
        session = self.sessions.get(session_id)
        if session is None:
            return RawState(alive=False, driver_state="dead")
        return RawState(
            alive=session.alive,
            output=session.output,
            output_size=len(session.output),
            driver_state=self._state_of(session),
        )

    @staticmethod
    def _state_of(session: FakeSession) -> str:
        if not session.alive:
            return "exited"
        if session.driver_state == "running":
            return _live_state(session.output)
        return session.driver_state

    async def interrupt(self, session_id: str) -> None:
        self._get(session_id).interrupts += 1

    async def stop(self, session_id: str) -> None:
        session = self.sessions.get(session_id)
        if session is not None:
            session.alive = False
            self.stopped.append(session_id)

    async def is_alive(self, session_id: str) -> bool:
        session = self.sessions.get(session_id)
        return bool(session and session.alive)

    def capabilities(self) -> DriverCapabilities:
        return DriverCapabilities(name=self.name, parallel_sessions=True)


def create_driver(
    preference: str,
    agent_command: Sequence[str],
    *,
    log_dir: Path,
    session_prefix: str = "rf-",
) -> SessionDriver:
    """Pick a driver; ``auto`` prefers tmux and degrades to plain subprocesses."""

    if preference not in {"auto", "tmux", "subprocess"}:
        raise DriverUnavailableError(f"Unknown driver preference: {preference!r}")
    if preference in {"auto", "tmux"}:
        try:
            return TmuxDriver(agent_command, log_dir=log_dir, session_prefix=session_prefix)
        except DriverUnavailableError:
            if preference == "tmux":
                raise
            logger.warning("tmux unavailable; falling back to local subprocess driver")
    return SubprocessDriver(agent_command, log_dir=log_dir)


__all__ = [
    "DriverCapabilities",
    "DriverUnavailableError",
    "FakeSession",
    "FakeSessionDriver",
    "RawState",
    "SessionDriver",
    "SessionDriverError",
    "SessionNotFoundError",
    "SubprocessDriver",
    "TmuxDriver",
    "create_driver",
]
