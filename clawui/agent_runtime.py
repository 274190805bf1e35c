"""
Agent Runtime
=============

Abstraction over an external coding-agent CLI: start a session, resume a
session, find the session file a run produced, and check whether a process
is still alive.

Running a session never raises for the ordinary ways a run can go wrong:
``run_session``/``resume_session`` return either ``SessionOk`` or
``SessionErr(kind=timeout|hung|error)``. Only a missing CLI binary raises
(``AgentBinaryNotFound``), because that is fatal to the operation rather
than a property of the run.

Concrete runtimes live in ``agent_claude``, ``agent_openclaw`` and
``agent_pimono``; ``runtime_registry`` wires them together.
"""
from __future__ import annotations

import asyncio
import logging
import os
import signal
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Iterable, Iterator, Union

from clawui.session_health import SessionHealth, TranscriptEvent, analyze_session_health

_logger = logging.getLogger(__name__)

PidCallback = Callable[[int], None]

# Epoch seconds of the latest out-of-band sign of life, or None
ActivitySource = Callable[[], float | None]

# Variables that make a nested agent CLI think it runs inside another session
STRIPPED_ENV_VARS = ("CLAUDECODE", "OPENCLAW_SESSION")

MAX_CAPTURE_BYTES = 10 * 1024 * 1024
_KILL_GRACE_SECONDS = 5.0


class AgentRuntimeError(Exception):
    """Base exception for agent runtime failures."""
    pass


class AgentBinaryNotFound(AgentRuntimeError):
    """Raised when the agent CLI binary cannot be executed."""

    def __init__(self, agent_type: str, binary: str, message: str | None = None):
        self.agent_type = agent_type
        self.binary = binary

        if message is None:
            message = f"{agent_type} CLI binary not found: {binary}"

        super().__init__(message)


class SessionNotFound(AgentRuntimeError):
    """Raised when resuming a session whose transcript cannot be located."""

    def __init__(self, agent_type: str, session_id: str):
        self.agent_type = agent_type
        self.session_id = session_id
        super().__init__(f"{agent_type} session not found: {session_id}")


@dataclass(frozen=True)
class SessionOk:
    """The agent process exited and produced output."""

    output: str
    session_id: str | None = None
    exit_code: int = 0

    @property
    def ok(self) -> bool:
        return True


@dataclass(frozen=True)
class SessionErr:
    """
    The agent process did not complete normally.

    ``kind`` is ``timeout`` (wall-clock budget exceeded), ``hung`` (no output
    for the idle budget) or ``error`` (non-zero exit without output).
    """

    kind: str
    message: str
    output: str = ""
    session_id: str | None = None
    exit_code: int | None = None

    @property
    def ok(self) -> bool:
        return False


SessionResult = Union[SessionOk, SessionErr]


def clean_env(extra: dict[str, str] | None = None) -> dict[str, str]:
    """Copy of the environment without nested-session markers."""
    env = {k: v for k, v in os.environ.items() if k not in STRIPPED_ENV_VARS}
    if extra:
        env.update(extra)
    return env


def is_process_alive(pid: int | None) -> bool:
    """Signal 0 check: True if a process with this pid exists."""
    if not pid or pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists but belongs to another user
        return True
    return True


def terminate_process(pid: int | None) -> bool:
    """Best-effort SIGTERM to the process group started for ``pid``."""
    if not pid or pid <= 0:
        return False
    try:
        os.killpg(pid, signal.SIGTERM)
        return True
    except (ProcessLookupError, PermissionError):
        pass
    try:
        os.kill(pid, signal.SIGTERM)
        return True
    except (ProcessLookupError, PermissionError):
        return False


async def _read_stream(
    stream: asyncio.StreamReader,
    chunks: list[bytes],
    on_data: Callable[[], None] | None = None,
) -> None:
    total = 0
    while True:
        chunk = await stream.read(8192)
        if not chunk:
            break
        total += len(chunk)
        if total <= MAX_CAPTURE_BYTES:
            chunks.append(chunk)
        if on_data is not None:
            on_data()


async def _discard(future: asyncio.Future) -> None:
    future.cancel()
    await asyncio.gather(future, return_exceptions=True)


async def _kill(proc: asyncio.subprocess.Process) -> None:
    if proc.returncode is not None:
        return
    terminate_process(proc.pid)
    try:
        await asyncio.wait_for(proc.wait(), timeout=_KILL_GRACE_SECONDS)
    except asyncio.TimeoutError:
        try:
            os.killpg(proc.pid, signal.SIGKILL)
        except (ProcessLookupError, PermissionError):
            pass


async def run_cli(
    argv: list[str],
    *,
    agent_type: str,
    cwd: str | None = None,
    timeout: float | None = None,
    idle_timeout: float | None = None,
    on_pid: PidCallback | None = None,
    activity: ActivitySource | None = None,
) -> SessionResult:
    """
    Run an agent CLI to completion and capture its output.

    ``on_pid`` is called synchronously as soon as the process exists. The
    process is killed (with its process group) on timeout, on idle timeout,
    or when the awaiting task is cancelled.

    The idle timeout counts output on stdout/stderr, and also the epoch time
    returned by ``activity`` (e.g. the newest transcript write) for CLIs that
    print nothing until they finish.

    Raises:
        AgentBinaryNotFound: If ``argv[0]`` cannot be executed
    """
    loop = asyncio.get_running_loop()
    try:
        proc = await asyncio.create_subprocess_exec(
            *argv,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            stdin=asyncio.subprocess.DEVNULL,
            cwd=cwd or None,
            env=clean_env(),
            start_new_session=True,
        )
    except FileNotFoundError as e:
        raise AgentBinaryNotFound(agent_type, argv[0]) from e
    except PermissionError as e:
        raise AgentBinaryNotFound(agent_type, argv[0], f"{agent_type} CLI is not executable: {argv[0]}") from e

    _logger.debug("Spawned %s CLI pid=%s cwd=%s", agent_type, proc.pid, cwd)
    if on_pid is not None and proc.pid:
        on_pid(proc.pid)

    stdout_chunks: list[bytes] = []
    stderr_chunks: list[bytes] = []
    last_output = [loop.time()]

    def touch() -> None:
        last_output[0] = loop.time()

    def quiet_seconds() -> float:
        quiet = loop.time() - last_output[0]
        if activity is not None:
            latest = activity()
            if latest is not None:
                quiet = min(quiet, time.time() - latest)
        return quiet

    async def idle_watchdog() -> None:
        interval = max(0.05, min(idle_timeout or 1.0, 5.0))
        while True:
            await asyncio.sleep(interval)
            if quiet_seconds() >= idle_timeout:
                return

    reader = asyncio.ensure_future(asyncio.gather(
        _read_stream(proc.stdout, stdout_chunks, touch),
        _read_stream(proc.stderr, stderr_chunks, touch),
        proc.wait(),
    ))
    watchdog = asyncio.ensure_future(idle_watchdog()) if idle_timeout else None
    waiters = {reader} if watchdog is None else {reader, watchdog}

    try:
        done, _ = await asyncio.wait(waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        await _kill(proc)
        await _discard(reader)
        raise
    finally:
        if watchdog is not None:
            await _discard(watchdog)

    def text_of(chunks: list[bytes]) -> str:
        return b"".join(chunks).decode("utf-8", errors="replace").strip()

    if reader in done:
        reader.result()
        output = text_of(stdout_chunks)
        exit_code = proc.returncode
        if exit_code == 0:
            return SessionOk(output=output, exit_code=0)
        stderr = text_of(stderr_chunks)
        message = stderr[-500:] if stderr else f"{agent_type} CLI exited with code {exit_code}"
        if exit_code is not None and exit_code < 0:
            message = f"{message} (killed by signal {-exit_code})"
        if output:
            # Output despite a failing exit code is still a usable result
            _logger.warning("%s CLI exited with code %s but produced output", agent_type, exit_code)
            return SessionOk(output=output, exit_code=exit_code)
        return SessionErr(kind="error", message=message, exit_code=exit_code)

    await _kill(proc)
    await _discard(reader)
    output = text_of(stdout_chunks)
    if watchdog is not None and watchdog in done:
        _logger.warning("%s CLI pid=%s produced no output for %ss, killed", agent_type, proc.pid, idle_timeout)
        return SessionErr(
            kind="hung",
            message=f"No output for {idle_timeout:.0f}s, process killed",
            output=output,
            exit_code=proc.returncode,
        )
    _logger.warning("%s CLI pid=%s timed out after %ss, killed", agent_type, proc.pid, timeout)
    return SessionErr(
        kind="timeout",
        message=f"Process timed out after {timeout:.0f}s (killed)",
        output=output,
        exit_code=proc.returncode,
    )


class AgentRuntime(ABC):
    """
    One external coding-agent CLI.

    Subclasses describe how to invoke the CLI and where it keeps session
    transcripts; process handling and transcript analysis are shared.
    """

    agent_type: str = ""

    def __init__(self, binary: str, *, hung_idle_seconds: float | None = None, home: Path | None = None):
        self.binary = binary
        self.hung_idle_seconds = hung_idle_seconds
        self.home = home or Path.home()

    # -- CLI invocation ------------------------------------------------------

    @abstractmethod
    def build_run_command(self, prompt: str) -> tuple[list[str], str | None]:
        """Return ``(argv, session_id)``; session_id is None if only known afterwards."""

    @abstractmethod
    def build_resume_command(self, session_id: str, prompt: str) -> list[str]:
        """Return argv continuing ``session_id``."""

    def parse_output(self, stdout: str) -> str:
        return stdout

    async def _run(
        self,
        argv: list[str],
        session_id: str | None,
        cwd: str | None,
        on_pid: PidCallback | None,
        timeout: float | None,
    ) -> SessionResult:
        result = await run_cli(
            argv,
            agent_type=self.agent_type,
            cwd=cwd,
            timeout=timeout,
            idle_timeout=self.hung_idle_seconds,
            on_pid=on_pid,
            activity=lambda: self.latest_session_activity(cwd or os.getcwd()),
        )
        if isinstance(result, SessionOk):
            return SessionOk(
                output=self.parse_output(result.output),
                session_id=session_id,
                exit_code=result.exit_code,
            )
        return SessionErr(
            kind=result.kind,
            message=result.message,
            output=result.output,
            session_id=session_id,
            exit_code=result.exit_code,
        )

    async def run_session(
        self,
        prompt: str,
        cwd: str | None = None,
        on_pid: PidCallback | None = None,
        timeout: float | None = None,
    ) -> SessionResult:
        """Start a fresh session with ``prompt``."""
        argv, session_id = self.build_run_command(prompt)
        return await self._run(argv, session_id, cwd, on_pid, timeout)

    async def resume_session(
        self,
        session_id: str,
        prompt: str,
        cwd: str | None = None,
        on_pid: PidCallback | None = None,
        timeout: float | None = None,
    ) -> SessionResult:
        """Continue an existing session with ``prompt``."""
        argv = self.build_resume_command(session_id, prompt)
        return await self._run(argv, session_id, cwd, on_pid, timeout)

    # -- Session files -------------------------------------------------------

    @abstractmethod
    def session_files(self, project_cwd: str) -> Iterable[Path]:
        """Transcript files belonging to ``project_cwd``."""

    @abstractmethod
    def all_session_files(self) -> Iterator[Path]:
        """Every transcript file this agent keeps."""

    @abstractmethod
    def parse_transcript(self, lines: Iterable[str]) -> list[TranscriptEvent]:
        """Normalize this agent's transcript lines."""

    def session_id_for(self, path: Path) -> str:
        return path.stem

    def find_session_file(self, session_id: str) -> Path | None:
        for path in self.all_session_files():
            if self.session_id_for(path) == session_id:
                return path
        return None

    def detect_new_session(self, project_cwd: str, since: datetime) -> str | None:
        """Newest session for ``project_cwd`` modified after ``since``."""
        if since.tzinfo is None:
            since = since.replace(tzinfo=timezone.utc)
        newest_id: str | None = None
        newest_mtime = since.timestamp()
        for path in self.session_files(project_cwd):
            try:
                mtime = path.stat().st_mtime
            except OSError:
                continue
            if mtime > newest_mtime:
                newest_mtime = mtime
                newest_id = self.session_id_for(path)
        return newest_id

    def latest_session_activity(self, project_cwd: str) -> float | None:
        """Epoch mtime of the newest transcript for ``project_cwd``."""
        latest: float | None = None
        for path in self.session_files(project_cwd):
            try:
                mtime = path.stat().st_mtime
            except OSError:
                continue
            if latest is None or mtime > latest:
                latest = mtime
        return latest

    def session_last_modified(self, session_id: str) -> datetime | None:
        path = self.find_session_file(session_id)
        if path is None:
            return None
        try:
            return datetime.fromtimestamp(path.stat().st_mtime, tz=timezone.utc)
        except OSError:
            return None

    def load_transcript(self, session_id: str) -> list[TranscriptEvent] | None:
        path = self.find_session_file(session_id)
        if path is None:
            return None
        try:
            with open(path, "r", encoding="utf-8", errors="replace") as f:
                return self.parse_transcript(f.readlines())
        except OSError as e:
            _logger.warning("Could not read %s transcript %s: %s", self.agent_type, path, e)
            return None

    def analyze_session(self, session_id: str | None) -> SessionHealth | None:
        """Health signals for a session, or None if its transcript is unavailable."""
        if not session_id:
            return None
        events = self.load_transcript(session_id)
        if events is None:
            return None
        return analyze_session_health(events)

    @staticmethod
    def is_process_alive(pid: int | None) -> bool:
        return is_process_alive(pid)
