"""Headless agent subprocess controller.

Spawns the agent CLI in stream-json mode, feeds each stdout line through
SessionStreamParser in emission order, forwards stderr verbatim, and
supports prompt cancellation with a bounded grace period.
"""
from __future__ import annotations

import asyncio
import logging
import os
import re
import signal
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Protocol

from gensui.shared.models.session import Error, Result, SessionEvent

from .config import GensuiConfig
from .errors import ParseAnomaly, SpawnError
from .stream_parser import SessionStreamParser
from .workflow import DEFAULT_PERMISSION_MODE

logger = logging.getLogger(__name__)

_STDERR_TAIL_LINES = 20

RESUME_MISS_RE = re.compile(
    r"no conversation found|session .* not found|invalid session",
    re.IGNORECASE,
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class AgentInvocation:
    """Everything needed to start one agent run. Templates are already rendered."""
    prompt: str
    cwd: Path
    model: str | None = None
    permission_mode: str = DEFAULT_PERMISSION_MODE
    allowed_tools: list[str] | None = None
    extra_args: list[str] = field(default_factory=list)
    # Set when the worker holds a session to continue
    resume_session_id: str | None = None
    worker: str = ""


@dataclass
class AgentRunOutcome:
    exit_code: int | None
    event_count: int = 0
    anomalies: int = 0
    failed_by_event: bool = False
    cancelled: bool = False
    session_id: str | None = None
    stderr_tail: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.cancelled and self.exit_code == 0 and not self.failed_by_event


def is_resume_miss(invocation: AgentInvocation, outcome: AgentRunOutcome) -> bool:
    """True when a ``--resume`` run was rejected before producing any events."""
    if not invocation.resume_session_id or outcome.cancelled:
        return False
    if outcome.exit_code == 0 or outcome.event_count > 0:
        return False
    return any(RESUME_MISS_RE.search(line) for line in outcome.stderr_tail)


class AgentOutputSink(Protocol):
    """Receives everything a running agent produces, in order."""

    async def on_event(self, event: SessionEvent) -> None: ...

    async def on_session_id(self, session_id: str) -> None: ...

    async def on_stderr(self, line: str) -> None: ...

    async def on_anomaly(self, anomaly: ParseAnomaly) -> None: ...

    async def on_finish(self, ended_at: datetime) -> None: ...


async def read_line_unbounded(stream: asyncio.StreamReader) -> bytes:
    """Read a full line from *stream* with no size limit.

    Tool results can carry very large payloads on a single line, well
    past the StreamReader default limit. On LimitOverrunError the
    buffered bytes are drained and accumulation continues until the
    newline or EOF.
    """
    chunks: list[bytes] = []
    while True:
        try:
            chunk = await stream.readuntil(b"\n")
            chunks.append(chunk)
            return b"".join(chunks)
        except asyncio.LimitOverrunError as exc:
            chunk = await stream.read(exc.consumed)
            chunks.append(chunk)
        except asyncio.IncompleteReadError as exc:
            # EOF before newline
            chunks.append(exc.partial)
            return b"".join(chunks)


def _signal_group(proc: asyncio.subprocess.Process, sig: int) -> None:
    try:
        os.killpg(proc.pid, sig)
    except ProcessLookupError:
        return
    except OSError:
        # Not a group leader; signal the process itself
        if sig == signal.SIGKILL:
            proc.kill()
        else:
            proc.terminate()


async def terminate_process(
    proc: asyncio.subprocess.Process, grace_seconds: float,
) -> int | None:
    """SIGTERM the process group, then SIGKILL after ``grace_seconds``."""
    if proc.returncode is not None:
        return proc.returncode
    try:
        _signal_group(proc, signal.SIGTERM)
    except ProcessLookupError:
        return proc.returncode
    try:
        return await asyncio.wait_for(proc.wait(), timeout=grace_seconds)
    except asyncio.TimeoutError:
        logger.warning(
            "pid %s ignored SIGTERM for %.1fs; sending SIGKILL", proc.pid, grace_seconds,
        )
        try:
            _signal_group(proc, signal.SIGKILL)
        except ProcessLookupError:
            pass
        return await proc.wait()


class AgentProcessController:
    """Owns at most one agent subprocess at a time."""

    def __init__(
        self,
        config: GensuiConfig,
        parser: SessionStreamParser | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._config = config
        self._parser = parser or SessionStreamParser()
        self._clock = clock
        self._proc: asyncio.subprocess.Process | None = None
        self._sink: AgentOutputSink | None = None
        self._cancelled = False
        self._finished = False

    @property
    def running(self) -> bool:
        return self._proc is not None and self._proc.returncode is None

    def build_args(self, invocation: AgentInvocation) -> list[str]:
        args = [
            self._config.claude_bin,
            "--print", invocation.prompt,
            "--output-format", "stream-json",
            "--verbose",
        ]
        if invocation.resume_session_id:
            args += ["--resume", invocation.resume_session_id]
        if invocation.model:
            args += ["--model", invocation.model]
        args += ["--permission-mode", invocation.permission_mode or DEFAULT_PERMISSION_MODE]
        if invocation.allowed_tools:
            args += ["--allowedTools", ",".join(invocation.allowed_tools)]
        args.extend(invocation.extra_args)
        return args

    def _build_env(self) -> dict[str, str]:
        env = dict(os.environ)
        if self._config.claude_home is not None:
            self._config.claude_home.mkdir(parents=True, exist_ok=True)
            env["CLAUDE_CONFIG_DIR"] = str(self._config.claude_home)
        return env

    async def _spawn(self, args: list[str], cwd: Path) -> asyncio.subprocess.Process:
        attempts = 1 + max(0, self._config.spawn_retries)
        last_error: OSError | None = None
        for attempt in range(1, attempts + 1):
            try:
                return await asyncio.create_subprocess_exec(
                    *args,
                    stdin=asyncio.subprocess.DEVNULL,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                    cwd=str(cwd),
                    env=self._build_env(),
                    start_new_session=True,
                )
            except OSError as exc:
                last_error = exc
                logger.warning(
                    "Spawn attempt %d/%d of %s failed: %s",
                    attempt, attempts, args[0], exc,
                )
                if attempt < attempts:
                    await asyncio.sleep(self._config.spawn_retry_delay_seconds)
        raise SpawnError(args[0], str(last_error), attempts)

    async def _finish(self) -> None:
        if self._finished or self._sink is None:
            return
        self._finished = True
        await self._sink.on_finish(self._clock())

    async def _pump_stderr(
        self,
        stream: asyncio.StreamReader,
        sink: AgentOutputSink,
        tail: deque[str],
    ) -> None:
        while True:
            raw = await read_line_unbounded(stream)
            if not raw:
                return
            line = raw.decode("utf-8", errors="replace").rstrip("\r\n")
            tail.append(line)
            await sink.on_stderr(line)

    async def run(self, invocation: AgentInvocation, sink: AgentOutputSink) -> AgentRunOutcome:
        """Run the agent to completion (or cancellation) and report the outcome.

        Raises SpawnError if the binary cannot be started.
        """
        if self.running:
            raise RuntimeError(f"agent already running for worker {invocation.worker}")
        self._sink = sink
        self._cancelled = False
        self._finished = False

        args = self.build_args(invocation)
        logger.info(
            "Starting agent for %s in %s (resume=%s)",
            invocation.worker, invocation.cwd, invocation.resume_session_id or "-",
        )
        try:
            proc = await self._spawn(args, invocation.cwd)
        except SpawnError:
            self._sink = None
            raise
        self._proc = proc
        if self._cancelled:
            # Cancelled while the process was starting
            await terminate_process(proc, self._config.cancel_grace_seconds)

        outcome = AgentRunOutcome(exit_code=None)
        stderr_tail: deque[str] = deque(maxlen=_STDERR_TAIL_LINES)
        stderr_task = asyncio.create_task(self._pump_stderr(proc.stderr, sink, stderr_tail))
        failed_by_event = False
        try:
            while True:
                raw = await read_line_unbounded(proc.stdout)
                if not raw:
                    break
                if self._cancelled:
                    # Drain until the pipe closes; output after cancel is discarded
                    continue
                line = raw.decode("utf-8", errors="replace")
                parsed = self._parser.parse_line(line, self._clock())
                if parsed.anomaly is not None:
                    outcome.anomalies += 1
                    logger.warning("%s: %s", invocation.worker, parsed.anomaly)
                    await sink.on_anomaly(parsed.anomaly)
                if parsed.session_id and parsed.session_id != outcome.session_id:
                    outcome.session_id = parsed.session_id
                    await sink.on_session_id(parsed.session_id)
                for event in parsed.events:
                    outcome.event_count += 1
                    if isinstance(event, Error):
                        failed_by_event = True
                    elif isinstance(event, Result):
                        failed_by_event = event.is_error
                    await sink.on_event(event)
            outcome.exit_code = await proc.wait()
            await stderr_task
        except asyncio.CancelledError:
            await terminate_process(proc, self._config.cancel_grace_seconds)
            stderr_task.cancel()
            raise
        finally:
            self._proc = None
            await self._finish()
            self._sink = None

        outcome.failed_by_event = failed_by_event
        outcome.cancelled = self._cancelled
        outcome.stderr_tail = list(stderr_tail)
        logger.info(
            "Agent for %s exited code=%s events=%d anomalies=%d cancelled=%s",
            invocation.worker, outcome.exit_code, outcome.event_count,
            outcome.anomalies, outcome.cancelled,
        )
        return outcome

    async def cancel(self) -> bool:
        """Close the session now and terminate the subprocess.

        Returns False when no run is in progress.
        """
        if self._sink is None or self._finished:
            return False
        self._cancelled = True
        await self._finish()
        proc = self._proc
        if proc is not None and proc.returncode is None:
            await terminate_process(proc, self._config.cancel_grace_seconds)
        return True
