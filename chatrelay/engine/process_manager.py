"""Lifecycle of one agent CLI subprocess per client connection.

AgentProcessManager starts the agent in streaming mode, feeds its stdout
through a StreamDecoder, relays every decoded event to an async
callback, and reports exactly one exit per run. A second run() while a
process is alive is rejected, never queued. abort() stops the process
and its whole descendant tree.
"""
from __future__ import annotations

import asyncio
import codecs
import logging
import os
import re
import shutil
import uuid
from enum import Enum

from chatrelay.adapters.events import (
    ProcessError,
    ProcessExit,
    RelayEvent,
    parse_agent_line,
    to_frame,
)
from chatrelay.engine.config import EventCallback, fire_event
from chatrelay.engine.errors import UnrecognizedEventError
from chatrelay.engine.process_tree import group_id, spawn_options, terminate_tree
from chatrelay.engine.stream_decoder import DecodedLine, StreamDecoder

logger = logging.getLogger(__name__)

# Streaming, unattended invocation. The prompt itself goes over stdin.
STREAM_FLAGS = (
    "-p",
    "--output-format", "stream-json",
    "--verbose",
    "--include-partial-messages",
    "--dangerously-skip-permissions",
)

_READ_CHUNK = 64 * 1024
_STDERR_ERROR = re.compile(r"[Ee]rror")


class RunState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"


def build_command(
    agent_command: list[str] | tuple[str, ...],
    *,
    model: str | None = None,
    session_id: str | None = None,
) -> list[str]:
    """Argv for one streaming run."""
    cmd = list(agent_command)
    # Resolve e.g. claude.cmd on Windows; exec does not consult PATHEXT.
    resolved = shutil.which(cmd[0])
    if resolved:
        cmd[0] = resolved
    cmd.extend(STREAM_FLAGS)
    if model:
        cmd.extend(["--model", model])
    if session_id:
        cmd.extend(["--resume", session_id])
    return cmd


def _child_env() -> dict[str, str]:
    env = os.environ.copy()
    # The CLI refuses to start when it believes it is nested in itself.
    env.pop("CLAUDECODE", None)
    return env


class AgentProcessManager:
    """Owns at most one agent subprocess at a time."""

    def __init__(
        self,
        event_callback: EventCallback | None = None,
        *,
        agent_command: list[str] | None = None,
        kill_grace_seconds: float = 5.0,
    ) -> None:
        self._event_callback = event_callback
        self._agent_command = list(agent_command or ["claude"])
        self._kill_grace_seconds = kill_grace_seconds
        self._state = RunState.IDLE
        self._run_id: str | None = None
        self._proc: asyncio.subprocess.Process | None = None
        # Group of the current run; outlives the leader when descendants linger.
        self._pgid: int | None = None
        # Set once stdout and stderr both reached EOF.
        self._streams_closed: asyncio.Event | None = None
        self._task: asyncio.Task | None = None
        self._escalation: asyncio.Task | None = None
        self._abort_requested = False
        self.quarantined = 0
        self.last_exit_code: int | None = None

    @property
    def state(self) -> RunState:
        return self._state

    @property
    def busy(self) -> bool:
        return self._state is RunState.RUNNING

    @property
    def run_id(self) -> str | None:
        return self._run_id

    @property
    def pid(self) -> int | None:
        return self._proc.pid if self._proc is not None else None

    async def run(
        self,
        message: str,
        *,
        cwd: str,
        session_id: str | None = None,
        model: str | None = None,
        run_id: str | None = None,
    ) -> bool:
        """Start a run. Returns False, with no side effect, while busy.

        Launch failures are reported as an error event followed by
        exit(1); the call itself still returns True.
        """
        if self._state is RunState.RUNNING:
            logger.info("run rejected: run=%s still active", self._run_id)
            return False

        # Claim the slot before the first await.
        run_id = run_id or uuid.uuid4().hex[:12]
        self._state = RunState.RUNNING
        self._run_id = run_id
        self._abort_requested = False

        cmd = build_command(self._agent_command, model=model, session_id=session_id)
        logger.info(
            "Starting agent run=%s cwd=%s model=%s resume=%s cmd=%s",
            run_id, cwd, model or "<default>", session_id or "<new>", cmd[0],
        )
        try:
            # create_subprocess_exec passes args as array, no shell
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=cwd,
                env=_child_env(),
                **spawn_options(),
            )
        except (OSError, ValueError) as exc:
            logger.error("Agent launch failed run=%s: %s", run_id, exc)
            await self._emit(ProcessError(
                run_id=run_id,
                message=f"CLI launch failed: {exc}",
                code="SPAWN_FAILED",
            ))
            self._reset()
            self.last_exit_code = 1
            await self._emit(ProcessExit(run_id=run_id, code=1))
            return True

        self._proc = proc
        self._pgid = group_id(proc)
        self._streams_closed = asyncio.Event()
        logger.info("Agent started run=%s pid=%s", run_id, proc.pid)
        self._task = asyncio.create_task(
            self._drive(proc, message, run_id, self._streams_closed),
        )
        if self._abort_requested:
            self._terminate(proc)
        return True

    def abort(self) -> bool:
        """Request termination of the active process tree.

        Returns False when nothing is running. Safe to call repeatedly;
        the exit event still comes from the normal exit path.
        """
        if self._state is RunState.IDLE:
            return False
        self._abort_requested = True
        proc = self._proc
        if proc is None:
            # Spawn in flight; run() terminates it once the pid exists.
            logger.info("abort requested during spawn run=%s", self._run_id)
            return True
        if self._escalation is not None and not self._escalation.done():
            return True
        self._terminate(proc)
        return True

    async def shutdown(self) -> None:
        """Abort and wait until the exit event has been delivered."""
        self.abort()
        task = self._task
        if task is not None and not task.done():
            try:
                await task
            except Exception:
                logger.exception("Agent run task failed during shutdown")

    def _terminate(self, proc: asyncio.subprocess.Process) -> None:
        logger.info("Aborting agent run=%s pid=%s", self._run_id, proc.pid)
        try:
            terminate_tree(proc, pgid=self._pgid)
        except OSError:
            logger.exception("terminate_tree failed pid=%s", proc.pid)
        self._escalation = asyncio.create_task(
            self._escalate(proc, self._pgid, self._streams_closed),
        )

    async def _escalate(
        self,
        proc: asyncio.subprocess.Process,
        pgid: int | None,
        streams_closed: asyncio.Event | None,
    ) -> None:
        await asyncio.sleep(max(0.0, self._kill_grace_seconds))
        # The run is over only when the leader exited and nothing holds the pipes.
        if proc.returncode is not None and (streams_closed is None or streams_closed.is_set()):
            return
        logger.warning(
            "Agent pid=%s tree still alive %.1fs after abort (leader exit=%s); killing group",
            proc.pid, self._kill_grace_seconds, proc.returncode,
        )
        try:
            terminate_tree(proc, force=True, pgid=pgid)
        except OSError:
            logger.exception("Forced terminate_tree failed pid=%s", proc.pid)

    async def _drive(
        self,
        proc: asyncio.subprocess.Process,
        message: str,
        run_id: str,
        streams_closed: asyncio.Event,
    ) -> None:
        decoder = StreamDecoder()
        readers = [
            asyncio.create_task(self._read_stdout(proc, decoder, run_id)),
            asyncio.create_task(self._read_stderr(proc, run_id)),
        ]
        try:
            await self._write_prompt(proc, message)
            await asyncio.gather(*readers)
        except Exception:
            logger.exception("Agent stream pump failed run=%s", run_id)
            for reader in readers:
                reader.cancel()
            await asyncio.gather(*readers, return_exceptions=True)
            terminate_tree(proc, force=True, pgid=group_id(proc))
        streams_closed.set()

        code = await proc.wait()
        for item in decoder.flush():
            await self._relay(item, run_id)
        logger.info(
            "Agent exited run=%s pid=%s code=%s decoded=%d malformed=%d",
            run_id, proc.pid, code, decoder.lines_decoded, decoder.lines_failed,
        )
        self.last_exit_code = code
        self._reset()
        await self._emit(ProcessExit(run_id=run_id, code=code))

    async def _write_prompt(self, proc: asyncio.subprocess.Process, message: str) -> None:
        if proc.stdin is None:
            return
        try:
            proc.stdin.write(message.encode("utf-8"))
            await proc.stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as exc:
            logger.warning("Agent closed stdin early pid=%s: %s", proc.pid, exc)
        finally:
            proc.stdin.close()

    async def _read_stdout(
        self,
        proc: asyncio.subprocess.Process,
        decoder: StreamDecoder,
        run_id: str,
    ) -> None:
        assert proc.stdout is not None
        while True:
            chunk = await proc.stdout.read(_READ_CHUNK)
            if not chunk:
                break
            for item in decoder.feed(chunk):
                await self._relay(item, run_id)

    async def _read_stderr(self, proc: asyncio.subprocess.Process, run_id: str) -> None:
        assert proc.stderr is not None
        text_decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        while True:
            chunk = await proc.stderr.read(_READ_CHUNK)
            if not chunk:
                break
            text = text_decoder.decode(chunk)
            if not text.strip():
                continue
            logger.debug("agent stderr run=%s: %s", run_id, text.rstrip())
            if _STDERR_ERROR.search(text):
                await self._emit(ProcessError(
                    run_id=run_id, message=text.strip(), code="PROCESS_ERROR",
                ))

    async def _relay(self, item: DecodedLine, run_id: str) -> None:
        if not item.ok:
            logger.warning("Skipping malformed agent line run=%s: %.200s", run_id, item.error)
            return
        try:
            event = parse_agent_line(item.value, run_id)
        except UnrecognizedEventError as exc:
            self.quarantined += 1
            logger.info("Quarantined agent line run=%s: %s", run_id, exc)
            return
        if event is not None:
            await self._emit(event)

    async def _emit(self, event: RelayEvent) -> None:
        await fire_event(self._event_callback, to_frame(event))

    def _reset(self) -> None:
        if self._escalation is not None and not self._escalation.done():
            self._escalation.cancel()
        self._escalation = None
        self._proc = None
        self._pgid = None
        self._streams_closed = None
        self._task = None
        self._abort_requested = False
        self._state = RunState.IDLE
