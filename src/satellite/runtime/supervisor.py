"""Spawn one child command, relay its output and report its terminal outcome.

The supervisor owns exactly one child process. Its stdout is parsed
tolerantly: JSON records are forwarded, bare percentages become progress
records and everything else is relayed as job log text. Stderr is mirrored
to the job log and kept (capped) in memory to enrich the terminal record.
"""

from __future__ import annotations

import asyncio
import html
import json
import logging
import signal
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any

from satellite.config import Settings
from satellite.errors import describe_error
from satellite.protocol.codec import (
    LINE_LIMIT_BYTES,
    JsonRecord,
    JsonStream,
    LineError,
    ProgressSignal,
    TextLine,
    encode_line,
)
from satellite.protocol.contracts import AdvisoryCode, Code, HtmlReport, Update

logger = logging.getLogger(__name__)

TRUNCATION_MARKER = b"..."
_STDERR_READ_CHUNK = 65_536


class SupervisorState(str, Enum):
    """Lifecycle of the supervised child."""

    PENDING = "pending"
    SPAWNED = "spawned"
    RUNNING = "running"
    EXITED = "exited"
    KILLED = "killed"
    SPAWN_FAILED = "spawn_failed"


@dataclass(frozen=True, slots=True)
class ChildCommand:
    """What to run and how to relay it."""

    program: str
    args: tuple[str, ...] = ()
    cwd: str | None = None
    payload: Any = None
    env: Mapping[str, str] | None = None
    cleanup_file: Path | None = None
    annotate: bool = False
    forward_json: bool = True


class StderrBuffer:
    """Keep the first ``limit`` bytes of stderr, marking truncation once."""

    def __init__(self, limit: int) -> None:
        self.limit = limit
        self.truncated = False
        self._data = bytearray()

    def append(self, chunk: bytes) -> None:
        if self.truncated or not chunk:
            return
        if len(self._data) + len(chunk) <= self.limit:
            self._data.extend(chunk)
            return
        keep = max(0, self.limit - len(TRUNCATION_MARKER))
        self._data.extend(chunk)
        del self._data[keep:]
        self._data.extend(TRUNCATION_MARKER)
        self.truncated = True

    @property
    def value(self) -> bytes:
        return bytes(self._data)

    def __len__(self) -> int:
        return len(self._data)

    def text(self) -> str:
        # A multi-byte character cut at the limit is dropped rather than replaced.
        return self._data.decode("utf-8", errors="ignore")


def exit_code(returncode: int | None) -> Code:
    """Map an asyncio returncode onto a terminal code (signal name when killed)."""

    if not returncode:
        return 0
    if returncode < 0:
        try:
            return signal.Signals(-returncode).name
        except ValueError:
            return -returncode
    return returncode


def annotate_line(text: str, now: datetime | None = None) -> str:
    stamp = (now or datetime.now()).strftime("%Y-%m-%d %H:%M:%S")
    return f"[{stamp}] {text}"


class ProcessSupervisor:
    """Run one child command to completion and produce its terminal update."""

    def __init__(
        self,
        settings: Settings,
        stream: JsonStream,
        *,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self.settings = settings
        self.stream = stream
        self.state = SupervisorState.PENDING
        self.stderr = StderrBuffer(settings.supervisor.stderr_buffer_bytes)
        self.terminate_sent_at: float | None = None
        self.kill_sent_at: float | None = None
        self._clock = clock
        self._process: asyncio.subprocess.Process | None = None
        self._kill_handle: asyncio.TimerHandle | None = None
        self._sent_html = False
        self._reported: dict[str, Any] = {}

    @property
    def pid(self) -> int | None:
        return self._process.pid if self._process is not None else None

    async def run(self, command: ChildCommand, termination: asyncio.Event | None = None) -> Update:
        """Spawn, relay and wait; the cleanup file is removed on every path."""

        if self.state is not SupervisorState.PENDING:
            raise RuntimeError("ProcessSupervisor runs exactly one child")
        try:
            return await self._run(command, termination)
        finally:
            if command.cleanup_file is not None:
                _remove_file(command.cleanup_file)

    async def _run(self, command: ChildCommand, termination: asyncio.Event | None) -> Update:
        try:
            process = await asyncio.create_subprocess_exec(
                command.program,
                *command.args,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=command.cwd,
                env=dict(command.env) if command.env is not None else None,
                limit=LINE_LIMIT_BYTES,
            )
        except OSError as error:
            self.state = SupervisorState.SPAWN_FAILED
            logger.warning("Failed to spawn %s: %s", command.program, error)
            return Update.completion(1, f"Script failed: {describe_error(error)}")

        self._process = process
        self.state = SupervisorState.SPAWNED
        logger.debug("Spawned child pid=%s: %s", process.pid, command.program)

        assert process.stdin is not None
        assert process.stdout is not None
        assert process.stderr is not None
        relays = [
            asyncio.create_task(self._relay_stdout(process.stdout, command)),
            asyncio.create_task(self._relay_stderr(process.stderr)),
            asyncio.create_task(self._send_payload(process.stdin, command.payload)),
        ]
        watcher = (
            asyncio.create_task(self._watch_termination(termination))
            if termination is not None
            else None
        )
        self.state = SupervisorState.RUNNING
        try:
            returncode = await process.wait()
        except asyncio.CancelledError:
            if process.returncode is None:
                process.kill()
            for task in relays:
                task.cancel()
            raise
        finally:
            self._cancel_kill_timer()
            if watcher is not None:
                watcher.cancel()

        await self._drain(relays)
        if self.state is not SupervisorState.KILLED:
            self.state = SupervisorState.EXITED
        logger.debug("Child pid=%s exited with returncode=%s", process.pid, returncode)
        return self._exit_update(returncode)

    def request_termination(self) -> None:
        """Signal the child gracefully, escalating to a kill after the grace period."""

        process = self._process
        if process is None or process.returncode is not None:
            return
        if self._kill_handle is not None:
            return
        loop = asyncio.get_running_loop()
        grace = self.settings.supervisor.kill_timeout_seconds
        self._log(f"Caught termination request, killing child: {process.pid}")
        self.terminate_sent_at = loop.time()
        self._kill_handle = loop.call_later(grace, self._force_kill)
        try:
            process.terminate()
        except ProcessLookupError:
            logger.debug("Child pid=%s already gone before SIGTERM", process.pid)

    def _force_kill(self) -> None:
        process = self._process
        if process is None or process.returncode is not None:
            return
        self._log(f"Child did not exit, killing harder: {process.pid}")
        self.state = SupervisorState.KILLED
        self.kill_sent_at = asyncio.get_running_loop().time()
        try:
            process.kill()
        except ProcessLookupError:
            logger.debug("Child pid=%s already gone before SIGKILL", process.pid)

    def _cancel_kill_timer(self) -> None:
        if self._kill_handle is not None:
            self._kill_handle.cancel()

    async def _watch_termination(self, termination: asyncio.Event) -> None:
        await termination.wait()
        self.request_termination()

    async def _send_payload(self, stdin: asyncio.StreamWriter, payload: Any) -> None:
        try:
            if payload is not None:
                stdin.write(encode_line(payload))
                await stdin.drain()
            stdin.close()
            await stdin.wait_closed()
        except (BrokenPipeError, ConnectionResetError) as error:
            # Child exited or closed its stdin without reading; not a job failure.
            logger.debug("Child stdin closed early: %s", error)

    async def _relay_stdout(self, reader: asyncio.StreamReader, command: ChildCommand) -> None:
        async for event in JsonStream(reader, None, tolerant=True):
            if isinstance(event, JsonRecord):
                if command.forward_json:
                    self._forward_record(event.value)
                else:
                    self._log_child_text(json.dumps(event.value), command.annotate)
            elif isinstance(event, ProgressSignal):
                update = Update(progress=event.progress)
                self.stream.write(update.to_record(self.settings.marker_key))
            elif isinstance(event, (TextLine, LineError)):
                # Malformed JSON is downgraded to an ordinary log line.
                self._log_child_text(event.text, command.annotate)

    async def _relay_stderr(self, reader: asyncio.StreamReader) -> None:
        while True:
            chunk = await reader.read(_STDERR_READ_CHUNK)
            if not chunk:
                return
            self.stderr.append(chunk)
            self.stream.write_text(chunk)

    async def _drain(self, relays: list[asyncio.Task[None]]) -> None:
        done, pending = await asyncio.wait(
            relays,
            timeout=self.settings.supervisor.stream_drain_seconds,
        )
        if pending:
            logger.warning("Child pipes still open after exit, dropping %d relay(s)", len(pending))
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)
        for task in done:
            task.result()

    def _forward_record(self, record: dict[str, Any]) -> None:
        if record.get("complete"):
            # Only the supervisor writes the terminal record for this job.
            record = dict(record)
            record.pop("complete")
            for key in ("code", "description"):
                if key in record:
                    self._reported[key] = record.pop(key)
            if not any(key != self.settings.marker_key for key in record):
                return
        if record.get("html"):
            self._sent_html = True
        self.stream.write(record)

    def _log_child_text(self, text: str, annotate: bool) -> None:
        if annotate:
            text = annotate_line(text, self._clock())
        self.stream.write_text(text + "\n")

    def _log(self, message: str) -> None:
        logger.info(message)
        self.stream.write_text(message + "\n")

    def _exit_update(self, returncode: int | None) -> Update:
        code = exit_code(returncode)
        description = f"Script exited with code: {code}" if code else ""
        failed = bool(code)
        if not failed:
            code = _reported_code(self._reported.get("code"))
            reported_description = self._reported.get("description")
            if isinstance(reported_description, str):
                description = reported_description

        update = Update.completion(code, description)
        stderr_text = self.stderr.text().strip()
        if stderr_text:
            if not self._sent_html:
                update.html = HtmlReport(
                    title="Error Output",
                    content="<pre>" + html.escape(stderr_text, quote=False) + "</pre>",
                )
            if failed:
                first_line = stderr_text.splitlines()[0]
                limit = self.settings.supervisor.first_line_chars
                update.description = f"{description}: {first_line[:limit]}"
        return update


def _reported_code(value: Any) -> Code:
    """A child-reported code when it is a valid terminal code, else success."""

    if isinstance(value, int) and not isinstance(value, bool):
        return value
    if isinstance(value, str) and value in {advisory.value for advisory in AdvisoryCode}:
        return value
    return 0


def _remove_file(path: Path) -> None:
    try:
        path.unlink(missing_ok=True)
    except OSError as error:
        logger.warning("Failed to remove %s: %s", path, error)
