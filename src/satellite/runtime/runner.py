"""Drive one plugin through one job: read, work, report exactly one outcome."""

from __future__ import annotations

import asyncio
import io
import logging
import os
import signal
import stat
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from typing import BinaryIO

from satellite.config import Settings
from satellite.errors import describe_error
from satellite.plugins.base import Plugin, PluginContext, PluginError
from satellite.protocol.codec import LINE_LIMIT_BYTES, JsonRecord, JsonStream, LineError
from satellite.protocol.contracts import Job, JobInputError, Update, parse_job

logger = logging.getLogger(__name__)

_TERMINATION_SIGNALS = ("SIGTERM", "SIGINT")


async def read_job(stream: JsonStream) -> Job | None:
    """Read the single inbound job record; never reads a second one."""

    event = await stream.read_event()
    if event is None:
        return None
    if isinstance(event, LineError):
        raise JobInputError(f"Failed to parse job record: {event.error}")
    if not isinstance(event, JsonRecord):  # pragma: no cover - strict streams only yield these
        raise JobInputError("Unexpected job record")
    return parse_job(event.value)


async def run_plugin(
    plugin: Plugin,
    settings: Settings,
    stream: JsonStream,
    *,
    install_signal_handlers: bool = True,
) -> Update | None:
    """Run ``plugin`` against the next job on ``stream``.

    Returns the terminal update that was written, or None when the input
    closed before a job arrived. Exceptions other than ``PluginError`` and
    ``JobInputError`` propagate without a terminal record.
    """

    context = PluginContext(settings=settings, stream=stream)
    try:
        job = await read_job(stream)
    except JobInputError as error:
        logger.error("Rejected job input: %s", error)
        update = Update.completion(1, str(error))
        context.finish(update)
        return update
    if job is None:
        logger.error("Input closed before a job record arrived")
        return None

    logger.info("Running %s plugin for job %s", plugin.name, job.id)
    loop = asyncio.get_running_loop()
    with _termination_handlers(loop, context, enabled=install_signal_handlers):
        update = await _perform(plugin, job, context)

    context.finish(update)
    logger.info("Job %s complete with code %s", job.id, update.code)
    return update


async def _perform(plugin: Plugin, job: Job, context: PluginContext) -> Update:
    work = asyncio.create_task(plugin.run(job, context))
    if plugin.handles_termination:
        return await _collect(work)

    aborted = asyncio.create_task(context.termination.wait())
    try:
        await asyncio.wait({work, aborted}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        aborted.cancel()
    if work.done():
        return await _collect(work)

    work.cancel()
    try:
        await work
    except asyncio.CancelledError:
        pass
    except PluginError as error:
        logger.debug("Plugin failed while aborting: %s", error)
    return Update.completion(1, f"Job aborted: {context.signal_name or 'SIGTERM'}")


async def _collect(work: asyncio.Task[Update]) -> Update:
    try:
        return await work
    except PluginError as error:
        logger.warning("Job failed: %s", error)
        return Update.completion(error.code, describe_error(error))


@contextmanager
def _termination_handlers(
    loop: asyncio.AbstractEventLoop,
    context: PluginContext,
    *,
    enabled: bool,
) -> Iterator[None]:
    installed: list[signal.Signals] = []
    if enabled:
        for name in _TERMINATION_SIGNALS:
            signum = getattr(signal, name, None)
            if signum is None:
                continue
            try:
                loop.add_signal_handler(signum, context.request_termination, name)
            except (NotImplementedError, RuntimeError, ValueError):
                # Not supported on this platform or outside the main thread.
                continue
            installed.append(signum)
    try:
        yield
    finally:
        for signum in installed:
            loop.remove_signal_handler(signum)


async def open_stdio_stream(
    stdin: BinaryIO | None = None,
    stdout: BinaryIO | None = None,
) -> JsonStream:
    """Bind a strict JsonStream to the process's standard input/output."""

    stdin = stdin if stdin is not None else sys.stdin.buffer
    stdout = stdout if stdout is not None else sys.stdout.buffer
    reader = asyncio.StreamReader(limit=LINE_LIMIT_BYTES)
    if _is_pipe(stdin):
        loop = asyncio.get_running_loop()
        await loop.connect_read_pipe(lambda: asyncio.StreamReaderProtocol(reader), stdin)
    else:
        # Regular files and in-memory buffers cannot be registered with the selector.
        reader.feed_data(stdin.read())
        reader.feed_eof()
    return JsonStream(reader, stdout)


def _is_pipe(handle: BinaryIO) -> bool:
    try:
        mode = os.fstat(handle.fileno()).st_mode
    except (AttributeError, OSError, io.UnsupportedOperation):
        return False
    return stat.S_ISFIFO(mode) or stat.S_ISSOCK(mode) or stat.S_ISCHR(mode)
