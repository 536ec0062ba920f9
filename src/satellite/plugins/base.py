"""Plugin interface and per-job context shared by all plugin kinds."""

from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass, field
from typing import Protocol

from satellite.config import Settings
from satellite.errors import PluginError
from satellite.protocol.codec import JsonStream
from satellite.protocol.contracts import Job, Update

__all__ = ["Plugin", "PluginContext", "PluginError", "safe_job_id"]

logger = logging.getLogger(__name__)

_UNSAFE_ID_CHARS = re.compile(r"[^\w.-]")


@dataclass(slots=True)
class PluginContext:
    """Everything a plugin needs to talk to the orchestrator for one job."""

    settings: Settings
    stream: JsonStream
    termination: asyncio.Event = field(default_factory=asyncio.Event)
    signal_name: str | None = None
    completed: bool = False

    def emit(self, update: Update) -> None:
        """Write an interim record; the terminal record goes through ``finish``."""

        if update.complete:
            self.finish(update)
            return
        if self.completed:
            raise RuntimeError("Job already completed; no further records allowed")
        self.stream.write(update.to_record(self.settings.marker_key))

    def progress(self, value: float) -> None:
        self.emit(Update(progress=value))

    def log(self, text: str) -> None:
        """Write a plain-text log line for the orchestrator's job log."""

        self.stream.write_text(text if text.endswith("\n") else text + "\n")

    def finish(self, update: Update) -> None:
        if self.completed:
            raise RuntimeError("Job already completed; terminal record was written")
        update.complete = True
        self.completed = True
        self.stream.write(update.to_record(self.settings.marker_key))

    def request_termination(self, signal_name: str = "SIGTERM") -> None:
        if self.termination.is_set():
            return
        logger.info("Termination requested (%s)", signal_name)
        self.signal_name = signal_name
        self.termination.set()


def safe_job_id(job_id: str) -> str:
    """Job id reduced to characters that are safe inside a file name."""

    return _UNSAFE_ID_CHARS.sub("_", job_id).lstrip(".") or "job"


class Plugin(Protocol):
    """Protocol implemented by plugin kinds.

    ``handles_termination`` plugins watch ``context.termination`` themselves;
    for all others the runner cancels ``run`` and reports the abort.
    """

    name: str
    handles_termination: bool

    async def run(self, job: Job, context: PluginContext) -> Update:
        """Perform the job and return its terminal update."""
