"""Diagnostic plugin that simulates a job and exercises the whole update envelope.

Job params: ``duration`` (seconds, ``N`` or ``LOW-HIGH``), ``progress``
(report progress ticks), ``upload`` (attach a sample report file) and
``action``: ``Success``, ``Error``, ``Warning``, ``Critical`` or ``Crash``.
``Crash`` raises on purpose and leaves the job without a terminal record.
"""

from __future__ import annotations

import asyncio
import json
import logging
import random
import re
import sys
from datetime import datetime
from pathlib import Path

from satellite.errors import describe_error
from satellite.perf import Perf
from satellite.plugins.base import PluginContext, PluginError, safe_job_id
from satellite.protocol.contracts import AdvisoryCode, FileRef, HtmlReport, Job, Table, Update

ACTIONS = ("Success", "Error", "Warning", "Critical", "Crash")

_ANSI_RESET = "\x1b[0m"
_ANSI_SAMPLES = (
    ("\x1b[1m", "Bold text"),
    ("\x1b[2m", "Dim text"),
    ("\x1b[3m", "Italic text"),
    ("\x1b[4m", "Underlined text"),
    ("\x1b[7m", "Inverse text"),
    ("\x1b[31m", "Red text"),
    ("\x1b[32m", "Green text"),
    ("\x1b[33m", "Yellow text"),
    ("\x1b[34m", "Blue text"),
    ("\x1b[90m", "Gray text"),
)

SAMPLE_TABLE_ROWS = [
    ["62.121.210.2", "directing.com", "MaxEvents-ImpsUserHour-DMZ", 138, "0.0032%"],
    ["97.247.105.50", "hsd2.nm.comcast.net", "MaxEvents-ImpsUserHour-ILUA", 84, "0.0019%"],
    ["21.153.110.51", "grandnetworks.net", "InvalidIP-Basic", 20, "0.00046%"],
    ["95.224.240.69", "hsd6.mi.comcast.net", "MaxEvents-ImpsUserHour-NM", 19, "0.00044%"],
    ["72.129.60.245", "hsd6.nm.comcast.net", "InvalidCat-Domestic", 17, "0.00039%"],
    ["21.239.78.116", "cable.mindsprung.com", "InvalidDog-Exotic", 15, "0.00037%"],
]

SAMPLE_REPORT = """\
-------------------------------------------------
          Date/Time | 2015-10-01 6:28:38 AM
       Elapsed Time | 1 hour 15 minutes
     Total Log Rows | 4,313,619
       Skipped Rows | 15
  Pre-Filtered Rows | 16,847
             Events | 4,296,757
        Impressions | 4,287,421
             Clicks | 5,309 (0.12%)
       Unique Users | 1,239,502
-------------------------------------------------"""

_RANGE = re.compile(r"^(\d+)-(\d+)$")


class _ContextLogHandler(logging.Handler):
    """Echo job log records into the orchestrator's job log."""

    def __init__(self, context: PluginContext) -> None:
        super().__init__()
        self._context = context

    def emit(self, record: logging.LogRecord) -> None:
        try:
            self._context.log(self.format(record))
        except Exception:  # noqa: BLE001 - logging handlers must not raise
            self.handleError(record)


class DiagnosticPlugin:
    """Simulated workload used to check protocol conformance end to end."""

    name = "test"
    handles_termination = False

    def __init__(self, *, tick_seconds: float = 0.15, rng: random.Random | None = None) -> None:
        self.tick_seconds = tick_seconds
        self._rng = rng or random.Random()

    async def run(self, job: Job, context: PluginContext) -> Update:
        action = str(job.params.get("action") or "Success")
        if action not in ACTIONS:
            raise PluginError(f"Unknown action: {action}")
        duration = parse_duration(job.params.get("duration", 0), self._rng)

        print(
            "Printed this to stderr, which goes straight to the job log file.",
            file=sys.stderr,
            flush=True,
        )
        context.log(
            "Testing some ANSI colors and styles: "
            + ", ".join(f"{code}{label}{_ANSI_RESET}" for code, label in _ANSI_SAMPLES),
        )

        job_log, log_path = _open_job_log(job, context)
        try:
            job_log.debug("This is a test debug log entry")
            job_log.debug("Here is our job: %s", json.dumps(job.record, default=str))
            job_log.debug(
                "The current date/time for our job is: %s",
                datetime.fromtimestamp(job.now).isoformat(sep=" "),
            )
            perf = await self._simulate(job, context, job_log, duration)

            if job.params.get("upload"):
                context.emit(Update(files=[_write_sample_report(job, context)]))

            if action == "Crash":
                job_log.debug("Simulating a crash")
                await asyncio.sleep(0.1)
                raise RuntimeError("Test Crash")
            return _outcome(action, perf, job_log)
        finally:
            for handler in list(job_log.handlers):
                handler.close()
                job_log.removeHandler(handler)
            log_path.unlink(missing_ok=True)

    async def _simulate(
        self,
        job: Job,
        context: PluginContext,
        job_log: logging.Logger,
        duration: float,
    ) -> Perf:
        loop = asyncio.get_running_loop()
        perf = Perf(scale=1)
        perf.begin()
        start = loop.time()
        ticks = 0
        while True:
            elapsed = loop.time() - start
            progress = min(elapsed / duration, 1.0) if duration > 0 else 1.0
            if job.params.get("progress"):
                job_log.debug("Progress: %s", progress)
                context.progress(progress)
            ticks += 1
            if ticks % 10 == 0:
                job_log.debug("Now is the ⏱ for all good 🏃 to come to the 🏥! %s", progress)
            if progress >= 1.0:
                break
            await asyncio.sleep(self.tick_seconds)

        job_log.debug("We're done!")
        perf.end()
        ceiling = perf.scale * (duration / 5)
        for name, low, high in (
            ("db_query", 0.0, 0.3),
            ("db_connect", 0.2, 0.5),
            ("log_read", 0.4, 0.7),
            ("gzip_data", 0.6, 0.9),
            ("http_post", 0.8, 1.0),
        ):
            perf.set_elapsed(name, self._rng.uniform(ceiling * low, ceiling * high))
        perf.count("lines", 52)
        perf.count("db_rows", 81)
        perf.count("db_conns", 8)
        perf.count("errors", 12)
        return perf


def parse_duration(raw: object, rng: random.Random) -> float:
    """Seconds from ``N`` or a random pick from ``LOW-HIGH``."""

    text = str(raw).strip()
    match = _RANGE.match(text)
    if match:
        low, high = int(match.group(1)), int(match.group(2))
        return float(round(low + rng.random() * (high - low)))
    try:
        value = float(text)
    except ValueError as error:
        raise PluginError(f"Invalid duration: {raw}") from error
    if value < 0:
        raise PluginError(f"Invalid duration: {raw}")
    return value


def _open_job_log(job: Job, context: PluginContext) -> tuple[logging.Logger, Path]:
    log_path = context.settings.temp_dir / f"satellite-test-plugin-{safe_job_id(job.id)}.log"
    try:
        context.settings.temp_dir.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_path, encoding="utf-8")
    except OSError as error:
        raise PluginError(f"Failed to open job log: {describe_error(error)}") from error
    job_log = logging.getLogger(f"{__name__}.job.{job.id}")
    job_log.setLevel(logging.DEBUG)
    job_log.propagate = False
    formatter = logging.Formatter("[%(asctime)s][%(levelname)s][%(name)s] %(message)s")
    for handler in (file_handler, _ContextLogHandler(context)):
        handler.setFormatter(formatter)
        job_log.addHandler(handler)
    return job_log, log_path


def _write_sample_report(job: Job, context: PluginContext) -> FileRef:
    path = context.settings.temp_dir / f"sample-report-{safe_job_id(job.id)}.txt"
    try:
        path.write_text(SAMPLE_REPORT + "\n", "utf-8")
    except OSError as error:
        raise PluginError(f"Failed to write sample report: {describe_error(error)}") from error
    return FileRef(path=str(path), filename=path.name, delete=True)


def _outcome(action: str, perf: Perf, job_log: logging.Logger) -> Update:
    metrics = perf.metrics()
    if action == "Success":
        job_log.debug("Simulating a successful response")
        return Update.completion(
            0,
            "Success!",
            perf=metrics,
            table=Table(
                title="Sample Job Stats",
                header=["IP Address", "DNS Lookup", "Flag", "Count", "Percentage"],
                rows=[list(row) for row in SAMPLE_TABLE_ROWS],
                caption=(
                    "This is an example stats table you can generate "
                    "from within your Plugin code."
                ),
            ),
            html=HtmlReport(
                title="Sample Job Report",
                content=f"<pre>{SAMPLE_REPORT}</pre>",
            ),
        )
    if action == "Error":
        job_log.debug("Simulating an error response")
        return Update.completion(
            999,
            "Simulating an error message here.  Something went wrong!",
            perf=metrics,
        )
    if action == "Warning":
        job_log.debug("Simulating a warning response")
        return Update.completion(
            AdvisoryCode.WARNING,
            "Simulating a warning message here.  Something is concerning!",
            perf=metrics,
        )
    job_log.debug("Simulating a critical response")
    return Update.completion(
        AdvisoryCode.CRITICAL,
        "Simulating a critical error message here.  Something is VERY wrong!",
        perf=metrics,
    )
