from __future__ import annotations

import asyncio
import signal

import allure
import pytest

from satellite.plugins.base import PluginContext, PluginError
from satellite.protocol.codec import JsonRecord
from satellite.protocol.contracts import Update
from satellite.runtime.runner import read_job, run_plugin

pytestmark = [
    allure.epic("Plugin Runtime"),
    allure.feature("Job Lifecycle"),
]

JOB = {"id": "abc", "params": {}, "cwd": "/tmp", "now": 1700000000}


class _ScriptedPlugin:
    name = "scripted"
    handles_termination = False

    def __init__(self, *, update=None, error=None, progress=(), request_stop=False, wait=0.0):
        self.update = update or Update.completion(0, "ok")
        self.error = error
        self.progress = progress
        self.request_stop = request_stop
        self.wait = wait
        self.seen = []
        self.started = asyncio.Event()

    async def run(self, job, context: PluginContext) -> Update:
        self.seen.append(job.id)
        self.started.set()
        for value in self.progress:
            context.progress(value)
        if self.request_stop:
            context.request_termination("SIGTERM")
        if self.wait:
            await asyncio.sleep(self.wait)
        if self.error is not None:
            raise self.error
        return self.update


def _run(plugin, settings, channel, *inputs, raw=b"", **kwargs):
    async def scenario():
        stream = channel.stream(*inputs, raw=raw)
        return await run_plugin(plugin, settings, stream, **kwargs)

    return asyncio.run(scenario())


def test_terminal_record_is_written_once_and_last(settings, channel) -> None:
    plugin = _ScriptedPlugin(progress=(0.2, 0.7))

    update = _run(plugin, settings, channel, JOB)

    records = channel.records()
    assert [record.get("progress") for record in records[:-1]] == [0.2, 0.7]
    assert records[-1] == {"opsrocket": True, "complete": True, "code": 0, "description": "ok"}
    assert len(channel.terminal_records()) == 1
    assert update.succeeded


def test_plugin_error_becomes_terminal_failure(settings, channel) -> None:
    plugin = _ScriptedPlugin(error=PluginError("HTTP 404 Not Found", code=404))

    _run(plugin, settings, channel, JOB)

    assert channel.terminal_records() == [
        {"opsrocket": True, "complete": True, "code": 404, "description": "HTTP 404 Not Found"},
    ]


def test_unparseable_job_reports_input_failure(settings, channel) -> None:
    plugin = _ScriptedPlugin()

    update = _run(plugin, settings, channel, raw=b"this is not json\n")

    assert update.code == 1
    assert update.description.startswith("Failed to parse job record")
    assert plugin.seen == []
    assert len(channel.terminal_records()) == 1


def test_invalid_job_reports_input_failure(settings, channel) -> None:
    plugin = _ScriptedPlugin()

    update = _run(plugin, settings, channel, {"params": {}})

    assert update.code == 1
    assert update.description == "job.id must be a non-empty string"
    assert plugin.seen == []


def test_closed_input_without_job_writes_nothing(settings, channel) -> None:
    plugin = _ScriptedPlugin()

    assert _run(plugin, settings, channel) is None
    assert channel.lines() == []


def test_only_the_first_job_is_read(settings, channel) -> None:
    plugin = _ScriptedPlugin()

    async def scenario():
        stream = channel.stream(JOB, {**JOB, "id": "second"})
        await run_plugin(plugin, settings, stream, install_signal_handlers=False)
        return await stream.read_event()

    leftover = asyncio.run(scenario())

    assert plugin.seen == ["abc"]
    assert leftover == JsonRecord({**JOB, "id": "second"})


def test_unexpected_exception_propagates_without_terminal_record(settings, channel) -> None:
    plugin = _ScriptedPlugin(error=ZeroDivisionError("bug"))

    with pytest.raises(ZeroDivisionError):
        _run(plugin, settings, channel, JOB)

    assert channel.terminal_records() == []


def test_termination_cancels_direct_work_with_failure_record(settings, channel) -> None:
    plugin = _ScriptedPlugin(request_stop=True, wait=30)

    update = _run(plugin, settings, channel, JOB, install_signal_handlers=False)

    assert update.code == 1
    assert update.description == "Job aborted: SIGTERM"
    assert len(channel.terminal_records()) == 1


def test_sigterm_signal_is_routed_to_the_job(settings, channel) -> None:
    plugin = _ScriptedPlugin(wait=30)

    async def scenario():
        stream = channel.stream(JOB)
        task = asyncio.create_task(run_plugin(plugin, settings, stream))
        await plugin.started.wait()
        signal.raise_signal(signal.SIGTERM)
        return await task

    update = asyncio.run(scenario())

    assert update.description == "Job aborted: SIGTERM"
    assert channel.terminal_records()[-1]["code"] == 1


def test_plugins_handling_termination_are_not_cancelled(settings, channel) -> None:
    class _Cooperative:
        name = "cooperative"
        handles_termination = True

        async def run(self, job, context):
            context.request_termination("SIGINT")
            await context.termination.wait()
            return Update.completion("SIGINT", "Stopped politely")

    update = _run(_Cooperative(), settings, channel, JOB, install_signal_handlers=False)

    assert update.code == "SIGINT"
    assert channel.terminal_records()[0]["description"] == "Stopped politely"


def test_context_refuses_records_after_completion(settings, channel) -> None:
    async def scenario():
        context = PluginContext(settings=settings, stream=channel.stream())
        context.finish(Update.completion(0))
        with pytest.raises(RuntimeError, match="already completed"):
            context.progress(0.5)
        with pytest.raises(RuntimeError, match="already completed"):
            context.finish(Update.completion(1))

    asyncio.run(scenario())

    assert len(channel.terminal_records()) == 1


def test_read_job_returns_none_on_empty_input(channel) -> None:
    async def scenario():
        return await read_job(channel.stream())

    assert asyncio.run(scenario()) is None
