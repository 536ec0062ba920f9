"""Shared test fixtures."""

from __future__ import annotations

import asyncio
import io
import json
from dataclasses import dataclass, field

import pytest

from satellite.config import Settings, SupervisorSettings
from satellite.protocol.codec import JsonStream, encode_line

MARKER = "opsrocket"


@dataclass
class Channel:
    """In-memory stand-in for a plugin process's stdin/stdout."""

    output: io.BytesIO = field(default_factory=io.BytesIO)

    def stream(self, *inputs: object, raw: bytes = b"", tolerant: bool = False) -> JsonStream:
        """Build a stream fed with ``inputs`` as JSON lines; call inside a running loop."""

        reader = asyncio.StreamReader()
        for value in inputs:
            reader.feed_data(encode_line(value))
        if raw:
            reader.feed_data(raw)
        reader.feed_eof()
        return JsonStream(reader, self.output, tolerant=tolerant)

    def lines(self) -> list[str]:
        return self.output.getvalue().decode("utf-8").splitlines()

    def records(self) -> list[dict]:
        """Protocol records written so far, in order."""

        parsed = []
        for line in self.lines():
            if not line.startswith("{"):
                continue
            try:
                value = json.loads(line)
            except ValueError:
                continue
            if isinstance(value, dict) and value.get(MARKER):
                parsed.append(value)
        return parsed

    def terminal_records(self) -> list[dict]:
        return [record for record in self.records() if record.get("complete")]

    def text(self) -> str:
        return self.output.getvalue().decode("utf-8")


@pytest.fixture()
def channel() -> Channel:
    return Channel()


@pytest.fixture()
def settings(tmp_path) -> Settings:
    return Settings(
        temp_dir=tmp_path / "temp",
        marker_key=MARKER,
        supervisor=SupervisorSettings(kill_timeout_seconds=0.5, stream_drain_seconds=2.0),
    )
