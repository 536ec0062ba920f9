"""Newline-delimited JSON framing over a duplex byte channel.

Outbound values are serialized to exactly one line each and flushed
immediately. Inbound lines are turned into a lazy sequence of events:

* strict mode: every non-blank line must be JSON, otherwise a
  ``LineError`` carrying the raw text is produced and reading continues;
* tolerant mode: each line is first classified (JSON object shape, bare
  percentage, plain text) and only object-shaped lines are parsed.
"""

from __future__ import annotations

import asyncio
import json
import re
from collections.abc import AsyncIterator
from dataclasses import dataclass
from enum import Enum
from typing import Any, BinaryIO

from satellite.protocol.contracts import clamp_progress

LINE_LIMIT_BYTES = 16 * 1024 * 1024

_OBJECT_SHAPE = re.compile(r"^\s*\{.*\}\s*$", re.DOTALL)
# With a percent sign any number counts (clamped later); bare numbers must be 0-100.
_PERCENT_SHAPE = re.compile(
    r"^\s*(?:(\d+(?:\.\d+)?)\s*%|(100(?:\.0+)?|\d{1,2}(?:\.\d+)?))\s*$",
)


class LineKind(str, Enum):
    """Classification of one line of tolerant input."""

    JSON = "json"
    PERCENT = "percent"
    TEXT = "text"


@dataclass(frozen=True, slots=True)
class JsonRecord:
    value: Any


@dataclass(frozen=True, slots=True)
class ProgressSignal:
    progress: float


@dataclass(frozen=True, slots=True)
class TextLine:
    text: str


@dataclass(frozen=True, slots=True)
class LineError:
    """A line that looked like JSON but did not parse."""

    text: str
    error: str


StreamEvent = JsonRecord | ProgressSignal | TextLine | LineError


def classify_line(line: str) -> LineKind:
    """Classify a line; object shape wins over percentage, text is the fallback."""

    if _OBJECT_SHAPE.match(line):
        return LineKind.JSON
    if _PERCENT_SHAPE.match(line):
        return LineKind.PERCENT
    return LineKind.TEXT


def parse_line(line: str, *, tolerant: bool) -> StreamEvent:
    """Turn one line (without its newline) into a stream event."""

    if tolerant:
        kind = classify_line(line)
        if kind is LineKind.PERCENT:
            match = _PERCENT_SHAPE.match(line)
            assert match is not None
            value = match.group(1) or match.group(2)
            return ProgressSignal(clamp_progress(float(value) / 100))
        if kind is LineKind.TEXT:
            return TextLine(line)

    try:
        value = json.loads(line)
    except ValueError as error:
        return LineError(text=line, error=str(error))
    return JsonRecord(value)


def encode_line(value: Any) -> bytes:
    """Serialize a JSON-safe value into one newline-terminated line."""

    # json.dumps escapes control characters, so the payload never holds a raw newline.
    return json.dumps(value, ensure_ascii=False, separators=(",", ":")).encode("utf-8") + b"\n"


class JsonStream:
    """Line-oriented JSON reader/writer bound to a pair of byte channels."""

    def __init__(
        self,
        reader: asyncio.StreamReader | None,
        writer: BinaryIO | None,
        *,
        tolerant: bool = False,
    ) -> None:
        self._reader = reader
        self._writer = writer
        self.tolerant = tolerant
        self._iterating = False

    def write(self, value: Any) -> None:
        """Write one JSON value as a single flushed line."""

        self._write_bytes(encode_line(value))

    def write_text(self, text: str | bytes) -> None:
        """Write raw log output (not a protocol record)."""

        payload = text.encode("utf-8") if isinstance(text, str) else text
        self._write_bytes(payload)

    def _write_bytes(self, payload: bytes) -> None:
        if self._writer is None:
            raise RuntimeError("JsonStream has no output channel")
        self._writer.write(payload)
        self._writer.flush()

    async def read_event(self) -> StreamEvent | None:
        """Return the next event, or None once the input channel is exhausted."""

        if self._reader is None:
            raise RuntimeError("JsonStream has no input channel")
        while True:
            try:
                raw = await self._reader.readline()
            except ValueError as error:
                # StreamReader drops a line longer than its limit and raises.
                return LineError(text="", error=str(error))
            if not raw:
                return None
            line = raw.decode("utf-8", errors="replace").rstrip("\r\n")
            if not line.strip():
                continue
            return parse_line(line, tolerant=self.tolerant)

    def __aiter__(self) -> AsyncIterator[StreamEvent]:
        if self._iterating:
            raise RuntimeError("JsonStream input can only be iterated once")
        self._iterating = True
        return self._events()

    async def _events(self) -> AsyncIterator[StreamEvent]:
        while True:
            event = await self.read_event()
            if event is None:
                return
            yield event
