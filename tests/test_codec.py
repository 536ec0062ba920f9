from __future__ import annotations

import asyncio
import json

import allure
import pytest

from satellite.protocol.codec import (
    JsonRecord,
    LineError,
    LineKind,
    ProgressSignal,
    TextLine,
    classify_line,
    encode_line,
    parse_line,
)

pytestmark = [
    allure.epic("Job Protocol"),
    allure.feature("Stream Codec"),
]


@pytest.mark.parametrize(
    ("line", "kind"),
    [
        ('{"progress": 0.5}', LineKind.JSON),
        ('  {"a": 1}  ', LineKind.JSON),
        ("{not json at all}", LineKind.JSON),
        ("42%", LineKind.PERCENT),
        (" 100 ", LineKind.PERCENT),
        ("150%", LineKind.PERCENT),
        ("12.5%", LineKind.PERCENT),
        ("99.9", LineKind.PERCENT),
        ("2024", LineKind.TEXT),
        ("100.5", LineKind.TEXT),
        ("Processing 42% of files", LineKind.TEXT),
        ("-5%", LineKind.TEXT),
        ("[1, 2, 3]", LineKind.TEXT),
        ("hello", LineKind.TEXT),
    ],
)
def test_classify_line(line: str, kind: LineKind) -> None:
    assert classify_line(line) is kind


def test_tolerant_percentage_becomes_progress_fraction() -> None:
    assert parse_line("42%", tolerant=True) == ProgressSignal(0.42)
    assert parse_line("7", tolerant=True) == ProgressSignal(0.07)


def test_tolerant_percentage_above_hundred_is_clamped() -> None:
    assert parse_line("150%", tolerant=True) == ProgressSignal(1.0)


def test_bare_number_above_hundred_is_plain_text() -> None:
    assert parse_line("2024", tolerant=True) == TextLine("2024")
    assert parse_line("100", tolerant=True) == ProgressSignal(1.0)


def test_tolerant_object_line_is_parsed() -> None:
    assert parse_line('{"progress": 0.5, "x": [1]}', tolerant=True) == JsonRecord(
        {"progress": 0.5, "x": [1]},
    )


def test_tolerant_plain_text_is_kept_verbatim() -> None:
    assert parse_line("  building target  ", tolerant=True) == TextLine("  building target  ")


def test_malformed_object_line_reports_raw_text() -> None:
    event = parse_line("{oops}", tolerant=True)

    assert isinstance(event, LineError)
    assert event.text == "{oops}"
    assert event.error


def test_strict_mode_parses_any_json_value() -> None:
    assert parse_line("[1, 2]", tolerant=False) == JsonRecord([1, 2])
    assert parse_line("42", tolerant=False) == JsonRecord(42)


def test_strict_mode_reports_non_json_without_stopping(channel) -> None:
    async def scenario():
        stream = channel.stream({"id": 1}, raw=b"not json\n\n" + encode_line({"id": 2}))
        return [event async for event in stream]

    events = asyncio.run(scenario())

    assert events[0] == JsonRecord({"id": 1})
    assert isinstance(events[1], LineError)
    assert events[1].text == "not json"
    assert events[2] == JsonRecord({"id": 2})
    assert len(events) == 3


def test_stream_can_only_be_iterated_once(channel) -> None:
    async def scenario():
        stream = channel.stream({"id": 1})
        first = [event async for event in stream]
        with pytest.raises(RuntimeError, match="only be iterated once"):
            stream.__aiter__()
        return first

    assert asyncio.run(scenario()) == [JsonRecord({"id": 1})]


def test_encoded_line_never_contains_embedded_newline() -> None:
    payload = encode_line({"text": "line one\nline two\r\n", "emoji": "⏱"})

    assert payload.endswith(b"\n")
    assert payload.count(b"\n") == 1
    assert json.loads(payload) == {"text": "line one\nline two\r\n", "emoji": "⏱"}


def test_values_written_and_read_back_are_equal(channel) -> None:
    values = [
        {"nested": {"list": [1, 2.5, None, True], "s": "tab\there"}},
        [],
        "plain string",
        0,
        None,
    ]

    async def scenario():
        writer = channel.stream()
        for value in values:
            writer.write(value)
        reader = channel.stream(raw=channel.output.getvalue())
        return [event.value async for event in reader]

    assert asyncio.run(scenario()) == values


def test_write_text_is_not_wrapped_as_json(channel) -> None:
    async def scenario():
        stream = channel.stream()
        stream.write_text("plain log line\n")
        stream.write({"a": 1})

    asyncio.run(scenario())

    assert channel.lines() == ["plain log line", '{"a":1}']
