"""Wire protocol between plugin processes and the orchestrator."""

from satellite.protocol.codec import (
    JsonRecord,
    JsonStream,
    LineError,
    LineKind,
    ProgressSignal,
    StreamEvent,
    TextLine,
    classify_line,
    encode_line,
    parse_line,
)
from satellite.protocol.contracts import (
    AdvisoryCode,
    FileRef,
    HtmlReport,
    Job,
    JobInputError,
    Table,
    Update,
    clamp_progress,
    parse_job,
)

__all__ = [
    "AdvisoryCode",
    "FileRef",
    "HtmlReport",
    "Job",
    "JobInputError",
    "JsonRecord",
    "JsonStream",
    "LineError",
    "LineKind",
    "ProgressSignal",
    "StreamEvent",
    "Table",
    "TextLine",
    "Update",
    "clamp_progress",
    "classify_line",
    "encode_line",
    "parse_job",
    "parse_line",
]
