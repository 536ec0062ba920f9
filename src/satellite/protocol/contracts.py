"""Job and update record contracts exchanged with the orchestrator."""

from __future__ import annotations

import os
import time
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class AdvisoryCode(str, Enum):
    """Non-numeric terminal codes that are not strict failures."""

    WARNING = "warning"
    CRITICAL = "critical"


Code = int | str


class JobInputError(ValueError):
    """Inbound job record does not satisfy the job contract."""


@dataclass(frozen=True, slots=True)
class Job:
    """One unit of work, read exactly once from the orchestrator."""

    id: str
    params: Mapping[str, Any]
    cwd: str
    now: float
    record: Mapping[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class Table:
    """Tabular report attached to an update."""

    title: str
    header: list[str]
    rows: list[list[Any]]
    caption: str = ""


@dataclass(slots=True)
class HtmlReport:
    """HTML report attached to an update."""

    title: str
    content: str
    caption: str = ""


@dataclass(slots=True)
class FileRef:
    """File the orchestrator should collect (and optionally remove)."""

    path: str
    filename: str
    delete: bool = True


@dataclass(slots=True)
class Update:
    """Outbound progress or completion record."""

    progress: float | None = None
    complete: bool = False
    code: Code | None = None
    description: str | None = None
    data: dict[str, Any] | None = None
    table: Table | None = None
    html: HtmlReport | None = None
    perf: dict[str, Any] | None = None
    files: list[FileRef] | None = None

    def __post_init__(self) -> None:
        if self.progress is not None:
            self.progress = clamp_progress(self.progress)

    @classmethod
    def completion(cls, code: Code, description: str = "", **attachments: Any) -> Update:
        """Build a terminal record."""

        return cls(complete=True, code=code, description=description, **attachments)

    @property
    def succeeded(self) -> bool:
        return self.complete and self.code == 0

    def to_record(self, marker_key: str) -> dict[str, Any]:
        """Serialize to a JSON-safe mapping, omitting absent fields."""

        record: dict[str, Any] = {marker_key: True}
        if self.progress is not None:
            record["progress"] = self.progress
        if self.complete:
            record["complete"] = True
        if self.code is not None:
            record["code"] = self.code.value if isinstance(self.code, Enum) else self.code
        if self.description is not None:
            record["description"] = self.description
        if self.data is not None:
            record["data"] = self.data
        if self.table is not None:
            record["table"] = {
                "title": self.table.title,
                "header": list(self.table.header),
                "rows": [list(row) for row in self.table.rows],
                "caption": self.table.caption,
            }
        if self.html is not None:
            record["html"] = {
                "title": self.html.title,
                "content": self.html.content,
                "caption": self.html.caption,
            }
        if self.perf is not None:
            record["perf"] = self.perf
        if self.files is not None:
            record["files"] = [
                {"path": ref.path, "filename": ref.filename, "delete": ref.delete}
                for ref in self.files
            ]
        return record


def clamp_progress(value: float) -> float:
    """Clamp a fractional progress value into [0, 1]."""

    return max(0.0, min(1.0, float(value)))


def parse_job(raw: Any) -> Job:
    """Validate the first inbound record and build a job."""

    if not isinstance(raw, dict):
        raise JobInputError("Job record must be a JSON object")
    job_id = raw.get("id")
    params = raw.get("params", {})
    cwd = raw.get("cwd") or os.getcwd()
    now = raw.get("now", time.time())
    if isinstance(job_id, int) and not isinstance(job_id, bool):
        job_id = str(job_id)
    if not isinstance(job_id, str) or not job_id.strip():
        raise JobInputError("job.id must be a non-empty string")
    if not isinstance(params, dict):
        raise JobInputError("job.params must be an object")
    if not isinstance(cwd, str):
        raise JobInputError("job.cwd must be a string")
    if isinstance(now, bool) or not isinstance(now, (int, float)):
        raise JobInputError("job.now must be epoch seconds")
    return Job(id=job_id, params=params, cwd=cwd, now=float(now), record=raw)
