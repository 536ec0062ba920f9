"""Run the job's script body as a supervised child process.

Job params: ``script`` (required), ``annotate`` (timestamp relayed log
lines), ``json`` (forward child JSON records, default true).
"""

from __future__ import annotations

import os
import tempfile
from pathlib import Path

from satellite.errors import describe_error
from satellite.plugins.base import PluginContext, PluginError, safe_job_id
from satellite.protocol.contracts import Job, Update
from satellite.runtime.supervisor import ChildCommand, ProcessSupervisor

DEFAULT_INTERPRETER = "#!/bin/sh\n"


class ShellPlugin:
    """Persist the script to an executable temp file and supervise it."""

    name = "shell"
    handles_termination = True

    async def run(self, job: Job, context: PluginContext) -> Update:
        script = job.params.get("script")
        if not isinstance(script, str) or not script.strip():
            raise PluginError("Missing required parameter: script")

        script_file = write_script(context.settings.temp_dir, job.id, script)
        command = ChildCommand(
            program=str(script_file.resolve()),
            cwd=job.cwd if os.path.isdir(job.cwd) else tempfile.gettempdir(),
            payload=dict(job.record),
            cleanup_file=script_file,
            annotate=bool(job.params.get("annotate")),
            forward_json=bool(job.params.get("json", True)),
        )
        supervisor = ProcessSupervisor(context.settings, context.stream)
        return await supervisor.run(command, context.termination)


def write_script(temp_dir: Path, job_id: str, script: str) -> Path:
    """Write ``script`` to a uniquely named, executable file for ``job_id``."""

    if not script.startswith("#!"):
        script = DEFAULT_INTERPRETER + script
    try:
        temp_dir.mkdir(parents=True, exist_ok=True)
        handle, raw_path = tempfile.mkstemp(
            prefix=f"satellite-script-{safe_job_id(job_id)}-",
            suffix=".sh",
            dir=temp_dir,
        )
    except OSError as error:
        raise PluginError(f"Failed to create script file: {describe_error(error)}") from error

    path = Path(raw_path)
    try:
        with os.fdopen(handle, "w", encoding="utf-8") as script_handle:
            script_handle.write(script)
        path.chmod(0o775)
    except OSError as error:
        path.unlink(missing_ok=True)
        raise PluginError(f"Failed to write script file: {describe_error(error)}") from error
    return path
