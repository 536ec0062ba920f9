from __future__ import annotations

import json

import allure
import pytest
from click.testing import CliRunner

from satellite.main import satellite

pytestmark = [
    allure.epic("Plugin Runtime"),
    allure.feature("CLI"),
]


@pytest.fixture()
def runner(tmp_path) -> CliRunner:
    return CliRunner(env={"SATELLITE_TEMP_DIR": str(tmp_path), "SATELLITE_MARKER_KEY": None})


def _stdout_records(result) -> list[dict]:
    records = []
    for line in result.stdout.splitlines():
        if line.startswith("{"):
            records.append(json.loads(line))
    return records


def test_plugins_command_lists_plugin_names(runner) -> None:
    result = runner.invoke(satellite, ["plugins"])

    assert result.exit_code == 0
    assert result.stdout.split() == ["http", "shell", "test"]


def test_unknown_plugin_is_rejected(runner) -> None:
    result = runner.invoke(satellite, ["plugin", "nope"])

    assert result.exit_code == 1
    assert "Unknown plugin: nope" in result.output


def test_plugin_command_runs_job_from_stdin(runner) -> None:
    job = {"id": "cli", "params": {"action": "Error"}, "cwd": "/tmp", "now": 1700000000}

    result = runner.invoke(satellite, ["plugin", "test"], input=json.dumps(job) + "\n")

    assert result.exit_code == 0, result.output
    terminal = _stdout_records(result)[-1]
    assert terminal["opsrocket"] is True
    assert terminal["complete"] is True
    assert terminal["code"] == 999


def test_http_plugin_rejects_malformed_url_from_cli(runner) -> None:
    job = {"id": "cli", "params": {"url": "ftp://x"}}

    result = runner.invoke(satellite, ["plugin", "http"], input=json.dumps(job) + "\n")

    assert result.exit_code == 0, result.output
    assert _stdout_records(result) == [
        {"opsrocket": True, "complete": True, "code": 1, "description": "Malformed URL: ftp://x"},
    ]


def test_missing_job_exits_nonzero(runner) -> None:
    result = runner.invoke(satellite, ["plugin", "shell"], input="")

    assert result.exit_code == 1
    assert result.stdout == ""


def test_invalid_configuration_is_reported(runner) -> None:
    result = runner.invoke(satellite, ["plugins"], env={"SATELLITE_MARKER_KEY": " "})

    assert result.exit_code == 0

    result = runner.invoke(satellite, ["plugin", "test"], env={"SATELLITE_MARKER_KEY": " "})

    assert result.exit_code == 1
    assert "Invalid configuration" in result.output
