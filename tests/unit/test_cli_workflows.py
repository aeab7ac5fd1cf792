import asyncio

from typer.testing import CliRunner

import crmflow.persistence as persistence
from crmflow.cli import app
from crmflow.persistence import WORKFLOWS, InMemoryDataStore

DEFINITION = """
name: welcome-series
trigger:
  type: contact_created
steps:
  - kind: action
    channel: email
    template: "Hi {{ contact.first_name }}"
"""


def _setup_store() -> InMemoryDataStore:
    store = InMemoryDataStore()
    persistence._store_instance = store
    return store


def test_workflow_load_and_list(tmp_path):
    store = _setup_store()
    path = tmp_path / "welcome.yaml"
    path.write_text(DEFINITION)

    runner = CliRunner()
    result = runner.invoke(app, ["workflow", "load", str(path), "--activate"])
    assert (
        result.exit_code == 0
    ), f"Command failed with exit code {result.exit_code}. Output: {result.output}"
    assert "active" in result.output, f"Status not found in output: {result.output}"

    [record] = asyncio.run(store.find_many(WORKFLOWS))
    assert record["status"] == "active"

    result = runner.invoke(app, ["workflow", "list"])
    assert (
        result.exit_code == 0
    ), f"Command failed with exit code {result.exit_code}. Output: {result.output}"
    assert record["id"] in result.output, f"Workflow ID not found in output: {result.output}"
    assert "welcome-series" in result.output
    assert "entered=0" in result.output


def test_workflow_list_empty():
    _setup_store()
    result = CliRunner().invoke(app, ["workflow", "list"])
    assert result.exit_code == 0
    assert "No workflows found" in result.output


def test_workflow_load_rejects_bad_definitions(tmp_path):
    _setup_store()
    runner = CliRunner()

    missing = runner.invoke(app, ["workflow", "load", str(tmp_path / "missing.yaml")])
    assert missing.exit_code == 1, f"Expected exit code 1, got {missing.exit_code}. Output: {missing.output}"
    assert "File not found" in missing.output

    path = tmp_path / "bad.yaml"
    path.write_text(
        "name: bad\ntrigger: {type: tag_added}\nsteps:\n  - {kind: action, channel: sms, next: nowhere}\n"
    )
    bad = runner.invoke(app, ["workflow", "load", str(path)])
    assert bad.exit_code == 1, f"Expected exit code 1, got {bad.exit_code}. Output: {bad.output}"
    assert "Invalid workflow definition" in bad.output


def test_workflow_status_commands(tmp_path):
    store = _setup_store()
    path = tmp_path / "welcome.yaml"
    path.write_text(DEFINITION)
    runner = CliRunner()
    runner.invoke(app, ["workflow", "load", str(path)])
    [record] = asyncio.run(store.find_many(WORKFLOWS))
    workflow_id = record["id"]

    for command, status in [
        ("activate", "active"),
        ("pause", "paused"),
        ("archive", "archived"),
    ]:
        result = runner.invoke(app, ["workflow", command, workflow_id])
        assert (
            result.exit_code == 0
        ), f"{command} failed with exit code {result.exit_code}. Output: {result.output}"
        assert f"Workflow {workflow_id}: {status}" in result.output

    result = runner.invoke(app, ["workflow", "activate", workflow_id])
    assert result.exit_code == 1, f"Expected exit code 1, got {result.exit_code}. Output: {result.output}"
    assert "cannot move workflow" in result.output

    result = runner.invoke(app, ["workflow", "pause", "missing-id"])
    assert result.exit_code == 1
    assert "not found" in result.output
