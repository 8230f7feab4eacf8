import asyncio
import json
from pathlib import Path

from typer.testing import CliRunner

import flowsentry.persistence as persistence
from flowsentry.cli import app
from flowsentry.persistence import InMemoryWorkflowRepository, RunStatus

GRAPHS = Path(__file__).parent.parent / "fixtures" / "graphs"


def _setup_repo() -> InMemoryWorkflowRepository:
    repo = InMemoryWorkflowRepository()
    persistence._repository_instance = repo
    return repo


def test_graph_validate_accepts_fixture():
    runner = CliRunner()
    result = runner.invoke(app, ["graph", "validate", str(GRAPHS / "linear.json")])
    assert result.exit_code == 0, f"Command failed: {result.output}"
    assert "Graph OK: 3 nodes, 2 edges" in result.stdout


def test_graph_validate_reports_problems(tmp_path):
    path = tmp_path / "broken.json"
    path.write_text(json.dumps({"nodes": [{"id": "s", "data": {"type": "start"}}]}))
    runner = CliRunner()
    result = runner.invoke(app, ["graph", "validate", str(path)])
    assert result.exit_code == 1
    assert "no end node" in result.stdout

    result = runner.invoke(app, ["graph", "validate", str(tmp_path / "missing.json")])
    assert result.exit_code == 1
    assert "Graph file not found" in result.stdout


def test_run_start_with_variables():
    repo = _setup_repo()
    runner = CliRunner()
    result = runner.invoke(
        app,
        [
            "run",
            "start",
            str(GRAPHS / "switch.json"),
            "--var",
            "amount:int=150",
            "--var",
            "region=HK",
        ],
    )
    assert result.exit_code == 0, f"Command failed: {result.output}"
    run_id, status = result.stdout.strip().split("\t")
    assert status == RunStatus.COMPLETED

    steps = asyncio.run(repo.list_steps(run_id))
    assert "review" in [s.node_id for s in steps]
    amount = asyncio.run(repo.get_variable(run_id, "amount"))
    assert amount.data_type == "int"


def test_run_start_rejects_bad_variable():
    _setup_repo()
    runner = CliRunner()
    result = runner.invoke(
        app, ["run", "start", str(GRAPHS / "linear.json"), "--var", "amount:int=lots"]
    )
    assert result.exit_code == 1


def test_run_resume_and_show():
    repo = _setup_repo()
    runner = CliRunner()
    result = runner.invoke(
        app,
        ["run", "start", str(GRAPHS / "approval.json"), "--initiator", "85291111111"],
    )
    assert result.exit_code == 0, f"Command failed: {result.output}"
    run_id, status = result.stdout.strip().split("\t")
    assert status == RunStatus.WAITING

    result = runner.invoke(app, ["run", "list", "--status", "Waiting"])
    assert run_id in result.stdout

    result = runner.invoke(app, ["run", "resume", run_id, "--reply", "approved"])
    assert result.exit_code == 0, f"Command failed: {result.output}"
    assert result.stdout.strip() == f"{run_id}\t{RunStatus.COMPLETED}"

    result = runner.invoke(app, ["run", "show", run_id])
    assert result.exit_code == 0
    assert f"Run {run_id}: Completed" in result.stdout
    assert "ask (waitReply): Completed" in result.stdout

    result = runner.invoke(app, ["run", "resume", run_id])
    assert result.exit_code == 1
    assert "no waiting step" in result.stdout
    assert asyncio.run(repo.get_run(run_id)).status == RunStatus.COMPLETED


def test_run_list_and_show_missing():
    _setup_repo()
    runner = CliRunner()
    result = runner.invoke(app, ["run", "list"])
    assert result.exit_code == 0
    assert "No runs found" in result.stdout

    result = runner.invoke(app, ["run", "show", "missing-id"])
    assert result.exit_code == 1
    assert "Run not found" in result.stdout


def test_monitor_once_prints_each_check():
    _setup_repo()
    runner = CliRunner()
    result = runner.invoke(app, ["monitor", "--once"])
    assert result.exit_code == 0, f"Command failed: {result.output}"
    lines = result.stdout.strip().splitlines()
    assert [line.split("\t")[0] for line in lines] == [
        "retry_monitoring",
        "overdue_monitoring",
        "resource_sync",
        "scheduled_import",
    ]
    assert all(line.split("\t")[1] == "Skipped" for line in lines)


def test_monitor_respects_config_file(tmp_path, monkeypatch):
    _setup_repo()
    config_path = tmp_path / "flowsentry.yaml"
    config_path.write_text(
        """
monitoring:
  enable_resource_sync: false
  enable_scheduled_import: false
"""
    )
    runner = CliRunner()
    result = runner.invoke(app, ["--config", str(config_path), "monitor", "--once"])
    assert result.exit_code == 0, f"Command failed: {result.output}"
    assert len(result.stdout.strip().splitlines()) == 2
