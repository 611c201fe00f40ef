from __future__ import annotations

import argparse
import importlib.util
import json
from pathlib import Path

import pytest

from conftest import make_task
from shipyard_mcp.config import ShipyardSettings
from shipyard_mcp.storage import ChromaUnavailableError, ExecutionStatus, YamlTaskRepository

SCRIPTS = Path(__file__).resolve().parents[1] / "scripts"


def _load_script(name: str, alias: str):
    spec = importlib.util.spec_from_file_location(alias, SCRIPTS / f"{name}.py")
    assert spec and spec.loader
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


def _settings(tmp_path: Path) -> ShipyardSettings:
    settings = ShipyardSettings(_env_file=None)
    settings.repo_root = tmp_path
    settings.tasks_file = tmp_path / "tasks.yaml"
    settings.github_token = None
    settings.github_repo = None
    settings.credentials_file = tmp_path / "missing.json"
    return settings


@pytest.fixture
def diag(monkeypatch, tmp_path, store):
    module = _load_script("shipyard_diag", "shipyard_diag_test_module")
    monkeypatch.setattr(module, "get_settings", lambda: _settings(tmp_path))
    monkeypatch.setattr(module, "load_store", lambda _settings: store)
    return module


@pytest.fixture
def sync_cli(monkeypatch, tmp_path):
    module = _load_script("shipyard_sync", "shipyard_sync_test_module")
    monkeypatch.setattr(module, "get_settings", lambda: _settings(tmp_path))
    return module


def test_diagnostics_report_chroma_unavailable(monkeypatch, capsys, diag) -> None:
    class UnavailableStore:
        def list_workspaces(self):
            raise ChromaUnavailableError("chromadb package is not installed")

    monkeypatch.setattr(diag, "load_store", lambda _settings: UnavailableStore())

    with pytest.raises(SystemExit) as excinfo:
        diag.cmd_workspaces(argparse.Namespace(task_id=None, json=False))

    assert excinfo.value.code == 1
    assert "Chroma unavailable" in capsys.readouterr().out


def test_metrics_counts_workspaces_and_executions(capsys, diag, store) -> None:
    pinned = store.upsert_workspace(task_source="file", task_id="t1", path="/w/t1", branch="task/t1")
    store.pin_workspace(pinned.id)
    pending = store.upsert_workspace(task_source="file", task_id="t2", path="/w/t2", branch="task/t2")
    store.mark_pending_cleanup(pending.id)
    parent = store.create_execution(task_source="file", task_id="t1", task_title="One", agent_session_id="s1")
    store.complete_execution(parent.id, status=ExecutionStatus.COMPLETED)
    store.create_execution(task_source="file", task_id="t2", task_title="Two")
    store.create_subagent_execution(parent_session_id="s1", subagent_type="Explore", prompt="x", total_tokens=300)

    diag.cmd_metrics(argparse.Namespace())

    payload = json.loads(capsys.readouterr().out)
    assert payload["workspaces_total"] == 2
    assert payload["workspaces_pinned"] == 1
    assert payload["workspaces_pending_cleanup"] == 1
    assert payload["executions_total"] == 3
    assert payload["execution_status_counts"] == {"completed": 2, "running": 1}
    assert payload["subagent_executions"] == 1
    assert payload["subagent_tokens"] == 300


def test_workspaces_listing_filters_by_task(capsys, diag, store) -> None:
    store.upsert_workspace(task_source="file", task_id="t1", path="/w/t1", branch="task/t1")
    store.upsert_workspace(task_source="file", task_id="t2", path="/w/t2", branch="task/t2")

    diag.cmd_workspaces(argparse.Namespace(task_id="t2", json=True))

    payload = json.loads(capsys.readouterr().out)
    assert [record["task_id"] for record in payload] == ["t2"]


def test_logs_prints_chunks_in_order(capsys, diag, store) -> None:
    execution = store.create_execution(task_source="file", task_id="t1", task_title="One")
    store.append_log_chunk(execution.id, "stdout", "building\n")
    store.append_log_chunk(execution.id, "stderr", "warning: slow")

    diag.cmd_logs(argparse.Namespace(execution_id=execution.id))

    assert capsys.readouterr().out == "[stdout] building\n[stderr] warning: slow\n"


def test_logs_for_unknown_execution(capsys, diag) -> None:
    with pytest.raises(SystemExit) as excinfo:
        diag.cmd_logs(argparse.Namespace(execution_id="missing"))

    assert excinfo.value.code == 1
    assert "Execution missing not found" in capsys.readouterr().out


def test_sync_cli_requires_github_configuration(capsys, monkeypatch, sync_cli) -> None:
    monkeypatch.delenv("GITHUB_TOKEN", raising=False)

    with pytest.raises(SystemExit) as excinfo:
        sync_cli.main(["sync"])

    assert excinfo.value.code == 2
    assert "GitHub is not configured" in capsys.readouterr().out


def test_sync_cli_health(capsys, monkeypatch, sync_cli, fake_github) -> None:
    monkeypatch.setattr(sync_cli, "build_client", lambda _settings: fake_github.client())

    sync_cli.main(["health"])

    payload = json.loads(capsys.readouterr().out)
    assert payload["healthy"] is True
    assert payload["user"] == "octocat"


def test_sync_cli_health_fails_on_rejected_token(capsys, monkeypatch, sync_cli, fake_github) -> None:
    fake_github.failures[("GET", "/user")] = 401
    monkeypatch.setattr(sync_cli, "build_client", lambda _settings: fake_github.client())

    with pytest.raises(SystemExit) as excinfo:
        sync_cli.main(["health"])

    assert excinfo.value.code == 1
    assert json.loads(capsys.readouterr().out)["authenticated"] is False


def test_sync_cli_push_pass_writes_issue_numbers(capsys, monkeypatch, sync_cli, fake_github, tmp_path) -> None:
    YamlTaskRepository(tmp_path / "tasks.yaml").add_task(make_task())
    monkeypatch.setattr(sync_cli, "build_client", lambda _settings: fake_github.client())

    sync_cli.main(["sync", "--direction", "push"])

    payload = json.loads(capsys.readouterr().out)
    assert payload["summary"]["pushed"] == 1
    assert YamlTaskRepository(tmp_path / "tasks.yaml").list_tasks()[0].issue_number == 1
