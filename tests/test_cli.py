"""End-to-end CLI flow against the fake SSH host"""

import json

import asyncssh
import pytest
from click.testing import CliRunner

from pbdeploy.database import get_session_factory
from pbdeploy.main import cli
from pbdeploy.models import DeploymentRecord
from pbdeploy.services import StateService

from conftest import make_artifact


@pytest.fixture
def invoke(tmp_path, monkeypatch, connector):
    monkeypatch.setenv("PBDEPLOY_HOME", str(tmp_path))
    for name in ("PBDEPLOY_DB_URL", "PBDEPLOY_LOG_DIR", "PBDEPLOY_ADMIN_EMAIL", "PBDEPLOY_ADMIN_PASSWORD"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setattr(asyncssh, "connect", connector)
    runner = CliRunner()

    def run(*args):
        result = runner.invoke(cli, list(args))
        assert result.exit_code == 0, result.output
        return result

    return run


@pytest.fixture
def artifact_file(tmp_path):
    path = tmp_path / "blog-1.0.0.zip"
    path.write_bytes(make_artifact())
    return path


@pytest.fixture
def locked_server(invoke, connector):
    invoke("servers:add", "prod", "203.0.113.10")
    invoke("setup", "prod")
    invoke("lockdown", "prod", "--yes")
    return connector


def test_full_flow(invoke, locked_server, remote, artifact_file, tmp_path):
    invoke("apps:add", "blog", "--server", "prod")
    invoke("versions:add", "blog", "1.0.0", str(artifact_file))

    result = invoke(
        "deploy", "blog", "1.0.0",
        "--admin-email", "admin@example.com", "--admin-password", "s3cret-pass",
        "--json",
    )
    output = json.loads(result.stdout)

    assert output["deployment"]["status"] == "success"
    assert output["app"]["status"] == "online"
    assert output["app"]["current_version"] == "1.0.0"
    assert output["events"][-1]["step"] == "complete"
    assert "s3cret-pass" not in output["deployment"]["logs"]

    listed = json.loads(invoke("deployments:list", "--app", "blog", "--json").stdout)
    assert [d["id"] for d in listed] == [output["deployment"]["id"]]

    shown = json.loads(invoke("deployments:show", output["deployment"]["id"], "--json").stdout)
    assert shown["status"] == "success"
    assert not shown["can_retry"]

    stats = json.loads(invoke("deployments:stats", "--json").stdout)
    assert stats["total"] == 1
    assert stats["success_rate"] == 100.0

    status = json.loads(invoke("service:status", "blog", "--json").stdout)
    assert status["service"]["state"] == "running"

    assert (tmp_path / "pbdeploy.db").exists()


def test_lockdown_moves_commands_to_app_user(invoke, locked_server, remote, artifact_file):
    users = [call["username"] for call in locked_server.calls]
    assert users[0] == "root"
    assert users[-1] == "pocketbase"

    servers = json.loads(invoke("servers:list", "--json").stdout)
    assert servers[0]["setup_complete"]
    assert servers[0]["security_locked"]

    root_calls = users.count("root")
    invoke("apps:add", "blog", "--server", "prod")
    invoke("versions:add", "blog", "1.0.0", str(artifact_file))
    invoke("deploy", "blog", "1.0.0", "--admin-email", "admin@example.com", "--admin-password", "s3cret-pass")

    assert [call["username"] for call in locked_server.calls].count("root") == root_calls


def test_deploy_before_lockdown_is_rejected(invoke, artifact_file, tmp_path, monkeypatch, connector):
    invoke("servers:add", "prod", "203.0.113.10")
    invoke("apps:add", "blog", "--server", "prod")
    invoke("versions:add", "blog", "1.0.0", str(artifact_file))

    result = CliRunner().invoke(
        cli,
        ["deploy", "blog", "1.0.0", "--admin-email", "admin@example.com", "--admin-password", "x"],
    )

    assert result.exit_code == 1
    assert connector.calls == []


def test_unknown_version_is_reported(invoke, locked_server):
    invoke("apps:add", "blog", "--server", "prod")

    result = CliRunner().invoke(cli, ["deploy", "blog", "9.9.9"])

    assert result.exit_code == 1
    assert "versions:list blog" in result.output


def test_cancel_marks_orphaned_deployment_failed(invoke, artifact_file, tmp_path, connector):
    invoke("servers:add", "prod", "203.0.113.10")
    invoke("apps:add", "blog", "--server", "prod")
    invoke("versions:add", "blog", "1.0.0", str(artifact_file))

    state = StateService(get_session_factory(f"sqlite:///{tmp_path / 'pbdeploy.db'}"))
    app = state.get_app("blog")
    (version,) = state.list_versions(app.id)
    # Left running by a process that died mid-deploy
    record = DeploymentRecord(id="dep-orphan", app_id=app.id, version_id=version.id)
    record.start()
    state.save_deployment(record)

    cancelled = json.loads(invoke("deployments:cancel", "dep-orphan", "--json").stdout)

    assert cancelled["status"] == "failed"
    assert "canceled by user" in cancelled["logs"]
    assert not cancelled["can_cancel"]
    assert state.get_deployment("dep-orphan").status.value == "failed"
    assert connector.calls == []

    again = CliRunner().invoke(cli, ["deployments:cancel", "dep-orphan"])
    assert again.exit_code == 1
