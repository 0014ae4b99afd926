"""Tests for domain models"""

from datetime import datetime, timezone

import pytest

from pbdeploy.exceptions import StateError
from pbdeploy.models import (
    AppStatus,
    ConnectionKey,
    DeploymentRecord,
    DeploymentStatus,
    ManagedApplication,
    ServerTarget,
    subscription_key,
)
from pbdeploy.utils import append_capped_log


@pytest.fixture
def record():
    return DeploymentRecord(id="dep1", app_id="app1", version_id="ver1")


def test_record_lifecycle(record):
    assert record.can_cancel
    assert record.duration_seconds is None

    record.start()
    assert record.is_running
    record.append_log("Staging release")
    record.succeed()

    assert record.status == DeploymentStatus.SUCCESS
    assert record.completed_at >= record.started_at
    assert "Staging release" in record.logs
    assert "completed successfully (duration:" in record.logs
    assert not record.can_cancel
    assert not record.can_retry


def test_pending_record_can_fail_directly(record):
    record.fail("Deployment canceled by user")

    assert record.status == DeploymentStatus.FAILED
    assert record.can_retry
    assert record.started_at is None


@pytest.mark.parametrize("finish", ["succeed", "fail"])
def test_terminal_records_are_immutable(record, finish):
    record.start()
    if finish == "succeed":
        record.succeed()
    else:
        record.fail("boom")

    with pytest.raises(StateError):
        record.append_log("late line")
    with pytest.raises(StateError):
        record.fail("again")
    with pytest.raises(StateError):
        record.start()


def test_pending_record_cannot_succeed(record):
    with pytest.raises(StateError):
        record.succeed()


def test_log_is_capped_from_the_oldest_line():
    now = datetime(2026, 1, 2, 3, 4, 5, tzinfo=timezone.utc)
    logs = ""
    for i in range(10):
        logs = append_capped_log(logs, f"line {i}", 120, now)

    assert len(logs.encode("utf-8")) <= 120
    assert logs.endswith("line 9\n")
    assert "line 0" not in logs
    assert logs.startswith("[")


def test_app_defaults():
    app = ManagedApplication(id="a1", name="blog", server_id="s1")

    assert app.remote_path == "/opt/pocketbase/apps/blog"
    assert app.service_name == "blog"
    assert app.binary_path == "/opt/pocketbase/apps/blog/blog"
    assert app.backups_path == "/opt/pocketbase/backups/blog"
    assert app.status == AppStatus.UNKNOWN
    assert app.health_urls == ["http://127.0.0.1:8090/api/health"]


def test_app_with_domain_checks_https():
    app = ManagedApplication(id="a1", name="blog", server_id="s1", domain="blog.example.com")
    assert app.health_urls[-1] == "https://blog.example.com/api/health"


def test_app_round_trip():
    app = ManagedApplication(id="a1", name="blog", server_id="s1", current_version="1.2.0", status=AppStatus.ONLINE)
    assert ManagedApplication.from_dict(app.to_dict()) == app


def test_server_identities():
    target = ServerTarget(id="s1", name="prod", host="203.0.113.10")

    assert target.default_privileged
    assert target.connection_key(True) == ConnectionKey("203.0.113.10", 22, "root")
    assert str(target.connection_key(False)) == "203.0.113.10:22:pocketbase"
    assert not target.is_ready_for_deployment

    target.setup_complete = True
    target.security_locked = True
    assert not target.default_privileged
    assert target.is_ready_for_deployment


def test_subscription_key():
    assert subscription_key("server_setup", "s1") == "server_setup_s1"
