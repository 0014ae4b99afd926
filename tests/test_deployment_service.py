"""Tests for the deployment pipeline and manager"""

import asyncio

import pytest

from pbdeploy.constants import DEPLOYMENT_SUBSCRIPTION
from pbdeploy.exceptions import (
    DeploymentError,
    DeploymentInProgressError,
    PreconditionError,
    StateError,
    ValidationError,
)
from pbdeploy.models import (
    AppStatus,
    AppVersion,
    DeploymentRecord,
    DeploymentStatus,
    ManagedApplication,
    subscription_key,
)
from pbdeploy.services import (
    AdminCredentials,
    BackgroundTaskRunner,
    DeploymentManager,
    DeploymentPipeline,
    MemoryEmitter,
    TaskStatus,
)

from conftest import FakeService, make_artifact

CREDENTIALS = AdminCredentials("admin@example.com", "s3cret-pass")


@pytest.fixture
def record(app, version):
    return DeploymentRecord(id="dep1", app_id=app.id, version_id=version.id)


@pytest.fixture
def deployed_app(app, remote):
    """App already running version 0.9.0."""
    app.mark_online("0.9.0")
    remote.services["blog"] = FakeService(active=True)
    return app


@pytest.fixture
def deploy(with_executor, deployment_settings):
    def run(target, app, version, record, emitter=None, **kwargs):
        async def operation(executor):
            pipeline = DeploymentPipeline(executor, emitter=emitter, settings=deployment_settings)
            return await pipeline.deploy(target, app, version, record, **kwargs)

        return with_executor(operation)

    return run


def failing_until(successes_after):
    """Handler failing the first successes_after calls, then succeeding."""
    calls = []

    def handler(command):
        calls.append(command)
        if len(calls) <= successes_after:
            return 7, "", "curl: (7) Failed to connect"
        return 0, "", ""

    return handler


# Successful deployments


def test_first_deploy_brings_app_online(remote, deploy, locked_target, app, version, record):
    emitter = MemoryEmitter()

    result = deploy(locked_target, app, version, record, emitter=emitter, credentials=CREDENTIALS)

    assert result is record
    assert record.status == DeploymentStatus.SUCCESS
    assert app.status == AppStatus.ONLINE
    assert app.current_version == "1.0.0"
    assert remote.services["blog"].active
    assert "completed successfully" in record.logs

    events = emitter.events_for(subscription_key(DEPLOYMENT_SUBSCRIPTION, record.id))
    assert events[0].step == "init"
    assert events[-1].step == "complete"
    assert events[-1].progress_pct == 100


def test_first_deploy_runs_as_app_user(remote, deploy, locked_target, app, version, record):
    deploy(locked_target, app, version, record, credentials=CREDENTIALS)

    assert {user for user, _ in remote.commands} == {"pocketbase"}
    assert remote.ran(r"^sudo -n systemctl daemon-reload$")
    assert remote.ran(r"^sudo -n systemctl enable blog$")
    assert remote.ran(r"^sudo -n setcap cap_net_bind_service=\+ep /opt/pocketbase/apps/blog/blog$")
    assert not remote.ran(r"/opt/pocketbase/backups/")


def test_first_deploy_creates_admin_without_logging_password(
    remote, deploy, locked_target, app, version, record, logger
):
    deploy(locked_target, app, version, record, credentials=CREDENTIALS, logger=logger)
    logger.close()

    (command,) = remote.ran("superuser upsert")
    assert command.endswith("admin@example.com s3cret-pass")
    assert "s3cret-pass" not in record.logs
    assert "s3cret-pass" not in logger.log_path.read_text()
    assert "admin@example.com" in record.logs


def test_systemd_unit_is_rendered(remote, deploy, locked_target, app, version, record):
    deploy(locked_target, app, version, record, credentials=CREDENTIALS)

    (unit,) = [data.decode() for data in remote.files.values() if b"[Service]" in data]
    assert "User=pocketbase" in unit
    assert "WorkingDirectory=/opt/pocketbase/apps/blog" in unit
    assert "ExecStart=/opt/pocketbase/apps/blog/blog serve --http 0.0.0.0:8090" in unit
    assert "StandardOutput=append:/opt/pocketbase/logs/blog.log" in unit
    assert remote.ran(r"^sudo -n mv /tmp/pbdeploy-\w+ /etc/systemd/system/blog.service$")


def test_domain_app_serves_domain(remote, deploy, locked_target, app, version, record):
    app.domain = "blog.example.com"

    deploy(locked_target, app, version, record, credentials=CREDENTIALS)

    (unit,) = [data.decode() for data in remote.files.values() if b"[Service]" in data]
    assert "ExecStart=/opt/pocketbase/apps/blog/blog serve blog.example.com" in unit


def test_renamed_binary_is_moved_into_place(remote, deploy, locked_target, app, version, record, artifact_path):
    artifact_path.write_bytes(make_artifact(binary_name="pocketbase"))

    deploy(locked_target, app, version, record, credentials=CREDENTIALS)

    assert remote.ran(r"^mv /opt/pocketbase/staging/blog-dep1/files/pocketbase /opt/pocketbase/staging/blog-dep1/files/blog$")


def test_upgrade_backs_up_and_skips_admin(remote, deploy, locked_target, deployed_app, version, record):
    deploy(locked_target, deployed_app, version, record)

    assert record.status == DeploymentStatus.SUCCESS
    assert deployed_app.current_version == "1.0.0"
    assert remote.ran(r"^sudo -n systemctl stop blog$")
    assert remote.ran(
        r"^mkdir -p /opt/pocketbase/backups/blog/\d{8}-\d{6}-dep1 && "
        r"find /opt/pocketbase/apps/blog -mindepth 1 -maxdepth 1 ! -name pb_data -exec cp -a"
    )
    assert not remote.ran("superuser")
    assert remote.ran(r"^ls -1dt /opt/pocketbase/backups/blog/\*/ 2>/dev/null \| tail -n \+6 \| xargs -r rm -rf$")
    assert remote.ran(r"^rm -rf /opt/pocketbase/staging/blog-dep1$")


def test_backups_are_scoped_to_their_app(remote, deploy, locked_target, deployed_app, version, record):
    sibling = ManagedApplication(id="app2", name="blog-api", server_id=locked_target.id)
    assert sibling.backups_path != deployed_app.backups_path
    assert not sibling.backups_path.startswith(deployed_app.backups_path + "/")

    deploy(locked_target, deployed_app, version, record)

    touching_backups = remote.ran("/opt/pocketbase/backups")
    assert len(touching_backups) == 2
    for command in touching_backups:
        assert "/opt/pocketbase/backups/blog/" in command
        assert "/opt/pocketbase/backups/blog-" not in command
        assert "/opt/pocketbase/backups/blog-api" not in command
        assert "blog-*" not in command


# Failures and recovery


def test_first_deploy_requires_credentials(remote, deploy, locked_target, app, version, record):
    with pytest.raises(ValidationError):
        deploy(locked_target, app, version, record)

    assert record.status == DeploymentStatus.PENDING
    assert remote.commands == []


def test_server_must_be_locked_down(remote, deploy, setup_target, app, version, record):
    with pytest.raises(PreconditionError):
        deploy(setup_target, app, version, record, credentials=CREDENTIALS)
    assert remote.commands == []


def test_version_must_belong_to_app(deploy, locked_target, app, record):
    other = AppVersion(id="ver1", app_id="other-app", version_number="1.0.0", artifact="x.zip")

    with pytest.raises(PreconditionError):
        deploy(locked_target, app, other, record, credentials=CREDENTIALS)


def test_record_must_be_pending(deploy, locked_target, app, version, record):
    record.start()

    with pytest.raises(StateError):
        deploy(locked_target, app, version, record, credentials=CREDENTIALS)


def test_invalid_artifact_leaves_app_untouched(remote, deploy, locked_target, deployed_app, version, record, artifact_path):
    artifact_path.write_bytes(b"not a zip")

    with pytest.raises(DeploymentError):
        deploy(locked_target, deployed_app, version, record)

    assert record.status == DeploymentStatus.FAILED
    assert "validate" in record.logs
    assert deployed_app.status == AppStatus.ONLINE
    assert deployed_app.current_version == "0.9.0"
    assert remote.commands == []


def test_failed_health_check_rolls_back_to_healthy_release(
    remote, deploy, locked_target, deployed_app, version, record
):
    remote.on(r"^curl ", failing_until(2))
    emitter = MemoryEmitter()

    with pytest.raises(DeploymentError) as excinfo:
        deploy(locked_target, deployed_app, version, record, emitter=emitter)

    assert "health_check" in excinfo.value.message
    assert record.status == DeploymentStatus.FAILED
    assert deployed_app.current_version == "0.9.0"
    assert deployed_app.status == AppStatus.ONLINE
    assert remote.ran(r"^find /opt/pocketbase/backups/blog/\S+ .* -exec cp -a \{\} /opt/pocketbase/apps/blog/")
    assert "Previous release is running again" in record.logs

    steps = [e.step for e in emitter.events_for(subscription_key(DEPLOYMENT_SUBSCRIPTION, record.id))]
    assert "rollback" in steps
    assert steps[-1] == "failed"


def test_failed_first_deploy_leaves_app_offline(remote, deploy, locked_target, app, version, record):
    remote.fail(r"^curl ")

    with pytest.raises(DeploymentError):
        deploy(locked_target, app, version, record, credentials=CREDENTIALS)

    assert app.status == AppStatus.OFFLINE
    assert app.current_version is None
    assert "No backup available" in record.logs
    assert not remote.services["blog"].active


def test_service_that_never_starts(remote, deploy, locked_target, deployed_app, version, record):
    remote.services["blog"].starts_ok = False

    with pytest.raises(DeploymentError) as excinfo:
        deploy(locked_target, deployed_app, version, record)

    assert "start_service" in excinfo.value.message
    assert deployed_app.status == AppStatus.OFFLINE
    assert "did not become healthy after rollback" in record.logs


# Manager


def run_manager(with_executor, deployment_settings, operation):
    async def main(executor):
        manager = DeploymentManager(
            DeploymentPipeline(executor, settings=deployment_settings), BackgroundTaskRunner()
        )
        return await operation(manager)

    return with_executor(main)


def test_manager_runs_deploy_in_background(with_executor, deployment_settings, locked_target, app, version, record):
    async def operation(manager):
        handle = manager.start_deploy(locked_target, app, version, record, CREDENTIALS)
        busy = manager.pipeline.is_deploying(app)
        await manager.runner.wait(handle)
        return handle, busy, manager.pipeline.is_deploying(app)

    handle, busy, still_busy = run_manager(with_executor, deployment_settings, operation)

    assert busy
    assert not still_busy
    assert handle.status == TaskStatus.SUCCEEDED
    assert handle.result is record
    assert record.status == DeploymentStatus.SUCCESS


def test_second_deploy_of_same_app_is_rejected(locked_target, app, version, record):
    manager = DeploymentManager(DeploymentPipeline(None), BackgroundTaskRunner())
    manager.pipeline.reserve(app, record)
    second = DeploymentRecord(id="dep2", app_id=app.id, version_id=version.id)

    with pytest.raises(DeploymentInProgressError):
        manager.start_deploy(locked_target, app, version, second, CREDENTIALS)
    assert second.status == DeploymentStatus.PENDING


def test_rejected_request_does_not_reserve(locked_target, app, version, record):
    manager = DeploymentManager(DeploymentPipeline(None), BackgroundTaskRunner())

    with pytest.raises(ValidationError):
        manager.start_deploy(locked_target, app, version, record)
    assert not manager.pipeline.is_deploying(app)


def test_cancel_before_start_fails_record(remote, with_executor, deployment_settings, locked_target, app, version, record):
    async def operation(manager):
        handle = manager.start_deploy(locked_target, app, version, record, CREDENTIALS)
        manager.cancel(record)
        await manager.runner.wait(handle)
        return handle

    handle = run_manager(with_executor, deployment_settings, operation)

    assert handle.status == TaskStatus.CANCELLED
    assert record.status == DeploymentStatus.FAILED
    assert "canceled by user" in record.logs
    assert remote.commands == []


def test_cancel_mid_run_recovers(remote, with_executor, deployment_settings, locked_target, app, version, record):
    async def operation(manager):
        handle = manager.start_deploy(locked_target, app, version, record, CREDENTIALS)
        while not remote.ran(r"^cp -a /opt/pocketbase/staging") and not handle.done:
            await asyncio.sleep(0)
        manager.cancel(record)
        await manager.runner.wait(handle)
        return handle

    handle = run_manager(with_executor, deployment_settings, operation)

    assert handle.status == TaskStatus.CANCELLED
    assert record.status == DeploymentStatus.FAILED
    assert "canceled by user" in record.logs
    assert app.status == AppStatus.OFFLINE
    assert remote.ran(r"^rm -rf /opt/pocketbase/staging/blog-dep1$")
    assert not remote.ran("superuser")


def test_cancel_orphaned_record(record):
    manager = DeploymentManager(DeploymentPipeline(None), BackgroundTaskRunner())

    manager.cancel(record)

    assert record.status == DeploymentStatus.FAILED
    assert "canceled by user" in record.logs


def test_cancel_finished_record_is_rejected(record):
    record.start()
    record.succeed()
    manager = DeploymentManager(DeploymentPipeline(None), BackgroundTaskRunner())

    with pytest.raises(StateError):
        manager.cancel(record)


def test_cancel_record_needs_no_pipeline(record):
    record.start()

    DeploymentManager.cancel_record(record)

    assert record.status == DeploymentStatus.FAILED
    assert "canceled by user" in record.logs
    with pytest.raises(StateError):
        DeploymentManager.cancel_record(record)


def test_rollback_requires_previous_deploy(locked_target, app, version, record):
    manager = DeploymentManager(DeploymentPipeline(None), BackgroundTaskRunner())

    with pytest.raises(PreconditionError):
        manager.start_rollback(locked_target, app, version, record)


def test_rollback_redeploys_recorded_version(
    remote, with_executor, deployment_settings, locked_target, deployed_app, version, record
):
    async def operation(manager):
        handle = manager.start_rollback(locked_target, deployed_app, version, record)
        await manager.runner.wait(handle)
        return handle

    handle = run_manager(with_executor, deployment_settings, operation)

    assert handle.status == TaskStatus.SUCCEEDED
    assert record.is_rollback
    assert "Rollback of blog 1.0.0 completed successfully" in record.logs
    assert deployed_app.current_version == "1.0.0"
    assert not remote.ran("superuser")


def test_rollback_after_failed_deploy_brings_app_back_online(
    remote, with_executor, deployment_settings, locked_target, deployed_app, version, record, artifact_path
):
    previous = AppVersion(id="ver0", app_id=deployed_app.id, version_number="0.9.0", artifact=str(artifact_path))
    rollback_record = DeploymentRecord(id="dep2", app_id=deployed_app.id, version_id=previous.id)
    remote.services["blog"].starts_ok = False

    async def operation(manager):
        forward = manager.start_deploy(locked_target, deployed_app, version, record)
        await manager.runner.wait(forward)
        status_after_failure = deployed_app.status

        remote.services["blog"].starts_ok = True
        handle = manager.start_rollback(locked_target, deployed_app, previous, rollback_record)
        await manager.runner.wait(handle)
        return forward, status_after_failure, handle

    forward, status_after_failure, handle = run_manager(with_executor, deployment_settings, operation)

    assert forward.status == TaskStatus.FAILED
    assert record.status == DeploymentStatus.FAILED
    assert status_after_failure == AppStatus.OFFLINE

    assert handle.status == TaskStatus.SUCCEEDED
    assert rollback_record.status == DeploymentStatus.SUCCESS
    assert rollback_record.is_rollback
    assert deployed_app.status == AppStatus.ONLINE
    assert deployed_app.current_version == "0.9.0"


def test_retry_creates_new_pending_record(record):
    record.fail("boom")

    retry = DeploymentManager.retry(record)

    assert retry.id != record.id
    assert retry.status == DeploymentStatus.PENDING
    assert (retry.app_id, retry.version_id) == (record.app_id, record.version_id)


def test_only_failed_deployments_can_be_retried(record):
    with pytest.raises(StateError):
        DeploymentManager.retry(record)


def test_stats():
    ok = DeploymentRecord(id="a", app_id="app1", version_id="v1")
    ok.start()
    ok.succeed()
    failed = DeploymentRecord(id="b", app_id="app1", version_id="v1")
    failed.start()
    failed.fail("boom")
    pending = DeploymentRecord(id="c", app_id="app1", version_id="v1")

    stats = DeploymentManager.stats([ok, failed, pending])

    assert stats["total"] == 3
    assert (stats["success"], stats["failed"], stats["pending"], stats["running"]) == (1, 1, 1, 0)
    assert stats["success_rate"] == 50.0
    assert stats["avg_duration_display"] == "0s"


def test_stats_without_records():
    stats = DeploymentManager.stats([])
    assert stats["success_rate"] == 0.0
    assert stats["avg_duration"] == 0.0


def test_status_view(record):
    view = DeploymentManager.status_view(record)

    assert view["status"] == "pending"
    assert view["can_cancel"]
    assert not view["can_retry"]
    assert view["duration"] is None


@pytest.mark.parametrize(
    "seconds, expected",
    [(0, "0s"), (45, "45s"), (125, "2m 5s"), (3780, "1h 3m"), (-3, "0s")],
)
def test_format_duration(seconds, expected):
    assert DeploymentManager.format_duration(seconds) == expected


def test_credentials_repr_hides_password():
    assert "s3cret" not in repr(CREDENTIALS)
    assert not AdminCredentials("admin@example.com", "")
