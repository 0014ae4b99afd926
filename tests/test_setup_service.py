"""Tests for server setup"""

import asyncio

import pytest

from pbdeploy.constants import SETUP_SUBSCRIPTION
from pbdeploy.exceptions import PreconditionError, StepFailedError, ValidationError
from pbdeploy.models import ProgressStatus, subscription_key
from pbdeploy.services import BackgroundTaskRunner, MemoryEmitter, SetupManager, TaskStatus
from pbdeploy.services.setup_service import validate_username


def run_setup(with_executor, target, emitter=None, **kwargs):
    return with_executor(lambda ex: SetupManager(ex, emitter=emitter).run_setup(target, **kwargs))


def test_setup_marks_target_and_reports_progress(remote, with_executor, fresh_target):
    emitter = MemoryEmitter()

    run_setup(with_executor, fresh_target, emitter)

    assert fresh_target.setup_complete
    events = emitter.events_for(subscription_key(SETUP_SUBSCRIPTION, fresh_target.id))
    assert events[0].step == "init"
    assert events[0].progress_pct == 0
    assert events[-1].step == "complete"
    assert events[-1].progress_pct == 100
    steps = [e.step for e in events if e.status == ProgressStatus.SUCCESS and e.step != "complete"]
    assert steps == ["create_user", "setup_ssh_keys", "install_packages", "setup_directories", "test_connection"]


def test_step_progress_percentages(with_executor, fresh_target):
    emitter = MemoryEmitter()
    run_setup(with_executor, fresh_target, emitter)

    events = emitter.events_for(subscription_key(SETUP_SUBSCRIPTION, fresh_target.id))
    ssh_keys = [e for e in events if e.step == "setup_ssh_keys"]
    # step 1 of 5
    assert [e.progress_pct for e in ssh_keys] == [20, 40]


def test_firewall_step_is_optional(remote, with_executor, fresh_target):
    emitter = MemoryEmitter()
    run_setup(with_executor, fresh_target, emitter, configure_firewall=True)

    steps = [e.step for e in emitter.events_for(subscription_key(SETUP_SUBSCRIPTION, fresh_target.id))]
    assert "configure_firewall" in steps
    assert remote.ran(r"^ufw allow 22/tcp$")
    assert remote.ran(r"^ufw --force enable$")


def test_creates_user_and_sudoers(remote, with_executor, fresh_target):
    remote.on(r"^id -u pocketbase$", (1, "", "no such user"))

    run_setup(with_executor, fresh_target)

    assert remote.ran(r"^useradd -m -s /bin/bash pocketbase$")
    sudoers = remote.files["/tmp/pbdeploy-sudoers-pocketbase"].decode()
    assert "pocketbase ALL=(ALL) NOPASSWD:" in sudoers
    assert "/usr/bin/systemctl" in sudoers
    assert remote.ran(r"^visudo -cf /tmp/pbdeploy-sudoers-pocketbase$")


def test_existing_user_is_kept(remote, with_executor, fresh_target):
    run_setup(with_executor, fresh_target)
    assert not remote.ran("useradd")


def test_extra_public_keys_are_installed(remote, with_executor, fresh_target):
    key = "ssh-ed25519 AAAAC3Nza deploy@laptop"

    run_setup(with_executor, fresh_target, public_keys=[key, "  "])

    (command,) = remote.ran("deploy@laptop")
    assert "~pocketbase/.ssh/authorized_keys" in command


def test_only_missing_packages_are_installed(remote, with_executor, fresh_target):
    remote.on(
        r"^dpkg-query",
        (0, "curl install ok installed\nunzip install ok installed\nufw install ok installed\n", ""),
    )

    run_setup(with_executor, fresh_target)

    (install,) = remote.ran("apt-get install")
    assert install.endswith("fail2ban libcap2-bin")


def test_nothing_installed_when_all_present(remote, with_executor, fresh_target):
    installed = "".join(
        f"{p} install ok installed\n" for p in ("curl", "unzip", "ufw", "fail2ban", "libcap2-bin")
    )
    remote.on(r"^dpkg-query", (0, installed, ""))

    run_setup(with_executor, fresh_target)

    assert not remote.ran("apt-get")


def test_connection_test_runs_as_app_user(remote, with_executor, fresh_target):
    run_setup(with_executor, fresh_target)

    app_commands = remote.ran_as("pocketbase")
    assert app_commands == ["sudo -n systemctl --version", "ls -la /opt/pocketbase"]


def test_failed_step_stops_the_run(remote, with_executor, fresh_target):
    remote.fail(r"^mkdir -p /opt/pocketbase")
    emitter = MemoryEmitter()

    with pytest.raises(StepFailedError) as excinfo:
        run_setup(with_executor, fresh_target, emitter)

    assert excinfo.value.step == "setup_directories"
    assert not fresh_target.setup_complete
    assert not remote.ran_as("pocketbase")
    last = emitter.last(subscription_key(SETUP_SUBSCRIPTION, fresh_target.id))
    assert last.step == "failed"
    assert last.status == ProgressStatus.FAILED
    assert "setup_directories" in last.message


def start_and_cancel(with_executor, target, emitter, after_command=None):
    """Submit setup, cancel it once after_command ran (at once when None)."""

    async def operation(executor):
        runner = BackgroundTaskRunner()
        handle = SetupManager(executor, emitter=emitter).start_setup(runner, target)
        if after_command is not None:
            while not after_command() and not handle.done:
                await asyncio.sleep(0)
        runner.cancel(handle)
        return await runner.wait(handle)

    return with_executor(operation)


def test_setup_cancelled_before_start_reports_failed(remote, with_executor, fresh_target):
    emitter = MemoryEmitter()

    handle = start_and_cancel(with_executor, fresh_target, emitter)

    assert handle.status == TaskStatus.CANCELLED
    assert not fresh_target.setup_complete
    assert remote.commands == []
    events = emitter.events_for(subscription_key(SETUP_SUBSCRIPTION, fresh_target.id))
    assert [e.step for e in events] == ["failed"]
    assert events[-1].status == ProgressStatus.FAILED


def test_setup_cancelled_mid_run_reports_failed_once(remote, with_executor, fresh_target):
    emitter = MemoryEmitter()

    handle = start_and_cancel(with_executor, fresh_target, emitter, after_command=lambda: remote.commands)

    assert handle.status == TaskStatus.CANCELLED
    assert not fresh_target.setup_complete
    events = emitter.events_for(subscription_key(SETUP_SUBSCRIPTION, fresh_target.id))
    assert events[0].step == "init"
    assert events[-1].step == "failed"
    assert events[-1].message == "Setup cancelled"
    assert [e.step for e in events].count("failed") == 1


def test_start_setup_rejects_provisioned_server_synchronously(remote, with_executor, setup_target):
    async def operation(executor):
        runner = BackgroundTaskRunner()
        with pytest.raises(PreconditionError):
            SetupManager(executor).start_setup(runner, setup_target)
        return runner.list()

    assert with_executor(operation) == []
    assert remote.commands == []


def test_setup_refuses_provisioned_server(remote, with_executor, setup_target):
    with pytest.raises(PreconditionError):
        run_setup(with_executor, setup_target)
    assert remote.commands == []


def test_invalid_username_is_rejected_before_connecting(connector, with_executor, fresh_target):
    fresh_target.app_username = "Bad User"

    with pytest.raises(ValidationError):
        run_setup(with_executor, fresh_target)
    assert connector.calls == []


@pytest.mark.parametrize("name", ["pocketbase", "_svc", "app-user1"])
def test_valid_usernames(name):
    assert validate_username(name) == name


def test_setup_status_before_lockdown(remote, with_executor, setup_target):
    remote.on(r"^test -s ~pocketbase/.ssh/authorized_keys$", (1, "", ""))

    status = with_executor(lambda ex: SetupManager(ex).get_setup_status(setup_target))

    assert status == {
        "user_exists": True,
        "ssh_configured": False,
        "directories_exist": True,
        "sudo_configured": True,
    }
    assert remote.ran(r"^test -f /etc/sudoers.d/pocketbase$")


def test_setup_status_after_lockdown_uses_app_user(remote, with_executor, locked_target):
    with_executor(lambda ex: SetupManager(ex).get_setup_status(locked_target))

    assert {user for user, _ in remote.commands} == {"pocketbase"}
    assert remote.ran(r"^sudo -n -l /usr/bin/systemctl$")
