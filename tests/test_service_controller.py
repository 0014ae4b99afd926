"""Tests for systemd service control"""

import pytest

from pbdeploy.exceptions import RemoteCommandError, ServiceNotFoundError
from pbdeploy.models import ServiceState
from pbdeploy.services import ServiceController
from pbdeploy.services.service_controller import parse_show_output

from conftest import FakeService


def control(with_executor, method, *args, **kwargs):
    return with_executor(lambda ex: getattr(ServiceController(ex), method)(*args, **kwargs))


def test_parse_show_output():
    values = parse_show_output("LoadState=loaded\nActiveState=active\nnoise\nExecStart=/bin/x --a=b\n")

    assert values == {"LoadState": "loaded", "ActiveState": "active", "ExecStart": "/bin/x --a=b"}


def test_status_of_running_service(remote, with_executor, setup_target):
    remote.services["blog"] = FakeService(active=True, pid=777)

    status = control(with_executor, "status", setup_target, "blog")

    assert status.state == ServiceState.RUNNING
    assert status.sub_state == "running"
    assert status.pid == 777
    assert status.uptime_seconds == pytest.approx(600.5)


def test_status_of_stopped_service(remote, with_executor, setup_target):
    remote.services["blog"] = FakeService(active=False)

    status = control(with_executor, "status", setup_target, "blog")

    assert status.state == ServiceState.STOPPED
    assert status.pid is None
    assert status.uptime_seconds is None
    assert not remote.ran("/proc/uptime")


def test_status_of_missing_unit(with_executor, setup_target):
    with pytest.raises(ServiceNotFoundError) as excinfo:
        control(with_executor, "status", setup_target, "ghost")
    assert excinfo.value.service_name == "ghost"


def test_exists(remote, with_executor, setup_target):
    remote.services["blog"] = FakeService()

    assert control(with_executor, "exists", setup_target, "blog")
    assert not control(with_executor, "exists", setup_target, "ghost")


def test_start_missing_unit_is_not_found(with_executor, setup_target):
    with pytest.raises(ServiceNotFoundError):
        control(with_executor, "start", setup_target, "ghost")


def test_other_systemctl_failures_are_command_errors(remote, with_executor, setup_target):
    remote.services["blog"] = FakeService()
    remote.fail(r"systemctl restart blog", stderr="Job failed", exit_code=1)

    with pytest.raises(RemoteCommandError) as excinfo:
        control(with_executor, "restart", setup_target, "blog")

    assert not isinstance(excinfo.value, ServiceNotFoundError)


def test_start_and_stop(remote, with_executor, setup_target):
    remote.services["blog"] = FakeService()

    async def operation(executor):
        controller = ServiceController(executor)
        await controller.start(setup_target, "blog")
        started = await controller.is_active(setup_target, "blog")
        await controller.stop(setup_target, "blog")
        return started, await controller.is_active(setup_target, "blog")

    assert with_executor(operation) == (True, False)


def test_runs_as_root_before_lockdown(remote, with_executor, setup_target):
    remote.services["blog"] = FakeService()

    control(with_executor, "restart", setup_target, "blog")

    assert remote.commands == [("root", "systemctl restart blog")]


def test_uses_sudo_after_lockdown(remote, with_executor, locked_target):
    remote.services["blog"] = FakeService()

    control(with_executor, "restart", locked_target, "blog")

    assert remote.commands == [("pocketbase", "sudo -n systemctl restart blog")]


def test_tail_logs_prefers_log_file(remote, with_executor, setup_target):
    remote.on(r"^tail -n 20 /opt/pocketbase/logs/blog.log$", (0, "line 1\nline 2\n", ""))

    output = control(
        with_executor, "tail_logs", setup_target, "blog", lines=20, log_path="/opt/pocketbase/logs/blog.log"
    )

    assert output == "line 1\nline 2\n"
    assert not remote.ran("journalctl")


def test_tail_logs_falls_back_to_journal(remote, with_executor, locked_target):
    remote.fail(r"^tail ")
    remote.on(r"journalctl -u blog -n 50 --no-pager$", (0, "journal line\n", ""))

    output = control(with_executor, "tail_logs", locked_target, "blog", log_path="/missing.log")

    assert output == "journal line\n"
    assert remote.ran(r"^sudo -n journalctl")


def test_tail_logs_error(remote, with_executor, setup_target):
    remote.fail(r"journalctl", stderr="No journal files were found.")

    with pytest.raises(RemoteCommandError) as excinfo:
        control(with_executor, "tail_logs", setup_target, "blog")
    assert excinfo.value.message == "Could not read logs of blog"
