"""
Service Commands

Start, stop, restart and inspect the systemd unit of an app.
"""

import click

from pbdeploy.base import ServerCommand
from pbdeploy.models import AppStatus
from pbdeploy.services import ServiceController
from pbdeploy.utils import format_duration

ACTIONS = {
    "start": "Started",
    "stop": "Stopped",
    "restart": "Restarted",
}


class ServiceActionCommand(ServerCommand):
    """Run start, stop or restart on the app's unit."""

    def __init__(self, action: str, app: str, verbose: bool = False, json_output: bool = False):
        super().__init__(verbose=verbose, json_output=json_output)
        self.action = action
        self.app = app

    def execute(self) -> None:
        app = self.state.get_app(self.app)
        target = self.state.get_server(app.server_id)
        logger = self.init_logger(app.name, f"service-{self.action}")
        if logger:
            logger.step(f"{self.action.capitalize()} {app.service_name} on {target.name}")

        async def operation(executor):
            controller = ServiceController(executor.with_logger(logger))
            await getattr(controller, self.action)(target, app.service_name)
            return await controller.is_active(target, app.service_name)

        active = self.run_async(operation)
        if self.action == "stop":
            app.mark_offline()
        elif not active:
            app.status = AppStatus.UNKNOWN
        self.state.save_app(app)

        if self.json_output:
            self.output_json({"app": app.name, "action": self.action, "active": active})
            return

        self.print_success(f"{ACTIONS[self.action]} {app.service_name}")
        if self.action != "stop" and not active:
            self.print_warning(f"{app.service_name} is not active; check: pbdeploy service:logs {app.name}")


class ServiceStatusCommand(ServerCommand):
    def __init__(self, app: str, verbose: bool = False, json_output: bool = False):
        super().__init__(verbose=verbose, json_output=json_output)
        self.app = app

    def execute(self) -> None:
        app = self.state.get_app(self.app)
        target = self.state.get_server(app.server_id)

        async def operation(executor):
            return await ServiceController(executor).status(target, app.service_name)

        status = self.run_async(operation)

        if self.json_output:
            self.output_json({"app": app.to_dict(), "service": status.to_dict()})
            return

        color = "green" if status.is_running else "red"
        self.console.print(
            f"[bold]{app.name}[/bold] on {target.name}: "
            f"[{color}]{status.state.value}[/{color}] [dim]({status.sub_state or '-'})[/dim]"
        )
        if status.pid:
            self.console.print(f"  [dim]PID:[/dim] {status.pid}")
        if status.uptime_seconds is not None:
            self.console.print(f"  [dim]Uptime:[/dim] {format_duration(status.uptime_seconds)}")
        self.console.print(f"  [dim]Version:[/dim] {app.current_version or '-'}")


class ServiceLogsCommand(ServerCommand):
    def __init__(self, app: str, lines: int = 50, json_output: bool = False):
        super().__init__(json_output=json_output)
        self.app = app
        self.lines = lines

    def execute(self) -> None:
        app = self.state.get_app(self.app)
        target = self.state.get_server(app.server_id)

        async def operation(executor):
            return await ServiceController(executor).tail_logs(
                target, app.service_name, self.lines, log_path=app.log_path
            )

        output = self.run_async(operation)
        if self.json_output:
            self.output_json({"app": app.name, "lines": output.splitlines()})
            return
        self.console.print(output, markup=False, highlight=False, end="")


def _action_command(action: str, summary: str):
    @click.command(name=f"service:{action}", help=summary)
    @click.argument("app")
    @click.option("--verbose", "-v", is_flag=True, help="Show all command output")
    @click.option("--json", "json_output", is_flag=True, help="Output in JSON format")
    def command(app, verbose, json_output):
        ServiceActionCommand(action, app, verbose=verbose, json_output=json_output).run()

    return command


service_start = _action_command("start", "Start the app's service")
service_stop = _action_command("stop", "Stop the app's service")
service_restart = _action_command("restart", "Restart the app's service")


@click.command(name="service:status")
@click.argument("app")
@click.option("--json", "json_output", is_flag=True, help="Output in JSON format")
def service_status(app, json_output):
    """Show state, PID and uptime of the app's service"""
    ServiceStatusCommand(app, json_output=json_output).run()


@click.command(name="service:logs")
@click.argument("app")
@click.option("--lines", "-n", default=50, show_default=True, help="Number of lines")
@click.option("--json", "json_output", is_flag=True, help="Output in JSON format")
def service_logs(app, lines, json_output):
    """Show the last lines of the app's log"""
    ServiceLogsCommand(app, lines, json_output=json_output).run()
