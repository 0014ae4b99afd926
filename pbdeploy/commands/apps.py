"""
App Commands

Register and list PocketBase apps on managed servers.
"""

import re

import click
from rich.table import Table

from pbdeploy.base import ServerCommand
from pbdeploy.exceptions import ValidationError
from pbdeploy.models import AppStatus, ManagedApplication
from pbdeploy.utils import new_id

APP_NAME_PATTERN = re.compile(r"^[a-z0-9][a-z0-9_-]{0,62}$")

STATUS_STYLES = {
    AppStatus.ONLINE: "green",
    AppStatus.OFFLINE: "red",
    AppStatus.UNKNOWN: "dim",
}


def validate_app_name(name: str) -> str:
    """App names become directory, binary and systemd unit names."""
    if not APP_NAME_PATTERN.match(name):
        raise ValidationError(
            f"Invalid app name: {name!r}",
            "Use lowercase letters, digits, '-' and '_' (max 63 characters)",
        )
    return name


class AppsAddCommand(ServerCommand):
    def __init__(self, name: str, server: str, domain: str = None, remote_path: str = None,
                 verbose: bool = False, json_output: bool = False):
        super().__init__(verbose=verbose, json_output=json_output)
        self.name = name
        self.server = server
        self.domain = domain
        self.remote_path = remote_path

    def execute(self) -> None:
        validate_app_name(self.name)
        target = self.state.get_server(self.server)
        app = self.state.add_app(
            ManagedApplication(
                id=new_id(),
                name=self.name,
                server_id=target.id,
                remote_path=self.remote_path or "",
                domain=self.domain,
            )
        )
        if self.json_output:
            self.output_json(app.to_dict())
            return
        self.print_success(f"App '{app.name}' added to {target.name} at {app.remote_path}")
        self.console.print(f"\n[dim]Next:[/dim] [cyan]pbdeploy versions:add {app.name} VERSION ARTIFACT[/cyan]\n")


class AppsListCommand(ServerCommand):
    def __init__(self, server: str = None, json_output: bool = False):
        super().__init__(json_output=json_output)
        self.server = server

    def execute(self) -> None:
        servers = {s.id: s for s in self.state.list_servers()}
        server_id = self.state.get_server(self.server).id if self.server else None
        apps = self.state.list_apps(server_id)

        if self.json_output:
            self.output_json([a.to_dict() for a in apps])
            return

        if not apps:
            self.print_dim("No apps registered. Run: pbdeploy apps:add NAME --server SERVER")
            return

        table = Table(title="Apps", title_justify="left", padding=(0, 1))
        table.add_column("Name", style="cyan", no_wrap=True)
        table.add_column("Server")
        table.add_column("Domain", style="dim")
        table.add_column("Version")
        table.add_column("Status")
        for app in apps:
            server = servers.get(app.server_id)
            style = STATUS_STYLES[app.status]
            table.add_row(
                app.name,
                server.name if server else app.server_id,
                app.domain or "-",
                app.current_version or "[dim]never deployed[/dim]",
                f"[{style}]{app.status.value}[/{style}]",
            )
        self.console.print(table)


@click.command(name="apps:add")
@click.argument("name")
@click.option("--server", "-s", required=True, help="Server name")
@click.option("--domain", help="Public domain (enables HTTPS serving)")
@click.option("--remote-path", help="Install directory (default: /opt/pocketbase/apps/NAME)")
@click.option("--json", "json_output", is_flag=True, help="Output in JSON format")
def apps_add(name, server, domain, remote_path, json_output):
    """
    Register an app on a server

    Examples:
        pbdeploy apps:add blog --server prod
        pbdeploy apps:add shop --server prod --domain shop.example.com
    """
    AppsAddCommand(name, server, domain, remote_path, json_output=json_output).run()


@click.command(name="apps:list")
@click.option("--server", "-s", help="Only apps on this server")
@click.option("--json", "json_output", is_flag=True, help="Output in JSON format")
def apps_list(server, json_output):
    """List registered apps"""
    AppsListCommand(server, json_output=json_output).run()
