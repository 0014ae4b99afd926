"""
Server Commands

Register, list, remove and inspect managed servers.
"""

import click
from rich.table import Table

from pbdeploy.base import ServerCommand
from pbdeploy.constants import DEFAULT_APP_USERNAME, DEFAULT_ROOT_USERNAME, DEFAULT_SSH_PORT
from pbdeploy.models import AuthMode, ServerTarget
from pbdeploy.services import SecurityManager, SetupManager
from pbdeploy.services.setup_service import validate_username
from pbdeploy.utils import new_id


class ServersAddCommand(ServerCommand):
    """Register a server."""

    def __init__(self, name: str, host: str, port: int, root_user: str, app_user: str,
                 key_path: str = None, verbose: bool = False, json_output: bool = False):
        super().__init__(verbose=verbose, json_output=json_output)
        self.target = ServerTarget(
            id=new_id(),
            name=name,
            host=host,
            port=port,
            root_username=root_user,
            app_username=app_user,
            auth_mode=AuthMode.KEY_FILE if key_path else AuthMode.AGENT,
            key_path=key_path,
        )

    def execute(self) -> None:
        validate_username(self.target.app_username)
        self.state.add_server(self.target)
        if self.json_output:
            self.output_json(self.target.to_dict())
            return
        self.print_success(f"Server '{self.target.name}' added ({self.target.host}:{self.target.port})")
        self.console.print(f"\n[dim]Next:[/dim] [cyan]pbdeploy setup {self.target.name}[/cyan]\n")


class ServersListCommand(ServerCommand):
    """List registered servers."""

    def execute(self) -> None:
        servers = self.state.list_servers()
        if self.json_output:
            self.output_json([s.to_dict() for s in servers])
            return

        if not servers:
            self.print_dim("No servers registered. Run: pbdeploy servers:add NAME HOST")
            return

        table = Table(title="Servers", title_justify="left", padding=(0, 1))
        table.add_column("Name", style="cyan", no_wrap=True)
        table.add_column("Address")
        table.add_column("App user", style="dim")
        table.add_column("Setup")
        table.add_column("Locked")
        for server in servers:
            table.add_row(
                server.name,
                f"{server.host}:{server.port}",
                server.app_username,
                "[green]yes[/green]" if server.setup_complete else "[dim]no[/dim]",
                "[green]yes[/green]" if server.security_locked else "[dim]no[/dim]",
            )
        self.console.print(table)


class ServersRemoveCommand(ServerCommand):
    """Forget a server and its apps (nothing is changed remotely)."""

    def __init__(self, name: str, yes: bool = False, verbose: bool = False, json_output: bool = False):
        super().__init__(verbose=verbose, json_output=json_output)
        self.name = name
        self.yes = yes

    def execute(self) -> None:
        target = self.state.get_server(self.name)
        if not self.yes and not self.json_output:
            if not self.confirm(f"Remove server '{target.name}' and its apps from pbdeploy?"):
                self.print_dim("Aborted")
                return
        self.state.remove_server(target.id)
        if self.json_output:
            self.output_json({"removed": target.name})
            return
        self.print_success(f"Server '{target.name}' removed")


class ServersStatusCommand(ServerCommand):
    """Show the live setup and security state of a server."""

    def __init__(self, name: str, verbose: bool = False, json_output: bool = False):
        super().__init__(verbose=verbose, json_output=json_output)
        self.name = name

    def execute(self) -> None:
        target = self.state.get_server(self.name)
        self.init_logger(target.name, "status")

        async def inspect(executor):
            setup = await SetupManager(executor).get_setup_status(target)
            security = await SecurityManager(executor).get_security_status(target)
            return setup, security

        setup, security = self.run_async(inspect)

        if self.json_output:
            self.output_json({"server": target.to_dict(), "setup": setup, "security": security})
            return

        table = Table(title=f"{target.name} ({target.host})", title_justify="left", padding=(0, 1))
        table.add_column("Check", style="cyan", no_wrap=True)
        table.add_column("Status")
        for label, values in (("setup", setup), ("security", security)):
            for key, ok in values.items():
                table.add_row(f"{label}.{key}", "[green]✓[/green]" if ok else "[red]✗[/red]")
        self.console.print(table)


@click.command(name="servers:add")
@click.argument("name")
@click.argument("host")
@click.option("--port", default=DEFAULT_SSH_PORT, show_default=True, help="SSH port")
@click.option("--root-user", default=DEFAULT_ROOT_USERNAME, show_default=True, help="Privileged SSH user")
@click.option("--app-user", default=DEFAULT_APP_USERNAME, show_default=True, help="Service account created by setup")
@click.option("--key", "key_path", help="Private key file (default: SSH agent)")
@click.option("--verbose", "-v", is_flag=True, help="Show all command output")
@click.option("--json", "json_output", is_flag=True, help="Output in JSON format")
def servers_add(name, host, port, root_user, app_user, key_path, verbose, json_output):
    """
    Register a server

    Examples:
        pbdeploy servers:add prod 203.0.113.10
        pbdeploy servers:add staging staging.example.com --key ~/.ssh/id_ed25519
    """
    cmd = ServersAddCommand(name, host, port, root_user, app_user, key_path, verbose=verbose, json_output=json_output)
    cmd.run()


@click.command(name="servers:list")
@click.option("--json", "json_output", is_flag=True, help="Output in JSON format")
def servers_list(json_output):
    """List registered servers"""
    ServersListCommand(json_output=json_output).run()


@click.command(name="servers:remove")
@click.argument("name")
@click.option("--yes", "-y", is_flag=True, help="Skip confirmation")
@click.option("--json", "json_output", is_flag=True, help="Output in JSON format")
def servers_remove(name, yes, json_output):
    """Forget a server and its apps"""
    ServersRemoveCommand(name, yes=yes, json_output=json_output).run()


@click.command(name="servers:status")
@click.argument("name")
@click.option("--verbose", "-v", is_flag=True, help="Show all command output")
@click.option("--json", "json_output", is_flag=True, help="Output in JSON format")
def servers_status(name, verbose, json_output):
    """Show live setup and security state of a server"""
    ServersStatusCommand(name, verbose=verbose, json_output=json_output).run()
