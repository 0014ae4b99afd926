#!/usr/bin/env python3
"""pbdeploy CLI - Main entry point"""

import functools
import os
import sys

from rich.console import Console

# Rich-Click: colored help output
import rich_click as click

RICH_CLICK_STYLE = {
    "USE_RICH_MARKUP": True,
    "USE_MARKDOWN": False,
    "SHOW_ARGUMENTS": True,
    "GROUP_ARGUMENTS_OPTIONS": True,
    "MAX_WIDTH": 100,
    "STYLE_COMMAND": "bold cyan",
    "STYLE_OPTION": "bold magenta",
    "STYLE_SWITCH": "bold green",
    "STYLE_ARGUMENT": "bold yellow",
    "STYLE_METAVAR": "bold yellow",
    "STYLE_USAGE": "bold yellow",
    "STYLE_HEADER_TEXT": "bold cyan",
    "STYLE_HELPTEXT_FIRST_LINE": "bold white",
    "STYLE_OPTION_DEFAULT": "dim cyan",
    "STYLE_REQUIRED_LONG": "bold red",
    "STYLE_OPTIONS_PANEL_BORDER": "cyan",
    "STYLE_COMMANDS_PANEL_BORDER": "cyan",
    "ERRORS_EPILOGUE": "",
}

for _name, _value in RICH_CLICK_STYLE.items():
    setattr(click.rich_click, _name, _value)

from pbdeploy import __version__
from pbdeploy.commands.apps import apps_add, apps_list
from pbdeploy.commands.deploy import deploy, rollback
from pbdeploy.commands.deployments import (
    deployments_cancel,
    deployments_list,
    deployments_retry,
    deployments_show,
    deployments_stats,
)
from pbdeploy.commands.doctor import doctor
from pbdeploy.commands.lockdown import lockdown
from pbdeploy.commands.servers import servers_add, servers_list, servers_remove, servers_status
from pbdeploy.commands.service import (
    service_logs,
    service_restart,
    service_start,
    service_status,
    service_stop,
)
from pbdeploy.commands.setup import setup
from pbdeploy.commands.versions import versions_add, versions_list

console = Console()

BANNER = """
[bold cyan]╔═══════════════════════════════════════════════════════════╗[/bold cyan]
[bold cyan]║[/bold cyan]  [bold white]pbdeploy[/bold white] - PocketBase servers and deploys over SSH     [bold cyan]║[/bold cyan]
[bold cyan]╚═══════════════════════════════════════════════════════════╝[/bold cyan]
"""


def handle_cli_errors(func):
    """Turn click and unexpected errors into a short message and an exit code."""
    from click.exceptions import Abort, ClickException, UsageError

    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        try:
            code = func(*args, **kwargs)
        except UsageError as e:
            console.print(f"\n[bold red]✗ Error:[/bold red] {e.format_message()}\n")
            if e.ctx and e.ctx.command:
                console.print(f"[dim]See[/dim] [cyan]pbdeploy {e.ctx.command.name} --help[/cyan]\n")
            sys.exit(2)
        except ClickException as e:
            e.show()
            sys.exit(e.exit_code)
        except (Abort, KeyboardInterrupt):
            console.print("\n[yellow]⚠️  Operation cancelled by user[/yellow]")
            sys.exit(130)
        except Exception as e:
            console.print(f"\n[bold red]✗ Unexpected error:[/bold red] {e}\n")
            if os.environ.get("DEBUG"):
                console.print_exception()
            sys.exit(1)
        sys.exit(code or 0)

    return wrapper


@click.group(invoke_without_command=True)
@click.version_option(version=__version__)
@click.pass_context
def cli(ctx: click.Context) -> None:
    """
    pbdeploy - Provision, harden and deploy PocketBase apps over SSH.

    \b
    Quick Start:
      pbdeploy servers:add prod 203.0.113.10   # Register a server
      pbdeploy setup prod                      # App user, packages, dirs
      pbdeploy lockdown prod                   # One-way hardening
      pbdeploy apps:add blog --server prod     # Register an app
      pbdeploy versions:add blog 1.0.0 ./blog.zip
      pbdeploy deploy blog 1.0.0 --admin-email a@b.c --admin-password ...

    \b
    Daily Workflow:
      pbdeploy deploy blog 1.1.0               # Ship a new version
      pbdeploy rollback blog 1.0.0             # Go back
      pbdeploy service:logs blog -n 100        # Read the app log
      pbdeploy deployments:list --app blog     # History
      pbdeploy doctor prod                     # SSH trouble? Start here
    """
    if ctx.invoked_subcommand is None:
        console.print(BANNER)
        console.print("[yellow]Run 'pbdeploy --help' for usage[/yellow]\n")


# Servers
cli.add_command(servers_add)
cli.add_command(servers_list)
cli.add_command(servers_remove)
cli.add_command(servers_status)
cli.add_command(setup)
cli.add_command(lockdown)
cli.add_command(doctor)
# Apps and versions
cli.add_command(apps_add)
cli.add_command(apps_list)
cli.add_command(versions_add)
cli.add_command(versions_list)
# Deployments
cli.add_command(deploy)
cli.add_command(rollback)
cli.add_command(deployments_list)
cli.add_command(deployments_show)
cli.add_command(deployments_cancel)
cli.add_command(deployments_retry)
cli.add_command(deployments_stats)
# Service control
cli.add_command(service_start)
cli.add_command(service_stop)
cli.add_command(service_restart)
cli.add_command(service_status)
cli.add_command(service_logs)


@handle_cli_errors
def main():
    """Console script entry point."""
    return cli(standalone_mode=False)


if __name__ == "__main__":
    main()
