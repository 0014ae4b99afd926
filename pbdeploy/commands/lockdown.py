"""
Lockdown Command

One-way security hardening of a set-up server.
"""

import click

from pbdeploy.base import ServerCommand
from pbdeploy.constants import SECURITY_SUBSCRIPTION
from pbdeploy.models import subscription_key
from pbdeploy.services import SecurityManager


class LockdownCommand(ServerCommand):
    """Disable password and root SSH, enable firewall and fail2ban."""

    def __init__(self, name: str, yes: bool = False, verbose: bool = False, json_output: bool = False):
        super().__init__(verbose=verbose, json_output=json_output)
        self.name = name
        self.yes = yes

    def execute(self) -> None:
        target = self.state.get_server(self.name)

        if not self.yes and not self.json_output:
            self.console.print(
                f"\n[bold yellow]Lockdown of '{target.name}' cannot be undone.[/bold yellow]\n"
                f"[dim]After it, only '{target.app_username}' can log in and root SSH access is disabled.[/dim]\n"
            )
            if not self.confirm("Continue?"):
                self.print_dim("Aborted")
                return

        logger = self.init_logger(target.name, "lockdown")
        emitter = self.make_emitter()

        def harden(executor, runner):
            return SecurityManager(executor, emitter=emitter).start_lockdown(runner, target, logger=logger)

        self.run_in_background(harden)
        self.state.save_server(target)

        if self.json_output:
            events = emitter.events_for(subscription_key(SECURITY_SUBSCRIPTION, target.id))
            self.output_json({"server": target.to_dict(), "events": [e.to_dict() for e in events]})
            return

        self.print_success(f"Server '{target.name}' is locked down")
        self.console.print(
            f"\n[dim]Next:[/dim] [cyan]pbdeploy apps:add APP --server {target.name}[/cyan]"
        )
        self._logs_hint()


@click.command()
@click.argument("name")
@click.option("--yes", "-y", is_flag=True, help="Skip confirmation")
@click.option("--verbose", "-v", is_flag=True, help="Show all command output")
@click.option("--json", "json_output", is_flag=True, help="Output in JSON format")
def lockdown(name, yes, verbose, json_output):
    """
    Harden a set-up server (one-way)

    Disables password and root SSH logins, enables the ufw allow-list and
    a fail2ban jail for sshd, then verifies the result. Later operations
    connect as the app user.

    Examples:
        pbdeploy lockdown prod
        pbdeploy lockdown prod --yes
    """
    LockdownCommand(name, yes=yes, verbose=verbose, json_output=json_output).run()
