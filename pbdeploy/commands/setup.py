"""
Setup Command

Provision a fresh server: app user, SSH keys, packages, directories.
"""

from pathlib import Path
from typing import List

import click

from pbdeploy.base import ServerCommand
from pbdeploy.constants import SETUP_SUBSCRIPTION
from pbdeploy.models import subscription_key
from pbdeploy.services import SetupManager


class SetupCommand(ServerCommand):
    """Run server setup as the privileged user."""

    def __init__(self, name: str, firewall: bool = False, public_key_files: List[str] = (),
                 verbose: bool = False, json_output: bool = False):
        super().__init__(verbose=verbose, json_output=json_output)
        self.name = name
        self.firewall = firewall
        self.public_key_files = list(public_key_files)

    def execute(self) -> None:
        target = self.state.get_server(self.name)
        logger = self.init_logger(target.name, "setup")
        public_keys = [Path(p).expanduser().read_text().strip() for p in self.public_key_files]

        emitter = self.make_emitter()

        def provision(executor, runner):
            return SetupManager(executor, emitter=emitter).start_setup(
                runner,
                target,
                configure_firewall=self.firewall,
                public_keys=public_keys,
                logger=logger,
            )

        self.run_in_background(provision)
        self.state.save_server(target)

        if self.json_output:
            events = emitter.events_for(subscription_key(SETUP_SUBSCRIPTION, target.id))
            self.output_json({"server": target.to_dict(), "events": [e.to_dict() for e in events]})
            return

        self.print_success(f"Server '{target.name}' is set up")
        self.console.print(f"\n[dim]Next:[/dim] [cyan]pbdeploy lockdown {target.name}[/cyan]")
        if logger:
            self.console.print(f"[dim]Logs saved to:[/dim] {logger.log_path}\n")


@click.command()
@click.argument("name")
@click.option("--firewall", is_flag=True, help="Also open SSH, HTTP and HTTPS with ufw")
@click.option("--public-key", "public_keys", multiple=True, type=click.Path(exists=True, dir_okay=False),
              help="Extra public key file trusted for the app user (repeatable)")
@click.option("--verbose", "-v", is_flag=True, help="Show all command output")
@click.option("--json", "json_output", is_flag=True, help="Output in JSON format")
def setup(name, firewall, public_keys, verbose, json_output):
    """
    Provision a registered server

    Creates the app user with a restricted sudoers entry, installs its SSH
    keys and the required packages, and creates /opt/pocketbase.

    Examples:
        pbdeploy setup prod
        pbdeploy setup prod --firewall --public-key ~/.ssh/deploy.pub
    """
    SetupCommand(name, firewall, public_keys, verbose=verbose, json_output=json_output).run()
