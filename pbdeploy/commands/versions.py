"""
Version Commands

Record releases of an app. An artifact is a local zip path or an http(s) URL.
"""

from pathlib import Path

import click
from rich.table import Table

from pbdeploy.base import ServerCommand
from pbdeploy.models import AppVersion
from pbdeploy.services import ArtifactService
from pbdeploy.utils import format_size, new_id


class VersionsAddCommand(ServerCommand):
    """Record a version after checking its archive layout."""

    def __init__(self, app: str, version: str, artifact: str, notes: str = "",
                 verbose: bool = False, json_output: bool = False):
        super().__init__(verbose=verbose, json_output=json_output)
        self.app = app
        self.version = version
        self.artifact = artifact
        self.notes = notes

    def execute(self) -> None:
        app = self.state.get_app(self.app)
        artifacts = ArtifactService()

        source = self.artifact
        checked = None
        if not artifacts.is_url(source):
            source = str(Path(source).expanduser().resolve())
            checked = artifacts.validate(artifacts.read(source), app.name)

        version = self.state.add_version(
            AppVersion(
                id=new_id(),
                app_id=app.id,
                version_number=self.version,
                artifact=source,
                notes=self.notes,
            )
        )

        if self.json_output:
            self.output_json(version.to_dict())
            return

        self.print_success(f"Version {version.version_number} recorded for '{app.name}'")
        if checked:
            extras = [d for d, present in (("pb_migrations", checked.has_migrations), ("pb_hooks", checked.has_hooks)) if present]
            self.print_dim(
                f"binary: {checked.binary_entry}, size: {format_size(checked.size)}"
                + (f", with {', '.join(extras)}" if extras else "")
            )
        else:
            self.print_dim("Remote artifact; it is downloaded and checked at deploy time")
        self.console.print(f"\n[dim]Next:[/dim] [cyan]pbdeploy deploy {app.name} {version.version_number}[/cyan]\n")


class VersionsListCommand(ServerCommand):
    def __init__(self, app: str, json_output: bool = False):
        super().__init__(json_output=json_output)
        self.app = app

    def execute(self) -> None:
        app = self.state.get_app(self.app)
        versions = self.state.list_versions(app.id)

        if self.json_output:
            self.output_json([v.to_dict() for v in versions])
            return

        if not versions:
            self.print_dim(f"No versions for '{app.name}'. Run: pbdeploy versions:add {app.name} VERSION ARTIFACT")
            return

        table = Table(title=f"Versions of {app.name}", title_justify="left", padding=(0, 1))
        table.add_column("Version", style="cyan", no_wrap=True)
        table.add_column("Created", style="dim")
        table.add_column("Artifact", overflow="fold")
        table.add_column("Notes", style="dim")
        for version in versions:
            current = " [green](current)[/green]" if version.version_number == app.current_version else ""
            table.add_row(
                f"{version.version_number}{current}",
                version.created_at.strftime("%Y-%m-%d %H:%M"),
                version.artifact,
                version.notes or "",
            )
        self.console.print(table)


@click.command(name="versions:add")
@click.argument("app")
@click.argument("version")
@click.argument("artifact")
@click.option("--notes", default="", help="Release notes")
@click.option("--json", "json_output", is_flag=True, help="Output in JSON format")
def versions_add(app, version, artifact, notes, json_output):
    """
    Record a version of an app

    ARTIFACT is a zip with the PocketBase binary at its root and a
    pb_public/ directory. Local archives are checked immediately.

    Examples:
        pbdeploy versions:add blog 1.0.0 ./dist/blog.zip
        pbdeploy versions:add blog 1.1.0 https://example.com/releases/blog-1.1.0.zip
    """
    VersionsAddCommand(app, version, artifact, notes, json_output=json_output).run()


@click.command(name="versions:list")
@click.argument("app")
@click.option("--json", "json_output", is_flag=True, help="Output in JSON format")
def versions_list(app, json_output):
    """List recorded versions of an app"""
    VersionsListCommand(app, json_output=json_output).run()
