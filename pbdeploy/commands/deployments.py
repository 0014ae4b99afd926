"""
Deployment Commands

Inspect, cancel and retry recorded deployments.
"""

import click
from rich.panel import Panel
from rich.table import Table

from pbdeploy.base import ServerCommand
from pbdeploy.commands.deploy import DeploymentCommand
from pbdeploy.models import DeploymentStatus
from pbdeploy.services import AdminCredentials, DeploymentManager

STATUS_STYLES = {
    DeploymentStatus.PENDING: "dim",
    DeploymentStatus.RUNNING: "yellow",
    DeploymentStatus.SUCCESS: "green",
    DeploymentStatus.FAILED: "red",
}


def styled_status(status: DeploymentStatus) -> str:
    style = STATUS_STYLES[status]
    return f"[{style}]{status.value}[/{style}]"


class DeploymentsListCommand(ServerCommand):
    def __init__(self, app: str = None, limit: int = 20, json_output: bool = False):
        super().__init__(json_output=json_output)
        self.app = app
        self.limit = limit

    def execute(self) -> None:
        app_id = self.state.get_app(self.app).id if self.app else None
        records = self.state.list_deployments(app_id, self.limit)

        if self.json_output:
            self.output_json([DeploymentManager.status_view(r) for r in records])
            return

        if not records:
            self.print_dim("No deployments yet")
            return

        apps = {a.id: a.name for a in self.state.list_apps()}
        table = Table(title="Deployments", title_justify="left", padding=(0, 1))
        table.add_column("ID", style="cyan", no_wrap=True)
        table.add_column("App")
        table.add_column("Version")
        table.add_column("Status")
        table.add_column("Duration", justify="right")
        table.add_column("Created", style="dim")
        for record in records:
            view = DeploymentManager.status_view(record)
            version = self.state.get_version_by_id(record.version_id).version_number
            table.add_row(
                record.id,
                apps.get(record.app_id, record.app_id),
                f"{version} [dim](rollback)[/dim]" if record.is_rollback else version,
                styled_status(record.status),
                view["duration"] or "-",
                record.created_at.strftime("%Y-%m-%d %H:%M"),
            )
        self.console.print(table)


class DeploymentsShowCommand(ServerCommand):
    def __init__(self, deployment_id: str, json_output: bool = False):
        super().__init__(json_output=json_output)
        self.deployment_id = deployment_id

    def execute(self) -> None:
        record = self.state.get_deployment(self.deployment_id)
        view = DeploymentManager.status_view(record)

        if self.json_output:
            self.output_json(view)
            return

        app = self.state.get_app(record.app_id)
        version = self.state.get_version_by_id(record.version_id)
        summary = (
            f"[bold]{app.name}[/bold] {version.version_number}"
            f"{' (rollback)' if record.is_rollback else ''}\n"
            f"Status: {styled_status(record.status)}   Duration: {view['duration'] or '-'}"
        )
        self.console.print(Panel(summary, title=f"Deployment {record.id}", title_align="left"))
        if record.logs:
            self.console.print(record.logs, markup=False, highlight=False)
        actions = [a for a, ok in (("cancel", view["can_cancel"]), ("retry", view["can_retry"])) if ok]
        for action in actions:
            self.print_dim(f"pbdeploy deployments:{action} {record.id}")


class DeploymentsCancelCommand(ServerCommand):
    """
    Cancel a deployment recorded as pending or running.

    The deploying process (if any) is another process, so the record is
    marked failed directly. Ctrl-C in the deploying process is what stops
    the remote work and recovers the server.
    """

    def __init__(self, deployment_id: str, json_output: bool = False):
        super().__init__(json_output=json_output)
        self.deployment_id = deployment_id

    def execute(self) -> None:
        record = self.state.get_deployment(self.deployment_id)
        DeploymentManager.cancel_record(record)
        self.state.save_deployment(record)

        if self.json_output:
            self.output_json(DeploymentManager.status_view(record))
            return
        self.print_success(f"Deployment {record.id} cancelled")


class DeploymentsRetryCommand(DeploymentCommand):
    def __init__(self, deployment_id: str, admin_email: str = None, admin_password: str = None,
                 verbose: bool = False, json_output: bool = False):
        super().__init__(verbose=verbose, json_output=json_output)
        self.deployment_id = deployment_id
        self.credentials = AdminCredentials(admin_email or "", admin_password or "")

    def execute(self) -> None:
        previous = self.state.get_deployment(self.deployment_id)
        record = DeploymentManager.retry(previous)
        app = self.state.get_app(record.app_id)
        target = self.state.get_server(app.server_id)
        version = self.state.get_version_by_id(record.version_id)
        if not self.json_output:
            self.print_dim(f"Retrying deployment {previous.id} as {record.id}")
        self.run_deployment(
            target, app, version, record, credentials=self.credentials, rollback=record.is_rollback
        )


class DeploymentsStatsCommand(ServerCommand):
    def __init__(self, app: str = None, json_output: bool = False):
        super().__init__(json_output=json_output)
        self.app = app

    def execute(self) -> None:
        app_id = self.state.get_app(self.app).id if self.app else None
        stats = DeploymentManager.stats(self.state.list_deployments(app_id))

        if self.json_output:
            self.output_json(stats)
            return

        table = Table(title="Deployment statistics", title_justify="left", show_header=False, padding=(0, 1))
        table.add_column("Metric", style="cyan")
        table.add_column("Value", justify="right")
        table.add_row("Total", str(stats["total"]))
        table.add_row("Pending", str(stats["pending"]))
        table.add_row("Running", str(stats["running"]))
        table.add_row("Succeeded", f"[green]{stats['success']}[/green]")
        table.add_row("Failed", f"[red]{stats['failed']}[/red]")
        table.add_row("Success rate", f"{stats['success_rate']}%")
        table.add_row("Average duration", stats["avg_duration_display"])
        self.console.print(table)


@click.command(name="deployments:list")
@click.option("--app", "-a", help="Only deployments of this app")
@click.option("--limit", "-n", default=20, show_default=True, help="Number of deployments")
@click.option("--json", "json_output", is_flag=True, help="Output in JSON format")
def deployments_list(app, limit, json_output):
    """List recent deployments"""
    DeploymentsListCommand(app, limit, json_output=json_output).run()


@click.command(name="deployments:show")
@click.argument("deployment_id")
@click.option("--json", "json_output", is_flag=True, help="Output in JSON format")
def deployments_show(deployment_id, json_output):
    """Show a deployment with its log"""
    DeploymentsShowCommand(deployment_id, json_output=json_output).run()


@click.command(name="deployments:cancel")
@click.argument("deployment_id")
@click.option("--json", "json_output", is_flag=True, help="Output in JSON format")
def deployments_cancel(deployment_id, json_output):
    """Cancel a pending or running deployment"""
    DeploymentsCancelCommand(deployment_id, json_output=json_output).run()


@click.command(name="deployments:retry")
@click.argument("deployment_id")
@click.option("--admin-email", envvar="PBDEPLOY_ADMIN_EMAIL", help="Superuser email (first deploy only)")
@click.option("--admin-password", envvar="PBDEPLOY_ADMIN_PASSWORD", help="Superuser password (first deploy only)")
@click.option("--verbose", "-v", is_flag=True, help="Show all command output")
@click.option("--json", "json_output", is_flag=True, help="Output in JSON format")
def deployments_retry(deployment_id, admin_email, admin_password, verbose, json_output):
    """
    Retry a failed deployment

    Runs the same app and version again as a new deployment.

    Examples:
        pbdeploy deployments:retry 3f2a9c1d0e4b5a6
    """
    DeploymentsRetryCommand(
        deployment_id, admin_email, admin_password, verbose=verbose, json_output=json_output
    ).run()


@click.command(name="deployments:stats")
@click.option("--app", "-a", help="Only deployments of this app")
@click.option("--json", "json_output", is_flag=True, help="Output in JSON format")
def deployments_stats(app, json_output):
    """Show deployment statistics"""
    DeploymentsStatsCommand(app, json_output=json_output).run()
