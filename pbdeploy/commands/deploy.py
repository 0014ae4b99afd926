"""
Deploy Commands

Deploy a recorded version of an app, or roll back to an earlier one.
"""

import asyncio
from typing import Optional

import click

from pbdeploy.base import ServerCommand
from pbdeploy.constants import DEPLOYMENT_SUBSCRIPTION
from pbdeploy.models import (
    AppVersion,
    DeploymentRecord,
    ManagedApplication,
    ProgressEvent,
    ServerTarget,
    subscription_key,
)
from pbdeploy.services import (
    AdminCredentials,
    BackgroundTaskRunner,
    DeploymentManager,
    DeploymentPipeline,
    FanoutEmitter,
    ProgressEmitter,
    StateService,
    TaskStatus,
)
from pbdeploy.utils import new_id


class RecordSaver(ProgressEmitter):
    """Persists the deployment record on every progress event."""

    def __init__(self, state: StateService, record: DeploymentRecord):
        self.state = state
        self.record = record

    def emit(self, subscription: str, event: ProgressEvent) -> None:
        self.state.save_deployment(self.record)


class DeploymentCommand(ServerCommand):
    """
    Base class for commands that run a deployment.

    The deployment runs as a background task on the command's event loop;
    the command waits for it. Ctrl-C cancels the task, which recovers the
    server before the command exits.
    """

    def run_deployment(
        self,
        target: ServerTarget,
        app: ManagedApplication,
        version: AppVersion,
        record: DeploymentRecord,
        credentials: Optional[AdminCredentials] = None,
        rollback: bool = False,
    ) -> DeploymentRecord:
        logger = self.init_logger(app.name, "rollback" if rollback else "deploy")
        display = self.make_emitter()
        emitter = FanoutEmitter(display, RecordSaver(self.state, record))

        async def operation(executor):
            pipeline = DeploymentPipeline(executor, emitter=emitter, settings=self.settings.deployment)
            runner = BackgroundTaskRunner(logger)
            manager = DeploymentManager(pipeline, runner)

            if rollback:
                handle = manager.start_rollback(target, app, version, record, logger=logger)
            else:
                handle = manager.start_deploy(target, app, version, record, credentials, logger=logger)
            self.state.save_deployment(record)

            try:
                await runner.wait(handle)
            except asyncio.CancelledError:
                runner.cancel(handle)
                await runner.wait(handle)
                raise
            return handle

        try:
            handle = self.run_async(operation)
        finally:
            if record.status.is_terminal:
                self.state.save_deployment(record)
                self.state.save_app(app)

        if handle.status == TaskStatus.FAILED:
            raise handle.error

        if self.json_output:
            events = display.events_for(subscription_key(DEPLOYMENT_SUBSCRIPTION, record.id))
            self.output_json(
                {
                    "deployment": DeploymentManager.status_view(record),
                    "app": app.to_dict(),
                    "events": [e.to_dict() for e in events],
                }
            )
            return record

        duration = DeploymentManager.format_duration(record.duration_seconds or 0)
        verb = "Rolled back" if rollback else "Deployed"
        self.print_success(f"{verb} {app.name} to {version.version_number} in {duration}")
        if app.domain:
            self.console.print(f"[dim]URL:[/dim] https://{app.domain}")
        self._logs_hint()
        return record

    def resolve(self, app_name: str, version_number: str):
        app = self.state.get_app(app_name)
        target = self.state.get_server(app.server_id)
        version = self.state.get_version(app, version_number)
        return target, app, version


class DeployCommand(DeploymentCommand):
    def __init__(self, app: str, version: str, admin_email: str = None, admin_password: str = None,
                 verbose: bool = False, json_output: bool = False):
        super().__init__(verbose=verbose, json_output=json_output)
        self.app = app
        self.version = version
        self.credentials = AdminCredentials(admin_email or "", admin_password or "")

    def execute(self) -> None:
        target, app, version = self.resolve(self.app, self.version)
        record = DeploymentRecord(id=new_id(), app_id=app.id, version_id=version.id)
        self.run_deployment(target, app, version, record, credentials=self.credentials)


class RollbackCommand(DeploymentCommand):
    def __init__(self, app: str, version: str, verbose: bool = False, json_output: bool = False):
        super().__init__(verbose=verbose, json_output=json_output)
        self.app = app
        self.version = version

    def execute(self) -> None:
        target, app, version = self.resolve(self.app, self.version)
        record = DeploymentRecord(id=new_id(), app_id=app.id, version_id=version.id, is_rollback=True)
        self.run_deployment(target, app, version, record, rollback=True)


@click.command()
@click.argument("app")
@click.argument("version")
@click.option("--admin-email", envvar="PBDEPLOY_ADMIN_EMAIL", help="Superuser email (first deploy only)")
@click.option("--admin-password", envvar="PBDEPLOY_ADMIN_PASSWORD", help="Superuser password (first deploy only)")
@click.option("--verbose", "-v", is_flag=True, help="Show all command output")
@click.option("--json", "json_output", is_flag=True, help="Output in JSON format")
def deploy(app, version, admin_email, admin_password, verbose, json_output):
    """
    Deploy a version of an app

    The first deploy of an app also creates its PocketBase superuser and
    needs --admin-email and --admin-password. A failed deploy restores the
    previous files from backup and restarts the old version.

    Examples:
        pbdeploy deploy blog 1.0.0 --admin-email admin@example.com --admin-password s3cret
        pbdeploy deploy blog 1.1.0
    """
    DeployCommand(app, version, admin_email, admin_password, verbose=verbose, json_output=json_output).run()


@click.command()
@click.argument("app")
@click.argument("version")
@click.option("--verbose", "-v", is_flag=True, help="Show all command output")
@click.option("--json", "json_output", is_flag=True, help="Output in JSON format")
def rollback(app, version, verbose, json_output):
    """
    Redeploy an earlier version of an app

    Examples:
        pbdeploy rollback blog 1.0.0
    """
    RollbackCommand(app, version, verbose=verbose, json_output=json_output).run()
