"""
Deployment pipeline

Moves a ManagedApplication to an AppVersion on a locked-down server:
validate, stage, stop, back up, replace files, install the unit, start,
probe health. A failure once the service was stopped or files were
replaced triggers a soft rollback from the backup taken before the
transfer.
"""

import asyncio
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from pbdeploy.constants import (
    DEFAULT_HTTP_PORT,
    DEPLOYMENT_SUBSCRIPTION,
    SERVICE_LIMIT_NOFILE,
    STAGING_DIR,
    SYSTEMD_UNIT_DIR,
)
from pbdeploy.core.config_loader import DeploymentSettings
from pbdeploy.core.templates import render_stub
from pbdeploy.exceptions import (
    DeploymentError,
    DeploymentInProgressError,
    PBDeployError,
    PreconditionError,
    StateError,
    StepFailedError,
    ValidationError,
)
from pbdeploy.logger import DeployLogger
from pbdeploy.models.application import AppVersion, ManagedApplication
from pbdeploy.models.deployment import DeploymentRecord, DeploymentStatus
from pbdeploy.models.progress import ProgressStatus, subscription_key
from pbdeploy.models.server import ServerTarget
from pbdeploy.services.artifact_service import Artifact, ArtifactService
from pbdeploy.services.executor import CommandExecutor
from pbdeploy.services.notifier import ProgressEmitter, ProgressReporter
from pbdeploy.services.service_controller import ServiceController
from pbdeploy.services.task_runner import BackgroundTaskRunner, TaskHandle, TaskStatus
from pbdeploy.utils import format_duration, new_id, quote, utcnow

DEPLOYMENT_TASK = "deployment"


@dataclass
class AdminCredentials:
    """Superuser account created on first deploy. Never persisted."""

    email: str
    password: str

    def __bool__(self) -> bool:
        return bool(self.email and self.password)

    def __repr__(self) -> str:
        return f"AdminCredentials(email={self.email}, password=***)"


@dataclass
class DeploymentContext:
    """Mutable state of one pipeline run."""

    target: ServerTarget
    app: ManagedApplication
    version: AppVersion
    record: DeploymentRecord
    executor: CommandExecutor
    reporter: ProgressReporter
    is_first_deploy: bool
    credentials: Optional[AdminCredentials] = None
    logger: Optional[DeployLogger] = None
    artifact: Optional[Artifact] = None
    backup_path: Optional[str] = None
    staged: bool = False
    service_exists: bool = False
    was_running: bool = False
    stopped: bool = False
    files_replaced: bool = False
    started: bool = False
    health_ok: bool = False
    warnings: List[str] = field(default_factory=list)

    @property
    def privileged(self) -> bool:
        return self.target.default_privileged

    @property
    def sudo(self) -> bool:
        return not self.target.default_privileged

    @property
    def staging_path(self) -> str:
        return f"{STAGING_DIR}/{self.app.name}-{self.record.id}"

    @property
    def touched(self) -> bool:
        """Whether the running installation was modified."""
        return self.stopped or self.files_replaced or self.started

    @property
    def needs_recovery(self) -> bool:
        return self.stopped or self.files_replaced

    def log(self, message: str) -> None:
        self.record.append_log(message)
        if self.logger:
            self.logger.log(message)

    def warn(self, message: str) -> None:
        self.warnings.append(message)
        self.record.append_log(f"Warning: {message}")
        if self.logger:
            self.logger.warning(message)


class DeploymentPipeline:
    """Runs deploy and rollback against one server at a time per application."""

    def __init__(
        self,
        executor: CommandExecutor,
        services: Optional[ServiceController] = None,
        artifacts: Optional[ArtifactService] = None,
        emitter: Optional[ProgressEmitter] = None,
        settings: Optional[DeploymentSettings] = None,
    ):
        self.executor = executor
        self.services = services or ServiceController(executor)
        self.artifacts = artifacts or ArtifactService()
        self.emitter = emitter
        self.settings = settings or DeploymentSettings()
        self._active: Dict[str, str] = {}

    # Mutual exclusion

    def is_deploying(self, app: ManagedApplication) -> bool:
        return app.id in self._active

    def reserve(self, app: ManagedApplication, record: DeploymentRecord) -> None:
        """
        Claim app for record.

        Raises:
            DeploymentInProgressError: Another deployment holds the app
        """
        holder = self._active.get(app.id)
        if holder is not None and holder != record.id:
            raise DeploymentInProgressError(app.name)
        self._active[app.id] = record.id

    def release(self, app: ManagedApplication, record: DeploymentRecord) -> None:
        if self._active.get(app.id) == record.id:
            del self._active[app.id]

    # Preconditions

    @staticmethod
    def is_first_deploy(app: ManagedApplication) -> bool:
        return app.current_version is None

    def check_preconditions(
        self,
        target: ServerTarget,
        app: ManagedApplication,
        version: AppVersion,
        record: DeploymentRecord,
        is_first_deploy: bool,
        credentials: Optional[AdminCredentials] = None,
    ) -> None:
        """
        Validate a deploy request before anything runs.

        Raises:
            PreconditionError: Server not ready, app/version mismatch
            ValidationError: First deploy without admin credentials
            StateError: Record is not pending
        """
        if not target.is_ready_for_deployment:
            raise PreconditionError(
                f"Server '{target.name}' is not ready for deployment",
                f"setup_complete={target.setup_complete}, security_locked={target.security_locked}",
            )
        if app.server_id != target.id:
            raise PreconditionError(f"App '{app.name}' is not installed on server '{target.name}'")
        if version.app_id != app.id:
            raise PreconditionError(
                f"Version '{version.version_number}' does not belong to app '{app.name}'"
            )
        if record.app_id != app.id or record.version_id != version.id:
            raise PreconditionError(f"Deployment {record.id} does not match {app.name}@{version.version_number}")
        if is_first_deploy and not credentials:
            raise ValidationError(
                "Admin credentials are required for the first deployment",
                "Pass --admin-email and --admin-password",
            )
        if record.status != DeploymentStatus.PENDING:
            raise StateError(f"Deployment {record.id} is already {record.status.value}")

    # Entry points

    async def deploy(
        self,
        target: ServerTarget,
        app: ManagedApplication,
        version: AppVersion,
        record: DeploymentRecord,
        credentials: Optional[AdminCredentials] = None,
        is_first_deploy: Optional[bool] = None,
        logger: Optional[DeployLogger] = None,
        reserved: bool = False,
    ) -> DeploymentRecord:
        """
        Deploy version of app to target.

        Returns:
            The record, ended success

        Raises:
            PreconditionError/ValidationError/StateError: Request rejected, nothing ran
            DeploymentError: A step failed; the record is failed and rollback was attempted
        """
        if is_first_deploy is None:
            is_first_deploy = self.is_first_deploy(app)
        self.check_preconditions(target, app, version, record, is_first_deploy, credentials)
        if not reserved:
            self.reserve(app, record)

        executor = self.executor.with_logger(logger)
        ctx = DeploymentContext(
            target=target,
            app=app,
            version=version,
            record=record,
            executor=executor,
            reporter=ProgressReporter(
                self.emitter, subscription_key(DEPLOYMENT_SUBSCRIPTION, record.id), logger
            ),
            is_first_deploy=is_first_deploy,
            credentials=credentials,
            logger=logger,
        )
        try:
            return await self._run(ctx)
        finally:
            self.release(app, record)

    async def rollback(
        self,
        target: ServerTarget,
        app: ManagedApplication,
        version: AppVersion,
        record: DeploymentRecord,
        logger: Optional[DeployLogger] = None,
        reserved: bool = False,
    ) -> DeploymentRecord:
        """Redeploy a previously recorded version."""
        self.check_rollback(app)
        record.is_rollback = True
        return await self.deploy(
            target, app, version, record, is_first_deploy=False, logger=logger, reserved=reserved
        )

    @staticmethod
    def check_rollback(app: ManagedApplication) -> None:
        if app.current_version is None:
            raise PreconditionError(
                f"App '{app.name}' has never been deployed",
                "Run a regular deploy first",
            )

    # Pipeline

    def _steps(self, ctx: DeploymentContext):
        return [
            ("validate", "Validating artifact", lambda: self._validate(ctx)),
            ("stage", "Staging release", lambda: self._stage(ctx)),
            ("check_service", "Checking current service", lambda: self._check_service(ctx)),
            ("stop_service", "Stopping service", lambda: self._stop_service(ctx)),
            ("backup", "Backing up current release", lambda: self._backup(ctx)),
            ("prepare", "Preparing install directory", lambda: self._prepare(ctx)),
            ("transfer", "Installing release files", lambda: self._transfer(ctx)),
            ("install_service", "Installing systemd unit", lambda: self._install_service(ctx)),
            ("bootstrap_admin", "Creating admin account", lambda: self._bootstrap_admin(ctx)),
            ("start_service", "Starting service", lambda: self._start_service(ctx)),
            ("health_check", "Checking application health", lambda: self._health_check(ctx)),
            ("finalize", "Cleaning up", lambda: self._finalize(ctx)),
        ]

    async def _run(self, ctx: DeploymentContext) -> DeploymentRecord:
        record, app, version = ctx.record, ctx.app, ctx.version
        kind = "rollback" if record.is_rollback else "deployment"

        record.start()
        ctx.log(f"Starting {kind} of {app.name} version {version.version_number}")
        ctx.reporter.init(f"Starting {kind} of {app.name} {version.version_number}")

        try:
            await ctx.reporter.run_steps(self._steps(ctx))
        except StepFailedError as e:
            message = f"Deployment failed at step '{e.step}': {e.cause}"
            await self._recover(ctx, message, detail=str(e.cause))
            raise DeploymentError(f"Deployment of {app.name} failed at step '{e.step}'", str(e.cause)) from e
        except asyncio.CancelledError:
            await self._recover(ctx, f"Deployment canceled by user at {utcnow().isoformat()}")
            raise

        app.mark_online(version.version_number)
        record.succeed(f"{kind.capitalize()} of {app.name} {version.version_number} completed successfully")
        ctx.reporter.complete(f"{app.name} {version.version_number} is online")
        return record

    async def _recover(self, ctx: DeploymentContext, message: str, detail: Optional[str] = None) -> None:
        """Soft rollback if needed, then make the record terminal."""
        if ctx.logger:
            ctx.logger.log_error(message, context=detail)

        if ctx.needs_recovery:
            try:
                await self._soft_rollback(ctx)
            except PBDeployError as e:
                ctx.warn(f"Automatic rollback failed: {e.message}")

        if ctx.staged:
            await self._remove_staging(ctx)

        if ctx.touched and not ctx.health_ok:
            ctx.app.mark_offline()

        ctx.record.fail(message)
        ctx.reporter.fail(message, detail=detail)

    async def _soft_rollback(self, ctx: DeploymentContext) -> None:
        ctx.reporter.emit("rollback", ProgressStatus.RUNNING, "Restoring previous release")
        ctx.log("Starting automatic rollback")
        executor, target, app = ctx.executor, ctx.target, ctx.app

        if ctx.started or ctx.service_exists:
            await executor.run(target, ctx.privileged, f"systemctl stop {quote(app.service_name)}", sudo=ctx.sudo)

        if ctx.files_replaced and ctx.backup_path:
            path = quote(app.remote_path)
            backup = quote(ctx.backup_path)
            await executor.run_checked(
                target,
                ctx.privileged,
                f"find {path} -mindepth 1 -maxdepth 1 ! -name pb_data -exec rm -rf {{}} +",
                error_message="Could not clear the install directory",
            )
            await executor.run_checked(
                target,
                ctx.privileged,
                f"find {backup} -mindepth 1 -maxdepth 1 ! -name pb_data -exec cp -a {{}} {path}/ \\;",
                error_message=f"Could not restore backup {ctx.backup_path}",
            )
            ctx.log(f"Restored previous release from {ctx.backup_path}")
        elif ctx.files_replaced:
            ctx.warn("No backup available, previous release cannot be restored")

        if ctx.was_running:
            await self.services.restart(target, app.service_name, executor)
            if await self._wait_active(ctx) and await self._probe_health(ctx):
                ctx.health_ok = True
                ctx.log("Previous release is running again")
            else:
                ctx.warn("Previous release did not become healthy after rollback")

        ctx.reporter.emit("rollback", ProgressStatus.SUCCESS, "Rollback finished")

    # Steps

    async def _validate(self, ctx: DeploymentContext) -> None:
        ctx.artifact = await self.artifacts.load(ctx.version.artifact, ctx.app.name)
        ctx.log(
            f"Artifact OK: {ctx.artifact.size} bytes, binary '{ctx.artifact.binary_entry}', "
            f"migrations={ctx.artifact.has_migrations}, hooks={ctx.artifact.has_hooks}"
        )

    async def _stage(self, ctx: DeploymentContext) -> None:
        executor, target, app = ctx.executor, ctx.target, ctx.app
        staging = ctx.staging_path
        archive = f"{staging}/release.zip"
        files = f"{staging}/files"

        ctx.staged = True
        await executor.run_checked(target, ctx.privileged, f"mkdir -p {quote(files)}")
        await executor.upload_file(target, ctx.privileged, ctx.artifact.data, archive)
        await executor.run_checked(
            target,
            ctx.privileged,
            f"unzip -q -o {quote(archive)} -d {quote(files)}",
            error_message="Could not unpack the artifact",
        )
        if ctx.artifact.binary_entry != app.name:
            await executor.run_checked(
                target,
                ctx.privileged,
                f"mv {quote(files + '/' + ctx.artifact.binary_entry)} {quote(files + '/' + app.name)}",
            )
        await executor.run_checked(target, ctx.privileged, f"chmod 755 {quote(files + '/' + app.name)}")
        await executor.run(target, ctx.privileged, f"rm -f {quote(archive)}")
        ctx.log(f"Staged release in {staging}")

    async def _check_service(self, ctx: DeploymentContext) -> None:
        ctx.service_exists = await self.services.exists(ctx.target, ctx.app.service_name, ctx.executor)
        if ctx.service_exists:
            ctx.was_running = await self.services.is_active(ctx.target, ctx.app.service_name, ctx.executor)
        ctx.log(f"Service {ctx.app.service_name}: exists={ctx.service_exists}, running={ctx.was_running}")

    async def _stop_service(self, ctx: DeploymentContext) -> None:
        if not ctx.was_running:
            ctx.log("Service not running, nothing to stop")
            return

        ctx.stopped = True
        await self.services.stop(ctx.target, ctx.app.service_name, ctx.executor)

        waited = 0.0
        while await self.services.is_active(ctx.target, ctx.app.service_name, ctx.executor):
            if waited >= self.settings.stop_wait_seconds:
                raise DeploymentError(f"Service {ctx.app.service_name} did not stop")
            await asyncio.sleep(1)
            waited += 1
        ctx.log(f"Stopped {ctx.app.service_name}")

    async def _backup(self, ctx: DeploymentContext) -> None:
        executor, target, app = ctx.executor, ctx.target, ctx.app
        if ctx.is_first_deploy:
            ctx.log("First deployment, no backup taken")
            return

        path = quote(app.remote_path)
        has_files = await executor.run(target, ctx.privileged, f'test -d {path} && [ -n "$(ls -A {path})" ]')
        if has_files.is_failure:
            ctx.log("Install directory is empty, no backup taken")
            return

        # pb_data stays in place across deploys and is not part of a release
        stamp = utcnow().strftime("%Y%m%d-%H%M%S")
        backup = f"{app.backups_path}/{stamp}-{ctx.record.id}"
        await executor.run_checked(
            target,
            ctx.privileged,
            f"mkdir -p {quote(backup)} && "
            f"find {path} -mindepth 1 -maxdepth 1 ! -name pb_data -exec cp -a {{}} {quote(backup)}/ \\;",
            error_message="Could not back up the current release",
        )
        ctx.backup_path = backup
        ctx.log(f"Backed up current release to {backup}")

    async def _prepare(self, ctx: DeploymentContext) -> None:
        path = ctx.app.remote_path
        await ctx.executor.run_checked(
            ctx.target, ctx.privileged, f"mkdir -p {quote(path)} {quote(path + '/pb_data')}"
        )

    async def _transfer(self, ctx: DeploymentContext) -> None:
        executor, target, app = ctx.executor, ctx.target, ctx.app
        path = app.remote_path
        ctx.files_replaced = True

        old = " ".join(quote(f"{path}/{name}") for name in ("pb_public", "pb_hooks", "pb_migrations", app.name))
        await executor.run_checked(target, ctx.privileged, f"rm -rf {old}")
        await executor.run_checked(
            target,
            ctx.privileged,
            f"cp -a {quote(ctx.staging_path + '/files')}/. {quote(path)}/",
            error_message="Could not copy release files",
        )
        await executor.run_checked(target, ctx.privileged, f"chmod 755 {quote(app.binary_path)}")
        ctx.log(f"Installed release files into {path}")

    def render_unit(self, ctx: DeploymentContext) -> str:
        app = ctx.app
        if app.domain:
            exec_start = f"{app.binary_path} serve {app.domain}"
        else:
            exec_start = f"{app.binary_path} serve --http 0.0.0.0:{DEFAULT_HTTP_PORT}"
        return render_stub(
            "systemd/app.service.j2",
            app_name=app.name,
            user=ctx.target.app_username,
            limit_nofile=SERVICE_LIMIT_NOFILE,
            log_path=app.log_path,
            working_dir=app.remote_path,
            exec_start=exec_start,
        )

    async def _install_service(self, ctx: DeploymentContext) -> None:
        executor, target, app = ctx.executor, ctx.target, ctx.app
        unit_path = f"{SYSTEMD_UNIT_DIR}/{app.service_name}.service"

        await executor.upload_file(
            target,
            ctx.privileged,
            self.render_unit(ctx).encode("utf-8"),
            unit_path,
            sudo=ctx.sudo,
            mode=0o644,
        )
        await executor.run_checked(target, ctx.privileged, "systemctl daemon-reload", sudo=ctx.sudo)
        await self.services.enable(target, app.service_name, executor)

        setcap = await executor.run(
            target, ctx.privileged, f"setcap cap_net_bind_service=+ep {quote(app.binary_path)}", sudo=ctx.sudo
        )
        if setcap.is_failure:
            ctx.warn("setcap unavailable, binding ports below 1024 will fail")
        ctx.log(f"Installed {unit_path}")

    async def _bootstrap_admin(self, ctx: DeploymentContext) -> None:
        if not ctx.is_first_deploy:
            ctx.log("Admin account already exists, skipping bootstrap")
            return

        app, creds = ctx.app, ctx.credentials
        if ctx.logger:
            ctx.logger.redact(creds.password)
        command = (
            f"cd {quote(app.remote_path)} && ./{quote(app.name)} superuser upsert "
            f"{quote(creds.email)} {quote(creds.password)}"
        )
        display = f"cd {app.remote_path} && ./{app.name} superuser upsert {creds.email} ********"
        await ctx.executor.run_checked(
            ctx.target,
            ctx.privileged,
            command,
            display=display,
            error_message="Could not create the admin account",
        )
        ctx.log(f"Admin account {creds.email} created")

    async def _wait_active(self, ctx: DeploymentContext) -> bool:
        for attempt in range(self.settings.start_probe_attempts):
            if await self.services.is_active(ctx.target, ctx.app.service_name, ctx.executor):
                return True
            if attempt < self.settings.start_probe_attempts - 1:
                await asyncio.sleep(self.settings.start_probe_delay)
        return False

    async def _start_service(self, ctx: DeploymentContext) -> None:
        ctx.started = True
        await self.services.restart(ctx.target, ctx.app.service_name, ctx.executor)
        if not await self._wait_active(ctx):
            raise DeploymentError(f"Service {ctx.app.service_name} did not become active")
        ctx.log(f"Service {ctx.app.service_name} is active")

    async def _probe_health(self, ctx: DeploymentContext) -> bool:
        attempts = self.settings.health_probe_attempts
        for attempt in range(attempts):
            for url in ctx.app.health_urls:
                result = await ctx.executor.run(
                    ctx.target, ctx.privileged, f"curl -s -f -m 10 -k -o /dev/null {quote(url)}"
                )
                if result.is_success:
                    ctx.log(f"Health check passed: {url}")
                    return True
            if attempt < attempts - 1:
                await asyncio.sleep(self.settings.health_probe_delay)
        return False

    async def _health_check(self, ctx: DeploymentContext) -> None:
        if not await self._probe_health(ctx):
            raise DeploymentError(
                "Health check failed",
                f"No response from {', '.join(ctx.app.health_urls)} after "
                f"{self.settings.health_probe_attempts} attempts",
            )
        ctx.health_ok = True

    async def _finalize(self, ctx: DeploymentContext) -> None:
        executor, target, app = ctx.executor, ctx.target, ctx.app
        keep = self.settings.backup_retention

        pruned = await executor.run(
            target,
            ctx.privileged,
            f"ls -1dt {quote(app.backups_path)}/*/ 2>/dev/null | tail -n +{keep + 1} | xargs -r rm -rf",
        )
        if pruned.is_failure:
            ctx.warn(f"Could not prune old backups: {pruned.output}")

        await self._remove_staging(ctx)

        stale = await executor.run(
            target,
            ctx.privileged,
            f"find {STAGING_DIR} -mindepth 1 -maxdepth 1 -mmin +{self.settings.staging_max_age_minutes} "
            f"-exec rm -rf {{}} +",
        )
        if stale.is_failure:
            ctx.warn(f"Could not clean stale staging directories: {stale.output}")

    async def _remove_staging(self, ctx: DeploymentContext) -> None:
        try:
            result = await ctx.executor.run(ctx.target, ctx.privileged, f"rm -rf {quote(ctx.staging_path)}")
        except PBDeployError as e:
            ctx.warn(f"Could not remove staging directory: {e.message}")
            return
        if result.is_failure:
            ctx.warn(f"Could not remove staging directory {ctx.staging_path}")


class DeploymentManager:
    """
    Runs deployments as background tasks and manages their records.

    A record handed to start_deploy or start_rollback always ends success
    or failed, including when its task is cancelled before it starts.
    """

    def __init__(self, pipeline: DeploymentPipeline, runner: BackgroundTaskRunner):
        self.pipeline = pipeline
        self.runner = runner
        self._tasks: Dict[str, TaskHandle] = {}

    def start_deploy(
        self,
        target: ServerTarget,
        app: ManagedApplication,
        version: AppVersion,
        record: DeploymentRecord,
        credentials: Optional[AdminCredentials] = None,
        logger: Optional[DeployLogger] = None,
    ) -> TaskHandle:
        """
        Validate and submit a deploy. Must be called from a running loop.

        Raises:
            PreconditionError/ValidationError/StateError: Rejected synchronously
        """
        first = self.pipeline.is_first_deploy(app)
        self.pipeline.check_preconditions(target, app, version, record, first, credentials)
        self.pipeline.reserve(app, record)
        coro = self.pipeline.deploy(
            target, app, version, record, credentials, is_first_deploy=first, logger=logger, reserved=True
        )
        return self._submit(app, record, coro)

    def start_rollback(
        self,
        target: ServerTarget,
        app: ManagedApplication,
        version: AppVersion,
        record: DeploymentRecord,
        logger: Optional[DeployLogger] = None,
    ) -> TaskHandle:
        """Validate and submit a user-requested rollback."""
        self.pipeline.check_rollback(app)
        self.pipeline.check_preconditions(target, app, version, record, False)
        self.pipeline.reserve(app, record)
        coro = self.pipeline.rollback(target, app, version, record, logger=logger, reserved=True)
        return self._submit(app, record, coro)

    def _submit(self, app: ManagedApplication, record: DeploymentRecord, coro) -> TaskHandle:
        handle = self.runner.submit(
            DEPLOYMENT_TASK,
            record.id,
            coro,
            on_finish=lambda h: self._on_finish(h, app, record),
        )
        self._tasks[record.id] = handle
        return handle

    def _on_finish(self, handle: TaskHandle, app: ManagedApplication, record: DeploymentRecord) -> None:
        self.pipeline.release(app, record)
        if record.status.is_terminal:
            return

        if handle.status == TaskStatus.CANCELLED:
            message = f"Deployment canceled by user at {utcnow().isoformat()}"
        else:
            message = f"Deployment failed: {handle.error}"
        record.fail(message)
        reporter = ProgressReporter(
            self.pipeline.emitter, subscription_key(DEPLOYMENT_SUBSCRIPTION, record.id)
        )
        reporter.fail(message)

    def cancel(self, record: DeploymentRecord) -> None:
        """
        Cancel a pending or running deployment.

        A record with a live task is cancelled through its task; an orphaned
        record is marked failed directly.

        Raises:
            StateError: Record already ended
        """
        self.check_cancel(record)
        handle = self._tasks.get(record.id)
        if handle is not None and self.runner.cancel(handle):
            return
        self.cancel_record(record)

    @staticmethod
    def check_cancel(record: DeploymentRecord) -> None:
        if not record.can_cancel:
            raise StateError(
                f"Deployment {record.id} is {record.status.value} and cannot be cancelled"
            )

    @staticmethod
    def cancel_record(record: DeploymentRecord) -> None:
        """
        Mark a pending or running record failed without touching any task.

        Used for records whose task lives in another process or died with it.

        Raises:
            StateError: Record already ended
        """
        DeploymentManager.check_cancel(record)
        record.fail(f"Deployment canceled by user at {utcnow().isoformat()}")

    @staticmethod
    def retry(record: DeploymentRecord) -> DeploymentRecord:
        """
        New pending record for the same app and version.

        Raises:
            StateError: Only failed deployments can be retried
        """
        if not record.can_retry:
            raise StateError(
                f"Deployment {record.id} is {record.status.value}; only failed deployments can be retried"
            )
        return DeploymentRecord(
            id=new_id(),
            app_id=record.app_id,
            version_id=record.version_id,
            is_rollback=record.is_rollback,
        )

    @staticmethod
    def status_view(record: DeploymentRecord) -> Dict[str, Any]:
        view = record.to_dict()
        duration = record.duration_seconds
        view.update(
            {
                "is_running": record.is_running,
                "can_cancel": record.can_cancel,
                "can_retry": record.can_retry,
                "duration": format_duration(duration) if duration is not None else None,
                "duration_seconds": duration,
            }
        )
        return view

    @staticmethod
    def stats(records: List[DeploymentRecord]) -> Dict[str, Any]:
        counts = {status: 0 for status in DeploymentStatus}
        for record in records:
            counts[record.status] += 1

        finished = counts[DeploymentStatus.SUCCESS] + counts[DeploymentStatus.FAILED]
        success_rate = (counts[DeploymentStatus.SUCCESS] / finished * 100) if finished else 0.0

        durations = [
            r.duration_seconds
            for r in records
            if r.status.is_terminal and r.duration_seconds is not None
        ]
        avg = sum(durations) / len(durations) if durations else 0.0

        return {
            "total": len(records),
            "pending": counts[DeploymentStatus.PENDING],
            "running": counts[DeploymentStatus.RUNNING],
            "success": counts[DeploymentStatus.SUCCESS],
            "failed": counts[DeploymentStatus.FAILED],
            "success_rate": round(success_rate, 1),
            "avg_duration": round(avg, 1),
            "avg_duration_display": format_duration(avg),
        }

    format_duration = staticmethod(format_duration)
