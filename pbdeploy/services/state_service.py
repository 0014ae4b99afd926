"""
State Management Service

Loads and stores servers, apps, versions and deployment records, mapping
database rows to domain models.
"""

from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker

from pbdeploy.database import App, Deployment, Server, Version
from pbdeploy.exceptions import (
    AppNotFoundError,
    DeploymentNotFoundError,
    ServerNotFoundError,
    ValidationError,
    VersionNotFoundError,
)
from pbdeploy.models.application import AppStatus, AppVersion, ManagedApplication
from pbdeploy.models.deployment import DeploymentRecord, DeploymentStatus
from pbdeploy.models.server import AuthMode, ServerTarget


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite drops tzinfo; every stored timestamp is UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _to_server(row: Server) -> ServerTarget:
    return ServerTarget(
        id=row.id,
        name=row.name,
        host=row.host,
        port=row.port,
        root_username=row.root_username,
        app_username=row.app_username,
        auth_mode=AuthMode(row.auth_mode),
        key_path=row.key_path,
        setup_complete=row.setup_complete,
        security_locked=row.security_locked,
    )


def _to_app(row: App) -> ManagedApplication:
    return ManagedApplication(
        id=row.id,
        name=row.name,
        server_id=row.server_id,
        remote_path=row.remote_path,
        service_name=row.service_name,
        domain=row.domain,
        current_version=row.current_version,
        status=AppStatus(row.status),
    )


def _to_version(row: Version) -> AppVersion:
    return AppVersion(
        id=row.id,
        app_id=row.app_id,
        version_number=row.version_number,
        artifact=row.artifact,
        notes=row.notes or "",
        created_at=_aware(row.created_at),
    )


def _to_record(row: Deployment) -> DeploymentRecord:
    return DeploymentRecord(
        id=row.id,
        app_id=row.app_id,
        version_id=row.version_id,
        status=DeploymentStatus(row.status),
        logs=row.logs or "",
        started_at=_aware(row.started_at),
        completed_at=_aware(row.completed_at),
        created_at=_aware(row.created_at),
        is_rollback=row.is_rollback,
    )


class StateService:
    """
    Persistence adapter over the local state database.

    Every method opens its own session, so returned models are detached
    plain dataclasses.
    """

    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    # Servers

    def add_server(self, target: ServerTarget) -> ServerTarget:
        with self._session_factory() as session:
            session.add(
                Server(
                    id=target.id,
                    name=target.name,
                    host=target.host,
                    port=target.port,
                    root_username=target.root_username,
                    app_username=target.app_username,
                    auth_mode=target.auth_mode.value,
                    key_path=target.key_path,
                    setup_complete=target.setup_complete,
                    security_locked=target.security_locked,
                )
            )
            try:
                session.commit()
            except IntegrityError:
                raise ValidationError(f"Server '{target.name}' already exists")
        return target

    def list_servers(self) -> List[ServerTarget]:
        with self._session_factory() as session:
            return [_to_server(row) for row in session.query(Server).order_by(Server.name)]

    def _server_row(self, session, name_or_id: str) -> Server:
        row = session.query(Server).filter(
            (Server.name == name_or_id) | (Server.id == name_or_id)
        ).first()
        if row is None:
            available = [name for (name,) in session.query(Server.name).order_by(Server.name)]
            raise ServerNotFoundError(name_or_id, available)
        return row

    def get_server(self, name_or_id: str) -> ServerTarget:
        with self._session_factory() as session:
            return _to_server(self._server_row(session, name_or_id))

    def save_server(self, target: ServerTarget) -> None:
        """Persist the provisioning flags of target."""
        with self._session_factory() as session:
            row = self._server_row(session, target.id)
            row.setup_complete = target.setup_complete
            row.security_locked = target.security_locked
            row.key_path = target.key_path
            session.commit()

    def remove_server(self, name_or_id: str) -> None:
        with self._session_factory() as session:
            session.delete(self._server_row(session, name_or_id))
            session.commit()

    # Apps

    def add_app(self, app: ManagedApplication) -> ManagedApplication:
        with self._session_factory() as session:
            self._server_row(session, app.server_id)
            session.add(
                App(
                    id=app.id,
                    server_id=app.server_id,
                    name=app.name,
                    remote_path=app.remote_path,
                    service_name=app.service_name,
                    domain=app.domain,
                    current_version=app.current_version,
                    status=app.status.value,
                )
            )
            try:
                session.commit()
            except IntegrityError:
                raise ValidationError(f"App '{app.name}' already exists")
        return app

    def list_apps(self, server_id: Optional[str] = None) -> List[ManagedApplication]:
        with self._session_factory() as session:
            query = session.query(App).order_by(App.name)
            if server_id:
                query = query.filter(App.server_id == server_id)
            return [_to_app(row) for row in query]

    def _app_row(self, session, name_or_id: str) -> App:
        row = session.query(App).filter((App.name == name_or_id) | (App.id == name_or_id)).first()
        if row is None:
            available = [name for (name,) in session.query(App.name).order_by(App.name)]
            raise AppNotFoundError(name_or_id, available)
        return row

    def get_app(self, name_or_id: str) -> ManagedApplication:
        with self._session_factory() as session:
            return _to_app(self._app_row(session, name_or_id))

    def save_app(self, app: ManagedApplication) -> None:
        """Persist the deployment state of app."""
        with self._session_factory() as session:
            row = self._app_row(session, app.id)
            row.current_version = app.current_version
            row.status = app.status.value
            row.domain = app.domain
            session.commit()

    # Versions

    def add_version(self, version: AppVersion) -> AppVersion:
        with self._session_factory() as session:
            app = self._app_row(session, version.app_id)
            session.add(
                Version(
                    id=version.id,
                    app_id=version.app_id,
                    version_number=version.version_number,
                    artifact=version.artifact,
                    notes=version.notes,
                    created_at=version.created_at,
                )
            )
            try:
                session.commit()
            except IntegrityError:
                raise ValidationError(
                    f"Version '{version.version_number}' already exists for app '{app.name}'"
                )
        return version

    def list_versions(self, app_id: str) -> List[AppVersion]:
        with self._session_factory() as session:
            rows = (
                session.query(Version)
                .filter(Version.app_id == app_id)
                .order_by(Version.created_at.desc())
            )
            return [_to_version(row) for row in rows]

    def get_version(self, app: ManagedApplication, version_number: str) -> AppVersion:
        with self._session_factory() as session:
            row = (
                session.query(Version)
                .filter(Version.app_id == app.id, Version.version_number == version_number)
                .first()
            )
            if row is None:
                raise VersionNotFoundError(version_number, app.name)
            return _to_version(row)

    def get_version_by_id(self, version_id: str) -> AppVersion:
        with self._session_factory() as session:
            row = session.get(Version, version_id)
            if row is None:
                raise VersionNotFoundError(version_id, "?")
            return _to_version(row)

    # Deployments

    def save_deployment(self, record: DeploymentRecord) -> DeploymentRecord:
        """Insert or update a deployment record."""
        with self._session_factory() as session:
            row = session.get(Deployment, record.id)
            if row is None:
                row = Deployment(id=record.id, app_id=record.app_id, created_at=record.created_at)
                session.add(row)
            row.version_id = record.version_id
            row.status = record.status.value
            row.logs = record.logs
            row.is_rollback = record.is_rollback
            row.started_at = record.started_at
            row.completed_at = record.completed_at
            session.commit()
        return record

    def get_deployment(self, deployment_id: str) -> DeploymentRecord:
        with self._session_factory() as session:
            row = session.get(Deployment, deployment_id)
            if row is None:
                raise DeploymentNotFoundError(deployment_id)
            return _to_record(row)

    def list_deployments(
        self, app_id: Optional[str] = None, limit: Optional[int] = None
    ) -> List[DeploymentRecord]:
        with self._session_factory() as session:
            query = session.query(Deployment).order_by(Deployment.created_at.desc())
            if app_id:
                query = query.filter(Deployment.app_id == app_id)
            if limit:
                query = query.limit(limit)
            return [_to_record(row) for row in query]
