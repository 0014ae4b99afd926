"""
Local state database for the CLI.

Servers, apps, versions and deployment records live in SQLite next to
pbdeploy.yml unless PBDEPLOY_DB_URL points elsewhere.
"""

from sqlalchemy import (
    create_engine,
    Column,
    Integer,
    String,
    Text,
    Boolean,
    DateTime,
    ForeignKey,
    UniqueConstraint,
)
from sqlalchemy.orm import declarative_base, sessionmaker, relationship

from pbdeploy.utils import utcnow

Base = declarative_base()


class Server(Base):
    """Server model - one managed host."""

    __tablename__ = "servers"

    id = Column(String(32), primary_key=True)
    name = Column(String(100), unique=True, nullable=False, index=True)
    host = Column(String(255), nullable=False)
    port = Column(Integer, nullable=False, default=22)
    root_username = Column(String(50), nullable=False, default="root")
    app_username = Column(String(50), nullable=False, default="pocketbase")
    auth_mode = Column(String(20), nullable=False, default="agent")
    key_path = Column(String(500), nullable=True)
    setup_complete = Column(Boolean, nullable=False, default=False)
    security_locked = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    apps = relationship("App", back_populates="server", cascade="all, delete-orphan")


class App(Base):
    """App model - a PocketBase instance installed on a server."""

    __tablename__ = "apps"

    id = Column(String(32), primary_key=True)
    server_id = Column(
        String(32), ForeignKey("servers.id", ondelete="CASCADE"), nullable=False, index=True
    )
    name = Column(String(100), unique=True, nullable=False, index=True)
    remote_path = Column(String(500), nullable=False)
    service_name = Column(String(100), nullable=False)
    domain = Column(String(255), nullable=True)
    current_version = Column(String(100), nullable=True)
    status = Column(String(20), nullable=False, default="unknown")
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    server = relationship("Server", back_populates="apps")
    versions = relationship("Version", back_populates="app", cascade="all, delete-orphan")
    deployments = relationship("Deployment", back_populates="app", cascade="all, delete-orphan")


class Version(Base):
    """Version model - a registered release artifact."""

    __tablename__ = "versions"
    __table_args__ = (UniqueConstraint("app_id", "version_number", name="uq_app_version"),)

    id = Column(String(32), primary_key=True)
    app_id = Column(
        String(32), ForeignKey("apps.id", ondelete="CASCADE"), nullable=False, index=True
    )
    version_number = Column(String(100), nullable=False)
    artifact = Column(String(1000), nullable=False)  # local path or http(s) URL
    notes = Column(Text, nullable=False, default="")
    created_at = Column(DateTime(timezone=True), default=utcnow)

    app = relationship("App", back_populates="versions")


class Deployment(Base):
    """Deployment model - one deploy or rollback attempt."""

    __tablename__ = "deployments"

    id = Column(String(32), primary_key=True)
    app_id = Column(
        String(32), ForeignKey("apps.id", ondelete="CASCADE"), nullable=False, index=True
    )
    version_id = Column(String(32), ForeignKey("versions.id"), nullable=False)
    status = Column(String(20), nullable=False, default="pending", index=True)
    logs = Column(Text, nullable=False, default="")
    is_rollback = Column(Boolean, nullable=False, default=False)
    started_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)

    app = relationship("App", back_populates="deployments")


def get_session_factory(database_url: str) -> sessionmaker:
    """Create tables if needed and return a session factory bound to database_url."""
    engine = create_engine(database_url)
    Base.metadata.create_all(engine)
    return sessionmaker(autoflush=False, bind=engine)
