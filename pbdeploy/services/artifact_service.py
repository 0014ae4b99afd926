"""
Artifact loading and validation

A release is a zip archive with the PocketBase binary at its root and a
pb_public/ directory, optionally pb_migrations/ and pb_hooks/.
"""

import asyncio
import io
import posixpath
import zipfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

import requests

from pbdeploy.constants import (
    DEFAULT_BINARY_NAME,
    OPTIONAL_ARTIFACT_DIRS,
    REQUIRED_ARTIFACT_DIRS,
)
from pbdeploy.exceptions import ValidationError

DOWNLOAD_TIMEOUT = 120


@dataclass
class Artifact:
    """A validated release archive held in memory."""

    data: bytes
    binary_entry: str
    entries: List[str] = field(default_factory=list)
    has_migrations: bool = False
    has_hooks: bool = False

    @property
    def size(self) -> int:
        return len(self.data)

    @property
    def top_level_dirs(self) -> List[str]:
        dirs = set()
        for name in self.entries:
            if "/" in name:
                dirs.add(name.split("/", 1)[0] + "/")
        return sorted(dirs)


class ArtifactService:
    """Fetches release archives and checks their layout."""

    def __init__(self, session: Optional[requests.Session] = None):
        self.session = session or requests.Session()

    @staticmethod
    def is_url(source: str) -> bool:
        return source.startswith("http://") or source.startswith("https://")

    def read(self, source: str) -> bytes:
        """Read an archive from a local path or an http(s) URL."""
        if self.is_url(source):
            try:
                response = self.session.get(source, timeout=DOWNLOAD_TIMEOUT)
                response.raise_for_status()
            except requests.RequestException as e:
                raise ValidationError(f"Could not download artifact: {source}", str(e))
            return response.content

        path = Path(source).expanduser()
        if not path.is_file():
            raise ValidationError(f"Artifact not found: {path}")
        try:
            return path.read_bytes()
        except OSError as e:
            raise ValidationError(f"Could not read artifact: {path}", str(e))

    async def load(self, source: str, app_name: str) -> Artifact:
        """Read and validate an archive without blocking the event loop."""
        data = await asyncio.to_thread(self.read, source)
        return self.validate(data, app_name)

    def validate(self, data: bytes, app_name: str) -> Artifact:
        """
        Check the archive layout.

        Raises:
            ValidationError: Not a zip, unsafe paths, binary or pb_public/ missing
        """
        if not data:
            raise ValidationError("Artifact is empty")

        try:
            archive = zipfile.ZipFile(io.BytesIO(data))
        except zipfile.BadZipFile as e:
            raise ValidationError("Artifact is not a valid zip archive", str(e))

        with archive:
            infos = archive.infolist()
            bad = archive.testzip()
            if bad is not None:
                raise ValidationError("Artifact is corrupted", f"Bad CRC for {bad}")

        entries = [info.filename for info in infos]
        for name in entries:
            normalized = posixpath.normpath(name)
            if name.startswith("/") or normalized.startswith("..") or "\\" in name:
                raise ValidationError("Artifact contains an unsafe path", name)

        binary = self._find_binary(infos, app_name)
        if binary is None:
            raise ValidationError(
                "Artifact is missing the application binary",
                f"Expected '{app_name}' or '{DEFAULT_BINARY_NAME}' at the archive root",
            )

        for required in REQUIRED_ARTIFACT_DIRS:
            if not any(name.startswith(required) for name in entries):
                raise ValidationError(f"Artifact is missing required directory {required}")

        migrations, hooks = OPTIONAL_ARTIFACT_DIRS
        return Artifact(
            data=data,
            binary_entry=binary,
            entries=entries,
            has_migrations=any(name.startswith(migrations) for name in entries),
            has_hooks=any(name.startswith(hooks) for name in entries),
        )

    @staticmethod
    def _find_binary(infos: List[zipfile.ZipInfo], app_name: str) -> Optional[str]:
        root_files = [
            info for info in infos if "/" not in info.filename and not info.is_dir()
        ]
        names = {info.filename for info in root_files}
        for candidate in (app_name, DEFAULT_BINARY_NAME):
            if candidate in names:
                return candidate

        # Any extension-less root file, largest first
        candidates = [info for info in root_files if "." not in info.filename]
        if not candidates:
            return None
        return max(candidates, key=lambda info: info.file_size).filename
