"""
Stages application bits where the push is issued from.

When the build ran in the same filesystem context, the workspace is used
as-is. Otherwise the application path is archived in the build context,
transferred, and unpacked into a controller-side temporary directory; the
archive wraps everything in one top-level entry, which becomes the staged
path.
"""

import io
import logging
import shutil
import tempfile
import zipfile
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import Optional

from .errors import DeployError, ErrorKind
from .events import EventTypes, RunLog

logger = logging.getLogger(__name__)

ARCHIVE_NAME = "appFile"


def archive(source: Path) -> bytes:
    """
    Zip ``source`` (a directory or a single file) under one top-level entry
    named after it.
    """
    source = Path(source)
    if not source.exists():
        raise DeployError(ErrorKind.STAGING_CORRUPTED, f"Application path does not exist: {source}")

    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w", zipfile.ZIP_DEFLATED) as zf:
        if source.is_file():
            zf.write(source, source.name)
        else:
            zf.writestr(source.name + "/", "")
            for item in sorted(source.rglob("*")):
                arcname = (PurePosixPath(source.name) / item.relative_to(source).as_posix()).as_posix()
                if item.is_dir():
                    zf.writestr(arcname + "/", "")
                else:
                    zf.write(item, arcname)
    return buffer.getvalue()


def unarchive(data: bytes, dest: Path) -> None:
    """Unpack a zip archive into ``dest``, refusing entries that escape it."""
    dest = Path(dest)
    dest.mkdir(parents=True, exist_ok=True)
    root = dest.resolve()
    try:
        with zipfile.ZipFile(io.BytesIO(data)) as zf:
            for member in zf.namelist():
                target = (dest / member).resolve()
                if target != root and root not in target.parents:
                    raise DeployError(ErrorKind.STAGING_CORRUPTED, f"Archive entry escapes staging directory: {member}")
            zf.extractall(dest)
    except zipfile.BadZipFile as e:
        raise DeployError(ErrorKind.STAGING_CORRUPTED, f"Transferred archive is not a valid zip: {e}")


class ExecutionContext(ABC):
    """Where the build's workspace lives relative to the controller."""

    def __init__(self, workspace: Path):
        self.workspace = Path(workspace)

    @property
    @abstractmethod
    def is_local(self) -> bool:
        ...

    def app_path(self, sub_path: Optional[str] = None) -> Path:
        return self.workspace / sub_path if sub_path else self.workspace

    def archive(self, sub_path: Optional[str] = None) -> bytes:
        return archive(self.app_path(sub_path))


class LocalContext(ExecutionContext):
    @property
    def is_local(self) -> bool:
        return True


class RemoteContext(ExecutionContext):
    """A workspace produced by a different execution context (a build agent)."""

    @property
    def is_local(self) -> bool:
        return False


@dataclass
class StagedArtifact:
    path: Path
    temp_dir: Optional[Path] = None

    @property
    def transferred(self) -> bool:
        return self.temp_dir is not None

    def cleanup(self) -> None:
        """Delete temporary staging storage; the original workspace is never touched."""
        if self.temp_dir is None:
            return
        shutil.rmtree(self.temp_dir, ignore_errors=True)
        logger.debug(f"Removed staging directory {self.temp_dir}")
        self.temp_dir = None


def stage_artifact(context: ExecutionContext, sub_path: Optional[str] = None,
                   log: Optional[RunLog] = None, temp_root: Optional[Path] = None) -> StagedArtifact:
    """
    Make the application bits available to the controller.

    Args:
        context: Execution context holding the workspace
        sub_path: Application path relative to the workspace (transferred
            contexts only; local runs join it during manifest resolution)
        log: Run log sink
        temp_root: Parent directory for temporary staging storage

    Returns:
        StagedArtifact

    Raises:
        DeployError: STAGING_CORRUPTED when unpacking does not yield exactly
            one top-level entry
    """
    log = log or RunLog()
    if context.is_local:
        return StagedArtifact(path=context.workspace)

    temp_dir = Path(tempfile.mkdtemp(prefix="appDir", dir=str(temp_root) if temp_root else None))
    staged = StagedArtifact(path=temp_dir, temp_dir=temp_dir)
    try:
        log.line("INFO: Looks like we are on a distributed system... "
                 "Transferring build artifacts from the build context to the controller.")
        source = context.app_path(sub_path)
        log.line(f"INFO: Transferring from {source} to {temp_dir}")

        zip_file = temp_dir / ARCHIVE_NAME
        zip_file.write_bytes(context.archive(sub_path))

        unpacked = temp_dir / "unpacked"
        unarchive(zip_file.read_bytes(), unpacked)
        try:
            zip_file.unlink()
        except OSError:
            log.line("WARNING: temporary files were not deleted successfully.")

        entries = list(unpacked.iterdir())
        if len(entries) != 1:
            raise DeployError(ErrorKind.STAGING_CORRUPTED,
                              f"Unzipped output directory held {len(entries)} top-level entries, expected 1")
        staged.path = entries[0]
    except BaseException:
        staged.cleanup()
        raise

    log.event(EventTypes.STAGED, {"path": str(staged.path), "transferred": True})
    return staged
