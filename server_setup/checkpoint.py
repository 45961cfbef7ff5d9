"""
Checkpoints of host configuration for rollback.

A checkpoint is a directory ``<backup_dir>/checkpoints/<name>-<timestamp>``
holding a copy of each captured file, the installed package list, the
enabled service list and a versioned ``manifest.json``. The manifest is
written last; a directory without one is not a checkpoint. Checkpoints are
never modified after creation.

License: MIT
Version: 1.1.0
"""

import datetime
import json
import logging
import os
import re
import shutil
import stat
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional

from .config import Settings
from .errors import CheckpointError, CheckpointNotFoundError
from .runner import CommandRunner
from .utils import restore_file
from .validation import validate_checkpoint_name

MANIFEST_NAME = "manifest.json"
MANIFEST_VERSION = 1
PACKAGES_FILE = "packages.txt"
SERVICES_FILE = "services.txt"
FILES_DIR = "files"

TIMESTAMP_FORMAT = "%Y%m%d-%H%M%S-%f"
CHECKPOINT_DIR_RE = re.compile(r"^(?P<name>[A-Za-z0-9_-]+)-(?P<stamp>\d{8}-\d{6}-\d{6})$")

PACKAGE_SNAPSHOT_CMD = ["dpkg", "--get-selections"]
SERVICE_SNAPSHOT_CMD = [
    "systemctl",
    "list-unit-files",
    "--type=service",
    "--state=enabled",
    "--no-legend",
    "--no-pager",
]


def utc_now() -> datetime.datetime:
    # Local time can repeat after a DST change and break newest-first ordering.
    return datetime.datetime.now(datetime.timezone.utc)


@dataclass
class BackedUpFile:
    path: str
    backup: str
    mode: int

    def to_dict(self) -> Dict[str, Any]:
        return {"path": self.path, "backup": self.backup, "mode": oct(self.mode)}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BackedUpFile":
        return cls(path=data["path"], backup=data["backup"], mode=int(data["mode"], 8))


@dataclass
class Checkpoint:
    name: str
    timestamp: str
    created_at: datetime.datetime
    directory: Path
    files: List[BackedUpFile] = field(default_factory=list)
    package_snapshot: Optional[str] = None
    service_snapshot: Optional[str] = None

    @property
    def backed_up_files(self) -> List[str]:
        return [f.path for f in self.files]

    def to_manifest(self) -> Dict[str, Any]:
        return {
            "format_version": MANIFEST_VERSION,
            "name": self.name,
            "timestamp": self.timestamp,
            "created_at": self.created_at.isoformat(),
            "files": [f.to_dict() for f in self.files],
            "package_snapshot": self.package_snapshot,
            "service_snapshot": self.service_snapshot,
        }

    @classmethod
    def from_manifest(cls, directory: Path, data: Dict[str, Any]) -> "Checkpoint":
        version = data.get("format_version")
        if version != MANIFEST_VERSION:
            raise CheckpointError(
                f"Unsupported manifest version {version!r} in {directory}"
            )
        try:
            return cls(
                name=data["name"],
                timestamp=data["timestamp"],
                created_at=datetime.datetime.fromisoformat(data["created_at"]),
                directory=directory,
                files=[BackedUpFile.from_dict(f) for f in data["files"]],
                package_snapshot=data.get("package_snapshot"),
                service_snapshot=data.get("service_snapshot"),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise CheckpointError(f"Malformed manifest in {directory}: {e}") from e


@dataclass
class RollbackResult:
    checkpoint: Checkpoint
    restored: List[str] = field(default_factory=list)
    missing: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)
    reloaded: bool = False

    @property
    def success(self) -> bool:
        return not self.missing and not self.failed


class CheckpointManager:
    """Creates, lists and restores checkpoints under ``Settings.checkpoint_root``."""

    def __init__(
        self,
        settings: Settings,
        runner: CommandRunner,
        clock: Callable[[], datetime.datetime] = utc_now,
        logger: Optional[logging.Logger] = None,
    ):
        self.settings = settings
        self.runner = runner
        self.clock = clock
        self.logger = logger or logging.getLogger("server_setup")

    @property
    def root(self) -> Path:
        return self.settings.checkpoint_root

    #####################################
    # Creation
    #####################################

    def create(self, name: str, paths: Optional[Iterable[str]] = None) -> Path:
        """Capture ``paths`` (default: ``Settings.checkpoint_files``) and return the new directory."""
        validate_checkpoint_name(name)
        created_at = self.clock()
        stamp = created_at.strftime(TIMESTAMP_FORMAT)
        self.logger.info(f"Creating checkpoint: {name}")

        try:
            self.root.mkdir(mode=0o700, parents=True, exist_ok=True)
        except OSError as e:
            raise CheckpointError(f"Cannot create backup root {self.root}: {e}") from e

        directory = self.root / f"{name}-{stamp}"
        try:
            directory.mkdir(mode=0o700)
        except OSError as e:
            raise CheckpointError(f"Cannot create checkpoint {directory}: {e}") from e

        checkpoint = Checkpoint(name, stamp, created_at, directory)
        try:
            for live_path, source in self._candidates(paths):
                checkpoint.files.append(self._copy_in(directory, live_path, source, stamp))
                self.logger.debug(f"Backed up: {live_path}")
            checkpoint.package_snapshot = self._snapshot(
                PACKAGE_SNAPSHOT_CMD, directory / PACKAGES_FILE
            )
            checkpoint.service_snapshot = self._snapshot(
                SERVICE_SNAPSHOT_CMD, directory / SERVICES_FILE, first_column=True
            )
            self._write_manifest(checkpoint)
        except OSError as e:
            shutil.rmtree(directory, ignore_errors=True)
            raise CheckpointError(f"Failed to write checkpoint {directory}: {e}") from e

        self.logger.info(
            f"Checkpoint created: {directory} ({len(checkpoint.files)} file(s))"
        )
        return directory

    def _candidates(self, paths: Optional[Iterable[str]]):
        """Yield (absolute host path, resolved source) for each existing regular file."""
        seen = set()
        for candidate in paths if paths is not None else self.settings.checkpoint_files:
            source = self.settings.resolve(candidate)
            if source.is_dir():
                found = sorted(p for p in source.rglob("*") if p.is_file() and not p.is_symlink())
            elif source.is_file():
                found = [source]
            else:
                self.logger.debug(f"Not present, skipping: {candidate}")
                continue
            for path in found:
                live_path = "/" + str(path.relative_to(self.settings.root))
                if live_path not in seen:
                    seen.add(live_path)
                    yield live_path, path

    @staticmethod
    def _copy_in(directory: Path, live_path: str, source: Path, stamp: str) -> BackedUpFile:
        relative = Path(FILES_DIR) / f"{live_path.lstrip('/')}.{stamp}.bak"
        target = directory / relative
        target.parent.mkdir(parents=True, exist_ok=True)
        shutil.copy2(source, target)
        return BackedUpFile(live_path, str(relative), stat.S_IMODE(source.stat().st_mode))

    def _snapshot(self, cmd: List[str], dest: Path, first_column: bool = False) -> Optional[str]:
        result = self.runner.run(cmd, check=False, capture_output=True, query=True)
        if result.returncode != 0:
            self.logger.warning(
                f"Could not record {dest.stem} snapshot ({' '.join(cmd)} exited {result.returncode})"
            )
            return None
        output = result.stdout or ""
        if first_column:
            output = "".join(
                line.split()[0] + "\n" for line in output.splitlines() if line.strip()
            )
        dest.write_text(output)
        return dest.name

    @staticmethod
    def _write_manifest(checkpoint: Checkpoint) -> None:
        manifest = checkpoint.directory / MANIFEST_NAME
        tmp = manifest.with_suffix(".json.tmp")
        tmp.write_text(json.dumps(checkpoint.to_manifest(), indent=2) + "\n")
        os.replace(tmp, manifest)

    #####################################
    # Lookup
    #####################################

    def load(self, directory: Path) -> Checkpoint:
        manifest = Path(directory) / MANIFEST_NAME
        try:
            data = json.loads(manifest.read_text())
        except (OSError, ValueError) as e:
            raise CheckpointError(f"Cannot read manifest {manifest}: {e}") from e
        return Checkpoint.from_manifest(Path(directory), data)

    def list(self, name: Optional[str] = None) -> List[Checkpoint]:
        """Return checkpoints, newest first, optionally only those called ``name``."""
        if name is not None:
            validate_checkpoint_name(name)
        if not self.root.is_dir():
            return []
        found = []
        for entry in self.root.iterdir():
            match = CHECKPOINT_DIR_RE.match(entry.name)
            if not match or not entry.is_dir():
                continue
            if name is not None and match.group("name") != name:
                continue
            try:
                found.append(self.load(entry))
            except CheckpointError as e:
                self.logger.debug(f"Ignoring {entry}: {e}")
        return sorted(found, key=lambda c: c.timestamp, reverse=True)

    def latest(self, name: str) -> Checkpoint:
        checkpoints = self.list(name)
        if not checkpoints:
            raise CheckpointNotFoundError(name)
        return checkpoints[0]

    #####################################
    # Rollback
    #####################################

    def rollback(self, name: str) -> RollbackResult:
        """Copy every file of the newest ``name`` checkpoint back into place."""
        checkpoint = self.latest(name)
        result = RollbackResult(checkpoint)
        self.logger.warning(f"Rolling back '{name}' from {checkpoint.directory}")

        for entry in checkpoint.files:
            backup = checkpoint.directory / entry.backup
            live = self.settings.resolve(entry.path)
            if not backup.is_file():
                self.logger.error(f"Backup copy missing for {entry.path}: {backup}")
                result.missing.append(entry.path)
                continue
            if live.is_dir() and not live.is_symlink():
                self.logger.error(f"Refusing to restore {entry.path}: it is now a directory")
                result.failed.append(entry.path)
                continue
            if self.runner.dry_run:
                self.logger.info(f"[dry-run] restore {entry.path}")
            else:
                try:
                    restore_file(backup, live)
                    os.chmod(live, entry.mode)
                except OSError as e:
                    self.logger.error(f"Failed to restore {entry.path}: {e}")
                    result.failed.append(entry.path)
                    continue
                self.logger.info(f"Restored: {entry.path}")
            result.restored.append(entry.path)

        reload = self.runner.run(["systemctl", "daemon-reload"], check=False)
        result.reloaded = reload.returncode == 0
        if not result.reloaded:
            self.logger.warning("systemctl daemon-reload failed; reload services manually")

        for snapshot in (checkpoint.package_snapshot, checkpoint.service_snapshot):
            if snapshot:
                self.logger.info(
                    f"Package/service state saved for manual review: {checkpoint.directory / snapshot}"
                )
        self.logger.warning("Rollback completed - please verify system state")
        return result
