"""Common interface and execution context for provisioning steps."""

import logging
import tempfile
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, List, Optional, Sequence

from rich.console import Console

from .. import utils
from ..config import Settings
from ..runner import CommandRunner


class StepContext:
    """
    Everything a step needs while it runs.

    Host paths passed to the helpers are absolute (``/etc/...``) and are
    mapped under ``Settings.root``. In dry-run mode nothing is written.
    """

    def __init__(
        self,
        settings: Settings,
        runner: CommandRunner,
        logger: Optional[logging.Logger] = None,
        console: Optional[Console] = None,
        temp_dir: Optional[Path] = None,
        step_names: Sequence[str] = (),
    ):
        self.settings = settings
        self.runner = runner
        self.logger = logger or logging.getLogger("server_setup")
        self.console = console
        self.temp_dir = temp_dir or Path(tempfile.gettempdir())
        self.step_names = list(step_names)

    @property
    def dry_run(self) -> bool:
        return self.runner.dry_run

    def path(self, host_path) -> Path:
        return self.settings.resolve(host_path)

    def chown(self, host_path, owner: str, group: Optional[str] = None, recursive: bool = False) -> None:
        cmd = ["chown"] + (["-R"] if recursive else []) + [f"{owner}:{group or owner}", str(self.path(host_path))]
        self.runner.run(cmd, check=False)

    def ensure_directory(
        self, host_path, mode: int = 0o755, owner: Optional[str] = None, group: Optional[str] = None
    ) -> Path:
        target = self.path(host_path)
        if self.dry_run:
            self.logger.info(f"[dry-run] mkdir {host_path} (mode {oct(mode)})")
            return target
        utils.ensure_directory(target, mode)
        if owner:
            self.chown(host_path, owner, group)
        return target

    def write_file(
        self,
        host_path,
        content: str,
        mode: int = 0o644,
        owner: Optional[str] = None,
        group: Optional[str] = None,
    ) -> Path:
        target = self.path(host_path)
        if self.dry_run:
            self.logger.info(f"[dry-run] write {host_path} (mode {oct(mode)})")
            return target
        utils.write_file(target, content, mode)
        if owner:
            self.chown(host_path, owner, group)
        self.logger.debug(f"Wrote {host_path}")
        return target

    def read_file(self, host_path) -> Optional[str]:
        target = self.path(host_path)
        return target.read_text(errors="surrogateescape") if target.is_file() else None

    def backup_file(self, host_path) -> Optional[Path]:
        backup_dir = self.settings.resolve(self.settings.backup_dir) / "configs"
        if self.dry_run:
            return None
        return utils.backup_file(self.path(host_path), backup_dir)

    def restore_file(self, backup: Path, host_path) -> None:
        utils.restore_file(backup, self.path(host_path))
        self.logger.info(f"Restored {host_path} from {backup}")


@contextmanager
def step_context(
    settings: Settings,
    runner: CommandRunner,
    logger: Optional[logging.Logger] = None,
    console: Optional[Console] = None,
    step_names: Sequence[str] = (),
) -> Iterator[StepContext]:
    """Yield a context whose private temp directory is removed on every exit path."""
    with tempfile.TemporaryDirectory(prefix="setup-") as tmp:
        yield StepContext(settings, runner, logger, console, Path(tmp), step_names)


class ProvisioningStep:
    """
    One ordered unit of provisioning.

    Subclasses set ``name``, ``description`` and optionally
    ``checkpoint_paths`` (``None`` uses ``Settings.checkpoint_files``) and
    implement ``run``. ``run`` raises ``StepError`` on failure; anything
    non-critical is logged as a warning and skipped.
    """

    name: str = ""
    description: str = ""
    critical: bool = False
    checkpoint_paths: Optional[List[str]] = None

    def run(self, ctx: StepContext) -> None:
        raise NotImplementedError

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.name}>"
