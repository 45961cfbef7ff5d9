"""Exception hierarchy shared by every provisioning component."""

from typing import Optional, Sequence, Union


class SetupError(Exception):
    """Base class for all server-setup failures."""


class ValidationError(SetupError, ValueError):
    """Bad user input or host precondition, raised before anything is changed."""


class CommandError(SetupError):
    """An external command exited non-zero."""

    def __init__(
        self,
        cmd: Union[Sequence[str], str],
        returncode: int,
        stderr: Optional[str] = None,
    ):
        self.cmd = cmd if isinstance(cmd, str) else " ".join(cmd)
        self.returncode = returncode
        self.stderr = (stderr or "").strip()
        message = f"Command failed ({returncode}): {self.cmd}"
        if self.stderr:
            message = f"{message}: {self.stderr}"
        super().__init__(message)


class StepError(SetupError):
    """A provisioning step could not complete."""


class CheckpointError(SetupError):
    """A checkpoint could not be written or read."""


class CheckpointNotFoundError(CheckpointError):
    """No checkpoint exists for the requested name."""

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"No checkpoint found for: {name}")


class InsecureEntropyError(SetupError):
    """No cryptographic random source is available on this host."""
