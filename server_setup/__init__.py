"""Ubuntu server provisioning with checkpoints and rollback."""

from .config import VERSION as __version__

__all__ = ["__version__"]
