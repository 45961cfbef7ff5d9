"""Filesystem and host helpers used by the steps and the checkpoint manager."""

import datetime
import logging
import os
import platform
import shutil
import socket
from pathlib import Path
from typing import Dict, Optional, Union

logger = logging.getLogger("server_setup")

PathLike = Union[str, Path]

TIMESTAMP_FORMAT = "%Y%m%d-%H%M%S"


def timestamp(now: Optional[datetime.datetime] = None) -> str:
    return (now or datetime.datetime.now()).strftime(TIMESTAMP_FORMAT)


#####################################
# Files & Directories
#####################################


def ensure_directory(
    path: PathLike,
    mode: int = 0o755,
    owner: Optional[str] = None,
    group: Optional[str] = None,
) -> Path:
    path = Path(path)
    if path.is_dir():
        logger.debug(f"Directory already exists: {path}")
    else:
        path.mkdir(parents=True, exist_ok=True)
        logger.debug(f"Created directory: {path}")
    os.chmod(path, mode)
    if owner or group:
        shutil.chown(path, user=owner, group=group or owner)
    return path


def write_file(
    path: PathLike,
    content: str,
    mode: int = 0o644,
    owner: Optional[str] = None,
    group: Optional[str] = None,
) -> Path:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    # Bytes read with surrogateescape are written back unchanged.
    path.write_text(content, errors="surrogateescape")
    os.chmod(path, mode)
    if owner or group:
        shutil.chown(path, user=owner, group=group or owner)
    logger.debug(f"Wrote {path} (mode {oct(mode)})")
    return path


def backup_file(
    path: PathLike, backup_dir: PathLike, stamp: Optional[str] = None
) -> Optional[Path]:
    """Copy a single file aside as ``<name>.<timestamp>.bak``."""
    path = Path(path)
    if not path.is_file():
        logger.debug(f"File does not exist, cannot backup: {path}")
        return None
    backup_dir = Path(backup_dir)
    backup_dir.mkdir(parents=True, exist_ok=True)
    backup = backup_dir / f"{path.name}.{stamp or timestamp()}.bak"
    shutil.copy2(path, backup)
    logger.debug(f"Backed up {path} to {backup}")
    return backup


def restore_file(backup: PathLike, original: PathLike) -> Path:
    backup, original = Path(backup), Path(original)
    if not backup.is_file():
        raise FileNotFoundError(f"Backup file not found: {backup}")
    original.parent.mkdir(parents=True, exist_ok=True)
    shutil.copy2(backup, original)
    logger.debug(f"Restored {original} from {backup}")
    return original


#####################################
# Host Information
#####################################


def read_os_release(path: PathLike = "/etc/os-release") -> Dict[str, str]:
    info: Dict[str, str] = {}
    path = Path(path)
    if not path.is_file():
        logger.warning(f"Cannot determine OS: {path} not found")
        return info
    for line in path.read_text().splitlines():
        if "=" in line:
            key, value = line.strip().split("=", 1)
            info[key] = value.strip('"')
    return info


def ubuntu_version(root: PathLike = "/") -> Optional[str]:
    """Return VERSION_ID on Ubuntu, otherwise None."""
    info = read_os_release(Path(root) / "etc/os-release")
    if info.get("ID") != "ubuntu":
        return None
    return info.get("VERSION_ID", "0")


def total_memory_mb(meminfo: PathLike = "/proc/meminfo") -> Optional[int]:
    try:
        with open(meminfo) as f:
            for line in f:
                if line.startswith("MemTotal:"):
                    return int(line.split()[1]) // 1024
    except OSError:
        return None
    return None


def reboot_required(root: PathLike = "/") -> bool:
    return (Path(root) / "var/run/reboot-required").exists()


def is_container(root: PathLike = "/") -> bool:
    root = Path(root)
    if (root / ".dockerenv").exists() or (root / "run/.containerenv").exists():
        return True
    try:
        return "container" in (root / "proc/1/cgroup").read_text()
    except OSError:
        return False


def is_vm(root: PathLike = "/") -> bool:
    try:
        product = (Path(root) / "sys/class/dmi/id/product_name").read_text().lower()
    except OSError:
        return False
    return any(word in product for word in ("virtual", "vmware", "qemu", "kvm", "xen"))


def system_info(root: PathLike = "/") -> Dict[str, str]:
    os_info = read_os_release(Path(root) / "etc/os-release")
    memory = total_memory_mb()
    disk = shutil.disk_usage(root)
    if is_container(root):
        platform_kind = "container"
    elif is_vm(root):
        platform_kind = "virtual machine"
    else:
        platform_kind = "bare metal"
    return {
        "os": os_info.get("NAME", platform.system()),
        "version": os_info.get("VERSION_ID", platform.release()),
        "hostname": socket.gethostname(),
        "arch": platform.machine(),
        "memory": f"{memory}MB" if memory is not None else "unknown",
        "disk free": bytes_to_human(disk.free),
        "platform": platform_kind,
    }


#####################################
# Formatting
#####################################


def format_duration(seconds: float) -> str:
    seconds = int(seconds)
    hours, rem = divmod(seconds, 3600)
    minutes, secs = divmod(rem, 60)
    if hours:
        return f"{hours}h {minutes}m {secs}s"
    if minutes:
        return f"{minutes}m {secs}s"
    return f"{secs}s"


def bytes_to_human(num_bytes: int) -> str:
    if num_bytes < 1024:
        return f"{num_bytes}B"
    value = float(num_bytes)
    for unit in ("KB", "MB", "GB"):
        value /= 1024
        if value < 1024:
            return f"{value:.1f}{unit}"
    return f"{value / 1024:.1f}TB"
