"""
Input validation and host readiness checks.

Input validators raise ``ValidationError`` before anything on the host is
touched. Host checks return ``CheckResult`` records so the caller can decide
which failures are fatal.
"""

import json
import logging
import platform
import re
import shutil
import socket
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Iterable, List, Optional

from .errors import ValidationError
from . import utils

if TYPE_CHECKING:
    from .config import Settings
    from .runner import CommandRunner

logger = logging.getLogger("server_setup")

USERNAME_RE = re.compile(r"^[a-z_][a-z0-9_-]{0,31}$")
CHECKPOINT_NAME_RE = re.compile(r"^[A-Za-z0-9_-]+$")
EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
TIMEZONE_RE = re.compile(r"^[A-Za-z_]+(/[A-Za-z0-9_+-]+)*$")

RESERVED_USERNAMES = {"root", "daemon", "bin", "sys", "sync", "nobody"}

#####################################
# Input Validators
#####################################


def validate_username(username: str) -> str:
    if not USERNAME_RE.match(username or ""):
        raise ValidationError(
            f"Invalid username '{username}': use lowercase letters, digits, '-' or '_' "
            "(max 32 characters, not starting with a digit)"
        )
    if username in RESERVED_USERNAMES:
        raise ValidationError(f"Username '{username}' is reserved")
    return username


def validate_port(port) -> int:
    try:
        value = int(port)
    except (TypeError, ValueError):
        raise ValidationError(f"Invalid port: {port}")
    if not 1 <= value <= 65535:
        raise ValidationError(f"Port out of range (1-65535): {port}")
    return value


def validate_checkpoint_name(name: str) -> str:
    if not CHECKPOINT_NAME_RE.match(name or ""):
        raise ValidationError(
            f"Invalid checkpoint name '{name}': only letters, digits, '-' and '_' are allowed"
        )
    return name


def validate_mode(mode: str, modes: Iterable[str]) -> str:
    modes = tuple(modes)
    if mode not in modes:
        raise ValidationError(
            f"Unknown installation mode '{mode}'. Choose one of: {', '.join(modes)}"
        )
    return mode


def validate_email(email: str) -> str:
    if not EMAIL_RE.match(email):
        raise ValidationError(f"Invalid email address: {email}")
    return email


def validate_timezone(timezone: str, zoneinfo_dir: Path = Path("/usr/share/zoneinfo")) -> str:
    if not TIMEZONE_RE.match(timezone or ""):
        raise ValidationError(f"Invalid timezone: {timezone}")
    if zoneinfo_dir.is_dir() and not (zoneinfo_dir / timezone).is_file():
        raise ValidationError(f"Unknown timezone: {timezone}")
    return timezone


#####################################
# Host Checks
#####################################


@dataclass
class CheckResult:
    name: str
    passed: bool
    message: str
    fatal: bool = True

    @property
    def blocking(self) -> bool:
        return self.fatal and not self.passed


def _version_tuple(version: str):
    parts = (version.split(".") + ["0"])[:2]
    return tuple(int(p) if p.isdigit() else 0 for p in parts)


def check_ubuntu_version(settings: "Settings") -> CheckResult:
    version = utils.ubuntu_version(settings.root)
    if version is None:
        return CheckResult("ubuntu_version", False, "Not an Ubuntu system")
    if _version_tuple(version) < _version_tuple(settings.min_ubuntu_version):
        return CheckResult(
            "ubuntu_version",
            False,
            f"Ubuntu {version} < {settings.min_ubuntu_version}",
        )
    return CheckResult("ubuntu_version", True, f"Ubuntu {version}")


def check_architecture(settings: "Settings", machine: Optional[str] = None) -> CheckResult:
    arch = machine or platform.machine()
    if arch in settings.supported_architectures:
        return CheckResult("architecture", True, arch)
    return CheckResult(
        "architecture",
        False,
        f"{arch} not in [{', '.join(settings.supported_architectures)}]",
    )


def check_disk_space(settings: "Settings") -> CheckResult:
    free_gb = shutil.disk_usage(settings.root).free // (1024**3)
    if free_gb >= settings.min_disk_space_gb:
        return CheckResult("disk_space", True, f"{free_gb}GB available", fatal=False)
    return CheckResult(
        "disk_space",
        False,
        f"{free_gb}GB < {settings.min_disk_space_gb}GB recommended; installation may run out of space",
        fatal=False,
    )


def check_memory(settings: "Settings") -> CheckResult:
    total = utils.total_memory_mb()
    if total is None:
        return CheckResult("memory", True, "Memory size unknown", fatal=False)
    if total >= settings.min_memory_mb:
        return CheckResult("memory", True, f"{total}MB total")
    return CheckResult("memory", False, f"{total}MB < {settings.min_memory_mb}MB")


def check_internet(settings: "Settings", runner: "CommandRunner") -> CheckResult:
    for url in settings.connectivity_urls:
        logger.debug(f"Testing connectivity to: {url}")
        result = runner.run(
            ["curl", "-s", "-o", "/dev/null", "--connect-timeout", "10", "--max-time", "30", url],
            check=False,
            capture_output=True,
            query=True,
        )
        if result.returncode == 0:
            return CheckResult("internet", True, f"Reached {url}")
    return CheckResult("internet", False, "No reachable test URLs")


def check_dns(domains: Iterable[str] = ("google.com", "github.com", "ubuntu.com")) -> CheckResult:
    for domain in domains:
        try:
            socket.gethostbyname(domain)
            return CheckResult("dns", True, f"Resolved {domain}", fatal=False)
        except OSError:
            logger.debug(f"DNS lookup failed for {domain}")
    return CheckResult("dns", False, "Cannot resolve test domains", fatal=False)


def check_package_manager(runner: "CommandRunner") -> CheckResult:
    if runner.command_exists("lsof"):
        lock = runner.run(
            ["lsof", "/var/lib/dpkg/lock-frontend"], check=False, capture_output=True, query=True
        )
        if lock.returncode == 0:
            return CheckResult("package_manager", False, "dpkg is locked")
    apt = runner.run(["pgrep", "-x", "apt"], check=False, capture_output=True, query=True)
    if apt.returncode == 0:
        return CheckResult("package_manager", False, "apt is running")
    return CheckResult("package_manager", True, "Package manager is idle")


def check_systemd(settings: "Settings", runner: "CommandRunner") -> CheckResult:
    if not settings.resolve("/run/systemd/system").is_dir():
        return CheckResult("systemd", False, "Not running under systemd")
    if not runner.command_exists("systemctl"):
        return CheckResult("systemd", False, "systemctl not available")
    return CheckResult("systemd", True, "systemd is running")


def validate_pre_installation(
    settings: "Settings", runner: "CommandRunner"
) -> List[CheckResult]:
    """Run every readiness check and log the outcome of each."""
    results = [
        check_ubuntu_version(settings),
        check_architecture(settings),
        check_disk_space(settings),
        check_memory(settings),
        check_internet(settings, runner),
        check_dns(),
        check_package_manager(runner),
        check_systemd(settings, runner),
    ]
    for result in results:
        if result.passed:
            logger.info(f"✓ {result.name}: {result.message}")
        elif result.fatal:
            logger.error(f"✗ {result.name}: {result.message}")
        else:
            logger.warning(f"⚠ {result.name}: {result.message}")
    return results


def validate_config_file(runner: "CommandRunner", path: Path, kind: str = "generic") -> bool:
    """Check that a configuration file exists and, where a tool exists, parses."""
    path = Path(path)
    if not path.is_file():
        logger.error(f"Config validation failed: file does not exist: {path}")
        return False
    if kind == "nginx" and runner.command_exists("nginx"):
        return runner.run(["nginx", "-t", "-c", str(path)], check=False, query=True).returncode == 0
    if kind == "sshd" and runner.command_exists("sshd"):
        return runner.run(["sshd", "-t", "-f", str(path)], check=False, query=True).returncode == 0
    if kind == "json":
        try:
            json.loads(path.read_text())
        except ValueError as e:
            logger.error(f"JSON config validation failed: {path}: {e}")
            return False
    logger.debug(f"Config file validation passed: {path}")
    return True
