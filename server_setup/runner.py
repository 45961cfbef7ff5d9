"""
Command execution for provisioning steps.

Every external tool (apt-get, systemctl, ufw, ...) is invoked through a
``CommandRunner`` so that dry-run mode, retries and logging behave the same
everywhere. Read-only queries pass ``query=True`` and still execute during a
dry run.
"""

import grp
import hashlib
import logging
import os
import pwd
import shutil
import socket
import subprocess
import time
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Union

from .errors import CommandError, SetupError, StepError

Command = Union[Sequence[str], str]

APT_ENV = {"DEBIAN_FRONTEND": "noninteractive"}


class CommandRunner:
    def __init__(
        self,
        dry_run: bool = False,
        max_retries: int = 3,
        retry_delay: float = 5,
        logger: Optional[logging.Logger] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.dry_run = dry_run
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.logger = logger or logging.getLogger("server_setup")
        self.sleep = sleep

    #####################################
    # Execution
    #####################################

    def run(
        self,
        cmd: Command,
        check: bool = True,
        capture_output: bool = False,
        text: bool = True,
        env: Optional[Dict[str, str]] = None,
        shell: Optional[bool] = None,
        query: bool = False,
        timeout: Optional[float] = None,
        input: Optional[str] = None,
    ) -> subprocess.CompletedProcess:
        shell = isinstance(cmd, str) if shell is None else shell
        cmd_str = cmd if isinstance(cmd, str) else " ".join(cmd)
        if self.dry_run and not query:
            self.logger.info(f"[dry-run] {cmd_str}")
            return subprocess.CompletedProcess(cmd, 0, "", "")

        self.logger.debug(f"Executing command: {cmd_str}")
        full_env = {**os.environ, **env} if env else None
        try:
            result = subprocess.run(
                cmd,
                capture_output=capture_output,
                text=text,
                env=full_env,
                shell=shell,
                timeout=timeout,
                input=input,
            )
        except FileNotFoundError as e:
            result = subprocess.CompletedProcess(cmd, 127, "", str(e))
        except subprocess.TimeoutExpired:
            result = subprocess.CompletedProcess(cmd, 124, "", f"timed out after {timeout}s")

        if capture_output and result.stdout:
            self.logger.debug(f"Command stdout: {result.stdout.strip()}")
        if result.returncode != 0 and check:
            self.logger.error(f"Command failed: {cmd_str} with exit code {result.returncode}")
            if result.stderr:
                self.logger.debug(f"Error output: {str(result.stderr).strip()}")
            raise CommandError(cmd, result.returncode, result.stderr or None)
        return result

    def execute_with_retry(
        self,
        command: Union[Command, Callable[[], bool]],
        max_attempts: Optional[int] = None,
        delay: Optional[float] = None,
        label: str = "command",
        env: Optional[Dict[str, str]] = None,
    ) -> bool:
        """
        Run ``command`` until it succeeds or ``max_attempts`` is used up.

        The delay between attempts is constant. ``command`` may be an argv
        list, a shell string or a callable returning a truthy value on
        success.
        """
        max_attempts = self.max_retries if max_attempts is None else max_attempts
        delay = self.retry_delay if delay is None else delay
        for attempt in range(1, max_attempts + 1):
            self.logger.debug(f"Executing {label} (attempt {attempt}/{max_attempts})")
            if self._attempt(command, env):
                self.logger.info(f"{label} completed successfully")
                return True
            self.logger.warning(f"{label} failed (attempt {attempt}/{max_attempts})")
            if attempt < max_attempts:
                self.logger.info(f"Retrying in {delay} seconds...")
                self.sleep(delay)
        self.logger.error(f"{label} failed after {max_attempts} attempts")
        return False

    def _attempt(self, command, env) -> bool:
        if callable(command):
            try:
                return bool(command())
            except (SetupError, OSError, subprocess.SubprocessError) as e:
                self.logger.debug(f"Attempt raised: {e}")
                return False
        return self.run(command, check=False, env=env).returncode == 0

    #####################################
    # Host Queries
    #####################################

    @staticmethod
    def command_exists(cmd: str) -> bool:
        return shutil.which(cmd) is not None

    def package_installed(self, package: str) -> bool:
        result = self.run(["dpkg", "-s", package], check=False, capture_output=True, query=True)
        return result.returncode == 0

    def service_active(self, service: str) -> bool:
        result = self.run(
            ["systemctl", "is-active", "--quiet", service], check=False, query=True
        )
        return result.returncode == 0

    def service_enabled(self, service: str) -> bool:
        result = self.run(
            ["systemctl", "is-enabled", "--quiet", service], check=False, query=True
        )
        return result.returncode == 0

    @staticmethod
    def user_exists(username: str) -> bool:
        try:
            pwd.getpwnam(username)
            return True
        except KeyError:
            return False

    @staticmethod
    def group_exists(group: str) -> bool:
        try:
            grp.getgrnam(group)
            return True
        except KeyError:
            return False

    @staticmethod
    def port_open(port: int, host: str = "127.0.0.1") -> bool:
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        sock.settimeout(2)
        try:
            return sock.connect_ex((host, port)) == 0
        except OSError:
            return False
        finally:
            sock.close()

    #####################################
    # Polling
    #####################################

    def wait_for_service(self, service: str, timeout: int = 30, interval: int = 2) -> bool:
        self.logger.info(f"Waiting for service to be ready: {service}")
        if self.dry_run:
            return True
        elapsed = 0
        while elapsed < timeout:
            if self.service_active(service):
                self.logger.info(f"Service is ready: {service}")
                return True
            self.sleep(interval)
            elapsed += interval
            if elapsed % 10 == 0:
                self.logger.debug(f"Still waiting for service: {service} ({elapsed}/{timeout}s)")
        self.logger.error(f"Service not ready after {timeout}s: {service}")
        return False

    def wait_for_port(
        self, port: int, host: str = "localhost", timeout: int = 30, interval: int = 2
    ) -> bool:
        self.logger.info(f"Waiting for port to be open: {host}:{port}")
        if self.dry_run:
            return True
        elapsed = 0
        while elapsed < timeout:
            if self.port_open(port, host):
                self.logger.info(f"Port is open: {host}:{port}")
                return True
            self.sleep(interval)
            elapsed += interval
        self.logger.error(f"Port not open after {timeout}s: {host}:{port}")
        return False

    #####################################
    # Packages & Downloads
    #####################################

    def apt_update(self, delay: Optional[float] = None) -> bool:
        return self.execute_with_retry(
            ["apt-get", "update"], delay=delay, label="package list update", env=APT_ENV
        )

    def install_packages(
        self, packages: Iterable[str], required: bool = True, label: str = "packages"
    ) -> List[str]:
        """Install whatever is missing; return the packages that failed."""
        packages = list(packages)
        missing = [p for p in packages if not self.package_installed(p)]
        for pkg in set(packages) - set(missing):
            self.logger.debug(f"Package already installed: {pkg}")
        if not missing:
            self.logger.info(f"All {label} already installed.")
            return []
        self.logger.info(f"Installing {label}: {', '.join(missing)}")
        failed = []
        for pkg in missing:
            result = self.run(
                ["apt-get", "install", "-y", pkg], check=False, capture_output=True, env=APT_ENV
            )
            if result.returncode == 0:
                self.logger.debug(f"Installed: {pkg}")
            else:
                failed.append(pkg)
                self.logger.warning(f"Failed to install: {pkg}")
        if failed and required:
            raise StepError(f"Failed to install {label}: {', '.join(failed)}")
        return failed

    def download(
        self,
        url: str,
        destination: Union[str, Path],
        checksum: Optional[str] = None,
        retries: Optional[int] = None,
    ) -> bool:
        destination = Path(destination)
        if not self.execute_with_retry(
            ["curl", "-fsSL", "-o", str(destination), url],
            max_attempts=retries,
            label=f"download {url}",
        ):
            return False
        if checksum and not self.dry_run:
            digest = hashlib.sha256(destination.read_bytes()).hexdigest()
            if digest != checksum:
                self.logger.error(f"Checksum mismatch for {destination}")
                destination.unlink()
                return False
        return True
