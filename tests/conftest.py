"""Shared fixtures: a staging root, settings pointing at it and a recording runner."""

import logging
import os
import subprocess
from pathlib import Path

import pytest

from server_setup.config import Settings
from server_setup.errors import CommandError
from server_setup.runner import CommandRunner
from server_setup.steps import StepContext


class FakeRunner(CommandRunner):
    """
    CommandRunner that records commands instead of executing them.

    ``results`` maps a command prefix to a return code, a ``(code, stdout)``
    tuple, or a list of either consumed one call at a time.
    """

    def __init__(
        self, dry_run=False, results=None, users=(), groups=(), installed=(), commands=(), open_ports=()
    ):
        self.sleeps = []
        super().__init__(dry_run=dry_run, max_retries=3, retry_delay=1, sleep=self.sleeps.append)
        self.calls = []
        self.results = dict(results or {})
        self.users = set(users)
        self.groups = set(groups)
        self.installed = set(installed)
        self.commands = set(commands)
        self.open_ports = set(open_ports)

    def run(
        self,
        cmd,
        check=True,
        capture_output=False,
        text=True,
        env=None,
        shell=None,
        query=False,
        timeout=None,
        input=None,
    ):
        cmd_str = cmd if isinstance(cmd, str) else " ".join(str(c) for c in cmd)
        self.calls.append(cmd_str)
        if self.dry_run and not query:
            return subprocess.CompletedProcess(cmd, 0, "", "")
        code, stdout = self._result_for(cmd_str)
        if code != 0 and check:
            raise CommandError(cmd, code, "simulated failure")
        return subprocess.CompletedProcess(cmd, code, stdout, "")

    def _result_for(self, cmd_str):
        for prefix, outcome in self.results.items():
            if cmd_str.startswith(prefix):
                if isinstance(outcome, list):
                    outcome = outcome.pop(0) if len(outcome) > 1 else outcome[0]
                if isinstance(outcome, tuple):
                    return outcome
                return outcome, ""
        return 0, ""

    def ran(self, prefix):
        return [c for c in self.calls if c.startswith(prefix)]

    def user_exists(self, username):
        return username in self.users

    def group_exists(self, group):
        return group in self.groups

    def package_installed(self, package):
        return package in self.installed

    def command_exists(self, cmd):
        return cmd in self.commands

    def port_open(self, port, host="127.0.0.1"):
        return port in self.open_ports


@pytest.fixture(autouse=True)
def clean_env(monkeypatch, tmp_path):
    """Keep host environment variables and .env files out of Settings."""
    for key in list(os.environ):
        if key.startswith("SETUP_") or key == "PRIMARY_USER":
            monkeypatch.delenv(key)
    monkeypatch.chdir(tmp_path)


@pytest.fixture(autouse=True)
def reset_logger():
    """Detach handlers a CLI test installed so caplog sees server_setup records."""
    yield
    logger = logging.getLogger("server_setup")
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    logger.propagate = True


@pytest.fixture
def root(tmp_path):
    path = tmp_path / "root"
    path.mkdir()
    return path


@pytest.fixture
def settings(root):
    return Settings(root=root, retry_delay=0)


@pytest.fixture
def runner():
    return FakeRunner()


@pytest.fixture
def ctx(settings, runner, tmp_path):
    temp = tmp_path / "step-tmp"
    temp.mkdir()
    return StepContext(settings, runner, temp_dir=temp)


@pytest.fixture
def host_file(root):
    """Write a file at an absolute host path under the staging root."""

    def write(host_path, content="", mode=0o644):
        path = root / str(host_path).lstrip("/")
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content)
        os.chmod(path, mode)
        return path

    return write


def read_host(root: Path, host_path: str) -> str:
    return (root / host_path.lstrip("/")).read_text()
