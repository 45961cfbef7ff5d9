"""Tests for command execution, retries and host queries."""

import sys

import pytest

from conftest import FakeRunner
from server_setup.errors import CommandError, StepError
from server_setup.runner import CommandRunner


def python_cmd(code):
    return [sys.executable, "-c", code]


class TestRun:
    """Test CommandRunner.run against real subprocesses."""

    def test_successful_command(self):
        """Test that stdout is captured and the exit code is zero."""
        result = CommandRunner().run(python_cmd("print('hello')"), capture_output=True)

        assert result.returncode == 0
        assert result.stdout.strip() == "hello"

    def test_failure_raises_command_error(self):
        """Test that a non-zero exit raises CommandError when checked."""
        with pytest.raises(CommandError) as excinfo:
            CommandRunner().run(python_cmd("import sys; sys.exit(3)"))

        assert excinfo.value.returncode == 3
        assert sys.executable in excinfo.value.cmd

    def test_failure_returned_when_unchecked(self):
        """Test that check=False returns the failing result."""
        result = CommandRunner().run(python_cmd("import sys; sys.exit(4)"), check=False)

        assert result.returncode == 4

    def test_missing_binary_is_127(self):
        """Test that an unknown program maps to exit code 127."""
        result = CommandRunner().run(["definitely-not-a-real-binary-xyz"], check=False)

        assert result.returncode == 127

    def test_dry_run_does_not_execute(self, tmp_path):
        """Test that dry-run skips mutating commands."""
        marker = tmp_path / "marker"
        result = CommandRunner(dry_run=True).run(python_cmd(f"open({str(marker)!r}, 'w')"))

        assert result.returncode == 0
        assert not marker.exists()

    def test_dry_run_still_runs_queries(self, tmp_path):
        """Test that query=True commands execute during a dry run."""
        marker = tmp_path / "marker"
        CommandRunner(dry_run=True).run(python_cmd(f"open({str(marker)!r}, 'w')"), query=True)

        assert marker.exists()

    def test_env_is_merged(self):
        """Test that extra environment variables reach the child."""
        result = CommandRunner().run(
            python_cmd("import os; print(os.environ['DEBIAN_FRONTEND'])"),
            capture_output=True,
            env={"DEBIAN_FRONTEND": "noninteractive"},
        )

        assert result.stdout.strip() == "noninteractive"


class TestExecuteWithRetry:
    """Test the bounded retry loop."""

    def test_gives_up_after_max_attempts(self):
        """Test that a persistently failing command runs exactly max_retries times."""
        runner = FakeRunner(results={"apt-get update": 100})

        assert runner.execute_with_retry(["apt-get", "update"]) is False
        assert len(runner.ran("apt-get update")) == 3

    def test_no_sleep_after_last_attempt(self):
        """Test that the constant delay is only applied between attempts."""
        runner = FakeRunner(results={"apt-get update": 100})

        runner.execute_with_retry(["apt-get", "update"], delay=7)

        assert runner.sleeps == [7, 7]

    def test_success_on_second_attempt(self):
        """Test that the loop stops at the first success."""
        runner = FakeRunner(results={"apt-get update": [1, 0]})

        assert runner.execute_with_retry(["apt-get", "update"]) is True
        assert len(runner.ran("apt-get update")) == 2
        assert runner.sleeps == [1]

    def test_callable_attempts(self):
        """Test that callables are retried and exceptions count as failures."""
        attempts = []

        def flaky():
            attempts.append(1)
            if len(attempts) == 1:
                raise OSError("connection reset")
            return True

        runner = FakeRunner()

        assert runner.execute_with_retry(flaky) is True
        assert len(attempts) == 2

    def test_max_attempts_override(self):
        """Test that an explicit max_attempts wins over the runner default."""
        runner = FakeRunner(results={"curl": 6})

        runner.execute_with_retry(["curl", "https://example.com"], max_attempts=5)

        assert len(runner.ran("curl")) == 5


class TestHostQueries:
    """Test polling and package helpers."""

    def test_wait_for_service_polls_until_active(self):
        """Test that wait_for_service returns once the unit reports active."""
        runner = FakeRunner(results={"systemctl is-active": [3, 3, 0]})

        assert runner.wait_for_service("nginx", timeout=30, interval=2) is True
        assert runner.sleeps == [2, 2]

    def test_wait_for_service_times_out(self):
        """Test that wait_for_service gives up after the timeout."""
        runner = FakeRunner(results={"systemctl is-active": 3})

        assert runner.wait_for_service("nginx", timeout=6, interval=2) is False
        assert len(runner.sleeps) == 3

    def test_wait_for_service_dry_run(self):
        """Test that dry-run never waits."""
        runner = FakeRunner(dry_run=True)

        assert runner.wait_for_service("nginx") is True
        assert runner.sleeps == []

    def test_wait_for_port_open(self):
        runner = FakeRunner(open_ports={80})

        assert runner.wait_for_port(80, timeout=10, interval=2) is True
        assert runner.sleeps == []

    def test_wait_for_port_times_out(self):
        """Test that a closed port is polled once per interval until the timeout."""
        runner = FakeRunner()

        assert runner.wait_for_port(8080, timeout=10, interval=2) is False
        assert runner.sleeps == [2] * 5

    def test_apt_update_retries_noninteractive(self):
        runner = FakeRunner(results={"apt-get update": [100, 0]})

        assert runner.apt_update(delay=5) is True
        assert runner.ran("apt-get update") == ["apt-get update", "apt-get update"]
        assert runner.sleeps == [5]

    def test_install_skips_installed_packages(self):
        """Test that only missing packages are passed to apt-get."""
        runner = FakeRunner(installed={"curl"})

        assert runner.install_packages(["curl", "git"]) == []
        assert runner.ran("apt-get install") == ["apt-get install -y git"]

    def test_required_package_failure_raises(self):
        """Test that a failed required package raises StepError."""
        runner = FakeRunner(results={"apt-get install -y broken": 100})

        with pytest.raises(StepError):
            runner.install_packages(["git", "broken"], required=True)

    def test_optional_package_failure_returned(self):
        """Test that optional packages report failures without raising."""
        runner = FakeRunner(results={"apt-get install -y broken": 100})

        assert runner.install_packages(["git", "broken"], required=False) == ["broken"]

    def test_download_verifies_checksum(self, tmp_path):
        """Test that a checksum mismatch deletes the download."""
        dest = tmp_path / "file"
        dest.write_text("payload")
        runner = FakeRunner()

        assert runner.download("https://example.com/f", dest, checksum="0" * 64) is False
        assert not dest.exists()

    def test_real_user_lookup(self):
        """Test that root exists and a random name does not."""
        assert CommandRunner.user_exists("root") is True
        assert CommandRunner.user_exists("no-such-user-xyz") is False
