"""Tests for checkpoint creation, lookup and rollback."""

import datetime
import json
import os
import stat
from unittest.mock import patch

import pytest

from conftest import FakeRunner, read_host
from server_setup.checkpoint import (
    MANIFEST_NAME,
    MANIFEST_VERSION,
    Checkpoint,
    CheckpointManager,
)
from server_setup.errors import CheckpointError, CheckpointNotFoundError, ValidationError
from server_setup.steps import StepContext
from server_setup.steps.security import SSHD_CONFIG, SecurityStep
from server_setup.utils import restore_file


def ticking_clock(start=datetime.datetime(2026, 3, 1, 12, 0, 0)):
    """Return a clock that advances one second per call."""
    state = {"now": start}

    def clock():
        state["now"] += datetime.timedelta(seconds=1)
        return state["now"]

    return clock


@pytest.fixture
def manager(settings, runner):
    return CheckpointManager(settings, runner, clock=ticking_clock())


class TestCheckpointCreation:
    """Test what a checkpoint captures on disk."""

    def test_creates_directory_with_manifest(self, manager, host_file):
        """Test that the checkpoint directory is named after the checkpoint and holds a manifest."""
        host_file("/etc/environment", "PATH=/usr/bin\n")

        directory = manager.create("before-upgrade", ["/etc/environment"])

        assert directory.parent == manager.root
        assert directory.name.startswith("before-upgrade-20260301-120001-")
        manifest = json.loads((directory / MANIFEST_NAME).read_text())
        assert manifest["format_version"] == MANIFEST_VERSION
        assert manifest["name"] == "before-upgrade"
        assert [f["path"] for f in manifest["files"]] == ["/etc/environment"]

    def test_backup_copy_matches_original(self, manager, host_file):
        """Test that the captured copy has the original content."""
        host_file("/etc/environment", "LANG=C.UTF-8\n")

        directory = manager.create("snap", ["/etc/environment"])
        checkpoint = manager.load(directory)

        backup = directory / checkpoint.files[0].backup
        assert backup.read_text() == "LANG=C.UTF-8\n"
        assert backup.name.endswith(".bak")

    def test_nonexistent_files_are_excluded(self, manager, host_file):
        """Test that paths missing on the host are not recorded."""
        host_file("/etc/profile", "umask 022\n")

        checkpoint = manager.load(manager.create("partial", ["/etc/profile", "/etc/missing.conf"]))

        assert checkpoint.backed_up_files == ["/etc/profile"]

    def test_directory_paths_are_expanded(self, manager, host_file):
        """Test that a directory captures every regular file beneath it."""
        host_file("/etc/nginx/nginx.conf", "events {}\n")
        host_file("/etc/nginx/sites-available/default", "server {}\n")

        checkpoint = manager.load(manager.create("web", ["/etc/nginx"]))

        assert sorted(checkpoint.backed_up_files) == [
            "/etc/nginx/nginx.conf",
            "/etc/nginx/sites-available/default",
        ]

    def test_duplicate_paths_captured_once(self, manager, host_file):
        """Test that a file named twice is only copied once."""
        host_file("/etc/nginx/nginx.conf", "events {}\n")

        checkpoint = manager.load(
            manager.create("dup", ["/etc/nginx/nginx.conf", "/etc/nginx"])
        )

        assert checkpoint.backed_up_files == ["/etc/nginx/nginx.conf"]

    def test_default_paths_come_from_settings(self, manager, host_file):
        """Test that create() without paths uses Settings.checkpoint_files."""
        host_file("/etc/passwd", "root:x:0:0::/root:/bin/bash\n")

        checkpoint = manager.load(manager.create("defaults"))

        assert checkpoint.backed_up_files == ["/etc/passwd"]

    def test_records_package_and_service_snapshots(self, settings, host_file):
        """Test that package and enabled-service lists are stored beside the files."""
        runner = FakeRunner(
            results={
                "dpkg --get-selections": (0, "nginx\tinstall\ncurl\tinstall\n"),
                "systemctl list-unit-files": (0, "ssh.service enabled enabled\ncron.service enabled enabled\n"),
            }
        )
        manager = CheckpointManager(settings, runner, clock=ticking_clock())

        directory = manager.create("snap", [])
        checkpoint = manager.load(directory)

        assert (directory / checkpoint.package_snapshot).read_text().startswith("nginx\tinstall")
        assert (directory / checkpoint.service_snapshot).read_text() == "ssh.service\ncron.service\n"

    def test_failed_snapshot_is_not_fatal(self, settings):
        """Test that a missing dpkg only drops the package snapshot."""
        runner = FakeRunner(results={"dpkg": 127})
        manager = CheckpointManager(settings, runner, clock=ticking_clock())

        checkpoint = manager.load(manager.create("snap", []))

        assert checkpoint.package_snapshot is None
        assert checkpoint.service_snapshot is not None

    def test_invalid_name_rejected_before_any_write(self, manager):
        """Test that names with path characters raise ValidationError."""
        with pytest.raises(ValidationError):
            manager.create("../escape", [])
        assert not manager.root.exists()

    def test_partial_checkpoint_removed_on_failure(self, manager, host_file):
        """Test that a copy failure leaves no half-written checkpoint behind."""
        host_file("/etc/environment", "X=1\n")

        with patch("server_setup.checkpoint.shutil.copy2", side_effect=OSError("disk full")):
            with pytest.raises(CheckpointError):
                manager.create("broken", ["/etc/environment"])

        assert list(manager.root.iterdir()) == []

    def test_checkpoint_root_is_private(self, manager):
        """Test that checkpoint directories are only readable by their owner."""
        directory = manager.create("private", [])

        assert stat.S_IMODE(directory.stat().st_mode) == 0o700

    def test_default_clock_stamps_utc(self, settings, runner):
        """Test that checkpoints are stamped in UTC so DST changes cannot reorder them."""
        manager = CheckpointManager(settings, runner)

        checkpoint = manager.load(manager.create("utc", []))

        assert checkpoint.created_at.utcoffset() == datetime.timedelta(0)
        assert checkpoint.timestamp == checkpoint.created_at.strftime("%Y%m%d-%H%M%S-%f")


class TestCheckpointLookup:
    """Test listing and selecting checkpoints."""

    def test_list_newest_first(self, manager):
        """Test that list() orders checkpoints by creation time, newest first."""
        first = manager.create("a", [])
        second = manager.create("b", [])

        assert [c.directory for c in manager.list()] == [second, first]

    def test_latest_selects_most_recent(self, manager, host_file):
        """Test that latest() returns the newest checkpoint of that name."""
        manager.create("deploy", [])
        newest = manager.create("deploy", [])

        assert manager.latest("deploy").directory == newest

    def test_name_prefix_does_not_match(self, manager):
        """Test that 'web' never selects a newer 'web-extra' checkpoint."""
        web = manager.create("web", [])
        manager.create("web-extra", [])

        assert manager.latest("web").directory == web
        assert [c.name for c in manager.list("web")] == ["web"]

    def test_missing_name_raises(self, manager):
        """Test that latest() raises CheckpointNotFoundError when nothing matches."""
        with pytest.raises(CheckpointNotFoundError) as excinfo:
            manager.latest("nothing")
        assert excinfo.value.name == "nothing"

    def test_unreadable_manifest_is_ignored(self, manager):
        """Test that a directory with a corrupt manifest is skipped."""
        broken = manager.root / "broken-20260101-000000-000000"
        broken.mkdir(parents=True)
        (broken / MANIFEST_NAME).write_text("not json")

        assert manager.list() == []

    def test_directory_without_manifest_is_ignored(self, manager):
        """Test that an incomplete checkpoint is not listed."""
        (manager.root / "half-20260101-000000-000000").mkdir(parents=True)

        with pytest.raises(CheckpointNotFoundError):
            manager.latest("half")

    def test_unsupported_manifest_version(self, tmp_path):
        """Test that a manifest from a different format version is refused."""
        with pytest.raises(CheckpointError):
            Checkpoint.from_manifest(tmp_path, {"format_version": 99})


class TestRollback:
    """Test restoring files from a checkpoint."""

    def test_round_trip_restores_content_and_mode(self, manager, runner, root, host_file):
        """Test that rollback restores both the bytes and the permissions."""
        path = host_file("/etc/ssh/sshd_config", "PermitRootLogin prohibit-password\n", 0o600)
        manager.create("ssh", ["/etc/ssh/sshd_config"])

        path.write_text("PermitRootLogin yes\n")
        os.chmod(path, 0o666)
        result = manager.rollback("ssh")

        assert read_host(root, "/etc/ssh/sshd_config") == "PermitRootLogin prohibit-password\n"
        assert stat.S_IMODE(path.stat().st_mode) == 0o600
        assert result.restored == ["/etc/ssh/sshd_config"]
        assert result.success
        assert runner.ran("systemctl daemon-reload")

    def test_restores_deleted_file(self, manager, host_file):
        """Test that a file removed after the checkpoint is recreated."""
        path = host_file("/etc/fail2ban/jail.local", "[DEFAULT]\n")
        manager.create("f2b", ["/etc/fail2ban/jail.local"])
        path.unlink()
        path.parent.rmdir()

        manager.rollback("f2b")

        assert path.read_text() == "[DEFAULT]\n"

    def test_rollback_uses_most_recent_checkpoint(self, manager, root, host_file):
        """Test that the newest checkpoint of a name wins."""
        path = host_file("/etc/environment", "A\n")
        manager.create("env", ["/etc/environment"])
        path.write_text("B\n")
        manager.create("env", ["/etc/environment"])
        path.write_text("C\n")

        manager.rollback("env")

        assert read_host(root, "/etc/environment") == "B\n"

    def test_missing_checkpoint_changes_nothing(self, manager, runner, root, host_file):
        """Test that rolling back an unknown name fails without side effects."""
        host_file("/etc/environment", "unchanged\n")

        with pytest.raises(CheckpointNotFoundError):
            manager.rollback("never-created")

        assert read_host(root, "/etc/environment") == "unchanged\n"
        assert runner.calls == []

    def test_daemon_reload_failure_is_not_fatal(self, settings, root, host_file):
        """Test that files are restored even when systemd cannot reload."""
        runner = FakeRunner(results={"systemctl daemon-reload": 1})
        manager = CheckpointManager(settings, runner, clock=ticking_clock())
        path = host_file("/etc/profile", "old\n")
        manager.create("profile", ["/etc/profile"])
        path.write_text("new\n")

        result = manager.rollback("profile")

        assert result.reloaded is False
        assert read_host(root, "/etc/profile") == "old\n"

    def test_missing_backup_copy_reported(self, manager, host_file):
        """Test that a deleted backup copy is reported rather than crashing."""
        host_file("/etc/profile", "x\n")
        directory = manager.create("gone", ["/etc/profile"])
        checkpoint = manager.load(directory)
        (directory / checkpoint.files[0].backup).unlink()

        result = manager.rollback("gone")

        assert result.missing == ["/etc/profile"]
        assert not result.success

    def test_directory_in_place_of_file_is_refused(self, manager, root, host_file):
        """Test that a live path replaced by a directory is reported, not written into."""
        path = host_file("/etc/app.conf", "v1\n", 0o600)
        manager.create("app", ["/etc/app.conf"])
        path.unlink()
        path.mkdir()
        mode = stat.S_IMODE(path.stat().st_mode)

        result = manager.rollback("app")

        assert result.failed == ["/etc/app.conf"]
        assert result.restored == []
        assert not result.success
        assert list(path.iterdir()) == []
        assert stat.S_IMODE(path.stat().st_mode) == mode

    def test_failed_entry_does_not_stop_rollback(self, manager, runner, root, host_file):
        """Test that an OSError on one file still restores the rest and reloads systemd."""
        first = host_file("/etc/a.conf", "a1\n")
        second = host_file("/etc/b.conf", "b1\n")
        manager.create("pair", ["/etc/a.conf", "/etc/b.conf"])
        first.write_text("a2\n")
        second.write_text("b2\n")
        real_restore = restore_file

        def flaky_restore(backup, live):
            if str(live).endswith("a.conf"):
                raise PermissionError(13, "Permission denied", str(live))
            return real_restore(backup, live)

        with patch("server_setup.checkpoint.restore_file", side_effect=flaky_restore):
            result = manager.rollback("pair")

        assert result.failed == ["/etc/a.conf"]
        assert result.restored == ["/etc/b.conf"]
        assert read_host(root, "/etc/b.conf") == "b1\n"
        assert runner.ran("systemctl daemon-reload")
        assert not result.success

    def test_dry_run_restores_nothing(self, settings, root, host_file):
        """Test that a dry-run rollback leaves the live file alone."""
        path = host_file("/etc/profile", "original\n")
        CheckpointManager(settings, FakeRunner(), clock=ticking_clock()).create("p", ["/etc/profile"])
        path.write_text("changed\n")

        result = CheckpointManager(settings, FakeRunner(dry_run=True)).rollback("p")

        assert result.restored == ["/etc/profile"]
        assert read_host(root, "/etc/profile") == "changed\n"

    def test_security_step_ssh_hardening_rolls_back(self, settings, runner, root, host_file, tmp_path):
        """Test the PermitRootLogin yes -> no -> rollback -> yes scenario."""
        host_file(SSHD_CONFIG, "Port 22\nPermitRootLogin yes\n", 0o644)
        manager = CheckpointManager(settings, runner, clock=ticking_clock())
        manager.create("07-security", SecurityStep.checkpoint_paths)

        ctx = StepContext(settings, runner, temp_dir=tmp_path)
        SecurityStep().harden_ssh(ctx)
        hardened = read_host(root, SSHD_CONFIG)
        assert "PermitRootLogin no" in hardened
        assert "PermitRootLogin yes" not in hardened

        manager.rollback("07-security")

        assert read_host(root, SSHD_CONFIG) == "Port 22\nPermitRootLogin yes\n"
