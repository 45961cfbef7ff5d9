"""Tests for filesystem, host information and formatting helpers."""

import stat

import pytest

from server_setup import utils


class TestFiles:
    def test_write_file_creates_parents_with_mode(self, tmp_path):
        path = utils.write_file(tmp_path / "a" / "b.conf", "x\n", 0o600)

        assert path.read_text() == "x\n"
        assert stat.S_IMODE(path.stat().st_mode) == 0o600

    def test_ensure_directory_sets_mode(self, tmp_path):
        path = utils.ensure_directory(tmp_path / "d", 0o750)

        assert path.is_dir()
        assert stat.S_IMODE(path.stat().st_mode) == 0o750

    def test_backup_and_restore(self, tmp_path):
        original = tmp_path / "nginx.conf"
        original.write_text("old")

        backup = utils.backup_file(original, tmp_path / "backups", stamp="20260101-000000")
        original.write_text("new")
        utils.restore_file(backup, original)

        assert backup.name == "nginx.conf.20260101-000000.bak"
        assert original.read_text() == "old"

    def test_backup_missing_file(self, tmp_path):
        assert utils.backup_file(tmp_path / "nope", tmp_path / "backups") is None

    def test_restore_missing_backup(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            utils.restore_file(tmp_path / "nope.bak", tmp_path / "target")


class TestHostInformation:
    def test_os_release(self, tmp_path):
        release = tmp_path / "os-release"
        release.write_text('NAME="Ubuntu"\nVERSION_ID="24.04"\nID=ubuntu\n')

        info = utils.read_os_release(release)

        assert info == {"NAME": "Ubuntu", "VERSION_ID": "24.04", "ID": "ubuntu"}

    def test_ubuntu_version(self, root, host_file):
        host_file("/etc/os-release", 'ID=ubuntu\nVERSION_ID="22.04"\n')

        assert utils.ubuntu_version(root) == "22.04"

    def test_ubuntu_version_other_distro(self, root, host_file):
        host_file("/etc/os-release", "ID=debian\nVERSION_ID=12\n")

        assert utils.ubuntu_version(root) is None

    def test_reboot_required(self, root, host_file):
        assert utils.reboot_required(root) is False
        host_file("/var/run/reboot-required", "")
        assert utils.reboot_required(root) is True

    def test_container_detection(self, root, host_file):
        assert utils.is_container(root) is False
        host_file("/.dockerenv", "")
        assert utils.is_container(root) is True

    def test_vm_detection(self, root, host_file):
        host_file("/sys/class/dmi/id/product_name", "KVM Virtual Machine\n")

        assert utils.is_vm(root) is True

    def test_system_info_keys(self, root, host_file):
        host_file("/etc/os-release", 'NAME="Ubuntu"\nVERSION_ID="22.04"\nID=ubuntu\n')
        host_file("/.dockerenv", "")

        info = utils.system_info(root)

        assert info["os"] == "Ubuntu"
        assert info["version"] == "22.04"
        assert info["platform"] == "container"

    def test_total_memory(self, tmp_path):
        meminfo = tmp_path / "meminfo"
        meminfo.write_text("MemTotal:        2048000 kB\nMemFree: 1 kB\n")

        assert utils.total_memory_mb(meminfo) == 2000
        assert utils.total_memory_mb(tmp_path / "missing") is None


class TestFormatting:
    @pytest.mark.parametrize(
        "seconds,expected", [(5, "5s"), (65, "1m 5s"), (3725, "1h 2m 5s"), (0.9, "0s")]
    )
    def test_format_duration(self, seconds, expected):
        assert utils.format_duration(seconds) == expected

    @pytest.mark.parametrize(
        "size,expected",
        [(512, "512B"), (2048, "2.0KB"), (5 * 1024**3, "5.0GB"), (3 * 1024**4, "3.0TB")],
    )
    def test_bytes_to_human(self, size, expected):
        assert utils.bytes_to_human(size) == expected
