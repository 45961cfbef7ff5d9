"""Tests for Settings loading and validation."""

from pathlib import Path

import pydantic
import pytest

from server_setup.config import INSTALLATION_MODES, Settings


class TestSettingsDefaults:
    """Test the built-in defaults."""

    def test_defaults(self):
        settings = Settings()

        assert settings.primary_user == "ubuntu"
        assert settings.log_dir == Path("/var/log/setup")
        assert settings.backup_dir == Path("/var/backups/setup")
        assert settings.max_retries == 3
        assert settings.retry_delay == 5
        assert settings.mode == "full"
        assert settings.log_retention_days == 30

    def test_resolve_maps_under_root(self, tmp_path):
        """Test that host paths are placed beneath the configured root."""
        settings = Settings(root=tmp_path)

        assert settings.resolve("/etc/nginx/nginx.conf") == tmp_path / "etc/nginx/nginx.conf"
        assert settings.checkpoint_root == tmp_path / "var/backups/setup/checkpoints"

    def test_home_directories(self):
        settings = Settings(primary_user="alice")

        assert settings.primary_user_home == Path("/home/alice")
        assert settings.deploy_home == Path("/home/deploy")


class TestSettingsEnvironment:
    """Test environment variable overrides."""

    def test_prefixed_variables(self, monkeypatch):
        monkeypatch.setenv("SETUP_MODE", "minimal")
        monkeypatch.setenv("SETUP_DRY_RUN", "true")
        monkeypatch.setenv("SETUP_LOG_RETENTION_DAYS", "7")

        settings = Settings()

        assert settings.mode == "minimal"
        assert settings.dry_run is True
        assert settings.log_retention_days == 7

    def test_primary_user_alias(self, monkeypatch):
        """Test that the bare PRIMARY_USER variable is honoured."""
        monkeypatch.setenv("PRIMARY_USER", "webadmin")

        assert Settings().primary_user == "webadmin"

    def test_list_from_json(self, monkeypatch):
        monkeypatch.setenv("SETUP_ZSH_PLUGINS", '["git", "docker"]')

        assert Settings().zsh_plugins == ["git", "docker"]

    def test_dotenv_file(self, tmp_path):
        """Test that a .env file in the working directory is read."""
        (tmp_path / ".env").write_text("SETUP_DEPLOY_USER=shipit\n")

        assert Settings().deploy_user == "shipit"

    def test_keyword_overrides_env(self, monkeypatch):
        monkeypatch.setenv("SETUP_MODE", "minimal")

        assert Settings(mode="dev-only").mode == "dev-only"


class TestSettingsValidation:
    """Test field validators."""

    @pytest.mark.parametrize("raw,expected", [("warn", "WARNING"), ("debug", "DEBUG"), (" Info ", "INFO")])
    def test_log_level_normalised(self, raw, expected):
        assert Settings(log_level=raw).log_level == expected

    def test_verbose_forces_debug(self):
        assert Settings(verbose=True).effective_log_level == "DEBUG"

    def test_unknown_log_level(self):
        with pytest.raises(pydantic.ValidationError):
            Settings(log_level="CHATTY")

    @pytest.mark.parametrize("mode", INSTALLATION_MODES)
    def test_known_modes(self, mode):
        assert Settings(mode=mode).mode == mode

    def test_unknown_mode(self):
        with pytest.raises(pydantic.ValidationError):
            Settings(mode="everything")

    def test_invalid_user(self):
        with pytest.raises(pydantic.ValidationError):
            Settings(primary_user="Bad User")

    def test_invalid_port(self):
        with pytest.raises(pydantic.ValidationError):
            Settings(ssh_port=70000)

    def test_invalid_email(self):
        with pytest.raises(pydantic.ValidationError):
            Settings(git_email="nobody")

    def test_empty_email_is_none(self):
        assert Settings(git_email="").git_email is None
