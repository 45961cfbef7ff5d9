"""
Runtime configuration for server-setup.

All tunables live on a single ``Settings`` object that is built once at
startup and handed to every component. Values are read from the environment
(prefix ``SETUP_``) or a local ``.env`` file; command-line flags are passed in
as keyword overrides and win over both.

License: MIT
Version: 1.1.0
"""

from pathlib import Path
from typing import List, Optional

from pydantic import AliasChoices, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .validation import validate_email, validate_mode, validate_port, validate_username

APP_NAME = "Ubuntu Server Setup"
VERSION = "1.1.0"

INSTALLATION_MODES = ("full", "nginx-only", "dev-only", "minimal")

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")


class Settings(BaseSettings):
    """
    Server setup settings.

    Every field can be overridden with ``SETUP_<FIELD>``; list fields take a
    JSON array. ``PRIMARY_USER`` is honoured as well as
    ``SETUP_PRIMARY_USER``.
    """

    model_config = SettingsConfigDict(
        env_prefix="SETUP_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    # Runtime behaviour
    log_level: str = Field("INFO", description="Console log level.")
    no_color: bool = False
    assume_yes: bool = False
    verbose: bool = False
    dry_run: bool = False
    skip_updates: bool = False
    rollback_on_failure: bool = False
    mode: str = "full"

    # Users and identity
    primary_user: str = Field(
        "ubuntu",
        validation_alias=AliasChoices("SETUP_PRIMARY_USER", "PRIMARY_USER"),
    )
    deploy_user: str = "deploy"
    webapp_group: str = "webapps"
    nodejs_group: str = "nodejs"
    allow_app_sudo: bool = False
    git_name: Optional[str] = None
    git_email: Optional[str] = None
    ssh_public_key: Optional[str] = None
    hostname: str = "auto"
    timezone: str = "UTC"

    # Filesystem layout
    root: Path = Path("/")
    log_dir: Path = Path("/var/log/setup")
    backup_dir: Path = Path("/var/backups/setup")
    log_retention_days: int = 30
    webapp_root: Path = Path("/var/www")

    # Retry behaviour
    max_retries: int = 3
    retry_delay: float = 5

    # Software versions
    python_version: str = "3.12"
    node_version: str = "lts"
    nvm_version: str = "v0.39.4"
    nvm_dir: Path = Path("/opt/nvm")
    deadsnakes_ppa: str = "ppa:deadsnakes/ppa"

    # Network
    http_port: int = 80
    https_port: int = 443
    ssh_port: int = 22
    node_dev_port: int = 3000
    python_dev_port: int = 8000

    # Nginx
    nginx_user: str = "www-data"
    nginx_worker_processes: str = "auto"
    nginx_worker_connections: int = 1024
    nginx_client_max_body_size: str = "64M"
    nginx_keepalive_timeout: int = 65

    # Security
    fail2ban_maxretry: int = 5
    fail2ban_bantime: int = 3600

    # Kernel and systemd tuning
    swappiness: int = 10
    vm_dirty_ratio: int = 15
    vm_dirty_background_ratio: int = 5
    net_core_rmem_max: int = 16777216
    net_core_wmem_max: int = 16777216
    systemd_limit_nofile: int = 65536
    systemd_limit_nproc: int = 32768

    # Swap file created on hosts with less memory than swap_min_memory_mb
    swap_file: str = "/swapfile"
    swap_size_mb: int = 1024
    swap_min_memory_mb: int = 2048

    # Host requirements
    min_ubuntu_version: str = "20.04"
    min_disk_space_gb: int = 10
    min_memory_mb: int = 1024
    supported_architectures: List[str] = Field(
        default_factory=lambda: ["x86_64", "aarch64", "arm64"]
    )
    connectivity_urls: List[str] = Field(
        default_factory=lambda: [
            "http://connectivity-check.ubuntu.com",
            "https://www.google.com",
            "https://github.com",
        ]
    )

    # Package lists
    essential_packages: List[str] = Field(
        default_factory=lambda: [
            "curl",
            "wget",
            "git",
            "unzip",
            "tar",
            "gzip",
            "software-properties-common",
            "apt-transport-https",
            "ca-certificates",
            "gnupg",
            "lsb-release",
            "build-essential",
            "make",
            "gcc",
            "g++",
        ]
    )
    dev_packages: List[str] = Field(
        default_factory=lambda: [
            "vim",
            "nano",
            "htop",
            "tree",
            "jq",
            "httpie",
            "ncdu",
            "iotop",
            "iftop",
            "bash-completion",
            "ncurses-term",
            "sqlite3",
            "redis-tools",
            "postgresql-client",
        ]
    )
    python_packages: List[str] = Field(
        default_factory=lambda: [
            "python3-pip",
            "python3-venv",
            "python3-dev",
            "python3-setuptools",
        ]
    )
    global_pip_packages: List[str] = Field(
        default_factory=lambda: ["pip", "setuptools", "virtualenv", "pipenv"]
    )
    global_npm_packages: List[str] = Field(
        default_factory=lambda: [
            "npm-check-updates",
            "pm2",
            "yarn",
            "nodemon",
            "typescript",
            "ts-node",
        ]
    )
    security_packages: List[str] = Field(
        default_factory=lambda: [
            "ufw",
            "fail2ban",
            "unattended-upgrades",
            "needrestart",
            "lynis",
            "rkhunter",
            "chkrootkit",
        ]
    )
    monitoring_packages: List[str] = Field(
        default_factory=lambda: [
            "htop",
            "iotop",
            "iftop",
            "nload",
            "vnstat",
            "sysstat",
        ]
    )
    zsh_plugins: List[str] = Field(
        default_factory=lambda: ["git", "npm", "nvm", "python", "pip", "virtualenv"]
    )
    zsh_theme: str = "robbyrussell"
    services_to_enable: List[str] = Field(
        default_factory=lambda: ["nginx", "fail2ban", "ufw", "unattended-upgrades", "ssh"]
    )

    # Files captured by a checkpoint when a step does not name its own
    checkpoint_files: List[str] = Field(
        default_factory=lambda: [
            "/etc/passwd",
            "/etc/group",
            "/etc/sudoers",
            "/etc/environment",
            "/etc/profile",
            "/etc/ssh/sshd_config",
            "/etc/nginx/nginx.conf",
            "/etc/systemd/system.conf",
        ]
    )

    @field_validator("log_level", mode="before")
    @classmethod
    def _normalise_log_level(cls, value: str) -> str:
        level = str(value).strip().upper()
        if level == "WARN":
            level = "WARNING"
        if level not in LOG_LEVELS:
            raise ValueError(f"Unknown log level: {value}")
        return level

    @field_validator("mode")
    @classmethod
    def _check_mode(cls, value: str) -> str:
        return validate_mode(value, INSTALLATION_MODES)

    @field_validator("primary_user", "deploy_user")
    @classmethod
    def _check_username(cls, value: str) -> str:
        return validate_username(value)

    @field_validator("http_port", "https_port", "ssh_port", "node_dev_port", "python_dev_port")
    @classmethod
    def _check_port(cls, value: int) -> int:
        return validate_port(value)

    @field_validator("git_email")
    @classmethod
    def _check_email(cls, value: Optional[str]) -> Optional[str]:
        if value:
            return validate_email(value)
        return None

    @property
    def effective_log_level(self) -> str:
        return "DEBUG" if self.verbose else self.log_level

    @property
    def primary_user_home(self) -> Path:
        return Path("/home") / self.primary_user

    @property
    def deploy_home(self) -> Path:
        return Path("/home") / self.deploy_user

    @property
    def checkpoint_root(self) -> Path:
        return self.resolve(self.backup_dir) / "checkpoints"

    def resolve(self, path) -> Path:
        """Map an absolute host path onto the configured root."""
        return self.root / str(path).lstrip("/")
