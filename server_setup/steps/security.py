"""07-security: firewall, fail2ban, SSH hardening, automatic updates and kernel hardening."""

import os
import re
from typing import Dict

from ..config import Settings
from ..errors import CommandError, StepError
from ..security import SSH_HARDENING_SETTINGS, harden_sshd_config
from .base import ProvisioningStep, StepContext

SSHD_CONFIG = "/etc/ssh/sshd_config"
JAIL_LOCAL = "/etc/fail2ban/jail.local"
FILTER_DIR = "/etc/fail2ban/filter.d"
AUTO_UPGRADES = "/etc/apt/apt.conf.d/20auto-upgrades"
UNATTENDED_UPGRADES = "/etc/apt/apt.conf.d/50unattended-upgrades"
SECURITY_SYSCTL = "/etc/sysctl.d/99-security-hardening.conf"
SSHD_RUN_DIR = "/run/sshd"
RKHUNTER_CONF = "/etc/rkhunter.conf"
CHKROOTKIT_CONF = "/etc/chkrootkit.conf"

SECURE_FILE_MODES = {
    "/etc/passwd": 0o644,
    "/etc/group": 0o644,
    "/etc/shadow": 0o640,
    "/etc/gshadow": 0o640,
    SSHD_CONFIG: 0o600,
    "/etc/crontab": 0o600,
    "/boot/grub/grub.cfg": 0o600,
}
SECURE_DIR_MODES = {"/etc/ssh": 0o755, "/etc/ssl": 0o755, "/var/log": 0o755}

RKHUNTER_SETTINGS = {
    "UPDATE_MIRRORS": "1",
    "MIRRORS_MODE": "1",
    "WEB_CMD": '"/usr/bin/curl -s"',
}

CHKROOTKIT_CONFIG = """\
RUN_DAILY="true"
RUN_DAILY_OPTS="-q"
DIFF_MODE="true"
"""

# Modes in which the application dev ports are opened.
DEV_PORT_MODES = ("full", "dev-only")

APP_FILTER = """\
# Fail2ban filter for {kind} applications
[Definition]
failregex = ^.*\\[<HOST>\\].*"(GET|POST|PUT|DELETE).*" (4[0-9]{{2}}|5[0-9]{{2}}) .*$
            ^.*{message} from <HOST>.*$

ignoreregex =
"""

FAIL2BAN_FILTERS = {
    "nodejs-app.conf": APP_FILTER.format(kind="Node.js", message="Invalid login attempt"),
    "python-app.conf": APP_FILTER.format(kind="Python", message="Failed login attempt"),
}

AUTO_UPGRADES_CONFIG = """\
APT::Periodic::Update-Package-Lists "1";
APT::Periodic::Download-Upgradeable-Packages "1";
APT::Periodic::AutocleanInterval "7";
APT::Periodic::Unattended-Upgrade "1";
"""

UNATTENDED_UPGRADES_CONFIG = """\
Unattended-Upgrade::Allowed-Origins {
    "${distro_id}:${distro_codename}";
    "${distro_id}:${distro_codename}-security";
    "${distro_id}ESMApps:${distro_codename}-apps-security";
    "${distro_id}ESM:${distro_codename}-infra-security";
};
Unattended-Upgrade::Remove-Unused-Dependencies "true";
Unattended-Upgrade::Automatic-Reboot "false";
"""

KERNEL_HARDENING = """\
# Network security hardening
net.ipv4.ip_forward = 0
net.ipv4.conf.all.send_redirects = 0
net.ipv4.conf.default.send_redirects = 0
net.ipv4.conf.all.accept_redirects = 0
net.ipv4.conf.default.accept_redirects = 0
net.ipv4.conf.all.accept_source_route = 0
net.ipv4.conf.default.accept_source_route = 0
net.ipv4.conf.all.log_martians = 1
net.ipv4.icmp_echo_ignore_broadcasts = 1
net.ipv4.icmp_ignore_bogus_error_responses = 1
net.ipv4.tcp_syncookies = 1
net.ipv4.conf.all.rp_filter = 1
net.ipv4.conf.default.rp_filter = 1
net.ipv6.conf.all.accept_redirects = 0
net.ipv6.conf.default.accept_redirects = 0

# Memory protection
kernel.dmesg_restrict = 1
kernel.kptr_restrict = 2
kernel.yama.ptrace_scope = 1
"""


def render_jail_local(settings: Settings) -> str:
    return f"""\
[DEFAULT]
bantime = {settings.fail2ban_bantime}
findtime = 600
maxretry = {settings.fail2ban_maxretry}
backend = systemd
usedns = warn

[sshd]
enabled = true
port = {settings.ssh_port}
filter = sshd
logpath = /var/log/auth.log
maxretry = {settings.fail2ban_maxretry}

[nginx-http-auth]
enabled = true
filter = nginx-http-auth
port = http,https
logpath = /var/log/nginx/error.log

[nginx-limit-req]
enabled = true
filter = nginx-limit-req
port = http,https
logpath = /var/log/nginx/error.log

[nginx-botsearch]
enabled = true
filter = nginx-botsearch
port = http,https
logpath = /var/log/nginx/error.log
maxretry = 2
"""


def set_config_values(text: str, values: Dict[str, str]) -> str:
    """Set ``KEY=value`` lines, preferring an active entry over a commented one, else append."""
    for key, value in values.items():
        line = f"{key}={value}"
        for pattern in (rf"^{re.escape(key)}=.*$", rf"^#\s*{re.escape(key)}=.*$"):
            if re.search(pattern, text, re.MULTILINE):
                text = re.sub(pattern, lambda _: line, text, count=1, flags=re.MULTILINE)
                break
        else:
            if text and not text.endswith("\n"):
                text += "\n"
            text += line + "\n"
    return text


class SecurityStep(ProvisioningStep):
    name = "07-security"
    description = "Firewall, intrusion prevention and SSH hardening"
    checkpoint_paths = [
        SSHD_CONFIG,
        JAIL_LOCAL,
        "/etc/ufw",
        AUTO_UPGRADES,
        UNATTENDED_UPGRADES,
        SECURITY_SYSCTL,
        RKHUNTER_CONF,
        CHKROOTKIT_CONF,
    ]

    def run(self, ctx: StepContext) -> None:
        failed = ctx.runner.install_packages(
            ctx.settings.security_packages, required=False, label="security packages"
        )
        for essential in ("ufw", "fail2ban"):
            if essential in failed:
                raise StepError(f"Required security package failed to install: {essential}")
        self.configure_firewall(ctx)
        self.configure_fail2ban(ctx)
        self.harden_ssh(ctx)
        self.configure_automatic_updates(ctx)
        self.harden_kernel(ctx)
        self.secure_file_permissions(ctx)
        self.configure_intrusion_detection(ctx)

    #####################################
    # Firewall
    #####################################

    def firewall_rules(self, ctx: StepContext):
        s = ctx.settings
        rules = [
            ["default", "deny", "incoming"],
            ["default", "allow", "outgoing"],
            ["limit", f"{s.ssh_port}/tcp"],
            ["allow", f"{s.http_port}/tcp"],
            ["allow", f"{s.https_port}/tcp"],
        ]
        if s.mode in DEV_PORT_MODES:
            rules.append(["allow", f"{s.node_dev_port}/tcp"])
            rules.append(["allow", f"{s.python_dev_port}/tcp"])
        return rules

    def configure_firewall(self, ctx: StepContext) -> None:
        ctx.logger.info("Configuring UFW firewall")
        ctx.runner.run(["ufw", "--force", "reset"], check=False)
        for rule in self.firewall_rules(ctx):
            try:
                ctx.runner.run(["ufw"] + rule)
            except CommandError as e:
                raise StepError(f"Firewall rule failed: ufw {' '.join(rule)}") from e
        ctx.runner.run(["ufw", "logging", "on"], check=False)
        try:
            ctx.runner.run(["ufw", "--force", "enable"])
        except CommandError as e:
            raise StepError("Failed to enable UFW") from e
        ctx.logger.info("UFW firewall enabled")

    #####################################
    # Fail2ban
    #####################################

    def configure_fail2ban(self, ctx: StepContext) -> None:
        ctx.write_file(JAIL_LOCAL, render_jail_local(ctx.settings), 0o644)
        ctx.ensure_directory(FILTER_DIR, 0o755)
        for name, content in FAIL2BAN_FILTERS.items():
            ctx.write_file(f"{FILTER_DIR}/{name}", content, 0o644)
        ctx.runner.run(["systemctl", "enable", "fail2ban"], check=False)
        ctx.runner.run(["systemctl", "restart", "fail2ban"], check=False)
        if ctx.runner.wait_for_service("fail2ban"):
            ctx.logger.info("Fail2ban is active")
        else:
            ctx.logger.warning("Fail2ban may not be running correctly")

    #####################################
    # SSH
    #####################################

    def harden_ssh(self, ctx: StepContext) -> None:
        current = ctx.read_file(SSHD_CONFIG)
        if current is None:
            ctx.logger.warning(f"{SSHD_CONFIG} not found; skipping SSH hardening")
            return
        backup = ctx.backup_file(SSHD_CONFIG)
        directives = dict(SSH_HARDENING_SETTINGS, Port=str(ctx.settings.ssh_port))
        ctx.write_file(SSHD_CONFIG, harden_sshd_config(current, directives), 0o600)

        # sshd -t needs its privilege separation directory, which is absent
        # until ssh.service first starts on socket-activated hosts.
        ctx.ensure_directory(SSHD_RUN_DIR, 0o755)
        check = ctx.runner.run(
            ["sshd", "-t", "-f", str(ctx.path(SSHD_CONFIG))], check=False, capture_output=True
        )
        if check.returncode != 0:
            ctx.logger.error("SSH configuration test failed; restoring previous configuration")
            if backup is not None:
                ctx.restore_file(backup, SSHD_CONFIG)
            return
        ctx.runner.run(["systemctl", "reload", "ssh"], check=False)
        ctx.logger.info("SSH configuration hardened")

    #####################################
    # Updates & Kernel
    #####################################

    def configure_automatic_updates(self, ctx: StepContext) -> None:
        if ctx.path(UNATTENDED_UPGRADES).is_file():
            ctx.backup_file(UNATTENDED_UPGRADES)
        ctx.write_file(UNATTENDED_UPGRADES, UNATTENDED_UPGRADES_CONFIG, 0o644)
        ctx.write_file(AUTO_UPGRADES, AUTO_UPGRADES_CONFIG, 0o644)
        ctx.runner.run(["systemctl", "enable", "unattended-upgrades"], check=False)
        ctx.logger.info("Automatic security updates configured")

    def harden_kernel(self, ctx: StepContext) -> None:
        ctx.write_file(SECURITY_SYSCTL, KERNEL_HARDENING, 0o644)
        result = ctx.runner.run(["sysctl", "-p", str(ctx.path(SECURITY_SYSCTL))], check=False)
        if result.returncode != 0:
            ctx.logger.warning("Some kernel hardening parameters could not be applied")
        else:
            ctx.logger.info("Kernel parameters hardened")

    #####################################
    # Permissions & Intrusion Detection
    #####################################

    def secure_file_permissions(self, ctx: StepContext) -> None:
        if ctx.dry_run:
            ctx.logger.info("[dry-run] tighten permissions on system files")
            return
        for host_path, mode in SECURE_FILE_MODES.items():
            target = ctx.path(host_path)
            if target.is_file():
                os.chmod(target, mode)
                ctx.logger.debug(f"Secured file permissions: {host_path} ({oct(mode)})")
        for host_path, mode in SECURE_DIR_MODES.items():
            target = ctx.path(host_path)
            if target.is_dir():
                os.chmod(target, mode)
                ctx.logger.debug(f"Secured directory permissions: {host_path} ({oct(mode)})")
        ctx.logger.info("File permissions configured")

    def configure_intrusion_detection(self, ctx: StepContext) -> None:
        if ctx.runner.package_installed("rkhunter"):
            self.configure_rkhunter(ctx)
        if ctx.runner.package_installed("chkrootkit"):
            ctx.write_file(CHKROOTKIT_CONF, CHKROOTKIT_CONFIG, 0o644)
            ctx.logger.info("chkrootkit configured")
        if ctx.runner.command_exists("lynis"):
            ctx.runner.run(["lynis", "update", "info"], check=False, capture_output=True)
            ctx.logger.info("lynis configured")

    def configure_rkhunter(self, ctx: StepContext) -> None:
        current = ctx.read_file(RKHUNTER_CONF)
        if current is None:
            ctx.logger.warning(f"{RKHUNTER_CONF} not found; skipping rkhunter configuration")
            return
        ctx.backup_file(RKHUNTER_CONF)
        ctx.write_file(RKHUNTER_CONF, set_config_values(current, RKHUNTER_SETTINGS), 0o644)
        # Database updates need network access and are best effort.
        ctx.runner.run(["rkhunter", "--update"], check=False, capture_output=True)
        ctx.runner.run(["rkhunter", "--propupd"], check=False, capture_output=True)
        ctx.logger.info("rkhunter configured")
