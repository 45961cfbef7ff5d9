"""02-users: application groups, users, sudo rules, SSH keys and limits."""

from pathlib import Path
from typing import List

from ..errors import CommandError, StepError
from ..security import validate_ssh_public_key
from .base import ProvisioningStep, StepContext

LIMITS_FILE = "/etc/security/limits.d/99-setup.conf"


class UsersStep(ProvisioningStep):
    name = "02-users"
    description = "Users, groups and access control"
    checkpoint_paths = [
        "/etc/passwd",
        "/etc/group",
        "/etc/shadow",
        "/etc/gshadow",
        "/etc/sudoers.d",
        LIMITS_FILE,
    ]

    def run(self, ctx: StepContext) -> None:
        s = ctx.settings
        self.create_groups(ctx, [s.webapp_group, s.nodejs_group])
        self.create_user(
            ctx,
            s.primary_user,
            s.primary_user_home,
            "Primary Application User",
            subdirs=["bin", "logs", "projects"],
            groups=[s.webapp_group, s.nodejs_group],
        )
        self.create_user(
            ctx,
            s.deploy_user,
            s.deploy_home,
            "Deployment User",
            subdirs=["bin", "scripts"],
            groups=[s.webapp_group],
        )
        if ctx.runner.user_exists("www-data"):
            self.add_to_group(ctx, "www-data", s.webapp_group)
        self.configure_sudo(ctx)
        self.install_ssh_keys(ctx)
        self.configure_limits(ctx)

    def create_groups(self, ctx: StepContext, groups: List[str]) -> None:
        for group in groups:
            if ctx.runner.group_exists(group):
                ctx.logger.debug(f"Group already exists: {group}")
                continue
            try:
                ctx.runner.run(["groupadd", group])
                ctx.logger.info(f"Created group: {group}")
            except CommandError as e:
                raise StepError(f"Failed to create group {group}: {e}") from e

    def create_user(
        self,
        ctx: StepContext,
        username: str,
        home: Path,
        comment: str,
        subdirs: List[str],
        groups: List[str],
    ) -> None:
        if ctx.runner.user_exists(username):
            ctx.logger.debug(f"User already exists: {username}")
        else:
            try:
                ctx.runner.run(
                    ["useradd", "-m", "-d", str(home), "-s", "/bin/bash", "-c", comment, username]
                )
                ctx.logger.info(f"Created user: {username}")
            except CommandError as e:
                raise StepError(f"Failed to create user {username}: {e}") from e

        ctx.ensure_directory(home, 0o755, owner=username)
        ctx.ensure_directory(home / ".ssh", 0o700, owner=username)
        for sub in subdirs:
            ctx.ensure_directory(home / sub, 0o755, owner=username)
        for group in groups:
            self.add_to_group(ctx, username, group)
        ctx.logger.info(f"User configured: {username} ({home})")

    def add_to_group(self, ctx: StepContext, username: str, group: str) -> None:
        result = ctx.runner.run(["usermod", "-aG", group, username], check=False)
        if result.returncode != 0:
            ctx.logger.warning(f"Failed to add {username} to group {group}")

    def configure_sudo(self, ctx: StepContext) -> None:
        deploy = ctx.settings.deploy_user
        rules = [
            "/bin/systemctl restart nginx",
            "/bin/systemctl reload nginx",
            "/bin/systemctl start nginx",
            "/bin/systemctl stop nginx",
            "/bin/systemctl status nginx",
            "/bin/systemctl restart pm2-*",
            "/usr/bin/certbot renew",
            "/usr/sbin/ufw status",
        ]
        self.write_sudoers(ctx, deploy, "# Sudo configuration for deploy user", rules)

        if ctx.settings.allow_app_sudo:
            self.write_sudoers(
                ctx,
                ctx.settings.primary_user,
                "# Limited sudo configuration for app user",
                ["/bin/systemctl status *", "/usr/bin/pm2 *"],
            )
        else:
            ctx.logger.info("App user sudo access disabled")

    def write_sudoers(self, ctx: StepContext, username: str, header: str, commands: List[str]) -> None:
        host_path = f"/etc/sudoers.d/{username}"
        content = header + "\n" + "".join(
            f"{username} ALL=(root) NOPASSWD: {cmd}\n" for cmd in commands
        )
        path = ctx.write_file(host_path, content, 0o440)
        check = ctx.runner.run(["visudo", "-c", "-f", str(path)], check=False, capture_output=True)
        if check.returncode != 0:
            if not ctx.dry_run:
                path.unlink(missing_ok=True)
            raise StepError(f"Invalid sudoers file for {username}")
        ctx.logger.info(f"Sudo access configured for: {username}")

    def install_ssh_keys(self, ctx: StepContext) -> None:
        key = (ctx.settings.ssh_public_key or "").strip()
        if not key:
            ctx.logger.info("No SSH public key provided, skipping SSH key setup")
            return
        if not validate_ssh_public_key(key):
            ctx.logger.warning("SETUP_SSH_PUBLIC_KEY is not a valid public key; skipping")
            return
        s = ctx.settings
        for username, home in ((s.primary_user, s.primary_user_home), (s.deploy_user, s.deploy_home)):
            host_path = home / ".ssh" / "authorized_keys"
            existing = ctx.read_file(host_path) or ""
            keys = [line for line in existing.splitlines() if line.strip()]
            if key in keys:
                ctx.logger.debug(f"SSH key already authorized for {username}")
                continue
            ctx.write_file(host_path, "\n".join(keys + [key]) + "\n", 0o600, owner=username)
            ctx.logger.info(f"SSH key configured for user: {username}")

    def configure_limits(self, ctx: StepContext) -> None:
        s = ctx.settings
        rows = [
            (s.primary_user, "soft", "nproc", 4096),
            (s.primary_user, "hard", "nproc", 8192),
            (s.primary_user, "soft", "nofile", 65536),
            (s.primary_user, "hard", "nofile", 65536),
            (s.deploy_user, "soft", "nproc", 2048),
            (s.deploy_user, "hard", "nproc", 4096),
            (s.deploy_user, "soft", "nofile", 32768),
            (s.deploy_user, "hard", "nofile", 32768),
            ("www-data", "soft", "nofile", 32768),
            ("www-data", "hard", "nofile", 32768),
        ]
        content = "# Setup script user limits\n" + "".join(
            f"{user:<20} {kind:<7} {item:<15} {value}\n" for user, kind, item, value in rows
        )
        ctx.write_file(LIMITS_FILE, content, 0o644)
        ctx.logger.info("User limits configured")
