"""01-prerequisites: system updates and essential build tools."""

from ..errors import CommandError, StepError
from ..runner import APT_ENV
from ..validation import validate_timezone
from .base import ProvisioningStep, StepContext

APT_CONFIG = """// Setup script APT configuration
APT::Clean-Installed "true";
APT::AutoRemove::SuggestsImportant "false";
APT::AutoRemove::RecommendsImportant "false";
APT::Install-Recommends "false";
APT::Install-Suggests "false";
Dpkg::Progress-Fancy "true";
APT::Color "true";
"""


class PrerequisitesStep(ProvisioningStep):
    name = "01-prerequisites"
    description = "System updates and essential build tools"
    critical = True
    checkpoint_paths = [
        "/etc/apt/apt.conf.d/99-setup-config",
        "/etc/apt/sources.list",
        "/etc/environment",
        "/etc/gitconfig",
    ]

    def run(self, ctx: StepContext) -> None:
        if ctx.settings.skip_updates:
            ctx.logger.info("Skipping system updates as requested")
        else:
            self.update_system(ctx)
        ctx.runner.install_packages(
            ctx.settings.essential_packages, required=True, label="essential packages"
        )
        failed = ctx.runner.install_packages(
            ctx.settings.dev_packages, required=False, label="development packages"
        )
        if failed:
            ctx.logger.warning(f"Some development packages failed to install: {', '.join(failed)}")
        self.configure_package_manager(ctx)
        self.configure_host_identity(ctx)
        self.configure_git(ctx)
        self.cleanup_packages(ctx)

    def update_system(self, ctx: StepContext) -> None:
        if not ctx.runner.apt_update(delay=5):
            raise StepError(f"package list update failed after {ctx.runner.max_retries} attempts")
        for cmd, delay, label in (
            (["apt-get", "upgrade", "-y"], 10, "package upgrade"),
            (["apt-get", "dist-upgrade", "-y"], 10, "security updates"),
        ):
            if not ctx.runner.execute_with_retry(cmd, delay=delay, label=label, env=APT_ENV):
                raise StepError(f"{label} failed after {ctx.runner.max_retries} attempts")

    def configure_package_manager(self, ctx: StepContext) -> None:
        ctx.write_file("/etc/apt/apt.conf.d/99-setup-config", APT_CONFIG, 0o644)
        ctx.logger.info("APT configuration updated")

    def configure_host_identity(self, ctx: StepContext) -> None:
        timezone = validate_timezone(ctx.settings.timezone, ctx.path("/usr/share/zoneinfo"))
        if ctx.runner.run(["timedatectl", "set-timezone", timezone], check=False).returncode != 0:
            ctx.logger.warning(f"Could not set timezone to {timezone}")
        hostname = ctx.settings.hostname
        if hostname and hostname != "auto":
            try:
                ctx.runner.run(["hostnamectl", "set-hostname", hostname])
            except CommandError as e:
                raise StepError(f"Could not set hostname to {hostname}: {e}") from e
            ctx.logger.info(f"Hostname set to {hostname}")

    def configure_git(self, ctx: StepContext) -> None:
        values = {
            "user.name": ctx.settings.git_name,
            "user.email": ctx.settings.git_email,
            "init.defaultBranch": "main",
            "pull.rebase": "false",
            "core.editor": "vim",
        }
        for key, value in values.items():
            if not value:
                ctx.logger.debug(f"git {key} not configured; skipping")
                continue
            try:
                ctx.runner.run(["git", "config", "--system", key, value])
            except CommandError as e:
                ctx.logger.warning(f"Could not set git {key}: {e}")

    def cleanup_packages(self, ctx: StepContext) -> None:
        for cmd in (["apt-get", "autoremove", "-y"], ["apt-get", "autoclean"], ["apt-get", "clean"]):
            ctx.runner.run(cmd, check=False, env=APT_ENV)
        ctx.logger.info("Package cleanup completed")
