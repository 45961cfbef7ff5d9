"""05-python: pinned Python from deadsnakes, pip configuration and user venvs."""

from pathlib import Path
from typing import List

from .base import ProvisioningStep, StepContext

PIP_CONF = "/etc/pip.conf"
PIP_CACHE_DIR = "/var/cache/pip"

PIP_CONFIG = f"""\
[global]
cache-dir = {PIP_CACHE_DIR}
disable-pip-version-check = true
timeout = 60
no-warn-script-location = true

[install]
trusted-host = pypi.org
               files.pythonhosted.org
"""


def python_packages(version: str, base: List[str]) -> List[str]:
    return list(base) + [f"python{version}", f"python{version}-dev", f"python{version}-venv"]


class PythonStep(ProvisioningStep):
    name = "05-python"
    description = "Python toolchain"
    checkpoint_paths = [PIP_CONF, "/etc/apt/sources.list.d"]

    def run(self, ctx: StepContext) -> None:
        self.add_deadsnakes(ctx)
        failed = ctx.runner.install_packages(
            python_packages(ctx.settings.python_version, ctx.settings.python_packages),
            required=False,
            label="Python packages",
        )
        if failed:
            ctx.logger.warning(f"Some Python packages failed to install: {', '.join(failed)}")
        self.configure_pip(ctx)
        self.install_global_tools(ctx)
        s = ctx.settings
        self.create_venv(ctx, s.primary_user, s.primary_user_home)

    def add_deadsnakes(self, ctx: StepContext) -> None:
        sources = ctx.path("/etc/apt/sources.list.d")
        if sources.is_dir() and any("deadsnakes" in p.name for p in sources.iterdir()):
            ctx.logger.debug("Deadsnakes PPA already added")
            return
        result = ctx.runner.run(
            ["add-apt-repository", "-y", ctx.settings.deadsnakes_ppa], check=False, capture_output=True
        )
        if result.returncode != 0:
            ctx.logger.warning("Failed to add deadsnakes PPA; continuing with system Python packages")
            return
        ctx.logger.info("Deadsnakes PPA added")
        if not ctx.runner.apt_update():
            ctx.logger.warning("Package list update had issues, continuing anyway")

    def configure_pip(self, ctx: StepContext) -> None:
        ctx.ensure_directory(PIP_CACHE_DIR, 0o755)
        ctx.write_file(PIP_CONF, PIP_CONFIG, 0o644)
        ctx.logger.info(f"Global pip configuration created: {PIP_CONF}")

    def install_global_tools(self, ctx: StepContext) -> None:
        python = f"python{ctx.settings.python_version}"
        for package in ctx.settings.global_pip_packages:
            result = ctx.runner.run(
                [python, "-m", "pip", "install", "--upgrade", "--break-system-packages", package],
                check=False,
                capture_output=True,
            )
            if result.returncode != 0:
                ctx.logger.warning(f"Failed to install pip package: {package}")

    def create_venv(self, ctx: StepContext, username: str, home: Path) -> None:
        venv_root = home / ".venvs"
        default = venv_root / "default"
        ctx.ensure_directory(venv_root, 0o755, owner=username)
        if ctx.path(default / "bin" / "python").exists():
            ctx.logger.debug(f"Default virtual environment exists for {username}")
            return
        result = ctx.runner.run(
            ["sudo", "-u", username, f"python{ctx.settings.python_version}", "-m", "venv", str(ctx.path(default))],
            check=False,
        )
        if result.returncode != 0:
            ctx.logger.warning(f"Failed to create default virtual environment for {username}")
        else:
            ctx.logger.info(f"Virtual environment created: {default}")
