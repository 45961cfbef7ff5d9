"""04-nodejs: system-wide NVM, Node.js and global npm tools."""

import shlex

from ..errors import StepError
from .base import ProvisioningStep, StepContext

NVM_INSTALL_URL = "https://raw.githubusercontent.com/nvm-sh/nvm/{version}/install.sh"
NVM_PROFILE = "/etc/profile.d/nvm.sh"
NPM_CACHE_DIR = "/var/cache/npm"

NVM_PROFILE_TEMPLATE = """\
#!/bin/bash
# NVM configuration for all users

export NVM_DIR="{nvm_dir}"

if [ -s "$NVM_DIR/nvm.sh" ]; then
    . "$NVM_DIR/nvm.sh" 2>/dev/null || true
fi

if [ -s "$NVM_DIR/bash_completion" ] && [ -n "$BASH_VERSION" ]; then
    . "$NVM_DIR/bash_completion" 2>/dev/null || true
fi

if [ -f "$NVM_DIR/alias/default" ]; then
    DEFAULT_NODE_VERSION=$(cat "$NVM_DIR/alias/default" 2>/dev/null)
    if [ -n "$DEFAULT_NODE_VERSION" ] && [ -d "$NVM_DIR/versions/node/$DEFAULT_NODE_VERSION" ]; then
        export PATH="$NVM_DIR/versions/node/$DEFAULT_NODE_VERSION/bin:$PATH"
    fi
fi
"""

NPM_SETTINGS = {
    "fund": "false",
    "audit-level": "moderate",
    "save-exact": "true",
    "progress": "false",
}


def node_version_spec(version: str) -> str:
    """``lts`` selects the latest LTS release; anything else is passed through."""
    return "--lts" if version.lower() == "lts" else version


class NodejsStep(ProvisioningStep):
    name = "04-nodejs"
    description = "Node.js via NVM"
    checkpoint_paths = [NVM_PROFILE, "/etc/npmrc"]

    def run(self, ctx: StepContext) -> None:
        self.install_nvm(ctx)
        self.write_profile(ctx)
        self.install_node(ctx)
        self.configure_npm(ctx)
        self.install_global_packages(ctx)
        ctx.ensure_directory(ctx.settings.nvm_dir, 0o775, owner="root", group=ctx.settings.nodejs_group)

    def nvm(self, ctx: StepContext, command: str, check: bool = True):
        """Run ``command`` in a bash shell with nvm loaded."""
        nvm_sh = shlex.quote(str(ctx.settings.nvm_dir / "nvm.sh"))
        script = f"export NVM_DIR={shlex.quote(str(ctx.settings.nvm_dir))}; . {nvm_sh} && {command}"
        return ctx.runner.run(["bash", "-c", script], check=check, capture_output=True)

    def install_nvm(self, ctx: StepContext) -> None:
        nvm_dir = ctx.settings.nvm_dir
        if ctx.path(nvm_dir / "nvm.sh").is_file():
            ctx.logger.info("NVM already installed")
            return
        ctx.logger.info(f"Installing NVM version: {ctx.settings.nvm_version}")
        ctx.ensure_directory(nvm_dir, 0o755)
        installer = ctx.temp_dir / "nvm-install.sh"
        url = NVM_INSTALL_URL.format(version=ctx.settings.nvm_version)
        if not ctx.runner.download(url, installer):
            raise StepError("Failed to download NVM installer")
        result = ctx.runner.run(
            ["bash", str(installer)],
            check=False,
            capture_output=True,
            env={"PROFILE": "/dev/null", "NVM_DIR": str(ctx.path(nvm_dir))},
        )
        if result.returncode != 0:
            raise StepError(f"NVM installer exited with {result.returncode}")
        ctx.logger.info(f"NVM installed to: {nvm_dir}")

    def write_profile(self, ctx: StepContext) -> None:
        content = NVM_PROFILE_TEMPLATE.format(nvm_dir=ctx.settings.nvm_dir)
        ctx.write_file(NVM_PROFILE, content, 0o644)
        ctx.logger.info(f"NVM profile script created: {NVM_PROFILE}")

    def install_node(self, ctx: StepContext) -> None:
        version = node_version_spec(ctx.settings.node_version)
        alias = "lts/*" if version == "--lts" else version
        ok = ctx.runner.execute_with_retry(
            lambda: self.nvm(ctx, f"nvm install {version}", check=False).returncode == 0,
            label=f"Node.js {ctx.settings.node_version} installation",
        )
        if not ok:
            raise StepError(f"Failed to install Node.js {ctx.settings.node_version}")
        if self.nvm(ctx, f"nvm alias default {shlex.quote(alias)}", check=False).returncode != 0:
            raise StepError(f"Failed to set Node.js {alias} as default")
        ctx.logger.info(f"Node.js {ctx.settings.node_version} installed and set as default")

    def configure_npm(self, ctx: StepContext) -> None:
        ctx.ensure_directory(NPM_CACHE_DIR, 0o755)
        settings = dict(NPM_SETTINGS, cache=NPM_CACHE_DIR)
        for key, value in settings.items():
            result = self.nvm(ctx, f"npm config set {key} {shlex.quote(value)} --global", check=False)
            if result.returncode != 0:
                ctx.logger.warning(f"Could not set npm {key}")
        ctx.logger.info("npm settings configured")

    def install_global_packages(self, ctx: StepContext) -> None:
        failed = []
        for package in ctx.settings.global_npm_packages:
            result = self.nvm(ctx, f"npm install -g {shlex.quote(package)}", check=False)
            if result.returncode == 0:
                ctx.logger.debug(f"Installed npm package: {package}")
            else:
                failed.append(package)
        if failed:
            ctx.logger.warning(f"Some global npm packages failed to install: {', '.join(failed)}")
        else:
            ctx.logger.info("Global npm packages installed")
