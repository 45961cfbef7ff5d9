"""03-shell: zsh with Oh My Zsh for the application users."""

from pathlib import Path
from typing import List

from ..errors import CommandError, StepError
from .base import ProvisioningStep, StepContext

OH_MY_ZSH_REPO = "https://github.com/ohmyzsh/ohmyzsh.git"
EXTRA_PLUGINS = {
    "zsh-syntax-highlighting": "https://github.com/zsh-users/zsh-syntax-highlighting.git",
    "zsh-autosuggestions": "https://github.com/zsh-users/zsh-autosuggestions.git",
}
ZSH_PATH = "/usr/bin/zsh"

ZSHRC_TEMPLATE = """\
# ~/.zshrc - generated by server-setup

export ZSH="{home}/.oh-my-zsh"
ZSH_THEME="{theme}"

plugins=(
{plugins}
)

source $ZSH/oh-my-zsh.sh

# History
HISTSIZE=10000
SAVEHIST=10000
setopt HIST_IGNORE_ALL_DUPS
setopt HIST_IGNORE_SPACE
setopt SHARE_HISTORY

# Navigation and completion
setopt AUTO_CD
setopt AUTO_PUSHD
setopt PUSHD_IGNORE_DUPS
setopt COMPLETE_IN_WORD

export EDITOR=nano
export PAGER=less
export LANG=en_US.UTF-8
export PYTHONDONTWRITEBYTECODE=1
export PYTHONUNBUFFERED=1
export PATH="$HOME/bin:$HOME/.local/bin:$PATH"

# NVM
unset NPM_CONFIG_PREFIX
export NVM_DIR="{nvm_dir}"
[ -s "$NVM_DIR/nvm.sh" ] && . "$NVM_DIR/nvm.sh"
[ -s "$NVM_DIR/bash_completion" ] && . "$NVM_DIR/bash_completion"

alias python='python3'
alias ll='ls -alF'
alias la='ls -A'
alias ..='cd ..'
alias gs='git status'
alias gl='git log --oneline'
alias gd='git diff'
alias reload='source ~/.zshrc'
"""


def render_zshrc(home: Path, theme: str, plugins: List[str], nvm_dir: Path) -> str:
    lines = "\n".join(f"    {p}" for p in plugins)
    return ZSHRC_TEMPLATE.format(home=home, theme=theme, plugins=lines, nvm_dir=nvm_dir)


class ShellStep(ProvisioningStep):
    name = "03-shell"
    description = "Zsh and Oh My Zsh"
    checkpoint_paths = ["/etc/passwd", "/etc/shells"]

    def run(self, ctx: StepContext) -> None:
        ctx.runner.install_packages(["zsh"], required=True, label="zsh")
        s = ctx.settings
        for username, home in ((s.primary_user, s.primary_user_home), (s.deploy_user, s.deploy_home)):
            if not ctx.runner.user_exists(username) and not ctx.dry_run:
                ctx.logger.warning(f"User {username} does not exist, skipping Zsh configuration")
                continue
            self.install_oh_my_zsh(ctx, username, home)
            self.configure_zshrc(ctx, username, home)
            self.set_shell(ctx, username)

    def install_oh_my_zsh(self, ctx: StepContext, username: str, home: Path) -> None:
        target = home / ".oh-my-zsh"
        if ctx.path(target).is_dir():
            ctx.logger.debug(f"Oh My Zsh already installed for {username}")
        else:
            try:
                ctx.runner.run(["sudo", "-u", username, "git", "clone", "--depth=1", OH_MY_ZSH_REPO, str(ctx.path(target))])
            except CommandError as e:
                raise StepError(f"Oh My Zsh installation failed for {username}: {e}") from e
            ctx.logger.info(f"Oh My Zsh installed for user: {username}")

        for plugin, url in EXTRA_PLUGINS.items():
            plugin_dir = target / "custom" / "plugins" / plugin
            if ctx.path(plugin_dir).is_dir():
                continue
            result = ctx.runner.run(
                ["sudo", "-u", username, "git", "clone", "--depth=1", url, str(ctx.path(plugin_dir))],
                check=False,
            )
            if result.returncode != 0:
                ctx.logger.warning(f"Failed to install {plugin} for {username}")

    def configure_zshrc(self, ctx: StepContext, username: str, home: Path) -> None:
        zshrc = home / ".zshrc"
        if ctx.path(zshrc).is_file():
            ctx.backup_file(zshrc)
        plugins = list(ctx.settings.zsh_plugins)
        plugins += [p for p in EXTRA_PLUGINS if p not in plugins]
        content = render_zshrc(home, ctx.settings.zsh_theme, plugins, ctx.settings.nvm_dir)
        ctx.write_file(zshrc, content, 0o644, owner=username)
        ctx.logger.info(f"Zsh configured for user: {username}")

    def set_shell(self, ctx: StepContext, username: str) -> None:
        result = ctx.runner.run(["chsh", "-s", ZSH_PATH, username], check=False)
        if result.returncode != 0:
            ctx.logger.warning(f"Failed to change shell for user {username}")
        else:
            ctx.logger.info(f"Default shell for {username} set to {ZSH_PATH}")
