"""10-validation: post-installation checks, maintenance script and cleanup."""

import shutil
import time
from typing import List, Tuple

from ..errors import StepError
from ..logging_config import cleanup_old_logs
from ..validation import validate_config_file
from .base import ProvisioningStep, StepContext

VERIFY_SCRIPT = "/usr/local/bin/verify-setup.sh"
STALE_TEMP_AGE = 86400

# Ubuntu 22.10 and later start sshd on demand from ssh.socket.
SOCKET_UNITS = {"ssh": "ssh.socket"}

VERIFY_SETUP_SCRIPT = """\
#!/bin/bash
# Re-run the post-installation checks on demand

total=0
passed=0

check_item() {
    total=$((total + 1))
    printf 'Checking %-32s ' "$1..."
    if eval "$2" > /dev/null 2>&1; then
        echo "PASS"
        passed=$((passed + 1))
    else
        echo "FAIL"
    fi
}

echo "=== Server Setup Verification ($(date)) ==="
check_item "Operating system" "grep -q 'Ubuntu' /etc/os-release"
check_item "SSH service" "systemctl is-active --quiet ssh || systemctl is-active --quiet ssh.socket"
check_item "SSH root login disabled" "grep -qi '^PermitRootLogin no' /etc/ssh/sshd_config"
if command -v ufw > /dev/null; then
    check_item "UFW firewall" "ufw status | grep -q 'Status: active'"
fi
if command -v fail2ban-client > /dev/null; then
    check_item "Fail2ban service" "systemctl is-active --quiet fail2ban"
fi
if command -v nginx > /dev/null; then
    check_item "Nginx service" "systemctl is-active --quiet nginx"
    check_item "Nginx configuration" "nginx -t"
fi
if [ -f {nvm_dir}/nvm.sh ]; then
    check_item "Node.js" ". {nvm_dir}/nvm.sh && node --version"
fi
if command -v python{python_version} > /dev/null; then
    check_item "Python {python_version}" "python{python_version} --version"
fi

echo
echo "Passed $passed/$total checks"
[ "$passed" -eq "$total" ]
"""


class ValidationStep(ProvisioningStep):
    name = "10-validation"
    description = "Post-installation validation and cleanup"
    critical = False
    checkpoint_paths = [VERIFY_SCRIPT]

    def expected_services(self, ctx: StepContext) -> List[str]:
        services = ["ssh"]
        if "06-nginx" in ctx.step_names:
            services.append("nginx")
        if "07-security" in ctx.step_names:
            services += ["fail2ban", "ufw"]
        return services

    def expected_configs(self, ctx: StepContext) -> List[Tuple[str, str]]:
        configs = [("/etc/ssh/sshd_config", "sshd")]
        if "06-nginx" in ctx.step_names:
            configs.append(("/etc/nginx/nginx.conf", "nginx"))
        if "07-security" in ctx.step_names:
            configs.append(("/etc/fail2ban/jail.local", "generic"))
        return configs

    def run(self, ctx: StepContext) -> None:
        failures = self.check_services(ctx) + self.check_configs(ctx)
        ctx.write_file(
            VERIFY_SCRIPT,
            VERIFY_SETUP_SCRIPT.replace("{nvm_dir}", str(ctx.settings.nvm_dir)).replace(
                "{python_version}", ctx.settings.python_version
            ),
            0o755,
        )
        self.cleanup(ctx)
        if failures:
            for failure in failures:
                ctx.logger.error(f"  - {failure}")
            if ctx.dry_run:
                ctx.logger.warning(f"{len(failures)} validation check(s) would fail on this host")
                return
            raise StepError(f"Post-installation validation failed: {len(failures)} problem(s)")
        ctx.logger.info("Post-installation validation passed")

    def check_services(self, ctx: StepContext) -> List[str]:
        failures = []
        for service in self.expected_services(ctx):
            socket = SOCKET_UNITS.get(service)
            if ctx.runner.service_active(service) or (socket and ctx.runner.service_active(socket)):
                ctx.logger.info(f"Service running: {service}")
            else:
                ctx.logger.warning(f"Service not running, attempting start: {service}")
                ctx.runner.run(["systemctl", "start", service], check=False)
                if not ctx.runner.wait_for_service(service):
                    failures.append(f"{service}: not running")
            if not (ctx.runner.service_enabled(service) or (socket and ctx.runner.service_enabled(socket))):
                failures.append(f"{service}: not enabled")
        return failures

    def check_configs(self, ctx: StepContext) -> List[str]:
        failures = []
        for host_path, kind in self.expected_configs(ctx):
            if not validate_config_file(ctx.runner, ctx.path(host_path), kind):
                failures.append(f"{host_path}: invalid or missing")
        return failures

    def cleanup(self, ctx: StepContext) -> None:
        if ctx.dry_run:
            return
        removed = cleanup_old_logs(
            ctx.path(ctx.settings.log_dir), ctx.settings.log_retention_days
        )
        if removed:
            ctx.logger.info(f"Removed {removed} old log file(s)")
        cutoff = time.time() - STALE_TEMP_AGE
        for stale in ctx.temp_dir.parent.glob("setup-*"):
            if stale == ctx.temp_dir or not stale.is_dir():
                continue
            if stale.stat().st_mtime < cutoff:
                shutil.rmtree(stale, ignore_errors=True)
                ctx.logger.debug(f"Removed stale temp directory: {stale}")
