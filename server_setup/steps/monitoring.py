"""08-monitoring: monitoring tools, log rotation, health scripts and cron."""

import re

from ..config import Settings
from .base import ProvisioningStep, StepContext

SYSSTAT_DEFAULTS = "/etc/default/sysstat"
LOGROTATE_CONF = "/etc/logrotate.d/server-setup"
STATUS_SCRIPT = "/usr/local/bin/system-status.sh"
HEALTH_SCRIPT = "/usr/local/bin/health-check-api.sh"
HEALTH_CRON = "/etc/cron.d/server-setup-health"

SYSTEM_STATUS_SCRIPT = """\
#!/bin/bash
# Quick overview of host health

echo "=== System Status: $(hostname) ==="
echo "Time:    $(date)"
echo "Uptime: $(uptime -p)"
echo "Load:   $(uptime | awk -F'load average:' '{print $2}')"
echo
echo "=== Memory ==="
free -h
echo
echo "=== Disk ==="
df -h -x tmpfs -x devtmpfs
echo
echo "=== Services ==="
for svc in {services}; do
    printf '%-22s %s\\n' "$svc" "$(systemctl is-active "$svc" 2>/dev/null)"
done
echo
echo "=== Listening ports ==="
ss -tln
"""

HEALTH_CHECK_SCRIPT = """\
#!/bin/bash
# HTTP and service health check; exits non-zero on any failure

status=0

check_http() {{
    local url="$1"
    local expected="${{2:-200}}"
    local code
    code=$(curl -s -o /dev/null -w "%{{http_code}}" "$url" 2>/dev/null || echo "000")
    if [[ "$code" == "$expected" ]]; then
        echo "OK: $url ($code)"
    else
        echo "FAIL: $url ($code)"
        status=1
    fi
}}

check_service() {{
    if systemctl is-active --quiet "$1"; then
        echo "OK: $1 (active)"
    else
        echo "FAIL: $1 (inactive)"
        status=1
    fi
}}

echo "=== Health Check $(date '+%Y-%m-%d %H:%M:%S') ==="
check_http "http://localhost:{port}/"
check_http "http://localhost:{port}/health"
{service_checks}
exit $status
"""


def render_logrotate(settings: Settings) -> str:
    return f"""\
{settings.log_dir}/*.log {{
    weekly
    missingok
    rotate {max(1, settings.log_retention_days // 7)}
    compress
    delaycompress
    notifempty
    create 0640 root adm
}}

/var/log/server-setup-health.log {{
    daily
    missingok
    rotate 14
    compress
    notifempty
}}
"""


def enable_sysstat(text: str) -> str:
    if re.search(r'^ENABLED=', text, re.MULTILINE):
        return re.sub(r'^ENABLED=.*$', 'ENABLED="true"', text, flags=re.MULTILINE)
    return text.rstrip("\n") + ('\n' if text else '') + 'ENABLED="true"\n'


class MonitoringStep(ProvisioningStep):
    name = "08-monitoring"
    description = "Monitoring tools and health checks"
    checkpoint_paths = [SYSSTAT_DEFAULTS, LOGROTATE_CONF, HEALTH_CRON]

    def run(self, ctx: StepContext) -> None:
        failed = ctx.runner.install_packages(
            ctx.settings.monitoring_packages, required=False, label="monitoring packages"
        )
        if failed:
            ctx.logger.warning(f"Some monitoring packages failed to install: {', '.join(failed)}")
        self.configure_sysstat(ctx)
        self.configure_vnstat(ctx)
        ctx.write_file(LOGROTATE_CONF, render_logrotate(ctx.settings), 0o644)
        ctx.logger.info("Log rotation configured for setup logs")
        self.install_scripts(ctx)

    def configure_sysstat(self, ctx: StepContext) -> None:
        current = ctx.read_file(SYSSTAT_DEFAULTS)
        if current is not None:
            ctx.backup_file(SYSSTAT_DEFAULTS)
        ctx.write_file(SYSSTAT_DEFAULTS, enable_sysstat(current or ""), 0o644)
        ctx.runner.run(["systemctl", "enable", "--now", "sysstat"], check=False)
        ctx.logger.info("sysstat enabled")

    def configure_vnstat(self, ctx: StepContext) -> None:
        result = ctx.runner.run(["systemctl", "enable", "--now", "vnstat"], check=False)
        if result.returncode != 0:
            ctx.logger.warning("Could not enable vnstat")

    def install_scripts(self, ctx: StepContext) -> None:
        services = " ".join(ctx.settings.services_to_enable)
        checks = "\n".join(f'check_service "{svc}"' for svc in ctx.settings.services_to_enable)
        ctx.write_file(STATUS_SCRIPT, SYSTEM_STATUS_SCRIPT.replace("{services}", services), 0o755)
        ctx.write_file(
            HEALTH_SCRIPT,
            HEALTH_CHECK_SCRIPT.format(port=ctx.settings.http_port, service_checks=checks),
            0o755,
        )
        ctx.write_file(
            HEALTH_CRON,
            "# Health check every 15 minutes\n"
            f"*/15 * * * * root {HEALTH_SCRIPT} >> /var/log/server-setup-health.log 2>&1\n",
            0o644,
        )
        ctx.logger.info("Monitoring scripts and health-check cron installed")
