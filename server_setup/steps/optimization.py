"""09-optimization: kernel, systemd and service limits tuned for web workloads, plus swap."""

from .. import utils
from ..config import Settings
from ..errors import CommandError, StepError
from .base import ProvisioningStep, StepContext

PERFORMANCE_SYSCTL = "/etc/sysctl.d/99-performance.conf"
SYSTEMD_LIMITS = "/etc/systemd/system.conf.d/99-limits.conf"
NGINX_LIMITS = "/etc/systemd/system/nginx.service.d/limits.conf"
REPORT_SCRIPT = "/usr/local/bin/performance-report.sh"
FSTAB = "/etc/fstab"

PERFORMANCE_REPORT_SCRIPT = """\
#!/bin/bash
# Performance report

echo "=== System Performance Report ==="
echo "Generated: $(date)"
echo "Hostname:  $(hostname)"
echo "Kernel:    $(uname -r)"
echo "CPU:       $(nproc) cores"
echo "Memory:    $(free -h | awk 'NR==2{print $2}')"
echo
echo "=== Current Load ==="
echo "Load Average: $(uptime | awk -F'load average:' '{print $2}')"
echo "Memory Usage: $(free | awk 'NR==2{printf "%.1f%%", $3*100/$2}')"
df -h | grep -vE '^Filesystem|tmpfs|cdrom|udev' | awk '{print "  " $6 ": " $5}'
echo
echo "=== Tuning ==="
echo "Swappiness:             $(cat /proc/sys/vm/swappiness)"
echo "TCP congestion control: $(cat /proc/sys/net/ipv4/tcp_congestion_control)"
echo "Open file limit:        $(cat /proc/sys/fs/file-max)"
for device in /sys/block/*/queue/scheduler; do
    [ -e "$device" ] || continue
    name=$(basename "$(dirname "$(dirname "$device")")")
    echo "I/O scheduler $name: $(sed 's/.*\\[\\(.*\\)\\].*/\\1/' "$device")"
done
"""


def render_performance_sysctl(settings: Settings) -> str:
    return f"""\
# Performance tuning

# VM
vm.swappiness = {settings.swappiness}
vm.dirty_ratio = {settings.vm_dirty_ratio}
vm.dirty_background_ratio = {settings.vm_dirty_background_ratio}
vm.dirty_expire_centisecs = 3000
vm.dirty_writeback_centisecs = 500
vm.vfs_cache_pressure = 50

# Network
net.core.rmem_default = 262144
net.core.rmem_max = {settings.net_core_rmem_max}
net.core.wmem_default = 262144
net.core.wmem_max = {settings.net_core_wmem_max}
net.core.netdev_max_backlog = 5000
net.core.somaxconn = 4096
net.ipv4.tcp_rmem = 4096 65536 {settings.net_core_rmem_max}
net.ipv4.tcp_wmem = 4096 65536 {settings.net_core_wmem_max}
net.core.default_qdisc = fq
net.ipv4.tcp_congestion_control = bbr
net.ipv4.tcp_window_scaling = 1
net.ipv4.tcp_sack = 1
net.ipv4.tcp_fastopen = 3

# File system
fs.file-max = 2097152
fs.inotify.max_user_watches = 524288
fs.inotify.max_user_instances = 256
"""


def render_systemd_limits(settings: Settings) -> str:
    return f"""\
[Manager]
DefaultLimitNOFILE={settings.systemd_limit_nofile}
DefaultLimitNPROC={settings.systemd_limit_nproc}
DefaultLimitCORE=0
"""


class OptimizationStep(ProvisioningStep):
    name = "09-optimization"
    description = "Kernel and service performance tuning"
    checkpoint_paths = [PERFORMANCE_SYSCTL, SYSTEMD_LIMITS, NGINX_LIMITS, FSTAB]

    def run(self, ctx: StepContext) -> None:
        s = ctx.settings
        ctx.write_file(PERFORMANCE_SYSCTL, render_performance_sysctl(s), 0o644)
        try:
            ctx.runner.run(["sysctl", "--system"], capture_output=True)
        except CommandError as e:
            raise StepError(f"Failed to apply kernel parameters: {e}") from e
        ctx.logger.info("Kernel parameters optimized and applied")

        ctx.write_file(SYSTEMD_LIMITS, render_systemd_limits(s), 0o644)
        if "06-nginx" in ctx.step_names or ctx.path("/etc/nginx").is_dir():
            ctx.write_file(
                NGINX_LIMITS,
                f"[Service]\nLimitNOFILE={s.systemd_limit_nofile}\nLimitNPROC={s.systemd_limit_nproc}\n",
                0o644,
            )
        if ctx.runner.run(["systemctl", "daemon-reload"], check=False).returncode != 0:
            ctx.logger.warning("systemctl daemon-reload failed; new limits apply after reboot")
        ctx.logger.info("Systemd limits configured")

        ctx.write_file(REPORT_SCRIPT, PERFORMANCE_REPORT_SCRIPT, 0o755)
        ctx.logger.info(f"Performance report script created: {REPORT_SCRIPT}")

        self.configure_swap(ctx)

    #####################################
    # Swap
    #####################################

    def configure_swap(self, ctx: StepContext) -> None:
        s = ctx.settings
        active = ctx.runner.run(
            ["swapon", "--show=NAME", "--noheadings"], check=False, capture_output=True, query=True
        )
        if active.returncode == 0 and (active.stdout or "").strip():
            ctx.logger.info(f"Swap already configured: {', '.join(active.stdout.split())}")
            return
        if utils.is_container(s.root):
            ctx.logger.info("Running in a container; not creating swap")
            return
        memory = utils.total_memory_mb(ctx.path("/proc/meminfo"))
        if memory is None or memory >= s.swap_min_memory_mb:
            ctx.logger.info("System has sufficient memory; swap file not needed")
            return
        self.create_swap_file(ctx)

    def create_swap_file(self, ctx: StepContext) -> None:
        """Create, enable and register ``Settings.swap_file``; failures only warn."""
        s = ctx.settings
        swap = ctx.path(s.swap_file)
        if swap.exists():
            ctx.logger.debug(f"Swap file already exists: {s.swap_file}")
            return
        ctx.logger.info(f"Creating {s.swap_size_mb}MB swap file: {s.swap_file}")
        try:
            allocate = ctx.runner.run(
                ["fallocate", "-l", f"{s.swap_size_mb}M", str(swap)], check=False, capture_output=True
            )
            if allocate.returncode != 0:
                ctx.runner.run(
                    ["dd", "if=/dev/zero", f"of={swap}", "bs=1M", f"count={s.swap_size_mb}"],
                    capture_output=True,
                )
            ctx.runner.run(["chmod", "600", str(swap)])
            ctx.runner.run(["mkswap", str(swap)], capture_output=True)
            ctx.runner.run(["swapon", str(swap)])
        except CommandError as e:
            ctx.logger.warning(f"Failed to create swap file: {e}")
            if swap.is_file():
                swap.unlink()
            return

        fstab = ctx.read_file(FSTAB) or ""
        if s.swap_file not in fstab.split():
            if fstab and not fstab.endswith("\n"):
                fstab += "\n"
            ctx.write_file(FSTAB, f"{fstab}{s.swap_file} none swap sw 0 0\n", 0o644)
        ctx.logger.info(f"Swap file enabled: {s.swap_file}")
