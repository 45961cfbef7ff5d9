"""06-nginx: web server with a tuned main configuration and default site."""

from pathlib import Path
from typing import Optional

from ..config import Settings
from ..errors import StepError
from .base import ProvisioningStep, StepContext

NGINX_CONF = "/etc/nginx/nginx.conf"
DEFAULT_SITE = "/etc/nginx/sites-available/default"
DEFAULT_SITE_LINK = "/etc/nginx/sites-enabled/default"


def render_nginx_conf(settings: Settings) -> str:
    return f"""\
# Managed by server-setup
user {settings.nginx_user};
worker_processes {settings.nginx_worker_processes};
pid /run/nginx.pid;
include /etc/nginx/modules-enabled/*.conf;

events {{
    worker_connections {settings.nginx_worker_connections};
    multi_accept on;
    use epoll;
}}

http {{
    sendfile on;
    tcp_nopush on;
    tcp_nodelay on;
    keepalive_timeout {settings.nginx_keepalive_timeout};
    types_hash_max_size 2048;
    server_tokens off;
    client_max_body_size {settings.nginx_client_max_body_size};

    include /etc/nginx/mime.types;
    default_type application/octet-stream;

    ssl_protocols TLSv1.2 TLSv1.3;
    ssl_prefer_server_ciphers on;

    access_log /var/log/nginx/access.log;
    error_log /var/log/nginx/error.log;

    gzip on;
    gzip_vary on;
    gzip_proxied any;
    gzip_comp_level 6;
    gzip_types text/plain text/css application/json application/javascript text/xml application/xml;

    add_header X-Frame-Options SAMEORIGIN always;
    add_header X-Content-Type-Options nosniff always;
    add_header Referrer-Policy strict-origin-when-cross-origin always;

    include /etc/nginx/conf.d/*.conf;
    include /etc/nginx/sites-enabled/*;
}}
"""


def render_default_site(settings: Settings) -> str:
    return f"""\
server {{
    listen {settings.http_port} default_server;
    listen [::]:{settings.http_port} default_server;

    root {settings.webapp_root}/html;
    index index.html;
    server_name _;

    location / {{
        try_files $uri $uri/ =404;
    }}

    location = /health {{
        access_log off;
        return 200 "ok\\n";
    }}
}}
"""


INDEX_HTML = """\
<!DOCTYPE html>
<html>
<head><title>Server ready</title></head>
<body><h1>Server ready</h1><p>Provisioned by server-setup.</p></body>
</html>
"""


class NginxStep(ProvisioningStep):
    name = "06-nginx"
    description = "Nginx web server"
    checkpoint_paths = ["/etc/nginx"]

    def run(self, ctx: StepContext) -> None:
        ctx.runner.install_packages(["nginx"], required=True, label="nginx")
        backup = ctx.backup_file(NGINX_CONF) if ctx.path(NGINX_CONF).is_file() else None
        ctx.write_file(NGINX_CONF, render_nginx_conf(ctx.settings), 0o644)
        self.configure_site(ctx)
        self.test_config(ctx, backup)
        ctx.runner.run(["systemctl", "enable", "--now", "nginx"])
        ctx.runner.run(["systemctl", "reload", "nginx"], check=False)
        if not ctx.runner.wait_for_service("nginx"):
            raise StepError("nginx did not become active")
        if not ctx.runner.wait_for_port(ctx.settings.http_port, timeout=10):
            ctx.logger.warning(f"nginx is active but not listening on port {ctx.settings.http_port}")

    def configure_site(self, ctx: StepContext) -> None:
        s = ctx.settings
        html = s.webapp_root / "html"
        ctx.ensure_directory(s.webapp_root, 0o755, owner="root", group=s.webapp_group)
        ctx.ensure_directory(html, 0o755, owner=s.nginx_user, group=s.webapp_group)
        index = html / "index.html"
        if not ctx.path(index).exists():
            ctx.write_file(index, INDEX_HTML, 0o644, owner=s.nginx_user, group=s.webapp_group)
        ctx.write_file(DEFAULT_SITE, render_default_site(s), 0o644)
        link = ctx.path(DEFAULT_SITE_LINK)
        if not ctx.dry_run and not link.is_symlink() and not link.exists():
            link.parent.mkdir(parents=True, exist_ok=True)
            link.symlink_to(DEFAULT_SITE)

    def test_config(self, ctx: StepContext, backup: Optional[Path]) -> None:
        result = ctx.runner.run(["nginx", "-t"], check=False, capture_output=True)
        if result.returncode == 0:
            ctx.logger.info("Nginx configuration test passed")
            return
        ctx.logger.error(f"Nginx configuration test failed: {(result.stderr or '').strip()}")
        if backup is not None:
            ctx.restore_file(backup, NGINX_CONF)
        raise StepError("Invalid nginx configuration")
