"""
Gallery server for the session store.

GET  /                                  listing of sites and sessions
GET  /view/<domain>/<timestamp>         one session's screenshots
GET  /<domain>/<timestamp>/<filename>   raw image
GET  /health, /metrics, /api/stats, /api/screenshots, /api/external-ip
DELETE /api/screenshots                 wipe the store
"""

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from flask import Flask, Response, abort, g, jsonify, render_template_string, request, send_from_directory

from .context import AppContext
from .network import FirewallStatus, IpInfo, find_available_port
from .timestamps import format_session_id

logger = logging.getLogger(__name__)

# ---------- templates ----------

BASE_CSS = """
  body { font-family: Arial, sans-serif; margin: 20px; background: #f5f5f5; }
  .container { max-width: 1200px; margin: 0 auto; background: white; padding: 20px; border-radius: 10px; }
  .header { text-align: center; margin-bottom: 30px; color: #333; }
  .server-info { background: #e3f2fd; padding: 15px; border-radius: 5px; margin-bottom: 20px; }
  table { width: 100%; border-collapse: collapse; margin-top: 20px; }
  th { background: #2196f3; color: white; padding: 12px; text-align: left; }
  td { padding: 10px; border-bottom: 1px solid #ddd; }
  a { color: #2196f3; text-decoration: none; }
  a:hover { text-decoration: underline; }
  .no-data { text-align: center; padding: 40px; color: #666; }
  .screenshots { display: grid; grid-template-columns: repeat(auto-fit, minmax(300px, 1fr)); gap: 20px; }
  .shot { border: 1px solid #ddd; border-radius: 5px; overflow: hidden; }
  .shot img { width: 100%; height: 200px; object-fit: cover; object-position: top; }
  .shot .info { padding: 12px; }
  .muted { color: #666; font-size: 0.9em; }
"""

INDEX_TEMPLATE = """<!DOCTYPE html>
<html lang="en">
<head>
  <meta charset="UTF-8"><meta name="viewport" content="width=device-width, initial-scale=1.0">
  <title>Screenshot Gallery</title>
  <style>{{ css }}</style>
</head>
<body>
<div class="container">
  <div class="header"><h1>Screenshot Gallery</h1></div>
  <div class="server-info">
    <strong>Server:</strong> {{ server_url }}<br>
    {% if public_url and public_url != server_url %}<strong>Public URL:</strong> {{ public_url }}<br>{% endif %}
    <strong>Results directory:</strong> {{ results_dir }}
  </div>
  {% if not sites %}
  <div class="no-data">No screenshots yet</div>
  {% else %}
  <table>
    <thead><tr><th>Domain</th><th>Captured</th><th>Files</th><th></th></tr></thead>
    <tbody>
    {% for site in sites %}{% for s in site.sessions %}
      <tr>
        <td>{{ site.name }}</td>
        <td><a href="/view/{{ site.name }}/{{ s.session_id }}">{{ label(s.session_id) }}</a></td>
        <td>{{ s.count }} screenshots ({{ '%.1f' % (s.total_bytes / 1024) }} KB)</td>
        <td><a href="/view/{{ site.name }}/{{ s.session_id }}">View</a></td>
      </tr>
    {% endfor %}{% endfor %}
    </tbody>
  </table>
  {% endif %}
</div>
</body>
</html>
"""

SESSION_TEMPLATE = """<!DOCTYPE html>
<html lang="en">
<head>
  <meta charset="UTF-8"><meta name="viewport" content="width=device-width, initial-scale=1.0">
  <title>Screenshots - {{ domain }}</title>
  <style>{{ css }}</style>
</head>
<body>
<div class="container">
  <a href="/">&larr; Back to all sites</a>
  <div class="header">
    <h2>{{ domain }}</h2>
    <p>{{ label(timestamp) }}</p>
  </div>
  <div class="screenshots">
  {% for img in images %}
    <div class="shot">
      <a href="/{{ domain }}/{{ timestamp }}/{{ img.name }}" target="_blank">
        <img src="/{{ domain }}/{{ timestamp }}/{{ img.name }}" alt="{{ img.name }}" loading="lazy">
      </a>
      <div class="info">
        <strong>{{ img.name }}</strong>
        <div class="muted">{{ '%.1f' % img.size_kb }} KB{% if img.width %} &middot; {{ img.width }}&times;{{ img.height }}{% endif %}</div>
      </div>
    </div>
  {% endfor %}
  </div>
</div>
</body>
</html>
"""

# ---------- app ----------

def create_app(ctx: AppContext, base_url: Optional[str] = None) -> Flask:
    app = Flask(__name__, static_folder=None)
    store = ctx.store
    security = ctx.config.security
    public_url = (base_url or "").rstrip("/") or None

    @app.before_request
    def _log_request():
        g.started = time.perf_counter()
        ctx.metrics.incr("requests_total")
        logger.info("Request: %s %s", request.method, request.path)

    @app.after_request
    def _finish_response(response):
        started = g.get("started")
        if started is not None:
            endpoint = request.url_rule.rule if request.url_rule else "unmatched"
            ctx.metrics.observe_request(request.method, endpoint, response.status_code,
                                        time.perf_counter() - started)
        if security.cors_enabled:
            response.headers.setdefault("Access-Control-Allow-Origin", security.cors_origin)
        if security.csp_enabled:
            response.headers.setdefault("Content-Security-Policy", security.csp)
        return response

    @app.errorhandler(500)
    def _internal_error(e):
        ctx.metrics.incr("errors_total")
        logger.error("Unhandled error on %s %s: %s", request.method, request.path,
                     getattr(e, "original_exception", e))
        return jsonify({"error": "internal server error"}), 500

    @app.get("/")
    def index():
        return render_template_string(
            INDEX_TEMPLATE, css=BASE_CSS, server_url=request.host_url.rstrip("/"),
            public_url=public_url, results_dir=str(store.root),
            sites=store.list_sites(), label=format_session_id,
        )

    @app.get("/view/<domain>/<timestamp>")
    def view_session(domain, timestamp):
        try:
            images = store.session_images(domain, timestamp)
        except ValueError:
            abort(404)
        if not images:
            abort(404, description="Session not found")
        return render_template_string(
            SESSION_TEMPLATE, css=BASE_CSS, domain=domain,
            timestamp=timestamp, images=images, label=format_session_id,
        )

    @app.get("/health")
    def health():
        return jsonify({"status": "healthy", "timestamp": datetime.now(timezone.utc).isoformat()})

    @app.get("/api/stats")
    def api_stats():
        return jsonify({
            "storage": store.stats().to_dict(),
            "metrics": ctx.metrics.snapshot(),
            "results_dir": str(store.root),
        })

    @app.get("/metrics")
    def prometheus_metrics():
        ctx.metrics.result_files.set(store.stats().files)
        return Response(ctx.metrics.exposition(), content_type=ctx.metrics.CONTENT_TYPE)

    @app.get("/api/screenshots")
    def api_list():
        return jsonify({"sites": [site.to_dict() for site in store.list_sites()]})

    @app.delete("/api/screenshots")
    def api_delete_all():
        result = store.delete_all()
        if not result.success:
            ctx.metrics.incr("errors_total")
            return jsonify(result.to_dict()), 500
        return jsonify(result.to_dict())

    @app.get("/api/external-ip")
    def api_external_ip():
        return jsonify(ctx.ip_resolver.resolve().to_dict())

    @app.get("/<domain>/<timestamp>/<filename>")
    def raw_image(domain, timestamp, filename):
        try:
            directory = store.session_path(domain, timestamp)
        except ValueError:
            abort(404)
        return send_from_directory(directory.resolve(), filename)

    return app

# ---------- serving ----------

@dataclass
class ServerInfo:
    host: str
    port: int
    base_url: str
    ip: IpInfo
    firewall: FirewallStatus

    def view_url(self, domain: str, session_id: str) -> str:
        return f"{self.base_url}/view/{domain}/{session_id}"


def prepare_server(ctx: AppContext, host: Optional[str] = None, port: Optional[int] = None) -> ServerInfo:
    """Pick the port, check the firewall and work out the public base URL."""
    srv = ctx.config.server
    host = host or srv.host
    port = port or srv.port or find_available_port(srv.port_range_start, srv.port_range_end, host)

    firewall = ctx.firewall.check_port(port)
    if firewall.needs_action:
        logger.warning("%s; try: %s", firewall.message, firewall.suggestion)
    else:
        logger.info(firewall.message)

    ip = ctx.ip_resolver.resolve()
    return ServerInfo(host=host, port=port, base_url=f"http://{ip.ip}:{port}", ip=ip, firewall=firewall)


def serve(ctx: AppContext, host: Optional[str] = None, port: Optional[int] = None,
          info: Optional[ServerInfo] = None) -> ServerInfo:
    """Run the gallery until interrupted; `info` skips port and IP discovery."""
    info = info or prepare_server(ctx, host=host, port=port)
    app = create_app(ctx, info.base_url)
    logger.info("Server running on %s (results: %s)", info.base_url, ctx.store.root)
    logger.info("Health check: %s/health", info.base_url)
    app.run(host=info.host, port=info.port, threaded=True, use_reloader=False)
    return info
