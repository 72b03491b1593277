"""
Local Admin Server — Flask app exposing mirror status to operators.

Binds to localhost by default. Repo paths given to the API are resolved
inside SWARM_MIRROR_REPOS_ROOT when it is set; do not expose this server
without one.
"""

from __future__ import annotations

import logging
import os
import time
from typing import Optional

from flask import Flask, g, jsonify, request

from ..config.models import GitFusionSettings
from ..errors import MirrorError
from .routes_mirror import mirror_bp

logger = logging.getLogger(__name__)

REPOS_ROOT_ENV = "SWARM_MIRROR_REPOS_ROOT"

# Paths polled by status pages, logged at debug
QUIET_SUFFIXES = ("/status",)


def create_app(
    settings: Optional[GitFusionSettings] = None,
    repos_root: Optional[str] = None,
) -> Flask:
    """
    Build the admin app.

    Args:
        settings: Git Fusion settings to use; None re-reads the YAML config per request
        repos_root: Directory repo paths must resolve inside; defaults to SWARM_MIRROR_REPOS_ROOT
    """
    app = Flask(__name__)
    app.config["MIRROR_SETTINGS"] = settings
    app.config["REPOS_ROOT"] = repos_root or os.environ.get(REPOS_ROOT_ENV)

    app.register_blueprint(mirror_bp, url_prefix="/api/mirror")

    # ── Error Handlers ────────────────────────────────────────────

    @app.errorhandler(MirrorError)
    def mirror_error(e: MirrorError):
        logger.error(f"{request.method} {request.path} failed: {e}")
        return jsonify({"success": False, "error": str(e)}), 502

    @app.errorhandler(500)
    def internal_server_error(e):
        logger.error(f"Unhandled error on {request.method} {request.path}: {e}", exc_info=True)
        return jsonify({"success": False, "error": f"Internal server error: {e}"}), 500

    # ── Request Timing ────────────────────────────────────────────

    @app.before_request
    def start_timer():
        g.started = time.monotonic()

    @app.after_request
    def log_request(response):
        elapsed_ms = int((time.monotonic() - g.get("started", time.monotonic())) * 1000)
        log = logger.debug if request.path.endswith(QUIET_SUFFIXES) else logger.info
        log(f"{request.method} {request.full_path.rstrip('?')} → {response.status_code} ({elapsed_ms}ms)")
        return response

    logger.info(f"Admin server initialized (repos_root={app.config['REPOS_ROOT']})")
    return app


def run_server(host: str = "127.0.0.1", port: int = 5050, debug: bool = False) -> None:
    """Serve the admin app in the foreground until interrupted."""
    app = create_app()
    logger.info(f"Admin server listening on http://{host}:{port}")
    app.run(host=host, port=port, debug=debug, use_reloader=False)
