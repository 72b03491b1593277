"""
Admin API — Mirror status endpoints.

Blueprint: mirror_bp
Prefix: /api/mirror
"""

from __future__ import annotations

import logging
import os
from typing import Optional

from flask import Blueprint, current_app, jsonify, request

from ..errors import ConfigurationError, MirrorError
from ..mirror.fetch import MirrorFetch

logger = logging.getLogger(__name__)

mirror_bp = Blueprint("mirror", __name__)


def _settings():
    return current_app.config.get("MIRROR_SETTINGS")


def _repo_path() -> Optional[str]:
    """The `repo` query arg, resolved inside REPOS_ROOT when one is set."""
    repo = request.args.get("repo", "").strip()
    if not repo:
        return None

    root = current_app.config.get("REPOS_ROOT")
    if not root:
        return repo

    root = os.path.realpath(root)
    path = os.path.realpath(os.path.join(root, repo))
    if os.path.commonpath([root, path]) != root:
        return None
    return path


def _not_found(message: str):
    return jsonify({"success": False, "error": message}), 404


@mirror_bp.route("/status", methods=["GET"])
def api_mirror_status():
    """Fetch state, lock state and re-enable state for one repo."""
    repo_path = _repo_path()
    if repo_path is None:
        return _not_found("A valid repo is required.")

    try:
        data = MirrorFetch(settings=_settings()).status(repo_path)
    except ConfigurationError as e:
        return _not_found(str(e))
    return jsonify(data)


@mirror_bp.route("/fetch", methods=["POST"])
def api_mirror_fetch():
    """Fetch from the repo's mirror now, waiting out any push in progress."""
    repo_path = _repo_path()
    if repo_path is None:
        return _not_found("A valid repo is required.")

    fetcher = MirrorFetch(settings=_settings())
    try:
        ok = fetcher.fetch(repo_path, skip_if_pushing=False)
    except ConfigurationError as e:
        return _not_found(str(e))
    except MirrorError as e:
        logger.error(f"Fetch via admin API failed for {repo_path}: {e}")
        return jsonify({"success": False, "error": str(e)}), 502

    return jsonify({
        "success": ok,
        "error": None if ok else fetcher.last_fetch_error(repo_path),
    })


@mirror_bp.route("/entries", methods=["GET"])
def api_mirror_entries():
    """Configured Git Fusion entries, with passwords stripped."""
    settings = _settings()
    if settings is None:
        from ..config.loader import load_settings
        settings = load_settings()

    entries = []
    for entry_id, entry in settings.entries():
        try:
            url = entry.url_object.with_strip_password(True).to_s()
        except MirrorError:
            url = None
        entries.append({
            "id": entry_id,
            "label": entry.label,
            "url": url,
            "enforce_permissions": entry.enforce_permissions,
        })

    return jsonify({"enabled": settings.enabled, "entries": entries})
