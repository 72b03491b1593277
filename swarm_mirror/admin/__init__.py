"""
Local Admin Server — Operator view of mirror state.

Usage:
    swarm-mirror admin --port 5050

Features:
    - Per-repo fetch, lock and re-enable status
    - Trigger a mirror fetch
    - List configured Git Fusion entries
"""

from .server import create_app, run_server

__all__ = ["create_app", "run_server"]
