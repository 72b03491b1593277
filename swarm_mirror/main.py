"""
swarm-mirror — CLI Entry Point

Usage:
    swarm-mirror receive-pack REPO [ARGS...]
    swarm-mirror upload-pack REPO [ARGS...]
    swarm-mirror hook pre-receive --repo PATH < changes
    swarm-mirror lock-socket LOCK|UNLOCK
    swarm-mirror mirror-status --repo PATH [--json]
    swarm-mirror admin [--port N]
"""

from __future__ import annotations

# Load .env file FIRST, before any other imports that might read env vars
from pathlib import Path
from dotenv import load_dotenv

_env_file = Path.cwd() / ".env"
if _env_file.exists():
    load_dotenv(_env_file)

import subprocess
import sys

import click

from .errors import MirrorError
from .logging_config import setup_logging
from .cli.mirror import fetch_worker, gf_run, gf_validate, mirror_fetch, mirror_push, mirror_status

# Initialize logging
setup_logging()


@click.group()
@click.version_option(package_name="swarm-mirror")
def cli() -> None:
    """swarm-mirror — Keep bare repos in step with a Git Fusion mirror."""


cli.add_command(mirror_push)
cli.add_command(mirror_fetch)
cli.add_command(mirror_status)
cli.add_command(gf_run)
cli.add_command(gf_validate)
cli.add_command(fetch_worker)


# ── Git transport wrappers ────────────────────────────────────


@cli.command(
    "receive-pack",
    context_settings={"ignore_unknown_options": True, "allow_interspersed_args": False},
)
@click.argument("repo_path")
@click.argument("args", nargs=-1, type=click.UNPROCESSED)
@click.option("--fetch/--no-fetch", default=True, help="Fetch from the mirror first (default: on)")
def receive_pack(repo_path: str, args: tuple, fetch: bool) -> None:
    """Run git receive-pack with the write lock socket for its hooks."""
    from .mirror.fetch import MirrorFetch
    from .mirror.lock_server import run_receive_pack

    try:
        # a push has to start from what the mirror has, so wait out other pushes
        if fetch:
            MirrorFetch().fetch_or_raise(repo_path)
        status = run_receive_pack(repo_path, args)
    except MirrorError as e:
        click.echo(str(e), err=True)
        raise SystemExit(1)
    raise SystemExit(status)


@cli.command(
    "upload-pack",
    context_settings={"ignore_unknown_options": True, "allow_interspersed_args": False},
)
@click.argument("repo_path")
@click.argument("args", nargs=-1, type=click.UNPROCESSED)
def upload_pack(repo_path: str, args: tuple) -> None:
    """Fetch from the mirror (unless a push is running), then serve git upload-pack."""
    from .mirror.fetch import MirrorFetch
    from .mirror.repo import Repo

    try:
        repo = Repo(repo_path)
        # a failed fetch still serves what we have locally
        MirrorFetch().fetch(repo.path, skip_if_pushing=True)
    except MirrorError as e:
        click.echo(str(e), err=True)
        raise SystemExit(1)
    raise SystemExit(subprocess.run(["git", "upload-pack", *args, repo.path]).returncode)


@cli.command("lock-socket")
@click.argument("command", type=click.Choice(["LOCK", "UNLOCK"], case_sensitive=False))
def lock_socket_cmd(command: str) -> None:
    """Ask the receive-pack wrapper to LOCK or UNLOCK the write lock."""
    from .mirror.locks import lock_socket

    try:
        click.echo(lock_socket(command.upper()))
    except MirrorError as e:
        click.echo(str(e), err=True)
        raise SystemExit(1)


# ── Hooks ─────────────────────────────────────────────────────


@cli.command("hook")
@click.argument("name", type=click.Choice(["pre-receive", "post-receive", "update"]))
@click.argument("update_args", nargs=-1)
@click.option("--repo", "repo_path", default=".", help="Path to the bare repo (default: cwd)")
def hook(name: str, update_args: tuple, repo_path: str) -> None:
    """
    Dispatch a git hook through the mirror.

    pre-receive and post-receive read `old new ref` lines on stdin;
    update takes REF OLD NEW as arguments.
    """
    from .hooks import MirrorHooks, is_receive_pack

    hooks = MirrorHooks()
    if name == "update":
        if len(update_args) != 3:
            raise click.UsageError("update takes REF OLD NEW")
        ok = hooks.update(*update_args, repo_path)
    elif name == "pre-receive":
        ok = hooks.pre_receive(sys.stdin.read(), repo_path)
    else:
        ok = hooks.post_receive(sys.stdin.read(), repo_path, is_receive_pack())

    if not ok:
        raise SystemExit(1)


# ── Admin ─────────────────────────────────────────────────────


@cli.command("admin")
@click.option("--host", default="127.0.0.1", help="Bind address")
@click.option("--port", type=int, default=5050, help="Port (default: 5050)")
@click.option("--debug", is_flag=True, help="Enable debug mode")
def admin(host: str, port: int, debug: bool) -> None:
    """Run the local admin server (mirror status API)."""
    from .admin import run_server

    run_server(host=host, port=port, debug=debug)


if __name__ == "__main__":
    cli()
