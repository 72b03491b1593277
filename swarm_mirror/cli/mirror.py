"""
CLI mirror commands — push, fetch and status of a repo's Git Fusion mirror.

Usage:
    swarm-mirror push REFSPEC... --repo PATH [--receive-pack]
    swarm-mirror fetch --repo PATH [--no-skip-if-pushing] [--strict]
    swarm-mirror mirror-status --repo PATH [--json]
    swarm-mirror gf-run COMMAND [--id ID] [--repo R] [--extra X]
    swarm-mirror gf-validate [--min-version V] [--json]
    swarm-mirror fetch-worker --root DIR [--json]
"""

from __future__ import annotations

import json

import click

from ..errors import MirrorError


@click.command("push")
@click.argument("refspecs", nargs=-1, required=True)
@click.option("--repo", "repo_path", required=True, help="Path to the bare repo")
@click.option("--receive-pack", is_flag=True, help="Lock through WRITE_LOCK_SOCKET (hook use)")
def mirror_push(refspecs: tuple, repo_path: str, receive_pack: bool) -> None:
    """Push refspecs to the repo's mirror."""
    from ..mirror.push import MirrorPush

    try:
        pushed = MirrorPush().push(list(refspecs), repo_path, receive_pack=receive_pack)
    except MirrorError as e:
        click.secho(f"❌ Push to mirror failed: {e}", fg="red", err=True)
        raise SystemExit(1)

    if not pushed:
        click.echo("Nothing to mirror.")
        return
    for refspec in pushed:
        click.echo(f"  ✓ {refspec}")


@click.command("fetch")
@click.option("--repo", "repo_path", required=True, help="Path to the bare repo")
@click.option(
    "--skip-if-pushing/--no-skip-if-pushing",
    default=True,
    help="Don't wait for a push in progress (default: skip)",
)
@click.option("--strict", is_flag=True, help="Exit non-zero if the fetch failed")
def mirror_fetch(repo_path: str, skip_if_pushing: bool, strict: bool) -> None:
    """Fetch from the repo's mirror."""
    from ..mirror.fetch import MirrorFetch

    fetcher = MirrorFetch()
    try:
        ok = fetcher.fetch(repo_path, skip_if_pushing=skip_if_pushing)
    except MirrorError as e:
        raise click.ClickException(str(e))

    if ok:
        return

    error = fetcher.last_fetch_error(repo_path)
    click.secho(str(error), fg="yellow", err=True)
    if strict:
        raise SystemExit(1)


@click.command("mirror-status")
@click.option("--repo", "repo_path", required=True, help="Path to the bare repo")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON (for API)")
def mirror_status(repo_path: str, as_json: bool) -> None:
    """Show fetch, lock and re-enable state for a repo."""
    from ..mirror.fetch import MirrorFetch

    try:
        result = MirrorFetch().status(repo_path)
    except MirrorError as e:
        raise click.ClickException(str(e))

    if as_json:
        click.echo(json.dumps(result, indent=2, default=str))
        return

    click.echo(f"\n🔀 Mirror Status: {result['repo_path']}\n")
    if not result["mirrored"]:
        click.echo("  Not mirrored.")
        click.echo()
        return

    click.echo(f"  Mirror:       {result['mirror_url']}")
    click.echo(f"  Last fetch:   {result['last_fetched_iso'] or 'never'}")
    click.echo(f"  Pushing:      {'Yes' if result['write_locked'] else 'No'}")
    click.echo(f"  Fetching:     {'Yes' if result['fetch_locked'] else 'No'}")
    click.echo(f"  Re-enabling:  {'Yes' if result['reenabling'] else 'No'}")
    if result["last_fetch_error"]:
        click.secho(f"\n  ❌ {result['last_fetch_error']}", fg="red")
    if result["reenable_error"]:
        click.secho(f"\n  ❌ Re-enable failed: {result['reenable_error']}", fg="red")
    click.echo()


@click.command("gf-run")
@click.argument("command")
@click.option("--id", "entry_id", default=None, help="Config entry id (default: 'default' or first)")
@click.option("--repo", default=None, help="Git Fusion repo name")
@click.option("--extra", default=None, help="Extra command argument (e.g. a push id)")
@click.option("--for-user", default=None, help="Act on behalf of this user")
def gf_run(command: str, entry_id: str, repo: str, extra: str, for_user: str) -> None:
    """Run a Git Fusion command (info, list, status, wait, help)."""
    from ..mirror import git_fusion

    try:
        output = git_fusion.run(entry_id, command, repo=repo, extra=extra, for_user=for_user)
    except MirrorError as e:
        click.secho(f"❌ {e}", fg="red", err=True)
        raise SystemExit(1)
    click.echo(output)


@click.command("gf-validate")
@click.option("--min-version", default=None, help="Lowest acceptable Git Fusion version")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
def gf_validate(min_version: str, as_json: bool) -> None:
    """Check every configured Git Fusion entry is reachable and current."""
    from ..config.loader import load_settings
    from ..mirror.git_fusion import validate_entries

    try:
        results = validate_entries(load_settings(), min_version)
    except MirrorError as e:
        raise click.ClickException(str(e))

    if as_json:
        data = {
            entry_id: {**result, "config": result["config"].model_dump(exclude={"password"})}
            for entry_id, result in results.items()
        }
        click.echo(json.dumps(data, indent=2, default=str))
    elif not results:
        click.echo("No Git Fusion entries configured.")
    else:
        for entry_id, result in results.items():
            if result["valid"]:
                click.secho(f"  ✅ {entry_id}: {result['version']}", fg="green")
            elif result["outdated"]:
                click.secho(f"  ⚠️  {entry_id}: {result['version']} is older than {min_version}", fg="yellow")
            else:
                click.secho(f"  ❌ {entry_id}: {result['error']}", fg="red")

    if not all(result["valid"] for result in results.values()):
        raise SystemExit(1)


@click.command("fetch-worker")
@click.option("--root", "root", required=True, help="Directory holding the bare repos")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
def fetch_worker(root: str, as_json: bool) -> None:
    """Fetch every mirrored repo under ROOT that is due (cron-friendly)."""
    from ..mirror.fetch_worker import FetchWorker

    try:
        results = FetchWorker().run_once(root)
    except MirrorError as e:
        raise click.ClickException(str(e))

    if as_json:
        click.echo(json.dumps(results, indent=2))
    elif not results:
        click.echo("All mirrored repos are up to date.")
    else:
        for repo_path, ok in results.items():
            if ok:
                click.echo(f"  ✓ {repo_path}")
            else:
                click.secho(f"  ❌ {repo_path}", fg="red")

    if not all(results.values()):
        raise SystemExit(1)
