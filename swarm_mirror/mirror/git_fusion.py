"""
Git Fusion — Issue gateway commands by cloning extended URLs.

Git Fusion has no structured API. Commands such as `@info`, `@list` or
`@wait@repo@<push id>` are sent by cloning a specially formed URL; the
gateway answers with text on the clone's output and then fails the clone.
Replies are pattern matched as text.
"""

from __future__ import annotations

import logging
import re
import sys
import tempfile
from typing import Callable, Dict, List, Optional, Tuple

from ..config.loader import load_settings
from ..config.models import GitFusionEntry, GitFusionSettings
from ..errors import ConfigurationError, GitFusionRunError, MirrorError, ParseError
from .utils import LineCallback, popen

logger = logging.getLogger(__name__)

CLONING_RE = re.compile(r"^Cloning into")
KNOWN_HOSTS_RE = re.compile(r"^Warning: Permanently added .* to the list of known hosts")
RUN_FATAL_RE = re.compile(r"^fatal: (repository|Could not read from remote repository\.)")
ANY_FATAL_RE = re.compile(r"^fatal: ")
MITM_RE = re.compile(
    r"@ *WARNING: (REMOTE HOST IDENTIFICATION HAS CHANGED!|POSSIBLE DNS SPOOFING DETECTED!) *@"
)
LIST_LINE_RE = re.compile(r"^([^\s]+)\s+(push|pull)?\s+([^\s]+)(\s+(.+?))?$")
NO_REPOS_RE = re.compile(r"^no repositories found$", re.MULTILINE)
INFO_BANNER = "Perforce - The Fast Software"
VERSION_RE = re.compile(r"Rev\. Git Fusion/(\d+\.\d+)/(\d+)")
MIN_VERSION_RE = re.compile(r"^\d+(\.\d+)*$")


def git_config_params(entry: Optional[GitFusionEntry], askpass: Optional[str] = None) -> List[str]:
    """Build `-c key=value` arguments for git commands against an entry."""
    values = [f"core.askpass={askpass}"] if askpass else []
    if entry is not None:
        values.extend(entry.git_config_params)

    params: List[str] = []
    for value in values:
        if value:
            params.extend(["-c", value])
    return params


def clone(
    url: str,
    params: List[str],
    silence: re.Pattern = ANY_FATAL_RE,
    on_line: Optional[LineCallback] = None,
) -> Tuple[str, str, int]:
    """
    Clone `url` in a throwaway directory to talk to the gateway.

    Boilerplate lines and everything from the first line matching
    `silence` onwards are withheld from `on_line` and from the visible
    output.

    Returns:
        (full output, visible output, exit status)
    """
    visible: List[str] = []
    silenced = False

    def _filter(line: str) -> None:
        nonlocal silenced
        silenced = silenced or bool(silence.match(line))
        if silenced or CLONING_RE.match(line) or KNOWN_HOSTS_RE.match(line):
            return
        visible.append(line)
        if on_line:
            on_line(line)

    with tempfile.TemporaryDirectory(prefix="swarm-mirror-") as temp:
        output, status = popen(["git", *params, "clone", "--", url], temp, on_line=_filter)
    return output, "".join(visible), status


def validate_git_output(command: str, output: str) -> str:
    """Check a gateway reply looks right for the command; return it."""
    # some platforms print the command output even after a MITM warning
    if MITM_RE.search(output):
        raise GitFusionRunError(output)

    if command == "list":
        if not output:
            raise GitFusionRunError("No response was received.")
        valid = NO_REPOS_RE.search(output) or all(
            LIST_LINE_RE.match(line) for line in output.splitlines()
        )
        if not valid:
            raise GitFusionRunError(output)
    elif command == "info":
        if not output.startswith(INFO_BANNER):
            raise GitFusionRunError(output)

    return output


def run(
    entry_id: Optional[str],
    command: str,
    repo: Optional[str] = None,
    extra: Optional[str] = None,
    stream_output: bool = False,
    for_user: Optional[str] = None,
    on_line: Optional[Callable[[str], None]] = None,
    settings: Optional[GitFusionSettings] = None,
) -> str:
    """
    Run a Git Fusion command against a configured entry and return its reply.

    `for_user` is only sent when the entry enforces permissions.
    Any failure is raised as GitFusionRunError.
    """
    log_context = f"GitFusion.run({entry_id!r}, {command!r}, repo={repo!r}, extra={extra!r}, for_user={for_user!r})"

    try:
        if not command:
            raise ConfigurationError("run requires a command")
        settings = settings or load_settings()
        entry = settings.entry(entry_id)
        url = (
            entry.url_object
            .with_for_user(for_user if entry.enforce_permissions else None)
            .with_command(command)
            .with_repo(repo)
            .with_extra(extra)
        )

        def _echo(line: str) -> None:
            if stream_output:
                sys.stdout.write(line)
                sys.stdout.flush()
            if on_line:
                on_line(line)

        _full, visible, _status = clone(
            url.to_s(),
            git_config_params(entry, settings.askpass),
            silence=RUN_FATAL_RE,
            on_line=_echo,
        )
        output = validate_git_output(command, visible.strip("\n"))
    except GitFusionRunError as e:
        logger.error(f"{log_context}\n{e}")
        raise
    except (MirrorError, OSError) as e:
        logger.error(f"{log_context}\n{e!r}", exc_info=not isinstance(e, (ConfigurationError, ParseError)))
        raise GitFusionRunError(str(e)) from e

    logger.debug(f"{log_context}\n{output}")
    return output


def parse_version(info_output: str) -> Optional[str]:
    """Extract `2015.2.1128995` from `Rev. Git Fusion/2015.2/1128995 (...)`."""
    match = VERSION_RE.search(info_output)
    if not match:
        return None
    return f"{match.group(1)}.{match.group(2)}"


def info_version(entry_id: Optional[str] = None, settings: Optional[GitFusionSettings] = None) -> Optional[str]:
    """Ask an entry's gateway for @info and return its version."""
    return parse_version(run(entry_id, "info", settings=settings))


def _version_tuple(version: str) -> Tuple[int, ...]:
    return tuple(int(part) for part in version.split("."))


def is_outdated(version: str, min_version: str) -> bool:
    current = _version_tuple(version)
    minimum = _version_tuple(min_version)
    width = max(len(current), len(minimum))
    return current + (0,) * (width - len(current)) < minimum + (0,) * (width - len(minimum))


def validate_entries(
    settings: GitFusionSettings,
    min_version: Optional[str] = None,
) -> Dict[str, Dict[str, object]]:
    """
    Query `@info` on every entry and report reachability and version.

    Returns {entry_id: {"valid", "config", "version", "outdated", "error"}}.
    """
    if min_version is not None and not MIN_VERSION_RE.match(min_version):
        raise ConfigurationError(f"Invalid min_version specified: {min_version}")

    results: Dict[str, Dict[str, object]] = {}
    for entry_id, entry in settings.entries():
        result: Dict[str, object] = {
            "valid": False,
            "config": entry,
            "version": None,
            "outdated": None,
            "error": None,
        }
        try:
            output = run(entry_id, "info", settings=settings)
        except GitFusionRunError as e:
            result["error"] = e.message
            results[entry_id] = result
            continue

        version = parse_version(output)
        result["version"] = version
        if version is None:
            result["error"] = "Unable to determine Git Fusion version."
        elif min_version is not None:
            result["outdated"] = is_outdated(version, min_version)
            result["valid"] = not result["outdated"]
        else:
            result["valid"] = True
        results[entry_id] = result

    return results
