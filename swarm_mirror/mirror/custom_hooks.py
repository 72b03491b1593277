"""
Custom Hooks — Run a repository's own hook scripts.

Scripts live in `<repo>/custom_hooks/` and are optional; a missing or
non-executable script counts as success. Their output is echoed to
stdout so it reaches the pushing client as `remote:` lines.
"""

from __future__ import annotations

import logging
import os
import sys
from pathlib import Path
from typing import Dict, Optional, Sequence, Union

from .utils import popen

logger = logging.getLogger(__name__)

CUSTOM_HOOKS_DIR = "custom_hooks"

# Identity handed to hooks for ref updates the system made on its own
ACTOR_ENV = "SWARM_MIRROR_ACTOR"


class Hooks:
    """The git hook surface the mirror engines are invoked from."""

    def update(self, ref_name: str, old_value: str, new_value: str, repo_path: str) -> bool:
        return True

    def pre_receive(self, changes: str, repo_path: str) -> bool:
        return True

    def post_receive(self, changes: str, repo_path: str, receive_pack: bool = True) -> bool:
        return True


class CustomHooks(Hooks):
    """Hooks backed by executable scripts in the repo's custom_hooks dir."""

    def __init__(self, echo: bool = True):
        self.echo = echo

    @staticmethod
    def hook_path(name: str, repo_path: Union[str, Path]) -> str:
        return os.path.join(repo_path, CUSTOM_HOOKS_DIR, name)

    def run(
        self,
        name: str,
        repo_path: Union[str, Path],
        stdin: Optional[str] = None,
        args: Sequence[str] = (),
        env: Optional[Dict[str, str]] = None,
    ) -> bool:
        path = self.hook_path(name, repo_path)
        if not (os.path.isfile(path) and os.access(path, os.X_OK)):
            return True

        on_line = _echo if self.echo else None
        output, status = popen([path, *args], repo_path, on_line=on_line, env=env, stdin=stdin)
        if status != 0:
            logger.warning(f"Custom {name} hook failed for {repo_path} ({status}):\n{output}")
        return status == 0

    def update(self, ref_name: str, old_value: str, new_value: str, repo_path: str) -> bool:
        return self.run("update", repo_path, args=[ref_name, old_value, new_value])

    def pre_receive(self, changes: str, repo_path: str) -> bool:
        return self.run("pre-receive", repo_path, stdin=changes)

    def post_receive(self, changes: str, repo_path: str, receive_pack: bool = True) -> bool:
        return self.run("post-receive", repo_path, stdin=changes)

    def notify(self, changes: str, repo_path: str, identity: str) -> bool:
        """Feed ref changes the system made (e.g. a mirror fetch) to post-receive."""
        return self.run("post-receive", repo_path, stdin=changes, env={ACTOR_ENV: identity})


def _echo(line: str) -> None:
    sys.stdout.write(line)
    sys.stdout.flush()
