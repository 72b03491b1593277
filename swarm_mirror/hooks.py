"""
Mirror Hooks — Route git hook events through the mirror.

MirrorHooks wraps another Hooks implementation (normally the repo's
custom hook scripts):

- pre-receive runs the inner update/pre-receive checks, then pushes the
  incoming refs to the mirror; a mirror rejection rejects the push. Under
  the receive-pack wrapper the write lock is taken through its socket and
  stays held for post-receive
- update is a no-op here; pre-receive already ran the inner update per ref
- post-receive releases the write lock taken during pre-receive, then
  runs the inner post-receive

## Usage

    from swarm_mirror.hooks import MirrorHooks

    hooks = MirrorHooks()
    accepted = hooks.pre_receive(sys.stdin.read(), repo_path)
"""

from __future__ import annotations

import logging
import os
from typing import List, Optional

from .errors import MirrorError
from .mirror.custom_hooks import CustomHooks, Hooks
from .mirror.locks import WRITE_LOCK_SOCKET_ENV, lock_socket
from .mirror.push import MirrorPush
from .mirror.refs import ZERO_SHA, parse_ref_updates
from .mirror.repo import Repo

logger = logging.getLogger(__name__)


def changes_to_refspecs(changes: str) -> List[str]:
    """Turn `old new ref` lines into push refspecs; a zero new sha deletes."""
    refspecs = []
    for change in parse_ref_updates(changes):
        source = "" if change.new_sha == ZERO_SHA else change.new_sha
        refspecs.append(f"{source}:{change.refname}")
    return refspecs


class MirrorHooks(Hooks):
    """Hooks that mirror accepted pushes before git records them."""

    def __init__(self, inner: Optional[Hooks] = None, pusher: Optional[MirrorPush] = None):
        self.inner = inner or CustomHooks()
        self.pusher = pusher or MirrorPush()

    def update(self, ref_name: str, old_value: str, new_value: str, repo_path: str) -> bool:
        return True

    def pre_receive(self, changes: str, repo_path: str) -> bool:
        try:
            updates = parse_ref_updates(changes)
        except MirrorError as e:
            logger.error(f"Rejecting push to {repo_path}: {e}")
            return False

        # update hooks run here so every check passes before the mirror sees anything
        for change in updates:
            if not self.inner.update(change.refname, change.old_sha, change.new_sha, repo_path):
                return False
        if not self.inner.pre_receive(changes, repo_path):
            return False

        try:
            self.pusher.push(changes_to_refspecs(changes), repo_path, receive_pack=is_receive_pack())
        except MirrorError as e:
            # the push engine has already logged the details
            logger.debug(f"Mirror rejected push to {repo_path}: {e}")
            return False
        return True

    def post_receive(self, changes: str, repo_path: str, receive_pack: bool = True) -> bool:
        if receive_pack and Repo(repo_path).mirrored:
            try:
                lock_socket("UNLOCK")
            except MirrorError as e:
                logger.error(f"Failed to release write lock for {repo_path}: {e}")

        return self.inner.post_receive(changes, repo_path, receive_pack)


def is_receive_pack() -> bool:
    """Whether the hook runs under the receive-pack wrapper."""
    return bool(os.environ.get(WRITE_LOCK_SOCKET_ENV))
