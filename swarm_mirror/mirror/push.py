"""
Mirror Push — Push ref updates to the Git Fusion mirror before accepting them.

If a repo has a `mirror` remote, updates go to the mirror first and are
rejected locally if the mirror rejects them. Git Fusion acknowledges a
push early ("Commencing push N processing...") and finishes it into
Perforce in the background, so after pushing we poll `@wait@repo@N` by
cloning until the gateway reports the push completed.

## Usage

    from swarm_mirror.mirror.push import MirrorPush

    MirrorPush().push(["0123abcd:refs/heads/main"], "/repos/project.git")

During git receive-pack, pass receive_pack=True: the write lock is then
taken through the wrapper's lock socket so that it stays held until
post-receive has updated the local refs.
"""

from __future__ import annotations

import logging
import os
import re
import stat
import sys
from pathlib import Path
from typing import Callable, Iterable, List, Optional, Union

from ..config.loader import load_settings
from ..config.models import GitFusionEntry, GitFusionSettings
from ..errors import ConfigurationError, MirrorError, RemoteOperationError
from .durations import Durations
from .git_fusion import ANY_FATAL_RE, clone, git_config_params
from .locks import NOT_MIRRORED, WRITE_LOCK_SOCKET_ENV, LockCoordinator
from .refs import mirror_push_refs
from .repo import MIRROR_REMOTE, Repo
from .utils import popen

logger = logging.getLogger(__name__)

PUSH_ID_RE = re.compile(r"^(?:remote: )?Commencing push (\d+) processing\.\.\.", re.MULTILINE)
PUSH_COMPLETE_RE = re.compile(r"^(?:remote: )?Push \d+ completed successfully", re.MULTILINE)
PUSH_WAITING_RE = re.compile(r"Waiting for push \d+\.\.\.")

# A run of "Perforce:  NN% (a/b) Label" lines sharing a label; keep the last
PROGRESS_RE = re.compile(r"Perforce: +\d+% +\( *\d+/\d+\) (.*?)\n([^\n]+\1\n)+", re.DOTALL)

RefsResolver = Callable[[Repo, List[str]], Iterable[str]]
PushCallback = Callable[[Repo, List[str]], None]


def collapse_progress(output: str) -> str:
    """Reduce repeated Perforce progress lines to the final line per phase."""
    return PROGRESS_RE.sub(r"\2", output)


def default_username() -> Optional[str]:
    """The pushing user's name, when running under an authenticated key."""
    if not os.environ.get("GL_ID"):
        return None
    return os.environ.get("GL_USERNAME") or None


def _echo_stdout(line: str) -> None:
    sys.stdout.write(line)
    sys.stdout.flush()


class MirrorPush:
    """Pushes ref updates through the mirror under the repo's write lock."""

    def __init__(
        self,
        coordinator: Optional[LockCoordinator] = None,
        settings: Optional[GitFusionSettings] = None,
        user_resolver: Callable[[], Optional[str]] = default_username,
        echo: Callable[[str], None] = _echo_stdout,
    ):
        self.coordinator = coordinator or LockCoordinator()
        self._settings = settings
        self.user_resolver = user_resolver
        self.echo = echo

    @property
    def settings(self) -> GitFusionSettings:
        if self._settings is None:
            self._settings = load_settings()
        return self._settings

    @staticmethod
    def check_lock_socket(repo: Repo) -> None:
        """Fail unless WRITE_LOCK_SOCKET is usable for this repo."""
        socket_path = os.environ.get(WRITE_LOCK_SOCKET_ENV)
        if not socket_path:
            raise ConfigurationError(f"{WRITE_LOCK_SOCKET_ENV} is required for receive_pack")

        is_socket = _is_socket(socket_path)
        if repo.mirrored and not is_socket:
            raise ConfigurationError(f"{WRITE_LOCK_SOCKET_ENV} is not a valid socket\n{socket_path}")
        if not repo.mirrored and not is_socket and socket_path != NOT_MIRRORED:
            raise ConfigurationError(f"{WRITE_LOCK_SOCKET_ENV} is invalid\n{socket_path}")

    def push(
        self,
        refs: Iterable[str],
        repo_path: Union[str, Path],
        receive_pack: bool = False,
        refs_resolver: Optional[RefsResolver] = None,
        callback: Optional[PushCallback] = None,
    ) -> List[str]:
        """
        Push `refs` (git refspecs) to the repo's mirror.

        Args:
            refs: Refspecs such as "sha:refs/heads/main" or ":branch" (delete)
            repo_path: Path to the bare repo
            receive_pack: Lock via WRITE_LOCK_SOCKET and leave the lock held
                on success for post-receive to release
            refs_resolver: Called as resolver(repo, refs) inside the write
                lock; its result replaces refs. Lets callers build commits
                without racing other pushes.
            callback: Called as callback(repo, refs) once the mirror has the
                refs (or nothing needed mirroring), still inside the lock.

        Returns:
            The mirrored refspecs actually pushed (possibly empty).

        Raises:
            ConfigurationError, LockProtocolError, RemoteOperationError
        """
        repo = Repo(repo_path, self._settings)
        refs = list(refs)

        if refs_resolver is not None and not callable(refs_resolver):
            raise TypeError("refs_resolver must be callable")
        if receive_pack:
            self.check_lock_socket(repo)

        refs = mirror_push_refs(repo.path, refs) if repo.mirrored else []

        # nothing mirrored; the resolver still runs in case it has work to do
        if not refs:
            if refs_resolver is not None:
                refs = mirror_push_refs(repo.path, refs_resolver(repo, refs))
            if callback is not None:
                callback(repo, refs)
            return refs

        durations = Durations()
        locked = False
        push_output: Optional[str] = None
        wait_outputs: List[str] = []

        try:
            entry = self.settings.entry_by_url(repo.mirror_url or "")
            params = git_config_params(entry, self.settings.askpass)

            durations.start("lock")
            locked = self.coordinator.write_lock(repo.path, receive_pack)
            durations.stop("lock")

            if refs_resolver is not None:
                refs = mirror_push_refs(repo.path, refs_resolver(repo, refs))
                if not refs:
                    if callback is not None:
                        callback(repo, refs)
                    return refs

            self._apply_for_user(repo, entry)

            durations.start("push")
            push_output, status = popen(["git", *params, "push", MIRROR_REMOTE, "--", *refs], repo.path)
            durations.stop("push")
            if status != 0:
                raise RemoteOperationError(push_output, status)

            match = PUSH_ID_RE.search(push_output)
            if match:
                durations.start("wait")
                self._wait_for_push(repo, params, match.group(1), wait_outputs)
                durations.stop("wait")

            if callback is not None:
                callback(repo, refs)
            return refs
        except Exception as e:
            refs_text = "\n".join(refs)
            logger.error(
                f"Push to mirror failed for: {repo.path}\n{refs_text}\n{e}",
                extra={"repo_path": repo.path, "refs": refs},
            )

            # don't hold the lock while the error travels back to the client
            if locked and receive_pack:
                try:
                    self.coordinator.write_unlock(repo.path, use_socket=True)
                except (MirrorError, OSError) as unlock_error:
                    logger.debug(f"Courtesy unlock failed: {unlock_error}")
            raise
        finally:
            if locked and not receive_pack:
                self.coordinator.write_unlock(repo.path)

            refs_text = "\n".join(refs)
            collapsed = collapse_progress(push_output) if push_output else ""
            logger.info(
                f"Push: {repo.path}\n{refs_text}\nDurations {durations}\n{collapsed}{''.join(wait_outputs)}",
                extra={"repo_path": repo.path, "refs": refs},
            )

    def _apply_for_user(self, repo: Repo, entry: GitFusionEntry) -> None:
        """Point the mirror remote at the acting user, or at nobody."""
        username = self.user_resolver() if entry.enforce_permissions else None
        if username:
            repo.mirror_url = repo.mirror_url_object.with_for_user(username)
            logger.info(f"Including foruser in mirror_url {repo.mirror_url}")
        else:
            repo.mirror_url = repo.mirror_url_object.clear_for_user()
            logger.info(
                f"Skipping foruser {repo.mirror_url} GL_ID {os.environ.get('GL_ID')} "
                f"Enforce {entry.enforce_permissions}"
            )

    def _wait_for_push(self, repo: Repo, params: List[str], push_id: str, outputs: List[str]) -> None:
        """
        Poll `@wait` until Git Fusion reports push `push_id` complete.

        Each clone is short lived; the push carries on server side between
        polls, so "Waiting for push N..." means ask again.
        """
        wait_url = (
            repo.mirror_url_object
            .clear_for_user()
            .with_command("wait")
            .with_extra(push_id)
            .to_s()
        )

        while True:
            output, _visible, _status = clone(wait_url, params, silence=ANY_FATAL_RE, on_line=self.echo)
            outputs.append(output)

            if PUSH_COMPLETE_RE.search(output):
                return
            if not PUSH_WAITING_RE.search(output):
                raise RemoteOperationError(output)
            logger.debug(f"Push {push_id} still in progress for {repo.path}", extra={"push_id": push_id})


def _is_socket(path: str) -> bool:
    try:
        return stat.S_ISSOCK(os.stat(path).st_mode)
    except OSError:
        return False
