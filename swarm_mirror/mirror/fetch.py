"""
Mirror Fetch — Pull the mirror's refs into the local repository.

Reads (ssh/http fetches) call this first so clients see what is in
Perforce. Concurrency rules:

- a shared lock on mirror_push.lock keeps fetches from seeing a
  half-mirrored push; pure reads may instead skip fetching while a push
  is in progress
- mirror_fetch.lock lets one process fetch while any others wait for it
  and report its outcome, so overlapping readers don't stampede the mirror

The outcome is persisted (mirror_fetch.last, mirror_fetch.error) so
waiters and status pages can report it.
"""

from __future__ import annotations

import fcntl
import logging
import os
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Union

from ..config.loader import load_settings
from ..config.models import GitFusionSettings
from ..errors import MirrorError, RemoteOperationError
from .custom_hooks import CustomHooks
from .durations import Durations
from .git_fusion import git_config_params
from .locks import (
    FETCH_ERROR_FILE,
    FETCH_LOCK_FILE,
    LAST_FETCH_FILE,
    PUSH_LOCK_FILE,
    LockCoordinator,
    open_lock_file,
    release,
    try_flock,
)
from .refs import mirror_fetch_refs, show_ref, show_ref_updates
from .repo import MIRROR_REMOTE, Repo
from .utils import popen

logger = logging.getLogger(__name__)

# Identity fetch-driven ref updates are attributed to
SYSTEM_USER = "system-user"

NotifySink = Callable[[str, str, str], Any]


class MirrorFetch:
    """Fetches from a repo's mirror and reports fetch state."""

    def __init__(
        self,
        settings: Optional[GitFusionSettings] = None,
        notify: Optional[NotifySink] = None,
        coordinator: Optional[LockCoordinator] = None,
    ):
        self._settings = settings
        self.notify = notify or CustomHooks().notify
        self.coordinator = coordinator or LockCoordinator()

    @property
    def settings(self) -> GitFusionSettings:
        if self._settings is None:
            self._settings = load_settings()
        return self._settings

    def fetch(self, repo_path: Union[str, Path], skip_if_pushing: bool = True) -> bool:
        """
        Fetch from the mirror, if there is one.

        Returns True on success (or when there is no mirror). Failures are
        recorded in mirror_fetch.error and reported as False.
        """
        repo = Repo(repo_path, self._settings)
        if not repo.mirrored:
            return True

        entry = self.settings.entry_by_url(repo.mirror_url or "")
        params = git_config_params(entry, self.settings.askpass)

        push_handle = open_lock_file(os.path.join(repo.path, PUSH_LOCK_FILE))
        try:
            # pure reads don't wait out a push; they serve what is local
            if skip_if_pushing and not try_flock(push_handle, fcntl.LOCK_SH):
                logger.info(f"Mirror push in progress, skipping fetch for {repo.path}")
                return not self.last_fetch_error(repo.path)

            fcntl.flock(push_handle.fileno(), fcntl.LOCK_SH)

            fetch_handle = open_lock_file(os.path.join(repo.path, FETCH_LOCK_FILE))
            try:
                if not try_flock(fetch_handle, fcntl.LOCK_EX):
                    # someone else is fetching; wait for them and use their result
                    fcntl.flock(fetch_handle.fileno(), fcntl.LOCK_SH)
                    return not self.last_fetch_error(repo.path)

                return self._fetch_locked(repo, params)
            finally:
                release(fetch_handle)
        finally:
            release(push_handle)

    def _fetch_locked(self, repo: Repo, params: list) -> bool:
        """Do the actual fetch; caller holds both locks."""
        error_file = os.path.join(repo.path, FETCH_ERROR_FILE)
        durations: Optional[Durations] = None
        output: Optional[str] = None
        status: Optional[int] = None

        try:
            repo.mirror_url = repo.mirror_url_object.clear_for_user()

            old_refs = show_ref(repo.path)

            durations = Durations()
            durations.start("fetch")
            command = ["git", *params, "fetch", MIRROR_REMOTE, *mirror_fetch_refs(repo.path)]
            output, status = popen(command, repo.path)
            durations.stop()

            with open(os.path.join(repo.path, LAST_FETCH_FILE), "w", encoding="utf-8") as f:
                f.write(str(int(time.time())))
            if status != 0:
                raise RemoteOperationError(output, status)

            if os.path.exists(error_file):
                os.unlink(error_file)

            changes = show_ref_updates(old_refs, show_ref(repo.path))
            if changes.strip():
                self._notify(changes, repo.path)

            return True
        except MirrorError as e:
            logger.error(
                f"Mirror fetch failed.\nRepo Path: {repo.path}\nMirror: {repo.mirror_url}\n{e}",
                extra={"repo_path": repo.path},
            )
            with open(error_file, "w", encoding="utf-8") as f:
                f.write(str(e))
            return False
        finally:
            if durations is not None and output is not None:
                logger.info(
                    f"Mirror fetch\nRepo Path: {repo.path}\nMirror: {repo.mirror_url}\n"
                    f"Duration {durations}\nExit Status: {status}\n{output}",
                    extra={"repo_path": repo.path, "phase": "fetch"},
                )

    def _notify(self, changes: str, repo_path: str) -> None:
        """Pass fetched ref changes downstream as the system user."""
        # the fetching user must not be credited with these updates
        user = os.environ.pop("GL_ID", None)
        try:
            self.notify(changes, repo_path, SYSTEM_USER)
        finally:
            if user is not None:
                os.environ["GL_ID"] = user

    def fetch_or_raise(self, repo_path: Union[str, Path], skip_if_pushing: bool = False) -> None:
        """Fetch, raising RemoteOperationError if it failed."""
        if not self.fetch(repo_path, skip_if_pushing):
            raise RemoteOperationError(self.last_fetch_error(repo_path) or "Fetch from mirror failed.")

    # ── Status ────────────────────────────────────────────────

    def last_fetched(self, repo_path: Union[str, Path]) -> Union[datetime, bool]:
        """When the mirror was last fetched (success or failure), else False."""
        try:
            if not Repo(repo_path, self._settings).mirrored:
                return False
            with open(os.path.join(repo_path, LAST_FETCH_FILE), "r", encoding="utf-8") as f:
                timestamp = int(f.read().strip())
        except (MirrorError, OSError, ValueError):
            return False
        return datetime.fromtimestamp(timestamp, tz=timezone.utc)

    def last_fetch_error(self, repo_path: Union[str, Path]) -> Union[str, bool]:
        """The last fetch error as a user-facing message, else False."""
        repo = Repo(repo_path, self._settings)
        if not repo.mirrored:
            return False
        try:
            with open(os.path.join(repo.path, FETCH_ERROR_FILE), "r", encoding="utf-8") as f:
                error = f.read()
        except OSError:
            return False
        return f"Fetch from mirror: {repo.mirror_url} failed.\nPlease notify your Administrator.\n{error}"

    def status(self, repo_path: Union[str, Path]) -> Dict[str, Any]:
        """Everything an operator page wants to know about a repo's mirroring."""
        repo = Repo(repo_path, self._settings)
        last = self.last_fetched(repo.path)
        return {
            "repo_path": repo.path,
            "mirrored": repo.mirrored,
            "mirror_url": repo.mirror_url_object.to_s() if repo.mirrored else None,
            "last_fetched_iso": last.isoformat() if isinstance(last, datetime) else None,
            "last_fetch_error": self.last_fetch_error(repo.path) or None,
            "write_locked": self.coordinator.write_locked(repo.path),
            "fetch_locked": self.coordinator.fetch_locked(repo.path),
            "reenabling": self.coordinator.reenabling(repo.path),
            "reenable_error": self.coordinator.reenable_error(repo.path) or None,
        }
