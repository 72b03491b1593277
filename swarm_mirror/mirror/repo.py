"""
Repo — Accessor for a bare repository's `mirror` remote.

A repository is mirrored when `remote.mirror.url` is set and non-empty.
The URL is read lazily and cached on the handle; assigning a new URL
replaces the remote straight away, assigning None/"" removes it.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Optional, Union

from ..config.loader import load_settings
from ..config.models import GitFusionSettings
from ..errors import ConfigurationError, GitCommandError
from .url import GitFusionURL
from .utils import popen

logger = logging.getLogger(__name__)

MIRROR_REMOTE = "mirror"
MIRROR_SCHEME_PREFIX = "mirror://"


def resolve_url(url: Optional[str], settings: Optional[GitFusionSettings] = None) -> str:
    """
    Expand `mirror://<entry id>/<repo>` into the entry's URL for that repo.

    Any other URL is returned unchanged.
    """
    url = url or ""
    if not url.startswith(MIRROR_SCHEME_PREFIX):
        return url

    entry_id, _, repo = url[len(MIRROR_SCHEME_PREFIX):].partition("/")
    repo = repo.strip("/")
    if not entry_id or not repo:
        raise ConfigurationError(f"Invalid mirror URL: {url}")

    entry = (settings or load_settings()).entry(entry_id)
    return entry.url_object.clear_path().with_repo(repo).to_s()


class Repo:
    """Handle on a local bare repository, identified by its real path."""

    def __init__(self, path: Union[str, Path], settings: Optional[GitFusionSettings] = None):
        real = os.path.realpath(path)
        if not os.path.exists(os.path.join(real, "config")):
            raise ConfigurationError(f"Not a valid repo path: {path}")
        self.path = real
        self._settings = settings
        self._mirror_url: Optional[str] = None
        self._mirror_url_loaded = False

    def __repr__(self) -> str:
        return f"Repo({self.path!r})"

    @property
    def mirror_url(self) -> Optional[str]:
        """The mirror remote's URL, or None when the repo isn't mirrored."""
        if not self._mirror_url_loaded:
            output, status = popen(["git", "config", "--get", f"remote.{MIRROR_REMOTE}.url"], self.path)
            output = output.strip()
            self._mirror_url = output if status == 0 and output else None
            self._mirror_url_loaded = True
        return self._mirror_url

    @mirror_url.setter
    def mirror_url(self, url: Union[str, GitFusionURL, None]) -> None:
        """Replace the mirror remote; None or "" removes it."""
        resolved = resolve_url(str(url), self._settings) if url else ""

        self._mirror_url = None
        self._mirror_url_loaded = False
        popen(["git", "remote", "remove", MIRROR_REMOTE], self.path)
        if not resolved:
            logger.debug(f"Removed mirror remote from {self.path}")
            return

        output, status = popen(["git", "remote", "add", MIRROR_REMOTE, resolved], self.path)
        if status != 0 or self.mirror_url != resolved:
            raise GitCommandError(
                f"Failed to add mirror remote {url} to {self.path}, remote is {self.mirror_url}\n{output}",
                status,
            )

    @property
    def mirrored(self) -> bool:
        return bool(self.mirror_url)

    @property
    def mirror_url_object(self) -> GitFusionURL:
        if not self.mirror_url:
            raise ConfigurationError(f"Repo {self.path} has no mirror remote")
        return GitFusionURL(self.mirror_url)

