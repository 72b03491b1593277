"""
Fetch Worker — Background pass keeping idle mirrored repos fresh.

Reads fetch before serving, but a repo nobody reads drifts behind its
mirror. The worker walks a directory of bare repos and fetches every
mirrored one whose last fetch is older than `fetch_worker.min_outdated`
seconds, at most `fetch_worker.max_fetch_slots` at a time. Fetches skip
repos with a push in progress; the next pass picks them up.

## Usage

    from swarm_mirror.mirror.fetch_worker import FetchWorker

    results = FetchWorker().run_once("/var/opt/repositories")
    # {"/var/opt/repositories/group/project.git": True, ...}
"""

from __future__ import annotations

import logging
import os
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional, Union

from ..config.loader import load_settings
from ..config.models import GitFusionSettings
from ..errors import MirrorError
from .fetch import MirrorFetch
from .repo import Repo

logger = logging.getLogger(__name__)


def find_repos(root: Union[str, Path]) -> List[str]:
    """Bare repos (`*.git` dirs with a config file) under root, sorted."""
    found = []
    for dirpath, dirnames, _filenames in os.walk(root):
        if dirpath.endswith(".git") and os.path.isfile(os.path.join(dirpath, "config")):
            found.append(os.path.realpath(dirpath))
            # objects/, refs/ etc. never hold repos
            dirnames[:] = []
    return sorted(found)


class FetchWorker:
    """Fetches outdated mirrored repos with a bounded number of slots."""

    def __init__(
        self,
        settings: Optional[GitFusionSettings] = None,
        fetcher: Optional[MirrorFetch] = None,
    ):
        self.settings = settings or load_settings()
        self.fetcher = fetcher or MirrorFetch(settings=self.settings)

    def outdated(self, repo_path: Union[str, Path], now: Optional[float] = None) -> bool:
        """Whether a mirrored repo is due a fetch; never-fetched repos are."""
        if not Repo(repo_path, self.settings).mirrored:
            return False

        last = self.fetcher.last_fetched(repo_path)
        if not isinstance(last, datetime):
            return True
        age = (now if now is not None else time.time()) - last.timestamp()
        return age >= self.settings.fetch_worker.min_outdated

    def outdated_repos(self, root: Union[str, Path]) -> List[str]:
        due = []
        for repo_path in find_repos(root):
            try:
                if self.outdated(repo_path):
                    due.append(repo_path)
            except MirrorError as e:
                logger.warning(f"Skipping {repo_path}: {e}")
        return due

    def _fetch(self, repo_path: str) -> bool:
        try:
            return self.fetcher.fetch(repo_path, skip_if_pushing=True)
        except MirrorError as e:
            logger.error(f"Background fetch failed for {repo_path}: {e}")
            return False

    def run_once(self, root: Union[str, Path]) -> Dict[str, bool]:
        """Fetch every outdated repo under root; returns {repo_path: success}."""
        due = self.outdated_repos(root)
        if not due:
            logger.debug(f"No outdated mirrored repos under {root}")
            return {}

        slots = self.settings.fetch_worker.max_fetch_slots
        logger.info(f"Fetching {len(due)} outdated repo(s) under {root} with {slots} slot(s)")

        results: Dict[str, bool] = {}
        with ThreadPoolExecutor(max_workers=slots, thread_name_prefix="mirror-fetch") as pool:
            futures = {pool.submit(self._fetch, repo_path): repo_path for repo_path in due}
            for future in as_completed(futures):
                results[futures[future]] = future.result()
        return dict(sorted(results.items()))
