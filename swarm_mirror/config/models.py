"""
Config Models — Pydantic schemas for the git_fusion configuration block.

    git_fusion:
      enabled: true
      askpass: /opt/swarm/bin/git-provide-password
      global:
        user: gitswarm
        password: secret
      default:
        url: git@gf.example.com
        enforce_permissions: true
        git_config_params: ["http.sslVerify=false"]
        label: Main Git Fusion
      fetch_worker:
        min_outdated: 600

Each named block is one Git Fusion endpoint. Values missing from a block
are taken from `global`, except `label` which is never inherited.
`fetch_worker` is not an endpoint; its keys default to min_outdated 300
and max_fetch_slots 2.
"""

from __future__ import annotations

from typing import Any, Dict, Iterator, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from ..errors import ConfigurationError, ParseError
from ..mirror.url import GitFusionURL

GLOBAL_KEY = "global"
FETCH_WORKER_KEY = "fetch_worker"

# Blocks that are settings, not endpoints
RESERVED_KEYS = (GLOBAL_KEY, FETCH_WORKER_KEY)
NON_INHERITED = ("label",)


class GitFusionEntry(BaseModel):
    """One resolved Git Fusion endpoint."""

    model_config = ConfigDict(extra="allow")

    id: str
    url: str
    user: Optional[str] = None
    password: Optional[str] = None
    enforce_permissions: bool = False
    git_config_params: List[str] = Field(default_factory=list)
    label: Optional[str] = None

    @property
    def url_object(self) -> GitFusionURL:
        return GitFusionURL(self.url)


class FetchWorkerSettings(BaseModel):
    """Pacing for the background fetch pass."""

    model_config = ConfigDict(extra="allow")

    # seconds since the last fetch before a repo is fetched again
    min_outdated: int = Field(default=300, ge=0)
    # repos fetched concurrently
    max_fetch_slots: int = Field(default=2, ge=1)


class GitFusionSettings:
    """The raw `git_fusion` block plus entry resolution."""

    def __init__(self, raw: Any = None):
        self._raw: Dict[str, Any] = raw if isinstance(raw, dict) else {}

    @property
    def enabled(self) -> bool:
        return bool(self._raw.get("enabled", False))

    @property
    def askpass(self) -> Optional[str]:
        return self._raw.get("askpass")

    @property
    def fetch_worker(self) -> FetchWorkerSettings:
        """The `fetch_worker` block merged over its defaults."""
        value = self._raw.get(FETCH_WORKER_KEY)
        try:
            return FetchWorkerSettings(**(value if isinstance(value, dict) else {}))
        except ValidationError as e:
            raise ConfigurationError(f"Invalid fetch_worker settings: {e}") from e

    def _global(self) -> Dict[str, Any]:
        value = self._raw.get(GLOBAL_KEY)
        return value if isinstance(value, dict) else {}

    def entry_ids(self) -> List[str]:
        """Ids of all blocks that look like endpoints, in file order."""
        return [
            str(key) for key, value in self._raw.items()
            if key not in RESERVED_KEYS and isinstance(value, dict)
        ]

    def entry(self, entry_id: Optional[str] = None) -> GitFusionEntry:
        """
        Resolve an entry by id, merged over the global block.

        With no id the `default` block is used, or failing that the
        first block. Raises ConfigurationError if nothing usable exists.
        """
        ids = self.entry_ids()
        if entry_id is None:
            if not ids:
                raise ConfigurationError("No Git Fusion configuration found.")
            entry_id = "default" if "default" in ids else ids[0]

        if entry_id in RESERVED_KEYS or entry_id not in ids:
            raise ConfigurationError(f"Git Fusion config entry '{entry_id}' not found.")

        merged = {k: v for k, v in self._global().items() if k not in NON_INHERITED}
        merged.update(self._raw[entry_id])
        merged.pop("id", None)
        if not self._raw[entry_id].get("url"):
            raise ConfigurationError(f"Git Fusion config entry '{entry_id}' is missing a url.")

        try:
            return GitFusionEntry(id=entry_id, **merged)
        except ValidationError as e:
            raise ConfigurationError(f"Invalid Git Fusion config entry '{entry_id}': {e}") from e

    def entries(self) -> Iterator[Tuple[str, GitFusionEntry]]:
        """Yield every valid entry; invalid blocks are skipped."""
        for entry_id in self.entry_ids():
            try:
                yield entry_id, self.entry(entry_id)
            except ConfigurationError:
                continue

    def entry_by_url(self, url: str) -> GitFusionEntry:
        """Find the entry whose URL points at the same host as `url`."""
        try:
            host = GitFusionURL(url).host
        except ParseError as e:
            raise ConfigurationError(f"Cannot match config entry for invalid URL: {e}") from e

        for _entry_id, entry in self.entries():
            try:
                if entry.url_object.host == host:
                    return entry
            except ParseError:
                continue
        raise ConfigurationError(f"No Git Fusion config entry found for host {host}.")
