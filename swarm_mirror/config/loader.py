"""
Config Loader — Load the git_fusion block from the YAML config file.

The file path comes from SWARM_MIRROR_CONFIG (default: config.yml in the
working directory). A missing file yields empty, disabled settings; an
unreadable or malformed one is a ConfigurationError.

## Usage

    from swarm_mirror.config.loader import load_settings

    settings = load_settings()
    entry = settings.entry_by_url(repo.mirror_url)
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional, Union

import yaml

from ..errors import ConfigurationError
from .models import GitFusionSettings

logger = logging.getLogger(__name__)

CONFIG_ENV_VAR = "SWARM_MIRROR_CONFIG"
DEFAULT_CONFIG_FILE = "config.yml"


def config_path() -> Path:
    """Resolve the config file location from the environment."""
    return Path(os.environ.get(CONFIG_ENV_VAR) or DEFAULT_CONFIG_FILE)


def load_yaml(path: Path) -> Dict[str, Any]:
    """Load a YAML file and return its contents."""
    try:
        with path.open("r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML in {path}: {e}") from e
    except OSError as e:
        raise ConfigurationError(f"Cannot read config file {path}: {e}") from e
    return data if isinstance(data, dict) else {}


def load_settings(path: Optional[Union[str, Path]] = None) -> GitFusionSettings:
    """Load the git_fusion settings block."""
    path = Path(path) if path else config_path()

    if not path.exists():
        logger.debug(f"No config file at {path}, mirroring settings are empty")
        return GitFusionSettings({})

    data = load_yaml(path)
    return GitFusionSettings(data.get("git_fusion"))
