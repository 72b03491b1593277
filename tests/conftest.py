"""
Shared fixtures for mirror tests.

Repos are real bare git repositories created in tmp_path; anything that
would talk to a Git Fusion server is mocked. Tests needing the git
binary are skipped when it is missing.
"""

from __future__ import annotations

import shutil
import subprocess
from pathlib import Path

import pytest

from swarm_mirror.config.models import GitFusionSettings

MIRROR_URL = "https://gf.example.com/project"

requires_git = pytest.mark.skipif(shutil.which("git") is None, reason="git not installed")


def make_bare_repo(path: Path, mirror_url: str | None = None) -> Path:
    """Create a bare repo at `path`, optionally with a mirror remote."""
    subprocess.run(["git", "init", "--quiet", "--bare", str(path)], check=True)
    if mirror_url:
        subprocess.run(["git", "remote", "add", "mirror", mirror_url], cwd=path, check=True)
    return path


def git_output(repo: Path, *args: str) -> str:
    result = subprocess.run(["git", *args], cwd=repo, capture_output=True, text=True)
    return result.stdout.strip()


@pytest.fixture
def settings() -> GitFusionSettings:
    """A git_fusion block with one entry for gf.example.com."""
    return GitFusionSettings({
        "enabled": True,
        "global": {
            "user": "gf-admin",
            "label": "Global label",
        },
        "default": {
            "url": "https://gf.example.com",
            "git_config_params": ["http.sslVerify=false"],
        },
        "secure": {
            "url": "ssh://git@gf-secure.example.com",
            "enforce_permissions": True,
            "label": "Secure",
        },
    })


@pytest.fixture
def bare_repo(tmp_path: Path) -> Path:
    """An unmirrored bare repo."""
    if shutil.which("git") is None:
        pytest.skip("git not installed")
    return make_bare_repo(tmp_path / "plain.git")


@pytest.fixture
def mirrored_repo(tmp_path: Path) -> Path:
    """A bare repo whose mirror remote points at the default entry."""
    if shutil.which("git") is None:
        pytest.skip("git not installed")
    return make_bare_repo(tmp_path / "mirrored.git", MIRROR_URL)


@pytest.fixture
def app(tmp_path: Path, settings: GitFusionSettings):
    """Flask test app serving repos under tmp_path."""
    pytest.importorskip("flask")
    from swarm_mirror.admin.server import create_app

    app = create_app(settings=settings, repos_root=str(tmp_path))
    app.config["TESTING"] = True
    return app


@pytest.fixture
def client(app):
    """Flask test client."""
    return app.test_client()
