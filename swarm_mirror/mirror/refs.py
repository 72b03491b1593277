"""
Refs — Snapshot branch/tag tips, diff snapshots, and select mirrored refs.

A snapshot is the `sha refname` text from `git show-ref --heads --tags`.
Diffing two snapshots gives `old_sha new_sha refname` lines in the same
shape git feeds to post-receive hooks; a zero sha means "did not exist".

`mirror_refs.active` lists glob patterns of refs that take part in
mirroring. Push and fetch fall back differently when it can't be read:
push keeps every requested ref, fetch fetches `refs/*`.
"""

from __future__ import annotations

import fnmatch
import logging
import os
import re
from pathlib import Path
from typing import Dict, Iterable, List, NamedTuple, Union

from ..errors import GitCommandError, ParseError
from .utils import popen

logger = logging.getLogger(__name__)

ZERO_SHA = "0" * 40
ACTIVE_REFS_FILE = "mirror_refs.active"
FETCH_ALL_REFSPEC = "refs/*:refs/*"

REF_LINE_RE = re.compile(r"^[0-9a-fA-F]{40} \S+$")
QUALIFIED_REF_RE = re.compile(r"^refs/[^/]+/")


class RefChange(NamedTuple):
    old_sha: str
    new_sha: str
    refname: str

    def __str__(self) -> str:
        return f"{self.old_sha} {self.new_sha} {self.refname}"


def show_ref(repo_path: Union[str, Path]) -> str:
    """Snapshot every branch and tag tip; an empty repo gives ""."""
    output, status = popen(["git", "show-ref", "--heads", "--tags"], repo_path)

    # an empty repo (e.g. mid initial import) exits 1 with no output
    if status == 1 and not output.strip():
        return ""
    if status != 0:
        raise GitCommandError(f"git show-ref failed with:\n{output}", status)
    return output.strip()


def _split_ref_line(line: str) -> List[str]:
    if not REF_LINE_RE.match(line):
        raise ParseError(f"invalid ref output:\n{line}")
    return line.strip().split(" ")


def ref_changes(old_refs: str, new_refs: str) -> Dict[str, RefChange]:
    """
    Compute {refname: RefChange} between two snapshots.

    Lines only in the old snapshot are recorded as deletes first, so
    that a ref also present (with a new sha) in the new snapshot is
    upgraded to an edit keeping its old sha.
    """
    old_lines = old_refs.split("\n") if old_refs else []
    new_lines = new_refs.split("\n") if new_refs else []
    old_set = set(old_lines)
    new_set = set(new_lines)
    changes: Dict[str, RefChange] = {}

    for line in old_lines:
        if line in new_set:
            continue
        sha, refname = _split_ref_line(line)
        changes[refname] = RefChange(sha, ZERO_SHA, refname)

    for line in new_lines:
        if line in old_set:
            continue
        sha, refname = _split_ref_line(line)
        if refname in changes:
            changes[refname] = changes[refname]._replace(new_sha=sha)
        else:
            changes[refname] = RefChange(ZERO_SHA, sha, refname)

    return changes


def show_ref_updates(old_refs: str, new_refs: str) -> str:
    """The change set between two snapshots as post-receive style lines."""
    return "\n".join(str(change) for change in ref_changes(old_refs, new_refs).values())


def parse_ref_updates(changes: str) -> List[RefChange]:
    """Parse `old new refname` lines as fed to pre/post-receive hooks."""
    parsed = []
    for line in re.split(r"\r\n|\r|\n", changes):
        if not line.strip():
            continue
        parts = line.strip().split()
        if len(parts) != 3:
            raise ParseError(f"invalid ref update line:\n{line}")
        parsed.append(RefChange(*parts))
    return parsed


def _read_active_patterns(repo_path: Union[str, Path]) -> List[str]:
    with open(os.path.join(repo_path, ACTIVE_REFS_FILE), "r", encoding="utf-8") as f:
        return [line.strip() for line in f]


def _destination_ref(refspec: str) -> str:
    """The destination of `src:dst`, qualified with refs/heads/ if bare."""
    head = refspec.rpartition(":")[2] if ":" in refspec else ""
    if head and not QUALIFIED_REF_RE.match(head):
        head = f"refs/heads/{head}"
    return head


def mirror_push_refs(repo_path: Union[str, Path], refs: Iterable[str]) -> List[str]:
    """
    Keep only refspecs whose destination matches an active pattern.

    If the pattern file can't be read every refspec is kept.
    """
    refs = [ref for ref in refs if ref is not None]
    try:
        patterns = _read_active_patterns(repo_path)
    except (OSError, UnicodeDecodeError):
        return refs
    patterns = [pattern for pattern in patterns if pattern]

    return [
        ref for ref in refs
        if any(fnmatch.fnmatchcase(_destination_ref(ref), pattern) for pattern in patterns)
    ]


def mirror_fetch_refs(repo_path: Union[str, Path]) -> List[str]:
    """
    Refspecs to fetch: each active pattern mapped onto itself.

    If the pattern file can't be read everything is fetched.
    """
    try:
        patterns = _read_active_patterns(repo_path)
    except (OSError, UnicodeDecodeError):
        return [FETCH_ALL_REFSPEC]
    return [f"{pattern}:{pattern}" for pattern in patterns if pattern]
