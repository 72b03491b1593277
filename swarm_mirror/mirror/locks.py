"""
Locks — Advisory file locks guarding mirror pushes, fetches and re-enables.

Each mirrored repository has three lock files:

- mirror_push.lock:     held exclusively for a push to the mirror; fetches
                        hold it shared so they never see a half-mirrored push
- mirror_fetch.lock:    held exclusively by the one process actually fetching
- mirror_reenable.lock: held while mirroring is being re-provisioned

The files themselves are permanent; only their flock state changes.

A push made by receive-pack has to stay locked from pre-receive until
post-receive, which are separate processes. In that mode the lock is
held by the receive-pack wrapper (see lock_server) and hooks ask it to
LOCK/UNLOCK over the unix socket named in WRITE_LOCK_SOCKET.
"""

from __future__ import annotations

import contextlib
import fcntl
import logging
import os
import socket
import threading
from pathlib import Path
from typing import IO, Dict, Iterator, Optional, Tuple, Union

from ..errors import ConfigurationError, LockProtocolError
from .repo import Repo

logger = logging.getLogger(__name__)

PUSH_LOCK_FILE = "mirror_push.lock"
FETCH_LOCK_FILE = "mirror_fetch.lock"
REENABLE_LOCK_FILE = "mirror_reenable.lock"
FETCH_ERROR_FILE = "mirror_fetch.error"
REENABLE_ERROR_FILE = "mirror_reenable.error"
LAST_FETCH_FILE = "mirror_fetch.last"

WRITE_LOCK_SOCKET_ENV = "WRITE_LOCK_SOCKET"

# WRITE_LOCK_SOCKET value when the repo isn't mirrored so no socket exists
NOT_MIRRORED = "__NOT_MIRRORED__"

PathLike = Union[str, Path]


def open_lock_file(path: PathLike) -> IO[str]:
    """Open (creating if needed) a lock file without truncating it."""
    fd = os.open(str(path), os.O_RDWR | os.O_CREAT, 0o644)
    return os.fdopen(fd, "r+")


def try_flock(handle: IO[str], operation: int) -> bool:
    """Attempt a non-blocking flock; False if someone else holds it."""
    try:
        fcntl.flock(handle.fileno(), operation | fcntl.LOCK_NB)
    except BlockingIOError:
        return False
    return True


def release(handle: IO[str]) -> None:
    """Unlock and close a lock file handle."""
    try:
        fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
    finally:
        handle.close()


def lock_socket(command: str, socket_path: Optional[str] = None) -> str:
    """
    Send LOCK or UNLOCK to the receive-pack wrapper and await `<COMMAND>ED`.

    Only usable on mirrored repos during a push via receive-pack.
    """
    command = command.strip()
    socket_path = socket_path or os.environ.get(WRITE_LOCK_SOCKET_ENV)
    if not socket_path or socket_path == NOT_MIRRORED:
        raise ConfigurationError(f"{WRITE_LOCK_SOCKET_ENV} does not name a lock socket: {socket_path}")

    try:
        with socket.socket(socket.AF_UNIX, socket.SOCK_STREAM) as sock:
            sock.connect(socket_path)
            sock.sendall(f"{command}\n".encode())
            with sock.makefile("r", encoding="utf-8") as reader:
                response = reader.readline().strip()
    except OSError as e:
        raise LockProtocolError(f"Lock socket {socket_path} failed for {command}: {e}") from e

    if response != f"{command}ED":
        raise LockProtocolError(f"Expected {command}ED confirmation but received: {response}")
    return response


class LockCoordinator:
    """
    Owns the open write-lock handles for this process.

    Handles are kept in a registry keyed by the lock file's real path so
    a later write_unlock (possibly from another thread, as in the lock
    server) releases the same descriptor write_lock acquired.
    """

    def __init__(self, socket_path: Optional[str] = None):
        self.socket_path = socket_path
        self._handles: Dict[str, IO[str]] = {}
        self._registry_lock = threading.Lock()

    @staticmethod
    def _push_lock_path(repo_path: PathLike) -> str:
        return os.path.join(os.path.realpath(repo_path), PUSH_LOCK_FILE)

    def write_lock(self, repo_path: PathLike, use_socket: bool = False) -> bool:
        """Take the exclusive write lock, blocking until it is free."""
        if use_socket:
            lock_socket("LOCK", self.socket_path)
            return True

        logger.debug(f"Write Locking repo: {repo_path}")
        lock_file = self._push_lock_path(repo_path)
        if self.holds_write_lock(repo_path):
            return True

        handle = open_lock_file(lock_file)
        try:
            fcntl.flock(handle.fileno(), fcntl.LOCK_EX)
        except BaseException:
            handle.close()
            raise

        # registered only once held
        with self._registry_lock:
            self._handles[lock_file] = handle
        return True

    def write_unlock(self, repo_path: PathLike, use_socket: bool = False) -> bool:
        """Release the write lock; unlocking an unlocked repo is a no-op."""
        if use_socket:
            lock_socket("UNLOCK", self.socket_path)
            return True

        try:
            lock_file = self._push_lock_path(repo_path)
            with self._registry_lock:
                handle = self._handles.pop(lock_file, None)
            if handle is None:
                logger.debug(f"Attempted to Write Unlock already unlocked repo: {repo_path}")
                return True
            logger.debug(f"Write Unlocking repo: {repo_path}")
            release(handle)
            return True
        except OSError as e:
            logger.warning(f"Write Unlock failed for {repo_path}: {e}")
            return False

    def holds_write_lock(self, repo_path: PathLike) -> bool:
        with self._registry_lock:
            return self._push_lock_path(repo_path) in self._handles

    def release_all(self) -> None:
        """Release every write lock this coordinator holds."""
        with self._registry_lock:
            handles = list(self._handles.items())
            self._handles.clear()
        for lock_file, handle in handles:
            logger.debug(f"Releasing write lock {lock_file}")
            try:
                release(handle)
            except OSError as e:
                logger.warning(f"Failed to release {lock_file}: {e}")

    # ── Probes ────────────────────────────────────────────────

    @staticmethod
    def locked(repo_path: PathLike, lock_path: PathLike) -> bool:
        """
        True if someone currently holds `lock_path` exclusively.

        Probes with a non-blocking shared lock that is released straight
        away. Unmirrored repos are never locked.
        """
        if not Repo(repo_path).mirrored:
            return False

        handle = open_lock_file(lock_path)
        try:
            return not try_flock(handle, fcntl.LOCK_SH)
        finally:
            release(handle)

    def write_locked(self, repo_path: PathLike) -> bool:
        return self.locked(repo_path, os.path.join(repo_path, PUSH_LOCK_FILE))

    def fetch_locked(self, repo_path: PathLike) -> bool:
        return self.locked(repo_path, os.path.join(repo_path, FETCH_LOCK_FILE))

    def reenabling(self, repo_path: PathLike) -> bool:
        """Whether mirroring on the repo is currently being re-enabled."""
        return self.locked(repo_path, os.path.join(repo_path, REENABLE_LOCK_FILE))

    # ── Re-enable ─────────────────────────────────────────────

    @staticmethod
    @contextlib.contextmanager
    def with_reenable_lock(repo_path: PathLike) -> Iterator[Optional[Tuple[str, str]]]:
        """
        Hold the re-enable lock for the duration of the block.

        Yields (reenable error file, fetch error file) when the lock was
        acquired, or None when another process is already re-enabling.
        """
        handle = open_lock_file(os.path.join(repo_path, REENABLE_LOCK_FILE))
        try:
            if not try_flock(handle, fcntl.LOCK_EX):
                yield None
                return
            yield (
                os.path.join(repo_path, REENABLE_ERROR_FILE),
                os.path.join(repo_path, FETCH_ERROR_FILE),
            )
        finally:
            release(handle)

    def reenable_error(self, repo_path: PathLike) -> Union[str, bool]:
        """The last re-enable error, or False if none or one is in progress."""
        if self.reenabling(repo_path):
            return False
        try:
            with open(os.path.join(repo_path, REENABLE_ERROR_FILE), "r", encoding="utf-8") as f:
                error = f.read()
        except OSError:
            return False
        return error or False
