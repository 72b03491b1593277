"""
Lock Server — Hold the write lock across a whole receive-pack.

pre-receive takes the write lock before pushing to the mirror and
post-receive drops it once refs are updated locally. Those hooks are
separate processes, so neither can own the flock for the whole span.
Instead the receive-pack wrapper owns it: it listens on a unix socket,
exports the socket path as WRITE_LOCK_SOCKET and serves one command per
line:

    LOCK    -> take the write lock (blocking) -> LOCKED
    UNLOCK  -> release the write lock          -> UNLOCKED
    other   ->                                 -> UNKNOWN
    (no line for 5 seconds)                    -> TIMEOUT, connection closed

Each connection is served on its own thread. The listener lives exactly
as long as the wrapped git receive-pack process.
"""

from __future__ import annotations

import logging
import os
import shutil
import socket
import socketserver
import subprocess
import tempfile
import threading
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Union

from .locks import NOT_MIRRORED, WRITE_LOCK_SOCKET_ENV, LockCoordinator
from .repo import Repo

logger = logging.getLogger(__name__)

LINE_TIMEOUT = 5
SOCKET_NAME = "write_lock.sock"


class LockRequestHandler(socketserver.StreamRequestHandler):
    """Serves LOCK/UNLOCK lines on one connection."""

    # StreamRequestHandler applies this to the socket in setup()
    timeout = LINE_TIMEOUT

    server: "LockSocketServer"

    def _reply(self, response: str) -> None:
        self.wfile.write(f"{response}\n".encode())
        self.wfile.flush()

    def handle(self) -> None:
        while True:
            try:
                line = self.rfile.readline()
            except socket.timeout:
                logger.debug("Lock socket connection idle, closing")
                try:
                    self._reply("TIMEOUT")
                except OSError:
                    pass
                return

            if not line:
                return

            command = line.decode("utf-8", errors="replace").strip()
            if command == "LOCK":
                self.server.coordinator.write_lock(self.server.repo_path)
                self._reply("LOCKED")
            elif command == "UNLOCK":
                self.server.coordinator.write_unlock(self.server.repo_path)
                self._reply("UNLOCKED")
            else:
                logger.warning(f"Unknown lock socket command: {command!r}")
                self._reply("UNKNOWN")


class LockSocketServer(socketserver.ThreadingMixIn, socketserver.UnixStreamServer):
    """Unix socket listener that takes the write lock on behalf of hooks."""

    daemon_threads = True

    def __init__(
        self,
        repo_path: Union[str, Path],
        coordinator: Optional[LockCoordinator] = None,
        socket_dir: Optional[Union[str, Path]] = None,
    ):
        self.repo_path = os.path.realpath(repo_path)
        self.coordinator = coordinator or LockCoordinator()
        self._own_dir = socket_dir is None
        self.socket_dir = str(socket_dir) if socket_dir else tempfile.mkdtemp(prefix="swarm-lock-")
        self.socket_path = os.path.join(self.socket_dir, SOCKET_NAME)
        self._thread: Optional[threading.Thread] = None
        super().__init__(self.socket_path, LockRequestHandler)

    def start(self) -> "LockSocketServer":
        self._thread = threading.Thread(
            target=self.serve_forever, name="write-lock-socket", daemon=True
        )
        self._thread.start()
        logger.debug(f"Write lock socket listening at {self.socket_path} for {self.repo_path}")
        return self

    def stop(self) -> None:
        """Stop serving, drop any held write lock and remove the socket."""
        if self._thread is not None:
            self.shutdown()
            self._thread.join()
            self._thread = None
        self.server_close()
        self.coordinator.release_all()

        if os.path.exists(self.socket_path):
            os.unlink(self.socket_path)
        if self._own_dir:
            shutil.rmtree(self.socket_dir, ignore_errors=True)
        logger.debug(f"Write lock socket closed for {self.repo_path}")

    def __enter__(self) -> "LockSocketServer":
        return self.start()

    def __exit__(self, *exc_info) -> None:
        self.stop()


def run_receive_pack(
    repo_path: Union[str, Path],
    args: Sequence[str] = (),
    coordinator: Optional[LockCoordinator] = None,
    command: Optional[List[str]] = None,
) -> int:
    """
    Run git receive-pack with a write lock socket available to its hooks.

    WRITE_LOCK_SOCKET is set to the socket path, or to NOT_MIRRORED when
    the repo has no mirror. Returns receive-pack's exit status.
    """
    repo = Repo(repo_path)
    env: Dict[str, str] = dict(os.environ)
    cmd = command or ["git", "receive-pack", *args, repo.path]

    server: Optional[LockSocketServer] = None
    if repo.mirrored:
        server = LockSocketServer(repo.path, coordinator).start()
        env[WRITE_LOCK_SOCKET_ENV] = server.socket_path
    else:
        env[WRITE_LOCK_SOCKET_ENV] = NOT_MIRRORED

    try:
        status = subprocess.run(cmd, env=env).returncode
    finally:
        if server is not None:
            server.stop()

    logger.debug(f"receive-pack for {repo.path} exited with {status}")
    return status
