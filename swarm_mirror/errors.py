"""
Errors — Exception taxonomy for mirror operations.

## Hierarchy

    MirrorError
    ├── ConfigurationError     missing/invalid endpoint config or lock socket setup
    ├── ParseError             malformed endpoint URL or ref listing output
    ├── RemoteOperationError   push/fetch/wait against the mirror failed
    │   ├── GitCommandError    a local git command exited badly
    │   └── GitFusionRunError  a clone-as-RPC call failed
    └── LockProtocolError      unexpected or missing reply on the lock socket

Push failures propagate. Fetch failures are recorded on disk and reported
as a boolean unless the raising variant is used.
"""

from __future__ import annotations

from typing import Optional


class MirrorError(Exception):
    """Base class for all mirror errors."""
    pass


class ConfigurationError(MirrorError):
    """Raised when configuration is missing or invalid."""
    pass


class ParseError(MirrorError):
    """Raised when a URL or git output cannot be parsed."""
    pass


class RemoteOperationError(MirrorError):
    """Raised when a remote mirror operation fails.

    The message carries the captured command output so it can be shown
    to the client or persisted as-is.
    """

    def __init__(self, message: str, status: Optional[int] = None):
        self.message = message
        self.status = status
        super().__init__(message)


class GitCommandError(RemoteOperationError):
    """Raised when a local git command fails."""
    pass


class GitFusionRunError(RemoteOperationError):
    """Raised when a Git Fusion command issued via clone fails."""
    pass


class LockProtocolError(MirrorError):
    """Raised when the lock socket replies with something unexpected."""
    pass
