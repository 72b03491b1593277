"""
Git Fusion URL — Extended git URLs addressing mirror gateway commands.

A plain git URL is extended with an @-syntax path:

    ssh://git@gf.example.com/@wait@myrepo@42@foruser=alice
    git@gf.example.com:@list
    https://gf.example.com/myrepo

The path may carry, in order, a command, a repo and an extra argument,
plus an `@foruser=<name>` token anywhere in the path naming the user the
gateway should enforce permissions for.

scp-style URLs (`user@host:path`) have no scheme; they are tagged
internally with the `scp` pseudo-scheme and keep their original
delimiter so they serialize back the way they were written.

## Usage

    from swarm_mirror.mirror.url import GitFusionURL

    url = GitFusionURL("git@gf:myrepo")
    wait = url.clear_for_user().with_command("wait").with_extra("42")
    str(wait)  # "git@gf:@wait@myrepo@42"
"""

from __future__ import annotations

import copy
import re
from typing import Optional, Union
from urllib.parse import urlsplit

from ..errors import ParseError

VALID_SCHEMES = ("http", "https", "ssh")
VALID_COMMANDS = ("help", "info", "list", "status", "wait")

SCP_SCHEME = "scp"

DEFAULT_PORTS = {"http": 80, "https": 443, "ssh": 22}

_SCHEME_RE = re.compile(r"^(?P<scheme>\w+)://.+$", re.DOTALL)
_SCP_RE = re.compile(r"^(?P<trimmed>(?:[^@]+@)?(?:[^/:]+))(?P<delim>[/:])(?P<path>.*)$", re.DOTALL)
_FOR_USER_RE = re.compile(r"@foruser=([^@]+)")


class GitFusionURL:
    """A git URL extended with Git Fusion command/repo/extra/foruser parts."""

    def __init__(self, url: Optional[str]):
        self._strip_password = True
        self._user: Optional[str] = None
        self._password: Optional[str] = None
        self._scheme: str = SCP_SCHEME
        self._explicit_scp = False
        self._host = ""
        self._port: Optional[int] = None
        self.parse(url)

    # ── Parsing ───────────────────────────────────────────────

    def parse(self, url: Optional[str]) -> None:
        """
        Parse the given URL into base URL, command, repo, extra and for_user.

        Raises ParseError if no URL is given, the scheme is not one of
        http/https/ssh, an scp-style URL lacks a user, or there is no host.
        """
        self._delimiter: Optional[str] = None
        self._command: Optional[str] = None
        self._repo: Optional[str] = None
        self._extra: Optional[str] = None
        self._for_user: Optional[str] = None

        if not url:
            raise ParseError("No URL provided.")

        match = _SCHEME_RE.match(url)
        scheme = match.group("scheme") if match else None
        self._explicit_scp = scheme == SCP_SCHEME
        if scheme is not None and scheme not in VALID_SCHEMES and not self._explicit_scp:
            raise ParseError(f"Invalid URL scheme specified: {scheme}.")

        if scheme is None:
            # scp-style; normalise a ':' path separator to '/' so urlsplit copes
            scp = _SCP_RE.match(url)
            if scp:
                self._delimiter = scp.group("delim")
                url = scp.group("trimmed") + "/" + scp.group("path")
            else:
                self._delimiter = ":"
            url = f"{SCP_SCHEME}://{url}"

        try:
            parsed = urlsplit(url)
            port = parsed.port
        except ValueError as e:
            raise ParseError(f"Invalid URL specified: {url} : {e}.") from e

        userinfo, _, hostport = parsed.netloc.rpartition("@")
        user, has_password, password = userinfo.partition(":")
        host = hostport.rsplit(":", 1)[0] if port is not None else hostport

        if parsed.scheme == SCP_SCHEME and not user:
            raise ParseError("User must be specified if scp syntax is used.")
        if not host:
            raise ParseError(f"Invalid URL specified: {url}.")

        self._scheme = parsed.scheme
        self._host = host
        self._port = port
        self._user = user or None
        self._password = password if has_password else None

        path = parsed.path
        if parsed.query:
            path += "?" + parsed.query
        if path.startswith("/"):
            path = path[1:]
        if path.endswith("/"):
            path = path[:-1]
        if not path:
            return

        # foruser can sit anywhere; pull it before splitting on '@'
        for_users = _FOR_USER_RE.findall(path)
        if for_users:
            self.for_user = for_users[-1]
            path = _FOR_USER_RE.sub("", path)

        if path.startswith("@"):
            segments = path[1:].split("@", 2)
            segments += [""] * (3 - len(segments))
            self.command = segments[0] or None
            self.repo = segments[1] or None
            self.extra = segments[2] or None
            if self._extra and not (self._command and self._repo):
                raise ParseError("Extra requires both command and repo to be specified.")
        elif path:
            self.repo = path

    @classmethod
    def is_valid(cls, url: Optional[str]) -> bool:
        try:
            cls(url)
        except ParseError:
            return False
        return True

    @staticmethod
    def valid_command(command: Optional[str]) -> bool:
        return command in VALID_COMMANDS

    # ── Accessors ─────────────────────────────────────────────

    @property
    def scheme(self) -> str:
        return self._scheme

    @property
    def password(self) -> Optional[str]:
        return self._password

    @property
    def host(self) -> str:
        """Host, with the port appended when it is not the scheme default."""
        if self._port is not None and self._port != DEFAULT_PORTS.get(self._scheme):
            return f"{self._host}:{self._port}"
        return self._host

    @property
    def user(self) -> Optional[str]:
        return self._user

    @property
    def strip_password(self) -> bool:
        return self._strip_password

    @strip_password.setter
    def strip_password(self, strip: bool) -> None:
        self._strip_password = bool(strip)

    @property
    def delimiter(self) -> str:
        return self._delimiter or "/"

    @delimiter.setter
    def delimiter(self, delimiter: Optional[str]) -> None:
        if delimiter not in (None, "/", ":"):
            raise ParseError(f"Invalid delimiter: {delimiter}")
        self._delimiter = delimiter

    @property
    def command(self) -> Optional[str]:
        return self._command

    @command.setter
    def command(self, command: Optional[str]) -> None:
        if command and not self.valid_command(command):
            raise ParseError(f"Unknown command: {command}")
        self._command = command or None

    @property
    def repo(self) -> Optional[str]:
        return self._repo

    @repo.setter
    def repo(self, repo: Union[str, bool, None]) -> None:
        """
        Set the repo.

        A string replaces it, True keeps the parsed repo (failing if there
        is none), anything falsy removes it.
        """
        if isinstance(repo, str):
            self._repo = repo or None
        elif repo:
            if not self._repo:
                raise ParseError("Repo expected but none given.")
        else:
            self._repo = None

    @property
    def extra(self) -> Optional[str]:
        return self._extra

    @extra.setter
    def extra(self, extra: Optional[str]) -> None:
        self._extra = None if extra is None or extra == "" else str(extra)

    @property
    def for_user(self) -> Optional[str]:
        return self._for_user

    @for_user.setter
    def for_user(self, for_user: Optional[str]) -> None:
        self._for_user = for_user or None

    @property
    def pathed(self) -> bool:
        return bool(self._command or self._repo or self._extra or self._for_user)

    # ── Builders (return validated copies) ────────────────────

    def _copy_with(self, **changes) -> "GitFusionURL":
        other = copy.copy(self)
        for name, value in changes.items():
            setattr(other, name, value)
        return other

    def with_command(self, command: Optional[str]) -> "GitFusionURL":
        return self._copy_with(command=command)

    def with_repo(self, repo: Union[str, bool, None]) -> "GitFusionURL":
        return self._copy_with(repo=repo)

    def with_extra(self, extra: Optional[str]) -> "GitFusionURL":
        return self._copy_with(extra=extra)

    def with_for_user(self, for_user: Optional[str]) -> "GitFusionURL":
        return self._copy_with(for_user=for_user)

    def with_strip_password(self, strip: bool) -> "GitFusionURL":
        return self._copy_with(strip_password=strip)

    def clear_command(self) -> "GitFusionURL":
        return self._copy_with(command=None, extra=None)

    def clear_for_user(self) -> "GitFusionURL":
        return self._copy_with(for_user=None)

    def clear_path(self) -> "GitFusionURL":
        return self._copy_with(repo=None, command=None, extra=None, for_user=None)

    # ── Serialization ─────────────────────────────────────────

    def build_url(self) -> str:
        """The base URL: scheme, userinfo and host without any path."""
        if self._scheme == SCP_SCHEME:
            base = f"{self._user}@{self._host}"
            return f"{SCP_SCHEME}://{base}" if self._explicit_scp else base

        userinfo = self._user or ""
        if self._password is not None and not self._strip_password:
            userinfo += ":" + self._password
        return f"{self._scheme}://" + (f"{userinfo}@" if userinfo else "") + self.host

    def to_s(self) -> str:
        if self._extra and (not self._command or not self._repo):
            raise ParseError("Extra requires both command and repo to be specified.")

        parts = [self.build_url()]
        if self.pathed:
            parts.append(self.delimiter)
        if self._command:
            parts.append("@" + self._command)
        if self._command and self._repo:
            parts.append("@")
        if self._repo:
            parts.append(self._repo)
        if self._extra:
            parts.append("@" + self._extra)
        if self._for_user:
            parts.append("@foruser=" + self._for_user)
        return "".join(parts)

    def __str__(self) -> str:
        return self.to_s()

    def _identity(self) -> str:
        """The serialized form, or a field dump when builders left it unserializable."""
        try:
            return self.to_s()
        except ParseError:
            fields = (
                self._scheme, self._user, self._host, self._port,
                self._command, self._repo, self._extra, self._for_user,
            )
            return "<unserializable " + " ".join(str(field) for field in fields) + ">"

    def __repr__(self) -> str:
        return f"GitFusionURL({self.with_strip_password(True)._identity()!r})"

    def __eq__(self, other: object) -> bool:
        if isinstance(other, GitFusionURL):
            return self._identity() == other._identity()
        if isinstance(other, str):
            return self._identity() == other
        return NotImplemented

    def __hash__(self) -> int:
        return hash(self._identity())
