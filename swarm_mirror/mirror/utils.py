"""
Command execution for mirror operations.

Runs git with stderr folded into stdout so remote progress and error
text arrive as one stream. Output can be watched line-by-line while the
command runs, which the push wait loop relies on to echo gateway output.
"""

from __future__ import annotations

import contextlib
import logging
import os
import subprocess
import threading
from pathlib import Path
from typing import IO, Callable, Dict, List, Optional, Tuple, Union

logger = logging.getLogger(__name__)

LineCallback = Callable[[str], None]


def popen(
    cmd: List[str],
    cwd: Union[str, Path],
    on_line: Optional[LineCallback] = None,
    env: Optional[Dict[str, str]] = None,
    stdin: Optional[str] = None,
) -> Tuple[str, int]:
    """
    Run a command and return (combined output, exit status).

    Args:
        cmd: Command and arguments
        cwd: Working directory
        on_line: Called with each output line (newline included) as it arrives
        env: Extra environment variables layered over os.environ
        stdin: Text written to the command's stdin
    """
    full_env = {**os.environ, **(env or {})}
    logger.debug(f"Running {' '.join(cmd)} in {cwd}")

    proc = subprocess.Popen(
        cmd,
        cwd=str(cwd),
        stdin=subprocess.PIPE if stdin is not None else subprocess.DEVNULL,
        stdout=subprocess.PIPE,
        stderr=subprocess.STDOUT,
        text=True,
        env=full_env,
    )

    # stdin is written from a thread while stdout is drained here
    writer = None
    if stdin is not None:
        writer = threading.Thread(target=_feed, args=(proc.stdin, stdin), daemon=True)
        writer.start()

    output = []
    for line in proc.stdout:
        output.append(line)
        if on_line:
            on_line(line)
    proc.stdout.close()
    status = proc.wait()
    if writer is not None:
        writer.join()

    return "".join(output), status


def _feed(pipe: IO[str], text: str) -> None:
    # the command may exit without reading all of it
    with contextlib.suppress(BrokenPipeError):
        pipe.write(text)
    with contextlib.suppress(BrokenPipeError):
        pipe.close()
