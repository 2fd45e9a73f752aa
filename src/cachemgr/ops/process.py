"""Worker subprocess spawning and process-tree termination.

Workers are started with ``start_new_session=True`` so each one leads its own
process group; killing the group (plus any descendants psutil can still see)
takes down helpers a worker may have forked.

Security Note: uses asyncio.create_subprocess_exec(), arguments are passed as
a list and never interpolated into a shell command.
"""

from __future__ import annotations

import asyncio
import os
import signal
from collections.abc import Sequence
from pathlib import Path

import psutil

from cachemgr.core.logging import get_logger

_logger = get_logger("ops.process")

# Exit status a shell reports for a SIGKILLed child (128 + 9)
SIGKILL_EXIT_CODE = 137


def is_sigkill_exit(returncode: int | None) -> bool:
    """True for both shell-style (137) and asyncio-style (-9) SIGKILL exits."""
    return returncode in (SIGKILL_EXIT_CODE, -signal.SIGKILL)


async def spawn_worker(
    binary: Path,
    args: Sequence[str],
    *,
    cwd: Path | None = None,
) -> asyncio.subprocess.Process:
    """Start a worker in its own session with stdout/stderr captured."""
    cmd = [str(binary), *args]
    _logger.debug(
        "process.starting",
        command=cmd[0],
        args_count=len(args),
        cwd=str(cwd) if cwd else None,
    )
    process = await asyncio.create_subprocess_exec(
        *cmd,
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        cwd=cwd,
        env=os.environ.copy(),
        start_new_session=True,
    )
    _logger.info("process.started", command=cmd[0], pid=process.pid)
    return process


def kill_process_tree(process: asyncio.subprocess.Process) -> bool:
    """SIGKILL a worker, its process group, and every descendant.

    Synchronous and non-blocking; the caller reaps the process via
    ``process.wait()``/``communicate()``.

    Returns:
        True if a kill was delivered, False if the process had already exited.
    """
    if process.returncode is not None:
        return False
    pid = process.pid

    descendants: list[psutil.Process] = []
    try:
        descendants = psutil.Process(pid).children(recursive=True)
    except (psutil.NoSuchProcess, psutil.AccessDenied):
        pass

    try:
        os.killpg(os.getpgid(pid), signal.SIGKILL)
    except (ProcessLookupError, PermissionError):
        pass  # Group may already be gone

    for child in descendants:
        try:
            child.kill()
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            continue

    try:
        process.kill()
    except ProcessLookupError:
        pass

    _logger.warning("process.killed_tree", pid=pid, descendants=len(descendants))
    return True


def decode_output(data: bytes | None) -> str:
    return (data or b"").decode("utf-8", errors="replace")
