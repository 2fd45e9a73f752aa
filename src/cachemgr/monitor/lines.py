"""Line counting for growing log files."""

from __future__ import annotations

import asyncio
from pathlib import Path

from cachemgr.core.errors import LineCountError
from cachemgr.core.logging import get_logger

_logger = get_logger("monitor.lines")

_CHUNK_SIZE = 1024 * 1024


def _count_lines_sync(path: Path) -> int:
    count = 0
    last = b"\n"
    with open(path, "rb") as f:
        while chunk := f.read(_CHUNK_SIZE):
            count += chunk.count(b"\n")
            last = chunk[-1:]
    # An unterminated final line is still a line to a line reader
    if last != b"\n":
        count += 1
    return count


async def count_lines(
    path: Path,
    *,
    max_attempts: int = 5,
    base_delay: float = 0.1,
) -> int:
    """Count lines in ``path`` without blocking the event loop.

    The proxy keeps the file open for writing, so transient sharing errors
    are retried with exponential backoff. A missing or unreadable file is not
    retried; the caller owns the backoff for permission problems.

    Raises:
        FileNotFoundError: The file does not exist (rotated away).
        PermissionError: The service may not read the file.
        LineCountError: The file stayed unreadable for every attempt.
    """
    last_error: OSError | None = None
    for attempt in range(max_attempts):
        try:
            return await asyncio.to_thread(_count_lines_sync, path)
        except (FileNotFoundError, PermissionError):
            raise
        except OSError as exc:
            last_error = exc
            if attempt + 1 < max_attempts:
                delay = base_delay * (2 ** attempt)
                _logger.debug(
                    "lines.count_retry",
                    path=str(path),
                    attempt=attempt + 1,
                    delay=delay,
                    error=str(exc),
                )
                await asyncio.sleep(delay)
    raise LineCountError(
        f"Could not count lines in {path} after {max_attempts} attempts: {last_error}"
    ) from last_error
