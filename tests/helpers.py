"""Shared test helpers: fake worker script bodies and small waiters."""

from __future__ import annotations

import asyncio
from collections.abc import Callable

SUCCESS_CLEANER = """
printf '{"isProcessing": true, "percentComplete": 50.0, "directoriesProcessed": 1, "totalDirectories": 2}' > "$2"
sleep 0.3
printf '{"isProcessing": false, "percentComplete": 100.0, "status": "completed", "directoriesProcessed": 2, "totalDirectories": 2, "bytesDeleted": 2048, "filesDeleted": 4}' > "$2"
exit 0
"""

FAILING_CLEANER = """
echo "permission denied on /cache/00" >&2
exit 3
"""

SLOW_CLEANER = """
printf '{"percentComplete": 10.0, "directoriesProcessed": 1, "totalDirectories": 256}' > "$2"
sleep 30
"""

SUCCESS_INGESTER = """
printf '{"total_lines": 3, "lines_parsed": 3, "entries_saved": 2, "percent_complete": 100.0, "status": "completed"}' > "$2"
exit 0
"""

FAILING_INGESTER = """
echo "database is locked" >&2
exit 1
"""

KILLED_CLEANER = """
echo "Killed" >&2
exit 137
"""

# Holds until the test drops a release marker into the cache directory
RELEASED_KILLED_CLEANER = """
while [ ! -f "$1/.release" ]; do sleep 0.05; done
exit 137
"""


async def wait_until(predicate: Callable[[], bool], timeout: float = 5.0) -> None:
    """Poll ``predicate`` until it holds, failing the test on timeout."""
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(0.02)
