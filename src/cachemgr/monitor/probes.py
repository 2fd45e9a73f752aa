"""Busy probes used for cooperative exclusion between background services.

There is no shared lock manager between the live monitor and the services
that touch the same files. Each service instead publishes a momentary busy
flag, and the monitor reads those flags before it triggers a pass. A probe
reading is only a snapshot; the monitor re-checks on every tick.
"""

from __future__ import annotations

import threading
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Protocol, runtime_checkable


@runtime_checkable
class BusyProbe(Protocol):
    @property
    def is_busy(self) -> bool: ...

    @property
    def busy_detail(self) -> str | None: ...


class ActivityFlag:
    """A named busy flag a service raises while it works.

    Thread-safe so a status endpoint on another thread can read it.
    """

    def __init__(self, name: str) -> None:
        self.name = name
        self._lock = threading.Lock()
        self._busy = False
        self._detail: str | None = None

    @property
    def is_busy(self) -> bool:
        with self._lock:
            return self._busy

    @property
    def busy_detail(self) -> str | None:
        with self._lock:
            if not self._busy:
                return None
            return f"{self.name}: {self._detail}" if self._detail else self.name

    def set_busy(self, detail: str | None = None) -> None:
        with self._lock:
            self._busy = True
            self._detail = detail

    def clear(self) -> None:
        with self._lock:
            self._busy = False
            self._detail = None

    @contextmanager
    def active(self, detail: str | None = None) -> Iterator[None]:
        self.set_busy(detail)
        try:
            yield
        finally:
            self.clear()


def first_busy(probes: list[BusyProbe]) -> BusyProbe | None:
    """Return the first probe currently reporting busy, if any."""
    for probe in probes:
        if probe.is_busy:
            return probe
    return None
