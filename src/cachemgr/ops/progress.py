"""Reader for worker progress files.

Workers rewrite their progress file at their own cadence and may be between
writes, mid-write, or already gone when it is read. A file that is missing or
cannot be parsed is "no new information", never an error.
"""

from __future__ import annotations

from pathlib import Path

from pydantic import ValidationError

from cachemgr.core.logging import get_logger
from cachemgr.ops.models import ProgressRecord

_logger = get_logger("ops.progress")


def read_progress(path: Path) -> ProgressRecord | None:
    """Parse the progress file at ``path``.

    Returns:
        The parsed record, or None when the file is absent, empty,
        truncated, not a JSON object, or fails validation.
    """
    try:
        raw = path.read_bytes()
    except FileNotFoundError:
        return None
    except OSError as exc:
        _logger.debug("progress.read_failed", path=str(path), error=str(exc))
        return None

    if not raw.strip():
        return None

    try:
        return ProgressRecord.model_validate_json(raw)
    except ValidationError as exc:
        # json_invalid here usually means the worker is mid-write
        _logger.debug(
            "progress.unparseable",
            path=str(path),
            size=len(raw),
            error_type=exc.errors()[0]["type"],
            errors=exc.error_count(),
        )
        return None


def delete_progress_file(path: Path) -> None:
    """Remove a transient progress file, logging rather than raising on failure."""
    try:
        path.unlink(missing_ok=True)
    except OSError as exc:
        _logger.warning("progress.delete_failed", path=str(path), error=str(exc))
