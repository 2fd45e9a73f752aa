"""In-process notifier for operation progress and completion events."""

from cachemgr.notify.bus import Notifier
from cachemgr.notify.events import CompletionEvent, ProgressEvent

__all__ = ["CompletionEvent", "Notifier", "ProgressEvent"]
