"""Durable state stores."""

from cachemgr.state.base import StateStore
from cachemgr.state.memory import InMemoryStateStore
from cachemgr.state.sqlite import SQLiteStateStore

__all__ = ["InMemoryStateStore", "SQLiteStateStore", "StateStore"]
