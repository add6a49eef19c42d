"""Processed-feedback state and its storage backends."""

from .base import PersistedState, StateBackend
from .json_file import JsonFileStateBackend
from .sqlite_store import SQLiteStateBackend
from .state_store import StateStats, StateStore

__all__ = [
    "JsonFileStateBackend",
    "PersistedState",
    "SQLiteStateBackend",
    "StateBackend",
    "StateStats",
    "StateStore",
]
