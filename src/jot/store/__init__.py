"""Persistent state: typed keys, key-value backends, and state accessors."""

from .keys import RegistryKey, StoreKey
from .kv import KeyValueStore, MemoryStore, SqliteStore
from .state import SessionStateStore

__all__ = [
    "KeyValueStore",
    "MemoryStore",
    "RegistryKey",
    "SessionStateStore",
    "SqliteStore",
    "StoreKey",
]
