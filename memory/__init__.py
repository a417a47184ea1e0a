"""Key-value store abstractions and implementations."""

from memory.store import KeyValueStore, SQLiteKeyValueStore

__all__ = ["KeyValueStore", "SQLiteKeyValueStore"]
