# brain module
from .persistence import FileKeyValueStore, KeyValueStore, MemoryKeyValueStore

__all__ = ["FileKeyValueStore", "KeyValueStore", "MemoryKeyValueStore"]
