"""Key-value persistence used by sessions, API keys, tenants and audit."""

from smcp_gateway.storage.kv import KeyValueStore, MemoryKeyValueStore, bounded

__all__ = ["KeyValueStore", "MemoryKeyValueStore", "bounded"]
