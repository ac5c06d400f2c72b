"""Memory entity store."""

from recallkv.memory.store import MemoryStore, decode_memory, parse_embedding

__all__ = ["MemoryStore", "decode_memory", "parse_embedding"]
