"""Key-value substrate: contract, key schema and implementations."""

from recallkv.config import StorageConfig
from recallkv.exceptions import ValidationError
from recallkv.storage.base import KVPipeline, KVStore
from recallkv.storage.keys import ConsolidationKeys, StorageKeys, WorkflowKeys
from recallkv.storage.memory_kv import MemoryKV


def create_kv_store(config: StorageConfig | None = None) -> KVStore:
    cfg = config or StorageConfig()
    backend = (cfg.backend or "memory").strip().lower()
    if backend in {"memory", "inmemory", "local"}:
        return MemoryKV()
    if backend in {"redis", "valkey"}:
        from recallkv.storage.redis_kv import RedisKV

        return RedisKV(url=cfg.url, socket_timeout=cfg.socket_timeout)
    raise ValidationError(f"Unsupported storage backend: {cfg.backend}", field="backend")


__all__ = [
    "ConsolidationKeys",
    "KVPipeline",
    "KVStore",
    "MemoryKV",
    "StorageKeys",
    "WorkflowKeys",
    "create_kv_store",
]
