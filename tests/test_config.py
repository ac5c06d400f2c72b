from __future__ import annotations

import asyncio
import logging

from recallkv.config import Config, workspace_id_for_path
from recallkv.core import MemoryCore
from recallkv.embeddings import HashEmbedder
from recallkv.logging_config import setup_logging
from recallkv.storage import MemoryKV


def test_env_overrides(monkeypatch, tmp_path):
    monkeypatch.setenv("RECALLKV_WORKSPACE", "from-env")
    monkeypatch.setenv("RECALLKV_STORAGE", "redis")
    monkeypatch.setenv("RECALLKV_REDIS_URL", "redis://cache:6380/2")
    monkeypatch.setenv("RECALLKV_WORKSPACE_MODE", "hybrid")
    monkeypatch.setenv("RECALLKV_EMBED_PROVIDER", "hash")
    cfg = Config()
    assert cfg.workspace_id == "from-env"
    assert cfg.workspace_mode == "hybrid"
    assert cfg.storage.backend == "redis"
    assert cfg.storage.url == "redis://cache:6380/2"
    assert cfg.embedding.provider == "hash"


def test_defaults(monkeypatch, tmp_path):
    for var in ("RECALLKV_WORKSPACE", "RECALLKV_STORAGE", "RECALLKV_EMBED_PROVIDER", "RECALLKV_WORKSPACE_MODE"):
        monkeypatch.delenv(var, raising=False)
    monkeypatch.chdir(tmp_path)
    cfg = Config()
    assert cfg.workspace_id == workspace_id_for_path(tmp_path)
    assert cfg.workspace_mode == "isolated"
    assert cfg.storage.backend == "memory"
    assert cfg.consolidation.similarity_threshold == 0.85
    assert cfg.consolidation.cooldown_hours == 0.0
    assert cfg.graph.graph_max_nodes_limit == 100


def test_workspace_id_is_stable(tmp_path):
    a = workspace_id_for_path(tmp_path)
    assert a == workspace_id_for_path(str(tmp_path))
    assert len(a) == 12
    assert a != workspace_id_for_path(tmp_path / "other")


def test_setup_logging_applies_level(monkeypatch):
    monkeypatch.setattr(logging.root, "handlers", [])
    cfg = Config(log_level="debug")
    setup_logging(cfg)
    assert logging.root.level == logging.DEBUG


def test_core_remember_links_to_active_workflow(monkeypatch):
    monkeypatch.delenv("RECALLKV_EMBED_PROVIDER", raising=False)

    async def _run() -> None:
        core = MemoryCore(Config(workspace_id="core-ws", embedding={"provider": ""}), kv=MemoryKV())
        try:
            assert core.embedder is None
            before = await core.remember("outside any workflow")
            wf = await core.workflows.start("job")
            during = await core.remember("inside", importance=9)
            members = await core.workflows.get_workflow_memories(wf.id)
            assert [m.id for m in members] == [during.id]
            assert before.id != during.id

            st = await core.status()
            assert st["memories"] == 2
            assert st["important"] == 1
            assert st["active_workflow"]["id"] == wf.id
            assert st["consolidation_due"] is False
            assert await core.forget(before.id) is True
        finally:
            await core.close()

    asyncio.run(_run())


def test_core_builds_configured_embedder():
    core = MemoryCore(
        Config(workspace_id="core-ws", embedding={"provider": "hash", "dimensions": 48}),
        kv=MemoryKV(),
    )
    assert isinstance(core.embedder, HashEmbedder)
    assert core.store.embedder is core.embedder


def test_empty_provider_builds_no_embedder_and_auto_detects(monkeypatch):
    for key in ("VOYAGE_API_KEY", "COHERE_API_KEY", "OPENAI_API_KEY", "DEEPSEEK_API_KEY", "GROK_API_KEY"):
        monkeypatch.delenv(key, raising=False)
    plain = MemoryCore(Config(workspace_id="core-ws", embedding={"provider": ""}), kv=MemoryKV())
    assert plain.embedder is None
    auto = MemoryCore(Config(workspace_id="core-ws", embedding={"provider": "auto"}), kv=MemoryKV())
    assert isinstance(auto.embedder, HashEmbedder)
