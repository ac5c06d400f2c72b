"""Embedding provider abstraction.

The core only consumes vectors already attached to memories; providers are
used by the ingestion path (MemoryStore.create_memory) to attach them.
"""

from __future__ import annotations

import asyncio
import hashlib
import importlib.util
import logging
import os
import re
from typing import Protocol, runtime_checkable

import httpx
import numpy as np

from recallkv.config import EmbeddingConfig
from recallkv.exceptions import ProviderError, ValidationError

logger = logging.getLogger(__name__)


@runtime_checkable
class EmbeddingProvider(Protocol):
    name: str
    dimensions: int

    def is_configured(self) -> bool: ...
    async def generate_embedding(self, text: str) -> np.ndarray: ...
    async def generate_embeddings(self, texts: list[str]) -> np.ndarray: ...
    async def close(self) -> None: ...


class _HTTPEmbedder:
    """Shared httpx plumbing for hosted providers."""

    name = "http"

    def __init__(self, api_key: str, model: str, dims: int, base_url: str,
                 timeout: float = 30.0) -> None:
        self.api_key = api_key
        self.model = model
        self.dimensions = dims
        self.base_url = base_url
        self.timeout = timeout
        self._client: httpx.AsyncClient | None = None

    def is_configured(self) -> bool:
        return bool(self.api_key)

    def _headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.api_key}"}

    async def _get_client(self) -> httpx.AsyncClient:
        if not self.is_configured():
            raise ProviderError(f"{self.name} embedding provider is missing an API key")
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                headers=self._headers(),
                timeout=self.timeout,
            )
        return self._client

    async def _post(self, path: str, payload: dict) -> dict:
        client = await self._get_client()
        try:
            resp = await client.post(path, json=payload)
            resp.raise_for_status()
        except httpx.HTTPError as exc:
            raise ProviderError(f"{self.name} embedding request failed: {exc}") from exc
        return resp.json()

    async def generate_embedding(self, text: str) -> np.ndarray:
        return (await self.generate_embeddings([text]))[0]

    async def close(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None


class OpenAICompatibleEmbedder(_HTTPEmbedder):
    """OpenAI /embeddings API; also serves DeepSeek and Grok endpoints."""

    def __init__(self, name: str = "openai", api_key: str | None = None,
                 model: str = "text-embedding-3-small", dims: int = 1536,
                 base_url: str = "https://api.openai.com/v1", timeout: float = 30.0) -> None:
        env_key = f"{name.upper()}_API_KEY"
        super().__init__(api_key or os.environ.get(env_key, ""), model, dims, base_url, timeout)
        self.name = name

    async def generate_embeddings(self, texts: list[str]) -> np.ndarray:
        if not texts:
            return np.zeros((0, self.dimensions), dtype=np.float32)
        data = await self._post("/embeddings", {"model": self.model, "input": texts})
        vecs = [x["embedding"] for x in data.get("data", [])]
        return np.array(vecs, dtype=np.float32)


class VoyageEmbedder(_HTTPEmbedder):
    name = "voyage"

    def __init__(self, api_key: str | None = None, model: str = "voyage-3-large",
                 dims: int = 1536, base_url: str = "https://api.voyageai.com/v1",
                 timeout: float = 30.0) -> None:
        super().__init__(api_key or os.environ.get("VOYAGE_API_KEY", ""), model, dims, base_url, timeout)

    async def generate_embeddings(self, texts: list[str]) -> np.ndarray:
        if not texts:
            return np.zeros((0, self.dimensions), dtype=np.float32)
        data = await self._post(
            "/embeddings",
            {"model": self.model, "input": texts, "input_type": "document"},
        )
        vecs = [x["embedding"] for x in data.get("data", [])]
        return np.array(vecs, dtype=np.float32)


class CohereEmbedder(_HTTPEmbedder):
    name = "cohere"

    def __init__(self, api_key: str | None = None, model: str = "embed-v4.0",
                 dims: int = 1024, base_url: str = "https://api.cohere.com/v2",
                 timeout: float = 30.0) -> None:
        super().__init__(api_key or os.environ.get("COHERE_API_KEY", ""), model, dims, base_url, timeout)

    async def generate_embeddings(self, texts: list[str]) -> np.ndarray:
        if not texts:
            return np.zeros((0, self.dimensions), dtype=np.float32)
        data = await self._post(
            "/embed",
            {
                "model": self.model,
                "texts": texts,
                "input_type": "search_document",
                "embedding_types": ["float"],
            },
        )
        vecs = (data.get("embeddings") or {}).get("float", [])
        return np.array(vecs, dtype=np.float32)


class OllamaEmbedder(_HTTPEmbedder):
    name = "ollama"

    def __init__(self, model: str = "nomic-embed-text", dims: int = 768,
                 base_url: str | None = None, timeout: float = 30.0) -> None:
        url = base_url or os.environ.get("OLLAMA_BASE_URL", "http://127.0.0.1:11434")
        super().__init__("", model, dims, url, timeout)

    def is_configured(self) -> bool:
        # No key needed; the local server just has to be running.
        return True

    def _headers(self) -> dict[str, str]:
        return {}

    async def generate_embeddings(self, texts: list[str]) -> np.ndarray:
        if not texts:
            return np.zeros((0, self.dimensions), dtype=np.float32)
        out: list[list[float]] = []
        for text in texts:
            data = await self._post("/api/embeddings", {"model": self.model, "prompt": text})
            out.append(data.get("embedding", []))
        return np.array(out, dtype=np.float32)


class HashEmbedder:
    """Offline embedder: signed feature hashing of words and adjacent word pairs.

    The same text always yields the same unit vector, which is enough for
    duplicate detection without a provider account.
    """

    name = "hash"
    _WORD = re.compile(r"\w+")

    def __init__(self, dims: int = 384) -> None:
        self.dimensions = max(32, int(dims))

    def is_configured(self) -> bool:
        return True

    def _features(self, text: str) -> list[str]:
        words = self._WORD.findall((text or "").casefold())
        return words + [" ".join(pair) for pair in zip(words, words[1:])]

    def _vector(self, text: str) -> np.ndarray:
        vec = np.zeros(self.dimensions, dtype=np.float32)
        features = self._features(text)
        if not features:
            return vec
        slots = np.empty(len(features), dtype=np.int64)
        signs = np.empty(len(features), dtype=np.float32)
        for k, feature in enumerate(features):
            h = int.from_bytes(hashlib.sha1(feature.encode("utf-8")).digest()[:8], "big")
            slots[k] = h % self.dimensions
            signs[k] = -1.0 if h >> 63 else 1.0
        np.add.at(vec, slots, signs)
        length = float(np.linalg.norm(vec))
        return vec / np.float32(length) if length else vec

    async def generate_embeddings(self, texts: list[str]) -> np.ndarray:
        if not texts:
            return np.zeros((0, self.dimensions), dtype=np.float32)
        return np.array([self._vector(t) for t in texts], dtype=np.float32)

    async def generate_embedding(self, text: str) -> np.ndarray:
        return self._vector(text)

    async def close(self) -> None:
        return None


class SentenceTransformerEmbedder:
    """Local model from the optional ``semantic`` extra, loaded on first use."""

    name = "sbert"

    def __init__(self, model: str = "all-MiniLM-L6-v2", dims: int = 384) -> None:
        self.model_name = model or "all-MiniLM-L6-v2"
        self.dimensions = max(32, int(dims))
        self._model = None

    def is_configured(self) -> bool:
        return importlib.util.find_spec("sentence_transformers") is not None

    def _load(self):
        if self._model is None:
            try:
                from sentence_transformers import SentenceTransformer
            except ImportError as exc:
                raise ProviderError(
                    "provider 'sbert' needs sentence-transformers: "
                    "pip install 'recallkv[semantic]'"
                ) from exc
            self._model = SentenceTransformer(self.model_name)
        return self._model

    def _resize(self, arr: np.ndarray) -> np.ndarray:
        # Truncate or zero-pad each row to the configured width, then re-normalize.
        out = np.zeros((arr.shape[0], self.dimensions), dtype=np.float32)
        width = min(arr.shape[1], self.dimensions)
        out[:, :width] = arr[:, :width]
        lengths = np.linalg.norm(out, axis=1, keepdims=True)
        lengths[lengths == 0.0] = 1.0
        return (out / lengths).astype(np.float32, copy=False)

    def _embed_blocking(self, texts: list[str]) -> np.ndarray:
        if not texts:
            return np.zeros((0, self.dimensions), dtype=np.float32)
        raw = self._load().encode(texts, normalize_embeddings=True, show_progress_bar=False)
        return self._resize(np.atleast_2d(np.asarray(raw, dtype=np.float32)))

    async def generate_embeddings(self, texts: list[str]) -> np.ndarray:
        # Model inference is CPU-bound; keep it off the event loop.
        return await asyncio.to_thread(self._embed_blocking, texts)

    async def generate_embedding(self, text: str) -> np.ndarray:
        return (await self.generate_embeddings([text]))[0]

    async def close(self) -> None:
        self._model = None


# Auto-detection order when no provider is named: best retrieval quality first.
_API_KEY_PRIORITY = [
    ("VOYAGE_API_KEY", "voyage"),
    ("COHERE_API_KEY", "cohere"),
    ("OPENAI_API_KEY", "openai"),
    ("DEEPSEEK_API_KEY", "deepseek"),
    ("GROK_API_KEY", "grok"),
]

_OPENAI_COMPATIBLE = {
    "openai": ("text-embedding-3-small", 1536, "https://api.openai.com/v1"),
    "deepseek": ("deepseek-embedding", 1536, "https://api.deepseek.com/v1"),
    "grok": ("grok-embedding", 1536, "https://api.x.ai/v1"),
}


def detect_provider() -> str:
    for env_var, provider in _API_KEY_PRIORITY:
        if os.environ.get(env_var):
            logger.info("Auto-detected %s embedding provider from %s", provider, env_var)
            return provider
    logger.info("No embedding API keys detected, using local hash embeddings")
    return "hash"


def create_embedder(config: EmbeddingConfig | None = None) -> EmbeddingProvider:
    cfg = config or EmbeddingConfig()
    provider = (cfg.provider or "").strip().lower() or detect_provider()
    if provider in _OPENAI_COMPATIBLE:
        model, dims, url = _OPENAI_COMPATIBLE[provider]
        return OpenAICompatibleEmbedder(
            name=provider,
            model=cfg.model or model,
            dims=cfg.dimensions or dims,
            base_url=cfg.base_url or url,
            timeout=cfg.timeout,
        )
    if provider == "voyage":
        return VoyageEmbedder(
            model=cfg.model or "voyage-3-large",
            dims=cfg.dimensions or 1536,
            base_url=cfg.base_url or "https://api.voyageai.com/v1",
            timeout=cfg.timeout,
        )
    if provider == "cohere":
        return CohereEmbedder(
            model=cfg.model or "embed-v4.0",
            dims=cfg.dimensions or 1024,
            base_url=cfg.base_url or "https://api.cohere.com/v2",
            timeout=cfg.timeout,
        )
    if provider in {"ollama", "local"}:
        return OllamaEmbedder(
            model=cfg.model or "nomic-embed-text",
            dims=cfg.dimensions or 768,
            base_url=cfg.base_url or None,
            timeout=cfg.timeout,
        )
    if provider in {"hash", "localhash"}:
        return HashEmbedder(dims=cfg.dimensions or 384)
    if provider in {"sbert", "sentence-transformers", "sentence_transformers"}:
        return SentenceTransformerEmbedder(
            model=cfg.model or "all-MiniLM-L6-v2",
            dims=cfg.dimensions or 384,
        )
    raise ValidationError(f"Unsupported embedding provider: {cfg.provider}", field="provider")
