"""Embedding providers and abstractions."""

from recallkv.embeddings.backends import (
    CohereEmbedder,
    EmbeddingProvider,
    HashEmbedder,
    OllamaEmbedder,
    OpenAICompatibleEmbedder,
    SentenceTransformerEmbedder,
    VoyageEmbedder,
    create_embedder,
    detect_provider,
)

__all__ = [
    "EmbeddingProvider",
    "OpenAICompatibleEmbedder",
    "VoyageEmbedder",
    "CohereEmbedder",
    "OllamaEmbedder",
    "HashEmbedder",
    "SentenceTransformerEmbedder",
    "create_embedder",
    "detect_provider",
]
