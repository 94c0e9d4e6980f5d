"""Semantic prompt cache: embeddings, vector store and lookup policy."""
from aide.cache.semantic import CacheCandidate, PreparedPrompt, SemanticCache
from aide.cache.store import CachedPromptRecord, PromptCacheStore

__all__ = [
    "SemanticCache",
    "CacheCandidate",
    "PreparedPrompt",
    "PromptCacheStore",
    "CachedPromptRecord",
]
