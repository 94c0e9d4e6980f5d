"""
Semantic Prompt Cache: reuse answers to prompts that were already answered.

Per user turn:

1. SKIP: trivial confirmation tokens ("y", "n") never touch the cache
2. PREPARE: embed the prompt; optional tag generation runs concurrently and
   both results are committed only once both have finished
3. LOOKUP: nearest neighbours by cosine distance, keep those under the
   threshold, closest first
4. OFFER: ask whether to consult the cache, then let the user pick a
   candidate or cancel
5. WRITE: after a turn the model answered, store prompt, embedding,
   response and tags

A chosen candidate replaces the model call for that turn.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional

import structlog

from aide.cache.embeddings import EmbeddingProvider
from aide.cache.store import CachedPromptRecord, PromptCacheStore
from aide.channels.base import UserChannel
from aide.config import CacheConfig

logger = structlog.get_logger(__name__)

CANCEL_OPTION = "cancel"

Tagger = Callable[[str], Awaitable[list[str]]]


@dataclass
class PreparedPrompt:
    """A prompt with its embedding (and tags) computed, ready for lookup and write-back."""

    prompt: str
    embedding: list[float]
    tags: list[str] = field(default_factory=list)


@dataclass
class CacheCandidate:
    record: CachedPromptRecord
    distance: float
    rank: int

    @property
    def label(self) -> str:
        return f"[{self.distance:.4f}][{self.rank}] {self.record.prompt}"


class SemanticCache:
    """Similarity lookup and write-back over a PromptCacheStore."""

    def __init__(
        self,
        store: PromptCacheStore,
        embeddings: EmbeddingProvider,
        channel: UserChannel,
        config: Optional[CacheConfig] = None,
        tagger: Optional[Tagger] = None,
    ):
        self._store = store
        self._embeddings = embeddings
        self._channel = channel
        self._config = config or CacheConfig()
        self._tagger = tagger
        self._uncacheable = {p.strip().lower() for p in self._config.uncacheable_prompts}

        self._lookups = 0
        self._hits = 0
        self._writes = 0

    def should_skip(self, prompt: str) -> bool:
        """True when *prompt* must bypass both lookup and write-back."""
        if not self._config.enabled:
            return True
        return prompt.strip().lower() in self._uncacheable

    async def prepare(self, prompt: str) -> PreparedPrompt:
        """Embed *prompt*, generating tags alongside when enabled."""
        if self._config.generate_tags and self._tagger is not None:
            embedding, tags = await asyncio.gather(
                self._embeddings.embed(prompt),
                self._safe_tags(prompt),
            )
        else:
            embedding, tags = await self._embeddings.embed(prompt), []
        return PreparedPrompt(prompt=prompt, embedding=list(embedding), tags=list(tags))

    async def _safe_tags(self, prompt: str) -> list[str]:
        assert self._tagger is not None
        try:
            return await self._tagger(prompt)
        except Exception as e:
            logger.warning("semantic_cache.tagging_failed", error=str(e))
            return []

    def lookup(self, prepared: PreparedPrompt) -> list[CacheCandidate]:
        """Candidates strictly under the distance threshold, closest first, ranked from 1."""
        self._lookups += 1
        matches = self._store.search(prepared.embedding, self._config.top_k)
        close = sorted(
            ((record, distance) for record, distance in matches
             if distance < self._config.distance_threshold),
            key=lambda item: item[1],
        )
        candidates = [
            CacheCandidate(record=record, distance=distance, rank=rank)
            for rank, (record, distance) in enumerate(close, start=1)
        ]
        logger.info(
            "semantic_cache.lookup",
            neighbours=len(matches),
            candidates=len(candidates),
            threshold=self._config.distance_threshold,
        )
        return candidates

    async def offer(self, candidates: list[CacheCandidate]) -> Optional[CachedPromptRecord]:
        """Let the user choose a cached answer. None means: call the model."""
        if not candidates:
            return None
        if not await self._channel.prompt_confirm(
            f"{len(candidates)} similar prompt(s) were answered before. Use a cached response?"
        ):
            logger.info("semantic_cache.declined")
            return None

        options = [candidate.label for candidate in candidates] + [CANCEL_OPTION]
        index = await self._channel.prompt_select_one("Select a cached prompt", options)
        if index is None or not 0 <= index < len(candidates):
            logger.info("semantic_cache.cancelled")
            return None

        chosen = candidates[index]
        self._hits += 1
        logger.info("semantic_cache.hit", record_id=chosen.record.id, distance=chosen.distance)
        return chosen.record

    def write(self, prepared: PreparedPrompt, response: str) -> CachedPromptRecord:
        """Persist a freshly answered prompt."""
        record = CachedPromptRecord(
            prompt=prepared.prompt,
            embedding=prepared.embedding,
            response=response,
            tags=prepared.tags,
        )
        self._store.upsert(record)
        self._writes += 1
        return record

    @property
    def stats(self) -> dict[str, Any]:
        return {
            "lookups": self._lookups,
            "hits": self._hits,
            "writes": self._writes,
        }
