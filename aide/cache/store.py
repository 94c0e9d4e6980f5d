"""
Prompt Cache Store: durable vector index of answered prompts.

Records live in a ChromaDB persistent collection configured for cosine
distance. The embedding is supplied by the caller; Chroma's own embedding
functions are never used. Records are written once and never updated or
evicted.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import chromadb
import structlog

logger = structlog.get_logger(__name__)


@dataclass
class CachedPromptRecord:
    """One answered prompt and the response that was given to it."""

    prompt: str
    embedding: list[float]
    response: str
    tags: list[str] = field(default_factory=list)
    id: str = field(default_factory=lambda: str(uuid.uuid4()))


class PromptCacheStore:
    """ChromaDB-backed storage for CachedPromptRecords."""

    def __init__(self, path: Path, collection_name: str = "prompts"):
        self._path = path
        self._collection_name = collection_name
        self._client: Any = None
        self._collection: Any = None

    def initialize(self) -> None:
        """Open (or create) the persistent collection."""
        if self._collection is not None:
            return
        self._path.mkdir(parents=True, exist_ok=True)
        self._client = chromadb.PersistentClient(path=str(self._path))
        self._collection = self._client.get_or_create_collection(
            name=self._collection_name,
            metadata={"hnsw:space": "cosine"},
        )
        logger.info(
            "prompt_cache_store.initialized",
            path=str(self._path),
            records=self._collection.count(),
        )

    def _require_collection(self) -> Any:
        if self._collection is None:
            raise RuntimeError("PromptCacheStore is not initialized. Call initialize() first.")
        return self._collection

    def upsert(self, record: CachedPromptRecord) -> None:
        collection = self._require_collection()
        collection.upsert(
            ids=[record.id],
            embeddings=[list(record.embedding)],
            documents=[record.prompt],
            metadatas=[{
                "response": record.response,
                "tags": ",".join(record.tags),
            }],
        )
        logger.info("prompt_cache_store.upserted", record_id=record.id, tags=len(record.tags))

    def search(self, vector: list[float], top_k: int) -> list[tuple[CachedPromptRecord, float]]:
        """Nearest records to *vector* as (record, cosine distance), closest first."""
        collection = self._require_collection()
        available = collection.count()
        if available == 0:
            return []

        result = collection.query(
            query_embeddings=[list(vector)],
            n_results=max(1, min(int(top_k), available)),
            include=["documents", "metadatas", "distances"],
        )
        ids = (result.get("ids") or [[]])[0]
        documents = (result.get("documents") or [[]])[0]
        metadatas = (result.get("metadatas") or [[]])[0]
        distances = (result.get("distances") or [[]])[0]

        matches: list[tuple[CachedPromptRecord, float]] = []
        for record_id, document, metadata, distance in zip(ids, documents, metadatas, distances):
            metadata = metadata or {}
            tags = [t for t in str(metadata.get("tags", "")).split(",") if t]
            record = CachedPromptRecord(
                id=record_id,
                prompt=document or "",
                embedding=[],
                response=str(metadata.get("response", "")),
                tags=tags,
            )
            matches.append((record, float(distance)))
        matches.sort(key=lambda item: item[1])
        return matches

    def count(self) -> int:
        return self._require_collection().count()

    def close(self) -> None:
        self._collection = None
        self._client = None

    @property
    def stats(self) -> dict[str, Any]:
        return {
            "records": self.count() if self._collection is not None else 0,
            "path": str(self._path),
            "collection": self._collection_name,
        }
