"""
Semantic memory backed by Ollama embeddings.

Embeddings are stored as JSON arrays in the memories table; similarity
search loads the candidate vectors and ranks them by cosine similarity.
Every failure path degrades to "nothing found" / "not stored".
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Callable, Optional, Sequence

import httpx
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from sms_relay.models import Memory

logger = logging.getLogger(__name__)


@dataclass
class MemoryHit:
    content: str
    similarity: float
    category: Optional[str] = None


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    if len(a) != len(b) or not a:
        return 0.0
    dot = sum(x * y for x, y in zip(a, b))
    norm_a = math.sqrt(sum(x * x for x in a))
    norm_b = math.sqrt(sum(y * y for y in b))
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return dot / (norm_a * norm_b)


class SemanticMemory:
    def __init__(
        self,
        *,
        session_factory: Callable[[], Session],
        ollama_url: str,
        embed_model: str,
        threshold: float = 0.6,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._session_factory = session_factory
        self._ollama_url = ollama_url.rstrip("/")
        self._embed_model = embed_model
        self._threshold = threshold
        self._timeout = timeout
        self._transport = transport

    async def embed(self, text: str) -> Optional[list[float]]:
        """Embedding vector for text, or None when Ollama is unavailable."""
        try:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                res = await client.post(
                    f"{self._ollama_url}/api/embed",
                    json={"model": self._embed_model, "input": text},
                )
            if res.status_code >= 400:
                logger.warning(f"Ollama embed request failed: status={res.status_code}")
                return None
            embeddings = res.json().get("embeddings") or []
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning(f"Ollama embedding failed: {exc}")
            return None

        if not embeddings or not embeddings[0]:
            logger.warning("No embeddings in Ollama response")
            return None
        return [float(x) for x in embeddings[0]]

    async def search(
        self,
        query: str,
        scope: Optional[str] = None,
        limit: int = 10,
        category: Optional[str] = None,
    ) -> list[MemoryHit]:
        """
        Memories above the similarity threshold, best first.

        A scope (e.g. the sender's phone number) is appended to the query
        text before embedding.
        """
        vector = await self.embed(f"{query} {scope}" if scope else query)
        if vector is None:
            return []

        try:
            with self._session_factory() as db:
                q = db.query(Memory.content, Memory.embedding, Memory.category)
                if category:
                    q = q.filter(Memory.category == category)
                rows = q.all()
        except SQLAlchemyError as exc:
            logger.warning(f"Memory search failed: {exc}")
            return []

        hits = []
        for content, embedding, row_category in rows:
            score = cosine_similarity(vector, embedding or [])
            if score >= self._threshold:
                hits.append(MemoryHit(content=content, similarity=score, category=row_category))
        hits.sort(key=lambda hit: hit.similarity, reverse=True)
        return hits[:limit]

    async def write(self, content: str, category: str = "general", importance: float = 5, source: str = "") -> bool:
        """
        Embed and persist a memory. Identical content is updated in place.

        Returns:
            True on success, False if no embedding was available or the
            write failed.
        """
        vector = await self.embed(content)
        if vector is None:
            logger.warning("Skipping memory storage (no embedding available)")
            return False

        try:
            with self._session_factory() as db:
                existing = db.query(Memory).filter(Memory.content == content).first()
                if existing is not None:
                    existing.embedding = vector
                    existing.category = category
                    existing.importance = importance
                    existing.source = source
                else:
                    db.add(
                        Memory(
                            content=content,
                            embedding=vector,
                            category=category,
                            importance=importance,
                            source=source,
                        )
                    )
                db.commit()
        except SQLAlchemyError as exc:
            logger.error(f"Failed to store memory: {exc}")
            return False

        logger.info(f"Stored memory with embedding: category={category}")
        return True
