"""Semantic lookup over a small knowledge base.

The cascade only depends on the ``SemanticSearch`` protocol. ``KnowledgeIndex``
is the in-process implementation: documents are embedded on insert and
scored by cosine similarity at query time.
"""

import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Iterable, Protocol

import numpy as np

logger = logging.getLogger(__name__)

Embedder = Callable[[str], Awaitable[list[float]]]


@dataclass(slots=True, frozen=True)
class SearchResult:
    text: str
    score: float
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"text": self.text, "score": self.score, "metadata": self.metadata}


class SemanticSearch(Protocol):
    async def search_similar(
        self,
        query: str,
        language: str,
        threshold: float = 0.8,
        limit: int = 3,
    ) -> list[SearchResult]: ...


@dataclass(slots=True)
class _Partition:
    ids: list[str] = field(default_factory=list)
    texts: list[str] = field(default_factory=list)
    metadata: list[dict[str, Any]] = field(default_factory=list)
    vectors: np.ndarray | None = None


def _normalize(vector: Iterable[float]) -> np.ndarray:
    arr = np.asarray(list(vector), dtype=np.float32)
    norm = np.linalg.norm(arr)
    return arr / norm if norm else arr


class KnowledgeIndex:
    """In-memory knowledge base partitioned by language.

    Usage:
        index = KnowledgeIndex(manager.embed)
        await index.add("Check-in starts at 2 PM.", language="en")
        results = await index.search_similar("when is check in", "en")
    """

    def __init__(self, embed: Embedder):
        self._embed = embed
        self._partitions: dict[str, _Partition] = {}

    def __len__(self) -> int:
        return sum(len(p.ids) for p in self._partitions.values())

    async def add(self, text: str, language: str = "en", metadata: dict[str, Any] | None = None) -> str:
        vector = _normalize(await self._embed(text))
        partition = self._partitions.setdefault(language, _Partition())
        doc_id = uuid.uuid4().hex
        partition.ids.append(doc_id)
        partition.texts.append(text)
        partition.metadata.append(metadata or {})
        row = vector.reshape(1, -1)
        partition.vectors = row if partition.vectors is None else np.vstack([partition.vectors, row])
        return doc_id

    async def add_many(self, documents: Iterable[tuple[str, str]]) -> int:
        """Index (text, language) pairs."""
        count = 0
        for text, language in documents:
            await self.add(text, language)
            count += 1
        logger.info(f"Knowledge index loaded {count} documents")
        return count

    def clear(self) -> None:
        self._partitions.clear()

    async def search_similar(
        self,
        query: str,
        language: str,
        threshold: float = 0.8,
        limit: int = 3,
    ) -> list[SearchResult]:
        """Documents in ``language`` scoring at or above ``threshold``, best first."""
        partition = self._partitions.get(language)
        if partition is None or partition.vectors is None:
            return []

        query_vector = _normalize(await self._embed(query))
        if query_vector.shape[0] != partition.vectors.shape[1]:
            raise ValueError(
                f"Embedding dimension mismatch: {query_vector.shape[0]} != {partition.vectors.shape[1]}"
            )
        scores = partition.vectors @ query_vector
        order = np.argsort(-scores)

        results = []
        for i in order[:limit]:
            score = float(scores[i])
            if score < threshold:
                break
            results.append(SearchResult(text=partition.texts[i], score=score, metadata=partition.metadata[i]))

        logger.debug(f"Semantic search ({language}) returned {len(results)} results")
        return results
