"""Keyword-relevance context retriever.

Scores every corpus chunk against the query tokens and returns the best
matches as a context block to inject into the prompt:

    score = 2 × (tokens equal to one of the chunk's tags)
          + 1 × (tokens found as a substring of the chunk's content)

A miss returns ``None``; that is an expected outcome, not an error.
"""

from __future__ import annotations

from collections.abc import Iterable

from tutor_core.models.schemas import KnowledgeChunk, ScoredChunk
from tutor_core.retrieval.corpus import DEFAULT_CORPUS

CONTEXT_HEADER = "[RETRIEVED CONTEXT]"

TAG_WEIGHT = 2
CONTENT_WEIGHT = 1


class ContextRetriever:
    """Stateless lexical scorer over a fixed, immutable corpus.

    Safe to share between concurrent requests without locking.
    """

    def __init__(self, corpus: Iterable[KnowledgeChunk] = DEFAULT_CORPUS, top_k: int = 2) -> None:
        if top_k < 1:
            raise ValueError("top_k must be at least 1")
        self.corpus: tuple[KnowledgeChunk, ...] = tuple(corpus)
        self.top_k = top_k
        # Lower-cased once; the corpus never changes after construction.
        self._lowered = tuple(chunk.content.lower() for chunk in self.corpus)

    def rank(self, query: str) -> list[ScoredChunk]:
        """Return chunks with a positive score, best first, at most ``top_k``."""
        tokens = [token.lower() for token in query.split()]
        if not tokens:
            return []

        scored = [
            ScoredChunk(chunk=chunk, score=self._score(tokens, chunk, lowered))
            for chunk, lowered in zip(self.corpus, self._lowered, strict=True)
        ]
        # sorted() is stable, so ties keep corpus order.
        ranked = sorted(
            (item for item in scored if item.score > 0),
            key=lambda item: item.score,
            reverse=True,
        )
        return ranked[: self.top_k]

    def retrieve(self, query: str) -> str | None:
        """Return the context block for *query*, or ``None`` when nothing matches."""
        hits = self.rank(query)
        if not hits:
            return None
        body = "\n\n".join(hit.chunk.content for hit in hits)
        return f"{CONTEXT_HEADER}\n{body}"

    @staticmethod
    def _score(tokens: list[str], chunk: KnowledgeChunk, lowered_content: str) -> int:
        score = 0
        for token in tokens:
            if token in chunk.tags:
                score += TAG_WEIGHT
            if token in lowered_content:
                score += CONTENT_WEIGHT
        return score
