"""Search implementations: vector similarity with a lexical fallback."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import TYPE_CHECKING

import numpy as np

from fireflies_rag.errors import PipelineError
from fireflies_rag.ingestion.models import Chunk, Meeting, SearchFilters
from fireflies_rag.ingestion.vectors import cosine_similarity, decode_embedding
from fireflies_rag.pipeline_config import SearchMode

if TYPE_CHECKING:
    from fireflies_rag.config import Settings
    from fireflies_rag.ingestion.embeddings import Embedder
    from fireflies_rag.ingestion.storage import ChunkStore

__all__ = ["Retriever", "SearchFilters", "SearchHit", "SearchResult", "highlight", "query_terms", "word_pattern"]

logger = logging.getLogger(__name__)

_TERM_RE = re.compile(r"\w+")

PHRASE_BONUS = 0.2


def query_terms(query: str) -> list[str]:
    """Distinct lower-cased word terms of a query, in order of appearance."""
    words = [w.lower() for w in _TERM_RE.findall(query)]
    longer = [w for w in words if len(w) > 1]
    return list(dict.fromkeys(longer or words))


def word_pattern(terms: list[str]) -> re.Pattern[str]:
    """Case-insensitive pattern matching any of *terms* as a whole word."""
    alternatives = "|".join(re.escape(t) for t in sorted(terms, key=len, reverse=True))
    return re.compile(rf"\b(?:{alternatives})\b", re.IGNORECASE)


def highlight(content: str, terms: list[str]) -> str:
    """Wrap every whole-word, case-insensitive occurrence of *terms* in ``**``."""
    if not terms:
        return content
    pattern = word_pattern(terms)
    return pattern.sub(lambda m: f"**{m.group(0)}**", content)


@dataclass
class SearchHit:
    meeting: Meeting
    chunk: Chunk
    score: float
    highlighted: str | None = None


@dataclass
class SearchResult:
    query: str
    mode: SearchMode
    hits: list[SearchHit]
    fallback_reason: str | None = None


def _rank(hit: SearchHit) -> tuple:
    """Score desc, then newest meeting, then stable ids."""
    return (
        -hit.score,
        -hit.meeting.date.timestamp(),
        hit.meeting.id,
        hit.chunk.chunk_type.value,
        hit.chunk.chunk_index,
    )


class Retriever:
    """Answers queries from the chunk store.

    Vector search only ever compares vectors produced by the embedder's
    current model; chunks embedded with another model are invisible to it.
    """

    def __init__(self, settings: Settings, chunks: ChunkStore, embedder: Embedder) -> None:
        self.settings = settings
        self.chunks = chunks
        self.embedder = embedder

    def vector_search(self, query: str, limit: int = 10, filters: SearchFilters | None = None) -> list[SearchHit]:
        model = self.embedder.model
        query_vector = np.asarray(self.embedder.embed_query(query), dtype=np.float64)

        hits: list[SearchHit] = []
        candidates = self.chunks.vector_candidates(model, filters, self.settings.search_candidate_limit)
        for meeting, chunk in candidates:
            if chunk.embedding is None or chunk.embedding_model != model:
                continue
            try:
                vector = decode_embedding(chunk.embedding)
            except ValueError:
                logger.warning("Chunk %s has a corrupt embedding; skipping", chunk.id)
                continue
            if vector.shape != query_vector.shape:
                logger.warning("Chunk %s embedding has %d dims, expected %d", chunk.id, vector.size, query_vector.size)
                continue
            score = cosine_similarity(query_vector, vector)
            if score >= self.settings.vector_min_similarity:
                hits.append(SearchHit(meeting=meeting, chunk=chunk, score=score))

        hits.sort(key=_rank)
        return hits[:limit]

    def lexical_search(self, query: str, limit: int = 10, filters: SearchFilters | None = None) -> list[SearchHit]:
        """Whole-word keyword match; a chunk must contain every query term.

        Matching all terms scores 0.8 and containing the whole query phrase
        adds a bonus, capped at 1.0.
        """
        terms = query_terms(query)
        if not terms:
            return []
        phrase = " ".join(query.lower().split())
        term_patterns = [word_pattern([term]) for term in terms]

        hits: list[SearchHit] = []
        for meeting, chunk in self.chunks.lexical_candidates(terms, filters, self.settings.search_candidate_limit):
            text = chunk.content.lower()
            if not all(pattern.search(text) for pattern in term_patterns):
                continue
            score = 1.0 - PHRASE_BONUS
            if phrase in text:
                score += PHRASE_BONUS
            hits.append(
                SearchHit(
                    meeting=meeting,
                    chunk=chunk,
                    score=round(min(score, 1.0), 6),
                    highlighted=highlight(chunk.content, terms),
                )
            )

        hits.sort(key=_rank)
        return hits[:limit]

    def search(
        self,
        query: str,
        limit: int = 10,
        filters: SearchFilters | None = None,
        mode: SearchMode = SearchMode.VECTOR,
    ) -> SearchResult:
        """Run *mode*; vector search falls back to lexical instead of failing.

        The fallback happens when the query cannot be embedded or no chunk
        clears the similarity threshold, and is reported through ``mode``.
        """
        if not query.strip():
            raise ValueError("query must not be empty")

        if mode is SearchMode.LEXICAL:
            return SearchResult(query=query, mode=SearchMode.LEXICAL, hits=self.lexical_search(query, limit, filters))

        try:
            hits = self.vector_search(query, limit, filters)
        except PipelineError as exc:
            logger.warning("Vector search unavailable, falling back to lexical: %s", exc.message)
            reason = "embedding unavailable"
        else:
            if hits:
                return SearchResult(query=query, mode=SearchMode.VECTOR, hits=hits)
            reason = "no vector matches"

        return SearchResult(
            query=query,
            mode=SearchMode.LEXICAL,
            hits=self.lexical_search(query, limit, filters),
            fallback_reason=reason,
        )
