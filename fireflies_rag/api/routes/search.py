"""Search endpoints: lexical search, vector search and answer generation."""

from __future__ import annotations

from anthropic import APIConnectionError, APIStatusError
from fastapi import APIRouter, Depends, HTTPException

from fireflies_rag.api.dependencies import get_chunk_store, get_retriever
from fireflies_rag.api.models import (
    AskRequest,
    AskResponse,
    FilterOptions,
    SearchHitOut,
    SearchRequest,
    SearchResponse,
)
from fireflies_rag.config import Settings, get_settings
from fireflies_rag.ingestion.storage import ChunkStore
from fireflies_rag.pipeline_config import SearchMode
from fireflies_rag.retrieval.generation import generate_answer
from fireflies_rag.retrieval.search import Retriever, SearchResult

router = APIRouter()


def _to_response(result: SearchResult) -> SearchResponse:
    return SearchResponse(
        query=result.query,
        mode=result.mode,
        count=len(result.hits),
        results=[SearchHitOut.from_hit(h) for h in result.hits],
        fallback_reason=result.fallback_reason,
    )


@router.post("/search", response_model=SearchResponse)
def search(request: SearchRequest, retriever: Retriever = Depends(get_retriever)) -> SearchResponse:
    """Keyword search over chunk text (``mode`` may request vector search instead)."""
    filters = request.filters.to_filters() if request.filters else None
    result = retriever.search(request.query, request.limit, filters, request.mode or SearchMode.LEXICAL)
    return _to_response(result)


@router.post("/vector-search", response_model=SearchResponse)
def vector_search(request: SearchRequest, retriever: Retriever = Depends(get_retriever)) -> SearchResponse:
    """Semantic search; falls back to keyword search when embeddings are unavailable."""
    filters = request.filters.to_filters() if request.filters else None
    result = retriever.search(request.query, request.limit, filters, SearchMode.VECTOR)
    return _to_response(result)


@router.post("/ask", response_model=AskResponse)
def ask(
    request: AskRequest,
    retriever: Retriever = Depends(get_retriever),
    settings: Settings = Depends(get_settings),
) -> AskResponse:
    """Answer a question with Claude over the best-matching transcript chunks."""
    filters = request.filters.to_filters() if request.filters else None
    result = retriever.search(request.question, request.limit, filters, SearchMode.VECTOR)

    if not result.hits:
        return AskResponse(
            answer="No relevant meeting content found for your question.",
            sources=[],
            mode=result.mode,
        )

    try:
        generated = generate_answer(request.question, result.hits, settings)
    except (APIStatusError, APIConnectionError) as exc:
        # Return a JSON 503 rather than letting the SDK error escape as a bare 500.
        raise HTTPException(status_code=503, detail=f"LLM unavailable: {exc}") from exc

    return AskResponse(
        answer=generated["answer"],
        sources=[SearchHitOut.from_hit(h) for h in result.hits],
        mode=result.mode,
        model=generated.get("model"),
        usage=generated.get("usage"),
    )


@router.get("/filter-options", response_model=FilterOptions)
def filter_options(chunks: ChunkStore = Depends(get_chunk_store)) -> FilterOptions:
    """Distinct categories and speakers usable as search filters."""
    return FilterOptions(**chunks.filter_options())
