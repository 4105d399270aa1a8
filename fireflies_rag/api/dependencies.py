"""Component wiring for the API; tests swap these out via dependency_overrides."""

from __future__ import annotations

from functools import lru_cache

from fastapi import Depends
from supabase import Client

from fireflies_rag.config import Settings, get_settings
from fireflies_rag.ingestion.embeddings import Embedder
from fireflies_rag.ingestion.fireflies import FirefliesClient
from fireflies_rag.ingestion.pipeline import IngestionPipeline
from fireflies_rag.ingestion.storage import ChunkStore, MeetingIndex, get_supabase_client
from fireflies_rag.ingestion.transcript_store import TranscriptStore
from fireflies_rag.retrieval.search import Retriever
from fireflies_rag.sync.orchestrator import SyncOrchestrator


@lru_cache(maxsize=1)
def get_supabase() -> Client:
    return get_supabase_client(get_settings())


def get_meeting_index(client: Client = Depends(get_supabase)) -> MeetingIndex:
    return MeetingIndex(client)


def get_chunk_store(client: Client = Depends(get_supabase)) -> ChunkStore:
    return ChunkStore(client)


def get_transcript_store(
    client: Client = Depends(get_supabase),
    settings: Settings = Depends(get_settings),
) -> TranscriptStore:
    return TranscriptStore(client, settings.transcripts_bucket)


@lru_cache(maxsize=1)
def get_embedder() -> Embedder:
    return Embedder(get_settings())


@lru_cache(maxsize=1)
def get_fireflies_client() -> FirefliesClient:
    return FirefliesClient(get_settings())


def get_pipeline(
    settings: Settings = Depends(get_settings),
    source: FirefliesClient = Depends(get_fireflies_client),
    store: TranscriptStore = Depends(get_transcript_store),
    index: MeetingIndex = Depends(get_meeting_index),
    chunks: ChunkStore = Depends(get_chunk_store),
    embedder: Embedder = Depends(get_embedder),
) -> IngestionPipeline:
    return IngestionPipeline(settings, source, store, index, chunks, embedder)


def get_orchestrator(
    settings: Settings = Depends(get_settings),
    pipeline: IngestionPipeline = Depends(get_pipeline),
    source: FirefliesClient = Depends(get_fireflies_client),
    index: MeetingIndex = Depends(get_meeting_index),
) -> SyncOrchestrator:
    return SyncOrchestrator(settings, pipeline, source, index)


def get_retriever(
    settings: Settings = Depends(get_settings),
    chunks: ChunkStore = Depends(get_chunk_store),
    embedder: Embedder = Depends(get_embedder),
) -> Retriever:
    return Retriever(settings, chunks, embedder)
