"""Pydantic request/response schemas for the transcript RAG API."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

from fireflies_rag.ingestion.models import Chunk, Meeting, SearchFilters
from fireflies_rag.pipeline_config import SearchMode
from fireflies_rag.retrieval.search import SearchHit


class SyncRequest(BaseModel):
    """Request body for POST /sync. Every field is optional."""

    model_config = ConfigDict(populate_by_name=True)

    limit: int | None = Field(default=None, ge=1, le=500)
    from_date: datetime | None = Field(default=None, validation_alias=AliasChoices("fromDate", "from_date"))
    force: bool = Field(default=False, validation_alias=AliasChoices("force", "forceUpdate"))
    process: bool = False
    timeout_seconds: float | None = Field(
        default=None, gt=0, validation_alias=AliasChoices("timeoutSeconds", "timeout_seconds")
    )


class ProcessRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    limit: int | None = Field(default=None, ge=1, le=500)
    timeout_seconds: float | None = Field(
        default=None, gt=0, validation_alias=AliasChoices("timeoutSeconds", "timeout_seconds")
    )


class ProcessResponse(BaseModel):
    processed: int
    chunks: int
    skipped: int = 0
    errors: list[dict[str, Any]] = []


class SyncResponse(BaseModel):
    """Response body for POST /sync."""

    success: bool
    count: int
    total: int
    skipped: int = 0
    errors: list[dict[str, Any]] = []
    warnings: list[dict[str, str]] = []
    processed: ProcessResponse | None = None


class WebhookAccepted(BaseModel):
    accepted: bool
    event: str
    transcript_id: str | None = Field(default=None, serialization_alias="transcriptId")


class SearchFiltersModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    date_from: datetime | None = Field(default=None, validation_alias=AliasChoices("dateFrom", "date_from"))
    date_to: datetime | None = Field(default=None, validation_alias=AliasChoices("dateTo", "date_to"))
    category: str | None = None
    speaker: str | None = None

    def to_filters(self) -> SearchFilters:
        return SearchFilters(
            date_from=self.date_from,
            date_to=self.date_to,
            category=self.category or None,
            speaker=self.speaker or None,
        )


class SearchRequest(BaseModel):
    """Request body for /search and /vector-search."""

    query: str = Field(min_length=1)
    limit: int = Field(default=10, ge=1, le=100)
    filters: SearchFiltersModel | None = None
    mode: SearchMode | None = None

    @field_validator("query")
    @classmethod
    def query_not_blank(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("query must not be empty")
        return value


class AskRequest(BaseModel):
    """Request body for POST /ask."""

    question: str = Field(min_length=1)
    limit: int = Field(default=8, ge=1, le=50)
    filters: SearchFiltersModel | None = None

    @field_validator("question")
    @classmethod
    def question_not_blank(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("question must not be empty")
        return value


class MeetingRef(BaseModel):
    id: str
    title: str
    date: datetime
    category: str = "general"


class ChunkOut(BaseModel):
    """A stored chunk without its embedding."""

    id: str
    type: str
    index: int
    content: str
    speaker: str | None = None
    start_time: float | None = None
    end_time: float | None = None
    embedding_model: str | None = None

    @classmethod
    def from_chunk(cls, chunk: Chunk) -> ChunkOut:
        return cls(
            id=chunk.id,
            type=chunk.chunk_type.value,
            index=chunk.chunk_index,
            content=chunk.content,
            speaker=chunk.speaker,
            start_time=chunk.start_time,
            end_time=chunk.end_time,
            embedding_model=chunk.embedding_model,
        )


class SearchHitOut(BaseModel):
    meeting: MeetingRef
    chunk: ChunkOut
    score: float
    highlighted: str | None = None

    @classmethod
    def from_hit(cls, hit: SearchHit) -> SearchHitOut:
        return cls(
            meeting=MeetingRef(
                id=hit.meeting.id,
                title=hit.meeting.title,
                date=hit.meeting.date,
                category=hit.meeting.category,
            ),
            chunk=ChunkOut.from_chunk(hit.chunk),
            score=hit.score,
            highlighted=hit.highlighted,
        )


class SearchResponse(BaseModel):
    query: str
    mode: SearchMode
    count: int
    results: list[SearchHitOut]
    fallback_reason: str | None = None


class AskResponse(BaseModel):
    """Response body for POST /ask."""

    answer: str
    sources: list[SearchHitOut]
    mode: SearchMode | None = None
    model: str | None = None
    usage: dict[str, Any] | None = None


class MeetingSummary(BaseModel):
    """Summary representation of a meeting for list views."""

    id: str
    title: str
    date: datetime
    duration: int = 0
    category: str = "general"
    participants: list[str] = []
    downloaded: bool = False
    chunked: bool = False
    vectorized: bool = False
    preview: str | None = None
    word_count: int = 0
    chunk_count: int = 0
    last_error: str | None = None

    @classmethod
    def from_meeting(cls, meeting: Meeting) -> MeetingSummary:
        return cls(
            id=meeting.id,
            title=meeting.title,
            date=meeting.date,
            duration=meeting.duration,
            category=meeting.category,
            participants=meeting.participants,
            downloaded=meeting.downloaded,
            chunked=meeting.chunked,
            vectorized=meeting.vectorized,
            preview=meeting.preview,
            word_count=meeting.word_count,
            chunk_count=meeting.chunk_count,
            last_error=meeting.last_error,
        )


class MeetingDetail(MeetingSummary):
    """Full meeting detail including its chunks."""

    chunks: list[ChunkOut] = []


class MeetingListResponse(BaseModel):
    meetings: list[MeetingSummary]
    limit: int
    offset: int
    total: int


class FilterOptions(BaseModel):
    categories: list[str]
    speakers: list[str]


class AnalyticsResponse(BaseModel):
    """Pipeline counters plus the outcome of the last sync."""

    stats: dict[str, int]
    last_sync: dict[str, Any] | None = None
    cursor: dict[str, Any] | None = None
