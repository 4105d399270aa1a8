"""Meeting endpoints: list, detail, and pipeline analytics."""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query

from fireflies_rag.api.dependencies import get_chunk_store, get_meeting_index
from fireflies_rag.api.models import (
    AnalyticsResponse,
    ChunkOut,
    MeetingDetail,
    MeetingListResponse,
    MeetingSummary,
)
from fireflies_rag.ingestion.storage import ChunkStore, MeetingIndex
from fireflies_rag.sync.orchestrator import CURSOR_KEY, STATUS_KEY

router = APIRouter()


@router.get("/meetings", response_model=MeetingListResponse)
def list_meetings(
    limit: int = Query(default=20, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    index: MeetingIndex = Depends(get_meeting_index),
) -> MeetingListResponse:
    """List meetings ordered by meeting date (newest first)."""
    meetings = index.list(limit=limit, offset=offset)
    return MeetingListResponse(
        meetings=[MeetingSummary.from_meeting(m) for m in meetings],
        limit=limit,
        offset=offset,
        total=index.count(),
    )


@router.get("/meetings/{meeting_id}", response_model=MeetingDetail)
def get_meeting(
    meeting_id: str,
    index: MeetingIndex = Depends(get_meeting_index),
    chunks: ChunkStore = Depends(get_chunk_store),
) -> MeetingDetail:
    """Get meeting metadata with its chunks (embeddings omitted)."""
    meeting = index.get(meeting_id)
    if meeting is None:
        raise HTTPException(status_code=404, detail="Meeting not found")

    summary = MeetingSummary.from_meeting(meeting)
    return MeetingDetail(
        **summary.model_dump(),
        chunks=[ChunkOut.from_chunk(c) for c in chunks.list_chunks(meeting_id)],
    )


@router.get("/analytics", response_model=AnalyticsResponse)
def analytics(index: MeetingIndex = Depends(get_meeting_index)) -> AnalyticsResponse:
    return AnalyticsResponse(
        stats=index.stats(),
        last_sync=index.get_metadata(STATUS_KEY),
        cursor=index.get_metadata(CURSOR_KEY),
    )
