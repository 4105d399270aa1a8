"""Sync endpoints: scheduled-style pulls, queue processing and the webhook receiver."""

from __future__ import annotations

import json
import logging

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Request

from fireflies_rag.api.dependencies import get_orchestrator
from fireflies_rag.api.models import (
    ProcessRequest,
    ProcessResponse,
    SyncRequest,
    SyncResponse,
    WebhookAccepted,
)
from fireflies_rag.config import Settings, get_settings
from fireflies_rag.errors import Deadline
from fireflies_rag.sync.orchestrator import SyncOrchestrator
from fireflies_rag.sync.webhook import SIGNATURE_HEADER, parse_webhook, verify_signature

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/sync", response_model=SyncResponse)
def sync(
    request: SyncRequest | None = None,
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
) -> SyncResponse:
    """Pull recent transcripts from Fireflies and download new ones.

    With ``process`` set, downloaded meetings are chunked and embedded in the
    same request.
    """
    request = request or SyncRequest()
    deadline = Deadline(request.timeout_seconds) if request.timeout_seconds else None
    report = orchestrator.sync(
        limit=request.limit,
        from_date=request.from_date,
        force=request.force,
        deadline=deadline,
    )

    response = SyncResponse(**report.as_dict())
    if request.process:
        processed = orchestrator.process_pending(limit=request.limit, deadline=deadline)
        response.processed = ProcessResponse(**processed.as_dict())
    return response


@router.post("/process", response_model=ProcessResponse)
def process(
    request: ProcessRequest | None = None,
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
) -> ProcessResponse:
    """Chunk and embed downloaded meetings that are not yet vectorized."""
    request = request or ProcessRequest()
    deadline = Deadline(request.timeout_seconds) if request.timeout_seconds else None
    report = orchestrator.process_pending(limit=request.limit, deadline=deadline)
    return ProcessResponse(**report.as_dict())


@router.post("/webhook", response_model=WebhookAccepted, status_code=202)
async def webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    settings: Settings = Depends(get_settings),
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
) -> WebhookAccepted:
    """Acknowledge a Fireflies webhook and ingest its transcript in the background."""
    body = await request.body()
    if settings.webhook_secret and not verify_signature(
        body, request.headers.get(SIGNATURE_HEADER), settings.webhook_secret
    ):
        raise HTTPException(status_code=401, detail="Invalid webhook signature")

    try:
        payload = json.loads(body)
        event = parse_webhook(payload)
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=f"Invalid webhook payload: {exc}") from exc

    background_tasks.add_task(orchestrator.handle_webhook, payload)
    logger.info("Accepted webhook %s for %s", event.event, event.transcript_id)
    return WebhookAccepted(accepted=event.actionable, event=event.event, transcript_id=event.transcript_id)
