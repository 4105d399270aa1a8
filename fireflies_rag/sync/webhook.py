"""Fireflies webhook signature verification and payload parsing."""

from __future__ import annotations

import base64
import hashlib
import hmac
from dataclasses import dataclass
from typing import Any

SIGNATURE_HEADER = "X-Fireflies-Signature"

# Events that mean a transcript is ready (or changed) and should be ingested.
TRANSCRIPT_EVENTS = frozenset({"transcription.completed", "meeting.transcribed", "transcript.updated"})
# Events that replace an already downloaded transcript.
UPDATE_EVENTS = frozenset({"transcript.updated"})


@dataclass(frozen=True)
class WebhookEvent:
    event: str
    transcript_id: str | None

    @property
    def actionable(self) -> bool:
        return self.event in TRANSCRIPT_EVENTS and bool(self.transcript_id)

    @property
    def force_refresh(self) -> bool:
        return self.event in UPDATE_EVENTS


def sign(body: bytes, secret: str) -> str:
    """Base64 HMAC-SHA256 of *body*, the form Fireflies sends."""
    digest = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).digest()
    return base64.b64encode(digest).decode("ascii")


def verify_signature(body: bytes, signature: str | None, secret: str) -> bool:
    """Constant-time check of a webhook signature (base64 or hex digest)."""
    if not signature:
        return False
    candidate = signature.strip()
    if candidate.startswith("sha256="):
        candidate = candidate[len("sha256=") :]
    digest = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).digest()
    given = candidate.encode("utf-8")
    return hmac.compare_digest(base64.b64encode(digest), given) or hmac.compare_digest(
        digest.hex().encode("ascii"), given.lower()
    )


def parse_webhook(payload: Any) -> WebhookEvent:
    """Extract the event name and transcript id from a webhook body.

    Raises:
        ValueError: If the body is not a JSON object or names no event.
    """
    if not isinstance(payload, dict):
        raise ValueError("Webhook payload must be a JSON object")
    event = str(payload.get("event") or payload.get("eventType") or "").strip()
    if not event:
        raise ValueError("Webhook payload has no event")

    transcript_id = None
    for key in ("transcriptId", "transcript_id", "meetingId", "meeting_id"):
        value = payload.get(key)
        if value is not None and str(value).strip():
            transcript_id = str(value).strip()
            break
    return WebhookEvent(event=event, transcript_id=transcript_id)
