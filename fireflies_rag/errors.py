"""Error taxonomy shared by every pipeline stage."""

from __future__ import annotations

import time
from dataclasses import dataclass


class PipelineError(Exception):
    """Base class for pipeline failures.

    ``item_id`` names the transcript/meeting the failure belongs to, when
    there is one, so batch reports can point at the offending item.
    """

    retryable = False
    # Set by the pipeline once the failure is persisted on the meeting row.
    failure_recorded = False

    def __init__(self, message: str, item_id: str | None = None) -> None:
        self.message = message
        self.item_id = item_id
        super().__init__(message)


class UpstreamUnavailable(PipelineError):
    """Provider unreachable, 5xx, rate limited past retries, or timed out."""

    retryable = True


class UpstreamRejected(PipelineError):
    """Provider refused the request (4xx, bad auth, GraphQL errors)."""

    def __init__(
        self,
        message: str,
        item_id: str | None = None,
        status_code: int | None = None,
        body: str | None = None,
    ) -> None:
        self.status_code = status_code
        self.body = body
        super().__init__(message, item_id=item_id)


class MalformedTranscriptError(UpstreamRejected):
    """A single provider record could not be normalised."""


class StorageError(PipelineError):
    """Blob or relational store read/write failure."""

    retryable = True


@dataclass(frozen=True)
class DataIntegrityWarning:
    """A non-fatal data problem: a default was substituted and work continued."""

    item_id: str
    field: str
    message: str

    def as_dict(self) -> dict[str, str]:
        return {"item_id": self.item_id, "field": self.field, "message": self.message}


class Deadline:
    """Caller-supplied time budget for a request.

    External calls take ``timeout(default)`` as their per-call timeout, so a
    call can never outlive the request; ``check()`` fails closed with a
    retryable error once the budget is spent.
    """

    def __init__(self, seconds: float, clock=time.monotonic) -> None:
        self._clock = clock
        self._expires_at = clock() + seconds

    def remaining(self) -> float:
        return max(0.0, self._expires_at - self._clock())

    def expired(self) -> bool:
        return self.remaining() <= 0.0

    def check(self, item_id: str | None = None) -> None:
        if self.expired():
            raise UpstreamUnavailable("deadline exceeded", item_id=item_id)

    def timeout(self, default: float) -> float:
        return min(default, self.remaining())


def effective_timeout(default: float, deadline: Deadline | None, item_id: str | None = None) -> float:
    """Per-call timeout honouring an optional deadline."""
    if deadline is None:
        return default
    deadline.check(item_id)
    return deadline.timeout(default)
