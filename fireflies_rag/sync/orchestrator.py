"""Sync orchestration: scheduled pulls, retries, queue draining and webhooks."""

from __future__ import annotations

import logging
import uuid
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from fireflies_rag.errors import Deadline, PipelineError
from fireflies_rag.ingestion.models import TranscriptSummary
from fireflies_rag.retrying import provider_retry
from fireflies_rag.sync.webhook import parse_webhook

if TYPE_CHECKING:
    from fireflies_rag.config import Settings
    from fireflies_rag.ingestion.fireflies import FirefliesClient
    from fireflies_rag.ingestion.pipeline import IngestionPipeline
    from fireflies_rag.ingestion.storage import MeetingIndex

logger = logging.getLogger(__name__)

CURSOR_KEY = "sync_cursor"
STATUS_KEY = "sync_status"


def _error_entry(exc: PipelineError, item_id: str | None = None) -> dict[str, Any]:
    return {"id": exc.item_id or item_id, "error": type(exc).__name__, "message": exc.message}


def _parse_dt(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


@dataclass
class SyncCursor:
    """Persistent sync position.

    ``watermark``: every transcript dated before it has been recorded.
    ``backfill_before``: set while an older backlog is still being paged
    through; the next pass fetches transcripts up to this date.
    ``backfill_top``: newest date recorded when the backfill started; the
    watermark jumps there once the backlog is drained.
    """

    watermark: datetime | None = None
    backfill_before: datetime | None = None
    backfill_top: datetime | None = None

    def to_json(self) -> dict[str, str | None]:
        return {
            "watermark": self.watermark.isoformat() if self.watermark else None,
            "backfill_before": self.backfill_before.isoformat() if self.backfill_before else None,
            "backfill_top": self.backfill_top.isoformat() if self.backfill_top else None,
        }

    @classmethod
    def from_json(cls, value: Any) -> SyncCursor:
        if not isinstance(value, dict):
            return cls()
        return cls(
            watermark=_parse_dt(value.get("watermark")),
            backfill_before=_parse_dt(value.get("backfill_before")),
            backfill_top=_parse_dt(value.get("backfill_top")),
        )


def advance_cursor(
    cursor: SyncCursor,
    fetched: list[datetime],
    recorded: list[datetime],
    unrecorded: list[datetime],
    truncated: bool,
) -> SyncCursor:
    """Compute the cursor after one incremental pass.

    The watermark never moves backwards and never passes a transcript whose
    failure could not be recorded, so such a transcript is fetched again.
    """
    if truncated and fetched:
        before = max(unrecorded) if unrecorded else min(fetched)
        if cursor.backfill_before is not None:
            top = cursor.backfill_top
        else:
            top = max(recorded, default=None)
        return SyncCursor(watermark=cursor.watermark, backfill_before=before, backfill_top=top)

    candidates = list(recorded)
    if cursor.backfill_before is not None and cursor.backfill_top is not None:
        candidates.append(cursor.backfill_top)
    new_mark = max(candidates, default=None)
    if new_mark is not None and unrecorded:
        new_mark = min(new_mark, min(unrecorded))
    if new_mark is None or (cursor.watermark is not None and new_mark < cursor.watermark):
        new_mark = cursor.watermark
    return SyncCursor(watermark=new_mark)


@dataclass
class SyncReport:
    success: bool = True
    count: int = 0
    total: int = 0
    skipped: int = 0
    errors: list[dict[str, Any]] = field(default_factory=list)
    warnings: list[dict[str, str]] = field(default_factory=list)

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class ProcessReport:
    processed: int = 0
    chunks: int = 0
    skipped: int = 0
    errors: list[dict[str, Any]] = field(default_factory=list)

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class WebhookResult:
    event: str
    transcript_id: str | None = None
    processed: bool = False
    downloaded: bool = False
    vectorized: bool = False
    message: str = ""


class SyncOrchestrator:
    """Decides what to ingest and drives the pipeline over it.

    Per-item failures are logged and collected into the report; only a
    failure to list transcripts at all aborts a sync.
    """

    def __init__(
        self,
        settings: Settings,
        pipeline: IngestionPipeline,
        source: FirefliesClient,
        index: MeetingIndex,
        worker_id: str | None = None,
    ) -> None:
        self.settings = settings
        self.pipeline = pipeline
        self.source = source
        self.index = index
        self.worker_id = worker_id or f"worker-{uuid.uuid4().hex[:12]}"

    def load_cursor(self) -> SyncCursor:
        return SyncCursor.from_json(self.index.get_metadata(CURSOR_KEY))

    def _store_status(self, report: SyncReport) -> None:
        status = {**report.as_dict(), "finished_at": datetime.now(UTC).isoformat()}
        try:
            self.index.set_metadata(STATUS_KEY, status)
        except PipelineError:
            logger.exception("Could not store sync status")

    def sync(
        self,
        limit: int | None = None,
        from_date: datetime | None = None,
        force: bool = False,
        deadline: Deadline | None = None,
    ) -> SyncReport:
        """Pull recent transcripts and download the new or changed ones.

        Without *from_date* the pass is incremental: it starts from the stored
        watermark and advances it afterwards. An explicit *from_date* is a
        one-off window that leaves the cursor alone.
        """
        limit = limit or self.settings.sync_default_limit
        incremental = from_date is None
        cursor = self.load_cursor() if incremental else SyncCursor()
        since = from_date if not incremental else cursor.watermark
        until = cursor.backfill_before if incremental else None

        report = SyncReport()
        try:
            summaries = provider_retry(self.settings, logger, deadline)(
                self.source.fetch_recent, limit, since, deadline, until
            )
        except PipelineError as exc:
            logger.error("Listing transcripts failed: %s", exc.message)
            report.success = False
            report.errors.append(_error_entry(exc))
            self._store_status(report)
            raise

        report.total = len(summaries)
        recorded: list[datetime] = []
        unrecorded: list[datetime] = []

        for position, summary in enumerate(summaries):
            report.warnings.extend(w.as_dict() for w in summary.warnings)
            if deadline is not None and deadline.expired():
                remaining = summaries[position:]
                unrecorded.extend(s.date for s in remaining)
                report.errors.extend(
                    {"id": s.id, "error": "UpstreamUnavailable", "message": "deadline exceeded"} for s in remaining
                )
                break

            try:
                existing = self.index.get(summary.id)
                if not force and existing is not None and existing.downloaded and existing.date == summary.date:
                    report.skipped += 1
                    recorded.append(summary.date)
                    continue
                result = self.pipeline.download(summary.id, summary=summary, deadline=deadline, force=force)
            except PipelineError as exc:
                logger.warning("Sync of transcript %s failed: %s", summary.id, exc.message)
                report.errors.append(_error_entry(exc, summary.id))
                (recorded if exc.failure_recorded else unrecorded).append(summary.date)
                continue

            report.count += 1
            recorded.append(summary.date)
            report.warnings.extend(w.as_dict() for w in result.warnings)

        if incremental:
            truncated = len(summaries) >= limit
            new_cursor = advance_cursor(cursor, [s.date for s in summaries], recorded, unrecorded, truncated)
            if new_cursor != cursor:
                try:
                    self.index.set_metadata(CURSOR_KEY, new_cursor.to_json())
                except PipelineError as exc:
                    logger.error("Could not advance sync cursor: %s", exc.message)
                    report.errors.append(_error_entry(exc))

        report.success = not report.errors
        logger.info(
            "Sync finished: %d downloaded, %d skipped, %d errors of %d listed",
            report.count,
            report.skipped,
            len(report.errors),
            report.total,
        )
        self._store_status(report)
        return report

    def retry_missing_downloads(self, limit: int | None = None, deadline: Deadline | None = None) -> SyncReport:
        """Re-attempt meetings whose earlier download failed."""
        report = SyncReport()
        pending = self.index.find_missing_download(limit or self.settings.sync_default_limit)
        report.total = len(pending)
        for meeting in pending:
            summary = TranscriptSummary(
                id=meeting.id,
                title=meeting.title,
                date=meeting.date,
                duration=meeting.duration,
                participants=meeting.participants,
            )
            try:
                self.pipeline.download(meeting.id, summary=summary, deadline=deadline)
            except PipelineError as exc:
                report.errors.append(_error_entry(exc, meeting.id))
                continue
            report.count += 1
        report.success = not report.errors
        return report

    def process_pending(self, limit: int | None = None, deadline: Deadline | None = None) -> ProcessReport:
        """Chunk and embed downloaded meetings that are not yet vectorized."""
        report = ProcessReport()
        for meeting in self.index.find_unvectorized(limit or self.settings.sync_default_limit):
            if deadline is not None and deadline.expired():
                break
            try:
                result = self.pipeline.vectorize(meeting.id, self.worker_id, deadline)
            except PipelineError as exc:
                logger.warning("Processing meeting %s failed: %s", meeting.id, exc.message)
                report.errors.append(_error_entry(exc, meeting.id))
                continue
            if result.skipped:
                report.skipped += 1
                continue
            report.chunks += result.chunks_created
            if result.vectorized:
                report.processed += 1
        logger.info("Processed %d meetings (%d chunks, %d errors)", report.processed, report.chunks, len(report.errors))
        return report

    def handle_webhook(self, payload: Any) -> WebhookResult:
        """Ingest the transcript a webhook points at, idempotently.

        Never raises for per-item problems; the outcome is in the result.
        """
        try:
            event = parse_webhook(payload)
        except ValueError as exc:
            return WebhookResult(event="", message=str(exc))

        try:
            self.index.log_webhook_event(event.event, event.transcript_id, payload)
        except PipelineError:
            logger.exception("Could not log webhook event %s", event.event)

        result = WebhookResult(event=event.event, transcript_id=event.transcript_id)
        if not event.actionable:
            result.message = "event ignored"
            logger.info("Ignoring webhook event %s", event.event)
            return result

        transcript_id = event.transcript_id
        try:
            existing = self.index.get(transcript_id)
            if existing is None or not existing.downloaded or event.force_refresh:
                self.pipeline.download(transcript_id, force=event.force_refresh)
                result.downloaded = True
            outcome = self.pipeline.vectorize(transcript_id, self.worker_id)
        except PipelineError as exc:
            logger.warning("Webhook processing for %s failed: %s", transcript_id, exc.message)
            result.message = exc.message
            return result

        result.processed = True
        result.vectorized = outcome.vectorized
        result.message = "already being processed" if outcome.skipped else "processed"
        return result

    def run_scheduled_pass(self, limit: int | None = None, deadline: Deadline | None = None) -> dict[str, Any]:
        """One periodic pass: sync, retry failed downloads, drain the queue."""
        summary: dict[str, Any] = {}
        try:
            summary["sync"] = self.sync(limit=limit, deadline=deadline).as_dict()
        except PipelineError as exc:
            summary["sync"] = {"success": False, "errors": [_error_entry(exc)]}
        summary["retried"] = self.retry_missing_downloads(limit, deadline).as_dict()
        summary["processed"] = self.process_pending(limit, deadline).as_dict()
        return summary
