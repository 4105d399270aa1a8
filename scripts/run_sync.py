"""Run the scheduled sync pass once, or forever on an interval."""

import argparse
import logging
import sys
import time
from datetime import datetime
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from fireflies_rag.config import configure_logging, get_settings
from fireflies_rag.errors import Deadline, PipelineError
from fireflies_rag.ingestion.embeddings import Embedder
from fireflies_rag.ingestion.fireflies import FirefliesClient
from fireflies_rag.ingestion.pipeline import IngestionPipeline
from fireflies_rag.ingestion.storage import ChunkStore, MeetingIndex, get_supabase_client
from fireflies_rag.ingestion.transcript_store import TranscriptStore
from fireflies_rag.sync.orchestrator import SyncOrchestrator

logger = logging.getLogger("run_sync")


def build_orchestrator() -> SyncOrchestrator:
    settings = get_settings()
    client = get_supabase_client(settings)
    source = FirefliesClient(settings)
    index = MeetingIndex(client)
    pipeline = IngestionPipeline(
        settings,
        source,
        TranscriptStore(client, settings.transcripts_bucket),
        index,
        ChunkStore(client),
        Embedder(settings),
    )
    return SyncOrchestrator(settings, pipeline, source, index)


def run_once(
    orchestrator: SyncOrchestrator,
    limit: int | None,
    from_date: datetime | None,
    timeout: float | None,
) -> None:
    deadline = Deadline(timeout) if timeout else None
    if from_date is not None:
        report = orchestrator.sync(limit=limit, from_date=from_date, deadline=deadline)
        print(f"Synced {report.count} of {report.total} ({report.skipped} skipped, {len(report.errors)} errors)")
        processed = orchestrator.process_pending(limit=limit, deadline=deadline)
        print(f"Processed {processed.processed} meetings ({processed.chunks} chunks)")
        return

    summary = orchestrator.run_scheduled_pass(limit=limit, deadline=deadline)
    sync = summary["sync"]
    print(
        f"Sync: {sync.get('count', 0)} downloaded, {sync.get('skipped', 0)} skipped, "
        f"{len(sync.get('errors', []))} errors"
    )
    print(f"Retried downloads: {summary['retried']['count']} of {summary['retried']['total']}")
    print(f"Processed: {summary['processed']['processed']} meetings ({summary['processed']['chunks']} chunks)")


if __name__ == "__main__":
    parser = argparse.ArgumentParser()
    parser.add_argument("--limit", type=int, default=None)
    parser.add_argument("--from-date", type=datetime.fromisoformat, default=None)
    parser.add_argument("--interval", type=int, default=None, help="Seconds between passes; omit to run once")
    parser.add_argument("--timeout", type=float, default=None, help="Time budget per pass in seconds")
    args = parser.parse_args()

    configure_logging(get_settings().log_level)
    orchestrator = build_orchestrator()

    while True:
        try:
            run_once(orchestrator, args.limit, args.from_date, args.timeout)
        except PipelineError as e:
            logger.error("Sync pass failed: %s", e.message)
            if args.interval is None:
                sys.exit(1)
        if args.interval is None:
            break
        time.sleep(args.interval)
