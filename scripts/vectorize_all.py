"""Drain the unvectorized queue: chunk and embed every downloaded meeting."""

import argparse
import sys
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from fireflies_rag.config import configure_logging, get_settings
from run_sync import build_orchestrator


def main(batch_size: int, max_batches: int | None) -> None:
    orchestrator = build_orchestrator()
    total_processed = 0
    total_chunks = 0
    total_errors = 0
    batches = 0

    while max_batches is None or batches < max_batches:
        report = orchestrator.process_pending(limit=batch_size)
        batches += 1
        total_processed += report.processed
        total_chunks += report.chunks
        total_errors += len(report.errors)
        print(f"  Batch {batches}: {report.processed} vectorized, {report.chunks} chunks, {len(report.errors)} errors")
        for error in report.errors:
            print(f"    ERROR {error['id']}: {error['message']}")
        # Failed items back off, so a batch with no progress means the queue is drained for now.
        if report.processed == 0 and report.chunks == 0:
            break

    print(f"\nDone! Vectorized {total_processed} meetings, {total_chunks} chunks, {total_errors} errors.")


if __name__ == "__main__":
    parser = argparse.ArgumentParser()
    parser.add_argument("--batch-size", type=int, default=10)
    parser.add_argument("--max-batches", type=int, default=None)
    args = parser.parse_args()

    configure_logging(get_settings().log_level)
    main(args.batch_size, args.max_batches)
