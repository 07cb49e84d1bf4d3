#!/usr/bin/env python3
"""
run_backfill.py
Computes missing image embeddings batch by batch until the catalog is drained,
then prints the embedding coverage.
Usage:
    python backend/run_backfill.py --batch-size 10
    python backend/run_backfill.py --status
"""

import argparse
import logging

from catalog_search import config
from catalog_search.backfill import BackfillWorker
from catalog_search.embeddings import get_encoder
from catalog_search.errors import EncodingFailed
from catalog_search.models import BackfillReport
from catalog_search.store import CatalogStore


def print_status(worker: BackfillWorker):
    st = worker.status()
    print(f"Total products: {st.total}")
    print(f"Products with embeddings: {st.with_embedding}")
    print(f"Pending: {st.pending}  stale: {st.stale}  gave up: {st.exhausted}  model: {st.model}")


def main():
    logging.basicConfig(level=config.LOG_LEVEL, format=config.LOG_FORMAT)
    parser = argparse.ArgumentParser()
    parser.add_argument("--db", default=config.CATALOG_DB_PATH, help="SQLite catalog path.")
    parser.add_argument("--batch-size", type=int, default=config.BACKFILL_BATCH_SIZE)
    parser.add_argument("--max-batches", type=int, default=None, help="Stop after N batches.")
    parser.add_argument("--status", action="store_true", help="Only print embedding coverage.")
    args = parser.parse_args()

    worker = BackfillWorker(CatalogStore(args.db), get_encoder())
    if args.status:
        print_status(worker)
        return

    def on_batch(report: BackfillReport):
        print(f"Batch: processed={report.processed} ok={report.success} failed={report.failed} "
              f"remaining={report.remaining}")
        for item in report.details:
            if item.status == "failed":
                note = " (will retry)" if item.retryable else ""
                print(f"  - {item.id}: {item.error}{note}")

    try:
        total = worker.run_until_drained(args.batch_size, max_batches=args.max_batches, on_batch=on_batch)
    except EncodingFailed as e:
        raise SystemExit("Backfill aborted, encoder unavailable: %s" % e.detail)
    print(f"\nBackfill complete: {total.success} embedded, {total.failed} failed.")
    print_status(worker)


if __name__ == "__main__":
    main()
