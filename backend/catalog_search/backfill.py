"""
Embedding backfill.

Finds catalog products that have an image but no embedding from the current
encoder, and computes one per product. Work per invocation is capped by the
batch size so a single call stays inside a short execution budget; callers
re-invoke while ``remaining`` is true.

Every success is written as soon as it is computed and every failure is
recorded on the product, so a crashed batch keeps its progress. Only
terminal failures (missing or undecodable image, rejected file type) count
towards the attempt cap; transient ones (network errors, 5xx, encoder
outages) leave the product pending for the next run.
"""

import logging
import os
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Optional
from urllib.parse import urlparse

import requests

from . import config
from .embeddings import EmbeddingEncoder
from .models import BackfillItem, BackfillReport, EmbeddingStatus, Product
from .preprocessing import preprocess
from .store import CatalogStore

logger = logging.getLogger(__name__)


class ImageFetchError(Exception):
    def __init__(self, message: str, retryable: bool = False):
        super().__init__(message)
        self.retryable = retryable


def fetch_image(url: str, timeout: float = config.IMAGE_FETCH_TIMEOUT) -> bytes:
    """Download an http(s) image, or read a local path / file:// URL."""
    parsed = urlparse(url)
    if parsed.scheme in ("http", "https"):
        try:
            r = requests.get(url, timeout=timeout)
            r.raise_for_status()
        except requests.HTTPError as e:
            status = e.response.status_code if e.response is not None else 0
            raise ImageFetchError("Image fetch failed: %s" % e,
                                  retryable=status >= 500 or status in (408, 429))
        except requests.RequestException as e:
            # connection reset, DNS failure, timeout
            raise ImageFetchError("Image fetch failed: %s" % e, retryable=True)
        return r.content
    path = parsed.path if parsed.scheme == "file" else url
    if not os.path.exists(path):
        raise ImageFetchError("Image not found: %s" % path)
    with open(path, "rb") as f:
        return f.read()


class BackfillWorker:
    def __init__(self, store: CatalogStore, encoder: EmbeddingEncoder,
                 fetcher: Callable[[str], bytes] = fetch_image,
                 concurrency: int = config.BACKFILL_CONCURRENCY,
                 max_attempts: int = config.BACKFILL_MAX_ATTEMPTS):
        self.store = store
        self.encoder = encoder
        self.fetcher = fetcher
        self.concurrency = max(1, concurrency)
        self.max_attempts = max_attempts

    def _process(self, product: Product) -> BackfillItem:
        """Embed one product; never raises, the outcome is in the returned item."""
        url = product.primary_image
        try:
            logger.info("[Backfill] Generating embedding for product: %s", product.id)
            raw = self.fetcher(url)
            canonical = preprocess(raw, allowed_mime_types=config.ALLOWED_MIME_TYPES)
            vector = self.encoder.encode_image(canonical)
            self.store.save_embedding(product.id, vector, self.encoder.model_version)
        except Exception as e:  # noqa: BLE001
            message = getattr(e, "detail", "") or str(e) or e.__class__.__name__
            retryable = bool(getattr(e, "retryable", False))
            logger.warning("[Backfill] Failed %s (%s, %s): %s", product.id, url,
                           "transient" if retryable else "terminal", message)
            self.store.record_embedding_failure(product.id, message, count_attempt=not retryable)
            return BackfillItem(id=product.id, status="failed", error=message, retryable=retryable)
        return BackfillItem(id=product.id, status="success")

    def run_batch(self, batch_size: int = config.BACKFILL_BATCH_SIZE) -> BackfillReport:
        """
        Embed up to ``batch_size`` pending products.

        The encoder is loaded before any product is touched; if it cannot be
        loaded the batch raises ``EncodingFailed`` and no product is charged
        an attempt.
        """
        if batch_size < 1:
            raise ValueError("batch_size must be positive")
        model_version = self.encoder.model_version
        products = self.store.products_missing_embeddings(batch_size, model_version, self.max_attempts)
        if not products:
            logger.info("[Backfill] No products missing embeddings found.")
            return BackfillReport(remaining=False)
        self.encoder.warm_up()

        workers = min(len(products), self.concurrency)
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="backfill") as pool:
            details = list(pool.map(self._process, products))

        success = sum(1 for d in details if d.status == "success")
        remaining = self.store.count_missing_embeddings(model_version, self.max_attempts) > 0
        logger.info("[Backfill] Processed %d products (%d ok, %d failed), remaining=%s",
                    len(details), success, len(details) - success, remaining)
        return BackfillReport(
            processed=len(details),
            success=success,
            failed=len(details) - success,
            details=details,
            remaining=remaining,
        )

    def run_until_drained(self, batch_size: int = config.BACKFILL_BATCH_SIZE,
                          max_batches: Optional[int] = None,
                          on_batch: Optional[Callable[[BackfillReport], None]] = None) -> BackfillReport:
        """Re-invoke run_batch until nothing remains; returns the summed report."""
        total = BackfillReport()
        batches = 0
        while max_batches is None or batches < max_batches:
            report = self.run_batch(batch_size)
            batches += 1
            total.processed += report.processed
            total.success += report.success
            total.failed += report.failed
            total.details.extend(report.details)
            total.remaining = report.remaining
            if on_batch is not None:
                on_batch(report)
            if not report.remaining:
                break
            if report.success == 0 and all(d.retryable for d in report.details):
                # nothing embedded and no attempt charged: another pass would repeat this one
                logger.warning("[Backfill] Stopping: batch failed transiently for every product")
                break
        return total

    def status(self) -> EmbeddingStatus:
        return self.store.embedding_status(self.encoder.model_version, self.max_attempts)
