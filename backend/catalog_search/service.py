"""Search use-cases behind the HTTP API."""

import logging
from typing import List, Optional

from fastapi.concurrency import run_in_threadpool

from . import config
from .backfill import BackfillWorker
from .embeddings import EmbeddingEncoder
from .errors import InvalidInput
from .models import (
    BackfillReport,
    EmbeddingStatus,
    ImageSearchMetadata,
    ImageSearchResponse,
    SearchQuery,
    TextSearchResponse,
)
from .preprocessing import preprocess
from .ranking import HybridRanker
from .store import CatalogStore

logger = logging.getLogger(__name__)


def dedupe_suggestions(pool: List[str], limit: int = config.MAX_SUGGESTIONS) -> List[str]:
    seen = set()
    out = []
    for value in pool:
        if not value or value in seen:
            continue
        seen.add(value)
        out.append(value)
    return out[:limit]


class SearchService:
    def __init__(self, store: CatalogStore, encoder: EmbeddingEncoder,
                 ranker: Optional[HybridRanker] = None,
                 backfill_worker: Optional[BackfillWorker] = None,
                 max_upload_bytes: int = config.MAX_UPLOAD_BYTES,
                 allowed_mime_types=config.ALLOWED_MIME_TYPES):
        self.store = store
        self.encoder = encoder
        self.ranker = ranker or HybridRanker(store, encoder=encoder)
        self.backfill_worker = backfill_worker or BackfillWorker(store, encoder)
        self.max_upload_bytes = max_upload_bytes
        self.allowed_mime_types = allowed_mime_types

    def search_text(self, q: str,
                    limit: int = config.DEFAULT_PRODUCT_LIMIT,
                    taxonomy_limit: int = config.DEFAULT_TAXONOMY_LIMIT) -> TextSearchResponse:
        query = (q or "").strip()
        if not query:
            return TextSearchResponse()
        if limit < 1 or taxonomy_limit < 0:
            raise InvalidInput("bad limits: limit=%r taxonomyLimit=%r" % (limit, taxonomy_limit))

        products = self.ranker.rank(SearchQuery(text=query, limit=limit))
        categories = self.store.search_categories(query, taxonomy_limit) if taxonomy_limit else []
        collections = self.store.search_collections(query, taxonomy_limit) if taxonomy_limit else []

        suggestions = dedupe_suggestions(
            [query]
            + [r.product.title for r in products]
            + [c.name for c in categories]
            + [c.title for c in collections]
        )
        if not products:
            logger.info("No product matches for text query: %s", query)
        return TextSearchResponse(
            products=products,
            categories=categories,
            collections=collections,
            suggestions=suggestions,
        )

    async def search_image(self, raw_bytes: bytes, content_type: Optional[str] = None,
                           limit: int = config.DEFAULT_PRODUCT_LIMIT,
                           threshold: Optional[float] = None) -> ImageSearchResponse:
        if limit < 1:
            raise InvalidInput("bad limit %r" % (limit,))
        if threshold is None:
            threshold = self.ranker.image_threshold
        # decode, resize and index lookup are blocking; keep them off the event loop
        canonical = await run_in_threadpool(preprocess, raw_bytes, self.max_upload_bytes,
                                            self.allowed_mime_types, content_type)
        embedding = await self.encoder.aencode_image(canonical)
        products = await run_in_threadpool(self.ranker.rank_vector, embedding, None, threshold, limit)
        logger.info("Image search returned %d products (threshold=%.2f)", len(products), threshold)
        return ImageSearchResponse(
            products=products,
            metadata=ImageSearchMetadata(
                total=len(products),
                threshold=threshold,
                embeddingDimensions=int(embedding.shape[0]),
            ),
        )

    def backfill(self, batch_size: int = config.BACKFILL_BATCH_SIZE) -> BackfillReport:
        if batch_size < 1:
            raise InvalidInput("batchSize must be positive")
        return self.backfill_worker.run_batch(batch_size)

    def embedding_status(self) -> EmbeddingStatus:
        return self.backfill_worker.status()
