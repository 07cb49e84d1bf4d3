"""
Hybrid ranker: lexical text relevance + embedding cosine similarity.

Both signal sets are keyed by product id and full-outer-joined. Each joined
row is tagged with which signals it carries, and the weighting rule is a
total function over that tag:

    TEXT_ONLY   -> text score
    IMAGE_ONLY  -> image score
    BOTH        -> TEXT_WEIGHT * text + IMAGE_WEIGHT * image

A product missing one modality is never penalised for it.
"""

import logging
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional

import numpy as np

from . import config
from .embeddings import EmbeddingEncoder, get_encoder
from .errors import EncodingFailed, IndexUnavailable, SearchError
from .lexical import Analyzer, LexicalIndex
from .models import PriceSummary, Product, ProductSummary, RankedResult, SearchQuery
from .preprocessing import preprocess
from .store import CatalogStore

logger = logging.getLogger(__name__)

CURRENCY_SYMBOLS = {"INR": "₹", "USD": "$", "EUR": "€", "GBP": "£"}


class SignalKind(Enum):
    TEXT_ONLY = "text"
    IMAGE_ONLY = "image"
    BOTH = "hybrid"


@dataclass(frozen=True)
class SignalMatch:
    product_id: str
    kind: SignalKind
    text_score: Optional[float] = None
    image_score: Optional[float] = None


@dataclass(frozen=True)
class RankedRow:
    """One row of the similarity lookup, as the storefront consumes it."""
    product_id: str
    relevance_score: float
    kind: SignalKind


def combined_score(match: SignalMatch,
                   text_weight: float = config.TEXT_WEIGHT,
                   image_weight: float = config.IMAGE_WEIGHT) -> float:
    if match.kind is SignalKind.BOTH:
        return text_weight * match.text_score + image_weight * match.image_score
    if match.kind is SignalKind.TEXT_ONLY:
        return match.text_score
    if match.kind is SignalKind.IMAGE_ONLY:
        return match.image_score
    raise ValueError("unknown signal kind %r" % (match.kind,))


def outer_join(text_scores: Dict[str, float], image_scores: Dict[str, float]) -> List[SignalMatch]:
    """Full outer join of the two signal sets on product id."""
    out = []
    for pid in set(text_scores) | set(image_scores):
        t = text_scores.get(pid)
        i = image_scores.get(pid)
        if t is not None and i is not None:
            out.append(SignalMatch(pid, SignalKind.BOTH, t, i))
        elif t is not None:
            out.append(SignalMatch(pid, SignalKind.TEXT_ONLY, text_score=t))
        else:
            out.append(SignalMatch(pid, SignalKind.IMAGE_ONLY, image_score=i))
    return out


def summarize_product(product: Product) -> ProductSummary:
    symbol = CURRENCY_SYMBOLS.get(product.currency_code.upper(), product.currency_code.upper() + " ")
    return ProductSummary(
        id=product.id,
        title=product.name,
        handle=product.handle,
        thumbnail=product.thumbnail or (product.image_urls[0] if product.image_urls else None),
        price=PriceSummary(
            amount=product.price,
            currency_code=product.currency_code,
            formatted="%s%.2f" % (symbol, product.price),
        ),
    )


class HybridRanker:
    def __init__(self, store: CatalogStore,
                 encoder: Optional[EmbeddingEncoder] = None,
                 analyzer: Optional[Analyzer] = None,
                 text_weight: float = config.TEXT_WEIGHT,
                 image_weight: float = config.IMAGE_WEIGHT,
                 text_threshold: float = config.TEXT_MATCH_THRESHOLD,
                 image_threshold: float = config.IMAGE_MATCH_THRESHOLD,
                 use_text_embedding: bool = config.USE_TEXT_EMBEDDING,
                 ann_candidates: int = config.ANN_CANDIDATES):
        self.store = store
        self.encoder = encoder or get_encoder()
        self.analyzer = analyzer
        self.text_weight = text_weight
        self.image_weight = image_weight
        self.text_threshold = text_threshold
        self.image_threshold = image_threshold
        self.use_text_embedding = use_text_embedding
        self.ann_candidates = ann_candidates
        self._lexical: Optional[LexicalIndex] = None
        self._lexical_revision = -1
        self._lock = threading.Lock()

    def default_threshold(self, mode: str) -> float:
        return self.image_threshold if mode == "image" else self.text_threshold

    # ---------- signals ----------

    def _lexical_index(self) -> LexicalIndex:
        with self._lock:
            revision = self.store.catalog_revision
            if self._lexical is None or self._lexical_revision != revision:
                if self.analyzer is None:
                    self.analyzer = Analyzer()
                self._lexical = LexicalIndex(self.store.list_products(), analyzer=self.analyzer)
                self._lexical_revision = revision
            return self._lexical

    def text_signals(self, query_text: str) -> Dict[str, float]:
        return {pid: s.score for pid, s in self._lexical_index().score(query_text).items()}

    def image_signals(self, query_embedding: np.ndarray, k: int) -> Dict[str, float]:
        """Cosine similarity (1 - cosine distance) for the nearest embedded products."""
        index, key_to_id = self.store.embedding_index(self.encoder.model_version)
        out = {}
        for key, sim in index.search(query_embedding, k):
            pid = key_to_id.get(key)
            if pid is None:
                continue
            out[pid] = min(1.0, sim)
        return out

    # ---------- similarity lookup ----------

    def match_products(self, query_embedding: Optional[np.ndarray], query_text: Optional[str],
                       match_threshold: float, match_count: int) -> List[RankedRow]:
        """
        Ranked rows for an optional query embedding and an optional text query.

        Rows scoring below ``match_threshold`` are dropped; the rest come back
        best first, at most ``match_count`` of them.
        """
        try:
            text_scores = self.text_signals(query_text) if query_text else {}
            image_scores = {}
            if query_embedding is not None:
                k = max(match_count, self.ann_candidates)
                image_scores = self.image_signals(query_embedding, k)
        except SearchError:
            raise
        except Exception as e:
            logger.exception("Similarity lookup failed: %s", e)
            raise IndexUnavailable("similarity lookup failed: %s" % e)

        rows = []
        for match in outer_join(text_scores, image_scores):
            # scores are reported at 6 decimals, so the cut is made on that value
            score = round(float(combined_score(match, self.text_weight, self.image_weight)), 6)
            if score >= match_threshold:
                rows.append(RankedRow(match.product_id, score, match.kind))
        rows.sort(key=lambda r: (-r.relevance_score, r.product_id))
        logger.debug("match_products: text=%d image=%d kept=%d", len(text_scores), len(image_scores), len(rows))
        return rows[:match_count]

    # ---------- public ranking ----------

    def rank_vector(self, query_embedding: Optional[np.ndarray], query_text: Optional[str],
                    threshold: float, limit: int) -> List[RankedResult]:
        rows = self.match_products(query_embedding, query_text, threshold, limit)
        products = self.store.get_products(r.product_id for r in rows)
        results = []
        for r in rows:
            product = products.get(r.product_id)
            # deleted between lookup and fetch
            if product is None:
                continue
            results.append(RankedResult(
                product=summarize_product(product),
                relevance_score=r.relevance_score,
                source=r.kind.value,
            ))
        return results

    def rank(self, query: SearchQuery, threshold: Optional[float] = None,
             limit: Optional[int] = None) -> List[RankedResult]:
        """Rank the catalog against a text query or raw image bytes."""
        if threshold is None:
            threshold = query.threshold if query.threshold is not None else self.default_threshold(query.mode)
        limit = limit or query.limit

        if query.mode == "image":
            canonical = preprocess(query.image_bytes)
            embedding = self.encoder.encode_image(canonical)
            return self.rank_vector(embedding, None, threshold, limit)

        embedding = None
        if self.use_text_embedding:
            try:
                embedding = self.encoder.encode_text(query.text)
            except EncodingFailed as e:
                logger.warning("Text embedding unavailable, ranking lexically only: %s", e)
        return self.rank_vector(embedding, query.text, threshold, limit)
