"""
Lexical relevance for text queries.

Three signals per product, combined by weighted max so that each one can
carry a match on its own:
 - full-text rank: BM25 over stemmed name + description tokens,
 - trigram similarity against the name (survives typos),
 - prefix bonus (survives partially typed words).
"""

import logging
import os
import re
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Set

import nltk
from nltk.corpus import stopwords as nltk_stopwords
from nltk.stem.snowball import SnowballStemmer
from rank_bm25 import BM25Okapi

from . import config
from .models import Product

logger = logging.getLogger(__name__)

TOKEN_RE = re.compile(r"\w+", flags=re.UNICODE)

_STOPWORDS_CACHE: Dict[str, Set[str]] = {}


def load_stopwords(language: str) -> Set[str]:
    """nltk stopwords for ``language``; downloads them once if missing, empty set if unavailable."""
    if language in _STOPWORDS_CACHE:
        return _STOPWORDS_CACHE[language]
    words: Set[str] = set()
    try:
        words = set(nltk_stopwords.words(language))
    except LookupError:
        if os.getenv("NLTK_AUTO_DOWNLOAD", "1") in ("1", "true", "True"):
            nltk.download("stopwords", quiet=True)
            try:
                words = set(nltk_stopwords.words(language))
            except LookupError:
                words = set()
    except OSError as e:
        logger.warning("Unknown stopword language %s: %s", language, e)
    if not words:
        logger.warning("Stopwords for %s unavailable, tokenizing without them", language)
    _STOPWORDS_CACHE[language] = words
    return words


class Analyzer:
    """Lowercase word tokenizer with stopword removal and Snowball stemming."""

    def __init__(self, language: str = config.SEARCH_LANGUAGE, stopwords: Optional[Iterable[str]] = None):
        self.language = language
        self.stopwords = set(stopwords) if stopwords is not None else load_stopwords(language)
        self.stemmer = SnowballStemmer(language)

    def words(self, text: str) -> List[str]:
        if not text:
            return []
        return TOKEN_RE.findall(str(text).lower())

    def tokens(self, text: str) -> List[str]:
        toks = [t for t in self.words(text) if t not in self.stopwords]
        return [self.stemmer.stem(t) for t in toks]


def trigrams(text: str) -> Set[str]:
    """pg_trgm style trigrams: each word padded with two leading blanks and one trailing."""
    out: Set[str] = set()
    for word in TOKEN_RE.findall(str(text).lower()):
        padded = "  " + word + " "
        for i in range(len(padded) - 2):
            out.add(padded[i:i + 3])
    return out


def trigram_similarity(a: Set[str], b: Set[str]) -> float:
    if not a or not b:
        return 0.0
    return len(a & b) / len(a | b)


def prefix_bonus(name: str, query: str,
                 full_bonus: float = config.PREFIX_BONUS,
                 word_bonus: float = config.WORD_PREFIX_BONUS) -> float:
    name_l = (name or "").lower().strip()
    query_l = (query or "").lower().strip()
    if not query_l or not name_l:
        return 0.0
    if name_l.startswith(query_l):
        return full_bonus
    if any(w.startswith(query_l) for w in TOKEN_RE.findall(name_l)):
        return word_bonus
    return 0.0


@dataclass
class TextSignal:
    fts: float
    trigram: float
    prefix: float
    score: float


class LexicalIndex:
    """Text-side scoring over a snapshot of the catalog."""

    def __init__(self, products: List[Product], analyzer: Optional[Analyzer] = None,
                 fts_weight: float = config.FTS_WEIGHT,
                 trigram_weight: float = config.TRIGRAM_WEIGHT):
        self.analyzer = analyzer or Analyzer()
        self.fts_weight = fts_weight
        self.trigram_weight = trigram_weight
        self.ids = [p.id for p in products]
        self.names = [p.name for p in products]
        self.name_trigrams = [trigrams(p.name) for p in products]
        corpus = [self.analyzer.tokens(p.name + " " + (p.description or "")) for p in products]
        # BM25Okapi divides by the average document length
        if corpus and any(corpus):
            self.bm25 = BM25Okapi(corpus)
        else:
            self.bm25 = None
        logger.debug("Lexical index built over %d products (bm25=%s)", len(self.ids), self.bm25 is not None)

    def __len__(self):
        return len(self.ids)

    def _fts_scores(self, query: str) -> List[float]:
        q_tokens = self.analyzer.tokens(query)
        if self.bm25 is None or not q_tokens:
            return [0.0] * len(self.ids)
        raw = self.bm25.get_scores(q_tokens)
        # s / (s + 1): an absolute squash, so scores stay comparable across queries
        return [max(0.0, float(s)) / (max(0.0, float(s)) + 1.0) for s in raw]

    def score(self, query: str) -> Dict[str, TextSignal]:
        """TextSignal per product id, only for products with a positive score."""
        query = (query or "").strip()
        if not query or not self.ids:
            return {}
        q_trigrams = trigrams(query)
        fts = self._fts_scores(query)
        out: Dict[str, TextSignal] = {}
        for i, pid in enumerate(self.ids):
            trgm = trigram_similarity(q_trigrams, self.name_trigrams[i])
            bonus = prefix_bonus(self.names[i], query)
            combined = max(self.fts_weight * fts[i], self.trigram_weight * trgm, bonus)
            combined = min(1.0, max(0.0, combined))
            if combined > 0.0:
                out[pid] = TextSignal(fts=fts[i], trigram=trgm, prefix=bonus, score=combined)
        return out
