"""
Catalog datastore: products, categories, collections and the per-product
embedding column, plus the FAISS similarity index derived from it.

SQLite is the system of record. Two revision counters track what changed:
``catalog_revision`` moves on any catalog write (the lexical corpus is
built from it) and ``embedding_revision`` only when the set of indexed
vectors can have changed. The FAISS index is a cache over the embedding
column, rebuilt when ``embedding_revision`` moves.
"""

import json
import logging
import os
import sqlite3
import threading
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

import faiss
import numpy as np

from . import config
from .models import Category, Collection, EmbeddingStatus, Product

logger = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS products (
    pk INTEGER PRIMARY KEY AUTOINCREMENT,
    id TEXT UNIQUE NOT NULL,
    name TEXT NOT NULL,
    handle TEXT NOT NULL,
    price REAL NOT NULL,
    currency_code TEXT NOT NULL,
    description TEXT NOT NULL DEFAULT '',
    thumbnail TEXT,
    image_urls TEXT NOT NULL DEFAULT '[]',
    category_ids TEXT NOT NULL DEFAULT '[]',
    collection_ids TEXT NOT NULL DEFAULT '[]',
    has_image INTEGER NOT NULL DEFAULT 0,
    embedding BLOB,
    embedding_model TEXT,
    embedding_attempts INTEGER NOT NULL DEFAULT 0,
    embedding_error TEXT
);
CREATE INDEX IF NOT EXISTS idx_products_pending ON products (has_image, embedding_model);
CREATE TABLE IF NOT EXISTS categories (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    handle TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS collections (
    id TEXT PRIMARY KEY,
    title TEXT NOT NULL,
    handle TEXT NOT NULL
);
"""

_PENDING_WHERE = (
    "has_image = 1 AND (embedding IS NULL OR embedding_model IS NOT ? ) "
    "AND embedding_attempts < ?"
)


def _to_blob(vector, dim: int) -> bytes:
    vec = np.asarray(vector, dtype="float32")
    if vec.shape != (dim,):
        raise ValueError("embedding must have shape (%d,), got %s" % (dim, vec.shape))
    norm = float(np.linalg.norm(vec))
    if abs(norm - 1.0) >= config.NORM_TOLERANCE:
        raise ValueError("embedding is not L2-normalized (norm=%.6f)" % norm)
    return vec.tobytes()


def _from_blob(blob: Optional[bytes]) -> Optional[np.ndarray]:
    if blob is None:
        return None
    return np.frombuffer(blob, dtype="float32")


class EmbeddingIndex:
    """
    Inner-product FAISS index over unit vectors, keyed by the product primary key.

    On unit vectors inner product equals cosine similarity. Small catalogs
    get an exact flat index; from ``ann_min_vectors`` on an HNSW graph gives
    sublinear lookups.
    """

    def __init__(self, dim: int = config.EMBEDDING_DIM,
                 ann_min_vectors: int = config.ANN_MIN_VECTORS,
                 hnsw_m: int = config.HNSW_M,
                 ef_search: int = config.HNSW_EF_SEARCH):
        self.dim = dim
        self.ann_min_vectors = ann_min_vectors
        self.hnsw_m = hnsw_m
        self.ef_search = ef_search
        self.index = faiss.IndexIDMap(faiss.IndexFlatIP(dim))
        self.approximate = False

    @property
    def ntotal(self) -> int:
        return int(self.index.ntotal)

    def build(self, keys: np.ndarray, vectors: np.ndarray):
        if len(keys) >= self.ann_min_vectors:
            inner = faiss.IndexHNSWFlat(self.dim, self.hnsw_m, faiss.METRIC_INNER_PRODUCT)
            inner.hnsw.efSearch = self.ef_search
            self.approximate = True
        else:
            inner = faiss.IndexFlatIP(self.dim)
            self.approximate = False
        index = faiss.IndexIDMap(inner)
        if len(keys):
            vecs = np.ascontiguousarray(vectors, dtype="float32")
            index.add_with_ids(vecs, np.asarray(keys, dtype="int64"))
        self.index = index

    def search(self, vector: np.ndarray, k: int) -> List[Tuple[int, float]]:
        """Top-k (key, cosine similarity) pairs, best first."""
        if self.index.ntotal == 0:
            return []
        k_eff = min(int(k), self.index.ntotal)
        vec = np.ascontiguousarray(np.asarray(vector, dtype="float32").reshape(1, -1))
        D, I = self.index.search(vec, k_eff)
        out = []
        for sim, key in zip(D[0], I[0]):
            # faiss pads with -1 when fewer neighbours exist
            if int(key) < 0:
                continue
            out.append((int(key), float(sim)))
        return out


class CatalogStore:
    """SQLite-backed catalog. Thread-safe; one connection guarded by a lock."""

    def __init__(self, path: str = config.CATALOG_DB_PATH, dim: int = config.EMBEDDING_DIM):
        if path != ":memory:":
            parent = os.path.dirname(path)
            if parent:
                os.makedirs(parent, exist_ok=True)
        self.path = path
        self.dim = dim
        self._lock = threading.RLock()
        self._conn = sqlite3.connect(path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.executescript(SCHEMA)
        self._catalog_revision = 0
        self._embedding_revision = 0
        self._index_cache = None

    @property
    def catalog_revision(self) -> int:
        return self._catalog_revision

    @property
    def embedding_revision(self) -> int:
        return self._embedding_revision

    def close(self):
        with self._lock:
            self._conn.close()

    def _write(self, sql: str, params: Sequence = (), catalog: bool = True, embedding: bool = False) -> int:
        with self._lock:
            cur = self._conn.execute(sql, params)
            self._conn.commit()
            if catalog:
                self._catalog_revision += 1
            if embedding:
                self._embedding_revision += 1
            return cur.rowcount

    # ---------- catalog writes ----------

    def upsert_product(self, product: Product):
        """Insert or update a product. Changing its images clears the embedding."""
        images = json.dumps(product.image_urls)
        has_image = 1 if product.primary_image else 0
        blob = _to_blob(product.embedding, self.dim) if product.embedding is not None else None
        with self._lock:
            row = self._conn.execute(
                "SELECT image_urls, thumbnail, embedding IS NOT NULL AS embedded FROM products WHERE id = ?",
                (product.id,)
            ).fetchone()
            images_changed = row is not None and (row["image_urls"] != images or row["thumbnail"] != product.thumbnail)
            self._conn.execute(
                """
                INSERT INTO products (id, name, handle, price, currency_code, description, thumbnail,
                                      image_urls, category_ids, collection_ids, has_image)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    name = excluded.name, handle = excluded.handle, price = excluded.price,
                    currency_code = excluded.currency_code, description = excluded.description,
                    thumbnail = excluded.thumbnail, image_urls = excluded.image_urls,
                    category_ids = excluded.category_ids, collection_ids = excluded.collection_ids,
                    has_image = excluded.has_image
                """,
                (product.id, product.name, product.handle, product.price, product.currency_code,
                 product.description, product.thumbnail, images, json.dumps(product.category_ids),
                 json.dumps(product.collection_ids), has_image),
            )
            if images_changed:
                self._clear_embedding(product.id)
            vectors_changed = blob is not None or (images_changed and bool(row["embedded"]))
            if blob is not None:
                self._conn.execute(
                    "UPDATE products SET embedding = ?, embedding_model = ?, embedding_attempts = 0, "
                    "embedding_error = NULL WHERE id = ?",
                    (blob, product.embedding_model, product.id),
                )
            self._conn.commit()
            self._catalog_revision += 1
            if vectors_changed:
                self._embedding_revision += 1

    def _clear_embedding(self, product_id: str):
        self._conn.execute(
            "UPDATE products SET embedding = NULL, embedding_model = NULL, embedding_attempts = 0, "
            "embedding_error = NULL WHERE id = ?",
            (product_id,),
        )

    def update_product_images(self, product_id: str, image_urls: List[str]):
        product = self.get_product(product_id)
        if product is None:
            raise KeyError(product_id)
        product.image_urls = list(image_urls)
        product.embedding = None
        self.upsert_product(product)

    def upsert_category(self, category: Category):
        self._write(
            "INSERT INTO categories (id, name, handle) VALUES (?, ?, ?) "
            "ON CONFLICT(id) DO UPDATE SET name = excluded.name, handle = excluded.handle",
            (category.id, category.name, category.handle),
        )

    def upsert_collection(self, collection: Collection):
        self._write(
            "INSERT INTO collections (id, title, handle) VALUES (?, ?, ?) "
            "ON CONFLICT(id) DO UPDATE SET title = excluded.title, handle = excluded.handle",
            (collection.id, collection.title, collection.handle),
        )

    # ---------- catalog reads ----------

    def _product_from_row(self, row) -> Product:
        emb = _from_blob(row["embedding"])
        return Product(
            id=row["id"], name=row["name"], handle=row["handle"], price=row["price"],
            currency_code=row["currency_code"], description=row["description"],
            thumbnail=row["thumbnail"], image_urls=json.loads(row["image_urls"]),
            category_ids=json.loads(row["category_ids"]),
            collection_ids=json.loads(row["collection_ids"]),
            embedding=emb.tolist() if emb is not None else None,
            embedding_model=row["embedding_model"],
        )

    def get_product(self, product_id: str) -> Optional[Product]:
        with self._lock:
            row = self._conn.execute("SELECT * FROM products WHERE id = ?", (product_id,)).fetchone()
        return self._product_from_row(row) if row else None

    def get_products(self, product_ids: Iterable[str]) -> Dict[str, Product]:
        ids = list(product_ids)
        if not ids:
            return {}
        marks = ",".join("?" * len(ids))
        with self._lock:
            rows = self._conn.execute("SELECT * FROM products WHERE id IN (%s)" % marks, ids).fetchall()
        return {r["id"]: self._product_from_row(r) for r in rows}

    def list_products(self) -> List[Product]:
        with self._lock:
            rows = self._conn.execute("SELECT * FROM products ORDER BY pk").fetchall()
        return [self._product_from_row(r) for r in rows]

    def count_products(self) -> int:
        with self._lock:
            return self._conn.execute("SELECT COUNT(*) FROM products").fetchone()[0]

    @staticmethod
    def _like_pattern(q: str) -> str:
        escaped = q.lower().replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
        return "%" + escaped + "%"

    def search_categories(self, q: str, limit: int) -> List[Category]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT id, name, handle FROM categories WHERE lower(name) LIKE ? ESCAPE '\\' "
                "ORDER BY name LIMIT ?",
                (self._like_pattern(q), limit),
            ).fetchall()
        return [Category(id=r["id"], name=r["name"], handle=r["handle"]) for r in rows]

    def search_collections(self, q: str, limit: int) -> List[Collection]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT id, title, handle FROM collections WHERE lower(title) LIKE ? ESCAPE '\\' "
                "ORDER BY title LIMIT ?",
                (self._like_pattern(q), limit),
            ).fetchall()
        return [Collection(id=r["id"], title=r["title"], handle=r["handle"]) for r in rows]

    # ---------- embedding column ----------

    def products_missing_embeddings(self, limit: int, model_version: str,
                                    max_attempts: int = config.BACKFILL_MAX_ATTEMPTS,
                                    exclude_ids: Iterable[str] = ()) -> List[Product]:
        """Products with an image whose embedding is absent or from another encoder."""
        exclude = list(exclude_ids)
        sql = "SELECT * FROM products WHERE " + _PENDING_WHERE
        params: list = [model_version, max_attempts]
        if exclude:
            sql += " AND id NOT IN (%s)" % ",".join("?" * len(exclude))
            params.extend(exclude)
        # products that never failed go first so retries cannot starve them
        sql += " ORDER BY embedding_error IS NOT NULL, pk LIMIT ?"
        params.append(limit)
        with self._lock:
            rows = self._conn.execute(sql, params).fetchall()
        return [self._product_from_row(r) for r in rows]

    def count_missing_embeddings(self, model_version: str,
                                 max_attempts: int = config.BACKFILL_MAX_ATTEMPTS) -> int:
        with self._lock:
            return self._conn.execute(
                "SELECT COUNT(*) FROM products WHERE " + _PENDING_WHERE, (model_version, max_attempts)
            ).fetchone()[0]

    def save_embedding(self, product_id: str, vector, model_version: str):
        blob = _to_blob(vector, self.dim)
        changed = self._write(
            "UPDATE products SET embedding = ?, embedding_model = ?, embedding_attempts = 0, "
            "embedding_error = NULL WHERE id = ?",
            (blob, model_version, product_id),
            catalog=False, embedding=True,
        )
        if not changed:
            raise KeyError(product_id)

    def record_embedding_failure(self, product_id: str, error: str, count_attempt: bool = True):
        """Keep the last error; only counted attempts move the product towards exhaustion."""
        self._write(
            "UPDATE products SET embedding_attempts = embedding_attempts + ?, embedding_error = ? "
            "WHERE id = ?",
            (1 if count_attempt else 0, error[:500], product_id),
            catalog=False,
        )

    def embedding_status(self, model_version: str,
                         max_attempts: int = config.BACKFILL_MAX_ATTEMPTS) -> EmbeddingStatus:
        with self._lock:
            row = self._conn.execute(
                """
                SELECT COUNT(*) AS total,
                       SUM(CASE WHEN embedding IS NOT NULL AND embedding_model = ? THEN 1 ELSE 0 END) AS current,
                       SUM(CASE WHEN embedding IS NOT NULL AND embedding_model IS NOT ? THEN 1 ELSE 0 END) AS stale,
                       SUM(CASE WHEN has_image = 1 AND (embedding IS NULL OR embedding_model IS NOT ?)
                                 AND embedding_attempts >= ? THEN 1 ELSE 0 END) AS exhausted
                FROM products
                """,
                (model_version, model_version, model_version, max_attempts),
            ).fetchone()
        return EmbeddingStatus(
            total=row["total"] or 0,
            with_embedding=row["current"] or 0,
            pending=self.count_missing_embeddings(model_version, max_attempts),
            stale=row["stale"] or 0,
            exhausted=row["exhausted"] or 0,
            model=model_version,
        )

    def embeddings(self, model_version: str) -> Tuple[np.ndarray, List[str], np.ndarray]:
        """(keys, product ids, matrix) for every embedding comparable with ``model_version``."""
        with self._lock:
            rows = self._conn.execute(
                "SELECT pk, id, embedding FROM products WHERE embedding IS NOT NULL AND embedding_model = ? "
                "ORDER BY pk",
                (model_version,),
            ).fetchall()
        if not rows:
            return np.zeros((0,), dtype="int64"), [], np.zeros((0, self.dim), dtype="float32")
        keys = np.array([r["pk"] for r in rows], dtype="int64")
        ids = [r["id"] for r in rows]
        matrix = np.vstack([_from_blob(r["embedding"]) for r in rows]).astype("float32")
        return keys, ids, matrix

    def embedding_index(self, model_version: str) -> Tuple[EmbeddingIndex, Dict[int, str]]:
        """The FAISS index over current embeddings, rebuilt when the embedding revision moved."""
        with self._lock:
            cached = self._index_cache
            if cached is not None and cached[0] == self._embedding_revision and cached[1] == model_version:
                return cached[2], cached[3]
            revision = self._embedding_revision
            keys, ids, matrix = self.embeddings(model_version)
            index = EmbeddingIndex(dim=self.dim)
            index.build(keys, matrix)
            key_to_id = dict(zip(keys.tolist(), ids))
            self._index_cache = (revision, model_version, index, key_to_id)
            logger.info("Embedding index rebuilt: %d vectors (%s)",
                        index.ntotal, "hnsw" if index.approximate else "flat")
            return index, key_to_id
