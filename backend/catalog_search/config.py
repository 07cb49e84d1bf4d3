"""
Settings read from the environment (tunable parameters).

Every tunable of the search subsystem lives here as a module-level constant
read once at import. Components take these as constructor defaults, so tests
pass explicit values instead of patching the environment.
"""

import os


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default) in ("1", "true", "True", "yes")


def _env_list(name: str, default: str):
    return [v.strip() for v in os.getenv(name, default).split(",") if v.strip()]


# -----------------------------------------------------------------------------
# Datastore
# -----------------------------------------------------------------------------
CATALOG_DB_PATH = os.getenv("CATALOG_DB_PATH", "backend/data/catalog.db")

# -----------------------------------------------------------------------------
# Encoder
# -----------------------------------------------------------------------------
EMBEDDING_MODEL = os.getenv("EMBEDDING_MODEL", "clip-ViT-B-32")
EMBEDDING_DIM = int(os.getenv("EMBEDDING_DIM", "512"))
EMBEDDING_DEVICE = os.getenv("EMBEDDING_DEVICE") or None
ENCODE_TIMEOUT_SECONDS = float(os.getenv("ENCODE_TIMEOUT_SECONDS", "15"))
SERIALIZE_INFERENCE = _env_bool("SERIALIZE_INFERENCE", "1")
NORM_TOLERANCE = 1e-3

# -----------------------------------------------------------------------------
# Upload preprocessing
# -----------------------------------------------------------------------------
MAX_UPLOAD_BYTES = int(os.getenv("MAX_UPLOAD_BYTES", str(10 * 1024 * 1024)))
ALLOWED_MIME_TYPES = frozenset(_env_list("ALLOWED_MIME_TYPES", "image/jpeg,image/png,image/webp"))
PREPROCESS_MAX_SIDE = int(os.getenv("PREPROCESS_MAX_SIDE", "512"))
PREPROCESS_JPEG_QUALITY = int(os.getenv("PREPROCESS_JPEG_QUALITY", "90"))

# -----------------------------------------------------------------------------
# Ranking
# -----------------------------------------------------------------------------
TEXT_MATCH_THRESHOLD = float(os.getenv("TEXT_MATCH_THRESHOLD", "0.3"))
IMAGE_MATCH_THRESHOLD = float(os.getenv("IMAGE_MATCH_THRESHOLD", "0.5"))
TEXT_WEIGHT = float(os.getenv("TEXT_WEIGHT", "0.4"))
IMAGE_WEIGHT = float(os.getenv("IMAGE_WEIGHT", "0.6"))

FTS_WEIGHT = float(os.getenv("FTS_WEIGHT", "1.0"))
TRIGRAM_WEIGHT = float(os.getenv("TRIGRAM_WEIGHT", "0.8"))
PREFIX_BONUS = float(os.getenv("PREFIX_BONUS", "0.9"))
WORD_PREFIX_BONUS = float(os.getenv("WORD_PREFIX_BONUS", "0.6"))
SEARCH_LANGUAGE = os.getenv("SEARCH_LANGUAGE", "english")

USE_TEXT_EMBEDDING = _env_bool("USE_TEXT_EMBEDDING", "0")

# below ANN_MIN_VECTORS an exact inner-product scan is cheaper than HNSW
ANN_MIN_VECTORS = int(os.getenv("ANN_MIN_VECTORS", "1000"))
ANN_CANDIDATES = int(os.getenv("ANN_CANDIDATES", "200"))
HNSW_M = int(os.getenv("HNSW_M", "32"))
HNSW_EF_SEARCH = int(os.getenv("HNSW_EF_SEARCH", "64"))

# -----------------------------------------------------------------------------
# Backfill
# -----------------------------------------------------------------------------
BACKFILL_BATCH_SIZE = int(os.getenv("BACKFILL_BATCH_SIZE", "10"))
BACKFILL_CONCURRENCY = int(os.getenv("BACKFILL_CONCURRENCY", "4"))
BACKFILL_MAX_ATTEMPTS = int(os.getenv("BACKFILL_MAX_ATTEMPTS", "3"))
IMAGE_FETCH_TIMEOUT = float(os.getenv("IMAGE_FETCH_TIMEOUT", "10"))

# -----------------------------------------------------------------------------
# HTTP surface
# -----------------------------------------------------------------------------
DEFAULT_PRODUCT_LIMIT = int(os.getenv("DEFAULT_PRODUCT_LIMIT", "6"))
DEFAULT_TAXONOMY_LIMIT = int(os.getenv("DEFAULT_TAXONOMY_LIMIT", "5"))
MAX_SUGGESTIONS = int(os.getenv("MAX_SUGGESTIONS", "6"))

# CORS: front dev
CORS_ORIGINS = _env_list(
    "CORS_ORIGINS",
    "http://localhost:5173,http://127.0.0.1:5173,http://localhost:3000,http://127.0.0.1:3000",
)

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"
