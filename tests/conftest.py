"""Shared test fixtures for the catalog search tests."""

import io
import os
import zlib

import numpy as np
import pytest
from PIL import Image

# never reach for the network from tests
os.environ.setdefault("NLTK_AUTO_DOWNLOAD", "0")

from catalog_search.embeddings import EmbeddingEncoder  # noqa: E402
from catalog_search.lexical import Analyzer  # noqa: E402
from catalog_search.models import Category, Collection, Product  # noqa: E402
from catalog_search.ranking import HybridRanker  # noqa: E402
from catalog_search.store import CatalogStore  # noqa: E402

DIM = 512

RED = (220, 20, 20)
BLUE = (20, 20, 220)
GREEN = (20, 200, 20)
YELLOW = (230, 220, 20)
PURPLE = (150, 20, 200)

TEXT_COLORS = {"red": RED, "blue": BLUE, "green": GREEN, "yellow": YELLOW, "purple": PURPLE}

CATALOG = [
    ("p-robot-car", "Robot Racing Car", "Remote control racing car with lights", RED),
    ("p-train", "Wooden Train Set", "Classic wooden railway for toddlers", YELLOW),
    ("p-teddy", "Teddy Bear Plush", "Soft cuddly bear", PURPLE),
    ("p-robot-kit", "Robot Building Kit", "Build and code your own robot", BLUE),
    ("p-blocks", "Building Blocks", "Colourful stacking blocks", GREEN),
    ("p-giftcard", "Gift Card", "Digital gift card", None),
]

STOPWORDS = {"the", "a", "an", "and", "for", "with", "your", "own", "of"}


def color_vector(rgb, dim=DIM):
    """Unit vector standing in for a CLIP embedding of a solid-colour image."""
    v = np.zeros(dim, dtype="float32")
    v[:3] = np.asarray(rgb, dtype="float32") / 255.0 - 0.5
    v[3] = 0.05
    return v / np.linalg.norm(v)


def image_bytes(color=RED, size=(64, 64), fmt="PNG", mode="RGB"):
    fill = color if mode == "RGB" else tuple(color) + (255,)
    img = Image.new(mode, size, fill)
    buf = io.BytesIO()
    img.save(buf, format=fmt)
    return buf.getvalue()


class FakeClipModel:
    """
    Minimal stand-in for a sentence-transformers CLIP model.

    Images embed by mean colour; text embeds to a colour when it names one,
    otherwise to a deterministic pseudo-random direction.
    """

    def __init__(self, dim=DIM):
        self.dim = dim
        self.calls = []

    def _embed_text(self, text):
        for word, rgb in TEXT_COLORS.items():
            if word in text.lower():
                return color_vector(rgb, self.dim)
        rng = np.random.default_rng(zlib.crc32(text.encode("utf-8")))
        v = rng.normal(size=self.dim).astype("float32")
        return v / np.linalg.norm(v)

    def encode(self, inputs, convert_to_numpy=True, normalize_embeddings=True, show_progress_bar=False):
        out = []
        for item in inputs:
            self.calls.append(item)
            if isinstance(item, Image.Image):
                mean = np.asarray(item.convert("RGB"), dtype="float32").reshape(-1, 3).mean(axis=0)
                out.append(color_vector(mean, self.dim))
            else:
                out.append(self._embed_text(str(item)))
        return np.vstack(out)


@pytest.fixture
def fake_model():
    return FakeClipModel()


@pytest.fixture
def encoder(fake_model):
    return EmbeddingEncoder(model_factory=lambda: fake_model, timeout=5)


@pytest.fixture
def analyzer():
    return Analyzer(language="english", stopwords=STOPWORDS)


def make_product(pid, name, description="", color=None, **extra):
    images = ["https://cdn.example.com/%s.jpg" % pid] if color is not None else []
    return Product(
        id=pid, name=name, handle=pid.replace("p-", ""), price=1499.0, currency_code="INR",
        description=description, image_urls=images, **extra
    )


@pytest.fixture
def empty_store():
    store = CatalogStore(":memory:")
    yield store
    store.close()


@pytest.fixture
def store(empty_store, encoder):
    for pid, name, desc, color in CATALOG:
        kwargs = {}
        if color is not None:
            kwargs = {"embedding": color_vector(color).tolist(), "embedding_model": encoder.model_version}
        empty_store.upsert_product(make_product(pid, name, desc, color, **kwargs))
    empty_store.upsert_category(Category(id="c-toys", name="Toys", handle="toys"))
    empty_store.upsert_category(Category(id="c-robotics", name="Robotics", handle="robotics"))
    empty_store.upsert_collection(Collection(id="col-robot-week", title="Robot Week", handle="robot-week"))
    empty_store.upsert_collection(Collection(id="col-best", title="Bestsellers", handle="bestsellers"))
    return empty_store


@pytest.fixture
def ranker(store, encoder, analyzer):
    return HybridRanker(store, encoder=encoder, analyzer=analyzer)
