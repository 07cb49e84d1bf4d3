"""
CLIP encoder shared by image search, text search and the backfill worker.

The sentence-transformers CLIP checkpoint carries both towers (vision and
text) of a joint embedding model, so images and text land in the same
512-dimensional space. Weights are loaded at most once per process through a
single-flight loader; inference calls share the loaded model.
"""

import asyncio
import io
import logging
import threading
import time
from concurrent.futures import Future
from typing import Callable, Generic, Optional, TypeVar

import numpy as np
from PIL import Image, UnidentifiedImageError
from sentence_transformers import SentenceTransformer

from . import config
from .errors import CorruptImage, EncodingFailed, EncodingTimeout

logger = logging.getLogger(__name__)

T = TypeVar("T")


class SingleFlight(Generic[T]):
    """
    Run an expensive factory exactly once, however many callers race for it.

    The first caller installs a Future under the lock and runs the factory;
    every concurrent caller blocks on that same Future. A failed load is
    delivered to everyone waiting on it and then cleared, so the next call
    starts a fresh attempt.
    """

    def __init__(self, factory: Callable[[], T]):
        self._factory = factory
        self._lock = threading.Lock()
        self._future: Optional[Future] = None

    @property
    def loaded(self) -> bool:
        f = self._future
        return f is not None and f.done() and f.exception() is None

    def get(self) -> T:
        with self._lock:
            future = self._future
            owner = future is None
            if owner:
                future = Future()
                self._future = future
        if owner:
            try:
                future.set_result(self._factory())
            except BaseException as e:
                with self._lock:
                    self._future = None
                future.set_exception(e)
        return future.result()

    async def aget(self) -> T:
        if self.loaded:
            return self._future.result()
        return await asyncio.get_running_loop().run_in_executor(None, self.get)


def _load_sentence_transformer(model_name: str, device: Optional[str]):
    logger.info("Loading embedding model %s ...", model_name)
    t0 = time.time()
    model = SentenceTransformer(model_name, device=device)
    logger.info("Embedding model %s loaded in %.1fs", model_name, time.time() - t0)
    return model


class EmbeddingEncoder:
    """
    Maps canonical image bytes or a text string to a unit-length float32 vector.

    ``model_factory`` builds the underlying model; anything with a
    sentence-transformers style ``encode(inputs, convert_to_numpy=True,
    normalize_embeddings=True)`` works, which keeps tests free of real weights.
    """

    def __init__(self,
                 model_name: str = config.EMBEDDING_MODEL,
                 dim: int = config.EMBEDDING_DIM,
                 device: Optional[str] = config.EMBEDDING_DEVICE,
                 timeout: float = config.ENCODE_TIMEOUT_SECONDS,
                 serialize_inference: bool = config.SERIALIZE_INFERENCE,
                 model_factory: Optional[Callable[[], object]] = None):
        self.model_name = model_name
        self.dim = dim
        self.timeout = timeout
        factory = model_factory or (lambda: _load_sentence_transformer(model_name, device))
        self._model = SingleFlight(factory)
        self._inference_lock = threading.Lock() if serialize_inference else None

    @property
    def model_version(self) -> str:
        """Tag stored next to every embedding this encoder produces."""
        return "%s/%d" % (self.model_name, self.dim)

    @property
    def loaded(self) -> bool:
        return self._model.loaded

    def _load(self):
        try:
            return self._model.get()
        except Exception as e:
            logger.exception("Embedding model failed to load: %s", e)
            raise EncodingFailed("model load failed: %s" % e)

    def warm_up(self):
        """Load the model now; raises EncodingFailed when it cannot be loaded."""
        self._load()

    def _run(self, inputs):
        model = self._load()
        try:
            if self._inference_lock is not None:
                with self._inference_lock:
                    out = model.encode(inputs, convert_to_numpy=True, normalize_embeddings=True,
                                       show_progress_bar=False)
            else:
                out = model.encode(inputs, convert_to_numpy=True, normalize_embeddings=True,
                                   show_progress_bar=False)
        except Exception as e:
            logger.exception("Encoder inference failed: %s", e)
            raise EncodingFailed("inference failed: %s" % e)
        return self._verify(out)

    def _verify(self, out) -> np.ndarray:
        vec = np.asarray(out, dtype="float32")
        if vec.ndim == 2 and vec.shape[0] == 1:
            vec = vec[0]
        if vec.shape != (self.dim,):
            raise EncodingFailed("unexpected embedding shape %s, expected (%d,)" % (vec.shape, self.dim))
        if not np.all(np.isfinite(vec)):
            raise EncodingFailed("embedding contains non-finite values")
        norm = float(np.linalg.norm(vec))
        if abs(norm - 1.0) >= config.NORM_TOLERANCE:
            # a zero or unnormalized vector would silently corrupt cosine ranking
            raise EncodingFailed("embedding norm %.6f is not unit length" % norm)
        return vec

    def encode_image(self, canonical_bytes: bytes) -> np.ndarray:
        try:
            with Image.open(io.BytesIO(canonical_bytes)) as img:
                img = img.convert("RGB")
        except (UnidentifiedImageError, OSError) as e:
            raise CorruptImage("encoder could not decode image: %s" % e)
        return self._run([img])

    def encode_text(self, text: str) -> np.ndarray:
        text = (text or "").strip()
        if not text:
            raise EncodingFailed("cannot encode empty text")
        return self._run([text])

    async def _with_timeout(self, fn, arg) -> np.ndarray:
        loop = asyncio.get_running_loop()
        try:
            return await asyncio.wait_for(loop.run_in_executor(None, fn, arg), timeout=self.timeout)
        except asyncio.TimeoutError:
            logger.error("Encoding exceeded %.1fs ceiling", self.timeout)
            raise EncodingTimeout("encoding exceeded %.1fs" % self.timeout)

    async def aencode_image(self, canonical_bytes: bytes) -> np.ndarray:
        """encode_image off the event loop, bounded by the encode timeout."""
        return await self._with_timeout(self.encode_image, canonical_bytes)

    async def aencode_text(self, text: str) -> np.ndarray:
        return await self._with_timeout(self.encode_text, text)


_default_encoder = SingleFlight(EmbeddingEncoder)


def get_encoder() -> EmbeddingEncoder:
    """Process-wide encoder; the model itself still loads lazily on first encode."""
    return _default_encoder.get()
