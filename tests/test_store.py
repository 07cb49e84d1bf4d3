import numpy as np
import pytest

from catalog_search.models import Category, Product
from catalog_search.store import EmbeddingIndex

from conftest import BLUE, RED, color_vector, make_product


class TestCatalogStore:
    def test_product_round_trip(self, empty_store):
        product = make_product("p-1", "Robot Racing Car", "Remote control car", RED,
                               category_ids=["c-toys"], embedding=color_vector(RED).tolist(),
                               embedding_model="clip-ViT-B-32/512")
        empty_store.upsert_product(product)
        got = empty_store.get_product("p-1")
        assert got.name == "Robot Racing Car"
        assert got.image_urls == product.image_urls
        assert got.category_ids == ["c-toys"]
        assert got.embedding_model == "clip-ViT-B-32/512"
        np.testing.assert_allclose(got.embedding, color_vector(RED), atol=1e-6)

    def test_missing_product(self, empty_store):
        assert empty_store.get_product("nope") is None
        assert empty_store.get_products([]) == {}

    def test_unnormalized_embedding_refused(self, empty_store):
        product = make_product("p-1", "Car", color=RED, embedding=[0.5] * 512, embedding_model="m/512")
        with pytest.raises(ValueError):
            empty_store.upsert_product(product)

    def test_wrong_dimension_refused(self, empty_store):
        empty_store.upsert_product(make_product("p-1", "Car", color=RED))
        with pytest.raises(ValueError):
            empty_store.save_embedding("p-1", [1.0, 0.0, 0.0], "m/3")

    def test_save_embedding_unknown_product(self, empty_store):
        with pytest.raises(KeyError):
            empty_store.save_embedding("ghost", color_vector(RED), "m/512")

    def test_pending_selection(self, store, encoder):
        version = encoder.model_version
        assert store.products_missing_embeddings(10, version) == []
        store.upsert_product(make_product("p-new", "Robot Dog", color=BLUE))
        pending = store.products_missing_embeddings(10, version)
        assert [p.id for p in pending] == ["p-new"]
        # products without any image are never selected
        assert "p-giftcard" not in [p.id for p in pending]

    def test_other_model_version_is_pending_and_not_indexed(self, store, encoder):
        version = encoder.model_version
        store.save_embedding("p-robot-car", color_vector(RED), "some-other-model/512")
        assert [p.id for p in store.products_missing_embeddings(10, version)] == ["p-robot-car"]
        _, ids, matrix = store.embeddings(version)
        assert "p-robot-car" not in ids
        assert matrix.shape == (4, 512)
        assert store.embedding_status(version).stale == 1

    def test_image_change_clears_embedding(self, store, encoder):
        store.update_product_images("p-robot-car", ["https://cdn.example.com/new.jpg"])
        product = store.get_product("p-robot-car")
        assert product.embedding is None
        assert product.primary_image == "https://cdn.example.com/new.jpg"
        assert store.count_missing_embeddings(encoder.model_version) == 1

    def test_metadata_change_keeps_embedding(self, store):
        product = store.get_product("p-robot-car")
        product.name = "Robot Racing Car XL"
        product.embedding = None
        store.upsert_product(product)
        assert store.get_product("p-robot-car").embedding is not None

    def test_failures_eventually_exhaust(self, store, encoder):
        version = encoder.model_version
        store.upsert_product(make_product("p-broken", "Broken Link", color=RED))
        for _ in range(3):
            store.record_embedding_failure("p-broken", "Image fetch failed")
        assert store.products_missing_embeddings(10, version, max_attempts=3) == []
        status = store.embedding_status(version, max_attempts=3)
        assert status.exhausted == 1
        assert status.pending == 0

    def test_embedding_status(self, store, encoder):
        status = store.embedding_status(encoder.model_version)
        assert status.total == 6
        assert status.with_embedding == 5
        assert status.pending == 0
        assert status.stale == 0
        assert status.model == encoder.model_version

    def test_taxonomy_search_is_case_insensitive(self, store):
        assert [c.id for c in store.search_categories("ROBOT", 5)] == ["c-robotics"]
        assert [c.id for c in store.search_collections("robot", 5)] == ["col-robot-week"]
        assert store.search_categories("robot", 0) == []

    def test_taxonomy_search_escapes_wildcards(self, store):
        store.upsert_category(Category(id="c-sale", name="50% Off", handle="sale"))
        assert store.search_categories("%", 10) == [Category(id="c-sale", name="50% Off", handle="sale")]
        assert store.search_categories("_", 10) == []

    def test_index_cached_until_embeddings_change(self, store, encoder):
        version = encoder.model_version
        index, key_to_id = store.embedding_index(version)
        assert index.ntotal == 5
        assert sorted(key_to_id.values()) == ["p-blocks", "p-robot-car", "p-robot-kit", "p-teddy", "p-train"]
        assert store.embedding_index(version)[0] is index
        store.upsert_product(Product(id="p-x", name="X", handle="x", price=1.0))
        store.upsert_category(Category(id="c-games", name="Games", handle="games"))
        store.record_embedding_failure("p-train", "Image fetch failed")
        assert store.embedding_index(version)[0] is index
        store.upsert_product(make_product("p-y", "Y", color=BLUE, embedding=color_vector(BLUE).tolist(),
                                          embedding_model=version))
        rebuilt = store.embedding_index(version)[0]
        assert rebuilt is not index
        assert rebuilt.ntotal == 6
        store.save_embedding("p-x", color_vector(RED), version)
        assert store.embedding_index(version)[0] is not rebuilt

    def test_image_change_drops_vector_from_index(self, store, encoder):
        version = encoder.model_version
        assert store.embedding_index(version)[0].ntotal == 5
        store.update_product_images("p-robot-car", ["https://cdn.example.com/new.jpg"])
        _, key_to_id = store.embedding_index(version)
        assert "p-robot-car" not in key_to_id.values()

    def test_uncounted_failure_keeps_product_pending(self, store, encoder):
        version = encoder.model_version
        store.upsert_product(make_product("p-flaky", "Flaky CDN", color=RED))
        for _ in range(5):
            store.record_embedding_failure("p-flaky", "connection reset", count_attempt=False)
        assert [p.id for p in store.products_missing_embeddings(10, version, max_attempts=3)] == ["p-flaky"]
        assert store.embedding_status(version, max_attempts=3).exhausted == 0


class TestEmbeddingIndex:
    def _vectors(self, n, dim=16, seed=7):
        rng = np.random.default_rng(seed)
        v = rng.normal(size=(n, dim)).astype("float32")
        return v / np.linalg.norm(v, axis=1, keepdims=True)

    def test_flat_below_threshold(self):
        vecs = self._vectors(10)
        index = EmbeddingIndex(dim=16, ann_min_vectors=100)
        index.build(np.arange(10, 20, dtype="int64"), vecs)
        assert not index.approximate
        hits = index.search(vecs[3], 3)
        assert hits[0][0] == 13
        assert hits[0][1] == pytest.approx(1.0, abs=1e-5)
        assert [s for _, s in hits] == sorted((s for _, s in hits), reverse=True)

    def test_hnsw_from_threshold(self):
        vecs = self._vectors(50)
        index = EmbeddingIndex(dim=16, ann_min_vectors=20)
        index.build(np.arange(50, dtype="int64"), vecs)
        assert index.approximate
        assert index.search(vecs[42], 5)[0][0] == 42

    def test_k_larger_than_index(self):
        vecs = self._vectors(3)
        index = EmbeddingIndex(dim=16)
        index.build(np.arange(3, dtype="int64"), vecs)
        assert len(index.search(vecs[0], 10)) == 3

    def test_empty(self):
        index = EmbeddingIndex(dim=16)
        index.build(np.zeros((0,), dtype="int64"), np.zeros((0, 16), dtype="float32"))
        assert index.search(self._vectors(1)[0], 5) == []
