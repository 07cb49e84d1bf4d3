import asyncio
import time

import pytest

from catalog_search.backfill import BackfillWorker
from catalog_search.errors import InvalidInput
from catalog_search.models import Category, Collection
from catalog_search.ranking import HybridRanker
from catalog_search.service import SearchService, dedupe_suggestions

from conftest import RED, color_vector, image_bytes, make_product


@pytest.fixture
def service(store, encoder, ranker):
    worker = BackfillWorker(store, encoder, fetcher=lambda url: image_bytes(color=RED))
    return SearchService(store, encoder, ranker=ranker, backfill_worker=worker)


class TestDedupeSuggestions:
    def test_keeps_first_occurrence_order(self):
        assert dedupe_suggestions(["robot", "Robot Kit", "robot", "", "Robotics"]) == ["robot", "Robot Kit", "Robotics"]

    def test_capped(self):
        assert dedupe_suggestions([str(i) for i in range(20)], limit=6) == ["0", "1", "2", "3", "4", "5"]


class TestSearchText:
    def test_products_taxonomy_and_suggestions(self, service):
        resp = service.search_text("robot")
        assert [r.product.id for r in resp.products] == ["p-robot-car", "p-robot-kit"]
        assert [c.name for c in resp.categories] == ["Robotics"]
        assert [c.title for c in resp.collections] == ["Robot Week"]
        assert resp.suggestions == ["robot", "Robot Racing Car", "Robot Building Kit", "Robotics", "Robot Week"]

    def test_taxonomy_without_product_matches(self, empty_store, encoder, analyzer):
        empty_store.upsert_product(make_product("p-train", "Wooden Train Set", "Classic wooden railway"))
        empty_store.upsert_category(Category(id="c-robotics", name="Robotics", handle="robotics"))
        empty_store.upsert_collection(Collection(id="col-robot-week", title="Robot Week", handle="robot-week"))
        svc = SearchService(empty_store, encoder,
                            ranker=HybridRanker(empty_store, encoder=encoder, analyzer=analyzer))
        resp = svc.search_text("robot")
        assert resp.products == []
        assert [c.id for c in resp.categories] == ["c-robotics"]
        assert [c.id for c in resp.collections] == ["col-robot-week"]
        assert resp.suggestions == ["robot", "Robotics", "Robot Week"]

    def test_blank_query(self, service):
        resp = service.search_text("   ")
        assert resp.products == [] and resp.categories == [] and resp.suggestions == []

    def test_taxonomy_limit_zero(self, service):
        resp = service.search_text("robot", taxonomy_limit=0)
        assert resp.categories == [] and resp.collections == []
        assert len(resp.products) == 2

    def test_bad_limit(self, service):
        with pytest.raises(InvalidInput):
            service.search_text("robot", limit=0)

    def test_text_search_does_not_load_the_encoder(self, service, encoder):
        service.search_text("robot")
        assert not encoder.loaded


class TestSearchImage:
    def test_photo_search(self, service):
        resp = asyncio.run(service.search_image(image_bytes(color=RED, size=(2000, 2000)), "image/png"))
        assert resp.products[0].product.id == "p-robot-car"
        assert resp.metadata.embeddingDimensions == 512
        assert resp.metadata.threshold == pytest.approx(0.5)
        assert resp.metadata.total == len(resp.products)

    def test_explicit_threshold(self, service):
        resp = asyncio.run(service.search_image(image_bytes(color=RED), "image/png", threshold=0.0))
        assert len(resp.products) > 1
        assert resp.metadata.threshold == 0.0

    def test_blocking_work_runs_off_the_event_loop(self, service, store, monkeypatch):
        lookup = store.embedding_index

        def slow_lookup(model_version):
            time.sleep(0.3)
            return lookup(model_version)

        monkeypatch.setattr(store, "embedding_index", slow_lookup)

        async def scenario():
            gaps = []
            done = asyncio.Event()

            async def ticker():
                last = time.monotonic()
                while not done.is_set():
                    await asyncio.sleep(0.01)
                    now = time.monotonic()
                    gaps.append(now - last)
                    last = now

            async def search():
                try:
                    return await service.search_image(image_bytes(color=RED), "image/png")
                finally:
                    done.set()

            resp, _ = await asyncio.gather(search(), ticker())
            return resp, gaps

        resp, gaps = asyncio.run(scenario())
        assert resp.products[0].product.id == "p-robot-car"
        # the 0.3s lookup happened while the loop kept ticking
        assert max(gaps) < 0.2


class TestAdmin:
    def test_backfill_and_status(self, service, store):
        store.upsert_product(make_product("p-new", "Robot Dog", color=RED))
        assert service.embedding_status().pending == 1
        report = service.backfill(5)
        assert (report.processed, report.success, report.remaining) == (1, 1, False)
        status = service.embedding_status()
        assert status.pending == 0
        assert status.with_embedding == 6

    def test_backfill_result_is_searchable(self, service, store):
        store.upsert_product(make_product("p-new", "Robot Dog", color=RED))
        service.backfill(5)
        results = service.ranker.rank_vector(color_vector(RED), None, 0.5, 6)
        assert {"p-robot-car", "p-new"} <= {r.product.id for r in results}

    def test_backfill_batch_size(self, service):
        with pytest.raises(InvalidInput):
            service.backfill(0)
