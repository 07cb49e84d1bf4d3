"""
Load products, categories and collections from a JSON export into the
catalog store used by the search backend.

Usage:
    python backend/load_catalog.py --catalog data/catalog.json

The JSON file holds {"products": [...], "categories": [...], "collections": [...]};
a bare list is read as products only. Embeddings are not computed here, run
backend/run_backfill.py afterwards.
"""
import argparse
import json
import logging
import os

from catalog_search import config
from catalog_search.models import Category, Collection, Product
from catalog_search.store import CatalogStore

logger = logging.getLogger("load_catalog")


def load_file(path: str) -> dict:
    with open(path, "r", encoding="utf-8") as f:
        data = json.load(f)
    if isinstance(data, list):
        return {"products": data, "categories": [], "collections": []}
    return data


def import_catalog(store: CatalogStore, data: dict) -> dict:
    counts = {"products": 0, "categories": 0, "collections": 0}
    for raw in data.get("categories", []):
        store.upsert_category(Category(**raw))
        counts["categories"] += 1
    for raw in data.get("collections", []):
        store.upsert_collection(Collection(**raw))
        counts["collections"] += 1
    for raw in data.get("products", []):
        # legacy exports carry "title"/"image" instead of "name"/"image_urls"
        raw = dict(raw)
        raw["id"] = str(raw.get("id"))
        if "name" not in raw and "title" in raw:
            raw["name"] = raw.pop("title")
        if "image_urls" not in raw and raw.get("image"):
            raw["image_urls"] = [raw.pop("image")]
        raw.setdefault("handle", raw["id"])
        store.upsert_product(Product(**raw))
        counts["products"] += 1
    return counts


def main():
    logging.basicConfig(level=config.LOG_LEVEL, format=config.LOG_FORMAT)
    parser = argparse.ArgumentParser()
    parser.add_argument("--catalog", default=os.environ.get("PRODUCTS_PATH", "data/catalog.json"),
                        help="JSON export with products/categories/collections.")
    parser.add_argument("--db", default=config.CATALOG_DB_PATH, help="SQLite catalog path.")
    args = parser.parse_args()

    if not os.path.exists(args.catalog):
        raise SystemExit("Catalog file not found: %s" % args.catalog)
    store = CatalogStore(args.db)
    counts = import_catalog(store, load_file(args.catalog))
    print("Loaded %(products)d products, %(categories)d categories, %(collections)d collections" % counts)
    print("Catalog stored in", args.db)


if __name__ == "__main__":
    main()
