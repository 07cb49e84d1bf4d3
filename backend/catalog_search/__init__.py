"""
catalog_search: hybrid text + image product search for the storefront catalog.

Modules:
    config         Environment-driven settings
    errors         Search error taxonomy and user-facing messages
    models         Pydantic request/response and catalog models
    preprocessing  Upload validation and canonical image re-encoding
    embeddings     Lazily loaded CLIP encoder (image + text towers)
    store          SQLite catalog with the embedding column and FAISS index
    lexical        BM25 / trigram / prefix text relevance
    ranking        Hybrid text + image ranker
    backfill       Batched embedding backfill worker
    service        Search use-cases behind the HTTP API
    main           FastAPI app
    client         Async query orchestrator (debounce, cancel, cache)
"""

__version__ = "0.3.0"
