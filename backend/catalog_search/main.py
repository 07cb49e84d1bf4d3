"""
backend/catalog_search/main.py
HTTP surface of the hybrid product search:
 - POST /search/text            text search + taxonomy matches + suggestions
 - POST /search/image           photo search (multipart field "image")
 - POST /admin/search/backfill  one bounded, idempotent backfill batch
 - GET  /admin/search/status    embedding coverage of the catalog
 - GET  /health
"""

import logging
import os
import threading

from fastapi import Depends, FastAPI, File, Query, Request, UploadFile
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from . import config
from .embeddings import get_encoder
from .errors import InvalidInput, SearchError
from .models import BackfillReport, EmbeddingStatus, ImageSearchResponse, TextSearchResponse
from .service import SearchService
from .store import CatalogStore

logger = logging.getLogger("catalog_search.main")
logging.basicConfig(level=config.LOG_LEVEL, format=config.LOG_FORMAT)


def build_default_service() -> SearchService:
    store = CatalogStore(config.CATALOG_DB_PATH)
    logger.info("Catalog loaded from %s (%d products)", config.CATALOG_DB_PATH, store.count_products())
    return SearchService(store, get_encoder())


_service_lock = threading.Lock()


def get_service(request: Request) -> SearchService:
    with _service_lock:
        service = getattr(request.app.state, "service", None)
        if service is None:
            service = build_default_service()
            request.app.state.service = service
    return service


def create_app(service: SearchService = None) -> FastAPI:
    app = FastAPI(title="Catalog Search - Backend")
    app.state.service = service

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["*"],
    )

    # -------------------------------------------------------------------------
    # Error mapping: known failures get their own status and a safe message
    # -------------------------------------------------------------------------
    @app.exception_handler(SearchError)
    async def search_error_handler(request: Request, exc: SearchError):
        if exc.status_code >= 500:
            logger.error("%s on %s: %s", exc.code, request.url.path, exc.detail or exc)
        else:
            logger.info("%s on %s: %s", exc.code, request.url.path, exc.detail or exc)
        return JSONResponse(status_code=exc.status_code, content=exc.to_payload())

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        logger.info("invalid_input on %s: %s", request.url.path, exc.errors())
        return JSONResponse(status_code=400, content=InvalidInput().to_payload())

    @app.exception_handler(Exception)
    async def unexpected_error_handler(request: Request, exc: Exception):
        logger.exception("Unhandled error on %s: %s", request.url.path, exc)
        return JSONResponse(status_code=500, content=SearchError().to_payload())

    # -------------------------------------------------------------------------
    # Health endpoint
    # -------------------------------------------------------------------------
    @app.get("/health")
    def health(svc: SearchService = Depends(get_service)):
        return {"status": "ok", "products": svc.store.count_products(), "encoder_loaded": svc.encoder.loaded}

    # -------------------------------------------------------------------------
    # Search endpoints
    # -------------------------------------------------------------------------
    @app.post("/search/text", response_model=TextSearchResponse)
    def search_text(q: str = Query(""),
                    limit: int = Query(config.DEFAULT_PRODUCT_LIMIT, ge=1, le=100),
                    taxonomy_limit: int = Query(config.DEFAULT_TAXONOMY_LIMIT, alias="taxonomyLimit", ge=0, le=50),
                    svc: SearchService = Depends(get_service)):
        return svc.search_text(q, limit=limit, taxonomy_limit=taxonomy_limit)

    @app.post("/search/image", response_model=ImageSearchResponse)
    async def search_image(image: UploadFile = File(...),
                           limit: int = Query(config.DEFAULT_PRODUCT_LIMIT, ge=1, le=100),
                           svc: SearchService = Depends(get_service)):
        # read one byte past the ceiling: enough to reject without buffering a huge upload
        raw = await image.read(svc.max_upload_bytes + 1)
        return await svc.search_image(raw, content_type=image.content_type, limit=limit)

    # -------------------------------------------------------------------------
    # Admin endpoints
    # -------------------------------------------------------------------------
    @app.post("/admin/search/backfill", response_model=BackfillReport)
    def backfill(batch_size: int = Query(config.BACKFILL_BATCH_SIZE, alias="batchSize", ge=1, le=100),
                 svc: SearchService = Depends(get_service)):
        return svc.backfill(batch_size)

    @app.get("/admin/search/status", response_model=EmbeddingStatus)
    def embedding_status(svc: SearchService = Depends(get_service)):
        return svc.embedding_status()

    return app


app = create_app()

# -----------------------------------------------------------------------------
# run dev
# -----------------------------------------------------------------------------
if __name__ == "__main__":
    import uvicorn
    uvicorn.run("catalog_search.main:app", host="0.0.0.0", port=int(os.getenv("PORT", "8000")), reload=True)
