"""
Async query orchestrator for interactive search boxes.

Keeps typing-as-you-search cheap and consistent:
 - keystrokes are debounced, so a burst of typing becomes one request;
 - every request gets a sequence id and only the latest one may touch the
   visible state, whatever order responses arrive in;
 - superseded requests are also cancelled, which aborts the HTTP call;
 - successful text payloads are cached by (mode, query, limits) in a
   bounded LRU; a cache hit renders at once and may refresh in the
   background.

Image searches skip the debounce, clear the typed query and come back
products-only.
"""

import asyncio
import logging
from collections import OrderedDict
from dataclasses import dataclass, replace
from typing import Any, Callable, Hashable, List, Optional, Tuple

import aiohttp

from . import config

logger = logging.getLogger(__name__)

IDLE = "idle"
LOADING = "loading"
SUCCESS = "success"
ERROR = "error"


class SearchRequestError(Exception):
    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class HttpSearchTransport:
    """aiohttp client for the search API."""

    def __init__(self, base_url: str, session: Optional[aiohttp.ClientSession] = None, timeout: float = 30):
        self.base_url = base_url.rstrip("/")
        self._session = session
        self._owns_session = session is None
        self.timeout = aiohttp.ClientTimeout(total=timeout)

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None:
            self._session = aiohttp.ClientSession(timeout=self.timeout)
        return self._session

    async def _post(self, path: str, params: Optional[dict] = None, data: Any = None) -> dict:
        async with self._get_session().post(self.base_url + path, params=params, data=data) as resp:
            try:
                payload = await resp.json(content_type=None)
            except (aiohttp.ContentTypeError, ValueError):
                payload = {}
            if resp.status >= 400:
                message = None
                if isinstance(payload, dict):
                    message = payload.get("message") or payload.get("error")
                raise SearchRequestError(message or "Unable to fetch search results", status=resp.status)
            return payload

    async def search_text(self, q: str, limit: int, taxonomy_limit: int) -> dict:
        return await self._post("/search/text", params={"q": q, "limit": limit, "taxonomyLimit": taxonomy_limit})

    async def search_image(self, data: bytes, filename: str, content_type: str, limit: int) -> dict:
        form = aiohttp.FormData()
        form.add_field("image", data, filename=filename, content_type=content_type)
        return await self._post("/search/image", params={"limit": limit}, data=form)

    async def close(self):
        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None


class LRUCache:
    def __init__(self, capacity: int = 100):
        if capacity < 1:
            raise ValueError("capacity must be positive")
        self.capacity = capacity
        self._data: "OrderedDict[Hashable, Any]" = OrderedDict()

    def __len__(self):
        return len(self._data)

    def __contains__(self, key):
        return key in self._data

    def get(self, key, default=None):
        if key not in self._data:
            return default
        self._data.move_to_end(key)
        return self._data[key]

    def put(self, key, value):
        self._data[key] = value
        self._data.move_to_end(key)
        while len(self._data) > self.capacity:
            self._data.popitem(last=False)


@dataclass(frozen=True)
class SearchState:
    status: str = IDLE
    results: Optional[dict] = None
    error: Optional[str] = None
    query: str = ""
    mode: Optional[str] = None

    @property
    def is_empty(self) -> bool:
        if not self.results:
            return False
        return not any(self.results.get(k) for k in ("products", "categories", "collections"))


@dataclass
class _Request:
    seq: int
    key: Tuple
    task: Optional[asyncio.Task] = None


def cache_key(mode: str, query: str, limit: int, taxonomy_limit: int) -> Tuple:
    return (mode, query.strip().lower(), limit, taxonomy_limit)


class SearchOrchestrator:
    """
    Drives one search box. Methods must be called from inside a running
    event loop; state changes are pushed to subscribers.
    """

    def __init__(self, transport,
                 debounce: float = 0.2,
                 limit: int = config.DEFAULT_PRODUCT_LIMIT,
                 taxonomy_limit: int = config.DEFAULT_TAXONOMY_LIMIT,
                 cache_capacity: int = 100,
                 refresh_on_hit: bool = True,
                 abort_superseded: bool = True):
        self.transport = transport
        self.debounce = debounce
        self.limit = limit
        self.taxonomy_limit = taxonomy_limit
        self.cache = LRUCache(cache_capacity)
        self.refresh_on_hit = refresh_on_hit
        self.abort_superseded = abort_superseded
        self._state = SearchState()
        self._subscribers: List[Callable[[SearchState], None]] = []
        self._seq = 0
        self._debounce_task: Optional[asyncio.Task] = None
        self._text_request: Optional[_Request] = None
        self._image_request: Optional[_Request] = None

    # ---------- state ----------

    @property
    def state(self) -> SearchState:
        return self._state

    @property
    def latest_seq(self) -> int:
        return self._seq

    def subscribe(self, callback: Callable[[SearchState], None]) -> Callable[[], None]:
        self._subscribers.append(callback)

        def unsubscribe():
            if callback in self._subscribers:
                self._subscribers.remove(callback)
        return unsubscribe

    def _publish(self, **changes):
        self._state = replace(self._state, **changes)
        for cb in list(self._subscribers):
            try:
                cb(self._state)
            except Exception:  # noqa: BLE001
                logger.exception("Search subscriber failed")

    def _next_seq(self) -> int:
        self._seq += 1
        return self._seq

    # ---------- cancellation ----------

    def _cancel_debounce(self):
        if self._debounce_task is not None and not self._debounce_task.done():
            self._debounce_task.cancel()
        self._debounce_task = None

    def _supersede(self, req: Optional[_Request]):
        if req is None or req.task is None or req.task.done():
            return
        if self.abort_superseded:
            req.task.cancel()

    # ---------- text path ----------

    def set_query(self, text: str):
        """Record a keystroke; the request goes out once typing pauses."""
        self._cancel_debounce()
        normalized = (text or "").strip()
        if not normalized:
            self._next_seq()
            self._supersede(self._text_request)
            self._text_request = None
            self._publish(status=IDLE, results=None, error=None, query=text or "", mode=None)
            return
        self._publish(query=text)
        if self.debounce <= 0:
            self._issue_text(normalized)
            return
        self._debounce_task = asyncio.get_running_loop().create_task(self._debounced(normalized))

    async def _debounced(self, query: str):
        await asyncio.sleep(self.debounce)
        self._debounce_task = None
        self._issue_text(query)

    def _issue_text(self, query: str):
        key = cache_key("text", query, self.limit, self.taxonomy_limit)
        seq = self._next_seq()
        cached = self.cache.get(key)
        if cached is not None:
            self._publish(status=SUCCESS, results=cached, error=None, mode="text")
        else:
            self._publish(status=LOADING, error=None, mode="text")

        current = self._text_request
        if current is not None and current.key == key and current.task is not None and not current.task.done():
            # identical request already on the wire: adopt it instead of re-issuing
            current.seq = seq
            return
        self._supersede(current)
        if cached is not None and not self.refresh_on_hit:
            self._text_request = None
            return

        req = _Request(seq=seq, key=key)
        req.task = asyncio.get_running_loop().create_task(
            self._execute(req, lambda: self.transport.search_text(query, self.limit, self.taxonomy_limit))
        )
        self._text_request = req

    # ---------- image path ----------

    async def search_image(self, data: bytes, filename: str = "search.jpg",
                           content_type: str = "image/jpeg") -> SearchState:
        """Search by photo right away; returns the state once this search settles."""
        self._cancel_debounce()
        seq = self._next_seq()
        self._supersede(self._text_request)
        self._supersede(self._image_request)
        self._text_request = None
        self._publish(status=LOADING, error=None, query="", mode="image")

        req = _Request(seq=seq, key=("image", filename, len(data), self.limit))
        req.task = asyncio.get_running_loop().create_task(
            self._execute(req, lambda: self.transport.search_image(data, filename, content_type, self.limit),
                          products_only=True)
        )
        self._image_request = req
        await asyncio.wait({req.task})
        return self._state

    # ---------- shared ----------

    async def _execute(self, req: _Request, fetch: Callable, products_only: bool = False):
        try:
            payload = await fetch()
        except asyncio.CancelledError:
            logger.debug("Search request %d aborted", req.seq)
            raise
        except Exception as e:  # noqa: BLE001
            if req.seq != self._seq:
                return
            message = str(e) if isinstance(e, SearchRequestError) else "Unexpected error"
            logger.warning("Search request %d failed: %s", req.seq, e)
            self._publish(status=ERROR, error=message)
            return

        if products_only:
            payload = dict(payload, categories=[], collections=[], suggestions=[])
        else:
            self.cache.put(req.key, payload)

        if req.seq != self._seq:
            logger.debug("Discarding stale response %d (latest %d)", req.seq, self._seq)
            return
        self._publish(status=SUCCESS, results=payload, error=None)

    def clear(self):
        self._cancel_debounce()
        self._next_seq()
        self._supersede(self._text_request)
        self._text_request = None
        self._publish(status=IDLE, results=None, error=None, query="", mode=None)

    async def settle(self):
        """Wait until the pending debounce and the current requests have finished."""
        while True:
            pending = [t for t in (self._debounce_task,
                                   self._text_request.task if self._text_request else None,
                                   self._image_request.task if self._image_request else None)
                       if t is not None and not t.done()]
            if not pending:
                return
            await asyncio.wait(pending)

    async def aclose(self):
        self._cancel_debounce()
        tasks = [r.task for r in (self._text_request, self._image_request) if r and r.task and not r.task.done()]
        for t in tasks:
            t.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
