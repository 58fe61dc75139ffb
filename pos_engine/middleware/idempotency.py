import asyncio
import json
import re
import time

from loguru import logger
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response

# Endpoints soportados y la clave de éxito esperada en el JSON
ALLOW = (
    (re.compile(r"^/pos/register/[^/]+/checkout$"), "transaction_id"),
    (re.compile(r"^/pos/shift/open$"), "shift_id"),
)


def _success_key(path: str):
    for pattern, key in ALLOW:
        if pattern.match(path):
            return key
    return None


class _Cache:
    def __init__(self, ttl=3600, max_entries=2048):
        self.ttl = ttl
        self.max_entries = max_entries
        self._store = {}
        self._lock = asyncio.Lock()

    async def get(self, key):
        async with self._lock:
            item = self._store.get(key)
            if not item:
                return None
            if item["exp"] < time.time():
                self._store.pop(key, None)
                return None
            return item

    async def set(self, key, val):
        async with self._lock:
            if len(self._store) >= self.max_entries:
                self._store.pop(next(iter(self._store)))
            self._store[key] = dict(val, exp=time.time() + self.ttl)


class _KeyedLocks:
    def __init__(self):
        self._locks = {}
        self._guard = asyncio.Lock()

    async def acquire(self, key):
        async with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = asyncio.Lock()
                self._locks[key] = lock
        await lock.acquire()
        return lock


def _drop_content_length(headers: dict) -> dict:
    # Quita cualquier Content-Length (casing-insensitive)
    return {k: v for k, v in headers.items() if k.lower() != "content-length"}


def _replay(cached, idem_key: str) -> Response:
    logger.bind(idempotency_key=idem_key).info("replaying cached response")
    body_bytes = cached["body"]
    try:
        js = json.loads(body_bytes.decode("utf-8"))
    except ValueError:
        js = None
    if isinstance(js, dict):
        js["replay"] = True
        body_bytes = json.dumps(js).encode("utf-8")
    headers = _drop_content_length(dict(cached["headers"]))
    headers["Idempotent-Replay"] = "true"
    return Response(
        content=body_bytes,
        status_code=cached["status"],
        media_type=cached["media_type"],
        headers=headers,
    )


class IdempotencyReplay(BaseHTTPMiddleware):
    """
    Un POST de cobro/apertura con la misma Idempotency-Key devuelve la respuesta
    200 ya producida en lugar de volver a cobrar o abrir.
    """

    def __init__(self, app, ttl: int = 3600):
        super().__init__(app)
        self._cache = _Cache(ttl=ttl)
        self._locks = _KeyedLocks()

    async def dispatch(self, request, call_next):
        if request.method != "POST":
            return await call_next(request)

        path = request.url.path
        success_key = _success_key(path)
        if not success_key:
            return await call_next(request)

        idem_key = request.headers.get("Idempotency-Key") or request.headers.get("IdempotencyKey")
        if not idem_key:
            return await call_next(request)

        cache_key = f"{request.method}:{path}:{idem_key}"

        # 1) Replay inmediato si está cacheado
        cached = await self._cache.get(cache_key)
        if cached:
            return _replay(cached, idem_key)

        # 2) Sección crítica por clave
        lock = await self._locks.acquire(cache_key)
        try:
            cached = await self._cache.get(cache_key)
            if cached:
                return _replay(cached, idem_key)

            # 3) Procesar y capturar body de la respuesta real
            response = await call_next(request)
            body_bytes = b""
            async for chunk in response.body_iterator:
                body_bytes += chunk

            headers = _drop_content_length(dict(response.headers))
            new_resp = Response(
                content=body_bytes,
                status_code=response.status_code,
                media_type=response.media_type,
                headers=headers,
            )

            # 4) Cachear solo si 200 y contiene la clave de éxito
            should_cache = response.status_code == 200
            if should_cache:
                try:
                    js = json.loads(body_bytes.decode("utf-8"))
                    should_cache = isinstance(js, dict) and (success_key in js)
                except ValueError:
                    should_cache = False

            if should_cache:
                await self._cache.set(
                    cache_key,
                    {
                        "status": new_resp.status_code,
                        "headers": dict(new_resp.headers),
                        "media_type": new_resp.media_type,
                        "body": body_bytes,
                    },
                )

            return new_resp
        finally:
            lock.release()


def install_idempotency(app, ttl: int = 3600):
    app.add_middleware(IdempotencyReplay, ttl=ttl)
