from __future__ import annotations

import asyncio
from typing import AsyncIterator, Dict, Optional
from urllib.parse import urlsplit

import aiohttp
import structlog
from aiohttp import web

from rotor_relay.dispatch import Dispatcher, url_scheme
from rotor_relay.models import Config
from rotor_relay.pool import AddressPool

log = structlog.get_logger()

POOL_KEY = web.AppKey("pool", AddressPool)
DISPATCHER_KEY = web.AppKey("dispatcher", Dispatcher)

CHUNK = 64 * 1024

# клиент -> upstream
FORWARD_REQUEST_HEADERS = ("Range", "Accept", "User-Agent", "If-None-Match", "If-Modified-Since")
# upstream -> клиент; без content-length/encoding: aiohttp сам распаковывает тело
PASS_RESPONSE_HEADERS = (
    "Content-Type",
    "Content-Range",
    "Accept-Ranges",
    "Last-Modified",
    "ETag",
    "Cache-Control",
)


async def status(request: web.Request) -> web.Response:
    return web.json_response(request.app[POOL_KEY].status().to_dict())


async def health(request: web.Request) -> web.Response:
    pool = request.app[POOL_KEY]
    return web.json_response({"ok": True, "state": pool.state.value})


async def fetch(request: web.Request) -> web.StreamResponse:
    url = request.query.get("url", "")
    try:
        url_scheme(url)
    except ValueError as e:
        raise web.HTTPBadRequest(text=str(e)) from e
    if not urlsplit(url).netloc:
        raise web.HTTPBadRequest(text=f"url has no host: {url}")

    fwd = {h: request.headers[h] for h in FORWARD_REQUEST_HEADERS if h in request.headers}
    sent: Dict[str, web.StreamResponse] = {}

    async def relay(resp: aiohttp.ClientResponse) -> web.StreamResponse:
        out = web.StreamResponse(
            status=resp.status,
            headers={h: resp.headers[h] for h in PASS_RESPONSE_HEADERS if h in resp.headers},
        )
        sent["out"] = out
        await out.prepare(request)
        async for chunk in resp.content.iter_chunked(CHUNK):
            await out.write(chunk)
        await out.write_eof()
        return out

    try:
        return await request.app[DISPATCHER_KEY].stream(url, relay, headers=fwd)
    except (aiohttp.ClientError, asyncio.TimeoutError) as e:
        if "out" in sent and sent["out"].prepared:
            # заголовки уже ушли клиенту, остаётся оборвать ответ
            return sent["out"]
        raise web.HTTPBadGateway(text=f"upstream error: {e or type(e).__name__}") from e


def create_app(
    config: Config,
    pool: Optional[AddressPool] = None,
    dispatcher: Optional[Dispatcher] = None,
) -> web.Application:
    if pool is None:
        pool = AddressPool(config.rotation)
    if dispatcher is None:
        dispatcher = Dispatcher(pool, timeout=config.server.request_timeout)

    app = web.Application()
    app[POOL_KEY] = pool
    app[DISPATCHER_KEY] = dispatcher

    async def lifecycle(app: web.Application) -> AsyncIterator[None]:
        if not await app[POOL_KEY].start():
            log.info("rotation_disabled", reason="default outbound route in use")
        yield
        await app[POOL_KEY].stop()
        await app[DISPATCHER_KEY].close()

    app.cleanup_ctx.append(lifecycle)
    app.router.add_get("/status", status)
    app.router.add_get("/health", health)
    app.router.add_get("/fetch", fetch)
    return app
