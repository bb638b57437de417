from __future__ import annotations

import asyncio
import errno
import json
import socket
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional, TypeVar
from urllib.parse import urlsplit

import aiohttp
import structlog

from rotor_relay.pool import AddressPool

log = structlog.get_logger()

T = TypeVar("T")

# адрес не назначен / нет маршрута: имеет смысл повторить без привязки
ADDRESS_ERRNOS = frozenset(
    code
    for code in (
        errno.EADDRNOTAVAIL,
        errno.ENETUNREACH,
        getattr(errno, "WSAEADDRNOTAVAIL", None),
        getattr(errno, "WSAENETUNREACH", None),
    )
    if code is not None
)


def is_address_failure(exc: BaseException) -> bool:
    seen = set()
    cur: Optional[BaseException] = exc
    while cur is not None and id(cur) not in seen:
        seen.add(id(cur))
        if isinstance(cur, OSError) and cur.errno in ADDRESS_ERRNOS:
            return True
        os_error = getattr(cur, "os_error", None)  # aiohttp.ClientConnectorError
        if isinstance(os_error, OSError) and os_error.errno in ADDRESS_ERRNOS:
            return True
        cur = cur.__cause__ or cur.__context__
    return False


def url_scheme(url: str) -> str:
    scheme = urlsplit(url).scheme.lower()
    if scheme not in ("http", "https"):
        raise ValueError(f"unsupported url scheme {scheme!r}: {url}")
    return scheme


@dataclass
class FetchResult:
    status: int
    reason: str
    headers: Mapping[str, str]
    body: bytes
    url: str
    source_address: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status < 400

    def text(self, encoding: str = "utf-8") -> str:
        return self.body.decode(encoding, errors="replace")

    def json(self) -> Any:
        return json.loads(self.body)


class Dispatcher:
    """
    Outbound HTTP(S) through the address pool.

    Requests are bound to the next pool address (or an explicit one). When the
    bound attempt fails because the local address is unusable, the request is
    repeated once over the default route.
    """

    def __init__(self, pool: Optional[AddressPool] = None, timeout: float = 30.0) -> None:
        self.pool = pool
        self._timeout = aiohttp.ClientTimeout(total=None, sock_connect=timeout, sock_read=timeout)
        self._default: Optional[aiohttp.ClientSession] = None
        self._bound: Dict[str, aiohttp.ClientSession] = {}
        self._inflight: Dict[str, int] = {}

    @property
    def rotating(self) -> bool:
        return self.pool is not None and self.pool.running

    # --- sessions ---

    async def _acquire(self, source: Optional[str]) -> aiohttp.ClientSession:
        if source is None:
            if self._default is None or self._default.closed:
                self._default = aiohttp.ClientSession(timeout=self._timeout)
            return self._default

        sess = self._bound.get(source)
        if sess is None or sess.closed:
            await self._prune()
            # пока закрывались старые сессии, соседний запрос мог уже создать эту
            sess = self._bound.get(source)
            if sess is None or sess.closed:
                connector = aiohttp.TCPConnector(local_addr=(source, 0), family=socket.AF_INET6)
                sess = aiohttp.ClientSession(connector=connector, timeout=self._timeout)
                self._bound[source] = sess
        # no await between lookup and this increment: _prune never takes a counted session
        self._inflight[source] = self._inflight.get(source, 0) + 1
        return sess

    def _release(self, source: Optional[str]) -> None:
        if source is None:
            return
        left = self._inflight.get(source, 0) - 1
        if left > 0:
            self._inflight[source] = left
        else:
            self._inflight.pop(source, None)

    async def _prune(self) -> None:
        """Close idle sessions whose address has rotated out of the pool."""
        live = set(self.pool.addresses) if self.pool is not None else set()
        # detach everything first, close afterwards: close() yields to other requests
        doomed = []
        for addr in list(self._bound):
            if addr in live or addr in self._inflight:
                continue
            sess = self._bound.pop(addr, None)
            if sess is not None:
                doomed.append(sess)
        for sess in doomed:
            await sess.close()

    async def close(self) -> None:
        sessions = list(self._bound.values())
        if self._default is not None:
            sessions.append(self._default)
        self._bound.clear()
        self._inflight.clear()
        self._default = None
        for sess in sessions:
            await sess.close()

    # --- buffered ---

    async def _send(
        self, method: str, url: str, source: Optional[str], options: Dict[str, Any]
    ) -> FetchResult:
        session = await self._acquire(source)
        try:
            async with session.request(method, url, **options) as resp:
                body = await resp.read()
                return FetchResult(
                    status=resp.status,
                    reason=resp.reason or "",
                    headers=resp.headers.copy(),
                    body=body,
                    url=str(resp.url),
                    source_address=source,
                )
        finally:
            self._release(source)

    async def dispatch(
        self,
        url: str,
        method: str = "GET",
        explicit_address: Optional[str] = None,
        **options: Any,
    ) -> FetchResult:
        if explicit_address is None and not self.rotating:
            return await self._send(method, url, None, options)

        source = explicit_address or (self.pool.next() if self.pool is not None else None)
        if not source:
            return await self._send(method, url, None, options)

        url_scheme(url)
        try:
            return await self._send(method, url, source, options)
        except (aiohttp.ClientError, OSError) as e:
            if not is_address_failure(e):
                raise
            log.warning("dispatch_fallback", addr=source, url=url, error=str(e))
            return await self._send(method, url, None, options)

    # --- streaming ---

    async def stream(
        self,
        url: str,
        consumer: Callable[[aiohttp.ClientResponse], Awaitable[T]],
        method: str = "GET",
        headers: Optional[Mapping[str, str]] = None,
        explicit_address: Optional[str] = None,
        **options: Any,
    ) -> T:
        """
        Open the request and hand the live response to ``consumer``.

        Errors are logged and re-raised, never retried here: by the time they
        surface the consumer may already have forwarded part of the body.
        Failures to open the upstream request are ``stream_failed``; anything
        the consumer raises (upstream body or its own downstream side) is
        ``stream_interrupted``.
        """
        source = explicit_address or (self.pool.next() if self.rotating else None)
        if source:
            url_scheme(url)
            log.debug("stream_via", addr=source, url=url)

        session = await self._acquire(source)
        try:
            try:
                resp = await session.request(method, url, headers=headers, **options)
            except (aiohttp.ClientError, OSError, asyncio.TimeoutError) as e:
                log.error(
                    "stream_failed",
                    via=source or "default",
                    url=url,
                    error=str(e) or type(e).__name__,
                )
                raise
            async with resp:
                try:
                    return await consumer(resp)
                except (aiohttp.ClientError, OSError, asyncio.TimeoutError) as e:
                    log.warning(
                        "stream_interrupted",
                        url=url,
                        status=resp.status,
                        error=str(e) or type(e).__name__,
                    )
                    raise
        finally:
            self._release(source)
