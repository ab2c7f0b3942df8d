"""
Hop Proxy Engine
================
A reverse proxy for one configured endpoint: binds a local port and forwards
matching requests to the endpoint's target.

Per request, in order:
  1. CORS preflight (``OPTIONS``) is answered locally
  2. Path filtering against the configured prefixes (404 on mismatch)
  3. Regex path rewrite (first matching rule only)
  4. Static header injection with ``$VAR`` expansion
  5. Plugin ``on_request`` hooks
  6. Forwarding to the target (502 on failure, never retried)
  7. CORS headers on the upstream response, then ``on_response`` hooks

Without response hooks the upstream body is streamed to the client as it
arrives. With them it is buffered (up to ``MAX_BUFFERED_RESPONSE``) so the
hooks can inspect and replace it. Only connecting to the target is bounded
by a timeout; slow responses and long-lived streams are left alone.

Architecture:
  Uses aiohttp for both the listening server and the upstream client, so
  every endpoint in a process shares one event loop.
"""

from __future__ import annotations

import asyncio
import errno
import logging
import os
import re
import time
import urllib.parse
from typing import Callable, Dict, List, Mapping, Optional, Pattern, Sequence, Tuple

from aiohttp import ClientError, ClientResponse, ClientSession, ClientTimeout, web
from multidict import CIMultiDict
from yarl import URL

from hop.config import CorsConfig, ProxyRule, Settings
from hop.core.cert import FileCertificateProvider, build_server_context
from hop.core.exchange import (
    ProxyEvent,
    ProxyRequest,
    ProxyResponse,
    RequestEvent,
    ResponseEvent,
    UpstreamResponse,
)
from hop.core.plugins import PluginPipeline
from hop.errors import PortInUseError, UpstreamError

logger = logging.getLogger(__name__)

# ── Constants ────────────────────────────────────────────────────────────────

DEFAULT_ALLOW_HEADERS = "Origin, X-Requested-With, Content-Type, Accept, Authorization"
DEFAULT_ALLOW_METHODS = "GET, POST, PUT, DELETE, OPTIONS"

# Connection-scoped headers that are never forwarded (RFC 7230 §6.1)
HOP_BY_HOP_HEADERS = frozenset({
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "proxy-connection",
    "te",
    "trailer",
    "trailers",
    "transfer-encoding",
    "upgrade",
})

MAX_BODY_SIZE = 100 * 1024 * 1024

# Upstream bodies are only held in memory when a response hook needs them
MAX_BUFFERED_RESPONSE = 100 * 1024 * 1024

# Recorded for requests whose client went away before a response was sent
CLIENT_CLOSED_STATUS = 499

BAD_GATEWAY_BODY = "Bad Gateway: Proxy error"


# ── Request Policy ───────────────────────────────────────────────────────────

def get_cors_headers(
    cors: Optional[CorsConfig],
    request_headers: Mapping[str, str],
) -> Dict[str, str]:
    """Derive the CORS response headers for a request.

    Allowed headers fall back from the configured list (or ``*``) to the
    client's ``Access-Control-Request-Headers`` and then to a fixed default.
    """
    cors = cors or CorsConfig()

    allow_origin = cors.allow_origin or request_headers.get("Origin") or "*"

    if cors.allow_headers == "*":
        allow_headers = "*"
    elif cors.allow_headers:
        allow_headers = ", ".join(cors.allow_headers)
    else:
        allow_headers = (
            request_headers.get("Access-Control-Request-Headers") or DEFAULT_ALLOW_HEADERS
        )

    allow_methods = ", ".join(cors.allow_methods) if cors.allow_methods else DEFAULT_ALLOW_METHODS

    return {
        "Access-Control-Allow-Origin": allow_origin,
        "Access-Control-Allow-Headers": allow_headers,
        "Access-Control-Allow-Methods": allow_methods,
        "Access-Control-Allow-Credentials": "true" if cors.allow_credentials is not False else "false",
    }


def match_path(path: str, prefixes: Sequence[str]) -> Optional[str]:
    """Return the first prefix that ``path`` falls under, or None.

    ``/v1`` matches ``/v1``, ``/v1/...`` and ``/v1?...`` but not ``/v10``.
    """
    for prefix in prefixes:
        if path == prefix or path.startswith(prefix + "/") or path.startswith(prefix + "?"):
            return prefix
    return None


def compile_rewrites(rules: Mapping[str, str]) -> List[Tuple[Pattern[str], str]]:
    """Compile ``pattern -> replacement`` rules, keeping configured order."""
    return [(re.compile(pattern), replacement) for pattern, replacement in rules.items()]


def rewrite_path(path: str, rewrites: Sequence[Tuple[Pattern[str], str]]) -> str:
    """Apply the first rewrite whose pattern matches; later rules are skipped."""
    for pattern, replacement in rewrites:
        if pattern.search(path):
            rewritten = pattern.sub(replacement, path, count=1)
            logger.debug(f"Rewrote path: {path} -> {rewritten}")
            return rewritten
    return path


def inject_headers(headers: CIMultiDict, configured: Mapping[str, str]) -> None:
    """Set configured headers, replacing existing values.

    ``$NAME`` and ``${NAME}`` are expanded from the environment on every
    call; unset variables are left as literal text.
    """
    for key, value in configured.items():
        headers[key] = os.path.expandvars(value)


def build_upstream_url(target: str, path: str) -> str:
    """Join the target's base path and query with a request path."""
    parsed = urllib.parse.urlsplit(target)
    req_path, _, req_query = path.partition("?")
    if not req_path.startswith("/"):
        req_path = "/" + req_path

    full_path = parsed.path.rstrip("/") + req_path
    query = "&".join(q for q in (parsed.query, req_query) if q)

    url = f"{parsed.scheme}://{parsed.netloc}{full_path}"
    if query:
        url += f"?{query}"
    return url


def _forwardable(
    headers: Mapping[str, str],
    keep_host: bool = False,
    keep_length: bool = False,
) -> CIMultiDict:
    out: CIMultiDict = CIMultiDict()
    for key, value in headers.items():
        lower = key.lower()
        if lower in HOP_BY_HOP_HEADERS:
            continue
        if lower == "content-length" and not keep_length:
            continue
        if lower == "host" and not keep_host:
            continue
        out.add(key, value)
    return out


def _web_response(
    status: int,
    headers: Mapping[str, str],
    body: bytes,
    reason: str = "",
    head: bool = False,
) -> web.Response:
    # A HEAD reply has no body but keeps the length the GET would have had
    return web.Response(
        status=status,
        reason=reason or None,
        headers=_forwardable(headers, keep_host=True, keep_length=head),
        body=None if head else body,
    )


# ── Proxy Engine ─────────────────────────────────────────────────────────────

class ProxyEngine:
    """
    Reverse proxy listener for a single endpoint.

    Bound to exactly one port for its lifetime. Requests are handled
    concurrently; plugin hooks for one request run in order.
    """

    def __init__(
        self,
        rule: ProxyRule,
        pipeline: Optional[PluginPipeline] = None,
        settings: Optional[Settings] = None,
        certificate_provider=None,
    ):
        self.rule = rule
        self.pipeline = pipeline or PluginPipeline()
        self.settings = settings or Settings()
        self.certificate_provider = certificate_provider or FileCertificateProvider()
        self.is_running: bool = False
        self.started_at: float = 0
        self._rewrites = compile_rewrites(rule.path_rewrite)
        self._runner: Optional[web.AppRunner] = None
        self._session: Optional[ClientSession] = None
        self._callbacks: List[Callable[[ProxyEvent], None]] = []
        self._id_counter = 0

    @property
    def port(self) -> int:
        return self.rule.port

    @property
    def url(self) -> str:
        scheme = "https" if self.rule.https else "http"
        return f"{scheme}://{self.settings.bind_host}:{self.rule.port}"

    # ── Lifecycle ────────────────────────────────────────────────────────

    async def start(self) -> None:
        """Bind the port and begin serving.

        Raises:
            PortInUseError: The port is already bound.
            CertificateError: ``https`` is set but no usable key/cert exists.
            OSError: Any other bind failure.
        """
        if self.is_running:
            return

        ssl_context = None
        if self.rule.https:
            certificate = await self.certificate_provider.get_certificate()
            ssl_context = build_server_context(certificate)

        app = web.Application(client_max_size=MAX_BODY_SIZE)
        app.router.add_route("*", "/{tail:.*}", self._handle)

        runner = web.AppRunner(
            app,
            handle_signals=False,
            access_log=None,
            shutdown_timeout=self.settings.shutdown_timeout,
        )
        await runner.setup()
        site = web.TCPSite(runner, self.settings.bind_host, self.rule.port, ssl_context=ssl_context)
        try:
            await site.start()
        except OSError as e:
            await runner.cleanup()
            if e.errno == errno.EADDRINUSE:
                raise PortInUseError(self.rule.port) from e
            raise

        self._runner = runner
        self._session = ClientSession(
            timeout=ClientTimeout(total=None, sock_connect=self.settings.connect_timeout),
            auto_decompress=False,
        )
        self.is_running = True
        self.started_at = time.time()
        logger.info(f"Proxy {self.rule.name} listening on {self.url} -> {self.rule.target}")

    async def stop(self) -> None:
        """Stop accepting connections and close all sockets."""
        if not self.is_running:
            return

        self.is_running = False
        runner, session = self._runner, self._session
        self._runner = None
        self._session = None
        try:
            if runner is not None:
                await runner.cleanup()
        finally:
            if session is not None:
                await session.close()
        logger.info(f"Proxy {self.rule.name} on port {self.rule.port} closed")

    # ── Events ───────────────────────────────────────────────────────────

    def on_event(self, callback: Callable[[ProxyEvent], None]) -> None:
        """Register a callback for request/response events."""
        self._callbacks.append(callback)

    def _emit(self, event: ProxyEvent) -> None:
        for cb in self._callbacks:
            try:
                cb(event)
            except Exception as e:
                logger.debug(f"Event callback error: {e}")

    def _next_id(self) -> str:
        self._id_counter += 1
        return f"{self.rule.name}-{self._id_counter}"

    # ── Request Handling ─────────────────────────────────────────────────

    async def _handle(self, request: web.Request) -> web.StreamResponse:
        exchange = ProxyRequest(
            id=self._next_id(),
            method=request.method,
            path=request.raw_path,
            headers=CIMultiDict(request.headers),
            remote=request.remote,
        )
        self._emit(RequestEvent(
            id=exchange.id,
            method=exchange.method,
            path=exchange.original_path,
            start_time=exchange.start_time,
            headers=dict(request.headers),
        ))

        # A response event fires even when the client goes away mid-request
        response: Optional[web.StreamResponse] = None
        status = CLIENT_CLOSED_STATUS
        try:
            response = await self._dispatch(request, exchange)
            return response
        except (ClientError, asyncio.TimeoutError):
            status = 502
            raise
        except Exception:
            status = 500
            raise
        finally:
            if response is not None:
                self._finish(exchange, response.status, dict(response.headers))
            else:
                self._finish(exchange, status, {})

    async def _dispatch(self, request: web.Request, exchange: ProxyRequest) -> web.StreamResponse:
        if request.method == "OPTIONS":
            cors = get_cors_headers(self.rule.cors, request.headers)
            return web.Response(status=204, headers=cors)

        if self.rule.paths:
            exchange.matched_prefix = match_path(exchange.path, self.rule.paths)
            if exchange.matched_prefix is None:
                allowed = ", ".join(self.rule.paths)
                return web.Response(
                    status=404,
                    text=f"Path not configured for proxy. Allowed paths: {allowed}",
                )

        exchange.path = rewrite_path(exchange.path, self._rewrites)
        inject_headers(exchange.headers, self.rule.headers)
        exchange.body = await request.read()

        response = ProxyResponse()
        if await self.pipeline.run_request(exchange, response):
            return _web_response(response.status, response.headers, response.body)

        cors = get_cors_headers(self.rule.cors, request.headers)
        try:
            resp = await self._open_upstream(exchange)
        except UpstreamError as e:
            return self._bad_gateway(e)

        try:
            if not self.pipeline.has_response_hooks:
                return await self._relay(request, resp, cors)
            try:
                body = await _read_capped(resp, MAX_BUFFERED_RESPONSE)
            except UpstreamError as e:
                return self._bad_gateway(e)
        finally:
            resp.release()

        upstream = UpstreamResponse(
            status=resp.status,
            headers=CIMultiDict(resp.headers),
            body=body,
            reason=resp.reason or "",
        )
        for key, value in cors.items():
            upstream.headers[key] = value

        await self.pipeline.run_response(upstream, exchange, response)
        if response.ended:
            return _web_response(response.status, response.headers, response.body)

        return _web_response(
            upstream.status,
            upstream.headers,
            upstream.body,
            upstream.reason,
            head=exchange.method == "HEAD",
        )

    async def _open_upstream(self, exchange: ProxyRequest) -> ClientResponse:
        """Send the request to the target and return once its headers arrive."""
        if self._session is None:
            raise UpstreamError("Proxy is not running")

        url = build_upstream_url(self.rule.target, exchange.path)
        keep_host = any(k.lower() == "host" for k in self.rule.headers)
        headers = _forwardable(exchange.headers, keep_host=keep_host)

        try:
            return await self._session.request(
                exchange.method,
                URL(url, encoded=True),
                headers=headers,
                data=exchange.body or None,
                allow_redirects=False,
                ssl=False,
                skip_auto_headers=("User-Agent", "Accept", "Accept-Encoding", "Content-Type"),
            )
        except (ClientError, asyncio.TimeoutError) as e:
            raise UpstreamError(f"{type(e).__name__}: {e}") from e

    async def _relay(
        self,
        request: web.Request,
        resp: ClientResponse,
        cors: Mapping[str, str],
    ) -> web.StreamResponse:
        """Stream the upstream response to the client as it arrives."""
        headers = _forwardable(resp.headers, keep_host=True, keep_length=True)
        for key, value in cors.items():
            headers[key] = value

        stream = web.StreamResponse(status=resp.status, reason=resp.reason or None, headers=headers)
        await stream.prepare(request)
        try:
            async for chunk in resp.content.iter_any():
                await stream.write(chunk)
        except (ClientError, asyncio.TimeoutError) as e:
            # Headers are already sent; the connection is dropped so the
            # client sees a truncated body instead of a clean end
            logger.error(f"Upstream stream for port {self.rule.port} aborted: {e}")
            raise
        await stream.write_eof()
        return stream

    def _bad_gateway(self, error: Exception) -> web.Response:
        logger.error(f"Proxy error for port {self.rule.port}: {error}")
        return web.Response(status=502, text=BAD_GATEWAY_BODY)

    def _finish(self, exchange: ProxyRequest, status: int, headers: Dict[str, str]) -> None:
        duration = (time.time() - exchange.start_time) * 1000
        logger.debug(
            f"{exchange.method} {exchange.original_path} -> {status} ({duration:.0f}ms)"
        )
        self._emit(ResponseEvent(
            id=exchange.id,
            status_code=status,
            duration=duration,
            headers=headers,
        ))


async def _read_capped(resp: ClientResponse, limit: int) -> bytes:
    """Read a whole upstream body, refusing anything over ``limit`` bytes."""
    chunks: List[bytes] = []
    size = 0
    try:
        async for chunk in resp.content.iter_chunked(64 * 1024):
            size += len(chunk)
            if size > limit:
                raise UpstreamError(f"Upstream response larger than {limit} bytes")
            chunks.append(chunk)
    except (ClientError, asyncio.TimeoutError) as e:
        raise UpstreamError(f"{type(e).__name__}: {e}") from e
    return b"".join(chunks)
