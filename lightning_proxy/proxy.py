"""
The reverse proxy admission loop.

Every request is matched to a configured service, authenticated with its L402
credentials and either forwarded to the backend or answered with a 402
challenge carrying a fresh macaroon and invoice.
"""

from __future__ import annotations

import asyncio
import contextlib
import ipaddress
import logging
import os
import re
import time
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple, Union

import httpx
from fastapi import FastAPI, Request, Response
from fastapi.responses import FileResponse, JSONResponse, StreamingResponse
from starlette.background import BackgroundTask

from .auth import Authenticator, Decision, DenyReason
from .caveats import RequestContext
from .config import ServiceConfig
from .errors import MintError, SecretStoreUnavailable
from .l402 import format_challenge, format_challenge_body, parse_authorization
from .mint import Minter
from .stats import ProxyStats
from .usage import UsageCounter

logger = logging.getLogger(__name__)

CAPABILITIES_HEADER = "X-L402-Capabilities"

HOP_BY_HOP_HEADERS = frozenset({
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "te",
    "trailers",
    "transfer-encoding",
    "upgrade",
})

METHODS = ["GET", "POST", "PUT", "DELETE", "PATCH", "HEAD", "OPTIONS"]

MAX_TRACKED_CLIENTS = 100000

Networks = Sequence[Union[ipaddress.IPv4Network, ipaddress.IPv6Network]]


def _is_trusted(address: str, trusted_proxies: Networks) -> bool:
    try:
        ip = ipaddress.ip_address(address)
    except ValueError:
        return False
    return any(ip in network for network in trusted_proxies)


def get_client_id(request: Any, trusted_proxies: Networks = ()) -> str:
    """
    Get client identifier from a request.

    X-Forwarded-For is only honoured when the direct peer is a trusted proxy.
    The client is then the rightmost hop not belonging to a trusted proxy.
    """
    peer = request.client.host if getattr(request, "client", None) else None

    if peer and _is_trusted(peer, trusted_proxies):
        forwarded = request.headers.get("x-forwarded-for", "")
        hops = [hop.strip() for hop in forwarded.split(",") if hop.strip()]
        for hop in reversed(hops):
            if not _is_trusted(hop, trusted_proxies):
                return hop

    return peer or "unknown"


class Proxy:
    """
    L402 reverse proxy in front of a set of backend services.

    Usage:
        proxy = Proxy(cfg.services, authenticator, minter)
        uvicorn.run(proxy.app)
    """

    def __init__(
        self,
        services: Iterable[ServiceConfig],
        authenticator: Authenticator,
        minter: Minter,
        http_client: Optional[httpx.AsyncClient] = None,
        scheme: str = "L402",
        mint_timeout: float = 30.0,
        usage: Optional[UsageCounter] = None,
        stats: Optional[ProxyStats] = None,
        static_root: Optional[str] = None,
        stats_path: Optional[str] = None,
        trusted_proxies: Iterable[str] = (),
        max_tracked_clients: int = MAX_TRACKED_CLIENTS,
    ):
        """
        Args:
            services: Service table, matched in order.
            authenticator: Validates presented credentials.
            minter: Issues new macaroons for challenges.
            http_client: Client used to reach backends.
            scheme: Auth scheme advertised in challenges ("L402" or "LSAT").
            mint_timeout: Upper bound on issuing one challenge, in seconds.
            usage: Request counters for macaroons carrying a quota caveat.
            stats: Admission stats sink.
            static_root: Directory served for requests matching no service.
            stats_path: Path exposing stats as JSON; disabled when None.
            trusted_proxies: Addresses or networks allowed to set
                X-Forwarded-For.
            max_tracked_clients: Most clients tracked for freebies at once.
        """
        self.services = list(services)
        self._matchers: List[Tuple[ServiceConfig, re.Pattern, re.Pattern]] = [
            (s, re.compile(s.host_regexp), re.compile(s.path_regexp)) for s in self.services
        ]
        self.authenticator = authenticator
        self.minter = minter
        self.client = http_client or httpx.AsyncClient(timeout=httpx.Timeout(30.0))
        self.scheme = scheme
        self.mint_timeout = mint_timeout
        self.usage = usage
        self.stats = stats or ProxyStats()
        self.static_root = static_root
        self.trusted_proxies = [ipaddress.ip_network(p, strict=False) for p in trusted_proxies]
        self.max_tracked_clients = max_tracked_clients

        # Freebie tracking: (service, client_id) → { count, expires_at }
        self._freebies: Dict[Tuple[str, str], Dict[str, float]] = {}

        @contextlib.asynccontextmanager
        async def lifespan(app: FastAPI):
            yield
            await self.close()

        self.app = FastAPI(title="lightning-proxy", lifespan=lifespan)

        if stats_path:
            @self.app.get(stats_path)
            async def stats_handler() -> Dict[str, Any]:
                return self.stats.to_dict()

        @self.app.api_route("/{path:path}", methods=METHODS)
        async def handle_request(request: Request, path: str) -> Response:
            return await self.handle(request)

    async def close(self) -> None:
        await self.client.aclose()

    def match(self, host: str, path: str) -> Optional[ServiceConfig]:
        """First service whose host and path patterns both match."""
        for service, host_re, path_re in self._matchers:
            if host_re.search(host) and path_re.search(path):
                return service
        return None

    def _expire_freebies(self, now: float) -> None:
        expired = [k for k, entry in self._freebies.items() if entry["expires_at"] <= now]
        for key in expired:
            del self._freebies[key]

    def _take_freebie(
        self,
        service: ServiceConfig,
        client_id: str,
        now: Optional[float] = None,
    ) -> bool:
        """Check if client has free requests left in this window, and use one."""
        if service.freebies <= 0:
            return False

        now = time.time() if now is None else now
        key = (service.name, client_id)
        entry = self._freebies.get(key)

        if not entry or entry["expires_at"] <= now:
            if not entry and len(self._freebies) >= self.max_tracked_clients:
                self._expire_freebies(now)
                if len(self._freebies) >= self.max_tracked_clients:
                    logger.warning("Freebie table full, charging %s", client_id)
                    return False
            entry = {"count": 0, "expires_at": now + service.freebie_window}
            self._freebies[key] = entry

        if entry["count"] < service.freebies:
            entry["count"] += 1
            return True

        return False

    async def handle(self, request: Request) -> Response:
        """Admission decision for one request."""
        path = request.url.path
        service = self.match(request.headers.get("host", ""), path)
        if service is None:
            return self._serve_static(path)

        client_id = get_client_id(request, self.trusted_proxies)

        if not service.auth_required or self._take_freebie(service, client_id):
            self.stats.record_allowed(service.name, client_id, free=True)
            return await self.forward(request, service)

        credentials = parse_authorization(request.headers.get("authorization"))
        context = RequestContext(
            service=service.name,
            method=request.method,
            path=path,
            client_ip=client_id,
        )
        decision = await self.authenticator.authenticate(credentials, context)

        if not decision.allowed:
            self.stats.record_denied(service.name, decision.reason.value)
            logger.debug(
                "Denied %s %s for %s: %s (%s)",
                request.method, path, client_id, decision.reason.value, decision.detail,
            )
            error = None
            if decision.reason is DenyReason.CAVEAT_VIOLATION:
                error = decision.detail
            elif credentials is not None:
                error = decision.reason.value
            return await self.challenge(request, service, error)

        if decision.metered and self.usage is not None:
            try:
                await self.usage.incr(decision.token_id)
            except SecretStoreUnavailable as e:
                logger.warning("Unable to record usage of token %s: %s", decision.token_id, e)

        self.stats.record_allowed(service.name, client_id, decision.payment_hash)
        return await self.forward(request, service, decision)

    async def challenge(
        self,
        request: Request,
        service: ServiceConfig,
        error: Optional[str] = None,
    ) -> Response:
        """Mint a macaroon and answer with 402 Payment Required."""
        try:
            macaroon, obligation = await asyncio.wait_for(
                self.minter.mint(service.name, method=request.method),
                timeout=self.mint_timeout,
            )
        except asyncio.TimeoutError:
            logger.error("Timed out minting macaroon for %s", service.name)
            self.stats.record_mint_failure(service.name)
            return JSONResponse(
                status_code=500,
                content={"error": "Timed out creating payment challenge"},
            )
        except MintError as e:
            logger.error("Unable to mint macaroon for %s: %s", service.name, e)
            self.stats.record_mint_failure(service.name)
            return JSONResponse(
                status_code=500,
                content={"error": "Unable to create payment challenge"},
            )

        raw = macaroon.serialize()
        www_auth = format_challenge(
            self.scheme,
            raw,
            obligation.invoice,
            obligation.payment_hash,
            obligation.amount_msat,
        )
        body = format_challenge_body(
            scheme=self.scheme,
            invoice=obligation.invoice,
            macaroon=raw,
            payment_hash=obligation.payment_hash,
            amount_msat=obligation.amount_msat,
            service=service.name,
            error=error,
        )
        self.stats.record_challenge(service.name, obligation.amount_msat)

        return JSONResponse(
            status_code=402,
            content=body,
            headers={"WWW-Authenticate": www_auth},
        )

    async def forward(
        self,
        request: Request,
        service: ServiceConfig,
        decision: Optional[Decision] = None,
    ) -> Response:
        """Send the request to the service backend and relay the response."""
        # raw_path keeps percent-escapes such as %2F intact.
        raw_path = request.scope.get("raw_path") or request.url.path.encode("utf-8")
        target = service.upstream + raw_path.decode("latin-1")
        if request.url.query:
            target += "?" + request.url.query
        url = httpx.URL(target)

        headers = [
            (k, v) for k, v in request.headers.items()
            if k.lower() not in HOP_BY_HOP_HEADERS
            and k.lower() not in ("host", "content-length", "x-forwarded-for")
        ]
        headers.append(("x-forwarded-for", get_client_id(request, self.trusted_proxies)))
        headers.extend(service.headers.items())
        if decision is not None and decision.capabilities:
            headers.append((CAPABILITIES_HEADER, ",".join(decision.capabilities)))

        upstream_request = self.client.build_request(
            request.method,
            url,
            headers=headers,
            content=await request.body(),
        )

        try:
            upstream = await self.client.send(upstream_request, stream=True)
        except httpx.HTTPError as e:
            logger.error("Backend for %s unreachable at %s: %s", service.name, service.upstream, e)
            return JSONResponse(status_code=502, content={"error": "Backend unavailable"})

        response = StreamingResponse(
            upstream.aiter_raw(),
            status_code=upstream.status_code,
            background=BackgroundTask(upstream.aclose),
        )
        response.raw_headers = [
            (k.encode("latin-1"), v.encode("latin-1"))
            for k, v in upstream.headers.multi_items()
            if k.lower() not in HOP_BY_HOP_HEADERS
        ]
        return response

    def _serve_static(self, path: str) -> Response:
        """Serve a file from static_root, or 404."""
        if self.static_root:
            root = os.path.realpath(self.static_root)
            file_path = os.path.realpath(os.path.join(root, path.lstrip("/")))
            if os.path.isdir(file_path):
                file_path = os.path.join(file_path, "index.html")
            inside = file_path == root or file_path.startswith(root + os.sep)
            if inside and os.path.isfile(file_path):
                return FileResponse(file_path)
        return JSONResponse(status_code=404, content={"error": "Not found"})
