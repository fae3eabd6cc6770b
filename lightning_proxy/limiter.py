"""
Service limiter: turns a route into the caveats a new macaroon must carry.

Pure lookups over the static service table; no I/O.
"""

from __future__ import annotations

from typing import Dict, Iterable, List, Optional

from . import caveats as cav
from .config import ServiceConfig
from .errors import UnknownRoute


class StaticServiceLimiter:
    """Service limiter over the services loaded from configuration."""

    def __init__(self, services: Iterable[ServiceConfig]):
        self._services: Dict[str, ServiceConfig] = {s.name: s for s in services}

    def _service(self, route_id: str) -> ServiceConfig:
        service = self._services.get(route_id)
        if service is None:
            raise UnknownRoute(f"No service configured for route {route_id!r}")
        return service

    def price(self, route_id: str) -> int:
        """Price in satoshis for one macaroon on this route."""
        return self._service(route_id).price

    def key_generation(self, route_id: str) -> int:
        """Current root key generation for per-route keys."""
        return self._service(route_id).key_generation

    def limits(
        self,
        route_id: str,
        issued_at: int,
        method: Optional[str] = None,
    ) -> List[str]:
        """
        Ordered caveats for a macaroon minted at `issued_at` for this route.

        Args:
            route_id: Service name.
            issued_at: Mint time, unix seconds. Expiry is relative to it.
            method: HTTP method of the triggering request, used when the
                service binds macaroons to a method.

        Raises:
            UnknownRoute: the route is not configured.
        """
        service = self._service(route_id)

        limits = [cav.format_caveat(cav.SERVICE, service.name)]
        if service.timeout:
            limits.append(cav.format_caveat(cav.EXPIRES_AT, issued_at + service.timeout))
        if service.bind_method and method:
            limits.append(cav.format_caveat(cav.METHOD, method.upper()))
        if service.capabilities:
            limits.append(cav.format_caveat(cav.CAPABILITIES, service.capabilities))
        if service.quota:
            limits.append(cav.format_caveat(cav.QUOTA, service.quota))
        return limits
