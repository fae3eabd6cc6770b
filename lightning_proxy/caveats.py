"""
Caveat parsing and evaluation.

Caveats are plain strings of the form "name = value", appended to a macaroon
in order. Every caveat must pass (AND semantics); evaluation stops at the
first failure so the caller gets one precise reason.

Supported caveats:
    expires_at = <unix seconds>
    service = <service name>
    method = <HTTP method>
    ip = <client address>
    capabilities = <comma separated list>
    quota = <max requests>
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import FrozenSet, Iterable, Optional, Tuple, Union

from .errors import MalformedCaveat

CAVEAT_SEPARATOR = " = "

EXPIRES_AT = "expires_at"
SERVICE = "service"
METHOD = "method"
IP = "ip"
CAPABILITIES = "capabilities"
QUOTA = "quota"

KNOWN_CAVEATS = (EXPIRES_AT, SERVICE, METHOD, IP, CAPABILITIES, QUOTA)


@dataclass(frozen=True)
class Caveat:
    """A parsed caveat."""
    name: str
    value: Union[str, int, FrozenSet[str]]
    raw: str

    def __str__(self) -> str:
        return self.raw


@dataclass
class RequestContext:
    """What the current request looks like, for caveat evaluation."""
    service: str
    method: Optional[str] = None
    path: Optional[str] = None
    client_ip: Optional[str] = None
    now: float = field(default_factory=time.time)
    consumed: Optional[int] = None  # requests already served on this token


@dataclass
class CaveatResult:
    """Outcome of evaluating a caveat list."""
    valid: bool
    name: Optional[str] = None
    detail: Optional[str] = None
    capabilities: Tuple[str, ...] = ()


def format_caveat(name: str, value: Union[str, int, Iterable[str]]) -> str:
    """Build a caveat string, e.g. format_caveat("quota", 10) -> "quota = 10"."""
    if name not in KNOWN_CAVEATS:
        raise MalformedCaveat(f"Unknown caveat: {name}")
    if name == CAPABILITIES and not isinstance(value, str):
        value = ",".join(sorted(value))
    return f"{name}{CAVEAT_SEPARATOR}{value}"


def parse_caveat(raw: str) -> Caveat:
    """
    Parse a caveat string.

    Raises:
        MalformedCaveat: the string is not "name = value", the name is not
            one we can enforce, or the value does not parse.
    """
    if not isinstance(raw, str):
        raise MalformedCaveat(f"Caveat must be a string: {raw!r}")

    parts = raw.split(CAVEAT_SEPARATOR, 1)
    if len(parts) != 2:
        raise MalformedCaveat(f"Malformed caveat: {raw}")

    name = parts[0].strip()
    value = parts[1].strip()
    if not value:
        raise MalformedCaveat(f"Empty caveat value: {raw}")

    # A restriction we do not understand cannot be enforced.
    if name not in KNOWN_CAVEATS:
        raise MalformedCaveat(f"Unknown caveat: {name}")

    if name in (EXPIRES_AT, QUOTA):
        try:
            return Caveat(name=name, value=int(value), raw=raw)
        except ValueError:
            raise MalformedCaveat(f"Caveat {name} needs an integer: {value}") from None

    if name == CAPABILITIES:
        caps = frozenset(c.strip() for c in value.split(",") if c.strip())
        return Caveat(name=name, value=caps, raw=raw)

    return Caveat(name=name, value=value, raw=raw)


def evaluate(caveats: Iterable[Union[str, Caveat]], context: RequestContext) -> CaveatResult:
    """
    Check every caveat against the request context, in attachment order.

    Returns a failing CaveatResult for the first violated caveat, otherwise a
    passing one carrying the resolved capability set.

    Raises:
        MalformedCaveat: a caveat string cannot be parsed.
    """
    capabilities: Optional[FrozenSet[str]] = None

    for item in caveats:
        caveat = item if isinstance(item, Caveat) else parse_caveat(item)
        name, value = caveat.name, caveat.value

        if name == EXPIRES_AT:
            if context.now > value:
                return CaveatResult(valid=False, name=name, detail="expired")

        elif name == SERVICE:
            if context.service != value:
                return CaveatResult(
                    valid=False,
                    name=name,
                    detail=f"wrong service: expected {value}, got {context.service}",
                )

        elif name == METHOD:
            if not context.method or context.method.upper() != value.upper():
                return CaveatResult(
                    valid=False,
                    name=name,
                    detail=f"wrong method: expected {value}, got {context.method}",
                )

        elif name == IP:
            if context.client_ip != value:
                return CaveatResult(
                    valid=False,
                    name=name,
                    detail=f"wrong ip: expected {value}, got {context.client_ip}",
                )

        elif name == CAPABILITIES:
            capabilities = value if capabilities is None else capabilities & value
            if not capabilities:
                return CaveatResult(valid=False, name=name, detail="no capabilities left")

        elif name == QUOTA:
            if context.consumed is not None and context.consumed >= value:
                return CaveatResult(
                    valid=False,
                    name=name,
                    detail=f"quota exhausted: {context.consumed}/{value} requests used",
                )

    return CaveatResult(valid=True, capabilities=tuple(sorted(capabilities or ())))

