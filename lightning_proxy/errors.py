"""
Exception types raised by the proxy core.

Authentication-path errors never reach the client as-is: the admission loop
turns them into a 402 challenge. Only mint-path failures surface as 5xx.
"""

from __future__ import annotations


class ProxyError(Exception):
    """Base class for all lightning-proxy errors."""


class MalformedCredential(ProxyError):
    """A presented macaroon or identifier could not be decoded."""


class MalformedCaveat(MalformedCredential):
    """A caveat is not in `name = value` form or has an unknown name."""


class SecretStoreError(ProxyError):
    """Base class for Secret Store failures."""


class SecretNotFound(SecretStoreError):
    """No (valid) key material exists for the requested root key ID."""


class SecretStoreUnavailable(SecretStoreError):
    """The backing store could not be reached in time."""


class ChallengerError(ProxyError):
    """The payment backend failed to create or look up an invoice."""


class MintError(ProxyError):
    """A credential could not be minted."""


class UnknownRoute(ProxyError):
    """The route identifier is not part of the configured service table."""


class ConfigError(ProxyError):
    """The configuration file is missing required values or is invalid."""
