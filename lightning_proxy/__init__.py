"""
⚡ lightning-proxy: an L402 metered reverse proxy.

Puts any HTTP backend behind Lightning payments. Callers without a paid
macaroon get 402 Payment Required with an invoice; after paying they retry
with `Authorization: L402 <macaroon>:<preimage>` and are forwarded.

Usage:
    from lightning_proxy import create_proxy, load_config

    proxy = create_proxy(load_config("lightning-proxy.yaml"))
    uvicorn.run(proxy.app)
"""

from .app import create_proxy, main
from .auth import Authenticator, Decision, DenyReason
from .caveats import RequestContext, evaluate, format_caveat, parse_caveat
from .challenger import (
    Challenger,
    LndChallenger,
    Obligation,
    SettlementState,
    WalletChallenger,
)
from .config import ProxyConfig, ServiceConfig, load_config
from .errors import (
    ChallengerError,
    ConfigError,
    MalformedCredential,
    MintError,
    ProxyError,
    SecretNotFound,
    SecretStoreUnavailable,
    UnknownRoute,
)
from .l402 import (
    L402Credentials,
    format_challenge,
    format_challenge_body,
    parse_authorization,
)
from .limiter import StaticServiceLimiter
from .macaroon import (
    Macaroon,
    add_caveat,
    create_macaroon,
    decode_macaroon,
    verify_preimage,
    verify_signature,
)
from .mint import Minter
from .proxy import Proxy
from .secret_store import InMemorySecretStore, RedisSecretStore, SecretStore
from .stats import ProxyStats
from .usage import InMemoryUsageCounter, RedisUsageCounter, UsageCounter

__version__ = "0.1.0"

__all__ = [
    # Main API
    "create_proxy",
    "main",
    "load_config",
    "ProxyConfig",
    "ServiceConfig",
    "Proxy",
    # Core
    "Minter",
    "Authenticator",
    "Decision",
    "DenyReason",
    "StaticServiceLimiter",
    # Secret store
    "SecretStore",
    "InMemorySecretStore",
    "RedisSecretStore",
    "UsageCounter",
    "InMemoryUsageCounter",
    "RedisUsageCounter",
    # Challenger
    "Challenger",
    "WalletChallenger",
    "LndChallenger",
    "Obligation",
    "SettlementState",
    # Macaroon
    "Macaroon",
    "create_macaroon",
    "add_caveat",
    "decode_macaroon",
    "verify_signature",
    "verify_preimage",
    "RequestContext",
    "evaluate",
    "format_caveat",
    "parse_caveat",
    # L402
    "L402Credentials",
    "format_challenge",
    "format_challenge_body",
    "parse_authorization",
    # Errors
    "ProxyError",
    "MalformedCredential",
    "SecretNotFound",
    "SecretStoreUnavailable",
    "ChallengerError",
    "MintError",
    "UnknownRoute",
    "ConfigError",
    # Stats
    "ProxyStats",
]
