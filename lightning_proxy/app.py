"""
Wiring and entrypoint.

create_proxy() builds the challenger, secret store, service limiter, minter,
authenticator and proxy from a ProxyConfig. main() loads the config file,
sets up logging and serves the proxy with uvicorn.
"""

from __future__ import annotations

import logging
import os
import sys
from typing import Optional

import httpx
import redis.asyncio as redis
import uvicorn

from .auth import Authenticator
from .challenger import Challenger, LndChallenger
from .config import ProxyConfig, load_config
from .errors import ConfigError
from .limiter import StaticServiceLimiter
from .mint import Minter
from .proxy import Proxy
from .secret_store import RedisSecretStore, SecretStore
from .usage import RedisUsageCounter, UsageCounter

logger = logging.getLogger(__name__)


def _lnd_challenger(cfg: ProxyConfig) -> LndChallenger:
    lnd = cfg.authenticator
    if not lnd.macaroon_path:
        raise ConfigError("authenticator.macaroon_path is required")
    try:
        with open(os.path.expanduser(lnd.macaroon_path), "rb") as f:
            macaroon_hex = f.read().hex()
    except OSError as e:
        raise ConfigError(f"unable to read LND macaroon: {e}") from e

    return LndChallenger(
        host=lnd.lnd_host,
        macaroon_hex=macaroon_hex,
        tls_cert=os.path.expanduser(lnd.tls_path) if lnd.tls_path else None,
        timeout=lnd.timeout,
        invoice_expiry=lnd.invoice_expiry,
        memo=lnd.memo,
    )


def _redis_client(cfg: ProxyConfig) -> redis.Redis:
    return redis.Redis(
        host=cfg.redis.host,
        port=cfg.redis.port,
        db=cfg.redis.db,
        username=cfg.redis.username,
        password=cfg.redis.password,
        socket_timeout=cfg.redis.timeout,
        socket_connect_timeout=cfg.redis.timeout,
    )


def create_proxy(
    cfg: ProxyConfig,
    challenger: Optional[Challenger] = None,
    secrets: Optional[SecretStore] = None,
    usage: Optional[UsageCounter] = None,
    http_client: Optional[httpx.AsyncClient] = None,
) -> Proxy:
    """
    Create the proxy with all the services it needs.

    Args:
        cfg: Loaded configuration.
        challenger: Invoice source; an LND challenger from cfg when omitted.
        secrets: Root key store; Redis from cfg when omitted.
        usage: Quota counters; Redis from cfg when the store is also Redis.
        http_client: Client used to reach backends.

    Returns:
        Proxy whose `app` attribute is the ASGI application.
    """
    if challenger is None:
        challenger = _lnd_challenger(cfg)

    if secrets is None:
        client = _redis_client(cfg)
        secrets = RedisSecretStore(
            client,
            prefix=cfg.redis.prefix,
            timeout=cfg.redis.timeout,
            cache_size=cfg.redis.cache_size,
        )
        if usage is None:
            usage = RedisUsageCounter(client, prefix=cfg.redis.prefix, timeout=cfg.redis.timeout)

    limiter = StaticServiceLimiter(cfg.services)
    minter = Minter(
        challenger=challenger,
        secrets=secrets,
        limiter=limiter,
        root_key_policy=cfg.root_key_policy,
    )
    authenticator = Authenticator(
        secrets,
        challenger=challenger,
        usage=usage,
        confirm_settlement=cfg.confirm_settlement,
        limiter=limiter,
    )
    return Proxy(
        cfg.services,
        authenticator,
        minter,
        http_client=http_client,
        scheme=cfg.scheme,
        mint_timeout=cfg.mint_timeout,
        usage=usage,
        static_root=cfg.static_root,
        stats_path=cfg.stats_path,
        trusted_proxies=cfg.trusted_proxies,
    )


def main(config_path: Optional[str] = None) -> None:
    """Load the config, set up logging and run the server until shutdown."""
    try:
        cfg = load_config(config_path)
    except ConfigError as e:
        print(e, file=sys.stderr)
        sys.exit(1)

    logging.basicConfig(
        level=cfg.debug_level.upper(),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    try:
        proxy = create_proxy(cfg)
    except ConfigError as e:
        logger.error("%s", e)
        sys.exit(1)

    ssl_kwargs = {}
    if cfg.tls_cert_path and cfg.tls_key_path:
        ssl_kwargs = {"ssl_certfile": cfg.tls_cert_path, "ssl_keyfile": cfg.tls_key_path}
    else:
        logger.warning("No TLS certificate configured, serving plain HTTP")

    logger.info("Starting the server, listening on %s.", cfg.listen_addr)
    uvicorn.run(proxy.app, host=cfg.host, port=cfg.port, log_config=None, **ssl_kwargs)
