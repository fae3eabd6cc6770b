"""
Proxy configuration loaded from YAML.

Example:

    listen_addr: "0.0.0.0:8081"
    debug_level: info
    root_key_policy: per_token
    authenticator:
      lnd_host: "localhost:8080"
      macaroon_path: "~/.lnd/data/chain/bitcoin/mainnet/invoice.macaroon"
    redis:
      host: localhost
    services:
      - name: premium
        path_regexp: "^/premium.*$"
        address: "127.0.0.1:9000"
        price: 10
        timeout: 3600
        capabilities: [read]
"""

from __future__ import annotations

import ipaddress
import os
import re
from typing import Dict, List, Literal, Optional

import yaml
from pydantic import BaseModel, ValidationError, field_validator, model_validator

from .errors import ConfigError

CONFIG_ENV_VAR = "LIGHTNING_PROXY_CONFIG"
DEFAULT_CONFIG_FILENAME = "lightning-proxy.yaml"

_FREEBIE_RE = re.compile(r"^freebie\s+(\d+)$")


class ServiceConfig(BaseModel):
    """One backend service behind the proxy."""

    name: str
    host_regexp: str = ".*"
    path_regexp: str = ".*"
    address: str
    protocol: Literal["http", "https"] = "http"
    auth: str = "on"
    headers: Dict[str, str] = {}
    price: int = 1
    capabilities: List[str] = []
    quota: Optional[int] = None
    timeout: Optional[int] = None
    bind_method: bool = False
    # Bump to retire every per_route root key of this service at once.
    key_generation: int = 0
    # Freebie counts reset after this many seconds.
    freebie_window: int = 3600

    @field_validator("host_regexp", "path_regexp")
    @classmethod
    def _valid_regexp(cls, value: str) -> str:
        try:
            re.compile(value)
        except re.error as e:
            raise ValueError(f"invalid regexp {value!r}: {e}") from None
        return value

    @field_validator("auth")
    @classmethod
    def _valid_auth(cls, value: str) -> str:
        value = value.strip().lower()
        if value not in ("on", "off") and not _FREEBIE_RE.match(value):
            raise ValueError(f"auth must be 'on', 'off' or 'freebie N', got {value!r}")
        return value

    @field_validator("price")
    @classmethod
    def _positive_price(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("price must be at least 1 sat")
        return value

    @field_validator("key_generation")
    @classmethod
    def _valid_generation(cls, value: int) -> int:
        if value < 0:
            raise ValueError("key_generation cannot be negative")
        return value

    @field_validator("freebie_window")
    @classmethod
    def _positive_window(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("freebie_window must be positive")
        return value

    @property
    def auth_required(self) -> bool:
        return self.auth != "off"

    @property
    def freebies(self) -> int:
        match = _FREEBIE_RE.match(self.auth)
        return int(match.group(1)) if match else 0

    @property
    def upstream(self) -> str:
        return f"{self.protocol}://{self.address}"


class AuthenticatorConfig(BaseModel):
    """Connection to the LND node that issues invoices."""

    lnd_host: str = "localhost:8080"
    macaroon_path: Optional[str] = None
    tls_path: Optional[str] = None
    timeout: float = 10.0
    invoice_expiry: int = 300
    memo: str = "LSAT"


class RedisConfig(BaseModel):
    """Configuration for the shared Redis secret store."""

    host: str = "localhost"
    port: int = 6379
    db: int = 0
    username: Optional[str] = None
    password: Optional[str] = None
    prefix: str = "lsat/proxy"
    timeout: float = 5.0
    cache_size: int = 10000


class ProxyConfig(BaseModel):
    """Top-level configuration model."""

    listen_addr: str
    static_root: Optional[str] = None
    debug_level: str = "info"
    tls_cert_path: Optional[str] = None
    tls_key_path: Optional[str] = None
    scheme: Literal["L402", "LSAT"] = "L402"
    root_key_policy: Literal["per_token", "per_route"] = "per_token"
    confirm_settlement: bool = False
    mint_timeout: float = 30.0
    stats_path: Optional[str] = None
    # Peers allowed to set X-Forwarded-For (addresses or CIDR networks).
    trusted_proxies: List[str] = []
    authenticator: AuthenticatorConfig = AuthenticatorConfig()
    redis: RedisConfig = RedisConfig()
    services: List[ServiceConfig] = []

    @field_validator("listen_addr")
    @classmethod
    def _listen_addr_set(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("missing listen address for server")
        return value

    @field_validator("trusted_proxies")
    @classmethod
    def _valid_networks(cls, value: List[str]) -> List[str]:
        for entry in value:
            try:
                ipaddress.ip_network(entry, strict=False)
            except ValueError as e:
                raise ValueError(f"invalid trusted proxy {entry!r}: {e}") from None
        return value

    @model_validator(mode="after")
    def _unique_service_names(self) -> "ProxyConfig":
        names = [s.name for s in self.services]
        duplicates = sorted({n for n in names if names.count(n) > 1})
        if duplicates:
            raise ValueError(f"duplicate service names: {', '.join(duplicates)}")
        return self

    @property
    def host(self) -> str:
        return self.listen_addr.rsplit(":", 1)[0].strip("[]") or "0.0.0.0"

    @property
    def port(self) -> int:
        _, _, port = self.listen_addr.rpartition(":")
        return int(port) if port.isdigit() else 8081


def load_config(path: Optional[str] = None) -> ProxyConfig:
    """Load configuration from a YAML file.

    Args:
        path: Optional path to config file. Falls back to the
            LIGHTNING_PROXY_CONFIG env variable or 'lightning-proxy.yaml' in
            the current directory.

    Raises:
        ConfigError: the file is missing, unparseable or invalid.
    """

    config_path = path or os.getenv(CONFIG_ENV_VAR, DEFAULT_CONFIG_FILENAME)
    try:
        with open(os.path.expanduser(config_path)) as f:
            data = yaml.safe_load(f) or {}
    except OSError as e:
        raise ConfigError(f"unable to read config file {config_path}: {e}") from e
    except yaml.YAMLError as e:
        raise ConfigError(f"unable to parse config file {config_path}: {e}") from e

    if not isinstance(data, dict):
        raise ConfigError(f"config file {config_path} must contain a mapping")

    try:
        return ProxyConfig(**data)
    except ValidationError as e:
        raise ConfigError(f"invalid config file {config_path}: {e}") from e
