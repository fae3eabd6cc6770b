"""
Minting of new macaroons.

The minter asks the challenger for an invoice, the service limiter for the
route's caveats and the secret store for a root key, then signs a macaroon
bound to the invoice's payment hash. It holds no state of its own.
"""

from __future__ import annotations

import hashlib
import logging
import os
import time
from typing import Optional, Tuple

from .challenger import Challenger, Obligation
from .errors import ChallengerError, MintError, SecretStoreError
from .limiter import StaticServiceLimiter
from .macaroon import TOKEN_ID_SIZE, Macaroon, create_macaroon
from .secret_store import SecretStore

logger = logging.getLogger(__name__)

PER_TOKEN = "per_token"
PER_ROUTE = "per_route"
ROUTE_KEY_PREFIX = "route-"


def route_root_key_id(route_id: str, generation: int = 0) -> str:
    """
    Root key ID shared by every macaroon of one route and key generation.

    Bumping the generation moves new mints to a fresh key; the authenticator
    refuses route keys of any other generation.
    """
    digest = hashlib.sha256(route_id.encode("utf-8")).hexdigest()
    return f"{ROUTE_KEY_PREFIX}{digest}-{generation}"


class Minter:
    """Creates macaroons and the invoices that unlock them."""

    def __init__(
        self,
        challenger: Challenger,
        secrets: SecretStore,
        limiter: StaticServiceLimiter,
        root_key_policy: str = PER_TOKEN,
    ):
        """
        Args:
            challenger: Invoice source.
            secrets: Shared root key storage.
            limiter: Route to caveat mapping.
            root_key_policy: "per_token" gives every macaroon its own root key;
                "per_route" shares one key across a route and key generation,
                so bumping the generation revokes the whole route at once.
        """
        if root_key_policy not in (PER_TOKEN, PER_ROUTE):
            raise ValueError(f"Unknown root key policy: {root_key_policy}")
        self.challenger = challenger
        self.secrets = secrets
        self.limiter = limiter
        self.root_key_policy = root_key_policy

    async def mint(
        self,
        route_id: str,
        method: Optional[str] = None,
    ) -> Tuple[Macaroon, Obligation]:
        """
        Mint a new macaroon for a route.

        Args:
            route_id: Service name.
            method: HTTP method of the request that triggered the mint.

        Returns:
            (macaroon, obligation). The macaroon only authenticates once the
            obligation's invoice has been paid.

        Raises:
            UnknownRoute: the route is not configured.
            MintError: the challenger or the secret store failed.
        """
        price = self.limiter.price(route_id)

        try:
            obligation = await self.challenger.new_obligation(route_id, price)
        except ChallengerError as e:
            raise MintError(f"unable to create invoice for {route_id}: {e}") from e

        issued_at = int(time.time())
        caveats = self.limiter.limits(route_id, issued_at, method=method)

        token_id = os.urandom(TOKEN_ID_SIZE)
        if self.root_key_policy == PER_ROUTE:
            root_key_id = route_root_key_id(route_id, self.limiter.key_generation(route_id))
        else:
            root_key_id = token_id.hex()

        try:
            root_key = await self.secrets.new_secret(root_key_id)
        except SecretStoreError as e:
            raise MintError(f"unable to create root key for {route_id}: {e}") from e

        try:
            macaroon = create_macaroon(
                root_key,
                root_key_id,
                obligation.payment_hash,
                caveats=caveats,
                token_id=token_id,
            )
        except ValueError as e:
            raise MintError(f"invalid invoice from challenger: {e}") from e

        logger.info(
            "Minted macaroon for %s: payment_hash=%s amount_msat=%d",
            route_id, obligation.payment_hash, obligation.amount_msat,
        )
        return macaroon, obligation
