"""
Authentication of presented L402 credentials.

The authenticator runs a fixed sequence of checks and stops at the first
failure:

    1. decode the macaroon                      -> MALFORMED
    2. fetch its root key                       -> KEY_UNAVAILABLE
    3. recompute the signature                  -> BAD_SIGNATURE
    4. match the preimage to the payment hash   -> UNSETTLED_OBLIGATION
    5. evaluate caveats against the request     -> CAVEAT_VIOLATION

A request that passes all five is allowed with the capabilities left after
the caveats. Nothing is remembered between calls.
"""

from __future__ import annotations

import dataclasses
import enum
import logging
from dataclasses import dataclass
from typing import Optional, Tuple

from . import caveats as cav
from .caveats import RequestContext
from .challenger import Challenger, SettlementState
from .errors import (
    ChallengerError,
    MalformedCredential,
    SecretNotFound,
    SecretStoreUnavailable,
    UnknownRoute,
)
from .l402 import L402Credentials
from .limiter import StaticServiceLimiter
from .macaroon import decode_macaroon, verify_preimage, verify_signature
from .mint import ROUTE_KEY_PREFIX, route_root_key_id
from .secret_store import SecretStore
from .usage import UsageCounter

logger = logging.getLogger(__name__)


class DenyReason(enum.Enum):
    MALFORMED = "malformed"
    KEY_UNAVAILABLE = "key_unavailable"
    BAD_SIGNATURE = "bad_signature"
    UNSETTLED_OBLIGATION = "unsettled_obligation"
    CAVEAT_VIOLATION = "caveat_violation"


@dataclass(frozen=True)
class Decision:
    """Result of authenticating one request."""
    allowed: bool
    reason: Optional[DenyReason] = None
    detail: Optional[str] = None
    capabilities: Tuple[str, ...] = ()
    payment_hash: Optional[str] = None
    token_id: Optional[str] = None
    metered: bool = False  # carries a quota caveat

    @classmethod
    def allow(
        cls,
        capabilities: Tuple[str, ...],
        payment_hash: str,
        token_id: str,
        metered: bool = False,
    ) -> "Decision":
        return cls(
            allowed=True,
            capabilities=capabilities,
            payment_hash=payment_hash,
            token_id=token_id,
            metered=metered,
        )

    @classmethod
    def deny(
        cls,
        reason: DenyReason,
        detail: str,
        payment_hash: Optional[str] = None,
    ) -> "Decision":
        return cls(allowed=False, reason=reason, detail=detail, payment_hash=payment_hash)


class Authenticator:
    """Validates L402 credentials against the shared secret store."""

    def __init__(
        self,
        secrets: SecretStore,
        challenger: Optional[Challenger] = None,
        usage: Optional[UsageCounter] = None,
        confirm_settlement: bool = False,
        limiter: Optional[StaticServiceLimiter] = None,
    ):
        """
        Args:
            secrets: Shared root key storage.
            challenger: Needed only when confirm_settlement is set.
            usage: Request counters for the quota caveat. Without one, quota
                caveats are not enforced.
            confirm_settlement: Also ask the payment backend whether the
                invoice is settled, on top of the preimage check.
            limiter: Service table; when given, per-route root keys from a
                retired key generation are refused.
        """
        if confirm_settlement and challenger is None:
            raise ValueError("confirm_settlement needs a challenger")
        self.secrets = secrets
        self.challenger = challenger
        self.usage = usage
        self.confirm_settlement = confirm_settlement
        self.limiter = limiter

    async def authenticate(
        self,
        credentials: Optional[L402Credentials],
        context: RequestContext,
    ) -> Decision:
        """
        Decide whether a request may proceed.

        Args:
            credentials: Parsed Authorization header, or None when the
                request carried none (handled like a malformed one).
            context: The request being authenticated.

        Returns:
            Decision. Never raises for bad input or store outages.
        """
        if credentials is None:
            return Decision.deny(DenyReason.MALFORMED, "missing L402 credentials")

        try:
            macaroon = decode_macaroon(credentials.macaroon)
            parsed = macaroon.parsed_caveats()
        except MalformedCredential as e:
            return Decision.deny(DenyReason.MALFORMED, str(e))

        payment_hash = macaroon.payment_hash

        if self._retired(macaroon.root_key_id, context.service):
            return Decision.deny(DenyReason.KEY_UNAVAILABLE, "root key retired", payment_hash)

        try:
            root_key = await self.secrets.get_secret(macaroon.root_key_id)
        except SecretNotFound:
            logger.warning(
                "Unknown root key %s presented by %s",
                macaroon.root_key_id, context.client_ip,
            )
            return Decision.deny(DenyReason.KEY_UNAVAILABLE, "unknown root key", payment_hash)
        except SecretStoreUnavailable as e:
            logger.warning("Secret store unavailable during authentication: %s", e)
            return Decision.deny(DenyReason.KEY_UNAVAILABLE, "secret store unavailable", payment_hash)

        if not verify_signature(root_key, macaroon):
            logger.warning(
                "Bad macaroon signature from %s for service %s (payment_hash=%s)",
                context.client_ip, context.service, payment_hash,
            )
            return Decision.deny(DenyReason.BAD_SIGNATURE, "invalid macaroon signature", payment_hash)

        if not verify_preimage(credentials.preimage, payment_hash):
            return Decision.deny(
                DenyReason.UNSETTLED_OBLIGATION,
                "preimage does not match payment hash",
                payment_hash,
            )

        if self.confirm_settlement:
            try:
                state = await self.challenger.verify_settlement(payment_hash)
            except ChallengerError as e:
                logger.warning("Unable to confirm settlement of %s: %s", payment_hash, e)
                return Decision.deny(
                    DenyReason.UNSETTLED_OBLIGATION,
                    "unable to confirm settlement",
                    payment_hash,
                )
            if state is not SettlementState.SETTLED:
                return Decision.deny(
                    DenyReason.UNSETTLED_OBLIGATION,
                    f"invoice {state.value}",
                    payment_hash,
                )

        token_id = macaroon.token_id
        metered = self.usage is not None and any(c.name == cav.QUOTA for c in parsed)
        if metered:
            try:
                consumed = await self.usage.get(token_id)
            except SecretStoreUnavailable as e:
                logger.warning("Usage counter unavailable during authentication: %s", e)
                return Decision.deny(DenyReason.KEY_UNAVAILABLE, "usage store unavailable", payment_hash)
            context = dataclasses.replace(context, consumed=consumed)

        result = cav.evaluate(parsed, context)
        if not result.valid:
            return Decision.deny(
                DenyReason.CAVEAT_VIOLATION,
                f"{result.name}: {result.detail}",
                payment_hash,
            )

        return Decision.allow(result.capabilities, payment_hash, token_id, metered=metered)

    def _retired(self, root_key_id: str, service: str) -> bool:
        if self.limiter is None or not root_key_id.startswith(ROUTE_KEY_PREFIX):
            return False
        try:
            generation = self.limiter.key_generation(service)
        except UnknownRoute:
            return True
        return root_key_id != route_root_key_id(service, generation)
